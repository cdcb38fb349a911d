"""Declaring handlers and checking the structure of a state machine.

Handlers are marked with the decorators in this module. ``FsmStructure.parse``
collects the states, events and handlers from a class namespace and checks
that every state can be reached from the initial one.
"""

from __future__ import annotations

import re
import types
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

DEFAULT_CHANNEL_SIZE = 100

_SPEC_ATTR = "_fsm_spec"

_NS = 1
_US = 1_000
_MS = 1_000_000
_SEC = 1_000_000_000
_UNITS = {
    "nsec": _NS, "ns": _NS,
    "usec": _US, "us": _US, "µs": _US,
    "msec": _MS, "ms": _MS,
    "seconds": _SEC, "second": _SEC, "sec": _SEC, "s": _SEC,
    "minutes": 60 * _SEC, "minute": 60 * _SEC, "min": 60 * _SEC, "m": 60 * _SEC,
    "hours": 3_600 * _SEC, "hour": 3_600 * _SEC, "hr": 3_600 * _SEC, "h": 3_600 * _SEC,
    "days": 86_400 * _SEC, "day": 86_400 * _SEC, "d": 86_400 * _SEC,
    "weeks": 604_800 * _SEC, "week": 604_800 * _SEC, "w": 604_800 * _SEC,
    "months": 2_630_016 * _SEC, "month": 2_630_016 * _SEC, "M": 2_630_016 * _SEC,
    "years": 31_557_600 * _SEC, "year": 31_557_600 * _SEC, "y": 31_557_600 * _SEC,
}
_DURATION_PART = re.compile(r"([0-9]+)\s*([^\W\d_]*)")


class FsmDefinitionError(Exception):
    """The definition of a state machine is malformed or inconsistent."""


def parse_duration(text: str) -> timedelta:
    """Parse a human-readable duration such as ``"30s"`` or ``"1h 30m"``."""
    if not isinstance(text, str):
        raise TypeError("duration must be a string")
    if not text.strip():
        raise ValueError("value was empty")
    total = 0
    pos = 0
    while pos < len(text):
        if text[pos].isspace():
            pos += 1
            continue
        match = _DURATION_PART.match(text, pos)
        if match is None:
            raise ValueError(f"expected number at {pos}")
        number, unit = match.groups()
        if not unit:
            raise ValueError(
                f"time unit needed, for example {number}sec or {number}ms"
            )
        scale = _UNITS.get(unit)
        if scale is None:
            raise ValueError(
                f"unknown time unit {unit!r}, supported units: ns, us, ms, sec, "
                "min, hours, days, weeks, months, years (and few variations)"
            )
        total += int(number) * scale
        pos = match.end()
    seconds, rest = divmod(total, _SEC)
    try:
        return timedelta(seconds=seconds, microseconds=rest // _US)
    except OverflowError:
        raise ValueError("number is too large") from None


@dataclass
class _Spec:
    transitions: list[tuple[str, str]] = field(default_factory=list)
    timeout: str | None = None
    is_timeout_handler: bool = False
    success: tuple[str, ...] = ()
    failure: str | None = None


def _spec_of(func: Callable[..., Any]) -> _Spec:
    spec = getattr(func, _SPEC_ATTR, None)
    if spec is None:
        spec = _Spec()
        setattr(func, _SPEC_ATTR, spec)
    return spec


def _check_name(value: object, what: str) -> str:
    if not isinstance(value, str) or not value.isidentifier():
        raise FsmDefinitionError(f"Expected {what} to be an identifier, got {value!r}")
    return value


def on(state: str, event: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Run the decorated handler when ``event`` arrives in ``state``.

    The decorator may be stacked to accept the event in several states.
    """
    _check_name(state, "state")
    _check_name(event, "event")

    def decorate(func: Callable[..., Any]) -> Callable[..., Any]:
        # Decorators apply bottom-up; prepend to keep the written order.
        _spec_of(func).transitions.insert(0, (state, event))
        return func

    return decorate


def state_timeout(duration: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Arm a timeout for the state the decorated handler moves to."""
    if not isinstance(duration, str):
        raise FsmDefinitionError("state_timeout duration must be a string")

    def decorate(func: Callable[..., Any]) -> Callable[..., Any]:
        spec = _spec_of(func)
        # The lowest decorator is written last and applied first; it wins.
        if spec.timeout is None:
            spec.timeout = duration
        return func

    return decorate


def on_timeout(func: Callable[..., Any]) -> Callable[..., Any]:
    """Mark the handler to call when a state timeout fires."""
    _spec_of(func).is_timeout_handler = True
    return func


def targets(*args: str, failure: str | None = None) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Declare the states a handler may move to.

    ``failure`` names the state taken on the error path; a handler with a
    failure state does not arm the success state's timeout when it fails.
    """
    if not args:
        raise FsmDefinitionError("targets() needs at least one target state")
    success = tuple(_check_name(state, "target state") for state in args)
    if failure is not None:
        _check_name(failure, "failure state")

    def decorate(func: Callable[..., Any]) -> Callable[..., Any]:
        spec = _spec_of(func)
        spec.success = success
        spec.failure = failure
        return func

    return decorate


@dataclass(frozen=True)
class State:
    """A state discovered in a machine definition."""

    name: str


@dataclass(frozen=True)
class Event:
    """An event discovered in a machine definition."""

    name: str
    has_payload: bool = False
    payload_type: Any = None


@dataclass
class Handler:
    """A method of a machine with everything derived from its decorators."""

    name: str
    func: Callable[..., Any]
    event: Event | None
    is_timeout_handler: bool
    return_states: list[State]
    source_states: list[str]
    has_payload: bool
    is_result: bool
    timeout: timedelta | None
    failure_state: State | None = None

    @classmethod
    def parse(cls, name: str, func: Callable[..., Any]) -> Handler:
        """Derive a handler from a decorated function."""
        spec: _Spec = getattr(func, _SPEC_ATTR, None) or _Spec()

        event: Event | None = None
        source_states: list[str] = []
        for state, event_name in spec.transitions:
            source_states.append(state)
            if event is None:
                payload = _payload_parameter(func)
                event = Event(
                    name=event_name,
                    has_payload=payload is not None,
                    payload_type=None if payload is None else payload[1],
                )

        timeout = None
        if spec.timeout is not None:
            try:
                timeout = parse_duration(spec.timeout)
            except ValueError as exc:
                raise FsmDefinitionError(
                    f"Invalid duration '{spec.timeout}': {exc}"
                ) from exc

        return_states = [State(s) for s in spec.success]
        failure_state = State(spec.failure) if spec.failure is not None else None
        if failure_state is not None:
            return_states.append(failure_state)

        return cls(
            name=name,
            func=func,
            event=event,
            is_timeout_handler=spec.is_timeout_handler,
            return_states=return_states,
            source_states=source_states,
            has_payload=event is not None and event.has_payload,
            is_result=failure_state is not None,
            timeout=timeout,
            failure_state=failure_state,
        )


def _payload_parameter(func: Callable[..., Any]) -> tuple[str, Any] | None:
    """Return the name and annotation of the payload argument, if any."""
    seen = set()
    while hasattr(func, "__wrapped__") and id(func) not in seen:
        seen.add(id(func))
        func = func.__wrapped__
    code = getattr(func, "__code__", None)
    if code is None:
        return None
    positional = code.co_varnames[: code.co_argcount]
    if len(positional) < 2:
        return None
    name = positional[1]
    annotations = getattr(func, "__annotations__", None) or {}
    return name, annotations.get(name)


@dataclass
class FsmStructure:
    """The complete, checked structure of a machine."""

    fsm_name: str
    initial_state: str
    channel_size: int
    context_type: Any
    error_type: Any
    states: list[State]
    events: list[Event]
    handlers: list[Handler]

    @property
    def state_enum_name(self) -> str:
        return f"{self.fsm_name}State"

    @property
    def event_enum_name(self) -> str:
        return f"{self.fsm_name}Event"

    @property
    def handle_name(self) -> str:
        return f"{self.fsm_name}Handle"

    @property
    def task_name(self) -> str:
        return f"{self.fsm_name}Task"

    @classmethod
    def parse(
        cls,
        name: str,
        namespace: Mapping[str, Any],
        initial: str,
        channel_size: int = DEFAULT_CHANNEL_SIZE,
    ) -> FsmStructure:
        """Collect and check the machine defined by a class namespace."""
        _check_name(name, "FSM type name")
        _check_name(initial, "initial state")
        if isinstance(channel_size, bool) or not isinstance(channel_size, int) or channel_size < 1:
            raise FsmDefinitionError(
                f"channel_size must be a positive integer, got {channel_size!r}"
            )
        if "Context" not in namespace:
            raise FsmDefinitionError("Missing associated type: Context = ...")
        if "Error" not in namespace:
            raise FsmDefinitionError("Missing associated type: Error = ...")

        states: dict[str, None] = {initial: None}
        events: dict[str, Event] = {}
        handlers: list[Handler] = []
        for attr, value in namespace.items():
            if attr.startswith("__") or not isinstance(value, types.FunctionType):
                continue
            handler = Handler.parse(attr, value)
            states.update(dict.fromkeys(s.name for s in handler.return_states))
            states.update(dict.fromkeys(handler.source_states))
            if handler.event is not None and handler.event.name not in events:
                events[handler.event.name] = handler.event
            handlers.append(handler)

        structure = cls(
            fsm_name=name,
            initial_state=initial,
            channel_size=channel_size,
            context_type=namespace["Context"],
            error_type=namespace["Error"],
            states=[State(s) for s in states],
            events=list(events.values()),
            handlers=handlers,
        )
        structure.validate()
        return structure

    def validate(self) -> None:
        """Check that every state is reachable from the initial state."""
        names = [state.name for state in self.states]
        known = set(names)
        if self.initial_state not in known:
            raise FsmDefinitionError("Initial state not found in discovered states")

        edges: dict[str, set[str]] = {n: set() for n in names}
        for handler in self.handlers:
            for target in handler.return_states:
                if target.name not in known:
                    raise FsmDefinitionError(
                        f"Target state '{target.name}' not found in discovered states"
                    )
                if not handler.source_states:
                    # Timeout handlers may fire from any state.
                    for source in names:
                        edges[source].add(target.name)
                    continue
                for source in handler.source_states:
                    if source not in known:
                        raise FsmDefinitionError(
                            f"Source state '{source}' not found in FSM states"
                        )
                    edges[source].add(target.name)

        reached = {self.initial_state}
        pending = deque([self.initial_state])
        while pending:
            for nxt in edges[pending.popleft()]:
                if nxt not in reached:
                    reached.add(nxt)
                    pending.append(nxt)

        for state in names:
            if state not in reached:
                raise FsmDefinitionError(
                    f"State '{state}' is unreachable from initial state "
                    f"'{self.initial_state}'"
                )