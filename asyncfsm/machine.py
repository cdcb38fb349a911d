"""Running state machines declared with :func:`fsm`.

A class decorated with :func:`fsm` gains a ``State`` enum, an ``Event``
namespace of event constructors and a ``spawn`` class method. Spawning starts
the event loop as an asyncio task and returns a :class:`Handle` to talk to it
and a :class:`Task` that resolves to the final context.
"""

from __future__ import annotations

import asyncio
import enum
import inspect
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from .core import FsmError, JoinError, ShutdownMode, Transition
from .validation import (
    DEFAULT_CHANNEL_SIZE,
    Event,
    FsmDefinitionError,
    FsmStructure,
    Handler,
    State,
)

_DEFINITION_ATTR = "_fsm_definition"
_NOTHING = object()

C = TypeVar("C", bound=type)


class ChannelClosed(Exception):
    """The machine's event loop has stopped and no longer accepts events."""

    def __init__(self, event: EventMessage | None = None) -> None:
        super().__init__("channel closed")
        self.event = event


@dataclass(frozen=True)
class EventMessage:
    """An event sent to a machine, with its payload if it carries one."""

    name: str
    payload: Any = None
    has_payload: bool = False


class _EventConstructor:
    """Builds messages for an event that carries a payload."""

    def __init__(self, name: str) -> None:
        self.name = name

    def __call__(self, payload: Any) -> EventMessage:
        return EventMessage(self.name, payload, True)

    def __repr__(self) -> str:
        return f"<event {self.name}(payload)>"


@dataclass(frozen=True)
class _Route:
    handler: Handler
    allowed: frozenset[str]
    success: frozenset[str]
    failure: str | None

    @classmethod
    def of(cls, handler: Handler) -> _Route:
        names = [state.name for state in handler.return_states]
        success = names[:-1] if handler.failure_state is not None else names
        failure = handler.failure_state.name if handler.failure_state is not None else None
        return cls(handler, frozenset(names), frozenset(success), failure)

    def is_failure(self, state_name: str) -> bool:
        return state_name == self.failure and state_name not in self.success


@dataclass
class _Definition:
    structure: FsmStructure
    state_enum: type[enum.Enum]
    events: dict[str, Event]
    routes: dict[tuple[str, str], _Route]
    timeout_route: _Route | None

    def resolve_state(self, target: Any) -> enum.Enum:
        if isinstance(target, self.state_enum):
            return target
        if isinstance(target, State):
            target = target.name
        if isinstance(target, str) and target in self.state_enum.__members__:
            return self.state_enum[target]
        raise ValueError(f"Unknown state {target!r} for {self.structure.fsm_name}")


class _StateWatch:
    """Holds the latest state and wakes everyone waiting for a change."""

    def __init__(self, value: enum.Enum) -> None:
        self.value = value
        self.closed = False
        self._changed = asyncio.Event()

    def set(self, value: enum.Enum) -> None:
        self.value = value
        self._wake()

    def close(self) -> None:
        self.closed = True
        self._wake()

    def _wake(self) -> None:
        changed, self._changed = self._changed, asyncio.Event()
        changed.set()

    async def changed(self) -> None:
        await self._changed.wait()


class _Channel:
    def __init__(self, size: int, initial: enum.Enum) -> None:
        self.queue: asyncio.Queue[EventMessage] = asyncio.Queue(maxsize=size)
        self.state = _StateWatch(initial)
        self.shutdown = asyncio.Event()
        self.mode: ShutdownMode | None = None
        self.closed = asyncio.Event()

    def request_shutdown(self, mode: ShutdownMode) -> None:
        self.mode = mode
        self.shutdown.set()

    def close(self) -> None:
        self.closed.set()
        self.state.close()


class Handle:
    """Sends events to a running machine and observes its state."""

    def __init__(self, definition: _Definition, channel: _Channel) -> None:
        self._definition = definition
        self._channel = channel

    def _check(self, event: Any) -> EventMessage:
        if not isinstance(event, EventMessage):
            raise TypeError(f"Expected an EventMessage, got {event!r}")
        declared = self._definition.events.get(event.name)
        if declared is None:
            raise ValueError(
                f"Unknown event {event.name!r} for {self._definition.structure.fsm_name}"
            )
        if declared.has_payload != event.has_payload:
            expected = "a payload" if declared.has_payload else "no payload"
            raise TypeError(f"Event {event.name!r} takes {expected}")
        return event

    async def send(self, event: EventMessage) -> None:
        """Queue an event, waiting for room; raise ChannelClosed once stopped."""
        self._check(event)
        channel = self._channel
        if channel.closed.is_set():
            raise ChannelClosed(event)
        if not channel.queue.full():
            channel.queue.put_nowait(event)
            return
        put = asyncio.ensure_future(channel.queue.put(event))
        closed = asyncio.ensure_future(channel.closed.wait())
        try:
            done, _ = await asyncio.wait({put, closed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            put.cancel()
            closed.cancel()
        if put in done and not put.cancelled():
            return
        raise ChannelClosed(event)

    def try_send(self, event: EventMessage) -> None:
        """Queue an event at once.

        Raises ChannelClosed once stopped and asyncio.QueueFull when the
        queue has no room.
        """
        self._check(event)
        if self._channel.closed.is_set():
            raise ChannelClosed(event)
        self._channel.queue.put_nowait(event)

    def current_state(self) -> enum.Enum:
        """Return the machine's current state."""
        return self._channel.state.value

    async def wait_for_state(self, target: Any) -> None:
        """Wait until the machine is in ``target``.

        Raises ChannelClosed if the machine stops first.
        """
        wanted = self._definition.resolve_state(target)
        watch = self._channel.state
        while watch.value is not wanted:
            if watch.closed:
                raise ChannelClosed()
            await watch.changed()

    def shutdown_graceful(self) -> None:
        """Stop after processing every event still queued."""
        self._channel.request_shutdown(ShutdownMode.GRACEFUL)

    def shutdown_immediate(self) -> None:
        """Stop at once, dropping queued events."""
        self._channel.request_shutdown(ShutdownMode.IMMEDIATE)


def _is_error_type(exc: BaseException, error_type: Any) -> bool:
    return (
        isinstance(error_type, type)
        and issubclass(error_type, BaseException)
        and isinstance(exc, error_type)
    )


class Task:
    """The background task of a machine; awaiting it yields the final context."""

    def __init__(self, inner: asyncio.Task[Any], error_type: Any) -> None:
        self._inner = inner
        self._error_type = error_type

    def __await__(self):
        return self._outcome().__await__()

    async def _outcome(self) -> Any:
        try:
            return await asyncio.shield(self._inner)
        except asyncio.CancelledError:
            if self._inner.cancelled():
                raise JoinError("task was cancelled") from None
            raise
        except Exception as exc:
            if _is_error_type(exc, self._error_type):
                raise FsmError(exc) from exc
            raise JoinError(exc) from exc

    def done(self) -> bool:
        """Whether the event loop has finished."""
        return self._inner.done()

    def cancel(self) -> bool:
        """Abort the event loop; awaiting the task then raises JoinError."""
        return self._inner.cancel()


async def _apply(
    machine: Any,
    definition: _Definition,
    channel: _Channel,
    route: _Route,
    outcome: Any,
) -> enum.Enum:
    if inspect.isawaitable(outcome):
        outcome = await outcome
    name = route.handler.name
    if not isinstance(outcome, Transition):
        raise TypeError(f"Handler {name!r} must return a Transition, got {outcome!r}")
    state = definition.resolve_state(outcome.into_state())
    if route.allowed and state.name not in route.allowed:
        raise ValueError(f"Handler {name!r} may not move to state {state.name!r}")
    machine.state = state
    channel.state.set(state)
    return state


async def _dispatch(
    machine: Any,
    definition: _Definition,
    channel: _Channel,
    event: EventMessage,
    deadline: float | None,
) -> float | None:
    route = definition.routes.get((machine.state.name, event.name))
    if route is None:
        # Not handled in the current state: ignored, the timer keeps running.
        return deadline
    handler = route.handler
    args = (event.payload,) if handler.has_payload else ()
    state = await _apply(machine, definition, channel, route, handler.func(machine, *args))
    if handler.timeout is None or route.is_failure(state.name):
        return None
    return asyncio.get_running_loop().time() + handler.timeout.total_seconds()


async def _settle(getter: asyncio.Future[EventMessage]) -> Any:
    """Stop a pending receive, returning the event it got if any."""
    if not getter.done():
        getter.cancel()
        await asyncio.wait({getter})
    if getter.cancelled():
        return _NOTHING
    return getter.result()


async def _run(machine: Any, definition: _Definition, channel: _Channel) -> Any:
    loop = asyncio.get_running_loop()
    deadline: float | None = None
    getter: asyncio.Future[EventMessage] | None = None
    stopper = asyncio.ensure_future(channel.shutdown.wait())
    try:
        while True:
            if getter is None:
                getter = asyncio.ensure_future(channel.queue.get())
            timeout = None if deadline is None else max(0.0, deadline - loop.time())
            done, _ = await asyncio.wait(
                {getter, stopper}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
            if stopper in done:
                if channel.mode is ShutdownMode.IMMEDIATE:
                    return machine.context
                event = await _settle(getter)
                getter = None
                while True:
                    if event is not _NOTHING:
                        deadline = await _dispatch(machine, definition, channel, event, deadline)
                    try:
                        event = channel.queue.get_nowait()
                    except asyncio.QueueEmpty:
                        return machine.context
            if getter in done:
                event = getter.result()
                getter = None
                deadline = await _dispatch(machine, definition, channel, event, deadline)
            elif not done:
                route = definition.timeout_route
                if route is not None:
                    await _apply(machine, definition, channel, route, route.handler.func(machine))
                deadline = None
    finally:
        if getter is not None:
            getter.cancel()
        stopper.cancel()
        channel.close()


def spawn(machine_cls: type, context: Any) -> tuple[Handle, Task]:
    """Start a machine with ``context`` in the running event loop."""
    definition = getattr(machine_cls, _DEFINITION_ATTR, None)
    if not isinstance(definition, _Definition):
        raise TypeError(f"{machine_cls!r} is not a state machine declared with @fsm")
    machine = machine_cls(context)
    channel = _Channel(definition.structure.channel_size, machine.state)
    inner = asyncio.get_running_loop().create_task(
        _run(machine, definition, channel), name=definition.structure.task_name
    )
    return Handle(definition, channel), Task(inner, definition.structure.error_type)


def fsm(initial: str, channel_size: int = DEFAULT_CHANNEL_SIZE) -> Callable[[C], C]:
    """Turn a class of decorated handlers into a spawnable state machine."""

    def decorate(cls: C) -> C:
        namespace = dict(vars(cls))
        if "__init__" in namespace:
            raise FsmDefinitionError(f"{cls.__name__} must not define __init__")
        structure = FsmStructure.parse(cls.__name__, namespace, initial, channel_size)

        state_enum = enum.Enum(
            structure.state_enum_name,
            [(state.name, state.name) for state in structure.states],
            module=cls.__module__,
        )
        event_attrs: dict[str, Any] = {
            event.name: _EventConstructor(event.name)
            if event.has_payload
            else EventMessage(event.name)
            for event in structure.events
        }
        event_attrs["__module__"] = cls.__module__
        event_ns = type(structure.event_enum_name, (), event_attrs)

        routes: dict[tuple[str, str], _Route] = {}
        for handler in structure.handlers:
            if handler.event is None:
                continue
            route = _Route.of(handler)
            for source in handler.source_states:
                routes.setdefault((source, handler.event.name), route)
        timeout_handler = next((h for h in structure.handlers if h.is_timeout_handler), None)

        definition = _Definition(
            structure=structure,
            state_enum=state_enum,
            events={event.name: event for event in structure.events},
            routes=routes,
            timeout_route=_Route.of(timeout_handler) if timeout_handler is not None else None,
        )
        initial_state = state_enum[structure.initial_state]

        def __init__(self: Any, context: Any) -> None:
            self.state = initial_state
            self.context = context

        cls.__init__ = __init__
        cls.State = state_enum
        cls.Event = event_ns
        cls.spawn = classmethod(spawn)
        setattr(cls, _DEFINITION_ATTR, definition)
        return cls

    return decorate