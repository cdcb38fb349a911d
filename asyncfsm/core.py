"""Runtime types shared by every state machine."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class Transition(Generic[T]):
    """A move to a target state, returned by a handler."""

    state: T

    @classmethod
    def to(cls, state: T) -> Transition[T]:
        """Create a transition to ``state``."""
        return cls(state)

    def into_state(self) -> T:
        """Return the target state of this transition."""
        return self.state


class ShutdownMode(enum.Enum):
    """How a running machine should stop."""

    #: Process every event still queued, then stop and return the context.
    GRACEFUL = "graceful"
    #: Stop at once, dropping queued events, and return the context.
    IMMEDIATE = "immediate"


class TaskError(Exception):
    """Base class for failures reported by a machine's background task."""


class FsmError(TaskError):
    """A handler raised the machine's own error type."""

    def __init__(self, error: BaseException | object) -> None:
        super().__init__(f"FSM error: {error}")
        self.error = error


class JoinError(TaskError):
    """The background task crashed or was cancelled."""

    def __init__(self, cause: BaseException | str) -> None:
        super().__init__(f"Task join error: {cause}")
        self.cause = cause