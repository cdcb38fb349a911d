"""The same small machine written by hand and declared with :func:`fsm`.

Both machines start in ``Idle``; a ``Start`` event carrying a job counts it
and moves the machine to ``Processing``. Further starts are ignored.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import enum
import logging
from dataclasses import dataclass

from .core import Transition
from .machine import fsm
from .validation import on, targets

log = logging.getLogger(__name__)

MANUAL_CHANNEL_SIZE = 100


@dataclass(frozen=True)
class Job:
    """A job to start."""

    id: int


@dataclass
class Context:
    """Counts the jobs started."""

    count: int = 0


class ManualState(enum.Enum):
    """States of the hand-written machine."""

    IDLE = "Idle"
    PROCESSING = "Processing"


class ManualHandle:
    """Sends start events to a hand-written machine and reads its state."""

    def __init__(self, queue: asyncio.Queue[Job], machine: ManualFsm) -> None:
        self._queue = queue
        self._machine = machine

    async def send(self, event: Job) -> None:
        """Send a ``Start`` event carrying the job ``event``."""
        await self._queue.put(event)

    def current_state(self) -> ManualState:
        """Return the machine's current state."""
        return self._machine.state


@dataclass
class ManualFsm:
    """A machine with its event loop written out by hand."""

    context: Context
    state: ManualState = ManualState.IDLE

    @classmethod
    def spawn(cls, context: Context) -> tuple[ManualHandle, asyncio.Task[None]]:
        """Start the machine; its task runs until cancelled."""
        queue: asyncio.Queue[Job] = asyncio.Queue(maxsize=MANUAL_CHANNEL_SIZE)
        machine = cls(context)
        task = asyncio.get_running_loop().create_task(machine._run(queue))
        return ManualHandle(queue, machine), task

    async def _run(self, queue: asyncio.Queue[Job]) -> None:
        while True:
            job = await queue.get()
            if self.state is ManualState.IDLE:
                log.info("Manual: Starting job %s", job.id)
                self.context.count += 1
                self.state = ManualState.PROCESSING


@fsm(initial="Idle")
class MacroFsm:
    """The declared counterpart of :class:`ManualFsm`."""

    Context = Context
    Error = None

    @on("Idle", "Start")
    @targets("Processing")
    async def handle_start(self, job: Job) -> Transition[str]:
        log.info("Macro: Starting job %s", job.id)
        self.context.count += 1
        return Transition.to("Processing")


async def _wait_manual(handle: ManualHandle, state: ManualState) -> None:
    while handle.current_state() is not state:
        await asyncio.sleep(0)


async def _demo() -> None:
    print("=== MANUAL FSM ===")
    manual_handle, manual_task = ManualFsm.spawn(Context())
    await manual_handle.send(Job(id=1))
    await asyncio.wait_for(_wait_manual(manual_handle, ManualState.PROCESSING), timeout=5)
    print(f"Manual state: {manual_handle.current_state().value}")
    manual_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await manual_task

    print("\n=== MACRO FSM ===")
    macro_handle, macro_task = MacroFsm.spawn(Context())
    await macro_handle.send(MacroFsm.Event.Start(Job(id=1)))
    await asyncio.wait_for(macro_handle.wait_for_state("Processing"), timeout=5)
    print(f"Macro state: {macro_handle.current_state().name}")
    macro_handle.shutdown_immediate()
    await macro_task


def main(argv: list[str] | None = None) -> int:
    """Run both machines side by side and print their states."""
    parser = argparse.ArgumentParser(
        prog="asyncfsm-comparison",
        description="Compare a hand-written machine with a declared one.",
    )
    parser.parse_args(argv)
    asyncio.run(_demo())
    return 0