"""A job worker machine with a state timeout.

A job arriving in ``Idle`` is saved to the database. A successful save moves
the worker to ``Working`` and arms a 30 second timeout. A failed save moves it
to ``Failed``. ``Done`` brings a working worker back to ``Idle``. If the
timeout fires first, the worker moves to ``Failed``.
"""

from __future__ import annotations

import argparse
import asyncio
from dataclasses import dataclass, field

from .core import Transition
from .machine import fsm
from .validation import on, on_timeout, state_timeout, targets

SAVE_DELAY = 0.01


@dataclass(frozen=True)
class Job:
    """A unit of work handed to the worker."""

    id: int
    data: str


class WorkerError(Exception):
    """A failure while the worker handles a job."""

    def __init__(self, detail: str) -> None:
        super().__init__(f"Database error: {detail}")
        self.detail = detail


@dataclass
class Database:
    """A stand-in store; set ``fail`` to make every save fail."""

    fail: bool = False

    async def save(self, job: Job) -> None:
        """Persist ``job``, raising WorkerError when the store is failing."""
        await asyncio.sleep(SAVE_DELAY)
        if self.fail:
            raise WorkerError(f"could not save job {job.id}")


@dataclass
class WorkerContext:
    """The data owned by a worker machine."""

    db: Database = field(default_factory=Database)


@fsm(initial="Idle", channel_size=100)
class WorkerFsm:
    """Saves jobs and waits for them to be finished."""

    Context = WorkerContext
    Error = WorkerError

    @on("Idle", "Job")
    @state_timeout("30s")
    @targets("Working", failure="Failed")
    async def handle_job(self, job: Job) -> Transition[str]:
        try:
            await self.context.db.save(job)
        except WorkerError:
            return Transition.to("Failed")
        return Transition.to("Working")

    @on("Working", "Done")
    @targets("Idle")
    async def handle_done(self) -> Transition[str]:
        return Transition.to("Idle")

    @on_timeout
    @targets("Failed")
    async def handle_timeout(self) -> Transition[str]:
        return Transition.to("Failed")


async def _demo() -> str:
    handle, task = WorkerFsm.spawn(WorkerContext(db=Database()))
    await handle.send(WorkerFsm.Event.Job(Job(id=1, data="test")))
    await asyncio.sleep(0.1)
    await handle.send(WorkerFsm.Event.Done)
    handle.shutdown_graceful()
    await task
    return handle.current_state().name


def main(argv: list[str] | None = None) -> int:
    """Run one job through a worker and report the state it ends in."""
    parser = argparse.ArgumentParser(
        prog="asyncfsm-worker", description="Run a job through a worker machine."
    )
    parser.parse_args(argv)
    final = asyncio.run(_demo())
    print(f"Final state: {final}")
    return 0