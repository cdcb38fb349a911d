import asyncio

import pytest

from asyncfsm.machine import EventMessage, spawn
from asyncfsm.worker import (
    Database,
    Job,
    WorkerContext,
    WorkerError,
    WorkerFsm,
    main,
)


async def _reach(handle, state):
    await asyncio.wait_for(handle.wait_for_state(state), timeout=2)


@pytest.mark.asyncio
async def test_discovered_states():
    handle, task = spawn(WorkerFsm, WorkerContext())
    assert handle.current_state().name == "Idle"
    assert {member.name for member in WorkerFsm.State} == {"Idle", "Working", "Failed"}
    handle.shutdown_immediate()
    final = await task
    assert isinstance(final.db, Database)


@pytest.mark.asyncio
async def test_job_then_done_returns_to_idle():
    context = WorkerContext()
    handle, task = spawn(WorkerFsm, context)
    assert handle.current_state() is WorkerFsm.State.Idle

    await handle.send(WorkerFsm.Event.Job(Job(id=1, data="test")))
    await _reach(handle, "Working")
    assert handle.current_state() is WorkerFsm.State.Working

    await handle.send(WorkerFsm.Event.Done)
    await _reach(handle, "Idle")

    handle.shutdown_graceful()
    final = await task
    assert final is context
    assert handle.current_state() is WorkerFsm.State.Idle


@pytest.mark.asyncio
async def test_failed_save_moves_to_failed_and_ignores_done():
    handle, task = spawn(WorkerFsm, WorkerContext(db=Database(fail=True)))
    await handle.send(WorkerFsm.Event.Job(Job(id=2, data="broken")))
    await _reach(handle, "Failed")

    await handle.send(WorkerFsm.Event.Done)
    handle.shutdown_graceful()
    await task
    assert handle.current_state() is WorkerFsm.State.Failed


@pytest.mark.asyncio
async def test_database_save_raises_when_failing():
    with pytest.raises(WorkerError, match="Database error"):
        await Database(fail=True).save(Job(id=3, data="x"))


@pytest.mark.asyncio
async def test_job_event_requires_payload():
    handle, task = spawn(WorkerFsm, WorkerContext())
    with pytest.raises(TypeError):
        handle.try_send(EventMessage("Job"))
    handle.shutdown_immediate()
    final = await task
    assert isinstance(final.db, Database)


def test_main_reports_idle(capsys):
    assert main([]) == 0
    assert "Final state: Idle" in capsys.readouterr().out