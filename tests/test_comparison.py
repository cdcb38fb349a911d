import asyncio

import pytest

from asyncfsm.comparison import (
    Context,
    Job,
    MacroFsm,
    ManualFsm,
    ManualState,
    main,
)


async def _manual_reaches(handle, state):
    async def poll():
        while handle.current_state() is not state:
            await asyncio.sleep(0)

    await asyncio.wait_for(poll(), timeout=2)


async def _stop_manual(task):
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


@pytest.mark.asyncio
async def test_manual_start_counts_once():
    context = Context()
    handle, task = ManualFsm.spawn(context)
    assert handle.current_state() is ManualState.IDLE

    await handle.send(Job(id=1))
    await _manual_reaches(handle, ManualState.PROCESSING)
    await handle.send(Job(id=2))
    for _ in range(5):
        await asyncio.sleep(0)

    assert context.count == 1
    assert handle.current_state() is ManualState.PROCESSING
    await _stop_manual(task)


@pytest.mark.asyncio
async def test_macro_start_counts_once():
    handle, task = MacroFsm.spawn(Context())
    assert handle.current_state() is MacroFsm.State.Idle

    await handle.send(MacroFsm.Event.Start(Job(id=1)))
    await asyncio.wait_for(handle.wait_for_state("Processing"), timeout=2)
    await handle.send(MacroFsm.Event.Start(Job(id=2)))
    handle.shutdown_graceful()
    final = await task

    assert final.count == 1
    assert handle.current_state() is MacroFsm.State.Processing


@pytest.mark.asyncio
async def test_throughput_fire_manual_and_macro_agree():
    manual_context = Context()
    manual_handle, manual_task = ManualFsm.spawn(manual_context)
    macro_handle, macro_task = MacroFsm.spawn(Context())

    for index in range(50):
        await manual_handle.send(Job(id=index))
        await macro_handle.send(MacroFsm.Event.Start(Job(id=index)))

    macro_handle.shutdown_graceful()
    macro_final = await macro_task
    await _manual_reaches(manual_handle, ManualState.PROCESSING)

    assert macro_final.count == 1
    assert manual_context.count == macro_final.count
    assert manual_handle.current_state().value == macro_handle.current_state().name
    await _stop_manual(manual_task)


def test_macro_states_and_events():
    assert {member.name for member in MacroFsm.State} == {"Idle", "Processing"}
    message = MacroFsm.Event.Start(Job(id=7))
    assert message.name == "Start"
    assert message.payload == Job(id=7)


def test_main_prints_both_states(capsys):
    assert main([]) == 0
    out = capsys.readouterr().out
    assert "Manual state: Processing" in out
    assert "Macro state: Processing" in out