import pytest

from asyncfsm.core import FsmError, JoinError, ShutdownMode, TaskError, Transition


def test_transition_to_and_into_state_round_trip():
    target = object()
    assert Transition.to(target).into_state() is target


def test_transition_to_keeps_state_attribute():
    assert Transition.to("Running").state == "Running"


def test_transitions_to_same_state_are_equal():
    assert Transition.to("Idle") == Transition.to("Idle")
    assert Transition.to("Idle") != Transition.to("Running")


def test_transition_is_immutable():
    transition = Transition.to("Idle")
    with pytest.raises(AttributeError):
        transition.state = "Running"
    assert transition.into_state() == "Idle"


def test_shutdown_modes_are_distinct():
    graceful = ShutdownMode(ShutdownMode.GRACEFUL.value)
    immediate = ShutdownMode(ShutdownMode.IMMEDIATE.value)
    assert graceful is ShutdownMode.GRACEFUL
    assert immediate is ShutdownMode.IMMEDIATE
    assert graceful is not immediate
    assert {mode.name for mode in ShutdownMode} == {"GRACEFUL", "IMMEDIATE"}


def test_fsm_error_message_and_payload():
    inner = ValueError("Internal error: disk")
    err = FsmError(inner)
    assert str(err) == "FSM error: Internal error: disk"
    assert err.error is inner
    assert isinstance(err, TaskError)


def test_join_error_message_and_cause():
    err = JoinError("cancelled")
    assert str(err) == "Task join error: cancelled"
    assert err.cause == "cancelled"
    assert isinstance(err, TaskError)


def test_task_errors_can_be_caught_by_base_class():
    err = FsmError("boom")
    assert str(err) == "FSM error: boom"
    assert err.error == "boom"
    with pytest.raises(TaskError) as info:
        raise err
    assert info.value is err