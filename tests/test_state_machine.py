import pytest

from src.codeassist.core.state_machine import (
    GenerationState,
    InvalidTransitionError,
    StateMachine,
    is_valid_transition,
)


def test_initial_state_is_idle():
    machine = StateMachine()
    assert machine.state is GenerationState.IDLE
    assert machine.is_generating is False


def test_idle_generating_round_trip():
    machine = StateMachine()
    machine.transition(GenerationState.GENERATING)
    assert machine.is_generating
    machine.transition(GenerationState.IDLE)
    assert machine.state is GenerationState.IDLE


@pytest.mark.parametrize("state", list(GenerationState))
def test_self_transition_is_rejected(state):
    assert not is_valid_transition(state, state)
    machine = StateMachine(initial=state)
    with pytest.raises(InvalidTransitionError) as excinfo:
        machine.transition(state)
    assert excinfo.value.current is state
    assert excinfo.value.target is state
    assert machine.state is state


def test_reset_returns_to_idle():
    machine = StateMachine(initial=GenerationState.GENERATING)
    machine.reset()
    assert machine.state is GenerationState.IDLE
