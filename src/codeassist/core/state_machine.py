from __future__ import annotations

from enum import Enum
from typing import Dict, List


class GenerationState(str, Enum):
    IDLE = "idle"
    GENERATING = "generating"


# Idle <-> Generating; no terminal state
STATE_TRANSITIONS: Dict[GenerationState, List[GenerationState]] = {
    GenerationState.IDLE: [GenerationState.GENERATING],
    GenerationState.GENERATING: [GenerationState.IDLE],
}


class InvalidTransitionError(RuntimeError):
    def __init__(self, current: GenerationState, target: GenerationState) -> None:
        super().__init__(f"Invalid transition: {current.value} -> {target.value}")
        self.current = current
        self.target = target


def is_valid_transition(current: GenerationState, target: GenerationState) -> bool:
    return target in STATE_TRANSITIONS.get(current, [])


class StateMachine:
    """Holds the Idle/Generating value and validates every change."""

    def __init__(self, initial: GenerationState = GenerationState.IDLE) -> None:
        self._state = initial

    @property
    def state(self) -> GenerationState:
        return self._state

    @property
    def is_generating(self) -> bool:
        return self._state is GenerationState.GENERATING

    def transition(self, target: GenerationState) -> GenerationState:
        if not is_valid_transition(self._state, target):
            raise InvalidTransitionError(self._state, target)
        self._state = target
        return self._state

    def reset(self) -> None:
        self._state = GenerationState.IDLE
