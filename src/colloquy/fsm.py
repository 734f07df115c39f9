"""Finite State Machine for the session request/response/tool cycle."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel

from .errors import InvalidStateError


class EngineState(StrEnum):
    IDLE = "idle"
    AWAITING_MODEL_RESPONSE = "awaiting_model_response"
    TOOL_CALLS_PENDING = "tool_calls_pending"
    AWAITING_TOOL_RESULTS = "awaiting_tool_results"


# Idle -> AwaitingModelResponse -> (ToolCallsPending -> AwaitingToolResults)* -> Idle.
# Every busy state may fall back to Idle on completion, error, cancel or depth limit.
_TRANSITIONS: dict[EngineState, list[EngineState]] = {
    EngineState.IDLE: [EngineState.AWAITING_MODEL_RESPONSE],
    EngineState.AWAITING_MODEL_RESPONSE: [EngineState.TOOL_CALLS_PENDING, EngineState.IDLE],
    EngineState.TOOL_CALLS_PENDING: [EngineState.AWAITING_TOOL_RESULTS, EngineState.IDLE],
    EngineState.AWAITING_TOOL_RESULTS: [EngineState.AWAITING_MODEL_RESPONSE, EngineState.IDLE],
}


class FSMState(BaseModel):
    state: EngineState = EngineState.IDLE
    tool_rounds: int = 0

    @property
    def is_idle(self) -> bool:
        return self.state == EngineState.IDLE

    def can_transition(self, target: EngineState) -> bool:
        return target in _TRANSITIONS.get(self.state, [])

    def transition(self, target: EngineState) -> FSMState:
        if not self.can_transition(target):
            raise InvalidStateError(f"Invalid transition: {self.state} -> {target}")
        rounds = self.tool_rounds
        if target == EngineState.IDLE:
            rounds = 0
        elif self.state == EngineState.AWAITING_TOOL_RESULTS:
            rounds += 1
        return FSMState(state=target, tool_rounds=rounds)
