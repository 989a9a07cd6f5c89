"""Session turn state machine.

Defines valid turn transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    IDLE ──> AWAITING_MODEL ──┬──> EXECUTING_TOOL ──> AWAITING_MODEL
                              │          │
                              │          └──> DRAINING
                              │
                              └──> DRAINING ──> IDLE

    Any running state ──> IDLE  (TurnCompleted or fatal Error)

DRAINING is entered once the backend signalled completion or exited
and the session is waiting for the remaining buffered output.
"""
from __future__ import annotations

from .events import (
    ToolCompleted,
    ToolStarted,
    UnifiedEvent,
    is_terminal,
)
from .models import TurnState

VALID_TRANSITIONS: dict[TurnState, set[TurnState]] = {
    TurnState.IDLE: {
        TurnState.AWAITING_MODEL,
    },
    TurnState.AWAITING_MODEL: {
        TurnState.EXECUTING_TOOL,
        TurnState.DRAINING,
        TurnState.IDLE,
    },
    TurnState.EXECUTING_TOOL: {
        TurnState.AWAITING_MODEL,
        TurnState.DRAINING,
        TurnState.IDLE,
    },
    TurnState.DRAINING: {
        TurnState.IDLE,
    },
}


def validate_transition(current: TurnState, target: TurnState) -> None:
    """Validate a state transition. Raises ValueError if invalid."""
    if current == target:
        return
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(s.value for s in allowed) or "none"
        raise ValueError(
            f"Invalid turn transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )


def next_state(
    current: TurnState,
    event: UnifiedEvent,
    open_tools: int,
) -> TurnState:
    """Compute the turn state after ``event`` has been applied.

    ``open_tools`` is the number of tool invocations still open *after*
    the event was applied to the session's tool table. Events that do
    not drive the machine leave the state unchanged. Events arriving
    while IDLE never start a turn; only an input does that.
    """
    if current is TurnState.IDLE:
        return current
    if is_terminal(event):
        return TurnState.IDLE
    if current is TurnState.DRAINING:
        return current
    if isinstance(event, ToolStarted):
        return TurnState.EXECUTING_TOOL
    if isinstance(event, ToolCompleted):
        if open_tools > 0:
            return TurnState.EXECUTING_TOOL
        return TurnState.AWAITING_MODEL
    return current
