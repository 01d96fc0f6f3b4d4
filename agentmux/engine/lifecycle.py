"""Session lifecycle state machine.

Defines valid transitions and enforces them. Invalid transitions
raise InvalidTransitionError rather than silently proceeding.

State Diagram:

    IDLE ──> RUNNING ──┬──> IDLE        (turn succeeded or was stopped)
      │                ├──> COMPLETED   (terminated while running)
      │                └──> FAILED ──> RUNNING  (retry by caller)
      │
      └──> COMPLETED  (explicit terminate)

    COMPLETED is terminal.
"""
from __future__ import annotations

from .errors import InvalidTransitionError
from .models import SessionStatus

VALID_TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    SessionStatus.IDLE: {
        SessionStatus.RUNNING,
        SessionStatus.COMPLETED,
    },
    SessionStatus.RUNNING: {
        SessionStatus.IDLE,
        SessionStatus.COMPLETED,
        SessionStatus.FAILED,
    },
    SessionStatus.FAILED: {
        SessionStatus.RUNNING,
        SessionStatus.COMPLETED,
    },
    SessionStatus.COMPLETED: set(),
}


def validate_transition(current: SessionStatus, target: SessionStatus) -> None:
    """Validate a state transition. Raises InvalidTransitionError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        raise InvalidTransitionError(
            current.value,
            target.value,
            sorted(s.value for s in allowed),
        )


def is_terminal(status: SessionStatus) -> bool:
    return not VALID_TRANSITIONS.get(status)
