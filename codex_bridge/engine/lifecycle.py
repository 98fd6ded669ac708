"""Session status state machine.

Defines valid transitions and enforces them. Invalid transitions
raise InvalidTransitionError rather than silently proceeding.

State Diagram:

    STARTING ──┬──> READY ──┬──> RESTARTING ──┬──> READY
               │            │                 │
               └──> ERROR <─┴─────────────────┘

    ERROR ──> RESTARTING   (manual or automatic restart)
    ERROR ──> READY        (worker recovered on its own)
"""
from __future__ import annotations

from .errors import InvalidTransitionError
from .models import SessionStatus

VALID_TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    SessionStatus.STARTING: {
        SessionStatus.READY,
        SessionStatus.ERROR,
    },
    SessionStatus.READY: {
        SessionStatus.RESTARTING,
        SessionStatus.ERROR,
    },
    SessionStatus.RESTARTING: {
        SessionStatus.READY,
        SessionStatus.ERROR,
    },
    SessionStatus.ERROR: {
        SessionStatus.RESTARTING,
        SessionStatus.READY,
    },
}


def validate_transition(current: SessionStatus, target: SessionStatus) -> None:
    """Validate a status transition. Raises InvalidTransitionError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(sorted(s.value for s in allowed)) or "none"
        raise InvalidTransitionError(current.value, target.value, allowed_str)


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    return target in VALID_TRANSITIONS.get(current, set())
