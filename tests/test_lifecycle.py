from __future__ import annotations

import pytest

from codex_bridge.engine.errors import InvalidTransitionError
from codex_bridge.engine.lifecycle import can_transition, validate_transition
from codex_bridge.engine.models import SessionStatus


@pytest.mark.parametrize(
    "current,target",
    [
        (SessionStatus.STARTING, SessionStatus.READY),
        (SessionStatus.STARTING, SessionStatus.ERROR),
        (SessionStatus.READY, SessionStatus.RESTARTING),
        (SessionStatus.READY, SessionStatus.ERROR),
        (SessionStatus.RESTARTING, SessionStatus.READY),
        (SessionStatus.RESTARTING, SessionStatus.ERROR),
        (SessionStatus.ERROR, SessionStatus.RESTARTING),
    ],
)
def test_valid_transitions(current, target) -> None:
    validate_transition(current, target)
    assert can_transition(current, target)


@pytest.mark.parametrize(
    "current,target",
    [
        (SessionStatus.STARTING, SessionStatus.RESTARTING),
        (SessionStatus.READY, SessionStatus.STARTING),
        (SessionStatus.RESTARTING, SessionStatus.RESTARTING),
        (SessionStatus.ERROR, SessionStatus.STARTING),
    ],
)
def test_invalid_transitions(current, target) -> None:
    assert not can_transition(current, target)
    with pytest.raises(InvalidTransitionError) as exc_info:
        validate_transition(current, target)
    assert exc_info.value.current == current.value
    assert "Allowed from" in str(exc_info.value)
