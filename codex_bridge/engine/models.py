"""Core data models for the session bridge.

All dataclasses, enums, and type aliases. Single source of truth
to avoid circular imports.
"""
from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class SessionStatus(str, Enum):
    """Session lifecycle states. See lifecycle.py for transition rules."""
    STARTING = "starting"
    READY = "ready"
    ERROR = "error"
    RESTARTING = "restarting"


class ChannelMode(str, Enum):
    """How a worker talks to the Codex CLI."""
    EXEC = "exec"
    MCP = "mcp"


def make_request_id() -> str:
    return f"req_{uuid.uuid4().hex[:12]}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CancellationToken:
    """Caller-owned cancellation flag for a single command.

    Cancelling is idempotent: cancelling an already-cancelled token, or
    one whose command already finished, does nothing.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass(frozen=True)
class Command:
    """One invocation of the Codex CLI. Immutable once enqueued."""
    args: list[str]
    input_text: str | None = None
    timeout: float | None = None
    cancel_token: CancellationToken | None = field(
        default=None, compare=False, repr=False,
    )

    @property
    def prompt(self) -> str:
        """Text the tool should act on: stdin input, else the last argument."""
        if self.input_text:
            return self.input_text
        return self.args[-1] if self.args else ""


@dataclass
class Response:
    """Normalized result of one Command.

    Failed responses always have success=False and an error message;
    category carries the error category label when the bridge produced
    the failure.
    """
    text: str
    success: bool = True
    error: str | None = None
    exit_code: int | None = None
    category: str | None = None
    request_id: str | None = None


@dataclass
class StreamingEvent:
    """A progress/partial-result event emitted while a command runs."""
    type: str
    data: Any = None
    timestamp: datetime = field(default_factory=_utcnow)


EventListener = Callable[[StreamingEvent], Any]


@dataclass
class Capabilities:
    """Advisory feature flags detected by probing the CLI."""
    supports_json: bool = False
    supports_streaming: bool = False
    supports_plan_feature: bool = False
    supports_model_selection: bool = False
    supports_workspace_mode: bool = False
    supports_file_operations: bool = False
    max_tokens: int | None = None
    available_models: list[str] = field(default_factory=list)
    version: str = "unknown"
    features: list[str] = field(default_factory=list)

    @classmethod
    def conservative(cls) -> Capabilities:
        """All features off. Used when probing fails."""
        return cls()


@dataclass
class SessionInfo:
    """Registry-side metadata for one session."""
    session_id: str
    workspace_id: str
    workspace_path: str
    created_at: datetime = field(default_factory=_utcnow)
    last_active: datetime = field(default_factory=_utcnow)
    status: SessionStatus = SessionStatus.STARTING
    request_count: int = 0
    capabilities: Capabilities | None = None
    restart_count: int = 0
    last_error: str | None = None

    def touch(self) -> None:
        self.last_active = _utcnow()

    def to_dict(self) -> dict[str, Any]:
        caps = self.capabilities
        return {
            "session_id": self.session_id,
            "workspace_id": self.workspace_id,
            "workspace_path": self.workspace_path,
            "created_at": self.created_at.isoformat(),
            "last_active": self.last_active.isoformat(),
            "status": self.status.value,
            "request_count": self.request_count,
            "restart_count": self.restart_count,
            "last_error": self.last_error,
            "capabilities": (
                {
                    "version": caps.version,
                    "features": list(caps.features),
                    "available_models": list(caps.available_models),
                    "max_tokens": caps.max_tokens,
                }
                if caps is not None else None
            ),
        }


@dataclass
class HealthReport:
    """Result of SessionRegistry.health_check()."""
    healthy: bool
    sessions: list[SessionInfo] = field(default_factory=list)


@dataclass
class CacheEntry:
    """Full text of a completed result, keyed by fingerprint."""
    fingerprint: str
    full_text: str
    stored_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now - self.stored_at >= self.ttl


@dataclass
class TokenEstimate:
    characters: int
    estimated_tokens: int
    is_over_limit: bool


@dataclass
class Page:
    """A bounded-size slice of a (possibly oversized) result."""
    content: str
    page_index: int
    total_pages: int
    token_estimate: TokenEstimate
    has_more: bool
    truncated: bool = False


@dataclass
class ConsultResult:
    """Outcome of CodexBridge.consult()."""
    response: Response
    fingerprint: str
    page: Page | None = None
    session_id: str | None = None
