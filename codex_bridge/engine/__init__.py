"""Codex Bridge: session-aware worker orchestration for the Codex CLI."""
from .models import (
    CancellationToken,
    Capabilities,
    ChannelMode,
    Command,
    ConsultResult,
    HealthReport,
    Page,
    Response,
    SessionInfo,
    SessionStatus,
    StreamingEvent,
)
from .config import BridgeConfig
from .errors import (
    BridgeError,
    CapacityExceededError,
    CommandCancelledError,
    CommandTimeoutError,
    ErrorCategory,
    InvalidTransitionError,
    PageNotCachedError,
    ProcessFailureError,
    ProcessKilledError,
    RestartLimitExceededError,
    SessionNotFoundError,
    ToolUnavailableError,
    WorkerStartupError,
    WorkspaceUnavailableError,
)
from .bridge import CodexBridge
from .session_registry import SessionRegistry
from .worker import WorkerHandle

__all__ = [
    # Facade
    "CodexBridge",
    "SessionRegistry",
    "WorkerHandle",
    # Models
    "CancellationToken",
    "Capabilities",
    "ChannelMode",
    "Command",
    "ConsultResult",
    "HealthReport",
    "Page",
    "Response",
    "SessionInfo",
    "SessionStatus",
    "StreamingEvent",
    # Config
    "BridgeConfig",
    # Errors
    "BridgeError",
    "CapacityExceededError",
    "CommandCancelledError",
    "CommandTimeoutError",
    "ErrorCategory",
    "InvalidTransitionError",
    "PageNotCachedError",
    "ProcessFailureError",
    "ProcessKilledError",
    "RestartLimitExceededError",
    "SessionNotFoundError",
    "ToolUnavailableError",
    "WorkerStartupError",
    "WorkspaceUnavailableError",
]
