"""Exception hierarchy for the session bridge.

Specific exceptions for each failure mode. Every bridge error
carries a stable category label and a recoverable flag so callers
can decide whether to retry, restart the session, or give up.
"""
from __future__ import annotations

from enum import Enum


class ErrorCategory(str, Enum):
    """Stable category labels surfaced to callers."""
    TOOL_UNAVAILABLE = "tool_unavailable"
    TIMEOUT = "timeout"
    PROCESS_FAILURE = "process_failure"
    CAPACITY_EXCEEDED = "capacity_exceeded"
    CANCELLED = "cancelled"
    CACHE_MISS = "cache_miss"
    SESSION = "session"
    AUTHENTICATION = "authentication"
    RATE_LIMITED = "rate_limited"
    UNKNOWN = "unknown"


class BridgeError(Exception):
    """Base exception for all bridge errors."""
    category: ErrorCategory = ErrorCategory.UNKNOWN
    recoverable: bool = False


class ToolUnavailableError(BridgeError):
    """The Codex CLI is missing or cannot be executed."""
    category = ErrorCategory.TOOL_UNAVAILABLE

    def __init__(self, command: str, reason: str = "not found on PATH"):
        self.command = command
        self.reason = reason
        super().__init__(
            f"'{command}' CLI is unavailable ({reason}). "
            f"Install the Codex CLI first."
        )


class WorkerStartupError(BridgeError):
    """A worker could not open its channel to the CLI."""
    category = ErrorCategory.PROCESS_FAILURE
    recoverable = True

    def __init__(self, session_id: str, reason: str):
        self.session_id = session_id
        self.reason = reason
        super().__init__(f"Failed to start worker for session {session_id}: {reason}")


class WorkspaceUnavailableError(BridgeError):
    """The working directory for a session does not exist."""
    category = ErrorCategory.SESSION

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Working directory {path} does not exist or is not a directory")


class CommandTimeoutError(BridgeError):
    """The caller's wait exceeded the command deadline."""
    category = ErrorCategory.TIMEOUT
    recoverable = True

    def __init__(self, request_id: str, timeout_seconds: float):
        self.request_id = request_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Request {request_id} timed out after {timeout_seconds}s"
        )


class ProcessFailureError(BridgeError):
    """The CLI process crashed or died while a command was in flight."""
    category = ErrorCategory.PROCESS_FAILURE
    recoverable = True

    def __init__(self, request_id: str, reason: str):
        self.request_id = request_id
        self.reason = reason
        super().__init__(f"Codex process failed during {request_id}: {reason}")


class ProcessKilledError(BridgeError):
    """The worker was killed while the command was pending."""
    category = ErrorCategory.PROCESS_FAILURE
    recoverable = True

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Process killed while request {request_id} was pending")


class RestartLimitExceededError(BridgeError):
    """Further restarts are refused once max_restarts is reached."""
    category = ErrorCategory.PROCESS_FAILURE

    def __init__(self, session_id: str, max_restarts: int):
        self.session_id = session_id
        self.max_restarts = max_restarts
        super().__init__(
            f"Maximum restart attempts ({max_restarts}) exceeded "
            f"for session {session_id}"
        )


class CapacityExceededError(BridgeError):
    """No session slot could be freed for a new session."""
    category = ErrorCategory.CAPACITY_EXCEEDED
    recoverable = True

    def __init__(self, max_sessions: int):
        self.max_sessions = max_sessions
        super().__init__(f"Too many sessions (max {max_sessions})")


class CommandCancelledError(BridgeError):
    """The caller cancelled the command."""
    category = ErrorCategory.CANCELLED

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Request {request_id} was cancelled")


class PageNotCachedError(BridgeError):
    """A later page was requested for a result that is not cached."""
    category = ErrorCategory.CACHE_MISS

    def __init__(self, fingerprint: str, page: int):
        self.fingerprint = fingerprint
        self.page = page
        super().__init__(
            f"Page {page} is not available: no cached result for this request "
            f"(it may have expired). Request page 1 first to generate the response."
        )


class SessionNotFoundError(BridgeError):
    """Requested session does not exist."""
    category = ErrorCategory.SESSION
    recoverable = True

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} not found")


class InvalidTransitionError(BridgeError):
    """A session status transition that the lifecycle forbids."""
    category = ErrorCategory.SESSION

    def __init__(self, current: str, target: str, allowed: str):
        self.current = current
        self.target = target
        super().__init__(
            f"Invalid status transition: {current} -> {target}. "
            f"Allowed from {current}: {allowed}"
        )


class ChannelClosedError(Exception):
    """Raised by a channel when its process dies mid-command.

    Internal: workers convert this into ProcessFailureError for the
    affected caller and schedule a restart.
    """
