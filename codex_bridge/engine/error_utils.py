"""Error categorization for raw failures.

Bridge errors already know their category. Anything else (subprocess
errors, OS errors, text reported by the CLI on stderr) is matched
against an ordered table of patterns. Categories are labels for retry
decisions; they never change how the bridge itself behaves.
"""
from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass

from .errors import BridgeError, ErrorCategory


@dataclass(frozen=True)
class ErrorMapping:
    pattern: re.Pattern[str]
    category: ErrorCategory
    code: str
    recoverable: bool
    retry_after: float | None = None


@dataclass(frozen=True)
class CategorizedError:
    """Category verdict for one failure."""
    category: ErrorCategory
    code: str
    message: str
    recoverable: bool
    retry_after: float | None = None


# First match wins.
ERROR_MAPPINGS: list[ErrorMapping] = [
    ErrorMapping(
        re.compile(r"codex.*not found|command not found.*codex|ENOENT", re.I),
        ErrorCategory.TOOL_UNAVAILABLE, "CODEX_001", recoverable=False,
    ),
    ErrorMapping(
        re.compile(r"timed? ?out|timeout", re.I),
        ErrorCategory.TIMEOUT, "CODEX_002", recoverable=True, retry_after=5.0,
    ),
    ErrorMapping(
        re.compile(r"authentication.*failed|unauthori[sz]ed|forbidden|not logged in", re.I),
        ErrorCategory.AUTHENTICATION, "CODEX_004", recoverable=False,
    ),
    ErrorMapping(
        re.compile(r"rate.*limit|too many requests|\b429\b", re.I),
        ErrorCategory.RATE_LIMITED, "CODEX_005", recoverable=True, retry_after=60.0,
    ),
    ErrorMapping(
        re.compile(r"max.*sessions|too many sessions", re.I),
        ErrorCategory.CAPACITY_EXCEEDED, "SESSION_005", recoverable=True, retry_after=10.0,
    ),
    ErrorMapping(
        re.compile(r"session.*not found", re.I),
        ErrorCategory.SESSION, "SESSION_001", recoverable=True,
    ),
    ErrorMapping(
        re.compile(r"killed|crash|exited|signal|broken pipe|connection closed", re.I),
        ErrorCategory.PROCESS_FAILURE, "CODEX_003", recoverable=True, retry_after=1.0,
    ),
]

_CODES: dict[ErrorCategory, str] = {
    ErrorCategory.TOOL_UNAVAILABLE: "CODEX_001",
    ErrorCategory.TIMEOUT: "CODEX_002",
    ErrorCategory.PROCESS_FAILURE: "CODEX_003",
    ErrorCategory.AUTHENTICATION: "CODEX_004",
    ErrorCategory.RATE_LIMITED: "CODEX_005",
    ErrorCategory.SESSION: "SESSION_001",
    ErrorCategory.CAPACITY_EXCEEDED: "SESSION_005",
    ErrorCategory.CANCELLED: "REQUEST_001",
    ErrorCategory.CACHE_MISS: "PAGINATION_001",
    ErrorCategory.UNKNOWN: "SYSTEM_001",
}


def categorize_error(error: BaseException | str) -> CategorizedError:
    """Return a stable category for a raw failure or error message."""
    if isinstance(error, BridgeError):
        return CategorizedError(
            category=error.category,
            code=_CODES.get(error.category, "SYSTEM_001"),
            message=str(error),
            recoverable=error.recoverable,
        )
    if isinstance(error, FileNotFoundError):
        return CategorizedError(
            ErrorCategory.TOOL_UNAVAILABLE, "CODEX_001", str(error), False,
        )
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return CategorizedError(
            ErrorCategory.TIMEOUT, "CODEX_002", str(error) or "timed out", True, 5.0,
        )

    message = error if isinstance(error, str) else str(error)
    for mapping in ERROR_MAPPINGS:
        if mapping.pattern.search(message):
            return CategorizedError(
                category=mapping.category,
                code=mapping.code,
                message=message,
                recoverable=mapping.recoverable,
                retry_after=mapping.retry_after,
            )
    return CategorizedError(ErrorCategory.UNKNOWN, "SYSTEM_001", message, False)


def is_retryable(category: ErrorCategory | str | None) -> bool:
    """Whether a caller may reasonably resubmit after this category."""
    if category is None:
        return False
    try:
        category = ErrorCategory(category)
    except ValueError:
        return False
    return category in {
        ErrorCategory.TIMEOUT,
        ErrorCategory.PROCESS_FAILURE,
        ErrorCategory.CAPACITY_EXCEEDED,
        ErrorCategory.RATE_LIMITED,
        ErrorCategory.SESSION,
    }
