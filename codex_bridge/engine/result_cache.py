"""Fingerprint-keyed cache of full result texts.

Page 1 of a consult stores the full text here; later pages are served
from the cached text so the CLI is never re-invoked for them. Expiry is
lazy (lookups ignore expired entries); purge_expired() reclaims memory
and is called periodically by the idle sweeper.
"""
from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from collections.abc import Callable

from .models import CacheEntry

logger = logging.getLogger(__name__)


def fingerprint(
    prompt: str,
    session_id: str | None = None,
    context: str | None = None,
    model: str | None = None,
) -> str:
    """Deterministic key for a logical request. Independent of page number."""
    payload = json.dumps(
        [prompt, session_id or "", context or "", model or ""],
        ensure_ascii=False,
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class ResultCache:
    """TTL cache of completed result texts."""

    def __init__(
        self,
        ttl: float = 30 * 60.0,
        max_entries: int = 256,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        self._ttl = ttl
        self._max_entries = max_entries
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    @property
    def ttl(self) -> float:
        return self._ttl

    def __len__(self) -> int:
        return len(self._entries)

    def store(self, key: str, text: str) -> CacheEntry:
        """Insert or overwrite the entry for *key* with stored_at = now."""
        entry = CacheEntry(
            fingerprint=key,
            full_text=text,
            stored_at=self._clock(),
            ttl=self._ttl,
        )
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = entry
            while self._max_entries > 0 and len(self._entries) > self._max_entries:
                oldest = next(iter(self._entries))
                del self._entries[oldest]
                logger.debug("Result cache full; dropped %s", oldest[:12])
        return entry

    def get_entry(self, key: str) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is None or entry.is_expired(self._clock()):
            return None
        return entry

    def lookup(self, key: str) -> str | None:
        """Full text for *key*, or None when absent or expired."""
        entry = self.get_entry(key)
        return entry.full_text if entry is not None else None

    def purge_expired(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug("Purged %d expired cache entries", len(expired))
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
