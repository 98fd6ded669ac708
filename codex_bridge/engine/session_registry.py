"""Session registry: bounded pool of worker handles keyed by session id.

Owns every WorkerHandle. Enforces the session cap with LRU eviction,
collapses concurrent creations of the same session id into one,
destroys idle sessions from a background sweeper, and groups sessions
by workspace so a whole working directory can be torn down at once.
"""
from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import Any

from .config import BridgeConfig, EventCallback, fire_event
from .errors import CapacityExceededError, SessionNotFoundError, WorkerStartupError
from .lifecycle import can_transition, validate_transition
from .models import HealthReport, SessionInfo, SessionStatus
from .providers.base import Provider
from .result_cache import ResultCache
from .worker import WorkerHandle
from .workspace import describe_workspace

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Creates, reuses, evicts, and destroys worker handles."""

    def __init__(
        self,
        provider: Provider,
        config: BridgeConfig | None = None,
        *,
        event_callback: EventCallback | None = None,
    ) -> None:
        self._provider = provider
        self._config = config or BridgeConfig()
        self._event_callback = event_callback
        # Recency order: least recently used first.
        self._sessions: OrderedDict[str, SessionInfo] = OrderedDict()
        self._handles: dict[str, WorkerHandle] = {}
        self._creating: dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()
        self._sweeper_task: asyncio.Task | None = None

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    @property
    def config(self) -> BridgeConfig:
        return self._config

    def get_handle(self, session_id: str) -> WorkerHandle | None:
        return self._handles.get(session_id)

    # -- Status bookkeeping --

    def _set_status(self, info: SessionInfo, status: SessionStatus) -> None:
        if info.status == status:
            return
        if not can_transition(info.status, status):
            logger.debug(
                "Ignoring status change %s -> %s for session %s",
                info.status.value, status.value, info.session_id[:8],
            )
            return
        info.status = status

    def _touch(self, session_id: str) -> None:
        info = self._sessions.get(session_id)
        if info is None:
            return
        info.touch()
        self._sessions.move_to_end(session_id)

    async def _on_worker_event(self, session_id: str, event: dict[str, Any]) -> None:
        info = self._sessions.get(session_id)
        kind = event.get("event")
        handle = self._handles.get(session_id)
        if info is not None:
            if kind == "worker_restarting":
                self._set_status(info, SessionStatus.RESTARTING)
            elif kind == "worker_ready" and handle is not None:
                self._set_status(info, SessionStatus.READY)
                info.capabilities = handle.capabilities
                info.restart_count = handle.restart_count
            elif kind in ("worker_restart_failed", "channel_lost"):
                self._set_status(info, SessionStatus.ERROR)
                info.last_error = event.get("error")
                if handle is not None:
                    info.restart_count = handle.restart_count
        await fire_event(self._event_callback, event)

    # -- Creation --

    async def get_or_create(
        self,
        session_id: str,
        workspace_path: str | None = None,
    ) -> WorkerHandle:
        """Return a healthy handle for *session_id*, creating it if needed.

        Concurrent calls for the same id share one creation. An unhealthy
        handle is torn down and replaced; one that is mid-restart is waited
        on first.
        """
        workspace_path = workspace_path or self._config.default_cwd
        while True:
            async with self._lock:
                handle = self._handles.get(session_id)
                task = self._creating.get(session_id)
                if task is None and handle is not None:
                    if handle.is_healthy() or handle.is_recoverable():
                        self._touch(session_id)
                        return handle
                if task is None and (handle is None or not handle.is_restarting):
                    task = asyncio.create_task(
                        self._create(session_id, workspace_path, handle),
                        name=f"create-session-{session_id[:8]}",
                    )
                    self._creating[session_id] = task
                    task.add_done_callback(partial(self._creation_done, session_id))

            if task is None:
                await handle.wait_until_settled()
                continue
            return await asyncio.shield(task)

    def _creation_done(self, session_id: str, task: asyncio.Task) -> None:
        if self._creating.get(session_id) is task:
            del self._creating[session_id]

    def _evict_for_slot(self) -> list[tuple[str, WorkerHandle]]:
        """Pop least recently used sessions until a slot is free.

        Called with the lock held. Sessions still starting are never
        evicted.
        """
        limit = self._config.max_sessions
        victims: list[tuple[str, WorkerHandle]] = []
        if limit <= 0:
            return victims
        while len(self._sessions) >= limit:
            victim_id = next(
                (
                    sid for sid, info in self._sessions.items()
                    if info.status != SessionStatus.STARTING
                ),
                None,
            )
            if victim_id is None:
                raise CapacityExceededError(limit)
            del self._sessions[victim_id]
            victim = self._handles.pop(victim_id, None)
            if victim is not None:
                victims.append((victim_id, victim))
        return victims

    async def _create(
        self,
        session_id: str,
        workspace_path: str,
        stale: WorkerHandle | None,
    ) -> WorkerHandle:
        if stale is not None:
            logger.info("Replacing unhealthy worker for session %s", session_id[:8])
            async with self._lock:
                if self._handles.get(session_id) is stale:
                    del self._handles[session_id]
                    self._sessions.pop(session_id, None)
            await self._terminate(session_id, stale, reason="unhealthy")

        identity = describe_workspace(workspace_path)
        info = SessionInfo(
            session_id=session_id,
            workspace_id=identity.workspace_id,
            workspace_path=identity.path,
        )
        handle = WorkerHandle(
            session_id,
            identity.path,
            self._provider,
            config=self._config,
            event_callback=partial(self._on_worker_event, session_id),
        )

        async with self._lock:
            victims = self._evict_for_slot()
            self._sessions[session_id] = info
            self._handles[session_id] = handle

        for victim_id, victim in victims:
            logger.info(
                "Evicting least recently used session %s (max %d)",
                victim_id[:8], self._config.max_sessions,
            )
            await self._terminate(victim_id, victim, reason="evicted")

        await fire_event(self._event_callback, {
            "event": "session_created",
            "session_id": session_id,
            "workspace_id": identity.workspace_id,
            "workspace_path": identity.path,
        })

        try:
            await handle.start()
            if handle.is_killed:
                raise WorkerStartupError(session_id, "session was destroyed while starting")
        except Exception as exc:
            self._set_status(info, SessionStatus.ERROR)
            info.last_error = str(exc)
            logger.error("Failed to start session %s: %s", session_id[:8], exc)
            async with self._lock:
                if self._handles.get(session_id) is handle:
                    del self._handles[session_id]
                    self._sessions.pop(session_id, None)
            await handle.kill()
            raise

        self._set_status(info, SessionStatus.READY)
        info.capabilities = handle.capabilities
        logger.info(
            "Session %s ready (workspace=%s, %d/%d sessions)",
            session_id[:8], identity.workspace_id, len(self._sessions),
            self._config.max_sessions,
        )
        return handle

    # -- Teardown --

    async def _terminate(self, session_id: str, handle: WorkerHandle, reason: str) -> None:
        try:
            await handle.kill()
        except Exception as exc:
            logger.warning("Error killing worker for session %s: %s", session_id[:8], exc)
        await fire_event(self._event_callback, {
            "event": "session_destroyed",
            "session_id": session_id,
            "reason": reason,
        })

    async def destroy(self, session_id: str, reason: str = "destroyed") -> bool:
        """Kill and forget a session. Returns False if it did not exist."""
        async with self._lock:
            handle = self._handles.pop(session_id, None)
            info = self._sessions.pop(session_id, None)
        if handle is None and info is None:
            return False
        logger.info("Destroying session %s (%s)", session_id[:8], reason)
        if handle is not None:
            await self._terminate(session_id, handle, reason)
        return True

    async def restart(self, session_id: str) -> None:
        """Restart the session's worker. Raises SessionNotFoundError."""
        handle = self._handles.get(session_id)
        info = self._sessions.get(session_id)
        if handle is None or info is None:
            raise SessionNotFoundError(session_id)

        if info.status != SessionStatus.RESTARTING:
            validate_transition(info.status, SessionStatus.RESTARTING)
            info.status = SessionStatus.RESTARTING
        try:
            await handle.restart()
        except Exception as exc:
            self._set_status(info, SessionStatus.ERROR)
            info.last_error = str(exc)
            info.restart_count = handle.restart_count
            raise

        info.restart_count = handle.restart_count
        if not handle.is_healthy():
            self._set_status(info, SessionStatus.ERROR)
            raise WorkerStartupError(session_id, "restart did not restore a healthy worker")
        self._set_status(info, SessionStatus.READY)
        info.capabilities = handle.capabilities
        self._touch(session_id)

    async def shutdown(self) -> None:
        """Stop the sweeper and destroy every session."""
        await self.stop_sweeper()
        session_ids = list(self._sessions)
        if session_ids:
            logger.info("Shutting down %d sessions", len(session_ids))
        results = await asyncio.gather(
            *(self.destroy(sid, reason="shutdown") for sid in session_ids),
            return_exceptions=True,
        )
        for sid, result in zip(session_ids, results):
            if isinstance(result, Exception):
                logger.warning("Error destroying session %s: %s", sid[:8], result)

    # -- Queries --

    def record_dispatch(self, session_id: str, success: bool = True) -> None:
        """Mark activity on a session after a command returned."""
        info = self._sessions.get(session_id)
        if info is None:
            return
        if success:
            info.request_count += 1
        self._touch(session_id)

    def get_session_info(self, session_id: str) -> SessionInfo | None:
        info = self._sessions.get(session_id)
        return replace(info) if info is not None else None

    def list_sessions(self) -> list[SessionInfo]:
        """Copies of every session's metadata, most recently active first."""
        return sorted(
            (replace(info) for info in self._sessions.values()),
            key=lambda info: info.last_active,
            reverse=True,
        )

    def sessions_by_workspace(self, workspace_id: str) -> list[SessionInfo]:
        return [
            info for info in self.list_sessions()
            if info.workspace_id == workspace_id
        ]

    def _is_healthy(self, session_id: str) -> bool:
        handle = self._handles.get(session_id)
        info = self._sessions.get(session_id)
        return (
            handle is not None
            and info is not None
            and info.status == SessionStatus.READY
            and handle.is_healthy()
        )

    def health_check(self, session_id: str | None = None) -> HealthReport:
        """Health of one session, or of all sessions when no id is given.

        An empty registry is healthy; an unknown session is not.
        """
        if session_id is not None:
            info = self._sessions.get(session_id)
            return HealthReport(
                healthy=self._is_healthy(session_id),
                sessions=[replace(info)] if info is not None else [],
            )
        sessions = self.list_sessions()
        healthy = all(self._is_healthy(info.session_id) for info in sessions)
        return HealthReport(healthy=healthy, sessions=sessions)

    async def cleanup_workspace(self, workspace_id: str) -> int:
        """Destroy every session of one workspace. Returns how many."""
        session_ids = [info.session_id for info in self.sessions_by_workspace(workspace_id)]
        destroyed = 0
        for sid in session_ids:
            if await self.destroy(sid, reason="workspace cleanup"):
                destroyed += 1
        if destroyed:
            logger.info("Cleaned up %d sessions for workspace %s", destroyed, workspace_id)
        return destroyed

    # -- Idle sweeping --

    async def sweep_idle(self, now: datetime | None = None) -> list[str]:
        """Destroy sessions idle longer than max_idle_time.

        Sessions with queued or in-flight commands are never swept.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=self._config.max_idle_time)
        idle = [
            sid for sid, info in self._sessions.items()
            if info.last_active < cutoff
            and sid not in self._creating
            and not (sid in self._handles and self._handles[sid].has_pending_work)
        ]
        for sid in idle:
            logger.info("Destroying idle session %s", sid[:8])
            await self.destroy(sid, reason="idle")
        return idle

    def start_sweeper(self, cache: ResultCache | None = None) -> None:
        if self._sweeper_task is None or self._sweeper_task.done():
            self._sweeper_task = asyncio.create_task(
                run_idle_sweeper(self, self._config.sweep_interval, cache),
                name="session-idle-sweeper",
            )

    async def stop_sweeper(self) -> None:
        task, self._sweeper_task = self._sweeper_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


async def run_idle_sweeper(
    registry: SessionRegistry,
    interval: float,
    cache: ResultCache | None = None,
) -> None:
    """Periodically destroy idle sessions and purge expired cache entries."""
    logger.info("Idle sweeper started (interval=%.0fs)", interval)
    while True:
        try:
            await asyncio.sleep(interval)
            await registry.sweep_idle()
            if cache is not None:
                cache.purge_expired()
        except asyncio.CancelledError:
            logger.info("Idle sweeper stopped")
            return
        except Exception:
            logger.exception("Idle sweeper error")
