"""Worker handle: one supervised Codex channel plus its request queue.

Commands are accepted concurrently but dispatched strictly one at a
time in FIFO order by a single pump task. The caller's wait is bounded
by the command deadline; a command that outlives its caller keeps
running until a hard deadline (timeout + reap_grace), after which the
channel interrupts it and, failing that, is closed.

Restart policy: at most max_restarts restarts over the handle's
lifetime, each preceded by an exponential backoff delay. Concurrent
restart requests join the one already in progress.
"""
from __future__ import annotations

import asyncio
import logging
import os
from collections import deque
from collections.abc import AsyncIterator
from typing import Any

from .capabilities import CapabilityProber
from .config import BridgeConfig, EventCallback, fire_event
from .errors import (
    BridgeError,
    ChannelClosedError,
    CommandCancelledError,
    CommandTimeoutError,
    ProcessFailureError,
    ProcessKilledError,
    RestartLimitExceededError,
    ToolUnavailableError,
    WorkerStartupError,
)
from .models import (
    Capabilities,
    Command,
    EventListener,
    Response,
    StreamingEvent,
    make_request_id,
)
from .providers.base import Channel, Provider, deliver_event

logger = logging.getLogger(__name__)


class _PendingCommand:
    """A queued command and the future its caller is waiting on."""

    __slots__ = ("command", "request_id", "listener", "future", "started", "abandoned")

    def __init__(
        self,
        command: Command,
        request_id: str,
        listener: EventListener | None,
        future: asyncio.Future,
    ) -> None:
        self.command = command
        self.request_id = request_id
        self.listener = listener
        self.future = future
        self.started = False
        # Caller stopped waiting (timeout, cancellation); drop its events.
        self.abandoned = False


class WorkerHandle:
    """Supervises one Channel for one session."""

    def __init__(
        self,
        session_id: str,
        working_directory: str,
        provider: Provider,
        *,
        config: BridgeConfig | None = None,
        prober: CapabilityProber | None = None,
        event_callback: EventCallback | None = None,
    ) -> None:
        self._config = config or BridgeConfig()
        self._session_id = session_id
        self._working_directory = working_directory
        self._provider = provider
        self._prober = prober or CapabilityProber(
            provider,
            probe_timeout=self._config.probe_timeout,
            ceiling=self._config.probe_ceiling,
        )
        self._event_callback = event_callback

        self._channel: Channel | None = None
        self._capabilities: Capabilities | None = None
        self._started = False
        self._killed = False
        self._restart_count = 0
        self._max_restarts = self._config.max_restarts
        self._restart_future: asyncio.Future | None = None

        self._queue: deque[_PendingCommand] = deque()
        self._current: _PendingCommand | None = None
        self._wakeup = asyncio.Event()
        self._pump_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()

    # -- Properties --

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def working_directory(self) -> str:
        return self._working_directory

    @property
    def capabilities(self) -> Capabilities | None:
        return self._capabilities

    @property
    def restart_count(self) -> int:
        return self._restart_count

    @property
    def max_restarts(self) -> int:
        return self._max_restarts

    @property
    def is_restarting(self) -> bool:
        return self._restart_future is not None and not self._restart_future.done()

    @property
    def is_killed(self) -> bool:
        return self._killed

    @property
    def queue_depth(self) -> int:
        return len(self._queue)

    @property
    def current_request_id(self) -> str | None:
        return self._current.request_id if self._current is not None else None

    @property
    def has_pending_work(self) -> bool:
        return self._current is not None or bool(self._queue)

    def is_healthy(self) -> bool:
        return (
            self._started
            and not self._killed
            and not self.is_restarting
            and self._channel is not None
            and self._channel.is_alive
        )

    def is_recoverable(self) -> bool:
        """Unhealthy, but the pump will restart it before the next dispatch."""
        return (
            self._started
            and not self._killed
            and self._restart_count < self._max_restarts
            and self.has_pending_work
        )

    # -- Lifecycle --

    async def _emit(self, event: str, **data: Any) -> None:
        await fire_event(self._event_callback, {
            "event": event,
            "session_id": self._session_id,
            **data,
        })

    async def _open(self) -> None:
        if not os.path.isdir(self._working_directory):
            raise WorkerStartupError(
                self._session_id,
                f"working directory {self._working_directory} does not exist",
            )
        capabilities = await self._prober.detect(self._working_directory)
        # kill() may have run while probing; it found no channel to close.
        if self._killed:
            raise WorkerStartupError(self._session_id, "worker was killed")
        self._capabilities = capabilities
        await self._emit(
            "capability_detected",
            version=capabilities.version,
            features=list(capabilities.features),
        )

        channel = self._provider.open_channel(self._working_directory)
        try:
            await channel.open()
        except ToolUnavailableError:
            raise
        except (ChannelClosedError, OSError, asyncio.TimeoutError) as exc:
            raise WorkerStartupError(self._session_id, str(exc) or type(exc).__name__) from exc
        if self._killed:
            await channel.close(self._config.kill_grace)
            raise WorkerStartupError(self._session_id, "worker was killed")
        self._channel = channel

    async def start(self) -> None:
        """Probe capabilities, open the channel, and start the queue pump."""
        if self._killed:
            raise WorkerStartupError(self._session_id, "worker was killed")
        await self._open()
        self._started = True
        if self._pump_task is None or self._pump_task.done():
            self._pump_task = asyncio.create_task(
                self._run_queue(), name=f"worker-{self._session_id[:8]}",
            )
        logger.info(
            "Worker started session=%s cwd=%s pid=%s",
            self._session_id[:8], self._working_directory,
            self._channel.pid if self._channel else None,
        )
        await self._emit("worker_ready", restart_count=self._restart_count)

    async def _close_channel(self) -> None:
        channel, self._channel = self._channel, None
        if channel is None:
            return
        try:
            await channel.close(self._config.kill_grace)
        except Exception as exc:
            logger.warning(
                "Error closing channel for session %s: %s",
                self._session_id[:8], exc,
            )

    async def wait_until_settled(self) -> None:
        """Wait for an in-progress restart (if any) to finish."""
        current = self._restart_future
        if current is not None and not current.done():
            await asyncio.shield(current)

    async def restart(self) -> None:
        """Stop the channel, back off, and start it again.

        A call made while a restart is already in progress waits for
        that restart instead of starting another.
        """
        if self._killed:
            raise WorkerStartupError(self._session_id, "worker was killed")
        if self.is_restarting:
            logger.warning("Session %s is already restarting", self._session_id[:8])
            await self.wait_until_settled()
            return
        if self._restart_count >= self._max_restarts:
            raise RestartLimitExceededError(self._session_id, self._max_restarts)

        done = asyncio.get_running_loop().create_future()
        self._restart_future = done
        self._restart_count += 1
        attempt = self._restart_count
        delay = self._config.backoff_delay(attempt)
        logger.info(
            "Restarting session %s (attempt %d/%d, backoff %.1fs)",
            self._session_id[:8], attempt, self._max_restarts, delay,
        )
        try:
            await self._emit("worker_restarting", attempt=attempt)
            await self._close_channel()
            await asyncio.sleep(delay)
            if self._killed:
                raise WorkerStartupError(self._session_id, "worker was killed during restart")
            await self._open()
            self._started = True
        except Exception as exc:
            logger.error(
                "Restart of session %s failed: %s", self._session_id[:8], exc,
            )
            await self._emit("worker_restart_failed", attempt=attempt, error=str(exc))
            raise
        finally:
            if not done.done():
                done.set_result(None)

        await self._emit("worker_ready", restart_count=self._restart_count)

    async def kill(self) -> None:
        """Terminate the worker. Every queued or in-flight command fails."""
        if self._killed:
            return
        self._killed = True
        logger.info("Killing worker for session %s", self._session_id[:8])

        self._reject_queued(lambda p: ProcessKilledError(p.request_id))
        await self._close_channel()
        self._wakeup.set()

        pump = self._pump_task
        if pump is not None and not pump.done():
            try:
                await asyncio.wait_for(asyncio.shield(pump), timeout=self._config.kill_grace)
            except asyncio.TimeoutError:
                pump.cancel()
                try:
                    await pump
                except asyncio.CancelledError:
                    pass

        if self._current is not None:
            self._settle(self._current, exc=ProcessKilledError(self._current.request_id))
            self._current = None
        for task in list(self._background):
            task.cancel()

    # -- Request path --

    async def send(
        self,
        command: Command,
        on_event: EventListener | None = None,
    ) -> Response:
        """Enqueue *command* and wait for its response.

        Raises CommandTimeoutError when the deadline passes first,
        CommandCancelledError when the command's cancel token fires, and
        ProcessFailureError / ProcessKilledError when the channel dies.
        """
        request_id = make_request_id()
        if self._killed:
            raise ProcessKilledError(request_id)

        pending = _PendingCommand(
            command, request_id, on_event,
            asyncio.get_running_loop().create_future(),
        )
        self._queue.append(pending)
        self._wakeup.set()
        logger.debug(
            "Queued %s for session %s (depth=%d)",
            request_id, self._session_id[:8], len(self._queue),
        )

        timeout = command.timeout or self._config.command_timeout
        waiters: set[asyncio.Future] = {pending.future}
        token_task = None
        if command.cancel_token is not None:
            token_task = asyncio.ensure_future(command.cancel_token.wait())
            waiters.add(token_task)

        try:
            await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            self._abandon(pending, interrupt=True)
            raise
        finally:
            if token_task is not None:
                token_task.cancel()

        if pending.future.done() and not pending.future.cancelled():
            return pending.future.result()

        if command.cancel_token is not None and command.cancel_token.cancelled:
            logger.info("Request %s cancelled by caller", request_id)
            self._abandon(pending, interrupt=True)
            raise CommandCancelledError(request_id)

        logger.warning(
            "Request %s timed out after %.1fs (session %s)",
            request_id, timeout, self._session_id[:8],
        )
        self._abandon(pending, interrupt=False)
        raise CommandTimeoutError(request_id, timeout)

    async def stream(self, command: Command) -> AsyncIterator[StreamingEvent | Response]:
        """Yield the command's streaming events in order, then its Response.

        Closing the iterator early abandons the command.
        """
        events: asyncio.Queue[StreamingEvent] = asyncio.Queue()
        send_task = asyncio.ensure_future(self.send(command, on_event=events.put_nowait))
        try:
            while True:
                getter = asyncio.ensure_future(events.get())
                done, _ = await asyncio.wait(
                    {getter, send_task}, return_when=asyncio.FIRST_COMPLETED,
                )
                if getter in done:
                    yield getter.result()
                    continue
                getter.cancel()
                while not events.empty():
                    yield events.get_nowait()
                yield send_task.result()
                return
        finally:
            if not send_task.done():
                send_task.cancel()

    def _abandon(self, pending: _PendingCommand, *, interrupt: bool) -> None:
        pending.abandoned = True
        if not pending.started:
            try:
                self._queue.remove(pending)
            except ValueError:
                pass
            if not pending.future.done():
                pending.future.cancel()
            return
        if interrupt and self._current is pending and self._channel is not None:
            task = asyncio.ensure_future(self._channel.interrupt())
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    def _settle(
        self,
        pending: _PendingCommand,
        result: Response | None = None,
        exc: BaseException | None = None,
    ) -> None:
        future = pending.future
        if future.done():
            return
        if pending.abandoned:
            future.cancel()
        elif exc is not None:
            future.set_exception(exc)
        else:
            future.set_result(result)

    def _reject_queued(self, make_error) -> None:
        while self._queue:
            pending = self._queue.popleft()
            self._settle(pending, exc=make_error(pending))

    def _listener_for(self, pending: _PendingCommand) -> EventListener | None:
        if pending.listener is None:
            return None

        async def _forward(event: StreamingEvent) -> None:
            if not pending.abandoned:
                await deliver_event(pending.listener, event)

        return _forward

    async def _execute(self, pending: _PendingCommand) -> Response:
        """Run *pending* on the channel, reaping it past the hard deadline."""
        channel = self._channel
        assert channel is not None
        timeout = pending.command.timeout or self._config.command_timeout
        hard_deadline = timeout + self._config.reap_grace

        task = asyncio.ensure_future(
            channel.execute(pending.command, pending.request_id, self._listener_for(pending))
        )
        try:
            done, _ = await asyncio.wait({task}, timeout=hard_deadline)
            if not done:
                logger.warning(
                    "Reaping %s after %.1fs (session %s)",
                    pending.request_id, hard_deadline, self._session_id[:8],
                )
                await channel.interrupt()
                done, _ = await asyncio.wait({task}, timeout=self._config.kill_grace)
                if not done:
                    await channel.close(self._config.kill_grace)
            return await task
        except asyncio.CancelledError:
            task.cancel()
            raise

    async def _ensure_healthy(self) -> bool:
        """Restart the channel before dispatch if needed.

        On failure every queued command is rejected with the restart
        error. Returns True when dispatch may proceed.
        """
        if self.is_healthy():
            return True
        try:
            await self.restart()
        except BridgeError as exc:
            self._reject_queued(lambda p: exc)
            return False
        if not self.is_healthy():
            error = WorkerStartupError(
                self._session_id, "restart did not restore a healthy channel",
            )
            self._reject_queued(lambda p: error)
            return False
        return True

    async def _run_queue(self) -> None:
        """Dispatch queued commands one at a time until killed."""
        try:
            while not self._killed:
                if not self._queue:
                    self._wakeup.clear()
                    await self._wakeup.wait()
                    continue
                if not await self._ensure_healthy() or self._killed:
                    continue

                pending = self._queue.popleft()
                if pending.abandoned:
                    continue
                pending.started = True
                self._current = pending
                await self._emit("command_dispatched", request_id=pending.request_id)
                try:
                    response = await self._execute(pending)
                except ChannelClosedError as exc:
                    error = (
                        ProcessKilledError(pending.request_id)
                        if self._killed
                        else ProcessFailureError(pending.request_id, str(exc))
                    )
                    logger.error(
                        "Channel for session %s died during %s: %s",
                        self._session_id[:8], pending.request_id, exc,
                    )
                    self._settle(pending, exc=error)
                    await self._emit("channel_lost", request_id=pending.request_id, error=str(exc))
                except BridgeError as exc:
                    self._settle(pending, exc=exc)
                    await self._emit("command_failed", request_id=pending.request_id, error=str(exc))
                except Exception as exc:
                    logger.exception("Unexpected error executing %s", pending.request_id)
                    self._settle(pending, exc=ProcessFailureError(pending.request_id, str(exc)))
                    await self._emit("command_failed", request_id=pending.request_id, error=str(exc))
                else:
                    if self._killed:
                        self._settle(pending, exc=ProcessKilledError(pending.request_id))
                        continue
                    response.request_id = pending.request_id
                    self._settle(pending, result=response)
                    await self._emit(
                        "command_completed",
                        request_id=pending.request_id,
                        success=response.success,
                    )
                finally:
                    self._current = None
        except asyncio.CancelledError:
            logger.debug("Queue pump for session %s cancelled", self._session_id[:8])
