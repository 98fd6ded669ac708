"""Abstract base for CLI providers and their channels.

A Provider knows how to locate an assistant CLI, run short probe
invocations against it, and open a Channel bound to one working
directory. A WorkerHandle owns exactly one Channel at a time and
never runs two commands on it concurrently.
"""
from __future__ import annotations

import abc
import asyncio
import inspect
import logging
import shutil
from dataclasses import dataclass

from ..models import Command, EventListener, Response, StreamingEvent

logger = logging.getLogger(__name__)


@dataclass
class ProbeOutput:
    """Captured output of a short probe invocation."""
    stdout: str
    stderr: str
    returncode: int

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def combined(self) -> str:
        return self.stdout + self.stderr


async def deliver_event(
    listener: EventListener | None,
    event: StreamingEvent,
) -> None:
    """Hand an event to a per-call listener, never letting it break execution."""
    if listener is None:
        return
    try:
        result = listener(event)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.warning("Streaming listener raised for %s event", event.type, exc_info=True)


async def terminate_process(
    proc: asyncio.subprocess.Process,
    grace: float,
) -> None:
    """SIGTERM, wait up to *grace* seconds, then SIGKILL. Always reaps."""
    if proc.returncode is not None:
        return
    try:
        proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), timeout=grace)
        except asyncio.TimeoutError:
            logger.warning("Force killing process (pid=%d)", proc.pid)
            proc.kill()
            await proc.wait()
    except ProcessLookupError:
        pass


class Channel(abc.ABC):
    """Live invocation path to the CLI for one working directory."""

    async def open(self) -> None:
        """Prepare the channel. Default no-op."""
        return None

    @property
    @abc.abstractmethod
    def is_alive(self) -> bool:
        """Whether the underlying process/channel can accept commands."""

    @property
    def pid(self) -> int | None:
        return None

    @abc.abstractmethod
    async def execute(
        self,
        command: Command,
        request_id: str,
        on_event: EventListener | None = None,
    ) -> Response:
        """Run one command to completion.

        Delivers streaming events to *on_event* in emission order.
        Raises ChannelClosedError if the channel dies mid-command and
        ToolUnavailableError if the CLI binary cannot be executed.
        """

    @abc.abstractmethod
    async def interrupt(self) -> None:
        """Best-effort interruption of the command in flight."""

    @abc.abstractmethod
    async def close(self, grace: float = 5.0) -> None:
        """Cooperative stop, then forced termination after *grace* seconds."""


class Provider(abc.ABC):
    """Abstract provider interface."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short provider name (e.g. 'codex')."""

    @property
    @abc.abstractmethod
    def command(self) -> str:
        """Configured CLI command."""

    @abc.abstractmethod
    def is_available(self) -> bool:
        """Check if the CLI is installed. Does not require credentials."""

    @abc.abstractmethod
    def open_channel(self, cwd: str) -> Channel:
        """Create (but do not open) a channel bound to *cwd*."""

    @abc.abstractmethod
    async def probe(
        self,
        args: list[str],
        *,
        cwd: str,
        timeout: float,
    ) -> ProbeOutput:
        """Run a short probe invocation (e.g. --version).

        Raises ToolUnavailableError when the CLI cannot be executed and
        asyncio.TimeoutError when the probe exceeds *timeout*.
        """

    def resolve_command(self, command: str, fallback: str | None = None) -> str:
        """Resolve a provider binary by preferring explicit command, then fallback.

        The command may point to a CLI that is not on PATH when using
        custom wrappers or tests. In that case, keep the raw value so
        callers can surface the configured command in error messages.
        """
        if command and shutil.which(command):
            return command
        if fallback and shutil.which(fallback):
            logger.debug(
                "Command %s not found; falling back to %s", command, fallback,
            )
            return fallback
        return command or fallback or ""

    async def shutdown(self) -> None:
        """Clean up provider-wide resources. Default no-op."""
        return None
