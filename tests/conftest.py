from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import pytest

from codex_bridge.engine.config import BridgeConfig
from codex_bridge.engine.errors import ChannelClosedError, ToolUnavailableError
from codex_bridge.engine.models import Command, Response
from codex_bridge.engine.providers.base import Channel, ProbeOutput, Provider

HELP_TEXT = """\
Codex CLI

Usage: codex [OPTIONS] [PROMPT]

Options:
  -m, --model <MODEL>   Model the agent should use
      --json            Print events to stdout as JSONL
  -C, --cd <DIR>        Tell the agent to use the specified directory
"""

Handler = Callable[["FakeChannel", Command, object], Awaitable[Response]]


async def _echo(channel: "FakeChannel", command: Command, on_event) -> Response:
    return Response(text=f"echo:{command.prompt}")


class FakeChannel(Channel):
    def __init__(self, provider: "FakeProvider", cwd: str) -> None:
        self.provider = provider
        self.cwd = cwd
        self.alive = True
        self.closed = False
        self.interrupts = 0
        self.interrupted = asyncio.Event()

    @property
    def is_alive(self) -> bool:
        return self.alive

    async def open(self) -> None:
        if self.provider.open_delay:
            await asyncio.sleep(self.provider.open_delay)
        if self.provider.fail_open:
            self.alive = False
            raise ChannelClosedError("mcp-server exited during handshake")

    async def execute(self, command, request_id, on_event=None) -> Response:
        if not self.alive:
            raise ChannelClosedError("channel is dead")
        provider = self.provider
        provider.active += 1
        provider.max_active = max(provider.max_active, provider.active)
        provider.started.append(command.prompt)
        try:
            return await provider.handler(self, command, on_event)
        finally:
            provider.active -= 1

    async def interrupt(self) -> None:
        self.interrupts += 1
        self.interrupted.set()

    async def close(self, grace: float = 5.0) -> None:
        self.alive = False
        self.closed = True
        self.interrupted.set()


class FakeProvider(Provider):
    """In-memory provider whose channels run an async handler."""

    def __init__(
        self,
        handler: Handler | None = None,
        *,
        version: str = "codex-cli 0.42.0",
        help_text: str = HELP_TEXT,
        missing: bool = False,
    ) -> None:
        self.handler = handler or _echo
        self.version = version
        self.help_text = help_text
        self.missing = missing
        self.fail_open = False
        self.probe_delay = 0.0
        self.open_delay = 0.0
        self.channels: list[FakeChannel] = []
        self.started: list[str] = []
        self.probe_calls: list[list[str]] = []
        self.active = 0
        self.max_active = 0

    @property
    def name(self) -> str:
        return "fake"

    @property
    def command(self) -> str:
        return "codex"

    def is_available(self) -> bool:
        return not self.missing

    def open_channel(self, cwd: str) -> FakeChannel:
        channel = FakeChannel(self, cwd)
        self.channels.append(channel)
        return channel

    async def probe(self, args, *, cwd, timeout) -> ProbeOutput:
        self.probe_calls.append(list(args))
        if self.probe_delay:
            await asyncio.sleep(self.probe_delay)
        if self.missing:
            raise ToolUnavailableError("codex")
        if args == ["--version"]:
            return ProbeOutput(stdout=self.version + "\n", stderr="", returncode=0)
        return ProbeOutput(stdout=self.help_text, stderr="", returncode=0)


def make_config(**overrides) -> BridgeConfig:
    values = dict(
        command_timeout=5.0,
        reap_grace=0.2,
        kill_grace=0.1,
        restart_backoff_base=0.0,
        restart_backoff_cap=0.0,
        probe_timeout=1.0,
        probe_ceiling=2.0,
        sweep_interval=3600.0,
    )
    values.update(overrides)
    return BridgeConfig(**values)


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def config() -> BridgeConfig:
    return make_config()
