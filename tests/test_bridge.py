from __future__ import annotations

import asyncio
import sys

import pytest

from conftest import FakeProvider, make_config
from codex_bridge.engine.bridge import CodexBridge, build_prompt
from codex_bridge.engine.models import Command, Response
from codex_bridge.engine.result_cache import ResultCache
from codex_bridge.engine.workspace import workspace_id

LONG_TEXT = "word " * 5000


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _bridge(handler=None, *, provider=None, cache=None, **overrides) -> tuple[CodexBridge, FakeProvider]:
    seen_args: list[list[str]] = []

    async def _default(channel, command: Command, on_event) -> Response:
        seen_args.append(list(command.args))
        if command.prompt == "slow":
            await asyncio.sleep(0.5)
        if "long" in command.prompt:
            return Response(text=LONG_TEXT)
        return Response(text=f"answer to {command.prompt}")

    provider = provider or FakeProvider(handler or _default)
    provider.seen_args = seen_args
    bridge = CodexBridge(make_config(**overrides), provider, cache=cache)
    return bridge, provider


@pytest.mark.asyncio
async def test_later_page_without_cached_result_fails_without_invoking_codex() -> None:
    bridge, provider = _bridge()
    async with bridge:
        result = await bridge.consult("never asked", page=2)

    assert result.response.success is False
    assert result.response.category == "cache_miss"
    assert "page 1" in result.response.error
    assert provider.started == []
    assert provider.channels == []


@pytest.mark.asyncio
async def test_later_pages_come_from_cache_and_reassemble() -> None:
    bridge, provider = _bridge()
    async with bridge:
        first = await bridge.consult("long answer please", max_tokens_per_page=1000)
        assert first.response.success
        assert first.page.page_index == 1
        assert first.page.total_pages > 1
        assert first.page.has_more

        pages = [first.page.content]
        for n in range(2, first.page.total_pages + 1):
            result = await bridge.consult(
                "long answer please", max_tokens_per_page=1000, page=n,
            )
            assert result.response.success
            assert result.page.page_index == n
            pages.append(result.response.text)

        assert "".join(pages) == LONG_TEXT
        assert provider.started == ["long answer please"]
        assert bridge.get_cache_entry(first.fingerprint) == LONG_TEXT


@pytest.mark.asyncio
async def test_page_one_always_invokes_codex_again() -> None:
    bridge, provider = _bridge()
    async with bridge:
        await bridge.consult("same question")
        await bridge.consult("same question")
    assert provider.started == ["same question", "same question"]


@pytest.mark.asyncio
async def test_expired_cache_entry_is_a_cache_miss() -> None:
    clock = _Clock()
    bridge, _ = _bridge(cache=ResultCache(ttl=60, clock=clock))
    async with bridge:
        await bridge.consult("long text", max_tokens_per_page=1000)
        clock.now += 61
        result = await bridge.consult("long text", max_tokens_per_page=1000, page=2)
    assert result.response.category == "cache_miss"


@pytest.mark.asyncio
async def test_page_beyond_total_is_clamped_to_last_page() -> None:
    bridge, _ = _bridge()
    async with bridge:
        first = await bridge.consult("long", max_tokens_per_page=1000)
        result = await bridge.consult("long", max_tokens_per_page=1000, page=999)
    assert result.page.page_index == first.page.total_pages
    assert result.page.has_more is False


@pytest.mark.asyncio
async def test_context_is_prepended_to_the_request() -> None:
    bridge, provider = _bridge()
    async with bridge:
        await bridge.consult("what does it do?", context="def f(): pass")
    assert provider.started == [build_prompt("what does it do?", "def f(): pass")]
    assert provider.started[0] == "Context:\ndef f(): pass\n\nRequest:\nwhat does it do?"


@pytest.mark.asyncio
async def test_exec_args_follow_detected_capabilities() -> None:
    bridge, provider = _bridge()
    async with bridge:
        await bridge.consult("hi", model="o3")
    args = provider.seen_args[0]
    assert args[0] == "exec"
    assert args[args.index("--model") + 1] == "o3"
    assert "--json" in args
    assert args[-1] == "-"


@pytest.mark.asyncio
async def test_consult_defaults_to_one_session_per_workspace(tmp_path) -> None:
    bridge, _ = _bridge()
    async with bridge:
        result = await bridge.consult("hi", workspace_path=str(tmp_path))
        again = await bridge.consult("hi again", workspace_path=str(tmp_path))
        assert result.session_id == f"ws-{workspace_id(tmp_path)}"
        assert again.session_id == result.session_id
        assert len(bridge.list_sessions()) == 1


@pytest.mark.asyncio
async def test_send_command_reports_missing_cli_as_failed_response() -> None:
    bridge, _ = _bridge(provider=FakeProvider(missing=True))
    async with bridge:
        response = await bridge.send_command("s", Command(args=["exec", "-"], input_text="x"))
    assert response.success is False
    assert response.category == "tool_unavailable"
    assert "unavailable" in response.error


@pytest.mark.asyncio
async def test_send_command_reports_timeout_as_failed_response() -> None:
    bridge, _ = _bridge()
    async with bridge:
        response = await bridge.send_command(
            "s", Command(args=["exec", "-"], input_text="slow", timeout=0.05),
        )
    assert response.success is False
    assert response.category == "timeout"
    assert response.request_id


@pytest.mark.asyncio
async def test_send_command_counts_successful_dispatches() -> None:
    bridge, _ = _bridge()
    async with bridge:
        await bridge.send_command("s", Command(args=["exec", "-"], input_text="a"))
        await bridge.send_command("s", Command(args=["exec", "-"], input_text="b"))
        info = bridge.registry.get_session_info("s")
    assert info.request_count == 2


@pytest.mark.asyncio
async def test_failed_cli_response_gets_a_category() -> None:
    async def _unauthorized(channel, command, on_event) -> Response:
        return Response(text="", success=False, error="401 Unauthorized", exit_code=1)

    bridge, _ = _bridge(_unauthorized)
    async with bridge:
        result = await bridge.consult("hi")
    assert result.response.success is False
    assert result.response.category == "authentication"


@pytest.mark.asyncio
async def test_shutdown_destroys_sessions_and_clears_cache() -> None:
    bridge, _ = _bridge()
    async with bridge:
        await bridge.consult("hi")
        session_id, handle = await bridge.get_or_create_session("extra")
        assert handle.is_healthy()
    assert bridge.list_sessions() == []
    assert len(bridge.cache) == 0
    assert handle.is_killed


@pytest.mark.asyncio
async def test_cleanup_workspace_by_path(tmp_path) -> None:
    bridge, _ = _bridge()
    async with bridge:
        await bridge.get_or_create_session("a", str(tmp_path))
        await bridge.get_or_create_session("b", str(tmp_path))
        assert await bridge.cleanup_workspace(str(tmp_path)) == 2
        assert bridge.list_sessions() == []


@pytest.mark.asyncio
async def test_missing_workspace_is_not_reported_as_missing_cli(tmp_path) -> None:
    bridge = CodexBridge(make_config(command=sys.executable))
    async with bridge:
        response = await bridge.send_command(
            "s1", Command(args=["-c", "pass"]), str(tmp_path / "nope"),
        )

    assert response.success is False
    assert response.category == "process_failure"
    assert "does not exist" in response.error
    assert "unavailable" not in response.error
