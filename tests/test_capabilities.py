from __future__ import annotations

import asyncio

import pytest
from conftest import HELP_TEXT, FakeProvider

from codex_bridge.engine.capabilities import (
    CapabilityProber,
    parse_capabilities,
    parse_models,
)
from codex_bridge.engine.errors import ToolUnavailableError
from codex_bridge.engine.models import Capabilities
from codex_bridge.engine.providers.base import ProbeOutput


class SlowProvider(FakeProvider):
    async def probe(self, args, *, cwd, timeout) -> ProbeOutput:
        await asyncio.sleep(5)
        return await super().probe(args, cwd=cwd, timeout=timeout)


class BrokenHelpProvider(FakeProvider):
    async def probe(self, args, *, cwd, timeout) -> ProbeOutput:
        if args == ["--version"]:
            return await super().probe(args, cwd=cwd, timeout=timeout)
        return ProbeOutput(stdout="", stderr="unknown flag", returncode=2)


def test_parse_capabilities_from_help_text() -> None:
    caps = parse_capabilities("codex-cli 0.42.0\n", HELP_TEXT)

    assert caps.version == "codex-cli 0.42.0"
    assert caps.supports_json
    assert caps.supports_streaming
    assert caps.supports_model_selection
    assert caps.supports_workspace_mode
    assert not caps.supports_file_operations
    assert not caps.supports_plan_feature
    assert caps.max_tokens is None
    assert caps.features == ["json_mode", "streaming", "model_selection", "workspace_mode"]


def test_parse_capabilities_from_empty_text() -> None:
    caps = parse_capabilities("", "")
    assert caps == Capabilities(version="unknown")


def test_parse_capabilities_token_limit() -> None:
    caps = parse_capabilities("1.0", "--max-tokens <N>  default 8192\n--plan  plan mode")
    assert caps.max_tokens == 8192
    assert caps.supports_plan_feature
    assert "token_limits" in caps.features


def test_parse_models() -> None:
    assert parse_models("Available models: o3, gpt-5-codex") == ["o3", "gpt-5-codex"]
    assert parse_models("  -m, --model {o3,o4-mini}  pick one") == ["o3", "o4-mini"]
    assert parse_models(HELP_TEXT) == []


@pytest.mark.asyncio
async def test_detect_runs_all_probes(tmp_path) -> None:
    provider = FakeProvider()
    caps = await CapabilityProber(provider).detect(str(tmp_path))

    assert caps.version == "codex-cli 0.42.0"
    assert caps.supports_json
    assert sorted(provider.probe_calls) == [["--help"], ["--version"], ["exec", "--help"]]


@pytest.mark.asyncio
async def test_detect_times_out_to_conservative_defaults(tmp_path) -> None:
    prober = CapabilityProber(SlowProvider(), probe_timeout=0.05, ceiling=0.1)
    caps = await prober.detect(str(tmp_path))
    assert caps == Capabilities.conservative()


@pytest.mark.asyncio
async def test_detect_missing_binary_raises(tmp_path) -> None:
    with pytest.raises(ToolUnavailableError):
        await CapabilityProber(FakeProvider(missing=True)).detect(str(tmp_path))


@pytest.mark.asyncio
async def test_failed_probe_contributes_nothing(tmp_path) -> None:
    caps = await CapabilityProber(BrokenHelpProvider()).detect(str(tmp_path))
    assert caps.version == "codex-cli 0.42.0"
    assert not caps.supports_json
    assert caps.features == []
