"""Capability detection for the Codex CLI.

Runs short probe invocations (--version, --help, exec --help) and
derives advisory feature flags from their text. Probing never blocks
a worker for longer than the configured ceiling; anything that fails
or times out simply contributes "unsupported" defaults.
"""
from __future__ import annotations

import asyncio
import logging
import re

from .errors import ToolUnavailableError
from .models import Capabilities
from .providers.base import Provider

logger = logging.getLogger(__name__)

_VERSION_ARGS = ["--version"]
_HELP_ARGS = ["--help"]
_EXEC_HELP_ARGS = ["exec", "--help"]

_MODEL_LIST_PATTERNS = (
    re.compile(r"(?:model|models?):\s*([^\n]+)", re.IGNORECASE),
    re.compile(r"available.*models?:\s*([^\n]+)", re.IGNORECASE),
    re.compile(r"(?:-m|--model)\s+(?:\w+\s+)*\{([^}]+)\}", re.IGNORECASE),
)
_MODEL_SPLIT_RE = re.compile(r"[,|\s]+")
_MODEL_FILLER = frozenset({
    "default", "latest", "available", "options", "or", "and", "{", "}",
})
_MAX_TOKENS_RE = re.compile(r"(?:max|tokens?)[^\d\n]*(\d{3,})", re.IGNORECASE)

_FLAG_GROUPS = {
    "workspace": ("--workspace", "--directory", "--cwd", "--cd"),
    "files": ("--file", "--read", "--write", "--edit"),
    "plan": ("plan", "planning", "--plan", "task"),
}


class _ProbeFailed(Exception):
    """A probe ran but exited non-zero."""


def parse_models(help_text: str) -> list[str]:
    """Model names advertised in help text, deduplicated in order."""
    models: list[str] = []
    for pattern in _MODEL_LIST_PATTERNS:
        for match in pattern.finditer(help_text):
            for token in _MODEL_SPLIT_RE.split(match.group(1)):
                token = token.strip().strip("{}[]()<>.\"'")
                if not token or token.lower() in _MODEL_FILLER:
                    continue
                if token.startswith("-") or token in models:
                    continue
                models.append(token)
    return models


def parse_capabilities(version_text: str, help_text: str) -> Capabilities:
    """Derive capability flags from probe output. Pure function."""
    lower = help_text.lower()

    supports_json = "json" in lower
    supports_streaming = any(p in lower for p in ("--json", "jsonl", "stream"))
    supports_model = "--model" in lower or "-m " in help_text
    supports_workspace = any(p in lower for p in _FLAG_GROUPS["workspace"])
    supports_files = any(p in lower for p in _FLAG_GROUPS["files"])
    supports_plan = any(p in lower for p in _FLAG_GROUPS["plan"])

    max_tokens = None
    match = _MAX_TOKENS_RE.search(help_text)
    if match:
        max_tokens = int(match.group(1))

    features = []
    if supports_json:
        features.append("json_mode")
    if supports_streaming:
        features.append("streaming")
    if supports_model:
        features.append("model_selection")
    if supports_workspace:
        features.append("workspace_mode")
    if supports_files:
        features.append("file_operations")
    if supports_plan:
        features.append("plan_api")
    if max_tokens is not None:
        features.append("token_limits")

    return Capabilities(
        supports_json=supports_json,
        supports_streaming=supports_streaming,
        supports_plan_feature=supports_plan,
        supports_model_selection=supports_model,
        supports_workspace_mode=supports_workspace,
        supports_file_operations=supports_files,
        max_tokens=max_tokens,
        available_models=parse_models(help_text) if supports_model else [],
        version=version_text.strip() or "unknown",
        features=features,
    )


class CapabilityProber:
    """Probes a provider's CLI for supported features."""

    def __init__(
        self,
        provider: Provider,
        probe_timeout: float = 5.0,
        ceiling: float = 10.0,
    ) -> None:
        self._provider = provider
        self._probe_timeout = probe_timeout
        self._ceiling = ceiling

    async def _probe(self, args: list[str], cwd: str) -> str:
        output = await self._provider.probe(
            args, cwd=cwd, timeout=self._probe_timeout,
        )
        if not output.ok:
            raise _ProbeFailed(
                f"{' '.join(args)} exited with code {output.returncode}"
            )
        return output.combined

    async def detect(self, cwd: str) -> Capabilities:
        """Probe the CLI from *cwd*.

        Raises ToolUnavailableError if the binary is missing; any other
        probe failure degrades to conservative defaults.
        """
        try:
            results = await asyncio.wait_for(
                asyncio.gather(
                    self._probe(_VERSION_ARGS, cwd),
                    self._probe(_HELP_ARGS, cwd),
                    self._probe(_EXEC_HELP_ARGS, cwd),
                    return_exceptions=True,
                ),
                timeout=self._ceiling,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Capability probing exceeded %.1fs; using conservative defaults",
                self._ceiling,
            )
            return Capabilities.conservative()

        texts: list[str] = []
        for args, result in zip((_VERSION_ARGS, _HELP_ARGS, _EXEC_HELP_ARGS), results):
            if isinstance(result, ToolUnavailableError):
                raise result
            if isinstance(result, BaseException):
                logger.debug("Probe %s failed: %s", " ".join(args), result)
                texts.append("")
            else:
                texts.append(result)

        version_text, help_text, exec_help_text = texts
        capabilities = parse_capabilities(
            version_text, help_text + "\n" + exec_help_text,
        )
        logger.info(
            "Detected codex %s (features=%s)",
            capabilities.version, ", ".join(capabilities.features) or "none",
        )
        return capabilities
