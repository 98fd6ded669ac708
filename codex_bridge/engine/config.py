"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via CODEX_BRIDGE_* env vars,
or with a YAML file (see yaml_config.py).
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

ENV_PREFIX = "CODEX_BRIDGE_"

# Optional async callback for lifecycle/telemetry events.
# Signature: async def callback(event: dict[str, Any]) -> None
EventCallback = Callable[[dict[str, Any]], Awaitable[None]]


async def fire_event(
    callback: EventCallback | None,
    event: dict[str, Any],
) -> None:
    """Fire an event callback if set, silently swallowing errors."""
    if callback is None:
        return
    try:
        await callback(event)
    except Exception:
        logger.debug("Event callback failed for %s", event.get("event"), exc_info=True)


@dataclass
class BridgeConfig:
    """Session bridge configuration."""

    # Codex CLI
    command: str = "codex"
    channel_mode: str = "exec"
    default_model: str | None = None
    # Name of an env var whose value is passed to the CLI as OPENAI_API_KEY.
    api_key_env: str | None = None
    default_cwd: str = "."

    # Session registry
    max_sessions: int = 10
    # Seconds without activity before the sweeper destroys a session.
    max_idle_time: float = 30 * 60.0
    sweep_interval: float = 5 * 60.0

    # Per-command deadlines
    command_timeout: float = 120.0
    # Extra time an in-flight command may run after its caller timed
    # out before the channel interrupts it.
    reap_grace: float = 30.0
    # Grace period between SIGTERM and SIGKILL.
    kill_grace: float = 5.0

    # Restart policy
    max_restarts: int = 3
    restart_backoff_base: float = 1.0
    restart_backoff_cap: float = 10.0

    # Capability probing
    probe_timeout: float = 5.0
    probe_ceiling: float = 10.0

    # Result cache / pagination
    cache_ttl: float = 30 * 60.0
    cache_max_entries: int = 256
    max_tokens_per_page: int = 20000

    log_level: str = "INFO"

    extra_env: dict[str, str] = field(default_factory=dict, repr=False)

    @classmethod
    def from_env(cls) -> BridgeConfig:
        """Load configuration from CODEX_BRIDGE_* environment variables."""
        bridge_vars = {
            k: v for k, v in os.environ.items() if k.startswith(ENV_PREFIX)
        }
        if bridge_vars:
            logger.info(
                "BridgeConfig.from_env: overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(bridge_vars.items())),
            )
        else:
            logger.debug("BridgeConfig.from_env: no %s* env vars set, using defaults", ENV_PREFIX)

        def _get(name: str, default: Any) -> str:
            return os.getenv(ENV_PREFIX + name, str(default))

        config = cls(
            command=_get("COMMAND", cls.command),
            channel_mode=_get("CHANNEL_MODE", cls.channel_mode).lower(),
            default_model=os.getenv(ENV_PREFIX + "DEFAULT_MODEL") or None,
            api_key_env=os.getenv(ENV_PREFIX + "API_KEY_ENV") or None,
            default_cwd=_get("DEFAULT_CWD", cls.default_cwd),
            max_sessions=int(_get("MAX_SESSIONS", cls.max_sessions)),
            max_idle_time=float(_get("MAX_IDLE_TIME", cls.max_idle_time)),
            sweep_interval=float(_get("SWEEP_INTERVAL", cls.sweep_interval)),
            command_timeout=float(_get("COMMAND_TIMEOUT", cls.command_timeout)),
            reap_grace=float(_get("REAP_GRACE", cls.reap_grace)),
            kill_grace=float(_get("KILL_GRACE", cls.kill_grace)),
            max_restarts=int(_get("MAX_RESTARTS", cls.max_restarts)),
            restart_backoff_base=float(
                _get("RESTART_BACKOFF_BASE", cls.restart_backoff_base)
            ),
            restart_backoff_cap=float(
                _get("RESTART_BACKOFF_CAP", cls.restart_backoff_cap)
            ),
            probe_timeout=float(_get("PROBE_TIMEOUT", cls.probe_timeout)),
            probe_ceiling=float(_get("PROBE_CEILING", cls.probe_ceiling)),
            cache_ttl=float(_get("CACHE_TTL", cls.cache_ttl)),
            cache_max_entries=int(_get("CACHE_MAX_ENTRIES", cls.cache_max_entries)),
            max_tokens_per_page=int(
                _get("MAX_TOKENS_PER_PAGE", cls.max_tokens_per_page)
            ),
            log_level=_get("LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "BridgeConfig.from_env: command=%s mode=%s cwd=%s max_sessions=%d",
            config.command, config.channel_mode,
            config.default_cwd, config.max_sessions,
        )
        return config

    def backoff_delay(self, attempt: int) -> float:
        """Restart backoff: min(base * 2**(attempt-1), cap)."""
        attempt = max(attempt, 1)
        return min(self.restart_backoff_base * (2 ** (attempt - 1)), self.restart_backoff_cap)
