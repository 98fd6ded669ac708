"""YAML configuration loader.

Loads a single YAML file layered over the environment-derived config:
values present in the file win, everything else keeps its
CODEX_BRIDGE_* / default value.

Example YAML:
    bridge:
      max_sessions: 8
      max_idle_time: 900
      sweep_interval: 60
      command_timeout: 180
      max_restarts: 3
      restart_backoff_base: 1.0
      restart_backoff_cap: 10.0

    codex:
      command: codex
      channel_mode: exec        # or "mcp" for a persistent mcp-server
      default_model: gpt-5.2-codex
      api_key_env: OPENAI_API_KEY
      env:
        CODEX_HOME: /opt/codex

    cache:
      ttl: 1800
      max_entries: 256
      max_tokens_per_page: 18000
"""
from __future__ import annotations

import logging
from dataclasses import fields
from pathlib import Path
from typing import Any

import yaml

from .config import BridgeConfig

logger = logging.getLogger(__name__)

# section -> {yaml key: BridgeConfig attribute}
_SECTION_KEYS: dict[str, dict[str, str]] = {
    "bridge": {
        "default_cwd": "default_cwd",
        "max_sessions": "max_sessions",
        "max_idle_time": "max_idle_time",
        "sweep_interval": "sweep_interval",
        "command_timeout": "command_timeout",
        "reap_grace": "reap_grace",
        "kill_grace": "kill_grace",
        "max_restarts": "max_restarts",
        "restart_backoff_base": "restart_backoff_base",
        "restart_backoff_cap": "restart_backoff_cap",
        "probe_timeout": "probe_timeout",
        "probe_ceiling": "probe_ceiling",
        "log_level": "log_level",
    },
    "codex": {
        "command": "command",
        "channel_mode": "channel_mode",
        "default_model": "default_model",
        "api_key_env": "api_key_env",
        "env": "extra_env",
    },
    "cache": {
        "ttl": "cache_ttl",
        "max_entries": "cache_max_entries",
        "max_tokens_per_page": "max_tokens_per_page",
    },
}


def _coerce(config: BridgeConfig, attr: str, value: Any) -> Any:
    """Coerce a YAML value to the type of the dataclass default."""
    current = getattr(config, attr)
    if attr == "extra_env":
        return {str(k): str(v) for k, v in (value or {}).items()}
    if value is None:
        return None
    if isinstance(current, bool):
        return bool(value)
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    return str(value)


def apply_yaml_overrides(config: BridgeConfig, raw: dict[str, Any]) -> BridgeConfig:
    """Apply parsed YAML sections onto *config* in place and return it."""
    known = {f.name for f in fields(BridgeConfig)}
    for section, mapping in _SECTION_KEYS.items():
        section_raw = raw.get(section) or {}
        if not isinstance(section_raw, dict):
            logger.warning("Ignoring YAML section %r: expected a mapping", section)
            continue
        for key, value in section_raw.items():
            attr = mapping.get(key)
            if attr is None or attr not in known:
                logger.warning("Ignoring unknown YAML key %s.%s", section, key)
                continue
            setattr(config, attr, _coerce(config, attr, value))

    unknown_sections = sorted(set(raw) - set(_SECTION_KEYS))
    if unknown_sections:
        logger.warning(
            "Ignoring unknown YAML sections: %s", ", ".join(unknown_sections),
        )
    config.channel_mode = config.channel_mode.lower()
    return config


def load_yaml_config(
    path: str | Path,
    base: BridgeConfig | None = None,
) -> BridgeConfig:
    """Load a YAML config file over *base* (default: BridgeConfig.from_env())."""
    path = Path(path)
    logger.info(
        "load_yaml_config: loading %s (exists=%s)", path, path.exists(),
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute(),
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level of the YAML config must be a mapping")

    config = base if base is not None else BridgeConfig.from_env()
    apply_yaml_overrides(config, raw)
    logger.info(
        "Parsed YAML config %s: sections=%s",
        path.name, ", ".join(sorted(raw)) or "(empty)",
    )
    return config
