"""Stdio MCP server exposing the Codex bridge.

Any MCP client (Claude Code, editors, agents) can consult Codex
through this server while sessions stay warm between calls.

Usage:
    # Via .mcp.json, or manually:
    codex-bridge-mcp
    codex-bridge-mcp --config codex-bridge.yaml
    python -m codex_bridge.engine.mcp_server.stdio_server \
        --cwd /path/to/project --verbose
"""
from __future__ import annotations

import argparse
import logging
import os
import sys
from contextlib import asynccontextmanager

from mcp.server.fastmcp import FastMCP

from ..bridge import CodexBridge
from ..config import BridgeConfig
from .tools import BridgeTools

logger = logging.getLogger(__name__)

# Parsed CLI args, set in main() before server starts
_parsed_args: argparse.Namespace | None = None


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI args for the MCP server process."""
    parser = argparse.ArgumentParser(
        prog="codex-bridge-mcp",
        description="Session-aware Codex CLI bridge over MCP stdio",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="YAML config file. Also reads CODEX_BRIDGE_CONFIG_FILE env var.",
    )
    parser.add_argument(
        "--cwd",
        default=None,
        help="Default working directory for sessions",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    return parser.parse_args(argv)


def load_config(args: argparse.Namespace) -> BridgeConfig:
    """Env-derived config, overlaid with the YAML file and --cwd."""
    config_file = args.config or os.getenv("CODEX_BRIDGE_CONFIG_FILE")
    if config_file:
        from ..yaml_config import load_yaml_config

        logger.info(
            "Config source: %s (from %s)",
            config_file,
            "--config" if args.config else "CODEX_BRIDGE_CONFIG_FILE env",
        )
        config = load_yaml_config(config_file)
    else:
        logger.info("No config file specified; using env vars / defaults")
        config = BridgeConfig.from_env()

    if args.cwd:
        config.default_cwd = args.cwd
    return config


@asynccontextmanager
async def bridge_lifespan(server: FastMCP):
    """Own the CodexBridge for the server lifetime.

    Yields context dict accessible via ctx.request_context.lifespan_context
    in tool handlers.
    """
    global _parsed_args
    if _parsed_args is None:
        _parsed_args = _parse_args([])

    # Logging must go to stderr (stdout is the stdio transport)
    level = logging.DEBUG if _parsed_args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )

    config = load_config(_parsed_args)
    if not _parsed_args.verbose:
        logging.getLogger().setLevel(
            getattr(logging, config.log_level.upper(), logging.INFO)
        )

    bridge = CodexBridge(config)
    await bridge.start()
    logger.info(
        "Codex bridge MCP server initialized (cwd=%s, mode=%s, model=%s)",
        config.default_cwd, config.channel_mode, config.default_model,
    )
    try:
        yield {
            "config": config,
            "bridge": bridge,
            "tools": BridgeTools(bridge),
        }
    finally:
        await bridge.shutdown()
        logger.info("Codex bridge MCP server shut down")


# Create the FastMCP instance
mcp = FastMCP(
    name="codex-bridge",
    instructions=(
        "Tools for consulting the OpenAI Codex CLI. Use consult_codex for "
        "questions and tasks; pass the same session_id to keep working in "
        "the same Codex session. When a result reports more pages, call "
        "consult_codex again with the same arguments and page=N."
    ),
    lifespan=bridge_lifespan,
)

from .server_tools import register_tools  # noqa: E402

register_tools(mcp)


def main() -> None:
    """Entry point for the MCP server."""
    global _parsed_args
    _parsed_args = _parse_args()
    try:
        mcp.run(transport="stdio")
    except Exception:
        logging.getLogger(__name__).exception(
            "Fatal stdio MCP server error (pid=%s)", os.getpid()
        )
        raise


if __name__ == "__main__":
    main()
