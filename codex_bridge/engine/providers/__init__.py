"""Provider abstraction for the Codex CLI."""
from .base import Channel, ProbeOutput, Provider
from .codex_provider import (
    CodexProvider,
    ExecChannel,
    McpServerChannel,
    build_exec_args,
)

__all__ = [
    "Channel",
    "ProbeOutput",
    "Provider",
    "CodexProvider",
    "ExecChannel",
    "McpServerChannel",
    "build_exec_args",
]
