"""MCP tool implementations backed by a CodexBridge.

Each tool returns the MCP content shape
{"content": [{"type": "text", "text": ...}], "is_error"?: True}
so it can be unit tested without a running server; server_tools.py
adapts these results to FastMCP's plain-string tool returns.
"""
from __future__ import annotations

import json
import logging
from typing import Any

from ..bridge import CodexBridge
from ..errors import BridgeError
from ..pagination import format_paginated_response
from ..workspace import workspace_id

logger = logging.getLogger(__name__)


def _text(text: str) -> dict[str, Any]:
    """Format a successful text response."""
    return {"content": [{"type": "text", "text": text}]}


def _error(text: str) -> dict[str, Any]:
    """Format an error response."""
    return {
        "content": [{"type": "text", "text": f"ERROR: {text}"}],
        "is_error": True,
    }


class BridgeTools:
    """Tool handlers exposed by the stdio MCP server."""

    def __init__(self, bridge: CodexBridge) -> None:
        self._bridge = bridge

    async def consult_codex(
        self,
        prompt: str,
        context: str | None = None,
        model: str | None = None,
        session_id: str | None = None,
        cwd: str | None = None,
        page: int = 1,
        max_tokens_per_page: int | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        result = await self._bridge.consult(
            prompt,
            context=context,
            model=model,
            session_id=session_id,
            workspace_path=cwd,
            page=page,
            max_tokens_per_page=max_tokens_per_page,
            timeout=timeout,
        )
        response = result.response
        if not response.success:
            label = f"[{response.category}] " if response.category else ""
            return _error(f"{label}{response.error or 'Failed to consult Codex'}")

        if result.page is None:
            return _text(response.text)
        full_text = self._bridge.get_cache_entry(result.fingerprint) or response.text
        text = format_paginated_response(result.page, full_text, response.request_id)
        if result.page.total_pages > 1:
            text += f"\nSession: {result.session_id}"
        return _text(text)

    async def session_status(self, session_id: str | None = None) -> dict[str, Any]:
        report = self._bridge.health_check(session_id)
        if session_id is not None and not report.sessions:
            return _error(f"Session {session_id} not found")
        return _text(json.dumps({
            "healthy": report.healthy,
            "sessions": [info.to_dict() for info in report.sessions],
        }, indent=2))

    async def list_sessions(self) -> dict[str, Any]:
        sessions = self._bridge.list_sessions()
        if not sessions:
            return _text("No active sessions.")
        lines = [f"Sessions ({len(sessions)}):"]
        for info in sessions:
            lines.append(
                f"  {info.session_id}  [{info.status.value}]  "
                f"workspace={info.workspace_id} ({info.workspace_path})  "
                f"requests={info.request_count}  restarts={info.restart_count}"
            )
        return _text("\n".join(lines))

    async def restart_session(self, session_id: str) -> dict[str, Any]:
        try:
            await self._bridge.restart_session(session_id)
        except BridgeError as exc:
            logger.warning("restart_session %s failed: %s", session_id[:8], exc)
            return _error(str(exc))
        return _text(f"Session {session_id} restarted.")

    async def end_session(self, session_id: str) -> dict[str, Any]:
        if await self._bridge.destroy_session(session_id):
            return _text(f"Session {session_id} ended.")
        return _text(f"Session {session_id} was not active.")

    async def cleanup_workspace(self, cwd: str) -> dict[str, Any]:
        count = await self._bridge.cleanup_workspace(cwd)
        return _text(
            f"Destroyed {count} session(s) for workspace {workspace_id(cwd)}."
        )
