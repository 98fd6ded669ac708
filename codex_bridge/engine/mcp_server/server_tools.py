"""FastMCP tool definitions for the stdio server.

Exposed:
    consult_codex, session_status, list_sessions,
    restart_session, end_session, cleanup_workspace
"""
from __future__ import annotations

from typing import Any

from mcp.server.fastmcp import Context, FastMCP


def _extract_text(result: dict[str, Any]) -> str:
    """Convert a BridgeTools response to plain string.

    If is_error is set, raise ValueError so FastMCP marks it as error.
    """
    text = result["content"][0]["text"]
    if result.get("is_error"):
        raise ValueError(text.removeprefix("ERROR: "))
    return text


def _get_tools(ctx: Context):
    """Get BridgeTools from lifespan context."""
    return ctx.request_context.lifespan_context["tools"]


def register_tools(mcp: FastMCP) -> None:
    """Register all bridge tools with the FastMCP instance."""

    @mcp.tool(
        name="consult_codex",
        description=(
            "Ask the Codex CLI a question or give it a task. Sessions are "
            "reused per session_id (default: one per working directory). "
            "Long answers are paginated: page 1 runs Codex, later pages "
            "are served from the cached answer of the same request."
        ),
    )
    async def consult_codex(
        prompt: str,
        context: str | None = None,
        model: str | None = None,
        session_id: str | None = None,
        cwd: str | None = None,
        page: int = 1,
        max_tokens_per_page: int | None = None,
        timeout: float | None = None,
        ctx: Context = None,
    ) -> str:
        tools = _get_tools(ctx)
        result = await tools.consult_codex(
            prompt,
            context=context,
            model=model,
            session_id=session_id,
            cwd=cwd,
            page=page,
            max_tokens_per_page=max_tokens_per_page,
            timeout=timeout,
        )
        return _extract_text(result)

    @mcp.tool(
        name="session_status",
        description=(
            "Health and metadata for one session, or for every session "
            "when session_id is omitted."
        ),
    )
    async def session_status(
        session_id: str | None = None,
        ctx: Context = None,
    ) -> str:
        return _extract_text(await _get_tools(ctx).session_status(session_id))

    @mcp.tool(
        name="list_sessions",
        description="List active Codex sessions, most recently used first.",
    )
    async def list_sessions(ctx: Context = None) -> str:
        return _extract_text(await _get_tools(ctx).list_sessions())

    @mcp.tool(
        name="restart_session",
        description="Restart the Codex worker behind a session.",
    )
    async def restart_session(session_id: str, ctx: Context = None) -> str:
        return _extract_text(await _get_tools(ctx).restart_session(session_id))

    @mcp.tool(
        name="end_session",
        description="End a session and terminate its Codex worker.",
    )
    async def end_session(session_id: str, ctx: Context = None) -> str:
        return _extract_text(await _get_tools(ctx).end_session(session_id))

    @mcp.tool(
        name="cleanup_workspace",
        description="End every session bound to a working directory.",
    )
    async def cleanup_workspace(cwd: str, ctx: Context = None) -> str:
        return _extract_text(await _get_tools(ctx).cleanup_workspace(cwd))
