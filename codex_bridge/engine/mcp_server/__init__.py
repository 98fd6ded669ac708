"""MCP stdio server for the Codex bridge."""
