"""OpenAI Codex CLI provider.

Two channel modes:
- exec: one `codex exec` subprocess per command (default)
- mcp:  a persistent `codex mcp-server` subprocess per worker, driven
  with JSON-RPC tools/call requests over stdio

Auth: Works with OAuth by default. If api_key_env is set and the env
var exists, it's passed to the subprocess environment as
OPENAI_API_KEY.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
from typing import Any

from ..errors import ChannelClosedError, ToolUnavailableError, WorkspaceUnavailableError
from ..models import ChannelMode, Command, EventListener, Response, StreamingEvent
from .base import Channel, ProbeOutput, Provider, deliver_event, terminate_process

logger = logging.getLogger(__name__)

MCP_PROTOCOL_VERSION = "2024-11-05"
_CLIENT_INFO = {"name": "codex-bridge", "version": "0.1.0"}
_RESULT_EVENT_TYPES = ("result", "completion")
_TOKENS_USED_MARKER = "tokens used:"


def spawn_error(command: str, cwd: str | None, exc: OSError) -> Exception:
    """Bridge error for a failed subprocess spawn.

    The OS reports a missing working directory with the same
    FileNotFoundError as a missing binary, so the cwd is checked first.
    """
    if cwd is not None and not os.path.isdir(cwd):
        return WorkspaceUnavailableError(cwd)
    if isinstance(exc, PermissionError):
        return ToolUnavailableError(command, "not executable")
    return ToolUnavailableError(command)


def build_exec_args(
    *,
    model: str | None = None,
    json_output: bool = False,
    full_auto: bool = True,
    extra_args: list[str] | None = None,
) -> list[str]:
    """Arguments for a `codex exec` run that reads its prompt from stdin."""
    args = ["exec"]
    if model:
        args.extend(["--model", model])
    if json_output:
        # Structured JSONL output for event parsing
        args.append("--json")
    if full_auto:
        # No interactive permission prompts
        args.append("--full-auto")
    args.append("--skip-git-repo-check")
    if extra_args:
        args.extend(extra_args)
    # Pass prompt via stdin to avoid OS argv length limits.
    args.append("-")
    return args


def model_from_args(args: list[str]) -> str | None:
    for i, arg in enumerate(args):
        if arg in ("--model", "-m") and i + 1 < len(args):
            return args[i + 1]
        if arg.startswith("--model="):
            return arg.split("=", 1)[1]
    return None


def parse_event_line(line: str) -> StreamingEvent:
    """Turn one stdout line into an event.

    JSON objects become typed events; anything else is plain progress
    text.
    """
    try:
        obj = json.loads(line)
    except json.JSONDecodeError:
        return StreamingEvent(type="progress", data={"text": line})
    if not isinstance(obj, dict):
        return StreamingEvent(type="progress", data={"text": line})

    event_type = obj.get("type")
    msg = obj.get("msg")
    if not event_type and isinstance(msg, dict):
        event_type = msg.get("type")
    return StreamingEvent(type=str(event_type or "message"), data=obj)


def event_result_text(event: StreamingEvent) -> str | None:
    """Final assistant text carried by an event, if any."""
    data = event.data
    if not isinstance(data, dict):
        return None
    if event.type in _RESULT_EVENT_TYPES:
        text = data.get("text")
        if text is None and isinstance(data.get("data"), dict):
            text = data["data"].get("text")
        return text
    item = data.get("item")
    if event.type == "item.completed" and isinstance(item, dict):
        if item.get("type") == "agent_message":
            return item.get("text")
    msg = data.get("msg")
    if isinstance(msg, dict) and msg.get("type") == "agent_message":
        return msg.get("message")
    return None


def extract_response_text(output: str) -> str:
    """Pull the assistant reply out of human-readable `codex exec` output.

    The reply follows the last "codex" speaker header and ends before the
    "tokens used:" footer. Falls back to the whole trimmed output.
    """
    lines = output.split("\n")
    start = None
    for i, line in enumerate(lines):
        stripped = line.strip().lower()
        if stripped == "codex" or (stripped.startswith("[") and stripped.endswith("] codex")):
            start = i + 1
    if start is None:
        return output.strip()

    body: list[str] = []
    for line in lines[start:]:
        if _TOKENS_USED_MARKER in line.lower():
            break
        body.append(line)
    text = "\n".join(body).strip()
    return text or output.strip()


class ExecChannel(Channel):
    """Runs each command as its own `codex <args>` subprocess."""

    def __init__(
        self,
        command: str,
        cwd: str,
        env: dict[str, str] | None = None,
        kill_grace: float = 5.0,
    ) -> None:
        self._command = command
        self._cwd = cwd
        self._env = env
        self._kill_grace = kill_grace
        self._proc: asyncio.subprocess.Process | None = None
        self._closed = False
        self._interrupted = False

    @property
    def is_alive(self) -> bool:
        return not self._closed

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    async def execute(
        self,
        command: Command,
        request_id: str,
        on_event: EventListener | None = None,
    ) -> Response:
        if self._closed:
            raise ChannelClosedError("exec channel is closed")
        self._interrupted = False

        try:
            # create_subprocess_exec passes args as array, no shell
            proc = await asyncio.create_subprocess_exec(
                self._command, *command.args,
                stdin=(
                    asyncio.subprocess.PIPE
                    if command.input_text is not None
                    else asyncio.subprocess.DEVNULL
                ),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._cwd,
                env=self._env,
            )
        except (FileNotFoundError, NotADirectoryError, PermissionError) as exc:
            raise spawn_error(self._command, self._cwd, exc) from exc

        self._proc = proc
        logger.debug(
            "codex exec started for %s (pid=%d, args=%s)",
            request_id, proc.pid, command.args,
        )
        stderr_task = asyncio.ensure_future(proc.stderr.read())
        lines: list[str] = []
        result_text: str | None = None
        try:
            if command.input_text is not None and proc.stdin is not None:
                try:
                    proc.stdin.write(command.input_text.encode("utf-8"))
                    await proc.stdin.drain()
                    proc.stdin.close()
                except (BrokenPipeError, ConnectionResetError):
                    logger.debug("codex closed stdin early for %s", request_id)

            while True:
                raw = await proc.stdout.readline()
                if not raw:
                    break
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                lines.append(line)
                if not line.strip():
                    continue
                event = parse_event_line(line)
                text = event_result_text(event)
                if text is not None:
                    result_text = text
                await deliver_event(on_event, event)

            returncode = await proc.wait()
            stderr = (await stderr_task).decode("utf-8", errors="replace")
        except asyncio.CancelledError:
            stderr_task.cancel()
            await terminate_process(proc, self._kill_grace)
            raise
        finally:
            self._proc = None

        if self._closed:
            raise ChannelClosedError("exec channel closed while command was running")
        if returncode < 0 and not self._interrupted:
            # Killed by a signal the bridge did not send.
            self._closed = True
            raise ChannelClosedError(f"codex exited on signal {-returncode}")

        output = "\n".join(lines)
        if self._interrupted:
            return Response(
                text=output,
                success=False,
                error=f"Request {request_id} was interrupted",
                exit_code=returncode,
            )
        if returncode != 0:
            error = stderr.strip() or f"codex exited with code {returncode}"
            return Response(
                text=output,
                success=False,
                error=error,
                exit_code=returncode,
            )
        if result_text is None:
            result_text = extract_response_text(output)
        return Response(text=result_text, success=True, exit_code=0)

    async def interrupt(self) -> None:
        proc = self._proc
        if proc is None or proc.returncode is not None:
            return
        self._interrupted = True
        logger.info("Interrupting codex exec (pid=%d)", proc.pid)
        await terminate_process(proc, self._kill_grace)

    async def close(self, grace: float = 5.0) -> None:
        self._closed = True
        proc = self._proc
        if proc is not None:
            await terminate_process(proc, grace)


class McpServerChannel(Channel):
    """Persistent `codex mcp-server` driven over JSON-RPC on stdio."""

    def __init__(
        self,
        command: str,
        cwd: str,
        env: dict[str, str] | None = None,
        default_model: str | None = None,
        handshake_timeout: float = 10.0,
    ) -> None:
        self._command = command
        self._cwd = cwd
        self._env = env
        self._default_model = default_model
        self._handshake_timeout = handshake_timeout
        self._proc: asyncio.subprocess.Process | None = None
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._stderr_task: asyncio.Task | None = None
        self._rpc_id = 0
        self._inflight_id: int | None = None
        self._closed = False

    @property
    def is_alive(self) -> bool:
        return (
            not self._closed
            and self._proc is not None
            and self._proc.returncode is None
        )

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    async def open(self) -> None:
        try:
            proc = await asyncio.create_subprocess_exec(
                self._command, "mcp-server",
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._cwd,
                env=self._env,
            )
        except (FileNotFoundError, NotADirectoryError, PermissionError) as exc:
            raise spawn_error(self._command, self._cwd, exc) from exc

        self._proc = proc
        self._reader = proc.stdout
        self._writer = proc.stdin
        self._stderr_task = asyncio.ensure_future(self._drain_stderr(proc))
        logger.info("Codex MCP server started (pid=%d, cwd=%s)", proc.pid, self._cwd)

        try:
            rpc_id = await self._send_request("initialize", {
                "protocolVersion": MCP_PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": _CLIENT_INFO,
            })
            await asyncio.wait_for(
                self._read_until(rpc_id, None),
                timeout=self._handshake_timeout,
            )
            await self._send_notification("notifications/initialized", {})
        except BaseException:
            await self.close(grace=1.0)
            raise

    async def _drain_stderr(self, proc: asyncio.subprocess.Process) -> None:
        while True:
            line = await proc.stderr.readline()
            if not line:
                return
            logger.debug(
                "codex mcp-server[%d]: %s",
                proc.pid, line.decode("utf-8", errors="replace").rstrip(),
            )

    async def _write(self, message: dict[str, Any]) -> None:
        if self._writer is None or not self.is_alive:
            raise ChannelClosedError("MCP server is not running")
        try:
            self._writer.write(json.dumps(message).encode("utf-8") + b"\n")
            await self._writer.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise ChannelClosedError(f"MCP server pipe closed: {exc}") from exc

    async def _send_request(self, method: str, params: dict[str, Any]) -> int:
        self._rpc_id += 1
        await self._write({
            "jsonrpc": "2.0",
            "id": self._rpc_id,
            "method": method,
            "params": params,
        })
        return self._rpc_id

    async def _send_notification(self, method: str, params: dict[str, Any]) -> None:
        await self._write({"jsonrpc": "2.0", "method": method, "params": params})

    async def _read_until(
        self,
        rpc_id: int,
        on_event: EventListener | None,
    ) -> dict[str, Any]:
        """Read lines until the response for *rpc_id*.

        Codex emits event notifications before the tools/call response;
        those are forwarded to *on_event*.
        """
        assert self._reader is not None
        while True:
            line = await self._reader.readline()
            if not line:
                self._closed = True
                raise ChannelClosedError("MCP server closed connection")

            try:
                message = json.loads(line.decode("utf-8", errors="replace"))
            except json.JSONDecodeError:
                logger.debug("Skipping non-JSON MCP line from codex")
                continue
            if not isinstance(message, dict):
                continue

            message_id = message.get("id")
            if message_id is None:
                if message.get("method") == "codex/event":
                    params = message.get("params") or {}
                    msg = params.get("msg") if isinstance(params, dict) else None
                    event_type = msg.get("type") if isinstance(msg, dict) else None
                    await deliver_event(
                        on_event,
                        StreamingEvent(type=str(event_type or "progress"), data=params),
                    )
                continue
            if message_id != rpc_id:
                continue
            return message

    async def execute(
        self,
        command: Command,
        request_id: str,
        on_event: EventListener | None = None,
    ) -> Response:
        arguments: dict[str, Any] = {"prompt": command.prompt, "cwd": self._cwd}
        model = model_from_args(command.args) or self._default_model
        if model:
            arguments["model"] = model

        rpc_id = await self._send_request(
            "tools/call", {"name": "codex", "arguments": arguments},
        )
        self._inflight_id = rpc_id
        try:
            message = await self._read_until(rpc_id, on_event)
        finally:
            self._inflight_id = None

        if "error" in message:
            error = message["error"]
            text = error.get("message") if isinstance(error, dict) else str(error)
            return Response(text="", success=False, error=text or "MCP error")

        result = message.get("result") or {}
        text_parts = [
            item.get("text", "")
            for item in result.get("content", [])
            if isinstance(item, dict) and item.get("type") == "text"
        ]
        text = "\n".join(text_parts)
        if result.get("isError"):
            return Response(text=text, success=False, error=text or "codex tool error")
        return Response(text=text, success=True)

    async def interrupt(self) -> None:
        if self._inflight_id is None or not self.is_alive:
            return
        logger.info("Cancelling MCP request %d", self._inflight_id)
        try:
            await self._send_notification("notifications/cancelled", {
                "requestId": self._inflight_id,
                "reason": "deadline exceeded",
            })
        except ChannelClosedError:
            pass

    async def close(self, grace: float = 5.0) -> None:
        self._closed = True
        proc = self._proc
        if proc is None:
            return
        if self._writer is not None and not self._writer.is_closing():
            self._writer.close()
        await terminate_process(proc, grace)
        if self._stderr_task is not None:
            self._stderr_task.cancel()
        logger.info("Codex MCP server stopped (pid=%d)", proc.pid)


class CodexProvider(Provider):
    """Provider backed by the OpenAI Codex CLI."""

    def __init__(
        self,
        command: str = "codex",
        api_key_env: str | None = None,
        default_model: str | None = None,
        channel_mode: str = ChannelMode.EXEC.value,
        extra_env: dict[str, str] | None = None,
        kill_grace: float = 5.0,
    ) -> None:
        self._command = self.resolve_command(command, "codex")
        self._api_key_env = api_key_env
        self._default_model = default_model
        self._channel_mode = ChannelMode(channel_mode)
        self._extra_env = dict(extra_env or {})
        self._kill_grace = kill_grace

    @classmethod
    def from_config(cls, config) -> CodexProvider:
        return cls(
            command=config.command,
            api_key_env=config.api_key_env,
            default_model=config.default_model,
            channel_mode=config.channel_mode,
            extra_env=config.extra_env,
            kill_grace=config.kill_grace,
        )

    @property
    def name(self) -> str:
        return "codex"

    @property
    def command(self) -> str:
        return self._command

    @property
    def channel_mode(self) -> ChannelMode:
        return self._channel_mode

    def _build_env(self) -> dict[str, str] | None:
        """Build subprocess environment with optional API key."""
        env: dict[str, str] | None = None
        if self._api_key_env:
            key = os.environ.get(self._api_key_env)
            if key:
                env = os.environ.copy()
                env["OPENAI_API_KEY"] = key
        if self._extra_env:
            env = env if env is not None else os.environ.copy()
            env.update(self._extra_env)
        return env

    def is_available(self) -> bool:
        """Check if codex CLI is installed."""
        return shutil.which(self._command) is not None

    def open_channel(self, cwd: str) -> Channel:
        if self._channel_mode is ChannelMode.MCP:
            return McpServerChannel(
                self._command, cwd,
                env=self._build_env(),
                default_model=self._default_model,
            )
        return ExecChannel(
            self._command, cwd,
            env=self._build_env(),
            kill_grace=self._kill_grace,
        )

    async def probe(
        self,
        args: list[str],
        *,
        cwd: str,
        timeout: float,
    ) -> ProbeOutput:
        try:
            proc = await asyncio.create_subprocess_exec(
                self._command, *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=self._build_env(),
            )
        except (FileNotFoundError, NotADirectoryError, PermissionError) as exc:
            raise spawn_error(self._command, cwd, exc) from exc

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        finally:
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()
        return ProbeOutput(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            returncode=proc.returncode,
        )
