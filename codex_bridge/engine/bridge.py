"""CodexBridge: the entry point collaborators talk to.

Wires together the provider, session registry, and result cache.
Broker failures never escape send_command(): they come back as
Response(success=False) carrying a category label, so callers can
branch on the label instead of on exception types.
"""
from __future__ import annotations

import logging
import uuid

from .config import BridgeConfig, EventCallback
from .error_utils import categorize_error
from .errors import BridgeError, PageNotCachedError
from .models import (
    CancellationToken,
    Command,
    ConsultResult,
    EventListener,
    HealthReport,
    Page,
    Response,
    SessionInfo,
)
from .pagination import paginate
from .providers.base import Provider
from .providers.codex_provider import CodexProvider, build_exec_args
from .result_cache import ResultCache, fingerprint
from .session_registry import SessionRegistry
from .worker import WorkerHandle
from .workspace import workspace_id

logger = logging.getLogger(__name__)


def build_prompt(prompt: str, context: str | None = None) -> str:
    if context:
        return f"Context:\n{context}\n\nRequest:\n{prompt}"
    return prompt


def failure_response(exc: BaseException, request_id: str | None = None) -> Response:
    """Turn a broker failure into a failed Response with a category label."""
    categorized = categorize_error(exc)
    return Response(
        text="",
        success=False,
        error=str(exc),
        category=categorized.category.value,
        request_id=request_id or getattr(exc, "request_id", None),
    )


class CodexBridge:
    """Session-aware broker in front of the Codex CLI."""

    def __init__(
        self,
        config: BridgeConfig | None = None,
        provider: Provider | None = None,
        *,
        cache: ResultCache | None = None,
        event_callback: EventCallback | None = None,
    ) -> None:
        self._config = config or BridgeConfig()
        self._provider = provider or CodexProvider.from_config(self._config)
        self._registry = SessionRegistry(
            self._provider, self._config, event_callback=event_callback,
        )
        self._cache = cache or ResultCache(
            ttl=self._config.cache_ttl,
            max_entries=self._config.cache_max_entries,
        )

    @property
    def config(self) -> BridgeConfig:
        return self._config

    @property
    def provider(self) -> Provider:
        return self._provider

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def cache(self) -> ResultCache:
        return self._cache

    async def start(self) -> None:
        if not self._provider.is_available():
            logger.warning(
                "'%s' not found on PATH; sessions will fail until it is installed",
                self._provider.command,
            )
        self._registry.start_sweeper(self._cache)
        logger.info(
            "CodexBridge started (mode=%s, max_sessions=%d)",
            self._config.channel_mode, self._config.max_sessions,
        )

    async def shutdown(self) -> None:
        await self._registry.shutdown()
        await self._provider.shutdown()
        self._cache.clear()
        logger.info("CodexBridge shut down")

    async def __aenter__(self) -> CodexBridge:
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.shutdown()

    # -- Sessions --

    def default_session_id(self, workspace_path: str | None = None) -> str:
        """Session id used when a caller does not name one: one per workspace."""
        return f"ws-{workspace_id(workspace_path or self._config.default_cwd)}"

    async def get_or_create_session(
        self,
        session_id: str | None = None,
        workspace_path: str | None = None,
    ) -> tuple[str, WorkerHandle]:
        session_id = session_id or uuid.uuid4().hex
        handle = await self._registry.get_or_create(session_id, workspace_path)
        return session_id, handle

    async def send_command(
        self,
        session_id: str,
        command: Command,
        workspace_path: str | None = None,
        on_event: EventListener | None = None,
    ) -> Response:
        """Run *command* in the session, creating the session if needed."""
        try:
            handle = await self._registry.get_or_create(session_id, workspace_path)
            response = await handle.send(command, on_event=on_event)
        except BridgeError as exc:
            logger.warning("Command failed for session %s: %s", session_id[:8], exc)
            self._registry.record_dispatch(session_id, success=False)
            return failure_response(exc)

        self._registry.record_dispatch(session_id, success=response.success)
        if not response.success and response.category is None:
            response.category = categorize_error(
                response.error or "unknown error"
            ).category.value
        return response

    async def restart_session(self, session_id: str) -> None:
        await self._registry.restart(session_id)

    async def destroy_session(self, session_id: str) -> bool:
        return await self._registry.destroy(session_id)

    def health_check(self, session_id: str | None = None) -> HealthReport:
        return self._registry.health_check(session_id)

    def list_sessions(self) -> list[SessionInfo]:
        return self._registry.list_sessions()

    async def cleanup_workspace(self, workspace_path: str) -> int:
        return await self._registry.cleanup_workspace(workspace_id(workspace_path))

    # -- Results --

    def get_cache_entry(self, key: str) -> str | None:
        return self._cache.lookup(key)

    def paginate(
        self,
        text: str,
        max_tokens_per_page: int | None = None,
        page: int = 1,
    ) -> Page:
        return paginate(text, max_tokens_per_page or self._config.max_tokens_per_page, page)

    async def consult(
        self,
        prompt: str,
        *,
        context: str | None = None,
        model: str | None = None,
        session_id: str | None = None,
        workspace_path: str | None = None,
        page: int = 1,
        max_tokens_per_page: int | None = None,
        timeout: float | None = None,
        cancel_token: CancellationToken | None = None,
        on_event: EventListener | None = None,
    ) -> ConsultResult:
        """Ask Codex a question and return one page of the answer.

        Page 1 (or lower) always invokes the CLI and caches the full text.
        Later pages are served from the cache only; a cache miss fails
        with category cache_miss and never re-runs the CLI.
        """
        workspace_path = workspace_path or self._config.default_cwd
        session_id = session_id or self.default_session_id(workspace_path)
        model = model or self._config.default_model
        max_tokens = max_tokens_per_page or self._config.max_tokens_per_page
        key = fingerprint(prompt, session_id, context, model)

        if page > 1:
            text = self._cache.lookup(key)
            if text is None:
                logger.info("Page %d requested for uncached result %s", page, key[:12])
                return ConsultResult(
                    response=failure_response(PageNotCachedError(key, page)),
                    fingerprint=key,
                    session_id=session_id,
                )
            result_page = paginate(text, max_tokens, page)
            return ConsultResult(
                response=Response(text=result_page.content),
                fingerprint=key,
                page=result_page,
                session_id=session_id,
            )

        try:
            _, handle = await self.get_or_create_session(session_id, workspace_path)
        except BridgeError as exc:
            logger.warning("Could not open session %s: %s", session_id[:8], exc)
            return ConsultResult(
                response=failure_response(exc),
                fingerprint=key,
                session_id=session_id,
            )

        caps = handle.capabilities
        command = Command(
            args=build_exec_args(
                model=model,
                json_output=caps is not None and caps.supports_json,
            ),
            input_text=build_prompt(prompt, context),
            timeout=timeout,
            cancel_token=cancel_token,
        )
        response = await self.send_command(
            session_id, command, workspace_path, on_event=on_event,
        )
        if not response.success:
            return ConsultResult(response=response, fingerprint=key, session_id=session_id)

        self._cache.store(key, response.text)
        result_page = paginate(response.text, max_tokens, 1)
        return ConsultResult(
            response=Response(
                text=result_page.content,
                exit_code=response.exit_code,
                request_id=response.request_id,
            ),
            fingerprint=key,
            page=result_page,
            session_id=session_id,
        )
