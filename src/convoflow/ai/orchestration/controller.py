"""Public entry point: runs streamed conversation turns for a host."""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import Executor
from pathlib import Path
from typing import Any, Dict, List, Mapping

import httpx

from ...services.credentials import CredentialStore, SessionTokenManager
from ...services.settings import Settings, SettingsStore
from ..client import StreamingClient
from . import request_factory
from .conversation import ConversationManager
from .stream_processor import BaseStreamListener, StreamListener, StreamProcessor, TurnState
from .tool_executor import ToolExecutionCoordinator, ToolExecutor
from .types import ModelRef, ParsedResponse, StreamRequest

__all__ = [
    "ConversationEngine",
    "StreamListener",
    "BaseStreamListener",
]

LOGGER = logging.getLogger(__name__)


class _UnavailableToolExecutor:
    """Answers every tool call with an error when the host supplies none."""

    def execute(self, working_directory: Path, tool_name: str, args_json: str) -> Dict[str, Any]:
        return {"ok": False, "error": f"No tool executor is configured (requested '{tool_name}')"}


class ConversationEngine:
    """Conducts streamed conversation turns against the chat service.

    Each turn runs as its own asyncio task. Turns can be cancelled from any
    thread by request id; callbacks always fire on the engine's event loop.

    Example:
        engine = ConversationEngine(settings, executor, working_directory=root)
        request = engine.new_request("hi").build()
        task = engine.send_message_streaming(request, listener)
        await task
    """

    def __init__(
        self,
        settings: Settings | None = None,
        tool_executor: ToolExecutor | None = None,
        *,
        working_directory: Path | str | None = None,
        credential_store: CredentialStore | None = None,
        http_client: httpx.AsyncClient | None = None,
        tool_pool: Executor | None = None,
    ) -> None:
        self._settings = settings or Settings()
        self._client = StreamingClient(self._settings, client=http_client)
        self._tokens = SessionTokenManager(self._client, self._settings, store=credential_store)
        self._conversations = ConversationManager(self._client, self._tokens, self._settings)
        self._coordinator = ToolExecutionCoordinator(
            tool_executor or _UnavailableToolExecutor(),
            Path(working_directory) if working_directory is not None else Path.cwd(),
            pool=tool_pool,
            max_concurrency=self._settings.tool_concurrency,
            timeout=self._settings.tool_timeout,
        )
        self._processor = StreamProcessor(
            self._client,
            self._tokens,
            self._conversations,
            self._coordinator,
            self._settings,
        )
        self._tasks: Dict[str, asyncio.Task[ParsedResponse | None]] = {}
        self._tasks_lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._models_cache: List[ModelRef] | None = None
        self._models_lock = asyncio.Lock()

    @classmethod
    def from_settings_file(
        cls,
        path: Path | str | None = None,
        tool_executor: ToolExecutor | None = None,
        *,
        overrides: Mapping[str, Any] | None = None,
        **kwargs: Any,
    ) -> ConversationEngine:
        """Build an engine from persisted settings.

        ``path`` defaults to ``~/.convoflow/settings.json``; ``overrides``
        and ``CONVOFLOW_*`` variables are applied on top. Remaining keyword
        arguments go to the constructor.
        """

        store = SettingsStore(Path(path) if path is not None else None)
        settings = store.load(overrides=overrides)
        LOGGER.debug("Engine configured from %s (model %s)", store.path, settings.model)
        return cls(settings, tool_executor, **kwargs)

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def tokens(self) -> SessionTokenManager:
        return self._tokens

    def transitions(self, request_id: str) -> list[TurnState]:
        """States visited by the turn ``request_id``, in order."""

        return self._processor.transitions(request_id)

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------
    def new_request(self, message: str) -> StreamRequest.Builder:
        """Start a request builder preset with ``message`` and the configured model."""

        return StreamRequest.builder().message(message).model(self._settings.model)

    async def run_turn(
        self,
        request: StreamRequest,
        listener: StreamListener | None = None,
    ) -> ParsedResponse | None:
        """Run one turn to completion in the current task."""

        return await self._processor.run(request, listener or BaseStreamListener())

    def send_message_streaming(
        self,
        request: StreamRequest,
        listener: StreamListener | None = None,
    ) -> asyncio.Task[ParsedResponse | None]:
        """Start a turn in the background and return its task.

        Must be called from the engine's event loop.
        """

        loop = asyncio.get_running_loop()
        task = loop.create_task(self.run_turn(request, listener), name=f"convoflow-turn-{request.request_id}")
        with self._tasks_lock:
            self._loop = loop
            self._tasks[request.request_id] = task
        task.add_done_callback(lambda _task, rid=request.request_id: self._on_task_done(rid))
        return task

    def cancel_streaming(self, request_id: str) -> bool:
        """Cancel a running turn; safe to call from any thread."""

        with self._tasks_lock:
            task = self._tasks.get(request_id)
            loop = self._loop
        if task is None or task.done() or loop is None:
            return False
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._cancel_now(request_id, task)
        else:
            loop.call_soon_threadsafe(self._cancel_now, request_id, task)
        return True

    def active_requests(self) -> list[str]:
        with self._tasks_lock:
            return [rid for rid, task in self._tasks.items() if not task.done()]

    def _cancel_now(self, request_id: str, task: asyncio.Task[Any]) -> None:
        LOGGER.info("Cancelling turn %s", request_id)
        self._processor.cancel(request_id)
        task.cancel()

    def _on_task_done(self, request_id: str) -> None:
        with self._tasks_lock:
            self._tasks.pop(request_id, None)
        self._processor.forget(request_id)

    # ------------------------------------------------------------------
    # Models
    # ------------------------------------------------------------------
    async def list_models(self, *, force_refresh: bool = False) -> List[ModelRef]:
        """Return the server's model catalog, cached after the first call."""

        if self._models_cache is not None and not force_refresh:
            return list(self._models_cache)

        async with self._models_lock:
            if self._models_cache is not None and not force_refresh:
                return list(self._models_cache)

            token = await self._tokens.ensure_token()
            headers = request_factory.build_headers(self._settings, token)
            payload = await self._client.get_json_object(request_factory.models_url(self._settings), headers)
            data = payload.get("data")
            entries = data if isinstance(data, list) else [data] if isinstance(data, dict) else []
            models: List[ModelRef] = []
            for entry in entries:
                try:
                    models.append(ModelRef.from_catalog(entry))
                except (KeyError, TypeError, AttributeError) as exc:
                    LOGGER.debug("Skipping malformed model entry: %s", exc)
            self._models_cache = models
            return list(models)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def set_http_client(self, client: httpx.AsyncClient) -> None:
        """Use ``client`` for new requests; in-flight turns are unaffected."""

        self._client.set_http_client(client)

    async def aclose(self) -> None:
        """Cancel running turns and release network resources."""

        with self._tasks_lock:
            tasks = list(self._tasks.items())
        for request_id, task in tasks:
            if not task.done():
                self._cancel_now(request_id, task)
        if tasks:
            await asyncio.gather(*(task for _, task in tasks), return_exceptions=True)
        await self._client.aclose()
