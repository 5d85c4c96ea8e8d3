"""State machine driving one logical conversation turn.

A turn streams the model's answer, recovers from the failure modes the
service is known to exhibit, and loops through tool continuations until
the model produces a final response:

* an error payload embedded in the stream, or an HTTP 401/403/429, forces a
  token refresh and resubmits the same request once per turn;
* a stream that ends without answer text is retried once as a plain
  (non-streaming) request;
* a tool-call response runs the requested tools and re-enters streaming
  with their results under the same conversation state.

The loop replaces recursion, so deep tool chains never grow the stack.
"""

from __future__ import annotations

import json
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Protocol, Sequence

from ...services.credentials import SessionTokenManager
from ...services.settings import Settings
from ...utils.awaitables import call_maybe_async
from ...utils.logging import request_context
from ..client import StreamingClient
from ..errors import AUTH_STATUS_CODES, ConvoflowError
from . import request_factory
from .conversation import ConversationManager
from .events import (
    CreatedEvent,
    DeltaEvent,
    DiagnosticEvent,
    ErrorEvent,
    parse_stream_event,
)
from .response_parser import parse_response
from .tool_executor import ToolExecutionCoordinator
from .types import ConversationState, ParsedResponse, ResponseKind, StreamRequest, ToolUsage, WebSource

__all__ = [
    "TurnState",
    "StreamListener",
    "BaseStreamListener",
    "StreamProcessor",
]

LOGGER = logging.getLogger(__name__)

_TRANSITION_HISTORY = 64


class TurnState(str, Enum):
    STARTED = "started"
    STREAMING = "streaming"
    RETRY_JSON_ERROR = "retry_json_error"
    RETRY_HTTP_ERROR = "retry_http_error"
    COMPLETED_EMPTY = "completed_empty"
    NON_STREAM_FALLBACK = "non_stream_fallback"
    TOOL_CONTINUATION = "tool_continuation"
    FINALIZING = "finalizing"


# -----------------------------------------------------------------------------
# Listener
# -----------------------------------------------------------------------------


class StreamListener(Protocol):
    """Callbacks emitted for one turn; each may be sync or async.

    ``on_stream_completed`` or ``on_stream_error`` is always the last
    callback of a turn. A cancelled turn emits nothing further.
    """

    def on_stream_started(self, request_id: str) -> Any: ...

    def on_stream_partial_update(self, request_id: str, text: str, is_thinking: bool) -> Any: ...

    def on_stream_completed(self, request_id: str, response: ParsedResponse) -> Any: ...

    def on_stream_error(self, request_id: str, message: str, cause: BaseException | None) -> Any: ...

    def on_conversation_state_updated(self, state: ConversationState) -> Any: ...

    def on_tool_execution(self, request_id: str, usages: Sequence[ToolUsage]) -> Any: ...


class BaseStreamListener:
    """No-op listener; subclass and override what you need."""

    def on_stream_started(self, request_id: str) -> None:
        pass

    def on_stream_partial_update(self, request_id: str, text: str, is_thinking: bool) -> None:
        pass

    def on_stream_completed(self, request_id: str, response: ParsedResponse) -> None:
        pass

    def on_stream_error(self, request_id: str, message: str, cause: BaseException | None) -> None:
        pass

    def on_conversation_state_updated(self, state: ConversationState) -> None:
        pass

    def on_tool_execution(self, request_id: str, usages: Sequence[ToolUsage]) -> None:
        pass


# -----------------------------------------------------------------------------
# Turn bookkeeping
# -----------------------------------------------------------------------------


class _TurnFailure(Exception):
    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        self.message = message
        self.cause = cause
        super().__init__(message)


@dataclass(slots=True)
class _Turn:
    request: StreamRequest
    listener: Any
    transitions: list[TurnState] = field(default_factory=list)
    json_retry_used: bool = False
    http_retry_used: bool = False
    tool_iterations: int = 0
    raw_log: list[str] = field(default_factory=list)
    sources: Dict[str, WebSource] = field(default_factory=dict)
    usage: Dict[str, Any] | None = None
    thinking: str = ""

    @property
    def request_id(self) -> str:
        return self.request.request_id

    @property
    def state(self) -> ConversationState:
        return self.request.conversation_state

    def enter(self, state: TurnState) -> None:
        self.transitions.append(state)
        LOGGER.debug("Turn %s -> %s", self.request_id, state.value)

    async def emit(self, name: str, *args: Any) -> None:
        await call_maybe_async(getattr(self.listener, name, None), *args)


class _RoundHandler:
    """Transport handler for one streamed exchange of a turn."""

    def __init__(self, processor: StreamProcessor, turn: _Turn) -> None:
        self._processor = processor
        self._turn = turn
        self.answer = ""
        self.thinking = ""
        self.error_event: ErrorEvent | None = None
        self.http_error: tuple[str, int] | None = None
        self.completed = False

    @property
    def _silenced(self) -> bool:
        return self.error_event is not None or self._processor.is_cancelled(self._turn.request_id)

    async def on_delta(self, chunk: Mapping[str, Any]) -> None:
        if self._silenced:
            return
        turn = self._turn
        turn.raw_log.append("data: " + json.dumps(dict(chunk), ensure_ascii=False, default=str) + "\n")
        event = parse_stream_event(chunk)

        if isinstance(event, DiagnosticEvent):
            LOGGER.debug("Undecodable stream line for %s: %.200s", turn.request_id, event.raw)
        elif isinstance(event, ErrorEvent):
            LOGGER.warning("Error payload in stream %s: %s", turn.request_id, event.message)
            self.error_event = event
            self._processor.abort_stream(turn.request_id)
        elif isinstance(event, CreatedEvent):
            if turn.state.update_from_created(event.chat_id, event.response_id):
                await turn.emit("on_conversation_state_updated", turn.state)
        elif isinstance(event, DeltaEvent):
            await self._on_delta_event(event)

    async def _on_delta_event(self, event: DeltaEvent) -> None:
        turn = self._turn
        for source in event.sources:
            turn.sources.setdefault(source.url, source)
        if event.content:
            if event.is_thinking:
                self.thinking += event.content
                await turn.emit("on_stream_partial_update", turn.request_id, self.thinking, True)
            elif event.is_answer:
                self.answer += event.content
                await turn.emit("on_stream_partial_update", turn.request_id, self.answer, False)
        if event.is_finished:
            LOGGER.debug("Phase %s finished for %s", event.phase, turn.request_id)

    def on_usage(self, usage: Mapping[str, Any]) -> None:
        if not self._silenced:
            self._turn.usage = dict(usage)

    def on_error(self, message: str, status_code: int) -> None:
        self.http_error = (message, status_code)

    def on_complete(self) -> None:
        self.completed = True


# -----------------------------------------------------------------------------
# Processor
# -----------------------------------------------------------------------------


class StreamProcessor:
    """Runs conversation turns against the streaming service."""

    def __init__(
        self,
        client: StreamingClient,
        tokens: SessionTokenManager,
        conversations: ConversationManager,
        coordinator: ToolExecutionCoordinator,
        settings: Settings,
    ) -> None:
        self._client = client
        self._tokens = tokens
        self._conversations = conversations
        self._coordinator = coordinator
        self._settings = settings
        self._cancelled: set[str] = set()
        self._transitions: OrderedDict[str, list[TurnState]] = OrderedDict()

    def is_cancelled(self, request_id: str) -> bool:
        return request_id in self._cancelled

    def cancel(self, request_id: str) -> bool:
        """Stop delivering callbacks for ``request_id`` and close its stream."""
        self._cancelled.add(request_id)
        return self._client.cancel(request_id)

    def abort_stream(self, request_id: str) -> None:
        self._client.cancel(request_id)

    def forget(self, request_id: str) -> None:
        self._cancelled.discard(request_id)

    def transitions(self, request_id: str) -> list[TurnState]:
        """States visited by a turn; kept for the most recent turns only."""
        return list(self._transitions.get(request_id, ()))

    def _track(self, turn: _Turn) -> None:
        self._transitions[turn.request_id] = turn.transitions
        self._transitions.move_to_end(turn.request_id)
        while len(self._transitions) > _TRANSITION_HISTORY:
            self._transitions.popitem(last=False)

    async def run(self, request: StreamRequest, listener: Any) -> ParsedResponse | None:
        """Drive one logical turn to its terminal callback.

        Returns:
            The final response, or None when the turn failed or was
            cancelled. Log records emitted meanwhile carry the request id.
        """
        with request_context(request.request_id):
            return await self._run(request, listener)

    async def _run(self, request: StreamRequest, listener: Any) -> ParsedResponse | None:
        turn = _Turn(request=request, listener=listener)
        self._track(turn)
        turn.enter(TurnState.STARTED)
        try:
            await turn.emit("on_stream_started", request.request_id)
            result = await self._drive(turn)
        except _TurnFailure as failure:
            return await self._fail(turn, failure.message, failure.cause)
        except ConvoflowError as exc:
            return await self._fail(turn, str(exc), exc)
        except Exception as exc:
            LOGGER.exception("Turn %s failed unexpectedly", request.request_id)
            return await self._fail(turn, f"Error: {exc}", exc)

        if result is None or self.is_cancelled(request.request_id):
            LOGGER.info("Turn %s cancelled", request.request_id)
            self.forget(request.request_id)
            return None
        await turn.emit("on_stream_completed", request.request_id, result)
        return result

    async def _fail(self, turn: _Turn, message: str, cause: BaseException | None = None) -> None:
        if self.is_cancelled(turn.request_id):
            self.forget(turn.request_id)
            return None
        if TurnState.FINALIZING not in turn.transitions:
            turn.enter(TurnState.FINALIZING)
        LOGGER.warning("Turn %s failed: %s", turn.request_id, message)
        await turn.emit("on_stream_error", turn.request_id, message, cause)
        return None

    async def _drive(self, turn: _Turn) -> ParsedResponse | None:
        request = turn.request
        state = turn.state
        conversation_id = await self._conversations.start_or_continue(
            state, request.model, request.web_search_enabled
        )
        if conversation_id != state.conversation_id:
            state.conversation_id = conversation_id
            await turn.emit("on_conversation_state_updated", state)

        body = request_factory.build_completion_body(request)
        while True:
            if self.is_cancelled(turn.request_id):
                return None
            handler = await self._stream_round(turn, body)
            if self.is_cancelled(turn.request_id):
                return None

            if handler.error_event is not None:
                if turn.json_retry_used:
                    raise _TurnFailure(f"Server error: {handler.error_event.message}")
                turn.json_retry_used = True
                turn.enter(TurnState.RETRY_JSON_ERROR)
                await self._tokens.ensure_token(force_refresh=True)
                continue

            if handler.http_error is not None:
                message, status_code = handler.http_error
                text = f"HTTP {status_code}: {message}" if status_code > 0 else message
                if status_code not in AUTH_STATUS_CODES or turn.http_retry_used:
                    raise _TurnFailure(text)
                turn.http_retry_used = True
                turn.enter(TurnState.RETRY_HTTP_ERROR)
                await self._tokens.ensure_token(force_refresh=True)
                continue

            answer = handler.answer
            turn.thinking = handler.thinking
            if not answer.strip():
                answer = await self._fallback(turn, body)

            turn.enter(TurnState.FINALIZING)
            parsed = parse_response(answer, "".join(turn.raw_log))
            if parsed.kind is ResponseKind.TOOL_CALL:
                body = await self._continue_with_tools(turn, parsed)
                continue

            return parsed.with_context(
                thinking=turn.thinking,
                web_sources=list(turn.sources.values()),
                usage=turn.usage,
            )

    async def _stream_round(self, turn: _Turn, body: Mapping[str, Any]) -> _RoundHandler:
        turn.enter(TurnState.STREAMING)
        token = await self._tokens.ensure_token()
        headers = request_factory.build_headers(
            self._settings,
            token,
            turn.state.conversation_id,
            accept=request_factory.ACCEPT_STREAM,
        )
        handler = _RoundHandler(self, turn)
        await self._client.open_stream_with_retry(
            request_factory.completion_url(self._settings, turn.state),
            headers,
            body,
            self._settings.stream_max_attempts,
            self._settings.stream_backoff_seconds,
            handler,
            stream_id=turn.request_id,
        )
        return handler

    async def _fallback(self, turn: _Turn, body: Mapping[str, Any]) -> str:
        turn.enter(TurnState.COMPLETED_EMPTY)
        turn.enter(TurnState.NON_STREAM_FALLBACK)
        LOGGER.info("Empty stream for %s; retrying without streaming", turn.request_id)
        try:
            token = await self._tokens.ensure_token()
            headers = request_factory.build_headers(
                self._settings,
                token,
                turn.state.conversation_id,
                accept=request_factory.ACCEPT_JSON,
            )
            text = await self._client.post_json(
                request_factory.completion_url(self._settings, turn.state),
                headers,
                request_factory.as_non_streaming(body),
            )
        except ConvoflowError as exc:
            raise _TurnFailure("Non-streaming fallback failed", exc) from exc
        turn.raw_log.append(text if text.endswith("\n") else text + "\n")
        answer = request_factory.extract_completion_text(text)
        if not answer.strip():
            raise _TurnFailure("Empty response from model")
        return answer

    async def _continue_with_tools(self, turn: _Turn, parsed: ParsedResponse) -> Dict[str, Any]:
        limit = self._settings.max_tool_iterations
        if turn.tool_iterations >= limit:
            raise _TurnFailure(f"Tool continuation limit of {limit} reached")
        turn.tool_iterations += 1
        turn.enter(TurnState.TOOL_CONTINUATION)
        LOGGER.info(
            "Turn %s requested %d tool(s) (iteration %d)",
            turn.request_id,
            len(parsed.tool_calls),
            turn.tool_iterations,
        )
        batch = await self._coordinator.execute_tools(parsed.tool_calls)
        if self.is_cancelled(turn.request_id):
            return {}
        await turn.emit("on_tool_execution", turn.request_id, list(batch.usages))
        return request_factory.build_continuation_body(turn.request, batch.continuation_payload())
