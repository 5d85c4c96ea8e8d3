"""Line-oriented streaming HTTP transport built on ``httpx``."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Mapping, MutableMapping, Protocol

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_incrementing

from ..services.settings import Settings
from ..utils.awaitables import call_maybe_async
from .errors import RetryableStatusError, StreamTransportError

__all__ = [
    "DATA_PREFIX",
    "DONE_SENTINEL",
    "StreamHandler",
    "StreamingClient",
    "parse_stream_line",
]

LOGGER = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"
_RAW_KEY = "_raw"


class StreamHandler(Protocol):
    """Receives the events of one streaming exchange.

    Every method may be a plain function or a coroutine function.
    ``on_open`` and ``on_usage`` are optional.
    """

    def on_open(self) -> Any: ...

    def on_delta(self, chunk: Mapping[str, Any]) -> Any: ...

    def on_usage(self, usage: Mapping[str, Any]) -> Any: ...

    def on_error(self, message: str, status_code: int) -> Any: ...

    def on_complete(self) -> Any: ...


def parse_stream_line(line: str | None) -> Dict[str, Any] | None:
    """Decode one line of the event stream.

    Returns ``None`` for lines that carry no event (blank lines, the
    termination sentinel, comments). Malformed payloads are wrapped as
    ``{"_raw": text}`` rather than dropped.
    """

    if line is None:
        return None
    stripped = line.strip()
    if not stripped:
        return None
    if stripped.startswith(DATA_PREFIX):
        payload = stripped[len(DATA_PREFIX) :].strip()
    elif stripped.startswith("{") or stripped.startswith("["):
        payload = stripped
    else:
        return None
    if not payload or payload == DONE_SENTINEL:
        return None
    try:
        decoded = json.loads(payload)
    except json.JSONDecodeError:
        return {_RAW_KEY: payload}
    if isinstance(decoded, dict):
        return decoded
    return {_RAW_KEY: payload}


@dataclass(slots=True)
class _StreamSession:
    stream_id: str
    cancelled: bool = False
    delivered: bool = False
    response: httpx.Response | None = None


class StreamingClient:
    """Issues streaming and plain HTTP requests against the chat service.

    The shared ``httpx.AsyncClient`` may be supplied by the caller and
    swapped at runtime via :meth:`set_http_client`; sessions already in
    flight keep the client they were opened with.
    """

    def __init__(self, settings: Settings, *, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=self._timeout())
        self._retired: list[httpx.AsyncClient] = []
        self._sessions: MutableMapping[str, _StreamSession] = {}
        self._closing: set[asyncio.Task[None]] = set()

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def http_client(self) -> httpx.AsyncClient:
        return self._client

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------
    async def open_stream(
        self,
        url: str,
        headers: Mapping[str, str],
        body: Mapping[str, Any],
        handler: StreamHandler,
        *,
        stream_id: str | None = None,
    ) -> None:
        """Issue one streaming POST and feed every event to ``handler``."""

        await self.open_stream_with_retry(url, headers, body, 1, 0.0, handler, stream_id=stream_id)

    async def open_stream_with_retry(
        self,
        url: str,
        headers: Mapping[str, str],
        body: Mapping[str, Any],
        max_attempts: int,
        base_backoff: float,
        handler: StreamHandler,
        *,
        stream_id: str | None = None,
    ) -> None:
        """Issue a streaming POST, re-issuing it on 429/5xx or I/O failure.

        Retries happen only while no event has been delivered to the
        handler, waiting ``base_backoff * attempt`` seconds between
        attempts. ``on_complete`` is always the last callback unless the
        stream was cancelled.
        """

        session = self._register(stream_id)
        client = self._client
        self._log_payload(url, body)
        try:
            async for attempt in self._retrying(session, max_attempts, base_backoff):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        LOGGER.info(
                            "Retrying stream %s (attempt %s/%s)",
                            session.stream_id,
                            attempt.retry_state.attempt_number,
                            max_attempts,
                        )
                    await self._stream_once(client, session, url, headers, body, handler)
        except StreamTransportError as exc:
            if not session.cancelled:
                LOGGER.warning("Stream %s failed: %s", session.stream_id, exc)
                await call_maybe_async(handler.on_error, exc.message, exc.status_code)
        except httpx.HTTPError as exc:
            if not session.cancelled:
                LOGGER.warning("Stream %s failed: %s", session.stream_id, exc)
                await call_maybe_async(handler.on_error, str(exc) or type(exc).__name__, -1)
        finally:
            self._sessions.pop(session.stream_id, None)
        if not session.cancelled:
            await call_maybe_async(handler.on_complete)

    def cancel(self, stream_id: str) -> bool:
        """Abort an in-flight stream; no further callbacks are delivered."""

        session = self._sessions.get(stream_id)
        if session is None:
            return False
        session.cancelled = True
        response = session.response
        if response is not None and not response.is_closed:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
            if loop is not None:
                task = loop.create_task(response.aclose())
                self._closing.add(task)
                task.add_done_callback(self._closing.discard)
        LOGGER.debug("Stream %s cancelled", stream_id)
        return True

    def is_active(self, stream_id: str) -> bool:
        return stream_id in self._sessions

    async def _stream_once(
        self,
        client: httpx.AsyncClient,
        session: _StreamSession,
        url: str,
        headers: Mapping[str, str],
        body: Mapping[str, Any],
        handler: StreamHandler,
    ) -> None:
        request = client.build_request("POST", url, headers=dict(headers), json=dict(body))
        response = await client.send(request, stream=True)
        session.response = response
        try:
            if response.status_code >= 400:
                detail = (await response.aread()).decode("utf-8", errors="replace").strip()
                code = response.status_code
                message = detail or response.reason_phrase or "request failed"
                if RetryableStatusError.is_retryable(code):
                    raise RetryableStatusError(message, code)
                raise StreamTransportError(message, code)
            await call_maybe_async(getattr(handler, "on_open", None))
            try:
                async for line in response.aiter_lines():
                    if session.cancelled:
                        return
                    chunk = parse_stream_line(line)
                    if chunk is None:
                        continue
                    session.delivered = True
                    usage = chunk.get("usage")
                    if isinstance(usage, Mapping):
                        await call_maybe_async(getattr(handler, "on_usage", None), usage)
                    await call_maybe_async(handler.on_delta, chunk)
            except (httpx.StreamError, httpx.TransportError):
                if session.cancelled:
                    return
                raise
        finally:
            await response.aclose()

    def _retrying(self, session: _StreamSession, max_attempts: int, base_backoff: float) -> AsyncRetrying:
        base = max(0.0, float(base_backoff))

        def _should_retry(exc: BaseException) -> bool:
            if session.cancelled or session.delivered:
                return False
            return isinstance(exc, (RetryableStatusError, httpx.TransportError))

        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, int(max_attempts))),
            wait=wait_incrementing(start=base, increment=base),
            retry=retry_if_exception(_should_retry),
        )

    def _register(self, stream_id: str | None) -> _StreamSession:
        key = stream_id or uuid.uuid4().hex
        session = _StreamSession(stream_id=key)
        self._sessions[key] = session
        return session

    # ------------------------------------------------------------------
    # Plain requests
    # ------------------------------------------------------------------
    async def post_json(self, url: str, headers: Mapping[str, str], body: Mapping[str, Any]) -> str:
        """POST ``body`` and return the response text; non-2xx raises."""

        self._log_payload(url, body)
        try:
            response = await self._client.post(url, headers=dict(headers), json=dict(body), timeout=self._timeout())
        except httpx.HTTPError as exc:
            raise StreamTransportError(str(exc) or type(exc).__name__) from exc
        return self._checked_text(response)

    async def post_json_object(
        self, url: str, headers: Mapping[str, str], body: Mapping[str, Any]
    ) -> Dict[str, Any]:
        text = await self.post_json(url, headers, body)
        return self._decode_object(text)

    async def get_text(self, url: str, headers: Mapping[str, str] | None = None) -> str:
        try:
            response = await self._client.get(url, headers=dict(headers or {}), timeout=self._timeout())
        except httpx.HTTPError as exc:
            raise StreamTransportError(str(exc) or type(exc).__name__) from exc
        return self._checked_text(response)

    async def get_json_object(self, url: str, headers: Mapping[str, str] | None = None) -> Dict[str, Any]:
        text = await self.get_text(url, headers)
        return self._decode_object(text)

    @staticmethod
    def _checked_text(response: httpx.Response) -> str:
        text = response.text
        if response.status_code < 200 or response.status_code >= 300:
            raise StreamTransportError(text.strip() or response.reason_phrase or "request failed", response.status_code)
        return text

    @staticmethod
    def _decode_object(text: str) -> Dict[str, Any]:
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise StreamTransportError(f"Response is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise StreamTransportError("Response is not a JSON object")
        return payload

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def set_http_client(self, client: httpx.AsyncClient) -> None:
        """Swap the shared connection pool used by new requests."""

        if client is self._client:
            return
        if self._owns_client:
            self._retired.append(self._client)
        self._client = client
        self._owns_client = False
        LOGGER.debug("HTTP client replaced")

    async def aclose(self) -> None:
        """Close clients created by this transport."""

        for session in list(self._sessions.values()):
            self.cancel(session.stream_id)
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)
        owned = list(self._retired)
        if self._owns_client:
            owned.append(self._client)
        self._retired.clear()
        for client in owned:
            result = client.aclose()
            if inspect.isawaitable(result):
                await result

    def _timeout(self) -> httpx.Timeout:
        return httpx.Timeout(self._settings.request_timeout, connect=self._settings.connect_timeout)

    def _log_payload(self, url: str, body: Mapping[str, Any]) -> None:
        if not self._settings.debug_logging:
            return
        LOGGER.debug("POST %s payload:\n%s", url, json.dumps(dict(body), indent=2, ensure_ascii=False, default=str))
