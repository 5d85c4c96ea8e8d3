"""Shared fakes for engine tests.

``FakeChatService`` scripts the chat endpoints behind an
``httpx.MockTransport`` so no test touches the network.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Sequence, Union

import httpx

from convoflow.ai.orchestration.types import ConversationState, ParsedResponse, ToolUsage
from convoflow.services.settings import Settings

BASE_URL = "https://chat.test/api/v2"
TOKEN_URL = "https://token.test/w/wu.json"

ScriptedResponse = Union[httpx.Response, Callable[[httpx.Request], httpx.Response]]


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "base_url": BASE_URL,
        "token_url": TOKEN_URL,
        "stream_backoff_seconds": 0.0,
        "tool_timeout": 5.0,
    }
    values.update(overrides)
    return Settings(**values)


def sse_body(*chunks: Mapping[str, Any] | str, done: bool = True) -> bytes:
    """Encode chunks as ``data:`` lines; strings are emitted verbatim."""
    lines: list[str] = []
    for chunk in chunks:
        if isinstance(chunk, str):
            lines.append(chunk)
        else:
            lines.append("data: " + json.dumps(chunk))
        lines.append("")
    if done:
        lines.append("data: [DONE]")
    return ("\n".join(lines) + "\n").encode("utf-8")


def sse_response(*chunks: Mapping[str, Any] | str) -> httpx.Response:
    return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=sse_body(*chunks))


def delta(content: str, phase: str = "answer", status: str = "typing", **extra: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {"role": "assistant", "content": content, "phase": phase, "status": status}
    if extra:
        payload["extra"] = extra
    return {"choices": [{"delta": payload}]}


def finished(phase: str = "answer") -> dict[str, Any]:
    return delta("", phase=phase, status="finished")


def created(chat_id: str = "chat-1", response_id: str = "resp-1") -> dict[str, Any]:
    return {"response.created": {"chat_id": chat_id, "response_id": response_id}}


def error_chunk(message: str = "Bad_Request") -> dict[str, Any]:
    return {"error": {"code": "Bad_Request", "details": message}}


class FakeChatService:
    """Scripted chat service.

    ``completions`` is consumed one entry per streamed completion request;
    ``fallback`` answers non-streaming completion requests.
    """

    def __init__(
        self,
        completions: Sequence[ScriptedResponse] = (),
        *,
        fallback: ScriptedResponse | None = None,
        chat_id: str = "chat-1",
        models: Iterable[Mapping[str, Any]] = (),
        token_status: int = 200,
    ) -> None:
        self._completions = list(completions)
        self._fallback = fallback
        self.chat_id = chat_id
        self.models = list(models)
        self.token_status = token_status
        self.requests: list[httpx.Request] = []
        self.stream_bodies: list[dict[str, Any]] = []
        self.fallback_bodies: list[dict[str, Any]] = []
        self.token_requests = 0
        self.chat_creations = 0
        self.model_requests = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.url.host == "token.test":
            self.token_requests += 1
            if self.token_status != 200:
                return httpx.Response(self.token_status, text="denied")
            return httpx.Response(200, text=f"window.umx.wu('token-{self.token_requests:04d}');")
        if path.endswith("/chats/new"):
            self.chat_creations += 1
            return httpx.Response(200, json={"success": True, "data": {"id": self.chat_id}})
        if path.endswith("/models"):
            self.model_requests += 1
            return httpx.Response(200, json={"data": self.models})
        if path.endswith("/chat/completions"):
            body = json.loads(request.content)
            if body.get("stream") is False:
                self.fallback_bodies.append(body)
                if self._fallback is None:
                    return httpx.Response(500, text="no fallback scripted")
                return self._resolve(self._fallback, request)
            self.stream_bodies.append(body)
            if not self._completions:
                return httpx.Response(500, text="no completion scripted")
            return self._resolve(self._completions.pop(0), request)
        return httpx.Response(404, text=f"unexpected path {path}")

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    @staticmethod
    def _resolve(scripted: ScriptedResponse, request: httpx.Request) -> httpx.Response:
        if callable(scripted):
            return scripted(request)
        return scripted


def user_content(body: Mapping[str, Any]) -> str:
    return body["messages"][-1]["content"]


class RecordingListener:
    """Collects every callback as ``(name, *args)`` tuples."""

    def __init__(self) -> None:
        self.events: list[tuple[Any, ...]] = []

    def on_stream_started(self, request_id: str) -> None:
        self.events.append(("started", request_id))

    def on_stream_partial_update(self, request_id: str, text: str, is_thinking: bool) -> None:
        self.events.append(("partial", text, is_thinking))

    def on_stream_completed(self, request_id: str, response: ParsedResponse) -> None:
        self.events.append(("completed", response))

    def on_stream_error(self, request_id: str, message: str, cause: BaseException | None) -> None:
        self.events.append(("error", message, cause))

    def on_conversation_state_updated(self, state: ConversationState) -> None:
        self.events.append(("state", state.conversation_id, state.last_response_id))

    def on_tool_execution(self, request_id: str, usages: Sequence[ToolUsage]) -> None:
        self.events.append(("tools", list(usages)))

    def names(self) -> list[str]:
        return [event[0] for event in self.events]

    def of(self, name: str) -> list[tuple[Any, ...]]:
        return [event for event in self.events if event[0] == name]

    @property
    def completed(self) -> ParsedResponse | None:
        found = self.of("completed")
        return found[-1][1] if found else None


class RecordingToolExecutor:
    """Synchronous host tool executor with scripted outcomes."""

    def __init__(self, results: Mapping[str, Any] | None = None, errors: Mapping[str, Exception] | None = None) -> None:
        self.results = dict(results or {})
        self.errors = dict(errors or {})
        self.calls: list[tuple[Path, str, dict[str, Any]]] = []

    def execute(self, working_directory: Path, tool_name: str, args_json: str) -> Any:
        self.calls.append((working_directory, tool_name, json.loads(args_json)))
        if tool_name in self.errors:
            raise self.errors[tool_name]
        return self.results.get(tool_name, json.dumps({"ok": True, "tool": tool_name}))
