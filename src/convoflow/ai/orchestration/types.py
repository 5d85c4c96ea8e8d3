"""Core type definitions for a streamed conversation turn.

Requests, results and the small mutable records that are threaded through
every request/response pair live here. Value objects are frozen; the
records whose lifecycle is driven by the engine (conversation threading,
plan step progress, tool usage) are plain mutable dataclasses.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Literal, Mapping, Sequence

__all__ = [
    # Conversation threading
    "ConversationState",
    # Request types
    "ModelRef",
    "ToolSpec",
    "Message",
    "StreamRequest",
    # Result types
    "ResponseKind",
    "MutationKind",
    "FileOperation",
    "PlanStepStatus",
    "PlanStep",
    "ToolCallRequest",
    "ToolStatus",
    "ToolUsage",
    "WebSource",
    "ParsedResponse",
]


# -----------------------------------------------------------------------------
# Conversation State
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ConversationState:
    """Identifies one ongoing dialogue with the remote service.

    Both ids are assigned by the server. The engine mutates this record only
    when it observes a ``response.created`` event; the caller owns its
    creation, persistence and disposal.

    Attributes:
        conversation_id: Server chat id, empty before the first turn.
        last_response_id: Id of the most recent server turn, used as the
            parent of the next request.
    """

    conversation_id: str = ""
    last_response_id: str = ""

    @property
    def is_started(self) -> bool:
        return bool(self.conversation_id)

    def update_from_created(self, chat_id: str | None, response_id: str | None) -> bool:
        """Apply ids from a ``created`` event; return True if anything changed."""
        changed = False
        if chat_id and chat_id != self.conversation_id:
            self.conversation_id = chat_id
            changed = True
        if response_id and response_id != self.last_response_id:
            self.last_response_id = response_id
            changed = True
        return changed

    def to_dict(self) -> dict[str, str]:
        return {
            "conversation_id": self.conversation_id,
            "last_response_id": self.last_response_id,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> ConversationState:
        if not payload:
            return cls()
        return cls(
            conversation_id=str(payload.get("conversation_id") or ""),
            last_response_id=str(payload.get("last_response_id") or ""),
        )


# -----------------------------------------------------------------------------
# Request Types
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ModelRef:
    """Opaque model descriptor forwarded to the service as-is.

    Attributes:
        model_id: Identifier placed in the request payload.
        display_name: Human-readable label.
        supports_thinking: Whether the model exposes a reasoning phase.
        supports_web_search: Whether the ``search`` chat type is available.
        capabilities: Remaining catalog metadata, untouched.
    """

    model_id: str
    display_name: str = ""
    supports_thinking: bool = False
    supports_web_search: bool = False
    capabilities: Mapping[str, Any] = field(default_factory=dict)

    @property
    def label(self) -> str:
        return self.display_name or self.model_id

    @classmethod
    def from_catalog(cls, entry: Mapping[str, Any]) -> ModelRef:
        """Build a descriptor from one entry of the server's model catalog."""
        model_id = str(entry["id"])
        meta = (entry.get("info") or {}).get("meta") or {}
        capabilities = dict(meta.get("capabilities") or {})
        chat_types = [str(item) for item in meta.get("chat_type") or ()]
        return cls(
            model_id=model_id,
            display_name=str(entry.get("name") or model_id),
            supports_thinking=bool(capabilities.get("thinking")),
            supports_web_search="search" in chat_types,
            capabilities={
                **capabilities,
                "chat_types": chat_types,
                "max_context_length": meta.get("max_context_length", 0),
                "max_generation_length": meta.get("max_generation_length", 0),
            },
        )


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """Description of a tool the model may request.

    Attributes:
        name: Unique identifier for the tool.
        description: Human-readable description of what the tool does.
        parameters: JSON Schema for the tool's arguments.
    """

    name: str
    description: str = ""
    parameters: Mapping[str, Any] = field(default_factory=dict)

    def to_function_tool(self) -> dict[str, Any]:
        """Convert to a function-style tool definition."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": dict(self.parameters) if self.parameters else {
                    "type": "object",
                    "properties": {},
                },
            },
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": dict(self.parameters) if self.parameters else {},
        }


MessageRole = Literal["system", "user", "assistant", "tool"]


@dataclass(slots=True, frozen=True)
class Message:
    """One prior message of the dialogue history."""

    role: MessageRole
    content: str

    def to_payload(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str) -> Message:
        return cls(role="assistant", content=content)


def _new_request_id() -> str:
    return uuid.uuid4().hex


@dataclass(slots=True, frozen=True)
class StreamRequest:
    """One user turn, immutable once built.

    The request lives for the whole logical turn, including every tool
    continuation it spawns. ``conversation_state`` is a reference to the
    caller's mutable :class:`ConversationState`.
    """

    message: str
    model: ModelRef
    conversation_state: ConversationState
    history: tuple[Message, ...] = ()
    thinking_enabled: bool = False
    web_search_enabled: bool = False
    enabled_tools: tuple[ToolSpec, ...] = ()
    attachments: tuple[Path, ...] = ()
    request_id: str = field(default_factory=_new_request_id)

    @classmethod
    def builder(cls) -> StreamRequest.Builder:
        return cls.Builder()

    class Builder:
        """Fluent builder mirroring the fields of :class:`StreamRequest`."""

        def __init__(self) -> None:
            self._message = ""
            self._model: ModelRef | None = None
            self._state: ConversationState | None = None
            self._history: list[Message] = []
            self._thinking = False
            self._web_search = False
            self._tools: list[ToolSpec] = []
            self._attachments: list[Path] = []

        def message(self, message: str) -> StreamRequest.Builder:
            self._message = message
            return self

        def model(self, model: ModelRef | str) -> StreamRequest.Builder:
            self._model = ModelRef(model_id=model) if isinstance(model, str) else model
            return self

        def conversation_state(self, state: ConversationState) -> StreamRequest.Builder:
            self._state = state
            return self

        def history(self, history: Sequence[Message]) -> StreamRequest.Builder:
            self._history = list(history)
            return self

        def thinking_enabled(self, enabled: bool = True) -> StreamRequest.Builder:
            self._thinking = enabled
            return self

        def web_search_enabled(self, enabled: bool = True) -> StreamRequest.Builder:
            self._web_search = enabled
            return self

        def enabled_tools(self, tools: Sequence[ToolSpec]) -> StreamRequest.Builder:
            self._tools = list(tools)
            return self

        def attachments(self, attachments: Sequence[Path | str]) -> StreamRequest.Builder:
            self._attachments = [Path(item) for item in attachments]
            return self

        def build(self) -> StreamRequest:
            if not self._message or not self._message.strip():
                raise ValueError("A stream request needs a non-empty message")
            if self._model is None:
                raise ValueError("A stream request needs a model")
            return StreamRequest(
                message=self._message,
                model=self._model,
                conversation_state=self._state if self._state is not None else ConversationState(),
                history=tuple(self._history),
                thinking_enabled=self._thinking,
                web_search_enabled=self._web_search,
                enabled_tools=tuple(self._tools),
                attachments=tuple(self._attachments),
            )


# -----------------------------------------------------------------------------
# Result Types
# -----------------------------------------------------------------------------


class ResponseKind(str, Enum):
    """Disambiguated outcome of a completed turn."""

    MESSAGE = "message"
    PLAN = "plan"
    FILE_OPERATION_SET = "file_operation"
    GENERIC_JSON = "json_response"
    TOOL_CALL = "tool_call"


class MutationKind(str, Enum):
    """Which group of fields describes a file operation's change."""

    FULL_CONTENT = "full_content"
    SEARCH_REPLACE = "search_replace"
    LINE_EDIT = "line_edit"
    DIFF_PATCH = "diff_patch"
    NONE = "none"


@dataclass(slots=True, frozen=True)
class FileOperation:
    """One proposed file mutation.

    Only the fields relevant to ``type`` are populated; the rest stay None.
    Applying the operation is the host's responsibility.
    """

    type: str
    path: str = ""
    content: str | None = None
    old_path: str | None = None
    new_path: str | None = None
    search: str | None = None
    replace: str | None = None
    start_line: int | None = None
    delete_count: int | None = None
    insert_lines: tuple[str, ...] | None = None
    update_type: str | None = None
    search_pattern: str | None = None
    replace_with: str | None = None
    diff_patch: str | None = None
    create_backup: bool | None = None
    validate_content: bool | None = None
    content_type: str | None = None
    error_handling: str | None = None
    generate_diff: bool | None = None
    diff_format: str | None = None

    @property
    def mutation(self) -> MutationKind:
        if self.diff_patch:
            return MutationKind.DIFF_PATCH
        if self.start_line is not None or self.insert_lines is not None:
            return MutationKind.LINE_EDIT
        if self.search is not None or self.search_pattern is not None:
            return MutationKind.SEARCH_REPLACE
        if self.content is not None:
            return MutationKind.FULL_CONTENT
        return MutationKind.NONE


class PlanStepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class PlanStep:
    """One step of a structured plan; ``status`` is advanced by the host."""

    id: str
    title: str
    kind: str = "file"
    status: PlanStepStatus = PlanStepStatus.PENDING
    raw_response: str | None = None

    def mark_running(self) -> None:
        self.status = PlanStepStatus.RUNNING

    def mark_completed(self, raw_response: str | None = None) -> None:
        self.status = PlanStepStatus.COMPLETED
        if raw_response is not None:
            self.raw_response = raw_response

    def mark_failed(self, raw_response: str | None = None) -> None:
        self.status = PlanStepStatus.FAILED
        if raw_response is not None:
            self.raw_response = raw_response


@dataclass(slots=True, frozen=True)
class ToolCallRequest:
    """A tool invocation requested by the model."""

    name: str
    arguments: Mapping[str, Any] = field(default_factory=dict)
    index: int = 0

    @property
    def arguments_json(self) -> str:
        return json.dumps(dict(self.arguments), ensure_ascii=False)


class ToolStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class ToolUsage:
    """Lifecycle record of one tool invocation.

    Created pending when a tool call is detected, moved to running when
    dispatched, and terminal once :meth:`finish` records the result.
    """

    tool_name: str
    args_json: str = "{}"
    result_json: str | None = None
    ok: bool = False
    status: ToolStatus = ToolStatus.PENDING
    duration_ms: float = 0.0
    file_path: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (ToolStatus.COMPLETED, ToolStatus.FAILED)

    def start(self) -> None:
        self.status = ToolStatus.RUNNING

    def finish(self, result: Mapping[str, Any], duration_ms: float) -> None:
        self.duration_ms = duration_ms
        self.result_json = json.dumps(dict(result), ensure_ascii=False, default=str)
        if "ok" in result:
            self.ok = bool(result["ok"])
        else:
            self.ok = "error" not in result
        self.status = ToolStatus.COMPLETED if self.ok else ToolStatus.FAILED


@dataclass(slots=True, frozen=True)
class WebSource:
    """A web page cited by the model when web search is enabled."""

    url: str
    title: str | None = None
    snippet: str | None = None
    favicon: str | None = None


@dataclass(slots=True, frozen=True)
class ParsedResponse:
    """The disambiguated outcome of one completed turn.

    Attributes:
        kind: Which shape the response text resolved to.
        explanation: Human-readable text (the raw text for plain messages).
        operations: File operations, only for ``FILE_OPERATION_SET``.
        plan_steps: Plan steps, only for ``PLAN``.
        tool_calls: Requested tools, only for ``TOOL_CALL``.
        raw_response: Full raw transport log of the turn.
        is_valid: False only when even the plain-text fallback failed.
        thinking: Accumulated reasoning text, if any.
        web_sources: Cited pages, deduplicated by URL.
        usage: Last usage block reported by the server.
    """

    kind: ResponseKind
    explanation: str = ""
    operations: tuple[FileOperation, ...] = ()
    plan_steps: tuple[PlanStep, ...] = ()
    tool_calls: tuple[ToolCallRequest, ...] = ()
    raw_response: str = ""
    is_valid: bool = True
    thinking: str = ""
    web_sources: tuple[WebSource, ...] = ()
    usage: Mapping[str, Any] | None = None

    @classmethod
    def message(cls, text: str, raw_response: str = "") -> ParsedResponse:
        return cls(kind=ResponseKind.MESSAGE, explanation=text, raw_response=raw_response)

    def with_context(
        self,
        *,
        raw_response: str | None = None,
        thinking: str | None = None,
        web_sources: Sequence[WebSource] | None = None,
        usage: Mapping[str, Any] | None = None,
    ) -> ParsedResponse:
        """Return a copy carrying the stream context gathered for the turn."""
        changes: dict[str, Any] = {}
        if raw_response is not None:
            changes["raw_response"] = raw_response
        if thinking is not None:
            changes["thinking"] = thinking
        if web_sources is not None:
            changes["web_sources"] = tuple(web_sources)
        if usage is not None:
            changes["usage"] = dict(usage)
        return replace(self, **changes) if changes else self
