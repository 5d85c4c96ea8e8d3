"""Typed stream events.

Raw chunks forwarded by the transport are validated once here and turned
into one of a small set of event types; the stream processor only ever
works with these.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Union

from .types import WebSource

__all__ = [
    "PHASE_THINK",
    "PHASE_ANSWER",
    "STATUS_FINISHED",
    "CreatedEvent",
    "DeltaEvent",
    "ErrorEvent",
    "DiagnosticEvent",
    "IgnoredEvent",
    "StreamEvent",
    "parse_stream_event",
]

LOGGER = logging.getLogger(__name__)

PHASE_THINK = "think"
PHASE_ANSWER = "answer"
STATUS_FINISHED = "finished"

_CREATED_KEY = "response.created"
_RAW_KEY = "_raw"


@dataclass(slots=True, frozen=True)
class CreatedEvent:
    """The server assigned or advanced the conversation ids."""

    chat_id: str | None = None
    response_id: str | None = None


@dataclass(slots=True, frozen=True)
class DeltaEvent:
    """A fragment of model output for one phase."""

    phase: str = ""
    content: str = ""
    status: str = ""
    sources: tuple[WebSource, ...] = ()

    @property
    def is_thinking(self) -> bool:
        return self.phase == PHASE_THINK

    @property
    def is_answer(self) -> bool:
        return self.phase == PHASE_ANSWER

    @property
    def is_finished(self) -> bool:
        return self.status == STATUS_FINISHED


@dataclass(slots=True, frozen=True)
class ErrorEvent:
    """An error payload embedded in an otherwise successful stream."""

    message: str
    code: str | None = None


@dataclass(slots=True, frozen=True)
class DiagnosticEvent:
    """A line that could not be decoded; kept verbatim for the raw log."""

    raw: str


@dataclass(slots=True, frozen=True)
class IgnoredEvent:
    """A well-formed chunk carrying nothing the processor acts on."""

    payload: Mapping[str, Any] = field(default_factory=dict)


StreamEvent = Union[CreatedEvent, DeltaEvent, ErrorEvent, DiagnosticEvent, IgnoredEvent]


def _error_from(chunk: Mapping[str, Any]) -> ErrorEvent | None:
    error = chunk.get("error")
    if error is not None:
        if isinstance(error, Mapping):
            message = error.get("message") or error.get("details") or str(dict(error))
            code = error.get("code")
            return ErrorEvent(message=str(message), code=str(code) if code is not None else None)
        return ErrorEvent(message=str(error))
    if chunk.get("success") is False:
        data = chunk.get("data")
        if isinstance(data, Mapping):
            message = data.get("details") or data.get("message") or "request failed"
            code = data.get("code")
            return ErrorEvent(message=str(message), code=str(code) if code is not None else None)
        return ErrorEvent(message="request failed")
    return None


def _sources_from(extra: Any) -> tuple[WebSource, ...]:
    if not isinstance(extra, Mapping):
        return ()
    items = extra.get("sources")
    if not isinstance(items, list):
        return ()
    sources: list[WebSource] = []
    for item in items:
        if not isinstance(item, Mapping) or not item.get("url"):
            continue
        sources.append(
            WebSource(
                url=str(item["url"]),
                title=item.get("title"),
                snippet=item.get("snippet"),
                favicon=item.get("favicon"),
            )
        )
    return tuple(sources)


def parse_stream_event(chunk: Mapping[str, Any]) -> StreamEvent:
    """Classify one decoded transport chunk."""
    if _RAW_KEY in chunk and len(chunk) == 1:
        return DiagnosticEvent(raw=str(chunk[_RAW_KEY]))

    error = _error_from(chunk)
    if error is not None:
        return error

    created = chunk.get(_CREATED_KEY)
    if isinstance(created, Mapping):
        chat_id = created.get("chat_id")
        response_id = created.get("response_id")
        return CreatedEvent(
            chat_id=str(chat_id) if chat_id else None,
            response_id=str(response_id) if response_id else None,
        )

    choices = chunk.get("choices")
    if isinstance(choices, list) and choices:
        choice = choices[0]
        delta = choice.get("delta") if isinstance(choice, Mapping) else None
        if isinstance(delta, Mapping):
            content = delta.get("content")
            return DeltaEvent(
                phase=str(delta.get("phase") or PHASE_ANSWER),
                content=content if isinstance(content, str) else "",
                status=str(delta.get("status") or ""),
                sources=_sources_from(delta.get("extra")),
            )

    return IgnoredEvent(payload=chunk)
