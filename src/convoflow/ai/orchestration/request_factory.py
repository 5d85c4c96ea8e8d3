"""Builders for request headers, URLs and payloads."""

from __future__ import annotations

import copy
import json
import logging
import time
import uuid
from pathlib import Path
from typing import Any, Dict, Mapping, Sequence
from urllib.parse import quote, urlsplit

from ...services.settings import Settings
from .types import ConversationState, Message, StreamRequest, ToolSpec

__all__ = [
    "ACCEPT_STREAM",
    "ACCEPT_JSON",
    "build_headers",
    "build_completion_body",
    "build_continuation_body",
    "as_non_streaming",
    "completion_url",
    "new_chat_url",
    "models_url",
    "extract_completion_text",
]

LOGGER = logging.getLogger(__name__)

ACCEPT_STREAM = "text/event-stream"
ACCEPT_JSON = "application/json"
_CHAT_TYPE_TEXT = "t2t"
_CHAT_TYPE_SEARCH = "search"
_MAX_ATTACHMENT_CHARS = 200_000


def _site_root(settings: Settings) -> str:
    parts = urlsplit(settings.base_url)
    if not parts.scheme or not parts.netloc:
        return settings.api_root
    return f"{parts.scheme}://{parts.netloc}"


def build_headers(
    settings: Settings,
    token: str,
    conversation_id: str | None = None,
    *,
    accept: str = ACCEPT_JSON,
) -> Dict[str, str]:
    """Headers for one request; the session token is always present."""

    site = _site_root(settings)
    headers: Dict[str, str] = dict(settings.default_headers)
    headers.update(
        {
            "Content-Type": "application/json",
            "Accept": accept,
            "bx-umidtoken": token,
            "bx-v": settings.client_version,
            "source": "web",
            "x-request-id": uuid.uuid4().hex,
            "Origin": site,
            "Referer": f"{site}/c/{conversation_id}" if conversation_id else f"{site}/",
        }
    )
    return headers


def completion_url(settings: Settings, state: ConversationState) -> str:
    return f"{settings.api_root}/chat/completions?chat_id={quote(state.conversation_id, safe='')}"


def new_chat_url(settings: Settings) -> str:
    return f"{settings.api_root}/chats/new"


def models_url(settings: Settings) -> str:
    return f"{settings.api_root}/models"


# ----------------------------------------------------------------------
# Payloads
# ----------------------------------------------------------------------


def build_completion_body(request: StreamRequest, *, timestamp: int | None = None) -> Dict[str, Any]:
    """Payload for the first streamed exchange of a turn.

    Prior history is replayed only when the conversation has no server
    turn yet; afterwards the server threads the dialogue through
    ``parent_id``.
    """

    state = request.conversation_state
    content = _with_attachments(request.message, request.attachments)
    history: Sequence[Message] = () if state.last_response_id else request.history
    return _body(
        request,
        content=content,
        history=history,
        chat_type=_chat_type(request),
        timestamp=timestamp,
    )


def build_continuation_body(
    request: StreamRequest,
    continuation: str,
    *,
    timestamp: int | None = None,
) -> Dict[str, Any]:
    """Payload carrying tool results back into the same conversation."""

    return _body(
        request,
        content=continuation,
        history=(),
        chat_type=_chat_type(request),
        timestamp=timestamp,
    )


def as_non_streaming(body: Mapping[str, Any]) -> Dict[str, Any]:
    """Copy of ``body`` requesting a single, complete response."""

    payload = copy.deepcopy(dict(body))
    payload["stream"] = False
    payload["incremental_output"] = False
    return payload


def _body(
    request: StreamRequest,
    *,
    content: str,
    history: Sequence[Message],
    chat_type: str,
    timestamp: int | None,
) -> Dict[str, Any]:
    state = request.conversation_state
    model_id = request.model.model_id
    stamp = int(time.time()) if timestamp is None else timestamp
    parent_id = state.last_response_id or None

    messages: list[Dict[str, Any]] = [
        {"role": item.role, "content": item.content, "chat_type": _CHAT_TYPE_TEXT} for item in history
    ]
    messages.append(
        {
            "fid": uuid.uuid4().hex,
            "parentId": parent_id,
            "childrenIds": [],
            "role": "user",
            "content": content,
            "user_action": "chat",
            "files": [],
            "timestamp": stamp,
            "models": [model_id],
            "chat_type": chat_type,
            "feature_config": {
                "thinking_enabled": request.thinking_enabled,
                "output_schema": "phase",
            },
            "extra": {"meta": {"subChatType": chat_type}},
            "sub_chat_type": chat_type,
            "parent_id": parent_id,
        }
    )

    body: Dict[str, Any] = {
        "stream": True,
        "incremental_output": True,
        "chat_id": state.conversation_id,
        "chat_mode": "normal",
        "model": model_id,
        "parent_id": parent_id,
        "messages": messages,
        "timestamp": stamp,
    }
    if request.enabled_tools:
        body["tools"] = _tools_payload(request.enabled_tools)
    return body


def _chat_type(request: StreamRequest) -> str:
    return _CHAT_TYPE_SEARCH if request.web_search_enabled else _CHAT_TYPE_TEXT


def _tools_payload(tools: Sequence[ToolSpec]) -> list[Dict[str, Any]]:
    return [tool.to_function_tool() for tool in tools]


def _with_attachments(message: str, attachments: Sequence[Path]) -> str:
    if not attachments:
        return message
    sections = [message]
    for path in attachments:
        try:
            text = path.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            LOGGER.warning("Skipping attachment %s: %s", path, exc)
            continue
        if len(text) > _MAX_ATTACHMENT_CHARS:
            text = text[:_MAX_ATTACHMENT_CHARS]
        language = path.suffix.lstrip(".")
        sections.append(f"File: {path.name}\n```{language}\n{text}\n```")
    return "\n\n".join(sections)


# ----------------------------------------------------------------------
# Responses
# ----------------------------------------------------------------------


def extract_completion_text(text: str) -> str:
    """Answer text of a non-streaming response, or the body verbatim."""

    try:
        payload = json.loads(text)
    except (TypeError, json.JSONDecodeError):
        return text
    if isinstance(payload, dict):
        choices = payload.get("choices")
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            message = choices[0].get("message")
            if isinstance(message, dict):
                content = message.get("content")
                if isinstance(content, str):
                    return content
    return text
