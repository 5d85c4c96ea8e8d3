"""Tests for orchestration/request_factory.py."""

from __future__ import annotations

import json
from pathlib import Path

from convoflow.ai.orchestration import request_factory
from convoflow.ai.orchestration.types import ConversationState, Message, StreamRequest, ToolSpec

from tests.helpers import make_settings


def _request(state: ConversationState | None = None, **options) -> StreamRequest:
    builder = (
        StreamRequest.builder()
        .message("Refactor main.py")
        .model("qwen3-coder-plus")
        .conversation_state(state or ConversationState(conversation_id="chat-1"))
        .history([Message.user("earlier"), Message.assistant("reply")])
    )
    if options.get("thinking"):
        builder.thinking_enabled()
    if options.get("search"):
        builder.web_search_enabled()
    if options.get("tools"):
        builder.enabled_tools(options["tools"])
    if options.get("attachments"):
        builder.attachments(options["attachments"])
    return builder.build()


def test_headers_carry_token_and_accept() -> None:
    settings = make_settings(default_headers={"User-Agent": "tests", "bx-umidtoken": "stale"})

    headers = request_factory.build_headers(settings, "tok", "chat-1", accept=request_factory.ACCEPT_STREAM)

    assert headers["bx-umidtoken"] == "tok"
    assert headers["Accept"] == "text/event-stream"
    assert headers["User-Agent"] == "tests"
    assert headers["Referer"] == "https://chat.test/c/chat-1"
    assert headers["bx-v"] == settings.client_version


def test_urls() -> None:
    settings = make_settings()
    state = ConversationState(conversation_id="a b")

    assert request_factory.completion_url(settings, state) == "https://chat.test/api/v2/chat/completions?chat_id=a%20b"
    assert request_factory.new_chat_url(settings) == "https://chat.test/api/v2/chats/new"
    assert request_factory.models_url(settings) == "https://chat.test/api/v2/models"


def test_completion_body_for_fresh_conversation() -> None:
    body = request_factory.build_completion_body(_request(thinking=True), timestamp=42)

    assert body["stream"] is True and body["incremental_output"] is True
    assert body["chat_id"] == "chat-1"
    assert body["model"] == "qwen3-coder-plus"
    assert body["parent_id"] is None
    assert body["timestamp"] == 42
    roles = [message["role"] for message in body["messages"]]
    assert roles == ["user", "assistant", "user"]
    last = body["messages"][-1]
    assert last["content"] == "Refactor main.py"
    assert last["chat_type"] == "t2t"
    assert last["feature_config"] == {"thinking_enabled": True, "output_schema": "phase"}
    assert "tools" not in body


def test_completion_body_threads_existing_conversation() -> None:
    state = ConversationState(conversation_id="chat-1", last_response_id="resp-9")

    body = request_factory.build_completion_body(_request(state, search=True))

    assert body["parent_id"] == "resp-9"
    assert len(body["messages"]) == 1
    assert body["messages"][0]["parentId"] == "resp-9"
    assert body["messages"][0]["chat_type"] == "search"


def test_tools_are_function_definitions() -> None:
    tool = ToolSpec(name="readFile", description="Read a file", parameters={"type": "object"})

    body = request_factory.build_completion_body(_request(tools=[tool]))

    assert body["tools"] == [
        {
            "type": "function",
            "function": {"name": "readFile", "description": "Read a file", "parameters": {"type": "object"}},
        }
    ]


def test_attachments_are_inlined(tmp_path: Path) -> None:
    source = tmp_path / "util.py"
    source.write_text("def f():\n    return 1\n", encoding="utf-8")

    body = request_factory.build_completion_body(_request(attachments=[source, tmp_path / "missing.txt"]))

    content = body["messages"][-1]["content"]
    assert content.startswith("Refactor main.py\n\nFile: util.py\n```py\n")
    assert "return 1" in content
    assert "missing.txt" not in content


def test_continuation_body_uses_payload_as_content() -> None:
    state = ConversationState(conversation_id="chat-1", last_response_id="resp-2")
    payload = json.dumps({"action": "tool_result", "results": []})

    body = request_factory.build_continuation_body(_request(state), payload)

    assert body["messages"][-1]["content"] == payload
    assert body["messages"][-1]["chat_type"] == "t2t"
    assert body["parent_id"] == "resp-2"
    assert len(body["messages"]) == 1


def test_continuation_body_keeps_web_search() -> None:
    state = ConversationState(conversation_id="chat-1", last_response_id="resp-2")
    payload = json.dumps({"action": "tool_result", "results": []})

    body = request_factory.build_continuation_body(_request(state, search=True), payload)

    last = body["messages"][-1]
    assert last["chat_type"] == "search"
    assert last["sub_chat_type"] == "search"
    assert last["extra"] == {"meta": {"subChatType": "search"}}


def test_as_non_streaming_copies() -> None:
    body = request_factory.build_completion_body(_request())

    flat = request_factory.as_non_streaming(body)

    assert flat["stream"] is False and flat["incremental_output"] is False
    assert body["stream"] is True
    assert flat["messages"] == body["messages"]


def test_extract_completion_text() -> None:
    payload = json.dumps({"choices": [{"message": {"content": "hi"}}]})

    assert request_factory.extract_completion_text(payload) == "hi"
    assert request_factory.extract_completion_text('{"data": 1}') == '{"data": 1}'
    assert request_factory.extract_completion_text("plain") == "plain"
