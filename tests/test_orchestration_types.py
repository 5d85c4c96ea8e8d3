"""Unit tests for orchestration types."""

from __future__ import annotations

import dataclasses
import json
from pathlib import Path

import pytest

from convoflow.ai.orchestration.types import (
    ConversationState,
    FileOperation,
    Message,
    ModelRef,
    MutationKind,
    ParsedResponse,
    PlanStep,
    PlanStepStatus,
    ResponseKind,
    StreamRequest,
    ToolCallRequest,
    ToolSpec,
    ToolStatus,
    ToolUsage,
    WebSource,
)


# -----------------------------------------------------------------------------
# Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def sample_state() -> ConversationState:
    """Create a conversation that already has a thread."""
    return ConversationState(conversation_id="chat-1", last_response_id="resp-1")


# -----------------------------------------------------------------------------
# ConversationState
# -----------------------------------------------------------------------------


class TestConversationState:
    def test_created_event_updates_ids(self, sample_state: ConversationState) -> None:
        assert sample_state.update_from_created("chat-1", "resp-2") is True
        assert sample_state.last_response_id == "resp-2"

    def test_unchanged_ids_report_no_change(self, sample_state: ConversationState) -> None:
        assert sample_state.update_from_created("chat-1", "resp-1") is False
        assert sample_state.update_from_created(None, None) is False

    def test_dict_round_trip(self, sample_state: ConversationState) -> None:
        assert ConversationState.from_dict(sample_state.to_dict()) == sample_state
        assert ConversationState.from_dict(None) == ConversationState()
        assert not ConversationState().is_started


# -----------------------------------------------------------------------------
# StreamRequest
# -----------------------------------------------------------------------------


class TestStreamRequest:
    def test_builder_collects_fields(self, sample_state: ConversationState) -> None:
        tool = ToolSpec(name="readFile")

        request = (
            StreamRequest.builder()
            .message("hi")
            .model("qwen-max")
            .conversation_state(sample_state)
            .history([Message.user("before")])
            .thinking_enabled()
            .web_search_enabled()
            .enabled_tools([tool])
            .attachments(["notes.md"])
            .build()
        )

        assert request.model == ModelRef(model_id="qwen-max")
        assert request.conversation_state is sample_state
        assert request.history == (Message.user("before"),)
        assert request.thinking_enabled and request.web_search_enabled
        assert request.enabled_tools == (tool,)
        assert request.attachments == (Path("notes.md"),)
        assert len(request.request_id) == 32

    def test_request_ids_are_unique(self) -> None:
        builder = StreamRequest.builder().message("hi").model("m")

        assert builder.build().request_id != builder.build().request_id

    def test_blank_message_is_rejected(self) -> None:
        with pytest.raises(ValueError):
            StreamRequest.builder().message("   ").model("m").build()

    def test_model_is_required(self) -> None:
        with pytest.raises(ValueError):
            StreamRequest.builder().message("hi").build()

    def test_request_is_immutable(self) -> None:
        request = StreamRequest.builder().message("hi").model("m").build()

        with pytest.raises(dataclasses.FrozenInstanceError):
            request.message = "other"  # type: ignore[misc]


# -----------------------------------------------------------------------------
# Catalog and tools
# -----------------------------------------------------------------------------


def test_model_ref_from_catalog() -> None:
    entry = {
        "id": "qwen3-max",
        "name": "Qwen3 Max",
        "info": {"meta": {"capabilities": {"thinking": False}, "chat_type": ["t2t"], "max_context_length": 262144}},
    }

    model = ModelRef.from_catalog(entry)

    assert model.label == "Qwen3 Max"
    assert not model.supports_thinking
    assert not model.supports_web_search
    assert model.capabilities["max_context_length"] == 262144
    assert model.capabilities["chat_types"] == ["t2t"]


def test_model_ref_requires_id() -> None:
    with pytest.raises(KeyError):
        ModelRef.from_catalog({"name": "anonymous"})


def test_tool_spec_without_schema_gets_empty_object() -> None:
    tool = ToolSpec(name="listFiles", description="List files")

    assert tool.to_function_tool()["function"]["parameters"] == {"type": "object", "properties": {}}
    assert tool.to_dict() == {"name": "listFiles", "description": "List files", "parameters": {}}


def test_tool_call_arguments_json() -> None:
    call = ToolCallRequest(name="readFile", arguments={"path": "ü.txt"})

    assert json.loads(call.arguments_json) == {"path": "ü.txt"}
    assert "ü" in call.arguments_json


# -----------------------------------------------------------------------------
# Lifecycle records
# -----------------------------------------------------------------------------


class TestToolUsage:
    def test_success_lifecycle(self) -> None:
        usage = ToolUsage(tool_name="readFile")
        assert usage.status is ToolStatus.PENDING

        usage.start()
        assert usage.status is ToolStatus.RUNNING and not usage.is_terminal

        usage.finish({"ok": True, "content": "x"}, duration_ms=12.5)
        assert usage.status is ToolStatus.COMPLETED
        assert usage.ok and usage.is_terminal
        assert json.loads(usage.result_json or "") == {"ok": True, "content": "x"}

    def test_error_without_ok_flag_fails(self) -> None:
        usage = ToolUsage(tool_name="writeFile")

        usage.finish({"error": "denied"}, duration_ms=1.0)

        assert usage.status is ToolStatus.FAILED
        assert not usage.ok


def test_plan_step_progress() -> None:
    step = PlanStep(id="s1", title="Create file")

    step.mark_running()
    assert step.status is PlanStepStatus.RUNNING
    step.mark_failed("no permission")
    assert step.status is PlanStepStatus.FAILED
    assert step.raw_response == "no permission"
    step.mark_completed()
    assert step.status is PlanStepStatus.COMPLETED
    assert step.raw_response == "no permission"


@pytest.mark.parametrize(
    "operation, expected",
    [
        (FileOperation(type="update", path="a", diff_patch="@@"), MutationKind.DIFF_PATCH),
        (FileOperation(type="modifyLines", path="a", start_line=3), MutationKind.LINE_EDIT),
        (FileOperation(type="update", path="a", search="x", replace="y"), MutationKind.SEARCH_REPLACE),
        (FileOperation(type="create", path="a", content=""), MutationKind.FULL_CONTENT),
        (FileOperation(type="delete", path="a"), MutationKind.NONE),
    ],
)
def test_file_operation_mutation(operation: FileOperation, expected: MutationKind) -> None:
    assert operation.mutation is expected


def test_with_context_copies_response() -> None:
    base = ParsedResponse.message("hello", raw_response="data: x\n")

    enriched = base.with_context(thinking="hmm", web_sources=[WebSource(url="https://a")], usage={"t": 1})

    assert base.thinking == ""
    assert enriched.kind is ResponseKind.MESSAGE
    assert enriched.thinking == "hmm"
    assert enriched.web_sources == (WebSource(url="https://a"),)
    assert enriched.usage == {"t": 1}
    assert enriched.raw_response == "data: x\n"
    assert base.with_context() is base
