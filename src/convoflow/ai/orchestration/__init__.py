"""Conversation turn orchestration: parsing, tools and the stream state machine."""

# Core types
from .types import (
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

# Response classification
from .response_parser import parse_response

# Tool execution
from .tool_executor import ToolBatchResult, ToolExecutionCoordinator, ToolExecutor

# Turn state machine and engine
from .stream_processor import BaseStreamListener, StreamListener, StreamProcessor, TurnState
from .controller import ConversationEngine

__all__ = [
    "ConversationState",
    "FileOperation",
    "Message",
    "ModelRef",
    "MutationKind",
    "ParsedResponse",
    "PlanStep",
    "PlanStepStatus",
    "ResponseKind",
    "StreamRequest",
    "ToolCallRequest",
    "ToolSpec",
    "ToolStatus",
    "ToolUsage",
    "WebSource",
    "parse_response",
    "ToolBatchResult",
    "ToolExecutionCoordinator",
    "ToolExecutor",
    "BaseStreamListener",
    "StreamListener",
    "StreamProcessor",
    "TurnState",
    "ConversationEngine",
]
