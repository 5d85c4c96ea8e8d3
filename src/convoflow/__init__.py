"""Streamed conversation engine for chat-style LLM services."""

from .ai.errors import (
    ConversationStartError,
    ConvoflowError,
    CredentialRefreshError,
    StreamTransportError,
    ToolExecutionError,
)
from .ai.orchestration.controller import BaseStreamListener, ConversationEngine, StreamListener
from .ai.orchestration.types import (
    ConversationState,
    FileOperation,
    Message,
    ModelRef,
    ParsedResponse,
    PlanStep,
    ResponseKind,
    StreamRequest,
    ToolSpec,
    ToolUsage,
)
from .services.settings import Settings, SettingsStore

__version__ = "0.1.0"

__all__ = [
    "ConversationEngine",
    "StreamListener",
    "BaseStreamListener",
    "ConversationState",
    "StreamRequest",
    "ModelRef",
    "Message",
    "ToolSpec",
    "ParsedResponse",
    "ResponseKind",
    "FileOperation",
    "PlanStep",
    "ToolUsage",
    "Settings",
    "SettingsStore",
    "ConvoflowError",
    "StreamTransportError",
    "CredentialRefreshError",
    "ConversationStartError",
    "ToolExecutionError",
]
