"""Exception hierarchy for the conversation engine.

Recoverable conditions (retries, token refreshes, empty-stream fallbacks,
disambiguation misses) are handled inside the engine. These types mark the
conditions that either drive those recoveries or reach the caller through
``on_stream_error``.
"""

from __future__ import annotations

__all__ = [
    "ConvoflowError",
    "StreamTransportError",
    "RetryableStatusError",
    "CredentialRefreshError",
    "ConversationStartError",
    "ToolExecutionError",
    "AUTH_STATUS_CODES",
]

# Status codes answered with a forced token refresh and a single resubmission.
AUTH_STATUS_CODES: frozenset[int] = frozenset({401, 403, 429})


class ConvoflowError(Exception):
    """Base class for all engine errors."""


class StreamTransportError(ConvoflowError, OSError):
    """Raised when an HTTP exchange fails.

    ``status_code`` is the HTTP status, or ``-1`` when the failure happened
    below HTTP (connection refused, timeout, stream reset).
    """

    def __init__(self, message: str, status_code: int = -1) -> None:
        self.message = message
        self.status_code = status_code
        super().__init__(message)

    def __str__(self) -> str:
        if self.status_code > 0:
            return f"HTTP {self.status_code}: {self.message}"
        return self.message


class RetryableStatusError(StreamTransportError):
    """Status (429/5xx) that the retrying transport may re-issue."""

    @staticmethod
    def is_retryable(status_code: int) -> bool:
        return status_code == 429 or 500 <= status_code < 600


class CredentialRefreshError(ConvoflowError, OSError):
    """Raised when a session token cannot be obtained."""


class ConversationStartError(ConvoflowError):
    """Raised when the server refuses to open a conversation."""


class ToolExecutionError(ConvoflowError):
    """Raised when a single tool invocation fails."""

    def __init__(
        self,
        message: str,
        tool_name: str = "",
        cause: Exception | None = None,
    ) -> None:
        self.tool_name = tool_name
        self.cause = cause
        super().__init__(message)
