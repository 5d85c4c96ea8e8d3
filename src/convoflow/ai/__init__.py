"""Transport and error types for talking to the chat service."""

from .client import StreamHandler, StreamingClient, parse_stream_line

__all__ = ["StreamingClient", "StreamHandler", "parse_stream_line"]
