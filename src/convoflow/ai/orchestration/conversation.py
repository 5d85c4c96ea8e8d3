"""Establishes the server-side conversation a turn is threaded into."""

from __future__ import annotations

import logging
import time
from typing import Any, Mapping

from ...services.credentials import SessionTokenManager
from ...services.settings import Settings
from ..client import StreamingClient
from ..errors import ConversationStartError, StreamTransportError
from . import request_factory
from .types import ConversationState, ModelRef

__all__ = ["ConversationManager"]

LOGGER = logging.getLogger(__name__)


class ConversationManager:
    """Reuses the conversation id on the state or asks the server for one."""

    def __init__(self, client: StreamingClient, tokens: SessionTokenManager, settings: Settings) -> None:
        self._client = client
        self._tokens = tokens
        self._settings = settings

    async def start_or_continue(
        self,
        state: ConversationState,
        model: ModelRef,
        web_search: bool = False,
    ) -> str:
        """Return the conversation id to use for the next request.

        The state is not modified; the caller records the returned id.

        Raises:
            ConversationStartError: The server did not return a chat id.
            CredentialRefreshError: No session token could be obtained.
        """

        if state.conversation_id:
            return state.conversation_id

        token = await self._tokens.ensure_token()
        headers = request_factory.build_headers(self._settings, token)
        body = {
            "title": "New Chat",
            "models": [model.model_id],
            "chat_mode": "normal",
            "chat_type": "search" if web_search else "t2t",
            "timestamp": int(time.time() * 1000),
        }
        try:
            payload = await self._client.post_json_object(request_factory.new_chat_url(self._settings), headers, body)
        except StreamTransportError as exc:
            raise ConversationStartError(f"Failed to create conversation: {exc}") from exc

        chat_id = _chat_id(payload)
        if not chat_id:
            raise ConversationStartError("Failed to create conversation: response carried no chat id")
        LOGGER.info("Started conversation %s", chat_id)
        return chat_id


def _chat_id(payload: Mapping[str, Any]) -> str | None:
    if payload.get("success") is False:
        return None
    data = payload.get("data")
    if isinstance(data, Mapping) and data.get("id"):
        return str(data["id"])
    return None
