"""Tests for the session token manager and credential stores."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path

import httpx
import pytest

from convoflow.ai.client import StreamingClient
from convoflow.ai.errors import CredentialRefreshError
from convoflow.services.credentials import (
    EncryptedFileCredentialStore,
    MemoryCredentialStore,
    SessionTokenManager,
    StoredToken,
    extract_token,
)

from tests.helpers import FakeChatService, make_settings


class _Clock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _manager(service: FakeChatService, **kwargs) -> SessionTokenManager:
    settings = make_settings(token_ttl_seconds=60.0)
    client = StreamingClient(settings, client=service.client())
    return SessionTokenManager(client, settings, **kwargs)


class TestExtractToken:
    def test_script_call(self) -> None:
        assert extract_token("var a=1;umx.wu('T2gA_abc-123');") == "T2gA_abc-123"

    def test_bare_token(self) -> None:
        assert extract_token("  T2gAxyz0987654321\n") == "T2gAxyz0987654321"

    def test_unrecognized_body(self) -> None:
        assert extract_token("<html>blocked</html>") is None


@pytest.mark.asyncio
async def test_cached_token_is_reused_until_expiry() -> None:
    service = FakeChatService()
    clock = _Clock()
    manager = _manager(service, clock=clock)

    first = await manager.ensure_token()
    second = await manager.ensure_token()
    clock.now += 61
    third = await manager.ensure_token()

    assert first == second == "token-0001"
    assert third == "token-0002"
    assert service.token_requests == 2
    assert manager.refresh_count == 2


@pytest.mark.asyncio
async def test_force_refresh_bypasses_cache() -> None:
    service = FakeChatService()
    manager = _manager(service, store=MemoryCredentialStore(StoredToken("cached-token", fetched_at=9e12)))

    assert await manager.ensure_token() == "cached-token"
    assert await manager.ensure_token(force_refresh=True) == "token-0001"
    assert await manager.ensure_token() == "token-0001"
    assert service.token_requests == 1


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_refresh() -> None:
    service = FakeChatService()
    manager = _manager(service)

    tokens = await asyncio.gather(*(manager.ensure_token() for _ in range(5)))

    assert set(tokens) == {"token-0001"}
    assert service.token_requests == 1


@pytest.mark.asyncio
async def test_refresh_failure_raises() -> None:
    service = FakeChatService(token_status=503)
    manager = _manager(service)

    with pytest.raises(CredentialRefreshError):
        await manager.ensure_token()
    assert manager.refresh_count == 0


@pytest.mark.asyncio
async def test_unrecognized_token_body_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>captcha</html>")

    settings = make_settings()
    client = StreamingClient(settings, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    manager = SessionTokenManager(client, settings)

    with pytest.raises(CredentialRefreshError, match="not found"):
        await manager.ensure_token()


class TestEncryptedFileCredentialStore:
    def test_round_trip(self, tmp_path: Path) -> None:
        store = EncryptedFileCredentialStore(tmp_path / "session.token")

        store.write_token(StoredToken("secret-token", fetched_at=123.0))

        assert b"secret-token" not in (tmp_path / "session.token").read_bytes()
        reopened = EncryptedFileCredentialStore(tmp_path / "session.token")
        assert reopened.read_token() == StoredToken("secret-token", fetched_at=123.0)

    def test_missing_file(self, tmp_path: Path) -> None:
        assert EncryptedFileCredentialStore(tmp_path / "none.token").read_token() is None

    def test_corrupted_file_reads_as_empty(self, tmp_path: Path) -> None:
        path = tmp_path / "session.token"
        store = EncryptedFileCredentialStore(path)
        store.write_token(StoredToken("secret-token", fetched_at=1.0))
        path.write_bytes(b"garbage")

        assert store.read_token() is None

    @pytest.mark.skipif(os.name == "nt", reason="POSIX permissions")
    def test_key_file_is_private(self, tmp_path: Path) -> None:
        store = EncryptedFileCredentialStore(tmp_path / "session.token", key_path=tmp_path / "keys" / "token.key")
        store.write_token(StoredToken("x" * 10, fetched_at=1.0))

        mode = (tmp_path / "keys" / "token.key").stat().st_mode & 0o777
        assert mode == 0o600
