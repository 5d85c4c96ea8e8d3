"""Session token management and token storage backends."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Protocol

from cryptography.fernet import Fernet, InvalidToken

from ..ai.errors import CredentialRefreshError, StreamTransportError
from .settings import DEFAULT_SETTINGS_DIR, Settings

if TYPE_CHECKING:  # pragma: no cover - import cycle guard
    from ..ai.client import StreamingClient

__all__ = [
    "StoredToken",
    "CredentialStore",
    "MemoryCredentialStore",
    "EncryptedFileCredentialStore",
    "SessionTokenManager",
    "extract_token",
]

LOGGER = logging.getLogger(__name__)

_TOKEN_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"umx\.wu\(\s*['\"]([^'\"]+)['\"]\s*\)"),
    re.compile(r"__fycb\(\s*['\"]([^'\"]+)['\"]\s*\)"),
)
_BARE_TOKEN_RE = re.compile(r"^[A-Za-z0-9_\-+/=.:]{8,}$")


@dataclass(slots=True, frozen=True)
class StoredToken:
    """A session token and the time it was fetched (epoch seconds)."""

    value: str
    fetched_at: float

    def is_expired(self, ttl_seconds: float, now: float | None = None) -> bool:
        if ttl_seconds <= 0:
            return False
        current = time.time() if now is None else now
        return current - self.fetched_at >= ttl_seconds


class CredentialStore(Protocol):
    """Backing storage for the session token."""

    def read_token(self) -> StoredToken | None: ...

    def write_token(self, token: StoredToken) -> None: ...


class MemoryCredentialStore:
    """Keeps the token in process memory only."""

    def __init__(self, token: StoredToken | None = None) -> None:
        self._token = token

    def read_token(self) -> StoredToken | None:
        return self._token

    def write_token(self, token: StoredToken) -> None:
        self._token = token


class EncryptedFileCredentialStore:
    """Persists the token to disk encrypted with a local Fernet key."""

    def __init__(self, path: Path | None = None, *, key_path: Path | None = None) -> None:
        self._path = path or (DEFAULT_SETTINGS_DIR / "session.token")
        self._key_path = key_path or self._path.with_suffix(".key")
        self._fernet: Fernet | None = None

    @property
    def path(self) -> Path:
        return self._path

    def read_token(self) -> StoredToken | None:
        if not self._path.exists():
            return None
        try:
            raw = self._get_fernet().decrypt(self._path.read_bytes().strip())
            payload = json.loads(raw.decode("utf-8"))
            return StoredToken(value=str(payload["value"]), fetched_at=float(payload["fetched_at"]))
        except InvalidToken:
            LOGGER.warning("Stored session token at %s could not be decrypted", self._path)
        except (ValueError, KeyError, TypeError) as exc:
            LOGGER.warning("Stored session token at %s is malformed: %s", self._path, exc)
        return None

    def write_token(self, token: StoredToken) -> None:
        body = json.dumps({"value": token.value, "fetched_at": token.fetched_at})
        encrypted = self._get_fernet().encrypt(body.encode("utf-8"))
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_bytes(encrypted)
        if os.name != "nt":  # pragma: no cover - depends on OS
            os.chmod(tmp_path, 0o600)
        tmp_path.replace(self._path)

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(self._load_or_create_key())
        return self._fernet

    def _load_or_create_key(self) -> bytes:
        path = self._key_path
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            return path.read_bytes().strip()
        key = Fernet.generate_key()
        tmp_path = path.with_suffix(".keytmp")
        tmp_path.write_bytes(key)
        if os.name != "nt":  # pragma: no cover - depends on OS
            os.chmod(tmp_path, 0o600)
        tmp_path.replace(path)
        return key


def extract_token(body: str) -> str | None:
    """Pull the session token out of a token endpoint response."""

    for pattern in _TOKEN_PATTERNS:
        match = pattern.search(body)
        if match:
            return match.group(1)
    stripped = body.strip().strip("'\"")
    if _BARE_TOKEN_RE.match(stripped):
        return stripped
    return None


class SessionTokenManager:
    """Provides the short-lived token required on every request.

    Cached tokens are reused until they expire. A forced refresh always
    hits the token endpoint; concurrent refreshes are serialized.
    """

    def __init__(
        self,
        client: "StreamingClient",
        settings: Settings,
        *,
        store: CredentialStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self._settings = settings
        self._store = store or MemoryCredentialStore()
        self._clock = clock
        self._lock = asyncio.Lock()
        self._refresh_count = 0

    @property
    def refresh_count(self) -> int:
        return self._refresh_count

    async def ensure_token(self, force_refresh: bool = False) -> str:
        """Return a valid token, fetching a new one when needed.

        Raises:
            CredentialRefreshError: The token endpoint failed or returned
                no recognizable token.
        """

        async with self._lock:
            if not force_refresh:
                cached = self._store.read_token()
                if cached is not None and not cached.is_expired(self._settings.token_ttl_seconds, self._clock()):
                    return cached.value
            return await self._refresh()

    async def _refresh(self) -> str:
        LOGGER.debug("Refreshing session token from %s", self._settings.token_url)
        try:
            body = await self._client.get_text(self._settings.token_url)
        except StreamTransportError as exc:
            raise CredentialRefreshError(f"Failed to fetch session token: {exc}") from exc
        token = extract_token(body)
        if not token:
            raise CredentialRefreshError("Session token not found in response")
        self._store.write_token(StoredToken(value=token, fetched_at=self._clock()))
        self._refresh_count += 1
        LOGGER.info("Session token refreshed")
        return token
