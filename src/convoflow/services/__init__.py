"""Service layer helpers (settings, credentials)."""

from .credentials import (
    CredentialStore,
    EncryptedFileCredentialStore,
    MemoryCredentialStore,
    SessionTokenManager,
    StoredToken,
)
from .settings import Settings, SettingsStore

__all__ = [
    "Settings",
    "SettingsStore",
    "CredentialStore",
    "StoredToken",
    "MemoryCredentialStore",
    "EncryptedFileCredentialStore",
    "SessionTokenManager",
]
