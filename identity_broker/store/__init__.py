"""
Credential Store Package

Abstract persistence for users, sessions, OAuth clients, authorization
codes, access tokens, refresh tokens and SSO handoff tokens, plus the
in-memory and JSON-file implementations.
"""

from pathlib import Path
from typing import Iterable

from .base import (
    AccessToken,
    AuthorizationCode,
    CredentialStore,
    DuplicateRecordError,
    OAuthClient,
    RefreshToken,
    Session,
    SSOHandoffToken,
    StoreError,
    User,
)
from .json_file import JsonFileCredentialStore
from .memory import DEFAULT_PURGE_INTERVAL_SECONDS, MemoryCredentialStore


def build_store(
    backend: str,
    data_dir: Path,
    clients: Iterable[OAuthClient],
    purge_interval: float = DEFAULT_PURGE_INTERVAL_SECONDS,
) -> CredentialStore:
    """Create the configured store backend."""
    if backend == "json":
        return JsonFileCredentialStore(data_dir, clients, purge_interval)
    return MemoryCredentialStore(clients, purge_interval)


__all__ = [
    "AccessToken",
    "AuthorizationCode",
    "CredentialStore",
    "DuplicateRecordError",
    "JsonFileCredentialStore",
    "MemoryCredentialStore",
    "OAuthClient",
    "RefreshToken",
    "Session",
    "SSOHandoffToken",
    "StoreError",
    "User",
    "build_store",
]
