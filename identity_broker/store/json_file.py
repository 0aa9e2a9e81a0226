"""
File-backed credential store.

Keeps the whole database in memory and rewrites a single JSON document after
every mutation, inside the same lock that guards the mutation. That makes the
file a single-writer log of the in-memory state: a consume that returned a
record has already been persisted as deleted.
"""

import asyncio
import json
import logging
import os
from dataclasses import asdict, fields
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Type

from identity_broker.store.base import (
    AccessToken,
    AuthorizationCode,
    OAuthClient,
    RefreshToken,
    Session,
    SSOHandoffToken,
    StoreError,
    User,
)
from identity_broker.store.memory import DEFAULT_PURGE_INTERVAL_SECONDS, MemoryCredentialStore

logger = logging.getLogger(__name__)

DB_FILENAME = "database.json"


def _encode(record) -> Dict[str, Any]:
    data = asdict(record)
    for key, value in data.items():
        if isinstance(value, datetime):
            data[key] = value.isoformat()
    return data


def _decode(cls: Type, data: Dict[str, Any]):
    known = {f.name for f in fields(cls)}
    values = {}
    for key, value in data.items():
        if key not in known:
            continue
        if key.endswith("_at") and isinstance(value, str):
            value = datetime.fromisoformat(value)
        values[key] = value
    return cls(**values)


class JsonFileCredentialStore(MemoryCredentialStore):
    """
    JSON document store under ``data_dir``.

    OAuth clients come from configuration and are never written to disk.
    """

    def __init__(
        self,
        data_dir: Path,
        clients: Iterable[OAuthClient] = (),
        purge_interval: float = DEFAULT_PURGE_INTERVAL_SECONDS,
    ):
        super().__init__(clients, purge_interval)
        self._path = Path(data_dir) / DB_FILENAME
        self._load()

    def _load(self) -> None:
        """Load the database from disk on startup."""
        if not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            for entry in data.get("users", []):
                user = _decode(User, entry)
                self._users[user.id] = user
            for entry in data.get("sessions", []):
                session = _decode(Session, entry)
                self._sessions[session.token] = session
            for entry in data.get("authorization_codes", []):
                code = _decode(AuthorizationCode, entry)
                self._codes[code.code] = code
            for entry in data.get("access_tokens", []):
                token = _decode(AccessToken, entry)
                self._access_tokens[token.token] = token
                self._access_by_id[token.id] = token.token
            for entry in data.get("refresh_tokens", []):
                token = _decode(RefreshToken, entry)
                self._refresh_tokens[token.token] = token
            for entry in data.get("sso_tokens", []):
                token = _decode(SSOHandoffToken, entry)
                self._sso_tokens[token.token] = token
                self._sso_by_user[token.user_id] = token.token
        except (json.JSONDecodeError, OSError, KeyError, TypeError, ValueError) as exc:
            raise StoreError(f"Failed to load credential store from {self._path}: {exc}") from exc

        logger.info(
            "Loaded credential store",
            extra={"path": str(self._path), "users": len(self._users)},
        )

    def _snapshot(self) -> str:
        return json.dumps(
            {
                "users": [_encode(u) for u in self._users.values()],
                "sessions": [_encode(s) for s in self._sessions.values()],
                "authorization_codes": [_encode(c) for c in self._codes.values()],
                "access_tokens": [_encode(t) for t in self._access_tokens.values()],
                "refresh_tokens": [_encode(t) for t in self._refresh_tokens.values()],
                "sso_tokens": [_encode(t) for t in self._sso_tokens.values()],
            },
            indent=2,
        )

    def _write(self, payload: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(payload, encoding="utf-8")
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, self._path)

    async def _persist(self) -> None:
        await asyncio.to_thread(self._write, self._snapshot())
