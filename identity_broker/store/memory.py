"""
In-memory credential store.

Every mutation runs under a single ``asyncio.Lock``; ``consume_*`` reads and
deletes inside that critical section, which makes redemption linearizable
per token. Records are copied on the way in and out so callers never hold a
live reference into the store.
"""

import asyncio
import logging
import time
from dataclasses import replace
from typing import Dict, Iterable, Optional

from identity_broker.store.base import (
    AccessToken,
    AuthorizationCode,
    CredentialStore,
    DuplicateRecordError,
    OAuthClient,
    RefreshToken,
    Session,
    SSOHandoffToken,
    User,
    is_expired,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_PURGE_INTERVAL_SECONDS = 300.0


def _copy(record):
    return replace(record) if record is not None else None


class MemoryCredentialStore(CredentialStore):
    """Dictionary-backed store used in development and tests."""

    def __init__(
        self,
        clients: Iterable[OAuthClient] = (),
        purge_interval: float = DEFAULT_PURGE_INTERVAL_SECONDS,
    ):
        self._lock = asyncio.Lock()
        self._purge_interval = purge_interval
        self._last_purge = time.monotonic()
        self._clients: Dict[str, OAuthClient] = {c.client_id: _copy(c) for c in clients}
        self._users: Dict[str, User] = {}
        self._sessions: Dict[str, Session] = {}
        self._codes: Dict[str, AuthorizationCode] = {}
        self._access_tokens: Dict[str, AccessToken] = {}  # keyed by token string
        self._access_by_id: Dict[str, str] = {}  # record id -> token string
        self._refresh_tokens: Dict[str, RefreshToken] = {}
        self._sso_tokens: Dict[str, SSOHandoffToken] = {}
        self._sso_by_user: Dict[str, str] = {}  # user id -> token string

    async def _persist(self) -> None:
        """Hook for durable subclasses; called inside the lock after a mutation."""

    def _sweep_if_due(self) -> None:
        """
        Drop expired records at most once per ``purge_interval``.

        Runs inside the lock on the write paths that mint credentials, just
        before they persist, so a long-running broker sheds dead records
        without a restart or an extra file write.
        """
        if time.monotonic() - self._last_purge < self._purge_interval:
            return
        removed = self._purge_locked()
        if removed:
            logger.info("Swept expired credentials", extra={"removed": removed})

    # =========================================================================
    # Users
    # =========================================================================

    def _check_unique(self, email: str, username: Optional[str], exclude_id: Optional[str] = None) -> None:
        for existing in self._users.values():
            if existing.id == exclude_id:
                continue
            if existing.email.lower() == email.lower():
                raise DuplicateRecordError(f"User with email {email} already exists")
            if username and existing.username and existing.username.lower() == username.lower():
                raise DuplicateRecordError(f"Username {username} already taken")

    async def create_user(self, user: User) -> User:
        async with self._lock:
            if user.id in self._users:
                raise DuplicateRecordError(f"User id {user.id} already exists")
            self._check_unique(user.email, user.username)
            self._users[user.id] = _copy(user)
            await self._persist()
        return _copy(user)

    async def get_user_by_id(self, user_id: str) -> Optional[User]:
        return _copy(self._users.get(user_id))

    async def get_user_by_email(self, email: str) -> Optional[User]:
        wanted = email.lower()
        for user in self._users.values():
            if user.email.lower() == wanted:
                return _copy(user)
        return None

    async def get_user_by_username(self, username: str) -> Optional[User]:
        wanted = username.lower()
        for user in self._users.values():
            if user.username and user.username.lower() == wanted:
                return _copy(user)
        return None

    async def update_user(self, user_id: str, **changes) -> Optional[User]:
        async with self._lock:
            user = self._users.get(user_id)
            if user is None:
                return None
            if "id" in changes or "email" in changes:
                raise ValueError("id and email are immutable")
            if changes.get("username"):
                self._check_unique(user.email, changes["username"], exclude_id=user_id)
            updated = replace(user, **changes, updated_at=utcnow())
            self._users[user_id] = updated
            await self._persist()
        return _copy(updated)

    # =========================================================================
    # Sessions
    # =========================================================================

    async def create_session(self, session: Session) -> Session:
        async with self._lock:
            if session.token in self._sessions:
                raise DuplicateRecordError("Session token collision")
            self._sessions[session.token] = _copy(session)
            self._sweep_if_due()
            await self._persist()
        return _copy(session)

    async def get_session(self, token: str) -> Optional[Session]:
        session = self._sessions.get(token)
        if session is None or is_expired(session.expires_at):
            return None
        return _copy(session)

    async def delete_session(self, token: str) -> bool:
        async with self._lock:
            removed = self._sessions.pop(token, None) is not None
            if removed:
                await self._persist()
        return removed

    # =========================================================================
    # OAuth Clients
    # =========================================================================

    async def get_client(self, client_id: str) -> Optional[OAuthClient]:
        return _copy(self._clients.get(client_id))

    # =========================================================================
    # Authorization Codes
    # =========================================================================

    async def create_authorization_code(self, code: AuthorizationCode) -> AuthorizationCode:
        async with self._lock:
            if code.code in self._codes:
                raise DuplicateRecordError("Authorization code collision")
            self._codes[code.code] = _copy(code)
            self._sweep_if_due()
            await self._persist()
        return _copy(code)

    async def consume_authorization_code(self, code: str) -> Optional[AuthorizationCode]:
        async with self._lock:
            record = self._codes.pop(code, None)
            if record is None:
                return None
            await self._persist()
        if is_expired(record.expires_at):
            return None
        return record

    # =========================================================================
    # Access Tokens
    # =========================================================================

    async def create_access_token(self, token: AccessToken) -> AccessToken:
        async with self._lock:
            if token.token in self._access_tokens or token.id in self._access_by_id:
                raise DuplicateRecordError("Access token collision")
            self._access_tokens[token.token] = _copy(token)
            self._access_by_id[token.id] = token.token
            self._sweep_if_due()
            await self._persist()
        return _copy(token)

    async def get_access_token(self, token: str) -> Optional[AccessToken]:
        record = self._access_tokens.get(token)
        if record is None or is_expired(record.expires_at):
            return None
        return _copy(record)

    async def get_access_token_by_id(self, token_id: str) -> Optional[AccessToken]:
        token = self._access_by_id.get(token_id)
        if token is None:
            return None
        return _copy(self._access_tokens.get(token))

    # =========================================================================
    # Refresh Tokens
    # =========================================================================

    async def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        async with self._lock:
            if token.token in self._refresh_tokens:
                raise DuplicateRecordError("Refresh token collision")
            self._refresh_tokens[token.token] = _copy(token)
            await self._persist()
        return _copy(token)

    async def consume_refresh_token(self, token: str) -> Optional[RefreshToken]:
        async with self._lock:
            record = self._refresh_tokens.pop(token, None)
            if record is None:
                return None
            await self._persist()
        if is_expired(record.expires_at):
            return None
        return record

    # =========================================================================
    # SSO Handoff Tokens
    # =========================================================================

    async def put_sso_token(self, token: SSOHandoffToken) -> SSOHandoffToken:
        async with self._lock:
            previous = self._sso_by_user.pop(token.user_id, None)
            if previous is not None:
                self._sso_tokens.pop(previous, None)
            self._sso_tokens[token.token] = _copy(token)
            self._sso_by_user[token.user_id] = token.token
            self._sweep_if_due()
            await self._persist()
        return _copy(token)

    async def consume_sso_token(self, token: str) -> Optional[SSOHandoffToken]:
        async with self._lock:
            record = self._sso_tokens.pop(token, None)
            if record is None:
                return None
            if self._sso_by_user.get(record.user_id) == token:
                del self._sso_by_user[record.user_id]
            await self._persist()
        if is_expired(record.expires_at):
            return None
        return record

    # =========================================================================
    # Maintenance
    # =========================================================================

    def _purge_locked(self) -> int:
        """Remove expired records; the caller holds the lock and persists."""
        now = utcnow()
        self._last_purge = time.monotonic()
        removed = 0
        for table in (self._sessions, self._codes, self._refresh_tokens):
            for key in [k for k, v in table.items() if is_expired(v.expires_at, now)]:
                del table[key]
                removed += 1

        for key in [k for k, v in self._sso_tokens.items() if is_expired(v.expires_at, now)]:
            record = self._sso_tokens.pop(key)
            if self._sso_by_user.get(record.user_id) == key:
                del self._sso_by_user[record.user_id]
            removed += 1

        # Access tokens still referenced by a live refresh token are kept:
        # the refresh grant resolves the user through them.
        referenced = {r.access_token_id for r in self._refresh_tokens.values()}
        for key, record in list(self._access_tokens.items()):
            if is_expired(record.expires_at, now) and record.id not in referenced:
                del self._access_tokens[key]
                self._access_by_id.pop(record.id, None)
                removed += 1

        return removed

    async def purge_expired(self) -> int:
        async with self._lock:
            removed = self._purge_locked()
            if removed:
                await self._persist()

        if removed:
            logger.info("Purged expired credentials", extra={"removed": removed})
        return removed
