"""
Credential store entities and the abstract store interface.

The store exclusively owns persisted state. Everything above it holds only
token strings and ids and re-resolves them on every request, so the
``consume_*`` operations below are the single place where one-time-use is
enforced.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Entities
# =============================================================================

@dataclass
class User:
    """A registered student."""

    id: str
    email: str
    name: str
    google_id: str = ""
    picture: str = ""
    password_hash: Optional[str] = None
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    student_number: Optional[str] = None
    faculty: Optional[str] = None
    year_of_study: Optional[str] = None
    vpn_config_path: Optional[str] = None
    vpn_assigned_ip: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Session:
    """A logged-in browser; ``token`` is the signed session assertion."""

    token: str
    user_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class OAuthClient:
    """A downstream application registered with the broker."""

    client_id: str
    client_secret: str
    name: str
    redirect_uris: List[str] = field(default_factory=list)
    allowed_scopes: List[str] = field(default_factory=lambda: ["openid", "profile", "email"])


@dataclass
class AuthorizationCode:
    """Single-use grant artifact minted by the authorization endpoint."""

    code: str
    client_id: str
    user_id: str
    redirect_uri: str
    scope: str
    expires_at: datetime
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AccessToken:
    """Bearer credential presented to the userinfo endpoint."""

    id: str
    token: str
    client_id: str
    user_id: str
    scope: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RefreshToken:
    """Rotating credential; the user is reached through ``access_token_id``."""

    id: str
    token: str
    access_token_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class SSOHandoffToken:
    """Very short-lived bridge credential for the CTF platform."""

    token: str
    user_id: str
    email: str
    name: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)


def is_expired(expires_at: datetime, now: Optional[datetime] = None) -> bool:
    return (now or utcnow()) >= expires_at


# =============================================================================
# Exceptions
# =============================================================================

class StoreError(Exception):
    """Base exception for credential store failures"""


class DuplicateRecordError(StoreError):
    """Raised when a unique attribute (email, username, token) already exists"""


# =============================================================================
# Store Interface
# =============================================================================

class CredentialStore(ABC):
    """
    Abstract persistence for every entity the broker manipulates.

    Lookups of expiring entities return ``None`` for expired records, so
    callers cannot tell "expired" from "never existed". The ``consume_*``
    methods fetch and delete in one atomic step: of two concurrent calls for
    the same token at most one receives the record.
    """

    # Users -------------------------------------------------------------------

    @abstractmethod
    async def create_user(self, user: User) -> User:
        """Insert a user; raises DuplicateRecordError on email/username clash."""

    @abstractmethod
    async def get_user_by_id(self, user_id: str) -> Optional[User]: ...

    @abstractmethod
    async def get_user_by_email(self, email: str) -> Optional[User]: ...

    @abstractmethod
    async def get_user_by_username(self, username: str) -> Optional[User]: ...

    @abstractmethod
    async def update_user(self, user_id: str, **changes) -> Optional[User]:
        """Apply field changes; raises DuplicateRecordError on username clash."""

    # Sessions ----------------------------------------------------------------

    @abstractmethod
    async def create_session(self, session: Session) -> Session: ...

    @abstractmethod
    async def get_session(self, token: str) -> Optional[Session]: ...

    @abstractmethod
    async def delete_session(self, token: str) -> bool: ...

    # OAuth clients -----------------------------------------------------------

    @abstractmethod
    async def get_client(self, client_id: str) -> Optional[OAuthClient]: ...

    # Authorization codes -----------------------------------------------------

    @abstractmethod
    async def create_authorization_code(self, code: AuthorizationCode) -> AuthorizationCode: ...

    @abstractmethod
    async def consume_authorization_code(self, code: str) -> Optional[AuthorizationCode]:
        """Atomically fetch and delete an unexpired code."""

    # Access tokens -----------------------------------------------------------

    @abstractmethod
    async def create_access_token(self, token: AccessToken) -> AccessToken: ...

    @abstractmethod
    async def get_access_token(self, token: str) -> Optional[AccessToken]: ...

    @abstractmethod
    async def get_access_token_by_id(self, token_id: str) -> Optional[AccessToken]:
        """Resolve by record id regardless of expiry (refresh chain lookup)."""

    # Refresh tokens ----------------------------------------------------------

    @abstractmethod
    async def create_refresh_token(self, token: RefreshToken) -> RefreshToken: ...

    @abstractmethod
    async def consume_refresh_token(self, token: str) -> Optional[RefreshToken]:
        """Atomically fetch and delete an unexpired refresh token."""

    # SSO handoff tokens ------------------------------------------------------

    @abstractmethod
    async def put_sso_token(self, token: SSOHandoffToken) -> SSOHandoffToken:
        """Store a handoff token, replacing any earlier one for the same user."""

    @abstractmethod
    async def consume_sso_token(self, token: str) -> Optional[SSOHandoffToken]:
        """Atomically fetch and delete an unexpired handoff token."""

    # Maintenance -------------------------------------------------------------

    @abstractmethod
    async def purge_expired(self) -> int:
        """Drop expired records; returns how many were removed."""
