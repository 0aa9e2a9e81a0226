"""
Session issuance and resolution.

A session is a signed assertion (see ``auth.tokens``) that is also recorded
in the credential store. Both must hold for the session to be valid: the
signature proves the broker issued it, the store record proves it has not
been logged out.
"""

import logging
from datetime import timedelta
from typing import Optional

from fastapi import Response

from identity_broker.auth.tokens import SessionClaims, sign_session_assertion, verify_session_assertion
from identity_broker.config import Settings
from identity_broker.errors import InvalidSession
from identity_broker.store import CredentialStore, Session, User

logger = logging.getLogger(__name__)

SESSION_COOKIE_NAME = "session"


async def issue_session(store: CredentialStore, settings: Settings, user: User) -> Session:
    """Sign an assertion for ``user`` and record it as a live session."""
    ttl = timedelta(minutes=settings.SESSION_JWT_EXPIRY_MINUTES)
    token = sign_session_assertion(settings, user.id, user.email, user.name, ttl)
    claims = verify_session_assertion(settings, token)

    session = await store.create_session(
        Session(token=token, user_id=user.id, expires_at=claims.expires_at)
    )
    logger.info("Issued session", extra={"user_id": user.id})
    return session


async def resolve_session(
    store: CredentialStore, settings: Settings, token: Optional[str]
) -> SessionClaims:
    """
    Verify a presented session token.

    Raises:
        InvalidSession: If the token is missing, forged, expired or logged out
    """
    claims = verify_session_assertion(settings, token or "")
    record = await store.get_session(token)
    if record is None or record.user_id != claims.subject:
        raise InvalidSession("Invalid session")
    return claims


async def revoke_session(store: CredentialStore, token: Optional[str]) -> bool:
    if not token:
        return False
    return await store.delete_session(token)


def set_session_cookie(response: Response, settings: Settings, session: Session) -> None:
    response.set_cookie(
        SESSION_COOKIE_NAME,
        session.token,
        httponly=True,
        secure=settings.COOKIE_SECURE,
        samesite="lax",
        max_age=settings.SESSION_JWT_EXPIRY_MINUTES * 60,
        path="/",
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(SESSION_COOKIE_NAME, path="/")
