"""
FastAPI dependencies shared by the routers.

Application-wide objects (settings, credential store, Google client) live on
``app.state`` and are handed to routes through these functions, so tests can
build an application around their own instances.
"""

import hmac
from typing import Optional

from fastapi import Depends, Header, Request

from identity_broker.auth.identity import GoogleIdentityProvider
from identity_broker.auth.sessions import SESSION_COOKIE_NAME, resolve_session
from identity_broker.auth.tokens import SessionClaims
from identity_broker.config import Settings
from identity_broker.errors import InvalidSession, InvalidToken, Unauthorized
from identity_broker.oauth.server import AuthorizationServer
from identity_broker.store import CredentialStore


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> CredentialStore:
    return request.app.state.store


def get_identity_provider(request: Request) -> GoogleIdentityProvider:
    return request.app.state.identity_provider


def get_authorization_server(
    store: CredentialStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
) -> AuthorizationServer:
    return AuthorizationServer(store, settings)


# =============================================================================
# Session Dependencies
# =============================================================================

async def get_current_session(
    request: Request,
    store: CredentialStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
) -> SessionClaims:
    """
    Resolve the session cookie of the calling browser.

    Usage:
        @router.get("/me")
        async def me(session: SessionClaims = Depends(get_current_session)):
            ...

    Raises:
        InvalidSession: If there is no cookie or it does not resolve
    """
    token = request.cookies.get(SESSION_COOKIE_NAME)
    if not token:
        raise InvalidSession("Not authenticated")
    return await resolve_session(store, settings, token)


async def get_optional_session(
    request: Request,
    store: CredentialStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
) -> Optional[SessionClaims]:
    """Like ``get_current_session`` but yields None instead of raising."""
    token = request.cookies.get(SESSION_COOKIE_NAME)
    if not token:
        return None
    try:
        return await resolve_session(store, settings, token)
    except InvalidSession:
        return None


# =============================================================================
# Header Helpers
# =============================================================================

def extract_bearer_token(authorization: Optional[str]) -> str:
    """
    Extract Bearer token from Authorization header.

    Raises:
        InvalidToken: If the header is missing or not ``Bearer <token>``
    """
    if not authorization:
        raise InvalidToken("Missing or invalid Authorization header")

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise InvalidToken("Missing or invalid Authorization header")

    return parts[1]


def verify_ctfd_api_key(
    x_ctfd_api_key: Optional[str] = Header(None),
    settings: Settings = Depends(get_app_settings),
) -> str:
    """
    Dependency that ensures CTFd server-to-server calls carry the shared key.

    A broker without ``CTFD_API_KEY`` configured rejects every call.
    """
    expected = settings.CTFD_API_KEY
    if not expected or not x_ctfd_api_key:
        raise Unauthorized("Unauthorized")
    if not hmac.compare_digest(x_ctfd_api_key.encode("utf-8"), expected.encode("utf-8")):
        raise Unauthorized("Unauthorized")
    return x_ctfd_api_key
