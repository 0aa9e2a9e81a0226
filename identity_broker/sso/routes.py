"""
CTFd integration routes.

Endpoints:
- GET  /ctfd/auth/sso           Browser leg: mint a handoff token, redirect to CTFd
- POST /ctfd/auth/sso/validate  Server leg: CTFd redeems the token (API key)
- POST /ctfd/auth/verify        Server leg: CTFd checks a username/password (API key)

The server-to-server endpoints answer ``{success, user | error}`` rather
than the OAuth error shape, because that is what the CTFd plugin parses.
"""

import asyncio
import logging
from typing import Any, Dict, Optional
from urllib.parse import urlsplit, urlunsplit

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse

from identity_broker.auth.passwords import verify_password
from identity_broker.auth.tokens import SessionClaims
from identity_broker.config import Settings
from identity_broker.dependencies import (
    get_app_settings,
    get_optional_session,
    get_store,
    verify_ctfd_api_key,
)
from identity_broker.errors import InvalidRequest, OAuthError, Unauthorized
from identity_broker.models import SSOUser, SSOValidateResponse
from identity_broker.oauth.server import append_query
from identity_broker.sso.handoff import SSOHandoffService
from identity_broker.store import CredentialStore

logger = logging.getLogger(__name__)

ctfd_router = APIRouter(prefix="/ctfd/auth", tags=["ctfd"])


def get_handoff_service(
    store: CredentialStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
) -> SSOHandoffService:
    return SSOHandoffService(store, settings)


def _failure(exc: OAuthError) -> JSONResponse:
    body = SSOValidateResponse(success=False, error=exc.description or exc.error)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump(exclude_none=True))


async def _json_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def ctfd_callback_url(settings: Settings, return_url: Optional[str]) -> str:
    """
    Work out where the browser hands the token to CTFd.

    ``return_url`` only selects the CTFd origin, and only when it agrees
    with ``CTFD_URL`` (or no ``CTFD_URL`` is configured).

    Raises:
        InvalidRequest: If no usable CTFd origin is known
    """
    base = settings.CTFD_URL
    if return_url:
        candidate = urlsplit(return_url)
        if candidate.scheme in ("http", "https") and candidate.netloc:
            if base is None or urlsplit(base).netloc == candidate.netloc:
                base = return_url

    if not base:
        raise InvalidRequest("CTFd URL is not configured")

    parts = urlsplit(base)
    return urlunsplit((parts.scheme, parts.netloc, "/sso/callback", "", ""))


# =============================================================================
# SSO Handoff
# =============================================================================

@ctfd_router.get("/sso")
async def initiate_sso(
    request: Request,
    return_url: Optional[str] = Query(None),
    session: Optional[SessionClaims] = Depends(get_optional_session),
    service: SSOHandoffService = Depends(get_handoff_service),
    settings: Settings = Depends(get_app_settings),
) -> RedirectResponse:
    if session is None:
        login_url = append_query(settings.LOGIN_PAGE_URL, {"return_to": str(request.url)})
        return RedirectResponse(url=login_url, status_code=302)

    callback = ctfd_callback_url(settings, return_url)
    token = await service.initiate(session)
    return RedirectResponse(url=append_query(callback, {"token": token}), status_code=302)


@ctfd_router.post("/sso/validate")
async def validate_sso(
    request: Request,
    x_ctfd_api_key: Optional[str] = Header(None),
    service: SSOHandoffService = Depends(get_handoff_service),
    settings: Settings = Depends(get_app_settings),
) -> JSONResponse:
    try:
        verify_ctfd_api_key(x_ctfd_api_key, settings)
        body = await _json_body(request)
        user = await service.redeem(body.get("token") if isinstance(body.get("token"), str) else None)
    except OAuthError as exc:
        return _failure(exc)

    return JSONResponse(content=SSOValidateResponse(success=True, user=user).model_dump(exclude_none=True))


# =============================================================================
# Credential Verification
# =============================================================================

@ctfd_router.post("/verify")
async def verify_credentials(
    request: Request,
    x_ctfd_api_key: Optional[str] = Header(None),
    store: CredentialStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
) -> JSONResponse:
    """
    Check a username (or email) and password on behalf of CTFd.

    A bare username that matches no account is also tried as an address in
    the institutional domain. Unknown users and wrong passwords get the same
    answer.
    """
    try:
        verify_ctfd_api_key(x_ctfd_api_key, settings)
        body = await _json_body(request)
        username = body.get("username")
        password = body.get("password")
        if not isinstance(username, str) or not isinstance(password, str) or not username or not password:
            raise InvalidRequest("Missing username or password")

        user = await store.get_user_by_username(username)
        if user is None:
            email = username if "@" in username else f"{username}@{settings.INSTITUTION_DOMAIN}"
            user = await store.get_user_by_email(email)

        if user is None or not await asyncio.to_thread(verify_password, password, user.password_hash or ""):
            logger.info("CTFd credential check failed")
            raise Unauthorized("Invalid username or password")
    except OAuthError as exc:
        return _failure(exc)

    result = SSOValidateResponse(
        success=True,
        user=SSOUser(id=user.id, email=user.email, name=user.name),
    )
    return JSONResponse(content=result.model_dump(exclude_none=True))
