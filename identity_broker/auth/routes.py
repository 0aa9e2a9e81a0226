"""
Authentication routes for student sign-in.

This module implements:
- Google Workspace sign-in (authorization code flow with state, nonce and
  PKCE kept in the signed login-state cookie)
- Completion of sign-up for a verified Google identity
- Password login, logout, the current-user profile and profile updates

Only accounts of the institutional Google Workspace domain get past the
callback; the domain check happens before any user or session record is
read or written.
"""

import asyncio
import logging
import secrets
import time
import uuid
from typing import Any, Dict, Optional
from urllib.parse import urlencode, urlsplit

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import RedirectResponse

from identity_broker.auth.identity import GoogleIdentityProvider, IdentityAssertion, enforce_domain_policy
from identity_broker.auth.passwords import hash_password, verify_password
from identity_broker.auth.sessions import (
    SESSION_COOKIE_NAME,
    clear_session_cookie,
    issue_session,
    revoke_session,
    set_session_cookie,
)
from identity_broker.auth.tokens import SessionClaims
from identity_broker.config import Settings
from identity_broker.dependencies import (
    get_app_settings,
    get_current_session,
    get_identity_provider,
    get_store,
)
from identity_broker.errors import AccountExists, InvalidRequest, InvalidSession, Unauthorized
from identity_broker.models import LoginRequest, ProfileUpdateRequest, RegisterRequest, UserProfile
from identity_broker.oauth.pkce import generate_code_verifier, s256_challenge
from identity_broker.store import CredentialStore, DuplicateRecordError, User

logger = logging.getLogger(__name__)

# Keys of the signed login-state cookie
STATE_KEY = "oauth_state"
NONCE_KEY = "oauth_nonce"
VERIFIER_KEY = "code_verifier"
RETURN_TO_KEY = "return_to"
PENDING_IDENTITY_KEY = "pending_identity"

PENDING_IDENTITY_TTL_SECONDS = 30 * 60


# =============================================================================
# Router Setup
# =============================================================================

auth_router = APIRouter(
    prefix="/auth",
    tags=["authentication"],
)


# =============================================================================
# Helpers
# =============================================================================

def safe_return_to(request: Request, value: Optional[str]) -> Optional[str]:
    """
    Accept a post-login destination only if it stays on this broker.

    Relative paths are allowed; absolute URLs must point at the host the
    request came in on.
    """
    if not value:
        return None
    parts = urlsplit(value)
    if not parts.scheme and not parts.netloc:
        return value if value.startswith("/") and not value.startswith("//") else None
    if parts.scheme in ("http", "https") and parts.netloc == request.url.netloc:
        return value
    return None


def user_profile(user: User) -> UserProfile:
    return UserProfile(
        id=user.id,
        email=user.email,
        name=user.name,
        username=user.username,
        first_name=user.first_name,
        last_name=user.last_name,
        student_number=user.student_number,
        faculty=user.faculty,
        year_of_study=user.year_of_study,
        picture=user.picture or None,
        has_vpn_config=bool(user.vpn_config_path),
        vpn_assigned_ip=user.vpn_assigned_ip,
    )


def _park_identity(request: Request, assertion: IdentityAssertion) -> None:
    request.session[PENDING_IDENTITY_KEY] = {
        "subject": assertion.subject,
        "email": assertion.email,
        "name": assertion.name,
        "picture": assertion.picture,
        "parked_at": int(time.time()),
    }


def _pending_identity(request: Request) -> Dict[str, Any]:
    pending = request.session.get(PENDING_IDENTITY_KEY)
    if not pending or int(time.time()) - pending.get("parked_at", 0) > PENDING_IDENTITY_TTL_SECONDS:
        request.session.pop(PENDING_IDENTITY_KEY, None)
        raise InvalidRequest("No verified Google sign-in to complete; sign in with Google first")
    return pending


# =============================================================================
# Google Sign-In
# =============================================================================

@auth_router.get("/google/login", response_class=RedirectResponse)
async def google_login(
    request: Request,
    return_to: Optional[str] = Query(None),
    settings: Settings = Depends(get_app_settings),
):
    """
    Initiate Google sign-in.

    This endpoint:
    1. Generates state, nonce and a PKCE verifier
    2. Stores them (and the post-login destination) in the login-state cookie
    3. Redirects the browser to Google, restricted to the institution via ``hd``
    """
    state = secrets.token_urlsafe(32)
    nonce = secrets.token_urlsafe(32)
    code_verifier = generate_code_verifier()

    request.session[STATE_KEY] = state
    request.session[NONCE_KEY] = nonce
    request.session[VERIFIER_KEY] = code_verifier
    destination = safe_return_to(request, return_to)
    if destination:
        request.session[RETURN_TO_KEY] = destination
    else:
        request.session.pop(RETURN_TO_KEY, None)

    params = {
        "client_id": settings.GOOGLE_CLIENT_ID,
        "response_type": "code",
        "redirect_uri": settings.GOOGLE_REDIRECT_URI,
        "scope": "openid profile email",
        "state": state,
        "nonce": nonce,
        "hd": settings.INSTITUTION_DOMAIN,
        "prompt": "select_account",
        "code_challenge": s256_challenge(code_verifier),
        "code_challenge_method": "S256",
    }

    authorization_url = f"{settings.google_authority}/o/oauth2/v2/auth?{urlencode(params)}"
    return RedirectResponse(url=authorization_url, status_code=302)


@auth_router.get("/google/callback", response_class=RedirectResponse)
async def google_callback(
    request: Request,
    code: Optional[str] = Query(None, description="Authorization code from Google"),
    state: Optional[str] = Query(None, description="State parameter for CSRF protection"),
    error: Optional[str] = Query(None, description="Error code if sign-in failed"),
    settings: Settings = Depends(get_app_settings),
    store: CredentialStore = Depends(get_store),
    provider: GoogleIdentityProvider = Depends(get_identity_provider),
):
    """
    Handle the redirect back from Google.

    Known students get a session and go to their destination; first-time
    students are parked in the login-state cookie and sent to registration.
    """
    expected_state = request.session.pop(STATE_KEY, None)
    nonce = request.session.pop(NONCE_KEY, None)
    code_verifier = request.session.pop(VERIFIER_KEY, None)
    return_to = request.session.pop(RETURN_TO_KEY, None)

    if error:
        logger.info("Google sign-in was not completed", extra={"reason": error})
        raise InvalidRequest(f"Google sign-in failed: {error}")

    if not code or not state:
        raise InvalidRequest("Missing required parameters (code or state)")

    if not expected_state or not secrets.compare_digest(state.encode("utf-8"), expected_state.encode("utf-8")):
        raise InvalidRequest("Invalid state parameter")

    assertion = await provider.exchange_code(
        code,
        settings.GOOGLE_REDIRECT_URI,
        code_verifier=code_verifier,
        nonce=nonce,
    )
    enforce_domain_policy(assertion, settings.INSTITUTION_DOMAIN)

    user = await store.get_user_by_email(assertion.email)
    if user is None:
        _park_identity(request, assertion)
        logger.info("Verified new student, awaiting registration")
        return RedirectResponse(url=settings.REGISTER_PAGE_URL, status_code=302)

    changes = {}
    if not user.google_id:
        changes["google_id"] = assertion.subject
    if assertion.picture and assertion.picture != user.picture:
        changes["picture"] = assertion.picture
    if changes:
        user = await store.update_user(user.id, **changes) or user

    session = await issue_session(store, settings, user)
    response = RedirectResponse(url=return_to or "/", status_code=302)
    set_session_cookie(response, settings, session)
    logger.info("Student signed in with Google", extra={"user_id": user.id})
    return response


# =============================================================================
# Registration and Password Login
# =============================================================================

@auth_router.post("/register", status_code=201)
async def register(
    body: RegisterRequest,
    request: Request,
    response: Response,
    settings: Settings = Depends(get_app_settings),
    store: CredentialStore = Depends(get_store),
) -> Dict[str, Any]:
    """
    Create the account for the Google identity verified in this browser.

    The email, name and Google subject come from the login-state cookie,
    never from the request body.
    """
    pending = _pending_identity(request)

    if await store.get_user_by_email(pending["email"]):
        request.session.pop(PENDING_IDENTITY_KEY, None)
        raise AccountExists("An account already exists for this email")

    # Argon2 is CPU-bound; it runs in a worker thread.
    password_hash = await asyncio.to_thread(hash_password, body.password)

    name_parts = pending["name"].split(" ")
    user = User(
        id=str(uuid.uuid4()),
        email=pending["email"],
        name=pending["name"],
        google_id=pending["subject"],
        picture=pending.get("picture") or "",
        password_hash=password_hash,
        username=body.username,
        first_name=body.first_name or name_parts[0],
        last_name=body.last_name or (" ".join(name_parts[1:]) or None),
    )
    try:
        user = await store.create_user(user)
    except DuplicateRecordError as e:
        raise AccountExists(str(e))

    request.session.pop(PENDING_IDENTITY_KEY, None)

    session = await issue_session(store, settings, user)
    set_session_cookie(response, settings, session)
    logger.info("Registered student", extra={"user_id": user.id})

    return {"success": True, "user": user_profile(user).model_dump()}


@auth_router.post("/login")
async def login(
    body: LoginRequest,
    response: Response,
    settings: Settings = Depends(get_app_settings),
    store: CredentialStore = Depends(get_store),
) -> Dict[str, Any]:
    """Password login by email or username."""
    identifier = body.identifier.strip()
    if "@" in identifier:
        user = await store.get_user_by_email(identifier)
    else:
        user = await store.get_user_by_username(identifier)

    if user is None or not await asyncio.to_thread(verify_password, body.password, user.password_hash or ""):
        raise Unauthorized("Invalid email or password")

    session = await issue_session(store, settings, user)
    set_session_cookie(response, settings, session)

    return {"success": True, "user": user_profile(user).model_dump()}


@auth_router.post("/profile")
async def update_profile(
    body: ProfileUpdateRequest,
    session: SessionClaims = Depends(get_current_session),
    store: CredentialStore = Depends(get_store),
) -> Dict[str, Any]:
    """
    Save the signed-in student's details.

    Raises:
        AccountExists: If another account already uses the username
        InvalidSession: If the session's user no longer exists
    """
    try:
        user = await store.update_user(session.subject, **body.model_dump())
    except DuplicateRecordError:
        raise AccountExists("Username already taken")
    if user is None:
        raise InvalidSession("User not found")

    logger.info("Updated student profile", extra={"user_id": user.id})
    return {
        "success": True,
        "message": "Profile saved successfully",
        "user": user_profile(user).model_dump(),
    }


@auth_router.post("/logout")
async def logout(
    request: Request,
    response: Response,
    store: CredentialStore = Depends(get_store),
) -> Dict[str, bool]:
    await revoke_session(store, request.cookies.get(SESSION_COOKIE_NAME))
    clear_session_cookie(response)
    return {"success": True}


@auth_router.get("/me")
async def me(
    session: SessionClaims = Depends(get_current_session),
    store: CredentialStore = Depends(get_store),
) -> Dict[str, Any]:
    user = await store.get_user_by_id(session.subject)
    if user is None:
        raise InvalidSession("User not found")
    return {"success": True, "user": user_profile(user).model_dump()}
