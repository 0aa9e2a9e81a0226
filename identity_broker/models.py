"""
Data Models Module

This module defines Pydantic models for request/response validation
and data serialization throughout the broker.

Models are organized by functional area:
- OAuth 2.0 / OIDC models (authorize and token requests, token and userinfo responses)
- Local authentication models (login, registration, user profile)
- CTFd handoff models (SSO validation, credential verification)
- Health check model
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, EmailStr, Field

from identity_broker.auth.passwords import MIN_PASSWORD_LENGTH

USERNAME_PATTERN = r"^[a-zA-Z0-9_]{3,20}$"
STUDENT_NUMBER_PATTERN = r"^\d{7}$"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# OAuth 2.0 / OIDC Models
# ============================================================================

class AuthorizeRequest(BaseModel):
    """Query parameters of the authorization endpoint, all optional until validated."""
    client_id: Optional[str] = None
    redirect_uri: Optional[str] = None
    response_type: Optional[str] = None
    scope: Optional[str] = None
    state: Optional[str] = None
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None

    @property
    def scopes(self) -> List[str]:
        return parse_scope(self.scope)


class TokenRequest(BaseModel):
    """
    Token endpoint request normalised from a form-encoded or JSON body.

    ``grant_type`` is kept as a free string so that unknown values reach the
    server and produce ``unsupported_grant_type`` instead of a 422.
    """
    grant_type: Optional[str] = None
    code: Optional[str] = None
    redirect_uri: Optional[str] = None
    code_verifier: Optional[str] = None
    refresh_token: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    scope: Optional[str] = None


class TokenResponse(BaseModel):
    """OAuth2 token response."""
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_token: str
    scope: Optional[str] = None


class UserInfoResponse(BaseModel):
    """OIDC userinfo claims; profile claims only present with the profile scope."""
    sub: str
    email: str
    email_verified: bool = True
    name: str
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    picture: Optional[str] = None
    preferred_username: Optional[str] = None


def parse_scope(scope: Optional[str]) -> List[str]:
    """Split a space-delimited scope string, dropping empties and duplicates."""
    if not scope:
        return []
    seen: List[str] = []
    for item in scope.split(" "):
        if item and item not in seen:
            seen.append(item)
    return seen


# ============================================================================
# Local Authentication Models
# ============================================================================

class LoginRequest(BaseModel):
    """Password login; ``identifier`` is an email or a username."""
    identifier: str = Field(..., min_length=1, max_length=254)
    password: str = Field(..., min_length=1, max_length=1024)


class RegisterRequest(BaseModel):
    """
    Completes sign-up for a Google identity that passed the domain policy.

    There is deliberately no email field: the email comes from the verified
    identity held in the signed login-state cookie.
    """
    password: str = Field(..., min_length=MIN_PASSWORD_LENGTH, max_length=1024)
    username: Optional[str] = Field(None, pattern=USERNAME_PATTERN)
    first_name: Optional[str] = Field(None, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)


class ProfileUpdateRequest(BaseModel):
    """Student details saved from the profile page; the email never changes."""
    username: str = Field(..., pattern=USERNAME_PATTERN)
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    student_number: str = Field(..., pattern=STUDENT_NUMBER_PATTERN)
    faculty: str = Field(..., min_length=1, max_length=100)
    year_of_study: str = Field(..., min_length=1, max_length=20)


class UserProfile(BaseModel):
    """User profile returned by /auth/me."""
    id: str
    email: EmailStr
    name: str
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    student_number: Optional[str] = None
    faculty: Optional[str] = None
    year_of_study: Optional[str] = None
    picture: Optional[str] = None
    has_vpn_config: bool = False
    vpn_assigned_ip: Optional[str] = None


# ============================================================================
# CTFd Handoff Models
# ============================================================================

class SSOUser(BaseModel):
    id: str
    email: str
    name: str
    type: str = "user"
    verified: bool = True


class SSOValidateResponse(BaseModel):
    success: bool
    user: Optional[SSOUser] = None
    error: Optional[str] = None


# ============================================================================
# Health Check Models
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response model."""
    status: str = Field(..., description="Service health status")
    service: str = Field(..., description="Service name")
    version: str = Field(..., description="Service version")
    timestamp: datetime = Field(default_factory=_utcnow, description="Check timestamp")
    dependencies: Optional[Dict[str, Any]] = Field(None, description="Dependency health status")
