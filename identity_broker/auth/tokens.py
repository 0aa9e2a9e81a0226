"""
Token Codec
===========

Random identifiers for authorization codes and bearer tokens, and signed
session assertions (JWTs) carrying subject, email, display name and expiry.
Supports both HS256 (default) and RS256 signing.

Verification collapses every failure (malformed, expired, bad signature,
wrong issuer) into ``InvalidSession`` so callers cannot tell which check
failed.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from cryptography.hazmat.primitives import serialization
from jwt.algorithms import RSAAlgorithm
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError

from identity_broker.config import Settings
from identity_broker.errors import InvalidSession

logger = logging.getLogger(__name__)

# Byte lengths before base64url encoding
CODE_BYTES = 32
BEARER_TOKEN_BYTES = 48


# =============================================================================
# Exceptions
# =============================================================================

class JWTSessionError(Exception):
    """Raised when the codec is misconfigured (missing key material)"""
    pass


# =============================================================================
# Opaque Tokens
# =============================================================================

def mint_opaque_token(byte_length: int = BEARER_TOKEN_BYTES) -> str:
    """
    Generate an unguessable URL-safe token.

    Args:
        byte_length: Number of random bytes drawn from the OS CSPRNG

    Returns:
        Base64-URL-encoded string without padding
    """
    return secrets.token_urlsafe(byte_length)


# =============================================================================
# Session Assertions
# =============================================================================

@dataclass(frozen=True)
class SessionClaims:
    """Identity carried by a verified session assertion."""

    subject: str
    email: str
    name: str
    expires_at: datetime


def sign_session_assertion(
    settings: Settings,
    subject: str,
    email: str,
    name: str,
    ttl: Optional[timedelta] = None,
) -> str:
    """
    Create a session JWT for a user.

    Args:
        settings: Application settings holding key material and issuer
        subject: User ID placed in ``sub``
        email: User email
        name: Display name
        ttl: Lifetime; defaults to SESSION_JWT_EXPIRY_MINUTES

    Returns:
        Encoded JWT string

    Raises:
        JWTSessionError: If signing key material is missing
    """
    if ttl is None:
        ttl = timedelta(minutes=settings.SESSION_JWT_EXPIRY_MINUTES)

    now = datetime.now(timezone.utc)
    payload: Dict[str, Any] = {
        "sub": subject,
        "email": email,
        "name": name,
        "iat": now,
        "exp": now + ttl,
        "iss": settings.JWT_ISSUER,
        "jti": secrets.token_hex(16),
    }

    headers = {"kid": settings.JWT_KEY_ID} if settings.USE_RS256_JWT else None

    token = jwt.encode(
        payload,
        _get_signing_key(settings),
        algorithm=_get_algorithm(settings),
        headers=headers,
    )

    logger.debug(
        "Created session JWT",
        extra={"user_id": subject, "expires_in_seconds": int(ttl.total_seconds())},
    )
    return token


def verify_session_assertion(settings: Settings, token: str) -> SessionClaims:
    """
    Verify and decode a session JWT.

    Args:
        settings: Application settings holding key material and issuer
        token: JWT string to verify

    Returns:
        SessionClaims for the authenticated user

    Raises:
        InvalidSession: For any malformed, expired or forged token
    """
    if not token:
        raise InvalidSession("No session token provided")

    try:
        decoded = jwt.decode(
            token,
            _get_verification_key(settings),
            algorithms=[_get_algorithm(settings)],
            issuer=settings.JWT_ISSUER,
            options={
                "verify_signature": True,
                "verify_exp": True,
                "verify_iat": True,
                "require": ["exp", "iat", "iss", "sub", "email"],
            },
        )
    except ExpiredSignatureError:
        logger.info("Session JWT expired")
        raise InvalidSession("Invalid session")
    except InvalidTokenError as e:
        logger.warning("Rejected session JWT", extra={"reason": type(e).__name__})
        raise InvalidSession("Invalid session")

    return SessionClaims(
        subject=str(decoded["sub"]),
        email=str(decoded["email"]),
        name=str(decoded.get("name") or ""),
        expires_at=datetime.fromtimestamp(decoded["exp"], tz=timezone.utc),
    )


# =============================================================================
# Helper Functions
# =============================================================================

def _get_algorithm(settings: Settings) -> str:
    """Determine which JWT algorithm to use based on configuration."""
    return "RS256" if settings.USE_RS256_JWT else settings.SESSION_JWT_ALGORITHM


def _get_signing_key(settings: Settings) -> str:
    if settings.USE_RS256_JWT:
        if not settings.JWT_PRIVATE_KEY:
            raise JWTSessionError("RS256 enabled but JWT_PRIVATE_KEY not configured")
        return settings.JWT_PRIVATE_KEY
    if not settings.SESSION_JWT_SECRET:
        raise JWTSessionError("SESSION_JWT_SECRET not configured")
    return settings.SESSION_JWT_SECRET


def _get_verification_key(settings: Settings) -> str:
    if settings.USE_RS256_JWT:
        if not settings.JWT_PUBLIC_KEY:
            raise JWTSessionError("RS256 enabled but JWT_PUBLIC_KEY not configured")
        return settings.JWT_PUBLIC_KEY
    if not settings.SESSION_JWT_SECRET:
        raise JWTSessionError("SESSION_JWT_SECRET not configured")
    return settings.SESSION_JWT_SECRET


def public_jwks(settings: Settings) -> Dict[str, Any]:
    """
    Build the JWKS document for the session signing key.

    HMAC secrets are never published, so an HS256 deployment serves an empty
    key set.
    """
    if not settings.USE_RS256_JWT or not settings.JWT_PUBLIC_KEY:
        return {"keys": []}

    public_key = serialization.load_pem_public_key(settings.JWT_PUBLIC_KEY.encode("utf-8"))
    jwk = RSAAlgorithm.to_jwk(public_key, as_dict=True)
    jwk.update({"kid": settings.JWT_KEY_ID, "use": "sig", "alg": "RS256"})
    return {"keys": [jwk]}


__all__ = [
    "CODE_BYTES",
    "BEARER_TOKEN_BYTES",
    "JWTSessionError",
    "SessionClaims",
    "mint_opaque_token",
    "sign_session_assertion",
    "verify_session_assertion",
    "public_jwks",
]
