"""
Error taxonomy for the broker.

Every condition a caller can cause is an ``OAuthError`` subclass carrying the
RFC 6749 error code and the HTTP status it maps to. The application registers
one exception handler that renders them as ``{error, error_description}``;
nothing here should ever surface as a 500.
"""

from typing import Dict, Optional

from fastapi import status


class OAuthError(Exception):
    """Base exception for protocol errors surfaced to clients"""

    error = "server_error"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, description: str = "", status_code: Optional[int] = None):
        super().__init__(description or self.error)
        self.description = description
        if status_code is not None:
            self.status_code = status_code

    @property
    def headers(self) -> Optional[Dict[str, str]]:
        return None

    def to_dict(self) -> Dict[str, str]:
        body = {"error": self.error}
        if self.description:
            body["error_description"] = self.description
        return body


class InvalidRequest(OAuthError):
    error = "invalid_request"


class InvalidClient(OAuthError):
    error = "invalid_client"
    status_code = status.HTTP_401_UNAUTHORIZED

    @property
    def headers(self) -> Optional[Dict[str, str]]:
        if self.status_code == status.HTTP_401_UNAUTHORIZED:
            return {"WWW-Authenticate": 'Basic realm="token"'}
        return None


class InvalidGrant(OAuthError):
    error = "invalid_grant"


class InvalidScope(OAuthError):
    error = "invalid_scope"


class UnsupportedGrantType(OAuthError):
    error = "unsupported_grant_type"


class InvalidToken(OAuthError):
    error = "invalid_token"
    status_code = status.HTTP_401_UNAUTHORIZED

    @property
    def headers(self) -> Optional[Dict[str, str]]:
        return {"WWW-Authenticate": 'Bearer error="invalid_token"'}


class InvalidSession(OAuthError):
    """Session assertion is malformed, expired, badly signed or revoked."""

    error = "invalid_session"
    status_code = status.HTTP_401_UNAUTHORIZED


class Unauthorized(OAuthError):
    error = "unauthorized"
    status_code = status.HTTP_401_UNAUTHORIZED


class AccountExists(OAuthError):
    error = "account_exists"
    status_code = status.HTTP_409_CONFLICT


class DomainRejected(OAuthError):
    error = "access_denied"
    status_code = status.HTTP_403_FORBIDDEN


class UpstreamError(OAuthError):
    error = "temporarily_unavailable"
    status_code = status.HTTP_502_BAD_GATEWAY


__all__ = [
    "OAuthError",
    "InvalidRequest",
    "InvalidClient",
    "InvalidGrant",
    "InvalidScope",
    "UnsupportedGrantType",
    "InvalidToken",
    "InvalidSession",
    "Unauthorized",
    "AccountExists",
    "DomainRejected",
    "UpstreamError",
]
