"""
OAuth 2.0 / OpenID Connect Authorization Server
================================================

Implements the authorization code flow with optional PKCE (RFC 7636), the
refresh-token grant with rotation, and the userinfo claims lookup for the
downstream applications (Moodle LMS and CTFd).

The server is format-agnostic: routes normalise HTTP input into
``AuthorizeRequest`` / ``TokenRequest`` models and render the results and
``OAuthError``s raised here.

One-time use of codes and refresh tokens is delegated to the store's atomic
``consume_*`` operations; nothing in this module reads a code or refresh
token and deletes it in separate steps.
"""

import hmac
import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Optional, Union
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from identity_broker.auth.tokens import BEARER_TOKEN_BYTES, CODE_BYTES, SessionClaims, mint_opaque_token
from identity_broker.config import Settings
from identity_broker.errors import (
    InvalidClient,
    InvalidGrant,
    InvalidRequest,
    InvalidScope,
    InvalidToken,
    OAuthError,
    UnsupportedGrantType,
)
from identity_broker.models import (
    AuthorizeRequest,
    TokenRequest,
    TokenResponse,
    UserInfoResponse,
    parse_scope,
)
from identity_broker.oauth import pkce
from identity_broker.store import (
    AccessToken,
    AuthorizationCode,
    CredentialStore,
    OAuthClient,
    RefreshToken,
)
from identity_broker.store.base import utcnow

logger = logging.getLogger(__name__)

GRANT_AUTHORIZATION_CODE = "authorization_code"
GRANT_REFRESH_TOKEN = "refresh_token"


# =============================================================================
# Authorization Outcomes
# =============================================================================

@dataclass(frozen=True)
class AuthorizationRedirect:
    """Redirect back to the client's (validated) redirect URI."""

    redirect_uri: str
    params: Dict[str, str] = field(default_factory=dict)

    @property
    def location(self) -> str:
        return append_query(self.redirect_uri, self.params)


@dataclass(frozen=True)
class LoginRequired:
    """The request is valid but the resource owner has no session yet."""


AuthorizeOutcome = Union[AuthorizationRedirect, LoginRequired]


def append_query(uri: str, params: Dict[str, str]) -> str:
    """Add ``params`` to ``uri`` keeping any query it already carries."""
    parts = urlsplit(uri)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((k, v) for k, v in params.items() if v is not None)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def redirect_uri_allowed(uri: str, registered: List[str]) -> bool:
    """
    Match a redirect URI against a client's registrations.

    Entries are compared exactly. An entry of the form ``*.example.com``
    accepts any https URI whose host is a subdomain of ``example.com``.
    """
    for allowed in registered:
        if allowed == uri:
            return True
        if allowed.startswith("*."):
            domain = allowed[2:].lower()
            try:
                parts = urlsplit(uri)
            except ValueError:
                return False
            host = (parts.hostname or "").lower()
            if parts.scheme == "https" and host.endswith("." + domain):
                return True
    return False


def _secrets_equal(presented: Optional[str], expected: str) -> bool:
    if not presented or not expected:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


# =============================================================================
# Authorization Server
# =============================================================================

class AuthorizationServer:
    """OAuth2 authorization server over an injected credential store."""

    def __init__(self, store: CredentialStore, settings: Settings):
        self.store = store
        self.settings = settings

    @property
    def access_token_ttl(self) -> timedelta:
        return timedelta(seconds=self.settings.ACCESS_TOKEN_TTL_SECONDS)

    @property
    def refresh_token_ttl(self) -> timedelta:
        return timedelta(days=self.settings.REFRESH_TOKEN_TTL_DAYS)

    @property
    def code_ttl(self) -> timedelta:
        return timedelta(seconds=self.settings.AUTH_CODE_TTL_SECONDS)

    # =========================================================================
    # Authorization Endpoint
    # =========================================================================

    async def authorize(
        self,
        request: AuthorizeRequest,
        session: Optional[SessionClaims],
    ) -> AuthorizeOutcome:
        """
        Validate an authorization request and mint a code.

        Errors raised here are rendered directly as JSON, because the
        redirect URI has not been validated yet. Once it has, errors are
        delivered by redirect.

        Args:
            request: Authorization endpoint parameters
            session: Verified session of the resource owner, if any

        Returns:
            AuthorizationRedirect carrying ``code`` or ``error``, or
            LoginRequired when there is no valid session

        Raises:
            InvalidRequest: Missing parameters, bad response_type or an
                unregistered redirect_uri
            InvalidClient: Unknown client_id
        """
        if not request.client_id or not request.redirect_uri or request.response_type != "code":
            raise InvalidRequest(
                "Missing required parameters: client_id, redirect_uri, or response_type"
            )

        client = await self.store.get_client(request.client_id)
        if client is None:
            # The redirect URI cannot be trusted without a client.
            raise InvalidClient("Unknown client_id", status_code=400)

        if not redirect_uri_allowed(request.redirect_uri, client.redirect_uris):
            raise InvalidRequest("Invalid redirect_uri")

        def error_redirect(exc: OAuthError) -> AuthorizationRedirect:
            params = exc.to_dict()
            if request.state:
                params["state"] = request.state
            return AuthorizationRedirect(request.redirect_uri, params)

        requested_scopes = request.scopes
        invalid_scopes = [s for s in requested_scopes if s not in client.allowed_scopes]
        if invalid_scopes:
            return error_redirect(InvalidScope(f"Invalid scopes: {', '.join(invalid_scopes)}"))

        challenge = request.code_challenge or None
        method = None
        if challenge:
            method = request.code_challenge_method or "plain"
            if method not in pkce.SUPPORTED_METHODS:
                return error_redirect(InvalidRequest("Unsupported code_challenge_method"))

        if session is None:
            return LoginRequired()

        code = AuthorizationCode(
            code=mint_opaque_token(CODE_BYTES),
            client_id=client.client_id,
            user_id=session.subject,
            redirect_uri=request.redirect_uri,
            scope=" ".join(requested_scopes),
            code_challenge=challenge,
            code_challenge_method=method,
            expires_at=utcnow() + self.code_ttl,
        )
        await self.store.create_authorization_code(code)

        logger.info(
            "Issued authorization code",
            extra={"client_id": client.client_id, "user_id": session.subject, "pkce": bool(challenge)},
        )

        params = {"code": code.code}
        if request.state:
            params["state"] = request.state
        return AuthorizationRedirect(request.redirect_uri, params)

    # =========================================================================
    # Token Endpoint
    # =========================================================================

    async def token(self, request: TokenRequest) -> TokenResponse:
        """Dispatch a token request on ``grant_type``."""
        if request.grant_type == GRANT_AUTHORIZATION_CODE:
            return await self.exchange_code(request)
        if request.grant_type == GRANT_REFRESH_TOKEN:
            return await self.refresh(request)
        raise UnsupportedGrantType(
            "Only authorization_code and refresh_token grants are supported"
        )

    async def _get_client(self, client_id: str) -> OAuthClient:
        client = await self.store.get_client(client_id)
        if client is None:
            raise InvalidClient("Unknown client")
        return client

    async def exchange_code(self, request: TokenRequest) -> TokenResponse:
        """
        Redeem an authorization code for an access/refresh token pair.

        Raises:
            InvalidRequest: Missing code, client_id or redirect_uri
            InvalidClient: Unknown client, or bad secret without PKCE
            InvalidGrant: Unknown/expired/used code, client or redirect URI
                mismatch, or failed PKCE verification
        """
        if not request.code or not request.client_id or not request.redirect_uri:
            raise InvalidRequest("Missing required parameters")

        client = await self._get_client(request.client_id)

        client_authenticated = _secrets_equal(request.client_secret, client.client_secret)
        if not request.code_verifier and not client_authenticated:
            raise InvalidClient("Invalid client credentials")

        auth_code = await self.store.consume_authorization_code(request.code)
        if auth_code is None:
            raise InvalidGrant("Invalid or expired authorization code")

        if auth_code.client_id != client.client_id:
            raise InvalidGrant("Authorization code was issued to another client")

        if auth_code.redirect_uri != request.redirect_uri:
            raise InvalidGrant("Redirect URI mismatch")

        if auth_code.code_challenge:
            if not request.code_verifier:
                raise InvalidGrant("Code verifier required")
            if not pkce.verify(
                request.code_verifier,
                auth_code.code_challenge,
                auth_code.code_challenge_method or "plain",
            ):
                raise InvalidGrant("Invalid code verifier")
        else:
            # No challenge was bound to this code, so the client secret is the
            # only proof that the caller is the client it was issued to.
            if not client_authenticated:
                raise InvalidGrant("Client authentication required for this code")

        return await self._issue_tokens(client.client_id, auth_code.user_id, auth_code.scope)

    async def refresh(self, request: TokenRequest) -> TokenResponse:
        """
        Rotate a refresh token.

        The presented token is consumed before anything else can fail, so it
        is dead even if issuing the replacement pair fails.

        Raises:
            InvalidRequest: Missing refresh_token or client_id
            InvalidClient: Unknown client or bad secret
            InvalidGrant: Unknown, expired, replayed or foreign refresh token
        """
        if not request.refresh_token or not request.client_id:
            raise InvalidRequest("Missing required parameters")

        client = await self.store.get_client(request.client_id)
        if client is None or not _secrets_equal(request.client_secret, client.client_secret):
            raise InvalidClient("Invalid client credentials")

        stored = await self.store.consume_refresh_token(request.refresh_token)
        if stored is None:
            raise InvalidGrant("Invalid or expired refresh token")

        # Refresh token -> access token -> user: the refresh record itself
        # carries no user id.
        previous = await self.store.get_access_token_by_id(stored.access_token_id)
        if previous is None:
            logger.warning("Refresh token references a missing access token")
            raise InvalidGrant("Invalid or expired refresh token")

        if previous.client_id != client.client_id:
            raise InvalidGrant("Refresh token was issued to another client")

        return await self._issue_tokens(client.client_id, previous.user_id, previous.scope)

    async def _issue_tokens(self, client_id: str, user_id: str, scope: str) -> TokenResponse:
        now = utcnow()
        access = await self.store.create_access_token(
            AccessToken(
                id=str(uuid.uuid4()),
                token=mint_opaque_token(BEARER_TOKEN_BYTES),
                client_id=client_id,
                user_id=user_id,
                scope=scope,
                expires_at=now + self.access_token_ttl,
            )
        )
        refresh = await self.store.create_refresh_token(
            RefreshToken(
                id=str(uuid.uuid4()),
                token=mint_opaque_token(BEARER_TOKEN_BYTES),
                access_token_id=access.id,
                expires_at=now + self.refresh_token_ttl,
            )
        )

        logger.info("Issued access token", extra={"client_id": client_id, "user_id": user_id})

        return TokenResponse(
            access_token=access.token,
            token_type="Bearer",
            expires_in=int(self.access_token_ttl.total_seconds()),
            refresh_token=refresh.token,
            scope=scope or None,
        )

    # =========================================================================
    # UserInfo Endpoint
    # =========================================================================

    async def userinfo(self, bearer_token: Optional[str]) -> UserInfoResponse:
        """
        Resolve an access token to the claims its scope allows.

        Raises:
            InvalidToken: Missing, unknown or expired token, or deleted user
        """
        if not bearer_token:
            raise InvalidToken("Missing or invalid Authorization header")

        access = await self.store.get_access_token(bearer_token)
        if access is None:
            raise InvalidToken("Invalid or expired access token")

        user = await self.store.get_user_by_id(access.user_id)
        if user is None:
            raise InvalidToken("User not found")

        claims = UserInfoResponse(
            sub=user.id,
            email=user.email,
            email_verified=True,
            name=user.name,
        )

        if "profile" in parse_scope(access.scope):
            name_parts = user.name.split(" ")
            claims.given_name = user.first_name or name_parts[0]
            claims.family_name = user.last_name or (" ".join(name_parts[1:]) or None)
            claims.picture = user.picture or None
            claims.preferred_username = user.username or user.email.split("@")[0]

        return claims
