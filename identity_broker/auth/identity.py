"""
Identity Provider Bridge for Google Workspace sign-in.

This module handles:
- Exchanging the Google authorization code for tokens
- Fetching and caching Google's JWKS (JSON Web Key Set)
- Verifying the returned ID token and turning it into an IdentityAssertion
- Enforcing the institutional hosted-domain policy

The domain policy is the only gate between "has a Google account" and "is a
student"; it must run before any user or session record is touched.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
from jose import JWTError, jwk, jwt
from jose.exceptions import JOSEError

from identity_broker.config import Settings
from identity_broker.errors import DomainRejected, UpstreamError

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
GOOGLE_JWKS_URI = "https://www.googleapis.com/oauth2/v3/certs"
GOOGLE_ISSUERS = ("https://accounts.google.com", "accounts.google.com")


@dataclass(frozen=True)
class IdentityAssertion:
    """A verified identity as asserted by the upstream provider."""

    subject: str
    email: str
    name: str
    picture: str
    hosted_domain: Optional[str]
    email_verified: bool


class GoogleIdentityProvider:
    """
    Client for the Google side of the student sign-in.

    One instance lives on ``app.state`` so the JWKS cache is shared across
    requests. Nothing else is cached.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self._jwks_cache: Optional[Dict[str, Any]] = None
        self._jwks_cache_time: float = 0.0

    # =========================================================================
    # JWKS Cache
    # =========================================================================

    async def fetch_jwks(self, force_refresh: bool = False) -> Dict[str, Any]:
        """
        Fetch JWKS from Google with caching.

        Args:
            force_refresh: If True, bypass cache and fetch fresh JWKS

        Returns:
            JWKS document containing keys

        Raises:
            httpx.HTTPError: If JWKS endpoint is unreachable
            ValueError: If response is invalid
        """
        current_time = time.time()
        cache_ttl = self.settings.JWKS_CACHE_SECONDS

        if not force_refresh and self._jwks_cache and (current_time - self._jwks_cache_time) < cache_ttl:
            return self._jwks_cache

        async with httpx.AsyncClient(timeout=self.settings.HTTP_TIMEOUT_SECONDS) as client:
            response = await client.get(GOOGLE_JWKS_URI)
            response.raise_for_status()
            jwks_data = response.json()

        if "keys" not in jwks_data:
            raise ValueError("Invalid JWKS response: missing 'keys' field")

        self._jwks_cache = jwks_data
        self._jwks_cache_time = current_time
        return jwks_data

    @staticmethod
    def get_signing_key(token: str, jwks: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Extract the public key from JWKS that matches the token's kid.

        Raises:
            JWTError: If token header is malformed or has no kid
        """
        unverified_header = jwt.get_unverified_header(token)

        kid = unverified_header.get("kid")
        if not kid:
            raise JWTError("Token header missing 'kid' (Key ID)")

        for key in jwks.get("keys", []):
            if key.get("kid") == kid:
                return key
        return None

    # =========================================================================
    # ID Token Verification
    # =========================================================================

    async def verify_id_token(self, id_token: str, nonce: Optional[str] = None) -> Dict[str, Any]:
        """
        Verify and decode an ID token issued by Google.

        1. Fetches JWKS and finds the correct public key (refreshing once if
           the kid is unknown, in case keys were rotated)
        2. Verifies the signature and the aud/exp/iat claims
        3. Checks the issuer and, when one was sent, the nonce

        Returns:
            Dictionary of verified token claims

        Raises:
            JWTError: If token is invalid, expired, or signature doesn't match
            httpx.HTTPError: If JWKS endpoint is unreachable
        """
        jwks = await self.fetch_jwks()

        signing_key = self.get_signing_key(id_token, jwks)
        if not signing_key:
            jwks = await self.fetch_jwks(force_refresh=True)
            signing_key = self.get_signing_key(id_token, jwks)
            if not signing_key:
                raise JWTError("Unable to find matching signing key in JWKS")

        public_key = jwk.construct(signing_key, algorithm="RS256")

        claims = jwt.decode(
            id_token,
            public_key.to_pem().decode("utf-8"),
            algorithms=["RS256"],
            audience=self.settings.GOOGLE_CLIENT_ID,
            options={
                "verify_signature": True,
                "verify_aud": True,
                "verify_iat": True,
                "verify_exp": True,
                "verify_at_hash": False,
                "leeway": 10,  # seconds of clock skew
            },
        )

        if claims.get("iss") not in GOOGLE_ISSUERS:
            raise JWTError(f"Invalid issuer: {claims.get('iss')}")

        if nonce is not None and claims.get("nonce") != nonce:
            raise JWTError("Nonce mismatch")

        return claims

    # =========================================================================
    # Code Exchange
    # =========================================================================

    async def exchange_code(
        self,
        code: str,
        redirect_uri: str,
        code_verifier: Optional[str] = None,
        nonce: Optional[str] = None,
    ) -> IdentityAssertion:
        """
        Exchange a Google authorization code for a verified identity.

        Not retried: any failure is terminal for the current sign-in attempt.

        Args:
            code: Authorization code from the Google callback
            redirect_uri: Redirect URI used when starting the login
            code_verifier: PKCE verifier stored at login start
            nonce: Nonce stored at login start

        Returns:
            IdentityAssertion built from the verified ID token claims

        Raises:
            UpstreamError: On timeout, transport failure, error response or
                an ID token that fails verification
        """
        payload = {
            "client_id": self.settings.GOOGLE_CLIENT_ID,
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
        }
        if self.settings.GOOGLE_CLIENT_SECRET:
            payload["client_secret"] = self.settings.GOOGLE_CLIENT_SECRET
        if code_verifier:
            payload["code_verifier"] = code_verifier

        try:
            async with httpx.AsyncClient(timeout=self.settings.HTTP_TIMEOUT_SECONDS) as client:
                response = await client.post(
                    GOOGLE_TOKEN_ENDPOINT,
                    data=payload,
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
        except httpx.HTTPError as e:
            logger.warning("Google token exchange failed", extra={"reason": type(e).__name__})
            raise UpstreamError("Unable to reach the identity provider") from e

        if not response.is_success:
            logger.warning(
                "Google token endpoint returned an error",
                extra={"status_code": response.status_code},
            )
            raise UpstreamError("Identity provider rejected the authorization code")

        try:
            token_data = response.json()
        except ValueError as e:
            raise UpstreamError("Identity provider returned an invalid response") from e

        id_token = token_data.get("id_token")
        if not id_token:
            raise UpstreamError("No ID token received from identity provider")

        try:
            claims = await self.verify_id_token(id_token, nonce=nonce)
        except (JOSEError, ValueError, httpx.HTTPError) as e:
            logger.warning("ID token verification failed", extra={"reason": str(e)})
            raise UpstreamError("Unable to verify identity token") from e

        return assertion_from_claims(claims)


# =============================================================================
# Claim Helpers
# =============================================================================

def assertion_from_claims(claims: Dict[str, Any]) -> IdentityAssertion:
    """
    Build an IdentityAssertion from verified Google ID token claims.

    Raises:
        UpstreamError: If the subject or email claim is missing
    """
    subject = claims.get("sub")
    email = (claims.get("email") or "").strip().lower()
    if not subject or "@" not in email:
        raise UpstreamError("Identity token is missing subject or email")

    name = claims.get("name") or claims.get("given_name") or email.split("@")[0].title()
    email_verified = claims.get("email_verified") in (True, "true")

    return IdentityAssertion(
        subject=str(subject),
        email=email,
        name=name,
        picture=claims.get("picture") or "",
        hosted_domain=claims.get("hd"),
        email_verified=email_verified,
    )


def enforce_domain_policy(assertion: IdentityAssertion, institution_domain: str) -> IdentityAssertion:
    """
    Accept only verified accounts of the institutional Google Workspace.

    The hosted-domain claim must equal the configured domain and the email
    must belong to that same domain. Nothing client-supplied is consulted.

    Raises:
        DomainRejected: If the account is outside the institution
    """
    expected = institution_domain.strip().lower()
    hosted_domain = (assertion.hosted_domain or "").strip().lower()
    email_domain = assertion.email.rsplit("@", 1)[-1]

    if not assertion.email_verified or hosted_domain != expected or email_domain != expected:
        logger.info(
            "Rejected sign-in outside institutional domain",
            extra={"hosted_domain": hosted_domain or None},
        )
        raise DomainRejected(f"Only @{expected} accounts can sign in")

    return assertion
