"""
Configuration module for the Campus Identity Broker.

This module uses Pydantic Settings to load and validate environment variables
for Google Workspace sign-in, the institutional domain policy, session JWTs,
the OAuth 2.0 clients served by the broker, the CTFd handoff and the VPN
provisioning backend.

Environment variables are loaded from .env file or system environment.
"""

import re
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from identity_broker.store.base import OAuthClient


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All configuration for the upstream identity provider, session issuance,
    token lifetimes, downstream OAuth clients and collaborator services is
    defined here.
    """

    # =========================================================================
    # Google Workspace Configuration (upstream identity provider)
    # =========================================================================

    GOOGLE_CLIENT_ID: str = Field(
        ...,
        description="Google OAuth client ID used for student sign-in",
        min_length=1,
    )

    GOOGLE_CLIENT_SECRET: Optional[str] = Field(
        None,
        description="Google OAuth client secret",
    )

    GOOGLE_REDIRECT_URI: str = Field(
        ...,
        description="Callback registered with Google (e.g., https://auth.example.com/auth/google/callback)",
        min_length=1,
    )

    # =========================================================================
    # Institutional Access Policy
    # =========================================================================

    INSTITUTION_DOMAIN: str = Field(
        default="students.wits.ac.za",
        description="Google Workspace hosted domain every student account must belong to",
    )

    # =========================================================================
    # Session JWT Configuration
    # =========================================================================

    SESSION_JWT_SECRET: str = Field(
        ...,
        description="Secret key for signing session JWTs (must be cryptographically secure)",
        min_length=32,
    )

    SESSION_JWT_ALGORITHM: str = Field(
        default="HS256",
        description="JWT signing algorithm when RS256 is not enabled",
    )

    SESSION_JWT_EXPIRY_MINUTES: int = Field(
        default=60 * 24 * 7,
        description="Session lifetime in minutes",
        ge=5,
        le=60 * 24 * 30,  # Max 30 days
    )

    JWT_ISSUER: str = Field(
        default="campus-identity-broker",
        description="Issuer claim stamped on session JWTs",
    )

    USE_RS256_JWT: bool = Field(
        default=False,
        description="Sign session JWTs with RS256 instead of an HMAC secret",
    )

    JWT_PRIVATE_KEY: Optional[str] = Field(None, description="PEM private key for RS256")
    JWT_PUBLIC_KEY: Optional[str] = Field(None, description="PEM public key for RS256 (published in the JWKS)")
    JWT_KEY_ID: str = Field(default="broker-key-1", description="kid advertised for the RS256 key")

    COOKIE_SECURE: bool = Field(
        default=True,
        description="Mark the session cookie Secure (disable only for local HTTP development)",
    )

    # =========================================================================
    # Token Lifetimes
    # =========================================================================

    AUTH_CODE_TTL_SECONDS: int = Field(default=600, ge=30, le=3600)
    ACCESS_TOKEN_TTL_SECONDS: int = Field(default=3600, ge=60, le=86400)
    REFRESH_TOKEN_TTL_DAYS: int = Field(default=30, ge=1, le=365)
    SSO_TOKEN_TTL_SECONDS: int = Field(default=300, ge=30, le=900)

    # =========================================================================
    # Downstream OAuth Clients
    # =========================================================================

    MOODLE_CLIENT_SECRET: Optional[str] = Field(None, description="Secret of the Moodle LMS client")
    MOODLE_REDIRECT_URIS: str = Field(
        default="http://localhost:8080/admin/oauth2callback.php",
        description="Comma-separated redirect URIs registered for Moodle",
    )

    CTFD_CLIENT_SECRET: Optional[str] = Field(None, description="Secret of the CTFd client")
    CTFD_REDIRECT_URIS: str = Field(
        default="http://localhost:8000/oauth/callback",
        description="Comma-separated redirect URIs registered for CTFd",
    )

    OAUTH_ALLOWED_SCOPES: str = Field(
        default="openid,profile,email",
        description="Comma-separated scopes every client may request",
    )

    # =========================================================================
    # CTFd SSO Handoff
    # =========================================================================

    CTFD_URL: Optional[str] = Field(None, description="Base URL of the CTFd platform")
    CTFD_API_KEY: Optional[str] = Field(
        None,
        description="Pre-shared key CTFd presents in X-CTFd-API-Key",
        min_length=16,
    )

    # =========================================================================
    # VPN Provisioning Backend
    # =========================================================================

    VPN_BACKEND_URL: str = Field(
        default="http://localhost:3001",
        description="Base URL of the VPN profile provisioning service",
    )

    # =========================================================================
    # Storage
    # =========================================================================

    STORE_BACKEND: str = Field(default="memory", description="Credential store backend: memory or json")
    DATA_DIR: Path = Field(default=Path("data"), description="Directory for the JSON store and VPN profiles")
    STORE_PURGE_INTERVAL_SECONDS: float = Field(
        default=300.0,
        ge=0,
        description="Minimum seconds between sweeps of expired credentials on write paths",
    )

    # =========================================================================
    # Broker Server Configuration
    # =========================================================================

    PUBLIC_BASE_URL: Optional[str] = Field(
        None,
        description="Externally visible base URL used as OIDC issuer (defaults to request origin)",
    )

    LOGIN_PAGE_URL: str = Field(default="/login", description="Local login page")
    REGISTER_PAGE_URL: str = Field(default="/register", description="Page that completes sign-up after Google sign-in")

    LOGIN_STATE_SECRET: Optional[str] = Field(
        None,
        description="Key for the signed login-state cookie (defaults to SESSION_JWT_SECRET)",
        min_length=32,
    )

    BROKER_HOST: str = Field(default="0.0.0.0", description="Host to bind the broker server")
    BROKER_PORT: int = Field(default=3000, ge=1, le=65535)

    ALLOWED_ORIGINS: Optional[str] = Field(
        None,
        description="Comma-separated list of allowed CORS origins (leave empty for no CORS)",
    )

    LOG_LEVEL: str = Field(default="INFO")

    HTTP_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0, le=60)

    JWKS_CACHE_SECONDS: int = Field(
        default=3600,
        description="Time to cache Google JWKS keys in seconds",
        ge=300,
        le=86400,
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @staticmethod
    def _split(value: Optional[str]) -> List[str]:
        if not value:
            return []
        return [item.strip() for item in value.split(",") if item.strip()]

    @property
    def allowed_origins_list(self) -> List[str]:
        return self._split(self.ALLOWED_ORIGINS)

    @property
    def allowed_scopes_list(self) -> List[str]:
        return self._split(self.OAUTH_ALLOWED_SCOPES)

    @property
    def oauth_clients(self) -> List[OAuthClient]:
        """
        Build the statically provisioned OAuth clients.

        A client is only registered when its secret is configured, so a
        deployment without CTFd simply has no ``ctfd_client``.

        Returns:
            List of OAuthClient records handed to the credential store.
        """
        clients = []
        if self.MOODLE_CLIENT_SECRET:
            clients.append(
                OAuthClient(
                    client_id="moodle_client",
                    client_secret=self.MOODLE_CLIENT_SECRET,
                    name="Moodle LMS",
                    redirect_uris=self._split(self.MOODLE_REDIRECT_URIS),
                    allowed_scopes=self.allowed_scopes_list,
                )
            )
        if self.CTFD_CLIENT_SECRET:
            clients.append(
                OAuthClient(
                    client_id="ctfd_client",
                    client_secret=self.CTFD_CLIENT_SECRET,
                    name="CTFd Platform",
                    redirect_uris=self._split(self.CTFD_REDIRECT_URIS),
                    allowed_scopes=self.allowed_scopes_list,
                )
            )
        return clients

    @property
    def google_authority(self) -> str:
        return "https://accounts.google.com"

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("INSTITUTION_DOMAIN")
    @classmethod
    def validate_institution_domain(cls, v: str) -> str:
        """
        Validate and normalise the institutional domain.

        Raises:
            ValueError: If the value is not a bare domain name
        """
        domain = v.strip().lower()
        if not domain or "." not in domain or " " in domain or "@" in domain:
            raise ValueError(
                f"Invalid domain format: '{v}'. Expected format: 'students.example.ac.za'"
            )
        return domain

    @field_validator("SESSION_JWT_ALGORITHM")
    @classmethod
    def validate_jwt_algorithm(cls, v: str) -> str:
        allowed_algorithms = ["HS256", "HS384", "HS512"]
        if v not in allowed_algorithms:
            raise ValueError(
                f"JWT algorithm must be one of {allowed_algorithms}, got: {v}"
            )
        return v

    @field_validator("STORE_BACKEND")
    @classmethod
    def validate_store_backend(cls, v: str) -> str:
        backend = v.strip().lower()
        if backend not in ("memory", "json"):
            raise ValueError(f"STORE_BACKEND must be 'memory' or 'json', got: {v}")
        return backend

    @field_validator("PUBLIC_BASE_URL", "CTFD_URL")
    @classmethod
    def strip_trailing_slash(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        if not re.match(r"^https?://", v):
            raise ValueError(f"Expected an absolute http(s) URL, got: {v}")
        return v.rstrip("/")

    @model_validator(mode="after")
    def validate_rs256_keys(self) -> "Settings":
        if self.USE_RS256_JWT and not (self.JWT_PRIVATE_KEY and self.JWT_PUBLIC_KEY):
            raise ValueError("USE_RS256_JWT requires JWT_PRIVATE_KEY and JWT_PUBLIC_KEY")
        return self


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    Returns:
        Settings instance with all configuration loaded and validated.

    Raises:
        ValidationError: If required environment variables are missing
                        or invalid.
    """
    return Settings()


def validate_configuration(settings: Settings) -> dict:
    """
    Validate critical configuration settings and return a status report.

    Called during application startup; errors are logged, not raised, so a
    half-configured deployment still serves its health check.

    Returns:
        Dictionary with validation status and any warnings.
    """
    errors = []
    warnings = []

    if not settings.oauth_clients:
        warnings.append("No OAuth clients configured (set MOODLE_CLIENT_SECRET and/or CTFD_CLIENT_SECRET)")

    if not settings.CTFD_API_KEY:
        warnings.append("CTFD_API_KEY is not set; CTFd SSO validation will reject every call")

    if not settings.GOOGLE_CLIENT_SECRET:
        errors.append("GOOGLE_CLIENT_SECRET is not set; Google sign-in cannot complete")

    if not settings.COOKIE_SECURE:
        warnings.append("COOKIE_SECURE is disabled (session cookie sent over plain HTTP)")

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
        "institution_domain": settings.INSTITUTION_DOMAIN,
        "store_backend": settings.STORE_BACKEND,
    }
