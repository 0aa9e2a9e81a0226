"""
FastAPI Application Factory
============================

Entry point of the campus identity broker: the OAuth 2.0 / OpenID Connect
authorization server that Moodle and CTFd sign students in through, backed
by Google Workspace sign-in restricted to the institutional domain.

Architecture:
    Browser → Broker (this service) → Google Workspace
    Moodle / CTFd → Broker (token, userinfo, SSO validation)
    Broker → VPN backend (profile provisioning)

Routers:
    - /.well-known/*  : OIDC discovery
    - /oauth/*        : Authorization, token, userinfo and JWKS endpoints
    - /ctfd/auth/*    : CTFd SSO handoff and credential verification
    - /auth/*         : Google sign-in, registration, password login
    - /vpn/*          : VPN profile download
    - /health         : Health check endpoint

Running the Service:
    Development:
        uvicorn identity_broker.main:create_application --factory --reload --port 3000

    Production:
        uvicorn identity_broker.main:create_application --factory --host 0.0.0.0 --port 3000

    With custom log level:
        LOG_LEVEL=DEBUG uvicorn identity_broker.main:create_application --factory --reload
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.sessions import SessionMiddleware

from identity_broker import __version__
from identity_broker.auth.identity import GoogleIdentityProvider
from identity_broker.auth.routes import auth_router
from identity_broker.config import Settings, get_settings, validate_configuration
from identity_broker.errors import OAuthError
from identity_broker.models import HealthResponse
from identity_broker.oauth.routes import discovery_router, oauth_router
from identity_broker.sso.routes import ctfd_router
from identity_broker.store import CredentialStore, build_store
from identity_broker.vpn.routes import vpn_router

LOGIN_STATE_COOKIE = "login_state"
LOGIN_STATE_MAX_AGE = 30 * 60

logger = logging.getLogger("identity_broker.main")


# Configure structured JSON logging
def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup tasks:
        - Configure logging
        - Report configuration problems
        - Drop credentials that expired while the broker was down

    Shutdown tasks:
        - Log shutdown information
    """
    settings: Settings = app.state.settings
    setup_logging(settings.LOG_LEVEL)

    report = validate_configuration(settings)
    for message in report["errors"]:
        logger.error(message)
    for message in report["warnings"]:
        logger.warning(message)

    purged = await app.state.store.purge_expired()

    logger.info(
        "Identity broker started",
        extra={
            "version": __version__,
            "institution_domain": settings.INSTITUTION_DOMAIN,
            "store_backend": settings.STORE_BACKEND,
            "purged_credentials": purged,
        },
    )

    yield

    logger.info("Identity broker shutdown complete")


# Create FastAPI application
def create_application(
    settings: Optional[Settings] = None,
    store: Optional[CredentialStore] = None,
) -> FastAPI:
    """
    Application factory function.

    Args:
        settings: Configuration; loaded from the environment when omitted
        store: Credential store; built from ``STORE_BACKEND`` when omitted

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()
    if store is None:
        store = build_store(
            settings.STORE_BACKEND,
            settings.DATA_DIR,
            settings.oauth_clients,
            settings.STORE_PURGE_INTERVAL_SECONDS,
        )

    app = FastAPI(
        title="Campus Identity Broker",
        description="OAuth 2.0 / OpenID Connect provider for campus applications",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.state.settings = settings
    app.state.store = store
    app.state.identity_provider = GoogleIdentityProvider(settings)

    # Signed cookie holding the in-flight Google login (state, nonce, PKCE
    # verifier, pending registration).
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.LOGIN_STATE_SECRET or settings.SESSION_JWT_SECRET,
        session_cookie=LOGIN_STATE_COOKIE,
        max_age=LOGIN_STATE_MAX_AGE,
        same_site="lax",
        https_only=settings.COOKIE_SECURE,
    )

    if settings.allowed_origins_list:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.allowed_origins_list,
            allow_credentials=True,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["*"],
        )

    app.include_router(discovery_router)
    app.include_router(oauth_router)
    app.include_router(ctfd_router)
    app.include_router(auth_router)
    app.include_router(vpn_router)

    # Health check endpoint
    @app.get("/health", tags=["System"], response_model=HealthResponse)
    async def health_check() -> HealthResponse:
        return HealthResponse(
            status="ok",
            service="identity-broker",
            version=__version__,
            dependencies={"store": settings.STORE_BACKEND},
        )

    @app.exception_handler(OAuthError)
    async def oauth_error_handler(request: Request, exc: OAuthError) -> JSONResponse:
        """Render protocol errors as ``{error, error_description}``."""
        logger.info(
            "Request rejected",
            extra={"path": request.url.path, "error": exc.error, "status_code": exc.status_code},
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=exc.headers)

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled errors.

        Logs the traceback and returns a response without internal detail.
        """
        logger.error(
            f"Unhandled exception: {type(exc).__name__}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__,
            },
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "server_error",
                "error_description": "An unexpected error occurred",
            },
        )

    return app


if __name__ == "__main__":
    settings = get_settings()

    uvicorn.run(
        "identity_broker.main:create_application",
        factory=True,
        host=settings.BROKER_HOST,
        port=settings.BROKER_PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )
