"""
OAuth 2.0 / OIDC routes.

Endpoints:
- GET  /.well-known/openid-configuration  (also under /oauth)
- GET  /oauth/.well-known/jwks.json
- GET  /oauth/authorize
- POST /oauth/token
- GET/POST /oauth/userinfo

Routes only translate HTTP into ``AuthorizationServer`` calls; every
protocol decision is made there.
"""

import base64
import binascii
import logging
from typing import Any, Dict, Optional
from urllib.parse import unquote

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse

from identity_broker.auth.tokens import SessionClaims, public_jwks
from identity_broker.config import Settings
from identity_broker.dependencies import (
    extract_bearer_token,
    get_app_settings,
    get_authorization_server,
    get_optional_session,
)
from identity_broker.errors import InvalidRequest, OAuthError
from identity_broker.models import AuthorizeRequest, TokenRequest, UserInfoResponse
from identity_broker.oauth import pkce
from identity_broker.oauth.server import AuthorizationServer, LoginRequired, append_query

logger = logging.getLogger(__name__)

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


# =============================================================================
# Router Setup
# =============================================================================

oauth_router = APIRouter(prefix="/oauth", tags=["oauth"])
discovery_router = APIRouter(tags=["discovery"])


# =============================================================================
# Discovery
# =============================================================================

def _issuer(request: Request, settings: Settings) -> str:
    return settings.PUBLIC_BASE_URL or str(request.base_url).rstrip("/")


@discovery_router.get("/.well-known/openid-configuration")
@oauth_router.get("/.well-known/openid-configuration")
async def openid_configuration(
    request: Request,
    settings: Settings = Depends(get_app_settings),
) -> Dict[str, Any]:
    """OpenID Provider metadata."""
    issuer = _issuer(request, settings)
    return {
        "issuer": issuer,
        "authorization_endpoint": f"{issuer}/oauth/authorize",
        "token_endpoint": f"{issuer}/oauth/token",
        "userinfo_endpoint": f"{issuer}/oauth/userinfo",
        "jwks_uri": f"{issuer}/oauth/.well-known/jwks.json",
        "response_types_supported": ["code"],
        "subject_types_supported": ["public"],
        "scopes_supported": settings.allowed_scopes_list,
        "token_endpoint_auth_methods_supported": ["client_secret_post", "client_secret_basic"],
        "claims_supported": [
            "sub",
            "email",
            "email_verified",
            "name",
            "given_name",
            "family_name",
            "picture",
            "preferred_username",
        ],
        "code_challenge_methods_supported": list(pkce.SUPPORTED_METHODS),
        "grant_types_supported": ["authorization_code", "refresh_token"],
    }


@oauth_router.get("/.well-known/jwks.json")
async def jwks(settings: Settings = Depends(get_app_settings)) -> Dict[str, Any]:
    return public_jwks(settings)


# =============================================================================
# Authorization Endpoint
# =============================================================================

@oauth_router.get("/authorize")
async def authorize(
    request: Request,
    client_id: Optional[str] = Query(None),
    redirect_uri: Optional[str] = Query(None),
    response_type: Optional[str] = Query(None),
    scope: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    code_challenge: Optional[str] = Query(None),
    code_challenge_method: Optional[str] = Query(None),
    session: Optional[SessionClaims] = Depends(get_optional_session),
    server: AuthorizationServer = Depends(get_authorization_server),
    settings: Settings = Depends(get_app_settings),
) -> RedirectResponse:
    """
    Start an authorization code grant.

    Parameter errors before the redirect URI is validated are returned as
    JSON by the OAuthError handler; later ones are redirected to the client.
    """
    outcome = await server.authorize(
        AuthorizeRequest(
            client_id=client_id,
            redirect_uri=redirect_uri,
            response_type=response_type,
            scope=scope,
            state=state,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
        ),
        session,
    )

    if isinstance(outcome, LoginRequired):
        login_url = append_query(settings.LOGIN_PAGE_URL, {"return_to": str(request.url)})
        return RedirectResponse(url=login_url, status_code=302)

    return RedirectResponse(url=outcome.location, status_code=302)


# =============================================================================
# Token Endpoint
# =============================================================================

def _basic_credentials(authorization: Optional[str]) -> Optional[tuple]:
    """Decode ``client_secret_basic`` credentials, if that scheme was used."""
    if not authorization:
        return None
    scheme, _, encoded = authorization.partition(" ")
    if scheme.lower() != "basic" or not encoded:
        return None
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        raise InvalidRequest("Malformed Basic authorization header")
    client_id, sep, client_secret = decoded.partition(":")
    if not sep:
        raise InvalidRequest("Malformed Basic authorization header")
    return unquote(client_id), unquote(client_secret)


async def parse_token_request(request: Request) -> TokenRequest:
    """
    Normalise a token request from a form-encoded or JSON body.

    Basic credentials fill in ``client_id``/``client_secret`` when the body
    does not carry them.
    """
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except ValueError:
            raise InvalidRequest("Request body is not valid JSON")
        if not isinstance(body, dict):
            raise InvalidRequest("Request body must be a JSON object")
    else:
        form = await request.form()
        body = {key: value for key, value in form.items() if isinstance(value, str)}

    fields = {name: body.get(name) for name in TokenRequest.model_fields}
    for name, value in fields.items():
        if value is not None and not isinstance(value, str):
            raise InvalidRequest(f"Parameter '{name}' must be a string")

    basic = _basic_credentials(request.headers.get("authorization"))
    if basic:
        fields["client_id"] = fields["client_id"] or basic[0]
        fields["client_secret"] = fields["client_secret"] or basic[1]

    return TokenRequest(**fields)


@oauth_router.post("/token")
async def token(
    request: Request,
    server: AuthorizationServer = Depends(get_authorization_server),
) -> JSONResponse:
    """Token responses, errors included, must never be cached."""
    try:
        token_request = await parse_token_request(request)
        response = await server.token(token_request)
    except OAuthError as exc:
        logger.info("Token request rejected", extra={"error": exc.error, "status_code": exc.status_code})
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_dict(),
            headers={**(exc.headers or {}), **NO_STORE_HEADERS},
        )
    return JSONResponse(
        content=response.model_dump(exclude_none=True),
        headers=NO_STORE_HEADERS,
    )


# =============================================================================
# UserInfo Endpoint
# =============================================================================

@oauth_router.api_route("/userinfo", methods=["GET", "POST"], response_model=UserInfoResponse, response_model_exclude_none=True)
async def userinfo(
    authorization: Optional[str] = Header(None),
    server: AuthorizationServer = Depends(get_authorization_server),
) -> UserInfoResponse:
    return await server.userinfo(extract_bearer_token(authorization))
