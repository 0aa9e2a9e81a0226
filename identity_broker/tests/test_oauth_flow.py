"""
Authorization Endpoint Tests

Drives /oauth/authorize and /oauth/token over HTTP: the full CTFd
authorization code + PKCE flow, error delivery (JSON vs redirect), redirect
URI matching and discovery.
"""

from urllib.parse import parse_qs, urlsplit

import pytest

from conftest import CTFD_CLIENT_ID, CTFD_REDIRECT, MOODLE_REDIRECT
from identity_broker.oauth.pkce import s256_challenge
from identity_broker.oauth.server import redirect_uri_allowed


def authorize_params(**overrides):
    params = {
        "client_id": CTFD_CLIENT_ID,
        "redirect_uri": CTFD_REDIRECT,
        "response_type": "code",
        "scope": "openid profile email",
        "state": "xyz",
        "code_challenge": s256_challenge("abc123"),
        "code_challenge_method": "S256",
    }
    params.update(overrides)
    return {k: v for k, v in params.items() if v is not None}


def redirect_query(response):
    assert response.status_code == 302
    location = response.headers["location"]
    return location, {k: v[0] for k, v in parse_qs(urlsplit(location).query).items()}


class TestCtfdAuthorizationCodeFlow:
    def test_full_flow_and_replay(self, logged_in_client):
        """
        Authorize with PKCE, redeem the code, then replay it:
        - the redirect carries the code and the unchanged state
        - the token response is a one-hour Bearer token, not cacheable
        - the second redemption fails with invalid_grant
        """
        response = logged_in_client.get("/oauth/authorize", params=authorize_params(), follow_redirects=False)
        location, query = redirect_query(response)

        assert location.startswith(CTFD_REDIRECT + "?")
        assert query["state"] == "xyz"
        code = query["code"]

        token_form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": CTFD_REDIRECT,
            "client_id": CTFD_CLIENT_ID,
            "code_verifier": "abc123",
        }
        response = logged_in_client.post("/oauth/token", data=token_form)

        assert response.status_code == 200
        body = response.json()
        assert body["token_type"] == "Bearer"
        assert body["expires_in"] == 3600
        assert body["access_token"]
        assert body["refresh_token"]
        assert body["scope"] == "openid profile email"
        assert response.headers["cache-control"] == "no-store"
        assert response.headers["pragma"] == "no-cache"

        replay = logged_in_client.post("/oauth/token", data=token_form)
        assert replay.status_code == 400
        assert replay.json()["error"] == "invalid_grant"

    def test_access_token_works_at_userinfo(self, logged_in_client, user):
        _, query = redirect_query(
            logged_in_client.get("/oauth/authorize", params=authorize_params(), follow_redirects=False)
        )
        tokens = logged_in_client.post(
            "/oauth/token",
            data={
                "grant_type": "authorization_code",
                "code": query["code"],
                "redirect_uri": CTFD_REDIRECT,
                "client_id": CTFD_CLIENT_ID,
                "code_verifier": "abc123",
            },
        ).json()

        response = logged_in_client.get(
            "/oauth/userinfo", headers={"Authorization": f"Bearer {tokens['access_token']}"}
        )

        assert response.status_code == 200
        assert response.json()["sub"] == user.id
        assert response.json()["email"] == user.email


class TestAuthorizeErrors:
    def test_no_session_redirects_to_login(self, client):
        response = client.get("/oauth/authorize", params=authorize_params(), follow_redirects=False)
        location, query = redirect_query(response)

        assert location.startswith("/login?")
        assert query["return_to"].startswith("http://testserver/oauth/authorize?")
        assert "client_id=ctfd_client" in query["return_to"]

    def test_missing_response_type_is_json_400(self, logged_in_client):
        response = logged_in_client.get(
            "/oauth/authorize", params=authorize_params(response_type=None), follow_redirects=False
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_unknown_client_is_not_redirected(self, logged_in_client):
        response = logged_in_client.get(
            "/oauth/authorize", params=authorize_params(client_id="nope"), follow_redirects=False
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_client"

    def test_unregistered_redirect_uri_is_not_redirected(self, logged_in_client):
        response = logged_in_client.get(
            "/oauth/authorize",
            params=authorize_params(redirect_uri="https://attacker.example/callback"),
            follow_redirects=False,
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"
        assert "location" not in response.headers

    def test_invalid_scope_redirects_with_state(self, logged_in_client):
        response = logged_in_client.get(
            "/oauth/authorize", params=authorize_params(scope="openid admin"), follow_redirects=False
        )
        location, query = redirect_query(response)

        assert location.startswith(CTFD_REDIRECT)
        assert query["error"] == "invalid_scope"
        assert "admin" in query["error_description"]
        assert query["state"] == "xyz"
        assert "code" not in query

    def test_unsupported_challenge_method_redirects(self, logged_in_client):
        response = logged_in_client.get(
            "/oauth/authorize", params=authorize_params(code_challenge_method="S512"), follow_redirects=False
        )
        _, query = redirect_query(response)

        assert query["error"] == "invalid_request"
        assert "code" not in query


class TestChallengeMethodDefault:
    def test_challenge_without_method_is_plain(self, logged_in_client):
        _, query = redirect_query(
            logged_in_client.get(
                "/oauth/authorize",
                params=authorize_params(code_challenge="plain-verifier-value", code_challenge_method=None),
                follow_redirects=False,
            )
        )

        response = logged_in_client.post(
            "/oauth/token",
            data={
                "grant_type": "authorization_code",
                "code": query["code"],
                "redirect_uri": CTFD_REDIRECT,
                "client_id": CTFD_CLIENT_ID,
                "code_verifier": "plain-verifier-value",
            },
        )
        assert response.status_code == 200


class TestRedirectUriMatching:
    @pytest.mark.parametrize(
        "uri,allowed",
        [
            (MOODLE_REDIRECT, True),
            ("https://lms.moodle.example.org/callback", True),
            ("https://a.b.moodle.example.org/callback", True),
            ("https://moodle.example.org.evil.com/callback", False),
            ("https://evilmoodle.example.org/callback", False),
            ("http://lms.moodle.example.org/callback", False),
            (MOODLE_REDIRECT + "/extra", False),
        ],
    )
    def test_exact_and_wildcard_entries(self, uri, allowed):
        registered = [MOODLE_REDIRECT, "*.moodle.example.org"]
        assert redirect_uri_allowed(uri, registered) is allowed


class TestDiscovery:
    @pytest.mark.parametrize("path", ["/.well-known/openid-configuration", "/oauth/.well-known/openid-configuration"])
    def test_discovery_document(self, client, path):
        response = client.get(path)
        assert response.status_code == 200

        doc = response.json()
        assert doc["issuer"] == "http://testserver"
        assert doc["authorization_endpoint"] == "http://testserver/oauth/authorize"
        assert doc["token_endpoint"] == "http://testserver/oauth/token"
        assert doc["userinfo_endpoint"] == "http://testserver/oauth/userinfo"
        assert doc["jwks_uri"] == "http://testserver/oauth/.well-known/jwks.json"
        assert doc["response_types_supported"] == ["code"]
        assert doc["code_challenge_methods_supported"] == ["plain", "S256"]
        assert doc["grant_types_supported"] == ["authorization_code", "refresh_token"]

    def test_public_base_url_overrides_issuer(self, settings, store):
        from fastapi.testclient import TestClient

        from identity_broker.main import create_application

        app = create_application(settings.model_copy(update={"PUBLIC_BASE_URL": "https://auth.example.ac.za"}), store)
        doc = TestClient(app).get("/.well-known/openid-configuration").json()

        assert doc["issuer"] == "https://auth.example.ac.za"

    def test_jwks_empty_for_hmac_sessions(self, client):
        assert client.get("/oauth/.well-known/jwks.json").json() == {"keys": []}
