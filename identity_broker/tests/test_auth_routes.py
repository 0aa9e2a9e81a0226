"""
Authentication Route Tests

Tests Google sign-in (state handling, domain policy, existing vs new
students), registration from the verified identity, password login,
logout and the current-user endpoint.
"""

from unittest.mock import AsyncMock, patch
from urllib.parse import parse_qs, urlsplit

import pytest

from conftest import INSTITUTION, make_user, record_thread_use, run
from identity_broker.auth.identity import IdentityAssertion
from identity_broker.auth.passwords import hash_password, verify_password
from identity_broker.auth.sessions import SESSION_COOKIE_NAME
from identity_broker.errors import UpstreamError


def google_assertion(email=f"7654321@{INSTITUTION}", hd=INSTITUTION, verified=True):
    return IdentityAssertion(
        subject="google-sub-new",
        email=email,
        name="Sipho Ndlovu",
        picture="https://example.com/sipho.png",
        hosted_domain=hd,
        email_verified=verified,
    )


def start_google_login(client, **params):
    response = client.get("/auth/google/login", params=params, follow_redirects=False)
    assert response.status_code == 302
    return parse_qs(urlsplit(response.headers["location"]).query)


@pytest.fixture
def mock_google(app):
    """Replace the Google code exchange on the running application."""
    exchange = AsyncMock(return_value=google_assertion())
    app.state.identity_provider.exchange_code = exchange
    return exchange


class TestGoogleLogin:
    def test_redirects_to_google_with_pkce_and_domain_hint(self, client, settings):
        query = start_google_login(client)

        assert query["client_id"] == [settings.GOOGLE_CLIENT_ID]
        assert query["redirect_uri"] == [settings.GOOGLE_REDIRECT_URI]
        assert query["hd"] == [INSTITUTION]
        assert query["code_challenge_method"] == ["S256"]
        assert query["state"][0]
        assert query["nonce"][0]

    def test_each_login_gets_fresh_state(self, client):
        assert start_google_login(client)["state"] != start_google_login(client)["state"]


class TestGoogleCallback:
    def test_state_mismatch_rejected(self, client, mock_google):
        start_google_login(client)

        response = client.get("/auth/google/callback", params={"code": "c", "state": "forged"})

        assert response.status_code == 400
        mock_google.assert_not_awaited()

    def test_callback_without_login_rejected(self, client, mock_google):
        response = client.get("/auth/google/callback", params={"code": "c", "state": "s"})
        assert response.status_code == 400

    def test_provider_error_parameter(self, client, mock_google):
        start_google_login(client)
        response = client.get("/auth/google/callback", params={"error": "access_denied"})
        assert response.status_code == 400

    def test_outside_domain_rejected_without_touching_store(self, client, store, mock_google):
        mock_google.return_value = google_assertion(email="someone@gmail.com", hd=None)
        state = start_google_login(client)["state"][0]

        response = client.get(
            "/auth/google/callback", params={"code": "c", "state": state}, follow_redirects=False
        )

        assert response.status_code == 403
        assert response.json()["error"] == "access_denied"
        assert store._users == {}
        assert store._sessions == {}
        assert SESSION_COOKIE_NAME not in response.cookies

    def test_upstream_failure_is_502(self, client, mock_google):
        mock_google.side_effect = UpstreamError("Unable to reach the identity provider")
        state = start_google_login(client)["state"][0]

        response = client.get("/auth/google/callback", params={"code": "c", "state": state})

        assert response.status_code == 502

    def test_exchange_receives_stored_verifier_and_nonce(self, client, mock_google, settings):
        query = start_google_login(client)
        client.get(
            "/auth/google/callback",
            params={"code": "google-code", "state": query["state"][0]},
            follow_redirects=False,
        )

        args, kwargs = mock_google.await_args
        assert args == ("google-code", settings.GOOGLE_REDIRECT_URI)
        assert kwargs["nonce"] == query["nonce"][0]
        assert kwargs["code_verifier"]

    def test_existing_student_gets_session_and_return_to(self, client, store, user, mock_google):
        mock_google.return_value = google_assertion(email=user.email)
        state = start_google_login(client, return_to="/oauth/authorize?client_id=ctfd_client")["state"][0]

        response = client.get(
            "/auth/google/callback", params={"code": "c", "state": state}, follow_redirects=False
        )

        assert response.status_code == 302
        assert response.headers["location"] == "/oauth/authorize?client_id=ctfd_client"
        assert SESSION_COOKIE_NAME in response.cookies
        assert len(store._sessions) == 1

    def test_offsite_return_to_ignored(self, client, user, mock_google):
        mock_google.return_value = google_assertion(email=user.email)
        state = start_google_login(client, return_to="https://evil.example/steal")["state"][0]

        response = client.get(
            "/auth/google/callback", params={"code": "c", "state": state}, follow_redirects=False
        )

        assert response.headers["location"] == "/"

    def test_new_student_is_sent_to_registration(self, client, store, mock_google, settings):
        state = start_google_login(client)["state"][0]

        response = client.get(
            "/auth/google/callback", params={"code": "c", "state": state}, follow_redirects=False
        )

        assert response.status_code == 302
        assert response.headers["location"] == settings.REGISTER_PAGE_URL
        assert store._users == {}
        assert SESSION_COOKIE_NAME not in response.cookies


class TestRegistration:
    def _verify_new_student(self, client):
        state = start_google_login(client)["state"][0]
        client.get("/auth/google/callback", params={"code": "c", "state": state}, follow_redirects=False)

    def test_register_uses_verified_identity(self, client, store, mock_google):
        self._verify_new_student(client)

        response = client.post(
            "/auth/register",
            json={"password": "a-long-password", "username": "sipho", "email": "attacker@gmail.com"},
        )

        assert response.status_code == 201
        profile = response.json()["user"]
        assert profile["email"] == f"7654321@{INSTITUTION}"
        assert profile["username"] == "sipho"
        assert profile["first_name"] == "Sipho"
        assert profile["last_name"] == "Ndlovu"
        assert SESSION_COOKIE_NAME in response.cookies

        me = client.get("/auth/me")
        assert me.status_code == 200
        assert me.json()["user"]["id"] == profile["id"]

    def test_register_without_google_sign_in(self, client, store):
        response = client.post("/auth/register", json={"password": "a-long-password"})

        assert response.status_code == 400
        assert store._users == {}

    def test_pending_identity_is_single_use(self, client, mock_google):
        self._verify_new_student(client)
        assert client.post("/auth/register", json={"password": "a-long-password"}).status_code == 201

        again = client.post("/auth/register", json={"password": "another-password"})
        assert again.status_code == 400

    def test_short_password_rejected(self, client, mock_google):
        self._verify_new_student(client)
        response = client.post("/auth/register", json={"password": "short"})
        assert response.status_code == 422

    def test_taken_username_conflicts(self, client, user, mock_google):
        self._verify_new_student(client)
        response = client.post("/auth/register", json={"password": "a-long-password", "username": user.username})
        assert response.status_code == 409

    def test_password_hashed_in_worker_thread(self, client, mock_google):
        self._verify_new_student(client)
        calls = []

        with patch("identity_broker.auth.routes.hash_password", record_thread_use(hash_password, calls)):
            response = client.post("/auth/register", json={"password": "a-long-password"})

        assert response.status_code == 201
        assert calls == ["worker"]


class TestPasswordLogin:
    @pytest.fixture
    def student(self, store, user):
        return run(store.update_user(user.id, password_hash=hash_password("correct-password")))

    @pytest.mark.parametrize("identifier", ["thandi", f"1234567@{INSTITUTION}", f"1234567@{INSTITUTION.upper()}"])
    def test_login_by_username_or_email(self, client, student, identifier):
        response = client.post("/auth/login", json={"identifier": identifier, "password": "correct-password"})

        assert response.status_code == 200
        assert response.json()["user"]["id"] == student.id
        assert SESSION_COOKIE_NAME in response.cookies

    def test_wrong_password(self, client, student):
        response = client.post("/auth/login", json={"identifier": "thandi", "password": "wrong-password"})
        assert response.status_code == 401
        assert SESSION_COOKIE_NAME not in response.cookies

    def test_account_without_password(self, client, user):
        response = client.post("/auth/login", json={"identifier": "thandi", "password": "anything"})
        assert response.status_code == 401

    def test_password_verified_in_worker_thread(self, client, student):
        calls = []

        with patch("identity_broker.auth.routes.verify_password", record_thread_use(verify_password, calls)):
            response = client.post("/auth/login", json={"identifier": "thandi", "password": "correct-password"})

        assert response.status_code == 200
        assert calls == ["worker"]


class TestProfileUpdate:
    PROFILE = {
        "username": "thandi_m",
        "first_name": "Thandi",
        "last_name": "Mokoena",
        "student_number": "1234567",
        "faculty": "Engineering and the Built Environment",
        "year_of_study": "3",
    }

    def test_saves_student_details(self, logged_in_client, store, user):
        response = logged_in_client.post("/auth/profile", json=self.PROFILE)

        assert response.status_code == 200
        assert response.json()["success"] is True
        saved = run(store.get_user_by_id(user.id))
        assert saved.username == "thandi_m"
        assert saved.student_number == "1234567"
        assert saved.faculty == "Engineering and the Built Environment"
        assert saved.year_of_study == "3"
        assert saved.email == user.email

        me = logged_in_client.get("/auth/me").json()["user"]
        assert me["student_number"] == "1234567"
        assert me["year_of_study"] == "3"

    def test_keeping_own_username_is_allowed(self, logged_in_client, user):
        response = logged_in_client.post("/auth/profile", json={**self.PROFILE, "username": user.username})
        assert response.status_code == 200

    def test_username_taken_by_another_student(self, logged_in_client, store):
        run(store.create_user(make_user(email=f"7654321@{INSTITUTION}", username="sipho")))

        response = logged_in_client.post("/auth/profile", json={**self.PROFILE, "username": "Sipho"})

        assert response.status_code == 409
        assert response.json()["error"] == "account_exists"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"student_number": "123456"},
            {"student_number": "12345678"},
            {"student_number": "12a4567"},
            {"username": "no spaces"},
            {"username": "ab"},
            {"faculty": ""},
        ],
    )
    def test_invalid_fields_rejected(self, logged_in_client, store, user, overrides):
        response = logged_in_client.post("/auth/profile", json={**self.PROFILE, **overrides})

        assert response.status_code == 422
        assert run(store.get_user_by_id(user.id)).student_number is None

    def test_requires_session(self, client):
        response = client.post("/auth/profile", json=self.PROFILE)
        assert response.status_code == 401


class TestSessionLifecycle:
    def test_me_requires_session(self, client):
        response = client.get("/auth/me")
        assert response.status_code == 401
        assert response.json()["error"] == "invalid_session"

    def test_me_returns_profile(self, logged_in_client, user):
        body = logged_in_client.get("/auth/me").json()
        assert body["user"]["email"] == user.email
        assert body["user"]["has_vpn_config"] is False

    def test_logout_revokes_session(self, logged_in_client, store):
        token = logged_in_client.cookies.get(SESSION_COOKIE_NAME)

        response = logged_in_client.post("/auth/logout")
        assert response.status_code == 200
        assert store._sessions == {}

        # A copy of the cookie kept by the browser no longer works.
        logged_in_client.cookies.set(SESSION_COOKIE_NAME, token)
        assert logged_in_client.get("/auth/me").status_code == 401

    def test_forged_session_cookie(self, client):
        client.cookies.set(SESSION_COOKIE_NAME, "forged.jwt.value")
        assert client.get("/auth/me").status_code == 401
