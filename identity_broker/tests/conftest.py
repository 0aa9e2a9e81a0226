"""
Shared fixtures for broker tests.

Settings are built explicitly (never from the environment or a .env file)
and every test gets a fresh in-memory credential store.
"""

import asyncio
import uuid

import pytest
from fastapi.testclient import TestClient

from identity_broker.auth.sessions import SESSION_COOKIE_NAME, issue_session
from identity_broker.config import Settings
from identity_broker.main import create_application
from identity_broker.oauth.server import AuthorizationServer
from identity_broker.store import MemoryCredentialStore, User

CTFD_CLIENT_ID = "ctfd_client"
CTFD_SECRET = "s3cr3t"
CTFD_REDIRECT = "https://ctfd.example.com/callback"
MOODLE_SECRET = "moodle-secret"
MOODLE_REDIRECT = "https://moodle.example.com/admin/oauth2callback.php"
CTFD_API_KEY = "ctfd-api-key-0123456789"
INSTITUTION = "students.wits.ac.za"


def run(coro):
    """Drive a store coroutine from a synchronous test."""
    return asyncio.run(coro)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        GOOGLE_CLIENT_ID="test-google-client-id",
        GOOGLE_CLIENT_SECRET="test-google-client-secret",
        GOOGLE_REDIRECT_URI="http://testserver/auth/google/callback",
        INSTITUTION_DOMAIN=INSTITUTION,
        SESSION_JWT_SECRET="test-session-secret-at-least-32-characters",
        CTFD_CLIENT_SECRET=CTFD_SECRET,
        CTFD_REDIRECT_URIS=CTFD_REDIRECT,
        MOODLE_CLIENT_SECRET=MOODLE_SECRET,
        MOODLE_REDIRECT_URIS=f"{MOODLE_REDIRECT},*.moodle.example.org",
        CTFD_URL="https://ctfd.example.com",
        CTFD_API_KEY=CTFD_API_KEY,
        VPN_BACKEND_URL="http://vpn.test",
        COOKIE_SECURE=False,
        DATA_DIR=tmp_path,
    )


@pytest.fixture
def store(settings):
    return MemoryCredentialStore(settings.oauth_clients)


@pytest.fixture
def server(store, settings):
    return AuthorizationServer(store, settings)


@pytest.fixture
def app(settings, store):
    return create_application(settings=settings, store=store)


@pytest.fixture
def client(app):
    return TestClient(app)


def make_user(**overrides) -> User:
    values = {
        "id": str(uuid.uuid4()),
        "email": f"1234567@{INSTITUTION}",
        "name": "Thandi Mokoena",
        "google_id": "google-sub-1",
        "username": "thandi",
    }
    values.update(overrides)
    return User(**values)


@pytest.fixture
def user(store):
    return run(store.create_user(make_user()))


@pytest.fixture
def logged_in_client(client, store, settings, user):
    """Test client carrying a valid session cookie for ``user``."""
    session = run(issue_session(store, settings, user))
    client.cookies.set(SESSION_COOKIE_NAME, session.token)
    return client


def record_thread_use(func, calls):
    """
    Wrap ``func`` so each call records where it ran.

    Appends ``"event-loop"`` when called from a coroutine on the running
    loop and ``"worker"`` when called from a thread without one.
    """
    def wrapper(*args, **kwargs):
        try:
            asyncio.get_running_loop()
            calls.append("event-loop")
        except RuntimeError:
            calls.append("worker")
        return func(*args, **kwargs)

    return wrapper
