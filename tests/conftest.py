"""
tests/conftest.py -- Shared test fixtures for Staffgate.

This module provides:
  - FakeMailer: records verification links instead of sending mail
  - store: a fresh IdentityStore per test (unit tests)
  - make_identity: insert a password identity straight into a store
  - _make_test_store(): isolated named shared-memory DB for integration tests
  - _patch_lifespan(): wires a test store into app.state via build_components
  - api_client: TestClient plus an admin bearer token, one per test module

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
for the TestClient because route handlers run in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.

DEBUG and BCRYPT_ROUNDS must be set before any project import so
get_settings() auto-generates SECRET_KEY and hashing stays fast.
"""

from __future__ import annotations

import itertools
import os
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager

# CRITICAL: set before any api/auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, build_components
from auth.models import Identity
from auth.store import IdentityStore
from auth.tokens import TokenService
from core.config import get_settings

TEST_SECRET = "x" * 48
ADMIN_PASSWORD = "adminpass123"

_db_counter = itertools.count()


class FakeMailer:
    """Stands in for auth.mailer.Mailer. Records (to_email, link) pairs."""

    is_configured = True

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    def send_verification_email(self, to_email: str, link: str) -> None:
        self.sent.append((to_email, link))

    def last_link_for(self, email: str) -> str:
        links = [link for to, link in self.sent if to == email]
        assert links, f"no verification email recorded for {email}"
        return links[-1]


# ---------------------------------------------------------------------------
# Unit-test fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[IdentityStore, None, None]:
    s = IdentityStore("sqlite:///:memory:", bcrypt_rounds=4)
    yield s
    s.close()


@pytest.fixture
def tokens() -> TokenService:
    return TokenService(TEST_SECRET, expire_seconds=3600)


@pytest.fixture
def mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture
def make_identity(store: IdentityStore) -> Callable[..., Identity]:
    """Factory: make_identity("alice", password="pw123456", role="employer") -> persisted Identity."""

    def _make(username: str, email: str | None = None, password: str | None = "pw123456", **fields) -> Identity:
        identity = Identity(
            username=username,
            email=email or f"{username}@example.com",
            role=fields.pop("role", "employer"),
            hashed_password=store.hash_password(password) if password is not None else None,
            **fields,
        )
        uid = store.create_identity(identity)
        created = store.get_by_id(uid)
        assert created is not None
        return created

    return _make


# ---------------------------------------------------------------------------
# Integration fixtures
# ---------------------------------------------------------------------------


def _make_test_store(db_suffix: str) -> IdentityStore:
    """Create an isolated named shared-memory SQLite store.

    Args:
        db_suffix: Appended to the DB name so test modules never share state.
    """
    url = f"sqlite:///file:test_staffgate_{db_suffix}_{next(_db_counter)}?mode=memory&cache=shared&uri=true"
    return IdentityStore(url, bcrypt_rounds=4)


def _patch_lifespan(store: IdentityStore, mailer: FakeMailer):
    """Return an async context manager that replaces the real lifespan.

    Uses the same build_components() wiring as production, but around the
    test store and the recording mailer.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        build_components(app, get_settings(), store, mailer)
        yield

    return test_lifespan


@pytest.fixture(autouse=True)
def _no_rate_limit() -> Generator[None, None, None]:
    """Login rate limiting is exercised explicitly; everywhere else it is off."""
    limiter.enabled = False
    yield
    limiter.enabled = True
    limiter.reset()


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, admin_token, admin_id) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers but an isolated in-memory store. The recording
    mailer is reachable as client.app.state.mailer.
    """
    store = _make_test_store(request.module.__name__.rsplit(".", 1)[-1])
    mailer = FakeMailer()

    admin = Identity(
        username="testadmin",
        email="admin@example.com",
        role="admin",
        hashed_password=store.hash_password(ADMIN_PASSWORD),
        email_verified=True,
    )
    uid = store.create_identity(admin)
    admin.id = uid
    token = TokenService(get_settings().secret_key).issue(admin, expire_seconds=3600)

    app.router.lifespan_context = _patch_lifespan(store, mailer)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, token, uid

    store.close()


def auth_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def register_and_login(client: TestClient, username: str, password: str = "pw123456", **extra) -> tuple[str, int]:
    """Register a user through the API and log in. Returns (token, user_id)."""
    email = extra.pop("email", f"{username}@example.com")
    resp = client.post(
        "/api/v1/register",
        json={"username": username, "email": email, "password": password, **extra},
    )
    assert resp.status_code == 201, resp.text
    login = client.post("/api/v1/login", json={"email": email, "password": password})
    assert login.status_code == 200, login.text
    return login.json()["token"], resp.json()["userId"]


def code_is_available(store: IdentityStore, code: str) -> bool:
    """True while the staff code exists and has not been consumed."""
    return any(c.code == code for c in store.list_available_codes())
