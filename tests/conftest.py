"""
tests/conftest.py -- Shared test fixtures for the RetailMaster auth suite.

This module provides:
  - FakeClock / clock: injectable "now" so lockout and expiry can be tested
    without sleeping
  - settings: explicit Settings with fixed signing keys and cheap bcrypt
  - store / service: in-memory UserStore and a fully wired AuthService
  - make_user: helper that inserts a user with a known password
  - _patch_lifespan(): wires test components into app.state
  - api_client: TestClient against the real FastAPI app

Design: Named shared-memory SQLite URIs (not plain :memory:) are used for the
API client because TestClient runs sync route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread. Concurrency tests use a file-backed DB under tmp_path
instead, since shared-cache memory DBs use table-level locks that fail fast
rather than wait.

DEBUG and LOGIN_RATE_LIMIT must be set before any api/ import so that
get_settings() (used by the rate limiter) can build without real keys and so
the per-IP login limit does not interfere with lockout tests.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: set before any api/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "10000/minute")

import pytest
from fastapi.testclient import TestClient

from auth.models import Role, User
from auth.passwords import PasswordVerifier
from auth.service import AuthService, build_auth_service
from auth.store import UserStore
from core.config import Settings

ACCESS_SECRET = "a" * 40
REFRESH_SECRET = "r" * 40


class FakeClock:
    """Callable returning a controllable, timezone-aware 'now'."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def make_settings(**overrides) -> Settings:
    values = dict(
        debug=True,
        secret_key=ACCESS_SECRET,
        refresh_secret_key=REFRESH_SECRET,
        bcrypt_rounds=4,
        database_url="sqlite:///:memory:",
    )
    values.update(overrides)
    return Settings(**values)


# ---------------------------------------------------------------------------
# Unit-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def verifier() -> PasswordVerifier:
    return PasswordVerifier(rounds=4)


@pytest.fixture
def store() -> Generator[UserStore, None, None]:
    s = UserStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def service(settings: Settings, store: UserStore, clock: FakeClock) -> AuthService:
    return build_auth_service(settings, store, clock=clock)


@pytest.fixture
def make_user(store: UserStore, verifier: PasswordVerifier) -> Callable[..., User]:
    """Insert a user and return it as loaded back from the store."""

    def _make(
        username: str,
        password: str = "Passw0rd!",
        role: Role = Role.USER,
        email: str | None = None,
        is_active: bool = True,
    ) -> User:
        uid = store.create_user(
            User(
                username=username,
                email=email or f"{username}@example.com",
                password_hash=verifier.hash(password),
                role=role,
                is_active=is_active,
            )
        )
        return store.get_by_id(uid)

    return _make


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(settings: Settings, user_store: UserStore, service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = settings
        app.state.user_store = user_store
        app.state.auth_service = service
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, AuthService, dict[str, int]], None, None]:
    """Yield (client, service, ids) for API integration tests.

    Seeds one account per role, all with password "Passw0rd!":
      root (admin), clerk (staff), shopper (user).
    ids maps username -> user id. Tests that lock, deactivate or delete
    accounts must create their own users so the seeded ones stay usable.
    """
    from api.main import app

    db_name = request.module.__name__.replace(".", "_")
    settings = make_settings(database_url=f"sqlite:///file:{db_name}?mode=memory&cache=shared&uri=true")
    user_store = UserStore(settings.database_url)
    service = build_auth_service(settings, user_store)

    verifier = PasswordVerifier(rounds=4)
    ids: dict[str, int] = {}
    for username, role in (("root", Role.ADMIN), ("clerk", Role.STAFF), ("shopper", Role.USER)):
        ids[username] = user_store.create_user(
            User(
                username=username,
                email=f"{username}@example.com",
                password_hash=verifier.hash("Passw0rd!"),
                role=role,
            )
        )

    app.router.lifespan_context = _patch_lifespan(settings, user_store, service)

    with TestClient(app, base_url="http://localhost", raise_server_exceptions=True) as client:
        yield client, service, ids

    user_store.close()


@pytest.fixture
def bearer(api_client) -> Callable[..., dict[str, str]]:
    """Return a helper that logs in through the API and yields an Authorization header.

    Cookies set by the login response are cleared so later requests in the
    test authenticate only through the header they are given.
    """
    client, _service, _ids = api_client

    def _login(username: str, password: str = "Passw0rd!") -> dict[str, str]:
        resp = client.post("/api/v1/auth/login", json={"username": username, "password": password})
        assert resp.status_code == 200, resp.text
        client.cookies.clear()
        return {"Authorization": f"Bearer {resp.json()['access_token']}"}

    return _login
