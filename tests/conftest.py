"""
tests/conftest.py -- Shared test fixtures for Shared Thread auth tests.

This module provides:
  - FakeClock / clock: an injectable, manually advanced UTC clock
  - make_settings(): Settings with a fixed test SECRET_KEY and overrides
  - store / service: a fresh in-memory AuthStore and AuthService per test
  - make_user(): create a local account (optionally with a TOTP secret)
  - _patch_lifespan(): wires a test store into app.state, bypassing real startup
  - api_client: TestClient over the real app for API integration tests
  - client: the api_client TestClient with an empty cookie jar

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.

DEBUG and LOGIN_RATE_LIMIT must be set before any api/auth import:
get_settings() auto-generates SECRET_KEY in dev mode instead of raising, and
the per-IP limiter would otherwise throttle the many logins a test module
makes from the single TestClient address.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

# CRITICAL: set before any auth/core/api import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pyotp
import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.cookies import SessionCookie
from auth.models import Role, User
from auth.service import AuthService
from auth.store import AuthStore
from core.config import Settings

TEST_SECRET_KEY = "test-secret-key-for-sharedthread-0123456789abcdef"
DEFAULT_PASSWORD = "correct horse battery staple"
TAILNET_IP = "100.101.102.103"
OUTSIDE_IP = "203.0.113.7"


class FakeClock:
    """Callable clock for the auth components; advance() moves time forward."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def make_settings(**overrides) -> Settings:
    values = {
        "debug": True,
        "secret_key": TEST_SECRET_KEY,
        "secure_cookies": False,
    }
    values.update(overrides)
    return Settings(**values)


def memory_db_url(name: str) -> str:
    return f"sqlite:///file:{name}?mode=memory&cache=shared&uri=true"


def current_code(user: User, at: datetime | None = None, offset: int = 0) -> str:
    """The TOTP code the user's authenticator shows at the given time."""
    return pyotp.TOTP(user.totp_secret).at(at or datetime.now(timezone.utc), counter_offset=offset)


def wrong_code(secret: str, at: datetime | None = None) -> str:
    """A well-formed code guaranteed to fall outside the acceptance window."""
    at = at or datetime.now(timezone.utc)
    totp = pyotp.TOTP(secret)
    window = {totp.at(at, counter_offset=o) for o in range(-2, 3)}
    return next(c for c in ("000000", "111111", "222222", "333333", "444444", "555555") if c not in window)


def make_user(
    service: AuthService,
    username: str | None = None,
    *,
    password: str = DEFAULT_PASSWORD,
    role: Role = Role.MEMBER,
    totp: bool = False,
    **fields,
) -> User:
    """Create a local account with a unique username unless one is given."""
    username = username or f"user_{uuid.uuid4().hex[:8]}"
    user = service.create_local_user(
        username,
        f"{username}@example.org",
        password,
        role=role,
        email_verified=True,
        totp_secret=pyotp.random_base32(length=32) if totp else None,
    )
    if fields:
        service.store.update_user(user.id, **fields)
        user = service.store.get_by_id(user.id)
    return user


# ---------------------------------------------------------------------------
# Unit fixtures -- one fresh database per test
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def store() -> Generator[AuthStore, None, None]:
    s = AuthStore(memory_db_url(f"unit_{uuid.uuid4().hex}"))
    yield s
    s.close()


@pytest.fixture
def service(store: AuthStore, settings: Settings, clock: FakeClock) -> AuthService:
    return AuthService.build(store, settings, clock)


# ---------------------------------------------------------------------------
# API fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


def _patch_lifespan(store: AuthStore, cfg: Settings):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-created test store into app.state so TestClient routes see
    an isolated test DB. The OAuth registry is mocked to prevent real network
    calls. The sweep_task is a long-sleeping coroutine (a real asyncio.Task is
    required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.store = store
        app.state.auth = AuthService.build(store, cfg)
        app.state.session_cookie = SessionCookie(cfg)
        app.state.oauth = MagicMock()
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, AuthService], None, None]:
    """Yield (client, auth_service) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers but use an isolated in-memory store. The network
    gate is enabled and enforced on the default Tailscale subnet.
    """
    store = AuthStore(memory_db_url(f"test_auth_{request.module.__name__.rsplit('.', 1)[-1]}"))
    cfg = make_settings()
    app.router.lifespan_context = _patch_lifespan(store, cfg)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, client.app.state.auth

    store.close()


@pytest.fixture
def client(api_client) -> TestClient:
    """The module's TestClient with no cookies carried over from earlier tests."""
    c, _ = api_client
    c.cookies.clear()
    return c


@pytest.fixture
def auth(api_client) -> AuthService:
    return api_client[1]
