"""
tests/conftest.py -- Shared test fixtures for the PlantCare auth tests.

This module provides:
  - FakeClock / FakeDateClock: hand-cranked clocks for the limiter and service
  - _make_test_db(): creates an isolated in-memory auth database
  - _patch_lifespan(): wires test objects into app.state, bypassing real startup
  - auth_db / service: an AuthService on a fresh database with a fake clock
  - client: TestClient over the real app, fresh database per test
  - register_user(): helper that registers through the API and returns the body

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

DEBUG and BCRYPT_ROUNDS must be set before any auth/core import:
get_settings() is cached on first call, DEBUG lets it auto-generate
SECRET_KEY, and 4 rounds keeps bcrypt fast enough for the suite.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient

from api.limiter import AttemptLimiter
from api.main import app
from auth.service import AuthService
from auth.store import AuthDatabase

STRONG_PASSWORD = "Passw0rd!"

# ---------------------------------------------------------------------------
# Clocks
# ---------------------------------------------------------------------------


class FakeClock:
    """Monotonic-style clock (float seconds) for AttemptLimiter."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDateClock:
    """UTC datetime clock for AuthService."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Database helpers
# ---------------------------------------------------------------------------


def _make_test_db() -> AuthDatabase:
    """Create an isolated named shared-memory auth database.

    A random name per call keeps tests from seeing each other's rows.
    """
    url = f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"
    return AuthDatabase(url)


def _patch_lifespan(auth_db: AuthDatabase, limiter: AttemptLimiter):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.auth_db = auth_db
        app.state.auth_service = AuthService(auth_db)
        app.state.attempt_limiter = limiter
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def auth_db() -> Generator[AuthDatabase, None, None]:
    db = _make_test_db()
    yield db
    db.close()


@pytest.fixture
def date_clock() -> FakeDateClock:
    return FakeDateClock()


@pytest.fixture
def service(auth_db: AuthDatabase, date_clock: FakeDateClock) -> AuthService:
    return AuthService(auth_db, clock=date_clock)


@pytest.fixture
def limiter_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def client(limiter_clock: FakeClock) -> Generator[TestClient, None, None]:
    """Yield a TestClient over the real app with a fresh database and limiter.

    The limiter runs on limiter_clock, so tests can move past the attempt
    window without sleeping.
    """
    db = _make_test_db()
    limiter = AttemptLimiter(max_attempts=5, window_seconds=900, clock=limiter_clock)
    app.router.lifespan_context = _patch_lifespan(db, limiter)

    with TestClient(app, raise_server_exceptions=True) as test_client:
        yield test_client

    db.close()


def register_user(
    client: TestClient,
    email: str = "alice@example.com",
    password: str = STRONG_PASSWORD,
    device_id: str = "d1",
    **extra,
) -> dict:
    """Register through the API and return the JSON body. Fails the test on non-201."""
    resp = client.post(
        "/api/v1/auth/register",
        json={"email": email, "password": password, "deviceId": device_id, **extra},
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


def bearer(access_token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {access_token}"}
