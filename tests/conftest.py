"""
tests/conftest.py -- Shared test fixtures for the MoveX auth tests.

This module provides:
  - FakeClock: injectable epoch clock that only moves when told to
  - engine / user_store / session_store: isolated SQLite stores for unit tests
  - _patch_lifespan(): wires test settings, DB and clock into app.state,
    bypassing real startup (no background sweeps, no real OAuth registry)
  - app_client: TestClient over the real app with follow_redirects=False
  - make_user: create an account directly through the store

Design: every test gets its own SQLite file under tmp_path. TestClient runs
sync route handlers in a thread pool and the concurrency tests use real
threads, so each thread must see the same database through its own
connection.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from unittest.mock import MagicMock

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, init_app_state
from auth.models import User
from auth.password_reset import hash_security_answers
from auth.schema import create_auth_engine
from auth.sessions import SessionStore
from auth.store import UserStore
from auth.tokens import hash_password
from core.config import Settings

START = 1_700_000_000.0
TEST_SECRET = "t" * 48
STRONG_PASSWORD = "correcthorse42battery"

# Rate limits get their own test; everywhere else they would only add noise.
limiter.enabled = False


class FakeClock:
    """Callable clock for stores and services. Starts at START, moves on advance()."""

    def __init__(self, start: float = START) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_settings(tmp_path, **overrides) -> Settings:
    values = {
        "debug": True,
        "secret_key": TEST_SECRET,
        "database_url": f"sqlite:///{tmp_path / 'auth.db'}",
        "cache_url": "memory://",
        "csrf_enabled": False,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


# ---------------------------------------------------------------------------
# Store fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine(tmp_path):
    eng = create_auth_engine(f"sqlite:///{tmp_path / 'auth.db'}")
    yield eng
    eng.dispose()


@pytest.fixture
def user_store(engine, clock) -> UserStore:
    return UserStore(engine, clock)


@pytest.fixture
def session_store(engine, clock) -> SessionStore:
    return SessionStore(engine, idle_timeout=3600, clock=clock)


def create_user(
    store: UserStore,
    username: str = "alice",
    password: str = STRONG_PASSWORD,
    *,
    role: str = "user",
    email: str | None = None,
    mfa_enabled: bool = False,
    status: str = "active",
    security_answers: dict[str, str] | None = None,
) -> User:
    uid = store.create_user(
        User(
            username=username,
            role=role,
            email=email,
            hashed_password=hash_password(password),
            status=status,
            mfa_enabled=mfa_enabled,
            security_answers=hash_security_answers(security_answers or {}),
        )
    )
    return store.get_by_id(uid)


# ---------------------------------------------------------------------------
# App fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(settings: Settings, clock: FakeClock):
    """Return an async context manager that replaces the real lifespan.

    Builds app.state through the same init_app_state() the real lifespan
    uses, then swaps the authlib registry for a MagicMock so no test can
    reach a real provider. Background sweeps are not started; tests call
    cleanup()/purge_expired() directly.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        init_app_state(app, settings, clock=clock)
        app.state.oauth = MagicMock()
        app.state.mailer = MagicMock()
        yield
        app.state.engine.dispose()

    return test_lifespan


@pytest.fixture
def app_settings(tmp_path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def app_client(app_settings, clock) -> Generator[TestClient, None, None]:
    """TestClient over the real app with isolated DB, memory cache and FakeClock.

    follow_redirects=False so OAuth tests can assert on Location headers.
    """
    app.router.lifespan_context = _patch_lifespan(app_settings, clock)
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield client


@pytest.fixture
def make_user(app_client):
    """Create an account in the running app's database."""

    def _make(username: str = "alice", password: str = STRONG_PASSWORD, **kwargs) -> User:
        return create_user(app.state.user_store, username, password, **kwargs)

    return _make


def login(client: TestClient, username: str = "alice", password: str = STRONG_PASSWORD, **extra):
    return client.post("/api/v1/auth/login", json={"username": username, "password": password, **extra})
