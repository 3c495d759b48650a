"""
tests/conftest.py -- Shared test fixtures for SessionWarden.

This module provides:
  - FrozenClock: a controllable Clock so tests can step past token TTLs
  - settings / codec / user_store / session_store / manager: isolated unit-level
    collaborators, rebuilt for every test
  - alice: a directory user with a known password
  - api_client: TestClient against the real FastAPI app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are used because
TestClient runs sync route handlers in a thread pool. Plain :memory: DBs are
per-connection and would present a blank schema to each worker thread.

The DEBUG env var must be set before any api/ import: api/main.py reads
get_settings() at import time for the CORS origins.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any api/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from auth.models import User
from auth.sessions import SessionManager
from auth.store import UserStore
from auth.tokens import TokenCodec, hash_password
from cache.store import MemorySessionStore
from core.config import Settings, load_settings

TEST_SECRET = "k" * 24 + "test-signing-key-0123456789abcdef"
ALICE_PASSWORD = "correct horse battery"


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


def make_user_store() -> UserStore:
    return UserStore(f"sqlite:///file:test_users_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")


def add_user(store: UserStore, username: str, email: str, password: str, is_active: bool = True) -> int:
    return store.create_user(
        User(username=username, email=email, hashed_password=hash_password(password), is_active=is_active)
    )


# ---------------------------------------------------------------------------
# Unit-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def settings() -> Settings:
    return load_settings(
        debug=False,
        secret_key=TEST_SECRET,
        access_token_ttl_seconds=900,
        refresh_token_ttl_seconds=7 * 24 * 3600,
        redis_url="memory://",
    )


@pytest.fixture
def codec(settings: Settings, clock: FrozenClock) -> TokenCodec:
    return TokenCodec(settings, clock)


@pytest.fixture
def user_store() -> Generator[UserStore, None, None]:
    store = make_user_store()
    yield store
    store.close()


@pytest.fixture
def alice_password() -> str:
    return ALICE_PASSWORD


@pytest.fixture
def make_user(user_store: UserStore):
    """Factory fixture: make_user(username, email, password, is_active=True) -> id."""

    def _make(username: str, email: str, password: str, is_active: bool = True) -> int:
        return add_user(user_store, username, email, password, is_active=is_active)

    return _make


@pytest.fixture
def alice(user_store: UserStore) -> User:
    uid = add_user(user_store, "alice", "alice@example.com", ALICE_PASSWORD)
    return user_store.get_by_id(uid)


@pytest.fixture
def session_store(clock: FrozenClock) -> MemorySessionStore:
    return MemorySessionStore(clock)


@pytest.fixture
def manager(settings, codec, session_store, user_store) -> SessionManager:
    return SessionManager(settings, codec, session_store, user_store)


# ---------------------------------------------------------------------------
# API fixture
# ---------------------------------------------------------------------------


@dataclass
class ApiHarness:
    client: TestClient
    clock: FrozenClock
    settings: Settings
    user_store: UserStore
    session_store: MemorySessionStore


def _patch_lifespan(settings: Settings, user_store: UserStore, session_store, manager: SessionManager):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test collaborators into app.state so routes see an
    isolated directory and session store instead of the configured ones.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = settings
        app.state.user_store = user_store
        app.state.session_store = session_store
        app.state.session_manager = manager
        yield

    return test_lifespan


@pytest.fixture
def api_client(settings: Settings, clock: FrozenClock) -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness around a TestClient with alice pre-registered.

    base_url uses localhost because TrustedHostMiddleware rejects the default
    "testserver" host. The rate limiter is reset so each test starts with
    fresh per-IP counters.
    """
    from api.limiter import limiter
    from api.main import app

    user_store = make_user_store()
    add_user(user_store, "alice", "alice@example.com", ALICE_PASSWORD)
    session_store = MemorySessionStore(clock)
    manager = SessionManager(settings, TokenCodec(settings, clock), session_store, user_store)

    app.router.lifespan_context = _patch_lifespan(settings, user_store, session_store, manager)
    limiter.reset()

    with TestClient(app, base_url="http://localhost", raise_server_exceptions=False) as client:
        yield ApiHarness(client, clock, settings, user_store, session_store)

    user_store.close()
