"""
tests/conftest.py -- Shared test fixtures for authcore.

This module provides:
  - ManualClock: an injectable clock tests move forward instead of sleeping
  - settings: a Settings instance with a fixed secret and bcrypt rounds = 4
  - engine: a fresh in-memory SQLite database per test
  - users / ledger / cache / codec / hasher: the collaborators, all on one clock
  - manager: a SessionManager wired from the fixtures above
  - registered: alice@example.com / alice / Str0ng!Pass, already registered
  - settings_factory / manager_factory: variants with overridden settings

Design: "sqlite://" gets a StaticPool in create_db_engine(), so every checkout
(including TestClient's worker threads) shares one in-memory database, while
each test still gets its own engine and therefore a blank schema.

bcrypt_rounds is dropped to the library minimum (4). At the production value
of 12 every register/login in the suite would cost ~250ms.
"""

from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest

from auth.db import create_db_engine
from auth.ledger import RefreshTokenLedger
from auth.passwords import PasswordHasher
from auth.session import SessionManager
from auth.store import UserStore
from auth.tokens import TokenCodec
from cache.store import MemoryRevocationCache
from core.config import Settings

TEST_SECRET = "test-secret-key-that-is-at-least-32-characters-long"
PASSWORD = "Str0ng!Pass"


class ManualClock:
    """Deterministic clock. Calling it returns the current fake time."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta | None = None, **kwargs) -> datetime:
        self.now = self.now + (delta or timedelta(**kwargs))
        return self.now


def make_settings(**overrides) -> Settings:
    values = {"jwt_secret": TEST_SECRET, "bcrypt_rounds": 4, "debug": False}
    values.update(overrides)
    return Settings(_env_file=None, **values)


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def engine():
    eng = create_db_engine("sqlite://")
    yield eng
    eng.dispose()


@pytest.fixture
def users(engine, clock) -> UserStore:
    return UserStore(engine, clock=clock)


@pytest.fixture
def ledger(engine, clock) -> RefreshTokenLedger:
    return RefreshTokenLedger(engine, clock=clock)


@pytest.fixture
def cache(settings, clock) -> MemoryRevocationCache:
    return MemoryRevocationCache(window=settings.login_window, clock=clock)


@pytest.fixture
def codec(settings, clock) -> TokenCodec:
    return TokenCodec(settings, clock=clock)


@pytest.fixture(scope="session")
def hasher() -> PasswordHasher:
    return PasswordHasher(rounds=4)


def build_manager(users, ledger, cache, codec, hasher, settings, clock) -> SessionManager:
    return SessionManager(
        users=users,
        ledger=ledger,
        cache=cache,
        codec=codec,
        hasher=hasher,
        settings=settings,
        clock=clock,
    )


@pytest.fixture
def manager(users, ledger, cache, codec, hasher, settings, clock) -> Generator[SessionManager, None, None]:
    yield build_manager(users, ledger, cache, codec, hasher, settings, clock)


@pytest.fixture
def registered(manager):
    """AuthResult for alice, the first user in a fresh database (id 1)."""
    return manager.register("alice@example.com", "alice", PASSWORD)


@pytest.fixture
def settings_factory():
    """Build Settings with the test defaults plus overrides."""
    return make_settings


@pytest.fixture
def manager_factory(users, ledger, cache, hasher, clock):
    """Build a SessionManager over the shared stores with overridden settings."""

    def _factory(**overrides) -> SessionManager:
        custom = make_settings(**overrides)
        return build_manager(users, ledger, cache, TokenCodec(custom, clock=clock), hasher, custom, clock)

    return _factory
