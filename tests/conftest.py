"""
tests/conftest.py -- Shared test fixtures for keyward.

This module provides:
  - FrozenClock / clock: an injectable, manually advanced UTC clock shared by
    every component, so lock expiry and token expiry are tested without sleeping
  - db: a file-backed SQLite Database under tmp_path
  - credentials, ledger, issuer, recorder, service: the core, wired to db + clock
  - make_user: factory that inserts an account with a known password
  - api_client: TestClient over the real app with a patched lifespan

Design: file-backed SQLite (not shared-memory URIs) because the lockout
concurrency tests and TestClient both run work on other threads, and WAL
mode plus a busy timeout only apply to real database files.

The environment must be set before any keyward import: get_settings() is
cached on first call and api/main.py reads it at import time to configure
TrustedHostMiddleware.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: set before any keyward import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOGIN_RATE_LIMIT", "10000/minute")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost", "127.0.0.1"]')

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.audit import AuditRecorder
from auth.database import Database
from auth.lockout import LockoutPolicy
from auth.models import UserAccount
from auth.service import AuthService
from auth.sessions import SessionLedger
from auth.store import CredentialStore
from auth.tokens import TokenIssuer, hash_password
from core.config import get_settings

TEST_SECRET = "test-secret-key-that-is-long-enough-for-hs256"
TEST_ROUNDS = 4
DEFAULT_PASSWORD = "Correct-Horse-1"


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FrozenClock:
    # Start from the real current second so wall-clock checks inside
    # libraries agree with the frozen clock.
    return FrozenClock(datetime.now(timezone.utc).replace(microsecond=0))


@pytest.fixture
def db(tmp_path) -> Generator[Database, None, None]:
    database = Database(f"sqlite:///{tmp_path / 'keyward-test.db'}", retry_backoff_seconds=0)
    yield database
    database.close()


@pytest.fixture
def policy() -> LockoutPolicy:
    return LockoutPolicy(threshold=5, duration=timedelta(minutes=15))


@pytest.fixture
def credentials(db, policy, clock) -> CredentialStore:
    return CredentialStore(db, policy, bcrypt_rounds=TEST_ROUNDS, clock=clock)


@pytest.fixture
def ledger(db, clock) -> SessionLedger:
    return SessionLedger(db, clock=clock)


@pytest.fixture
def issuer(clock) -> TokenIssuer:
    return TokenIssuer(TEST_SECRET, ttl_seconds=3600, clock=clock)


@pytest.fixture
def recorder(db, clock) -> AuditRecorder:
    return AuditRecorder(db, clock=clock)


@pytest.fixture
def service(credentials, ledger, issuer, recorder, policy, clock) -> AuthService:
    return AuthService(credentials, ledger, issuer, recorder, policy=policy, clock=clock)


@pytest.fixture
def make_user(credentials):
    """Return a factory: make_user("alice", password=..., **fields) -> UserAccount."""

    def _make(username: str = "alice", password: str = DEFAULT_PASSWORD, **fields) -> UserAccount:
        account = UserAccount(
            username=username,
            password_hash=hash_password(password, rounds=TEST_ROUNDS),
            **fields,
        )
        user_id = credentials.create_user(account)
        return credentials.lookup_by_id(user_id)

    return _make


# ---------------------------------------------------------------------------
# HTTP fixture
# ---------------------------------------------------------------------------


def _patch_lifespan(service: AuthService, db: Database, recorder: AuditRecorder):
    """Return an async context manager that replaces the real lifespan.

    Wires the test core into app.state so routes hit the tmp_path database
    and the frozen clock. The recorder is used synchronously (no dispatcher)
    so audit assertions do not race a worker thread.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = get_settings()
        app.state.db = db
        app.state.audit_recorder = recorder
        app.state.auth_service = service
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture
def api_client(service, db, recorder) -> Generator[TestClient, None, None]:
    """Yield a TestClient over the real app, backed by the test core."""
    original = app.router.lifespan_context
    app.router.lifespan_context = _patch_lifespan(service, db, recorder)
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client
    app.router.lifespan_context = original
