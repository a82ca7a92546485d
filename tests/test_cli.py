"""
tests/test_cli.py -- Tests for the admin CLI in main.py.

Each test runs main() against its own tmp_path database and then inspects
the result through the stores.

Covers:
  - create-user (including duplicate and weak-password rejection)
  - unlock clears a lock
  - reset-password rotates the hash and revokes every session
  - set-active --inactive disables and revokes
  - purge
  - every mutating command leaves a resource="cli" audit entry
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from auth.audit import AuditRecorder
from auth.database import Database, utcnow
from auth.sessions import SessionLedger
from auth.store import CredentialStore
from core.config import Settings
from main import main

PASSWORD = "Correct-Horse-1"


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        debug=True,
        database_url=f"sqlite:///{tmp_path / 'cli.db'}",
        bcrypt_rounds=4,
    )


@pytest.fixture
def stores(settings):
    db = Database.from_settings(settings)
    yield CredentialStore(db, bcrypt_rounds=4), SessionLedger(db), AuditRecorder(db)
    db.close()


def _create(settings, username="alice", *extra):
    return main(["create-user", username, "--password", PASSWORD, *extra], settings=settings)


def test_create_user(settings, stores, capsys):
    assert _create(settings, "alice", "--role", "admin", "--email", "alice@example.com") == 0
    credentials, _, recorder = stores
    account = credentials.lookup_by_username("alice")
    assert account.role == "admin"
    assert credentials.verify_secret(PASSWORD, account.password_hash)
    entry = recorder.query(action="user_create").entries[0]
    assert entry.resource == "cli"
    assert "Created user 'alice'" in capsys.readouterr().out


def test_create_duplicate_user(settings):
    assert _create(settings) == 0
    assert _create(settings) == 1


def test_create_user_rejects_weak_password(settings, stores):
    assert main(["create-user", "alice", "--password", "weak"], settings=settings) == 1
    assert stores[0].has_users() is False


def test_unlock(settings, stores):
    _create(settings)
    credentials, _, recorder = stores
    user = credentials.lookup_by_username("alice")
    for _ in range(5):
        credentials.increment_failed_attempts(user.id)
    assert credentials.lookup_by_id(user.id).is_locked(utcnow())

    assert main(["unlock", "alice"], settings=settings) == 0
    stored = credentials.lookup_by_id(user.id)
    assert stored.failed_attempts == 0
    assert stored.locked_until is None
    assert recorder.query(action="account_unlock").entries[0].details["failedAttempts"] == 5


def test_unlock_unknown_user(settings, capsys):
    assert main(["unlock", "ghost"], settings=settings) == 1
    assert "No user named 'ghost'" in capsys.readouterr().out


def test_reset_password_revokes_sessions(settings, stores):
    _create(settings)
    credentials, ledger, recorder = stores
    user = credentials.lookup_by_username("alice")
    ledger.create(user.id, "token-a", utcnow() + timedelta(hours=1))
    ledger.create(user.id, "token-b", utcnow() + timedelta(hours=1))

    assert main(["reset-password", "alice", "--password", "Brand-New-Pass9"], settings=settings) == 0
    stored = credentials.lookup_by_id(user.id)
    assert credentials.verify_secret("Brand-New-Pass9", stored.password_hash)
    assert not ledger.is_valid("token-a")
    assert not ledger.is_valid("token-b")
    assert recorder.query(action="password_reset").entries[0].details["revokedSessions"] == 2


def test_set_inactive_revokes_sessions(settings, stores):
    _create(settings)
    credentials, ledger, recorder = stores
    user = credentials.lookup_by_username("alice")
    ledger.create(user.id, "token-a", utcnow() + timedelta(hours=1))

    assert main(["set-active", "alice", "--inactive"], settings=settings) == 0
    assert credentials.lookup_by_id(user.id).is_active is False
    assert not ledger.is_valid("token-a")
    assert recorder.query(action="account_deactivate").total == 1

    assert main(["set-active", "alice", "--active"], settings=settings) == 0
    assert credentials.lookup_by_id(user.id).is_active is True


def test_purge(settings, stores):
    _, ledger, recorder = stores
    ledger.create(1, "stale", utcnow() - timedelta(seconds=1))
    assert main(["purge"], settings=settings) == 0
    assert ledger.find_by_token("stale") is None
    assert recorder.query(action="purge").entries[0].details["expiredSessions"] == 1


def test_no_command_prints_help(settings, capsys):
    assert main([], settings=settings) == 2
    assert "create-user" in capsys.readouterr().out
