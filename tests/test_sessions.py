"""
tests/test_sessions.py -- Integration tests for the session ledger.

Covers:
  - create -> is_valid; the raw token is never stored
  - revocation is visible to the very next is_valid() call
  - revoke is idempotent and reports whether it changed anything
  - revoke_all_for_user() with and without an exempt token
  - validate() error kinds; expiry on the injected clock
  - purge, listing and statistics
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from auth.database import sessions as sessions_table
from auth.errors import SessionNotFound, SessionRevoked, TokenExpired
from auth.tokens import hash_token


@pytest.fixture
def expiry(clock):
    return clock() + timedelta(hours=1)


def test_create_then_valid(ledger, db, expiry):
    sid = ledger.create(1, "token-one", expiry, "10.0.0.1", "pytest")
    assert ledger.is_valid("token-one") is True
    session = ledger.find_by_id(sid)
    assert session.token_hash == hash_token("token-one")
    assert session.ip_address == "10.0.0.1"
    with db.engine.connect() as conn:
        stored = conn.execute(select(sessions_table.c.token_hash)).scalars().all()
    assert "token-one" not in stored


def test_unknown_token_is_invalid(ledger):
    assert ledger.is_valid("never-issued") is False
    with pytest.raises(SessionNotFound):
        ledger.validate("never-issued")


def test_revoke_is_immediately_visible(ledger, expiry):
    ledger.create(1, "token-one", expiry)
    assert ledger.revoke_by_token("token-one") is True
    assert ledger.is_valid("token-one") is False
    with pytest.raises(SessionRevoked):
        ledger.validate("token-one")


def test_revoke_twice_changes_nothing(ledger, clock, expiry):
    sid = ledger.create(1, "token-one", expiry)
    assert ledger.revoke(sid) is True
    first = ledger.find_by_id(sid).revoked_at
    clock.advance(minutes=5)
    assert ledger.revoke(sid) is False
    assert ledger.find_by_id(sid).revoked_at == first


def test_revoke_unknown_session(ledger):
    assert ledger.revoke(12345) is False


def test_expiry_uses_clock(ledger, clock, expiry):
    ledger.create(1, "token-one", expiry)
    clock.advance(minutes=59)
    assert ledger.is_valid("token-one") is True
    clock.advance(minutes=1)
    assert ledger.is_valid("token-one") is False
    with pytest.raises(TokenExpired):
        ledger.validate("token-one")


def test_revoke_all_for_user(ledger, expiry):
    for token in ("a", "b", "c"):
        ledger.create(1, token, expiry)
    ledger.create(2, "other-user", expiry)
    assert ledger.revoke_all_for_user(1) == 3
    assert not any(ledger.is_valid(t) for t in ("a", "b", "c"))
    assert ledger.is_valid("other-user") is True
    assert ledger.revoke_all_for_user(1) == 0


def test_revoke_all_except_current(ledger, expiry):
    for token in ("a", "b", "c"):
        ledger.create(1, token, expiry)
    assert ledger.revoke_all_for_user(1, except_token="b") == 2
    assert ledger.is_valid("b") is True
    assert ledger.is_valid("a") is False


def test_list_active_for_user(ledger, clock, expiry):
    ledger.create(1, "a", expiry)
    clock.advance(seconds=1)
    newest = ledger.create(1, "b", expiry)
    ledger.create(1, "short", clock() + timedelta(seconds=10))
    ledger.revoke_by_token("a")
    clock.advance(seconds=30)
    active = ledger.list_active_for_user(1)
    assert [s.id for s in active] == [newest]


def test_touch_stamps_last_access(ledger, clock, expiry):
    sid = ledger.create(1, "a", expiry)
    clock.advance(minutes=3)
    ledger.touch(sid)
    assert ledger.find_by_id(sid).last_accessed_at == clock()


def test_purge_expired_is_idempotent(ledger, clock, expiry):
    ledger.create(1, "short", clock() + timedelta(minutes=1))
    ledger.create(1, "long", expiry)
    clock.advance(minutes=2)
    assert ledger.purge_expired() == 1
    assert ledger.purge_expired() == 0
    assert ledger.is_valid("long") is True


def test_purge_revoked_older_than(ledger, clock):
    ledger.create(1, "a", clock() + timedelta(days=30))
    ledger.revoke_by_token("a")
    clock.advance(days=8)
    assert ledger.purge_revoked_older_than(7) == 1


def test_statistics(ledger, clock, expiry):
    ledger.create(1, "a", expiry)
    ledger.create(2, "b", expiry)
    ledger.create(2, "c", clock() + timedelta(seconds=5))
    ledger.revoke_by_token("a")
    clock.advance(seconds=10)
    stats = ledger.statistics()
    assert stats == {"total": 3, "active": 1, "revoked": 1, "expired": 1, "unique_users": 2}
