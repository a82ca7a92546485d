"""
auth/sessions.py -- Session ledger: the revocable record of every issued token.

A bearer token's signature stays valid until its embedded expiry, whatever
happens server-side. The ledger is what makes logout, refresh and password
change actually take effect: every liveness check reads the store directly
(no cache), so a revocation is visible to the very next is_valid() call.

Race tolerance:
  revoke_all_for_user() is a single UPDATE ... WHERE user_id = ? AND
  revoked_at IS NULL. A session created strictly after that statement
  survives it. That is acceptable because the only bulk caller that matters
  for security (password change) rotates the hash first, so no new session
  can be created with the old password afterwards.

Tokens are looked up by sha256(token); the raw token never reaches the store.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import case, func, select

from auth.database import Database, from_db_time, sessions, to_db_time, utcnow
from auth.errors import SessionNotFound, SessionRevoked, TokenExpired
from auth.models import Session
from auth.tokens import hash_token

logger = logging.getLogger("keyward.sessions")


class SessionLedger:
    """Repository for Session records.

    Usage:
        ledger = SessionLedger(db)
        sid = ledger.create(user_id, token, expires_at, ip, user_agent)
        ledger.is_valid(token)      # True
        ledger.revoke_by_token(token)
        ledger.is_valid(token)      # False, immediately
    """

    def __init__(self, db: Database, clock: Callable[[], datetime] = utcnow) -> None:
        self.db = db
        self._clock = clock

    # ------------------------------------------------------------------
    # Creation and lookup
    # ------------------------------------------------------------------

    def create(
        self,
        user_id: int,
        token: str,
        expires_at: datetime,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> int:
        """Register an issued token and return the new session id."""
        values = {
            "user_id": user_id,
            "token_hash": hash_token(token),
            "ip_address": ip_address,
            "user_agent": user_agent,
            "issued_at": to_db_time(self._clock()),
            "expires_at": to_db_time(expires_at),
        }

        def op() -> int:
            with self.db.engine.begin() as conn:
                return conn.execute(sessions.insert().values(**values)).inserted_primary_key[0]

        return self.db.run("create_session", op)

    def find_by_token(self, token: str) -> Session | None:
        return self._find_one("find_session_by_token", sessions.c.token_hash == hash_token(token))

    def find_by_id(self, session_id: int) -> Session | None:
        return self._find_one("find_session_by_id", sessions.c.id == session_id)

    def _find_one(self, label: str, clause) -> Session | None:
        def op():
            with self.db.engine.connect() as conn:
                return conn.execute(sessions.select().where(clause).order_by(sessions.c.id.desc())).fetchone()

        row = self.db.run(label, op)
        return _row_to_session(row) if row is not None else None

    def list_active_for_user(self, user_id: int) -> list[Session]:
        """Return unrevoked, unexpired sessions of a user, newest first."""
        now = to_db_time(self._clock())

        def op():
            with self.db.engine.connect() as conn:
                return conn.execute(
                    sessions.select()
                    .where(
                        (sessions.c.user_id == user_id)
                        & sessions.c.revoked_at.is_(None)
                        & (sessions.c.expires_at > now)
                    )
                    .order_by(sessions.c.issued_at.desc(), sessions.c.id.desc())
                ).fetchall()

        return [_row_to_session(r) for r in self.db.run("list_active_sessions", op)]

    # ------------------------------------------------------------------
    # Liveness
    # ------------------------------------------------------------------

    def is_valid(self, token: str) -> bool:
        """True iff a session exists for `token`, is not revoked and not expired."""
        session = self.find_by_token(token)
        return session is not None and session.is_live(self._clock())

    def validate(self, token: str) -> Session:
        """Typed variant of is_valid(): return the live session or raise why not."""
        session = self.find_by_token(token)
        if session is None:
            raise SessionNotFound()
        if session.revoked_at is not None:
            raise SessionRevoked()
        if self._clock() >= session.expires_at:
            raise TokenExpired("Session has expired.")
        return session

    def touch(self, session_id: int) -> None:
        """Stamp last_accessed_at on an authorized request."""
        now = to_db_time(self._clock())

        def op() -> None:
            with self.db.engine.begin() as conn:
                conn.execute(sessions.update().where(sessions.c.id == session_id).values(last_accessed_at=now))

        self.db.run("touch_session", op)

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def revoke(self, session_id: int) -> bool:
        """Revoke one session. Returns False if it was unknown or already revoked."""
        return self._revoke_where("revoke_session", sessions.c.id == session_id) > 0

    def revoke_by_token(self, token: str) -> bool:
        return self._revoke_where("revoke_session_by_token", sessions.c.token_hash == hash_token(token)) > 0

    def revoke_all_for_user(self, user_id: int, except_token: str | None = None) -> int:
        """Revoke every live session of a user, optionally sparing one token.

        Returns the number of sessions revoked.
        """
        clause = sessions.c.user_id == user_id
        if except_token is not None:
            clause = clause & (sessions.c.token_hash != hash_token(except_token))
        count = self._revoke_where("revoke_all_sessions", clause)
        logger.info("Revoked %d session(s) for user %s", count, user_id)
        return count

    def _revoke_where(self, label: str, clause) -> int:
        now = to_db_time(self._clock())

        def op() -> int:
            with self.db.engine.begin() as conn:
                result = conn.execute(
                    sessions.update().where(clause & sessions.c.revoked_at.is_(None)).values(revoked_at=now)
                )
                return result.rowcount

        return self.db.run(label, op)

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def purge_expired(self) -> int:
        """Delete sessions whose expiry has passed. Idempotent."""
        cutoff = to_db_time(self._clock())
        return self._delete_where("purge_expired_sessions", sessions.c.expires_at < cutoff)

    def purge_revoked_older_than(self, days: int) -> int:
        cutoff = to_db_time(self._clock() - timedelta(days=days))
        return self._delete_where(
            "purge_revoked_sessions",
            sessions.c.revoked_at.is_not(None) & (sessions.c.revoked_at < cutoff),
        )

    def _delete_where(self, label: str, clause) -> int:
        def op() -> int:
            with self.db.engine.begin() as conn:
                return conn.execute(sessions.delete().where(clause)).rowcount

        return self.db.run(label, op)

    def statistics(self) -> dict[str, int]:
        """Return total / active / revoked / expired / unique_users counts."""
        now = to_db_time(self._clock())
        live = sessions.c.revoked_at.is_(None) & (sessions.c.expires_at > now)

        def op():
            with self.db.engine.connect() as conn:
                return conn.execute(
                    select(
                        func.count().label("total"),
                        func.coalesce(func.sum(case((live, 1), else_=0)), 0).label("active"),
                        func.coalesce(func.sum(case((sessions.c.revoked_at.is_not(None), 1), else_=0)), 0).label(
                            "revoked"
                        ),
                        func.coalesce(func.sum(case((sessions.c.expires_at <= now, 1), else_=0)), 0).label("expired"),
                        func.count(func.distinct(sessions.c.user_id)).label("unique_users"),
                    )
                ).one()

        row = self.db.run("session_statistics", op)
        return {
            "total": int(row.total),
            "active": int(row.active),
            "revoked": int(row.revoked),
            "expired": int(row.expired),
            "unique_users": int(row.unique_users),
        }


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        issued_at=from_db_time(row.issued_at),
        expires_at=from_db_time(row.expires_at),
        revoked_at=from_db_time(row.revoked_at),
        last_accessed_at=from_db_time(row.last_accessed_at),
    )
