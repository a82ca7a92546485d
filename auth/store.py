"""
auth/store.py -- Credential store: identities, password hashes, lockout state.

Pattern: Repository + Data Mapper. CredentialStore is the repository;
_row_to_account is the mapper. The service layer never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  verify_secret() delegates to bcrypt.checkpw, which compares in constant
  time against a per-record salted hash. For unknown usernames the service
  still burns one verification against dummy_hash so response time does not
  reveal whether an account exists.

Failure counter atomicity:
  increment_failed_attempts() is an optimistic compare-and-set loop. It reads
  the current (failed_attempts, locked_until), asks the pure LockoutPolicy for
  the next state, and writes it only if the row still holds the values it
  read. A concurrent writer makes the UPDATE match zero rows and the loop
  re-reads. N concurrent failures therefore produce exactly N increments, and
  exactly one of them observes the threshold crossing and arms the lock.

Contract of set_password():
  The store only replaces the hash. Callers MUST revoke every session of the
  user afterwards (AuthService.change_password does).

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from sqlalchemy import func, select

from auth.database import Database, from_db_time, to_db_time, users, utcnow
from auth.errors import AccountNotFound, DependencyUnavailable
from auth.lockout import LockDecision, LockoutPolicy
from auth.models import UserAccount
from auth.tokens import hash_password, verify_password

logger = logging.getLogger("keyward.auth")

_MAX_CAS_ATTEMPTS = 50


class CredentialStore:
    """Repository for UserAccount records.

    Usage:
        store = CredentialStore(db, LockoutPolicy())
        uid = store.create_user(UserAccount(username="admin", password_hash=hash_password("secret")))
        account = store.lookup_by_username("admin")
    """

    def __init__(
        self,
        db: Database,
        policy: LockoutPolicy | None = None,
        bcrypt_rounds: int = 12,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.policy = policy or LockoutPolicy()
        self.bcrypt_rounds = bcrypt_rounds
        self._clock = clock
        # Same cost as real hashes so a miss takes as long as a wrong password.
        self.dummy_hash = hash_password("keyward-timing-equalizer", rounds=bcrypt_rounds)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        def op() -> bool:
            with self.db.engine.connect() as conn:
                return (conn.execute(select(func.count()).select_from(users)).scalar() or 0) > 0

        return self.db.run("has_users", op)

    def lookup_by_username(self, username: str) -> UserAccount:
        """Exact, case-sensitive match. Raises AccountNotFound."""
        return self._lookup("lookup_by_username", users.c.username == username)

    def lookup_by_id(self, user_id: int) -> UserAccount:
        return self._lookup("lookup_by_id", users.c.id == user_id)

    def lookup_by_email(self, email: str) -> UserAccount:
        return self._lookup("lookup_by_email", users.c.email == email)

    def _lookup(self, label: str, clause) -> UserAccount:
        def op():
            with self.db.engine.connect() as conn:
                return conn.execute(users.select().where(clause)).fetchone()

        row = self.db.run(label, op)
        if row is None:
            raise AccountNotFound()
        return _row_to_account(row)

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def verify_secret(self, plain: str, password_hash: str) -> bool:
        return verify_password(plain, password_hash)

    def create_user(self, account: UserAccount) -> int:
        """Insert a new account and return its id.

        Raises sqlalchemy.exc.IntegrityError if the username or email is taken.
        """
        now = to_db_time(self._clock())

        def op() -> int:
            with self.db.engine.begin() as conn:
                result = conn.execute(
                    users.insert().values(
                        username=account.username,
                        password_hash=account.password_hash,
                        email=account.email,
                        role=account.role,
                        is_active=1 if account.is_active else 0,
                        failed_attempts=0,
                        created_at=now,
                        updated_at=now,
                    )
                )
                return result.inserted_primary_key[0]

        return self.db.run("create_user", op)

    def set_password(self, user_id: int, new_plain: str) -> None:
        """Replace the password hash with a fresh-salted one.

        Callers must revoke all sessions of the user afterwards.
        """
        password_hash = hash_password(new_plain, rounds=self.bcrypt_rounds)
        self._update("set_password", user_id, password_hash=password_hash)

    # ------------------------------------------------------------------
    # Lockout state
    # ------------------------------------------------------------------

    def increment_failed_attempts(self, user_id: int) -> tuple[UserAccount, LockDecision]:
        """Count one failed verification and apply the lockout policy.

        Returns the updated account and the decision that was written. The
        decision's `engaged` flag is True for exactly one caller per lock.
        """
        for _ in range(_MAX_CAS_ATTEMPTS):
            current = self.lookup_by_id(user_id)
            now = self._clock()
            decision = self.policy.register_failure(current.failed_attempts, current.locked_until, now)
            if self._compare_and_set(current, decision, now):
                if decision.engaged:
                    logger.warning(
                        "Account '%s' locked after %d failed attempts until %s",
                        current.username,
                        decision.failed_attempts,
                        to_db_time(decision.lock_expiry),
                    )
                current.failed_attempts = decision.failed_attempts
                current.locked_until = decision.lock_expiry
                return current, decision
        logger.error("Failed-attempt counter for user %s did not settle", user_id)
        raise DependencyUnavailable()

    def _compare_and_set(self, current: UserAccount, decision: LockDecision, now: datetime) -> bool:
        expected_lock = to_db_time(current.locked_until)
        lock_clause = users.c.locked_until.is_(None) if expected_lock is None else users.c.locked_until == expected_lock

        def op() -> bool:
            with self.db.engine.begin() as conn:
                result = conn.execute(
                    users.update()
                    .where((users.c.id == current.id) & (users.c.failed_attempts == current.failed_attempts) & lock_clause)
                    .values(
                        failed_attempts=decision.failed_attempts,
                        locked_until=to_db_time(decision.lock_expiry),
                        updated_at=to_db_time(now),
                    )
                )
                return result.rowcount == 1

        return self.db.run("increment_failed_attempts", op)

    def reset_failed_attempts(self, user_id: int) -> bool:
        """Clear counter and lock after a successful verification.

        Returns False, changing nothing, when a lock is in force at the time
        of the write. A lock engaged by a concurrent failure while the
        password was being verified therefore survives the success.
        """
        now = self._clock()
        now_text = to_db_time(now)

        def op() -> bool:
            with self.db.engine.begin() as conn:
                result = conn.execute(
                    users.update()
                    .where(
                        (users.c.id == user_id)
                        & (users.c.locked_until.is_(None) | (users.c.locked_until <= now_text))
                    )
                    .values(failed_attempts=0, locked_until=None, updated_at=now_text)
                )
                return result.rowcount > 0

        return self.db.run("reset_failed_attempts", op)

    def unlock(self, user_id: int) -> bool:
        """Admin override: clear counter and lock regardless of expiry."""
        return self._update("unlock", user_id, failed_attempts=0, locked_until=None)

    # ------------------------------------------------------------------
    # Account maintenance
    # ------------------------------------------------------------------

    def update_last_login(self, user_id: int) -> None:
        self._update("update_last_login", user_id, last_login_at=to_db_time(self._clock()))

    def set_active(self, user_id: int, active: bool) -> bool:
        return self._update("set_active", user_id, is_active=1 if active else 0)

    def _update(self, label: str, user_id: int, **fields) -> bool:
        fields["updated_at"] = to_db_time(self._clock())

        def op() -> bool:
            with self.db.engine.begin() as conn:
                result = conn.execute(users.update().where(users.c.id == user_id).values(**fields))
                return result.rowcount > 0

        return self.db.run(label, op)


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> UserAccount:
    return UserAccount(
        id=row.id,
        username=row.username,
        password_hash=row.password_hash,
        email=row.email,
        role=row.role,
        is_active=bool(row.is_active),
        failed_attempts=row.failed_attempts,
        locked_until=from_db_time(row.locked_until),
        last_login_at=from_db_time(row.last_login_at),
        created_at=from_db_time(row.created_at),
    )
