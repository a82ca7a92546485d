"""
auth/database.py -- Storage handle and schema shared by the auth stores.

Uses SQLAlchemy Core (not ORM) so the dataclasses in auth/models.py stay the
authoritative domain representation. Swapping SQLite for PostgreSQL is a
connection string change, not a rewrite.

Database is the explicit storage handle: it is constructed once at process
start (api/main.py lifespan, main.py CLI, test fixtures), injected into every
store, and closed at teardown. No module holds a global engine.

Data-access boundary:
  Database.run() wraps every store call. Infrastructure failures
  (OperationalError, InterfaceError, pool TimeoutError) get exactly one retry
  after a short backoff, then surface as DependencyUnavailable so the caller
  fails closed. Integrity errors and domain errors pass through untouched.

  Every connection carries a bounded wait: SQLite gets a busy timeout,
  PostgreSQL gets connect_timeout and statement_timeout, and the pool gets
  pool_timeout. Nothing here can hang a request indefinitely.

Timestamps:
  Stored as fixed-width UTC ISO-8601 strings (microseconds always present),
  so lexical comparison in SQL is chronological comparison.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Callable, TypeVar

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from auth.errors import DependencyUnavailable

logger = logging.getLogger("keyward.db")

T = TypeVar("T")

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(50), nullable=False, unique=True),
    Column("password_hash", String(255), nullable=False),
    Column("email", String(100), unique=True),
    Column("role", String(20), nullable=False, server_default="user"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("failed_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(32)),
    Column("last_login_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

sessions = Table(
    "sessions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("token_hash", String(64), nullable=False),
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("issued_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("revoked_at", String(32)),
    Column("last_accessed_at", String(32)),
    Index("ix_sessions_token_hash", "token_hash"),
    Index("ix_sessions_user_revoked", "user_id", "revoked_at"),
    Index("ix_sessions_expires_at", "expires_at"),
)

audit_log = Table(
    "audit_log",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer),
    Column("action", String(50), nullable=False),
    Column("resource", String(50)),
    Column("details", Text),  # JSON object serialized as text
    Column("ip_address", String(45)),
    Column("status", String(10), nullable=False, server_default="success"),
    Column("created_at", String(32), nullable=False),
    Index("ix_audit_user_id", "user_id"),
    Index("ix_audit_action", "action"),
    Index("ix_audit_created_at", "created_at"),
    Index("ix_audit_ip_address", "ip_address"),
)


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(value: datetime | None) -> str | None:
    """Render an aware datetime as the fixed-width UTC string stored on disk."""
    if value is None:
        return None
    if value.tzinfo is None:
        # Naive datetime -- assume UTC
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_TIMESTAMP_FORMAT)


def from_db_time(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# Connection setup
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers never block behind a writer.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _engine_options(url: str, timeout_seconds: float) -> dict:
    options: dict = {}
    connect_args: dict = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        # Busy timeout: a writer waits this long for a lock before erroring.
        connect_args["timeout"] = timeout_seconds
    else:
        options["pool_timeout"] = timeout_seconds
        options["pool_pre_ping"] = True
        if url.startswith("postgresql"):
            connect_args["connect_timeout"] = max(1, int(timeout_seconds))
            connect_args["options"] = f"-c statement_timeout={int(timeout_seconds * 1000)}"
    options["connect_args"] = connect_args
    return options


# ---------------------------------------------------------------------------
# Storage handle
# ---------------------------------------------------------------------------


class Database:
    """Explicit storage handle injected into every auth store.

    Usage:
        db = Database("sqlite:///keyward.db")
        store = CredentialStore(db)
        ...
        db.close()
    """

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 5.0,
        retry_backoff_seconds: float = 0.2,
    ) -> None:
        self.url = url
        self.retry_backoff_seconds = retry_backoff_seconds
        self.engine: Engine = create_engine(url, **_engine_options(url, timeout_seconds))
        if url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        self.run("create_schema", lambda: metadata.create_all(self.engine))

    @classmethod
    def from_settings(cls, settings) -> "Database":
        return cls(
            settings.database_url,
            timeout_seconds=settings.db_timeout_seconds,
            retry_backoff_seconds=settings.db_retry_backoff_seconds,
        )

    def run(self, label: str, operation: Callable[[], T]) -> T:
        """Execute a store operation with one retry on infrastructure failure.

        `label` names the operation in logs only. Domain exceptions raised by
        `operation` propagate unchanged on the first attempt.
        """
        try:
            return operation()
        except (OperationalError, InterfaceError, PoolTimeoutError) as exc:
            logger.warning("Storage call %s failed (%s); retrying once", label, type(exc).__name__)
            time.sleep(self.retry_backoff_seconds)
        try:
            return operation()
        except (OperationalError, InterfaceError, PoolTimeoutError) as exc:
            logger.error("Storage call %s failed after retry: %s", label, type(exc).__name__)
            raise DependencyUnavailable() from exc

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except (OperationalError, InterfaceError, PoolTimeoutError):
            return False

    def close(self) -> None:
        self.engine.dispose()
