"""
auth/audit.py -- Append-only audit trail of authentication events.

Two layers:

  AuditRecorder -- synchronous, durable writes and paginated queries against
      the audit_log table. write() may raise; record() never does: a failed
      durable write is logged in full to the fallback channel
      ("keyward.audit.fallback") and the caller carries on. An audit failure
      can never flip an authentication decision.

  AuditDispatcher -- asynchronous, non-blocking front for a recorder. record()
      appends to a bounded in-memory queue and returns immediately; one worker
      thread drains the queue into AuditRecorder.record(). When the queue is
      full the OLDEST pending event is dropped and logged to the fallback
      channel. Delivery is best-effort and there is no ordering guarantee
      across requests.

Both expose record(event), so AuthService takes either one.

Rows are immutable: there is no update path. The only delete is the explicit
retention purge, purge_older_than().

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import deque
from dataclasses import asdict
from datetime import datetime, timedelta
from typing import Callable, Protocol

from sqlalchemy import case, func, select

from auth.database import Database, audit_log, from_db_time, to_db_time, utcnow
from auth.models import AuditEntry, AuditEvent, AuditPage

logger = logging.getLogger("keyward.audit")
fallback_logger = logging.getLogger("keyward.audit.fallback")

MAX_PAGE_SIZE = 100


class AuditSink(Protocol):
    def record(self, event: AuditEvent) -> None: ...


def _log_fallback(reason: str, event: AuditEvent) -> None:
    fallback_logger.error("%s: %s", reason, json.dumps(asdict(event), default=str, sort_keys=True))


# ---------------------------------------------------------------------------
# Recorder
# ---------------------------------------------------------------------------


class AuditRecorder:
    """Durable audit writes and filtered, paginated reads.

    Usage:
        recorder = AuditRecorder(db)
        recorder.record(AuditEvent(action="login", status="failure", details={"reason": "invalid_password"}))
        page = recorder.query(user_id=1, status="failure", page=1, limit=20)
    """

    def __init__(self, db: Database, clock: Callable[[], datetime] = utcnow) -> None:
        self.db = db
        self._clock = clock

    def write(self, event: AuditEvent) -> int:
        """Insert one entry and return its id. Raises on storage failure."""
        values = {
            "user_id": event.user_id,
            "action": event.action,
            "resource": event.resource,
            "details": json.dumps(event.details, default=str) if event.details else None,
            "ip_address": event.ip_address,
            "status": event.status,
            "created_at": to_db_time(self._clock()),
        }

        def op() -> int:
            with self.db.engine.begin() as conn:
                return conn.execute(audit_log.insert().values(**values)).inserted_primary_key[0]

        return self.db.run("write_audit", op)

    def record(self, event: AuditEvent) -> None:
        """Best-effort write that never raises."""
        try:
            self.write(event)
        except Exception:
            logger.exception("Audit write failed for action=%s", event.action)
            _log_fallback("audit write failed", event)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def query(
        self,
        *,
        user_id: int | None = None,
        action: str | None = None,
        status: str | None = None,
        ip_address: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> AuditPage:
        """Return one page of entries matching every given filter, newest first.

        since/until bound created_at inclusively. limit is clamped to 1..100.
        """
        page = max(1, page)
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        clauses = []
        if user_id is not None:
            clauses.append(audit_log.c.user_id == user_id)
        if action is not None:
            clauses.append(audit_log.c.action == action)
        if status is not None:
            clauses.append(audit_log.c.status == status)
        if ip_address is not None:
            clauses.append(audit_log.c.ip_address == ip_address)
        if since is not None:
            clauses.append(audit_log.c.created_at >= to_db_time(since))
        if until is not None:
            clauses.append(audit_log.c.created_at <= to_db_time(until))

        def op():
            with self.db.engine.connect() as conn:
                total = conn.execute(select(func.count()).select_from(audit_log).where(*clauses)).scalar() or 0
                rows = conn.execute(
                    audit_log.select()
                    .where(*clauses)
                    .order_by(audit_log.c.created_at.desc(), audit_log.c.id.desc())
                    .limit(limit)
                    .offset((page - 1) * limit)
                ).fetchall()
            return total, rows

        total, rows = self.db.run("query_audit", op)
        return AuditPage(entries=[_row_to_entry(r) for r in rows], page=page, limit=limit, total=total)

    def count_recent_failures(self, user_id: int, action: str = "login", hours: int = 1) -> int:
        """Count failure entries of `action` for a user within the last `hours`."""
        cutoff = to_db_time(self._clock() - timedelta(hours=hours))

        def op() -> int:
            with self.db.engine.connect() as conn:
                return (
                    conn.execute(
                        select(func.count())
                        .select_from(audit_log)
                        .where(
                            (audit_log.c.user_id == user_id)
                            & (audit_log.c.action == action)
                            & (audit_log.c.status == "failure")
                            & (audit_log.c.created_at > cutoff)
                        )
                    ).scalar()
                    or 0
                )

        return self.db.run("count_recent_failures", op)

    def statistics(self) -> dict[str, int]:
        def op():
            with self.db.engine.connect() as conn:
                return conn.execute(
                    select(
                        func.count().label("total"),
                        func.coalesce(func.sum(case((audit_log.c.status == "success", 1), else_=0)), 0).label(
                            "successful"
                        ),
                        func.coalesce(func.sum(case((audit_log.c.status == "failure", 1), else_=0)), 0).label("failed"),
                        func.count(func.distinct(audit_log.c.user_id)).label("unique_users"),
                        func.count(func.distinct(audit_log.c.ip_address)).label("unique_ips"),
                    )
                ).one()

        row = self.db.run("audit_statistics", op)
        return {
            "total": int(row.total),
            "successful": int(row.successful),
            "failed": int(row.failed),
            "unique_users": int(row.unique_users),
            "unique_ips": int(row.unique_ips),
        }

    def purge_older_than(self, days: int) -> int:
        """Retention policy: delete entries older than `days`. Idempotent."""
        cutoff = to_db_time(self._clock() - timedelta(days=days))

        def op() -> int:
            with self.db.engine.begin() as conn:
                return conn.execute(audit_log.delete().where(audit_log.c.created_at < cutoff)).rowcount

        return self.db.run("purge_audit", op)


# ---------------------------------------------------------------------------
# Asynchronous dispatcher
# ---------------------------------------------------------------------------


class AuditDispatcher:
    """Bounded, drop-oldest queue in front of an AuditRecorder.

    Usage:
        dispatcher = AuditDispatcher(recorder, max_queue=1000)
        dispatcher.start()
        dispatcher.record(event)     # never blocks, never raises
        dispatcher.stop()            # drains what is left, then joins
    """

    def __init__(self, recorder: AuditRecorder, max_queue: int = 1000) -> None:
        if max_queue < 1:
            raise ValueError("max_queue must be at least 1")
        self.recorder = recorder
        self.max_queue = max_queue
        self.dropped = 0
        self._queue: deque[AuditEvent] = deque()
        self._cond = threading.Condition()
        self._in_flight = 0
        self._stopping = False
        self._worker: threading.Thread | None = None

    def start(self) -> None:
        with self._cond:
            if self._worker is not None:
                return
            self._stopping = False
            self._worker = threading.Thread(target=self._run, name="keyward-audit", daemon=True)
            self._worker.start()

    def record(self, event: AuditEvent) -> None:
        with self._cond:
            if len(self._queue) >= self.max_queue:
                oldest = self._queue.popleft()
                self.dropped += 1
                _log_fallback("audit queue full, dropped oldest event", oldest)
            self._queue.append(event)
            self._cond.notify_all()

    def pending(self) -> int:
        with self._cond:
            return len(self._queue) + self._in_flight

    def flush(self, timeout: float = 5.0) -> bool:
        """Wait until every queued event has been handed to the recorder."""
        with self._cond:
            return self._cond.wait_for(lambda: not self._queue and not self._in_flight, timeout=timeout)

    def stop(self, timeout: float = 5.0) -> None:
        """Drain the queue, then stop the worker. Events still queued at timeout are logged."""
        with self._cond:
            worker = self._worker
            self._stopping = True
            self._cond.notify_all()
        if worker is not None:
            worker.join(timeout)
        with self._cond:
            leftovers = list(self._queue)
            self._queue.clear()
            self._worker = None
        for event in leftovers:
            _log_fallback("audit dispatcher stopped before delivery", event)

    def _run(self) -> None:
        while True:
            with self._cond:
                self._cond.wait_for(lambda: self._queue or self._stopping)
                if not self._queue:
                    return
                event = self._queue.popleft()
                self._in_flight += 1
            try:
                self.recorder.record(event)
            finally:
                with self._cond:
                    self._in_flight -= 1
                    self._cond.notify_all()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_entry(row) -> AuditEntry:
    return AuditEntry(
        id=row.id,
        user_id=row.user_id,
        action=row.action,
        resource=row.resource,
        details=json.loads(row.details) if row.details else {},
        ip_address=row.ip_address,
        status=row.status,
        created_at=from_db_time(row.created_at),
    )
