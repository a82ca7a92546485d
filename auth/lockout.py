"""
auth/lockout.py -- Account lockout policy.

Pure decision functions over (failed attempt count, current lock expiry, now).
No I/O, no clock of its own: the caller passes `now`, which keeps every
transition reproducible in tests and lets the credential store apply the
decision inside its compare-and-set loop.

Rules:
  - A failure that brings the counter to the threshold (or past it, once a
    previous lock has expired) arms a lock of `duration` starting at `now`.
  - While now < lock expiry every attempt is refused, correct password or not.
    Failures inside the window do not re-arm or extend the lock.
  - Expiry does not clear the counter. Only a successful verification does.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta

DEFAULT_THRESHOLD = 5
DEFAULT_DURATION = timedelta(minutes=15)


@dataclass(frozen=True)
class LockDecision:
    """Outcome of a policy evaluation.

    allowed     -- an authentication attempt may proceed to verification
    locked      -- a lock is in force at the evaluated instant
    lock_expiry -- the lock expiry to persist (None = no lock ever armed)
    failed_attempts -- the counter value to persist
    engaged     -- this very decision armed a new lock
    """

    allowed: bool
    locked: bool
    lock_expiry: datetime | None
    failed_attempts: int
    engaged: bool = False
    retry_after: int = 0


class LockoutPolicy:
    def __init__(self, threshold: int = DEFAULT_THRESHOLD, duration: timedelta = DEFAULT_DURATION) -> None:
        if threshold < 1:
            raise ValueError("threshold must be at least 1")
        if duration <= timedelta(0):
            raise ValueError("duration must be positive")
        self.threshold = threshold
        self.duration = duration

    def evaluate(self, failed_attempts: int, locked_until: datetime | None, now: datetime) -> LockDecision:
        """Decide whether an attempt made at `now` may proceed to verification."""
        locked = locked_until is not None and now < locked_until
        return LockDecision(
            allowed=not locked,
            locked=locked,
            lock_expiry=locked_until,
            failed_attempts=failed_attempts,
            retry_after=_retry_after(locked_until, now) if locked else 0,
        )

    def register_failure(self, failed_attempts: int, locked_until: datetime | None, now: datetime) -> LockDecision:
        """Return the state after one more failed verification at `now`."""
        count = failed_attempts + 1
        if locked_until is not None and now < locked_until:
            return LockDecision(
                allowed=False,
                locked=True,
                lock_expiry=locked_until,
                failed_attempts=count,
                retry_after=_retry_after(locked_until, now),
            )
        if count >= self.threshold:
            expiry = now + self.duration
            return LockDecision(
                allowed=False,
                locked=True,
                lock_expiry=expiry,
                failed_attempts=count,
                engaged=True,
                retry_after=_retry_after(expiry, now),
            )
        return LockDecision(allowed=True, locked=False, lock_expiry=locked_until, failed_attempts=count)

    @classmethod
    def from_settings(cls, settings) -> "LockoutPolicy":
        return cls(
            threshold=settings.max_login_attempts,
            duration=timedelta(minutes=settings.lockout_duration_minutes),
        )


def _retry_after(locked_until: datetime | None, now: datetime) -> int:
    if locked_until is None:
        return 0
    return max(0, math.ceil((locked_until - now).total_seconds()))
