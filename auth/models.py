"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Stores own
persistence, the service owns the state machine; these classes only carry
shape between them.

All datetimes are timezone-aware UTC. The stores convert to and from the
fixed-width ISO strings used on disk.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass
class UserAccount:
    """A local identity with its credential and lockout state.

    failed_attempts only returns to 0 after a successful verification (or an
    explicit admin unlock). An expired lock leaves the counter untouched, so
    the next wrong guess after expiry re-arms the lock immediately.
    """

    username: str
    password_hash: str
    role: str = "user"  # "admin", "user", "local", "qa", "uat", "beta", "prod"
    email: str | None = None
    id: int | None = None
    is_active: bool = True
    failed_attempts: int = 0
    locked_until: datetime | None = None
    last_login_at: datetime | None = None
    created_at: datetime | None = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and now < self.locked_until


@dataclass
class Session:
    """A granted, independently revocable right to use one issued token.

    token_hash is the SHA-256 hex digest of the bearer token. The raw token is
    never persisted.
    """

    user_id: int
    token_hash: str
    issued_at: datetime
    expires_at: datetime
    id: int | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    revoked_at: datetime | None = None
    last_accessed_at: datetime | None = None

    def is_live(self, now: datetime) -> bool:
        return self.revoked_at is None and now < self.expires_at


@dataclass
class AuditEvent:
    """An audit record on its way in. The recorder assigns id and created_at."""

    action: str  # "login", "logout", "token_refresh", "password_change", ...
    status: str = "success"  # "success" | "failure"
    user_id: int | None = None
    resource: str = "auth"
    details: dict[str, Any] = field(default_factory=dict)
    ip_address: str | None = None


@dataclass(frozen=True)
class AuditEntry:
    """Immutable row of the append-only audit trail."""

    id: int
    action: str
    status: str
    created_at: datetime
    user_id: int | None = None
    resource: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    ip_address: str | None = None


@dataclass
class AuditPage:
    entries: list[AuditEntry]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0


@dataclass(frozen=True)
class TokenClaims:
    """The identity asserted by a bearer token. Tamper-evident, not confidential."""

    user_id: int
    username: str
    role: str


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: datetime
    expires_in: int  # seconds


@dataclass(frozen=True)
class UserSummary:
    """Public view of an account -- no hash, no lockout internals."""

    id: int
    username: str
    email: str | None
    role: str

    @classmethod
    def from_account(cls, account: UserAccount) -> "UserSummary":
        return cls(id=account.id, username=account.username, email=account.email, role=account.role)


@dataclass(frozen=True)
class AuthContext:
    """What an authorized request knows about its caller."""

    account: UserAccount
    session: Session
    token: str


@dataclass(frozen=True)
class LoginResult:
    token: str
    expires_in: int
    user: UserSummary


@dataclass(frozen=True)
class RefreshResult:
    token: str
    expires_in: int
