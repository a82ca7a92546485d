"""
auth/service.py -- Authentication orchestrator.

Coordinates the credential store, lockout policy, token issuer, session
ledger and audit sink for login, logout, refresh and password change.

Login state machine:
  LOOKUP ---------- not found --> dummy bcrypt, audit, InvalidCredentials
  LOCK_CHECK ------ locked -----> audit, AccountLocked(retry_after)
  VERIFY ---------- wrong ------> INCREMENT_FAIL, audit,
                                  AccountLocked if this failure locked the
                                  account, else InvalidCredentials
  ACTIVE_CHECK ---- inactive ---> audit, AccountInactive
  RESET_COUNTERS -- lock engaged meanwhile --> audit, AccountLocked
  ISSUE_TOKEN -> CREATE_SESSION -> audit, LoginResult

Exactly one audit event is emitted per terminal state, including
DependencyUnavailable. An unknown username and a wrong password produce the
same InvalidCredentials error and take the same bcrypt time; only the audit
trail records which one it was.

The activity check sits after password verification on purpose: only a
caller who already holds the correct password learns that an account is
disabled.

Every store failure surfaces as DependencyUnavailable and the operation
fails closed. Nothing here defaults to allow.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Callable

from auth.audit import AuditSink
from auth.database import Database, utcnow
from auth.errors import (
    AccountInactive,
    AccountLocked,
    AccountNotFound,
    AuthError,
    DependencyUnavailable,
    InvalidCredentials,
    PasswordPolicyViolation,
    SessionNotFound,
    SessionRevoked,
    TokenInvalid,
)
from auth.lockout import LockoutPolicy
from auth.models import (
    AuditEvent,
    AuthContext,
    LoginResult,
    RefreshResult,
    TokenClaims,
    UserAccount,
    UserSummary,
)
from auth.sessions import SessionLedger
from auth.store import CredentialStore
from auth.tokens import MAX_PASSWORD_BYTES, TokenIssuer

logger = logging.getLogger("keyward.auth")

_UPPER = re.compile(r"[A-Z]")
_LOWER = re.compile(r"[a-z]")
_DIGIT = re.compile(r"\d")


def check_password_strength(password: str, min_length: int = 8) -> None:
    """Raise PasswordPolicyViolation unless `password` is acceptable as a new password.

    Rules: at least `min_length` characters, at most 72 bytes (bcrypt input
    limit), and at least one uppercase letter, one lowercase letter and one digit.
    """
    if len(password) < min_length:
        raise PasswordPolicyViolation(f"Password must be at least {min_length} characters long.")
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise PasswordPolicyViolation(f"Password must not exceed {MAX_PASSWORD_BYTES} bytes.")
    if not (_UPPER.search(password) and _LOWER.search(password) and _DIGIT.search(password)):
        raise PasswordPolicyViolation("Password must contain uppercase, lowercase letters and numbers.")


class AuthService:
    def __init__(
        self,
        credentials: CredentialStore,
        sessions: SessionLedger,
        tokens: TokenIssuer,
        audit: AuditSink,
        policy: LockoutPolicy | None = None,
        clock: Callable[[], datetime] = utcnow,
        min_password_length: int = 8,
    ) -> None:
        self.credentials = credentials
        self.sessions = sessions
        self.tokens = tokens
        self.audit = audit
        self.policy = policy or credentials.policy
        self._clock = clock
        self.min_password_length = min_password_length

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def authenticate(
        self,
        username: str,
        password: str,
        client_ip: str | None = None,
        user_agent: str | None = None,
    ) -> LoginResult:
        try:
            return self._authenticate(username, password, client_ip, user_agent)
        except DependencyUnavailable:
            self._audit("login", "failure", None, client_ip, username=username, reason="dependency_unavailable")
            raise

    def _authenticate(
        self,
        username: str,
        password: str,
        client_ip: str | None,
        user_agent: str | None,
    ) -> LoginResult:
        try:
            account = self.credentials.lookup_by_username(username)
        except AccountNotFound:
            # Same bcrypt cost as a real mismatch, same error as a wrong password.
            self.credentials.verify_secret(password, self.credentials.dummy_hash)
            self._audit("login", "failure", None, client_ip, username=username, reason="user_not_found")
            raise InvalidCredentials() from None

        check = self.policy.evaluate(account.failed_attempts, account.locked_until, self._clock())
        if not check.allowed:
            self._audit("login", "failure", account.id, client_ip, username=username, reason="account_locked")
            raise AccountLocked(retry_after=check.retry_after)

        if not self.credentials.verify_secret(password, account.password_hash):
            updated, decision = self.credentials.increment_failed_attempts(account.id)
            self._audit(
                "login",
                "failure",
                account.id,
                client_ip,
                username=username,
                reason="invalid_password",
                failedAttempts=updated.failed_attempts,
                isLocked=decision.locked,
                lockEngaged=decision.engaged,
            )
            if decision.locked:
                raise AccountLocked(retry_after=decision.retry_after)
            raise InvalidCredentials()

        if not account.is_active:
            self._audit("login", "failure", account.id, client_ip, username=username, reason="account_inactive")
            raise AccountInactive()

        if not self.credentials.reset_failed_attempts(account.id):
            # A concurrent failure locked the account while bcrypt ran.
            current = self.credentials.lookup_by_id(account.id)
            check = self.policy.evaluate(current.failed_attempts, current.locked_until, self._clock())
            self._audit("login", "failure", account.id, client_ip, username=username, reason="account_locked")
            raise AccountLocked(retry_after=check.retry_after)
        self.credentials.update_last_login(account.id)
        issued = self.tokens.issue(TokenClaims(user_id=account.id, username=account.username, role=account.role))
        session_id = self.sessions.create(account.id, issued.token, issued.expires_at, client_ip, user_agent)
        self._audit("login", "success", account.id, client_ip, username=username, sessionId=session_id)
        logger.info("User '%s' logged in (session %s)", account.username, session_id)
        return LoginResult(token=issued.token, expires_in=issued.expires_in, user=UserSummary.from_account(account))

    # ------------------------------------------------------------------
    # Logout
    # ------------------------------------------------------------------

    def logout(self, token: str, client_ip: str | None = None) -> None:
        """Revoke the session behind `token`.

        A second logout with the same token raises SessionNotFound and
        changes nothing.
        """
        session = self.sessions.find_by_token(token)
        if session is None or not self.sessions.revoke(session.id):
            self._audit(
                "logout",
                "failure",
                session.user_id if session else None,
                client_ip,
                reason="session_not_found",
            )
            raise SessionNotFound()
        self._audit("logout", "success", session.user_id, client_ip, sessionId=session.id)

    def logout_other_sessions(self, user_id: int, token: str, client_ip: str | None = None) -> int:
        """Revoke every live session of the user except the one behind `token`."""
        count = self.sessions.revoke_all_for_user(user_id, except_token=token)
        self._audit("logout_others", "success", user_id, client_ip, revokedSessions=count)
        return count

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def refresh(self, token: str, client_ip: str | None = None, user_agent: str | None = None) -> RefreshResult:
        """Exchange a live token for a new one; the old session is revoked first."""
        known_user_id = None
        try:
            claims = self.tokens.verify(token)
            known_user_id = claims.user_id
            session = self.sessions.validate(token)
            known_user_id = session.user_id
            if session.user_id != claims.user_id:
                raise TokenInvalid()
            account = self._account_for_session(session.user_id)
            if not account.is_active:
                raise AccountInactive()
            if not self.sessions.revoke(session.id):
                # A concurrent refresh or logout got there first.
                raise SessionRevoked()
            issued = self.tokens.issue(TokenClaims(user_id=account.id, username=account.username, role=account.role))
            new_session_id = self.sessions.create(account.id, issued.token, issued.expires_at, client_ip, user_agent)
        except AuthError as exc:
            self._audit("token_refresh", "failure", known_user_id, client_ip, reason=exc.kind.value)
            raise
        self._audit(
            "token_refresh",
            "success",
            account.id,
            client_ip,
            previousSessionId=session.id,
            sessionId=new_session_id,
        )
        return RefreshResult(token=issued.token, expires_in=issued.expires_in)

    # ------------------------------------------------------------------
    # Password change
    # ------------------------------------------------------------------

    def change_password(
        self,
        user_id: int,
        current_password: str,
        new_password: str,
        client_ip: str | None = None,
    ) -> int:
        """Rotate the password and revoke every session of the user.

        Returns the number of sessions revoked.
        """
        account = self.credentials.lookup_by_id(user_id)
        if not self.credentials.verify_secret(current_password, account.password_hash):
            self._audit("password_change", "failure", user_id, client_ip, reason="invalid_current_password")
            raise InvalidCredentials("Current password is incorrect.")
        try:
            check_password_strength(new_password, self.min_password_length)
            if self.credentials.verify_secret(new_password, account.password_hash):
                raise PasswordPolicyViolation("New password must differ from the current password.")
        except PasswordPolicyViolation:
            self._audit("password_change", "failure", user_id, client_ip, reason="password_policy")
            raise

        password_set = False
        try:
            self.credentials.set_password(user_id, new_password)
            password_set = True
            revoked = self.sessions.revoke_all_for_user(user_id)
        except DependencyUnavailable:
            self._audit(
                "password_change",
                "failure",
                user_id,
                client_ip,
                reason="dependency_unavailable",
                passwordChanged=password_set,
            )
            if password_set:
                logger.error(
                    "Password changed for user %s but sessions could not be revoked; "
                    "existing sessions remain live",
                    user_id,
                )
            raise
        self._audit("password_change", "success", user_id, client_ip, revokedSessions=revoked)
        logger.info("Password changed for user '%s'; %d session(s) revoked", account.username, revoked)
        return revoked

    # ------------------------------------------------------------------
    # Request authorization
    # ------------------------------------------------------------------

    def authorize(self, token: str) -> AuthContext:
        """Signature check, then ledger check, then account check.

        The ledger check is what rejects a revoked token whose signature and
        embedded expiry are still fine.
        """
        claims = self.tokens.verify(token)
        session = self.sessions.validate(token)
        if session.user_id != claims.user_id:
            raise TokenInvalid()
        account = self._account_for_session(session.user_id)
        if not account.is_active:
            raise AccountInactive()
        self.sessions.touch(session.id)
        return AuthContext(account=account, session=session, token=token)

    def current_user(self, user_id: int) -> UserSummary:
        return UserSummary.from_account(self.credentials.lookup_by_id(user_id))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _account_for_session(self, user_id: int) -> UserAccount:
        try:
            return self.credentials.lookup_by_id(user_id)
        except AccountNotFound:
            # The account behind a live session was deleted.
            raise TokenInvalid() from None

    def _audit(self, action: str, status: str, user_id: int | None, client_ip: str | None, **details) -> None:
        self.audit.record(
            AuditEvent(
                action=action,
                status=status,
                user_id=user_id,
                resource="auth",
                details=details,
                ip_address=client_ip,
            )
        )


def build_auth_service(settings, db: Database, audit: AuditSink, clock: Callable[[], datetime] = utcnow) -> AuthService:
    """Wire every component of the core from Settings and an open Database."""
    policy = LockoutPolicy.from_settings(settings)
    credentials = CredentialStore(db, policy, bcrypt_rounds=settings.bcrypt_rounds, clock=clock)
    return AuthService(
        credentials=credentials,
        sessions=SessionLedger(db, clock=clock),
        tokens=TokenIssuer.from_settings(settings, clock=clock),
        audit=audit,
        policy=policy,
        clock=clock,
        min_password_length=settings.min_password_length,
    )
