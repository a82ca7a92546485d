"""
auth/errors.py -- Closed error taxonomy for the authentication core.

Every failure the core can report is one AuthErrorKind. Components raise the
matching AuthError subclass; the HTTP boundary (api/main.py) maps kinds to
status codes in exactly one table. Nothing between the component and the
boundary inspects messages or re-classifies errors.

Domain errors are returned typed and never retried. Only infrastructure
failures (see auth/database.py) are retried, and those surface here as
DependencyUnavailable once the retry is spent.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from enum import Enum


class AuthErrorKind(str, Enum):
    ACCOUNT_NOT_FOUND = "account_not_found"
    ACCOUNT_INACTIVE = "account_inactive"
    ACCOUNT_LOCKED = "account_locked"
    INVALID_CREDENTIALS = "invalid_credentials"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_INVALID = "token_invalid"
    SESSION_NOT_FOUND = "session_not_found"
    SESSION_REVOKED = "session_revoked"
    DEPENDENCY_UNAVAILABLE = "dependency_unavailable"
    PASSWORD_POLICY = "password_policy"


class AuthError(Exception):
    """Base class for every typed failure of the authentication core.

    retry_after is only meaningful for ACCOUNT_LOCKED: whole seconds until the
    lock expires, rounded up so clients never retry a second too early.
    """

    kind: AuthErrorKind = AuthErrorKind.INVALID_CREDENTIALS
    default_message: str = "Authentication failed."

    def __init__(self, message: str | None = None, *, retry_after: int | None = None) -> None:
        self.message = message or self.default_message
        self.retry_after = retry_after
        super().__init__(self.message)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, message={self.message!r})"


class AccountNotFound(AuthError):
    kind = AuthErrorKind.ACCOUNT_NOT_FOUND
    default_message = "Account not found."


class AccountInactive(AuthError):
    kind = AuthErrorKind.ACCOUNT_INACTIVE
    default_message = "Account is inactive."


class AccountLocked(AuthError):
    kind = AuthErrorKind.ACCOUNT_LOCKED
    default_message = "Account is temporarily locked. Please try again later."


class InvalidCredentials(AuthError):
    kind = AuthErrorKind.INVALID_CREDENTIALS
    default_message = "Invalid username or password."


class TokenExpired(AuthError):
    kind = AuthErrorKind.TOKEN_EXPIRED
    default_message = "Authentication token has expired."


class TokenInvalid(AuthError):
    kind = AuthErrorKind.TOKEN_INVALID
    default_message = "Invalid authentication token."


class SessionNotFound(AuthError):
    kind = AuthErrorKind.SESSION_NOT_FOUND
    default_message = "Session not found."


class SessionRevoked(AuthError):
    kind = AuthErrorKind.SESSION_REVOKED
    default_message = "Session has been revoked."


class DependencyUnavailable(AuthError):
    kind = AuthErrorKind.DEPENDENCY_UNAVAILABLE
    default_message = "Service temporarily unavailable."


class PasswordPolicyViolation(AuthError):
    kind = AuthErrorKind.PASSWORD_POLICY
    default_message = "Password does not meet the password policy."
