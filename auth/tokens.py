"""
auth/tokens.py -- Password hashing and bearer token issuance/verification.

Security design decisions:
  Tokens: python-jose with HS256. Tokens are signed with the server-held
       SECRET_KEY and carry user_id, username (as `sub`), role, issue time,
       expiry and a random jti. Claims are tamper-evident but NOT
       confidential -- anyone holding a token can base64-decode it, so no
       secret ever goes into a claim. Verification is local and synchronous:
       no store access, no network.

       A valid signature is necessary but not sufficient. The session ledger
       (auth/sessions.py) is the second check that makes revocation stick.

  Passwords: bcrypt directly (no passlib wrapper). Each hash embeds its own
       random salt and cost factor; checkpw compares in constant time.

  Token references: sessions store sha256(token) so a copy of the sessions
       table cannot be replayed as bearer credentials.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable

import bcrypt
from jose import jwt
from jose.exceptions import JWTError

from auth.errors import TokenExpired, TokenInvalid
from auth.models import IssuedToken, TokenClaims


_ALGORITHM = "HS256"
_DEFAULT_ROUNDS = 12

# bcrypt only looks at the first 72 bytes of its input; newer releases refuse
# longer inputs outright. The password policy rejects them before hashing.
MAX_PASSWORD_BYTES = 72


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: int = _DEFAULT_ROUNDS) -> str:
    """Return a bcrypt hash of the given plaintext password with a fresh salt."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    Malformed hashes and over-long inputs count as a mismatch rather than an
    error: the caller only ever needs a yes/no.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


def hash_token(token: str) -> str:
    """Return the SHA-256 hex digest used as the ledger's token reference."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Token issuer
# ---------------------------------------------------------------------------


class TokenIssuer:
    """Creates and verifies signed, time-bounded bearer tokens.

    Usage:
        issuer = TokenIssuer(secret_key, ttl_seconds=3600)
        issued = issuer.issue(TokenClaims(user_id=1, username="admin", role="admin"))
        claims = issuer.verify(issued.token)   # == the claims passed to issue()
    """

    def __init__(
        self,
        secret_key: str,
        ttl_seconds: int = 3600,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if not secret_key:
            raise ValueError("secret_key must not be empty")
        self._secret_key = secret_key
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, settings, clock: Callable[[], datetime] = _utcnow) -> "TokenIssuer":
        return cls(settings.secret_key, ttl_seconds=settings.token_expire_seconds, clock=clock)

    def issue(self, claims: TokenClaims, ttl_seconds: int | None = None) -> IssuedToken:
        """Sign `claims` into a token valid for `ttl_seconds` (default: configured TTL).

        The jti makes every token unique even when the same user is issued two
        tokens within one second (login immediately followed by refresh).
        """
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        now = self._clock()
        expires_at = now + timedelta(seconds=ttl)
        payload = {
            "sub": claims.username,
            "user_id": claims.user_id,
            "role": claims.role,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": secrets.token_hex(16),
        }
        token = jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)
        return IssuedToken(token=token, expires_at=expires_at, expires_in=ttl)

    def verify(self, token: str) -> TokenClaims:
        """Return the claims of a well-formed, correctly signed, unexpired token.

        Raises TokenExpired when only the expiry check fails, TokenInvalid for
        anything else (malformed, wrong signature, wrong algorithm, missing claims).
        """
        try:
            # Expiry is checked below against the issuer's clock, not jose's.
            # jose turns require_exp into verify_exp, so both stay off here.
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[_ALGORITHM],
                options={"verify_exp": False, "require_exp": False},
            )
        except JWTError as exc:
            raise TokenInvalid() from exc

        exp = payload.get("exp")
        if not isinstance(exp, int):
            raise TokenInvalid()
        if self._clock().timestamp() >= exp:
            raise TokenExpired()

        user_id = payload.get("user_id")
        username = payload.get("sub")
        role = payload.get("role")
        if not isinstance(user_id, int) or not isinstance(username, str) or not isinstance(role, str):
            raise TokenInvalid("Authentication token is missing required claims.")
        return TokenClaims(user_id=user_id, username=username, role=role)
