"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Requests authenticate with an "Authorization: Bearer <token>" header. The
token goes through AuthService.authorize(): signature and expiry first, then
the session ledger (so a logged-out or rotated token stops working at once),
then the account's active flag.

get_bearer_token() only extracts the raw token; logout and refresh use it
directly because they take the token itself as input.
get_auth_context() requires a fully authorized caller.

Failures raise AuthError subclasses; the handler in api/main.py maps them to
HTTP status codes.

Layer rule: may import from fastapi (for Request) because this module is part
of the FastAPI dependency injection system. No imports from api/.
"""

from __future__ import annotations

from fastapi import Request

from auth.errors import TokenInvalid
from auth.models import AuthContext
from auth.service import AuthService


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def get_bearer_token(request: Request) -> str:
    """Return the bearer token from the Authorization header or raise TokenInvalid."""
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise TokenInvalid("Authentication required.")
    return token.strip()


def get_auth_context(request: Request) -> AuthContext:
    """Require an authorized caller.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(ctx: AuthContext = Depends(get_auth_context)): ...
    """
    return get_auth_service(request).authorize(get_bearer_token(request))


def client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def user_agent(request: Request) -> str | None:
    return request.headers.get("User-Agent")
