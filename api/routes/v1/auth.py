"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/v1/auth/login                  -- password login; returns a bearer token
  POST /api/v1/auth/logout                 -- revokes the session behind the token
  POST /api/v1/auth/refresh                -- rotates the token; old session revoked
  POST /api/v1/auth/change-password        -- rotates the password; all sessions revoked
  GET  /api/v1/auth/me                     -- current user (requires auth)
  GET  /api/v1/auth/sessions               -- caller's live sessions (requires auth)
  POST /api/v1/auth/sessions/revoke-others -- log out every other device (requires auth)

Security:
  POST /login is rate-limited per IP (Settings.login_rate_limit).
  Cache-Control: no-store on every response that carries a token.
  Handlers never build error bodies themselves: AuthError propagates to the
  handler in api/main.py, which owns the kind -> status table.

Handlers are sync (def) because the core does blocking bcrypt and database
work; FastAPI runs them in its threadpool.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import (
    ChangePasswordRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    RefreshResponse,
    RevokedCountResponse,
    SessionInfo,
    UserInfo,
)
from auth.database import to_db_time
from auth.dependencies import client_ip, get_auth_context, get_auth_service, get_bearer_token, user_agent
from auth.models import AuthContext, UserSummary

# Auth policy:
# - POST /auth/login:                  public (rate limited)
# - POST /auth/logout, /auth/refresh:  bearer token required; the token itself is the input
# - everything else:                   requires an authorized caller (get_auth_context)
router = APIRouter()


def _user_info(user: UserSummary) -> UserInfo:
    return UserInfo(id=user.id, username=user.username, email=user.email, role=user.role)


def _no_store(payload: dict, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=payload)
    resp.headers["Cache-Control"] = "no-store"
    resp.headers["Pragma"] = "no-cache"
    return resp


# ---------------------------------------------------------------------------
# Token lifecycle
# ---------------------------------------------------------------------------


@limiter.limit(login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password.

    Unknown username and wrong password return the same 401 body.
    """
    result = get_auth_service(request).authenticate(
        body.username,
        body.password,
        client_ip=client_ip(request),
        user_agent=user_agent(request),
    )
    return _no_store(
        LoginResponse(
            access_token=result.token,
            expires_in=result.expires_in,
            user=_user_info(result.user),
        ).model_dump()
    )


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, token: str = Depends(get_bearer_token)) -> MessageResponse:
    """Revoke the caller's session. A second logout with the same token is a 404."""
    get_auth_service(request).logout(token, client_ip=client_ip(request))
    return MessageResponse(message="Logged out.")


@router.post("/auth/refresh", response_model=RefreshResponse)
def refresh(request: Request, token: str = Depends(get_bearer_token)) -> JSONResponse:
    """Exchange a live token for a new one. The presented token stops working."""
    result = get_auth_service(request).refresh(
        token,
        client_ip=client_ip(request),
        user_agent=user_agent(request),
    )
    return _no_store(RefreshResponse(access_token=result.token, expires_in=result.expires_in).model_dump())


@router.post("/auth/change-password", response_model=RevokedCountResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    ctx: AuthContext = Depends(get_auth_context),
) -> RevokedCountResponse:
    """Rotate the password. Every session of the user, including this one, is revoked."""
    revoked = get_auth_service(request).change_password(
        ctx.account.id,
        body.current_password,
        body.new_password,
        client_ip=client_ip(request),
    )
    return RevokedCountResponse(revoked=revoked)


# ---------------------------------------------------------------------------
# Current user and sessions
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=UserInfo)
def me(request: Request, ctx: AuthContext = Depends(get_auth_context)) -> UserInfo:
    return _user_info(get_auth_service(request).current_user(ctx.account.id))


@router.get("/auth/sessions", response_model=list[SessionInfo])
def list_sessions(request: Request, ctx: AuthContext = Depends(get_auth_context)) -> list[SessionInfo]:
    """List the caller's live sessions, newest first. The current one is flagged."""
    live = get_auth_service(request).sessions.list_active_for_user(ctx.account.id)
    return [
        SessionInfo(
            id=s.id,
            ip_address=s.ip_address,
            user_agent=s.user_agent,
            issued_at=to_db_time(s.issued_at),
            expires_at=to_db_time(s.expires_at),
            last_accessed_at=to_db_time(s.last_accessed_at),
            current=s.id == ctx.session.id,
        )
        for s in live
    ]


@router.post("/auth/sessions/revoke-others", response_model=RevokedCountResponse)
def revoke_other_sessions(request: Request, ctx: AuthContext = Depends(get_auth_context)) -> RevokedCountResponse:
    revoked = get_auth_service(request).logout_other_sessions(
        ctx.account.id,
        ctx.token,
        client_ip=client_ip(request),
    )
    return RevokedCountResponse(revoked=revoked)
