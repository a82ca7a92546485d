"""
api/main.py -- FastAPI application entry point for keyward.

Exposes the authentication core over HTTP. The core itself (auth/) knows
nothing about HTTP; this module owns transport concerns only: middleware,
the error-kind -> status table and resource lifetime.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (database, stores, audit dispatcher, purge task) and
shutdown (cancel purge task, drain audit queue, dispose engine) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.audit import AuditDispatcher, AuditRecorder
from auth.database import Database
from auth.dependencies import get_auth_context
from auth.errors import AuthError, AuthErrorKind
from auth.models import AuthContext
from auth.service import build_auth_service
from core.config import get_settings

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("keyward.api")

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


def purge_once(app: FastAPI) -> dict[str, int]:
    """Run every retention job once. Each job is idempotent."""
    settings = app.state.settings
    service = app.state.auth_service
    return {
        "expired_sessions": service.sessions.purge_expired(),
        "revoked_sessions": service.sessions.purge_revoked_older_than(settings.session_retention_days),
        "audit_entries": app.state.audit_recorder.purge_older_than(settings.audit_retention_days),
    }


async def _purge_loop(app: FastAPI) -> None:
    """Purge expired sessions and old audit entries every purge_interval_seconds.

    The blocking store calls run in a worker thread. A storage outage skips
    one round; the loop keeps going.
    """
    while True:
        await asyncio.sleep(app.state.settings.purge_interval_seconds)
        try:
            counts = await asyncio.to_thread(purge_once, app)
        except AuthError as exc:
            logger.warning("Purge round skipped: %s", exc.message)
            continue
        except Exception:
            logger.exception("Purge round failed")
            continue
        logger.info("Purge complete: %s", counts)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Database first -- every store takes it.
      2. Audit recorder and dispatcher -- the service records into the
         dispatcher, so it must be running before any request arrives.
      3. AuthService -- wires the stores, issuer and audit sink together.
      4. Purge task last -- references the service and the recorder.
    """
    settings = get_settings()
    logger.info("keyward API starting up")
    app.state.settings = settings
    app.state.db = Database.from_settings(settings)
    logger.info("Database initialized")
    app.state.audit_recorder = AuditRecorder(app.state.db)
    app.state.audit_dispatcher = AuditDispatcher(app.state.audit_recorder, max_queue=settings.audit_queue_size)
    app.state.audit_dispatcher.start()
    app.state.auth_service = build_auth_service(settings, app.state.db, app.state.audit_dispatcher)
    logger.info(
        "Auth initialized (lockout after %d failures for %d min, token ttl %ds)",
        settings.max_login_attempts,
        settings.lockout_duration_minutes,
        settings.token_expire_seconds,
    )
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    # Shutdown
    app.state.purge_task.cancel()
    app.state.audit_dispatcher.stop()
    if app.state.audit_dispatcher.dropped:
        logger.warning("Audit dispatcher dropped %d event(s) during this run", app.state.audit_dispatcher.dropped)
    app.state.db.close()
    logger.info("keyward API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="keyward API",
    description="Password authentication with lockout, revocable bearer sessions and an audit trail.",
    version=VERSION,
    lifespan=lifespan,
    # Built-in /docs and /redoc are replaced by auth-protected routes below.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order the request should encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=get_settings().allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    expose_headers=["Retry-After"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
def docs(ctx: AuthContext = Depends(get_auth_context)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="keyward API")


@app.get("/redoc", include_in_schema=False)
def redoc(ctx: AuthContext = Depends(get_auth_context)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="keyward API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------

# kind -> (status, public code). The only place error kinds become HTTP.
# ACCOUNT_NOT_FOUND deliberately shares INVALID_CREDENTIALS' status and code.
AUTH_ERROR_STATUS: dict[AuthErrorKind, tuple[int, str]] = {
    AuthErrorKind.ACCOUNT_NOT_FOUND: (401, "invalid_credentials"),
    AuthErrorKind.INVALID_CREDENTIALS: (401, "invalid_credentials"),
    AuthErrorKind.ACCOUNT_INACTIVE: (403, "account_inactive"),
    AuthErrorKind.ACCOUNT_LOCKED: (423, "account_locked"),
    AuthErrorKind.TOKEN_EXPIRED: (401, "token_expired"),
    AuthErrorKind.TOKEN_INVALID: (401, "token_invalid"),
    AuthErrorKind.SESSION_NOT_FOUND: (404, "session_not_found"),
    AuthErrorKind.SESSION_REVOKED: (401, "session_revoked"),
    AuthErrorKind.PASSWORD_POLICY: (400, "password_policy"),
    AuthErrorKind.DEPENDENCY_UNAVAILABLE: (503, "service_unavailable"),
}

_INVALID_CREDENTIALS_MESSAGE = "Invalid username or password."


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map a typed core failure to its HTTP status.

    ACCOUNT_NOT_FOUND never reveals itself: its body is the one a wrong
    password on a real account produces.
    """
    status_code, code = AUTH_ERROR_STATUS[exc.kind]
    message = _INVALID_CREDENTIALS_MESSAGE if exc.kind is AuthErrorKind.ACCOUNT_NOT_FOUND else exc.message
    response = JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message)).model_dump(),
    )
    if exc.kind is AuthErrorKind.ACCOUNT_LOCKED and exc.retry_after is not None:
        response.headers["Retry-After"] = str(exc.retry_after)
    if status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    if exc.kind is AuthErrorKind.DEPENDENCY_UNAVAILABLE:
        logger.error("Dependency unavailable on %s %s", request.method, request.url.path)
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions."""
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is always reachable regardless of router
# registration state. No rate limit: load balancers must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and database reachability."""
    db_ok = request.app.state.db.ping()
    return HealthResponse(
        status="ok" if db_ok else "degraded",
        version=VERSION,
        components={"database": "ok" if db_ok else "unavailable"},
    )
