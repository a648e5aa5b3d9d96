"""
api/main.py -- FastAPI application entry point for credvault.

Exposes the credential subsystem over HTTP: login/logout/identity, credential
rotation, and admin user management. Other application routes (the CRUD
layer) consume auth.dependencies to gate their own endpoints.

Run with:      uvicorn api.main:app

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (settings, credential store load + bootstrap,
session store, purge task) and shutdown (cancel purge task) symmetrically.
A corrupt or tampered credential file aborts startup: load() raises and the
server never starts serving with an empty user table.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.errors import (
    AuthFailure,
    DuplicateUsernameError,
    InternalAuthError,
    StoreError,
    ValidationError,
)
from auth.service import create_auth_service
from auth.sessions import SessionStore
from core.config import get_settings

VERSION = "0.1.0"

_SESSION_PURGE_SECONDS = 5 * 60

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("credvault.api")

# Fail fast on missing MASTER_KEY / SECRET_KEY at import, before any route exists.
settings = get_settings()
settings.require_session_secret()

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Sweep idle-expired sessions every few minutes.

    get() already drops an expired entry when its token comes back; this loop
    removes entries whose clients never return. CancelledError from
    task.cancel() during shutdown propagates out of asyncio.sleep and unwinds
    the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(_SESSION_PURGE_SECONDS)
        app.state.sessions.purge_expired()


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Credential store -- load (decrypt + checksum) and bootstrap the first
         admin if the file is absent. Any failure here stops the server.
      2. Session store -- needs nothing but SECRET_KEY.
      3. Purge task last -- references app.state.sessions.
    """
    logger.info("credvault API starting up")
    app.state.settings = settings
    app.state.auth_service = create_auth_service(settings)
    logger.info("Credential store ready (%d user(s))", len(app.state.auth_service.list_users()))
    app.state.sessions = SessionStore(settings.secret_key, idle_seconds=settings.session_idle_seconds)
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    logger.info("credvault API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="credvault API",
    description="Encrypted credential store, login, and role-scoped sessions.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH"],
    allow_headers=["Content-Type", "Authorization"],
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
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "rate_limited", "Too many requests.", str(exc.detail))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation.

    Input values are stripped from the report so a rejected password is never
    echoed back.
    """
    errors = [{"loc": e.get("loc"), "msg": e.get("msg")} for e in exc.errors()]
    return _error(422, "validation_error", "Request validation failed.", str(errors))


@app.exception_handler(ValidationError)
async def domain_validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return _error(422, "validation_error", str(exc))


@app.exception_handler(AuthFailure)
async def auth_failure_handler(request: Request, exc: AuthFailure) -> JSONResponse:
    return _error(401, "bad_credentials", str(exc))


@app.exception_handler(DuplicateUsernameError)
async def duplicate_username_handler(request: Request, exc: DuplicateUsernameError) -> JSONResponse:
    return _error(409, "conflict", "A user with that username already exists.")


@app.exception_handler(InternalAuthError)
@app.exception_handler(StoreError)
async def store_failure_handler(request: Request, exc: Exception) -> JSONResponse:
    """Generic 500 for credential store trouble. Never says corruption vs. disk failure."""
    logger.error("Credential store unavailable on %s %s: %s", request.method, request.url.path, type(exc).__name__)
    return _error(500, "internal_error", "An unexpected error occurred.")


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with a dict detail ({"code", "message"}).
    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=exc.headers,
        )
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return API liveness and whether the credential store is loaded."""
    service = getattr(request.app.state, "auth_service", None)
    store_status = "ok" if service is not None else "error"
    return HealthResponse(version=VERSION, components={"app": "ok", "user_store": store_status})
