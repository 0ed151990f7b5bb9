"""
api/main.py -- FastAPI application entry point for AuthKeep.

Exposes the credential lifecycle core (auth/) over HTTP: registration,
password login with refresh-token sessions, email verification, and password
reset.

Install deps:  pip install -e .
Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds the store and the services once and hangs them on app.state;
shutdown cancels the sweep task and disposes the store symmetrically.

Error mapping: every auth.errors.AuthError subclass maps to exactly one HTTP
status in _STATUS_BY_ERROR. Route handlers raise; nothing else builds domain
error responses.
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
from starlette.concurrency import run_in_threadpool

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.errors import (
    AccountUnverified,
    AuthError,
    Conflict,
    InvalidCredentials,
    InvalidInput,
    MailTransientFailure,
    NotFound,
    PurposeMismatch,
    SignatureInvalid,
    StoreUnavailable,
    TokenAlreadyUsed,
    TokenExpired,
    TokenMalformed,
    TokenNotFound,
    Unauthenticated,
)
from auth.services import Services, build_services
from core.config import get_settings

_VERSION = "0.1.0"
_STORE_RETRY_AFTER_SECONDS = 5

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("authkeep.api")

_settings = get_settings()


def attach_services(app: FastAPI, services: Services) -> None:
    """Expose the service graph on app.state, where routes and dependencies look it up."""
    app.state.store = services.store
    app.state.actions = services.actions
    app.state.sessions = services.sessions
    app.state.gate = services.gate
    app.state.accounts = services.accounts


# ---------------------------------------------------------------------------
# Background sweep task
# ---------------------------------------------------------------------------


async def _sweep_loop(app: FastAPI, interval_seconds: int) -> None:
    """Delete expired action tokens and dead login sessions every interval_seconds.

    Runs as a background asyncio task started in lifespan startup. The store
    call is synchronous, so it runs in the threadpool to keep the event loop
    free. A StoreUnavailable during one sweep is logged and the next sweep
    tries again. CancelledError from task.cancel() during shutdown propagates
    out of asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await run_in_threadpool(app.state.actions.sweep_expired_tokens)
            await run_in_threadpool(app.state.sessions.sweep_expired_sessions)
        except StoreUnavailable:
            logger.warning("Token sweep skipped: credential store unavailable")


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Store and services first -- built once from settings; the signing
         secret and TTLs are fixed for the process lifetime.
      2. Sweep task last -- references app.state.actions.
    """
    # Startup
    logger.info("AuthKeep API starting up")
    attach_services(app, build_services(_settings))
    logger.info("Credential store initialized (mail backend=%s)", _settings.mail_backend)
    app.state.sweep_task = None
    if _settings.token_sweep_interval_seconds > 0:
        app.state.sweep_task = asyncio.create_task(_sweep_loop(app, _settings.token_sweep_interval_seconds))

    yield

    # Shutdown
    if app.state.sweep_task is not None:
        app.state.sweep_task.cancel()
    app.state.store.close()
    logger.info("AuthKeep API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="AuthKeep API",
    description="Account registration, password login, email verification, and password reset.",
    version=_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Starlette (FastAPI's foundation) wraps middleware in reverse registration
# order at the ASGI level, but add_middleware() calls are applied outermost-
# first from the caller's perspective. Register in the order you want the
# request to encounter them: TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# Attach the shared limiter to app.state so SlowAPIMiddleware can locate it.
# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
#
# Every request passes through this coroutine before reaching any route
# handler. Only method, path, status, latency, and client address are logged;
# bodies carry passwords and tokens and are never logged.
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

# Most specific class first; the first isinstance() match wins.
_STATUS_BY_ERROR: tuple[tuple[type[AuthError], int], ...] = (
    (InvalidInput, 422),
    (InvalidCredentials, 401),
    (Unauthenticated, 401),
    (AccountUnverified, 403),
    (TokenNotFound, 400),
    (TokenMalformed, 400),
    (SignatureInvalid, 400),
    (PurposeMismatch, 400),
    (TokenExpired, 410),
    (TokenAlreadyUsed, 410),
    (Conflict, 409),
    (NotFound, 404),
    (StoreUnavailable, 503),
    (MailTransientFailure, 503),
)


def status_for(exc: AuthError) -> int:
    for cls, status in _STATUS_BY_ERROR:
        if isinstance(exc, cls):
            return status
    return 400


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render a domain failure as its mapped status with the shared envelope.

    StoreUnavailable carries Retry-After: the failure is transient and the
    request is safe to repeat.
    """
    status = status_for(exc)
    response = JSONResponse(
        status_code=status,
        content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message)).model_dump(),
    )
    if isinstance(exc, StoreUnavailable):
        response.headers["Retry-After"] = str(_STORE_RETRY_AFTER_SECONDS)
    if isinstance(exc, (InvalidCredentials, Unauthenticated)):
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients exactly how many seconds to wait before retrying.
    slowapi stores this on the exception as exc.retry_after (int seconds).
    """
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
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    get_current_identity raises HTTPException with a {"code", "message"} dict
    as detail. When detail is already a structured dict, use it directly as
    the error field rather than stringifying it -- str(dict) produces a Python
    repr, not JSON.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=exc.headers,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    Security note: the raw exception is written to the log only, never to the
    response body. The client receives only a generic message.
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
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied -- health
# checks from load balancers and monitoring systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", response_model=HealthResponse, tags=["Health"])
def health(request: Request) -> JSONResponse:
    """Return API liveness, version, and whether the credential store answers.

    503 with status "degraded" when the database does not respond, so a load
    balancer can take the instance out of rotation.
    """
    db_ok = request.app.state.store.ping()
    body = HealthResponse(
        status="healthy" if db_ok else "degraded",
        version=_VERSION,
        components={"app": "ok", "database": "ok" if db_ok else "unavailable"},
    )
    return JSONResponse(status_code=200 if db_ok else 503, content=body.model_dump())
