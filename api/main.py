"""
api/main.py -- FastAPI application entry point for SessionGate.

Exposes login, registration and refresh-token rotation over HTTP.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  4. RequestAuthenticator  -- verifies the bearer token, sets request.state.user_id
  5. log_requests          -- correlation id + one access-log line per request

Lifespan handles startup (settings, stores, signer, service, purge task) and
shutdown (cancel purge task, close DB engine and directory session)
symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.credentials import CredentialVerifier
from auth.directory import DirectoryClient
from auth.errors import AuthenticationError, RegistrationError
from auth.middleware import RequestAuthenticator
from auth.service import AuthService
from auth.store import RefreshTokenStore, UserStore, create_store_engine
from auth.tokens import TokenSigner
from core.config import get_settings

API_VERSION = "0.1.0"
CORRELATION_HEADER = "X-Correlation-ID"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("sessiongate.api")

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI, interval_seconds: int) -> None:
    """Delete expired refresh-token rows every `interval_seconds`.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly. A failing purge is
    logged and retried on the next tick; it must not kill the loop.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            removed = await asyncio.to_thread(app.state.refresh_store.purge_expired)
        except Exception:
            logger.exception("Refresh token purge failed")
            continue
        if removed:
            logger.info("Purged %d expired refresh token(s)", removed)


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Settings first -- everything else is configured from them.
      2. One engine shared by both stores, schema created on connect.
      3. Signer, verifier (with optional directory client) and service.
      4. Purge task last -- references app.state.refresh_store.
    """
    # Startup
    logger.info("SessionGate API starting up")
    settings = get_settings()
    app.state.settings = settings

    engine = create_store_engine(settings.database_url)
    app.state.user_store = UserStore(engine=engine)
    app.state.refresh_store = RefreshTokenStore(engine=engine)

    directory = None
    if settings.directory_base_url:
        directory = DirectoryClient(
            settings.directory_base_url,
            api_key=settings.directory_api_key,
            timeout=settings.directory_timeout_seconds,
        )
        logger.info("Directory service enabled at %s", settings.directory_base_url)
    app.state.directory = directory

    app.state.token_signer = TokenSigner.from_settings(settings)
    app.state.auth_service = AuthService.from_settings(
        settings,
        users=app.state.user_store,
        tokens=app.state.refresh_store,
        verifier=CredentialVerifier(directory),
        signer=app.state.token_signer,
    )
    logger.info("Auth initialized (users present=%s)", app.state.user_store.has_users())
    app.state.purge_task = asyncio.create_task(_purge_loop(app, settings.purge_interval_seconds))

    yield

    # Shutdown
    app.state.purge_task.cancel()
    if directory is not None:
        directory.close()
    engine.dispose()
    logger.info("SessionGate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="SessionGate API",
    description="Token-based authentication with single-use rotating refresh tokens.",
    version=API_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() wraps the current stack, so the LAST registered middleware
# is the OUTERMOST. Register innermost first: RequestAuthenticator -> SlowAPI
# -> CORS -> TrustedHost. The @app.middleware("http") logger below is
# registered afterwards and therefore sees every request first.
# ---------------------------------------------------------------------------

app.add_middleware(RequestAuthenticator)

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization", CORRELATION_HEADER],
    expose_headers=[CORRELATION_HEADER],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=get_settings().allowed_hosts)

# Attach the shared limiter to app.state so SlowAPIMiddleware can locate it.
# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Every response carries X-Correlation-ID: the caller's value when supplied,
# a fresh uuid4 otherwise. The same id is stamped on the access-log line so a
# client-reported failure can be traced to the server logs.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    correlation_id = request.headers.get(CORRELATION_HEADER) or uuid.uuid4().hex
    request.state.correlation_id = correlation_id
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    response.headers[CORRELATION_HEADER] = correlation_id
    logger.info(
        "%s %s %d %.1fms %s cid=%s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
        correlation_id,
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


@app.exception_handler(AuthenticationError)
async def authentication_error_handler(request: Request, exc: AuthenticationError) -> JSONResponse:
    """Return one generic 401 for every login failure.

    The specific reason (unknown email, wrong password, directory outage) is
    already in the server log; echoing it would let a caller enumerate
    accounts.
    """
    response = _error(401, "bad_credentials", "Invalid email or password.")
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return response


@app.exception_handler(RegistrationError)
async def registration_error_handler(request: Request, exc: RegistrationError) -> JSONResponse:
    logger.info("Registration rejected: %s", exc)
    return _error(409, "conflict", "Username or email is already registered.")


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients exactly how many seconds to wait before retrying.
    slowapi stores this on the exception as exc.retry_after (int seconds).
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with detail={"code", "message"} (a
    dict). When detail is already a structured dict, use it directly as the
    error field rather than stringifying it -- str(dict) produces a Python repr,
    not JSON.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    Security note: the raw exception is written to the log only, never to the
    response body. The client receives a generic message and the correlation
    id it can quote when reporting the problem.
    """
    logger.exception(
        "Unhandled exception on %s %s cid=%s",
        request.method,
        request.url.path,
        getattr(request.state, "correlation_id", "-"),
    )
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied -- health
# checks from load balancers and monitoring systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return API liveness, version and database reachability."""
    components = {"app": "ok"}
    try:
        await asyncio.to_thread(request.app.state.user_store.has_users)
        components["database"] = "ok"
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        components["database"] = "error"
    status = "healthy" if components["database"] == "ok" else "degraded"
    return HealthResponse(status=status, version=API_VERSION, components=components)
