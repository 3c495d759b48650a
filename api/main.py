"""
api/main.py -- FastAPI application entry point for SessionWarden.

Exposes the session lifecycle (signup, login, refresh, logout, verify) over
HTTP. Everything interesting happens in auth/sessions.py; this module only
wires collaborators together and maps errors to responses.

Run with:      uvicorn asgi:app --reload
               python main.py serve

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds Settings, the user directory, the session store, the token
codec and the session manager on startup, and closes the stores on shutdown.
A ConfigurationError (e.g. missing SECRET_KEY) aborts startup.
"""

from __future__ import annotations

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
from auth.sessions import SessionManager
from auth.store import UserStore
from auth.tokens import TokenCodec
from cache.store import build_session_store
from core.config import get_settings
from core.errors import AuthenticationFailure, DirectoryError, StoreUnavailable

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("sessionwarden.api")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Settings first -- a bad SECRET_KEY must stop the process before any
         store is opened.
      2. User directory and session store -- independent of each other. An
         unreachable session store does not stop startup (degraded mode).
      3. Codec and manager last -- they take the other three as arguments.
    """
    settings = get_settings()
    logger.info("SessionWarden API starting up")
    app.state.settings = settings
    app.state.user_store = UserStore(settings.database_url)
    app.state.session_store = build_session_store(settings)
    app.state.session_manager = SessionManager(
        settings,
        TokenCodec(settings),
        app.state.session_store,
        app.state.user_store,
    )
    logger.info(
        "Auth initialized (session_store=%s, refresh_lookup=%s)",
        type(app.state.session_store).__name__,
        settings.refresh_lookup,
    )

    yield

    app.state.session_store.close()
    app.state.user_store.close()
    logger.info("SessionWarden API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="SessionWarden API",
    description="Credential login with short-lived access tokens and rotating refresh cookies.",
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
    allowed_hosts=["localhost", "127.0.0.1", "*.localhost"],
)

# Origins are read at import time because middleware cannot be added after
# startup. credentials=True is required for the refresh cookie.
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    allow_credentials=True,
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Logs method, path, status and latency only. Never headers or bodies: they
# carry bearer tokens, refresh cookies and passwords.
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
# Every failure leaves through error_response(), so clients parse one envelope
# shape: {"error": {"code", "message", "detail"}}.
# ---------------------------------------------------------------------------


def error_response(
    status_code: int,
    code: str,
    message: str,
    detail: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail))
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    client = request.client.host if request.client else "unknown"
    logger.warning("Rate limit hit on %s from %s", request.url.path, client)
    retry_after = int(getattr(exc, "retry_after", 60))
    return error_response(429, "rate_limited", "Too many requests.", str(exc), {"Retry-After": str(retry_after)})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """422 naming the failing fields only.

    Submitted values are never echoed: login and signup bodies carry passwords.
    """
    fields = ", ".join(".".join(str(part) for part in err["loc"]) for err in exc.errors())
    return error_response(422, "validation_error", "Request validation failed.", fields or None)


@app.exception_handler(AuthenticationFailure)
async def authentication_failure_handler(request: Request, exc: AuthenticationFailure) -> JSONResponse:
    """401 for a missing, invalid, revoked or expired bearer token.

    Only expiry is distinguished, so the client knows a refresh may help.
    """
    if exc.expired:
        return error_response(
            401,
            "token_expired",
            "Access token expired. Refresh the session.",
            headers={"WWW-Authenticate": 'Bearer error="invalid_token"'},
        )
    return error_response(401, "unauthorized", "Authentication required.", headers={"WWW-Authenticate": "Bearer"})


@app.exception_handler(StoreUnavailable)
async def store_unavailable_handler(request: Request, exc: StoreUnavailable) -> JSONResponse:
    """503 when a flow needs the session store and it is down.

    Not a 401: the client should retry later rather than ask for credentials.
    """
    logger.warning("Session store unavailable on %s %s", request.method, request.url.path)
    return error_response(
        503,
        "session_store_unavailable",
        "Session service temporarily unavailable. Try again shortly.",
        headers={"Retry-After": "30"},
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    # Routes raise with a {"code", "message"} dict; anything else (404, 405) is wrapped.
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail), headers=exc.headers)


@app.exception_handler(DirectoryError)
@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """500 for directory faults and anything unexpected. Details go to the log only."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is always reachable regardless of router
# registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness plus user directory and session store reachability.

    status stays "healthy" with the session store down: the service still
    logs users in (degraded). A dead user directory makes it "unhealthy".
    """
    database_ok = request.app.state.user_store.ping()
    store_ok = request.app.state.session_store.ping()
    return HealthResponse(
        status="healthy" if database_ok else "unhealthy",
        version=VERSION,
        components={
            "app": "ok",
            "database": "ok" if database_ok else "error",
            "session_store": "ok" if store_ok else "unavailable",
        },
    )
