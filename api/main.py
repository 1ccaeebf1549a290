"""
api/main.py -- FastAPI application entry point for MemberAuth.

Run with:      uvicorn asgi:app --reload

Middleware (add_middleware() wraps, so the last one added runs first):
  SessionMiddleware     -- signed cookie carrying the opaque session id
  SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  CORSMiddleware        -- adds CORS headers for allowed browser origins
  TrustedHostMiddleware -- rejects requests with unexpected Host headers

Lifespan builds the stores and orchestrators once, wires them into app.state,
and starts the session-state purge task. Shutdown is symmetric.
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
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.errors import StoreUnavailable
from auth.login import LoggingFailureObserver, LoginOrchestrator
from auth.notifier import get_notifier
from auth.password import PasswordChanger
from auth.recovery import RecoveryOrchestrator
from auth.session import SessionStateStore
from auth.store import IdentityStore
from auth.verifier import CredentialVerifier
from core.config import get_settings

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("memberauth.api")

_settings = get_settings()


def wire_services(app: FastAPI, identity_store: IdentityStore, session_store: SessionStateStore, notifier) -> None:
    """Build the orchestrators around the given stores and attach everything to app.state.

    Shared by the real lifespan and the test lifespan so both wire the same graph.
    """
    app.state.identity_store = identity_store
    app.state.session_store = session_store
    app.state.notifier = notifier
    app.state.login_orchestrator = LoginOrchestrator(
        CredentialVerifier(identity_store),
        observers=[LoggingFailureObserver()],
    )
    app.state.recovery = RecoveryOrchestrator(identity_store, notifier)
    app.state.password_changer = PasswordChanger(identity_store)


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Purge stale session state every 6 hours.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine.
    """
    while True:
        await asyncio.sleep(6 * 60 * 60)
        try:
            removed = app.state.session_store.purge_stale(_settings.session_state_ttl_seconds)
        except StoreUnavailable:
            logger.warning("Session purge skipped: store unavailable")
            continue
        logger.info("Purged %d stale session entries", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create stores on startup, dispose of them on shutdown."""
    logger.info("MemberAuth API starting up")
    identity_store = IdentityStore()
    session_store = SessionStateStore()
    wire_services(app, identity_store, session_store, get_notifier())
    logger.info(
        "Auth initialized (members=%s, notifier=%s)",
        identity_store.has_members(),
        type(app.state.notifier).__name__,
    )
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.session_store.close()
    app.state.identity_store.close()
    logger.info("MemberAuth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="MemberAuth API",
    description="Member login, session workflow state and password recovery.",
    version=__version__,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=["localhost", "127.0.0.1", "*.localhost"],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    allow_credentials=True,
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# The cookie session only carries the opaque session id; the workflow state
# itself is in SessionStateStore.
app.add_middleware(
    SessionMiddleware,
    secret_key=_settings.secret_key,
    session_cookie="memberauth_session",
    same_site="lax",
    https_only=_settings.secure_cookies,
)

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
# Web router is mounted by asgi.py, not here.


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every error leaves through _error_response so clients always get the same
# {"error": {"code", "message", "detail"}} envelope.
# ---------------------------------------------------------------------------


def _error_response(
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
    """429 with Retry-After. Login and reset routes are the only limited ones."""
    logger.warning("Rate limit hit on %s from %s", request.url.path, request.client.host if request.client else "unknown")
    retry_after = int(getattr(exc, "retry_after", 60))
    return _error_response(
        429, "rate_limited", "Too many attempts. Please wait and try again.", str(exc), {"Retry-After": str(retry_after)}
    )


@app.exception_handler(StoreUnavailable)
async def store_unavailable_handler(request: Request, exc: StoreUnavailable) -> JSONResponse:
    """Identity or session store down: generic 503, never retried server-side."""
    logger.error("Store unavailable on %s %s", request.method, request.url.path)
    return _error_response(503, "store_unavailable", "Please try again later.")


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error_response(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Route-raised HTTPExceptions carry a {"code", "message"} dict; pass it through."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail), headers=exc.headers)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Unexpected errors are logged with traceback; the body stays generic."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and store reachability."""
    database = "ok"
    try:
        request.app.state.identity_store.has_members()
    except StoreUnavailable:
        database = "error"
    return HealthResponse(version=__version__, components={"app": "ok", "database": database})
