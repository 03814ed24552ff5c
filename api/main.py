"""
api/main.py -- FastAPI application entry point for AdminGate.

Exposes the admin auth core over HTTP: login/logout/session refresh,
ephemeral API tokens, admin account management, invites, first-run setup
and OIDC single sign-on.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. log_requests          -- one access-log line per request
  2. setup_redirect        -- first-run redirect to the setup endpoint
  3. SessionMiddleware     -- signed cookie carrying the OIDC state value
  4. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  5. CORSMiddleware        -- adds CORS headers for allowed browser origins
  6. TrustedHostMiddleware -- rejects requests with unexpected Host headers

Lifespan handles startup (stores, services, auth manager, cleanup task) and
shutdown (cancel cleanup task, stop lookup executor, close DB engines)
symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.admins import router as admins_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.sso import router as sso_router
from auth.admin_service import AdminService
from auth.csrf import CSRFGuard
from auth.errors import (
    AuthError,
    DuplicateIdentityError,
    InvalidOrExpiredTokenError,
    NotAdminGroupError,
    PrimaryAdminExistsError,
    PrimaryAdminProtectedError,
    ProviderDisabledError,
    UnknownProviderError,
)
from auth.external import ExternalAuthService
from auth.identity import (
    AdminStoreAuthenticator,
    CompositeAuthenticator,
    ExternalIdentityAuthenticator,
    StaticCredentialAuthenticator,
)
from auth.manager import AuthManager, run_cleanup_loop
from auth.store import AdminStore, SessionStore
from core.config import Settings, get_settings

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("admingate.api")

settings = get_settings()

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def attach_auth_services(
    app: FastAPI,
    cfg: Settings,
    admin_store: AdminStore,
    session_store: SessionStore | None = None,
) -> None:
    """Build the auth core on top of the given stores and hang it on app.state.

    Shared by the real lifespan and the test lifespan so both wire the same
    object graph. The cleanup task is started separately by the caller.
    """
    manager = AuthManager(cfg, session_store=session_store)
    admin_service = AdminService(
        admin_store,
        invite_ttl=timedelta(hours=cfg.invite_ttl_hours),
        setup_token_ttl=timedelta(minutes=cfg.setup_token_ttl_minutes),
    )
    external = ExternalAuthService(cfg, store=admin_store)

    app.state.settings = cfg
    app.state.admin_store = admin_store
    app.state.session_store = session_store
    app.state.auth_manager = manager
    app.state.admin_service = admin_service
    app.state.external_auth = external
    app.state.csrf_guard = CSRFGuard(cfg)
    # Static config admin first, then database admins, then SSO sessions.
    app.state.authenticator = CompositeAuthenticator(
        StaticCredentialAuthenticator(manager, cfg),
        AdminStoreAuthenticator(admin_service),
        ExternalIdentityAuthenticator(external),
    )
    app.state.setup_required = not admin_service.has_any_admin() and not cfg.admin_username


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Stores first -- schema is created idempotently on engine creation.
      2. Services and the auth manager -- depend on the stores.
      3. Cleanup task last -- references app.state.auth_manager.
    """
    logger.info("AdminGate API starting up")
    admin_store = AdminStore(db_url=settings.database_url)
    session_store = SessionStore(db_url=settings.database_url) if settings.cluster_sessions else None
    attach_auth_services(app, settings, admin_store, session_store)
    logger.info(
        "Auth initialized (setup_required=%s, clustered_sessions=%s)",
        app.state.setup_required,
        session_store is not None,
    )
    app.state.cleanup_task = asyncio.create_task(
        run_cleanup_loop(app.state.auth_manager, settings.cleanup_interval_seconds)
    )

    yield

    app.state.cleanup_task.cancel()
    app.state.auth_manager.close()
    if session_store is not None:
        session_store.close()
    admin_store.close()
    logger.info("AdminGate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="AdminGate API",
    description="Administrator authentication: sessions, API tokens, multi-admin accounts and SSO.",
    version=API_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() prepends to the stack, so the last registration is the
# outermost layer. The @app.middleware("http") functions below are registered
# after these and therefore run first.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "Authorization", settings.csrf_header_name],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SessionMiddleware stores the OIDC state value between the authorization
# redirect and the callback. It is signed with SECRET_KEY [M6].
app.add_middleware(
    SessionMiddleware,
    secret_key=settings.secret_key,
    same_site="lax",
    https_only=settings.cookie_secure,
)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Setup redirect middleware
#
# With no admin of any kind (no persistent admin and no ADMIN_USERNAME),
# every API call except health and the setup endpoints is redirected to the
# setup status endpoint, so the first primary admin gets created before
# anything else is usable.
# ---------------------------------------------------------------------------

_SETUP_PATH = "/api/v1/admins/setup"


@app.middleware("http")
async def setup_redirect(request: Request, call_next):
    """Redirect API requests to the setup endpoint while in first-run state.

    The setup_required flag is set in lifespan and cleared by POST /setup. It
    is an in-memory flag so there is no DB call on every hit; POST /setup
    re-checks at the DB level to guard against concurrent setups [M1].
    """
    path = request.url.path
    if getattr(request.app.state, "setup_required", False):
        exempt = (_SETUP_PATH, "/api/v1/health")
        if path not in exempt:
            return RedirectResponse(_SETUP_PATH, status_code=302)
    return await call_next(request)


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
app.include_router(admins_router, prefix="/api/v1", tags=["Admins"])
app.include_router(sso_router, prefix="/api/v1", tags=["SSO"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------

# AuthError subclass -> (status, code). Messages come from the exception,
# which are deliberately generic for the token errors.
_AUTH_ERROR_STATUS: dict[type[AuthError], tuple[int, str]] = {
    InvalidOrExpiredTokenError: (400, "invalid_token"),
    DuplicateIdentityError: (409, "conflict"),
    PrimaryAdminExistsError: (409, "primary_exists"),
    PrimaryAdminProtectedError: (409, "primary_protected"),
    UnknownProviderError: (404, "unknown_provider"),
    ProviderDisabledError: (403, "provider_disabled"),
    NotAdminGroupError: (403, "not_admin"),
}


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    status, code = _AUTH_ERROR_STATUS.get(type(exc), (400, "auth_error"))
    return JSONResponse(
        status_code=status,
        content=ErrorResponse(error=ErrorDetail(code=code, message=str(exc))).model_dump(),
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients exactly how many seconds to wait before retrying.
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

    Route handlers raise HTTPException with a {"code", "message"} dict as
    detail; that dict becomes the error field as-is.
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


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and database reachability."""
    database = "ok"
    try:
        request.app.state.admin_store.count_admins()
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        database = "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=API_VERSION,
        components={"app": "ok", "database": database},
    )
