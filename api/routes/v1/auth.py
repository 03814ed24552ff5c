"""
api/routes/v1/auth.py -- Login, session and ephemeral API token endpoints.

Routes:
  POST /api/v1/auth/login              -- password login; sets session + CSRF cookies
  POST /api/v1/auth/logout             -- ends the session and clears the cookie
  POST /api/v1/auth/refresh            -- extends the current cookie session
  GET  /api/v1/auth/me                 -- current principal (requires auth)
  GET  /api/v1/auth/csrf               -- returns (and sets, if absent) the CSRF token
  POST /api/v1/auth/tokens             -- mint an ephemeral API token
  GET  /api/v1/auth/tokens             -- list live ephemeral tokens (masked)
  POST /api/v1/auth/tokens/revoke      -- revoke an ephemeral token

Security:
  [H2] POST /login is rate-limited per IP (LOGIN_RATE_LIMIT, default 5/15minutes).
  [C1] Login goes through the composed authenticator, whose static and
       database branches both run a full Argon2 verification on a miss.
  [M5] Cache-Control: no-store on login responses.
  Session fixation: a session cookie presented at login is destroyed before
  the new session is minted.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    ApiTokenCreate,
    ApiTokenResponse,
    ApiTokenRevoke,
    CsrfResponse,
    LoginRequest,
    LoginResponse,
    MeResponse,
    RefreshResponse,
)
from auth.dependencies import get_client_ip, get_current_principal, require_csrf
from auth.identity import METHOD_SESSION, Principal
from auth.manager import AuthManager
from core.config import get_settings

logger = logging.getLogger("admingate.api.auth")

TOKENS_PERMISSION = "tokens"

# Auth policy:
# - POST /api/v1/auth/login:          public -- rate limited
# - POST /api/v1/auth/logout:         public -- ending a session needs no prior auth
# - GET  /api/v1/auth/csrf:           public -- the login page needs a token too
# - POST /api/v1/auth/refresh:        cookie session + CSRF
# - GET  /api/v1/auth/me:             requires auth (get_current_principal)
# - POST /api/v1/auth/tokens:         requires auth + CSRF + "tokens" permission
# - GET  /api/v1/auth/tokens:         requires auth + "tokens" permission
# - POST /api/v1/auth/tokens/revoke:  requires auth + CSRF + "tokens" permission
router = APIRouter()


def _login_rate_limit() -> str:
    return get_settings().login_rate_limit


def _no_store(resp: Response) -> Response:
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _require_tokens_permission(principal: Principal) -> None:
    if not principal.has_permission(TOKENS_PERMISSION):
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Missing permission: tokens."},
        )


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(_login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate a static or persistent admin; set the session cookie.

    The same generic error is returned for an unknown identifier and a wrong
    password ("bad_credentials") to avoid leaking which accounts exist.
    """
    state = request.app.state
    manager: AuthManager = state.auth_manager
    principal = state.authenticator.authenticate(body.username, body.password)
    if principal is None:
        logger.warning("Failed admin login from %s", get_client_ip(request))
        return _no_store(
            JSONResponse(
                status_code=401,
                content={"error": {"code": "bad_credentials", "message": "Invalid username or password."}},
            )
        )

    previous = manager.get_session_from_request(request)
    if previous:
        manager.delete_session(previous)

    session = manager.create_session(
        principal.username,
        ip=get_client_ip(request),
        user_agent=request.headers.get("User-Agent", ""),
    )
    csrf_token = state.csrf_guard.generate_token()
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            username=principal.username,
            expires_at=session.expires_at,
            csrf_token=csrf_token,
        ).model_dump(mode="json"),
    )
    manager.set_session_cookie(resp, session)
    state.csrf_guard.set_cookie(resp, csrf_token)
    return _no_store(resp)


@router.post("/auth/logout")
def logout(request: Request) -> JSONResponse:
    """Destroy the current session, if any, and clear the cookie."""
    manager: AuthManager = request.app.state.auth_manager
    manager.delete_session(manager.get_session_from_request(request))
    resp = JSONResponse(content={"message": "Logged out."})
    manager.clear_session_cookie(resp)
    return resp


@router.get("/auth/csrf", response_model=CsrfResponse)
def csrf_token(request: Request, response: Response) -> CsrfResponse:
    """Return the CSRF token to echo in the X-CSRF-Token header."""
    token = request.app.state.csrf_guard.get_or_create_token(request, response)
    return CsrfResponse(csrf_token=token)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/refresh", response_model=RefreshResponse)
def refresh(request: Request, principal: Principal = Depends(require_csrf)) -> JSONResponse:
    """Push the cookie session's expiry out by the configured duration."""
    if principal.method != METHOD_SESSION:
        raise HTTPException(
            status_code=400,
            detail={"code": "not_a_session", "message": "Only cookie sessions can be refreshed."},
        )
    manager: AuthManager = request.app.state.auth_manager
    session_id = manager.get_session_from_request(request)
    if not manager.refresh_session(session_id):
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    session = manager.get_session(session_id)
    resp = JSONResponse(content=RefreshResponse(expires_at=session.expires_at).model_dump(mode="json"))
    manager.set_session_cookie(resp, session)
    return resp


@router.get("/auth/me", response_model=MeResponse)
def me(principal: Principal = Depends(get_current_principal)) -> MeResponse:
    """Return identity information for the authenticated caller."""
    return MeResponse.from_principal(principal)


# ---------------------------------------------------------------------------
# Ephemeral API tokens
# ---------------------------------------------------------------------------


@router.post("/auth/tokens", response_model=ApiTokenResponse, status_code=201)
def create_token(
    request: Request,
    body: ApiTokenCreate,
    principal: Principal = Depends(require_csrf),
) -> ApiTokenResponse:
    """Mint an ephemeral token. The plaintext is shown once; a restart revokes it."""
    _require_tokens_permission(principal)
    manager: AuthManager = request.app.state.auth_manager
    token = manager.create_api_token(
        body.name,
        description=body.description,
        permissions=body.permissions,
        valid_days=body.valid_days,
    )
    return ApiTokenResponse.from_token(token)


@router.get("/auth/tokens", response_model=list[ApiTokenResponse])
def list_tokens(
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> list[ApiTokenResponse]:
    """List live ephemeral tokens. Token values are masked."""
    _require_tokens_permission(principal)
    manager: AuthManager = request.app.state.auth_manager
    return [ApiTokenResponse.from_token(t) for t in manager.list_api_tokens()]


@router.post("/auth/tokens/revoke", status_code=204)
def revoke_token(
    request: Request,
    body: ApiTokenRevoke,
    principal: Principal = Depends(require_csrf),
) -> Response:
    _require_tokens_permission(principal)
    manager: AuthManager = request.app.state.auth_manager
    if not manager.revoke_api_token(body.token):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "API token not found."},
        )
    return Response(status_code=204)
