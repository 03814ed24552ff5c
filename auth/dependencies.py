"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two credential carriers are checked in priority order:
  1. Authorization: Bearer <token> header -- ephemeral tokens, the configured
     ADMIN_API_TOKEN, or a persistent admin's adm_ token.
  2. Session cookie (ADMIN_SESSION_COOKIE_NAME) -- set by the login flow.

Both converge on a Principal via the CompositeAuthenticator on app.state.

try_get_principal() is the soft variant (returns None on failure).
get_current_principal() wraps it and raises HTTP 401 if unauthenticated.
require_csrf() wraps get_current_principal() and enforces the double-submit
  check on unsafe methods for cookie-authenticated requests.
require_persistent_admin() raises HTTP 403 unless the caller is a database
  admin (the only identities with an id the permission predicates understand).

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request

from auth.identity import METHOD_SESSION, Principal
from auth.manager import resolve_client_ip

_SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


def get_client_ip(request: Request) -> str:
    return resolve_client_ip(
        request.headers.get("X-Forwarded-For"),
        request.headers.get("X-Real-IP"),
        request.client.host if request.client else "",
    )


def try_get_principal(request: Request) -> Principal | None:
    """Attempt to authenticate the request via bearer token or session cookie.

    Returns the Principal on success, None on any failure.
    Never raises -- callers that need a hard 401 should use get_current_principal().
    """
    state = request.app.state
    manager = state.auth_manager
    authenticator = state.authenticator

    # 1. Bearer header (API clients, CI/CD)
    token = manager.get_token_from_request(request)
    if token:
        principal = authenticator.authenticate_token(token)
        if principal is not None:
            return principal

    # 2. Session cookie (browser)
    session_id = manager.get_session_from_request(request)
    if session_id:
        session = manager.get_session(session_id)
        if session is not None:
            return authenticator.resolve_subject(session.admin_username)

    return None


def get_current_principal(request: Request) -> Principal:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(principal: Principal = Depends(get_current_principal)): ...
    """
    principal = try_get_principal(request)
    if principal is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return principal


async def require_csrf(request: Request, principal: Principal = Depends(get_current_principal)) -> Principal:
    """Authenticated principal whose unsafe request passed the CSRF check.

    Only cookie sessions carry ambient credentials, so bearer-token callers
    skip the check.
    """
    if request.method in _SAFE_METHODS or principal.method != METHOD_SESSION:
        return principal
    if not await request.app.state.csrf_guard.validate_request(request):
        raise HTTPException(
            status_code=403,
            detail={"code": "csrf_failed", "message": "CSRF token missing or invalid."},
        )
    return principal


def require_persistent_admin(principal: Principal = Depends(require_csrf)) -> Principal:
    """Require a database-backed admin. Raises HTTP 403 for config/token/SSO identities."""
    if not principal.is_persistent_admin:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "A persistent admin account is required."},
        )
    return principal
