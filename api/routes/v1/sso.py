"""
api/routes/v1/sso.py -- Federated (OIDC) admin login.

Routes:
  GET /api/v1/sso/providers                 -- enabled OIDC/LDAP providers (public)
  GET /api/v1/sso/oidc/{provider_id}/login    -- redirect to the provider's authorize URL
  GET /api/v1/sso/oidc/{provider_id}/callback -- code exchange, group sync, session mint

Flow:
  /login stores a random state value in the signed Starlette session cookie
  (SessionMiddleware, signed with SECRET_KEY [M6]) and redirects. /callback
  pops it and compares it to the returned state in constant time before any
  network call is made. A user is admitted only when the provider reports a
  group on the provider's admin_groups allowlist; the resulting session's
  subject is "oidc:<provider>:<sub>", which ExternalIdentityAuthenticator
  resolves on later requests.

Security:
  [H1] State mismatch -> 400 invalid_state, no token exchange performed.
  Provider and transport failures are logged and surface as a generic
  502 sso_failed; provider error bodies are never echoed.
"""

from __future__ import annotations

import logging
from typing import Optional

import requests
from authlib.common.errors import AuthlibBaseError
from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import RedirectResponse

from api.models import ProviderInfo
from auth.dependencies import get_client_ip
from auth.external import PROVIDER_LDAP, PROVIDER_OIDC, ExternalAuthService
from auth.identity import external_subject
from auth.manager import AuthManager
from auth.tokens import constant_time_equals

logger = logging.getLogger("admingate.api.sso")

_STATE_KEY = "oidc_state"

router = APIRouter()


def _invalid_state() -> HTTPException:
    return HTTPException(
        status_code=400,
        detail={"code": "invalid_state", "message": "Invalid or missing state parameter."},
    )


@router.get("/sso/providers", response_model=list[ProviderInfo])
def list_providers(request: Request) -> list[ProviderInfo]:
    """Providers the login page should offer. Empty when none are configured."""
    external: ExternalAuthService = request.app.state.external_auth
    providers = [
        ProviderInfo(type=PROVIDER_OIDC, id=p.id, name=p.name or p.id) for p in external.get_enabled_oidc_providers()
    ]
    providers += [
        ProviderInfo(type=PROVIDER_LDAP, id=p.id, name=p.name or p.id) for p in external.get_enabled_ldap_providers()
    ]
    return providers


@router.get("/sso/oidc/{provider_id}/login")
def oidc_login(request: Request, provider_id: str) -> RedirectResponse:
    """Start the authorization code flow for `provider_id`."""
    external: ExternalAuthService = request.app.state.external_auth
    state = external.generate_state_token()
    url = external.get_oidc_auth_url(provider_id, state)
    request.session[_STATE_KEY] = state
    return RedirectResponse(url, status_code=302)


@router.get("/sso/oidc/{provider_id}/callback")
def oidc_callback(
    request: Request,
    provider_id: str,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
) -> RedirectResponse:
    """Finish the code flow and mint an admin session for an admin-group member."""
    expected = request.session.pop(_STATE_KEY, "")
    if not state or not expected or not constant_time_equals(state, expected):  # [H1]
        logger.warning("OIDC callback for %s with invalid state from %s", provider_id, get_client_ip(request))
        raise _invalid_state()
    if error or not code:
        logger.warning("OIDC provider %s returned error %r", provider_id, error)
        raise HTTPException(
            status_code=400,
            detail={"code": "sso_denied", "message": "The identity provider did not authorize the login."},
        )

    app_state = request.app.state
    external: ExternalAuthService = app_state.external_auth
    manager: AuthManager = app_state.auth_manager
    try:
        token = external.exchange_oidc_code(provider_id, code)
        userinfo = external.get_oidc_userinfo(provider_id, token)
    except (requests.RequestException, AuthlibBaseError):
        logger.exception("OIDC exchange with provider %s failed", provider_id)
        raise HTTPException(
            status_code=502,
            detail={"code": "sso_failed", "message": "Login with the identity provider failed."},
        ) from None

    # NotAdminGroupError propagates to the AuthError handler (403 not_admin).
    record = external.sync_external_admin(PROVIDER_OIDC, provider_id, userinfo)
    if not record.is_admin:
        logger.warning("OIDC user %r is no longer an admin of %s", record.username, provider_id)
        raise HTTPException(
            status_code=403,
            detail={"code": "not_admin", "message": "User is not in any admin group."},
        )

    session = manager.create_session(
        external_subject(PROVIDER_OIDC, provider_id, record.external_id),
        ip=get_client_ip(request),
        user_agent=request.headers.get("User-Agent", ""),
    )
    admin_path = app_state.settings.admin_path.strip("/")
    resp = RedirectResponse(f"/{admin_path}", status_code=302)
    manager.set_session_cookie(resp, session)
    app_state.csrf_guard.set_cookie(resp, app_state.csrf_guard.generate_token())
    logger.info("OIDC login for %r via %s", record.username, provider_id)
    return resp
