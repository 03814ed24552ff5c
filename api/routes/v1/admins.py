"""
api/routes/v1/admins.py -- Persistent admin accounts, invites and first-run setup.

Routes:
  GET    /api/v1/admins                    -- admins visible to the caller
  GET    /api/v1/admins/online             -- usernames holding a live session (any admin)
  GET    /api/v1/admins/{id}               -- one admin (self, or anyone for the primary)
  DELETE /api/v1/admins/{id}               -- delete a secondary admin
  POST   /api/v1/admins/{id}/api-token     -- issue (rotate) the admin's adm_ token
  DELETE /api/v1/admins/{id}/api-token     -- revoke the admin's adm_ token
  POST   /api/v1/admins/invites            -- create an invite (primary only)
  POST   /api/v1/admins/invites/accept     -- redeem an invite (public, token-gated)
  GET    /api/v1/admins/setup              -- first-run status (public)
  POST   /api/v1/admins/setup              -- create the primary admin (public, token-gated)

Authorization:
  Account management needs a persistent admin (require_persistent_admin);
  the static config admin, ephemeral tokens and SSO identities have no id in
  the hierarchy. Per-target checks use AdminService.can_admin_view_admin /
  can_admin_modify_admin, so a secondary admin only ever sees and touches
  its own record.

Errors raised by AdminService (DuplicateIdentityError,
InvalidOrExpiredTokenError, PrimaryAdminProtectedError, ...) are mapped to
the error envelope by the AuthError handler in api/main.py.
"""

from __future__ import annotations

from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from api.models import (
    AdminApiTokenResponse,
    AdminResponse,
    InviteAccept,
    InviteCreate,
    InviteCreatedResponse,
    SetupRequest,
    OnlineAdminsResponse,
    SetupStatusResponse,
)
from auth.admin_service import API_TOKEN_PREFIX_LEN, AdminService
from auth.dependencies import get_current_principal, require_persistent_admin
from auth.identity import Principal

# Auth policy:
# - GET/DELETE /admins..., /admins/{id}/api-token: persistent admin + per-target check
# - GET /admins/online:           any authenticated admin
# - POST /admins/invites:         primary admin only
# - POST /admins/invites/accept:  public -- the invite token is the credential
# - GET|POST /admins/setup:       public -- the setup token is the credential
router = APIRouter()


def _service(request: Request) -> AdminService:
    return request.app.state.admin_service


def _forbidden() -> HTTPException:
    return HTTPException(
        status_code=403,
        detail={"code": "forbidden", "message": "Not permitted for this admin."},
    )


def _not_found() -> HTTPException:
    return HTTPException(
        status_code=404,
        detail={"code": "not_found", "message": "Admin not found."},
    )


def _require_modify(service: AdminService, principal: Principal, target_id: int) -> None:
    if not service.can_admin_modify_admin(principal.admin_id, target_id):
        raise _forbidden()
    if service.get_admin_by_id(target_id) is None:
        raise _not_found()


# ---------------------------------------------------------------------------
# First-run setup (public)
#
# Declared before /admins/{admin_id} so "setup" is never parsed as an id.
# ---------------------------------------------------------------------------


@router.get("/admins/setup", response_model=SetupStatusResponse)
def setup_status(request: Request) -> SetupStatusResponse:
    service = _service(request)
    return SetupStatusResponse(
        setup_required=bool(request.app.state.setup_required),
        admin_count=service.get_total_admin_count(),
    )


@router.post("/admins/setup", response_model=AdminResponse, status_code=201)
def complete_setup(request: Request, body: SetupRequest) -> AdminResponse:
    """Consume the setup token and create (or re-credential) the primary admin.

    The token comes from `python main.py setup-token`. The database claim is
    atomic, so two concurrent setups yield one primary [M1]. When a reset
    primary is re-credentialed, sessions it held before the reset are dropped.
    """
    service = _service(request)
    previous = service.get_primary_admin()
    admin = service.complete_setup(body.token, body.username, body.email, body.password)
    if previous is not None:
        request.app.state.auth_manager.delete_sessions_for_user(previous.username)
    request.app.state.setup_required = False
    return AdminResponse.from_admin(admin)


# ---------------------------------------------------------------------------
# Invites
# ---------------------------------------------------------------------------


@router.post("/admins/invites", response_model=InviteCreatedResponse, status_code=201)
def create_invite(
    request: Request,
    body: InviteCreate,
    principal: Principal = Depends(require_persistent_admin),
) -> InviteCreatedResponse:
    """Create a single-use invite link. Only the primary admin may invite."""
    if not principal.is_primary:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Only the primary admin can create invites."},
        )
    service = _service(request)
    ttl = timedelta(hours=body.ttl_hours) if body.ttl_hours else None
    token = service.create_invite(principal.admin_id, suggested_username=body.suggested_username, ttl=ttl)
    settings = request.app.state.settings
    return InviteCreatedResponse(
        token=token,
        url=service.build_invite_url(settings.base_url, token, settings.admin_path),
    )


@router.post("/admins/invites/accept", response_model=AdminResponse, status_code=201)
def accept_invite(request: Request, body: InviteAccept) -> AdminResponse:
    admin = _service(request).accept_invite(body.token, body.username, body.email, body.password)
    return AdminResponse.from_admin(admin)


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


@router.get("/admins", response_model=list[AdminResponse])
def list_admins(
    request: Request,
    principal: Principal = Depends(require_persistent_admin),
) -> list[AdminResponse]:
    """Every admin for the primary; only the caller's own record otherwise."""
    admins = _service(request).get_admins_for_admin(principal.admin_id)
    return [AdminResponse.from_admin(a) for a in admins]


@router.get("/admins/online", response_model=OnlineAdminsResponse)
def online_admins(
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> OnlineAdminsResponse:
    """Display names of admins with a live session, on this node and, when
    clustered, on every node sharing the session table.

    Subjects that no longer resolve (deleted or reset accounts, evicted SSO
    identities) are left out.
    """
    authenticator = request.app.state.authenticator
    names = set()
    for subject in request.app.state.auth_manager.get_online_usernames():
        resolved = authenticator.resolve_subject(subject)
        if resolved is not None:
            names.add(resolved.username)
    return OnlineAdminsResponse(usernames=sorted(names))


@router.get("/admins/{admin_id}", response_model=AdminResponse)
def get_admin(
    request: Request,
    admin_id: int,
    principal: Principal = Depends(require_persistent_admin),
) -> AdminResponse:
    service = _service(request)
    if not service.can_admin_view_admin(principal.admin_id, admin_id):
        raise _forbidden()
    admin = service.get_admin_by_id(admin_id)
    if admin is None:
        raise _not_found()
    return AdminResponse.from_admin(admin)


@router.delete("/admins/{admin_id}", status_code=204)
def delete_admin(
    request: Request,
    admin_id: int,
    principal: Principal = Depends(require_persistent_admin),
) -> Response:
    """Delete a secondary admin. The primary is protected (409 primary_protected)."""
    service = _service(request)
    _require_modify(service, principal, admin_id)
    target = service.get_admin_by_id(admin_id)
    if not service.delete_admin(admin_id, principal.admin_id):
        raise _not_found()
    request.app.state.auth_manager.delete_sessions_for_user(target.username)
    return Response(status_code=204)


@router.post("/admins/{admin_id}/api-token", response_model=AdminApiTokenResponse, status_code=201)
def generate_api_token(
    request: Request,
    admin_id: int,
    principal: Principal = Depends(require_persistent_admin),
) -> AdminApiTokenResponse:
    """Issue a new adm_ token, replacing any previous one. Shown exactly once."""
    service = _service(request)
    _require_modify(service, principal, admin_id)
    token = service.generate_api_token(admin_id)
    return AdminApiTokenResponse(token=token, token_prefix=token[:API_TOKEN_PREFIX_LEN])


@router.delete("/admins/{admin_id}/api-token", status_code=204)
def revoke_api_token(
    request: Request,
    admin_id: int,
    principal: Principal = Depends(require_persistent_admin),
) -> Response:
    service = _service(request)
    _require_modify(service, principal, admin_id)
    if not service.revoke_api_token(admin_id):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Admin has no API token."},
        )
    return Response(status_code=204)
