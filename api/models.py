"""
API request and response models for AdminGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.identity import Principal
from auth.models import Admin, EphemeralAPIToken

# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Login / session
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login. `username` may also be an email."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=1024)


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    username: str
    expires_at: datetime
    csrf_token: str


class RefreshResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    expires_at: datetime


class CsrfResponse(BaseModel):
    """Response for GET /api/v1/auth/csrf. Echo csrf_token in X-CSRF-Token."""

    model_config = ConfigDict(frozen=True)

    csrf_token: str


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    username: str
    method: str
    source: str
    admin_id: Optional[int] = None
    is_primary: bool = False
    permissions: list[str] = Field(default_factory=list)

    @classmethod
    def from_principal(cls, principal: Principal) -> "MeResponse":
        return cls(
            username=principal.username,
            method=principal.method,
            source=principal.source,
            admin_id=principal.admin_id,
            is_primary=principal.is_primary,
            permissions=list(principal.permissions),
        )


# ---------------------------------------------------------------------------
# Ephemeral API tokens
# ---------------------------------------------------------------------------


class ApiTokenCreate(BaseModel):
    """Request body for POST /api/v1/auth/tokens."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)
    description: str = Field(default="", max_length=500)
    permissions: list[str] = Field(default_factory=list, max_length=50)
    valid_days: int = Field(default=30, ge=1, le=365)


class ApiTokenRevoke(BaseModel):
    token: str = Field(min_length=1)


class ApiTokenResponse(BaseModel):
    """An ephemeral token. `token` is the plaintext only in the create response."""

    model_config = ConfigDict(frozen=True)

    token: str
    name: str
    description: str
    permissions: list[str]
    created_at: datetime
    expires_at: datetime
    last_used_at: Optional[datetime] = None

    @classmethod
    def from_token(cls, token: EphemeralAPIToken) -> "ApiTokenResponse":
        return cls(
            token=token.token,
            name=token.name,
            description=token.description,
            permissions=list(token.permissions),
            created_at=token.created_at,
            expires_at=token.expires_at,
            last_used_at=token.last_used_at,
        )


# ---------------------------------------------------------------------------
# Admin accounts
# ---------------------------------------------------------------------------


class AdminResponse(BaseModel):
    """Public view of an admin. Password and token hashes are never exposed."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    email: Optional[str]
    is_primary: bool
    source: str
    totp_enabled: bool
    token_prefix: Optional[str]
    created_at: Optional[datetime]
    last_login_at: Optional[datetime]

    @classmethod
    def from_admin(cls, admin: Admin) -> "AdminResponse":
        return cls(
            id=admin.id,
            username=admin.username,
            email=admin.email,
            is_primary=admin.is_primary,
            source=admin.source,
            totp_enabled=admin.totp_enabled,
            token_prefix=admin.token_prefix,
            created_at=admin.created_at,
            last_login_at=admin.last_login_at,
        )


class AdminApiTokenResponse(BaseModel):
    """The plaintext adm_ token, shown exactly once."""

    model_config = ConfigDict(frozen=True)

    token: str
    token_prefix: str


class InviteCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    suggested_username: Optional[str] = Field(default=None, max_length=255)
    ttl_hours: Optional[int] = Field(default=None, ge=1, le=720)


class InviteCreatedResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    token: str
    url: str


class CredentialsBody(BaseModel):
    """Shared shape of invite acceptance and first-run setup."""

    model_config = ConfigDict(str_strip_whitespace=True)

    token: str = Field(min_length=1)
    username: str = Field(min_length=1, max_length=255)
    email: Optional[str] = Field(default=None, max_length=255)
    password: str = Field(min_length=8, max_length=1024)


class InviteAccept(CredentialsBody):
    """Request body for POST /api/v1/admins/invites/accept."""


class SetupRequest(CredentialsBody):
    """Request body for POST /api/v1/admins/setup."""


class SetupStatusResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    setup_required: bool
    admin_count: int


class OnlineAdminsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    usernames: list[str]


# ---------------------------------------------------------------------------
# Federated login
# ---------------------------------------------------------------------------


class ProviderInfo(BaseModel):
    """One enabled identity provider, for rendering login buttons."""

    model_config = ConfigDict(frozen=True)

    type: str
    id: str
    name: str
