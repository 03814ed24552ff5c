"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; the manager, services and stores do the work.

Timestamps are timezone-aware UTC datetimes. The store converts them to ISO
8601 strings at the persistence boundary.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

SOURCE_LOCAL = "local"


@dataclass
class Session:
    """An authenticated admin browser session.

    `id` is the opaque cookie value. It is held in plaintext only in process
    memory; the clustered session table stores its SHA-256 hash.
    """

    id: str
    admin_username: str
    created_at: datetime
    expires_at: datetime
    ip: str = ""
    user_agent: str = ""


@dataclass
class EphemeralAPIToken:
    """A process-local bearer token minted from the admin panel.

    Never persisted. The token named "config" is synthesized from
    ADMIN_API_TOKEN on every validation and carries the wildcard permission.
    """

    token: str
    name: str
    created_at: datetime
    expires_at: datetime
    description: str = ""
    permissions: list[str] = field(default_factory=list)
    last_used_at: datetime | None = None


@dataclass
class Admin:
    """A persistent administrator account.

    username and email are stored lower-cased, which is what makes the UNIQUE
    constraints case-insensitive. password_hash is "" for federated admins and
    after an operator credential reset. token_hash / token_prefix describe
    the admin's own persistent API token, if one has been generated.
    """

    username: str
    id: int | None = None
    email: str | None = None
    password_hash: str = ""
    is_primary: bool = False
    source: str = SOURCE_LOCAL  # "local" or a federated provider id
    external_id: str | None = None
    totp_enabled: bool = False
    token_hash: str | None = None
    token_prefix: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_login_at: datetime | None = None


@dataclass
class Invite:
    """Single-use invitation for a new secondary admin."""

    id: str
    token_hash: str
    created_by: int
    expires_at: datetime
    suggested_username: str | None = None
    used_at: datetime | None = None
    used_by: int | None = None
    created_at: datetime | None = None


@dataclass
class SetupToken:
    """Singleton first-run bootstrap credential."""

    token_hash: str
    expires_at: datetime
    used_at: datetime | None = None


@dataclass
class ExternalAdmin:
    """Cached federated identity and its last-known admin elevation."""

    provider_type: str  # "oidc" or "ldap"
    provider_id: str
    external_id: str
    username: str
    cached_at: datetime
    id: int | None = None
    email: str | None = None
    groups: list[str] = field(default_factory=list)
    is_admin: bool = False
    last_login_at: datetime | None = None
