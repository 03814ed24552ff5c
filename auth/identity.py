"""
auth/identity.py -- One authentication interface, several identity sources.

Pattern: Strategy + Composite.
Each Authenticator owns one kind of identity and answers three questions:
  authenticate(identifier, password)  -- interactive login
  authenticate_token(token)            -- bearer credential
  resolve_subject(subject)             -- who does this session belong to?

  StaticCredentialAuthenticator   ADMIN_USERNAME / ADMIN_PASSWORD and the
                                  in-memory ephemeral tokens (AuthManager)
  AdminStoreAuthenticator         persistent admins and their adm_ tokens
                                  (AdminService)
  ExternalIdentityAuthenticator   federated sessions minted by the SSO
                                  callback (ExternalAuthService cache)

CompositeAuthenticator asks each in order and returns the first Principal.
Route code depends on the composite only, so "static or database?" is never
branched inline.

Session subjects:
  A session's admin_username is the subject string. Local logins use the
  plain username; SSO logins use "<type>:<provider>:<external id>" so the
  federated identity cannot collide with a local account. The static admin
  is consulted first, so a persistent admin sharing ADMIN_USERNAME is
  shadowed for session resolution. A local admin whose credentials were reset
  by the operator (empty password hash) resolves to nobody until setup gives
  it a new password, so sessions held from before the reset stop working.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from auth.admin_service import AdminService
from auth.external import PROVIDER_LDAP, PROVIDER_OIDC, ExternalAuthService
from auth.manager import CONFIG_TOKEN_NAME, WILDCARD_PERMISSION, AuthManager
from auth.models import SOURCE_LOCAL, Admin
from core.config import Settings

METHOD_SESSION = "session"
METHOD_TOKEN = "token"
METHOD_ADMIN_TOKEN = "admin_token"

SOURCE_CONFIG = "config"


@dataclass(frozen=True)
class Principal:
    """The resolved identity behind a request.

    admin_id is None for the static config admin, ephemeral tokens and
    federated users; only persistent admins may manage other admins.
    """

    username: str
    method: str
    admin_id: int | None = None
    is_primary: bool = False
    source: str = SOURCE_CONFIG
    permissions: tuple[str, ...] = (WILDCARD_PERMISSION,)

    @property
    def is_persistent_admin(self) -> bool:
        return self.admin_id is not None

    def has_permission(self, permission: str) -> bool:
        return WILDCARD_PERMISSION in self.permissions or permission in self.permissions


def external_subject(provider_type: str, provider_id: str, external_id: str) -> str:
    return f"{provider_type}:{provider_id}:{external_id}"


class Authenticator(Protocol):
    def authenticate(self, identifier: str, password: str) -> Principal | None: ...

    def authenticate_token(self, token: str) -> Principal | None: ...

    def resolve_subject(self, subject: str) -> Principal | None: ...


class StaticCredentialAuthenticator:
    def __init__(self, manager: AuthManager, settings: Settings) -> None:
        self._manager = manager
        self._settings = settings

    def _principal(self, method: str) -> Principal:
        return Principal(username=self._settings.admin_username, method=method)

    def authenticate(self, identifier: str, password: str) -> Principal | None:
        if self._manager.authenticate(identifier, password):
            return self._principal(METHOD_SESSION)
        return None

    def authenticate_token(self, token: str) -> Principal | None:
        record = self._manager.validate_api_token(token)
        if record is None:
            return None
        if record.name == CONFIG_TOKEN_NAME:
            return self._principal(METHOD_TOKEN)
        return Principal(
            username=f"token:{record.name}",
            method=METHOD_TOKEN,
            permissions=tuple(record.permissions),
        )

    def resolve_subject(self, subject: str) -> Principal | None:
        configured = self._settings.admin_username
        if configured and subject == configured:
            return self._principal(METHOD_SESSION)
        return None


class AdminStoreAuthenticator:
    def __init__(self, admin_service: AdminService) -> None:
        self._admins = admin_service

    @staticmethod
    def _principal(admin: Admin, method: str) -> Principal:
        return Principal(
            username=admin.username,
            method=method,
            admin_id=admin.id,
            is_primary=admin.is_primary,
            source=admin.source,
        )

    def authenticate(self, identifier: str, password: str) -> Principal | None:
        admin = self._admins.authenticate_admin(identifier, password)
        return self._principal(admin, METHOD_SESSION) if admin is not None else None

    def authenticate_token(self, token: str) -> Principal | None:
        admin = self._admins.validate_api_token(token)
        return self._principal(admin, METHOD_ADMIN_TOKEN) if admin is not None else None

    def resolve_subject(self, subject: str) -> Principal | None:
        admin = self._admins.get_admin_by_username(subject)
        if admin is None:
            return None
        if admin.source == SOURCE_LOCAL and not admin.password_hash:
            return None
        return self._principal(admin, METHOD_SESSION)


class ExternalIdentityAuthenticator:
    """Resolves SSO session subjects against the cached federated identity.

    Federated users never log in with a password here, and have no bearer
    tokens, so only resolve_subject() can succeed.
    """

    def __init__(self, external: ExternalAuthService) -> None:
        self._external = external

    def authenticate(self, identifier: str, password: str) -> Principal | None:
        return None

    def authenticate_token(self, token: str) -> Principal | None:
        return None

    def resolve_subject(self, subject: str) -> Principal | None:
        provider_type, sep, rest = subject.partition(":")
        if not sep or provider_type not in (PROVIDER_OIDC, PROVIDER_LDAP):
            return None
        provider_id, sep, external_id = rest.partition(":")
        if not sep or not provider_id or not external_id:
            return None
        record = self._external.get_cached_external_admin(provider_type, provider_id, external_id)
        if record is None:
            return None
        return Principal(username=record.username, method=METHOD_SESSION, source=provider_id)


class CompositeAuthenticator:
    def __init__(self, *authenticators: Authenticator) -> None:
        self._authenticators = authenticators

    def authenticate(self, identifier: str, password: str) -> Principal | None:
        for authenticator in self._authenticators:
            principal = authenticator.authenticate(identifier, password)
            if principal is not None:
                return principal
        return None

    def authenticate_token(self, token: str) -> Principal | None:
        if not token:
            return None
        for authenticator in self._authenticators:
            principal = authenticator.authenticate_token(token)
            if principal is not None:
                return principal
        return None

    def resolve_subject(self, subject: str) -> Principal | None:
        if not subject:
            return None
        for authenticator in self._authenticators:
            principal = authenticator.resolve_subject(subject)
            if principal is not None:
                return principal
        return None
