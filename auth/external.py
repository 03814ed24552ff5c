"""
auth/external.py -- Federated login: OIDC/LDAP group mapping and OIDC flow.

Providers come from Settings.oidc_providers / Settings.ldap_providers (JSON in
the environment). A federated user is elevated to admin when any of their
group claims matches the provider's admin_groups allowlist. The comparison
is case-insensitive ("Admin-Group" == "admin-group").

OIDC authorization code flow (Authlib requests client):
  1. get_oidc_auth_url() -- {issuer}/authorize with client_id, redirect_uri,
     scope, state and response_type=code. The caller stores `state` in the
     signed Starlette session and compares it on the callback.
  2. exchange_oidc_code() -- POST {issuer}/token (client_secret_post), 30s.
  3. get_oidc_userinfo() -- GET {issuer}/userinfo with the access token.
  4. sync_external_admin() -- upsert the cached identity. A returning user
     who has left every admin group keeps the row but loses elevation; a new
     user outside the admin groups is rejected with NotAdminGroupError.

Security notes:
  Unknown or disabled providers never match: check_admin_group_membership()
  returns False rather than raising, so a stale provider id in a callback
  cannot elevate anyone.

  The cached elevation (get_cached_external_admin) is trusted for 24 hours
  only. Past that the user must complete a fresh login.

Layer rule: no imports from api/. May import core.config for Settings.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from authlib.integrations.requests_client import OAuth2Session

from auth.errors import NotAdminGroupError, ProviderDisabledError, UnknownProviderError
from auth.manager import utcnow
from auth.models import ExternalAdmin
from auth.store import AdminStore
from auth.tokens import generate_state_token
from core.config import LDAPProviderConfig, OIDCProviderConfig, Settings

logger = logging.getLogger("admingate.auth.external")

PROVIDER_OIDC = "oidc"
PROVIDER_LDAP = "ldap"
HTTP_TIMEOUT_SECONDS = 30
EXTERNAL_ADMIN_CACHE_TTL = timedelta(hours=24)


@dataclass
class OIDCUserInfo:
    """Claims from the provider's userinfo endpoint."""

    sub: str
    name: str = ""
    email: str = ""
    email_verified: bool = False
    groups: list[str] = field(default_factory=list)

    @classmethod
    def from_claims(cls, claims: dict) -> OIDCUserInfo:
        groups = claims.get("groups") or []
        if isinstance(groups, str):
            groups = [groups]
        return cls(
            sub=str(claims.get("sub", "")),
            name=claims.get("name") or claims.get("preferred_username") or "",
            email=claims.get("email") or "",
            email_verified=bool(claims.get("email_verified", False)),
            groups=[str(g) for g in groups],
        )

    @property
    def display_username(self) -> str:
        return self.name or self.email or self.sub


class ExternalAuthService:
    """Group-to-admin mapping and the OIDC round trip.

    The AdminStore is optional: without it the service still answers group
    membership and URL questions, but cannot sync or read cached identities.
    """

    def __init__(
        self,
        settings: Settings,
        store: AdminStore | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._settings = settings
        self._store = store
        self._clock = clock

    # ------------------------------------------------------------------
    # Provider lookup
    # ------------------------------------------------------------------

    def get_enabled_oidc_providers(self) -> list[OIDCProviderConfig]:
        return [p for p in self._settings.oidc_providers if p.enabled]

    def get_enabled_ldap_providers(self) -> list[LDAPProviderConfig]:
        return [p for p in self._settings.ldap_providers if p.enabled]

    def _find_provider(self, provider_type: str, provider_id: str) -> OIDCProviderConfig | LDAPProviderConfig | None:
        if provider_type == PROVIDER_OIDC:
            candidates = self._settings.oidc_providers
        elif provider_type == PROVIDER_LDAP:
            candidates = self._settings.ldap_providers
        else:
            return None
        for provider in candidates:
            if provider.id == provider_id:
                return provider
        return None

    def _require_oidc_provider(self, provider_id: str) -> OIDCProviderConfig:
        provider = self._find_provider(PROVIDER_OIDC, provider_id)
        if provider is None:
            raise UnknownProviderError(provider_id)
        if not provider.enabled:
            raise ProviderDisabledError(provider_id)
        return provider

    # ------------------------------------------------------------------
    # Group mapping
    # ------------------------------------------------------------------

    def check_admin_group_membership(self, provider_type: str, provider_id: str, groups: list[str]) -> bool:
        """True iff a user group matches the provider's admin-group allowlist.

        Unknown and disabled providers always return False.
        """
        provider = self._find_provider(provider_type, provider_id)
        if provider is None or not provider.enabled:
            return False
        allowed = {g.lower() for g in provider.admin_groups}
        return any(g.lower() in allowed for g in groups)

    # ------------------------------------------------------------------
    # OIDC flow
    # ------------------------------------------------------------------

    @staticmethod
    def generate_state_token() -> str:
        return generate_state_token()

    def get_oidc_auth_url(self, provider_id: str, state: str) -> str:
        """Build the provider's authorization URL for the code flow."""
        provider = self._require_oidc_provider(provider_id)
        client = self._oauth_session(provider)
        url, _ = client.create_authorization_url(f"{_issuer(provider)}/authorize", state=state)
        return url

    def exchange_oidc_code(self, provider_id: str, code: str) -> dict:
        """Exchange an authorization code for the provider's token response.

        Network and protocol failures (requests / Authlib errors) propagate.
        """
        provider = self._require_oidc_provider(provider_id)
        client = self._oauth_session(provider)
        token = client.fetch_token(
            f"{_issuer(provider)}/token",
            code=code,
            grant_type="authorization_code",
            timeout=HTTP_TIMEOUT_SECONDS,
        )
        return dict(token)

    def get_oidc_userinfo(self, provider_id: str, token: dict) -> OIDCUserInfo:
        provider = self._require_oidc_provider(provider_id)
        client = self._oauth_session(provider, token=token)
        resp = client.get(f"{_issuer(provider)}/userinfo", timeout=HTTP_TIMEOUT_SECONDS)
        resp.raise_for_status()
        return OIDCUserInfo.from_claims(resp.json())

    def _oauth_session(self, provider: OIDCProviderConfig, token: dict | None = None) -> OAuth2Session:
        return OAuth2Session(
            client_id=provider.client_id,
            client_secret=provider.client_secret,
            scope=" ".join(provider.scopes),
            redirect_uri=provider.redirect_url,
            token_endpoint_auth_method="client_secret_post",
            token=token,
        )

    # ------------------------------------------------------------------
    # Cached federated identities
    # ------------------------------------------------------------------

    def sync_external_admin(self, provider_type: str, provider_id: str, userinfo: OIDCUserInfo) -> ExternalAdmin:
        """Upsert the federated identity and its current elevation.

        Raises NotAdminGroupError for a first-time user outside the admin
        groups. A known user who left the groups is stored with is_admin=False.
        """
        store = self._require_store()
        is_admin = self.check_admin_group_membership(provider_type, provider_id, userinfo.groups)
        now = self._clock()
        existing = store.get_external_admin(provider_type, provider_id, userinfo.sub)

        if existing is None:
            if not is_admin:
                raise NotAdminGroupError()
            record = ExternalAdmin(
                provider_type=provider_type,
                provider_id=provider_id,
                external_id=userinfo.sub,
                username=userinfo.display_username,
                email=userinfo.email or None,
                groups=list(userinfo.groups),
                is_admin=True,
                cached_at=now,
                last_login_at=now,
            )
            logger.info("External admin %r registered via %s/%s", record.username, provider_type, provider_id)
            return store.upsert_external_admin(record)

        existing.username = userinfo.display_username
        existing.email = userinfo.email or None
        existing.groups = list(userinfo.groups)
        existing.cached_at = now
        if is_admin:
            existing.last_login_at = now
        elif existing.is_admin:
            logger.warning(
                "External admin %r no longer in admin groups of %s/%s -- elevation revoked",
                existing.username,
                provider_type,
                provider_id,
            )
        existing.is_admin = is_admin
        return store.upsert_external_admin(existing)

    def get_cached_external_admin(self, provider_type: str, provider_id: str, external_id: str) -> ExternalAdmin | None:
        """Return the cached identity if it is elevated and fresher than 24 hours."""
        record = self._require_store().get_external_admin(provider_type, provider_id, external_id)
        if record is None or not record.is_admin:
            return None
        if self._clock() - record.cached_at > EXTERNAL_ADMIN_CACHE_TTL:
            return None
        return record

    def _require_store(self) -> AdminStore:
        if self._store is None:
            raise RuntimeError("ExternalAuthService was created without an AdminStore")
        return self._store


def _issuer(provider: OIDCProviderConfig) -> str:
    return provider.issuer.rstrip("/")
