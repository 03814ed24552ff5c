"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for AdminGate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead,
or better, accept a Settings instance in the constructor so tests can inject
their own.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. admin_username -> ADMIN_USERNAME). List-of-model fields such as
      OIDC_PROVIDERS are parsed from JSON.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates a SECRET_KEY with a
      warning, production mode refuses to start without one.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. It signs the
       Starlette session cookie that carries the OIDC state value.

  [B1] ADMIN_PASSWORD is expected to be an Argon2id hash. A plaintext value is
       only accepted when ADMIN_PASSWORD_BOOTSTRAP=true is set explicitly; the
       auth manager logs a warning on every login that relies on it.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import re
import secrets
from datetime import timedelta
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("admingate.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'admingate.db'}"

DEFAULT_SESSION_DURATION = timedelta(days=30)

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhdw]?)\s*$", re.IGNORECASE)
_DURATION_UNITS = {
    "": 1,
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
    "w": 604800,
}


def parse_duration(value: str | int | None, default: timedelta = DEFAULT_SESSION_DURATION) -> timedelta:
    """Parse a compact duration such as "30d", "24h", "45m", "90s" or "3600".

    Bare integers are seconds. Anything unparsable, zero or negative falls back
    to `default` with a warning rather than failing startup -- a typo in the
    session duration must not take the admin panel offline.
    """
    if value is None or value == "":
        return default
    if isinstance(value, int):
        seconds = value
    else:
        match = _DURATION_RE.match(value)
        if match is None:
            logger.warning("Unparsable duration %r -- using default %s", value, default)
            return default
        seconds = int(match.group(1)) * _DURATION_UNITS[match.group(2).lower()]
    if seconds <= 0:
        logger.warning("Non-positive duration %r -- using default %s", value, default)
        return default
    return timedelta(seconds=seconds)


# ---------------------------------------------------------------------------
# Federated provider configuration
# ---------------------------------------------------------------------------


class OIDCProviderConfig(BaseModel):
    """One OpenID Connect identity provider (Keycloak, Authentik, Azure AD, ...)."""

    id: str
    name: str = ""
    enabled: bool = False
    issuer: str = ""
    client_id: str = ""
    client_secret: str = ""
    redirect_url: str = ""
    scopes: list[str] = Field(default_factory=lambda: ["openid", "email", "profile", "groups"])
    admin_groups: list[str] = Field(default_factory=list)


class LDAPProviderConfig(BaseModel):
    """One LDAP directory. Only the group allowlist is consumed by this service."""

    id: str
    name: str = ""
    enabled: bool = False
    admin_groups: list[str] = Field(default_factory=list)


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. Tests usually construct
    Settings(...) directly with keyword overrides.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL
    admin_path: str = "admin"
    base_url: str = "http://localhost:8000"
    ssl_enabled: bool = False
    allowed_hosts: list[str] = Field(default_factory=lambda: ["localhost", "127.0.0.1", "*.localhost"])
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost", "http://127.0.0.1"])

    # ------------------------------------------------------------------
    # Static administrator identity
    # ------------------------------------------------------------------

    admin_username: str = ""
    admin_password: str = ""  # Argon2id encoding; plaintext only in bootstrap mode [B1]
    admin_api_token: str = ""
    admin_password_bootstrap: bool = False

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    admin_session_cookie_name: str = "admin_session"
    admin_session_duration: str = "30d"
    session_cookie_secure: str = "auto"  # "auto" follows ssl_enabled
    session_cookie_path: str = "/"
    cluster_sessions: bool = False
    session_lookup_timeout_seconds: float = 2.0
    cleanup_interval_seconds: int = 300

    # ------------------------------------------------------------------
    # CSRF (double-submit cookie)
    # ------------------------------------------------------------------

    csrf_enabled: bool = True
    csrf_cookie_name: str = "csrf_token"
    csrf_header_name: str = "X-CSRF-Token"
    csrf_field_name: str = "csrf_token"

    # ------------------------------------------------------------------
    # Invites and first-run setup
    # ------------------------------------------------------------------

    invite_ttl_hours: int = 168
    setup_token_ttl_minutes: int = 60

    # ------------------------------------------------------------------
    # Federated identity providers (JSON lists in the environment)
    # ------------------------------------------------------------------

    oidc_providers: list[OIDCProviderConfig] = Field(default_factory=list)
    ldap_providers: list[LDAPProviderConfig] = Field(default_factory=list)

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "5/15minutes"

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def session_duration(self) -> timedelta:
        return parse_duration(self.admin_session_duration)

    @property
    def cookie_secure(self) -> bool:
        """Resolve SESSION_COOKIE_SECURE: explicit true/false wins, otherwise follow TLS."""
        value = self.session_cookie_secure.strip().lower()
        if value in ("true", "yes", "1"):
            return True
        if value in ("false", "no", "0"):
            return False
        return self.ssl_enabled

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M6].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
        Production mode: refuse to start if SECRET_KEY is missing.
        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "OIDC login state will not survive restarts."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
