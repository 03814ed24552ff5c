"""
auth/admin_service.py -- Persistent multi-administrator lifecycle.

Hierarchy:
  Exactly one primary admin exists once any admin exists. The primary can
  view and modify every admin and cannot be deleted. Secondary admins can
  only view and modify themselves. The first admin ever created is the
  primary, whatever the caller asked for.

Identity normalization:
  Usernames and emails are stripped and lower-cased before every lookup and
  every write, so "Alice" and "ALICE@TEST.COM" resolve to the same record.
  An empty email is stored as NULL.

Uniqueness [M1]:
  A pre-check gives a precise DuplicateIdentityError for the common case; the
  UNIQUE constraints (and the partial unique index on is_primary) catch the
  concurrent insert that slips past it, and IntegrityError is translated to
  the same error type.

Single-use tokens:
  Invite and setup tokens are random, stored only as SHA-256 hashes, and
  claimed with a conditional UPDATE so a token can be consumed once. Every
  failure mode (unknown, used, expired) raises the same
  InvalidOrExpiredTokenError.

Per-admin API tokens:
  "adm_" + 48 hex chars. The full SHA-256 hash and the first 12 characters
  are stored; lookups narrow by prefix then compare hashes in constant time.
  The plaintext is returned exactly once.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError

from auth.errors import (
    DuplicateIdentityError,
    InvalidOrExpiredTokenError,
    PrimaryAdminExistsError,
    PrimaryAdminProtectedError,
)
from auth.manager import utcnow
from auth.models import SOURCE_LOCAL, Admin, Invite
from auth.passwords import DUMMY_HASH, hash_password, verify_password
from auth.store import AdminStore
from auth.tokens import constant_time_equals, hash_token, random_token

logger = logging.getLogger("admingate.auth.admins")

API_TOKEN_PREFIX = "adm_"
API_TOKEN_PREFIX_LEN = 12
DEFAULT_INVITE_TTL = timedelta(days=7)
DEFAULT_SETUP_TOKEN_TTL = timedelta(hours=1)


def _normalize(value: str | None) -> str:
    return (value or "").strip().lower()


class AdminService:
    """CRUD, authentication and onboarding for persistent admin accounts.

    Holds no in-process locks. Every method is a short-lived interaction with
    the AdminStore.
    """

    def __init__(
        self,
        store: AdminStore,
        clock: Callable[[], datetime] = utcnow,
        invite_ttl: timedelta = DEFAULT_INVITE_TTL,
        setup_token_ttl: timedelta = DEFAULT_SETUP_TOKEN_TTL,
    ) -> None:
        self._store = store
        self._clock = clock
        self._invite_ttl = invite_ttl
        self._setup_token_ttl = setup_token_ttl

    # ------------------------------------------------------------------
    # Creation and lookup
    # ------------------------------------------------------------------

    def create_admin(self, username: str, email: str | None, password: str, is_primary: bool = False) -> Admin:
        """Create a local admin.

        Raises ValueError for an empty username or password,
        DuplicateIdentityError on a username/email collision, and
        PrimaryAdminExistsError when is_primary is requested but a primary
        already exists.
        """
        admin = self._build_admin(username, email, password)
        if self._store.get_primary_admin() is None:
            admin.is_primary = True
        elif is_primary:
            raise PrimaryAdminExistsError()
        try:
            return self._insert(admin)
        except PrimaryAdminExistsError:
            # Lost a race for "first admin"; fall back to secondary unless
            # the caller insisted on primary.
            if is_primary:
                raise
            admin.is_primary = False
            return self._insert(admin)

    def get_admin_by_id(self, admin_id: int) -> Admin | None:
        return self._store.get_admin_by_id(admin_id)

    def get_admin_by_username(self, username: str) -> Admin | None:
        normalized = _normalize(username)
        if not normalized:
            return None
        return self._store.get_admin_by_username(normalized)

    def get_admin_by_email(self, email: str) -> Admin | None:
        normalized = _normalize(email)
        if not normalized:
            return None
        return self._store.get_admin_by_email(normalized)

    def get_total_admin_count(self) -> int:
        return self._store.count_admins()

    def has_any_admin(self) -> bool:
        return self._store.count_admins() > 0

    def get_primary_admin(self) -> Admin | None:
        return self._store.get_primary_admin()

    def get_admins_for_admin(self, requesting_id: int) -> list[Admin]:
        """Admins visible to `requesting_id`: everyone for the primary, self otherwise."""
        requester = self._store.get_admin_by_id(requesting_id)
        if requester is None:
            return []
        if requester.is_primary:
            return self._store.list_admins()
        return [requester]

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def authenticate_admin(self, identifier: str, password: str) -> Admin | None:
        """Resolve `identifier` (username or email) and verify the password.

        Returns None for an unknown identifier and for a wrong password alike.
        An Argon2 verification always runs, against a dummy hash when there
        is no account, so timing does not reveal which case occurred [C1].
        """
        admin = self.get_admin_by_username(identifier)
        if admin is None and "@" in (identifier or ""):
            admin = self.get_admin_by_email(identifier)
        if admin is None or not admin.password_hash:
            verify_password(password or "x", DUMMY_HASH)
            return None
        if not verify_password(password, admin.password_hash):
            return None
        now = self._clock()
        self._store.update_admin(admin.id, last_login_at=now)
        admin.last_login_at = now
        return admin

    # ------------------------------------------------------------------
    # Deletion and permissions
    # ------------------------------------------------------------------

    def delete_admin(self, target_id: int, acting_id: int) -> bool:
        """Delete a secondary admin. Authorization is the caller's job.

        Raises PrimaryAdminProtectedError for the primary. Returns False when
        the target does not exist.
        """
        target = self._store.get_admin_by_id(target_id)
        if target is None:
            return False
        if target.is_primary:
            logger.warning("Admin %s attempted to delete the primary admin", acting_id)
            raise PrimaryAdminProtectedError()
        deleted = self._store.delete_admin(target_id)
        if deleted:
            logger.info("Admin %s (%s) deleted by admin %s", target_id, target.username, acting_id)
        return deleted

    def can_admin_view_admin(self, viewer_id: int, target_id: int) -> bool:
        if viewer_id == target_id:
            return True
        viewer = self._store.get_admin_by_id(viewer_id)
        return viewer is not None and viewer.is_primary

    def can_admin_modify_admin(self, viewer_id: int, target_id: int) -> bool:
        return self.can_admin_view_admin(viewer_id, target_id)

    # ------------------------------------------------------------------
    # Per-admin API tokens
    # ------------------------------------------------------------------

    def generate_api_token(self, admin_id: int) -> str:
        """Issue a new API token for `admin_id`, replacing any previous one.

        Raises LookupError when the admin does not exist.
        """
        token = API_TOKEN_PREFIX + random_token(24)
        updated = self._store.update_admin(
            admin_id,
            token_hash=hash_token(token),
            token_prefix=token[:API_TOKEN_PREFIX_LEN],
        )
        if not updated:
            raise LookupError(f"admin {admin_id} not found")
        logger.info("API token generated for admin %s", admin_id)
        return token

    def validate_api_token(self, token: str) -> Admin | None:
        if not token or not token.startswith(API_TOKEN_PREFIX) or len(token) <= API_TOKEN_PREFIX_LEN:
            return None
        token_hash = hash_token(token)
        for admin in self._store.get_admins_by_token_prefix(token[:API_TOKEN_PREFIX_LEN]):
            if admin.token_hash and constant_time_equals(admin.token_hash, token_hash):
                return admin
        return None

    def revoke_api_token(self, admin_id: int) -> bool:
        admin = self._store.get_admin_by_id(admin_id)
        if admin is None or admin.token_hash is None:
            return False
        return self._store.update_admin(admin_id, token_hash=None, token_prefix=None)

    # ------------------------------------------------------------------
    # First-run setup token
    # ------------------------------------------------------------------

    def create_setup_token(self) -> str:
        """Create the installation setup token, replacing any existing one."""
        token = random_token(32)
        self._store.replace_setup_token(hash_token(token), self._clock() + self._setup_token_ttl)
        logger.info("Setup token created (valid for %s)", self._setup_token_ttl)
        return token

    def validate_setup_token(self, token: str) -> bool:
        if not token:
            return False
        record = self._store.get_setup_token()
        if record is None or record.used_at is not None:
            return False
        if self._clock() > record.expires_at:
            return False
        return constant_time_equals(record.token_hash, hash_token(token))

    def use_setup_token(self, token: str) -> None:
        """Consume the setup token. A second use raises like an invalid one."""
        if not token or not self._store.claim_setup_token(hash_token(token), self._clock()):
            raise InvalidOrExpiredTokenError()

    def complete_setup(self, token: str, username: str, email: str | None, password: str) -> Admin:
        """Consume the setup token and create the primary admin in one transaction.

        After reset_primary_admin_credentials() the primary row still exists
        with an empty password; setup then re-credentials that row instead of
        creating a second primary.
        """
        if not token:
            raise InvalidOrExpiredTokenError()
        admin = self._build_admin(username, email, password)
        admin.is_primary = True
        replace_id = None
        primary = self._store.get_primary_admin()
        if primary is not None:
            if primary.password_hash:
                raise PrimaryAdminExistsError()
            replace_id = primary.id
        self._precheck_unique(admin, ignore_id=replace_id)
        now = self._clock()
        try:
            admin_id = self._store.complete_setup(hash_token(token), now, admin, replace_id=replace_id)
        except IntegrityError as exc:
            raise _translate_integrity_error(exc) from exc
        if admin_id is None:
            raise InvalidOrExpiredTokenError()
        logger.info("First-run setup completed; primary admin %r created", admin.username)
        return self._store.get_admin_by_id(admin_id)

    # ------------------------------------------------------------------
    # Invites
    # ------------------------------------------------------------------

    def create_invite(
        self,
        creator_id: int,
        suggested_username: str | None = None,
        ttl: timedelta | None = None,
    ) -> str:
        """Create a single-use invite and return its plaintext token."""
        now = self._clock()
        token = random_token(32)
        self._store.insert_invite(
            Invite(
                id=str(uuid.uuid4()),
                token_hash=hash_token(token),
                suggested_username=_normalize(suggested_username) or None,
                created_by=creator_id,
                expires_at=now + (ttl or self._invite_ttl),
                created_at=now,
            )
        )
        logger.info("Invite created by admin %s", creator_id)
        return token

    def validate_invite(self, token: str) -> Invite | None:
        """Return the invite if it exists, is unused and unexpired; None otherwise."""
        if not token:
            return None
        invite = self._store.get_invite_by_token_hash(hash_token(token))
        if invite is None or invite.used_at is not None:
            return None
        if self._clock() > invite.expires_at:
            return None
        return invite

    @staticmethod
    def build_invite_url(base_url: str, token: str, admin_path: str = "admin") -> str:
        return f"{base_url.rstrip('/')}/{admin_path.strip('/')}/invite/{token}"

    def accept_invite(self, token: str, username: str, email: str | None, password: str) -> Admin:
        """Redeem an invite: claim it and create a secondary local admin atomically."""
        if not token:
            raise InvalidOrExpiredTokenError()
        admin = self._build_admin(username, email, password)
        if self.validate_invite(token) is None:
            raise InvalidOrExpiredTokenError()
        self._precheck_unique(admin)
        try:
            admin_id = self._store.accept_invite(hash_token(token), self._clock(), admin)
        except IntegrityError as exc:
            raise _translate_integrity_error(exc) from exc
        if admin_id is None:
            raise InvalidOrExpiredTokenError()
        logger.info("Invite accepted; secondary admin %r created", admin.username)
        return self._store.get_admin_by_id(admin_id)

    # ------------------------------------------------------------------
    # Operator recovery
    # ------------------------------------------------------------------

    def reset_primary_admin_credentials(self) -> Admin | None:
        """Clear the primary admin's password and API token.

        The account keeps its id and username; the operator then issues a
        setup token to set a new password. Returns None when there is no
        primary.
        """
        primary = self._store.get_primary_admin()
        if primary is None:
            return None
        self._store.update_admin(primary.id, password_hash="", token_hash=None, token_prefix=None)
        logger.warning("Primary admin %r credentials reset by operator", primary.username)
        return self._store.get_admin_by_id(primary.id)

    def set_password(self, admin_id: int, password: str) -> bool:
        if not password:
            raise ValueError("password must not be empty")
        return self._store.update_admin(admin_id, password_hash=hash_password(password))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _build_admin(self, username: str, email: str | None, password: str) -> Admin:
        normalized_username = _normalize(username)
        if not normalized_username:
            raise ValueError("username must not be empty")
        if not password:
            raise ValueError("password must not be empty")
        return Admin(
            username=normalized_username,
            email=_normalize(email) or None,
            password_hash=hash_password(password),
            source=SOURCE_LOCAL,
        )

    def _precheck_unique(self, admin: Admin, ignore_id: int | None = None) -> None:
        existing = self._store.get_admin_by_username(admin.username)
        if existing is not None and existing.id != ignore_id:
            raise DuplicateIdentityError("username")
        if admin.email:
            existing = self._store.get_admin_by_email(admin.email)
            if existing is not None and existing.id != ignore_id:
                raise DuplicateIdentityError("email")

    def _insert(self, admin: Admin) -> Admin:
        self._precheck_unique(admin)
        try:
            admin.id = self._store.insert_admin(admin)
        except IntegrityError as exc:
            raise _translate_integrity_error(exc) from exc
        logger.info("Admin %r created (primary=%s)", admin.username, admin.is_primary)
        return self._store.get_admin_by_id(admin.id)


# Constraint names (PostgreSQL) and table.column pairs (SQLite reports
# "UNIQUE constraint failed: admin_credentials.email") for each violation.
_PRIMARY_MARKERS = ("uq_admin_credentials_primary", "admin_credentials.is_primary")
_EMAIL_MARKERS = ("uq_admin_credentials_email", "admin_credentials.email")


def _translate_integrity_error(exc: IntegrityError) -> Exception:
    """Map a UNIQUE violation to the domain error it represents.

    Only the constraint identity is inspected, never the offending value, so
    an email such as "x@primary.io" cannot be mistaken for the primary index.
    """
    constraint = getattr(getattr(exc.orig, "diag", None), "constraint_name", None)
    if constraint:
        subject = constraint.lower()
    else:
        # First line only: PostgreSQL appends a DETAIL line quoting the value.
        subject = str(exc.orig).partition("\n")[0].lower()
    if any(marker in subject for marker in _PRIMARY_MARKERS):
        return PrimaryAdminExistsError()
    if any(marker in subject for marker in _EMAIL_MARKERS):
        return DuplicateIdentityError("email")
    return DuplicateIdentityError("username")
