"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
AdminStore and SessionStore are the repositories; the _row_to_* functions are
the mappers. Services, the auth manager and route code never touch SQL
directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Tokens never reach the database in plaintext. Session ids, invite tokens,
  the setup token and admin API tokens are stored as SHA-256 hex digests
  (auth.tokens.hash_token); admin API tokens additionally keep a 12-char
  display/lookup prefix.

  Username and email are stored lower-cased by AdminService, so the plain
  UNIQUE constraints below are effectively case-insensitive. SQLite treats
  NULLs as distinct in UNIQUE constraints, which is exactly what an optional
  email needs. The constraints are named (uq_admin_credentials_*) so
  AdminService can map a violation to the field it hit.

  At most one primary admin: a partial unique index over is_primary WHERE
  is_primary = 1 backs the service-level check, so two concurrent "first
  admin" requests cannot both win.

Timestamps are stored as ISO 8601 UTC strings with microsecond precision.
The fixed width makes lexical comparison in SQL equal chronological order,
which the single-use claims (WHERE expires_at > :now) rely on.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    CheckConstraint,
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine

from auth.models import Admin, ExternalAdmin, Invite, Session, SetupToken
from auth.tokens import hash_token

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'admingate.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_admins = Table(
    "admin_credentials",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False),  # lower-cased
    Column("email", String(255)),  # lower-cased, NULL when absent
    Column("password_hash", Text, nullable=False, server_default=""),  # "" for federated admins
    Column("is_primary", Integer, nullable=False, server_default="0"),
    Column("source", String(64), nullable=False, server_default="local"),
    Column("external_id", Text),
    Column("totp_enabled", Integer, nullable=False, server_default="0"),
    Column("token_hash", String(64), unique=True),  # SHA-256 hex of the adm_ token
    Column("token_prefix", String(12)),  # first 12 chars, lookup narrowing + display
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("last_login_at", String(32)),
    UniqueConstraint("username", name="uq_admin_credentials_username"),
    UniqueConstraint("email", name="uq_admin_credentials_email"),
)

Index(
    "uq_admin_credentials_primary",
    _admins.c.is_primary,
    unique=True,
    sqlite_where=_admins.c.is_primary == 1,
    postgresql_where=_admins.c.is_primary == 1,
)
Index("ix_admin_credentials_token_prefix", _admins.c.token_prefix)

_invites = Table(
    "admin_invites",
    _metadata,
    Column("id", String(36), primary_key=True),  # uuid4
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("suggested_username", String(255)),
    Column("created_by", Integer, nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("used_at", String(32)),
    Column("used_by", Integer),
    Column("created_at", String(32), nullable=False),
)

_setup_token = Table(
    "setup_token",
    _metadata,
    Column("id", Integer, primary_key=True),
    Column("token_hash", String(64), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("used_at", String(32)),
    CheckConstraint("id = 1", name="ck_setup_token_singleton"),
)

_sessions = Table(
    "admin_sessions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("username", String(255), nullable=False),
    Column("ip", String(64), nullable=False, server_default=""),
    Column("user_agent", Text, nullable=False, server_default=""),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
)

Index("ix_admin_sessions_expires_at", _sessions.c.expires_at)

_external_admins = Table(
    "external_admins",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("provider_type", String(16), nullable=False),  # "oidc" or "ldap"
    Column("provider_id", String(64), nullable=False),
    Column("external_id", Text, nullable=False),
    Column("username", String(255), nullable=False),
    Column("email", String(255)),
    Column("groups_json", Text, nullable=False, server_default="[]"),
    Column("is_admin", Integer, nullable=False, server_default="0"),
    Column("cached_at", String(32), nullable=False),
    Column("last_login_at", String(32)),
    UniqueConstraint("provider_type", "provider_id", "external_id", name="uq_external_admins_identity"),
)


# ---------------------------------------------------------------------------
# Engine / WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    WAL (Write-Ahead Logging) allows readers to proceed without blocking
    during writes. Set per-connection because SQLite PRAGMAs are not
    inherited by new connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _make_engine(db_url: str) -> Engine:
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    _metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def to_iso(value: datetime | None) -> str | None:
    """Serialize an aware datetime to the fixed-width storage format."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Admin repository
# ---------------------------------------------------------------------------


class AdminStore:
    """Repository for Admin, Invite, SetupToken and ExternalAdmin records.

    Usage:
        store = AdminStore("sqlite:///admingate.db")
        admin_id = store.insert_admin(Admin(username="alice", password_hash=hash_password("s3cret")))
        admin = store.get_admin_by_username("alice")
        store.close()

    The store does no normalization and enforces no business rules beyond
    the schema constraints. IntegrityError propagates to AdminService, which
    translates it.
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        self.engine: Engine = _make_engine(db_url)

    # ------------------------------------------------------------------
    # Admin queries
    # ------------------------------------------------------------------

    def count_admins(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_admins)).scalar()
        return result or 0

    def get_admin_by_id(self, admin_id: int) -> Admin | None:
        with self.engine.connect() as conn:
            row = conn.execute(_admins.select().where(_admins.c.id == admin_id)).fetchone()
        return _row_to_admin(row) if row is not None else None

    def get_admin_by_username(self, username: str) -> Admin | None:
        """Exact match. Callers pass the already lower-cased username."""
        with self.engine.connect() as conn:
            row = conn.execute(_admins.select().where(_admins.c.username == username)).fetchone()
        return _row_to_admin(row) if row is not None else None

    def get_admin_by_email(self, email: str) -> Admin | None:
        with self.engine.connect() as conn:
            row = conn.execute(_admins.select().where(_admins.c.email == email)).fetchone()
        return _row_to_admin(row) if row is not None else None

    def get_primary_admin(self) -> Admin | None:
        with self.engine.connect() as conn:
            row = conn.execute(_admins.select().where(_admins.c.is_primary == 1)).fetchone()
        return _row_to_admin(row) if row is not None else None

    def get_admins_by_token_prefix(self, prefix: str) -> list[Admin]:
        """Return every admin whose API token starts with `prefix` (indexed)."""
        with self.engine.connect() as conn:
            rows = conn.execute(_admins.select().where(_admins.c.token_prefix == prefix)).fetchall()
        return [_row_to_admin(r) for r in rows]

    def list_admins(self) -> list[Admin]:
        """Return all admins, primary first, then in creation order."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _admins.select().order_by(_admins.c.is_primary.desc(), _admins.c.created_at, _admins.c.id)
            ).fetchall()
        return [_row_to_admin(r) for r in rows]

    def insert_admin(self, admin: Admin) -> int:
        """Insert a new admin and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError on a username, email, token or
        primary-index collision.
        """
        with self.engine.connect() as conn:
            admin_id = _insert_admin(conn, admin)
            conn.commit()
        return admin_id

    def update_admin(self, admin_id: int, **fields) -> bool:
        """Update columns on an existing admin. Datetime values are serialized.

        Returns True if a row was updated, False if admin_id was not found.
        """
        values = {k: (to_iso(v) if isinstance(v, datetime) else v) for k, v in fields.items()}
        if "is_primary" in values:
            values["is_primary"] = 1 if values["is_primary"] else 0
        if "totp_enabled" in values:
            values["totp_enabled"] = 1 if values["totp_enabled"] else 0
        values.setdefault("updated_at", to_iso(_now()))
        with self.engine.connect() as conn:
            result = conn.execute(_admins.update().where(_admins.c.id == admin_id).values(**values))
            conn.commit()
        return result.rowcount > 0

    def delete_admin(self, admin_id: int) -> bool:
        """Permanently delete an admin record. Returns True if deleted.

        The primary-protection check is the caller's responsibility.
        """
        with self.engine.connect() as conn:
            result = conn.execute(_admins.delete().where(_admins.c.id == admin_id))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Invites
    # ------------------------------------------------------------------

    def insert_invite(self, invite: Invite) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _invites.insert().values(
                    id=invite.id,
                    token_hash=invite.token_hash,
                    suggested_username=invite.suggested_username,
                    created_by=invite.created_by,
                    expires_at=to_iso(invite.expires_at),
                    created_at=to_iso(invite.created_at or _now()),
                )
            )
            conn.commit()

    def get_invite_by_token_hash(self, token_hash: str) -> Invite | None:
        with self.engine.connect() as conn:
            row = conn.execute(_invites.select().where(_invites.c.token_hash == token_hash)).fetchone()
        return _row_to_invite(row) if row is not None else None

    def accept_invite(self, token_hash: str, now: datetime, admin: Admin) -> int | None:
        """Claim an invite and create its admin in one transaction.

        The claim is a conditional UPDATE (unused AND unexpired), so of two
        concurrent accepts exactly one sees rowcount == 1. Returns the new
        admin's id, or None when the invite is unknown, used or expired. An
        IntegrityError on the admin insert rolls the claim back with it.
        """
        now_iso = to_iso(now)
        with self.engine.begin() as conn:
            claimed = conn.execute(
                _invites.update()
                .where(
                    (_invites.c.token_hash == token_hash)
                    & _invites.c.used_at.is_(None)
                    & (_invites.c.expires_at > now_iso)
                )
                .values(used_at=now_iso)
            )
            if claimed.rowcount != 1:
                return None
            admin_id = _insert_admin(conn, admin)
            conn.execute(_invites.update().where(_invites.c.token_hash == token_hash).values(used_by=admin_id))
        return admin_id

    # ------------------------------------------------------------------
    # Setup token (single row, id = 1)
    # ------------------------------------------------------------------

    def replace_setup_token(self, token_hash: str, expires_at: datetime) -> None:
        """Install a fresh setup token, discarding any previous one."""
        with self.engine.begin() as conn:
            conn.execute(_setup_token.delete())
            conn.execute(_setup_token.insert().values(id=1, token_hash=token_hash, expires_at=to_iso(expires_at)))

    def get_setup_token(self) -> SetupToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(_setup_token.select().where(_setup_token.c.id == 1)).fetchone()
        return _row_to_setup_token(row) if row is not None else None

    def claim_setup_token(self, token_hash: str, now: datetime) -> bool:
        """Mark the setup token used. False if it does not match, is used or expired."""
        with self.engine.begin() as conn:
            return _claim_setup_token(conn, token_hash, now)

    def complete_setup(self, token_hash: str, now: datetime, admin: Admin, replace_id: int | None = None) -> int | None:
        """Consume the setup token and create the primary admin atomically.

        With `replace_id`, the existing (credential-reset) primary row is
        given the new identity and password instead of inserting a new row.
        """
        with self.engine.begin() as conn:
            if not _claim_setup_token(conn, token_hash, now):
                return None
            if replace_id is None:
                return _insert_admin(conn, admin)
            conn.execute(
                _admins.update()
                .where(_admins.c.id == replace_id)
                .values(
                    username=admin.username,
                    email=admin.email,
                    password_hash=admin.password_hash,
                    updated_at=to_iso(now),
                )
            )
            return replace_id

    # ------------------------------------------------------------------
    # External (federated) admins
    # ------------------------------------------------------------------

    def get_external_admin(self, provider_type: str, provider_id: str, external_id: str) -> ExternalAdmin | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _external_admins.select().where(
                    (_external_admins.c.provider_type == provider_type)
                    & (_external_admins.c.provider_id == provider_id)
                    & (_external_admins.c.external_id == external_id)
                )
            ).fetchone()
        return _row_to_external_admin(row) if row is not None else None

    def upsert_external_admin(self, record: ExternalAdmin) -> ExternalAdmin:
        """Insert or update the cached identity keyed by (type, provider, external id)."""
        values = dict(
            username=record.username,
            email=record.email,
            groups_json=json.dumps(record.groups),
            is_admin=1 if record.is_admin else 0,
            cached_at=to_iso(record.cached_at),
            last_login_at=to_iso(record.last_login_at),
        )
        key = (
            (_external_admins.c.provider_type == record.provider_type)
            & (_external_admins.c.provider_id == record.provider_id)
            & (_external_admins.c.external_id == record.external_id)
        )
        with self.engine.begin() as conn:
            existing = conn.execute(select(_external_admins.c.id).where(key)).fetchone()
            if existing is None:
                result = conn.execute(
                    _external_admins.insert().values(
                        provider_type=record.provider_type,
                        provider_id=record.provider_id,
                        external_id=record.external_id,
                        **values,
                    )
                )
                record.id = result.inserted_primary_key[0]
            else:
                conn.execute(_external_admins.update().where(_external_admins.c.id == existing.id).values(**values))
                record.id = existing.id
        return record

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Session repository (clustered deployments)
# ---------------------------------------------------------------------------


class SessionStore:
    """Shared session table so any node can resolve a session cookie.

    Takes and returns plaintext session ids; the hashing happens here, at the
    persistence boundary, so the raw cookie value never reaches the database.
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        self.engine: Engine = _make_engine(db_url)

    def save_session(self, session: Session) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _sessions.insert().values(
                    token_hash=hash_token(session.id),
                    username=session.admin_username,
                    ip=session.ip,
                    user_agent=session.user_agent,
                    created_at=to_iso(session.created_at),
                    expires_at=to_iso(session.expires_at),
                )
            )
            conn.commit()

    def get_session(self, session_id: str) -> Session | None:
        """Return the stored session regardless of expiry. The caller checks it."""
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.token_hash == hash_token(session_id))).fetchone()
        return _row_to_session(row, session_id) if row is not None else None

    def update_expiry(self, session_id: str, expires_at: datetime) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where(_sessions.c.token_hash == hash_token(session_id))
                .values(expires_at=to_iso(expires_at))
            )
            conn.commit()
        return result.rowcount > 0

    def delete_session(self, session_id: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.token_hash == hash_token(session_id)))
            conn.commit()
        return result.rowcount > 0

    def delete_sessions_for_user(self, username: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.username == username))
            conn.commit()
        return result.rowcount

    def purge_expired(self, now: datetime) -> int:
        """Delete every row whose expires_at is in the past. Returns the count."""
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires_at < to_iso(now)))
            conn.commit()
        return result.rowcount

    def count_sessions(self, now: datetime) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_sessions).where(_sessions.c.expires_at >= to_iso(now))
            ).scalar()
        return result or 0

    def list_usernames(self, now: datetime) -> list[str]:
        """Distinct usernames that hold at least one unexpired session."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_sessions.c.username).where(_sessions.c.expires_at >= to_iso(now)).distinct()
            ).fetchall()
        return [row.username for row in rows]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Shared statements
# ---------------------------------------------------------------------------


def _insert_admin(conn: Connection, admin: Admin) -> int:
    now_iso = to_iso(_now())
    result = conn.execute(
        _admins.insert().values(
            username=admin.username,
            email=admin.email,
            password_hash=admin.password_hash,
            is_primary=1 if admin.is_primary else 0,
            source=admin.source,
            external_id=admin.external_id,
            totp_enabled=1 if admin.totp_enabled else 0,
            token_hash=admin.token_hash,
            token_prefix=admin.token_prefix,
            created_at=to_iso(admin.created_at) or now_iso,
            updated_at=to_iso(admin.updated_at) or now_iso,
        )
    )
    return result.inserted_primary_key[0]


def _claim_setup_token(conn: Connection, token_hash: str, now: datetime) -> bool:
    now_iso = to_iso(now)
    result = conn.execute(
        _setup_token.update()
        .where(
            (_setup_token.c.id == 1)
            & (_setup_token.c.token_hash == token_hash)
            & _setup_token.c.used_at.is_(None)
            & (_setup_token.c.expires_at > now_iso)
        )
        .values(used_at=now_iso)
    )
    return result.rowcount == 1


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_admin(row) -> Admin:
    return Admin(
        id=row.id,
        username=row.username,
        email=row.email,
        password_hash=row.password_hash or "",
        is_primary=bool(row.is_primary),
        source=row.source,
        external_id=row.external_id,
        totp_enabled=bool(row.totp_enabled),
        token_hash=row.token_hash,
        token_prefix=row.token_prefix,
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
        last_login_at=from_iso(row.last_login_at),
    )


def _row_to_invite(row) -> Invite:
    return Invite(
        id=row.id,
        token_hash=row.token_hash,
        suggested_username=row.suggested_username,
        created_by=row.created_by,
        expires_at=from_iso(row.expires_at),
        used_at=from_iso(row.used_at),
        used_by=row.used_by,
        created_at=from_iso(row.created_at),
    )


def _row_to_setup_token(row) -> SetupToken:
    return SetupToken(
        token_hash=row.token_hash,
        expires_at=from_iso(row.expires_at),
        used_at=from_iso(row.used_at),
    )


def _row_to_session(row, session_id: str) -> Session:
    return Session(
        id=session_id,
        admin_username=row.username,
        ip=row.ip,
        user_agent=row.user_agent,
        created_at=from_iso(row.created_at),
        expires_at=from_iso(row.expires_at),
    )


def _row_to_external_admin(row) -> ExternalAdmin:
    return ExternalAdmin(
        id=row.id,
        provider_type=row.provider_type,
        provider_id=row.provider_id,
        external_id=row.external_id,
        username=row.username,
        email=row.email,
        groups=json.loads(row.groups_json or "[]"),
        is_admin=bool(row.is_admin),
        cached_at=from_iso(row.cached_at),
        last_login_at=from_iso(row.last_login_at),
    )
