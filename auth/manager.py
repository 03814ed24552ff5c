"""
auth/manager.py -- Transient sessions and ephemeral API tokens.

AuthManager is the owned, lock-guarded store that request handlers receive
via app.state.auth_manager. There is no module-level instance: tests build
their own with an injected Settings and clock.

Concurrency model:
  One threading.Lock guards the session map, the token map and the expiry
  heap together, so no operation can observe a half-applied update. FastAPI
  runs sync endpoints in a threadpool, which is where the contention comes
  from.

  Database I/O never happens while the lock is held. In clustered mode
  (CLUSTER_SESSIONS=true) a cache miss falls back to the shared SessionStore
  on a small ThreadPoolExecutor and waits at most the lookup timeout; a
  timeout is logged and treated as "not found", so a slow database cannot
  stall request handling indefinitely.

  cleanup() pops an expiry min-heap instead of scanning the maps. Lock hold
  time is proportional to the number of expired (and stale, i.e. superseded
  by a refresh) heap entries, not to the number of live sessions. Deletes,
  revocations and refreshes leave stale entries behind; once the heap holds
  more than twice the live entries (and at least _COMPACT_MIN) it is rebuilt
  from the maps, so its size stays bounded by the live population.

Expiry is also checked lazily on every read: a session past its expires_at
is never returned, whether or not the sweep has run yet.

Static administrator [B1]:
  authenticate() checks the single ADMIN_USERNAME / ADMIN_PASSWORD identity.
  ADMIN_PASSWORD should be an Argon2id hash. A plaintext value only works in
  the explicit ADMIN_PASSWORD_BOOTSTRAP mode and logs a warning every time the
  static username logs in.

Layer rule: no imports from api/. May import core.config for Settings.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from fastapi import Request, Response
from sqlalchemy.exc import SQLAlchemyError

from auth.models import EphemeralAPIToken, Session
from auth.passwords import is_argon2_hash, verify_password
from auth.store import SessionStore
from auth.tokens import constant_time_equals, mask_token, random_token
from core.config import Settings

logger = logging.getLogger("admingate.auth")

CONFIG_TOKEN_NAME = "config"
WILDCARD_PERMISSION = "*"
NEVER_EXPIRES = datetime.max.replace(tzinfo=timezone.utc)

_KIND_SESSION = "session"
_KIND_TOKEN = "token"
_COMPACT_MIN = 64


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_expired(expires_at: datetime, now: datetime) -> bool:
    return now > expires_at


class AuthManager:
    """In-memory session and ephemeral-token store with optional write-through.

    Usage:
        manager = AuthManager(settings, session_store=SessionStore(url))
        session = manager.create_session("admin", ip="10.0.0.5", user_agent="curl/8")
        manager.set_session_cookie(response, session)
        ...
        manager.close()

    All public methods return copies, never the objects held in the maps.
    """

    def __init__(
        self,
        settings: Settings,
        session_store: SessionStore | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._settings = settings
        self._store = session_store
        self._clock = clock
        self._lock = threading.Lock()
        self._sessions: dict[str, Session] = {}
        self._tokens: dict[str, EphemeralAPIToken] = {}
        # (expires_at, seq, kind, key). seq breaks ties so kinds never compare.
        self._expiry_heap: list[tuple[datetime, int, str, str]] = []
        self._seq = itertools.count()
        self._executor: ThreadPoolExecutor | None = None
        if session_store is not None:
            self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="session-lookup")

    @property
    def clustered(self) -> bool:
        return self._store is not None

    # ------------------------------------------------------------------
    # Static administrator
    # ------------------------------------------------------------------

    def authenticate(self, username: str, password: str) -> bool:
        """Check credentials against ADMIN_USERNAME / ADMIN_PASSWORD.

        Fails closed when either configured value is empty. The password is
        verified even when the username is wrong so both branches cost the same.
        Failures are logged only when the username names the static admin:
        the composite authenticator asks this check first for every login, so
        a database admin's username is an ordinary miss here, not an attack.
        """
        configured_user = self._settings.admin_username
        configured_password = self._settings.admin_password
        if not configured_user or not configured_password:
            return False
        if not username or not password:
            return False

        user_ok = constant_time_equals(username, configured_user)
        if is_argon2_hash(configured_password):
            password_ok = verify_password(password, configured_password)
        elif self._settings.admin_password_bootstrap:
            if user_ok:
                logger.warning(
                    "ADMIN_PASSWORD is plaintext (bootstrap mode). "
                    "Replace it with the output of 'python main.py hash-password'."
                )
            password_ok = constant_time_equals(password, configured_password)
        else:
            if user_ok:
                logger.error(
                    "ADMIN_PASSWORD is not an Argon2id hash and ADMIN_PASSWORD_BOOTSTRAP is off -- "
                    "static admin login is disabled"
                )
            return False

        if user_ok and password_ok:
            return True
        if user_ok:
            logger.warning("Failed static admin login attempt")
        return False

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, username: str, ip: str = "", user_agent: str = "") -> Session:
        now = self._clock()
        session = Session(
            id=random_token(32),
            admin_username=username,
            created_at=now,
            expires_at=now + self._settings.session_duration,
            ip=ip,
            user_agent=user_agent,
        )
        if self._store is not None:
            self._store.save_session(session)
        with self._lock:
            self._sessions[session.id] = session
            self._push_expiry(session.expires_at, _KIND_SESSION, session.id)
        logger.info("Session created for %s from %s", username, ip or "unknown")
        return replace(session)

    def get_session(self, session_id: str, timeout: float | None = None) -> Session | None:
        """Return the live session for `session_id`, or None.

        Memory first. On a miss in clustered mode, the shared store is
        consulted for at most `timeout` seconds (SESSION_LOOKUP_TIMEOUT_SECONDS
        when None) and a hit is cached locally.
        """
        if not session_id:
            return None
        now = self._clock()
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                return None if _is_expired(session.expires_at, now) else replace(session)

        if self._store is None:
            return None
        stored = self._lookup_persisted(session_id, timeout)
        if stored is None or _is_expired(stored.expires_at, now):
            return None
        with self._lock:
            current = self._sessions.setdefault(session_id, stored)
            if current is stored:
                self._push_expiry(stored.expires_at, _KIND_SESSION, session_id)
            return replace(current)

    def delete_session(self, session_id: str) -> None:
        """Remove a session from memory and the shared store. Idempotent."""
        if not session_id:
            return
        with self._lock:
            self._sessions.pop(session_id, None)
            self._maybe_compact()
        if self._store is not None:
            self._store.delete_session(session_id)

    def delete_sessions_for_user(self, username: str) -> int:
        """Drop every session belonging to `username`, in memory and in the store.

        Returns the number of in-memory sessions removed.
        """
        with self._lock:
            doomed = [sid for sid, s in self._sessions.items() if s.admin_username == username]
            for sid in doomed:
                del self._sessions[sid]
            self._maybe_compact()
        if self._store is not None:
            self._store.delete_sessions_for_user(username)
        if doomed:
            logger.info("Removed %d session(s) for %s", len(doomed), username)
        return len(doomed)

    def refresh_session(self, session_id: str) -> bool:
        """Push expires_at out to now + session duration. False if absent or expired."""
        if self.get_session(session_id) is None:
            return False
        now = self._clock()
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or _is_expired(session.expires_at, now):
                return False
            session.expires_at = now + self._settings.session_duration
            expires_at = session.expires_at
            self._push_expiry(expires_at, _KIND_SESSION, session_id)
            self._maybe_compact()
        if self._store is not None:
            self._store.update_expiry(session_id, expires_at)
        return True

    def count_sessions(self) -> int:
        now = self._clock()
        with self._lock:
            return sum(1 for s in self._sessions.values() if not _is_expired(s.expires_at, now))

    def get_online_usernames(self) -> list[str]:
        """Distinct subjects holding a live session, sorted.

        In clustered mode sessions created on other nodes are included.
        """
        now = self._clock()
        with self._lock:
            names = {s.admin_username for s in self._sessions.values() if not _is_expired(s.expires_at, now)}
        if self._store is not None:
            names.update(self._store.list_usernames(now))
        return sorted(names)

    def _lookup_persisted(self, session_id: str, timeout: float | None) -> Session | None:
        wait = self._settings.session_lookup_timeout_seconds if timeout is None else timeout
        future = self._executor.submit(self._store.get_session, session_id)
        try:
            return future.result(timeout=wait)
        except FutureTimeoutError:
            future.cancel()
            logger.warning("Session lookup timed out after %.2fs -- treating as not found", wait)
            return None

    # ------------------------------------------------------------------
    # Ephemeral API tokens
    # ------------------------------------------------------------------

    def create_api_token(
        self,
        name: str,
        description: str = "",
        permissions: list[str] | None = None,
        valid_days: int = 30,
    ) -> EphemeralAPIToken:
        """Mint a process-local bearer token. It is never persisted."""
        if valid_days < 1:
            raise ValueError("valid_days must be at least 1")
        now = self._clock()
        token = EphemeralAPIToken(
            token=random_token(32),
            name=name,
            description=description,
            permissions=list(permissions or []),
            created_at=now,
            expires_at=now + timedelta(days=valid_days),
        )
        with self._lock:
            self._tokens[token.token] = token
            self._push_expiry(token.expires_at, _KIND_TOKEN, token.token)
        logger.info("API token %r created (expires %s)", name, token.expires_at.isoformat())
        return replace(token, permissions=list(token.permissions))

    def validate_api_token(self, token: str) -> EphemeralAPIToken | None:
        """Resolve a bearer value to its token record and stamp last_used_at.

        The configured ADMIN_API_TOKEN is recognised as the implicit "config"
        token with the wildcard permission.
        """
        if not token:
            return None
        now = self._clock()
        configured = self._settings.admin_api_token
        if configured and constant_time_equals(token, configured):
            return EphemeralAPIToken(
                token=token,
                name=CONFIG_TOKEN_NAME,
                description="Configured ADMIN_API_TOKEN",
                permissions=[WILDCARD_PERMISSION],
                created_at=now,
                expires_at=NEVER_EXPIRES,
                last_used_at=now,
            )
        with self._lock:
            record = self._tokens.get(token)
            if record is None or _is_expired(record.expires_at, now):
                return None
            record.last_used_at = now
            return replace(record, permissions=list(record.permissions))

    def revoke_api_token(self, token: str) -> bool:
        with self._lock:
            revoked = self._tokens.pop(token, None) is not None
            self._maybe_compact()
        return revoked

    def list_api_tokens(self) -> list[EphemeralAPIToken]:
        """Live tokens, oldest first, with the token value masked for display."""
        now = self._clock()
        with self._lock:
            live = [t for t in self._tokens.values() if not _is_expired(t.expires_at, now)]
            masked = [replace(t, token=mask_token(t.token), permissions=list(t.permissions)) for t in live]
        return sorted(masked, key=lambda t: t.created_at)

    # ------------------------------------------------------------------
    # Cookies and request extraction
    # ------------------------------------------------------------------

    def set_session_cookie(self, response: Response, session: Session) -> None:
        max_age = max(int((session.expires_at - self._clock()).total_seconds()), 0)
        response.set_cookie(
            key=self._settings.admin_session_cookie_name,
            value=session.id,
            max_age=max_age,
            path=self._settings.session_cookie_path,
            httponly=True,
            secure=self._settings.cookie_secure,
            samesite="strict",
        )

    def clear_session_cookie(self, response: Response) -> None:
        response.delete_cookie(
            key=self._settings.admin_session_cookie_name,
            path=self._settings.session_cookie_path,
            httponly=True,
            secure=self._settings.cookie_secure,
            samesite="strict",
        )

    def get_session_from_request(self, request: Request) -> str:
        return request.cookies.get(self._settings.admin_session_cookie_name, "")

    def get_token_from_request(self, request: Request) -> str:
        """Return the bearer token, or "" for a missing or non-Bearer header."""
        return parse_bearer(request.headers.get("Authorization", ""))

    # ------------------------------------------------------------------
    # Expiry sweep
    # ------------------------------------------------------------------

    def cleanup(self) -> int:
        """Remove every session and token whose expiry is in the past.

        Returns the number of in-memory entries removed. Also purges expired
        rows from the shared store when clustered.
        """
        now = self._clock()
        removed = 0
        with self._lock:
            heap = self._expiry_heap
            while heap and _is_expired(heap[0][0], now):
                expires_at, _, kind, key = heapq.heappop(heap)
                entries = self._sessions if kind == _KIND_SESSION else self._tokens
                entry = entries.get(key)
                # A refresh leaves the old heap entry behind; only the entry
                # matching the current expiry may delete.
                if entry is not None and entry.expires_at == expires_at:
                    del entries[key]
                    removed += 1
            self._maybe_compact()
        if self._store is not None:
            purged = self._store.purge_expired(now)
            if purged:
                logger.debug("Purged %d expired session rows", purged)
        if removed:
            logger.info("Cleanup removed %d expired sessions/tokens", removed)
        return removed

    def _push_expiry(self, expires_at: datetime, kind: str, key: str) -> None:
        # Caller holds self._lock.
        heapq.heappush(self._expiry_heap, (expires_at, next(self._seq), kind, key))

    def _maybe_compact(self) -> None:
        # Caller holds self._lock.
        live = len(self._sessions) + len(self._tokens)
        if len(self._expiry_heap) <= max(2 * live, _COMPACT_MIN):
            return
        heap = [(s.expires_at, next(self._seq), _KIND_SESSION, sid) for sid, s in self._sessions.items()]
        heap.extend((t.expires_at, next(self._seq), _KIND_TOKEN, key) for key, t in self._tokens.items())
        heapq.heapify(heap)
        self._expiry_heap = heap

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)


# ---------------------------------------------------------------------------
# Background sweep
# ---------------------------------------------------------------------------


async def run_cleanup_loop(manager: AuthManager, interval: float = 300) -> None:
    """Call manager.cleanup() every `interval` seconds until cancelled.

    Started as an asyncio task in the app lifespan. task.cancel() at shutdown
    raises CancelledError out of asyncio.sleep and unwinds the loop. The sweep
    itself runs in a worker thread so the event loop never waits on the lock
    or on the database.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(manager.cleanup)
        except SQLAlchemyError:
            logger.exception("Session cleanup failed; retrying next interval")


# ---------------------------------------------------------------------------
# Header helpers
# ---------------------------------------------------------------------------


def parse_bearer(header: str) -> str:
    scheme, _, value = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return value.strip()


def resolve_client_ip(forwarded_for: str | None, real_ip: str | None, peer: str | None) -> str:
    """Pick the client address: X-Forwarded-For, then X-Real-IP, then the peer.

    Only the first X-Forwarded-For entry is used. The peer address has its
    port stripped ("1.2.3.4:80" -> "1.2.3.4", "[::1]:80" -> "[::1]"); a bare
    IPv6 literal such as "::1" is returned unchanged.
    """
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    if real_ip and real_ip.strip():
        return real_ip.strip()
    return strip_port(peer or "")


def strip_port(address: str) -> str:
    if address.startswith("["):
        end = address.find("]")
        return address[: end + 1] if end != -1 else address
    if address.count(":") == 1:
        return address.split(":", 1)[0]
    return address
