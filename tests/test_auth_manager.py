"""
tests/test_auth_manager.py -- Unit tests for AuthManager.

Covers:
  - static admin authentication (hash, bootstrap plaintext, fail closed)
  - session create / get / refresh / delete and lazy expiry
  - concurrent session creation from many threads
  - ephemeral API tokens and the configured ADMIN_API_TOKEN
  - cleanup() via the expiry heap, including refreshed sessions, heap
    compaction under churn, and the background loop that drives it
  - per-user session removal and the online-admin listing
  - clustered mode: write-through, cross-node lookup, lookup timeout
  - cookie attributes and request header helpers
"""

from __future__ import annotations

import asyncio
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pytest
from conftest import CONFIG_ADMIN, CONFIG_API_TOKEN, CONFIG_PASSWORD, FakeClock, make_settings, shared_memory_url
from fastapi import Response

from auth.manager import (
    CONFIG_TOKEN_NAME,
    WILDCARD_PERMISSION,
    _COMPACT_MIN,
    AuthManager,
    parse_bearer,
    resolve_client_ip,
    run_cleanup_loop,
)
from auth.store import SessionStore


@pytest.fixture
def manager(clock: FakeClock) -> AuthManager:
    return AuthManager(make_settings(admin_session_duration="1h"), clock=clock)


class TestStaticAdmin:
    def test_hashed_password_accepted(self, manager: AuthManager) -> None:
        assert manager.authenticate(CONFIG_ADMIN, CONFIG_PASSWORD) is True

    def test_wrong_password_rejected(self, manager: AuthManager) -> None:
        assert manager.authenticate(CONFIG_ADMIN, "wrong") is False

    def test_wrong_username_rejected(self, manager: AuthManager) -> None:
        assert manager.authenticate("someone", CONFIG_PASSWORD) is False

    def test_empty_input_rejected(self, manager: AuthManager) -> None:
        assert manager.authenticate("", "") is False
        assert manager.authenticate(CONFIG_ADMIN, "") is False

    def test_fails_closed_without_configuration(self) -> None:
        m = AuthManager(make_settings(admin_username="", admin_password=""))
        assert m.authenticate("", "") is False
        assert m.authenticate("admin", "admin") is False

    def test_plaintext_rejected_without_bootstrap(self) -> None:
        m = AuthManager(make_settings(admin_password="plain-secret"))
        assert m.authenticate(CONFIG_ADMIN, "plain-secret") is False

    def test_plaintext_accepted_in_bootstrap_mode(self, caplog: pytest.LogCaptureFixture) -> None:
        m = AuthManager(make_settings(admin_password="plain-secret", admin_password_bootstrap=True))
        assert m.authenticate(CONFIG_ADMIN, "plain-secret") is True
        assert m.authenticate(CONFIG_ADMIN, "plain-secreT") is False
        assert "bootstrap mode" in caplog.text


class TestSessions:
    def test_create_and_get(self, manager: AuthManager) -> None:
        session = manager.create_session("alice", ip="10.0.0.5", user_agent="curl/8")
        assert len(session.id) == 64
        fetched = manager.get_session(session.id)
        assert fetched is not None
        assert fetched.admin_username == "alice"
        assert fetched.ip == "10.0.0.5"
        assert fetched.user_agent == "curl/8"

    def test_unknown_and_empty_ids(self, manager: AuthManager) -> None:
        assert manager.get_session("does-not-exist") is None
        assert manager.get_session("") is None

    def test_returns_copies(self, manager: AuthManager) -> None:
        session = manager.create_session("alice")
        copy = manager.get_session(session.id)
        copy.admin_username = "mallory"
        assert manager.get_session(session.id).admin_username == "alice"

    def test_expired_session_not_returned(self, manager: AuthManager, clock: FakeClock) -> None:
        session = manager.create_session("alice")
        clock.advance(minutes=59)
        assert manager.get_session(session.id) is not None
        clock.advance(minutes=2)
        assert manager.get_session(session.id) is None

    def test_refresh_strictly_extends_expiry(self, manager: AuthManager, clock: FakeClock) -> None:
        session = manager.create_session("alice")
        clock.advance(minutes=30)
        assert manager.refresh_session(session.id) is True
        refreshed = manager.get_session(session.id)
        assert refreshed.expires_at > session.expires_at
        clock.advance(minutes=45)
        assert manager.get_session(session.id) is not None

    def test_refresh_of_missing_or_expired_session(self, manager: AuthManager, clock: FakeClock) -> None:
        assert manager.refresh_session("nope") is False
        session = manager.create_session("alice")
        clock.advance(hours=2)
        assert manager.refresh_session(session.id) is False

    def test_delete_is_idempotent(self, manager: AuthManager) -> None:
        session = manager.create_session("alice")
        manager.delete_session(session.id)
        manager.delete_session(session.id)
        manager.delete_session("")
        assert manager.get_session(session.id) is None

    def test_count_sessions_ignores_expired(self, manager: AuthManager, clock: FakeClock) -> None:
        manager.create_session("a")
        clock.advance(minutes=40)
        manager.create_session("b")
        clock.advance(minutes=30)
        assert manager.count_sessions() == 1

    def test_delete_sessions_for_user(self, manager: AuthManager) -> None:
        first = manager.create_session("alice")
        second = manager.create_session("alice")
        other = manager.create_session("bob")
        assert manager.delete_sessions_for_user("alice") == 2
        assert manager.get_session(first.id) is None
        assert manager.get_session(second.id) is None
        assert manager.get_session(other.id) is not None
        assert manager.delete_sessions_for_user("alice") == 0

    def test_online_usernames(self, manager: AuthManager, clock: FakeClock) -> None:
        assert manager.get_online_usernames() == []
        manager.create_session("carol")
        clock.advance(minutes=40)
        manager.create_session("bob")
        manager.create_session("bob")
        dropped = manager.create_session("dave")
        manager.delete_session(dropped.id)
        assert manager.get_online_usernames() == ["bob", "carol"]
        clock.advance(minutes=30)
        assert manager.get_online_usernames() == ["bob"]


class TestConcurrency:
    def test_concurrent_sessions_are_distinct(self) -> None:
        manager = AuthManager(make_settings())
        with ThreadPoolExecutor(max_workers=16) as pool:
            sessions = list(pool.map(lambda i: manager.create_session(f"user{i}"), range(200)))
        ids = {s.id for s in sessions}
        assert len(ids) == 200
        assert all(manager.get_session(i) is not None for i in ids)
        with ThreadPoolExecutor(max_workers=16) as pool:
            list(pool.map(manager.delete_session, ids))
        assert manager.count_sessions() == 0

    def test_concurrent_refresh_and_cleanup(self) -> None:
        manager = AuthManager(make_settings())
        session = manager.create_session("alice")
        stop = threading.Event()

        def sweep() -> None:
            while not stop.is_set():
                manager.cleanup()

        sweeper = threading.Thread(target=sweep)
        sweeper.start()
        try:
            for _ in range(200):
                assert manager.refresh_session(session.id) is True
        finally:
            stop.set()
            sweeper.join()
        assert manager.get_session(session.id) is not None


class TestApiTokens:
    def test_create_and_validate(self, manager: AuthManager, clock: FakeClock) -> None:
        token = manager.create_api_token("ci", description="pipeline", permissions=["read"], valid_days=7)
        assert len(token.token) == 64
        clock.advance(minutes=5)
        record = manager.validate_api_token(token.token)
        assert record.name == "ci"
        assert record.permissions == ["read"]
        assert record.last_used_at == clock.now

    def test_expired_token_rejected(self, manager: AuthManager, clock: FakeClock) -> None:
        token = manager.create_api_token("ci", valid_days=1)
        clock.advance(days=1, seconds=1)
        assert manager.validate_api_token(token.token) is None

    def test_invalid_validity_rejected(self, manager: AuthManager) -> None:
        with pytest.raises(ValueError):
            manager.create_api_token("ci", valid_days=0)

    def test_revoke(self, manager: AuthManager) -> None:
        token = manager.create_api_token("ci")
        assert manager.revoke_api_token(token.token) is True
        assert manager.revoke_api_token(token.token) is False
        assert manager.validate_api_token(token.token) is None

    def test_list_is_masked_and_ordered(self, manager: AuthManager, clock: FakeClock) -> None:
        first = manager.create_api_token("first")
        clock.advance(seconds=1)
        manager.create_api_token("second")
        listed = manager.list_api_tokens()
        assert [t.name for t in listed] == ["first", "second"]
        assert listed[0].token == f"{first.token[:8]}...{first.token[-4:]}"

    def test_configured_token_is_wildcard(self, manager: AuthManager) -> None:
        record = manager.validate_api_token(CONFIG_API_TOKEN)
        assert record.name == CONFIG_TOKEN_NAME
        assert record.permissions == [WILDCARD_PERMISSION]

    def test_empty_token_rejected(self, manager: AuthManager) -> None:
        assert manager.validate_api_token("") is None


class TestCleanup:
    def test_removes_expired_sessions_and_tokens(self, manager: AuthManager, clock: FakeClock) -> None:
        stale = manager.create_session("old")
        token = manager.create_api_token("short", valid_days=1)
        clock.advance(days=2)
        fresh = manager.create_session("new")
        assert manager.cleanup() == 2
        assert manager.get_session(stale.id) is None
        assert manager.validate_api_token(token.token) is None
        assert manager.get_session(fresh.id) is not None

    def test_refreshed_session_survives_stale_heap_entry(self, manager: AuthManager, clock: FakeClock) -> None:
        session = manager.create_session("alice")
        clock.advance(minutes=50)
        manager.refresh_session(session.id)
        clock.advance(minutes=20)  # past the original expiry, within the refreshed one
        assert manager.cleanup() == 0
        assert manager.get_session(session.id) is not None

    def test_nothing_to_do(self, manager: AuthManager) -> None:
        manager.create_session("alice")
        assert manager.cleanup() == 0

    def test_heap_stays_bounded_under_churn(self, manager: AuthManager) -> None:
        for _ in range(1000):
            manager.delete_session(manager.create_session("alice").id)
            manager.revoke_api_token(manager.create_api_token("ci", valid_days=365).token)
        keeper = manager.create_session("bob")
        for _ in range(500):
            manager.refresh_session(keeper.id)
        manager.cleanup()
        assert len(manager._expiry_heap) <= _COMPACT_MIN

    def test_compaction_keeps_live_entries(self, manager: AuthManager, clock: FakeClock) -> None:
        keeper = manager.create_session("bob")
        token = manager.create_api_token("long", valid_days=2)
        for _ in range(200):
            manager.delete_session(manager.create_session("alice").id)
        assert manager.get_session(keeper.id) is not None
        clock.advance(hours=2)
        assert manager.cleanup() == 1
        clock.advance(days=2)
        assert manager.cleanup() == 1
        assert manager.validate_api_token(token.token) is None
        assert manager._expiry_heap == []


class TestClusteredSessions:
    @pytest.fixture
    def store(self, request: pytest.FixtureRequest) -> SessionStore:
        s = SessionStore(db_url=shared_memory_url(f"test_sessions_{request.node.name}"))
        yield s
        s.close()

    def test_session_visible_to_another_node(self, store: SessionStore) -> None:
        settings = make_settings(cluster_sessions=True)
        node_a = AuthManager(settings, session_store=store)
        node_b = AuthManager(settings, session_store=store)
        try:
            session = node_a.create_session("alice", ip="10.0.0.1")
            fetched = node_b.get_session(session.id)
            assert fetched is not None
            assert fetched.admin_username == "alice"
            node_b.delete_session(session.id)
            node_a.delete_session(session.id)
            assert store.get_session(session.id) is None
        finally:
            node_a.close()
            node_b.close()

    def test_refresh_writes_through(self, store: SessionStore, clock: FakeClock) -> None:
        manager = AuthManager(make_settings(cluster_sessions=True), session_store=store, clock=clock)
        try:
            session = manager.create_session("alice")
            clock.advance(hours=1)
            manager.refresh_session(session.id)
            assert store.get_session(session.id).expires_at > session.expires_at
        finally:
            manager.close()

    def test_cleanup_purges_store(self, store: SessionStore, clock: FakeClock) -> None:
        manager = AuthManager(make_settings(admin_session_duration="1h"), session_store=store, clock=clock)
        try:
            session = manager.create_session("alice")
            clock.advance(hours=2)
            manager.cleanup()
            assert store.get_session(session.id) is None
        finally:
            manager.close()

    def test_online_usernames_span_nodes(self, store: SessionStore) -> None:
        settings = make_settings(cluster_sessions=True)
        node_a = AuthManager(settings, session_store=store)
        node_b = AuthManager(settings, session_store=store)
        try:
            node_a.create_session("alice")
            node_b.create_session("bob")
            assert node_a.get_online_usernames() == ["alice", "bob"]
            assert node_b.get_online_usernames() == ["alice", "bob"]
        finally:
            node_a.close()
            node_b.close()

    def test_delete_sessions_for_user_clears_store(self, store: SessionStore) -> None:
        manager = AuthManager(make_settings(cluster_sessions=True), session_store=store)
        try:
            session = manager.create_session("alice")
            kept = manager.create_session("bob")
            manager.delete_sessions_for_user("alice")
            assert store.get_session(session.id) is None
            assert store.get_session(kept.id) is not None
        finally:
            manager.close()

    def test_lookup_timeout_is_not_found(self, store: SessionStore) -> None:
        writer = AuthManager(make_settings(), session_store=store)
        session = writer.create_session("alice")
        writer.close()

        reader = AuthManager(make_settings(), session_store=store)
        original = store.get_session

        def slow_get(session_id: str):
            time.sleep(0.5)
            return original(session_id)

        store.get_session = slow_get
        try:
            assert reader.get_session(session.id, timeout=0.05) is None
        finally:
            store.get_session = original
            reader.close()


class TestCookiesAndHeaders:
    def test_session_cookie_attributes(self, manager: AuthManager) -> None:
        session = manager.create_session("alice")
        resp = Response()
        manager.set_session_cookie(resp, session)
        header = resp.headers["set-cookie"]
        assert header.startswith(f"admin_session={session.id}")
        assert "HttpOnly" in header
        assert "samesite=strict" in header.lower()
        assert "Path=/" in header
        assert "Max-Age=3600" in header
        assert "Secure" not in header

    def test_secure_flag_follows_tls(self, clock: FakeClock) -> None:
        m = AuthManager(make_settings(ssl_enabled=True), clock=clock)
        resp = Response()
        m.set_session_cookie(resp, m.create_session("alice"))
        assert "Secure" in resp.headers["set-cookie"]

    def test_clear_cookie(self, manager: AuthManager) -> None:
        resp = Response()
        manager.clear_session_cookie(resp)
        assert "Max-Age=0" in resp.headers["set-cookie"]

    @pytest.mark.parametrize(
        ("header", "expected"),
        [
            ("Bearer abc123", "abc123"),
            ("bearer   abc123  ", "abc123"),
            ("Basic dXNlcjpwYXNz", ""),
            ("", ""),
            ("Bearer", ""),
        ],
    )
    def test_parse_bearer(self, header: str, expected: str) -> None:
        assert parse_bearer(header) == expected

    @pytest.mark.parametrize(
        ("forwarded", "real_ip", "peer", "expected"),
        [
            ("203.0.113.7, 10.0.0.1", "10.0.0.2", "10.0.0.3:5000", "203.0.113.7"),
            (None, "198.51.100.4", "10.0.0.3:5000", "198.51.100.4"),
            (None, None, "10.0.0.3:5000", "10.0.0.3"),
            (None, None, "[::1]:8080", "[::1]"),
            (None, None, "::1", "::1"),
            ("", "", "", ""),
        ],
    )
    def test_resolve_client_ip(self, forwarded, real_ip, peer, expected) -> None:
        assert resolve_client_ip(forwarded, real_ip, peer) == expected


class TestCleanupLoop:
    def test_loop_sweeps_until_cancelled(self, manager: AuthManager, clock: FakeClock) -> None:
        manager.create_session("alice")
        clock.advance(hours=2)

        async def drive() -> bool:
            task = asyncio.create_task(run_cleanup_loop(manager, interval=0.01))
            for _ in range(200):
                await asyncio.sleep(0.01)
                if sweep.call_count:
                    break
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                return True
            return False

        with patch.object(manager, "cleanup", wraps=manager.cleanup) as sweep:
            assert asyncio.run(drive()) is True
        assert sweep.call_count >= 1
