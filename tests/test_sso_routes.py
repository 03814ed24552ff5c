"""
tests/test_sso_routes.py -- Integration tests for the OIDC single sign-on routes.

The login redirect uses the real Authlib client; the callback patches
auth.external.OAuth2Session so no request ever leaves the process. The OIDC
state travels in Starlette's signed session cookie, which the TestClient
cookie jar carries from the login redirect to the callback.
"""

from __future__ import annotations

from unittest.mock import MagicMock, patch
from urllib.parse import parse_qs, urlparse

import requests
from conftest import IDP_ISSUER
from fastapi.testclient import TestClient

from auth.external import PROVIDER_OIDC


def _start_login(client: TestClient, provider_id: str = "corp") -> str:
    """Begin the flow with a clean cookie jar and return the state value."""
    client.cookies.clear()
    resp = client.get(f"/api/v1/sso/oidc/{provider_id}/login", follow_redirects=False)
    assert resp.status_code == 302
    return parse_qs(urlparse(resp.headers["location"]).query)["state"][0]


def _mock_idp(mock_session_cls: MagicMock, claims: dict) -> MagicMock:
    client = mock_session_cls.return_value
    client.fetch_token.return_value = {"access_token": "at-1", "token_type": "Bearer"}
    userinfo = MagicMock()
    userinfo.json.return_value = claims
    client.get.return_value = userinfo
    return client


def _callback(client: TestClient, state: str, code: str = "code-abc"):
    return client.get(
        "/api/v1/sso/oidc/corp/callback",
        params={"code": code, "state": state},
        follow_redirects=False,
    )


class TestProviders:
    def test_lists_enabled_providers_only(self, api_client: TestClient) -> None:
        resp = api_client.get("/api/v1/sso/providers")
        assert resp.status_code == 200
        assert resp.json() == [
            {"type": "oidc", "id": "corp", "name": "Corporate SSO"},
            {"type": "ldap", "id": "p1", "name": "Directory"},
        ]


class TestOIDCLogin:
    def test_login_redirects_to_provider(self, api_client: TestClient) -> None:
        api_client.cookies.clear()
        resp = api_client.get("/api/v1/sso/oidc/corp/login", follow_redirects=False)
        assert resp.status_code == 302
        location = urlparse(resp.headers["location"])
        assert f"{location.scheme}://{location.netloc}{location.path}" == f"{IDP_ISSUER}/authorize"
        query = parse_qs(location.query)
        assert query["client_id"] == ["admingate-client"]
        assert len(query["state"][0]) == 32
        assert "session" in api_client.cookies

    def test_unknown_provider(self, api_client: TestClient) -> None:
        resp = api_client.get("/api/v1/sso/oidc/nope/login", follow_redirects=False)
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "unknown_provider"

    def test_disabled_provider(self, api_client: TestClient) -> None:
        resp = api_client.get("/api/v1/sso/oidc/legacy/login", follow_redirects=False)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "provider_disabled"


class TestOIDCCallback:
    def test_admin_group_member_gets_session(self, api_client: TestClient) -> None:
        state = _start_login(api_client)
        with patch("auth.external.OAuth2Session") as mock_session_cls:
            idp = _mock_idp(mock_session_cls, {"sub": "sso-1", "name": "Ola Nordmann", "groups": ["Admin-Group"]})
            resp = _callback(api_client, state)

        assert resp.status_code == 302
        assert resp.headers["location"] == "/admin"
        idp.fetch_token.assert_called_once()
        assert api_client.cookies.get("admin_session")
        assert api_client.cookies.get("csrf_token")

        me = api_client.get("/api/v1/auth/me").json()
        assert me["username"] == "Ola Nordmann"
        assert me["source"] == "corp"
        assert me["method"] == "session"
        assert me["admin_id"] is None

        cached = api_client.app.state.external_auth.get_cached_external_admin(PROVIDER_OIDC, "corp", "sso-1")
        assert cached is not None and cached.is_admin

    def test_state_is_single_use(self, api_client: TestClient) -> None:
        state = _start_login(api_client)
        with patch("auth.external.OAuth2Session") as mock_session_cls:
            _mock_idp(mock_session_cls, {"sub": "sso-2", "groups": ["admin-group"]})
            assert _callback(api_client, state).status_code == 302
            replay = _callback(api_client, state)
        assert replay.status_code == 400
        assert replay.json()["error"]["code"] == "invalid_state"

    def test_wrong_state(self, api_client: TestClient) -> None:
        _start_login(api_client)
        with patch("auth.external.OAuth2Session") as mock_session_cls:
            resp = _callback(api_client, "f" * 32)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_state"
        mock_session_cls.assert_not_called()

    def test_missing_state_cookie(self, api_client: TestClient) -> None:
        api_client.cookies.clear()
        resp = _callback(api_client, "f" * 32)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_state"

    def test_provider_error(self, api_client: TestClient) -> None:
        state = _start_login(api_client)
        resp = api_client.get(
            "/api/v1/sso/oidc/corp/callback",
            params={"state": state, "error": "access_denied"},
            follow_redirects=False,
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "sso_denied"

    def test_non_admin_rejected(self, api_client: TestClient) -> None:
        state = _start_login(api_client)
        with patch("auth.external.OAuth2Session") as mock_session_cls:
            _mock_idp(mock_session_cls, {"sub": "sso-3", "name": "Regular User", "groups": ["users"]})
            resp = _callback(api_client, state)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "not_admin"
        assert "admin_session" not in api_client.cookies

    def test_demoted_admin_rejected(self, api_client: TestClient) -> None:
        state = _start_login(api_client)
        with patch("auth.external.OAuth2Session") as mock_session_cls:
            _mock_idp(mock_session_cls, {"sub": "sso-4", "groups": ["admin-group"]})
            assert _callback(api_client, state).status_code == 302

        state = _start_login(api_client)
        with patch("auth.external.OAuth2Session") as mock_session_cls:
            _mock_idp(mock_session_cls, {"sub": "sso-4", "groups": ["users"]})
            resp = _callback(api_client, state)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "not_admin"

    def test_token_exchange_failure(self, api_client: TestClient) -> None:
        state = _start_login(api_client)
        with patch("auth.external.OAuth2Session") as mock_session_cls:
            mock_session_cls.return_value.fetch_token.side_effect = requests.ConnectionError("idp down")
            resp = _callback(api_client, state)
        assert resp.status_code == 502
        assert resp.json()["error"]["code"] == "sso_failed"
