# Tests for the /auth HTTP surface and the auth policies.

import dataclasses
import time
import urllib.parse

import pytest
from fastapi.testclient import TestClient

from godwear_auth.main import create_app


def _cleared(response, name):
    return any(
        header.startswith(f"{name}=") and "Max-Age=0" in header
        for header in response.headers.get_list("set-cookie")
    )


def _set_session(client, result):
    client.cookies.set("session", result.token)
    client.cookies.set("session_id", result.session_id)


def _state_from(redirect_url):
    return dict(urllib.parse.parse_qsl(urllib.parse.urlparse(redirect_url).query))["state"]


class TestLogin:
    def test_json_login(self, client):
        response = client.get("/auth/login")
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["provider"] == "google"
        assert body["data"]["redirectUrl"].startswith("https://accounts.google.com/")
        assert body["meta"]["service"] == "godwear-auth"
        assert response.headers["X-Request-Id"].startswith("req_")
        state_cookie = next(h for h in response.headers.get_list("set-cookie") if h.startswith("oauth_state="))
        assert "HttpOnly" in state_cookie
        assert "Max-Age=600" in state_cookie
        assert "Path=/auth" in state_cookie

    def test_browser_login_redirects(self, client):
        response = client.get("/auth/login", headers={"Accept": "text/html"}, follow_redirects=False)
        assert response.status_code == 302
        assert response.headers["location"].startswith("https://accounts.google.com/")

    def test_missing_credentials(self, service, config):
        service.config = dataclasses.replace(config, google_client_id="")
        client = TestClient(create_app(service))
        response = client.get("/auth/login")
        assert response.status_code == 500
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "SERVICE_CONFIGURATION_ERROR"
        assert body["error"]["request_id"] == response.headers["X-Request-Id"]


class TestCallback:
    def test_full_login_flow(self, client, codec):
        state = _state_from(client.get("/auth/login").json()["data"]["redirectUrl"])
        response = client.get("/auth/callback", params={"code": "valid-code", "state": state})
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["success"] is True
        assert data["isNewUser"] is True
        assert data["user"]["email"] == "a@x.com"
        assert codec.verify(response.cookies["session"])["sub"] == data["user"]["id"]
        session_cookie = next(h for h in response.headers.get_list("set-cookie") if h.startswith("session="))
        assert "HttpOnly" in session_cookie
        assert "Max-Age=86400" in session_cookie
        assert "samesite=lax" in session_cookie.lower()
        assert _cleared(response, "oauth_state")

        me = client.get("/auth/user")
        assert me.status_code == 200
        assert me.json() == {"authenticated": True, "user": data["user"]}

    def test_state_mismatch(self, client, oauth_client):
        client.get("/auth/login")
        response = client.get("/auth/callback", params={"code": "valid-code", "state": "forged"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "AUTH_INVALID_STATE"
        assert oauth_client.exchange_calls == 0

    def test_missing_state_cookie(self, client, oauth_client):
        response = client.get("/auth/callback", params={"code": "valid-code", "state": "s1"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "AUTH_INVALID_STATE"
        assert oauth_client.exchange_calls == 0

    def test_non_ascii_state_cookie(self, client, oauth_client, audit):
        response = client.get(
            "/auth/callback",
            params={"code": "valid-code", "state": "s1"},
            headers={"cookie": b"oauth_state=\xe9abc.deadbeef"},
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "AUTH_INVALID_STATE"
        assert oauth_client.exchange_calls == 0
        entry = audit.list_entries()[0]
        assert entry.action == "oauth_state_mismatch"
        assert entry.after_values == {"reason": "missing_state"}

    def test_provider_error(self, client, audit):
        response = client.get("/auth/callback", params={"error": "access_denied"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "AUTH_OAUTH_ERROR"
        assert audit.list_entries()[0].action == "oauth_provider_error"

    def test_browser_failure_redirects_with_code(self, client):
        response = client.get(
            "/auth/callback",
            params={"code": "valid-code", "state": "s1"},
            headers={"Accept": "text/html"},
            follow_redirects=False,
        )
        assert response.status_code == 302
        assert response.headers["location"] == "/?error=AUTH_INVALID_STATE"

    def test_exchange_failure_is_502(self, client, oauth_client):
        state = _state_from(client.get("/auth/login").json()["data"]["redirectUrl"])
        oauth_client.token_status = 400
        response = client.get("/auth/callback", params={"code": "used-code", "state": state})
        assert response.status_code == 502
        assert response.json()["error"]["code"] == "AUTH_TOKEN_EXCHANGE_FAILED"


class TestCurrentUser:
    def test_anonymous(self, client):
        response = client.get("/auth/user")
        assert response.status_code == 401
        assert response.json() == {"authenticated": False}

    def test_expired_token_clears_cookie(self, client, codec, login_as):
        user = login_as().user
        now = int(time.time())
        expired = codec.sign(
            {"sub": user.id, "iss": "godwear-auth", "aud": "godwear-app", "iat": now - 3600, "exp": now - 60}
        )
        client.cookies.set("session", expired)
        response = client.get("/auth/user")
        assert response.status_code == 401
        assert response.json() == {"authenticated": False}
        assert _cleared(response, "session")

    def test_revoked_session(self, client, service, login_as):
        result = login_as()
        service.invalidate_session(result.session_id)
        _set_session(client, result)
        response = client.get("/auth/user")
        assert response.status_code == 401
        assert _cleared(response, "session")
        assert _cleared(response, "session_id")


class TestLogout:
    def test_post_logout(self, client, login_as, service):
        result = login_as()
        _set_session(client, result)
        response = client.post("/auth/logout")
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["message"] == "Logged out successfully"
        assert data["cleared"] == ["session", "session_id", "oauth_state"]
        assert _cleared(response, "session")
        assert _cleared(response, "oauth_state")
        assert service.validate_session(result.token, result.session_id) is None

    def test_get_logout_redirects(self, client, login_as):
        _set_session(client, login_as())
        response = client.get("/auth/logout", follow_redirects=False)
        assert response.status_code == 302
        assert response.headers["location"] == "/?logout=success"
        assert _cleared(response, "session")

    def test_logout_without_session_succeeds(self, client):
        assert client.post("/auth/logout").status_code == 200
        client.cookies.set("session", "not-a-token")
        assert client.post("/auth/logout").status_code == 200


class TestPolicies:
    def test_require_auth_redirects_to_login(self, client):
        response = client.get("/auth/session", follow_redirects=False)
        assert response.status_code == 302
        assert response.headers["location"] == "/auth/login"

    def test_require_auth_with_invalid_token_clears_cookie(self, client):
        client.cookies.set("session", "a.b.c")
        response = client.get("/auth/session", follow_redirects=False)
        assert response.status_code == 302
        assert _cleared(response, "session")

    def test_session_details(self, client, login_as):
        result = login_as()
        _set_session(client, result)
        response = client.get("/auth/session")
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["user"]["id"] == result.user.id
        assert data["session"]["id"] == result.session_id
        assert data["isAdmin"] is False

    def test_non_admin_gets_403(self, client, login_as, audit):
        _set_session(client, login_as(email="user@example.com", provider_id="g2"))
        response = client.get("/auth/audit")
        assert response.status_code == 403
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "INSUFFICIENT_PERMISSIONS"
        assert audit.list_entries(action="admin_access_denied")

    def test_admin_lists_audit_entries(self, client, login_as):
        login_as()
        _set_session(client, login_as(email="admin@example.com", provider_id="g9"))
        response = client.get("/auth/audit", params={"action": "user_registered"})
        assert response.status_code == 200
        items = response.json()["data"]["items"]
        assert [item["action"] for item in items] == ["user_registered", "user_registered"]

    @pytest.mark.parametrize("limit", [0, 501])
    def test_audit_limit_validated(self, client, login_as, limit):
        _set_session(client, login_as(email="admin@example.com"))
        assert client.get("/auth/audit", params={"limit": limit}).status_code == 422


class TestHealth:
    def test_health(self, client):
        response = client.get("/auth/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["service"] == "godwear-auth"
        assert set(body["dependencies"]) == {"google_oauth", "jwt", "database"}
