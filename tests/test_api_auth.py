"""
tests/test_api_auth.py -- Integration tests for the /api/v1/auth routes.

Runs the real ASGI stack (middleware, exception handlers, routes) over the
test core via the api_client fixture.

Covers:
  - login success body and Cache-Control: no-store
  - unknown user and wrong password produce byte-identical 401 bodies
  - 423 + Retry-After on lock; 403 for an inactive account
  - me / sessions / revoke-others with a bearer token
  - logout then reuse -> 401 session_revoked; second logout -> 404
  - refresh rotates the token; change-password revokes everything
  - missing / malformed Authorization header; 422 envelope
"""

from __future__ import annotations

PASSWORD = "Correct-Horse-1"


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _login(client, username="alice", password=PASSWORD):
    return client.post("/api/v1/auth/login", json={"username": username, "password": password})


class TestLoginRoute:
    def test_success(self, api_client, make_user):
        make_user("alice", password=PASSWORD, role="admin")
        resp = _login(api_client)
        assert resp.status_code == 200
        assert resp.headers["cache-control"] == "no-store"
        data = resp.json()
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 3600
        assert data["user"]["username"] == "alice"
        assert data["user"]["role"] == "admin"
        assert "password_hash" not in data["user"]

    def test_unknown_user_and_wrong_password_identical(self, api_client, make_user):
        make_user("alice", password=PASSWORD)
        unknown = _login(api_client, username="mallory")
        wrong = _login(api_client, password="Wrong-Horse-1")
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.content == wrong.content
        assert unknown.json()["error"]["code"] == "invalid_credentials"

    def test_lockout_returns_423_with_retry_after(self, api_client, make_user):
        make_user("alice", password=PASSWORD)
        for _ in range(4):
            assert _login(api_client, password="Wrong-Horse-1").status_code == 401
        resp = _login(api_client, password="Wrong-Horse-1")
        assert resp.status_code == 423
        assert resp.headers["retry-after"] == "900"
        assert resp.json()["error"]["code"] == "account_locked"
        # The right password does not get through either.
        assert _login(api_client).status_code == 423

    def test_inactive_account(self, api_client, make_user):
        make_user("alice", password=PASSWORD, is_active=False)
        resp = _login(api_client)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "account_inactive"

    def test_validation_error_envelope(self, api_client):
        resp = api_client.post("/api/v1/auth/login", json={"username": "alice"})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"


class TestAuthenticatedRoutes:
    def test_me(self, api_client, make_user):
        make_user("alice", password=PASSWORD, email="alice@example.com")
        token = _login(api_client).json()["access_token"]
        resp = api_client.get("/api/v1/auth/me", headers=_bearer(token))
        assert resp.status_code == 200
        assert resp.json()["email"] == "alice@example.com"

    def test_missing_header(self, api_client):
        resp = api_client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "token_invalid"
        assert resp.headers["www-authenticate"] == "Bearer"

    def test_wrong_scheme(self, api_client):
        resp = api_client.get("/api/v1/auth/me", headers={"Authorization": "Basic YWxpY2U6eA=="})
        assert resp.status_code == 401

    def test_expired_token(self, api_client, make_user, clock):
        make_user("alice", password=PASSWORD)
        token = _login(api_client).json()["access_token"]
        clock.advance(hours=1)
        resp = api_client.get("/api/v1/auth/me", headers=_bearer(token))
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "token_expired"

    def test_sessions_listing_flags_current(self, api_client, make_user):
        make_user("alice", password=PASSWORD)
        first = _login(api_client).json()["access_token"]
        _login(api_client)
        resp = api_client.get("/api/v1/auth/sessions", headers=_bearer(first))
        assert resp.status_code == 200
        listed = resp.json()
        assert len(listed) == 2
        assert sum(1 for s in listed if s["current"]) == 1
        assert all("token_hash" not in s for s in listed)

    def test_revoke_others(self, api_client, make_user):
        make_user("alice", password=PASSWORD)
        keep = _login(api_client).json()["access_token"]
        other = _login(api_client).json()["access_token"]
        resp = api_client.post("/api/v1/auth/sessions/revoke-others", headers=_bearer(keep))
        assert resp.json() == {"revoked": 1}
        assert api_client.get("/api/v1/auth/me", headers=_bearer(keep)).status_code == 200
        assert api_client.get("/api/v1/auth/me", headers=_bearer(other)).status_code == 401


class TestTokenLifecycleRoutes:
    def test_logout_then_reuse(self, api_client, make_user):
        make_user("alice", password=PASSWORD)
        token = _login(api_client).json()["access_token"]
        assert api_client.post("/api/v1/auth/logout", headers=_bearer(token)).status_code == 200
        resp = api_client.get("/api/v1/auth/me", headers=_bearer(token))
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "session_revoked"

    def test_second_logout_is_404(self, api_client, make_user):
        make_user("alice", password=PASSWORD)
        token = _login(api_client).json()["access_token"]
        api_client.post("/api/v1/auth/logout", headers=_bearer(token))
        resp = api_client.post("/api/v1/auth/logout", headers=_bearer(token))
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "session_not_found"

    def test_refresh(self, api_client, make_user):
        make_user("alice", password=PASSWORD)
        old = _login(api_client).json()["access_token"]
        resp = api_client.post("/api/v1/auth/refresh", headers=_bearer(old))
        assert resp.status_code == 200
        assert resp.headers["cache-control"] == "no-store"
        new = resp.json()["access_token"]
        assert new != old
        assert api_client.get("/api/v1/auth/me", headers=_bearer(new)).status_code == 200
        assert api_client.get("/api/v1/auth/me", headers=_bearer(old)).status_code == 401

    def test_change_password(self, api_client, make_user):
        make_user("alice", password=PASSWORD)
        token = _login(api_client).json()["access_token"]
        resp = api_client.post(
            "/api/v1/auth/change-password",
            headers=_bearer(token),
            json={"current_password": PASSWORD, "new_password": "Brand-New-Pass9"},
        )
        assert resp.status_code == 200
        assert resp.json() == {"revoked": 1}
        assert api_client.get("/api/v1/auth/me", headers=_bearer(token)).status_code == 401
        assert _login(api_client, password="Brand-New-Pass9").status_code == 200

    def test_change_password_policy(self, api_client, make_user):
        make_user("alice", password=PASSWORD)
        token = _login(api_client).json()["access_token"]
        resp = api_client.post(
            "/api/v1/auth/change-password",
            headers=_bearer(token),
            json={"current_password": PASSWORD, "new_password": "weak"},
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "password_policy"
