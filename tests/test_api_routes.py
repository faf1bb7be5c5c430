"""
tests/test_api_routes.py -- Integration tests for the /auth routes.

These tests exercise the full stack: FastAPI routing -> request model
validation -> AuthService -> CredentialStore -> response model serialization
and the error envelope from api/main.py's exception handlers.

Coverage:
  - register/login/refresh/logout/me happy paths and status codes
  - error envelope shape and codes: 400, 401, 404, 409, 422
  - verify-email, resend-verification
  - forgot-password, validate-reset-token, reset-password
  - Cache-Control: no-store on token responses

Fixtures used (from conftest.py):
  - api_client: (client, gateway) -- TestClient over the real app and a
    RecordingGateway that captures emailed links. The database is shared
    by every test in this module, so each test registers its own email.
"""

from __future__ import annotations

from fastapi.testclient import TestClient

PASSWORD = "s3cure-pass"


def token_from_link(link: str) -> str:
    return link.rsplit("/", 1)[1]


def _register(client: TestClient, email: str, password: str = PASSWORD) -> dict:
    resp = client.post("/auth/register", json={"email": email, "password": password, "first_name": "Test"})
    assert resp.status_code == 201, f"Expected 201, got {resp.status_code}: {resp.text}"
    return resp.json()


def _auth(access_token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {access_token}"}


class TestRegisterRoute:
    def test_register_returns_tokens(self, api_client) -> None:
        client, _gateway = api_client
        resp = client.post("/auth/register", json={"email": "reg@example.com", "password": PASSWORD})
        assert resp.status_code == 201, f"Expected 201, got {resp.status_code}: {resp.text}"
        assert resp.headers["cache-control"] == "no-store"
        data = resp.json()
        assert data["token_type"] == "bearer"
        assert data["access_token"] and data["refresh_token"]
        assert data["expires_in"] > 0
        assert data["user"]["email"] == "reg@example.com"
        assert data["user"]["email_verified"] is False
        assert "password_hash" not in data["user"], "Hash must never be serialized"

    def test_duplicate_email_is_409(self, api_client) -> None:
        client, _gateway = api_client
        _register(client, "dupe@example.com")
        resp = client.post("/auth/register", json={"email": "DUPE@example.com", "password": PASSWORD})
        assert resp.status_code == 409, f"Expected 409, got {resp.status_code}: {resp.text}"
        assert resp.json()["error"]["code"] == "email_in_use"

    def test_weak_password_is_400_with_rules(self, api_client) -> None:
        client, _gateway = api_client
        resp = client.post("/auth/register", json={"email": "weak@example.com", "password": "short"})
        assert resp.status_code == 400, f"Expected 400, got {resp.status_code}: {resp.text}"
        error = resp.json()["error"]
        assert error["code"] == "weak_password"
        assert "at least 8 characters" in error["detail"]

    def test_invalid_email_is_400(self, api_client) -> None:
        client, _gateway = api_client
        resp = client.post("/auth/register", json={"email": "not-an-email", "password": PASSWORD})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_missing_field_is_422(self, api_client) -> None:
        client, _gateway = api_client
        resp = client.post("/auth/register", json={"email": "missing@example.com"})
        assert resp.status_code == 422
        error = resp.json()["error"]
        assert error["code"] == "validation_error"
        assert "password" in error["detail"]


class TestLoginRoute:
    def test_login_valid_credentials(self, api_client) -> None:
        client, _gateway = api_client
        _register(client, "login@example.com")
        resp = client.post("/auth/login", json={"email": "login@example.com", "password": PASSWORD})
        assert resp.status_code == 200, f"Expected 200, got {resp.status_code}: {resp.text}"
        assert resp.headers["cache-control"] == "no-store"
        assert resp.json()["user"]["email"] == "login@example.com"

    def test_password_with_surrounding_spaces_round_trips(self, api_client) -> None:
        client, _gateway = api_client
        spaced = "  s3cure-pass  "
        _register(client, "  spaced@example.com ", password=spaced)
        resp = client.post("/auth/login", json={"email": "spaced@example.com", "password": spaced})
        assert resp.status_code == 200, f"Expected 200, got {resp.status_code}: {resp.text}"
        stripped = client.post("/auth/login", json={"email": "spaced@example.com", "password": spaced.strip()})
        assert stripped.status_code == 401, "Spaces are part of the password"

    def test_wrong_password_and_unknown_user_share_one_response(self, api_client) -> None:
        client, _gateway = api_client
        _register(client, "login2@example.com")
        wrong = client.post("/auth/login", json={"email": "login2@example.com", "password": "wrong-pass-1"})
        unknown = client.post("/auth/login", json={"email": "ghost@example.com", "password": PASSWORD})
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json() == unknown.json()
        assert wrong.json()["error"]["code"] == "bad_credentials"


class TestSessionRoutes:
    def test_me_requires_bearer_token(self, api_client) -> None:
        client, _gateway = api_client
        resp = client.get("/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"
        assert resp.headers["www-authenticate"] == "Bearer"

    def test_me_with_garbage_token(self, api_client) -> None:
        client, _gateway = api_client
        resp = client.get("/auth/me", headers=_auth("garbage"))
        assert resp.status_code == 401

    def test_me_returns_current_user(self, api_client) -> None:
        client, _gateway = api_client
        registered = _register(client, "me@example.com")
        resp = client.get("/auth/me", headers=_auth(registered["access_token"]))
        assert resp.status_code == 200, f"Expected 200, got {resp.status_code}: {resp.text}"
        assert resp.json()["id"] == registered["user"]["id"]

    def test_refresh_rotates_and_detects_reuse(self, api_client) -> None:
        client, _gateway = api_client
        registered = _register(client, "refresh@example.com")
        old = registered["refresh_token"]

        first = client.post("/auth/refresh", json={"refresh_token": old})
        assert first.status_code == 200, f"Expected 200, got {first.status_code}: {first.text}"
        new = first.json()["refresh_token"]
        assert new != old

        replay = client.post("/auth/refresh", json={"refresh_token": old})
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "invalid_session"

        # Reuse revoked the whole family, successor included.
        after = client.post("/auth/refresh", json={"refresh_token": new})
        assert after.status_code == 401

    def test_logout_revokes_refresh_token(self, api_client) -> None:
        client, _gateway = api_client
        registered = _register(client, "logout@example.com")
        resp = client.post("/auth/logout", json={"refresh_token": registered["refresh_token"]})
        assert resp.status_code == 204
        again = client.post("/auth/refresh", json={"refresh_token": registered["refresh_token"]})
        assert again.status_code == 401

    def test_logout_by_query_param_and_bearer(self, api_client) -> None:
        client, _gateway = api_client
        registered = _register(client, "logout2@example.com")
        resp = client.post(
            "/auth/logout",
            params={"refresh_token": registered["refresh_token"]},
            headers=_auth(registered["access_token"]),
        )
        assert resp.status_code == 204
        again = client.post("/auth/refresh", json={"refresh_token": registered["refresh_token"]})
        assert again.status_code == 401

    def test_logout_without_anything_is_204(self, api_client) -> None:
        client, _gateway = api_client
        assert client.post("/auth/logout").status_code == 204
        assert client.post("/auth/logout", json={"refresh_token": "unknown"}).status_code == 204


class TestVerificationRoutes:
    def test_verify_email_once(self, api_client) -> None:
        client, gateway = api_client
        _register(client, "verify@example.com")
        token = token_from_link(gateway.verifications[-1][1])

        resp = client.get(f"/auth/verify-email/{token}")
        assert resp.status_code == 200, f"Expected 200, got {resp.status_code}: {resp.text}"
        assert resp.json()["email_verified"] is True

        again = client.get(f"/auth/verify-email/{token}")
        assert again.status_code == 404
        assert again.json()["error"]["code"] == "token_not_found"

    def test_resend_unknown_email_is_404(self, api_client) -> None:
        client, _gateway = api_client
        resp = client.post("/auth/resend-verification", json={"email": "nobody@example.com"})
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_resend_sends_new_link(self, api_client) -> None:
        client, gateway = api_client
        _register(client, "resend@example.com")
        before = len(gateway.verifications)
        resp = client.post("/auth/resend-verification", json={"email": "resend@example.com"})
        assert resp.status_code == 204
        assert len(gateway.verifications) == before + 1

    def test_resend_after_verification_is_400(self, api_client) -> None:
        client, gateway = api_client
        _register(client, "verified@example.com")
        client.get(f"/auth/verify-email/{token_from_link(gateway.verifications[-1][1])}")
        resp = client.post("/auth/resend-verification", json={"email": "verified@example.com"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "already_verified"


class TestPasswordResetRoutes:
    def test_forgot_password_unknown_email_is_204(self, api_client) -> None:
        client, gateway = api_client
        before = len(gateway.resets)
        resp = client.post("/auth/forgot-password", json={"email": "nobody@example.com"})
        assert resp.status_code == 204
        assert len(gateway.resets) == before

    def test_validate_unknown_reset_token_is_404(self, api_client) -> None:
        client, _gateway = api_client
        resp = client.get("/auth/validate-reset-token/never-issued")
        assert resp.status_code == 404

    def test_full_reset_flow(self, api_client) -> None:
        client, gateway = api_client
        registered = _register(client, "reset@example.com")

        assert client.post("/auth/forgot-password", json={"email": "reset@example.com"}).status_code == 204
        token = token_from_link(gateway.resets[-1][1])

        assert client.get(f"/auth/validate-reset-token/{token}").status_code == 204

        resp = client.post("/auth/reset-password", json={"token": token, "new_password": "n3w-password"})
        assert resp.status_code == 204, f"Expected 204, got {resp.status_code}: {resp.text}"

        assert client.post("/auth/login", json={"email": "reset@example.com", "password": PASSWORD}).status_code == 401
        assert (
            client.post("/auth/login", json={"email": "reset@example.com", "password": "n3w-password"}).status_code
            == 200
        )
        # Sessions from before the reset are gone.
        stale = client.post("/auth/refresh", json={"refresh_token": registered["refresh_token"]})
        assert stale.status_code == 401
        # The token is spent.
        reuse = client.post("/auth/reset-password", json={"token": token, "new_password": "an0ther-password"})
        assert reuse.status_code == 404

    def test_reset_with_weak_password_is_400(self, api_client) -> None:
        client, gateway = api_client
        _register(client, "reset-weak@example.com")
        client.post("/auth/forgot-password", json={"email": "reset-weak@example.com"})
        token = token_from_link(gateway.resets[-1][1])
        resp = client.post("/auth/reset-password", json={"token": token, "new_password": "weak"})
        assert resp.status_code == 400
        assert client.get(f"/auth/validate-reset-token/{token}").status_code == 204
