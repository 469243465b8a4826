"""
tests/test_api_routes.py -- Integration tests for the AuthVault HTTP API.

These tests exercise the full stack: FastAPI routing -> auth dependency injection
-> service layer -> CredentialStore -> response model serialization, plus the
error envelope produced by api/main.py's exception handlers.

Coverage:
  - Error envelope and status mapping (401 / 403 / 404 / 409 / 422)
  - Register, login, refresh, logout, me, status, verify-email
  - Two-factor enrollment and 2FA login over HTTP
  - Profile read/update/change-password/delete
  - API key lifecycle, whoami, scope enforcement, owner scoping
  - OAuth providers listing and callback redirect (mocked provider)

Fixtures used (from conftest.py):
  - api_client: TestClient over the real app with a module-private database
"""

from __future__ import annotations

import time
from unittest.mock import AsyncMock, MagicMock
from urllib.parse import parse_qs, urlparse

import pyotp
from conftest import STRONG_PASSWORD, bearer, register_and_login
from fastapi.testclient import TestClient

from auth.models import AuditAction


def _error(resp) -> dict:
    body = resp.json()
    assert "error" in body, f"Expected error envelope, got {body}"
    return body["error"]


class TestErrorEnvelope:
    """Every non-2xx answer uses {"error": {"code", "message", "detail"}}."""

    def test_me_unauthenticated(self, api_client: TestClient) -> None:
        resp = api_client.get("/api/v1/auth/me")
        assert resp.status_code == 401, f"Expected 401, got {resp.status_code}"
        assert _error(resp)["code"] == "authentication_required"
        assert resp.headers.get("WWW-Authenticate") == "Bearer"

    def test_garbage_token(self, api_client: TestClient) -> None:
        resp = api_client.get("/api/v1/auth/me", headers=bearer("not-a-jwt"))
        assert resp.status_code == 401
        assert _error(resp)["code"] == "token_invalid"

    def test_request_validation(self, api_client: TestClient) -> None:
        resp = api_client.post("/api/v1/auth/register", json={"email": "not-an-email", "password": "x"})
        assert resp.status_code == 422
        assert _error(resp)["code"] == "validation_error"

    def test_weak_password_rejected(self, api_client: TestClient) -> None:
        resp = api_client.post("/api/v1/auth/register", json={"email": "weak@example.com", "password": "alllowercase1!"})
        assert resp.status_code == 422, f"Expected 422, got {resp.status_code}: {resp.text}"


class TestRegisterAndLogin:
    def test_register_returns_user_without_secrets(self, api_client: TestClient) -> None:
        resp = api_client.post(
            "/api/v1/auth/register",
            json={"email": "New.User@Example.com", "password": STRONG_PASSWORD, "name": "New User"},
        )
        assert resp.status_code == 201, f"Expected 201, got {resp.status_code}: {resp.text}"
        body = resp.json()
        assert body["user"]["email"] == "new.user@example.com"
        assert body["user"]["email_verified"] is False
        assert "password" not in resp.text
        assert "verification_token" not in body

    def test_duplicate_email_conflict(self, api_client: TestClient) -> None:
        register_and_login(api_client, "dup@example.com")
        resp = api_client.post("/api/v1/auth/register", json={"email": "DUP@example.com", "password": STRONG_PASSWORD})
        assert resp.status_code == 409
        assert _error(resp)["code"] == "email_taken"

    def test_login_returns_tokens_no_store(self, api_client: TestClient) -> None:
        body = register_and_login(api_client, "login@example.com")
        assert body["requires_two_factor"] is False
        assert body["access_token"] and body["refresh_token"]
        assert body["token_type"] == "bearer"
        assert body["expires_in"] == 15 * 60
        resp = api_client.post("/api/v1/auth/login", json={"email": "login@example.com", "password": STRONG_PASSWORD})
        assert resp.headers.get("Cache-Control") == "no-store"

    def test_wrong_password_and_unknown_email_identical(self, api_client: TestClient) -> None:
        register_and_login(api_client, "same@example.com")
        wrong = api_client.post("/api/v1/auth/login", json={"email": "same@example.com", "password": "Wr0ng!Pass"})
        unknown = api_client.post("/api/v1/auth/login", json={"email": "ghost@example.com", "password": "Wr0ng!Pass"})
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json() == unknown.json()

    def test_lockout_after_five_failures(self, api_client: TestClient) -> None:
        register_and_login(api_client, "lock@example.com")
        for _ in range(5):
            api_client.post("/api/v1/auth/login", json={"email": "lock@example.com", "password": "Wr0ng!Pass"})
        resp = api_client.post("/api/v1/auth/login", json={"email": "lock@example.com", "password": STRONG_PASSWORD})
        assert resp.status_code == 403, f"Expected 403, got {resp.status_code}: {resp.text}"
        assert _error(resp)["code"] == "account_locked"

    def test_me_and_status(self, api_client: TestClient) -> None:
        tokens = register_and_login(api_client, "me@example.com")
        me = api_client.get("/api/v1/auth/me", headers=bearer(tokens["access_token"]))
        assert me.status_code == 200
        assert me.json()["email"] == "me@example.com"

        anon = api_client.get("/api/v1/auth/status")
        assert anon.json() == {"authenticated": False, "user": None}
        signed_in = api_client.get("/api/v1/auth/status", headers=bearer(tokens["access_token"]))
        assert signed_in.json()["authenticated"] is True

    def test_verify_email(self, api_client: TestClient) -> None:
        # the token travels by mail, never in an HTTP response, so mint one through the service
        registration = api_client.app.state.sessions.register("verify@example.com", STRONG_PASSWORD)
        store = api_client.app.state.credential_store
        resp = api_client.get("/api/v1/auth/verify-email", params={"token": registration.verification_token})
        assert resp.status_code == 200, f"Expected 200, got {resp.status_code}: {resp.text}"
        assert resp.json()["email_verified"] is True
        assert store.find_user_by_email("verify@example.com").email_verified is True
        again = api_client.get("/api/v1/auth/verify-email", params={"token": registration.verification_token})
        assert again.status_code == 401


class TestRefreshAndLogout:
    def test_refresh_rotates_and_old_access_token_dies(self, api_client: TestClient) -> None:
        tokens = register_and_login(api_client, "rotate@example.com")
        resp = api_client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert resp.status_code == 200, f"Expected 200, got {resp.status_code}: {resp.text}"
        new = resp.json()
        assert api_client.get("/api/v1/auth/me", headers=bearer(new["access_token"])).status_code == 200
        assert api_client.get("/api/v1/auth/me", headers=bearer(tokens["access_token"])).status_code == 401

    def test_access_token_rejected_by_refresh(self, api_client: TestClient) -> None:
        tokens = register_and_login(api_client, "mixup@example.com")
        resp = api_client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["access_token"]})
        assert resp.status_code == 401
        assert _error(resp)["code"] == "token_type_mismatch"

    def test_logout_revokes_session(self, api_client: TestClient) -> None:
        tokens = register_and_login(api_client, "bye@example.com")
        resp = api_client.post("/api/v1/auth/logout", headers=bearer(tokens["access_token"]))
        assert resp.status_code == 200
        after = api_client.get("/api/v1/auth/me", headers=bearer(tokens["access_token"]))
        assert after.status_code == 401
        assert _error(after)["code"] == "session_revoked"
        refresh = api_client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert refresh.status_code == 401


class TestTwoFactorRoutes:
    def test_enroll_then_login_with_code(self, api_client: TestClient) -> None:
        tokens = register_and_login(api_client, "totp@example.com")
        headers = bearer(tokens["access_token"])

        init = api_client.post("/api/v1/auth/2fa/init", headers=headers)
        assert init.status_code == 200, f"Expected 200, got {init.status_code}: {init.text}"
        secret = init.json()["secret"]
        assert init.json()["qr_code"].startswith("data:image/png;base64,")

        live = pyotp.TOTP(secret)
        accepted = {live.now(), live.at(time.time() - 30), live.at(time.time() + 30)}
        wrong = next(c for c in ("000000", "111111", "222222", "333333") if c not in accepted)
        bad = api_client.post("/api/v1/auth/2fa/enable", json={"code": wrong}, headers=headers)
        assert bad.status_code == 401, f"Expected 401, got {bad.status_code}: {bad.text}"

        enable = api_client.post("/api/v1/auth/2fa/enable", json={"code": pyotp.TOTP(secret).now()}, headers=headers)
        assert enable.status_code == 200, f"Expected 200, got {enable.status_code}: {enable.text}"
        backup_codes = enable.json()["backup_codes"]
        assert len(backup_codes) == 10

        status = api_client.get("/api/v1/auth/2fa/status", headers=headers).json()
        assert status == {"state": "ENABLED", "backup_codes_remaining": 10}

        first = api_client.post("/api/v1/auth/login", json={"email": "totp@example.com", "password": STRONG_PASSWORD})
        assert first.status_code == 200
        assert first.json()["requires_two_factor"] is True
        assert first.json()["access_token"] is None

        second = api_client.post(
            "/api/v1/auth/login",
            json={"email": "totp@example.com", "password": STRONG_PASSWORD, "two_factor_code": backup_codes[0]},
        )
        assert second.status_code == 200
        assert second.json()["access_token"]

        replay = api_client.post(
            "/api/v1/auth/login",
            json={"email": "totp@example.com", "password": STRONG_PASSWORD, "two_factor_code": backup_codes[0]},
        )
        assert replay.status_code == 401

        disable = api_client.post("/api/v1/auth/2fa/disable", json={"password": STRONG_PASSWORD}, headers=headers)
        assert disable.status_code == 200
        plain = api_client.post("/api/v1/auth/login", json={"email": "totp@example.com", "password": STRONG_PASSWORD})
        assert plain.json()["requires_two_factor"] is False

    def test_enable_without_init(self, api_client: TestClient) -> None:
        tokens = register_and_login(api_client, "noinit@example.com")
        resp = api_client.post("/api/v1/auth/2fa/enable", json={"code": "123456"}, headers=bearer(tokens["access_token"]))
        assert resp.status_code == 422
        assert _error(resp)["code"] == "two_factor_not_pending"


class TestProfileRoutes:
    def test_update_and_read_back(self, api_client: TestClient) -> None:
        tokens = register_and_login(api_client, "profile@example.com")
        headers = bearer(tokens["access_token"])
        resp = api_client.patch(
            "/api/v1/profile",
            json={"phone_number": "+82-10-1234-5678", "bio": "hello", "website": "https://example.com", "language": "ko"},
            headers=headers,
        )
        assert resp.status_code == 200, f"Expected 200, got {resp.status_code}: {resp.text}"
        body = api_client.get("/api/v1/profile", headers=headers).json()
        assert body["phone_number"] == "+82-10-1234-5678"
        assert body["website"].startswith("https://example.com")
        assert body["language"] == "ko"

        store = api_client.app.state.credential_store
        raw = store.get_profile(body["user"]["id"]).phone_number
        assert raw != "+82-10-1234-5678"
        assert raw.count(":") == 2, "Stored phone number must be a nonce:tag:ciphertext envelope"

    def test_unknown_and_invalid_fields_rejected(self, api_client: TestClient) -> None:
        tokens = register_and_login(api_client, "strict@example.com")
        headers = bearer(tokens["access_token"])
        assert api_client.patch("/api/v1/profile", json={"email": "x@example.com"}, headers=headers).status_code == 422
        assert api_client.patch("/api/v1/profile", json={"date_of_birth": "1990-02-31"}, headers=headers).status_code == 422
        assert api_client.patch("/api/v1/profile", json={"phone_number": "call me"}, headers=headers).status_code == 422

    def test_change_password_revokes_all_sessions(self, api_client: TestClient) -> None:
        tokens = register_and_login(api_client, "chpw@example.com")
        headers = bearer(tokens["access_token"])
        resp = api_client.post(
            "/api/v1/profile/change-password",
            json={"current_password": STRONG_PASSWORD, "new_password": "N3w!Password"},
            headers=headers,
        )
        assert resp.status_code == 200, f"Expected 200, got {resp.status_code}: {resp.text}"
        assert api_client.get("/api/v1/auth/me", headers=headers).status_code == 401
        login = api_client.post("/api/v1/auth/login", json={"email": "chpw@example.com", "password": "N3w!Password"})
        assert login.status_code == 200

    def test_delete_account(self, api_client: TestClient) -> None:
        tokens = register_and_login(api_client, "gone@example.com")
        headers = bearer(tokens["access_token"])
        wrong = api_client.request("DELETE", "/api/v1/profile", json={"password": "Wr0ng!Pass"}, headers=headers)
        assert wrong.status_code == 401
        resp = api_client.request("DELETE", "/api/v1/profile", json={"password": STRONG_PASSWORD}, headers=headers)
        assert resp.status_code == 200, f"Expected 200, got {resp.status_code}: {resp.text}"
        assert api_client.get("/api/v1/auth/me", headers=headers).status_code == 401
        store = api_client.app.state.credential_store
        assert store.find_user_by_email("gone@example.com") is None
        assert store.list_audit_logs(action=AuditAction.ACCOUNT_DELETE)


class TestApiKeyRoutes:
    def test_lifecycle(self, api_client: TestClient) -> None:
        tokens = register_and_login(api_client, "keys@example.com")
        headers = bearer(tokens["access_token"])

        created = api_client.post("/api/v1/api-keys", json={"name": "ci runner", "scopes": ["read"]}, headers=headers)
        assert created.status_code == 201, f"Expected 201, got {created.status_code}: {created.text}"
        raw_key = created.json()["api_key"]
        key_id = created.json()["metadata"]["id"]
        assert created.json()["metadata"]["key_preview"] == raw_key[:8] + "..."

        listed = api_client.get("/api/v1/api-keys", headers=headers)
        assert listed.status_code == 200
        assert raw_key not in listed.text

        whoami = api_client.get("/api/v1/api-keys/whoami", headers={"X-API-Key": raw_key})
        assert whoami.status_code == 200, f"Expected 200, got {whoami.status_code}: {whoami.text}"
        assert whoami.json()["email"] == "keys@example.com"

        deactivated = api_client.patch(f"/api/v1/api-keys/{key_id}/deactivate", headers=headers)
        assert deactivated.status_code == 200
        assert deactivated.json()["is_active"] is False
        assert api_client.get("/api/v1/api-keys/whoami", headers={"X-API-Key": raw_key}).status_code == 401

        deleted = api_client.delete(f"/api/v1/api-keys/{key_id}", headers=headers)
        assert deleted.status_code == 200
        assert api_client.get("/api/v1/api-keys", headers=headers).json() == []

    def test_scope_enforced(self, api_client: TestClient) -> None:
        tokens = register_and_login(api_client, "scoped@example.com")
        created = api_client.post(
            "/api/v1/api-keys", json={"name": "writer", "scopes": ["write"]}, headers=bearer(tokens["access_token"])
        )
        resp = api_client.get("/api/v1/api-keys/whoami", headers={"X-API-Key": created.json()["api_key"]})
        assert resp.status_code == 403
        assert _error(resp)["code"] == "insufficient_scope"

    def test_missing_api_key_header(self, api_client: TestClient) -> None:
        resp = api_client.get("/api/v1/api-keys/whoami")
        assert resp.status_code == 401

    def test_other_users_key_is_not_found(self, api_client: TestClient) -> None:
        owner = register_and_login(api_client, "owner@example.com")
        intruder = register_and_login(api_client, "intruder@example.com")
        created = api_client.post("/api/v1/api-keys", json={"name": "private"}, headers=bearer(owner["access_token"]))
        key_id = created.json()["metadata"]["id"]
        for resp in (
            api_client.patch(f"/api/v1/api-keys/{key_id}/deactivate", headers=bearer(intruder["access_token"])),
            api_client.delete(f"/api/v1/api-keys/{key_id}", headers=bearer(intruder["access_token"])),
        ):
            assert resp.status_code == 404, f"Expected 404, got {resp.status_code}"

    def test_bad_scope_rejected(self, api_client: TestClient) -> None:
        tokens = register_and_login(api_client, "badscope@example.com")
        resp = api_client.post(
            "/api/v1/api-keys", json={"name": "nope", "scopes": ["root"]}, headers=bearer(tokens["access_token"])
        )
        assert resp.status_code == 422


class TestOAuthRoutes:
    def test_providers_public_and_empty_when_unconfigured(self, api_client: TestClient) -> None:
        resp = api_client.get("/api/v1/auth/providers")
        assert resp.status_code == 200
        assert resp.json() == []

    def test_unconfigured_provider_is_404(self, api_client: TestClient) -> None:
        api_client.app.state.oauth.create_client.return_value = None
        resp = api_client.get("/api/v1/auth/oauth/google", follow_redirects=False)
        assert resp.status_code == 404

    def _mock_google(self, api_client: TestClient, userinfo: dict) -> None:
        provider = MagicMock()
        provider.authorize_access_token = AsyncMock(return_value={"access_token": "at", "userinfo": userinfo})
        api_client.app.state.oauth.create_client.return_value = provider

    def test_callback_redirects_with_tokens_in_fragment(self, api_client: TestClient) -> None:
        self._mock_google(api_client, {"sub": "g-42", "email": "oauth@example.com", "email_verified": True, "name": "O"})
        resp = api_client.get("/api/v1/auth/oauth/google/callback", follow_redirects=False)
        assert resp.status_code == 302, f"Expected 302, got {resp.status_code}: {resp.text}"
        location = urlparse(resp.headers["location"])
        assert location.path == "/auth/callback"
        assert location.query == ""
        fragment = parse_qs(location.fragment)
        me = api_client.get("/api/v1/auth/me", headers=bearer(fragment["access_token"][0]))
        assert me.status_code == 200
        assert me.json()["provider"] == "GOOGLE"
        assert me.json()["email_verified"] is True

    def test_callback_with_unverified_email_redirects_to_error(self, api_client: TestClient) -> None:
        self._mock_google(api_client, {"sub": "g-43", "email": "shady@example.com", "email_verified": False})
        resp = api_client.get("/api/v1/auth/oauth/google/callback", follow_redirects=False)
        assert resp.status_code == 302
        assert urlparse(resp.headers["location"]).path == "/auth/error"
        assert api_client.app.state.credential_store.find_user_by_email("shady@example.com") is None
