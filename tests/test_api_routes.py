"""HTTP tests for the admin API: envelopes, status codes and permissions."""

import pytest
from fastapi.testclient import TestClient

from warden import app as app_module
from warden.service.runtime import get_runtime
from warden.storage.models import AdminPermission, AdminRole

AUDITOR = AdminRole(name="auditor", permissions=frozenset({AdminPermission.AUDIT_LOGS}))


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def seed_admin(password, roles):
    def _seed(email="ops@example.com", role=None):
        runtime = get_runtime()
        return runtime.accounts.create_account(
            email,
            runtime.auth.credentials.hash_password(password),
            (role or roles["super_admin"],),
        )

    return _seed


def _login(client, email, password):
    response = client.post("/v1/admin/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return response.json()["data"]


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestLogin:
    def test_login_returns_envelope(self, client, seed_admin, password):
        seed_admin()
        response = client.post(
            "/v1/admin/auth/login", json={"email": "OPS@example.com", "password": password}
        )
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        data = body["data"]
        assert data["success"] is True
        assert data["token"] and data["refresh_token"] and data["session_id"]
        assert data["admin"]["email"] == "ops@example.com"
        assert "credential_hash" not in data["admin"]

    def test_bad_password_is_401(self, client, seed_admin):
        seed_admin()
        response = client.post(
            "/v1/admin/auth/login", json={"email": "ops@example.com", "password": "nope"}
        )
        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "invalid_credentials"

    def test_unknown_email_matches_bad_password(self, client, seed_admin):
        seed_admin()
        known = client.post(
            "/v1/admin/auth/login", json={"email": "ops@example.com", "password": "nope"}
        ).json()
        unknown = client.post(
            "/v1/admin/auth/login", json={"email": "ghost@example.com", "password": "nope"}
        ).json()
        assert known["error"] == unknown["error"]

    def test_lockout_is_423(self, client, seed_admin):
        seed_admin()
        for _ in range(5):
            client.post(
                "/v1/admin/auth/login", json={"email": "ops@example.com", "password": "nope"}
            )
        response = client.post(
            "/v1/admin/auth/login", json={"email": "ops@example.com", "password": "nope"}
        )
        assert response.status_code == 423
        assert response.json()["error"]["code"] == "account_locked"

    def test_rate_limit_sets_retry_after(self, client):
        payload = {"email": "ghost@example.com", "password": "nope"}
        for _ in range(10):
            assert client.post("/v1/admin/auth/login", json=payload).status_code == 401
        response = client.post("/v1/admin/auth/login", json=payload)
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert int(response.headers["Retry-After"]) > 0

    def test_malformed_body_is_validation_error(self, client):
        response = client.post("/v1/admin/auth/login", json={"email": "not-an-email"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"


class TestSessionEndpoints:
    def test_me_requires_bearer(self, client):
        response = client.get("/v1/admin/auth/me")
        assert response.status_code == 401

    def test_me_returns_session(self, client, seed_admin, password):
        seed_admin()
        data = _login(client, "ops@example.com", password)
        response = client.get("/v1/admin/auth/me", headers=_bearer(data["token"]))
        assert response.status_code == 200
        session = response.json()["data"]
        assert session["session_id"] == data["session_id"]
        assert "manage_admins" in session["permissions"]

    def test_refresh_rotates_tokens(self, client, seed_admin, password):
        seed_admin()
        data = _login(client, "ops@example.com", password)
        response = client.post(
            "/v1/admin/auth/refresh", json={"refresh_token": data["refresh_token"]}
        )
        assert response.status_code == 200
        refreshed = response.json()["data"]
        assert refreshed["token_type"] == "bearer"
        assert refreshed["session_id"] != data["session_id"]

        replay = client.post(
            "/v1/admin/auth/refresh", json={"refresh_token": data["refresh_token"]}
        )
        assert replay.status_code == 401
        assert client.get("/v1/admin/auth/me", headers=_bearer(data["token"])).status_code == 401

    def test_logout_ends_session(self, client, seed_admin, password):
        seed_admin()
        data = _login(client, "ops@example.com", password)
        response = client.post("/v1/admin/auth/logout", headers=_bearer(data["token"]))
        assert response.json()["data"]["logged_out"] is True
        assert client.get("/v1/admin/auth/me", headers=_bearer(data["token"])).status_code == 401

    def test_revoke_sessions_requires_manage_admins(self, client, seed_admin, password):
        target = seed_admin()
        seed_admin("audit@example.com", AUDITOR)
        auditor = _login(client, "audit@example.com", password)
        _login(client, "ops@example.com", password)

        denied = client.delete(
            f"/v1/admin/auth/sessions/{target.id}", headers=_bearer(auditor["token"])
        )
        assert denied.status_code == 403
        assert denied.json()["error"]["code"] == "forbidden"

        other = client.get(
            "/v1/admin/auth/sessions",
            params={"admin_id": target.id},
            headers=_bearer(auditor["token"]),
        )
        assert other.status_code == 403


class TestSecurityEndpoints:
    def test_block_and_unblock_ip(self, client, seed_admin, password):
        seed_admin()
        token = _login(client, "ops@example.com", password)["token"]
        response = client.post(
            "/v1/admin/security/blocked-ips",
            json={"ip_address": "203.0.113.9", "reason": "abuse"},
            headers=_bearer(token),
        )
        assert response.json()["data"]["newly_blocked"] is True

        listed = client.get("/v1/admin/security/blocked-ips", headers=_bearer(token))
        assert "203.0.113.9" in [item["ipAddress"] for item in listed.json()["data"]["blocked"]]

        assert (
            client.delete(
                "/v1/admin/security/blocked-ips/203.0.113.9", headers=_bearer(token)
            ).status_code
            == 200
        )
        assert (
            client.delete(
                "/v1/admin/security/blocked-ips/203.0.113.9", headers=_bearer(token)
            ).status_code
            == 404
        )

    def test_acknowledge_unknown_alert_is_404(self, client, seed_admin, password):
        seed_admin()
        token = _login(client, "ops@example.com", password)["token"]
        response = client.post(
            "/v1/admin/security/alerts/missing/acknowledge", headers=_bearer(token)
        )
        assert response.status_code == 404

    def test_metrics(self, client, seed_admin, password):
        seed_admin()
        token = _login(client, "ops@example.com", password)["token"]
        response = client.get("/v1/admin/security/metrics", headers=_bearer(token))
        assert response.status_code == 200
        assert response.json()["data"]["successfulLogins"] == 1


class TestAuditEndpoints:
    def test_audit_logs_listing(self, client, seed_admin, password):
        seed_admin()
        token = _login(client, "ops@example.com", password)["token"]
        response = client.get(
            "/v1/admin/audit/logs", params={"action": "LOGIN_SUCCESS"}, headers=_bearer(token)
        )
        logs = response.json()["data"]["logs"]
        assert [entry["action"] for entry in logs] == ["LOGIN_SUCCESS"]

    def test_naive_date_bounds_are_accepted(self, client, seed_admin, password):
        seed_admin()
        token = _login(client, "ops@example.com", password)["token"]
        params = {"start_date": "2020-01-01T00:00:00"}
        response = client.get("/v1/admin/audit/logs", params=params, headers=_bearer(token))
        assert response.status_code == 200, response.text
        assert "LOGIN_SUCCESS" in [entry["action"] for entry in response.json()["data"]["logs"]]

        stats = client.get("/v1/admin/audit/stats", params=params, headers=_bearer(token))
        assert stats.status_code == 200, stats.text
        metrics = client.get(
            "/v1/admin/security/metrics",
            params={**params, "end_date": "2999-01-01T00:00:00"},
            headers=_bearer(token),
        )
        assert metrics.status_code == 200, metrics.text
        assert metrics.json()["data"]["successfulLogins"] == 1

    def test_export_csv(self, client, seed_admin, password):
        seed_admin()
        token = _login(client, "ops@example.com", password)["token"]
        response = client.get(
            "/v1/admin/audit/export", params={"format": "csv"}, headers=_bearer(token)
        )
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert "audit-logs.csv" in response.headers["content-disposition"]
        assert "LOGIN_SUCCESS" in response.text

    def test_export_rejects_unknown_format(self, client, seed_admin, password):
        seed_admin()
        token = _login(client, "ops@example.com", password)["token"]
        response = client.get(
            "/v1/admin/audit/export", params={"format": "xml"}, headers=_bearer(token)
        )
        assert response.status_code == 400


class TestAppPlumbing:
    def test_request_id_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["X-Frame-Options"] == "DENY"

    def test_error_envelope_carries_request_id(self, client):
        response = client.get("/v1/admin/auth/me", headers={"X-Request-ID": "req-456"})
        assert response.json()["request_id"] == "req-456"

    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["redis"]["status"] == "disabled"
