"""
tests/test_api_routes.py — Monitoring API Route Tests
=======================================================
Integration tests for the admin monitoring API using the FastAPI
TestClient over a fully wired runtime.

These tests verify:
- Auth guards on every admin endpoint
- Response structure of the health, security, audit and rate-limit routes
- JWT secret validation at app creation
"""

from __future__ import annotations

import pytest
from conftest import GUILD_ID, TEST_JWT_SECRET, make_admin_token
from fastapi.testclient import TestClient

from tasklink.api.deps import load_jwt_secret
from tasklink.api.main import create_app
from tasklink.engine.audit import AuditEventType
from tasklink.runtime import build_health


@pytest.fixture
def client(runtime):
    return TestClient(create_app(runtime, jwt_secret=TEST_JWT_SECRET), raise_server_exceptions=False)


@pytest.fixture
def non_admin_token():
    return make_admin_token("67890", "RegularUser", is_admin=False)


def _auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


# ===========================================================================
# Health endpoint
# ===========================================================================
class TestHealthEndpoint:
    def test_unknown_before_monitor_exists(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "unknown"
        assert body["components"] == {}
        assert body["uptime_seconds"] >= 0

    def test_snapshot_once_monitor_exists(self, client, runtime):
        build_health(runtime)
        body = client.get("/api/health").json()
        assert body["status"] == "unhealthy"
        assert "database" in body["components"]


# ===========================================================================
# Auth guards
# ===========================================================================
ADMIN_ROUTES = [
    ("GET", "/api/security/stats"),
    ("GET", "/api/security/events"),
    ("DELETE", f"/api/security/lockdowns/{GUILD_ID}"),
    ("GET", "/api/audit"),
    ("GET", "/api/rate-limits"),
]


class TestAuthGuards:
    @pytest.mark.parametrize("method, path", ADMIN_ROUTES)
    def test_missing_token(self, client, method, path):
        resp = client.request(method, path)
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Missing token"

    @pytest.mark.parametrize("method, path", ADMIN_ROUTES)
    def test_invalid_token(self, client, method, path):
        resp = client.request(method, path, headers=_auth("not-a-jwt"))
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Invalid token"

    def test_token_signed_with_other_secret(self, client):
        import jwt

        token = jwt.encode({"sub": "1", "is_admin": True}, "another-secret-" + "y" * 40, algorithm="HS256")
        assert client.get("/api/security/stats", headers=_auth(token)).status_code == 401

    @pytest.mark.parametrize("method, path", ADMIN_ROUTES)
    def test_non_admin(self, client, non_admin_token, method, path):
        resp = client.request(method, path, headers=_auth(non_admin_token))
        assert resp.status_code == 403
        assert resp.json()["detail"] == "Not admin"


# ===========================================================================
# Security routes
# ===========================================================================
class TestSecurityRoutes:
    def test_stats(self, client, admin_token):
        resp = client.get("/api/security/stats", headers=_auth(admin_token))
        assert resp.status_code == 200
        assert set(resp.json()) == {"security", "permissions", "alerts", "audit", "backend", "cache"}

    def test_events_newest_first(self, client, runtime, admin_token):
        runtime.monitor.trigger_emergency_lockdown(GUILD_ID, "raid", 60)
        runtime.monitor.trigger_emergency_lockdown("5002", "raid", 60)
        body = client.get("/api/security/events", headers=_auth(admin_token)).json()
        assert body["count"] == 2
        assert [e["guild_id"] for e in body["events"]] == ["5002", GUILD_ID]

    def test_events_filtered(self, client, runtime, admin_token):
        runtime.monitor.trigger_emergency_lockdown(GUILD_ID, "raid", 60)
        runtime.monitor.trigger_emergency_lockdown("5002", "raid", 60)
        resp = client.get(
            "/api/security/events",
            params={"guild_id": GUILD_ID, "min_severity": "critical"},
            headers=_auth(admin_token),
        )
        assert resp.json()["count"] == 1

    def test_events_limit_bounds(self, client, admin_token):
        resp = client.get("/api/security/events", params={"limit": 0}, headers=_auth(admin_token))
        assert resp.status_code == 422

    def test_lift_lockdown(self, client, runtime, admin_token):
        runtime.monitor.trigger_emergency_lockdown(GUILD_ID, "raid", 60)
        resp = client.delete(f"/api/security/lockdowns/{GUILD_ID}", headers=_auth(admin_token))
        assert resp.status_code == 200
        assert resp.json() == {"guild_id": GUILD_ID, "lifted": True, "lifted_by": "api:99999"}
        assert not runtime.monitor.is_guild_locked(GUILD_ID)

    def test_lift_without_lockdown(self, client, admin_token):
        resp = client.delete(f"/api/security/lockdowns/{GUILD_ID}", headers=_auth(admin_token))
        assert resp.status_code == 404


# ===========================================================================
# Audit & rate limits
# ===========================================================================
class TestAuditRoute:
    def test_reads_stored_entries(self, client, runtime, admin_token):
        runtime.audit.log(AuditEventType.TASK_CREATED, user_id="1001", guild_id=GUILD_ID, success=True)
        runtime.audit.log(AuditEventType.COMMUNITY_LINKED, user_id="1002", guild_id=GUILD_ID, success=True)
        runtime.audit.flush_sync()

        body = client.get("/api/audit", headers=_auth(admin_token)).json()
        assert body["count"] == 2

        body = client.get("/api/audit", params={"user_id": "1001"}, headers=_auth(admin_token)).json()
        assert [e["type"] for e in body["entries"]] == [AuditEventType.TASK_CREATED]

    def test_limit_bounds(self, client, admin_token):
        resp = client.get("/api/audit", params={"limit": 1001}, headers=_auth(admin_token))
        assert resp.status_code == 422


class TestRateLimitRoute:
    def test_statistics_only(self, client, admin_token):
        body = client.get("/api/rate-limits", headers=_auth(admin_token)).json()
        assert set(body) == {"statistics"}

    def test_identifier_windows(self, client, runtime, admin_token):
        runtime.limiter.check("1001", "command")
        body = client.get("/api/rate-limits", params={"identifier": "1001"}, headers=_auth(admin_token)).json()
        assert body["identifier"] == "1001"
        assert body["violations"] == 0
        command = body["windows"]["command"]
        assert command["allowed"] is True
        assert (command["limit"], command["remaining"]) == (5, 4)


# ===========================================================================
# JWT secret validation
# ===========================================================================
class TestJwtSecret:
    def test_strong_secret_accepted(self):
        assert load_jwt_secret({"JWT_SECRET": TEST_JWT_SECRET}) == TEST_JWT_SECRET

    @pytest.mark.parametrize("secret", ["", "change-me", "secret", "short-but-not-weak"])
    def test_rejected(self, secret):
        with pytest.raises(RuntimeError):
            load_jwt_secret({"JWT_SECRET": secret})

    def test_missing(self):
        with pytest.raises(RuntimeError, match="not set"):
            load_jwt_secret({})

    def test_app_requires_secret(self, runtime):
        with pytest.raises(RuntimeError):
            create_app(runtime, env={})
