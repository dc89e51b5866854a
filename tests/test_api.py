"""HTTP surface tests through FastAPI's TestClient against the in-memory runtime."""
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from fastapi import Request
from fastapi.testclient import TestClient

from conftest import make_member
from paysentry.api.routes import _client_origin
from paysentry.app import app
from paysentry.config import reset_settings_cache
from paysentry.service.login import GENERIC_FAILURE_MESSAGE
from paysentry.service.runtime import get_runtime
from paysentry.storage.models import AuthEvent, AuthEventType

PASSWORD = "CorrectHorse9!"


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def tenant():
    runtime = get_runtime()
    tenant = runtime.store.create_tenant("Acme Payroll")
    runtime.admin.seed_system_roles(tenant.id)
    return tenant


@pytest.fixture
def admin(tenant):
    runtime = get_runtime()
    org_admin = runtime.store.get_role_by_key(tenant.id, "org_admin")
    principal, _ = make_member(runtime.store, tenant.id, "admin@example.com", roles=[org_admin])
    runtime.identity.set_password(principal.id, PASSWORD)
    return principal


@pytest.fixture
def admin_headers(client, admin):
    return _bearer(client, "admin@example.com")


@pytest.fixture
def user(tenant):
    runtime = get_runtime()
    principal, _ = make_member(runtime.store, tenant.id, "u1@example.com")
    runtime.identity.set_password(principal.id, PASSWORD)
    return principal


def _error(resp):
    body = resp.json()
    assert body["status"] == "error"
    return body["error"]


def _login(client, email="u1@example.com", password=PASSWORD):
    return client.post("/v1/auth/login", json={"email": email, "password": password})


def _bearer(client, email):
    token = _login(client, email=email).json()["data"]["session_token"]
    return {"Authorization": f"Bearer {token}"}


class TestAuthRoutes:
    def test_login_touch_logout(self, client, user):
        resp = _login(client, email="U1@example.com")
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["principal_id"] == user.id
        token = data["session_token"]

        touched = client.post("/v1/auth/session/touch", json={"session_token": token})
        assert touched.json()["data"] == {"result": "valid"}

        out = client.post("/v1/auth/logout", json={"session_token": token})
        assert out.json()["data"] == {"revoked": True}
        expired = client.post("/v1/auth/session/touch", json={"session_token": token})
        assert expired.json()["data"] == {"result": "expired"}

    def test_login_failures_share_one_body(self, client, user):
        wrong = _login(client, password="bad-one")
        unknown = _login(client, email="nobody@example.com", password="bad-one")

        assert wrong.status_code == unknown.status_code == 401
        assert _error(wrong) == _error(unknown)
        assert _error(wrong)["message"] == GENERIC_FAILURE_MESSAGE

    def test_locked_account_gets_the_same_401(self, client, user, tenant):
        for _ in range(5):
            _login(client, password="bad-one")

        resp = _login(client)

        assert resp.status_code == 401
        assert _error(resp)["message"] == GENERIC_FAILURE_MESSAGE

    def test_missing_password_is_a_validation_error(self, client):
        resp = client.post("/v1/auth/login", json={"email": "u1@example.com"})
        assert resp.status_code == 400
        assert _error(resp)["code"] == "validation_error"

    def test_authorize(self, client, tenant, user):
        body = {"principal_id": user.id, "tenant_id": tenant.id, "action": "payroll.approve"}
        resp = client.post("/v1/authorize", json=body)
        assert resp.json()["data"] == {"allowed": False, "reason": "no_permission"}

        half_scope = client.post("/v1/authorize", json={**body, "scope_type": "company"})
        assert half_scope.status_code == 400


class TestAdminAccess:
    def test_missing_credentials(self, client, tenant):
        resp = client.get(f"/v1/tenants/{tenant.id}/roles")
        assert resp.status_code == 401
        assert _error(resp)["code"] == "unauthorized"

    def test_bare_principal_id_is_not_a_credential(self, client, tenant, admin, user):
        resp = client.post(
            f"/v1/tenants/{tenant.id}/principals/{user.id}/lock",
            json={"reason": "spoofed"},
            headers={"X-Admin-Principal": admin.id},
        )

        assert resp.status_code == 401
        assert get_runtime().lockout.is_locked(user.id) is False

    @pytest.mark.parametrize(
        "headers",
        [
            {"Authorization": "Bearer not-a-session"},
            {"Authorization": "Basic YWRtaW46cGFzcw=="},
            {"session_id": "not-a-session"},
        ],
    )
    def test_unknown_session_rejected(self, client, tenant, admin, headers):
        resp = client.get(f"/v1/tenants/{tenant.id}/roles", headers=headers)
        assert resp.status_code == 401
        assert _error(resp)["code"] == "unauthorized"

    def test_session_id_header_accepted(self, client, tenant, admin, admin_headers):
        token = admin_headers["Authorization"].split(" ", 1)[1]
        resp = client.get(f"/v1/tenants/{tenant.id}/roles", headers={"session_id": token})
        assert resp.status_code == 200

    def test_logged_out_session_rejected(self, client, tenant, admin_headers):
        token = admin_headers["Authorization"].split(" ", 1)[1]
        client.post("/v1/auth/logout", json={"session_token": token})

        resp = client.get(f"/v1/tenants/{tenant.id}/roles", headers=admin_headers)
        assert resp.status_code == 401

    def test_locked_admin_session_rejected(self, client, tenant, admin, admin_headers):
        get_runtime().store.lock_principal(
            admin.id, locked_by="ops", reason="review", now=datetime.now(timezone.utc)
        )
        resp = client.get(f"/v1/tenants/{tenant.id}/roles", headers=admin_headers)
        assert resp.status_code == 401

    def test_actor_without_permission(self, client, tenant, user):
        headers = _bearer(client, "u1@example.com")
        with patch("paysentry.api.routes.logger") as mock_logger:
            resp = client.get(f"/v1/tenants/{tenant.id}/roles", headers=headers)

        assert resp.status_code == 403
        err = _error(resp)
        assert err["code"] == "forbidden"
        assert err["details"] == {"permission": "admin.assign_roles", "reason": "no_permission"}
        assert mock_logger.warning.call_args[0][0] == "admin_access_denied"

    def test_admin_of_one_tenant_cannot_manage_another(self, client, admin_headers):
        other = get_runtime().store.create_tenant("Other Co")
        resp = client.get(f"/v1/tenants/{other.id}/roles", headers=admin_headers)
        assert resp.status_code == 403

    def test_lockout_routes_stay_inside_the_tenant(self, client, tenant, admin_headers):
        runtime = get_runtime()
        other = runtime.store.create_tenant("Other Co")
        victim, _ = make_member(runtime.store, other.id, "victim@example.com")
        base = f"/v1/tenants/{tenant.id}/principals/{victim.id}"

        locked = client.post(f"{base}/lock", json={"reason": "x"}, headers=admin_headers)
        status = client.get(f"{base}/lockout", headers=admin_headers)
        unlocked = client.post(f"{base}/unlock", headers=admin_headers)

        assert [r.status_code for r in (locked, status, unlocked)] == [404, 404, 404]
        assert runtime.lockout.is_locked(victim.id) is False


class TestClientOrigin:
    def test_forwarded_header_ignored_without_trusted_proxy(self, client, tenant):
        for i in range(6):
            client.post(
                "/v1/auth/login",
                json={"email": "nobody@example.com", "password": "bad-one"},
                headers={"X-Forwarded-For": f"198.51.100.{i}"},
            )

        events = get_runtime().store.auth_events
        assert {e.ip for e in events} == {"testclient"}
        assert events[-1].reason == "rate_limited"

    @pytest.mark.parametrize(
        "peer,forwarded,expected",
        [
            ("10.0.0.5", "198.51.100.7", "198.51.100.7"),
            ("10.0.0.5", "203.0.113.9, 198.51.100.7, 10.0.0.4", "198.51.100.7"),
            ("10.0.0.5", None, "10.0.0.5"),
            ("192.0.2.50", "198.51.100.7", "192.0.2.50"),
        ],
    )
    def test_trusted_proxy_hops(self, monkeypatch, peer, forwarded, expected):
        monkeypatch.setenv("TRUSTED_PROXIES", "10.0.0.0/8")
        reset_settings_cache()
        headers = [(b"x-forwarded-for", forwarded.encode())] if forwarded else []
        request = Request({"type": "http", "headers": headers, "client": (peer, 40000)})

        assert _client_origin(request) == expected


class TestRoleAndGrantRoutes:
    def test_role_crud_and_assignment(self, client, tenant, admin_headers, user):
        base = f"/v1/tenants/{tenant.id}"
        created = client.post(
            f"{base}/roles",
            json={"key": "clerk", "name": "Clerk", "permissions": ["payroll.view"]},
            headers=admin_headers,
        )
        assert created.status_code == 200
        role = created.json()["data"]
        assert role["permissions"] == ["payroll.view"]

        dup = client.post(f"{base}/roles", json={"key": "clerk", "name": "Clerk"}, headers=admin_headers)
        assert dup.status_code == 409
        bad = client.post(
            f"{base}/roles",
            json={"key": "weird", "name": "Weird", "permissions": ["nope.nope"]},
            headers=admin_headers,
        )
        assert bad.status_code == 400
        assert _error(bad)["details"] == {"unknown": ["nope.nope"]}

        attached = client.post(
            f"{base}/members/{user.id}/roles", json={"role_id": role["id"]}, headers=admin_headers
        )
        assert attached.json()["data"]["primary_role"] == "clerk"
        decision = client.post(
            "/v1/authorize",
            json={"principal_id": user.id, "tenant_id": tenant.id, "action": "payroll.view"},
        )
        assert decision.json()["data"]["allowed"] is True

        system_role = get_runtime().store.get_role_by_key(tenant.id, "viewer")
        assert client.delete(f"{base}/roles/{system_role.id}", headers=admin_headers).status_code == 403

        deleted = client.delete(f"{base}/roles/{role['id']}", headers=admin_headers)
        assert deleted.json()["data"] == {"deleted": True}

    def test_permission_catalogue(self, client, tenant, admin_headers):
        resp = client.get(f"/v1/tenants/{tenant.id}/permissions", headers=admin_headers)
        groups = resp.json()["data"]
        assert "payroll.approve" in groups["Payroll"]

    def test_grant_crud(self, client, tenant, admin, admin_headers, user):
        base = f"/v1/tenants/{tenant.id}/grants"
        created = client.post(
            base,
            json={"scope_key": "reports.view", "effect": "allow", "principal_id": user.id},
            headers=admin_headers,
        )
        grant = created.json()["data"]
        assert grant["target_type"] == "principal"
        assert grant["created_by"] == admin.id

        patched = client.patch(f"{base}/{grant['id']}", json={"effect": "deny"}, headers=admin_headers)
        assert patched.json()["data"]["effect"] == "deny"
        listed = client.get(base, params={"scope_key": "reports.view"}, headers=admin_headers)
        assert [g["id"] for g in listed.json()["data"]] == [grant["id"]]

        assert client.delete(f"{base}/{grant['id']}", headers=admin_headers).status_code == 200
        missing = client.delete(f"{base}/{grant['id']}", headers=admin_headers)
        assert missing.status_code == 404
        assert _error(missing)["code"] == "not_found"


class TestLicenseRoutes:
    def test_license_and_seats(self, client, tenant, admin, admin_headers, user):
        base = f"/v1/tenants/{tenant.id}"
        lic = client.put(f"{base}/license", json={"capacity": 1}, headers=admin_headers)
        assert lic.json()["data"]["capacity"] == 1

        seat = client.post(f"{base}/seats", json={"principal_id": user.id}, headers=admin_headers)
        assert seat.status_code == 200
        full = client.post(f"{base}/seats", json={"principal_id": admin.id}, headers=admin_headers)
        assert full.status_code == 409

        summary = client.get(f"{base}/license", headers=admin_headers).json()["data"]
        assert summary["seats_assigned"] == 1
        revoked = client.delete(f"{base}/seats/{user.id}", headers=admin_headers)
        assert revoked.json()["data"] == {"revoked": True}


class TestLockoutRoutes:
    def test_settings_and_manual_lock(self, client, tenant, admin, admin_headers, user):
        base = f"/v1/tenants/{tenant.id}"
        updated = client.patch(
            f"{base}/security-settings", json={"lockout_threshold": 3}, headers=admin_headers
        )
        assert updated.json()["data"]["lockout_threshold"] == 3

        token = _login(client).json()["data"]["session_token"]

        locked = client.post(
            f"{base}/principals/{user.id}/lock",
            json={"reason": "investigation"},
            headers=admin_headers,
        )
        status = locked.json()["data"]
        assert status["is_locked"] is True
        assert status["locked_by"] == admin.id
        touched = client.post("/v1/auth/session/touch", json={"session_token": token})
        assert touched.json()["data"] == {"result": "expired"}

        listing = client.get(f"{base}/locked-accounts", headers=admin_headers).json()["data"]
        assert [row["email"] for row in listing] == ["u1@example.com"]

        unlocked = client.post(f"{base}/principals/{user.id}/unlock", headers=admin_headers)
        assert unlocked.json()["data"]["is_locked"] is False
        assert unlocked.json()["data"]["failed_attempts"] == 0


class TestAuditRoutes:
    def test_event_listing_filters_and_pages(self, client, tenant, admin_headers):
        store = get_runtime().store
        base_time = datetime(2026, 1, 1, tzinfo=timezone.utc)
        for i in range(3):
            store.append_auth_event(
                AuthEvent(
                    event_type=AuthEventType.LOGIN_FAILED,
                    success=False,
                    tenant_id=tenant.id,
                    principal_id="p1",
                    timestamp=base_time + timedelta(minutes=i),
                )
            )
        store.append_auth_event(
            AuthEvent(event_type=AuthEventType.LOGIN_SUCCESS, success=True, tenant_id="elsewhere")
        )

        resp = client.get(
            f"/v1/tenants/{tenant.id}/auth-events",
            params={"event_type": "login_failed", "page": 1, "limit": 2},
            headers=admin_headers,
        )
        data = resp.json()["data"]
        assert data["total"] == 3
        assert len(data["items"]) == 2
        assert data["items"][0]["timestamp"].startswith("2026-01-01T00:02")

    def test_limit_above_maximum_rejected(self, client, tenant, admin_headers):
        resp = client.get(
            f"/v1/tenants/{tenant.id}/auth-events", params={"limit": 5000}, headers=admin_headers
        )
        assert resp.status_code == 400


def test_healthz_echoes_request_id(client):
    resp = client.get("/v1/healthz", headers={"X-Request-ID": "req-123"})
    assert resp.status_code == 200
    assert resp.headers["X-Request-ID"] == "req-123"
    assert resp.headers["X-Content-Type-Options"] == "nosniff"
    assert resp.json()["data"]["store"] == "MemoryStore"
