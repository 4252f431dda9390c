"""Integration tests for admin endpoints and the health probe."""

import pytest
from fastapi.testclient import TestClient

from credvault import app as app_module
from credvault.service.runtime import get_runtime

PASSWORD = "AdminPassword123!"


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _signup(client, email, username):
    response = client.post(
        "/v1/auth/register",
        json={"email": email, "username": username, "password": PASSWORD},
    )
    assert response.status_code == 201
    return response.json()["data"]["id"]


def _login(client, email):
    response = client.post(
        "/v1/auth/login",
        json={"email": email, "password": PASSWORD, "include_refresh_token": True},
    )
    assert response.status_code == 200
    return response.json()["data"]


@pytest.fixture
def admin_headers(client):
    admin_id = _signup(client, "admin@example.com", "admin")
    get_runtime().store.update_user_role(admin_id, "admin")
    token = _login(client, "admin@example.com")["access_token"]
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def member(client):
    user_id = _signup(client, "member@example.com", "member")
    session = _login(client, "member@example.com")
    return {
        "id": user_id,
        "refresh_token": session["refresh_token"],
        "headers": {"Authorization": f"Bearer {session['access_token']}"},
    }


class TestAdminUsers:
    def test_list_users(self, client, admin_headers, member):
        response = client.get("/v1/admin/users", headers=admin_headers)
        assert response.status_code == 200
        emails = {item["email"] for item in response.json()["data"]["items"]}
        assert emails == {"admin@example.com", "member@example.com"}

    def test_list_users_forbidden_for_members(self, client, member):
        response = client.get("/v1/admin/users", headers=member["headers"])
        assert response.status_code == 403
        assert response.json()["error"]["details"]["kind"] == "insufficient_role"


class TestRoleAssignment:
    def test_promote_signs_target_out(self, client, admin_headers, member):
        response = client.post(
            f"/v1/admin/users/{member['id']}/role",
            json={"role": "admin"},
            headers=admin_headers,
        )
        assert response.status_code == 200
        assert response.json()["data"]["role"] == "admin"

        stale = client.post("/v1/auth/refresh", json={"refresh_token": member["refresh_token"]})
        assert stale.status_code == 401

        relogin = _login(client, "member@example.com")
        assert relogin["role"] == "admin"

    def test_member_cannot_promote(self, client, member):
        other_id = _signup(client, "other@example.com", "other")
        response = client.post(
            f"/v1/admin/users/{other_id}/role",
            json={"role": "admin"},
            headers=member["headers"],
        )
        assert response.status_code == 403
        assert get_runtime().store.get_user(other_id).role == "user"

    def test_invalid_role(self, client, admin_headers, member):
        response = client.post(
            f"/v1/admin/users/{member['id']}/role",
            json={"role": "superuser"},
            headers=admin_headers,
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_unknown_user(self, client, admin_headers):
        response = client.post(
            "/v1/admin/users/does-not-exist/role",
            json={"role": "admin"},
            headers=admin_headers,
        )
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"


class TestHealth:
    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"] == {"status": "healthy", "type": "memory"}
        assert body["checks"]["redis"] == {"status": "not_configured"}
        assert response.headers["Cache-Control"].startswith("no-store")

    def test_healthz_reports_store_failure(self, client, monkeypatch):
        def _broken():
            raise OSError("disk gone")

        monkeypatch.setattr(get_runtime().store, "verify_connection", _broken)
        response = client.get("/healthz")
        assert response.status_code == 503
        assert response.json()["checks"]["database"]["status"] == "unhealthy"
