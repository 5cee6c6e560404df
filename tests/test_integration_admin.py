"""Integration tests for SuperAdmin endpoints."""

import asyncio

import pytest
from fastapi.testclient import TestClient

from farmgate import app as app_module
from farmgate.service.runtime import get_runtime

ADMIN_EMAIL = "root@farm.io"
PASSWORD = "Harvest#2024"


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _token(client, email):
    response = client.post("/v1/auth/get-token", json={"email": email, "password": PASSWORD})
    assert response.status_code == 200
    return response.json()["data"]["token"]


@pytest.fixture
def admin_headers(client):
    outcome = asyncio.run(
        get_runtime().auth.seed_super_admin(ADMIN_EMAIL, "root", PASSWORD)
    )
    assert outcome.ok
    return {"Authorization": f"Bearer {_token(client, ADMIN_EMAIL)}"}


@pytest.fixture
def customer(client, outbox):
    email = "grower@farm.io"
    client.post(
        "/v1/auth/register",
        json={
            "email": email,
            "username": "grower",
            "password": PASSWORD,
            "first_name": "Ada",
            "last_name": "Field",
        },
    )
    code, _ = outbox[email][-1]
    response = client.post("/v1/auth/confirm-email", json={"email": email, "otp_code": code})
    assert response.status_code == 200
    return get_runtime().store.get_user_by_email(email)


class TestAdminAccess:
    def test_requires_authentication(self, client):
        response = client.get("/v1/admin/users")
        assert response.status_code == 401

    def test_customer_is_forbidden(self, client, customer):
        headers = {"Authorization": f"Bearer {_token(client, customer.email)}"}
        response = client.get("/v1/admin/users", headers=headers)

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_list_users(self, client, admin_headers, customer):
        response = client.get("/v1/admin/users", headers=admin_headers)

        assert response.status_code == 200
        emails = {item["email"] for item in response.json()["data"]["items"]}
        assert emails == {ADMIN_EMAIL, customer.email}


class TestRoleAssignment:
    def test_assign_data_entry_replaces_customer(self, client, admin_headers, customer):
        response = client.post(
            "/v1/admin/users/assign-data-entry",
            json={"email": customer.email},
            headers=admin_headers,
        )

        assert response.status_code == 200
        assert response.json()["data"]["user"]["roles"] == ["DataEntry"]

    def test_assign_twice_conflicts(self, client, admin_headers, customer):
        payload = {"email": customer.email}
        client.post("/v1/admin/users/assign-data-entry", json=payload, headers=admin_headers)
        response = client.post(
            "/v1/admin/users/assign-data-entry", json=payload, headers=admin_headers
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "conflict"

    def test_assign_unknown_user(self, client, admin_headers):
        response = client.post(
            "/v1/admin/users/assign-data-entry",
            json={"email": "nobody@farm.io"},
            headers=admin_headers,
        )
        assert response.status_code == 404


class TestActivation:
    def test_deactivate_then_activate(self, client, admin_headers, customer):
        response = client.post(
            f"/v1/admin/users/{customer.id}/deactivate", headers=admin_headers
        )
        assert response.status_code == 200
        assert response.json()["data"]["is_active"] is False

        login = client.post(
            "/v1/auth/login", json={"email": customer.email, "password": PASSWORD}
        )
        assert login.status_code == 401
        assert login.json()["error"]["message"] == "Account is deactivated"

        response = client.post(
            f"/v1/admin/users/{customer.id}/activate", headers=admin_headers
        )
        assert response.json()["data"]["is_active"] is True

    def test_admin_cannot_deactivate_self(self, client, admin_headers):
        admin = get_runtime().store.get_user_by_email(ADMIN_EMAIL)
        response = client.post(
            f"/v1/admin/users/{admin.id}/deactivate", headers=admin_headers
        )
        assert response.status_code == 400

    def test_unknown_user(self, client, admin_headers):
        response = client.post(
            "/v1/admin/users/missing-user/activate", headers=admin_headers
        )
        assert response.status_code == 404


class TestAuditTrail:
    def test_audit_lists_newest_first(self, client, admin_headers, customer):
        response = client.get("/v1/admin/audit?limit=3", headers=admin_headers)

        assert response.status_code == 200
        items = response.json()["data"]["items"]
        assert len(items) == 3
        actions = [item["action"] for item in items]
        assert actions == ["EmailConfirmed", "RegisterInitiated", "TokenGenerated"]
