"""Tests for the request security gateway and CSRF guard."""

from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from farmgate import app as app_module
from farmgate.service.runtime import get_runtime
from farmgate.service.security import SECURITY_HEADERS, SecurityService


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def settings():
    return get_runtime().settings


def _assert_security_headers(response):
    for name, value in SECURITY_HEADERS.items():
        assert response.headers[name] == value
    assert "server" not in response.headers


class TestSecurityHeaders:
    def test_headers_on_success(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        _assert_security_headers(response)

    def test_headers_on_rejection(self, client):
        response = client.get("/healthz", headers={"User-Agent": "sqlmap/1.7"})
        assert response.status_code == 400
        _assert_security_headers(response)

    def test_headers_on_unhandled_error(self):
        app = app_module.create_app()

        async def explode():
            raise RuntimeError("ledger offline at /srv/farm/state")

        app.add_api_route("/explode", explode, methods=["GET"])
        response = TestClient(app, raise_server_exceptions=False).get("/explode")

        assert response.status_code == 500
        assert response.json()["error"] == {
            "code": "server_error",
            "message": "internal server error",
            "details": None,
        }
        _assert_security_headers(response)

    def test_correlation_id_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"


class TestHeaderValidation:
    @pytest.mark.parametrize(
        "agent", ["curl/8.4.0", "python-requests/2.31", "Googlebot/2.1", "Nikto", "Wget/1.21"]
    )
    def test_blocked_user_agents(self, client, agent):
        response = client.get("/healthz", headers={"User-Agent": agent})

        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "validation_error"
        assert body["error"]["message"] == "Security validation failed."

    def test_blank_user_agent(self, client):
        response = client.get("/healthz", headers={"User-Agent": "   "})
        assert response.status_code == 400

    def test_browser_user_agent_passes(self, client):
        response = client.get(
            "/healthz", headers={"User-Agent": "Mozilla/5.0 (X11; Linux x86_64)"}
        )
        assert response.status_code == 200


class TestTransport:
    def test_plain_http_rejected_without_dev_flag(self, client, settings, monkeypatch):
        monkeypatch.setattr(settings, "allow_http_dev", False)
        response = client.get("/healthz")
        assert response.status_code == 400

    def test_forwarded_https_accepted(self, client, settings, monkeypatch):
        monkeypatch.setattr(settings, "allow_http_dev", False)
        response = client.get("/healthz", headers={"X-Forwarded-Proto": "https"})
        assert response.status_code == 200


class TestRateLimit:
    def test_ceiling_per_client_address(self, client, settings, monkeypatch):
        monkeypatch.setattr(settings, "rate_limit_requests_per_minute", 3)
        for _ in range(3):
            assert client.get("/healthz").status_code == 200

        response = client.get("/healthz")
        assert response.status_code == 429
        assert response.json()["error"]["message"] == (
            "Rate limit exceeded. Please try again later."
        )
        _assert_security_headers(response)
        assert get_runtime().store.list_audit_events(action="RateLimitExceeded")

    def test_rejection_logged_once_per_window(self, client, settings, monkeypatch):
        monkeypatch.setattr(settings, "rate_limit_requests_per_minute", 1)
        statuses = [client.get("/healthz").status_code for _ in range(6)]

        assert statuses == [200, 429, 429, 429, 429, 429]
        events = get_runtime().store.list_audit_events(action="RateLimitExceeded")
        assert len(events) == 1

    def test_forwarded_addresses_counted_separately(self, client, settings, monkeypatch):
        monkeypatch.setattr(settings, "rate_limit_requests_per_minute", 1)
        first = client.get("/healthz", headers={"X-Forwarded-For": "10.0.0.1"})
        second = client.get("/healthz", headers={"X-Forwarded-For": "10.0.0.2, 10.0.0.1"})
        assert first.status_code == 200
        assert second.status_code == 200


class TestSuspiciousRequests:
    @pytest.mark.parametrize(
        "path",
        [
            "/v1/me?q=1 UNION SELECT password",
            "/healthz?next=javascript:void",
            "/v1/auth/csrf-token?x=<script>",
            "/v1/admin/drop-table",
        ],
    )
    def test_patterns_rejected(self, client, path):
        response = client.get(path)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"
        events = get_runtime().store.list_audit_events(action="SuspiciousActivity")
        assert len(events) == 1

    def test_volume_threshold(self, client, settings, monkeypatch):
        monkeypatch.setattr(settings, "suspicious_requests_per_minute", 2)
        assert client.get("/healthz").status_code == 200
        assert client.get("/healthz").status_code == 200
        assert client.get("/healthz").status_code == 400


class TestClientIp:
    def _request(self, headers, host="203.0.113.9"):
        return SimpleNamespace(
            headers=headers, client=SimpleNamespace(host=host) if host else None
        )

    def test_forwarded_for_first_entry(self):
        request = self._request({"x-forwarded-for": "198.51.100.1, 10.0.0.1"})
        assert SecurityService.client_ip(request) == "198.51.100.1"

    def test_real_ip(self):
        request = self._request({"x-real-ip": "198.51.100.7"})
        assert SecurityService.client_ip(request) == "198.51.100.7"

    def test_peer_address(self):
        assert SecurityService.client_ip(self._request({})) == "203.0.113.9"

    def test_unknown(self):
        assert SecurityService.client_ip(self._request({}, host=None)) == "unknown"


class TestCsrf:
    def test_unsafe_method_requires_token(self, client, settings, monkeypatch):
        monkeypatch.setattr(settings, "require_csrf", True)
        response = client.post(
            "/v1/auth/login", json={"email": "a@farm.io", "password": "x"}
        )
        assert response.status_code == 403
        assert get_runtime().store.list_audit_events(action="InvalidCSRFToken") == []

    def test_issued_token_is_accepted(self, client, settings, monkeypatch):
        monkeypatch.setattr(settings, "require_csrf", True)
        token = client.get("/v1/auth/csrf-token").json()["data"]["csrf_token"]

        response = client.post(
            "/v1/auth/login",
            json={"email": "a@farm.io", "password": "x"},
            headers={"X-CSRF-Token": token},
        )
        assert response.status_code == 401

    def test_forged_token_logged(self, client, settings, monkeypatch):
        monkeypatch.setattr(settings, "require_csrf", True)
        response = client.post(
            "/v1/auth/login",
            json={"email": "a@farm.io", "password": "x"},
            headers={"X-CSRF-Token": "forged"},
        )
        assert response.status_code == 403
        assert get_runtime().store.list_audit_events(action="InvalidCSRFToken")

    def test_bearer_requests_skip_csrf(self, client, settings, monkeypatch):
        monkeypatch.setattr(settings, "require_csrf", True)
        response = client.post(
            "/v1/auth/login",
            json={"email": "a@farm.io", "password": "x"},
            headers={"Authorization": "Bearer not-a-token!"},
        )
        assert response.status_code == 401
