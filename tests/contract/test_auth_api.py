"""
Contract tests for authentication and platform endpoints.

Tests verify the API contract for:
- Login request/response schemas and status codes
- Bearer token handling (401) and permission checks (403)
- The uniform {"detail", "error_code"} error body
- Health, readiness and metrics endpoints without a database
"""

import pytest
from unittest.mock import AsyncMock

from fastapi.testclient import TestClient

from banking_api.src.dependencies import get_stats_service
from banking_api.src.main import app
from banking_api.src.models.auth import TokenResponse
from conftest import AUTH_HEADER

API = "/api/v1"


# ============================================================================
# LOGIN
# ============================================================================


class TestLoginContract:
    """POST /auth/login"""

    def test_successful_login(self, client, authenticate, customer):
        auth_service = authenticate(customer)
        auth_service.login.return_value = TokenResponse(access_token="header.payload.signature", expires_in=3600)

        response = client.post(f"{API}/auth/login", json={"username": "ada.lovelace", "password": "Secret123!"})

        assert response.status_code == 200
        assert response.json() == {
            "access_token": "header.payload.signature",
            "token_type": "bearer",
            "expires_in": 3600,
        }
        login_request, context = auth_service.login.await_args.args
        assert login_request.username == "ada.lovelace"
        assert context.ip_address

    def test_invalid_credentials(self, client, authenticate, customer):
        auth_service = authenticate(customer)
        auth_service.login.return_value = None

        response = client.post(f"{API}/auth/login", json={"username": "ada.lovelace", "password": "Wrong123!"})

        assert response.status_code == 401
        assert response.json() == {"detail": "Invalid credentials", "error_code": "HTTP_401"}
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_short_password_is_a_validation_error(self, client, authenticate, customer):
        authenticate(customer)

        response = client.post(f"{API}/auth/login", json={"username": "ada", "password": "short"})

        assert response.status_code == 422
        body = response.json()
        assert body["error_code"] == "VALIDATION_ERROR"
        assert body["detail"][0]["loc"] == ["body", "password"]


# ============================================================================
# AUTHENTICATION AND AUTHORIZATION
# ============================================================================


class TestBearerAuth:
    """Token handling shared by every protected route."""

    def test_missing_token(self, client):
        response = client.get(f"{API}/auth/me")

        assert response.status_code == 401
        assert response.json() == {"detail": "Missing authentication credentials", "error_code": "HTTP_401"}
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_invalid_token(self, client, authenticate):
        authenticate(None)

        response = client.get(f"{API}/auth/me", headers=AUTH_HEADER)

        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid authentication token"

    def test_me_returns_identity(self, client, authenticate, customer):
        auth_service = authenticate(customer)

        response = client.get(f"{API}/auth/me", headers=AUTH_HEADER)

        assert response.status_code == 200
        body = response.json()
        assert body["id"] == str(customer.id)
        assert body["roles"] == ["customer"]
        assert body["kyc_status"] == "verified"
        auth_service.get_current_user.assert_awaited_once_with("test-token")

    def test_inactive_user(self, client, authenticate, customer):
        authenticate(customer.model_copy(update={"is_active": False}))

        response = client.get(f"{API}/auth/me", headers=AUTH_HEADER)

        assert response.status_code == 403
        assert response.json()["detail"] == "User account is inactive"

    def test_missing_permission(self, client, authenticate, customer):
        authenticate(customer)

        response = client.get(f"{API}/admin/dashboard/stats", headers=AUTH_HEADER)

        assert response.status_code == 403
        assert response.json() == {"detail": "Permission denied: read:dashboard required", "error_code": "HTTP_403"}

    def test_correlation_id_is_echoed(self, client, authenticate, customer):
        authenticate(customer)

        response = client.get(f"{API}/auth/me", headers={**AUTH_HEADER, "X-Correlation-ID": "req-42"})

        assert response.headers["X-Correlation-ID"] == "req-42"


# ============================================================================
# ERROR BODIES
# ============================================================================


class TestErrorContract:
    """Failure modes that every router shares."""

    def test_database_unavailable_is_503(self, client, authenticate, admin):
        # Only auth is overridden, so the stats service needs the real pool
        authenticate(admin)

        response = client.get(f"{API}/admin/dashboard/stats", headers=AUTH_HEADER)

        assert response.status_code == 503
        assert response.json() == {"detail": "Database is not available", "error_code": "DATABASE_UNAVAILABLE"}

    def test_driver_connection_error_is_503(self, client, authenticate, override, admin):
        authenticate(admin)
        stats_service = AsyncMock()
        stats_service.get_stats.side_effect = ConnectionRefusedError("connection refused")
        override(get_stats_service, stats_service)

        response = client.get(f"{API}/admin/dashboard/stats", headers=AUTH_HEADER)

        assert response.status_code == 503
        assert response.json()["error_code"] == "DATABASE_UNAVAILABLE"

    def test_unexpected_error_is_500(self, authenticate, override, admin):
        authenticate(admin)
        stats_service = AsyncMock()
        stats_service.get_stats.side_effect = RuntimeError("boom")
        override(get_stats_service, stats_service)

        raw_client = TestClient(app, raise_server_exceptions=False)
        try:
            response = raw_client.get(f"{API}/admin/dashboard/stats", headers=AUTH_HEADER)
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 500
        assert response.json() == {"detail": "Internal server error", "error_code": "INTERNAL_ERROR"}

    def test_unknown_route(self, client):
        response = client.get(f"{API}/does-not-exist")

        assert response.status_code == 404
        assert response.json() == {"detail": "Not Found", "error_code": "HTTP_404"}


# ============================================================================
# HEALTH AND READINESS
# ============================================================================


class TestHealthEndpoints:
    """Liveness, readiness and metrics."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["environment"] == "test"

    def test_ready_without_database(self, client):
        response = client.get("/ready")

        assert response.status_code == 503
        body = response.json()
        assert body["status"] == "not_ready"
        assert body["checks"]["database"] == "unhealthy"

    def test_metrics(self, client):
        response = client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")

    @pytest.mark.parametrize("header", ["X-Content-Type-Options", "X-Frame-Options"])
    def test_security_headers(self, client, header):
        assert header in client.get("/health").headers
