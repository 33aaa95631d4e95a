"""
Shared fixtures for the Payvost API test suite.

Settings are read once per process, so the environment is prepared before
any application module is imported. No database is started: repositories
and services are replaced through FastAPI dependency overrides.
"""

import os

os.environ.setdefault("PAYVOST_API_ENVIRONMENT", "test")
os.environ.setdefault("PAYVOST_API_RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("PAYVOST_API_LOG_LEVEL", "WARNING")

from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, List
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from banking_api.src.dependencies import get_auth_service
from banking_api.src.main import app
from banking_api.src.models.accounts import AccountRecord, AccountStatus
from banking_api.src.models.auth import CurrentUser, Role

AUTH_HEADER = {"Authorization": "Bearer test-token"}


def make_user(roles: List[str], **overrides) -> CurrentUser:
    """CurrentUser with the given role names."""
    fields = {
        "id": uuid4(),
        "username": f"{roles[0]}.user" if roles else "nobody",
        "email": "user@payvost.test",
        "roles": roles,
        "is_active": True,
        "user_type": "customer",
        "kyc_status": "verified",
        "fee_tier": "STANDARD",
        "country": "US",
    }
    fields.update(overrides)
    return CurrentUser(**fields)


def make_account(user_id, currency: str = "USD", balance: str = "1000.00", **overrides) -> AccountRecord:
    fields = {
        "id": uuid4(),
        "user_id": user_id,
        "currency": currency,
        "balance": Decimal(balance),
        "status": AccountStatus.ACTIVE,
        "created_at": datetime(2026, 1, 1, tzinfo=timezone.utc),
    }
    fields.update(overrides)
    return AccountRecord(**fields)


@pytest.fixture
def customer() -> CurrentUser:
    return make_user([Role.CUSTOMER.value])


@pytest.fixture
def admin() -> CurrentUser:
    return make_user([Role.ADMIN.value], user_type="admin", fee_tier="GOLD")


@pytest.fixture
def compliance_officer() -> CurrentUser:
    return make_user([Role.COMPLIANCE.value], user_type="staff")


@pytest.fixture
def client():
    """
    Test client without the lifespan, so no database pool is opened.

    Overrides are cleared after each test.
    """
    test_client = TestClient(app)
    yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def authenticate() -> Callable[[CurrentUser], AsyncMock]:
    """
    Make bearer tokens resolve to ``user``.

    Returns the mocked auth service so tests can assert on it.
    """
    def _authenticate(user: CurrentUser) -> AsyncMock:
        auth_service = MagicMock()
        auth_service.get_current_user = AsyncMock(return_value=user)
        auth_service.login = AsyncMock()
        app.dependency_overrides[get_auth_service] = lambda: auth_service
        return auth_service

    return _authenticate


@pytest.fixture
def override() -> Callable:
    """Replace a dependency with a fixed object for the duration of a test."""
    def _override(dependency: Callable, replacement) -> None:
        app.dependency_overrides[dependency] = lambda: replacement

    return _override
