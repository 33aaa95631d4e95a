"""
Unit tests for back-office user management.

Tests cover:
- User creation with derived user_type and hashed password
- Partial updates, role changes and password-only changes
- Self-deactivation guard
"""

import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

from banking_api.src.exceptions import InvalidRequestError, NotFoundError
from banking_api.src.models.audit import AuditAction
from banking_api.src.models.auth import CreateUserRequest, UpdateUserRequest, UserDB
from banking_api.src.services.user_service import UserService
from conftest import make_user


def user_row(**fields) -> UserDB:
    values = {
        "id": uuid4(),
        "username": "grace",
        "email": "grace@example.com",
        "password_hash": "hashed",
        "created_at": datetime(2026, 1, 1, tzinfo=timezone.utc),
    }
    values.update(fields)
    return UserDB(**values)


@pytest.fixture
def user_repo():
    repo = MagicMock()
    repo.create_user = AsyncMock(side_effect=lambda **fields: user_row(
        username=fields["username"], user_type=fields["user_type"]
    ))
    repo.update_user = AsyncMock(return_value=None)
    repo.get_user_by_id = AsyncMock(return_value=None)
    repo.get_user_roles = AsyncMock(return_value=["customer"])
    repo.set_user_roles = AsyncMock()
    repo.list_users = AsyncMock(return_value=([], 0))
    return repo


@pytest.fixture
def auth_service():
    service = MagicMock()
    service.hash_password = MagicMock(return_value="bcrypt-hash")
    return service


@pytest.fixture
def audit_logger():
    return AsyncMock()


@pytest.fixture
def service(user_repo, auth_service, audit_logger):
    return UserService(user_repo, auth_service, audit_logger)


@pytest.fixture
def admin():
    return make_user(["admin"], user_type="admin")


class TestCreateUser:

    @pytest.mark.asyncio
    async def test_user_type_derived_from_roles(self, service, user_repo, admin, audit_logger):
        request = CreateUserRequest(
            username="grace",
            email="grace@example.com",
            password="Str0ng!Pass",
            roles=["compliance"],
        )

        response = await service.create_user(request, admin)

        fields = user_repo.create_user.await_args.kwargs
        assert fields["password_hash"] == "bcrypt-hash"
        assert fields["user_type"] == "staff"
        assert response.roles == ["compliance"]
        assert audit_logger.log_admin_action.await_args.kwargs["audit_action"] == AuditAction.USER_CREATED


class TestUpdateUser:

    @pytest.mark.asyncio
    async def test_missing_user(self, service, admin):
        with pytest.raises(NotFoundError):
            await service.update_user(uuid4(), UpdateUserRequest(full_name="Grace"), admin)

    @pytest.mark.asyncio
    async def test_role_change_rederives_user_type(self, service, user_repo, admin):
        target = user_row()
        user_repo.update_user.return_value = target

        response = await service.update_user(target.id, UpdateUserRequest(roles=["admin"]), admin)

        assert user_repo.update_user.await_args.kwargs == {"user_type": "admin"}
        user_repo.set_user_roles.assert_awaited_once_with(target.id, ["admin"])
        assert response.roles == ["admin"]

    @pytest.mark.asyncio
    async def test_password_only_change_is_audited_as_such(self, service, user_repo, admin, audit_logger):
        target = user_row()
        user_repo.update_user.return_value = target

        await service.update_user(target.id, UpdateUserRequest(password="N3w!Password"), admin)

        assert user_repo.update_user.await_args.kwargs == {"password_hash": "bcrypt-hash"}
        assert audit_logger.log_admin_action.await_args.kwargs["audit_action"] == AuditAction.PASSWORD_CHANGED

    @pytest.mark.asyncio
    async def test_cannot_deactivate_self_via_update(self, service, admin):
        with pytest.raises(InvalidRequestError):
            await service.update_user(admin.id, UpdateUserRequest(is_active=False), admin)


class TestDeactivateUser:

    @pytest.mark.asyncio
    async def test_self_deactivation(self, service, user_repo, admin):
        with pytest.raises(InvalidRequestError):
            await service.deactivate_user(admin.id, admin)
        user_repo.update_user.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_deactivates(self, service, user_repo, admin, audit_logger):
        target = user_row(is_active=False)
        user_repo.update_user.return_value = target

        response = await service.deactivate_user(target.id, admin)

        assert response.is_active is False
        user_repo.update_user.assert_awaited_once_with(target.id, is_active=False)
        assert audit_logger.log_admin_action.await_args.kwargs["audit_action"] == AuditAction.USER_DEACTIVATED
