"""
Back-office user management.
"""

import structlog
from typing import Any, Dict, List, Optional
from uuid import UUID

from banking_api.src.exceptions import InvalidRequestError, NotFoundError
from banking_api.src.models.audit import AuditAction, AuditContext
from banking_api.src.models.auth import (
    CreateUserRequest,
    CurrentUser,
    UpdateUserRequest,
    UserDB,
    UserListResponse,
    UserResponse,
)
from banking_api.src.repositories.user_repo import UserRepository
from banking_api.src.services.auth_service import AuthService, default_user_type

logger = structlog.get_logger(__name__)


def to_user_response(user: UserDB, roles: List[str]) -> UserResponse:
    return UserResponse(
        id=str(user.id),
        username=user.username,
        email=user.email,
        full_name=user.full_name,
        country=user.country,
        user_type=user.user_type,
        roles=roles,
        kyc_status=user.kyc_status,
        kyc_level=user.kyc_level,
        fee_tier=user.fee_tier,
        is_active=user.is_active,
        last_active_at=user.last_active_at,
        created_at=user.created_at,
        updated_at=user.updated_at,
    )


class UserService:
    """Create, read, update and deactivate users on behalf of an admin."""

    def __init__(self, user_repo: UserRepository, auth_service: AuthService, audit_logger=None):
        self.user_repo = user_repo
        self.auth_service = auth_service
        self.audit_logger = audit_logger

    async def create_user(
        self,
        request: CreateUserRequest,
        admin: CurrentUser,
        context: Optional[AuditContext] = None
    ) -> UserResponse:
        """
        Raises:
            ConflictError: If the username or email is taken
        """
        user = await self.user_repo.create_user(
            username=request.username,
            email=request.email,
            password_hash=self.auth_service.hash_password(request.password),
            roles=request.roles,
            user_type=request.user_type or default_user_type(request.roles),
            full_name=request.full_name,
            country=request.country,
        )
        await self._audit(
            admin,
            "create_user",
            user.id,
            {"username": user.username, "roles": request.roles},
            context,
            AuditAction.USER_CREATED,
        )
        return to_user_response(user, request.roles)

    async def list_users(self, limit: int, offset: int) -> UserListResponse:
        users, total = await self.user_repo.list_users(limit=limit, offset=offset)
        responses = [to_user_response(user, await self.user_repo.get_user_roles(user.id)) for user in users]
        return UserListResponse(users=responses, total=total, limit=limit, offset=offset)

    async def get_user(self, user_id: UUID) -> UserResponse:
        user = await self.user_repo.get_user_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return to_user_response(user, await self.user_repo.get_user_roles(user_id))

    async def update_user(
        self,
        user_id: UUID,
        request: UpdateUserRequest,
        admin: CurrentUser,
        context: Optional[AuditContext] = None
    ) -> UserResponse:
        """
        Apply the fields set on ``request``.

        A role change also re-derives the user's display type.

        Raises:
            NotFoundError: If the user does not exist
            ConflictError: If the new email is taken
        """
        changes = request.model_dump(exclude_unset=True)
        roles = changes.pop("roles", None)
        password = changes.pop("password", None)

        if request.is_active is False and user_id == admin.id:
            raise InvalidRequestError("You cannot deactivate your own account")

        fields: Dict[str, Any] = dict(changes)
        if password is not None:
            fields["password_hash"] = self.auth_service.hash_password(password)
        if roles is not None:
            fields["user_type"] = default_user_type(roles)

        user = await self.user_repo.update_user(user_id, **fields)
        if user is None:
            raise NotFoundError("User not found")

        if roles is not None:
            await self.user_repo.set_user_roles(user_id, roles)
        else:
            roles = await self.user_repo.get_user_roles(user_id)

        changed = sorted(request.model_fields_set)
        await self._audit(
            admin,
            "update_user",
            user_id,
            {"changed_fields": changed},
            context,
            AuditAction.PASSWORD_CHANGED if changed == ["password"] else AuditAction.USER_UPDATED,
        )
        return to_user_response(user, roles)

    async def deactivate_user(
        self,
        user_id: UUID,
        admin: CurrentUser,
        context: Optional[AuditContext] = None
    ) -> UserResponse:
        """
        Raises:
            InvalidRequestError: If an admin targets their own account
            NotFoundError: If the user does not exist
        """
        if user_id == admin.id:
            raise InvalidRequestError("You cannot deactivate your own account")

        user = await self.user_repo.update_user(user_id, is_active=False)
        if user is None:
            raise NotFoundError("User not found")

        await self._audit(
            admin,
            "deactivate_user",
            user_id,
            {"username": user.username},
            context,
            AuditAction.USER_DEACTIVATED,
        )
        logger.info("user_deactivated", user_id=str(user_id), admin_id=str(admin.id))
        return to_user_response(user, await self.user_repo.get_user_roles(user_id))

    async def _audit(
        self,
        admin: CurrentUser,
        action: str,
        user_id: UUID,
        details: Dict[str, Any],
        context: Optional[AuditContext],
        audit_action: AuditAction
    ) -> None:
        if self.audit_logger is None:
            return
        await self.audit_logger.log_admin_action(
            admin_id=admin.id,
            action=action,
            resource_type="user",
            resource_id=str(user_id),
            details=details,
            context=context,
            audit_action=audit_action,
        )
