"""
Authentication service for user authentication and JWT token management.

Provides:
- Password hashing and verification (passlib + bcrypt)
- JWT token creation and validation
- User authentication with audit of every attempt
- Role hierarchy and permission checks
"""

import structlog
from typing import Dict, FrozenSet, List, Optional, Set
from datetime import datetime, timedelta, timezone
from uuid import UUID
from passlib.context import CryptContext
from jose import JWTError, jwt
from pydantic import ValidationError

from banking_api.src.config import get_settings
from banking_api.src.models.audit import AuditAction, AuditContext, AuditSeverity
from banking_api.src.models.auth import (
    UserDB, CurrentUser, TokenPayload, Role, Permission,
    LoginRequest, TokenResponse
)
from banking_api.src.repositories.user_repo import UserRepository

logger = structlog.get_logger(__name__)


# Roles directly below each role. Inheritance is transitive.
ROLE_HIERARCHY: Dict[Role, List[Role]] = {
    Role.SUPER_ADMIN: [Role.ADMIN],
    Role.ADMIN: [Role.COMPLIANCE, Role.SUPPORT, Role.CUSTOMER],
    Role.COMPLIANCE: [],
    Role.SUPPORT: [],
    Role.CUSTOMER: [],
}

ROLE_PERMISSIONS: Dict[Role, FrozenSet[Permission]] = {
    Role.CUSTOMER: frozenset({
        Permission.CREATE_TRANSFERS,
        Permission.READ_OWN_ACCOUNTS,
        Permission.SUBMIT_KYC,
        Permission.READ_FX,
    }),
    Role.SUPPORT: frozenset({
        Permission.READ_USERS,
        Permission.READ_ALL_ACCOUNTS,
        Permission.READ_FX,
    }),
    Role.COMPLIANCE: frozenset({
        Permission.READ_AUDIT_LOGS,
        Permission.READ_USERS,
        Permission.READ_ALL_ACCOUNTS,
        Permission.REVIEW_KYC,
        Permission.REVIEW_COMPLIANCE,
        Permission.READ_FX,
    }),
    Role.ADMIN: frozenset({
        Permission.READ_DASHBOARD,
        Permission.MANAGE_USERS,
        Permission.MANAGE_FEES,
        Permission.MANAGE_ACCOUNTS,
    }),
    Role.SUPER_ADMIN: frozenset({
        Permission.MANAGE_SYSTEM,
    }),
}


def effective_roles(role: Role) -> Set[Role]:
    """The role itself plus every role it inherits, transitively."""
    seen: Set[Role] = set()
    stack = [role]
    while stack:
        current = stack.pop()
        if current in seen:
            continue
        seen.add(current)
        stack.extend(ROLE_HIERARCHY.get(current, []))
    return seen


def get_role_permissions(role: Role) -> Set[Permission]:
    """
    Get all permissions for a role including inherited permissions.

    Args:
        role: Role to get permissions for

    Returns:
        Set of permissions
    """
    permissions: Set[Permission] = set()
    for inherited in effective_roles(role):
        permissions.update(ROLE_PERMISSIONS.get(inherited, frozenset()))
    return permissions


def permissions_for(user_roles: List[str]) -> Set[Permission]:
    """Union of permissions over role names; unknown names are ignored."""
    all_permissions: Set[Permission] = set()
    for role_name in user_roles or []:
        try:
            role = Role(role_name)
        except ValueError:
            logger.warning("invalid_role_name", role=role_name)
            continue
        all_permissions.update(get_role_permissions(role))
    return all_permissions


def has_permission(user_roles: List[str], required_permission: Permission) -> bool:
    """
    Check if user has required permission based on their roles.

    Args:
        user_roles: List of role names
        required_permission: Required permission

    Returns:
        True if user has permission, False otherwise
    """
    granted = required_permission in permissions_for(user_roles)
    logger.debug(
        "permission_check",
        roles=user_roles,
        permission=required_permission.value,
        granted=granted
    )
    return granted


def has_any_permission(user_roles: List[str], required_permissions: List[Permission]) -> bool:
    if not required_permissions:
        return False
    granted = permissions_for(user_roles)
    return any(permission in granted for permission in required_permissions)


def default_user_type(roles: List[str]) -> str:
    """Display classification for a new user when none is given."""
    if Role.SUPER_ADMIN.value in roles:
        return "super_admin"
    if Role.ADMIN.value in roles:
        return "admin"
    if Role.COMPLIANCE.value in roles or Role.SUPPORT.value in roles:
        return "staff"
    return "customer"


class AuthService:
    """Service for authentication and authorization operations."""

    def __init__(self, user_repo: UserRepository, audit_logger=None):
        """
        Initialize auth service.

        Args:
            user_repo: User repository
            audit_logger: Optional AuditLogger for login events
        """
        self.user_repo = user_repo
        self.audit_logger = audit_logger
        self.settings = get_settings()

        self.pwd_context = CryptContext(
            schemes=["bcrypt"],
            deprecated="auto",
            bcrypt__rounds=self.settings.password_bcrypt_rounds
        )

    def hash_password(self, password: str) -> str:
        hashed = self.pwd_context.hash(password)
        logger.debug("password_hashed")
        return hashed

    def verify_password(self, plain_password: str, hashed_password: str) -> bool:
        """
        Verify a password against its hash.

        Malformed hashes count as a mismatch.
        """
        try:
            verified = self.pwd_context.verify(plain_password, hashed_password)
        except ValueError as e:
            logger.error("password_verify_failed", error=str(e))
            return False
        logger.debug("password_verified", verified=verified)
        return verified

    def create_access_token(
        self,
        user_id: UUID,
        username: str,
        roles: List[str],
        expires_delta: Optional[timedelta] = None
    ) -> str:
        """
        Create JWT access token.

        Args:
            user_id: User ID
            username: Username
            roles: User roles
            expires_delta: Custom expiration time (optional)

        Returns:
            JWT token string
        """
        if expires_delta is None:
            expires_delta = timedelta(minutes=self.settings.jwt_access_token_expire_minutes)

        now = datetime.now(timezone.utc)
        expire = now + expires_delta

        payload = {
            "sub": str(user_id),
            "username": username,
            "roles": roles,
            "exp": int(expire.timestamp()),
            "iat": int(now.timestamp()),
            "iss": self.settings.jwt_issuer,
        }

        token = jwt.encode(
            payload,
            self.settings.jwt_secret_key,
            algorithm=self.settings.jwt_algorithm
        )

        logger.info(
            "access_token_created",
            user_id=str(user_id),
            username=username,
            expires_in=expires_delta.total_seconds()
        )
        return token

    def decode_token(self, token: str) -> Optional[TokenPayload]:
        """
        Decode and validate JWT token.

        Returns:
            Token payload or None if invalid or expired
        """
        try:
            payload = jwt.decode(
                token,
                self.settings.jwt_secret_key,
                algorithms=[self.settings.jwt_algorithm],
                issuer=self.settings.jwt_issuer
            )
            token_payload = TokenPayload(**payload)
        except JWTError as e:
            logger.warning("token_decode_failed", error=str(e))
            return None
        except ValidationError as e:
            logger.warning("token_claims_invalid", error=str(e))
            return None

        logger.debug("token_decoded", user_id=token_payload.sub)
        return token_payload

    async def authenticate_user(self, login_request: LoginRequest) -> Optional[UserDB]:
        """
        Authenticate user with username and password.

        Returns:
            User if authenticated, None otherwise
        """
        user = await self.user_repo.get_user_by_username(login_request.username)

        if not user:
            logger.warning("authentication_failed_user_not_found", username=login_request.username)
            return None

        if not user.is_active:
            logger.warning("authentication_failed_user_inactive", username=login_request.username)
            return None

        if not self.verify_password(login_request.password, user.password_hash):
            logger.warning("authentication_failed_invalid_password", username=login_request.username)
            return None

        logger.info("user_authenticated", user_id=str(user.id), username=user.username)
        return user

    async def login(
        self,
        login_request: LoginRequest,
        context: Optional[AuditContext] = None
    ) -> Optional[TokenResponse]:
        """
        Login user and create access token.

        Both outcomes are audited; a successful login also refreshes the
        user's last_active_at.

        Returns:
            Token response or None if authentication failed
        """
        user = await self.authenticate_user(login_request)

        if not user:
            if self.audit_logger is not None:
                await self.audit_logger.log_security_event(
                    action=AuditAction.LOGIN_FAILED,
                    severity=AuditSeverity.MEDIUM,
                    description=f"Failed login for '{login_request.username}'",
                    context=context,
                    details={"username": login_request.username}
                )
            return None

        roles = await self.user_repo.get_user_roles(user.id)
        access_token = self.create_access_token(
            user_id=user.id,
            username=user.username,
            roles=roles
        )
        await self.user_repo.touch_last_active(user.id)

        if self.audit_logger is not None:
            await self.audit_logger.log_security_event(
                action=AuditAction.LOGIN_SUCCESS,
                severity=AuditSeverity.LOW,
                user_id=user.id,
                description="User logged in",
                context=_with_identity(context, user)
            )

        logger.info("login_success", user_id=str(user.id), username=user.username)

        return TokenResponse(
            access_token=access_token,
            token_type="bearer",
            expires_in=self.settings.jwt_access_token_expire_minutes * 60
        )

    async def get_current_user(self, token: str) -> Optional[CurrentUser]:
        """
        Get current user from JWT token.

        Roles are re-read from the database so revocations apply
        immediately rather than at token expiry.

        Returns:
            Current user or None if the token or user is invalid
        """
        payload = self.decode_token(token)
        if not payload:
            logger.warning("get_current_user_failed_invalid_token")
            return None

        try:
            user_id = UUID(payload.sub)
        except ValueError:
            logger.warning("get_current_user_failed_invalid_user_id", user_id=payload.sub)
            return None

        user = await self.user_repo.get_user_by_id(user_id)
        if not user:
            logger.warning("get_current_user_failed_user_not_found", user_id=str(user_id))
            return None

        if not user.is_active:
            logger.warning("get_current_user_failed_user_inactive", user_id=str(user_id))
            return None

        roles = await self.user_repo.get_user_roles(user.id)

        logger.debug("current_user_retrieved", user_id=str(user.id), username=user.username)
        return CurrentUser(
            id=user.id,
            username=user.username,
            email=user.email,
            roles=roles,
            is_active=user.is_active,
            user_type=user.user_type,
            kyc_status=user.kyc_status,
            fee_tier=user.fee_tier,
            country=user.country
        )


def _with_identity(context: Optional[AuditContext], user: UserDB) -> AuditContext:
    base = context or AuditContext()
    return base.model_copy(update={"user_name": user.display_name, "user_type": user.user_type})
