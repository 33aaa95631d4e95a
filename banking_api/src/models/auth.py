"""
Authentication and user management models.

Provides both SQLAlchemy table definitions and Pydantic schemas for:
- User entities (database and API)
- Authentication requests and responses
- JWT tokens and payloads
- Roles and permissions
- Password validation

Uses SQLAlchemy 2.0 declarative syntax. Tables are rendered to PostgreSQL DDL
by banking_api.src.database; queries themselves go through asyncpg.
"""

from datetime import datetime
from typing import List, Optional
from uuid import UUID, uuid4
from enum import Enum
import re

from sqlalchemy import String, Boolean, DateTime, Table, Column, ForeignKey, Index, text
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from pydantic import BaseModel, Field, EmailStr, field_validator


# ============================================================================
# SQLAlchemy Base
# ============================================================================


class Base(DeclarativeBase):
    """Base class for all table definitions."""
    pass


# ============================================================================
# Role / Permission Enums
# ============================================================================


class Role(str, Enum):
    """
    User roles with hierarchical permissions.

    - SUPER_ADMIN: everything, including system maintenance
    - ADMIN: back office (users, fees, dashboards, accounts)
    - COMPLIANCE: KYC review, compliance alerts, audit trails
    - SUPPORT: read-only customer support
    - CUSTOMER: own accounts and transfers
    """
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    COMPLIANCE = "compliance"
    SUPPORT = "support"
    CUSTOMER = "customer"


class Permission(str, Enum):
    """Granular permissions for fine-grained access control."""

    # Customer permissions
    CREATE_TRANSFERS = "create:transfers"
    READ_OWN_ACCOUNTS = "read:own_accounts"
    SUBMIT_KYC = "submit:kyc"
    READ_FX = "read:fx"

    # Back-office read permissions
    READ_DASHBOARD = "read:dashboard"
    READ_AUDIT_LOGS = "read:audit_logs"
    READ_USERS = "read:users"
    READ_ALL_ACCOUNTS = "read:all_accounts"

    # Review permissions
    REVIEW_KYC = "review:kyc"
    REVIEW_COMPLIANCE = "review:compliance"

    # Administrative permissions
    MANAGE_USERS = "manage:users"
    MANAGE_FEES = "manage:fees"
    MANAGE_ACCOUNTS = "manage:accounts"
    MANAGE_SYSTEM = "manage:system"


class KycStatus(str, Enum):
    """Identity verification state of a user."""
    UNVERIFIED = "unverified"
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


ADMIN_USER_TYPES = frozenset({"admin", "super_admin", "super admin"})


# ============================================================================
# SQLAlchemy Models
# ============================================================================


user_roles = Table(
    "user_roles",
    Base.metadata,
    Column(
        "user_id",
        PGUUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        primary_key=True,
        nullable=False
    ),
    Column(
        "role",
        String(50),
        primary_key=True,
        nullable=False
    ),
    Column(
        "assigned_at",
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP")
    ),
    Index("idx_user_roles_user_id", "user_id"),
)


class User(Base):
    """
    User account.

    Staff and customers share this table; roles decide what they may do.
    user_type is the display classification used by the audit trail filter.
    """
    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
        server_default=text("gen_random_uuid()"),
        nullable=False
    )
    username: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    full_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    country: Mapped[Optional[str]] = mapped_column(String(2), nullable=True)
    user_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        server_default=text("'customer'")
    )
    kyc_status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        server_default=text("'unverified'")
    )
    kyc_level: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    fee_tier: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        server_default=text("'STANDARD'")
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        server_default=text("true")
    )
    last_active_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_users_is_active", "is_active"),
        Index("idx_users_last_active_at", "last_active_at"),
        Index("idx_users_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, username='{self.username}', email='{self.email}')>"


# ============================================================================
# Validation helpers
# ============================================================================

_SPECIAL_CHARS = r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>\/?]"


def _check_password_complexity(v: str) -> str:
    if len(v) < 8:
        raise ValueError("Password must be at least 8 characters long")
    if not re.search(r"[A-Z]", v):
        raise ValueError("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", v):
        raise ValueError("Password must contain at least one lowercase letter")
    if not re.search(r"\d", v):
        raise ValueError("Password must contain at least one digit")
    if not re.search(_SPECIAL_CHARS, v):
        raise ValueError("Password must contain at least one special character")
    return v


def _check_roles(v: List[str]) -> List[str]:
    valid_roles = {role.value for role in Role}
    for role in v:
        if role not in valid_roles:
            raise ValueError(f"Invalid role: {role}. Must be one of {sorted(valid_roles)}")
    return v


# ============================================================================
# Pydantic Request Models
# ============================================================================


class LoginRequest(BaseModel):
    """Login request schema."""
    username: str = Field(..., min_length=3, max_length=50, description="Username")
    password: str = Field(..., min_length=8, description="Password")

    model_config = {
        "json_schema_extra": {
            "example": {
                "username": "ops.admin",
                "password": "SecurePassword123!"
            }
        }
    }


class CreateUserRequest(BaseModel):
    """Create user request schema with password validation."""
    username: str = Field(..., min_length=3, max_length=50, description="Username (3-50 characters)")
    email: EmailStr = Field(..., description="Email address")
    password: str = Field(..., min_length=8, max_length=128, description="Password (minimum 8 characters)")
    full_name: Optional[str] = Field(None, max_length=255, description="Display name")
    country: Optional[str] = Field(None, pattern=r"^[A-Z]{2}$", description="ISO 3166 alpha-2 country")
    roles: List[str] = Field(default=["customer"], min_length=1, description="User roles")
    user_type: Optional[str] = Field(None, max_length=50, description="Display classification; derived from roles when omitted")

    @field_validator("username")
    @classmethod
    def validate_username(cls, v: str) -> str:
        """Validate username format."""
        if not re.match(r"^[a-zA-Z0-9_.-]+$", v):
            raise ValueError(
                "Username must contain only letters, numbers, dots, hyphens, and underscores"
            )
        return v

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        """Require upper, lower, digit and special characters."""
        return _check_password_complexity(v)

    @field_validator("roles")
    @classmethod
    def validate_roles(cls, v: List[str]) -> List[str]:
        return _check_roles(v)

    model_config = {
        "json_schema_extra": {
            "example": {
                "username": "jane.doe",
                "email": "jane@example.com",
                "password": "SecurePassword123!",
                "full_name": "Jane Doe",
                "country": "GB",
                "roles": ["customer"]
            }
        }
    }


class UpdateUserRequest(BaseModel):
    """Update user request schema with optional fields."""
    email: Optional[EmailStr] = Field(None, description="Email address")
    password: Optional[str] = Field(None, min_length=8, max_length=128, description="New password")
    full_name: Optional[str] = Field(None, max_length=255)
    country: Optional[str] = Field(None, pattern=r"^[A-Z]{2}$")
    roles: Optional[List[str]] = Field(None, min_length=1, description="User roles")
    fee_tier: Optional[str] = Field(None, pattern=r"^(STANDARD|SILVER|GOLD|PREMIUM)$")
    is_active: Optional[bool] = Field(None, description="Active status")

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return _check_password_complexity(v)

    @field_validator("roles")
    @classmethod
    def validate_roles(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is None:
            return v
        return _check_roles(v)


# ============================================================================
# Pydantic Response Models
# ============================================================================


class TokenResponse(BaseModel):
    """JWT token response schema."""
    access_token: str = Field(..., min_length=10, description="JWT access token")
    token_type: str = Field(default="bearer", description="Token type")
    expires_in: int = Field(..., gt=0, description="Token expiration time in seconds")

    model_config = {
        "json_schema_extra": {
            "example": {
                "access_token": "eyJhbGciOiJIUzI1NiIsInR5cCI6IkpXVCJ9...",
                "token_type": "bearer",
                "expires_in": 3600
            }
        }
    }


class UserResponse(BaseModel):
    """User information response schema."""
    id: str = Field(..., description="User ID (UUID)")
    username: str = Field(..., description="Username")
    email: str = Field(..., description="Email address")
    full_name: Optional[str] = None
    country: Optional[str] = None
    user_type: str = Field(..., description="Display classification")
    roles: List[str] = Field(..., description="User roles")
    kyc_status: str = Field(..., description="unverified|pending|verified|rejected")
    kyc_level: Optional[str] = None
    fee_tier: str = Field(..., description="Fee discount tier")
    is_active: bool = Field(..., description="Active status")
    last_active_at: Optional[datetime] = None
    created_at: datetime = Field(..., description="Creation timestamp")
    updated_at: Optional[datetime] = Field(None, description="Last update timestamp")


class UserListResponse(BaseModel):
    """Paginated user list."""
    users: List[UserResponse]
    total: int = Field(..., ge=0)
    limit: int
    offset: int


class ErrorResponse(BaseModel):
    """Error response schema."""
    detail: str = Field(..., min_length=1, description="Error message")
    error_code: Optional[str] = Field(None, description="Error code")

    model_config = {
        "json_schema_extra": {
            "example": {
                "detail": "Invalid credentials",
                "error_code": "AUTH_001"
            }
        }
    }


# ============================================================================
# Token / Identity Models
# ============================================================================


class TokenPayload(BaseModel):
    """JWT claims carried by access tokens."""
    sub: str = Field(..., description="Subject (user ID)")
    username: str = Field(..., description="Username")
    roles: List[str] = Field(default_factory=list, description="User roles")
    exp: int = Field(..., description="Expiration timestamp (Unix epoch)")
    iat: int = Field(..., description="Issued at timestamp (Unix epoch)")
    iss: Optional[str] = Field(None, description="Issuer")


class UserDB(BaseModel):
    """User row as loaded by the repository."""
    id: UUID
    username: str
    email: str
    password_hash: str
    full_name: Optional[str] = None
    country: Optional[str] = None
    user_type: str = "customer"
    kyc_status: str = KycStatus.UNVERIFIED.value
    kyc_level: Optional[str] = None
    fee_tier: str = "STANDARD"
    is_active: bool = True
    last_active_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    @property
    def display_name(self) -> str:
        return self.full_name or self.username or self.email


class CurrentUser(BaseModel):
    """
    Current authenticated user model.

    Used in request handlers to represent the authenticated user
    making the request. Injected via dependency injection.
    """
    id: UUID = Field(..., description="User ID")
    username: str = Field(..., description="Username")
    email: str = Field(..., description="Email address")
    roles: List[str] = Field(..., description="User roles")
    is_active: bool = Field(..., description="Active status")
    user_type: str = Field(default="customer")
    kyc_status: str = Field(default=KycStatus.UNVERIFIED.value)
    fee_tier: str = Field(default="STANDARD")
    country: Optional[str] = None

    model_config = {
        "from_attributes": True
    }
