"""
Audit logging models.

Provides both SQLAlchemy table definitions and Pydantic schemas for:
- Audit log entries (financial, security and admin events)
- Audit log filters used by compliance queries
- The admin audit-trail listing and statistics

Uses SQLAlchemy 2.0 declarative syntax.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, List
from uuid import UUID, uuid4
from enum import Enum

from sqlalchemy import String, Integer, DateTime, Index, text, Text
from sqlalchemy.dialects.postgresql import UUID as PGUUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from pydantic import BaseModel, Field, field_validator, ValidationInfo

from banking_api.src.models.auth import Base


# ============================================================================
# Enums
# ============================================================================


class AuditAction(str, Enum):
    """Audit action types."""

    # Account actions
    ACCOUNT_CREATED = "ACCOUNT_CREATED"
    ACCOUNT_UPDATED = "ACCOUNT_UPDATED"
    ACCOUNT_CLOSED = "ACCOUNT_CLOSED"
    ACCOUNT_FROZEN = "ACCOUNT_FROZEN"
    ACCOUNT_UNFROZEN = "ACCOUNT_UNFROZEN"

    # Transfer actions
    TRANSFER_INITIATED = "TRANSFER_INITIATED"
    TRANSFER_COMPLETED = "TRANSFER_COMPLETED"
    TRANSFER_FAILED = "TRANSFER_FAILED"
    TRANSFER_CANCELLED = "TRANSFER_CANCELLED"

    # Balance actions
    BALANCE_DEPOSITED = "BALANCE_DEPOSITED"
    BALANCE_WITHDRAWN = "BALANCE_WITHDRAWN"
    BALANCE_ADJUSTED = "BALANCE_ADJUSTED"

    # Payment actions
    PAYMENT_INITIATED = "PAYMENT_INITIATED"
    PAYMENT_COMPLETED = "PAYMENT_COMPLETED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    PAYMENT_REFUNDED = "PAYMENT_REFUNDED"

    # Compliance actions
    KYC_SUBMITTED = "KYC_SUBMITTED"
    KYC_APPROVED = "KYC_APPROVED"
    KYC_REJECTED = "KYC_REJECTED"
    AML_CHECK_PERFORMED = "AML_CHECK_PERFORMED"
    AML_ALERT_CREATED = "AML_ALERT_CREATED"

    # User actions
    USER_CREATED = "USER_CREATED"
    USER_UPDATED = "USER_UPDATED"
    USER_DEACTIVATED = "USER_DEACTIVATED"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    TWO_FACTOR_ENABLED = "TWO_FACTOR_ENABLED"
    TWO_FACTOR_DISABLED = "TWO_FACTOR_DISABLED"

    # Admin actions
    ADMIN_ACTION = "ADMIN_ACTION"
    SETTINGS_CHANGED = "SETTINGS_CHANGED"
    FEE_RULE_CHANGED = "FEE_RULE_CHANGED"

    # Security actions
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGOUT = "LOGOUT"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"

    # Request trail
    API_REQUEST = "API_REQUEST"


class AuditSeverity(str, Enum):
    """How loudly an audit event is echoed to the application log."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


SEVERITY_LOG_LEVELS = {
    AuditSeverity.CRITICAL: "error",
    AuditSeverity.HIGH: "warning",
    AuditSeverity.MEDIUM: "info",
    AuditSeverity.LOW: "debug",
}


class UserTypeFilter(str, Enum):
    ALL = "all"
    ADMIN = "admin"
    CUSTOMER = "customer"


# ============================================================================
# SQLAlchemy Models
# ============================================================================


class AuditLog(Base):
    """
    Audit log row.

    Stores who did what, to which resource, from where, and how severe it
    was. user_name and user_type are snapshots taken when the row is written.
    """
    __tablename__ = "audit_logs"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
        server_default=text("gen_random_uuid()"),
        nullable=False
    )
    user_id: Mapped[Optional[UUID]] = mapped_column(
        PGUUID(as_uuid=True),
        nullable=True,
        comment="User who performed the action (NULL for anonymous/system)"
    )
    user_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    user_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    severity: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        server_default=text("'LOW'")
    )
    resource_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    resource_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    account_id: Mapped[Optional[UUID]] = mapped_column(PGUUID(as_uuid=True), nullable=True)
    transaction_id: Mapped[Optional[UUID]] = mapped_column(PGUUID(as_uuid=True), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    details: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        JSONB,
        nullable=True,
        comment="Additional context with sensitive values masked"
    )
    ip_address: Mapped[Optional[str]] = mapped_column(
        String(45),  # IPv6 max length
        nullable=True
    )
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP")
    )

    __table_args__ = (
        Index("idx_audit_logs_created_at", "created_at"),
        Index("idx_audit_logs_user_id", "user_id", "created_at"),
        Index("idx_audit_logs_account_id", "account_id", "created_at"),
        Index("idx_audit_logs_action", "action"),
        Index("idx_audit_logs_severity", "severity"),
    )

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, action='{self.action}', user_id={self.user_id})>"


# ============================================================================
# Pydantic Models
# ============================================================================


class AuditContext(BaseModel):
    """Request context attached to audit events."""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    user_name: Optional[str] = None
    user_type: Optional[str] = None


class AuditLogCreate(BaseModel):
    """An audit event to be written."""
    action: AuditAction
    severity: AuditSeverity = AuditSeverity.LOW
    user_id: Optional[UUID] = None
    user_name: Optional[str] = None
    user_type: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    account_id: Optional[UUID] = None
    transaction_id: Optional[UUID] = None
    description: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    status_code: Optional[int] = None


class AuditLogEntry(BaseModel):
    """Audit log row returned by queries."""
    id: UUID
    user_id: Optional[UUID] = None
    user_name: Optional[str] = None
    user_type: Optional[str] = None
    action: str
    severity: str
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    account_id: Optional[UUID] = None
    transaction_id: Optional[UUID] = None
    description: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    status_code: Optional[int] = None
    created_at: datetime


class AuditLogFilter(BaseModel):
    """Filter for compliance queries over the audit log."""
    user_id: Optional[UUID] = None
    account_id: Optional[UUID] = None
    action: Optional[AuditAction] = None
    severity: Optional[AuditSeverity] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    limit: int = Field(default=100, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)

    @field_validator("end_date")
    @classmethod
    def validate_date_range(cls, v: Optional[datetime], info: ValidationInfo) -> Optional[datetime]:
        """end_date must not precede start_date."""
        start = info.data.get("start_date")
        if v is not None and start is not None and v < start:
            raise ValueError("end_date must be after start_date")
        return v


class AuditTrailFilter(BaseModel):
    """Filter behind GET /admin/audit-trails."""
    search: Optional[str] = None
    user_type: UserTypeFilter = UserTypeFilter.ALL
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=50, ge=1, le=200)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


class AuditTrailItem(BaseModel):
    """One row in the admin audit trail view."""
    id: str
    action: str
    severity: str
    userId: Optional[str] = None
    userName: Optional[str] = None
    userType: Optional[str] = None
    resourceType: Optional[str] = None
    resourceId: Optional[str] = None
    description: Optional[str] = None
    ip: Optional[str] = None
    userAgent: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    timestamp: datetime


class PaginationInfo(BaseModel):
    page: int
    limit: int
    total: int
    totalPages: int


class AuditTrailResponse(BaseModel):
    logs: List[AuditTrailItem]
    pagination: PaginationInfo


class AuditStatistics(BaseModel):
    """Aggregate counts over a window of audit logs."""
    total: int = Field(..., ge=0)
    by_action: Dict[str, int] = Field(default_factory=dict)
    by_severity: Dict[str, int] = Field(default_factory=dict)
    by_status_class: Dict[str, int] = Field(default_factory=dict)
    unique_users: int = Field(default=0, ge=0)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class RetentionResult(BaseModel):
    deleted: int = Field(..., ge=0)
    cutoff: datetime


def format_amount(amount: Decimal, currency: str) -> str:
    """Render an amount for audit descriptions, e.g. '150.00 USD'."""
    return f"{amount:.2f} {currency}"
