"""
Compliance and KYC models.

Covers AML/sanctions/fraud alerts raised while screening transfers, and the
KYC submission workflow (pending -> approved | rejected).
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4
from enum import Enum

from sqlalchemy import String, DateTime, ForeignKey, Index, Text, text
from sqlalchemy.dialects.postgresql import UUID as PGUUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from pydantic import BaseModel, Field

from banking_api.src.models.accounts import MONEY
from banking_api.src.models.audit import AuditSeverity
from banking_api.src.models.auth import Base


class AlertType(str, Enum):
    AML_THRESHOLD = "AML_THRESHOLD"
    STRUCTURING = "STRUCTURING"
    SANCTIONS = "SANCTIONS"
    ROUND_AMOUNT = "ROUND_AMOUNT"
    KYC_REQUIRED = "KYC_REQUIRED"
    FRAUD_SCORE = "FRAUD_SCORE"


class AlertStatus(str, Enum):
    PENDING = "PENDING"
    RESOLVED = "RESOLVED"
    DISMISSED = "DISMISSED"
    ESCALATED = "ESCALATED"


# Allowed review transitions; ESCALATED alerts can still be closed.
ALERT_TRANSITIONS: Dict[AlertStatus, frozenset] = {
    AlertStatus.PENDING: frozenset({AlertStatus.RESOLVED, AlertStatus.DISMISSED, AlertStatus.ESCALATED}),
    AlertStatus.ESCALATED: frozenset({AlertStatus.RESOLVED, AlertStatus.DISMISSED}),
    AlertStatus.RESOLVED: frozenset(),
    AlertStatus.DISMISSED: frozenset(),
}


class KycLevel(str, Enum):
    TIER1 = "tier1"
    TIER2 = "tier2"
    TIER3 = "tier3"


class KycSubmissionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class KycDecisionValue(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


# Profile fields set on approval, per submitted level
KYC_LEVEL_PROFILE: Dict[KycLevel, Dict[str, str]] = {
    KycLevel.TIER1: {"kyc_level": "Basic", "user_type": "Tier 1"},
    KycLevel.TIER2: {"kyc_level": "Full", "user_type": "Tier 2"},
    KycLevel.TIER3: {"kyc_level": "Advanced", "user_type": "Tier 3"},
}


# ============================================================================
# SQLAlchemy Models
# ============================================================================


class ComplianceAlertTable(Base):
    __tablename__ = "compliance_alerts"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
        server_default=text("gen_random_uuid()")
    )
    alert_type: Mapped[str] = mapped_column(String(30), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, server_default=text("'PENDING'"))
    user_id: Mapped[Optional[UUID]] = mapped_column(PGUUID(as_uuid=True), nullable=True)
    account_id: Mapped[Optional[UUID]] = mapped_column(PGUUID(as_uuid=True), nullable=True)
    amount: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONB, nullable=True)
    reviewed_by: Mapped[Optional[UUID]] = mapped_column(PGUUID(as_uuid=True), nullable=True)
    review_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP")
    )

    __table_args__ = (
        Index("idx_compliance_alerts_status", "status", "created_at"),
        Index("idx_compliance_alerts_user", "user_id"),
    )


class KycSubmissionTable(Base):
    __tablename__ = "kyc_submissions"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
        server_default=text("gen_random_uuid()")
    )
    user_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False
    )
    level: Mapped[str] = mapped_column(String(10), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, server_default=text("'pending'"))
    documents: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONB, nullable=True)
    submitted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP")
    )
    decided_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    decided_by: Mapped[Optional[UUID]] = mapped_column(PGUUID(as_uuid=True), nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("idx_kyc_submissions_status", "status", "submitted_at"),
        Index("idx_kyc_submissions_user", "user_id"),
        # At most one pending submission per user
        Index(
            "uq_kyc_submissions_user_pending",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
        ),
    )


# ============================================================================
# Domain / API Models
# ============================================================================


class ComplianceAlert(BaseModel):
    """An alert raised by a screening rule."""
    id: Optional[UUID] = None
    alert_type: AlertType
    severity: AuditSeverity
    status: AlertStatus = AlertStatus.PENDING
    user_id: Optional[UUID] = None
    account_id: Optional[UUID] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    description: str
    details: Dict[str, Any] = Field(default_factory=dict)
    reviewed_by: Optional[UUID] = None
    review_notes: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class ComplianceCheckResult(BaseModel):
    is_compliant: bool
    requires_review: bool = False
    alerts: List[ComplianceAlert] = Field(default_factory=list)


class FraudScore(BaseModel):
    score: int = Field(..., ge=0, le=100)
    rules: List[str] = Field(default_factory=list)
    allowed: bool
    components: Dict[str, int] = Field(default_factory=dict)


class AlertReviewRequest(BaseModel):
    status: AlertStatus
    notes: Optional[str] = Field(None, max_length=2000)


class AlertListResponse(BaseModel):
    alerts: List[ComplianceAlert]
    total: int
    limit: int
    offset: int


class KycSubmission(BaseModel):
    id: UUID
    user_id: UUID
    level: KycLevel
    status: KycSubmissionStatus
    documents: Optional[Dict[str, Any]] = None
    submitted_at: datetime
    decided_at: Optional[datetime] = None
    decided_by: Optional[UUID] = None
    rejection_reason: Optional[str] = None


class KycSubmissionRequest(BaseModel):
    """Body of POST /kyc/submissions."""
    level: KycLevel = KycLevel.TIER2
    documents: Dict[str, Any] = Field(
        default_factory=dict,
        description="References to uploaded documents, e.g. {\"passport\": \"s3://...\"}"
    )


class KycDecisionRequest(BaseModel):
    """
    Body of POST /admin/kyc/decision.

    Fields are loosely typed so missing/invalid values yield 400 with a
    message rather than a 422 validation error.
    """
    submissionId: Optional[str] = None
    decision: Optional[str] = None
    rejectionReason: Optional[str] = Field(None, max_length=2000)
