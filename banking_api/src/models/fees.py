"""
Fee rule models.

A fee rule prices one transaction type in one currency, optionally scoped to
a country. Fees applied to a transfer are persisted so an account's fee
history can be reconstructed.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID, uuid4
from enum import Enum

from sqlalchemy import Boolean, String, DateTime, ForeignKey, Index, Numeric, Text, text
from sqlalchemy.dialects.postgresql import ARRAY, UUID as PGUUID
from sqlalchemy.orm import Mapped, mapped_column
from pydantic import BaseModel, Field, field_validator, model_validator

from banking_api.src.models.accounts import MONEY, TransactionType
from banking_api.src.models.auth import Base
from shared.models import CURRENCY_PATTERN


class FeeType(str, Enum):
    FIXED = "FIXED"
    PERCENTAGE = "PERCENTAGE"
    HYBRID = "HYBRID"


class FeeTier(str, Enum):
    STANDARD = "STANDARD"
    SILVER = "SILVER"
    GOLD = "GOLD"
    PREMIUM = "PREMIUM"


# ============================================================================
# SQLAlchemy Models
# ============================================================================


class FeeRuleTable(Base):
    __tablename__ = "fee_rules"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
        server_default=text("gen_random_uuid()")
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    fee_type: Mapped[str] = mapped_column(String(20), nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(30), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    fixed_amount: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)
    percentage_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(9, 6), nullable=True)
    min_amount: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)
    max_amount: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)
    country: Mapped[Optional[str]] = mapped_column(String(2), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_fee_rules_lookup", "transaction_type", "currency", "is_active"),
    )


class AppliedFeeTable(Base):
    __tablename__ = "applied_fees"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
        server_default=text("gen_random_uuid()")
    )
    transfer_id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), ForeignKey("transfers.id"), nullable=False)
    account_id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), ForeignKey("accounts.id"), nullable=False)
    rule_ids: Mapped[List[UUID]] = mapped_column(
        ARRAY(PGUUID(as_uuid=True)),
        nullable=False,
        server_default=text("'{}'")
    )
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    fixed_fees: Mapped[Decimal] = mapped_column(MONEY, nullable=False, server_default=text("0"))
    percentage_fees: Mapped[Decimal] = mapped_column(MONEY, nullable=False, server_default=text("0"))
    discounts: Mapped[Decimal] = mapped_column(MONEY, nullable=False, server_default=text("0"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP")
    )

    __table_args__ = (
        Index("idx_applied_fees_account_created", "account_id", "created_at"),
    )


# ============================================================================
# Domain / API Models
# ============================================================================


def missing_component(
    fee_type: FeeType,
    fixed_amount: Optional[Decimal],
    percentage_rate: Optional[Decimal]
) -> Optional[str]:
    """The fee type decides which pricing components are required."""
    if fee_type in (FeeType.FIXED, FeeType.HYBRID) and fixed_amount is None:
        return f"{fee_type.value} rules require fixed_amount"
    if fee_type in (FeeType.PERCENTAGE, FeeType.HYBRID) and percentage_rate is None:
        return f"{fee_type.value} rules require percentage_rate"
    return None


class FeeRule(BaseModel):
    id: UUID
    name: str
    description: Optional[str] = None
    fee_type: FeeType
    transaction_type: TransactionType
    currency: str
    fixed_amount: Optional[Decimal] = None
    percentage_rate: Optional[Decimal] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    country: Optional[str] = None
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class FeeRuleCreate(BaseModel):
    """Body of POST /admin/fees/rules."""
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    fee_type: FeeType
    transaction_type: TransactionType
    currency: str = Field(..., pattern=CURRENCY_PATTERN)
    fixed_amount: Optional[Decimal] = Field(None, ge=0)
    percentage_rate: Optional[Decimal] = Field(None, ge=0, le=100, description="Percent of the amount, e.g. 1.5")
    min_amount: Optional[Decimal] = Field(None, ge=0, description="Rule applies only to amounts at or above this")
    max_amount: Optional[Decimal] = Field(None, gt=0, description="Cap on the fee this rule produces")
    country: Optional[str] = Field(None, pattern=r"^[A-Z]{2}$")
    is_active: bool = True

    @field_validator("currency", mode="before")
    @classmethod
    def upper_currency(cls, v):
        return v.upper() if isinstance(v, str) else v

    @model_validator(mode="after")
    def check_components(self) -> "FeeRuleCreate":
        problem = missing_component(self.fee_type, self.fixed_amount, self.percentage_rate)
        if problem:
            raise ValueError(problem)
        return self

    model_config = {
        "json_schema_extra": {
            "example": {
                "name": "USD external transfer",
                "fee_type": "HYBRID",
                "transaction_type": "EXTERNAL_TRANSFER",
                "currency": "USD",
                "fixed_amount": "0.50",
                "percentage_rate": "1.25",
                "max_amount": "25.00"
            }
        }
    }


class FeeRuleUpdate(BaseModel):
    """Body of PATCH /admin/fees/rules/{id}; only set fields change."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    fee_type: Optional[FeeType] = None
    fixed_amount: Optional[Decimal] = Field(None, ge=0)
    percentage_rate: Optional[Decimal] = Field(None, ge=0, le=100)
    min_amount: Optional[Decimal] = Field(None, ge=0)
    max_amount: Optional[Decimal] = Field(None, gt=0)
    country: Optional[str] = Field(None, pattern=r"^[A-Z]{2}$")
    is_active: Optional[bool] = None


class FeeBreakdown(BaseModel):
    fixed_fees: Decimal = Decimal("0")
    percentage_fees: Decimal = Decimal("0")
    discounts: Decimal = Decimal("0")
    total: Decimal = Decimal("0")


class FeeCalculation(BaseModel):
    fee_amount: Decimal
    currency: str
    applied_rules: List[UUID] = Field(default_factory=list)
    breakdown: FeeBreakdown


class FeeCalculationRequest(BaseModel):
    """Body of POST /fees/calculate."""
    amount: Decimal = Field(..., gt=0)
    currency: str = Field(..., pattern=CURRENCY_PATTERN)
    transaction_type: TransactionType
    from_country: Optional[str] = Field(None, pattern=r"^[A-Z]{2}$")
    to_country: Optional[str] = Field(None, pattern=r"^[A-Z]{2}$")

    @field_validator("currency", mode="before")
    @classmethod
    def upper_currency(cls, v):
        return v.upper() if isinstance(v, str) else v


class AppliedFee(BaseModel):
    id: UUID
    transfer_id: UUID
    account_id: UUID
    rule_ids: List[UUID] = Field(default_factory=list)
    amount: Decimal
    currency: str
    fixed_fees: Decimal
    percentage_fees: Decimal
    discounts: Decimal
    created_at: datetime
