"""
Account, transfer and ledger models.

An account holds a single-currency balance. Every balance change is a
transfer with one ledger entry per affected account; the ledger is
append-only.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID, uuid4
from enum import Enum

from sqlalchemy import String, DateTime, ForeignKey, Index, Numeric, Text, text, CheckConstraint, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import Mapped, mapped_column
from pydantic import BaseModel, Field, field_validator

from banking_api.src.models.auth import Base
from shared.models import CURRENCY_PATTERN

MONEY = Numeric(20, 4)


# ============================================================================
# Enums
# ============================================================================


class AccountStatus(str, Enum):
    ACTIVE = "ACTIVE"
    FROZEN = "FROZEN"
    CLOSED = "CLOSED"


class TransferStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    SENT = "SENT"


class TransactionType(str, Enum):
    INTERNAL_TRANSFER = "INTERNAL_TRANSFER"
    EXTERNAL_TRANSFER = "EXTERNAL_TRANSFER"
    CARD_PAYMENT = "CARD_PAYMENT"
    ATM_WITHDRAWAL = "ATM_WITHDRAWAL"
    DEPOSIT = "DEPOSIT"
    CURRENCY_EXCHANGE = "CURRENCY_EXCHANGE"
    PAYOUT = "PAYOUT"
    WITHDRAWAL = "WITHDRAWAL"


class EntryType(str, Enum):
    DEBIT = "DEBIT"
    CREDIT = "CREDIT"


# ============================================================================
# SQLAlchemy Models
# ============================================================================


class Account(Base):
    """Single-currency customer account."""
    __tablename__ = "accounts"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
        server_default=text("gen_random_uuid()")
    )
    user_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    balance: Mapped[Decimal] = mapped_column(MONEY, nullable=False, server_default=text("0"))
    status: Mapped[str] = mapped_column(String(20), nullable=False, server_default=text("'ACTIVE'"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_accounts_balance_non_negative"),
        UniqueConstraint("user_id", "currency", name="uq_accounts_user_currency"),
        Index("idx_accounts_user_id", "user_id"),
    )


class Transfer(Base):
    """
    A movement of money.

    from_account_id is NULL for deposits, to_account_id is NULL for payouts.
    """
    __tablename__ = "transfers"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
        server_default=text("gen_random_uuid()")
    )
    from_account_id: Mapped[Optional[UUID]] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("accounts.id"),
        nullable=True
    )
    to_account_id: Mapped[Optional[UUID]] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("accounts.id"),
        nullable=True
    )
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    fee_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False, server_default=text("0"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    type: Mapped[str] = mapped_column(String(30), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(128), unique=True, nullable=True)
    initiated_by: Mapped[Optional[UUID]] = mapped_column(PGUUID(as_uuid=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP")
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_transfers_amount_positive"),
        Index("idx_transfers_from_created", "from_account_id", "created_at"),
        Index("idx_transfers_to_created", "to_account_id", "created_at"),
        Index("idx_transfers_created_at", "created_at"),
    )


class LedgerEntry(Base):
    """Signed balance change of one account caused by one transfer."""
    __tablename__ = "ledger_entries"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
        server_default=text("gen_random_uuid()")
    )
    account_id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), ForeignKey("accounts.id"), nullable=False)
    transfer_id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), ForeignKey("transfers.id"), nullable=False)
    type: Mapped[str] = mapped_column(String(10), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP")
    )

    __table_args__ = (
        Index("idx_ledger_account_created", "account_id", "created_at"),
        Index("idx_ledger_transfer_id", "transfer_id"),
    )


# ============================================================================
# Records
# ============================================================================


class AccountRecord(BaseModel):
    id: UUID
    user_id: UUID
    currency: str
    balance: Decimal
    status: AccountStatus
    created_at: datetime
    updated_at: Optional[datetime] = None


class TransferRecord(BaseModel):
    id: UUID
    from_account_id: Optional[UUID] = None
    to_account_id: Optional[UUID] = None
    amount: Decimal
    fee_amount: Decimal = Decimal("0")
    currency: str
    status: TransferStatus
    type: TransactionType
    description: Optional[str] = None
    idempotency_key: Optional[str] = None
    initiated_by: Optional[UUID] = None
    created_at: datetime
    completed_at: Optional[datetime] = None


class LedgerEntryRecord(BaseModel):
    id: UUID
    account_id: UUID
    transfer_id: UUID
    type: EntryType
    amount: Decimal
    balance_after: Decimal
    description: Optional[str] = None
    created_at: datetime


# ============================================================================
# Requests / Responses
# ============================================================================


class TransferRequest(BaseModel):
    """Body of POST /transfers."""
    from_account_id: UUID = Field(..., description="Source account")
    to_account_id: UUID = Field(..., description="Destination account")
    amount: Decimal = Field(..., gt=0, max_digits=20, decimal_places=2, description="Amount in major units, at most 2 decimals")
    currency: str = Field(..., pattern=CURRENCY_PATTERN, description="ISO 4217 code")
    description: Optional[str] = Field(None, max_length=500)
    from_country: Optional[str] = Field(None, pattern=r"^[A-Z]{2}$")
    to_country: Optional[str] = Field(None, pattern=r"^[A-Z]{2}$")

    @field_validator("currency", mode="before")
    @classmethod
    def upper_currency(cls, v):
        return v.upper() if isinstance(v, str) else v

    model_config = {
        "json_schema_extra": {
            "example": {
                "from_account_id": "0b0c6f4e-6c59-4c43-9b0a-0d3e1a1b2c3d",
                "to_account_id": "5a1f9c2e-8d7b-4e6a-b3c2-1f0e9d8c7b6a",
                "amount": "250.00",
                "currency": "USD",
                "description": "Rent share"
            }
        }
    }


class AccountCreateRequest(BaseModel):
    """Body of POST /admin/accounts."""
    user_id: UUID
    currency: str = Field(..., pattern=CURRENCY_PATTERN)

    @field_validator("currency", mode="before")
    @classmethod
    def upper_currency(cls, v):
        return v.upper() if isinstance(v, str) else v


class DepositRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=20, decimal_places=2)
    description: Optional[str] = Field(None, max_length=500)


class LedgerPage(BaseModel):
    account_id: UUID
    entries: List[LedgerEntryRecord]
    limit: int
    offset: int


class AccountStatement(BaseModel):
    """Monthly statement of one account; debits include fees."""
    account_id: UUID
    currency: str
    month: str = Field(..., description="YYYY-MM")
    period_start: datetime
    period_end: datetime = Field(..., description="Exclusive end of the period")
    opening_balance: Decimal
    closing_balance: Decimal
    net_change: Decimal
    total_credits: Decimal
    total_debits: Decimal
    entry_count: int
    largest_entry: Decimal
    entries: List[LedgerEntryRecord]
