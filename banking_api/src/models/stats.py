"""Admin dashboard models."""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field


class TransactionRecord(BaseModel):
    """Flattened transfer row the dashboard aggregates over."""
    id: str
    amount: Decimal
    currency: Optional[str] = None
    type: Optional[str] = None
    status: Optional[str] = None
    created_at: datetime
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    description: Optional[str] = None


class Growth(BaseModel):
    volume: float = 0.0
    activeUsers: float = 0.0
    payouts: float = 0.0
    avgValue: float = 0.0


class DashboardStats(BaseModel):
    totalVolume: float
    activeUsers: int
    totalUsers: int
    totalPayouts: float
    avgTransactionValue: float
    transactionCount: int
    growth: Growth


class VolumePoint(BaseModel):
    month: str = Field(..., description="Bucket label, e.g. 'Jan 2026'")
    volume: int
    payouts: int


class RecentTransaction(BaseModel):
    id: str
    customer: str
    email: str
    amount: float
    currency: str
    status: str
    type: str
    date: str = Field(..., description="ISO-8601 timestamp")
    description: str


class RecentTransactionsResponse(BaseModel):
    transactions: List[RecentTransaction]
    total: int


class CurrencyShare(BaseModel):
    currency: str
    volume: int
