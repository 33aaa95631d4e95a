"""FX rate and quote models."""

import datetime as dt
from decimal import Decimal
from typing import Dict, Optional

from pydantic import BaseModel, Field, field_validator

from banking_api.src.models.accounts import TransactionType
from banking_api.src.models.fees import FeeBreakdown
from shared.models import CURRENCY_PATTERN


class RatesSnapshot(BaseModel):
    """Rates relative to one base currency on one date."""
    base: str
    date: dt.date
    timestamp: Optional[int] = None
    rates: Dict[str, Decimal]


class ConversionResult(BaseModel):
    from_currency: str = Field(..., alias="from", serialization_alias="from")
    to_currency: str = Field(..., alias="to", serialization_alias="to")
    amount: Decimal
    rate: Decimal
    result: Decimal
    date: Optional[dt.date] = None

    model_config = {"populate_by_name": True}


class TimeseriesResult(BaseModel):
    base: str
    start_date: dt.date
    end_date: dt.date
    rates: Dict[str, Dict[str, Decimal]]


class FxQuoteRequest(BaseModel):
    """Body of POST /fx/quote."""
    from_currency: str = Field(..., pattern=CURRENCY_PATTERN)
    to_currency: str = Field(..., pattern=CURRENCY_PATTERN)
    amount: Decimal = Field(..., gt=0)
    transaction_type: TransactionType = TransactionType.CURRENCY_EXCHANGE
    from_country: Optional[str] = Field(None, pattern=r"^[A-Z]{2}$")
    to_country: Optional[str] = Field(None, pattern=r"^[A-Z]{2}$")

    @field_validator("from_currency", "to_currency", mode="before")
    @classmethod
    def upper_currency(cls, v):
        return v.upper() if isinstance(v, str) else v

    model_config = {
        "json_schema_extra": {
            "example": {
                "from_currency": "USD",
                "to_currency": "NGN",
                "amount": "150.00"
            }
        }
    }


class FxQuote(BaseModel):
    """Conversion and fee preview shown before a payment is confirmed."""
    from_currency: str
    to_currency: str
    amount: Decimal
    rate: Decimal
    converted_amount: Decimal
    fee: Decimal
    fee_breakdown: FeeBreakdown
    total_debit: Decimal
    recipient_gets: Decimal
    rate_date: Optional[dt.date] = None
