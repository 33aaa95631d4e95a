"""
Foreign-exchange endpoints backed by the Fixer rates provider.

Provider failures surface as 502 or 503 through the application's
exception handlers.
"""

import datetime as dt
from decimal import Decimal
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query

from banking_api.src.dependencies import get_fee_engine, get_fx_service, require_permission
from banking_api.src.models.auth import CurrentUser, ErrorResponse, Permission
from banking_api.src.models.fx import ConversionResult, FxQuote, FxQuoteRequest, RatesSnapshot, TimeseriesResult
from banking_api.src.services.fee_engine import FeeEngine
from banking_api.src.services.fx_service import PROVIDER_BASE, FxService
from shared.models import CURRENCY_PATTERN

router = APIRouter(
    prefix="/fx",
    tags=["FX"],
    responses={
        401: {"model": ErrorResponse, "description": "Unauthorized"},
        403: {"model": ErrorResponse, "description": "Forbidden"},
        502: {"model": ErrorResponse, "description": "Rates provider unavailable"}
    }
)

fx_reader = require_permission(Permission.READ_FX)


def parse_symbols(symbols: Optional[str]) -> Optional[List[str]]:
    """Split a comma-separated symbols parameter, dropping blanks."""
    if not symbols:
        return None
    parsed = [symbol.strip().upper() for symbol in symbols.split(",") if symbol.strip()]
    return parsed or None


@router.get(
    "/rates",
    response_model=RatesSnapshot,
    summary="Latest Rates",
    description="Latest rates for `base` (default EUR), optionally limited to comma-separated `symbols`."
)
async def latest_rates(
    base: str = Query(PROVIDER_BASE, pattern=CURRENCY_PATTERN),
    symbols: Optional[str] = Query(None, description="e.g. USD,GBP,NGN"),
    current_user: CurrentUser = Depends(fx_reader),
    fx_service: FxService = Depends(get_fx_service)
) -> RatesSnapshot:
    return await fx_service.latest(base, parse_symbols(symbols))


@router.get("/convert", response_model=ConversionResult, summary="Convert Amount")
async def convert(
    from_currency: str = Query(..., alias="from", pattern=CURRENCY_PATTERN),
    to_currency: str = Query(..., alias="to", pattern=CURRENCY_PATTERN),
    amount: Decimal = Query(..., gt=0),
    current_user: CurrentUser = Depends(fx_reader),
    fx_service: FxService = Depends(get_fx_service)
) -> ConversionResult:
    return await fx_service.convert(from_currency, to_currency, amount)


@router.get("/historical/{on_date}", response_model=RatesSnapshot, summary="Historical Rates")
async def historical_rates(
    on_date: dt.date,
    base: str = Query(PROVIDER_BASE, pattern=CURRENCY_PATTERN),
    symbols: Optional[str] = None,
    current_user: CurrentUser = Depends(fx_reader),
    fx_service: FxService = Depends(get_fx_service)
) -> RatesSnapshot:
    return await fx_service.historical(on_date, base, parse_symbols(symbols))


@router.get("/timeseries", response_model=TimeseriesResult, summary="Rate Time Series")
async def timeseries(
    start_date: dt.date = Query(...),
    end_date: dt.date = Query(...),
    base: str = Query(PROVIDER_BASE, pattern=CURRENCY_PATTERN),
    symbols: Optional[str] = None,
    current_user: CurrentUser = Depends(fx_reader),
    fx_service: FxService = Depends(get_fx_service)
) -> TimeseriesResult:
    return await fx_service.timeseries(start_date, end_date, base, parse_symbols(symbols))


@router.get("/symbols", response_model=Dict[str, str], summary="Supported Currencies")
async def supported_symbols(
    current_user: CurrentUser = Depends(fx_reader),
    fx_service: FxService = Depends(get_fx_service)
) -> Dict[str, str]:
    return await fx_service.symbols()


@router.post(
    "/quote",
    response_model=FxQuote,
    summary="Payment Quote",
    description="""
    Rate, converted amount and fee for a cross-currency payment.

    The fee is charged in the source currency on top of the amount, at the
    caller's fee tier.
    """
)
async def quote(
    quote_request: FxQuoteRequest,
    current_user: CurrentUser = Depends(fx_reader),
    fx_service: FxService = Depends(get_fx_service),
    fee_engine: FeeEngine = Depends(get_fee_engine)
) -> FxQuote:
    return await fx_service.quote(
        fee_engine,
        quote_request.from_currency,
        quote_request.to_currency,
        quote_request.amount,
        transaction_type=quote_request.transaction_type,
        from_country=quote_request.from_country or current_user.country,
        to_country=quote_request.to_country,
        user_tier=current_user.fee_tier,
    )
