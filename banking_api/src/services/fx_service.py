"""
Foreign exchange rates, conversion and payment quotes.

FixerClient talks to the Fixer.io REST API; FxService caches its latest
rates, derives cross rates from the EUR base and builds fee-inclusive
quotes.
"""

import asyncio
import functools
import json
import time
import structlog
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from banking_api.src.config import Settings, get_settings
from banking_api.src.exceptions import (
    FxConfigurationError,
    FxServiceUnavailableError,
    InvalidRequestError,
)
from banking_api.src.models.accounts import TransactionType
from banking_api.src.models.fx import ConversionResult, FxQuote, RatesSnapshot, TimeseriesResult
from shared.models import RATE_PRECISION, quantize_money, to_decimal
from shared.tracing import trace_function
from shared.utils import RetryConfig, retry_with_backoff

logger = structlog.get_logger(__name__)

PROVIDER_BASE = "EUR"

_decimal_loads = functools.partial(json.loads, parse_float=Decimal)


def _decimal_rates(rates: Dict[str, Any]) -> Dict[str, Decimal]:
    return {currency: to_decimal(rate) for currency, rate in (rates or {}).items()}


def _symbols_param(symbols: Optional[List[str]]) -> Optional[str]:
    if not symbols:
        return None
    return ",".join(sorted({symbol.upper() for symbol in symbols}))


def cross_rate(rates: Dict[str, Decimal], from_currency: str, to_currency: str) -> Decimal:
    """
    Rate from ``from_currency`` to ``to_currency`` given EUR-based rates.

    Raises:
        InvalidRequestError: If either currency is missing from ``rates``
    """
    def eur_rate(currency: str) -> Decimal:
        if currency == PROVIDER_BASE:
            return Decimal(1)
        rate = rates.get(currency)
        if rate is None or rate == 0:
            raise InvalidRequestError(f"Unsupported currency: {currency}")
        return rate

    return (eur_rate(to_currency) / eur_rate(from_currency)).quantize(RATE_PRECISION)


class FixerClient:
    """Async client for the Fixer.io API."""

    def __init__(self, settings: Optional[Settings] = None, metrics=None):
        self.settings = settings or get_settings()
        self.metrics = metrics
        self._session: Optional[aiohttp.ClientSession] = None
        self._fetch = retry_with_backoff(
            RetryConfig(max_attempts=self.settings.fixer_retry_attempts)
        )(self._fetch_once)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.settings.fixer_timeout),
                headers={"Accept": "application/json"},
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _fetch_once(self, endpoint: str, params: Dict[str, str]) -> Dict[str, Any]:
        session = await self._get_session()
        url = f"{self.settings.fixer_base_url.rstrip('/')}/{endpoint}"
        async with session.get(url, params=params) as response:
            response.raise_for_status()
            return await response.json(loads=_decimal_loads, content_type=None)

    async def _request(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Call a Fixer endpoint and return its JSON body.

        Transient failures are retried by ``self._fetch``.

        Raises:
            FxConfigurationError: If no API key is configured
            FxServiceUnavailableError: On HTTP errors, network errors or success=false
        """
        if not self.settings.fixer_api_key:
            raise FxConfigurationError("FIXER_API_KEY is not configured")

        query = {"access_key": self.settings.fixer_api_key}
        query.update({key: str(value) for key, value in (params or {}).items() if value is not None})
        metric_endpoint = "historical" if endpoint[:1].isdigit() else endpoint

        started = time.monotonic()
        outcome = "error"
        try:
            try:
                data = await self._fetch(endpoint, query)
            except aiohttp.ClientResponseError as e:
                logger.error("fixer_http_error", endpoint=metric_endpoint, status=e.status, error=e.message)
                raise FxServiceUnavailableError(
                    f"Exchange rate provider returned HTTP {e.status}",
                    details={"status": e.status},
                ) from e
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.error("fixer_request_failed", endpoint=metric_endpoint, error=str(e))
                raise FxServiceUnavailableError("Exchange rate provider is unreachable") from e

            if not data.get("success", False):
                error = data.get("error") or {}
                logger.error("fixer_api_error", endpoint=metric_endpoint, error=error)
                raise FxServiceUnavailableError(
                    f"Exchange rate provider error: {error.get('info') or error.get('type') or 'unknown'}",
                    details={"provider_error": {key: error.get(key) for key in ("code", "type", "info")}},
                )
            outcome = "success"
            return data
        finally:
            if self.metrics is not None:
                self.metrics.fx_requests.labels(endpoint=metric_endpoint, outcome=outcome).inc()
                self.metrics.fx_request_duration.labels(endpoint=metric_endpoint).observe(
                    time.monotonic() - started
                )

    async def latest(self, base: str = PROVIDER_BASE, symbols: Optional[List[str]] = None) -> RatesSnapshot:
        data = await self._request("latest", {"base": base, "symbols": _symbols_param(symbols)})
        return RatesSnapshot(
            base=data["base"],
            date=data["date"],
            timestamp=data.get("timestamp"),
            rates=_decimal_rates(data.get("rates")),
        )

    async def convert(self, from_currency: str, to_currency: str, amount: Decimal) -> ConversionResult:
        data = await self._request("convert", {"from": from_currency, "to": to_currency, "amount": amount})
        return ConversionResult(
            from_currency=from_currency,
            to_currency=to_currency,
            amount=amount,
            rate=to_decimal(data["info"]["rate"]),
            result=to_decimal(data["result"]),
            date=data.get("date"),
        )

    async def historical(
        self,
        on_date: date,
        base: str = PROVIDER_BASE,
        symbols: Optional[List[str]] = None
    ) -> RatesSnapshot:
        data = await self._request(on_date.isoformat(), {"base": base, "symbols": _symbols_param(symbols)})
        return RatesSnapshot(
            base=data["base"],
            date=data["date"],
            timestamp=data.get("timestamp"),
            rates=_decimal_rates(data.get("rates")),
        )

    async def timeseries(
        self,
        start_date: date,
        end_date: date,
        base: str = PROVIDER_BASE,
        symbols: Optional[List[str]] = None
    ) -> TimeseriesResult:
        data = await self._request("timeseries", {
            "start_date": start_date.isoformat(),
            "end_date": end_date.isoformat(),
            "base": base,
            "symbols": _symbols_param(symbols),
        })
        return TimeseriesResult(
            base=data["base"],
            start_date=data["start_date"],
            end_date=data["end_date"],
            rates={day: _decimal_rates(rates) for day, rates in data.get("rates", {}).items()},
        )

    async def symbols(self) -> Dict[str, str]:
        data = await self._request("symbols")
        return data.get("symbols", {})


class FxService:
    """
    Cached rates, conversions and quotes.

    One snapshot of every EUR rate is fetched (the base every Fixer plan
    supports) and cached for ``cache_ttl`` seconds. Other bases and symbol
    subsets are derived from it locally.
    """

    def __init__(self, client: FixerClient, cache_ttl: Optional[int] = None):
        self.client = client
        self.cache_ttl = cache_ttl if cache_ttl is not None else client.settings.fx_cache_ttl
        self._snapshot: Optional[Tuple[float, RatesSnapshot]] = None

    async def close(self) -> None:
        await self.client.close()

    async def _eur_snapshot(self) -> RatesSnapshot:
        if self._snapshot is not None and self._snapshot[0] > time.monotonic():
            logger.debug("fx_rates_cache_hit")
            return self._snapshot[1]
        snapshot = await self.client.latest(PROVIDER_BASE)
        self._snapshot = (time.monotonic() + self.cache_ttl, snapshot)
        return snapshot

    async def latest(self, base: str = PROVIDER_BASE, symbols: Optional[List[str]] = None) -> RatesSnapshot:
        """
        Latest rates for ``base``, optionally limited to ``symbols``.

        Raises:
            InvalidRequestError: If ``base`` or a symbol has no EUR rate
        """
        base = base.upper()
        eur = await self._eur_snapshot()
        if base == PROVIDER_BASE and not symbols:
            return eur

        targets = sorted({s.upper() for s in symbols}) if symbols else sorted(set(eur.rates) | {PROVIDER_BASE})
        return RatesSnapshot(
            base=base,
            date=eur.date,
            timestamp=eur.timestamp,
            rates={target: cross_rate(eur.rates, base, target) for target in targets},
        )

    async def get_rate(self, from_currency: str, to_currency: str) -> Tuple[Decimal, Optional[date]]:
        """Cross rate and the date of the rates it came from."""
        from_currency, to_currency = from_currency.upper(), to_currency.upper()
        if from_currency == to_currency:
            return Decimal(1), None
        eur = await self._eur_snapshot()
        return cross_rate(eur.rates, from_currency, to_currency), eur.date

    @trace_function("fx.convert", attributes=("from_currency", "to_currency"))
    async def convert(self, from_currency: str, to_currency: str, amount) -> ConversionResult:
        amount = to_decimal(amount)
        if amount <= 0:
            raise InvalidRequestError("Amount must be greater than zero")
        rate, rate_date = await self.get_rate(from_currency, to_currency)
        return ConversionResult(
            from_currency=from_currency.upper(),
            to_currency=to_currency.upper(),
            amount=amount,
            rate=rate,
            result=quantize_money(amount * rate),
            date=rate_date,
        )

    async def historical(
        self,
        on_date: date,
        base: str = PROVIDER_BASE,
        symbols: Optional[List[str]] = None
    ) -> RatesSnapshot:
        return await self.client.historical(on_date, base.upper(), symbols)

    async def timeseries(
        self,
        start_date: date,
        end_date: date,
        base: str = PROVIDER_BASE,
        symbols: Optional[List[str]] = None
    ) -> TimeseriesResult:
        if end_date < start_date:
            raise InvalidRequestError("end date must not precede start date")
        return await self.client.timeseries(start_date, end_date, base.upper(), symbols)

    async def symbols(self) -> Dict[str, str]:
        return await self.client.symbols()

    @trace_function("fx.quote", attributes=("from_currency", "to_currency"))
    async def quote(
        self,
        fee_engine,
        from_currency: str,
        to_currency: str,
        amount,
        transaction_type: TransactionType = TransactionType.CURRENCY_EXCHANGE,
        from_country: Optional[str] = None,
        to_country: Optional[str] = None,
        user_tier: Optional[str] = None
    ) -> FxQuote:
        """
        Exchange-rate and fee preview for a cross-currency payment.

        The fee is charged in the source currency on top of the amount; the
        recipient gets the full converted amount.
        """
        amount = to_decimal(amount)
        if amount <= 0:
            raise InvalidRequestError("Amount must be greater than zero")

        rate, rate_date = await self.get_rate(from_currency, to_currency)
        fee = await fee_engine.calculate_fees(
            amount,
            from_currency.upper(),
            transaction_type,
            from_country=from_country,
            to_country=to_country,
            user_tier=user_tier,
        )
        converted = quantize_money(amount * rate)

        logger.info(
            "fx_quote_created",
            from_currency=from_currency.upper(),
            to_currency=to_currency.upper(),
            amount=str(amount),
            rate=str(rate),
            fee=str(fee.fee_amount),
        )
        return FxQuote(
            from_currency=from_currency.upper(),
            to_currency=to_currency.upper(),
            amount=quantize_money(amount),
            rate=rate,
            converted_amount=converted,
            fee=fee.fee_amount,
            fee_breakdown=fee.breakdown,
            total_debit=quantize_money(amount + fee.fee_amount),
            recipient_gets=converted,
            rate_date=rate_date,
        )
