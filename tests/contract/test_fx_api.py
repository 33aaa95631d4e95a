"""
Contract tests for foreign-exchange endpoints.

Tests verify:
- Query parameter parsing (symbols, from/to aliases, dates)
- Provider failures surface as 502/503 error bodies
- Quotes carry the caller's fee tier and country
"""

import pytest
import datetime as dt
from decimal import Decimal
from unittest.mock import AsyncMock

from banking_api.src.dependencies import get_fee_engine, get_fx_service
from banking_api.src.exceptions import ExternalServiceError, FxConfigurationError, FxServiceUnavailableError
from banking_api.src.models.accounts import TransactionType
from banking_api.src.models.fees import FeeBreakdown
from banking_api.src.models.fx import ConversionResult, FxQuote, RatesSnapshot, TimeseriesResult
from banking_api.src.routers.fx import parse_symbols
from conftest import AUTH_HEADER

API = "/api/v1"


@pytest.fixture
def fx_service(override):
    service = AsyncMock()
    override(get_fx_service, service)
    return service


def snapshot(base: str = "EUR") -> RatesSnapshot:
    return RatesSnapshot(
        base=base,
        date=dt.date(2026, 3, 2),
        rates={"USD": Decimal("1.100000"), "NGN": Decimal("1650.000000")},
    )


class TestParseSymbols:

    @pytest.mark.parametrize("raw,expected", [
        (None, None),
        ("", None),
        (" , ,", None),
        ("usd", ["USD"]),
        ("USD, gbp ,NGN", ["USD", "GBP", "NGN"]),
    ])
    def test_parse(self, raw, expected):
        assert parse_symbols(raw) == expected


# ============================================================================
# RATES
# ============================================================================


class TestRatesContract:
    """GET /fx/rates, /fx/historical, /fx/timeseries, /fx/symbols"""

    def test_latest_defaults_to_eur(self, client, authenticate, customer, fx_service):
        authenticate(customer)
        fx_service.latest.return_value = snapshot()

        response = client.get(f"{API}/fx/rates", params={"symbols": "usd,ngn"}, headers=AUTH_HEADER)

        assert response.status_code == 200
        body = response.json()
        assert body["base"] == "EUR"
        assert body["date"] == "2026-03-02"
        fx_service.latest.assert_awaited_once_with("EUR", ["USD", "NGN"])

    def test_lowercase_base_is_rejected(self, client, authenticate, customer, fx_service):
        authenticate(customer)

        response = client.get(f"{API}/fx/rates", params={"base": "usd"}, headers=AUTH_HEADER)

        assert response.status_code == 422
        fx_service.latest.assert_not_awaited()

    def test_historical(self, client, authenticate, customer, fx_service):
        authenticate(customer)
        fx_service.historical.return_value = snapshot("USD")

        response = client.get(f"{API}/fx/historical/2026-01-15", params={"base": "USD"}, headers=AUTH_HEADER)

        assert response.status_code == 200
        fx_service.historical.assert_awaited_once_with(dt.date(2026, 1, 15), "USD", None)

    def test_historical_bad_date(self, client, authenticate, customer, fx_service):
        authenticate(customer)

        response = client.get(f"{API}/fx/historical/15-01-2026", headers=AUTH_HEADER)

        assert response.status_code == 422

    def test_timeseries(self, client, authenticate, customer, fx_service):
        authenticate(customer)
        fx_service.timeseries.return_value = TimeseriesResult(
            base="EUR",
            start_date=dt.date(2026, 3, 1),
            end_date=dt.date(2026, 3, 2),
            rates={"2026-03-01": {"USD": Decimal("1.09")}, "2026-03-02": {"USD": Decimal("1.10")}},
        )

        response = client.get(
            f"{API}/fx/timeseries",
            params={"start_date": "2026-03-01", "end_date": "2026-03-02", "symbols": "USD"},
            headers=AUTH_HEADER,
        )

        assert response.status_code == 200
        assert set(response.json()["rates"]) == {"2026-03-01", "2026-03-02"}
        fx_service.timeseries.assert_awaited_once_with(
            dt.date(2026, 3, 1), dt.date(2026, 3, 2), "EUR", ["USD"]
        )

    def test_symbols(self, client, authenticate, customer, fx_service):
        authenticate(customer)
        fx_service.symbols.return_value = {"USD": "United States Dollar", "NGN": "Nigerian Naira"}

        response = client.get(f"{API}/fx/symbols", headers=AUTH_HEADER)

        assert response.json()["NGN"] == "Nigerian Naira"

    def test_requires_authentication(self, client, fx_service):
        assert client.get(f"{API}/fx/rates").status_code == 401


class TestConvertContract:
    """GET /fx/convert"""

    def test_convert(self, client, authenticate, customer, fx_service):
        authenticate(customer)
        fx_service.convert.return_value = ConversionResult(
            from_currency="USD",
            to_currency="NGN",
            amount=Decimal("100"),
            rate=Decimal("1500.000000"),
            result=Decimal("150000.00"),
        )

        response = client.get(
            f"{API}/fx/convert", params={"from": "USD", "to": "NGN", "amount": "100"}, headers=AUTH_HEADER
        )

        assert response.status_code == 200
        body = response.json()
        assert body["from"] == "USD"
        assert body["to"] == "NGN"
        assert Decimal(body["result"]) == Decimal("150000.00")
        fx_service.convert.assert_awaited_once_with("USD", "NGN", Decimal("100"))

    def test_non_positive_amount(self, client, authenticate, customer, fx_service):
        authenticate(customer)

        response = client.get(
            f"{API}/fx/convert", params={"from": "USD", "to": "NGN", "amount": "0"}, headers=AUTH_HEADER
        )

        assert response.status_code == 422


# ============================================================================
# PROVIDER FAILURES
# ============================================================================


class TestProviderErrors:
    """Rates provider failures"""

    def test_provider_unavailable(self, client, authenticate, customer, fx_service):
        authenticate(customer)
        fx_service.latest.side_effect = FxServiceUnavailableError(
            "Exchange rate provider error", details={"provider_error": {"code": 104}}
        )

        response = client.get(f"{API}/fx/rates", headers=AUTH_HEADER)

        assert response.status_code == 503
        body = response.json()
        assert body["error_code"] == "FX_UNAVAILABLE"
        assert body["details"]["provider_error"]["code"] == 104

    def test_not_configured(self, client, authenticate, customer, fx_service):
        authenticate(customer)
        fx_service.latest.side_effect = FxConfigurationError("FX provider API key is not configured")

        response = client.get(f"{API}/fx/rates", headers=AUTH_HEADER)

        assert response.status_code == 503
        assert response.json()["error_code"] == "FX_NOT_CONFIGURED"

    def test_bad_gateway(self, client, authenticate, customer, fx_service):
        authenticate(customer)
        fx_service.symbols.side_effect = ExternalServiceError("Unexpected response from rates provider")

        response = client.get(f"{API}/fx/symbols", headers=AUTH_HEADER)

        assert response.status_code == 502
        assert response.json()["error_code"] == "UPSTREAM_ERROR"


# ============================================================================
# QUOTES
# ============================================================================


class TestQuoteContract:
    """POST /fx/quote"""

    def test_quote_passes_fee_context(self, client, authenticate, override, admin, fx_service):
        authenticate(admin)
        fee_engine = AsyncMock()
        override(get_fee_engine, fee_engine)
        fx_service.quote.return_value = FxQuote(
            from_currency="USD",
            to_currency="NGN",
            amount=Decimal("100.00"),
            rate=Decimal("1500.000000"),
            converted_amount=Decimal("150000.00"),
            fee=Decimal("2.00"),
            fee_breakdown=FeeBreakdown(fixed_fees=Decimal("2.00"), total=Decimal("2.00")),
            total_debit=Decimal("102.00"),
            recipient_gets=Decimal("150000.00"),
        )

        response = client.post(
            f"{API}/fx/quote",
            json={"from_currency": "usd", "to_currency": "ngn", "amount": "100.00", "to_country": "NG"},
            headers=AUTH_HEADER,
        )

        assert response.status_code == 200
        assert Decimal(response.json()["total_debit"]) == Decimal("102.00")

        args = fx_service.quote.await_args
        assert args.args == (fee_engine, "USD", "NGN", Decimal("100.00"))
        assert args.kwargs == {
            "transaction_type": TransactionType.CURRENCY_EXCHANGE,
            "from_country": "US",
            "to_country": "NG",
            "user_tier": "GOLD",
        }
