"""
Contract tests for fee endpoints.

Tests verify:
- Rule CRUD is restricted to manage:fees and audited
- Rule bodies are validated per fee type
- Fee previews use the caller's tier and country
- Fee history honours account ownership and date filters
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock
from uuid import uuid4

from banking_api.src.dependencies import get_audit_logger, get_fee_engine, get_transaction_manager
from banking_api.src.exceptions import NotFoundError
from banking_api.src.models.accounts import TransactionType
from banking_api.src.models.audit import AuditAction
from banking_api.src.models.fees import FeeBreakdown, FeeCalculation, FeeRule, FeeType
from conftest import AUTH_HEADER, make_account

API = "/api/v1"


def fee_rule(**overrides) -> FeeRule:
    fields = {
        "id": uuid4(),
        "name": "USD external transfer",
        "fee_type": FeeType.HYBRID,
        "transaction_type": TransactionType.EXTERNAL_TRANSFER,
        "currency": "USD",
        "fixed_amount": Decimal("0.50"),
        "percentage_rate": Decimal("1.25"),
        "created_at": datetime(2026, 2, 1, tzinfo=timezone.utc),
    }
    fields.update(overrides)
    return FeeRule(**fields)


@pytest.fixture
def fee_engine(override):
    engine = AsyncMock()
    override(get_fee_engine, engine)
    return engine


@pytest.fixture
def audit_logger(override):
    logger = AsyncMock()
    override(get_audit_logger, logger)
    return logger


# ============================================================================
# RULE MANAGEMENT
# ============================================================================


class TestFeeRulesContract:
    """/admin/fees/rules"""

    def test_list_active_only(self, client, authenticate, admin, fee_engine):
        authenticate(admin)
        fee_engine.list_rules.return_value = [fee_rule()]

        response = client.get(f"{API}/admin/fees/rules", params={"active_only": "true"}, headers=AUTH_HEADER)

        assert response.status_code == 200
        assert response.json()[0]["fee_type"] == "HYBRID"
        fee_engine.list_rules.assert_awaited_once_with(active_only=True)

    def test_customer_is_forbidden(self, client, authenticate, customer, fee_engine):
        authenticate(customer)

        response = client.get(f"{API}/admin/fees/rules", headers=AUTH_HEADER)

        assert response.status_code == 403
        assert response.json()["detail"] == "Permission denied: manage:fees required"

    def test_create_is_audited(self, client, authenticate, admin, fee_engine, audit_logger):
        authenticate(admin)
        rule = fee_rule()
        fee_engine.create_rule.return_value = rule

        response = client.post(
            f"{API}/admin/fees/rules",
            json={
                "name": "USD external transfer",
                "fee_type": "HYBRID",
                "transaction_type": "EXTERNAL_TRANSFER",
                "currency": "usd",
                "fixed_amount": "0.50",
                "percentage_rate": "1.25",
            },
            headers=AUTH_HEADER,
        )

        assert response.status_code == 201
        assert response.json()["id"] == str(rule.id)
        created = fee_engine.create_rule.await_args.args[0]
        assert created.currency == "USD"

        event = audit_logger.log_admin_action.await_args.kwargs
        assert event["action"] == "create_fee_rule"
        assert event["resource_id"] == str(rule.id)
        assert event["audit_action"] == AuditAction.FEE_RULE_CHANGED
        assert event["admin_id"] == admin.id

    @pytest.mark.parametrize("body", [
        {"fee_type": "FIXED", "percentage_rate": "1.0"},
        {"fee_type": "PERCENTAGE", "fixed_amount": "1.0"},
        {"fee_type": "HYBRID", "fixed_amount": "1.0"},
        {"fee_type": "FIXED", "fixed_amount": "-1"},
    ])
    def test_invalid_rule_components(self, client, authenticate, admin, fee_engine, audit_logger, body):
        authenticate(admin)

        response = client.post(
            f"{API}/admin/fees/rules",
            json={"name": "Bad rule", "transaction_type": "CARD_PAYMENT", "currency": "USD", **body},
            headers=AUTH_HEADER,
        )

        assert response.status_code == 422
        fee_engine.create_rule.assert_not_awaited()

    def test_partial_update(self, client, authenticate, admin, fee_engine, audit_logger):
        authenticate(admin)
        rule = fee_rule(max_amount=Decimal("25.00"))
        fee_engine.update_rule.return_value = rule

        response = client.patch(
            f"{API}/admin/fees/rules/{rule.id}", json={"max_amount": "25.00"}, headers=AUTH_HEADER
        )

        assert response.status_code == 200
        rule_id, update = fee_engine.update_rule.await_args.args
        assert rule_id == rule.id
        assert update.model_dump(exclude_unset=True) == {"max_amount": Decimal("25.00")}
        assert audit_logger.log_admin_action.await_args.kwargs["details"] == {"max_amount": "25.00"}

    def test_update_unknown_rule(self, client, authenticate, admin, fee_engine, audit_logger):
        authenticate(admin)
        fee_engine.update_rule.side_effect = NotFoundError("Fee rule not found")

        response = client.patch(f"{API}/admin/fees/rules/{uuid4()}", json={"name": "x"}, headers=AUTH_HEADER)

        assert response.status_code == 404
        audit_logger.log_admin_action.assert_not_awaited()

    def test_delete_deactivates(self, client, authenticate, admin, fee_engine, audit_logger):
        authenticate(admin)
        rule = fee_rule(is_active=False)
        fee_engine.deactivate_rule.return_value = rule

        response = client.delete(f"{API}/admin/fees/rules/{rule.id}", headers=AUTH_HEADER)

        assert response.status_code == 200
        assert response.json()["is_active"] is False
        fee_engine.deactivate_rule.assert_awaited_once_with(rule.id)
        assert audit_logger.log_admin_action.await_args.kwargs["details"] == {"is_active": False}


# ============================================================================
# CALCULATION AND HISTORY
# ============================================================================


class TestFeeCalculationContract:
    """POST /fees/calculate"""

    def test_preview_uses_callers_tier(self, client, authenticate, admin, fee_engine):
        authenticate(admin)
        rule_id = uuid4()
        fee_engine.calculate_fees.return_value = FeeCalculation(
            fee_amount=Decimal("1.80"),
            currency="USD",
            applied_rules=[rule_id],
            breakdown=FeeBreakdown(
                fixed_fees=Decimal("0.50"),
                percentage_fees=Decimal("1.50"),
                discounts=Decimal("0.20"),
                total=Decimal("1.80"),
            ),
        )

        response = client.post(
            f"{API}/fees/calculate",
            json={"amount": "120.00", "currency": "USD", "transaction_type": "EXTERNAL_TRANSFER", "to_country": "NG"},
            headers=AUTH_HEADER,
        )

        assert response.status_code == 200
        body = response.json()
        assert Decimal(body["fee_amount"]) == Decimal("1.80")
        assert body["applied_rules"] == [str(rule_id)]

        args = fee_engine.calculate_fees.await_args
        assert args.args == (Decimal("120.00"), "USD", TransactionType.EXTERNAL_TRANSFER)
        assert args.kwargs == {"from_country": "US", "to_country": "NG", "user_tier": "GOLD"}

    def test_unknown_transaction_type(self, client, authenticate, customer, fee_engine):
        authenticate(customer)

        response = client.post(
            f"{API}/fees/calculate",
            json={"amount": "10", "currency": "USD", "transaction_type": "TELEPORT"},
            headers=AUTH_HEADER,
        )

        assert response.status_code == 422


class TestFeeHistoryContract:
    """GET /accounts/{id}/fees"""

    def test_history_for_own_account(self, client, authenticate, override, customer, fee_engine):
        authenticate(customer)
        account = make_account(customer.id)
        transaction_manager = AsyncMock()
        transaction_manager.get_account.return_value = account
        override(get_transaction_manager, transaction_manager)
        fee_engine.get_fee_history.return_value = []

        response = client.get(
            f"{API}/accounts/{account.id}/fees",
            params={"startDate": "2026-03-01", "endDate": "2026-03-31"},
            headers=AUTH_HEADER,
        )

        assert response.status_code == 200
        assert response.json() == []
        account_id, start, end = fee_engine.get_fee_history.await_args.args
        assert account_id == account.id
        assert start == datetime(2026, 3, 1, tzinfo=timezone.utc)
        assert end.date().isoformat() == "2026-03-31"

    def test_other_users_account(self, client, authenticate, override, customer, fee_engine):
        authenticate(customer)
        transaction_manager = AsyncMock()
        transaction_manager.get_account.return_value = make_account(uuid4())
        override(get_transaction_manager, transaction_manager)

        response = client.get(f"{API}/accounts/{uuid4()}/fees", headers=AUTH_HEADER)

        assert response.status_code == 403
        fee_engine.get_fee_history.assert_not_awaited()

    def test_bad_date(self, client, authenticate, override, customer, fee_engine):
        authenticate(customer)
        override(get_transaction_manager, AsyncMock())

        response = client.get(
            f"{API}/accounts/{uuid4()}/fees", params={"startDate": "yesterday"}, headers=AUTH_HEADER
        )

        assert response.status_code == 400
