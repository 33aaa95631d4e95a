"""
Unit tests for the transaction manager.

Tests cover:
- Input validation before any repository call
- Idempotent replays
- Daily limits, checked again under the row lock
- Compliance rejections screened on the owners' countries of record
- Balance movement, ledger entries and fee recording
- Insufficient funds, currency mismatch and missing accounts
- Deposits
- Monthly statements
"""

import pytest
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

from banking_api.src.exceptions import (
    ComplianceRejectedError,
    CurrencyMismatchError,
    InsufficientFundsError,
    InvalidRequestError,
    LimitExceededError,
    NotFoundError,
)
from banking_api.src.models.accounts import (
    AccountRecord,
    AccountStatus,
    EntryType,
    LedgerEntryRecord,
    TransactionType,
    TransferRecord,
    TransferStatus,
)
from banking_api.src.models.audit import AuditAction
from banking_api.src.models.compliance import AlertType, ComplianceCheckResult, FraudScore
from banking_api.src.models.fees import FeeBreakdown, FeeCalculation
from banking_api.src.services.compliance_manager import ComplianceManager
from banking_api.src.services.transaction_manager import (
    TransactionManager,
    default_idempotency_key,
    month_bounds,
)

CREATED = datetime(2026, 2, 1, tzinfo=timezone.utc)


def account(balance: str, currency: str = "USD", **fields) -> AccountRecord:
    return AccountRecord(
        id=fields.pop("id", uuid4()),
        user_id=uuid4(),
        currency=currency,
        balance=Decimal(balance),
        status=fields.pop("status", AccountStatus.ACTIVE),
        created_at=CREATED,
    )


def transfer_record(**fields) -> TransferRecord:
    values = {
        "id": uuid4(),
        "amount": Decimal("100.00"),
        "currency": "USD",
        "status": TransferStatus.COMPLETED,
        "type": TransactionType.INTERNAL_TRANSFER,
        "created_at": CREATED,
    }
    values.update(fields)
    return TransferRecord(**values)


@pytest.fixture
def source():
    return account("500.00")


@pytest.fixture
def destination():
    return account("20.00")


@pytest.fixture
def conn():
    return MagicMock(name="connection")


@pytest.fixture
def account_repo(source, destination, conn):
    repo = MagicMock()

    @asynccontextmanager
    async def transaction():
        yield conn

    repo.transaction = transaction
    repo.get_transfer_by_idempotency_key = AsyncMock(return_value=None)
    repo.sum_completed_outgoing = AsyncMock(return_value=Decimal("0"))
    repo.lock_accounts = AsyncMock(return_value={source.id: source, destination.id: destination})
    repo.insert_transfer = AsyncMock(side_effect=lambda _conn, **fields: transfer_record(
        from_account_id=fields["from_account_id"],
        to_account_id=fields["to_account_id"],
        amount=fields["amount"],
        fee_amount=fields.get("fee_amount", Decimal("0")),
        currency=fields["currency"],
        type=fields["transaction_type"],
    ))
    repo.update_balance = AsyncMock()
    repo.insert_ledger_entry = AsyncMock()
    repo.get_account = AsyncMock(return_value=None)
    repo.get_owner_countries = AsyncMock(return_value={})
    return repo


@pytest.fixture
def fee_engine():
    engine = MagicMock()
    engine.calculate_fees = AsyncMock(return_value=FeeCalculation(
        fee_amount=Decimal("1.50"),
        currency="USD",
        breakdown=FeeBreakdown(fixed_fees=Decimal("1.50"), total=Decimal("1.50")),
    ))
    engine.record_applied_fees = AsyncMock()
    return engine


@pytest.fixture
def compliance_manager():
    manager = MagicMock()
    manager.check_transaction_compliance = AsyncMock(return_value=ComplianceCheckResult(is_compliant=True))
    manager.calculate_fraud_score = AsyncMock(return_value=FraudScore(score=0, allowed=True))
    return manager


@pytest.fixture
def audit_logger():
    return AsyncMock()


@pytest.fixture
def manager(account_repo, fee_engine, compliance_manager, audit_logger):
    return TransactionManager(account_repo, fee_engine, compliance_manager, audit_logger=audit_logger)


# ============================================================================
# VALIDATION
# ============================================================================


class TestTransferValidation:
    """Requests rejected before touching the database."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["0", "-10", "ten"])
    async def test_bad_amount(self, manager, account_repo, amount):
        with pytest.raises(InvalidRequestError):
            await manager.execute_transfer(uuid4(), uuid4(), amount, "USD")
        account_repo.get_transfer_by_idempotency_key.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_same_account(self, manager):
        account_id = uuid4()

        with pytest.raises(InvalidRequestError, match="same account"):
            await manager.execute_transfer(account_id, account_id, "10", "USD")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("currency", ["US", "USDT", "12$", ""])
    async def test_bad_currency(self, manager, currency):
        with pytest.raises(InvalidRequestError):
            await manager.execute_transfer(uuid4(), uuid4(), "10", currency)

    def test_default_idempotency_key_is_stable(self):
        a, b = uuid4(), uuid4()

        first = default_idempotency_key(a, b, Decimal("10.00"), "USD", "rent")
        second = default_idempotency_key(a, b, Decimal("10.00"), "USD", "rent")

        assert first == second
        assert len(first) == 64
        assert first != default_idempotency_key(b, a, Decimal("10.00"), "USD", "rent")


# ============================================================================
# EXECUTION
# ============================================================================


class TestExecuteTransfer:
    """Happy path and failures inside the database transaction."""

    @pytest.mark.asyncio
    async def test_moves_balances_and_writes_ledger(
        self, manager, account_repo, fee_engine, source, destination, conn, audit_logger
    ):
        user_id = uuid4()

        transfer = await manager.execute_transfer(
            source.id, destination.id, "100", "usd", description="Rent", user_id=user_id
        )

        assert transfer.amount == Decimal("100.00")
        assert transfer.fee_amount == Decimal("1.50")
        account_repo.lock_accounts.assert_awaited_once_with(conn, [source.id, destination.id])
        account_repo.update_balance.assert_any_await(conn, source.id, Decimal("398.50"))
        account_repo.update_balance.assert_any_await(conn, destination.id, Decimal("120.00"))

        debit, credit = [c.kwargs for c in account_repo.insert_ledger_entry.await_args_list]
        assert debit["entry_type"] == EntryType.DEBIT
        assert debit["amount"] == Decimal("-101.50")
        assert debit["balance_after"] == Decimal("398.50")
        assert credit["entry_type"] == EntryType.CREDIT
        assert credit["amount"] == Decimal("100.00")

        fee_engine.record_applied_fees.assert_awaited_once()
        assert fee_engine.record_applied_fees.await_args.kwargs["conn"] is conn
        assert audit_logger.log_financial_transaction.await_args.kwargs["action"] == AuditAction.TRANSFER_COMPLETED

    @pytest.mark.asyncio
    async def test_idempotent_replay_returns_existing(self, manager, account_repo, compliance_manager):
        existing = transfer_record()
        account_repo.get_transfer_by_idempotency_key.return_value = existing

        result = await manager.execute_transfer(uuid4(), uuid4(), "100", "USD", idempotency_key="abc")

        assert result is existing
        account_repo.get_transfer_by_idempotency_key.assert_awaited_once_with("abc")
        compliance_manager.check_transaction_compliance.assert_not_awaited()
        account_repo.lock_accounts.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_insufficient_funds_includes_fee(self, manager, account_repo, source, destination):
        # 499.00 + 1.50 fee exceeds the 500.00 balance
        with pytest.raises(InsufficientFundsError) as exc_info:
            await manager.execute_transfer(source.id, destination.id, "499", "USD")

        assert exc_info.value.details["required"] == "500.50"
        account_repo.update_balance.assert_not_awaited()
        account_repo.insert_transfer.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_currency_mismatch(self, manager, account_repo, source):
        euro = account("100.00", currency="EUR")
        account_repo.lock_accounts.return_value = {source.id: source, euro.id: euro}

        with pytest.raises(CurrencyMismatchError):
            await manager.execute_transfer(source.id, euro.id, "10", "USD")

    @pytest.mark.asyncio
    async def test_missing_account(self, manager, account_repo, source):
        account_repo.lock_accounts.return_value = {source.id: source}

        with pytest.raises(NotFoundError):
            await manager.execute_transfer(source.id, uuid4(), "10", "USD")

    @pytest.mark.asyncio
    async def test_frozen_account(self, manager, account_repo, source):
        frozen = account("50.00", status=AccountStatus.FROZEN)
        account_repo.lock_accounts.return_value = {source.id: source, frozen.id: frozen}

        with pytest.raises(InvalidRequestError, match="FROZEN"):
            await manager.execute_transfer(source.id, frozen.id, "10", "USD")


class TestTransferScreening:
    """Limits, compliance and fraud run before the transaction."""

    @pytest.mark.asyncio
    async def test_daily_limit(self, manager, account_repo, audit_logger):
        account_repo.sum_completed_outgoing.return_value = Decimal("99950")

        with pytest.raises(LimitExceededError, match="Daily"):
            await manager.execute_transfer(uuid4(), uuid4(), "100", "USD", user_id=uuid4())

        account_repo.lock_accounts.assert_not_awaited()
        assert audit_logger.log_financial_transaction.await_args.kwargs["action"] == AuditAction.TRANSFER_FAILED

    @pytest.mark.asyncio
    async def test_compliance_rejection(self, manager, account_repo, compliance_manager):
        compliance_manager.check_transaction_compliance.return_value = ComplianceCheckResult(is_compliant=False)

        with pytest.raises(ComplianceRejectedError):
            await manager.execute_transfer(uuid4(), uuid4(), "100", "USD")

        compliance_manager.calculate_fraud_score.assert_not_awaited()
        account_repo.lock_accounts.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fraud_block(self, manager, account_repo, compliance_manager, fee_engine):
        compliance_manager.calculate_fraud_score.return_value = FraudScore(
            score=90, rules=["HIGH_VELOCITY"], allowed=False
        )

        with pytest.raises(ComplianceRejectedError, match="fraud"):
            await manager.execute_transfer(uuid4(), uuid4(), "100", "USD")

        fee_engine.calculate_fees.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_recipient_owner_in_sanctioned_country(
        self, account_repo, fee_engine, audit_logger, source, destination
    ):
        compliance_repo = MagicMock()
        compliance_repo.sum_outgoing = AsyncMock(return_value=Decimal("0"))
        compliance_repo.outgoing_timestamps = AsyncMock(return_value=[])
        compliance_repo.insert_alert = AsyncMock(side_effect=lambda alert: alert)
        screening = ComplianceManager(compliance_repo, MagicMock(), audit_logger=AsyncMock())
        manager = TransactionManager(account_repo, fee_engine, screening, audit_logger=audit_logger)
        account_repo.get_owner_countries.return_value = {source.id: "US", destination.id: "KP"}

        # No country in the request; the owner's country of record still blocks
        with pytest.raises(ComplianceRejectedError) as exc_info:
            await manager.execute_transfer(source.id, destination.id, "50", "USD", user_id=uuid4())

        assert exc_info.value.alerts[0]["alert_type"] == AlertType.SANCTIONS.value
        assert exc_info.value.alerts[0]["details"]["countries"] == ["KP"]
        account_repo.get_owner_countries.assert_awaited_once_with([source.id, destination.id])
        account_repo.lock_accounts.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_request_countries_cannot_replace_owner_countries(
        self, manager, account_repo, compliance_manager, fee_engine, source, destination
    ):
        account_repo.get_owner_countries.return_value = {source.id: "US", destination.id: "IR"}

        await manager.execute_transfer(
            source.id, destination.id, "50", "USD", from_country="GB", to_country="GB"
        )

        args = compliance_manager.check_transaction_compliance.await_args
        assert args.args[4:] == ("US", "IR")
        assert args.kwargs["declared_countries"] == ["GB", "GB"]
        assert fee_engine.calculate_fees.await_args.kwargs["to_country"] == "IR"

    @pytest.mark.asyncio
    async def test_limit_rechecked_after_lock(self, manager, account_repo, conn, source, destination):
        # Daily and monthly pass up front; a concurrent transfer lands before the lock
        account_repo.sum_completed_outgoing.side_effect = [
            Decimal("0"), Decimal("0"), Decimal("99950"), Decimal("99950"),
        ]

        with pytest.raises(LimitExceededError, match="Daily"):
            await manager.execute_transfer(source.id, destination.id, "100", "USD")

        account_repo.lock_accounts.assert_awaited_once()
        assert account_repo.sum_completed_outgoing.await_args_list[2].kwargs["conn"] is conn
        account_repo.insert_transfer.assert_not_awaited()
        account_repo.update_balance.assert_not_awaited()


# ============================================================================
# DEPOSITS AND READS
# ============================================================================


class TestDepositAndReads:
    """Deposits and account lookups."""

    @pytest.mark.asyncio
    async def test_deposit_credits_account(self, manager, account_repo, destination, conn, audit_logger):
        account_repo.lock_accounts.return_value = {destination.id: destination}

        transfer = await manager.deposit(destination.id, "80.255", user_id=uuid4())

        assert transfer.type == TransactionType.DEPOSIT
        assert transfer.amount == Decimal("80.26")
        account_repo.update_balance.assert_awaited_once_with(conn, destination.id, Decimal("100.26"))
        assert audit_logger.log_balance_change.await_args.kwargs["action"] == AuditAction.BALANCE_DEPOSITED

    @pytest.mark.asyncio
    async def test_deposit_to_missing_account(self, manager, account_repo):
        account_repo.lock_accounts.return_value = {}

        with pytest.raises(NotFoundError):
            await manager.deposit(uuid4(), "10")

    @pytest.mark.asyncio
    async def test_get_account_not_found(self, manager):
        with pytest.raises(NotFoundError):
            await manager.get_account(uuid4())


# ============================================================================
# STATEMENTS
# ============================================================================


def ledger_entry(account_id, entry_type, amount: str, balance_after: str, day: int) -> LedgerEntryRecord:
    return LedgerEntryRecord(
        id=uuid4(),
        account_id=account_id,
        transfer_id=uuid4(),
        type=entry_type,
        amount=Decimal(amount),
        balance_after=Decimal(balance_after),
        created_at=datetime(2026, 3, day, tzinfo=timezone.utc),
    )


class TestStatements:
    """Monthly statements from the ledger."""

    def test_month_bounds(self):
        assert month_bounds(2026, 3) == (
            datetime(2026, 3, 1, tzinfo=timezone.utc),
            datetime(2026, 4, 1, tzinfo=timezone.utc),
        )

    def test_december_rolls_into_next_year(self):
        start, end = month_bounds(2025, 12)

        assert start == datetime(2025, 12, 1, tzinfo=timezone.utc)
        assert end == datetime(2026, 1, 1, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_totals_reconcile_opening_and_closing(self, manager, account_repo, source):
        account_repo.get_account.return_value = source
        account_repo.balance_before = AsyncMock(side_effect=[Decimal("100.00"), Decimal("148.50")])
        account_repo.list_ledger_between = AsyncMock(return_value=[
            ledger_entry(source.id, EntryType.CREDIT, "80.00", "180.00", 2),
            ledger_entry(source.id, EntryType.DEBIT, "-31.50", "148.50", 9),
        ])

        statement = await manager.generate_statement(source.id, 2026, 3)

        assert statement.month == "2026-03"
        assert statement.opening_balance == Decimal("100.00")
        assert statement.closing_balance == Decimal("148.50")
        assert statement.total_credits == Decimal("80.00")
        assert statement.total_debits == Decimal("31.50")
        assert statement.opening_balance + statement.total_credits - statement.total_debits == (
            statement.closing_balance
        )
        assert statement.net_change == Decimal("48.50")
        assert statement.largest_entry == Decimal("80.00")
        assert statement.entry_count == 2

        start, end = month_bounds(2026, 3)
        assert [c.args for c in account_repo.balance_before.await_args_list] == [
            (source.id, start), (source.id, end),
        ]
        account_repo.list_ledger_between.assert_awaited_once_with(source.id, start, end)

    @pytest.mark.asyncio
    async def test_quiet_month(self, manager, account_repo, source):
        account_repo.get_account.return_value = source
        account_repo.balance_before = AsyncMock(return_value=Decimal("20.00"))
        account_repo.list_ledger_between = AsyncMock(return_value=[])

        statement = await manager.generate_statement(source.id, 2026, 4)

        assert statement.opening_balance == statement.closing_balance == Decimal("20.00")
        assert statement.entry_count == 0
        assert statement.largest_entry == Decimal("0")

    @pytest.mark.asyncio
    async def test_unknown_account(self, manager, account_repo):
        with pytest.raises(NotFoundError):
            await manager.generate_statement(uuid4(), 2026, 3)
