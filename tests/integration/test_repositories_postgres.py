"""
Integration tests for the repositories against PostgreSQL.

Tests cover:
- Schema creation from the models
- Transfers: chained ledger balances and entries netting to minus the fee
- Monthly statements reconciling with the account balance
- One account per currency and one pending KYC submission per user
- Optimistic alert review
- Audit-trail paging and total count

PostgreSQL comes from PAYVOST_TEST_DATABASE_URL when set, otherwise from a
testcontainers instance. Without either the module is skipped.
"""

import asyncio
import os
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
import pytest_asyncio

from banking_api.src.config import get_settings
from banking_api.src.database import close_db_pool, init_db_pool, init_schema
from banking_api.src.exceptions import ConflictError
from banking_api.src.models.accounts import EntryType
from banking_api.src.models.audit import AuditAction, AuditLogCreate, AuditSeverity, AuditTrailFilter
from banking_api.src.models.auth import Base
from banking_api.src.models.compliance import (
    AlertStatus,
    AlertType,
    ComplianceAlert,
    ComplianceCheckResult,
    FraudScore,
    KycLevel,
)
from banking_api.src.models.fees import FeeBreakdown, FeeCalculation
from banking_api.src.repositories.account_repo import AccountRepository
from banking_api.src.repositories.audit_repo import AuditRepository
from banking_api.src.repositories.compliance_repo import ComplianceRepository
from banking_api.src.repositories.kyc_repo import KycRepository
from banking_api.src.services.transaction_manager import TransactionManager

pytestmark = pytest.mark.integration


# ============================================================================
# FIXTURES
# ============================================================================


@pytest.fixture(scope="module")
def database_url():
    """DSN of a disposable PostgreSQL database."""
    url = os.environ.get("PAYVOST_TEST_DATABASE_URL")
    if url:
        yield url
        return

    postgres = pytest.importorskip("testcontainers.postgres")
    try:
        container = postgres.PostgresContainer("postgres:16-alpine")
        container.start()
    except Exception as e:  # Docker daemon missing or unreachable
        pytest.skip(f"PostgreSQL is not available: {e}")

    try:
        yield (
            f"postgresql://{container.username}:{container.password}"
            f"@{container.get_container_host_ip()}:{container.get_exposed_port(5432)}/{container.dbname}"
        )
    finally:
        container.stop()


@pytest_asyncio.fixture
async def pool(database_url):
    settings = get_settings().model_copy(update={
        "database_url": database_url,
        "database_pool_size": 2,
        "database_max_overflow": 2,
    })
    db_pool = await init_db_pool(settings)
    await init_schema(db_pool)

    tables = ", ".join(table.name for table in Base.metadata.sorted_tables)
    async with db_pool.acquire() as conn:
        await conn.execute(f"TRUNCATE {tables} CASCADE")

    yield db_pool
    await close_db_pool()


async def insert_user(pool, country=None):
    name = f"user-{uuid4().hex[:12]}"
    async with pool.acquire() as conn:
        return await conn.fetchval(
            """
            INSERT INTO users (username, email, password_hash, country)
            VALUES ($1, $2, 'x', $3)
            RETURNING id
            """,
            name,
            f"{name}@payvost.test",
            country
        )


def transaction_manager(pool) -> TransactionManager:
    fee_engine = MagicMock()
    fee_engine.calculate_fees = AsyncMock(return_value=FeeCalculation(
        fee_amount=Decimal("1.50"),
        currency="USD",
        breakdown=FeeBreakdown(fixed_fees=Decimal("1.50"), total=Decimal("1.50")),
    ))
    fee_engine.record_applied_fees = AsyncMock()

    compliance = MagicMock()
    compliance.check_transaction_compliance = AsyncMock(return_value=ComplianceCheckResult(is_compliant=True))
    compliance.calculate_fraud_score = AsyncMock(return_value=FraudScore(score=0, allowed=True))

    return TransactionManager(AccountRepository(pool), fee_engine, compliance)


# ============================================================================
# TRANSFERS AND LEDGER
# ============================================================================


class TestTransfersOnPostgres:
    """Balances, ledger and statements written by real SQL."""

    @pytest.mark.asyncio
    async def test_transfer_ledger_is_chained_and_nets_to_fee(self, pool):
        repo = AccountRepository(pool)
        manager = transaction_manager(pool)
        source = await repo.create_account(await insert_user(pool, "US"), "USD")
        destination = await repo.create_account(await insert_user(pool, "GB"), "USD")

        await manager.deposit(source.id, "500")
        transfer = await manager.execute_transfer(source.id, destination.id, "100", "USD")

        async with pool.acquire() as conn:
            entries = await conn.fetch(
                "SELECT account_id, type, amount, balance_after FROM ledger_entries WHERE transfer_id = $1",
                transfer.id
            )
        assert sum(row["amount"] for row in entries) == Decimal("-1.50")

        debit = next(row for row in entries if row["type"] == EntryType.DEBIT.value)
        assert debit["balance_after"] == Decimal("398.50")
        assert (await repo.get_account(source.id)).balance == Decimal("398.50")
        assert (await repo.get_account(destination.id)).balance == Decimal("100.00")

        history = await repo.list_ledger(source.id)
        assert [entry.balance_after for entry in history] == [Decimal("398.50"), Decimal("500.00")]

    @pytest.mark.asyncio
    async def test_statement_matches_balance(self, pool):
        repo = AccountRepository(pool)
        manager = transaction_manager(pool)
        source = await repo.create_account(await insert_user(pool), "USD")
        destination = await repo.create_account(await insert_user(pool), "USD")
        await manager.deposit(source.id, "200")
        await manager.execute_transfer(source.id, destination.id, "50", "USD")

        now = datetime.now(timezone.utc)
        statement = await manager.generate_statement(source.id, now.year, now.month)

        assert statement.opening_balance == Decimal("0")
        assert statement.closing_balance == (await repo.get_account(source.id)).balance
        assert statement.total_credits == Decimal("200.00")
        assert statement.total_debits == Decimal("51.50")
        assert statement.entry_count == 2

    @pytest.mark.asyncio
    async def test_lock_accounts_returns_existing_rows(self, pool):
        repo = AccountRepository(pool)
        account = await repo.create_account(await insert_user(pool), "EUR")

        async with repo.transaction() as conn:
            locked = await repo.lock_accounts(conn, [uuid4(), account.id])

        assert list(locked) == [account.id]

    @pytest.mark.asyncio
    async def test_owner_countries(self, pool):
        repo = AccountRepository(pool)
        account = await repo.create_account(await insert_user(pool, "KP"), "USD")

        assert await repo.get_owner_countries([account.id, uuid4()]) == {account.id: "KP"}


# ============================================================================
# UNIQUENESS
# ============================================================================


class TestUniquenessOnPostgres:
    """Constraints that turn races into conflicts."""

    @pytest.mark.asyncio
    async def test_second_account_in_same_currency(self, pool):
        repo = AccountRepository(pool)
        user_id = await insert_user(pool)
        await repo.create_account(user_id, "USD")

        with pytest.raises(ConflictError):
            await repo.create_account(user_id, "USD")
        assert (await repo.create_account(user_id, "EUR")).currency == "EUR"

    @pytest.mark.asyncio
    async def test_concurrent_kyc_submissions(self, pool):
        repo = KycRepository(pool)
        user_id = await insert_user(pool)

        results = await asyncio.gather(
            repo.create_submission(user_id, KycLevel.TIER2, {"passport": "doc-1"}),
            repo.create_submission(user_id, KycLevel.TIER2, {"passport": "doc-2"}),
            return_exceptions=True,
        )

        conflicts = [r for r in results if isinstance(r, ConflictError)]
        assert len(conflicts) == 1
        assert len(await repo.list_submissions(status="pending")) == 1


# ============================================================================
# COMPLIANCE AND AUDIT
# ============================================================================


class TestReviewAndAuditOnPostgres:
    """Alert review guard and audit-trail paging."""

    @pytest.mark.asyncio
    async def test_alert_review_only_once(self, pool):
        repo = ComplianceRepository(pool)
        alert = await repo.insert_alert(ComplianceAlert(
            alert_type=AlertType.SANCTIONS,
            severity=AuditSeverity.CRITICAL,
            description="Sanctioned country",
            details={"countries": ["KP"]},
        ))

        first = await repo.update_alert_review(
            alert.id, AlertStatus.PENDING, AlertStatus.RESOLVED, uuid4(), "cleared"
        )
        second = await repo.update_alert_review(
            alert.id, AlertStatus.PENDING, AlertStatus.DISMISSED, uuid4(), None
        )

        assert first.status == AlertStatus.RESOLVED
        assert first.details == {"countries": ["KP"]}
        assert second is None
        assert (await repo.get_alert(alert.id)).review_notes == "cleared"

    @pytest.mark.asyncio
    async def test_audit_trail_paging(self, pool):
        repo = AuditRepository(pool)
        for n in range(5):
            await repo.create_audit_log(AuditLogCreate(
                action=AuditAction.LOGIN_SUCCESS,
                user_name=f"user-{n}",
                user_type="customer",
                description=f"Login {n}",
            ))

        logs, total = await repo.list_audit_trail(AuditTrailFilter(page=2, limit=2))

        assert total == 5
        assert [log.description for log in logs] == ["Login 2", "Login 1"]
