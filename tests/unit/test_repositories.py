"""
Unit tests for the asyncpg repositories.

Tests cover:
- SQL text and positional arguments of the statements the transfer path relies on
- Unique violations mapped to ConflictError (accounts, pending KYC)
- Optimistic alert review and audit-trail paging arguments
- Generated DDL carrying the uniqueness rules
"""

import pytest
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import asyncpg

from banking_api.src.database import schema_statements
from banking_api.src.exceptions import ConflictError, NotFoundError
from banking_api.src.models.audit import AuditTrailFilter, UserTypeFilter
from banking_api.src.models.compliance import AlertStatus, KycLevel
from banking_api.src.repositories.account_repo import AccountRepository
from banking_api.src.repositories.audit_repo import AuditRepository
from banking_api.src.repositories.compliance_repo import ComplianceRepository
from banking_api.src.repositories.kyc_repo import KycRepository

NOW = datetime(2026, 3, 14, 9, 30, tzinfo=timezone.utc)


def squash(sql: str) -> str:
    """Collapse whitespace so assertions do not depend on indentation."""
    return " ".join(sql.split())


def account_row(account_id=None, **fields):
    row = {
        "id": account_id or uuid4(),
        "user_id": uuid4(),
        "currency": "USD",
        "balance": Decimal("10.00"),
        "status": "ACTIVE",
        "created_at": NOW,
        "updated_at": None,
    }
    row.update(fields)
    return row


@pytest.fixture
def conn():
    connection = MagicMock(name="connection")
    connection.fetchrow = AsyncMock(return_value=None)
    connection.fetch = AsyncMock(return_value=[])
    connection.fetchval = AsyncMock(return_value=0)
    connection.execute = AsyncMock()

    @asynccontextmanager
    async def transaction():
        yield

    connection.transaction = transaction
    return connection


@pytest.fixture
def pool(conn):
    pool = MagicMock(name="pool")

    @asynccontextmanager
    async def acquire():
        yield conn

    pool.acquire = acquire
    return pool


# ============================================================================
# ACCOUNTS
# ============================================================================


class TestAccountRepository:
    """Accounts, row locks and ledger reads."""

    @pytest.mark.asyncio
    async def test_lock_accounts_sorts_ids_and_locks_in_order(self, pool, conn):
        first, second = sorted([uuid4(), uuid4()], key=str)
        conn.fetch.return_value = [account_row(first), account_row(second)]

        locked = await AccountRepository(pool).lock_accounts(conn, [second, first, second])

        sql, ids = conn.fetch.await_args.args
        assert "WHERE id = ANY($1::uuid[]) ORDER BY id FOR UPDATE" in squash(sql)
        assert ids == [first, second]
        assert set(locked) == {first, second}

    @pytest.mark.asyncio
    async def test_duplicate_currency_is_a_conflict(self, pool, conn):
        conn.fetchrow.side_effect = asyncpg.UniqueViolationError(
            'duplicate key value violates unique constraint "uq_accounts_user_currency"'
        )

        with pytest.raises(ConflictError, match="USD"):
            await AccountRepository(pool).create_account(uuid4(), "USD")

    @pytest.mark.asyncio
    async def test_unknown_owner(self, pool, conn):
        conn.fetchrow.side_effect = asyncpg.ForeignKeyViolationError("violates foreign key constraint")

        with pytest.raises(NotFoundError):
            await AccountRepository(pool).create_account(uuid4(), "USD")

    @pytest.mark.asyncio
    async def test_owner_countries_come_from_users(self, pool, conn):
        source, destination = uuid4(), uuid4()
        conn.fetch.return_value = [{"id": source, "country": "US"}, {"id": destination, "country": None}]

        countries = await AccountRepository(pool).get_owner_countries([source, destination])

        sql, ids = conn.fetch.await_args.args
        assert "JOIN users u ON u.id = a.user_id" in squash(sql)
        assert ids == [source, destination]
        assert countries == {source: "US", destination: None}

    @pytest.mark.asyncio
    async def test_outgoing_sum_runs_on_given_connection(self, conn):
        pool = MagicMock(name="pool")
        conn.fetchval.return_value = Decimal("75.00")
        since = NOW

        total = await AccountRepository(pool).sum_completed_outgoing(uuid4(), since, conn=conn)

        assert total == Decimal("75.00")
        pool.acquire.assert_not_called()
        assert conn.fetchval.await_args.args[2:] == ("COMPLETED", since)

    @pytest.mark.asyncio
    async def test_balance_before_without_entries(self, pool, conn):
        conn.fetchval.return_value = None
        account_id = uuid4()

        balance = await AccountRepository(pool).balance_before(account_id, NOW)

        sql, *args = conn.fetchval.await_args.args
        assert "created_at < $2 ORDER BY created_at DESC, id DESC LIMIT 1" in squash(sql)
        assert args == [account_id, NOW]
        assert balance == Decimal("0")

    @pytest.mark.asyncio
    async def test_ledger_between_is_half_open(self, pool, conn):
        account_id = uuid4()
        end = datetime(2026, 4, 1, tzinfo=timezone.utc)

        await AccountRepository(pool).list_ledger_between(account_id, NOW, end)

        sql, *args = conn.fetch.await_args.args
        assert "created_at >= $2 AND created_at < $3 ORDER BY created_at, id" in squash(sql)
        assert args == [account_id, NOW, end]


# ============================================================================
# KYC
# ============================================================================


class TestKycRepository:
    """Pending submissions."""

    @pytest.mark.asyncio
    async def test_second_pending_submission_is_a_conflict(self, pool, conn):
        conn.fetchrow.side_effect = asyncpg.UniqueViolationError(
            'duplicate key value violates unique constraint "uq_kyc_submissions_user_pending"'
        )

        with pytest.raises(ConflictError, match="already pending"):
            await KycRepository(pool).create_submission(uuid4(), KycLevel.TIER2, {})

        conn.execute.assert_not_awaited()


# ============================================================================
# COMPLIANCE AND AUDIT
# ============================================================================


class TestReviewAndPaging:
    """Alert review guard and audit-trail paging."""

    @pytest.mark.asyncio
    async def test_alert_review_is_guarded_by_expected_status(self, pool, conn):
        alert_id, reviewer = uuid4(), uuid4()

        result = await ComplianceRepository(pool).update_alert_review(
            alert_id, AlertStatus.PENDING, AlertStatus.RESOLVED, reviewer, "checked"
        )

        sql, *args = conn.fetchrow.await_args.args
        assert "WHERE id = $4 AND status = $5" in squash(sql)
        assert args == ["RESOLVED", reviewer, "checked", alert_id, "PENDING"]
        assert result is None

    @pytest.mark.asyncio
    async def test_audit_trail_pages_after_filter_params(self, pool, conn):
        conn.fetchval.return_value = 45
        trail_filter = AuditTrailFilter(search="login", user_type=UserTypeFilter.ADMIN, page=3, limit=20)

        logs, total = await AuditRepository(pool).list_audit_trail(trail_filter)

        count_sql, *count_args = conn.fetchval.await_args.args
        page_sql, *page_args = conn.fetch.await_args.args
        assert count_sql.startswith("SELECT COUNT(*)")
        assert len(count_args) == 2
        assert "LIMIT $3 OFFSET $4" in squash(page_sql)
        assert page_args == [*count_args, 20, 40]
        assert (logs, total) == ([], 45)


# ============================================================================
# SCHEMA
# ============================================================================


class TestSchemaStatements:
    """DDL generated from the models."""

    def test_one_account_per_currency(self):
        accounts = next(s for s in schema_statements() if "CREATE TABLE IF NOT EXISTS accounts " in s)

        assert "CONSTRAINT uq_accounts_user_currency UNIQUE (user_id, currency)" in squash(accounts)

    def test_one_pending_kyc_submission(self):
        index = next(s for s in schema_statements() if "uq_kyc_submissions_user_pending" in s)

        assert squash(index).startswith("CREATE UNIQUE INDEX IF NOT EXISTS uq_kyc_submissions_user_pending")
        assert "ON kyc_submissions (user_id) WHERE status = 'pending'" in squash(index)
