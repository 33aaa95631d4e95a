"""
Unit tests for audit logging.

Tests cover:
- Sensitive data masking in audit details
- Writes through the repository, and failures that must not propagate
- Audit-trail WHERE clause construction
- Pagination metadata and retention
"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

from banking_api.src.models.audit import (
    AuditAction,
    AuditContext,
    AuditLogCreate,
    AuditLogEntry,
    AuditSeverity,
    AuditTrailFilter,
    UserTypeFilter,
)
from banking_api.src.repositories.audit_repo import build_audit_trail_where
from banking_api.src.services.audit_logger import MASK, AuditLogger, mask_sensitive


def stored_entry(**fields) -> AuditLogEntry:
    values = {
        "id": uuid4(),
        "action": AuditAction.LOGIN_SUCCESS.value,
        "severity": AuditSeverity.LOW.value,
        "created_at": datetime(2026, 3, 1, tzinfo=timezone.utc),
    }
    values.update(fields)
    return AuditLogEntry(**values)


@pytest.fixture
def audit_repo():
    repo = MagicMock()
    repo.create_audit_log = AsyncMock(side_effect=lambda entry: stored_entry(details=entry.details))
    repo.list_audit_trail = AsyncMock(return_value=([], 0))
    repo.delete_old_logs = AsyncMock(return_value=12)
    return repo


# ============================================================================
# MASKING
# ============================================================================


class TestMaskSensitive:
    """Recursive masking of secrets in details."""

    def test_masks_exact_keys(self):
        masked = mask_sensitive({"username": "ada", "password": "hunter22", "pin": "1234"})

        assert masked == {"username": "ada", "password": MASK, "pin": MASK}

    def test_masks_prefixed_and_suffixed_keys(self):
        masked = mask_sensitive({"access_token": "abc", "password_hash": "h", "Card-Number": "4111"})

        assert masked == {"access_token": MASK, "password_hash": MASK, "Card-Number": MASK}

    def test_does_not_mask_lookalikes(self):
        data = {"shipping": "express", "spinach": 1, "tokens_used": 3}

        assert mask_sensitive(data) == data

    def test_masks_nested_structures(self):
        masked = mask_sensitive({"cards": [{"cvv": "123", "last4": "4242"}], "meta": {"api_key": "k"}})

        assert masked == {"cards": [{"cvv": MASK, "last4": "4242"}], "meta": {"api_key": MASK}}

    def test_leaves_scalars_alone(self):
        assert mask_sensitive("password") == "password"
        assert mask_sensitive(None) is None


# ============================================================================
# WRITING
# ============================================================================


class TestAuditLoggerWrites:
    """AuditLogger.log and its helpers."""

    @pytest.mark.asyncio
    async def test_details_are_masked_before_storage(self, audit_repo):
        audit_logger = AuditLogger(audit_repo)

        await audit_logger.log(AuditLogCreate(
            action=AuditAction.PASSWORD_CHANGED,
            details={"password": "new-secret", "changed_by": "admin"},
        ))

        written = audit_repo.create_audit_log.await_args.args[0]
        assert written.details == {"password": MASK, "changed_by": "admin"}

    @pytest.mark.asyncio
    async def test_write_failure_returns_none_and_counts(self, audit_repo):
        audit_repo.create_audit_log.side_effect = OSError("database gone")
        metrics = MagicMock()
        audit_logger = AuditLogger(audit_repo, metrics)

        result = await audit_logger.log(AuditLogCreate(action=AuditAction.LOGIN_FAILED))

        assert result is None
        metrics.audit_write_failures.inc.assert_called_once()

    @pytest.mark.asyncio
    async def test_financial_transaction_is_high_severity(self, audit_repo):
        audit_logger = AuditLogger(audit_repo)
        context = AuditContext(ip_address="203.0.113.9", user_name="Ada", user_type="customer")

        await audit_logger.log_financial_transaction(
            action=AuditAction.TRANSFER_COMPLETED,
            user_id=uuid4(),
            amount=Decimal("150"),
            currency="USD",
            description="Transfer completed",
            context=context,
        )

        written = audit_repo.create_audit_log.await_args.args[0]
        assert written.severity == AuditSeverity.HIGH
        assert written.description == "Transfer completed - 150.00 USD"
        assert written.ip_address == "203.0.113.9"
        assert written.user_name == "Ada"

    @pytest.mark.asyncio
    async def test_admin_action_uses_given_audit_action(self, audit_repo):
        audit_logger = AuditLogger(audit_repo)

        await audit_logger.log_admin_action(
            admin_id=uuid4(),
            action="create_fee_rule",
            resource_type="fee_rule",
            audit_action=AuditAction.FEE_RULE_CHANGED,
        )

        written = audit_repo.create_audit_log.await_args.args[0]
        assert written.action == AuditAction.FEE_RULE_CHANGED
        assert written.description == "Admin action: create_fee_rule"


# ============================================================================
# QUERIES
# ============================================================================


class TestAuditTrailWhere:
    """SQL filter construction for the admin audit trail."""

    def test_no_filters(self):
        assert build_audit_trail_where(AuditTrailFilter()) == ("", [])

    def test_search_escapes_like_wildcards(self):
        where, params = build_audit_trail_where(AuditTrailFilter(search="  50%_off "))

        assert where.startswith("WHERE (al.action ILIKE $1")
        assert params == ["%50\\%\\_off%"]

    def test_admin_filter_matches_admin_types(self):
        where, params = build_audit_trail_where(AuditTrailFilter(user_type=UserTypeFilter.ADMIN))

        assert "= ANY($1::text[])" in where
        assert set(params[0]) == {"admin", "super_admin", "super admin"}

    def test_customer_filter_excludes_admins_and_blank_types(self):
        where, _ = build_audit_trail_where(AuditTrailFilter(user_type=UserTypeFilter.CUSTOMER))

        assert "<> ''" in where
        assert "<> ALL($1::text[])" in where

    def test_date_bounds_are_numbered_in_order(self):
        start = datetime(2026, 1, 1, tzinfo=timezone.utc)
        end = datetime(2026, 1, 31, tzinfo=timezone.utc)

        where, params = build_audit_trail_where(
            AuditTrailFilter(search="login", start_date=start, end_date=end)
        )

        assert "al.created_at >= $2" in where
        assert "al.created_at <= $3" in where
        assert params[1:] == [start, end]


class TestAuditQueries:
    """Trail pagination and retention."""

    @pytest.mark.asyncio
    async def test_pagination_metadata(self, audit_repo):
        audit_repo.list_audit_trail.return_value = ([stored_entry(user_name="Ada")], 101)
        audit_logger = AuditLogger(audit_repo)

        response = await audit_logger.list_audit_trail(AuditTrailFilter(page=2, limit=50))

        assert response.pagination.total == 101
        assert response.pagination.totalPages == 3
        assert response.pagination.page == 2
        assert response.logs[0].userName == "Ada"

    @pytest.mark.asyncio
    async def test_empty_trail_has_zero_pages(self, audit_repo):
        response = await AuditLogger(audit_repo).list_audit_trail(AuditTrailFilter())

        assert response.pagination.totalPages == 0
        assert response.logs == []

    @pytest.mark.asyncio
    async def test_retention_cutoff(self, audit_repo):
        result = await AuditLogger(audit_repo).apply_retention(retention_days=30)

        assert result.deleted == 12
        assert datetime.now(timezone.utc) - result.cutoff >= timedelta(days=30)
        audit_repo.delete_old_logs.assert_awaited_once_with(result.cutoff)
