"""
Audit logger service.

Writes audit events for financial, security and admin actions, echoes them
to the application log at a level derived from their severity, and serves
the admin audit-trail queries.

Writing an audit event never fails the caller: storage errors are logged
and counted, and the business operation carries on.
"""

import math
import structlog
from typing import Any, Dict, List, Optional
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import UUID

from banking_api.src.config import get_settings
from banking_api.src.models.audit import (
    SEVERITY_LOG_LEVELS,
    AuditAction,
    AuditContext,
    AuditLogCreate,
    AuditLogEntry,
    AuditLogFilter,
    AuditSeverity,
    AuditStatistics,
    AuditTrailFilter,
    AuditTrailItem,
    AuditTrailResponse,
    PaginationInfo,
    RetentionResult,
    format_amount,
)
from banking_api.src.repositories.audit_repo import AuditRepository
from shared.metrics import PaymentMetrics

logger = structlog.get_logger(__name__)

MASK = "***MASKED***"

SENSITIVE_KEYS = frozenset({
    "password",
    "token",
    "secret",
    "api_key",
    "card_number",
    "cvv",
    "pin",
    "account_number",
})


def _is_sensitive(key: str) -> bool:
    normalized = key.lower().replace("-", "_")
    if normalized in SENSITIVE_KEYS:
        return True
    return any(
        normalized.startswith(f"{sensitive}_") or normalized.endswith(f"_{sensitive}")
        for sensitive in SENSITIVE_KEYS
    )


def mask_sensitive(data: Any) -> Any:
    """
    Recursively replace values of sensitive keys with ``***MASKED***``.

    Keys match exactly or as a ``_``-separated prefix/suffix, so
    ``access_token`` and ``password_hash`` are masked but ``shipping`` is not.
    """
    if isinstance(data, dict):
        return {
            key: MASK if isinstance(key, str) and _is_sensitive(key) else mask_sensitive(value)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [mask_sensitive(item) for item in data]
    return data


def _to_trail_item(entry: AuditLogEntry) -> AuditTrailItem:
    return AuditTrailItem(
        id=str(entry.id),
        action=entry.action,
        severity=entry.severity,
        userId=str(entry.user_id) if entry.user_id else None,
        userName=entry.user_name,
        userType=entry.user_type,
        resourceType=entry.resource_type,
        resourceId=entry.resource_id,
        description=entry.description,
        ip=entry.ip_address,
        userAgent=entry.user_agent,
        details=entry.details,
        timestamp=entry.created_at,
    )


class AuditLogger:
    """Service for writing and querying audit events."""

    def __init__(self, audit_repo: AuditRepository, metrics: Optional[PaymentMetrics] = None):
        """
        Initialize audit logger.

        Args:
            audit_repo: Audit repository
            metrics: Payment metrics used to count failed writes (optional)
        """
        self.audit_repo = audit_repo
        self.metrics = metrics
        self.settings = get_settings()

    async def log(self, entry: AuditLogCreate) -> Optional[AuditLogEntry]:
        """
        Persist an audit event.

        Returns:
            The stored entry, or None if auditing is disabled or the write failed
        """
        entry = entry.model_copy(update={"details": mask_sensitive(entry.details)})

        log_method = getattr(logger, SEVERITY_LOG_LEVELS[entry.severity])
        log_method(
            "audit_event",
            action=entry.action.value,
            severity=entry.severity.value,
            user_id=str(entry.user_id) if entry.user_id else None,
            resource_type=entry.resource_type,
            resource_id=entry.resource_id,
            description=entry.description,
        )

        if not self.settings.audit_enabled:
            return None

        try:
            return await self.audit_repo.create_audit_log(entry)
        except Exception as e:
            logger.error(
                "audit_log_write_failed",
                error=str(e),
                error_type=type(e).__name__,
                action=entry.action.value,
            )
            if self.metrics is not None:
                self.metrics.audit_write_failures.inc()
            return None

    async def log_financial_transaction(
        self,
        action: AuditAction,
        user_id: Optional[UUID],
        amount: Decimal,
        currency: str,
        description: str,
        account_id: Optional[UUID] = None,
        transaction_id: Optional[UUID] = None,
        details: Optional[Dict[str, Any]] = None,
        context: Optional[AuditContext] = None
    ) -> Optional[AuditLogEntry]:
        context = context or AuditContext()
        return await self.log(AuditLogCreate(
            action=action,
            severity=AuditSeverity.HIGH,
            user_id=user_id,
            user_name=context.user_name,
            user_type=context.user_type,
            resource_type="transaction",
            resource_id=str(transaction_id) if transaction_id else None,
            account_id=account_id,
            transaction_id=transaction_id,
            description=f"{description} - {format_amount(amount, currency)}",
            details={"amount": str(amount), "currency": currency, **(details or {})},
            ip_address=context.ip_address,
            user_agent=context.user_agent,
        ))

    async def log_balance_change(
        self,
        user_id: Optional[UUID],
        account_id: UUID,
        previous_balance: Decimal,
        new_balance: Decimal,
        currency: str,
        reason: str,
        action: AuditAction = AuditAction.BALANCE_ADJUSTED,
        transaction_id: Optional[UUID] = None,
        context: Optional[AuditContext] = None
    ) -> Optional[AuditLogEntry]:
        context = context or AuditContext()
        return await self.log(AuditLogCreate(
            action=action,
            severity=AuditSeverity.MEDIUM,
            user_id=user_id,
            user_name=context.user_name,
            user_type=context.user_type,
            resource_type="account",
            resource_id=str(account_id),
            account_id=account_id,
            transaction_id=transaction_id,
            description=reason,
            details={
                "previous_balance": str(previous_balance),
                "new_balance": str(new_balance),
                "change": str(new_balance - previous_balance),
                "currency": currency,
            },
            ip_address=context.ip_address,
            user_agent=context.user_agent,
        ))

    async def log_security_event(
        self,
        action: AuditAction,
        severity: AuditSeverity,
        user_id: Optional[UUID] = None,
        description: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        context: Optional[AuditContext] = None,
        status_code: Optional[int] = None
    ) -> Optional[AuditLogEntry]:
        context = context or AuditContext()
        return await self.log(AuditLogCreate(
            action=action,
            severity=severity,
            user_id=user_id,
            user_name=context.user_name,
            user_type=context.user_type,
            resource_type="auth",
            description=description,
            details=details or {},
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            status_code=status_code,
        ))

    async def log_admin_action(
        self,
        admin_id: UUID,
        action: str,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        context: Optional[AuditContext] = None,
        audit_action: AuditAction = AuditAction.ADMIN_ACTION
    ) -> Optional[AuditLogEntry]:
        context = context or AuditContext()
        return await self.log(AuditLogCreate(
            action=audit_action,
            severity=AuditSeverity.MEDIUM,
            user_id=admin_id,
            user_name=context.user_name,
            user_type=context.user_type,
            resource_type=resource_type,
            resource_id=resource_id,
            description=f"Admin action: {action}",
            details=details or {},
            ip_address=context.ip_address,
            user_agent=context.user_agent,
        ))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def query_audit_logs(
        self,
        user_id: Optional[UUID] = None,
        account_id: Optional[UUID] = None,
        action: Optional[AuditAction] = None,
        severity: Optional[AuditSeverity] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[AuditLogEntry]:
        """Compliance query over the audit log, newest first."""
        return await self.audit_repo.query_audit_logs(AuditLogFilter(
            user_id=user_id,
            account_id=account_id,
            action=action,
            severity=severity,
            start_date=start_date,
            end_date=end_date,
            limit=limit,
            offset=offset,
        ))

    async def list_audit_trail(self, filter: AuditTrailFilter) -> AuditTrailResponse:
        """One page of the admin audit trail with pagination metadata."""
        entries, total = await self.audit_repo.list_audit_trail(filter)
        return AuditTrailResponse(
            logs=[_to_trail_item(entry) for entry in entries],
            pagination=PaginationInfo(
                page=filter.page,
                limit=filter.limit,
                total=total,
                totalPages=math.ceil(total / filter.limit) if total else 0,
            ),
        )

    async def get_statistics(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> AuditStatistics:
        return await self.audit_repo.get_statistics(start_date, end_date)

    async def apply_retention(self, retention_days: Optional[int] = None) -> RetentionResult:
        """Delete audit logs older than the retention window."""
        days = retention_days if retention_days is not None else self.settings.audit_retention_days
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        deleted = await self.audit_repo.delete_old_logs(cutoff)
        return RetentionResult(deleted=deleted, cutoff=cutoff)
