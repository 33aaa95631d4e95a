"""
Compliance repository.

Transfer history lookups used by the screening rules, and storage for the
alerts those rules raise.
"""

import structlog
from decimal import Decimal
from typing import Any, List, Optional, Tuple
from uuid import UUID
from datetime import datetime

from banking_api.src.models.compliance import AlertStatus, ComplianceAlert
from banking_api.src.repositories.base import BaseRepository

logger = structlog.get_logger(__name__)

ALERT_COLUMNS = """
    id, alert_type, severity, status, user_id, account_id, amount, currency,
    description, details, reviewed_by, review_notes, reviewed_at, created_at
"""


class ComplianceRepository(BaseRepository):
    """Repository for compliance screening data and alerts."""

    # ------------------------------------------------------------------
    # Transfer history
    # ------------------------------------------------------------------

    async def sum_outgoing(self, account_id: UUID, currency: str, since: datetime) -> Decimal:
        """Sum of transfers out of an account in one currency since ``since``."""
        async with self.pool.acquire() as conn:
            total = await conn.fetchval(
                """
                SELECT COALESCE(SUM(amount), 0) FROM transfers
                WHERE from_account_id = $1 AND currency = $2 AND created_at >= $3
                """,
                account_id,
                currency,
                since
            )
        return Decimal(total)

    async def outgoing_timestamps(self, account_id: UUID, since: datetime) -> List[datetime]:
        """Creation times of outgoing transfers since ``since``, oldest first."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT created_at FROM transfers
                WHERE from_account_id = $1 AND created_at >= $2
                ORDER BY created_at ASC
                """,
                account_id,
                since
            )
        return [row["created_at"] for row in rows]

    async def count_outgoing(
        self,
        account_id: UUID,
        since: datetime,
        min_amount: Optional[Decimal] = None
    ) -> int:
        params: List[Any] = [account_id, since]
        amount_sql = ""
        if min_amount is not None:
            params.append(min_amount)
            amount_sql = "AND amount >= $3"
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                f"""
                SELECT COUNT(*) FROM transfers
                WHERE from_account_id = $1 AND created_at >= $2 {amount_sql}
                """,
                *params
            )

    async def average_outgoing(self, account_id: UUID, since: datetime) -> Decimal:
        async with self.pool.acquire() as conn:
            avg = await conn.fetchval(
                """
                SELECT COALESCE(AVG(amount), 0) FROM transfers
                WHERE from_account_id = $1 AND created_at >= $2
                """,
                account_id,
                since
            )
        return Decimal(avg)

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    async def insert_alert(self, alert: ComplianceAlert) -> ComplianceAlert:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO compliance_alerts (
                    alert_type, severity, status, user_id, account_id, amount,
                    currency, description, details, created_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, NOW())
                RETURNING {ALERT_COLUMNS}
                """,
                alert.alert_type.value,
                alert.severity.value,
                alert.status.value,
                alert.user_id,
                alert.account_id,
                alert.amount,
                alert.currency,
                alert.description,
                alert.details
            )
        return ComplianceAlert(**dict(row))

    async def get_alert(self, alert_id: UUID) -> Optional[ComplianceAlert]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {ALERT_COLUMNS} FROM compliance_alerts WHERE id = $1",
                alert_id
            )
        return ComplianceAlert(**dict(row)) if row else None

    async def list_alerts(
        self,
        status: Optional[str] = None,
        severity: Optional[str] = None,
        limit: int = 50,
        offset: int = 0
    ) -> Tuple[List[ComplianceAlert], int]:
        """Alerts newest first, with the total matching count."""
        clauses = []
        params: List[Any] = []
        if status:
            params.append(status)
            clauses.append(f"status = ${len(params)}")
        if severity:
            params.append(severity)
            clauses.append(f"severity = ${len(params)}")
        where_sql = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        async with self.pool.acquire() as conn:
            total = await conn.fetchval(f"SELECT COUNT(*) FROM compliance_alerts {where_sql}", *params)
            rows = await conn.fetch(
                f"""
                SELECT {ALERT_COLUMNS} FROM compliance_alerts
                {where_sql}
                ORDER BY created_at DESC
                LIMIT ${len(params) + 1} OFFSET ${len(params) + 2}
                """,
                *params,
                limit,
                offset
            )
        return [ComplianceAlert(**dict(row)) for row in rows], total

    async def update_alert_review(
        self,
        alert_id: UUID,
        expected_status: AlertStatus,
        new_status: AlertStatus,
        reviewed_by: UUID,
        notes: Optional[str]
    ) -> Optional[ComplianceAlert]:
        """
        Move an alert to ``new_status`` if it is still in ``expected_status``.

        Returns:
            Updated alert, or None when the alert changed underneath us
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE compliance_alerts
                SET status = $1, reviewed_by = $2, review_notes = $3, reviewed_at = NOW()
                WHERE id = $4 AND status = $5
                RETURNING {ALERT_COLUMNS}
                """,
                new_status.value,
                reviewed_by,
                notes,
                alert_id,
                expected_status.value
            )
        if row:
            logger.info("compliance_alert_reviewed", alert_id=str(alert_id), status=new_status.value)
        return ComplianceAlert(**dict(row)) if row else None
