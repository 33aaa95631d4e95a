"""
Dashboard statistics repository.

Returns flat transfer rows; all aggregation happens in the stats service.
"""

import structlog
from typing import Any, List, Optional
from datetime import datetime

from banking_api.src.models.stats import TransactionRecord
from banking_api.src.repositories.base import BaseRepository

logger = structlog.get_logger(__name__)

# The customer of a transfer is the owner of the source account, or of the
# destination account for deposits.
TRANSACTION_SELECT = """
    SELECT t.id::text AS id, t.amount, t.currency, t.type, t.status, t.created_at,
           t.description,
           COALESCE(NULLIF(u.full_name, ''), u.username) AS customer_name,
           u.email AS customer_email
    FROM transfers t
    LEFT JOIN accounts a ON a.id = COALESCE(t.from_account_id, t.to_account_id)
    LEFT JOIN users u ON u.id = a.user_id
"""


class StatsRepository(BaseRepository):
    """Read-only queries behind the admin dashboard."""

    async def fetch_transactions(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        currency: Optional[str] = None
    ) -> List[TransactionRecord]:
        """
        Transfer rows in [start_date, end_date], optionally in one currency.

        Either bound may be None to leave that side open.
        """
        clauses = []
        params: List[Any] = []
        if start_date is not None:
            params.append(start_date)
            clauses.append(f"t.created_at >= ${len(params)}")
        if end_date is not None:
            params.append(end_date)
            clauses.append(f"t.created_at <= ${len(params)}")
        if currency:
            params.append(currency.upper())
            clauses.append(f"UPPER(t.currency) = ${len(params)}")
        where_sql = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"{TRANSACTION_SELECT} {where_sql} ORDER BY t.created_at DESC",
                *params
            )

        logger.debug("dashboard_transactions_fetched", rows=len(rows))
        return [TransactionRecord(**dict(row)) for row in rows]

    async def recent_transactions(self, limit: int) -> List[TransactionRecord]:
        """Most recent transfer rows, newest first."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"{TRANSACTION_SELECT} ORDER BY t.created_at DESC LIMIT $1",
                limit
            )
        return [TransactionRecord(**dict(row)) for row in rows]
