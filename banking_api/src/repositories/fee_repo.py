"""
Fee rule and applied fee repository.
"""

import structlog
from typing import Any, List, Optional
from uuid import UUID
from datetime import datetime

import asyncpg

from banking_api.src.models.accounts import TransactionType
from banking_api.src.models.fees import AppliedFee, FeeBreakdown, FeeRule, FeeRuleCreate
from banking_api.src.repositories.base import BaseRepository

logger = structlog.get_logger(__name__)

RULE_COLUMNS = """
    id, name, description, fee_type, transaction_type, currency, fixed_amount,
    percentage_rate, min_amount, max_amount, country, is_active, created_at, updated_at
"""

APPLIED_COLUMNS = """
    id, transfer_id, account_id, rule_ids, amount, currency, fixed_fees,
    percentage_fees, discounts, created_at
"""

UPDATABLE_RULE_FIELDS = frozenset({
    "name", "description", "fee_type", "fixed_amount", "percentage_rate",
    "min_amount", "max_amount", "country", "is_active",
})


class FeeRepository(BaseRepository):
    """Repository for fee rules and applied fees."""

    async def list_matching_rules(
        self,
        transaction_type: TransactionType,
        currency: str,
        countries: List[str]
    ) -> List[FeeRule]:
        """
        Active rules for a transaction type and currency.

        A rule matches when its country is NULL or one of ``countries``.
        Rows come back in creation order so fee breakdowns are stable.
        """
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {RULE_COLUMNS} FROM fee_rules
                WHERE is_active = true
                  AND transaction_type = $1
                  AND currency = $2
                  AND (country IS NULL OR country = ANY($3::text[]))
                ORDER BY created_at, id
                """,
                transaction_type.value,
                currency,
                countries
            )
        return [FeeRule(**dict(row)) for row in rows]

    async def list_rules(self, active_only: bool = False) -> List[FeeRule]:
        where_sql = "WHERE is_active = true" if active_only else ""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {RULE_COLUMNS} FROM fee_rules {where_sql} ORDER BY created_at, id"
            )
        return [FeeRule(**dict(row)) for row in rows]

    async def get_rule(self, rule_id: UUID) -> Optional[FeeRule]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(f"SELECT {RULE_COLUMNS} FROM fee_rules WHERE id = $1", rule_id)
        return FeeRule(**dict(row)) if row else None

    async def create_rule(self, rule: FeeRuleCreate) -> FeeRule:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO fee_rules (
                    name, description, fee_type, transaction_type, currency, fixed_amount,
                    percentage_rate, min_amount, max_amount, country, is_active, created_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, NOW())
                RETURNING {RULE_COLUMNS}
                """,
                rule.name,
                rule.description,
                rule.fee_type.value,
                rule.transaction_type.value,
                rule.currency,
                rule.fixed_amount,
                rule.percentage_rate,
                rule.min_amount,
                rule.max_amount,
                rule.country,
                rule.is_active
            )
        logger.info("fee_rule_created", rule_id=str(row["id"]), name=rule.name)
        return FeeRule(**dict(row))

    async def update_rule(self, rule_id: UUID, **fields: Any) -> Optional[FeeRule]:
        """
        Update selected columns of a rule.

        Returns:
            Updated rule or None if not found
        """
        unknown = set(fields) - UPDATABLE_RULE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fee rule fields: {sorted(unknown)}")
        if not fields:
            return await self.get_rule(rule_id)

        assignments = []
        params: List[Any] = []
        for index, (column, value) in enumerate(fields.items(), start=1):
            assignments.append(f"{column} = ${index}")
            params.append(value.value if hasattr(value, "value") else value)
        params.append(rule_id)

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE fee_rules SET {", ".join(assignments)}, updated_at = NOW()
                WHERE id = ${len(params)}
                RETURNING {RULE_COLUMNS}
                """,
                *params
            )
        if not row:
            return None
        logger.info("fee_rule_updated", rule_id=str(rule_id), fields=sorted(fields))
        return FeeRule(**dict(row))

    async def insert_applied_fee(
        self,
        *,
        transfer_id: UUID,
        account_id: UUID,
        rule_ids: List[UUID],
        amount,
        currency: str,
        breakdown: FeeBreakdown,
        conn: Optional[asyncpg.Connection] = None
    ) -> AppliedFee:
        async with self.connection(conn) as c:
            row = await c.fetchrow(
                f"""
                INSERT INTO applied_fees (
                    transfer_id, account_id, rule_ids, amount, currency,
                    fixed_fees, percentage_fees, discounts, created_at
                )
                VALUES ($1, $2, $3::uuid[], $4, $5, $6, $7, $8, NOW())
                RETURNING {APPLIED_COLUMNS}
                """,
                transfer_id,
                account_id,
                list(rule_ids),
                amount,
                currency,
                breakdown.fixed_fees,
                breakdown.percentage_fees,
                breakdown.discounts
            )
        return AppliedFee(**dict(row))

    async def fee_history(
        self,
        account_id: UUID,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> List[AppliedFee]:
        """Applied fees charged to an account, newest first."""
        clauses = ["account_id = $1"]
        params: List[Any] = [account_id]
        if start_date is not None:
            params.append(start_date)
            clauses.append(f"created_at >= ${len(params)}")
        if end_date is not None:
            params.append(end_date)
            clauses.append(f"created_at <= ${len(params)}")

        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {APPLIED_COLUMNS} FROM applied_fees
                WHERE {" AND ".join(clauses)}
                ORDER BY created_at DESC
                """,
                *params
            )
        return [AppliedFee(**dict(row)) for row in rows]
