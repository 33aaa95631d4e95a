"""
Account, transfer and ledger repository.

Methods that take part in a transfer accept the caller's connection so that
row locks, balance updates and ledger inserts share one transaction.
"""

import structlog
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import UUID
from datetime import datetime

import asyncpg

from banking_api.src.exceptions import ConflictError, NotFoundError
from banking_api.src.models.accounts import (
    AccountRecord,
    AccountStatus,
    EntryType,
    LedgerEntryRecord,
    TransactionType,
    TransferRecord,
    TransferStatus,
)
from banking_api.src.repositories.base import BaseRepository

logger = structlog.get_logger(__name__)

ACCOUNT_COLUMNS = "id, user_id, currency, balance, status, created_at, updated_at"

TRANSFER_COLUMNS = """
    id, from_account_id, to_account_id, amount, fee_amount, currency, status, type,
    description, idempotency_key, initiated_by, created_at, completed_at
"""

LEDGER_COLUMNS = "id, account_id, transfer_id, type, amount, balance_after, description, created_at"


class AccountRepository(BaseRepository):
    """Repository for accounts, transfers and ledger entries."""

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def get_account(
        self,
        account_id: UUID,
        conn: Optional[asyncpg.Connection] = None
    ) -> Optional[AccountRecord]:
        async with self.connection(conn) as c:
            row = await c.fetchrow(
                f"SELECT {ACCOUNT_COLUMNS} FROM accounts WHERE id = $1",
                account_id
            )
        return AccountRecord(**dict(row)) if row else None

    async def list_accounts_for_user(self, user_id: UUID) -> List[AccountRecord]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {ACCOUNT_COLUMNS} FROM accounts WHERE user_id = $1 ORDER BY created_at",
                user_id
            )
        return [AccountRecord(**dict(row)) for row in rows]

    async def create_account(
        self,
        user_id: UUID,
        currency: str,
        status: AccountStatus = AccountStatus.ACTIVE
    ) -> AccountRecord:
        """
        Raises:
            NotFoundError: If the user does not exist
            ConflictError: If the user already holds an account in ``currency``
        """
        async with self.pool.acquire() as conn:
            try:
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO accounts (user_id, currency, balance, status, created_at)
                    VALUES ($1, $2, 0, $3, NOW())
                    RETURNING {ACCOUNT_COLUMNS}
                    """,
                    user_id,
                    currency,
                    status.value
                )
            except asyncpg.ForeignKeyViolationError:
                raise NotFoundError("User not found")
            except asyncpg.UniqueViolationError:
                raise ConflictError(f"User already holds a {currency} account")
        logger.info("account_created", account_id=str(row["id"]), user_id=str(user_id), currency=currency)
        return AccountRecord(**dict(row))

    async def get_owner_countries(self, account_ids: List[UUID]) -> Dict[UUID, Optional[str]]:
        """Country of record of each account's owner, keyed by account id."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT a.id, u.country FROM accounts a
                JOIN users u ON u.id = a.user_id
                WHERE a.id = ANY($1::uuid[])
                """,
                list(account_ids)
            )
        return {row["id"]: row["country"] for row in rows}

    async def lock_accounts(
        self,
        conn: asyncpg.Connection,
        account_ids: List[UUID]
    ) -> Dict[UUID, AccountRecord]:
        """
        Lock account rows FOR UPDATE in ascending id order.

        Two transfers touching the same pair of accounts always take the
        locks in the same order, so they cannot deadlock each other.

        Returns:
            Mapping of account id to the locked row (missing ids are absent)
        """
        ordered = sorted(set(account_ids), key=str)
        rows = await conn.fetch(
            f"""
            SELECT {ACCOUNT_COLUMNS} FROM accounts
            WHERE id = ANY($1::uuid[])
            ORDER BY id
            FOR UPDATE
            """,
            ordered
        )
        return {row["id"]: AccountRecord(**dict(row)) for row in rows}

    async def update_balance(
        self,
        conn: asyncpg.Connection,
        account_id: UUID,
        new_balance: Decimal
    ) -> None:
        await conn.execute(
            "UPDATE accounts SET balance = $1, updated_at = NOW() WHERE id = $2",
            new_balance,
            account_id
        )

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    async def insert_transfer(
        self,
        conn: asyncpg.Connection,
        *,
        from_account_id: Optional[UUID],
        to_account_id: Optional[UUID],
        amount: Decimal,
        currency: str,
        transaction_type: TransactionType,
        status: TransferStatus,
        fee_amount: Decimal = Decimal("0"),
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        initiated_by: Optional[UUID] = None
    ) -> TransferRecord:
        """
        Insert a transfer row.

        Raises:
            ConflictError: If the idempotency key was taken concurrently
        """
        completed_sql = "NOW()" if status == TransferStatus.COMPLETED else "NULL"
        try:
            row = await conn.fetchrow(
                f"""
                INSERT INTO transfers (
                    from_account_id, to_account_id, amount, fee_amount, currency, status,
                    type, description, idempotency_key, initiated_by, created_at, completed_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, NOW(), {completed_sql})
                RETURNING {TRANSFER_COLUMNS}
                """,
                from_account_id,
                to_account_id,
                amount,
                fee_amount,
                currency,
                status.value,
                transaction_type.value,
                description,
                idempotency_key,
                initiated_by
            )
        except asyncpg.UniqueViolationError:
            logger.warning("transfer_idempotency_conflict", idempotency_key=idempotency_key)
            raise ConflictError("A transfer with this idempotency key already exists")

        return TransferRecord(**dict(row))

    async def get_transfer(self, transfer_id: UUID) -> Optional[TransferRecord]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {TRANSFER_COLUMNS} FROM transfers WHERE id = $1",
                transfer_id
            )
        return TransferRecord(**dict(row)) if row else None

    async def get_transfer_by_idempotency_key(self, key: str) -> Optional[TransferRecord]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {TRANSFER_COLUMNS} FROM transfers WHERE idempotency_key = $1",
                key
            )
        return TransferRecord(**dict(row)) if row else None

    async def sum_completed_outgoing(
        self,
        account_id: UUID,
        since: datetime,
        conn: Optional[asyncpg.Connection] = None
    ) -> Decimal:
        """Total of COMPLETED transfers out of ``account_id`` created at or after ``since``."""
        async with self.connection(conn) as c:
            total = await c.fetchval(
                """
                SELECT COALESCE(SUM(amount), 0) FROM transfers
                WHERE from_account_id = $1 AND status = $2 AND created_at >= $3
                """,
                account_id,
                TransferStatus.COMPLETED.value,
                since
            )
        return Decimal(total)

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    async def insert_ledger_entry(
        self,
        conn: asyncpg.Connection,
        *,
        account_id: UUID,
        transfer_id: UUID,
        entry_type: EntryType,
        amount: Decimal,
        balance_after: Decimal,
        description: Optional[str] = None
    ) -> LedgerEntryRecord:
        row = await conn.fetchrow(
            f"""
            INSERT INTO ledger_entries (account_id, transfer_id, type, amount, balance_after,
                                        description, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, NOW())
            RETURNING {LEDGER_COLUMNS}
            """,
            account_id,
            transfer_id,
            entry_type.value,
            amount,
            balance_after,
            description
        )
        return LedgerEntryRecord(**dict(row))

    async def list_ledger(
        self,
        account_id: UUID,
        limit: int = 50,
        offset: int = 0
    ) -> List[LedgerEntryRecord]:
        """Ledger entries of an account, newest first."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {LEDGER_COLUMNS} FROM ledger_entries
                WHERE account_id = $1
                ORDER BY created_at DESC, id DESC
                LIMIT $2 OFFSET $3
                """,
                account_id,
                limit,
                offset
            )
        return [LedgerEntryRecord(**dict(row)) for row in rows]

    async def balance_before(self, account_id: UUID, moment: datetime) -> Decimal:
        """Balance after the last ledger entry created before ``moment``, or 0."""
        async with self.pool.acquire() as conn:
            balance = await conn.fetchval(
                """
                SELECT balance_after FROM ledger_entries
                WHERE account_id = $1 AND created_at < $2
                ORDER BY created_at DESC, id DESC
                LIMIT 1
                """,
                account_id,
                moment
            )
        return Decimal(balance) if balance is not None else Decimal("0")

    async def list_ledger_between(
        self,
        account_id: UUID,
        start: datetime,
        end: datetime
    ) -> List[LedgerEntryRecord]:
        """Ledger entries with ``start <= created_at < end``, oldest first."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {LEDGER_COLUMNS} FROM ledger_entries
                WHERE account_id = $1 AND created_at >= $2 AND created_at < $3
                ORDER BY created_at, id
                """,
                account_id,
                start,
                end
            )
        return [LedgerEntryRecord(**dict(row)) for row in rows]
