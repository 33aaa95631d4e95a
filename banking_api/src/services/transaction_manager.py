"""
Transaction manager.

Executes transfers between accounts as a single database transaction:
both account rows are locked, balances move, and one ledger entry per
account records the change. Limits, compliance screening, fraud scoring and
fees are applied before any row is touched.
"""

import hashlib
import json
import structlog
from decimal import Decimal
from typing import List, Optional, Tuple
from uuid import UUID
from datetime import datetime, timezone

from banking_api.src.config import get_settings
from banking_api.src.exceptions import (
    ComplianceRejectedError,
    ConflictError,
    CurrencyMismatchError,
    InsufficientFundsError,
    InvalidRequestError,
    LimitExceededError,
    NotFoundError,
    PayvostError,
)
from banking_api.src.models.accounts import (
    AccountRecord,
    AccountStatement,
    AccountStatus,
    EntryType,
    LedgerPage,
    TransactionType,
    TransferRecord,
    TransferStatus,
)
from banking_api.src.models.audit import AuditAction, AuditContext
from banking_api.src.repositories.account_repo import AccountRepository
from shared.models import quantize_money, to_decimal
from shared.tracing import trace_function

logger = structlog.get_logger(__name__)

CURRENCY_LENGTH = 3


def default_idempotency_key(
    from_account_id: UUID,
    to_account_id: UUID,
    amount: Decimal,
    currency: str,
    description: Optional[str]
) -> str:
    """SHA-256 hex digest of the canonical JSON of a transfer request."""
    canonical = json.dumps(
        {
            "amount": str(amount),
            "currency": currency,
            "description": description,
            "from": str(from_account_id),
            "to": str(to_account_id),
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def start_of_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_month(now: datetime) -> datetime:
    return start_of_day(now).replace(day=1)


def month_bounds(year: int, month: int) -> Tuple[datetime, datetime]:
    """UTC start of ``month`` and start of the month after it."""
    start = datetime(year, month, 1, tzinfo=timezone.utc)
    if month == 12:
        return start, start.replace(year=year + 1, month=1)
    return start, start.replace(month=month + 1)


class TransactionManager:
    """Service for transfers, deposits and ledger reads."""

    def __init__(
        self,
        account_repo: AccountRepository,
        fee_engine,
        compliance_manager,
        audit_logger=None,
        metrics=None
    ):
        self.account_repo = account_repo
        self.fee_engine = fee_engine
        self.compliance_manager = compliance_manager
        self.audit_logger = audit_logger
        self.metrics = metrics
        self.settings = get_settings()

    @trace_function("transfer.execute", attributes=("currency", "idempotency_key"))
    async def execute_transfer(
        self,
        from_account_id: UUID,
        to_account_id: UUID,
        amount,
        currency: str,
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        user_id: Optional[UUID] = None,
        audit_context: Optional[AuditContext] = None,
        from_country: Optional[str] = None,
        to_country: Optional[str] = None,
        user_tier: Optional[str] = None
    ) -> TransferRecord:
        """
        Move ``amount`` from one account to another.

        The source is debited amount plus fee; the destination is credited
        the amount. A repeated idempotency key returns the original transfer.

        Raises:
            InvalidRequestError: Bad input or inactive account
            LimitExceededError: Daily or monthly limit would be exceeded
            ComplianceRejectedError: Screening or fraud scoring blocked the transfer
            NotFoundError: Either account does not exist
            CurrencyMismatchError: An account is not held in ``currency``
            InsufficientFundsError: Source balance is below amount plus fee
        """
        try:
            amount = quantize_money(to_decimal(amount))
        except ValueError as e:
            raise InvalidRequestError(str(e))
        currency = (currency or "").upper()

        if amount <= 0:
            raise InvalidRequestError("Amount must be greater than zero")
        if from_account_id == to_account_id:
            raise InvalidRequestError("Cannot transfer to the same account")
        if len(currency) != CURRENCY_LENGTH or not currency.isalpha():
            raise InvalidRequestError(f"Invalid currency code: {currency!r}")

        key = idempotency_key or default_idempotency_key(
            from_account_id, to_account_id, amount, currency, description
        )
        existing = await self.account_repo.get_transfer_by_idempotency_key(key)
        if existing is not None:
            logger.info("transfer_idempotent_replay", transfer_id=str(existing.id), idempotency_key=key)
            return existing

        log = logger.bind(
            from_account_id=str(from_account_id),
            to_account_id=str(to_account_id),
            amount=str(amount),
            currency=currency,
        )

        try:
            await self._check_limits(from_account_id, amount)

            # Screening uses the owners' countries of record; request values only add to them
            owner_countries = await self.account_repo.get_owner_countries([from_account_id, to_account_id])
            sender_country = owner_countries.get(from_account_id) or from_country
            recipient_country = owner_countries.get(to_account_id) or to_country

            compliance = await self.compliance_manager.check_transaction_compliance(
                user_id,
                from_account_id,
                amount,
                currency,
                sender_country,
                recipient_country,
                declared_countries=[c for c in (from_country, to_country) if c],
            )
            if not compliance.is_compliant:
                raise ComplianceRejectedError(
                    "Transfer rejected by compliance checks",
                    alerts=[alert.model_dump(mode="json") for alert in compliance.alerts],
                )

            fraud = await self.compliance_manager.calculate_fraud_score(
                user_id,
                from_account_id,
                amount,
                ip_address=audit_context.ip_address if audit_context else None,
            )
            if not fraud.allowed:
                raise ComplianceRejectedError(
                    "Transfer rejected by fraud screening",
                    alerts=[{"alert_type": "FRAUD_SCORE", "score": fraud.score, "rules": fraud.rules}],
                )

            fee = await self.fee_engine.calculate_fees(
                amount,
                currency,
                TransactionType.INTERNAL_TRANSFER,
                from_country=sender_country,
                to_country=recipient_country,
                user_tier=user_tier,
            )

            try:
                transfer = await self._apply_transfer(
                    from_account_id, to_account_id, amount, fee, currency, description, key, user_id
                )
            except ConflictError:
                # Lost a race with an identical request
                replay = await self.account_repo.get_transfer_by_idempotency_key(key)
                if replay is None:
                    raise
                return replay

        except PayvostError as e:
            log.warning("transfer_failed", error_code=e.error_code, error=e.message)
            if self.metrics is not None:
                self.metrics.transfers.labels(status=TransferStatus.FAILED.value).inc()
            if self.audit_logger is not None:
                await self.audit_logger.log_financial_transaction(
                    action=AuditAction.TRANSFER_FAILED,
                    user_id=user_id,
                    amount=amount,
                    currency=currency,
                    description=f"Transfer failed: {e.message}",
                    account_id=from_account_id,
                    details={"error_code": e.error_code, "to_account_id": str(to_account_id)},
                    context=audit_context,
                )
            raise

        if user_id is not None and self.audit_logger is not None:
            await self.audit_logger.log_financial_transaction(
                action=AuditAction.TRANSFER_COMPLETED,
                user_id=user_id,
                amount=amount,
                currency=currency,
                description="Transfer completed",
                account_id=from_account_id,
                transaction_id=transfer.id,
                details={
                    "to_account_id": str(to_account_id),
                    "fee": str(fee.fee_amount),
                    "requires_review": compliance.requires_review,
                },
                context=audit_context,
            )

        if self.metrics is not None:
            self.metrics.transfers.labels(status=TransferStatus.COMPLETED.value).inc()
            self.metrics.transfer_amount.labels(currency=currency).observe(float(amount))
            if fee.fee_amount > 0:
                self.metrics.fees_collected.labels(
                    currency=currency,
                    transaction_type=TransactionType.INTERNAL_TRANSFER.value,
                ).inc(float(fee.fee_amount))

        log.info("transfer_completed", transfer_id=str(transfer.id), fee=str(fee.fee_amount))
        return transfer

    async def _check_limits(self, account_id: UUID, amount: Decimal, conn=None) -> None:
        """
        Daily and monthly outgoing limits.

        Called once up front, and again with ``conn`` after the source row is
        locked, where concurrent transfers from the account are serialized.
        """
        now = datetime.now(timezone.utc)

        daily = await self.account_repo.sum_completed_outgoing(account_id, start_of_day(now), conn=conn)
        if daily + amount > self.settings.transfer_daily_limit:
            raise LimitExceededError(
                "Daily transfer limit exceeded",
                details={"limit": str(self.settings.transfer_daily_limit), "used": str(daily)},
            )

        monthly = await self.account_repo.sum_completed_outgoing(account_id, start_of_month(now), conn=conn)
        if monthly + amount > self.settings.transfer_monthly_limit:
            raise LimitExceededError(
                "Monthly transfer limit exceeded",
                details={"limit": str(self.settings.transfer_monthly_limit), "used": str(monthly)},
            )

    async def _apply_transfer(
        self,
        from_account_id: UUID,
        to_account_id: UUID,
        amount: Decimal,
        fee,
        currency: str,
        description: Optional[str],
        idempotency_key: str,
        user_id: Optional[UUID]
    ) -> TransferRecord:
        total_debit = amount + fee.fee_amount

        async with self.account_repo.transaction() as conn:
            locked = await self.account_repo.lock_accounts(conn, [from_account_id, to_account_id])
            source = locked.get(from_account_id)
            destination = locked.get(to_account_id)

            if source is None or destination is None:
                raise NotFoundError("One or both accounts not found")
            for account in (source, destination):
                if account.status != AccountStatus.ACTIVE:
                    raise InvalidRequestError(f"Account {account.id} is {account.status.value}")
            if source.currency != currency or destination.currency != currency:
                raise CurrencyMismatchError(
                    "Account currency does not match transfer currency",
                    details={
                        "transfer_currency": currency,
                        "from_currency": source.currency,
                        "to_currency": destination.currency,
                    },
                )
            if source.balance < total_debit:
                raise InsufficientFundsError(
                    "Insufficient funds",
                    details={"required": str(total_debit), "available": str(source.balance)},
                )
            await self._check_limits(from_account_id, amount, conn=conn)

            transfer = await self.account_repo.insert_transfer(
                conn,
                from_account_id=from_account_id,
                to_account_id=to_account_id,
                amount=amount,
                currency=currency,
                transaction_type=TransactionType.INTERNAL_TRANSFER,
                status=TransferStatus.COMPLETED,
                fee_amount=fee.fee_amount,
                description=description,
                idempotency_key=idempotency_key,
                initiated_by=user_id,
            )

            source_balance = source.balance - total_debit
            destination_balance = destination.balance + amount
            await self.account_repo.update_balance(conn, from_account_id, source_balance)
            await self.account_repo.update_balance(conn, to_account_id, destination_balance)

            await self.account_repo.insert_ledger_entry(
                conn,
                account_id=from_account_id,
                transfer_id=transfer.id,
                entry_type=EntryType.DEBIT,
                amount=-total_debit,
                balance_after=source_balance,
                description=description or "Transfer out",
            )
            await self.account_repo.insert_ledger_entry(
                conn,
                account_id=to_account_id,
                transfer_id=transfer.id,
                entry_type=EntryType.CREDIT,
                amount=amount,
                balance_after=destination_balance,
                description=description or "Transfer in",
            )

            await self.fee_engine.record_applied_fees(transfer.id, fee, from_account_id, conn=conn)

        return transfer

    @trace_function("transfer.deposit", attributes=("account_id",))
    async def deposit(
        self,
        account_id: UUID,
        amount,
        user_id: Optional[UUID] = None,
        description: Optional[str] = None,
        audit_context: Optional[AuditContext] = None
    ) -> TransferRecord:
        """
        Credit an account from outside the platform.

        Raises:
            InvalidRequestError: Non-positive amount or inactive account
            NotFoundError: Account does not exist
        """
        try:
            amount = quantize_money(to_decimal(amount))
        except ValueError as e:
            raise InvalidRequestError(str(e))
        if amount <= 0:
            raise InvalidRequestError("Amount must be greater than zero")

        async with self.account_repo.transaction() as conn:
            locked = await self.account_repo.lock_accounts(conn, [account_id])
            account = locked.get(account_id)
            if account is None:
                raise NotFoundError("Account not found")
            if account.status != AccountStatus.ACTIVE:
                raise InvalidRequestError(f"Account {account.id} is {account.status.value}")

            transfer = await self.account_repo.insert_transfer(
                conn,
                from_account_id=None,
                to_account_id=account_id,
                amount=amount,
                currency=account.currency,
                transaction_type=TransactionType.DEPOSIT,
                status=TransferStatus.COMPLETED,
                description=description or "Deposit",
                initiated_by=user_id,
            )
            new_balance = account.balance + amount
            await self.account_repo.update_balance(conn, account_id, new_balance)
            await self.account_repo.insert_ledger_entry(
                conn,
                account_id=account_id,
                transfer_id=transfer.id,
                entry_type=EntryType.CREDIT,
                amount=amount,
                balance_after=new_balance,
                description=description or "Deposit",
            )

        if self.audit_logger is not None:
            await self.audit_logger.log_balance_change(
                user_id=user_id,
                account_id=account_id,
                previous_balance=account.balance,
                new_balance=new_balance,
                currency=account.currency,
                reason=f"Deposit of {amount:.2f} {account.currency}",
                action=AuditAction.BALANCE_DEPOSITED,
                transaction_id=transfer.id,
                context=audit_context,
            )
        if self.metrics is not None:
            self.metrics.transfers.labels(status=TransferStatus.COMPLETED.value).inc()
            self.metrics.transfer_amount.labels(currency=account.currency).observe(float(amount))

        logger.info("deposit_completed", account_id=str(account_id), amount=str(amount), transfer_id=str(transfer.id))
        return transfer

    async def open_account(
        self,
        user_id: UUID,
        currency: str,
        opened_by: Optional[UUID] = None,
        audit_context: Optional[AuditContext] = None
    ) -> AccountRecord:
        """Open an empty ACTIVE account for ``user_id``."""
        account = await self.account_repo.create_account(user_id, currency.upper())
        if self.audit_logger is not None:
            await self.audit_logger.log_admin_action(
                admin_id=opened_by,
                action="open_account",
                resource_type="account",
                resource_id=str(account.id),
                details={"user_id": str(user_id), "currency": account.currency},
                context=audit_context,
                audit_action=AuditAction.ACCOUNT_CREATED,
            )
        return account

    async def get_transfer(self, transfer_id: UUID) -> TransferRecord:
        transfer = await self.account_repo.get_transfer(transfer_id)
        if transfer is None:
            raise NotFoundError("Transfer not found")
        return transfer

    async def get_account(self, account_id: UUID) -> AccountRecord:
        account = await self.account_repo.get_account(account_id)
        if account is None:
            raise NotFoundError("Account not found")
        return account

    async def list_accounts_for_user(self, user_id: UUID) -> List[AccountRecord]:
        return await self.account_repo.list_accounts_for_user(user_id)

    async def get_account_ledger(self, account_id: UUID, limit: int = 50, offset: int = 0) -> LedgerPage:
        """Ledger entries of an account, newest first."""
        await self.get_account(account_id)
        entries = await self.account_repo.list_ledger(account_id, limit=limit, offset=offset)
        return LedgerPage(account_id=account_id, entries=entries, limit=limit, offset=offset)

    async def generate_statement(self, account_id: UUID, year: int, month: int) -> AccountStatement:
        """
        Monthly statement built from the ledger.

        Opening and closing balances are the ``balance_after`` of the last
        entry before the month starts and before it ends. Debits include fees,
        so opening + credits - debits always equals closing.

        Raises:
            NotFoundError: If the account does not exist
        """
        account = await self.get_account(account_id)
        start, end = month_bounds(year, month)

        opening = await self.account_repo.balance_before(account_id, start)
        closing = await self.account_repo.balance_before(account_id, end)
        entries = await self.account_repo.list_ledger_between(account_id, start, end)

        credits = sum((e.amount for e in entries if e.type == EntryType.CREDIT), Decimal("0"))
        debits = sum((-e.amount for e in entries if e.type == EntryType.DEBIT), Decimal("0"))

        return AccountStatement(
            account_id=account.id,
            currency=account.currency,
            month=f"{year:04d}-{month:02d}",
            period_start=start,
            period_end=end,
            opening_balance=opening,
            closing_balance=closing,
            net_change=closing - opening,
            total_credits=credits,
            total_debits=debits,
            entry_count=len(entries),
            largest_entry=max((abs(e.amount) for e in entries), default=Decimal("0")),
            entries=entries,
        )
