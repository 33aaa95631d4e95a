"""
Fee engine.

Prices a transaction from the active fee rules matching its type, currency
and countries, applies per-rule caps and the customer's tier discount, and
records what was charged.

All arithmetic is Decimal; only the final amounts are rounded to cents.
"""

import structlog
from decimal import Decimal
from typing import List, Optional
from uuid import UUID
from datetime import datetime

import asyncpg

from banking_api.src.config import get_settings
from banking_api.src.exceptions import InvalidRequestError, NotFoundError
from banking_api.src.models.accounts import TransactionType
from banking_api.src.models.fees import (
    AppliedFee,
    FeeBreakdown,
    FeeCalculation,
    FeeRule,
    FeeRuleCreate,
    FeeRuleUpdate,
    FeeType,
    missing_component,
)
from banking_api.src.repositories.fee_repo import FeeRepository
from shared.models import quantize_money, to_decimal

logger = structlog.get_logger(__name__)

ZERO = Decimal("0")


def price_rules(
    rules: List[FeeRule],
    amount: Decimal,
    currency: str,
    tier_discount_rate: Decimal = ZERO
) -> FeeCalculation:
    """
    Apply ``rules`` to ``amount``.

    Rules below their min_amount are skipped. A rule whose fee exceeds its
    max_amount is capped and the excess is reported as a discount. The tier
    discount is taken off the capped total.
    """
    fixed_fees = ZERO
    percentage_fees = ZERO
    discounts = ZERO
    total = ZERO
    applied: List[UUID] = []

    for rule in rules:
        if rule.min_amount is not None and amount < rule.min_amount:
            continue

        rule_fee = ZERO
        if rule.fee_type in (FeeType.FIXED, FeeType.HYBRID) and rule.fixed_amount is not None:
            rule_fee += rule.fixed_amount
            fixed_fees += rule.fixed_amount
        if rule.fee_type in (FeeType.PERCENTAGE, FeeType.HYBRID) and rule.percentage_rate is not None:
            percentage_fee = amount * rule.percentage_rate / Decimal(100)
            rule_fee += percentage_fee
            percentage_fees += percentage_fee

        if rule.max_amount is not None and rule_fee > rule.max_amount:
            discounts += rule_fee - rule.max_amount
            rule_fee = rule.max_amount

        total += rule_fee
        applied.append(rule.id)

    if tier_discount_rate > 0:
        tier_discount = total * tier_discount_rate
        discounts += tier_discount
        total -= tier_discount

    fee_amount = quantize_money(total)
    return FeeCalculation(
        fee_amount=fee_amount,
        currency=currency,
        applied_rules=applied,
        breakdown=FeeBreakdown(
            fixed_fees=quantize_money(fixed_fees),
            percentage_fees=quantize_money(percentage_fees),
            discounts=quantize_money(discounts),
            total=fee_amount,
        ),
    )


class FeeEngine:
    """Service for fee calculation and fee rule management."""

    def __init__(self, fee_repo: FeeRepository):
        self.fee_repo = fee_repo
        self.settings = get_settings()

    def tier_discount_rate(self, user_tier: Optional[str]) -> Decimal:
        if not user_tier:
            return ZERO
        return self.settings.fee_tier_discounts.get(user_tier.upper(), ZERO)

    async def calculate_fees(
        self,
        amount,
        currency: str,
        transaction_type: TransactionType,
        from_country: Optional[str] = None,
        to_country: Optional[str] = None,
        user_tier: Optional[str] = None
    ) -> FeeCalculation:
        """
        Calculate the fee for a transaction.

        Args:
            amount: Transaction amount in major units
            currency: ISO 4217 code
            transaction_type: Kind of transaction being priced
            from_country: Sender country, matched against country-scoped rules
            to_country: Recipient country, matched against country-scoped rules
            user_tier: Fee tier of the customer (STANDARD, SILVER, GOLD, PREMIUM)

        Raises:
            InvalidRequestError: If amount is not positive
        """
        try:
            amount = to_decimal(amount)
        except ValueError as e:
            raise InvalidRequestError(str(e))
        if amount <= 0:
            raise InvalidRequestError("Amount must be greater than zero")

        currency = currency.upper()
        countries = [country for country in (from_country, to_country) if country]
        rules = await self.fee_repo.list_matching_rules(transaction_type, currency, countries)

        calculation = price_rules(rules, amount, currency, self.tier_discount_rate(user_tier))

        logger.debug(
            "fees_calculated",
            amount=str(amount),
            currency=currency,
            transaction_type=transaction_type.value,
            rules=len(calculation.applied_rules),
            fee=str(calculation.fee_amount)
        )
        return calculation

    # ------------------------------------------------------------------
    # Rule management
    # ------------------------------------------------------------------

    async def create_rule(self, rule: FeeRuleCreate) -> FeeRule:
        return await self.fee_repo.create_rule(rule)

    async def update_rule(self, rule_id: UUID, update: FeeRuleUpdate) -> FeeRule:
        """
        The merged rule must still carry the components its fee type needs.

        Raises:
            NotFoundError: If the rule does not exist
            InvalidRequestError: If the update leaves the rule without a required component
        """
        fields = update.model_dump(exclude_unset=True)
        current = await self.fee_repo.get_rule(rule_id)
        if current is None:
            raise NotFoundError("Fee rule not found")

        merged = current.model_copy(update=fields)
        problem = missing_component(merged.fee_type, merged.fixed_amount, merged.percentage_rate)
        if problem:
            raise InvalidRequestError(problem, details={"rule_id": str(rule_id)})

        rule = await self.fee_repo.update_rule(rule_id, **fields)
        if rule is None:
            raise NotFoundError("Fee rule not found")
        return rule

    async def deactivate_rule(self, rule_id: UUID) -> FeeRule:
        """
        Raises:
            NotFoundError: If the rule does not exist
        """
        rule = await self.fee_repo.update_rule(rule_id, is_active=False)
        if rule is None:
            raise NotFoundError("Fee rule not found")
        logger.info("fee_rule_deactivated", rule_id=str(rule_id))
        return rule

    async def list_rules(self, active_only: bool = False) -> List[FeeRule]:
        return await self.fee_repo.list_rules(active_only=active_only)

    # ------------------------------------------------------------------
    # Applied fees
    # ------------------------------------------------------------------

    async def record_applied_fees(
        self,
        transfer_id: UUID,
        calculation: FeeCalculation,
        account_id: UUID,
        conn: Optional[asyncpg.Connection] = None
    ) -> Optional[AppliedFee]:
        """
        Persist the fee charged for a transfer.

        Nothing is stored for a zero fee. Pass ``conn`` to record inside the
        transfer's transaction.
        """
        if calculation.fee_amount <= 0:
            return None

        return await self.fee_repo.insert_applied_fee(
            transfer_id=transfer_id,
            account_id=account_id,
            rule_ids=calculation.applied_rules,
            amount=calculation.fee_amount,
            currency=calculation.currency,
            breakdown=calculation.breakdown,
            conn=conn
        )

    async def get_fee_history(
        self,
        account_id: UUID,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> List[AppliedFee]:
        return await self.fee_repo.fee_history(account_id, start_date, end_date)
