"""
Admin dashboard statistics.

The repository hands back flat transfer rows and the functions here do all
aggregation in Decimal, converting to float or whole units only for the
response.
"""

import structlog
from collections import defaultdict
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple
from datetime import datetime, timedelta, timezone

from banking_api.src.models.accounts import TransactionType, TransferStatus
from banking_api.src.models.stats import (
    CurrencyShare,
    DashboardStats,
    Growth,
    RecentTransaction,
    RecentTransactionsResponse,
    TransactionRecord,
    VolumePoint,
)
from banking_api.src.repositories.stats_repo import StatsRepository
from banking_api.src.repositories.user_repo import UserRepository
from shared.models import quantize_money, round_whole

logger = structlog.get_logger(__name__)

ZERO = Decimal("0")

PAYOUT_TYPES = frozenset({
    TransactionType.PAYOUT.value,
    TransactionType.WITHDRAWAL.value,
    TransactionType.ATM_WITHDRAWAL.value,
})

MONTH_LABELS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

ACTIVE_USER_WINDOW = timedelta(days=30)
DEFAULT_VOLUME_MONTHS = 12
TOP_CURRENCIES = 4
DEFAULT_CURRENCY = "USD"


def is_payout(row: TransactionRecord) -> bool:
    """Payout rows are withdrawal-type transfers or anything already SENT."""
    return (row.type or "").upper() in PAYOUT_TYPES or (row.status or "").upper() == TransferStatus.SENT.value


def growth(current: Decimal, previous: Decimal) -> float:
    """Percent change from ``previous`` to ``current``, 0 when there is no baseline."""
    if previous == 0:
        return 0.0
    return float(quantize_money((current - previous) / previous * 100))


def _totals(rows: Iterable[TransactionRecord]) -> Tuple[Decimal, Decimal, int]:
    volume = ZERO
    payouts = ZERO
    count = 0
    for row in rows:
        volume += row.amount
        if is_payout(row):
            payouts += row.amount
        count += 1
    return volume, payouts, count


def _average(volume: Decimal, count: int) -> Decimal:
    return volume / count if count else ZERO


def comparison_windows(
    start: Optional[datetime],
    end: Optional[datetime],
    now: datetime
) -> Tuple[Optional[datetime], datetime, datetime, datetime]:
    """
    Current and previous windows for growth figures.

    With both bounds the previous window has the same length and ends 1ms
    before ``start``. Otherwise the current window runs up to now and the
    previous one is the 30 days that ended 30 days ago.

    Returns:
        (current_start, current_end, previous_start, previous_end)
    """
    if start is not None and end is not None:
        previous_end = start - timedelta(milliseconds=1)
        previous_start = previous_end - (end - start)
        return start, end, previous_start, previous_end

    return start, end or now, now - timedelta(days=60), now - timedelta(days=30)


def compute_dashboard_stats(
    current: List[TransactionRecord],
    previous: List[TransactionRecord],
    active_users: int,
    total_users: int
) -> DashboardStats:
    volume, payouts, count = _totals(current)
    prev_volume, prev_payouts, prev_count = _totals(previous)
    average = _average(volume, count)
    prev_average = _average(prev_volume, prev_count)

    return DashboardStats(
        totalVolume=float(quantize_money(volume)),
        activeUsers=active_users,
        totalUsers=total_users,
        totalPayouts=float(quantize_money(payouts)),
        avgTransactionValue=float(quantize_money(average)),
        transactionCount=count,
        growth=Growth(
            volume=growth(volume, prev_volume),
            # Historical activity is not tracked, so there is nothing to compare against
            activeUsers=0.0,
            payouts=growth(payouts, prev_payouts),
            avgValue=growth(average, prev_average),
        ),
    )


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def month_range(start: datetime, end: datetime) -> List[Tuple[int, int]]:
    """(year, month) pairs from ``start``'s month through ``end``'s month, inclusive."""
    year, month = start.year, start.month
    months = []
    while (year, month) <= (end.year, end.month):
        months.append((year, month))
        month += 1
        if month > 12:
            year, month = year + 1, 1
    return months


def build_volume_series(rows: List[TransactionRecord], start: datetime, end: datetime) -> List[VolumePoint]:
    """Monthly volume and payout totals, one point per month even when empty."""
    start, end = _as_utc(start), _as_utc(end)
    volume: Dict[Tuple[int, int], Decimal] = defaultdict(lambda: ZERO)
    payouts: Dict[Tuple[int, int], Decimal] = defaultdict(lambda: ZERO)

    for row in rows:
        created = _as_utc(row.created_at)
        key = (created.year, created.month)
        volume[key] += row.amount
        if is_payout(row):
            payouts[key] += row.amount

    return [
        VolumePoint(
            month=f"{MONTH_LABELS[month - 1]} {year}",
            volume=round_whole(volume[(year, month)]),
            payouts=round_whole(payouts[(year, month)]),
        )
        for year, month in month_range(start, end)
    ]


def recent_transactions(rows: List[TransactionRecord]) -> RecentTransactionsResponse:
    items = [
        RecentTransaction(
            id=row.id,
            customer=row.customer_name or "Unknown",
            email=row.customer_email or "",
            amount=float(quantize_money(row.amount)),
            currency=(row.currency or DEFAULT_CURRENCY).upper(),
            status=(row.status or "completed").lower(),
            type=(row.type or "transfer").lower(),
            date=_as_utc(row.created_at).isoformat(),
            description=row.description or "",
        )
        for row in sorted(rows, key=lambda r: _as_utc(r.created_at), reverse=True)
    ]
    return RecentTransactionsResponse(transactions=items, total=len(items))


def currency_distribution(rows: List[TransactionRecord]) -> List[CurrencyShare]:
    """Volume per currency: the top four, plus OTHER for the remainder."""
    totals: Dict[str, Decimal] = defaultdict(lambda: ZERO)
    for row in rows:
        totals[(row.currency or DEFAULT_CURRENCY).upper()] += row.amount

    ranked = sorted(totals.items(), key=lambda item: (-item[1], item[0]))
    shares = [CurrencyShare(currency=currency, volume=round_whole(amount)) for currency, amount in ranked[:TOP_CURRENCIES]]

    remainder = sum((amount for _, amount in ranked[TOP_CURRENCIES:]), ZERO)
    if remainder > 0:
        shares.append(CurrencyShare(currency="OTHER", volume=round_whole(remainder)))
    return shares


def _currency_filter(currency: Optional[str]) -> Optional[str]:
    if not currency or currency.upper() == "ALL":
        return None
    return currency.upper()


class DashboardStatsService:
    """Aggregations behind the admin dashboard endpoints."""

    def __init__(self, stats_repo: StatsRepository, user_repo: UserRepository):
        self.stats_repo = stats_repo
        self.user_repo = user_repo

    async def get_stats(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        currency: Optional[str] = None
    ) -> DashboardStats:
        now = datetime.now(timezone.utc)
        currency = _currency_filter(currency)
        cur_start, cur_end, prev_start, prev_end = comparison_windows(start_date, end_date, now)

        current = await self.stats_repo.fetch_transactions(cur_start, cur_end, currency)
        previous = await self.stats_repo.fetch_transactions(prev_start, prev_end, currency)
        active_users = await self.user_repo.count_active_users(now - ACTIVE_USER_WINDOW)
        total_users = await self.user_repo.count_users()

        stats = compute_dashboard_stats(current, previous, active_users, total_users)
        logger.info(
            "dashboard_stats_computed",
            transactions=stats.transactionCount,
            currency=currency or "ALL",
        )
        return stats

    async def volume_over_time(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        currency: Optional[str] = None
    ) -> List[VolumePoint]:
        end = end_date or datetime.now(timezone.utc)
        if start_date is None:
            months_back = DEFAULT_VOLUME_MONTHS - 1
            year, month = divmod(end.year * 12 + end.month - 1 - months_back, 12)
            start = end.replace(year=year, month=month + 1, day=1, hour=0, minute=0, second=0, microsecond=0)
        else:
            start = start_date

        rows = await self.stats_repo.fetch_transactions(start, end, _currency_filter(currency))
        return build_volume_series(rows, start, end)

    async def recent(self, limit: int = 10) -> RecentTransactionsResponse:
        rows = await self.stats_repo.recent_transactions(limit)
        return recent_transactions(rows)

    async def currency_distribution(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> List[CurrencyShare]:
        rows = await self.stats_repo.fetch_transactions(start_date, end_date)
        return currency_distribution(rows)
