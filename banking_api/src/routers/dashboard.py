"""
Admin dashboard endpoints.

All routes need read:dashboard. Database failures surface as 503 through
the application's exception handlers.
"""

from typing import List

from fastapi import APIRouter, Depends, Query

from banking_api.src.dependencies import DateRange, get_date_range, get_stats_service, require_permission
from banking_api.src.models.auth import CurrentUser, ErrorResponse, Permission
from banking_api.src.models.stats import CurrencyShare, DashboardStats, RecentTransactionsResponse, VolumePoint
from banking_api.src.services.stats_service import DashboardStatsService

router = APIRouter(
    prefix="/admin/dashboard",
    tags=["Dashboard"],
    responses={
        401: {"model": ErrorResponse, "description": "Unauthorized"},
        403: {"model": ErrorResponse, "description": "Forbidden"},
        503: {"model": ErrorResponse, "description": "Database unavailable"}
    }
)

dashboard_reader = require_permission(Permission.READ_DASHBOARD)


@router.get(
    "/stats",
    response_model=DashboardStats,
    summary="Dashboard Statistics",
    description="""
    Volume, payouts, users and growth against the previous period.

    Without both dates the current period runs up to now and growth is
    measured against the 30 days that ended 30 days ago.
    """
)
async def dashboard_stats(
    currency: str = Query("ALL", description="ISO 4217 code or ALL"),
    date_range: DateRange = Depends(get_date_range),
    current_user: CurrentUser = Depends(dashboard_reader),
    stats_service: DashboardStatsService = Depends(get_stats_service)
) -> DashboardStats:
    return await stats_service.get_stats(date_range.start, date_range.end, currency)


@router.get(
    "/volume-over-time",
    response_model=List[VolumePoint],
    summary="Monthly Volume",
    description="One bucket per calendar month, defaulting to the last 12 months."
)
async def volume_over_time(
    currency: str = Query("ALL", description="ISO 4217 code or ALL"),
    date_range: DateRange = Depends(get_date_range),
    current_user: CurrentUser = Depends(dashboard_reader),
    stats_service: DashboardStatsService = Depends(get_stats_service)
) -> List[VolumePoint]:
    return await stats_service.volume_over_time(date_range.start, date_range.end, currency)


@router.get("/transactions", response_model=RecentTransactionsResponse, summary="Recent Transactions")
async def recent_transactions(
    limit: int = Query(10, ge=1, le=100),
    current_user: CurrentUser = Depends(dashboard_reader),
    stats_service: DashboardStatsService = Depends(get_stats_service)
) -> RecentTransactionsResponse:
    return await stats_service.recent(limit)


@router.get(
    "/currency-distribution",
    response_model=List[CurrencyShare],
    summary="Currency Distribution",
    description="Volume per currency: the top four plus OTHER."
)
async def currency_distribution(
    date_range: DateRange = Depends(get_date_range),
    current_user: CurrentUser = Depends(dashboard_reader),
    stats_service: DashboardStatsService = Depends(get_stats_service)
) -> List[CurrencyShare]:
    return await stats_service.currency_distribution(date_range.start, date_range.end)
