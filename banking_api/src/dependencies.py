"""
FastAPI dependency injection for database, authentication, and authorization.

Provides injectable dependencies for:
- Repository and service instances built on the shared asyncpg pool
- User authentication (JWT token validation)
- Authorization (role and permission checking)
- Request context (client IP, user agent, audit context)
- Query parameter parsing shared by the admin endpoints

Routers depend on the service factories only, so tests replace them through
``app.dependency_overrides``.
"""

import structlog
from dataclasses import dataclass
from typing import List, Optional
from uuid import UUID
from datetime import date, datetime, time, timezone

from fastapi import Depends, HTTPException, Query, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from slowapi import Limiter
from slowapi.util import get_remote_address

from banking_api.src.config import Settings, get_settings
from banking_api.src.database import get_db_pool
from banking_api.src.models.audit import AuditContext
from banking_api.src.models.auth import CurrentUser, Permission
from banking_api.src.repositories.account_repo import AccountRepository
from banking_api.src.repositories.audit_repo import AuditRepository
from banking_api.src.repositories.compliance_repo import ComplianceRepository
from banking_api.src.repositories.fee_repo import FeeRepository
from banking_api.src.repositories.kyc_repo import KycRepository
from banking_api.src.repositories.stats_repo import StatsRepository
from banking_api.src.repositories.user_repo import UserRepository
from banking_api.src.services.audit_logger import AuditLogger
from banking_api.src.services.auth_service import (
    AuthService,
    has_any_permission,
    has_permission,
)
from banking_api.src.services.compliance_manager import ComplianceManager
from banking_api.src.services.fee_engine import FeeEngine
from banking_api.src.services.fx_service import FixerClient, FxService
from banking_api.src.services.kyc_service import KycService
from banking_api.src.services.stats_service import DashboardStatsService
from banking_api.src.services.transaction_manager import TransactionManager
from banking_api.src.services.user_service import UserService
from shared.metrics import PaymentMetrics, get_payment_metrics

logger = structlog.get_logger(__name__)

# HTTP Bearer token scheme
security = HTTPBearer(auto_error=False)

_settings = get_settings()

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[_settings.rate_limit_default],
    enabled=_settings.rate_limit_enabled,
)


# ============================================================================
# REPOSITORY DEPENDENCIES
# ============================================================================


def get_user_repository() -> UserRepository:
    return UserRepository(get_db_pool())


def get_audit_repository() -> AuditRepository:
    return AuditRepository(get_db_pool())


def get_account_repository() -> AccountRepository:
    return AccountRepository(get_db_pool())


def get_fee_repository() -> FeeRepository:
    return FeeRepository(get_db_pool())


def get_compliance_repository() -> ComplianceRepository:
    return ComplianceRepository(get_db_pool())


def get_kyc_repository() -> KycRepository:
    return KycRepository(get_db_pool())


def get_stats_repository() -> StatsRepository:
    return StatsRepository(get_db_pool())


# ============================================================================
# SERVICE DEPENDENCIES
# ============================================================================


def get_metrics() -> Optional[PaymentMetrics]:
    """Payment metrics, or None when metrics are disabled."""
    if not get_settings().metrics_enabled:
        return None
    return get_payment_metrics()


def get_audit_logger(
    audit_repo: AuditRepository = Depends(get_audit_repository),
    metrics: Optional[PaymentMetrics] = Depends(get_metrics)
) -> AuditLogger:
    return AuditLogger(audit_repo, metrics)


def get_auth_service(
    user_repo: UserRepository = Depends(get_user_repository),
    audit_logger: AuditLogger = Depends(get_audit_logger)
) -> AuthService:
    """
    Get authentication service with the request's repositories.

    Args:
        user_repo: User repository
        audit_logger: Audit logger for login events

    Returns:
        Authentication service
    """
    return AuthService(user_repo, audit_logger)


def get_user_service(
    user_repo: UserRepository = Depends(get_user_repository),
    auth_service: AuthService = Depends(get_auth_service),
    audit_logger: AuditLogger = Depends(get_audit_logger)
) -> UserService:
    return UserService(user_repo, auth_service, audit_logger)


def get_fee_engine(fee_repo: FeeRepository = Depends(get_fee_repository)) -> FeeEngine:
    return FeeEngine(fee_repo)


def get_compliance_manager(
    compliance_repo: ComplianceRepository = Depends(get_compliance_repository),
    user_repo: UserRepository = Depends(get_user_repository),
    audit_logger: AuditLogger = Depends(get_audit_logger),
    metrics: Optional[PaymentMetrics] = Depends(get_metrics)
) -> ComplianceManager:
    return ComplianceManager(compliance_repo, user_repo, audit_logger, metrics)


def get_transaction_manager(
    account_repo: AccountRepository = Depends(get_account_repository),
    fee_engine: FeeEngine = Depends(get_fee_engine),
    compliance_manager: ComplianceManager = Depends(get_compliance_manager),
    audit_logger: AuditLogger = Depends(get_audit_logger),
    metrics: Optional[PaymentMetrics] = Depends(get_metrics)
) -> TransactionManager:
    return TransactionManager(account_repo, fee_engine, compliance_manager, audit_logger, metrics)


def get_stats_service(
    stats_repo: StatsRepository = Depends(get_stats_repository),
    user_repo: UserRepository = Depends(get_user_repository)
) -> DashboardStatsService:
    return DashboardStatsService(stats_repo, user_repo)


def get_kyc_service(
    kyc_repo: KycRepository = Depends(get_kyc_repository),
    audit_logger: AuditLogger = Depends(get_audit_logger)
) -> KycService:
    return KycService(kyc_repo, audit_logger)


_fx_service: Optional[FxService] = None


def init_fx_service(settings: Optional[Settings] = None) -> FxService:
    """
    Create the process-wide FX service.

    Should be called during application startup so the rate cache and the
    provider session are shared across requests.
    """
    global _fx_service

    if _fx_service is None:
        settings = settings or get_settings()
        client = FixerClient(settings, metrics=get_metrics())
        _fx_service = FxService(client, cache_ttl=settings.fx_cache_ttl)
        logger.info("fx_service_initialized", provider=settings.fixer_base_url)
    return _fx_service


async def close_fx_service() -> None:
    global _fx_service

    if _fx_service is not None:
        await _fx_service.close()
        _fx_service = None
        logger.info("fx_service_closed")


def get_fx_service() -> FxService:
    return _fx_service if _fx_service is not None else init_fx_service()


# ============================================================================
# AUTHENTICATION DEPENDENCIES
# ============================================================================


async def get_token_from_header(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> str:
    """
    Extract JWT token from Authorization header.

    Raises:
        HTTPException: If token is missing or not a bearer token
    """
    if not credentials:
        logger.warning("auth_missing_credentials")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authentication credentials",
            headers={"WWW-Authenticate": "Bearer"}
        )

    if credentials.scheme.lower() != "bearer":
        logger.warning("auth_invalid_scheme", scheme=credentials.scheme)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication scheme. Expected Bearer token",
            headers={"WWW-Authenticate": "Bearer"}
        )

    return credentials.credentials


async def get_current_user(
    request: Request,
    token: str = Depends(get_token_from_header),
    auth_service: AuthService = Depends(get_auth_service)
) -> CurrentUser:
    """
    Get current authenticated user from JWT token.

    Validates token and retrieves user from database.

    Raises:
        HTTPException: If token is invalid or user not found
    """
    current_user = await auth_service.get_current_user(token)

    if not current_user:
        logger.warning("auth_invalid_token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication token",
            headers={"WWW-Authenticate": "Bearer"}
        )

    logger.debug(
        "user_authenticated",
        user_id=str(current_user.id),
        username=current_user.username,
        roles=current_user.roles
    )
    request.state.user = current_user
    return current_user


async def get_current_active_user(
    current_user: CurrentUser = Depends(get_current_user)
) -> CurrentUser:
    """
    Get current active user.

    Raises:
        HTTPException: If user is inactive
    """
    if not current_user.is_active:
        logger.warning(
            "user_inactive",
            user_id=str(current_user.id),
            username=current_user.username
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is inactive"
        )

    return current_user


# ============================================================================
# AUTHORIZATION DEPENDENCIES
# ============================================================================


class PermissionChecker:
    """
    Dependency that checks permissions derived from the user's roles.

    Any one of the listed permissions is enough.
    """

    def __init__(self, permissions: List[Permission]):
        self.permissions = permissions

    async def __call__(self, current_user: CurrentUser = Depends(get_current_active_user)) -> CurrentUser:
        if not has_any_permission(current_user.roles, self.permissions):
            logger.warning(
                "rbac_permission_denied",
                user_id=str(current_user.id),
                username=current_user.username,
                roles=current_user.roles,
                required_permissions=[p.value for p in self.permissions]
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission denied: {', '.join(p.value for p in self.permissions)} required"
            )
        return current_user


def require_permission(permission: Permission) -> PermissionChecker:
    return PermissionChecker([permission])


def ensure_account_access(current_user: CurrentUser, owner_id: UUID) -> None:
    """
    Allow the account owner, or anyone with read:all_accounts.

    Raises:
        HTTPException: 403 for anyone else
    """
    if owner_id == current_user.id or has_permission(current_user.roles, Permission.READ_ALL_ACCOUNTS):
        return
    logger.warning("account_access_denied", user_id=str(current_user.id), owner_id=str(owner_id))
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Not allowed to access this account"
    )


# ============================================================================
# REQUEST CONTEXT
# ============================================================================


def get_client_ip(request: Request) -> str:
    """
    Get client IP address from request.

    Checks X-Forwarded-For header first (for proxies),
    then falls back to client host.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        # X-Forwarded-For can contain multiple IPs, get the first one
        return forwarded.split(",")[0].strip()

    if request.client:
        return request.client.host

    return "unknown"


def get_user_agent(request: Request) -> Optional[str]:
    return request.headers.get("User-Agent")


def get_audit_context(
    request: Request,
    current_user: CurrentUser = Depends(get_current_active_user)
) -> AuditContext:
    """Request metadata and the caller's identity for audit rows."""
    return AuditContext(
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
        user_name=current_user.username,
        user_type=current_user.user_type,
    )


def get_anonymous_audit_context(request: Request) -> AuditContext:
    return AuditContext(ip_address=get_client_ip(request), user_agent=get_user_agent(request))


# ============================================================================
# QUERY PARAMETERS
# ============================================================================


def parse_date_param(value: Optional[str], name: str, end_of_day: bool = False) -> Optional[datetime]:
    """
    Parse an ISO date or datetime query value into an aware UTC datetime.

    A date-only value is the start of that day, or its last millisecond when
    ``end_of_day`` is set.

    Raises:
        HTTPException: 400 if the value is not ISO-8601
    """
    if not value:
        return None

    text = value.strip()
    try:
        if len(text) == 10:
            day = date.fromisoformat(text)
            moment = time(23, 59, 59, 999000) if end_of_day else time.min
            return datetime.combine(day, moment, tzinfo=timezone.utc)
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid {name}: expected ISO-8601 date or datetime"
        )

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class DateRange:
    start: Optional[datetime] = None
    end: Optional[datetime] = None


def get_date_range(
    startDate: Optional[str] = Query(None, description="ISO date or datetime"),
    endDate: Optional[str] = Query(None, description="ISO date or datetime; a bare date includes the whole day")
) -> DateRange:
    date_range = DateRange(
        start=parse_date_param(startDate, "startDate"),
        end=parse_date_param(endDate, "endDate", end_of_day=True),
    )
    if date_range.start and date_range.end and date_range.end < date_range.start:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="endDate must not precede startDate"
        )
    return date_range


class PaginationParams:
    """Pagination parameters for list endpoints."""

    def __init__(
        self,
        limit: Optional[int] = Query(None, ge=1),
        offset: int = Query(0, ge=0)
    ):
        settings = get_settings()
        if limit is None:
            limit = settings.pagination_default_limit
        self.limit = min(limit, settings.pagination_max_limit)
        self.offset = offset
