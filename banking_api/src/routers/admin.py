"""
Admin router for user management and the audit trail.

Provides REST API endpoints for:
- User management (create, list, read, update, deactivate)
- The admin audit-trail view with search, user-type and date filters
- Compliance queries, statistics and retention over the audit log

All endpoints require authentication and the permission named on each route.
"""

import structlog
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from banking_api.src.dependencies import (
    DateRange,
    PaginationParams,
    get_audit_context,
    get_audit_logger,
    get_date_range,
    get_user_service,
    parse_date_param,
    require_permission,
)
from banking_api.src.models.audit import (
    AuditAction,
    AuditContext,
    AuditLogEntry,
    AuditSeverity,
    AuditStatistics,
    AuditTrailFilter,
    AuditTrailResponse,
    RetentionResult,
    UserTypeFilter,
)
from banking_api.src.models.auth import (
    CreateUserRequest,
    CurrentUser,
    ErrorResponse,
    Permission,
    UpdateUserRequest,
    UserListResponse,
    UserResponse,
)
from banking_api.src.services.audit_logger import AuditLogger
from banking_api.src.services.user_service import UserService

logger = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/admin",
    tags=["Administration"],
    responses={
        401: {"model": ErrorResponse, "description": "Unauthorized"},
        403: {"model": ErrorResponse, "description": "Forbidden"},
        404: {"model": ErrorResponse, "description": "Not Found"},
        503: {"model": ErrorResponse, "description": "Database unavailable"}
    }
)


# ============================================================================
# USER MANAGEMENT ENDPOINTS
# ============================================================================


@router.post(
    "/users",
    response_model=UserResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create User",
    responses={409: {"model": ErrorResponse, "description": "Username or email already exists"}}
)
async def create_user(
    create_request: CreateUserRequest,
    admin: CurrentUser = Depends(require_permission(Permission.MANAGE_USERS)),
    user_service: UserService = Depends(get_user_service),
    context: AuditContext = Depends(get_audit_context)
) -> UserResponse:
    logger.info(
        "user_create_attempt",
        admin_id=str(admin.id),
        username=create_request.username,
        roles=create_request.roles
    )
    return await user_service.create_user(create_request, admin, context)


@router.get("/users", response_model=UserListResponse, summary="List Users")
async def list_users(
    admin: CurrentUser = Depends(require_permission(Permission.MANAGE_USERS)),
    user_service: UserService = Depends(get_user_service),
    pagination: PaginationParams = Depends()
) -> UserListResponse:
    return await user_service.list_users(pagination.limit, pagination.offset)


@router.get("/users/{user_id}", response_model=UserResponse, summary="Get User")
async def get_user(
    user_id: UUID,
    admin: CurrentUser = Depends(require_permission(Permission.MANAGE_USERS)),
    user_service: UserService = Depends(get_user_service)
) -> UserResponse:
    return await user_service.get_user(user_id)


@router.patch(
    "/users/{user_id}",
    response_model=UserResponse,
    summary="Update User",
    responses={409: {"model": ErrorResponse, "description": "Email already in use"}}
)
async def update_user(
    user_id: UUID,
    update_request: UpdateUserRequest,
    admin: CurrentUser = Depends(require_permission(Permission.MANAGE_USERS)),
    user_service: UserService = Depends(get_user_service),
    context: AuditContext = Depends(get_audit_context)
) -> UserResponse:
    return await user_service.update_user(user_id, update_request, admin, context)


@router.delete(
    "/users/{user_id}",
    response_model=UserResponse,
    summary="Deactivate User",
    description="Marks the user inactive. Admins cannot deactivate their own account (400)."
)
async def deactivate_user(
    user_id: UUID,
    admin: CurrentUser = Depends(require_permission(Permission.MANAGE_USERS)),
    user_service: UserService = Depends(get_user_service),
    context: AuditContext = Depends(get_audit_context)
) -> UserResponse:
    return await user_service.deactivate_user(user_id, admin, context)


# ============================================================================
# AUDIT TRAIL ENDPOINTS
# ============================================================================


@router.get(
    "/audit-trails",
    response_model=AuditTrailResponse,
    summary="Audit Trail",
    description="""
    Paginated audit trail, newest first.

    **Query Parameters:**
    - search: case-insensitive match on action, IP address or user name
    - userType: all | admin | customer
    - startDate / endDate: ISO date or datetime; a bare endDate covers the whole day
    - page (>= 1) and limit (1-200)
    """
)
async def list_audit_trail(
    search: Optional[str] = Query(None, max_length=200),
    userType: UserTypeFilter = Query(UserTypeFilter.ALL),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    date_range: DateRange = Depends(get_date_range),
    current_user: CurrentUser = Depends(require_permission(Permission.READ_AUDIT_LOGS)),
    audit_logger: AuditLogger = Depends(get_audit_logger)
) -> AuditTrailResponse:
    trail_filter = AuditTrailFilter(
        search=search.strip() if search and search.strip() else None,
        user_type=userType,
        start_date=date_range.start,
        end_date=date_range.end,
        page=page,
        limit=limit,
    )
    response = await audit_logger.list_audit_trail(trail_filter)
    logger.info(
        "audit_trail_listed",
        user_id=str(current_user.id),
        total=response.pagination.total,
        page=page
    )
    return response


@router.get(
    "/audit-logs",
    response_model=List[AuditLogEntry],
    summary="Query Audit Logs",
    description="Compliance query over raw audit rows, newest first."
)
async def query_audit_logs(
    user_id: Optional[UUID] = None,
    account_id: Optional[UUID] = None,
    action: Optional[AuditAction] = None,
    severity: Optional[AuditSeverity] = None,
    start: Optional[str] = Query(None, description="ISO date or datetime"),
    end: Optional[str] = Query(None, description="ISO date or datetime"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    current_user: CurrentUser = Depends(require_permission(Permission.READ_AUDIT_LOGS)),
    audit_logger: AuditLogger = Depends(get_audit_logger)
) -> List[AuditLogEntry]:
    return await audit_logger.query_audit_logs(
        user_id=user_id,
        account_id=account_id,
        action=action,
        severity=severity,
        start_date=parse_date_param(start, "start"),
        end_date=parse_date_param(end, "end", end_of_day=True),
        limit=limit,
        offset=offset,
    )


@router.get("/audit-logs/statistics", response_model=AuditStatistics, summary="Audit Statistics")
async def audit_statistics(
    start: Optional[str] = Query(None, description="ISO date or datetime"),
    end: Optional[str] = Query(None, description="ISO date or datetime"),
    current_user: CurrentUser = Depends(require_permission(Permission.READ_AUDIT_LOGS)),
    audit_logger: AuditLogger = Depends(get_audit_logger)
) -> AuditStatistics:
    return await audit_logger.get_statistics(
        parse_date_param(start, "start"),
        parse_date_param(end, "end", end_of_day=True),
    )


@router.delete(
    "/audit-logs/retention",
    response_model=RetentionResult,
    summary="Apply Audit Retention",
    description="Deletes audit logs older than the configured retention period."
)
async def apply_audit_retention(
    admin: CurrentUser = Depends(require_permission(Permission.MANAGE_SYSTEM)),
    audit_logger: AuditLogger = Depends(get_audit_logger),
    context: AuditContext = Depends(get_audit_context)
) -> RetentionResult:
    result = await audit_logger.apply_retention()
    await audit_logger.log_admin_action(
        admin_id=admin.id,
        action="apply_audit_retention",
        resource_type="audit_logs",
        details={"deleted": result.deleted, "cutoff": result.cutoff.isoformat()},
        context=context,
        audit_action=AuditAction.SETTINGS_CHANGED,
    )
    return result
