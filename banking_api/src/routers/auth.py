"""
Authentication endpoints: login and current-user lookup.
"""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status

from banking_api.src.config import get_settings
from banking_api.src.dependencies import (
    get_anonymous_audit_context,
    get_auth_service,
    get_current_active_user,
    limiter,
)
from banking_api.src.models.audit import AuditContext
from banking_api.src.models.auth import CurrentUser, ErrorResponse, LoginRequest, TokenResponse
from banking_api.src.services.auth_service import AuthService

logger = structlog.get_logger(__name__)

settings = get_settings()

router = APIRouter(
    prefix="/auth",
    tags=["Authentication"],
    responses={
        401: {"model": ErrorResponse, "description": "Unauthorized"},
        422: {"model": ErrorResponse, "description": "Validation Error"}
    }
)


@router.post(
    "/login",
    response_model=TokenResponse,
    status_code=status.HTTP_200_OK,
    summary="User Login",
    description="""
    Authenticate user with username and password.

    **Authentication:** Not required (public endpoint)

    **Error Responses:**
    - 401: Invalid credentials or inactive user
    - 422: Validation error
    - 429: Too many attempts
    """
)
@limiter.limit(settings.rate_limit_login)
async def login(
    request: Request,
    login_request: LoginRequest,
    auth_service: AuthService = Depends(get_auth_service),
    context: AuditContext = Depends(get_anonymous_audit_context)
) -> TokenResponse:
    logger.info("login_attempt", username=login_request.username, ip_address=context.ip_address)

    token_response = await auth_service.login(login_request, context)
    if not token_response:
        logger.warning("login_failed", username=login_request.username, ip_address=context.ip_address)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Bearer"}
        )

    return token_response


@router.get(
    "/me",
    response_model=CurrentUser,
    summary="Current User",
    description="Identity, roles and KYC status of the authenticated user."
)
async def me(current_user: CurrentUser = Depends(get_current_active_user)) -> CurrentUser:
    return current_user
