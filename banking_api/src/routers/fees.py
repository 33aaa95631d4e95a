"""
Fee endpoints: rule management for admins, fee previews for customers.
"""

import structlog
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from banking_api.src.dependencies import (
    DateRange,
    ensure_account_access,
    get_audit_context,
    get_audit_logger,
    get_current_active_user,
    get_date_range,
    get_fee_engine,
    get_transaction_manager,
    require_permission,
)
from banking_api.src.models.audit import AuditAction, AuditContext
from banking_api.src.models.auth import CurrentUser, ErrorResponse, Permission
from banking_api.src.models.fees import (
    AppliedFee,
    FeeCalculation,
    FeeCalculationRequest,
    FeeRule,
    FeeRuleCreate,
    FeeRuleUpdate,
)
from banking_api.src.services.audit_logger import AuditLogger
from banking_api.src.services.fee_engine import FeeEngine
from banking_api.src.services.transaction_manager import TransactionManager

logger = structlog.get_logger(__name__)

router = APIRouter(
    tags=["Fees"],
    responses={
        401: {"model": ErrorResponse, "description": "Unauthorized"},
        403: {"model": ErrorResponse, "description": "Forbidden"},
        503: {"model": ErrorResponse, "description": "Database unavailable"}
    }
)

fee_manager = require_permission(Permission.MANAGE_FEES)


async def _log_rule_change(
    audit_logger: AuditLogger,
    admin: CurrentUser,
    action: str,
    rule: FeeRule,
    details: dict,
    context: AuditContext
) -> None:
    await audit_logger.log_admin_action(
        admin_id=admin.id,
        action=action,
        resource_type="fee_rule",
        resource_id=str(rule.id),
        details=details,
        context=context,
        audit_action=AuditAction.FEE_RULE_CHANGED,
    )


# ============================================================================
# RULE MANAGEMENT
# ============================================================================


@router.get("/admin/fees/rules", response_model=List[FeeRule], summary="List Fee Rules")
async def list_fee_rules(
    active_only: bool = Query(False),
    admin: CurrentUser = Depends(fee_manager),
    fee_engine: FeeEngine = Depends(get_fee_engine)
) -> List[FeeRule]:
    return await fee_engine.list_rules(active_only=active_only)


@router.post(
    "/admin/fees/rules",
    response_model=FeeRule,
    status_code=status.HTTP_201_CREATED,
    summary="Create Fee Rule"
)
async def create_fee_rule(
    rule_request: FeeRuleCreate,
    admin: CurrentUser = Depends(fee_manager),
    fee_engine: FeeEngine = Depends(get_fee_engine),
    audit_logger: AuditLogger = Depends(get_audit_logger),
    context: AuditContext = Depends(get_audit_context)
) -> FeeRule:
    rule = await fee_engine.create_rule(rule_request)
    await _log_rule_change(
        audit_logger, admin, "create_fee_rule", rule, rule_request.model_dump(mode="json"), context
    )
    logger.info("fee_rule_created", rule_id=str(rule.id), admin_id=str(admin.id))
    return rule


@router.patch(
    "/admin/fees/rules/{rule_id}",
    response_model=FeeRule,
    summary="Update Fee Rule",
    responses={404: {"model": ErrorResponse, "description": "Rule not found"}}
)
async def update_fee_rule(
    rule_id: UUID,
    update_request: FeeRuleUpdate,
    admin: CurrentUser = Depends(fee_manager),
    fee_engine: FeeEngine = Depends(get_fee_engine),
    audit_logger: AuditLogger = Depends(get_audit_logger),
    context: AuditContext = Depends(get_audit_context)
) -> FeeRule:
    rule = await fee_engine.update_rule(rule_id, update_request)
    await _log_rule_change(
        audit_logger,
        admin,
        "update_fee_rule",
        rule,
        update_request.model_dump(mode="json", exclude_unset=True),
        context,
    )
    return rule


@router.delete(
    "/admin/fees/rules/{rule_id}",
    response_model=FeeRule,
    summary="Deactivate Fee Rule",
    description="Rules are never deleted; the rule stops matching new transactions.",
    responses={404: {"model": ErrorResponse, "description": "Rule not found"}}
)
async def deactivate_fee_rule(
    rule_id: UUID,
    admin: CurrentUser = Depends(fee_manager),
    fee_engine: FeeEngine = Depends(get_fee_engine),
    audit_logger: AuditLogger = Depends(get_audit_logger),
    context: AuditContext = Depends(get_audit_context)
) -> FeeRule:
    rule = await fee_engine.deactivate_rule(rule_id)
    await _log_rule_change(audit_logger, admin, "deactivate_fee_rule", rule, {"is_active": False}, context)
    return rule


# ============================================================================
# CALCULATION AND HISTORY
# ============================================================================


@router.post(
    "/fees/calculate",
    response_model=FeeCalculation,
    summary="Calculate Fees",
    description="Preview the fee for a transaction at the caller's fee tier. Nothing is charged."
)
async def calculate_fees(
    calculation_request: FeeCalculationRequest,
    current_user: CurrentUser = Depends(get_current_active_user),
    fee_engine: FeeEngine = Depends(get_fee_engine)
) -> FeeCalculation:
    return await fee_engine.calculate_fees(
        calculation_request.amount,
        calculation_request.currency,
        calculation_request.transaction_type,
        from_country=calculation_request.from_country or current_user.country,
        to_country=calculation_request.to_country,
        user_tier=current_user.fee_tier,
    )


@router.get(
    "/accounts/{account_id}/fees",
    response_model=List[AppliedFee],
    summary="Fee History",
    responses={404: {"model": ErrorResponse, "description": "Account not found"}}
)
async def fee_history(
    account_id: UUID,
    date_range: DateRange = Depends(get_date_range),
    current_user: CurrentUser = Depends(get_current_active_user),
    fee_engine: FeeEngine = Depends(get_fee_engine),
    transaction_manager: TransactionManager = Depends(get_transaction_manager)
) -> List[AppliedFee]:
    account = await transaction_manager.get_account(account_id)
    ensure_account_access(current_user, account.user_id)
    return await fee_engine.get_fee_history(account_id, date_range.start, date_range.end)
