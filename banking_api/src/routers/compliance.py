"""
Compliance router: AML alert review and the KYC workflow.

Customers submit KYC documents; compliance officers review the
submissions and the alerts raised while screening transfers.
"""

import structlog
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from banking_api.src.dependencies import (
    get_audit_context,
    get_compliance_manager,
    get_kyc_service,
    require_permission,
)
from banking_api.src.models.audit import AuditContext, AuditSeverity
from banking_api.src.models.auth import CurrentUser, ErrorResponse, Permission
from banking_api.src.models.compliance import (
    AlertListResponse,
    AlertReviewRequest,
    AlertStatus,
    ComplianceAlert,
    KycDecisionRequest,
    KycSubmission,
    KycSubmissionRequest,
    KycSubmissionStatus,
)
from banking_api.src.services.compliance_manager import ComplianceManager
from banking_api.src.services.kyc_service import KycService

logger = structlog.get_logger(__name__)

router = APIRouter(
    tags=["Compliance"],
    responses={
        401: {"model": ErrorResponse, "description": "Unauthorized"},
        403: {"model": ErrorResponse, "description": "Forbidden"},
        503: {"model": ErrorResponse, "description": "Database unavailable"}
    }
)

alert_reviewer = require_permission(Permission.REVIEW_COMPLIANCE)
kyc_reviewer = require_permission(Permission.REVIEW_KYC)


# ============================================================================
# AML ALERTS
# ============================================================================


@router.get("/admin/compliance/alerts", response_model=AlertListResponse, summary="List Compliance Alerts")
async def list_alerts(
    alert_status: Optional[AlertStatus] = Query(None, alias="status"),
    severity: Optional[AuditSeverity] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    reviewer: CurrentUser = Depends(alert_reviewer),
    compliance_manager: ComplianceManager = Depends(get_compliance_manager)
) -> AlertListResponse:
    return await compliance_manager.list_alerts(alert_status, severity, limit, offset)


@router.patch(
    "/admin/compliance/alerts/{alert_id}",
    response_model=ComplianceAlert,
    summary="Review Compliance Alert",
    description="""
    PENDING alerts can be resolved, dismissed or escalated; ESCALATED
    alerts can still be resolved or dismissed.

    **Error Responses:**
    - 404: Alert not found
    - 409: Transition not allowed from the alert's current status
    """,
    responses={
        404: {"model": ErrorResponse, "description": "Alert not found"},
        409: {"model": ErrorResponse, "description": "Invalid transition"}
    }
)
async def review_alert(
    alert_id: UUID,
    review_request: AlertReviewRequest,
    reviewer: CurrentUser = Depends(alert_reviewer),
    compliance_manager: ComplianceManager = Depends(get_compliance_manager)
) -> ComplianceAlert:
    alert = await compliance_manager.review_alert(
        alert_id, review_request.status, reviewer.id, review_request.notes
    )
    logger.info(
        "compliance_alert_reviewed",
        alert_id=str(alert_id),
        status=review_request.status.value,
        reviewer_id=str(reviewer.id)
    )
    return alert


# ============================================================================
# KYC
# ============================================================================


@router.post(
    "/kyc/submissions",
    response_model=KycSubmission,
    status_code=status.HTTP_201_CREATED,
    summary="Submit KYC",
    responses={409: {"model": ErrorResponse, "description": "A submission is already pending"}}
)
async def submit_kyc(
    submission_request: KycSubmissionRequest,
    current_user: CurrentUser = Depends(require_permission(Permission.SUBMIT_KYC)),
    kyc_service: KycService = Depends(get_kyc_service),
    context: AuditContext = Depends(get_audit_context)
) -> KycSubmission:
    return await kyc_service.submit(current_user.id, submission_request, context)


@router.get("/admin/kyc/submissions", response_model=List[KycSubmission], summary="List KYC Submissions")
async def list_kyc_submissions(
    submission_status: Optional[KycSubmissionStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    reviewer: CurrentUser = Depends(kyc_reviewer),
    kyc_service: KycService = Depends(get_kyc_service)
) -> List[KycSubmission]:
    return await kyc_service.list_submissions(submission_status, limit, offset)


@router.post(
    "/admin/kyc/decision",
    response_model=KycSubmission,
    summary="Decide KYC Submission",
    description="""
    Approve or reject a pending submission.

    Approval marks the user verified and sets their KYC level and user type
    from the submitted tier. Rejection marks the user rejected.

    **Error Responses:**
    - 400: Missing or invalid submissionId, or decision other than approved/rejected
    - 404: Submission not found
    - 409: Submission already decided
    """,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid request"},
        404: {"model": ErrorResponse, "description": "Submission not found"},
        409: {"model": ErrorResponse, "description": "Already decided"}
    }
)
async def decide_kyc(
    decision_request: KycDecisionRequest,
    reviewer: CurrentUser = Depends(kyc_reviewer),
    kyc_service: KycService = Depends(get_kyc_service),
    context: AuditContext = Depends(get_audit_context)
) -> KycSubmission:
    return await kyc_service.decide(decision_request, reviewer.id, context)
