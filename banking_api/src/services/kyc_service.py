"""
KYC submission and review workflow.
"""

import structlog
from typing import Any, Dict, List, Optional
from uuid import UUID

from banking_api.src.exceptions import ConflictError, InvalidRequestError, NotFoundError
from banking_api.src.models.audit import AuditAction, AuditContext, AuditLogCreate, AuditSeverity
from banking_api.src.models.auth import KycStatus
from banking_api.src.models.compliance import (
    KYC_LEVEL_PROFILE,
    KycDecisionRequest,
    KycDecisionValue,
    KycSubmission,
    KycSubmissionRequest,
    KycSubmissionStatus,
)
from banking_api.src.repositories.kyc_repo import KycRepository

logger = structlog.get_logger(__name__)


def parse_decision(request: KycDecisionRequest) -> tuple:
    """
    Validate a decision body.

    Returns:
        (submission_id, decision)

    Raises:
        InvalidRequestError: If submissionId is missing or malformed, or the
            decision is not approved/rejected
    """
    if not request.submissionId:
        raise InvalidRequestError("submissionId is required")
    try:
        submission_id = UUID(request.submissionId)
    except ValueError:
        raise InvalidRequestError("submissionId must be a valid UUID")

    try:
        decision = KycDecisionValue((request.decision or "").lower())
    except ValueError:
        raise InvalidRequestError("decision must be 'approved' or 'rejected'")
    return submission_id, decision


def user_fields_for(submission: KycSubmission, decision: KycDecisionValue) -> Dict[str, Any]:
    """Users columns to set for a decision on ``submission``."""
    if decision is KycDecisionValue.REJECTED:
        return {"kyc_status": KycStatus.REJECTED.value}
    return {"kyc_status": KycStatus.VERIFIED.value, **KYC_LEVEL_PROFILE[submission.level]}


class KycService:
    """Service for customer KYC submissions and their review."""

    def __init__(self, kyc_repo: KycRepository, audit_logger=None):
        self.kyc_repo = kyc_repo
        self.audit_logger = audit_logger

    async def submit(
        self,
        user_id: UUID,
        request: KycSubmissionRequest,
        context: Optional[AuditContext] = None
    ) -> KycSubmission:
        """
        Raises:
            ConflictError: If the user already has a pending submission
        """
        submission = await self.kyc_repo.create_submission(user_id, request.level, request.documents)
        await self._audit(
            AuditAction.KYC_SUBMITTED,
            AuditSeverity.LOW,
            user_id,
            submission,
            f"KYC {submission.level.value} submission received",
            context,
        )
        return submission

    async def decide(
        self,
        request: KycDecisionRequest,
        reviewer_id: UUID,
        context: Optional[AuditContext] = None
    ) -> KycSubmission:
        """
        Approve or reject a pending submission.

        Raises:
            InvalidRequestError: On a missing submissionId or unknown decision
            NotFoundError: If the submission does not exist
            ConflictError: If the submission has already been decided
        """
        submission_id, decision = parse_decision(request)

        submission = await self.kyc_repo.get_submission(submission_id)
        if submission is None:
            raise NotFoundError("KYC submission not found")
        if submission.status is not KycSubmissionStatus.PENDING:
            raise ConflictError(f"KYC submission is already {submission.status.value}")

        rejection_reason = request.rejectionReason if decision is KycDecisionValue.REJECTED else None
        updated = await self.kyc_repo.apply_decision(
            submission_id,
            KycSubmissionStatus(decision.value),
            reviewer_id,
            rejection_reason,
            user_fields_for(submission, decision),
        )
        if updated is None:
            raise ConflictError("KYC submission was decided concurrently")

        approved = decision is KycDecisionValue.APPROVED
        await self._audit(
            AuditAction.KYC_APPROVED if approved else AuditAction.KYC_REJECTED,
            AuditSeverity.MEDIUM,
            reviewer_id,
            updated,
            f"KYC submission {decision.value} for user {updated.user_id}",
            context,
            extra={"subject_user_id": str(updated.user_id), "rejection_reason": rejection_reason},
        )
        logger.info(
            "kyc_decision_applied",
            submission_id=str(submission_id),
            decision=decision.value,
            reviewer_id=str(reviewer_id),
        )
        return updated

    async def list_submissions(
        self,
        status: Optional[KycSubmissionStatus] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[KycSubmission]:
        return await self.kyc_repo.list_submissions(status.value if status else None, limit, offset)

    async def _audit(
        self,
        action: AuditAction,
        severity: AuditSeverity,
        user_id: UUID,
        submission: KycSubmission,
        description: str,
        context: Optional[AuditContext],
        extra: Optional[Dict[str, Any]] = None
    ) -> None:
        if self.audit_logger is None:
            return
        context = context or AuditContext()
        await self.audit_logger.log(AuditLogCreate(
            action=action,
            severity=severity,
            user_id=user_id,
            user_name=context.user_name,
            user_type=context.user_type,
            resource_type="kyc_submission",
            resource_id=str(submission.id),
            description=description,
            details={"level": submission.level.value, "status": submission.status.value, **(extra or {})},
            ip_address=context.ip_address,
            user_agent=context.user_agent,
        ))
