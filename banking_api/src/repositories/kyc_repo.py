"""
KYC submission repository.
"""

import structlog
from typing import Any, Dict, List, Optional
from uuid import UUID

import asyncpg

from banking_api.src.exceptions import ConflictError
from banking_api.src.models.auth import KycStatus
from banking_api.src.models.compliance import KycLevel, KycSubmission, KycSubmissionStatus
from banking_api.src.repositories.base import BaseRepository

logger = structlog.get_logger(__name__)

SUBMISSION_COLUMNS = """
    id, user_id, level, status, documents, submitted_at, decided_at, decided_by, rejection_reason
"""


class KycRepository(BaseRepository):
    """Repository for KYC submissions and the user fields they drive."""

    async def create_submission(
        self,
        user_id: UUID,
        level: KycLevel,
        documents: Dict[str, Any]
    ) -> KycSubmission:
        """
        Create a pending submission and mark the user's KYC as pending.

        The partial unique index on pending submissions settles concurrent
        submits: the loser's insert fails and nothing is written for it.

        Raises:
            ConflictError: If the user already has a pending submission
        """
        async with self.transaction() as conn:
            try:
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO kyc_submissions (user_id, level, status, documents, submitted_at)
                    VALUES ($1, $2, $3, $4, NOW())
                    RETURNING {SUBMISSION_COLUMNS}
                    """,
                    user_id,
                    level.value,
                    KycSubmissionStatus.PENDING.value,
                    documents
                )
            except asyncpg.UniqueViolationError:
                logger.warning("kyc_submission_already_pending", user_id=str(user_id))
                raise ConflictError("A KYC submission is already pending review")
            await conn.execute(
                "UPDATE users SET kyc_status = $1, updated_at = NOW() WHERE id = $2",
                KycStatus.PENDING.value,
                user_id
            )

        logger.info("kyc_submission_created", submission_id=str(row["id"]), user_id=str(user_id))
        return KycSubmission(**dict(row))

    async def get_submission(self, submission_id: UUID) -> Optional[KycSubmission]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {SUBMISSION_COLUMNS} FROM kyc_submissions WHERE id = $1",
                submission_id
            )
        return KycSubmission(**dict(row)) if row else None

    async def list_submissions(
        self,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[KycSubmission]:
        params: List[Any] = []
        where_sql = ""
        if status:
            params.append(status)
            where_sql = "WHERE status = $1"
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {SUBMISSION_COLUMNS} FROM kyc_submissions
                {where_sql}
                ORDER BY submitted_at DESC
                LIMIT ${len(params) + 1} OFFSET ${len(params) + 2}
                """,
                *params,
                limit,
                offset
            )
        return [KycSubmission(**dict(row)) for row in rows]

    async def apply_decision(
        self,
        submission_id: UUID,
        status: KycSubmissionStatus,
        decided_by: UUID,
        rejection_reason: Optional[str],
        user_fields: Dict[str, Any]
    ) -> Optional[KycSubmission]:
        """
        Record a decision on a pending submission and update its user.

        ``user_fields`` holds the users columns to set (kyc_status and, on
        approval, kyc_level and user_type).

        Returns:
            Updated submission, or None if it was no longer pending
        """
        async with self.transaction() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE kyc_submissions
                SET status = $1, decided_at = NOW(), decided_by = $2, rejection_reason = $3
                WHERE id = $4 AND status = $5
                RETURNING {SUBMISSION_COLUMNS}
                """,
                status.value,
                decided_by,
                rejection_reason,
                submission_id,
                KycSubmissionStatus.PENDING.value
            )
            if row is None:
                return None

            assignments = []
            params: List[Any] = []
            for index, (column, value) in enumerate(user_fields.items(), start=1):
                assignments.append(f"{column} = ${index}")
                params.append(value)
            params.append(row["user_id"])
            await conn.execute(
                f"UPDATE users SET {', '.join(assignments)}, updated_at = NOW() WHERE id = ${len(params)}",
                *params
            )

        logger.info(
            "kyc_submission_decided",
            submission_id=str(submission_id),
            status=status.value,
            decided_by=str(decided_by)
        )
        return KycSubmission(**dict(row))
