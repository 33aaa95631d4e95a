"""
Audit log repository for database operations.

Provides async writes and filtered reads of audit logs using asyncpg,
including the admin audit-trail listing, statistics and retention cleanup.
"""

import structlog
from typing import Any, List, Optional, Tuple
from datetime import datetime

from banking_api.src.models.audit import (
    AuditLogCreate,
    AuditLogEntry,
    AuditLogFilter,
    AuditStatistics,
    AuditTrailFilter,
    UserTypeFilter,
)
from banking_api.src.models.auth import ADMIN_USER_TYPES
from banking_api.src.repositories.base import BaseRepository

logger = structlog.get_logger(__name__)

AUDIT_COLUMNS = """
    id, user_id, user_name, user_type, action, severity, resource_type, resource_id,
    account_id, transaction_id, description, details, ip_address, user_agent,
    status_code, created_at
"""

RESOLVED_NAME_SQL = (
    "COALESCE(NULLIF(al.user_name, ''), NULLIF(u.full_name, ''), NULLIF(u.username, ''), u.email)"
)
RESOLVED_TYPE_SQL = "COALESCE(NULLIF(al.user_type, ''), u.user_type)"
ADMIN_TYPES = sorted(ADMIN_USER_TYPES)


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def build_audit_trail_where(filter: AuditTrailFilter) -> Tuple[str, List[Any]]:
    """
    Build the WHERE clause for the admin audit-trail query.

    Columns are qualified with ``al`` (audit_logs) and ``u`` (users, LEFT
    JOINed on user_id).

    Returns:
        Tuple of (SQL starting with "WHERE" or empty string, positional params)
    """
    clauses: List[str] = []
    params: List[Any] = []

    def bind(value: Any) -> str:
        params.append(value)
        return f"${len(params)}"

    if filter.search and filter.search.strip():
        term = bind(f"%{_escape_like(filter.search.strip())}%")
        clauses.append(
            f"(al.action ILIKE {term} OR al.ip_address ILIKE {term} OR {RESOLVED_NAME_SQL} ILIKE {term})"
        )

    if filter.user_type == UserTypeFilter.ADMIN:
        clauses.append(f"LOWER({RESOLVED_TYPE_SQL}) = ANY({bind(ADMIN_TYPES)}::text[])")
    elif filter.user_type == UserTypeFilter.CUSTOMER:
        clauses.append(
            f"COALESCE({RESOLVED_TYPE_SQL}, '') <> '' "
            f"AND LOWER({RESOLVED_TYPE_SQL}) <> ALL({bind(ADMIN_TYPES)}::text[])"
        )

    if filter.start_date is not None:
        clauses.append(f"al.created_at >= {bind(filter.start_date)}")

    if filter.end_date is not None:
        clauses.append(f"al.created_at <= {bind(filter.end_date)}")

    where_sql = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    return where_sql, params


class AuditRepository(BaseRepository):
    """Repository for audit log database operations."""

    async def create_audit_log(self, entry: AuditLogCreate) -> AuditLogEntry:
        """
        Insert an audit log entry.

        Args:
            entry: Event to persist (details already masked by the caller)

        Returns:
            Created audit log entry
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO audit_logs (
                    user_id, user_name, user_type, action, severity, resource_type,
                    resource_id, account_id, transaction_id, description, details,
                    ip_address, user_agent, status_code, created_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, NOW())
                RETURNING {AUDIT_COLUMNS}
                """,
                entry.user_id,
                entry.user_name,
                entry.user_type,
                entry.action.value,
                entry.severity.value,
                entry.resource_type,
                entry.resource_id,
                entry.account_id,
                entry.transaction_id,
                entry.description,
                entry.details,
                entry.ip_address,
                entry.user_agent,
                entry.status_code
            )

        logger.debug(
            "audit_log_created",
            audit_id=str(row["id"]),
            action=entry.action.value,
            severity=entry.severity.value
        )
        return AuditLogEntry(**dict(row))

    async def query_audit_logs(self, filter: AuditLogFilter) -> List[AuditLogEntry]:
        """
        Filtered audit log query, newest first.

        Args:
            filter: Filter parameters

        Returns:
            Matching audit logs
        """
        where_clauses = []
        params: List[Any] = []

        def bind(value: Any) -> str:
            params.append(value)
            return f"${len(params)}"

        if filter.user_id is not None:
            where_clauses.append(f"user_id = {bind(filter.user_id)}")
        if filter.account_id is not None:
            where_clauses.append(f"account_id = {bind(filter.account_id)}")
        if filter.action is not None:
            where_clauses.append(f"action = {bind(filter.action.value)}")
        if filter.severity is not None:
            where_clauses.append(f"severity = {bind(filter.severity.value)}")
        if filter.start_date is not None:
            where_clauses.append(f"created_at >= {bind(filter.start_date)}")
        if filter.end_date is not None:
            where_clauses.append(f"created_at <= {bind(filter.end_date)}")

        where_sql = f"WHERE {' AND '.join(where_clauses)}" if where_clauses else ""
        limit_param = bind(filter.limit)
        offset_param = bind(filter.offset)

        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {AUDIT_COLUMNS}
                FROM audit_logs
                {where_sql}
                ORDER BY created_at DESC
                LIMIT {limit_param} OFFSET {offset_param}
                """,
                *params
            )

        return [AuditLogEntry(**dict(row)) for row in rows]

    async def list_audit_trail(self, filter: AuditTrailFilter) -> Tuple[List[AuditLogEntry], int]:
        """
        Admin audit-trail page with user names resolved from the users table.

        Returns:
            Tuple of (page of logs, total matching count)
        """
        where_sql, params = build_audit_trail_where(filter)
        from_sql = "FROM audit_logs al LEFT JOIN users u ON u.id = al.user_id"

        async with self.pool.acquire() as conn:
            total = await conn.fetchval(f"SELECT COUNT(*) {from_sql} {where_sql}", *params)

            page_params = [*params, filter.limit, filter.offset]
            rows = await conn.fetch(
                f"""
                SELECT al.id, al.user_id, {RESOLVED_NAME_SQL} AS user_name,
                       {RESOLVED_TYPE_SQL} AS user_type, al.action, al.severity,
                       al.resource_type, al.resource_id, al.account_id, al.transaction_id,
                       al.description, al.details, al.ip_address, al.user_agent,
                       al.status_code, al.created_at
                {from_sql}
                {where_sql}
                ORDER BY al.created_at DESC
                LIMIT ${len(params) + 1} OFFSET ${len(params) + 2}
                """,
                *page_params
            )

        return [AuditLogEntry(**dict(row)) for row in rows], total

    async def get_statistics(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> AuditStatistics:
        """Counts by action, severity and HTTP status class."""
        where_clauses = []
        params: List[Any] = []
        if start_date is not None:
            params.append(start_date)
            where_clauses.append(f"created_at >= ${len(params)}")
        if end_date is not None:
            params.append(end_date)
            where_clauses.append(f"created_at <= ${len(params)}")
        where_sql = f"WHERE {' AND '.join(where_clauses)}" if where_clauses else ""

        async with self.pool.acquire() as conn:
            totals = await conn.fetchrow(
                f"""
                SELECT COUNT(*) AS total, COUNT(DISTINCT user_id) AS unique_users
                FROM audit_logs {where_sql}
                """,
                *params
            )
            by_action = await conn.fetch(
                f"SELECT action, COUNT(*) AS count FROM audit_logs {where_sql} GROUP BY action",
                *params
            )
            by_severity = await conn.fetch(
                f"SELECT severity, COUNT(*) AS count FROM audit_logs {where_sql} GROUP BY severity",
                *params
            )
            by_status = await conn.fetch(
                f"""
                SELECT CASE WHEN status_code IS NULL THEN 'none'
                            ELSE (status_code / 100)::text || 'xx' END AS status_class,
                       COUNT(*) AS count
                FROM audit_logs {where_sql}
                GROUP BY status_class
                """,
                *params
            )

        return AuditStatistics(
            total=totals["total"],
            unique_users=totals["unique_users"],
            by_action={row["action"]: row["count"] for row in by_action},
            by_severity={row["severity"]: row["count"] for row in by_severity},
            by_status_class={row["status_class"]: row["count"] for row in by_status},
            start_date=start_date,
            end_date=end_date
        )

    async def delete_old_logs(self, cutoff: datetime) -> int:
        """
        Delete audit logs created before ``cutoff``.

        Returns:
            Number of deleted rows
        """
        async with self.pool.acquire() as conn:
            result = await conn.execute("DELETE FROM audit_logs WHERE created_at < $1", cutoff)

        # asyncpg returns the command tag, e.g. "DELETE 42"
        deleted = int(result.split()[-1]) if result else 0
        logger.info("audit_logs_retention_cleanup", deleted=deleted, cutoff=cutoff.isoformat())
        return deleted
