"""
User repository for database operations.

Provides async CRUD operations for users and their roles using asyncpg,
plus the user counts the admin dashboard needs.
"""

import asyncpg
import structlog
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID
from datetime import datetime

from banking_api.src.exceptions import ConflictError
from banking_api.src.models.auth import UserDB
from banking_api.src.repositories.base import BaseRepository

logger = structlog.get_logger(__name__)

USER_COLUMNS = """
    id, username, email, password_hash, full_name, country, user_type,
    kyc_status, kyc_level, fee_tier, is_active, last_active_at, created_at, updated_at
"""

UPDATABLE_FIELDS = frozenset({
    "email", "password_hash", "full_name", "country", "user_type",
    "kyc_status", "kyc_level", "fee_tier", "is_active",
})


def _row_to_user(row: asyncpg.Record) -> UserDB:
    return UserDB(**dict(row))


class UserRepository(BaseRepository):
    """Repository for user database operations."""

    async def create_user(
        self,
        username: str,
        email: str,
        password_hash: str,
        roles: List[str],
        user_type: str = "customer",
        full_name: Optional[str] = None,
        country: Optional[str] = None,
        is_active: bool = True
    ) -> UserDB:
        """
        Create a new user with roles.

        Raises:
            ConflictError: If username or email already exists
        """
        async with self.transaction() as conn:
            try:
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO users (username, email, password_hash, full_name, country,
                                       user_type, is_active, created_at, updated_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, NOW(), NOW())
                    RETURNING {USER_COLUMNS}
                    """,
                    username,
                    email,
                    password_hash,
                    full_name,
                    country,
                    user_type,
                    is_active
                )
            except asyncpg.UniqueViolationError as e:
                if "username" in str(e):
                    logger.warning("username_already_exists", username=username)
                    raise ConflictError(f"Username '{username}' already exists")
                if "email" in str(e):
                    logger.warning("email_already_exists", email=email)
                    raise ConflictError(f"Email '{email}' already exists")
                raise

            await conn.executemany(
                "INSERT INTO user_roles (user_id, role) VALUES ($1, $2)",
                [(row["id"], role) for role in roles]
            )

        logger.info("user_created", user_id=str(row["id"]), username=username, roles=roles)
        return _row_to_user(row)

    async def get_user_by_id(self, user_id: UUID) -> Optional[UserDB]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {USER_COLUMNS} FROM users WHERE id = $1",
                user_id
            )

        if not row:
            logger.debug("user_not_found", user_id=str(user_id))
            return None
        return _row_to_user(row)

    async def get_user_by_username(self, username: str) -> Optional[UserDB]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {USER_COLUMNS} FROM users WHERE username = $1",
                username
            )

        if not row:
            logger.debug("user_not_found", username=username)
            return None
        return _row_to_user(row)

    async def list_users(self, limit: int = 50, offset: int = 0) -> Tuple[List[UserDB], int]:
        """
        List users with pagination, newest first.

        Returns:
            Tuple of (users, total count)
        """
        async with self.pool.acquire() as conn:
            total = await conn.fetchval("SELECT COUNT(*) FROM users")
            rows = await conn.fetch(
                f"""
                SELECT {USER_COLUMNS} FROM users
                ORDER BY created_at DESC
                LIMIT $1 OFFSET $2
                """,
                limit,
                offset
            )
        return [_row_to_user(row) for row in rows], total

    async def update_user(self, user_id: UUID, **fields: Any) -> Optional[UserDB]:
        """
        Update selected columns of a user.

        Only columns in UPDATABLE_FIELDS are accepted; unknown keys raise
        ValueError so callers cannot write arbitrary columns.

        Returns:
            Updated user or None if not found
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update user fields: {sorted(unknown)}")

        if not fields:
            return await self.get_user_by_id(user_id)

        assignments = []
        params: List[Any] = []
        for index, (column, value) in enumerate(fields.items(), start=1):
            assignments.append(f"{column} = ${index}")
            params.append(value)
        params.append(user_id)

        async with self.pool.acquire() as conn:
            try:
                row = await conn.fetchrow(
                    f"""
                    UPDATE users SET {", ".join(assignments)}, updated_at = NOW()
                    WHERE id = ${len(params)}
                    RETURNING {USER_COLUMNS}
                    """,
                    *params
                )
            except asyncpg.UniqueViolationError:
                raise ConflictError("Email already in use")

        if not row:
            return None

        logger.info("user_updated", user_id=str(user_id), fields=sorted(fields))
        return _row_to_user(row)

    async def set_user_roles(self, user_id: UUID, roles: List[str]) -> None:
        """Replace a user's roles."""
        async with self.transaction() as conn:
            await conn.execute("DELETE FROM user_roles WHERE user_id = $1", user_id)
            await conn.executemany(
                "INSERT INTO user_roles (user_id, role) VALUES ($1, $2)",
                [(user_id, role) for role in roles]
            )
        logger.info("user_roles_updated", user_id=str(user_id), roles=roles)

    async def get_user_roles(self, user_id: UUID) -> List[str]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT role FROM user_roles WHERE user_id = $1 ORDER BY role",
                user_id
            )
        return [row["role"] for row in rows]

    async def touch_last_active(self, user_id: UUID) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                "UPDATE users SET last_active_at = NOW() WHERE id = $1",
                user_id
            )

    async def get_display_names(self, user_ids: List[UUID]) -> Dict[UUID, str]:
        """Map user ids to full name, else username, else email."""
        if not user_ids:
            return {}
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, COALESCE(NULLIF(full_name, ''), NULLIF(username, ''), email) AS name
                FROM users WHERE id = ANY($1::uuid[])
                """,
                list(user_ids)
            )
        return {row["id"]: row["name"] for row in rows}

    async def count_users(self) -> int:
        async with self.pool.acquire() as conn:
            return await conn.fetchval("SELECT COUNT(*) FROM users")

    async def count_active_users(self, since: datetime) -> int:
        """Users seen at or after ``since``."""
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                "SELECT COUNT(*) FROM users WHERE last_active_at >= $1",
                since
            )
