"""
Shared plumbing for asyncpg repositories.

Repositories receive the pool at construction. Methods that must run inside
a caller's transaction accept an optional connection; without one they
acquire their own from the pool.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import asyncpg

from banking_api.src.config import get_settings


class BaseRepository:
    """Pool holder with transaction helpers."""

    def __init__(self, pool: asyncpg.Pool):
        """
        Initialize repository.

        Args:
            pool: asyncpg connection pool
        """
        self.pool = pool
        self.settings = get_settings()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection]:
        """
        Context manager for database transactions.

        Yields:
            asyncpg.Connection: Database connection inside a transaction
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    @asynccontextmanager
    async def connection(self, conn: Optional[asyncpg.Connection] = None) -> AsyncIterator[asyncpg.Connection]:
        """Yield ``conn`` when given, otherwise a pooled connection."""
        if conn is not None:
            yield conn
            return
        async with self.pool.acquire() as pooled:
            yield pooled
