"""
Database connection pool and schema management.

The pool is created once at startup and shared by all repositories. Table
DDL is generated from the SQLAlchemy models so the schema has a single
definition.
"""

import asyncio
import functools
import json
from typing import Optional

import asyncpg
import structlog
from sqlalchemy.dialects import postgresql
from sqlalchemy.schema import CreateIndex, CreateTable

from banking_api.src.config import Settings, get_settings
from banking_api.src.exceptions import DatabaseUnavailableError
from banking_api.src.models.auth import Base

# Imported for their side effect of registering tables on Base.metadata
from banking_api.src.models import accounts, audit, compliance, fees  # noqa: F401

logger = structlog.get_logger(__name__)

_pool: Optional[asyncpg.Pool] = None

_json_dumps = functools.partial(json.dumps, default=str)


async def _init_connection(conn: asyncpg.Connection) -> None:
    """Decode json/jsonb columns to Python objects and encode dicts on write."""
    for type_name in ("json", "jsonb"):
        await conn.set_type_codec(
            type_name,
            encoder=_json_dumps,
            decoder=json.loads,
            schema="pg_catalog",
        )


async def init_db_pool(settings: Optional[Settings] = None) -> asyncpg.Pool:
    """
    Initialize database connection pool.

    Should be called during application startup.

    Returns:
        asyncpg connection pool
    """
    global _pool

    if _pool is not None:
        return _pool

    settings = settings or get_settings()

    try:
        _pool = await asyncpg.create_pool(
            settings.database_dsn,
            min_size=max(1, settings.database_pool_size // 2),
            max_size=settings.database_pool_size + settings.database_max_overflow,
            command_timeout=settings.database_command_timeout,
            init=_init_connection,
        )
    except (OSError, asyncpg.PostgresError) as e:
        logger.error("database_pool_init_failed", error=str(e))
        raise

    logger.info(
        "database_pool_initialized",
        pool_size=settings.database_pool_size,
        database=settings.database_dsn.split("@")[-1],
    )
    return _pool


async def close_db_pool() -> None:
    """Close the pool during application shutdown."""
    global _pool

    if _pool is not None:
        await _pool.close()
        logger.info("database_pool_closed")
        _pool = None


def get_db_pool() -> asyncpg.Pool:
    """
    Get database connection pool.

    Raises:
        DatabaseUnavailableError: If the pool is not initialized
    """
    if _pool is None:
        logger.error("database_pool_not_initialized")
        raise DatabaseUnavailableError("Database is not available")
    return _pool


def current_pool() -> Optional[asyncpg.Pool]:
    """The pool if initialized, else None. For health checks that must not raise."""
    return _pool


def schema_statements() -> list[str]:
    """CREATE TABLE / CREATE INDEX statements for every model, in dependency order."""
    dialect = postgresql.dialect()
    statements = []
    for table in Base.metadata.sorted_tables:
        ddl = str(CreateTable(table, if_not_exists=True).compile(dialect=dialect)).strip()
        statements.append(ddl)
        for index in sorted(table.indexes, key=lambda ix: ix.name or ""):
            statements.append(str(CreateIndex(index, if_not_exists=True).compile(dialect=dialect)).strip())
    return statements


async def init_schema(pool: asyncpg.Pool) -> None:
    """Create missing tables and indexes in a single transaction."""
    statements = schema_statements()
    async with pool.acquire() as conn:
        async with conn.transaction():
            for statement in statements:
                await conn.execute(statement)
    logger.info("database_schema_ensured", statements=len(statements))


async def check_database(pool: Optional[asyncpg.Pool]) -> bool:
    """True when a trivial query succeeds."""
    if pool is None:
        return False
    try:
        async with pool.acquire() as conn:
            await conn.fetchval("SELECT 1")
        return True
    except (OSError, asyncio.TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
        logger.error("database_health_check_failed", error=str(e))
        return False
