"""
Async PostgreSQL connection pools for the ad-spend warehouse and the CRM.

This module owns the asyncpg pools that back the two flat-row collaborators:
ad-spend rows (warehouse) and CRM sales rows. Both pools follow the same
lazy singleton lifecycle; when no separate CRM DSN is configured the CRM pool
is simply the warehouse pool.

Key Components:
- init_db(): Initialize the pools at application startup
- get_db_pool(): Warehouse pool (initializes if needed)
- get_crm_pool(): CRM pool (initializes if needed)
- close_db(): Gracefully close the pools at application shutdown
- execute_query(): Convenience helper for one fetch on a given pool

Connection Pool Configuration:
- min_size: 2
- max_size: 10
- command_timeout: 60 seconds

Usage:
    # At application startup (in FastAPI lifespan)
    await init_db()

    # In services
    rows = await execute_query(get_ad_spend_rows_query(dimensions), start, end)

    # At application shutdown
    await close_db()
"""

from typing import Any, List, Optional

import asyncpg
from asyncpg import Pool

from pivot_report.core.config import get_settings


# =============================================================================
# Global Pool Singletons
# =============================================================================

# None until init_db() is called
_pool: Optional[Pool] = None
_crm_pool: Optional[Pool] = None


class DatabaseNotConfiguredError(RuntimeError):
    """Raised when a pool is requested but no DSN is configured."""


async def _create_pool(dsn: str) -> Pool:
    return await asyncpg.create_pool(
        dsn=dsn,
        min_size=2,
        max_size=10,
        command_timeout=60,
    )


# =============================================================================
# Pool Lifecycle Functions
# =============================================================================

async def init_db() -> Pool:
    """
    Initialize the warehouse pool and, when configured separately, the CRM pool.

    Idempotent: an already-initialized pool is returned unchanged.

    Returns:
        Pool: The warehouse connection pool.

    Raises:
        DatabaseNotConfiguredError: If DATABASE_URL is not set.
        asyncpg.PostgresError: If connection to the database fails.
        OSError: If the database host is unreachable.
    """
    global _pool, _crm_pool

    settings = get_settings()
    if _pool is None:
        if not settings.database_url:
            raise DatabaseNotConfiguredError("DATABASE_URL is not configured")
        _pool = await _create_pool(settings.database_url)

    if _crm_pool is None:
        if settings.crm_dsn != settings.database_url:
            _crm_pool = await _create_pool(settings.crm_dsn)
        else:
            _crm_pool = _pool

    return _pool


async def get_db_pool() -> Pool:
    """
    Get the warehouse connection pool, initializing if needed.

    Returns:
        Pool: The asyncpg connection pool instance.
    """
    if _pool is None:
        await init_db()

    assert _pool is not None, "Pool should be initialized after init_db()"
    return _pool


async def get_crm_pool() -> Pool:
    """
    Get the CRM connection pool, initializing if needed.

    Returns:
        Pool: The CRM pool (the warehouse pool when no separate DSN is set).
    """
    if _crm_pool is None:
        await init_db()

    assert _crm_pool is not None, "CRM pool should be initialized after init_db()"
    return _crm_pool


async def close_db() -> None:
    """
    Close the connection pools gracefully.

    Idempotent. After closing, the next get_db_pool() call creates new pools.
    """
    global _pool, _crm_pool

    if _crm_pool is not None and _crm_pool is not _pool:
        await _crm_pool.close()
    _crm_pool = None

    if _pool is not None:
        await _pool.close()
        _pool = None


# =============================================================================
# Query Execution Helper
# =============================================================================

async def execute_query(query: str, *args: Any, pool: Optional[Pool] = None) -> List[asyncpg.Record]:
    """
    Execute a single query and return results.

    Args:
        query: SQL query string with $1, $2, ... placeholders.
        *args: Query parameters matching the placeholders.
        pool: Pool to run against (default: warehouse pool).

    Returns:
        List[asyncpg.Record]: Records returned by the query.

    Raises:
        asyncpg.PostgresError: If the query execution fails.

    Example:
        rows = await execute_query(
            CRM_SALES_ROWS_QUERY, start, end, pool=await get_crm_pool()
        )
    """
    if pool is None:
        pool = await get_db_pool()

    async with pool.acquire() as conn:
        return await conn.fetch(query, *args)
