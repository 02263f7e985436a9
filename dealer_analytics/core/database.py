"""
Async PostgreSQL connection pool for the report document store.

Report records are stored one JSONB document per row, in one table per
entity. This module owns the process-wide asyncpg pool; everything above it
goes through the repository in services/repository.py.

Key Components:
- Global connection pool singleton (_pool)
- init_db(): Initialize the connection pool at application startup
- get_db_pool(): Get the pool instance (initializes if needed)
- close_db(): Gracefully close the pool at application shutdown

Connection Pool Configuration (from Settings):
- min_size: db_pool_min_size (default 2)
- max_size: db_pool_max_size (default 10)
- command_timeout: query_timeout_seconds (default 30)

JSONB columns are decoded to Python dicts by a per-connection type codec, so
rows reach the repository as plain documents.

Usage:
    # At application startup (in FastAPI lifespan)
    await init_db()

    # In the repository
    pool = await get_db_pool()

    # At application shutdown
    await close_db()
"""

import json
import logging
from typing import Optional

import asyncpg
from asyncpg import Connection, Pool

from dealer_analytics.core.config import get_settings


logger = logging.getLogger(__name__)


# =============================================================================
# Global Pool Singleton
# =============================================================================

# None until init_db() is called
_pool: Optional[Pool] = None


async def _init_connection(conn: Connection) -> None:
    """Register the JSON codecs on every new pooled connection."""
    for type_name in ('json', 'jsonb'):
        await conn.set_type_codec(
            type_name,
            encoder=json.dumps,
            decoder=json.loads,
            schema='pg_catalog',
        )


# =============================================================================
# Pool Lifecycle Functions
# =============================================================================

async def init_db() -> Pool:
    """
    Initialize the database connection pool.

    Idempotent: if the pool already exists it is returned unchanged.

    Returns:
        Pool: The asyncpg connection pool instance.

    Raises:
        asyncpg.PostgresError: If connection to the database fails.
        OSError: If the database host is unreachable.
    """
    global _pool

    if _pool is None:
        settings = get_settings()

        _pool = await asyncpg.create_pool(
            dsn=settings.database_url,
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
            command_timeout=settings.query_timeout_seconds,
            init=_init_connection,
        )
        logger.info(
            "Database pool created (min=%d, max=%d)",
            settings.db_pool_min_size,
            settings.db_pool_max_size,
        )

    return _pool


async def get_db_pool() -> Pool:
    """
    Get the database connection pool, initializing if needed.

    Prefer calling init_db() explicitly at startup; lazy initialization adds
    latency to the first request.

    Returns:
        Pool: The asyncpg connection pool instance.
    """
    global _pool

    if _pool is None:
        await init_db()

    assert _pool is not None, "Pool should be initialized after init_db()"

    return _pool


async def close_db() -> None:
    """
    Close the database connection pool gracefully.

    Resets the singleton so a later get_db_pool() creates a new pool.
    Calling it when no pool exists has no effect.
    """
    global _pool

    if _pool is not None:
        await _pool.close()
        _pool = None

