"""Process-wide asyncpg pool shared by the web app, the bot and the reconciler."""

import asyncio
import logging
from typing import Optional

import asyncpg

from membership.config import get_config

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT_SECONDS = 5.0

_pool: Optional[asyncpg.Pool] = None


async def _ping(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        answer = await conn.fetchval("SELECT 1")
    if answer != 1:
        raise RuntimeError(f"unexpected SELECT 1 answer: {answer!r}")


async def get_pool() -> asyncpg.Pool:
    """Return the shared pool, opening and pinging it on first use.

    Raises:
        asyncio.TimeoutError: If PostgreSQL does not accept connections in time
        RuntimeError: If the pool opened but the ping failed
    """
    global _pool

    if _pool is not None:
        return _pool

    config = get_config()
    try:
        pool = await asyncio.wait_for(
            asyncpg.create_pool(
                str(config.db_dsn),
                min_size=config.db_pool_min,
                max_size=config.db_pool_max,
                command_timeout=config.http_timeout_seconds,
            ),
            timeout=CONNECT_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        raise asyncio.TimeoutError(
            f"No database connection within {CONNECT_TIMEOUT_SECONDS:.0f}s; "
            "is PostgreSQL reachable at DB_DSN?"
        )

    try:
        await _ping(pool)
    except Exception as e:
        await pool.close()
        raise RuntimeError(f"Database ping failed: {e}") from e

    _pool = pool
    logger.info(f"Database pool ready (min={config.db_pool_min}, max={config.db_pool_max})")
    return _pool


async def close_pool() -> None:
    """Close the shared pool; a close that hangs on a leaked connection is terminated."""
    global _pool

    pool, _pool = _pool, None
    if pool is None:
        return
    try:
        await asyncio.wait_for(pool.close(), timeout=CONNECT_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.warning("Pool close timed out; terminating remaining connections")
        pool.terminate()
