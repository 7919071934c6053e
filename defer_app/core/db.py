# defer_app/core/db.py
import logging
from contextlib import asynccontextmanager

from psycopg_pool import AsyncConnectionPool

from .config import DATABASE_DSN, DB_POOL_MAX, DB_POOL_MIN

logger = logging.getLogger(__name__)

_pool: AsyncConnectionPool | None = None


async def init_pool() -> AsyncConnectionPool:
    """Open the shared shop-store pool once; later calls return the same pool."""
    global _pool
    if _pool is None:
        pool = AsyncConnectionPool(
            conninfo=DATABASE_DSN,
            min_size=DB_POOL_MIN,
            max_size=DB_POOL_MAX,
            open=False,
            timeout=10,
            name="defer-shops",
            check=AsyncConnectionPool.check_connection,
        )
        await pool.open(wait=True)
        _pool = pool
        logger.info(f"Postgres pool ready (min={DB_POOL_MIN}, max={DB_POOL_MAX})")
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


@asynccontextmanager
async def get_conn():
    if _pool is None:
        await init_pool()
    async with _pool.connection() as conn:
        yield conn
