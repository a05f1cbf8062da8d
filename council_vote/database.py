"""
Async PostgreSQL access shared by the voting and results services.

Environment variables:
    DATABASE_URL   Full DSN; when set it wins over the DB_* variables
    DB_HOST        Database host      (default: postgres)
    DB_PORT        Database port      (default: 5432)
    DB_NAME        Database name      (default: council_vote)
    DB_USER        Database user      (default: council_user)
    DB_PASSWORD    Database password  (default: council_pass)
    DB_POOL_MAX    Upper bound on pooled connections (default: 10)
"""
import os
import logging
from contextlib import asynccontextmanager

import asyncpg

logger = logging.getLogger(__name__)

# ── Configuration ────────────────────────────────────────────────────────────
DATABASE_URL = os.getenv("DATABASE_URL", "")
DB_POOL_MAX = int(os.getenv("DB_POOL_MAX", "10"))


def _pool_kwargs() -> dict:
    if DATABASE_URL:
        return {"dsn": DATABASE_URL}
    return {
        "host": os.getenv("DB_HOST", "postgres"),
        "port": int(os.getenv("DB_PORT", "5432")),
        "database": os.getenv("DB_NAME", "council_vote"),
        "user": os.getenv("DB_USER", "council_user"),
        "password": os.getenv("DB_PASSWORD", "council_pass"),
    }


class Database:
    """Lazily created asyncpg pool, shared by every request in a service."""

    _pool: asyncpg.Pool | None = None

    @classmethod
    async def get_pool(cls) -> asyncpg.Pool:
        if cls._pool is None:
            cls._pool = await asyncpg.create_pool(
                min_size=1, max_size=DB_POOL_MAX, **_pool_kwargs()
            )
            logger.info(f"Database pool created (max_size={DB_POOL_MAX})")
        return cls._pool

    @classmethod
    async def close(cls) -> None:
        if cls._pool is not None:
            await cls._pool.close()
            cls._pool = None

    @classmethod
    @asynccontextmanager
    async def connection(cls):
        """Borrow a pooled connection for the duration of the block."""
        pool = await cls.get_pool()
        async with pool.acquire() as conn:
            yield conn

    @classmethod
    @asynccontextmanager
    async def transaction(cls):
        """Borrow a connection with an open transaction; rolled back on error."""
        pool = await cls.get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                yield conn
