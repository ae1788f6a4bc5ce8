# app/db/pool.py
"""
PostgreSQL connection pool (psycopg_pool) for the login token and profile tables.

Connections come out in autocommit mode with dict rows; every statement
the repositories issue is a single atomic INSERT/UPDATE/DELETE, so no
explicit transactions are needed.
"""

import asyncio
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool, PoolTimeout

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

CLOSE_TIMEOUT_SECONDS = 30.0


class DatabasePoolManager:
    """Owns the process-wide AsyncConnectionPool."""

    def __init__(self):
        self.pool: AsyncConnectionPool | None = None

    async def initialize(self) -> None:
        if self.pool is not None:
            logger.warning("Database pool already initialized")
            return

        config = settings.get_db_pool_config()
        pool = AsyncConnectionPool(
            conninfo=settings.SUPABASE_DB_URL,
            open=False,
            check=AsyncConnectionPool.check_connection,
            configure=self._configure_connection,
            **config,
        )
        try:
            await pool.open(wait=True)
            async with pool.connection() as conn:
                await conn.execute("SELECT 1")
        except (psycopg.Error, PoolTimeout) as e:
            logger.error("Failed to initialize database pool", error=str(e))
            await pool.close()
            raise RuntimeError(f"Database pool initialization failed: {e}") from e

        self.pool = pool
        logger.info(
            "Database pool initialized",
            min_size=config["min_size"],
            max_size=config["max_size"],
            timeout=config["timeout"],
        )

    @staticmethod
    async def _configure_connection(conn: psycopg.AsyncConnection) -> None:
        conn.row_factory = dict_row
        await conn.set_autocommit(True)
        app_name = f"startup-login-{settings.environment}"
        await conn.execute(sql.SQL("SET application_name = {}").format(sql.Literal(app_name)))
        await conn.execute("SET timezone = 'UTC'")
        await conn.execute("SET statement_timeout = '15s'")

    async def close(self) -> None:
        pool, self.pool = self.pool, None
        if pool is None:
            return
        try:
            await asyncio.wait_for(pool.close(), timeout=CLOSE_TIMEOUT_SECONDS)
            logger.info("Database pool closed")
        except TimeoutError:
            logger.warning("Database pool close timed out")

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """
        Usage:
            async with db_pool.connection() as conn:
                await conn.execute("SELECT 1")
        """
        if self.pool is None:
            raise RuntimeError("Database pool not initialized. Call initialize() first.")
        async with self.pool.connection() as conn:
            yield conn

    async def health_check(self) -> dict[str, Any]:
        if self.pool is None:
            return {"healthy": False, "error": "Pool not initialized", "service": "database_pool"}

        started = time.time()
        try:
            async with self.connection() as conn:
                await conn.execute("SELECT 1")
        except (psycopg.Error, PoolTimeout) as e:
            logger.error("Database pool health check failed", error=str(e))
            return {
                "healthy": False,
                "service": "database_pool",
                "error": f"Connection test failed: {e}",
                "error_type": type(e).__name__,
            }

        stats = self.pool.get_stats()
        return {
            "healthy": True,
            "service": "database_pool",
            "connection_time_ms": round((time.time() - started) * 1000, 2),
            "pool_stats": {
                "pool_size": stats.get("pool_size", 0),
                "pool_available": stats.get("pool_available", 0),
                "requests_waiting": stats.get("requests_waiting", 0),
            },
        }


# Global pool instance
db_pool = DatabasePoolManager()


async def db_health_check() -> dict[str, Any]:
    return await db_pool.health_check()
