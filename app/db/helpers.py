# app/db/helpers.py
"""
Query helpers shared by the repositories.

All psycopg failures leave this module as DatabaseError so the service
layer only has one exception type to translate into login-flow errors.
"""

import asyncio
import functools
from contextlib import asynccontextmanager
from typing import Any

import psycopg

from app.db.pool import db_pool
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class DatabaseError(Exception):
    """A query failed; ``recoverable`` marks connection-level failures worth retrying."""

    def __init__(self, message: str, operation: str = "unknown", recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


@asynccontextmanager
async def _translated(operation: str, query: str):
    try:
        yield
    except psycopg.OperationalError as e:
        logger.error("Database unavailable", operation=operation, query=query[:80], error=str(e))
        raise DatabaseError(f"Database unavailable: {e}", operation=operation) from e
    except psycopg.Error as e:
        logger.error("Database query failed", operation=operation, query=query[:80], error=str(e))
        raise DatabaseError(f"Query failed: {e}", operation=operation, recoverable=False) from e


async def fetch_one(query: str, params: tuple = ()) -> dict[str, Any] | None:
    """
    Run a statement and return its first row, or None.

    Used for ``... RETURNING`` writes too: a conditional UPDATE that matched
    nothing returns None.
    """
    async with _translated("fetch_one", query):
        async with db_pool.connection() as conn:
            cursor = await conn.execute(query, params)
            return await cursor.fetchone()


async def fetch_all(query: str, params: tuple = ()) -> list[dict[str, Any]]:
    async with _translated("fetch_all", query):
        async with db_pool.connection() as conn:
            cursor = await conn.execute(query, params)
            return await cursor.fetchall()


async def execute_query(query: str, params: tuple = ()) -> int:
    """Run a statement and return the affected row count."""
    async with _translated("execute", query):
        async with db_pool.connection() as conn:
            cursor = await conn.execute(query, params)
            return cursor.rowcount


def with_db_retry(max_retries: int = 2, base_delay: float = 0.1):
    """Retry a repository call on recoverable DatabaseError with exponential backoff."""

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            attempt = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except DatabaseError as e:
                    if not e.recoverable or attempt >= max_retries:
                        raise
                    delay = base_delay * (2**attempt)
                    attempt += 1
                    logger.warning(
                        "Database operation failed, retrying",
                        operation=func.__name__,
                        attempt=attempt,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator
