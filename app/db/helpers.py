"""
Query helpers the repositories build on.

Every helper accepts an optional `connection` so several statements can
share one borrowed connection; otherwise a pooled connection is used per
call. psycopg errors surface as DatabaseError.
"""

import asyncio
import functools
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import psycopg

from app.db.pool import db_pool
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class DatabaseError(Exception):
    """A query failed. `recoverable` is False once retries are spent or the error is permanent."""

    def __init__(self, message: str, operation: str = "unknown", recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


@asynccontextmanager
async def _borrowed(
    connection: psycopg.AsyncConnection | None, operation: str, query: str
) -> AsyncGenerator[psycopg.AsyncConnection, None]:
    try:
        if connection is not None:
            yield connection
        else:
            async with db_pool.connection() as conn:
                yield conn
    except psycopg.Error as e:
        logger.error("Database query failed", operation=operation, query=query[:100], error=str(e))
        raise DatabaseError(f"Query failed: {e}", operation=operation) from e


async def fetch_one(
    query: str, params: tuple = (), *, connection: psycopg.AsyncConnection | None = None
) -> dict[str, Any] | None:
    """First row as a dict, or None."""
    async with _borrowed(connection, "fetch_one", query) as conn:
        cur = await conn.execute(query, params)
        return await cur.fetchone()


async def fetch_all(
    query: str, params: tuple = (), *, connection: psycopg.AsyncConnection | None = None
) -> list[dict[str, Any]]:
    async with _borrowed(connection, "fetch_all", query) as conn:
        cur = await conn.execute(query, params)
        return await cur.fetchall()


async def fetch_val(
    query: str, params: tuple = (), *, connection: psycopg.AsyncConnection | None = None
) -> Any:
    """First column of the first row, e.g. a COUNT(*)."""
    row = await fetch_one(query, params, connection=connection)
    return next(iter(row.values())) if row else None


async def execute_query(
    query: str, params: tuple = (), *, connection: psycopg.AsyncConnection | None = None
) -> int:
    """Run a write and return the affected row count."""
    async with _borrowed(connection, "execute", query) as conn:
        cur = await conn.execute(query, params)
        return cur.rowcount


async def execute_transaction(statements: list[tuple[str, tuple]]) -> list[int]:
    """
    Run statements atomically and return each one's row count.

        await execute_transaction([
            ("UPDATE email_items SET status = %s WHERE user_id = %s AND status = %s", (...)),
            ("UPDATE user_settings SET kanban_columns = %s WHERE user_id = %s", (...)),
        ])
    """
    counts: list[int] = []
    try:
        async with db_pool.transaction() as conn:
            for query, params in statements:
                cur = await conn.execute(query, params)
                counts.append(cur.rowcount)
    except psycopg.Error as e:
        logger.error("Transaction rolled back", statements=len(statements), error=str(e))
        raise DatabaseError(f"Transaction failed: {e}", operation="transaction") from e

    logger.debug("Transaction committed", statements=len(statements), rowcounts=counts)
    return counts


def _is_transient(error: Exception) -> bool:
    if isinstance(error, psycopg.OperationalError):
        return True
    return isinstance(error, DatabaseError) and isinstance(error.__cause__, psycopg.OperationalError)


def with_db_retry(max_retries: int = 3, base_delay: float = 0.1):
    """
    Retry a repository coroutine on dropped connections, with exponential backoff.

    Anything other than an OperationalError is raised on the first attempt.
    """

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            attempt = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except (psycopg.OperationalError, DatabaseError) as e:
                    if not _is_transient(e):
                        raise
                    if attempt >= max_retries:
                        logger.error(
                            "Database operation failed after all retries",
                            operation=func.__name__,
                            attempts=attempt + 1,
                            error=str(e),
                        )
                        raise DatabaseError(
                            f"Operation failed after {max_retries} retries: {e}",
                            operation=func.__name__,
                            recoverable=False,
                        ) from e
                    delay = base_delay * (2**attempt)
                    logger.warning(
                        "Database connection dropped, retrying",
                        operation=func.__name__,
                        attempt=attempt + 1,
                        delay=delay,
                    )
                    attempt += 1
                    await asyncio.sleep(delay)

        return wrapper

    return decorator
