# app/db/helpers.py
"""
Database helper functions for common patterns.
Reduces boilerplate in the repository layer.
"""

import asyncio
from functools import wraps
from typing import Any

import psycopg

from app.errors import AppError, ErrorKind
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class DatabaseError(Exception):
    """Custom exception for database operations."""

    def __init__(self, message: str, operation: str = "unknown", recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable

    def to_app_error(self) -> AppError:
        return AppError(
            ErrorKind.DATABASE,
            str(self),
            {"operation": self.operation, "recoverable": self.recoverable},
        )


async def fetch_one(
    query: str, params: tuple = (), *, connection: psycopg.AsyncConnection
) -> dict[str, Any] | None:
    """
    Execute query and return single row as dict.

    Args:
        query: SQL query with %s placeholders
        params: Query parameters
        connection: Connection borrowed from the pool

    Returns:
        Dict with row data or None if no results
    """
    try:
        async with connection.cursor() as cur:
            await cur.execute(query, params)
            row = await cur.fetchone()
            return row if row else None

    except psycopg.Error as e:
        logger.error("Database fetch_one error", query=query[:100], error=str(e))
        raise DatabaseError(f"Query failed: {e}", operation="fetch_one") from e


async def fetch_all(
    query: str, params: tuple = (), *, connection: psycopg.AsyncConnection
) -> list[dict[str, Any]]:
    """Execute query and return all rows as list of dicts."""
    try:
        async with connection.cursor() as cur:
            await cur.execute(query, params)
            return await cur.fetchall()

    except psycopg.Error as e:
        logger.error("Database fetch_all error", query=query[:100], error=str(e))
        raise DatabaseError(f"Query failed: {e}", operation="fetch_all") from e


async def fetch_val(query: str, params: tuple = (), *, connection: psycopg.AsyncConnection) -> Any:
    """Execute query and return the first column of the first row."""
    try:
        async with connection.cursor() as cur:
            await cur.execute(query, params)
            row = await cur.fetchone()
            return list(row.values())[0] if row else None

    except psycopg.Error as e:
        logger.error("Database fetch_val error", query=query[:100], error=str(e))
        raise DatabaseError(f"Query failed: {e}", operation="fetch_val") from e


async def execute_query(query: str, params: tuple = (), *, connection: psycopg.AsyncConnection) -> int:
    """
    Execute a write query.

    Returns:
        Number of affected rows
    """
    try:
        async with connection.cursor() as cur:
            await cur.execute(query, params)
            return cur.rowcount

    except psycopg.Error as e:
        logger.error("Database execute error", query=query[:100], error=str(e))
        raise DatabaseError(f"Execute failed: {e}", operation="execute_query") from e


def with_db_retry(max_retries: int = 3, base_delay: float = 0.1):
    """
    Decorator for retrying database operations on transient failures.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Base delay between retries (exponential backoff)
    """

    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)

                except psycopg.OperationalError as e:
                    if attempt < max_retries:
                        delay = base_delay * (2**attempt)
                        logger.warning(
                            "Database operation failed, retrying",
                            attempt=attempt + 1,
                            max_retries=max_retries,
                            delay=delay,
                            error=str(e),
                        )
                        await asyncio.sleep(delay)
                    else:
                        logger.error(
                            "Database operation failed after all retries",
                            attempts=max_retries + 1,
                            error=str(e),
                        )
                        raise DatabaseError(
                            f"Operation failed after {max_retries} retries: {e}",
                            operation=func.__name__,
                            recoverable=False,
                        ) from e

                except (psycopg.IntegrityError, psycopg.DataError) as e:
                    logger.error("Database operation failed with permanent error", error=str(e))
                    raise DatabaseError(
                        f"Permanent database error: {e}", operation=func.__name__, recoverable=False
                    ) from e

        return wrapper

    return decorator
