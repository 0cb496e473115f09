"""
db/connection.py
----------------
Manages the PostgreSQL connection pool.
Uses psycopg2's ThreadedConnectionPool because scheduler cycles run in a
worker thread while bot handlers run on the event loop thread.
"""

from contextlib import contextmanager
from typing import Iterator

import psycopg2
from psycopg2 import errors as pg_errors
from psycopg2 import pool

from config import DATABASE_URL, DB_POOL_MAX, DB_POOL_MIN
from errors import DuplicateRecordError, PersistenceError
from utils.logger import get_logger

logger = get_logger(__name__)

_pool: pool.ThreadedConnectionPool | None = None


def init_pool(min_conn: int = DB_POOL_MIN, max_conn: int = DB_POOL_MAX) -> None:
    """
    Initialize the database connection pool.

    Args:
        min_conn: Minimum number of connections to keep open.
        max_conn: Maximum number of connections allowed.

    Raises:
        psycopg2.OperationalError: If the database is unreachable.
    """
    global _pool
    if _pool is not None:
        return
    try:
        _pool = pool.ThreadedConnectionPool(min_conn, max_conn, DATABASE_URL)
        logger.info("Database connection pool initialized successfully.")
    except psycopg2.OperationalError as e:
        logger.error(f"Failed to initialize database pool: {e}")
        raise


def get_connection():
    """
    Get a connection from the pool.

    Raises:
        RuntimeError: If the pool has not been initialized.
    """
    if _pool is None:
        raise RuntimeError("Database pool not initialized. Call init_pool() first.")
    return _pool.getconn()


def release_connection(conn) -> None:
    """Return a connection back to the pool."""
    if _pool is not None:
        _pool.putconn(conn)


@contextmanager
def db_cursor(operation: str) -> Iterator:
    """
    Yield a cursor inside a single database transaction.

    Commits on success and rolls back on any error. psycopg2 failures are
    re-raised as domain errors: unique violations as DuplicateRecordError,
    everything else as PersistenceError, so services never see driver types.

    Args:
        operation: Short description used in log lines and error messages.
    """
    conn = get_connection()
    try:
        with conn.cursor() as cur:
            yield cur
        conn.commit()
    except pg_errors.UniqueViolation as e:
        conn.rollback()
        logger.warning(f"Unique violation during {operation}: {e.diag.constraint_name}")
        raise DuplicateRecordError(
            f"Duplicate record during {operation}",
            details={"constraint": e.diag.constraint_name},
        ) from e
    except psycopg2.Error as e:
        conn.rollback()
        logger.error(f"Database error during {operation}: {e}")
        raise PersistenceError(f"Database error during {operation}: {e}") from e
    except Exception:
        conn.rollback()
        raise
    finally:
        release_connection(conn)


def close_pool() -> None:
    """Close all connections in the pool."""
    global _pool
    if _pool is not None:
        _pool.closeall()
        _pool = None
        logger.info("Database connection pool closed.")
