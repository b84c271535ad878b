# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Database connection management for Custodian.

Config via CUSTODIAN_DB_* environment variables (see ``core.config``).
Driver errors leave this module as ``StorageException`` so callers only
ever handle the Custodian taxonomy.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

import psycopg2
from psycopg2 import pool as psycopg2_pool
from psycopg2.extras import RealDictCursor
from psycopg2.pool import PoolError

from .exceptions import ConfigException, StorageException

if TYPE_CHECKING:
    from .config import CoreSettings

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).parent.parent / "storage" / "schema.sql"

# Connection pool (lazy init, thread-safe)
_pool: psycopg2_pool.ThreadedConnectionPool | None = None
_pool_lock = threading.Lock()


def _settings(settings: CoreSettings | None) -> CoreSettings:
    if settings is not None:
        return settings
    from .config import get_config

    return get_config()


def _get_pool(settings: CoreSettings | None = None) -> psycopg2_pool.ThreadedConnectionPool:
    """Get or create the connection pool."""
    global _pool
    if _pool is None:
        with _pool_lock:
            if _pool is None:
                config = _settings(settings)
                try:
                    _pool = psycopg2_pool.ThreadedConnectionPool(
                        **config.pool_config,
                        **config.connection_params,
                    )
                except psycopg2.Error as e:
                    raise StorageException(f"Failed to create connection pool: {e}") from e
                logger.info(f"Connection pool created for {config.db_host}:{config.db_port}/{config.db_name}")
    return _pool


def _get_conn_with_timeout(pool: psycopg2_pool.ThreadedConnectionPool, timeout: float) -> Any:
    """Get a connection from pool with timeout.

    Raises:
        PoolError: If timeout expires before connection is available
    """
    result_queue: queue.Queue = queue.Queue()

    def _get_conn():
        try:
            conn = pool.getconn()
            result_queue.put(("success", conn))
        except Exception as e:
            result_queue.put(("error", e))

    thread = threading.Thread(target=_get_conn, daemon=True)
    thread.start()

    try:
        result_type, result_value = result_queue.get(timeout=timeout)
    except queue.Empty:
        raise PoolError(f"Connection pool timeout after {timeout} seconds")
    if result_type == "error":
        raise result_value
    return result_value


def _validate_connection(conn: Any) -> bool:
    """Check if a connection is open and answers a trivial query."""
    if conn.closed:
        return False

    try:
        with conn.cursor() as cur:
            cur.execute("SELECT 1")
            cur.fetchone()
        return True
    except psycopg2.Error as e:
        logger.debug(f"Discarding stale connection: {e}")
        return False


def _get_healthy_connection(pool: psycopg2_pool.ThreadedConnectionPool, timeout: float) -> Any:
    """Get a healthy connection from pool, discarding stale ones.

    Raises:
        PoolError: If unable to get a healthy connection
    """
    max_attempts = 3
    for _attempt in range(max_attempts):
        conn = _get_conn_with_timeout(pool, timeout)
        if _validate_connection(conn):
            return conn
        pool.putconn(conn, close=True)

    raise PoolError(f"Failed to get healthy connection after {max_attempts} attempts")


@contextmanager
def get_cursor(settings: CoreSettings | None = None) -> Generator[Any, None, None]:
    """Get a database cursor with auto-commit on success, rollback on error.

    One ``with`` block is one transaction.

    Usage:
        with get_cursor() as cur:
            cur.execute("SELECT * FROM deletion_requests")
            rows = cur.fetchall()
    """
    config = _settings(settings)
    pool = _get_pool(config)
    try:
        conn = _get_healthy_connection(pool, config.db_pool_timeout)
    except psycopg2.Error as e:
        raise StorageException(f"Database unavailable: {e}") from e
    try:
        with conn.cursor(cursor_factory=RealDictCursor) as cur:
            yield cur
        conn.commit()
    except psycopg2.Error as e:
        conn.rollback()
        raise StorageException(f"Database operation failed: {e}") from e
    except Exception:
        conn.rollback()
        raise
    finally:
        pool.putconn(conn)


@contextmanager
def get_connection(settings: CoreSettings | None = None) -> Generator[Any, None, None]:
    """Get a database connection from the pool.

    For cases that need connection-level control (like applying the schema).
    """
    config = _settings(settings)
    pool = _get_pool(config)
    try:
        conn = _get_healthy_connection(pool, config.db_pool_timeout)
    except psycopg2.Error as e:
        raise StorageException(f"Database unavailable: {e}") from e
    try:
        yield conn
    finally:
        pool.putconn(conn)


def close_pool() -> None:
    """Close the connection pool."""
    global _pool
    if _pool is not None:
        _pool.closeall()
        _pool = None


def init_schema(schema_path: str | Path | None = None, settings: CoreSettings | None = None) -> Path:
    """Apply schema.sql to the configured database.

    The schema is idempotent (``IF NOT EXISTS`` throughout), so re-running is safe.

    Args:
        schema_path: Path to schema.sql (defaults to the packaged schema)

    Returns:
        The path that was applied.
    """
    path = Path(schema_path) if schema_path is not None else SCHEMA_PATH
    if not path.exists():
        raise ConfigException(f"schema.sql not found: {path}")

    schema_sql = path.read_text()

    with get_connection(settings) as conn:
        conn.autocommit = True
        try:
            with conn.cursor() as cur:
                cur.execute(schema_sql)
        except psycopg2.Error as e:
            raise StorageException(f"Failed to apply schema: {e}") from e
        finally:
            conn.autocommit = False
    logger.info(f"Applied schema from {path}")
    return path


def check_connection(settings: CoreSettings | None = None) -> bool:
    """Check if database connection is working."""
    try:
        with get_cursor(settings) as cur:
            cur.execute("SELECT 1")
        return True
    except StorageException as e:
        logger.warning(f"Database check failed: {e}")
        return False

