"""
ConnectionPool - Thread-safe PostgreSQL connection pooling.

Thin wrapper around psycopg2's ThreadedConnectionPool shared by every
Postgres-backed service. Requests are served concurrently; each request
borrows one connection for the duration of a single read or transaction.
"""

from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

import psycopg2
import psycopg2.pool

from src.utils.logging import get_logger

logger = get_logger(__name__)


class ConnectionPoolError(Exception):
    """Raised when the pool cannot be created or used."""
    pass


class ConnectionTimeoutError(ConnectionPoolError):
    """Raised when no connection is available."""
    pass


class ConnectionPool:
    """
    Shared pool of psycopg2 connections.

    Usage:
        pool = ConnectionPool(connection_params={'host': 'localhost', ...})
        with pool.get_connection() as conn:
            with conn.cursor() as cursor:
                cursor.execute("SELECT 1")
    """

    def __init__(
        self,
        pg_config: Optional[Dict[str, Any]] = None,
        *,
        connection_params: Optional[Dict[str, Any]] = None,
        min_conn: int = 2,
        max_conn: int = 20,
    ):
        """
        Initialize the pool.

        Args:
            pg_config: psycopg2 connection parameters (legacy name)
            connection_params: psycopg2 connection parameters
            min_conn: Connections opened eagerly
            max_conn: Upper bound of concurrently borrowed connections
        """
        params = connection_params or pg_config
        if not params:
            raise ValueError("Either pg_config or connection_params must be provided")

        self._params = dict(params)
        try:
            self._pool = psycopg2.pool.ThreadedConnectionPool(min_conn, max_conn, **self._params)
        except psycopg2.Error as e:
            raise ConnectionPoolError(f"Could not create connection pool: {e}") from e

        logger.info(
            f"Connection pool ready ({min_conn}-{max_conn} connections) "
            f"to {self._params.get('host', 'localhost')}/{self._params.get('database', '')}"
        )

    def get_connection_direct(self):
        """Borrow a connection. Caller must call release_connection()."""
        if self._pool is None:
            raise ConnectionPoolError("Connection pool is closed")
        try:
            return self._pool.getconn()
        except psycopg2.pool.PoolError as e:
            raise ConnectionTimeoutError(f"No connection available: {e}") from e

    def release_connection(self, conn) -> None:
        """Return a borrowed connection, rolling back anything left open."""
        if self._pool is None:
            return
        try:
            if not conn.closed:
                conn.rollback()
        except psycopg2.Error:
            logger.debug("Rollback on release failed; discarding connection")
            self._pool.putconn(conn, close=True)
            return
        self._pool.putconn(conn)

    @contextmanager
    def get_connection(self) -> Iterator[Any]:
        conn = self.get_connection_direct()
        try:
            yield conn
        finally:
            self.release_connection(conn)

    def close(self) -> None:
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None
            logger.info("Connection pool closed")
