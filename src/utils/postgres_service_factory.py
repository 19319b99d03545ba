"""
PostgresServiceFactory - One connection pool, every Postgres-backed service.

The API process, the CLI commands and the role seeder all reach PostgreSQL
through a single factory: it owns the ThreadedConnectionPool and hands out
the RBAC store and the system settings service on first use.
"""
from typing import Any, Dict, Optional

from src.utils.config_service import AppConfig, SystemSettingsService
from src.utils.connection_pool import ConnectionPool
from src.utils.logging import get_logger
from src.utils.rbac.store import RBACStore

logger = get_logger(__name__)


class PostgresServiceFactory:
    """
    Shared pool plus lazily built access-control services.

    Usage:
        with PostgresServiceFactory.from_app_config(load_app_config()) as factory:
            store = factory.rbac_store
            settings = factory.settings_service

        # tests and embedding callers can supply their own pool
        factory = PostgresServiceFactory(connection_pool=pool)
    """

    def __init__(
        self,
        connection_pool: Optional[ConnectionPool] = None,
        connection_params: Optional[Dict[str, Any]] = None,
    ):
        """
        Args:
            connection_pool: Pool to share; created from connection_params on demand otherwise
            connection_params: psycopg2 keyword arguments (host, port, database, user, password)
        """
        self._pool = connection_pool
        self._params = connection_params
        self._rbac_store: Optional[RBACStore] = None
        self._settings_service: Optional[SystemSettingsService] = None

    @classmethod
    def from_config(
        cls,
        connection_params: Dict[str, Any],
        pool_min_conn: int = 2,
        pool_max_conn: int = 20,
    ) -> 'PostgresServiceFactory':
        """Open a pool eagerly so connection problems surface at startup."""
        pool = ConnectionPool(
            connection_params=connection_params,
            min_conn=pool_min_conn,
            max_conn=pool_max_conn,
        )
        return cls(connection_pool=pool, connection_params=connection_params)

    @classmethod
    def from_app_config(cls, config: AppConfig) -> 'PostgresServiceFactory':
        return cls.from_config(
            config.connection_params(),
            pool_min_conn=config.pool_min_conn,
            pool_max_conn=config.pool_max_conn,
        )

    @property
    def connection_pool(self) -> ConnectionPool:
        if self._pool is not None:
            return self._pool
        if not self._params:
            raise ValueError("No connection pool or params available")
        self._pool = ConnectionPool(connection_params=self._params)
        return self._pool

    @property
    def rbac_store(self) -> RBACStore:
        """Roles, assignments, active roles and the audit log."""
        if self._rbac_store is None:
            self._rbac_store = RBACStore(connection_pool=self.connection_pool)
        return self._rbac_store

    @property
    def settings_service(self) -> SystemSettingsService:
        """Runtime-editable system settings."""
        if self._settings_service is None:
            self._settings_service = SystemSettingsService(connection_pool=self.connection_pool)
        return self._settings_service

    def close(self) -> None:
        """Drop the services and close every pooled connection."""
        self._rbac_store = None
        self._settings_service = None
        if self._pool is None:
            return
        self._pool.close()
        self._pool = None
        logger.debug("Postgres service factory closed")

    def __enter__(self) -> 'PostgresServiceFactory':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
