"""
Unit tests for configuration and PostgreSQL plumbing.

Tests cover:
- load_app_config (YAML, environment overrides, secrets)
- SystemSettingsService validation and merging
- ConnectionPool
- PostgresServiceFactory
"""
from unittest.mock import MagicMock, patch

import psycopg2
import pytest

from src.utils.config_service import (
    SYSTEM_SETTINGS_DEFAULTS,
    ConfigValidationError,
    SystemSettingsService,
    load_app_config,
)
from src.utils.connection_pool import ConnectionPool, ConnectionPoolError
from src.utils.postgres_service_factory import PostgresServiceFactory
from src.utils.rbac.errors import StorageError
from src.utils.rbac.store import RBACStore

ENV_VARS = [
    "LMS_CONFIG_PATH", "JWT_SECRET", "JWT_SECRET_FILE", "JWT_EXPIRES_MINUTES",
    "PGHOST", "PGPORT", "PGDATABASE", "PGUSER", "PG_PASSWORD", "PG_PASSWORD_FILE",
    "POSTGRES_HOST", "POSTGRES_DB", "POSTGRES_USER", "POSTGRES_PASSWORD", "POSTGRES_PASSWORD_FILE",
    "LMS_PORT", "LMS_VERBOSITY", "LMS_ROLES_PATH",
]


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def mock_connection():
    """Create a mock psycopg2 connection."""
    conn = MagicMock()
    cursor = MagicMock()
    conn.cursor.return_value.__enter__ = MagicMock(return_value=cursor)
    conn.cursor.return_value.__exit__ = MagicMock(return_value=False)
    return conn, cursor


@pytest.fixture
def mock_pool(mock_connection):
    """Create a mock connection pool."""
    conn, cursor = mock_connection
    pool = MagicMock(spec=ConnectionPool)
    pool.get_connection_direct.return_value = conn
    pool.release_connection = MagicMock()
    return pool


# =============================================================================
# AppConfig
# =============================================================================

class TestLoadAppConfig:
    """Tests for load_app_config."""

    def test_defaults(self, clean_env):
        clean_env.setenv("JWT_SECRET", "s")
        config = load_app_config()

        assert config.jwt_secret == "s"
        assert config.port == 7861
        assert config.connection_params()["database"] == "lms"
        assert config.audit_authorization_decisions is False

    def test_missing_secret(self, clean_env):
        with pytest.raises(ConfigValidationError) as excinfo:
            load_app_config()
        assert excinfo.value.field == "JWT_SECRET"

    def test_secret_optional_for_seeding(self, clean_env):
        assert load_app_config(require_secret=False).jwt_secret is None

    def test_secret_from_file(self, clean_env, tmp_path):
        secret_file = tmp_path / "jwt"
        secret_file.write_text("from-file\n")
        clean_env.setenv("JWT_SECRET_FILE", str(secret_file))
        assert load_app_config().jwt_secret == "from-file"

    def test_yaml_and_env_precedence(self, clean_env, tmp_path):
        path = tmp_path / "lms.yaml"
        path.write_text(
            "server:\n  port: 8000\n"
            "auth:\n  jwt_expires_minutes: 30\n  audit_authorization_decisions: true\n"
            "database:\n  postgres:\n    host: db\n    database: lms_prod\n"
            "    pool:\n      min_connections: 1\n      max_connections: 5\n"
        )
        clean_env.setenv("JWT_SECRET", "s")
        clean_env.setenv("LMS_PORT", "9000")
        clean_env.setenv("PGHOST", "db.internal")

        config = load_app_config(str(path))

        assert config.port == 9000
        assert config.jwt_expires_minutes == 30
        assert config.audit_authorization_decisions is True
        assert config.postgres["host"] == "db.internal"
        assert config.postgres["database"] == "lms_prod"
        assert (config.pool_min_conn, config.pool_max_conn) == (1, 5)

    def test_config_path_from_env(self, clean_env, tmp_path):
        path = tmp_path / "lms.yaml"
        path.write_text("logging:\n  verbosity: 4\n")
        clean_env.setenv("LMS_CONFIG_PATH", str(path))
        assert load_app_config(require_secret=False).verbosity == 4

    def test_bad_integer(self, clean_env):
        clean_env.setenv("JWT_SECRET", "s")
        clean_env.setenv("PGPORT", "five")
        with pytest.raises(ConfigValidationError, match="PGPORT"):
            load_app_config()

    def test_missing_file(self, clean_env, tmp_path):
        with pytest.raises(ConfigValidationError, match="cannot read"):
            load_app_config(str(tmp_path / "absent.yaml"))

    def test_unsupported_algorithm(self, clean_env, tmp_path):
        path = tmp_path / "lms.yaml"
        path.write_text("auth:\n  jwt_algorithm: RS256\n")
        clean_env.setenv("JWT_SECRET", "s")
        with pytest.raises(ConfigValidationError, match="unsupported algorithm"):
            load_app_config(str(path))


# =============================================================================
# SystemSettingsService
# =============================================================================

class TestSystemSettingsService:
    """Tests for SystemSettingsService."""

    def test_defaults_merged_with_overrides(self, mock_pool, mock_connection):
        _, cursor = mock_connection
        cursor.fetchall.return_value = [
            {"section": "security", "settings": {"maxLoginAttempts": 3, "retired": 1}},
        ]
        service = SystemSettingsService(connection_pool=mock_pool)

        settings = service.get_settings()

        assert settings["security"]["maxLoginAttempts"] == 3
        assert "retired" not in settings["security"]
        assert settings["general"] == SYSTEM_SETTINGS_DEFAULTS["general"]

    def test_get_value(self, mock_pool, mock_connection):
        _, cursor = mock_connection
        cursor.fetchall.return_value = [
            {"section": "access", "settings": {"audit_authorization_decisions": True}},
        ]
        service = SystemSettingsService(connection_pool=mock_pool)
        assert service.get_value("access", "audit_authorization_decisions", False) is True

    def test_unknown_section(self, mock_pool):
        service = SystemSettingsService(connection_pool=mock_pool)
        with pytest.raises(ConfigValidationError):
            service.get_section("payroll")

    @pytest.mark.parametrize("updates,field", [
        ({"security": {"maxLoginAttempts": "3"}}, "security.maxLoginAttempts"),
        ({"security": {"requireNumbers": 1}}, "security.requireNumbers"),
        ({"security": {"maxLoginAttempts": True}}, "security.maxLoginAttempts"),
        ({"security": {"shoeSize": 9}}, "security.shoeSize"),
        ({"payroll": {}}, "payroll"),
        ({}, "settings"),
    ])
    def test_validation(self, mock_pool, mock_connection, updates, field):
        conn, cursor = mock_connection
        service = SystemSettingsService(connection_pool=mock_pool)
        cursor.execute.reset_mock()

        with pytest.raises(ConfigValidationError) as excinfo:
            service.update_settings(updates, updated_by="admin")

        assert excinfo.value.field == field
        cursor.execute.assert_not_called()

    def test_update_upserts_each_section(self, mock_pool, mock_connection):
        conn, cursor = mock_connection
        cursor.fetchall.return_value = []
        service = SystemSettingsService(connection_pool=mock_pool)
        cursor.execute.reset_mock()

        service.update_settings(
            {"security": {"maxLoginAttempts": 3}, "general": {"timezone": "Europe/Berlin"}},
            updated_by="admin",
        )

        upserts = [c for c in cursor.execute.call_args_list if "INSERT INTO lms_system_settings" in c[0][0]]
        assert len(upserts) == 2
        assert upserts[0][0][1][0] == "security"
        assert upserts[0][0][1][2] == "admin"
        conn.commit.assert_called()

    def test_read_failure_is_storage_error(self, mock_pool, mock_connection):
        _, cursor = mock_connection
        service = SystemSettingsService(connection_pool=mock_pool)
        cursor.execute.side_effect = psycopg2.OperationalError("gone")
        with pytest.raises(StorageError):
            service.get_settings()

    def test_pool_failure_is_storage_error(self, mock_pool):
        service = SystemSettingsService(connection_pool=mock_pool)
        mock_pool.get_connection_direct.side_effect = ConnectionPoolError("Connection pool is closed")
        with pytest.raises(StorageError):
            service.get_settings()


# =============================================================================
# ConnectionPool Tests
# =============================================================================

class TestConnectionPool:
    """Tests for ConnectionPool."""

    def test_init_requires_params_or_dsn(self):
        """Test that ConnectionPool requires connection info."""
        with pytest.raises(ValueError, match="Either pg_config or connection_params must be provided"):
            ConnectionPool()

    @patch('psycopg2.pool.ThreadedConnectionPool')
    def test_init_with_params(self, mock_tcp):
        """Test initialization with connection params."""
        params = {'host': 'localhost', 'port': 5432, 'database': 'lms', 'user': 'lms', 'password': 'pass'}
        pool = ConnectionPool(connection_params=params, min_conn=1, max_conn=4)

        mock_tcp.assert_called_once_with(1, 4, **params)
        assert pool._pool is not None

    @patch('psycopg2.pool.ThreadedConnectionPool')
    def test_release_discards_broken_connection(self, mock_tcp):
        """A connection that cannot roll back is closed, not reused."""
        pool = ConnectionPool(connection_params={'host': 'localhost'})
        conn = MagicMock()
        conn.closed = 0
        conn.rollback.side_effect = psycopg2.InterfaceError("connection already closed")

        pool.release_connection(conn)

        mock_tcp.return_value.putconn.assert_called_once_with(conn, close=True)

    @patch('psycopg2.pool.ThreadedConnectionPool')
    def test_closed_pool_rejects_borrow(self, mock_tcp):
        pool = ConnectionPool(connection_params={'host': 'localhost'})
        pool.close()
        with pytest.raises(ConnectionPoolError):
            pool.get_connection_direct()


# =============================================================================
# PostgresServiceFactory Tests
# =============================================================================

class TestPostgresServiceFactory:
    """Tests for PostgresServiceFactory."""

    @patch('src.utils.postgres_service_factory.ConnectionPool')
    def test_from_config(self, mock_pool_class):
        """Test creating factory from config."""
        factory = PostgresServiceFactory.from_config(
            connection_params={'host': 'localhost', 'database': 'lms'},
            pool_min_conn=1,
            pool_max_conn=3,
        )

        mock_pool_class.assert_called_once_with(
            connection_params={'host': 'localhost', 'database': 'lms'},
            min_conn=1,
            max_conn=3,
        )
        assert factory.connection_pool is mock_pool_class.return_value

    @patch('src.utils.postgres_service_factory.SystemSettingsService')
    @patch('src.utils.postgres_service_factory.RBACStore')
    @patch('src.utils.postgres_service_factory.ConnectionPool')
    def test_lazy_service_initialization(self, mock_pool_class, mock_store_class, mock_settings_class):
        """Services are created once, on first access."""
        factory = PostgresServiceFactory.from_config(connection_params={'host': 'localhost'})
        mock_store_class.assert_not_called()

        assert factory.rbac_store is factory.rbac_store
        mock_store_class.assert_called_once_with(connection_pool=mock_pool_class.return_value)
        assert factory.settings_service is mock_settings_class.return_value

    @patch('src.utils.postgres_service_factory.ConnectionPool')
    def test_context_manager(self, mock_pool_class):
        """Test context manager closes the pool."""
        with PostgresServiceFactory.from_config(connection_params={'host': 'localhost'}) as factory:
            pool = factory.connection_pool
        pool.close.assert_called_once()

    def test_requires_pool_or_params(self):
        with pytest.raises(ValueError):
            PostgresServiceFactory().connection_pool

    def test_store_from_existing_pool(self, mock_pool):
        factory = PostgresServiceFactory(connection_pool=mock_pool)
        assert isinstance(factory.rbac_store, RBACStore)
        mock_pool.get_connection_direct.assert_called()
