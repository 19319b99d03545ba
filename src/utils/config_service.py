"""
ConfigService - Deploy-time application config and runtime system settings.

Two kinds of configuration:
- AppConfig: deploy-time, immutable at runtime. Loaded once from a YAML file
  (LMS_CONFIG_PATH) with environment overrides; secrets come from the
  environment or <NAME>_FILE mounts, never from the YAML file.
- SystemSettingsService: runtime-modifiable settings stored in PostgreSQL,
  one JSONB row per section, edited through the admin API.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import psycopg2
import psycopg2.extras
import yaml

from src.utils.connection_pool import ConnectionPoolError
from src.utils.env import read_secret
from src.utils.logging import get_logger
from src.utils.rbac.errors import StorageError

logger = get_logger(__name__)

CONFIG_PATH_ENV = "LMS_CONFIG_PATH"


class ConfigValidationError(Exception):
    """Raised when config validation fails."""

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


@dataclass
class AppConfig:
    """Deploy-time configuration (immutable at runtime)."""

    jwt_secret: Optional[str]
    jwt_algorithm: str = "HS256"
    jwt_expires_minutes: int = 24 * 60
    jwt_issuer: Optional[str] = None

    # Postgres
    postgres: Dict[str, Any] = field(default_factory=dict)
    pool_min_conn: int = 2
    pool_max_conn: int = 20

    # Access control
    roles_path: Optional[str] = None
    audit_authorization_decisions: bool = False

    # Server
    host: str = "0.0.0.0"
    port: int = 7861
    debug: bool = False

    # Logging
    verbosity: int = 3

    def connection_params(self) -> Dict[str, Any]:
        return {
            'host': self.postgres.get('host', 'localhost'),
            'port': int(self.postgres.get('port', 5432)),
            'database': self.postgres.get('database', 'lms'),
            'user': self.postgres.get('user', 'lms'),
            'password': self.postgres.get('password', ''),
        }


def _read_yaml(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigValidationError("config_path", f"cannot read {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigValidationError("config_path", f"invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigValidationError("config_path", f"{path} must contain a mapping")
    return data


def _env_int(name: str, fallback: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return fallback
    try:
        return int(raw)
    except ValueError:
        raise ConfigValidationError(name, f"expected an integer, got {raw!r}")


def load_app_config(config_path: Optional[str] = None, *, require_secret: bool = True) -> AppConfig:
    """
    Load deploy-time configuration.

    Precedence: environment variables > YAML file > defaults.

    Args:
        config_path: YAML file; falls back to $LMS_CONFIG_PATH, then defaults only
        require_secret: Fail when no JWT secret is configured

    Returns:
        AppConfig

    Raises:
        ConfigValidationError: If a value is missing or malformed
    """
    path = config_path or os.environ.get(CONFIG_PATH_ENV)
    raw = _read_yaml(path) if path else {}
    if path:
        logger.info(f"Loaded configuration from {path}")

    auth = raw.get('auth', {}) or {}
    server = raw.get('server', {}) or {}
    pg = dict((raw.get('database', {}) or {}).get('postgres', {}) or {})
    pool = pg.pop('pool', {}) or {}

    # Support common Postgres env var names used by compose/k8s
    pg['host'] = os.environ.get('PGHOST', os.environ.get('POSTGRES_HOST', pg.get('host', 'localhost')))
    pg['port'] = _env_int('PGPORT', int(pg.get('port', 5432)))
    pg['database'] = os.environ.get('PGDATABASE', os.environ.get('POSTGRES_DB', pg.get('database', 'lms')))
    pg['user'] = os.environ.get('PGUSER', os.environ.get('POSTGRES_USER', pg.get('user', 'lms')))
    pg['password'] = read_secret('PG_PASSWORD', read_secret('POSTGRES_PASSWORD', ''))

    config = AppConfig(
        jwt_secret=read_secret('JWT_SECRET'),
        jwt_algorithm=auth.get('jwt_algorithm', 'HS256'),
        jwt_expires_minutes=_env_int('JWT_EXPIRES_MINUTES', int(auth.get('jwt_expires_minutes', 24 * 60))),
        jwt_issuer=auth.get('jwt_issuer'),
        postgres=pg,
        pool_min_conn=int(pool.get('min_connections', 2)),
        pool_max_conn=int(pool.get('max_connections', 20)),
        roles_path=os.environ.get('LMS_ROLES_PATH', auth.get('roles_path')),
        audit_authorization_decisions=bool(auth.get('audit_authorization_decisions', False)),
        host=server.get('host', '0.0.0.0'),
        port=_env_int('LMS_PORT', int(server.get('port', 7861))),
        debug=bool(server.get('debug', False)),
        verbosity=_env_int('LMS_VERBOSITY', int((raw.get('logging', {}) or {}).get('verbosity', 3))),
    )
    validate_app_config(config, require_secret=require_secret)
    return config


def validate_app_config(config: AppConfig, *, require_secret: bool = True) -> None:
    if require_secret and not config.jwt_secret:
        raise ConfigValidationError('JWT_SECRET', 'a signing secret is required (set JWT_SECRET or JWT_SECRET_FILE)')
    if config.jwt_algorithm not in ('HS256', 'HS384', 'HS512'):
        raise ConfigValidationError('auth.jwt_algorithm', f'unsupported algorithm {config.jwt_algorithm}')
    if config.jwt_expires_minutes <= 0:
        raise ConfigValidationError('auth.jwt_expires_minutes', 'must be positive')
    if not 0 < config.pool_min_conn <= config.pool_max_conn:
        raise ConfigValidationError('database.postgres.pool', 'need 0 < min_connections <= max_connections')
    if not 0 <= config.verbosity <= 4:
        raise ConfigValidationError('logging.verbosity', 'must be between 0 and 4')


# =============================================================================
# Runtime system settings
# =============================================================================

SYSTEM_SETTINGS_DEFAULTS: Dict[str, Dict[str, Any]] = {
    'general': {
        'systemName': 'Learning Management System',
        'systemLogo': '/uploads/logo.png',
        'timezone': 'UTC',
        'language': 'en',
    },
    'email': {
        'smtpHost': 'smtp.gmail.com',
        'smtpPort': '587',
        'smtpUser': '',
        'smtpSecure': True,
        'fromEmail': 'noreply@lms.com',
        'fromName': 'LMS',
    },
    'security': {
        'minPasswordLength': 8,
        'requireUppercase': True,
        'requireLowercase': True,
        'requireNumbers': True,
        'requireSpecialChars': True,
        'sessionTimeout': 30,
        'maxLoginAttempts': 5,
    },
    'learning': {
        'defaultCertificateTemplate': 'standard',
        'minCompletionPercentage': 80,
        'enableDiscussions': True,
        'enableRatings': True,
    },
    'access': {
        'audit_authorization_decisions': False,
    },
}


def _same_type(default: Any, value: Any) -> bool:
    # bool is an int subclass; keep them apart
    if isinstance(default, bool) or isinstance(value, bool):
        return isinstance(default, bool) and isinstance(value, bool)
    return isinstance(value, type(default))


class SystemSettingsService:
    """
    Runtime settings grouped in sections, persisted in PostgreSQL.

    Stored rows only hold overrides; reads merge them over
    SYSTEM_SETTINGS_DEFAULTS so new keys appear without a migration.

    Example:
        >>> settings = SystemSettingsService(connection_pool=pool)
        >>> settings.get_section('security')['maxLoginAttempts']
        5
        >>> settings.update_settings({'security': {'maxLoginAttempts': 3}}, updated_by=admin_id)
    """

    def __init__(self, pg_config: Optional[Dict[str, Any]] = None, *, connection_pool=None):
        """
        Initialize SystemSettingsService.

        Args:
            pg_config: PostgreSQL connection parameters (fallback)
            connection_pool: ConnectionPool instance (preferred)
        """
        self._pool = connection_pool
        self._pg_config = pg_config
        # best-effort
        try:
            self._ensure_settings_table()
        except StorageError as exc:
            logger.debug("Could not ensure settings table: %s", exc)

    def _get_connection(self):
        """Get a database connection."""
        if self._pool:
            return self._pool.get_connection_direct()
        elif self._pg_config:
            return psycopg2.connect(**self._pg_config)
        else:
            raise ValueError("No connection pool or pg_config provided")

    def _release_connection(self, conn) -> None:
        """Release connection back to pool or close it."""
        if self._pool:
            self._pool.release_connection(conn)
        else:
            conn.close()

    def _ensure_settings_table(self) -> None:
        try:
            conn = self._get_connection()
        except (psycopg2.Error, ConnectionPoolError) as e:
            raise StorageError(f"Could not connect to settings store: {e}") from e
        try:
            with conn.cursor() as cursor:
                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS lms_system_settings (
                        section VARCHAR(50) PRIMARY KEY,
                        settings JSONB NOT NULL DEFAULT '{}'::jsonb,
                        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                        updated_by TEXT
                    )
                    """
                )
            conn.commit()
        except psycopg2.Error as e:
            conn.rollback()
            raise StorageError(str(e).strip()) from e
        finally:
            self._release_connection(conn)

    def _load_overrides(self) -> Dict[str, Dict[str, Any]]:
        try:
            conn = self._get_connection()
        except (psycopg2.Error, ConnectionPoolError) as e:
            raise StorageError(f"Could not connect to settings store: {e}") from e
        try:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cursor:
                cursor.execute("SELECT section, settings FROM lms_system_settings")
                rows = cursor.fetchall()
        except psycopg2.Error as e:
            raise StorageError(str(e).strip()) from e
        finally:
            self._release_connection(conn)
        return {row['section']: row['settings'] or {} for row in rows}

    def get_settings(self) -> Dict[str, Dict[str, Any]]:
        """
        Every section with stored overrides merged over the defaults.

        Raises:
            StorageError: If the settings table cannot be read
        """
        overrides = self._load_overrides()
        merged = {}
        for section, defaults in SYSTEM_SETTINGS_DEFAULTS.items():
            values = dict(defaults)
            values.update({
                key: value for key, value in overrides.get(section, {}).items() if key in defaults
            })
            merged[section] = values
        return merged

    def get_section(self, section: str) -> Dict[str, Any]:
        if section not in SYSTEM_SETTINGS_DEFAULTS:
            raise ConfigValidationError(section, "unknown settings section")
        return self.get_settings()[section]

    def get_value(self, section: str, key: str, default: Any = None) -> Any:
        return self.get_section(section).get(key, default)

    def validate_updates(self, updates: Dict[str, Any]) -> None:
        """
        Raises:
            ConfigValidationError: Unknown section or key, or a value whose
                type differs from the default's
        """
        if not isinstance(updates, dict) or not updates:
            raise ConfigValidationError("settings", "expected a non-empty mapping of sections")
        for section, values in updates.items():
            defaults = SYSTEM_SETTINGS_DEFAULTS.get(section)
            if defaults is None:
                raise ConfigValidationError(section, "unknown settings section")
            if not isinstance(values, dict):
                raise ConfigValidationError(section, "expected a mapping")
            for key, value in values.items():
                if key not in defaults:
                    raise ConfigValidationError(f"{section}.{key}", "unknown setting")
                if not _same_type(defaults[key], value):
                    raise ConfigValidationError(
                        f"{section}.{key}",
                        f"expected {type(defaults[key]).__name__}, got {type(value).__name__}"
                    )

    def update_settings(self, updates: Dict[str, Dict[str, Any]], updated_by: Optional[str] = None) -> Dict[str, Dict[str, Any]]:
        """
        Merge per-section updates into the stored settings.

        Args:
            updates: {section: {key: value}}; unspecified keys keep their value
            updated_by: Identity id making the change

        Returns:
            The full merged settings after the update

        Raises:
            ConfigValidationError: If validation fails (nothing is written)
            StorageError: If the settings table cannot be written
        """
        self.validate_updates(updates)

        try:
            conn = self._get_connection()
        except (psycopg2.Error, ConnectionPoolError) as e:
            raise StorageError(f"Could not connect to settings store: {e}") from e
        try:
            with conn.cursor() as cursor:
                for section, values in updates.items():
                    cursor.execute(
                        """
                        INSERT INTO lms_system_settings (section, settings, updated_at, updated_by)
                        VALUES (%s, %s, NOW(), %s)
                        ON CONFLICT (section) DO UPDATE SET
                            settings = lms_system_settings.settings || EXCLUDED.settings,
                            updated_at = NOW(),
                            updated_by = EXCLUDED.updated_by
                        """,
                        (section, psycopg2.extras.Json(values), updated_by),
                    )
            conn.commit()
        except psycopg2.Error as e:
            conn.rollback()
            raise StorageError(str(e).strip()) from e
        finally:
            self._release_connection(conn)

        logger.info(f"System settings updated by {updated_by or 'system'}: {sorted(updates)}")
        return self.get_settings()
