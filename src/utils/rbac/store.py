"""
RBACStore - Roles, role assignments, active roles and the audit log in PostgreSQL.

The store is the only shared mutable state of the access-control core:
- lms_roles:       role catalog (soft-disabled via is_active, never deleted)
- lms_users:       identities and their active_role_id pointer
- lms_user_roles:  identity <-> role links, UNIQUE (user_id, role_id)
- lms_audit_logs:  append-only audit trail

Every psycopg2 failure surfaces as StorageError so callers can fail closed.
A unique-constraint violation surfaces as ConflictError.
"""

from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

import psycopg2
import psycopg2.errors
import psycopg2.extras

from src.utils.logging import get_logger
from src.utils.rbac.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    StorageError,
)
from src.utils.rbac.models import (
    Assignment,
    AuditLogEntry,
    AuditOutcome,
    Identity,
    IdentityRoles,
    Role,
    RoleGrant,
)
from src.utils.rbac.permission_enum import Permission

logger = get_logger(__name__)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS lms_roles (
    id TEXT PRIMARY KEY,
    name VARCHAR(100) NOT NULL UNIQUE,
    display_name VARCHAR(200) NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    permissions JSONB NOT NULL DEFAULT '[]'::jsonb,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE TABLE IF NOT EXISTS lms_users (
    id TEXT PRIMARY KEY,
    email VARCHAR(320) UNIQUE,
    display_name VARCHAR(200),
    active_role_id TEXT REFERENCES lms_roles(id) ON DELETE SET NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE TABLE IF NOT EXISTS lms_user_roles (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES lms_users(id) ON DELETE CASCADE,
    role_id TEXT NOT NULL REFERENCES lms_roles(id) ON DELETE CASCADE,
    assigned_by TEXT REFERENCES lms_users(id) ON DELETE SET NULL,
    assigned_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CONSTRAINT uq_lms_user_roles_user_role UNIQUE (user_id, role_id)
);
CREATE INDEX IF NOT EXISTS idx_lms_user_roles_user ON lms_user_roles(user_id);
CREATE INDEX IF NOT EXISTS idx_lms_user_roles_role ON lms_user_roles(role_id);
CREATE TABLE IF NOT EXISTS lms_audit_logs (
    id TEXT PRIMARY KEY,
    actor_user_id TEXT,
    actor_role_id TEXT,
    action VARCHAR(100) NOT NULL,
    resource_type VARCHAR(100) NOT NULL,
    resource_id TEXT,
    details JSONB NOT NULL DEFAULT '{}'::jsonb,
    ip_address VARCHAR(64),
    user_agent TEXT,
    outcome VARCHAR(16) NOT NULL DEFAULT 'success'
        CHECK (outcome IN ('success', 'failure', 'error')),
    error_message TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_lms_audit_logs_actor ON lms_audit_logs(actor_user_id);
CREATE INDEX IF NOT EXISTS idx_lms_audit_logs_action ON lms_audit_logs(action);
CREATE INDEX IF NOT EXISTS idx_lms_audit_logs_created ON lms_audit_logs(created_at);
"""

_GRANT_COLUMNS = """
    ur.id AS assignment_id, ur.user_id, ur.role_id, ur.assigned_by, ur.assigned_at,
    r.name, r.display_name, r.description, r.permissions, r.is_active
"""

_HELD_ACTIVE_ROLE_SQL = """
    SELECT 1 FROM lms_user_roles ur
    JOIN lms_roles r ON r.id = ur.role_id
    WHERE ur.user_id = %s AND ur.role_id = %s AND r.is_active
"""


@dataclass
class AuditFilter:
    """Filters for audit log queries. Unset fields do not filter."""
    actor_identity_id: Optional[str] = None
    action: Optional[str] = None
    resource_type: Optional[str] = None
    actor_active_role_id: Optional[str] = None
    outcome: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None


def _new_id() -> str:
    return str(uuid.uuid4())


def _rollback_quietly(conn) -> None:
    # a dropped connection cannot roll back; keep the original error
    try:
        conn.rollback()
    except psycopg2.Error as e:
        logger.debug(f"Rollback failed, connection is unusable: {e}")


def _parse_permissions(values: Optional[Iterable[str]], role_name: str) -> frozenset:
    permissions = set()
    for value in values or []:
        try:
            permissions.add(Permission.parse(value))
        except ValueError:
            # stale rows must not break resolution; the value grants nothing
            logger.warning(f"Role '{role_name}' has unknown permission '{value}' in storage; ignoring")
    return frozenset(permissions)


def _row_to_role(row: Dict[str, Any], id_key: str = "id") -> Role:
    return Role(
        id=row[id_key],
        name=row["name"],
        display_name=row["display_name"],
        description=row.get("description") or "",
        permissions=_parse_permissions(row.get("permissions"), row["name"]),
        is_active=bool(row["is_active"]),
    )


def _row_to_identity(row: Dict[str, Any]) -> Identity:
    return Identity(
        id=row["id"],
        email=row.get("email"),
        display_name=row.get("display_name"),
        active_role_id=row.get("active_role_id"),
        created_at=row.get("created_at"),
    )


def _row_to_assignment(row: Dict[str, Any], id_key: str = "id") -> Assignment:
    return Assignment(
        id=row[id_key],
        identity_id=row["user_id"],
        role_id=row["role_id"],
        assigned_by=row.get("assigned_by"),
        assigned_at=row["assigned_at"],
    )


def _row_to_grant(row: Dict[str, Any]) -> RoleGrant:
    return RoleGrant(
        assignment=_row_to_assignment(row, id_key="assignment_id"),
        role=_row_to_role(row, id_key="role_id"),
    )


def _row_to_audit_entry(row: Dict[str, Any]) -> AuditLogEntry:
    return AuditLogEntry(
        id=row["id"],
        actor_identity_id=row.get("actor_user_id"),
        actor_active_role_id=row.get("actor_role_id"),
        action=row["action"],
        resource_type=row["resource_type"],
        resource_id=row.get("resource_id"),
        details=row.get("details") or {},
        ip_address=row.get("ip_address"),
        user_agent=row.get("user_agent"),
        outcome=AuditOutcome(row["outcome"]),
        error_message=row.get("error_message"),
        created_at=row.get("created_at"),
    )


class RBACStore:
    """
    PostgreSQL persistence for the access-control core.

    Example:
        >>> store = RBACStore(connection_pool=pool)
        >>> role = store.get_role_by_name("learner")
        >>> store.create_assignment(user_id, role.id, assigned_by=admin_id)
        >>> store.list_grants(user_id)
    """

    def __init__(self, pg_config: Optional[Dict[str, Any]] = None, *, connection_pool=None, ensure_schema: bool = True):
        """
        Initialize RBACStore.

        Args:
            pg_config: PostgreSQL connection parameters (fallback)
            connection_pool: ConnectionPool instance (preferred)
            ensure_schema: Create tables if missing (best-effort)
        """
        self._pool = connection_pool
        self._pg_config = pg_config
        if ensure_schema:
            try:
                self.ensure_schema()
            except StorageError as exc:
                logger.debug("Could not ensure RBAC tables: %s", exc)

    def _get_connection(self):
        if self._pool:
            return self._pool.get_connection_direct()
        elif self._pg_config:
            return psycopg2.connect(**self._pg_config)
        else:
            raise ValueError("No connection pool or pg_config provided")

    def _release_connection(self, conn) -> None:
        if self._pool:
            self._pool.release_connection(conn)
        else:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[Any]:
        """
        Yield a dict cursor inside one transaction.

        Commits on success, rolls back on any error. psycopg2 errors are
        translated to ConflictError / StorageError.
        """
        try:
            conn = self._get_connection()
        except psycopg2.Error as e:
            raise StorageError(f"Could not connect to permission store: {e}") from e
        except Exception as e:
            # pool exhaustion and pool-closed errors
            raise StorageError(f"Could not obtain connection: {e}") from e

        try:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cursor:
                yield cursor
            conn.commit()
        except psycopg2.errors.UniqueViolation as e:
            _rollback_quietly(conn)
            raise ConflictError(str(e).strip()) from e
        except psycopg2.Error as e:
            _rollback_quietly(conn)
            raise StorageError(str(e).strip()) from e
        except Exception:
            _rollback_quietly(conn)
            raise
        finally:
            self._release_connection(conn)

    def ensure_schema(self) -> None:
        """Create RBAC tables and indexes if they don't exist."""
        with self._transaction() as cursor:
            cursor.execute(SCHEMA_SQL)

    # =========================================================================
    # Identities
    # =========================================================================

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        with self._transaction() as cursor:
            cursor.execute(
                "SELECT id, email, display_name, active_role_id, created_at FROM lms_users WHERE id = %s",
                (identity_id,),
            )
            row = cursor.fetchone()
        return _row_to_identity(row) if row else None

    def create_identity(
        self,
        *,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
        identity_id: Optional[str] = None,
    ) -> Identity:
        """Create an identity with no active role."""
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO lms_users (id, email, display_name)
                VALUES (%s, %s, %s)
                RETURNING id, email, display_name, active_role_id, created_at
                """,
                (identity_id or _new_id(), email, display_name),
            )
            row = cursor.fetchone()
        return _row_to_identity(row)

    # =========================================================================
    # Roles
    # =========================================================================

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._transaction() as cursor:
            cursor.execute("SELECT * FROM lms_roles WHERE id = %s", (role_id,))
            row = cursor.fetchone()
        return _row_to_role(row) if row else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._transaction() as cursor:
            cursor.execute("SELECT * FROM lms_roles WHERE name = %s", (name,))
            row = cursor.fetchone()
        return _row_to_role(row) if row else None

    def list_roles(self, include_inactive: bool = False) -> List[Role]:
        sql = "SELECT * FROM lms_roles"
        if not include_inactive:
            sql += " WHERE is_active"
        sql += " ORDER BY name"
        with self._transaction() as cursor:
            cursor.execute(sql)
            rows = cursor.fetchall()
        return [_row_to_role(row) for row in rows]

    def upsert_role(
        self,
        name: str,
        display_name: str,
        description: str,
        permissions: Iterable[Permission],
    ) -> Tuple[Role, bool]:
        """
        Create a role or refresh an existing one (seeding).

        Existing roles keep their id; permissions are replaced and the role
        is re-activated.

        Returns:
            (role, created)
        """
        values = sorted(Permission.parse(p).value for p in permissions)
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO lms_roles (id, name, display_name, description, permissions, is_active)
                VALUES (%s, %s, %s, %s, %s, TRUE)
                ON CONFLICT (name) DO UPDATE SET
                    display_name = EXCLUDED.display_name,
                    description = EXCLUDED.description,
                    permissions = EXCLUDED.permissions,
                    is_active = TRUE,
                    updated_at = NOW()
                RETURNING *, (xmax = 0) AS created
                """,
                (_new_id(), name, display_name, description, psycopg2.extras.Json(values)),
            )
            row = cursor.fetchone()
        return _row_to_role(row), bool(row["created"])

    def set_role_active(self, role_id: str, is_active: bool) -> Optional[Role]:
        """Soft-enable or soft-disable a role. Assignments are left untouched."""
        with self._transaction() as cursor:
            cursor.execute(
                "UPDATE lms_roles SET is_active = %s, updated_at = NOW() WHERE id = %s RETURNING *",
                (is_active, role_id),
            )
            row = cursor.fetchone()
        return _row_to_role(row) if row else None

    def set_role_permissions(self, role_id: str, permissions: Iterable[Permission]) -> Optional[Role]:
        values = sorted(Permission.parse(p).value for p in permissions)
        with self._transaction() as cursor:
            cursor.execute(
                "UPDATE lms_roles SET permissions = %s, updated_at = NOW() WHERE id = %s RETURNING *",
                (psycopg2.extras.Json(values), role_id),
            )
            row = cursor.fetchone()
        return _row_to_role(row) if row else None

    # =========================================================================
    # Assignments
    # =========================================================================

    def get_assignment(self, identity_id: str, role_id: str) -> Optional[Assignment]:
        with self._transaction() as cursor:
            cursor.execute(
                "SELECT * FROM lms_user_roles WHERE user_id = %s AND role_id = %s",
                (identity_id, role_id),
            )
            row = cursor.fetchone()
        return _row_to_assignment(row) if row else None

    def list_grants(self, identity_id: str) -> List[RoleGrant]:
        """
        All of an identity's assignments joined with their roles.

        Inactive roles are included; filtering is the resolver's job.
        Ordered by assignment order (assigned_at, then id).
        """
        with self._transaction() as cursor:
            cursor.execute(
                f"""
                SELECT {_GRANT_COLUMNS}
                FROM lms_user_roles ur
                JOIN lms_roles r ON r.id = ur.role_id
                WHERE ur.user_id = %s
                ORDER BY ur.assigned_at, ur.id
                """,
                (identity_id,),
            )
            rows = cursor.fetchall()
        return [_row_to_grant(row) for row in rows]

    def create_assignment(self, identity_id: str, role_id: str, assigned_by: Optional[str] = None) -> Assignment:
        """
        Link an identity to a role.

        Raises:
            ConflictError: If the pair already exists (unique constraint)
        """
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO lms_user_roles (id, user_id, role_id, assigned_by, assigned_at)
                VALUES (%s, %s, %s, %s, NOW())
                RETURNING *
                """,
                (_new_id(), identity_id, role_id, assigned_by),
            )
            row = cursor.fetchone()
        return _row_to_assignment(row)

    def delete_assignment(self, identity_id: str, role_id: str) -> Optional[Tuple[Assignment, bool]]:
        """
        Remove an assignment; clear active_role_id if it pointed at that role.

        Returns:
            (deleted assignment, active role cleared) or None if no such assignment
        """
        with self._transaction() as cursor:
            cursor.execute(
                "SELECT active_role_id FROM lms_users WHERE id = %s FOR UPDATE",
                (identity_id,),
            )
            user_row = cursor.fetchone()
            cursor.execute(
                "DELETE FROM lms_user_roles WHERE user_id = %s AND role_id = %s RETURNING *",
                (identity_id, role_id),
            )
            row = cursor.fetchone()
            if row is None:
                return None

            cleared = bool(user_row and user_row.get("active_role_id") == role_id)
            if cleared:
                cursor.execute(
                    "UPDATE lms_users SET active_role_id = NULL WHERE id = %s",
                    (identity_id,),
                )
        return _row_to_assignment(row), cleared

    # =========================================================================
    # User directory
    # =========================================================================

    def _grants_by_identity(
        self,
        cursor,
        identity_ids: List[str],
        role_names: Optional[List[str]] = None,
    ) -> Dict[str, List[RoleGrant]]:
        if not identity_ids:
            return {}
        sql = f"""
            SELECT {_GRANT_COLUMNS}
            FROM lms_user_roles ur
            JOIN lms_roles r ON r.id = ur.role_id
            WHERE ur.user_id = ANY(%s)
        """
        params: List[Any] = [identity_ids]
        if role_names is not None:
            sql += " AND r.name = ANY(%s)"
            params.append(role_names)
        sql += " ORDER BY ur.assigned_at, ur.id"
        cursor.execute(sql, params)

        grouped: Dict[str, List[RoleGrant]] = {}
        for row in cursor.fetchall():
            grouped.setdefault(row["user_id"], []).append(_row_to_grant(row))
        return grouped

    def list_identities_with_roles(
        self,
        search: Optional[str] = None,
        *,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[IdentityRoles], int]:
        """
        Page through identities, newest first, with every role they hold.

        search matches email or display name, case-insensitively.

        Returns:
            (identities with grants, total matching count)
        """
        where = ""
        params: List[Any] = []
        if search:
            where = "WHERE email ILIKE %s OR display_name ILIKE %s"
            pattern = f"%{search}%"
            params = [pattern, pattern]

        with self._transaction() as cursor:
            cursor.execute(f"SELECT COUNT(*) AS total FROM lms_users {where}", params)
            total = cursor.fetchone()["total"]
            cursor.execute(
                f"""
                SELECT id, email, display_name, active_role_id, created_at
                FROM lms_users {where}
                ORDER BY created_at DESC, id
                LIMIT %s OFFSET %s
                """,
                params + [limit, offset],
            )
            identities = [_row_to_identity(row) for row in cursor.fetchall()]
            grants = self._grants_by_identity(cursor, [i.id for i in identities])
        return [IdentityRoles(i, tuple(grants.get(i.id, ()))) for i in identities], total

    def list_identities_holding(self, role_names: Iterable[str]) -> List[IdentityRoles]:
        """
        Identities assigned any of the named roles.

        Each result carries only its grants of those roles.
        """
        names = list(role_names)
        if not names:
            return []
        with self._transaction() as cursor:
            cursor.execute(
                """
                SELECT id, email, display_name, active_role_id, created_at
                FROM lms_users
                WHERE id IN (
                    SELECT ur.user_id FROM lms_user_roles ur
                    JOIN lms_roles r ON r.id = ur.role_id
                    WHERE r.name = ANY(%s)
                )
                ORDER BY created_at DESC, id
                """,
                (names,),
            )
            identities = [_row_to_identity(row) for row in cursor.fetchall()]
            grants = self._grants_by_identity(cursor, [i.id for i in identities], role_names=names)
        return [IdentityRoles(i, tuple(grants.get(i.id, ()))) for i in identities]

    # =========================================================================
    # Active role
    # =========================================================================

    def set_active_role(self, identity_id: str, role_id: Optional[str], *, require_held: bool = True) -> Optional[str]:
        """
        Point an identity's active_role_id at role_id (or clear it).

        The held-and-active check and the write happen in one transaction
        with the identity row locked.

        Returns:
            The previous active_role_id

        Raises:
            NotFoundError: Unknown identity
            AuthorizationError: require_held and the role is not a held, active role
        """
        with self._transaction() as cursor:
            cursor.execute(
                "SELECT active_role_id FROM lms_users WHERE id = %s FOR UPDATE",
                (identity_id,),
            )
            row = cursor.fetchone()
            if row is None:
                raise NotFoundError(f"Identity {identity_id} not found")
            previous = row["active_role_id"]

            if role_id is not None and require_held:
                cursor.execute(_HELD_ACTIVE_ROLE_SQL, (identity_id, role_id))
                if cursor.fetchone() is None:
                    raise AuthorizationError(
                        f"Identity {identity_id} does not hold active role {role_id}"
                    )

            cursor.execute(
                "UPDATE lms_users SET active_role_id = %s WHERE id = %s",
                (role_id, identity_id),
            )
        return previous

    def set_active_role_if_unset(self, identity_id: str, role_id: str) -> bool:
        """
        Set active_role_id only while it is NULL and the role is held and active.

        Returns:
            True if this call set the value
        """
        with self._transaction() as cursor:
            cursor.execute(
                f"""
                UPDATE lms_users SET active_role_id = %s
                WHERE id = %s AND active_role_id IS NULL
                  AND EXISTS ({_HELD_ACTIVE_ROLE_SQL})
                """,
                (role_id, identity_id, identity_id, role_id),
            )
            return cursor.rowcount == 1

    # =========================================================================
    # Audit log (append-only)
    # =========================================================================

    def insert_audit_entry(self, entry: AuditLogEntry) -> AuditLogEntry:
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO lms_audit_logs (
                    id, actor_user_id, actor_role_id, action, resource_type, resource_id,
                    details, ip_address, user_agent, outcome, error_message
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    entry.id or _new_id(),
                    entry.actor_identity_id,
                    entry.actor_active_role_id,
                    entry.action,
                    entry.resource_type,
                    entry.resource_id,
                    psycopg2.extras.Json(entry.details or {}, dumps=_json_dumps),
                    entry.ip_address,
                    entry.user_agent,
                    entry.outcome.value,
                    entry.error_message,
                ),
            )
            row = cursor.fetchone()
        return _row_to_audit_entry(row)

    def list_audit_entries(
        self,
        filters: Optional[AuditFilter] = None,
        *,
        limit: Optional[int] = 50,
        offset: int = 0,
    ) -> Tuple[List[AuditLogEntry], int]:
        """
        Query the audit log, newest first.

        Returns:
            (entries, total matching count)
        """
        filters = filters or AuditFilter()
        clauses: List[str] = []
        params: List[Any] = []
        for column, value in (
            ("actor_user_id", filters.actor_identity_id),
            ("action", filters.action),
            ("resource_type", filters.resource_type),
            ("actor_role_id", filters.actor_active_role_id),
            ("outcome", filters.outcome),
        ):
            if value:
                clauses.append(f"{column} = %s")
                params.append(value)
        if filters.start:
            clauses.append("created_at >= %s")
            params.append(filters.start)
        if filters.end:
            clauses.append("created_at <= %s")
            params.append(filters.end)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._transaction() as cursor:
            cursor.execute(f"SELECT COUNT(*) AS total FROM lms_audit_logs {where}", params)
            total = cursor.fetchone()["total"]

            sql = f"SELECT * FROM lms_audit_logs {where} ORDER BY created_at DESC, id"
            page_params = list(params)
            if limit is not None:
                sql += " LIMIT %s OFFSET %s"
                page_params.extend([limit, offset])
            cursor.execute(sql, page_params)
            rows = cursor.fetchall()
        return [_row_to_audit_entry(row) for row in rows], total


def _json_dumps(value: Any) -> str:
    return json.dumps(value, default=str)
