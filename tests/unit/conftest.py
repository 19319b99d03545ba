"""
Shared fixtures for the access-control unit tests.

InMemoryRBACStore mirrors the public methods of RBACStore so the resolver,
role administration, audit writer and Flask layers can be tested without
PostgreSQL. The SQL layer itself is tested against mocked psycopg2 cursors
in test_store.py.
"""
import itertools
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Set

import pytest

from src.cli.tools.role_seed import seed
from src.interfaces.lms_api.app import create_app
from src.utils.rbac.audit import AuditTrailWriter
from src.utils.rbac.context import RBACServices
from src.utils.rbac.errors import AuthorizationError, ConflictError, NotFoundError, StorageError
from src.utils.rbac.jwt_parser import TokenService
from src.utils.rbac.models import Assignment, AuditLogEntry, Identity, IdentityRoles, Role, RoleGrant
from src.utils.rbac.permission_enum import Permission
from src.utils.rbac.permissions import PermissionResolver
from src.utils.rbac.registry import DEFAULT_ROLE_CONFIG, RBACRegistry
from src.utils.rbac.role_admin import RoleAdministration

TEST_SECRET = "unit-test-secret"
BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


class InMemoryRBACStore:
    """Dict-backed RBACStore double. Set fail_on to make methods raise StorageError."""

    def __init__(self):
        self.roles: Dict[str, Role] = {}
        self.identities: Dict[str, Identity] = {}
        self.assignments: List[Assignment] = []
        self.audit_entries: List[AuditLogEntry] = []
        self.fail_on: Set[str] = set()
        self._ids = itertools.count(1)
        self._clock = itertools.count()

    def _check(self, name: str) -> None:
        if name in self.fail_on or "*" in self.fail_on:
            raise StorageError("database unavailable")

    def _new_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    def _now(self) -> datetime:
        return BASE_TIME + timedelta(seconds=next(self._clock))

    # Identities

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        self._check("get_identity")
        return self.identities.get(identity_id)

    def create_identity(self, *, email=None, display_name=None, identity_id=None) -> Identity:
        self._check("create_identity")
        identity = Identity(
            id=identity_id or self._new_id("user"),
            email=email,
            display_name=display_name,
            created_at=self._now(),
        )
        self.identities[identity.id] = identity
        return identity

    # Roles

    def get_role(self, role_id: str) -> Optional[Role]:
        self._check("get_role")
        return self.roles.get(role_id)

    def get_role_by_name(self, name: str) -> Optional[Role]:
        self._check("get_role_by_name")
        return next((r for r in self.roles.values() if r.name == name), None)

    def list_roles(self, include_inactive: bool = False) -> List[Role]:
        self._check("list_roles")
        roles = [r for r in self.roles.values() if include_inactive or r.is_active]
        return sorted(roles, key=lambda r: r.name)

    def upsert_role(self, name, display_name, description, permissions):
        self._check("upsert_role")
        existing = next((r for r in self.roles.values() if r.name == name), None)
        role = Role(
            id=existing.id if existing else self._new_id("role"),
            name=name,
            display_name=display_name,
            description=description,
            permissions=frozenset(Permission.parse_many(permissions)),
            is_active=True,
        )
        self.roles[role.id] = role
        return role, existing is None

    def set_role_active(self, role_id: str, is_active: bool) -> Optional[Role]:
        self._check("set_role_active")
        if role_id not in self.roles:
            return None
        self.roles[role_id] = replace(self.roles[role_id], is_active=is_active)
        return self.roles[role_id]

    def set_role_permissions(self, role_id: str, permissions: Iterable) -> Optional[Role]:
        self._check("set_role_permissions")
        if role_id not in self.roles:
            return None
        self.roles[role_id] = replace(self.roles[role_id], permissions=frozenset(Permission.parse_many(permissions)))
        return self.roles[role_id]

    # Assignments

    def get_assignment(self, identity_id: str, role_id: str) -> Optional[Assignment]:
        self._check("get_assignment")
        return next(
            (a for a in self.assignments if a.identity_id == identity_id and a.role_id == role_id),
            None,
        )

    def list_grants(self, identity_id: str) -> List[RoleGrant]:
        self._check("list_grants")
        held = sorted(
            (a for a in self.assignments if a.identity_id == identity_id),
            key=lambda a: (a.assigned_at, a.id),
        )
        return [RoleGrant(assignment=a, role=self.roles[a.role_id]) for a in held]

    def create_assignment(self, identity_id: str, role_id: str, assigned_by=None) -> Assignment:
        self._check("create_assignment")
        if self.get_assignment(identity_id, role_id) is not None:
            raise ConflictError("duplicate key value violates unique constraint")
        assignment = Assignment(
            id=self._new_id("ur"),
            identity_id=identity_id,
            role_id=role_id,
            assigned_by=assigned_by,
            assigned_at=self._now(),
        )
        self.assignments.append(assignment)
        return assignment

    def delete_assignment(self, identity_id: str, role_id: str):
        self._check("delete_assignment")
        assignment = self.get_assignment(identity_id, role_id)
        if assignment is None:
            return None
        self.assignments.remove(assignment)
        identity = self.identities.get(identity_id)
        cleared = bool(identity and identity.active_role_id == role_id)
        if cleared:
            self.identities[identity_id] = replace(identity, active_role_id=None)
        return assignment, cleared

    # User directory

    def _newest_first(self, identities: Iterable[Identity]) -> List[Identity]:
        return sorted(identities, key=lambda i: (i.created_at, i.id), reverse=True)

    def list_identities_with_roles(self, search=None, *, limit=20, offset=0):
        self._check("list_identities_with_roles")
        identities = self._newest_first(self.identities.values())
        if search:
            needle = search.lower()
            identities = [
                i for i in identities
                if needle in (i.email or "").lower() or needle in (i.display_name or "").lower()
            ]
        page = identities[offset:offset + limit]
        return [IdentityRoles(i, tuple(self.list_grants(i.id))) for i in page], len(identities)

    def list_identities_holding(self, role_names):
        self._check("list_identities_holding")
        names = set(role_names)
        results = []
        for identity in self._newest_first(self.identities.values()):
            grants = tuple(g for g in self.list_grants(identity.id) if g.role.name in names)
            if grants:
                results.append(IdentityRoles(identity, grants))
        return results

    # Active role

    def _holds_active(self, identity_id: str, role_id: str) -> bool:
        return any(
            a.identity_id == identity_id and a.role_id == role_id and self.roles[role_id].is_active
            for a in self.assignments
        )

    def set_active_role(self, identity_id: str, role_id: Optional[str], *, require_held: bool = True):
        self._check("set_active_role")
        identity = self.identities.get(identity_id)
        if identity is None:
            raise NotFoundError(f"Identity {identity_id} not found")
        if role_id is not None and require_held and not self._holds_active(identity_id, role_id):
            raise AuthorizationError(f"Identity {identity_id} does not hold active role {role_id}")
        self.identities[identity_id] = replace(identity, active_role_id=role_id)
        return identity.active_role_id

    def set_active_role_if_unset(self, identity_id: str, role_id: str) -> bool:
        self._check("set_active_role_if_unset")
        identity = self.identities.get(identity_id)
        if identity is None or identity.active_role_id is not None:
            return False
        if not self._holds_active(identity_id, role_id):
            return False
        self.identities[identity_id] = replace(identity, active_role_id=role_id)
        return True

    # Audit log

    def insert_audit_entry(self, entry: AuditLogEntry) -> AuditLogEntry:
        self._check("insert_audit_entry")
        stored = replace(entry, id=self._new_id("audit"), created_at=self._now())
        self.audit_entries.append(stored)
        return stored

    def list_audit_entries(self, filters=None, *, limit=50, offset=0):
        self._check("list_audit_entries")
        entries = list(self.audit_entries)
        if filters is not None:
            checks = (
                ("actor_identity_id", filters.actor_identity_id),
                ("action", filters.action),
                ("resource_type", filters.resource_type),
                ("actor_active_role_id", filters.actor_active_role_id),
            )
            for attr, value in checks:
                if value:
                    entries = [e for e in entries if getattr(e, attr) == value]
            if filters.outcome:
                entries = [e for e in entries if e.outcome.value == filters.outcome]
            if filters.start:
                entries = [e for e in entries if e.created_at >= filters.start]
            if filters.end:
                entries = [e for e in entries if e.created_at <= filters.end]
        entries.sort(key=lambda e: e.created_at, reverse=True)
        total = len(entries)
        if limit is not None:
            entries = entries[offset:offset + limit]
        return entries, total

    # Helpers for tests

    def role_id(self, name: str) -> str:
        return self.get_role_by_name(name).id

    def add_user(self, user_id: str, *role_names: str, active: Optional[str] = None) -> Identity:
        """Create an identity holding the named roles, in order."""
        self.create_identity(identity_id=user_id, email=f"{user_id}@example.com")
        for name in role_names:
            self.create_assignment(user_id, self.role_id(name))
        if active is not None:
            self.identities[user_id] = replace(self.identities[user_id], active_role_id=self.role_id(active))
        return self.identities[user_id]


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def registry():
    return RBACRegistry(DEFAULT_ROLE_CONFIG)


@pytest.fixture
def store(registry):
    store = InMemoryRBACStore()
    seed(registry, store)
    return store


@pytest.fixture
def audit(store):
    return AuditTrailWriter(store)


@pytest.fixture
def role_admin(store, audit):
    return RoleAdministration(store, audit)


@pytest.fixture
def tokens():
    return TokenService(secret_key=TEST_SECRET)


@pytest.fixture
def services(store, audit, role_admin, tokens):
    return RBACServices(
        store=store,
        resolver=PermissionResolver(store),
        tokens=tokens,
        audit=audit,
        roles=role_admin,
    )


@pytest.fixture
def app(services):
    app = create_app(services=services)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_header(tokens):
    def _header(identity_id: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {tokens.issue_token(identity_id)}"}
    return _header
