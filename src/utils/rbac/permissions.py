"""
RBAC Permissions - Permission resolution and membership checks

Resolution is a pure function over an identity's role grants:
- unscoped: union of the permission sets of every held, active role
- scoped to a role id: that role's permissions if it is held and active,
  otherwise nothing

PermissionResolver wraps the pure functions with a store lookup. Its
boolean checks fail closed: a storage failure answers False, never True.
"""

from typing import Iterable, List, Optional, Set, Union

from src.utils.logging import get_logger
from src.utils.rbac.errors import StorageError
from src.utils.rbac.models import Role, RoleGrant
from src.utils.rbac.permission_enum import Permission

logger = get_logger(__name__)

PermissionLike = Union[str, Permission]


def active_roles(grants: Iterable[RoleGrant]) -> List[Role]:
    """Roles of the given grants that are currently active, in grant order."""
    return [grant.role for grant in grants if grant.role.is_active]


def resolve_permissions(grants: Iterable[RoleGrant], scope_role_id: Optional[str] = None) -> Set[Permission]:
    """
    Compute the effective permission set for a list of grants.

    Args:
        grants: The identity's assignments joined with their roles
        scope_role_id: Restrict resolution to this single role

    Returns:
        Set of permissions (deduplicated by set union)
    """
    permissions: Set[Permission] = set()
    for role in active_roles(grants):
        if scope_role_id is not None and role.id != scope_role_id:
            continue
        permissions.update(role.permissions)
    return permissions


class PermissionResolver:
    """
    Resolves effective permissions and roles for an identity.

    Stateless: every call reads the store once. No caching.

    Usage:
        resolver = PermissionResolver(store)
        resolver.permissions_for(user_id)                    # all held roles
        resolver.permissions_for(user_id, user.active_role_id)  # active role only
        resolver.has_permission(user_id, Permission.CREATE_COURSE, user.active_role_id)
    """

    def __init__(self, store):
        self.store = store

    def permissions_for(self, identity_id: str, scope_role_id: Optional[str] = None) -> Set[Permission]:
        """
        Raises:
            StorageError: If the store cannot be read
        """
        return resolve_permissions(self.store.list_grants(identity_id), scope_role_id)

    def roles_for(self, identity_id: str) -> List[Role]:
        """
        Held roles that are currently active.

        Raises:
            StorageError: If the store cannot be read
        """
        return active_roles(self.store.list_grants(identity_id))

    def _safe_permissions(self, identity_id: str, scope_role_id: Optional[str]) -> Optional[Set[Permission]]:
        try:
            return self.permissions_for(identity_id, scope_role_id)
        except StorageError as e:
            logger.error(f"Permission lookup failed for {identity_id}, denying: {e}")
            return None

    def _safe_role_names(self, identity_id: str) -> Optional[Set[str]]:
        try:
            return {role.name for role in self.roles_for(identity_id)}
        except StorageError as e:
            logger.error(f"Role lookup failed for {identity_id}, denying: {e}")
            return None

    def has_permission(self, identity_id: str, permission: PermissionLike, scope_role_id: Optional[str] = None) -> bool:
        """
        Check a single permission.

        Raises:
            ValueError: If permission is not in the catalog
        """
        required = Permission.parse(permission)
        granted = self._safe_permissions(identity_id, scope_role_id)
        return granted is not None and required in granted

    def has_any_permission(
        self,
        identity_id: str,
        permissions: Iterable[PermissionLike],
        scope_role_id: Optional[str] = None,
    ) -> bool:
        """
        True if at least one requested permission is granted.

        An empty request is False: nothing can be "any of nothing".
        """
        required = Permission.parse_many(permissions)
        if not required:
            return False
        granted = self._safe_permissions(identity_id, scope_role_id)
        return granted is not None and any(p in granted for p in required)

    def has_all_permissions(
        self,
        identity_id: str,
        permissions: Iterable[PermissionLike],
        scope_role_id: Optional[str] = None,
    ) -> bool:
        """
        True if every requested permission is granted.

        An empty request is vacuously True, but a storage failure is still False.
        """
        required = Permission.parse_many(permissions)
        granted = self._safe_permissions(identity_id, scope_role_id)
        return granted is not None and all(p in granted for p in required)

    def has_role(self, identity_id: str, role_name: str) -> bool:
        """Membership in an active role, whether or not it is the active role."""
        names = self._safe_role_names(identity_id)
        return names is not None and role_name in names

    def has_any_role(self, identity_id: str, role_names: Iterable[str]) -> bool:
        role_names = list(role_names)
        if not role_names:
            return False
        names = self._safe_role_names(identity_id)
        return names is not None and any(name in names for name in role_names)

    def has_all_roles(self, identity_id: str, role_names: Iterable[str]) -> bool:
        role_names = list(role_names)
        names = self._safe_role_names(identity_id)
        return names is not None and all(name in names for name in role_names)
