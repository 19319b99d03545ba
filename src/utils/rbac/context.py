"""
Request-scoped access context and the per-app service container.

The authentication gate attaches an AccessContext to flask.g.access. Guards,
the audit writer and handlers read it from there. The collaborators of the
RBAC core are injected once per Flask app through RBACServices, stored in
app.extensions, instead of module-level singletons.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from flask import current_app, g

from src.utils.rbac.jwt_parser import TokenClaims
from src.utils.rbac.models import Identity, Role
from src.utils.rbac.permission_enum import Permission

EXTENSION_KEY = "lms_rbac"


@dataclass(frozen=True)
class AccessContext:
    """
    Resolved identity, roles and permissions for the current request.

    permissions is scoped to the identity's live active role.
    roles holds every active role the identity is assigned.
    """
    identity: Identity
    roles: Tuple[Role, ...]
    permissions: FrozenSet[Permission]
    active_role: Optional[Role] = None
    claims: Optional[TokenClaims] = None

    @property
    def identity_id(self) -> str:
        return self.identity.id

    @property
    def active_role_id(self) -> Optional[str]:
        return self.identity.active_role_id

    @property
    def role_names(self) -> List[str]:
        return [role.name for role in self.roles]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity": self.identity.to_dict(),
            "roles": [role.to_dict(include_permissions=False) for role in self.roles],
            "permissions": sorted(p.value for p in self.permissions),
            "active_role": self.active_role.to_dict() if self.active_role else None,
        }


@dataclass
class RBACServices:
    """
    Collaborators of the access-control core for one application.

    Attributes:
        store: RBACStore (or any object with the same methods)
        resolver: PermissionResolver
        tokens: TokenService
        audit: AuditTrailWriter
        roles: RoleAdministration
        settings: SystemSettingsService, optional
        audit_decisions: Persist every authorization decision, not only log it
    """
    store: Any
    resolver: Any
    tokens: Any
    audit: Any
    roles: Any
    settings: Any = None
    audit_decisions: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)


def init_services(app, services: RBACServices) -> RBACServices:
    app.extensions[EXTENSION_KEY] = services
    return services


def get_services(app=None) -> RBACServices:
    """
    Raises:
        RuntimeError: If the app was not initialized with init_services()
    """
    app = app or current_app
    services = app.extensions.get(EXTENSION_KEY)
    if services is None:
        raise RuntimeError("RBAC services not initialized for this app")
    return services


def get_access_context() -> Optional[AccessContext]:
    """AccessContext attached by the authentication gate, or None."""
    return g.get("access")
