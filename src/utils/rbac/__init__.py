"""
RBAC (Role-Based Access Control) Module for the LMS

This module provides authentication and authorization functionality including:
- The closed permission catalog and the seed role definitions
- Postgres storage for roles, assignments, active roles and the audit trail
- Permission resolution scoped to the caller's active role
- Route protection decorators (bearer-token gate and permission guards)
- Role grant / revoke / switch operations with audit entries

Usage:
    from src.utils.rbac import require_authenticated, require_permission, Permission

    @app.route('/api/roles/assign', methods=['POST'])
    @require_authenticated
    @require_permission(Permission.MANAGE_ROLES)
    def assign():
        ...
"""

from src.utils.rbac.permission_enum import Permission
from src.utils.rbac.errors import (
    RBACError,
    AuthenticationError,
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
from src.utils.rbac.registry import (
    RBACConfigError,
    RBACRegistry,
    load_rbac_config,
    load_registry,
)
from src.utils.rbac.store import AuditFilter, RBACStore
from src.utils.rbac.permissions import PermissionResolver, resolve_permissions
from src.utils.rbac.jwt_parser import TokenClaims, TokenService, extract_bearer_token
from src.utils.rbac.context import AccessContext, RBACServices, get_access_context
from src.utils.rbac.audit import AuditContext, AuditTrailWriter, record_audit
from src.utils.rbac.role_admin import (
    RoleAdministration,
    RoleErrorKind,
    RoleOperationResult,
    RoleState,
    role_state,
)
from src.utils.rbac.decorators import (
    audited,
    authenticate_request,
    require_all_permissions,
    require_any_permission,
    require_authenticated,
    require_permission,
    require_role,
)

__all__ = [
    # Permission enum
    'Permission',
    # Errors
    'RBACError',
    'AuthenticationError',
    'AuthorizationError',
    'ConflictError',
    'NotFoundError',
    'StorageError',
    # Models
    'Assignment',
    'AuditLogEntry',
    'AuditOutcome',
    'Identity',
    'IdentityRoles',
    'Role',
    'RoleGrant',
    # Registry
    'RBACConfigError',
    'RBACRegistry',
    'load_rbac_config',
    'load_registry',
    # Storage
    'AuditFilter',
    'RBACStore',
    # Resolution
    'PermissionResolver',
    'resolve_permissions',
    # Tokens
    'TokenClaims',
    'TokenService',
    'extract_bearer_token',
    # Request context
    'AccessContext',
    'RBACServices',
    'get_access_context',
    # Audit trail
    'AuditContext',
    'AuditTrailWriter',
    'record_audit',
    # Role administration
    'RoleAdministration',
    'RoleErrorKind',
    'RoleOperationResult',
    'RoleState',
    'role_state',
    # Decorators
    'audited',
    'authenticate_request',
    'require_all_permissions',
    'require_any_permission',
    'require_authenticated',
    'require_permission',
    'require_role',
]
