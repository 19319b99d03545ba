"""
Role Administration - Grant, revoke and switch roles; enable, disable and re-scope them

Every operation returns a RoleOperationResult instead of raising, and writes
exactly one entry to the audit trail whatever the outcome:
- success for a completed change
- failure for a rejected call (unknown identity/role, duplicate grant,
  role not held, unknown permission)
- error when the store failed

Active-role lifecycle of an identity:

    NO_ROLE --grant--> ROLE_UNSET --first authentication / switch--> ACTIVE

Revoking the role currently set as active clears active_role_id in the same
transaction; the identity goes back to ROLE_UNSET (or NO_ROLE) and the next
authentication selects its first held role again.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from src.utils.logging import get_logger
from src.utils.rbac.audit import AuditContext, log_role_assignment
from src.utils.rbac.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    StorageError,
)
from src.utils.rbac.models import Assignment, AuditOutcome, Identity, Role, RoleGrant
from src.utils.rbac.permission_enum import Permission
from src.utils.rbac.permissions import active_roles

logger = get_logger(__name__)

ACTION_ASSIGN_ROLE = "ASSIGN_ROLE"
ACTION_REVOKE_ROLE = "REVOKE_ROLE"
ACTION_SWITCH_ROLE = "SWITCH_ROLE"
ACTION_UPDATE_ROLE = "UPDATE_ROLE"

RESOURCE_USER_ROLE = "UserRole"
RESOURCE_USER = "User"
RESOURCE_ROLE = "Role"


class RoleState(str, Enum):
    NO_ROLE = "no_role"
    ROLE_UNSET = "role_unset"
    ACTIVE = "active"


def role_state(identity: Identity, grants: Iterable[RoleGrant]) -> RoleState:
    """
    Classify an identity's active-role state.

    ACTIVE means active_role_id names a held, active role. An identity that
    holds active roles but has no usable pointer is ROLE_UNSET.
    """
    held = active_roles(grants)
    if any(role.id == identity.active_role_id for role in held):
        return RoleState.ACTIVE
    if held:
        return RoleState.ROLE_UNSET
    return RoleState.NO_ROLE


class RoleErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    FORBIDDEN = "forbidden"
    INVALID = "invalid"
    STORAGE_ERROR = "storage_error"


_STATUS_CODES = {
    None: 200,
    RoleErrorKind.NOT_FOUND: 404,
    RoleErrorKind.CONFLICT: 409,
    RoleErrorKind.FORBIDDEN: 403,
    RoleErrorKind.INVALID: 400,
    RoleErrorKind.STORAGE_ERROR: 503,
}


@dataclass(frozen=True)
class RoleOperationResult:
    ok: bool
    message: str
    error: Optional[RoleErrorKind] = None
    role: Optional[Role] = None
    assignment: Optional[Assignment] = None
    previous_role_id: Optional[str] = None
    active_role_cleared: bool = False

    @property
    def status_code(self) -> int:
        return _STATUS_CODES[self.error]

    @property
    def audit_outcome(self) -> AuditOutcome:
        if self.ok:
            return AuditOutcome.SUCCESS
        if self.error is RoleErrorKind.STORAGE_ERROR:
            return AuditOutcome.ERROR
        return AuditOutcome.FAILURE

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"success": self.ok, "message": self.message}
        if self.error is not None:
            data["error"] = self.error.value
        if self.role is not None:
            data["role"] = self.role.to_dict()
        if self.assignment is not None:
            data["assignment"] = self.assignment.to_dict()
        if self.previous_role_id is not None:
            data["previous_role_id"] = self.previous_role_id
        if self.active_role_cleared:
            data["active_role_cleared"] = True
        return data


def _failed(error: RoleErrorKind, message: str, **kwargs) -> RoleOperationResult:
    return RoleOperationResult(ok=False, message=message, error=error, **kwargs)


class RoleAdministration:
    """
    Role grants, revocations and active-role selection.

    Usage:
        admin = RoleAdministration(store, audit_writer)
        result = admin.assign_role(user_id, role_id, granted_by=admin_id)
        if not result.ok:
            return jsonify(result.to_dict()), result.status_code
    """

    def __init__(self, store, audit):
        """
        Args:
            store: RBACStore
            audit: AuditTrailWriter
        """
        self.store = store
        self.audit = audit

    # =========================================================================
    # Active-role selection
    # =========================================================================

    def ensure_active_role(self, identity: Identity, grants: Iterable[RoleGrant]) -> Optional[str]:
        """
        First-authentication transition: ROLE_UNSET -> ACTIVE.

        When active_role_id is null and the identity holds an active role,
        select the first held active role by assignment order. A non-null
        pointer is never overwritten, so the call is idempotent.

        Returns:
            The identity's active_role_id after the call

        Raises:
            StorageError: If the store cannot be written
        """
        if identity.active_role_id is not None:
            return identity.active_role_id

        held = active_roles(grants)
        if not held:
            return None

        first = held[0]
        if self.store.set_active_role_if_unset(identity.id, first.id):
            logger.info(f"Active role of {identity.id} set to '{first.name}' on first authentication")
            log_role_assignment(identity.id, [first.name], source="first_login")
            return first.id

        # another request got there first
        current = self.store.get_identity(identity.id)
        return current.active_role_id if current else None

    def switch_active_role(
        self,
        identity_id: str,
        target_role_id: str,
        context: Optional[AuditContext] = None,
    ) -> RoleOperationResult:
        """
        Point the identity's active role at a role it holds.

        Rejected without mutation when the role is unknown (NOT_FOUND), or
        inactive or not held (FORBIDDEN).
        """
        details: Dict[str, Any] = {"newRoleId": target_role_id}
        result = self._switch(identity_id, target_role_id, details)
        self.audit.record(
            ACTION_SWITCH_ROLE,
            RESOURCE_USER,
            resource_id=identity_id,
            details=details,
            outcome=result.audit_outcome,
            error_message=None if result.ok else result.message,
            context=context,
        )
        return result

    def _switch(self, identity_id: str, target_role_id: str, details: Dict[str, Any]) -> RoleOperationResult:
        try:
            if self.store.get_identity(identity_id) is None:
                return _failed(RoleErrorKind.NOT_FOUND, "User not found")

            role = self.store.get_role(target_role_id)
            if role is None:
                return _failed(RoleErrorKind.NOT_FOUND, "Role not found")
            details["roleName"] = role.name
            if not role.is_active:
                return _failed(RoleErrorKind.FORBIDDEN, "Role is not active", role=role)

            try:
                previous = self.store.set_active_role(identity_id, role.id, require_held=True)
            except AuthorizationError:
                return _failed(RoleErrorKind.FORBIDDEN, "You do not have this role assigned", role=role)
            except NotFoundError:
                return _failed(RoleErrorKind.NOT_FOUND, "User not found")
        except StorageError as e:
            logger.error(f"Role switch for {identity_id} failed: {e}")
            return _failed(RoleErrorKind.STORAGE_ERROR, "Permission store unavailable")

        details["previousRoleId"] = previous
        logger.info(f"Identity {identity_id} switched active role {previous} -> {role.id}")
        return RoleOperationResult(
            ok=True,
            message=f"Switched to {role.display_name} role",
            role=role,
            previous_role_id=previous,
        )

    # =========================================================================
    # Grants
    # =========================================================================

    def assign_role(
        self,
        identity_id: str,
        role_id: str,
        granted_by: Optional[str] = None,
        context: Optional[AuditContext] = None,
    ) -> RoleOperationResult:
        """
        Grant a role. Requires an existing identity and an existing active role.

        A second grant of the same pair is a CONFLICT and creates no row.
        """
        details: Dict[str, Any] = {"targetUserId": identity_id, "roleId": role_id}
        if granted_by:
            details["grantedBy"] = granted_by
        result = self._assign(identity_id, role_id, granted_by, details)
        self.audit.record(
            ACTION_ASSIGN_ROLE,
            RESOURCE_USER_ROLE,
            resource_id=result.assignment.id if result.assignment else None,
            details=details,
            outcome=result.audit_outcome,
            error_message=None if result.ok else result.message,
            context=context,
        )
        return result

    def _assign(
        self,
        identity_id: str,
        role_id: str,
        granted_by: Optional[str],
        details: Dict[str, Any],
    ) -> RoleOperationResult:
        try:
            if self.store.get_identity(identity_id) is None:
                return _failed(RoleErrorKind.NOT_FOUND, "User not found")

            role = self.store.get_role(role_id)
            if role is None or not role.is_active:
                return _failed(RoleErrorKind.NOT_FOUND, "Role not found or inactive")
            details["roleName"] = role.name

            if self.store.get_assignment(identity_id, role_id) is not None:
                return _failed(RoleErrorKind.CONFLICT, "User already has this role", role=role)

            try:
                assignment = self.store.create_assignment(identity_id, role_id, assigned_by=granted_by)
            except ConflictError:
                # concurrent grant of the same pair
                return _failed(RoleErrorKind.CONFLICT, "User already has this role", role=role)
        except StorageError as e:
            logger.error(f"Role grant {role_id} -> {identity_id} failed: {e}")
            return _failed(RoleErrorKind.STORAGE_ERROR, "Permission store unavailable")

        log_role_assignment(identity_id, [role.name], source="admin", actor=granted_by)
        return RoleOperationResult(
            ok=True,
            message=f"Role {role.display_name} assigned successfully",
            role=role,
            assignment=assignment,
        )

    def revoke_role(
        self,
        identity_id: str,
        role_id: str,
        context: Optional[AuditContext] = None,
    ) -> RoleOperationResult:
        """
        Remove a grant. Clears active_role_id if it pointed at the revoked role.
        """
        details: Dict[str, Any] = {"targetUserId": identity_id, "roleId": role_id}
        result = self._revoke(identity_id, role_id, details)
        self.audit.record(
            ACTION_REVOKE_ROLE,
            RESOURCE_USER_ROLE,
            resource_id=result.assignment.id if result.assignment else None,
            details=details,
            outcome=result.audit_outcome,
            error_message=None if result.ok else result.message,
            context=context,
        )
        return result

    def _revoke(self, identity_id: str, role_id: str, details: Dict[str, Any]) -> RoleOperationResult:
        try:
            role = self.store.get_role(role_id)
            removed = self.store.delete_assignment(identity_id, role_id)
            if removed is None:
                return _failed(RoleErrorKind.NOT_FOUND, "Role assignment not found")
            assignment, cleared = removed
        except StorageError as e:
            logger.error(f"Role revocation {role_id} -> {identity_id} failed: {e}")
            return _failed(RoleErrorKind.STORAGE_ERROR, "Permission store unavailable")

        details["activeRoleCleared"] = cleared
        if role is not None:
            details["roleName"] = role.name
        if cleared:
            logger.info(f"Active role of {identity_id} cleared by revocation of {role_id}")
        log_role_assignment(identity_id, [role.name if role else role_id], source="admin", revoked=True)
        return RoleOperationResult(
            ok=True,
            message="Role revoked successfully",
            role=role,
            assignment=assignment,
            active_role_cleared=cleared,
        )

    # =========================================================================
    # Role catalog changes
    # =========================================================================

    def set_role_status(
        self,
        role_id: str,
        is_active: bool,
        context: Optional[AuditContext] = None,
    ) -> RoleOperationResult:
        """
        Soft-enable or soft-disable a role.

        Assignments are kept. A disabled role grants nothing, cannot be
        granted and cannot be switched into until it is enabled again.
        """
        details: Dict[str, Any] = {"roleId": role_id, "isActive": is_active}
        result = self._set_status(role_id, is_active, details)
        self._record_role_update(role_id, details, result, context)
        return result

    def _set_status(self, role_id: str, is_active: bool, details: Dict[str, Any]) -> RoleOperationResult:
        try:
            before = self.store.get_role(role_id)
            if before is None:
                return _failed(RoleErrorKind.NOT_FOUND, "Role not found")
            details["roleName"] = before.name
            details["previousIsActive"] = before.is_active
            role = self.store.set_role_active(role_id, is_active)
        except StorageError as e:
            logger.error(f"Status change of role {role_id} failed: {e}")
            return _failed(RoleErrorKind.STORAGE_ERROR, "Permission store unavailable")
        if role is None:
            return _failed(RoleErrorKind.NOT_FOUND, "Role not found")

        logger.info(f"Role '{role.name}' {'enabled' if is_active else 'disabled'}")
        return RoleOperationResult(
            ok=True,
            message=f"Role {role.display_name} {'enabled' if is_active else 'disabled'}",
            role=role,
        )

    def update_role_permissions(
        self,
        role_id: str,
        permissions: Iterable[Any],
        context: Optional[AuditContext] = None,
    ) -> RoleOperationResult:
        """
        Replace a role's permission set.

        Every permission must be in the catalog; an unknown one rejects the
        whole update as INVALID. Holders see the new set on their next request.
        """
        details: Dict[str, Any] = {"roleId": role_id}
        result = self._set_permissions(role_id, permissions, details)
        self._record_role_update(role_id, details, result, context)
        return result

    def _set_permissions(
        self,
        role_id: str,
        permissions: Iterable[Any],
        details: Dict[str, Any],
    ) -> RoleOperationResult:
        try:
            parsed = Permission.parse_many(permissions)
        except ValueError as e:
            return _failed(RoleErrorKind.INVALID, str(e))
        details["permissions"] = sorted({p.value for p in parsed})

        try:
            before = self.store.get_role(role_id)
            if before is None:
                return _failed(RoleErrorKind.NOT_FOUND, "Role not found")
            details["roleName"] = before.name
            details["previousPermissions"] = sorted(p.value for p in before.permissions)
            role = self.store.set_role_permissions(role_id, parsed)
        except StorageError as e:
            logger.error(f"Permission update of role {role_id} failed: {e}")
            return _failed(RoleErrorKind.STORAGE_ERROR, "Permission store unavailable")
        if role is None:
            return _failed(RoleErrorKind.NOT_FOUND, "Role not found")

        logger.info(f"Role '{role.name}' now grants {len(role.permissions)} permissions")
        return RoleOperationResult(
            ok=True,
            message=f"Permissions of {role.display_name} updated",
            role=role,
        )

    def _record_role_update(
        self,
        role_id: str,
        details: Dict[str, Any],
        result: RoleOperationResult,
        context: Optional[AuditContext],
    ) -> None:
        self.audit.record(
            ACTION_UPDATE_ROLE,
            RESOURCE_ROLE,
            resource_id=role_id,
            details=details,
            outcome=result.audit_outcome,
            error_message=None if result.ok else result.message,
            context=context,
        )
