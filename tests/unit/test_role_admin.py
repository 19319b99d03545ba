"""
Unit tests for role administration.

Tests cover:
- assign_role (not found, inactive, duplicate grant conflict)
- revoke_role (active role cleared in the same step)
- switch_active_role authorization
- One audit entry per call with the matching outcome
- role_state and ensure_active_role
- Enabling, disabling and re-scoping roles
"""
from unittest.mock import MagicMock

import pytest

from src.utils.rbac.audit import AuditContext
from src.utils.rbac.errors import ConflictError
from src.utils.rbac.models import AuditOutcome
from src.utils.rbac.permission_enum import Permission
from src.utils.rbac.permissions import PermissionResolver
from src.utils.rbac.role_admin import (
    ACTION_ASSIGN_ROLE,
    ACTION_REVOKE_ROLE,
    ACTION_SWITCH_ROLE,
    ACTION_UPDATE_ROLE,
    RESOURCE_ROLE,
    RESOURCE_USER,
    RESOURCE_USER_ROLE,
    RoleAdministration,
    RoleErrorKind,
    RoleOperationResult,
    RoleState,
    role_state,
)

ADMIN = AuditContext(actor_identity_id="admin-1", actor_active_role_id="role-admin")


def _only_entry(store):
    assert len(store.audit_entries) == 1
    return store.audit_entries[0]


# =============================================================================
# RoleOperationResult
# =============================================================================

class TestRoleOperationResult:
    """Tests for status codes and serialization."""

    @pytest.mark.parametrize("error,status", [
        (None, 200),
        (RoleErrorKind.NOT_FOUND, 404),
        (RoleErrorKind.CONFLICT, 409),
        (RoleErrorKind.FORBIDDEN, 403),
        (RoleErrorKind.INVALID, 400),
        (RoleErrorKind.STORAGE_ERROR, 503),
    ])
    def test_status_code(self, error, status):
        result = RoleOperationResult(ok=error is None, message="m", error=error)
        assert result.status_code == status

    def test_audit_outcome(self):
        assert RoleOperationResult(ok=True, message="").audit_outcome is AuditOutcome.SUCCESS
        conflict = RoleOperationResult(ok=False, message="", error=RoleErrorKind.CONFLICT)
        assert conflict.audit_outcome is AuditOutcome.FAILURE
        storage = RoleOperationResult(ok=False, message="", error=RoleErrorKind.STORAGE_ERROR)
        assert storage.audit_outcome is AuditOutcome.ERROR

    def test_to_dict_omits_empty_fields(self):
        data = RoleOperationResult(ok=False, message="Role not found", error=RoleErrorKind.NOT_FOUND).to_dict()
        assert data == {"success": False, "message": "Role not found", "error": "not_found"}


# =============================================================================
# Grants
# =============================================================================

class TestAssignRole:
    """Tests for RoleAdministration.assign_role."""

    def test_assign_success(self, store, role_admin):
        store.add_user("u1")
        result = role_admin.assign_role("u1", store.role_id("content_creator"), granted_by="admin-1", context=ADMIN)

        assert result.ok
        assert result.status_code == 200
        assert result.assignment.assigned_by == "admin-1"
        assert store.get_assignment("u1", store.role_id("content_creator")) is not None

        entry = _only_entry(store)
        assert entry.action == ACTION_ASSIGN_ROLE
        assert entry.resource_type == RESOURCE_USER_ROLE
        assert entry.resource_id == result.assignment.id
        assert entry.outcome is AuditOutcome.SUCCESS
        assert entry.actor_identity_id == "admin-1"
        assert entry.actor_active_role_id == "role-admin"
        assert entry.details["roleName"] == "content_creator"
        assert entry.details["grantedBy"] == "admin-1"

    def test_duplicate_grant_is_conflict(self, store, role_admin):
        store.add_user("u1", "learner")
        result = role_admin.assign_role("u1", store.role_id("learner"))

        assert not result.ok
        assert result.error is RoleErrorKind.CONFLICT
        assert result.message == "User already has this role"
        assert len([a for a in store.assignments if a.identity_id == "u1"]) == 1

        entry = _only_entry(store)
        assert entry.outcome is AuditOutcome.FAILURE
        assert entry.resource_id is None
        assert entry.error_message == "User already has this role"

    def test_unknown_identity(self, store, role_admin):
        result = role_admin.assign_role("ghost", store.role_id("learner"))
        assert result.error is RoleErrorKind.NOT_FOUND
        assert result.message == "User not found"
        assert _only_entry(store).outcome is AuditOutcome.FAILURE

    def test_inactive_role_not_assignable(self, store, role_admin):
        store.add_user("u1")
        store.set_role_active(store.role_id("auditor"), False)
        result = role_admin.assign_role("u1", store.role_id("auditor"))
        assert result.error is RoleErrorKind.NOT_FOUND
        assert result.message == "Role not found or inactive"

    def test_storage_error(self, store, role_admin):
        store.add_user("u1")
        store.fail_on.add("create_assignment")
        result = role_admin.assign_role("u1", store.role_id("learner"))

        assert result.error is RoleErrorKind.STORAGE_ERROR
        assert result.status_code == 503
        assert _only_entry(store).outcome is AuditOutcome.ERROR

    def test_concurrent_duplicate_maps_to_conflict(self):
        store = MagicMock()
        store.get_assignment.return_value = None
        store.create_assignment.side_effect = ConflictError("unique violation")
        audit = MagicMock()

        result = RoleAdministration(store, audit).assign_role("u1", "role-1")

        assert result.error is RoleErrorKind.CONFLICT
        audit.record.assert_called_once()
        assert audit.record.call_args.kwargs["outcome"] is AuditOutcome.FAILURE


class TestRevokeRole:
    """Tests for RoleAdministration.revoke_role."""

    def test_revoke_inactive_pointer_untouched(self, store, role_admin):
        store.add_user("u1", "learner", "content_creator", active="learner")
        result = role_admin.revoke_role("u1", store.role_id("content_creator"))

        assert result.ok
        assert result.active_role_cleared is False
        assert store.get_identity("u1").active_role_id == store.role_id("learner")

        entry = _only_entry(store)
        assert entry.action == ACTION_REVOKE_ROLE
        assert entry.resource_id == result.assignment.id
        assert entry.details["activeRoleCleared"] is False

    def test_revoke_active_role_clears_pointer(self, store, role_admin):
        store.add_user("u1", "learner", "content_creator", active="content_creator")
        result = role_admin.revoke_role("u1", store.role_id("content_creator"))

        assert result.ok
        assert result.active_role_cleared is True
        identity = store.get_identity("u1")
        assert identity.active_role_id is None
        assert role_state(identity, store.list_grants("u1")) is RoleState.ROLE_UNSET
        assert result.to_dict()["active_role_cleared"] is True

    def test_revoke_missing_assignment(self, store, role_admin):
        store.add_user("u1", "learner")
        result = role_admin.revoke_role("u1", store.role_id("auditor"))

        assert result.error is RoleErrorKind.NOT_FOUND
        assert result.message == "Role assignment not found"
        entry = _only_entry(store)
        assert entry.outcome is AuditOutcome.FAILURE
        assert entry.resource_id is None

    def test_revoke_storage_error(self, store, role_admin):
        store.add_user("u1", "learner")
        store.fail_on.add("delete_assignment")
        result = role_admin.revoke_role("u1", store.role_id("learner"))
        assert result.error is RoleErrorKind.STORAGE_ERROR
        assert _only_entry(store).outcome is AuditOutcome.ERROR


# =============================================================================
# Switching
# =============================================================================

class TestSwitchActiveRole:
    """Tests for RoleAdministration.switch_active_role."""

    def test_switch_to_held_role(self, store, role_admin):
        store.add_user("u1", "learner", "content_creator", active="learner")
        target = store.role_id("content_creator")
        result = role_admin.switch_active_role("u1", target, context=ADMIN)

        assert result.ok
        assert result.message == "Switched to Content Creator role"
        assert result.previous_role_id == store.role_id("learner")
        assert store.get_identity("u1").active_role_id == target

        entry = _only_entry(store)
        assert entry.action == ACTION_SWITCH_ROLE
        assert entry.resource_type == RESOURCE_USER
        assert entry.resource_id == "u1"
        assert entry.details["newRoleId"] == target
        assert entry.details["previousRoleId"] == store.role_id("learner")

    def test_switch_to_role_not_held(self, store, role_admin):
        store.add_user("u1", "learner", active="learner")
        result = role_admin.switch_active_role("u1", store.role_id("super_admin"))

        assert result.error is RoleErrorKind.FORBIDDEN
        assert result.message == "You do not have this role assigned"
        assert store.get_identity("u1").active_role_id == store.role_id("learner")
        assert _only_entry(store).outcome is AuditOutcome.FAILURE

    def test_switch_to_inactive_role(self, store, role_admin):
        store.add_user("u1", "learner", "content_creator", active="learner")
        store.set_role_active(store.role_id("content_creator"), False)
        result = role_admin.switch_active_role("u1", store.role_id("content_creator"))

        assert result.error is RoleErrorKind.FORBIDDEN
        assert result.message == "Role is not active"
        assert store.get_identity("u1").active_role_id == store.role_id("learner")

    def test_switch_to_unknown_role(self, store, role_admin):
        store.add_user("u1", "learner")
        result = role_admin.switch_active_role("u1", "no-such-role")
        assert result.error is RoleErrorKind.NOT_FOUND
        assert result.message == "Role not found"

    def test_switch_unknown_identity(self, store, role_admin):
        result = role_admin.switch_active_role("ghost", store.role_id("learner"))
        assert result.error is RoleErrorKind.NOT_FOUND
        assert result.message == "User not found"

    def test_switch_storage_error(self, store, role_admin):
        store.add_user("u1", "learner")
        store.fail_on.add("set_active_role")
        result = role_admin.switch_active_role("u1", store.role_id("learner"))
        assert result.error is RoleErrorKind.STORAGE_ERROR
        assert _only_entry(store).outcome is AuditOutcome.ERROR

    def test_audit_failure_does_not_change_result(self, store, role_admin):
        store.add_user("u1", "learner", "content_creator")
        store.fail_on.add("insert_audit_entry")
        result = role_admin.switch_active_role("u1", store.role_id("content_creator"))
        assert result.ok
        assert store.audit_entries == []


# =============================================================================
# Active-role lifecycle
# =============================================================================

class TestActiveRoleLifecycle:
    """Tests for role_state and ensure_active_role."""

    def test_states(self, store):
        none = store.add_user("a")
        assert role_state(none, store.list_grants("a")) is RoleState.NO_ROLE

        unset = store.add_user("b", "learner")
        assert role_state(unset, store.list_grants("b")) is RoleState.ROLE_UNSET

        active = store.add_user("c", "learner", active="learner")
        assert role_state(active, store.list_grants("c")) is RoleState.ACTIVE

    def test_inactive_active_role_is_unset(self, store):
        user = store.add_user("u1", "learner", "content_creator", active="content_creator")
        store.set_role_active(store.role_id("content_creator"), False)
        assert role_state(user, store.list_grants("u1")) is RoleState.ROLE_UNSET

    def test_first_held_role_selected(self, store, role_admin):
        user = store.add_user("u1", "content_creator", "learner")
        selected = role_admin.ensure_active_role(user, store.list_grants("u1"))
        assert selected == store.role_id("content_creator")
        assert store.get_identity("u1").active_role_id == selected

    def test_skips_inactive_roles(self, store, role_admin):
        user = store.add_user("u1", "content_creator", "learner")
        store.set_role_active(store.role_id("content_creator"), False)
        selected = role_admin.ensure_active_role(user, store.list_grants("u1"))
        assert selected == store.role_id("learner")

    def test_idempotent(self, store, role_admin):
        user = store.add_user("u1", "learner", "content_creator", active="content_creator")
        assert role_admin.ensure_active_role(user, store.list_grants("u1")) == store.role_id("content_creator")
        assert store.get_identity("u1").active_role_id == store.role_id("content_creator")

    def test_lost_race_returns_stored_value(self, store, role_admin):
        user = store.add_user("u1", "learner", "content_creator")
        grants = store.list_grants("u1")
        # another request selected a role after this one read the identity
        store.set_active_role("u1", store.role_id("content_creator"))
        assert role_admin.ensure_active_role(user, grants) == store.role_id("content_creator")

    def test_no_roles_selects_nothing(self, store, role_admin):
        user = store.add_user("u1")
        assert role_admin.ensure_active_role(user, []) is None
        assert store.audit_entries == []


# =============================================================================
# Role catalog changes
# =============================================================================

class TestRoleCatalogChanges:
    """Tests for set_role_status and update_role_permissions."""

    def test_disable_keeps_assignments(self, store, role_admin):
        store.add_user("u1", "auditor", active="auditor")
        auditor = store.role_id("auditor")

        result = role_admin.set_role_status(auditor, False, context=ADMIN)

        assert result.ok
        assert result.message == "Role Auditor disabled"
        assert store.get_role(auditor).is_active is False
        assert store.get_assignment("u1", auditor) is not None
        assert PermissionResolver(store).has_permission("u1", Permission.VIEW_AUDIT_LOGS, auditor) is False

        entry = _only_entry(store)
        assert entry.action == ACTION_UPDATE_ROLE
        assert entry.resource_type == RESOURCE_ROLE
        assert entry.resource_id == auditor
        assert entry.actor_identity_id == "admin-1"
        assert entry.details["isActive"] is False
        assert entry.details["previousIsActive"] is True

    def test_enable_restores_permissions(self, store, role_admin):
        store.add_user("u1", "auditor", active="auditor")
        auditor = store.role_id("auditor")
        role_admin.set_role_status(auditor, False)

        assert role_admin.set_role_status(auditor, True).ok
        assert PermissionResolver(store).has_permission("u1", Permission.VIEW_AUDIT_LOGS, auditor) is True
        assert len(store.audit_entries) == 2

    def test_status_of_unknown_role(self, store, role_admin):
        result = role_admin.set_role_status("no-such-role", False)
        assert result.error is RoleErrorKind.NOT_FOUND
        assert _only_entry(store).outcome is AuditOutcome.FAILURE

    def test_status_storage_error(self, store, role_admin):
        store.fail_on.add("set_role_active")
        result = role_admin.set_role_status(store.role_id("auditor"), False)
        assert result.status_code == 503
        assert _only_entry(store).outcome is AuditOutcome.ERROR

    def test_replace_permissions(self, store, role_admin):
        store.add_user("u1", "learner", active="learner")
        learner = store.role_id("learner")

        result = role_admin.update_role_permissions(learner, ["browse_courses", Permission.PARTICIPATE_DISCUSSIONS], context=ADMIN)

        assert result.ok
        assert store.get_role(learner).permissions == {Permission.BROWSE_COURSES, Permission.PARTICIPATE_DISCUSSIONS}
        assert PermissionResolver(store).has_permission("u1", Permission.VIEW_OWN_PROGRESS, learner) is False

        entry = _only_entry(store)
        assert entry.action == ACTION_UPDATE_ROLE
        assert entry.details["permissions"] == ["browse_courses", "participate_discussions"]
        assert "view_own_progress" in entry.details["previousPermissions"]

    def test_unknown_permission_rejects_update(self, store, role_admin):
        learner = store.role_id("learner")
        before = store.get_role(learner).permissions

        result = role_admin.update_role_permissions(learner, ["browse_courses", "fly"])

        assert result.error is RoleErrorKind.INVALID
        assert result.status_code == 400
        assert store.get_role(learner).permissions == before
        entry = _only_entry(store)
        assert entry.outcome is AuditOutcome.FAILURE
        assert entry.error_message == "Unknown permission: 'fly'"

    def test_permissions_of_unknown_role(self, store, role_admin):
        result = role_admin.update_role_permissions("no-such-role", [])
        assert result.error is RoleErrorKind.NOT_FOUND
