"""
RBAC data models.

Plain dataclasses returned by the store and passed between the resolver,
the middleware and the role administration operations.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple

from src.utils.rbac.permission_enum import Permission


@dataclass(frozen=True)
class Role:
    """
    Named bundle of permissions.

    Attributes:
        id: Stable unique identifier
        name: Unique machine key (e.g. 'content_creator')
        display_name: Presentation name
        description: Presentation text
        permissions: Catalog permissions granted by the role
        is_active: Inactive roles grant nothing and cannot be assigned or
                   switched into; their assignments are kept
    """
    id: str
    name: str
    display_name: str
    description: str = ""
    permissions: FrozenSet[Permission] = field(default_factory=frozenset)
    is_active: bool = True

    def to_dict(self, include_permissions: bool = True) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "name": self.name,
            "display_name": self.display_name,
            "description": self.description,
            "is_active": self.is_active,
        }
        if include_permissions:
            data["permissions"] = sorted(p.value for p in self.permissions)
        return data


@dataclass(frozen=True)
class Identity:
    """
    User account as seen by the access-control core.

    active_role_id is either None or the id of a role the identity holds.
    """
    id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    active_role_id: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "display_name": self.display_name,
            "active_role_id": self.active_role_id,
        }


@dataclass(frozen=True)
class Assignment:
    """Fact that an identity holds a role. Unique per (identity_id, role_id)."""
    id: str
    identity_id: str
    role_id: str
    assigned_by: Optional[str]
    assigned_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "identity_id": self.identity_id,
            "role_id": self.role_id,
            "assigned_by": self.assigned_by,
            "assigned_at": self.assigned_at.isoformat() if self.assigned_at else None,
        }


@dataclass(frozen=True)
class RoleGrant:
    """An assignment joined with the role it points at."""
    assignment: Assignment
    role: Role


class AuditOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    ERROR = "error"


@dataclass(frozen=True)
class AuditLogEntry:
    """
    Immutable record of a sensitive action.

    Entries are inserted once and never updated or deleted.
    """
    action: str
    resource_type: str
    outcome: AuditOutcome = AuditOutcome.SUCCESS
    actor_identity_id: Optional[str] = None
    actor_active_role_id: Optional[str] = None
    resource_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    error_message: Optional[str] = None
    id: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "actor_identity_id": self.actor_identity_id,
            "actor_active_role_id": self.actor_active_role_id,
            "action": self.action,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "details": self.details,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "outcome": self.outcome.value,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass(frozen=True)
class IdentityRoles:
    """An identity with its role grants, as listed for user management."""
    identity: Identity
    grants: Tuple[RoleGrant, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        data = self.identity.to_dict()
        data["roles"] = [
            {
                **grant.role.to_dict(include_permissions=False),
                "assignment_id": grant.assignment.id,
                "assigned_at": grant.assignment.assigned_at.isoformat() if grant.assignment.assigned_at else None,
            }
            for grant in self.grants
        ]
        return data
