"""
RBAC Registry - Role catalog used to seed the role store

This module defines the built-in LMS roles and loads overrides from a
standalone auth_roles.yaml file. The registry only describes roles; which
identity holds which role lives in the database (see store.py).
"""

import os
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, List, Optional

import yaml

from src.utils.logging import get_logger
from src.utils.rbac.permission_enum import Permission

logger = get_logger(__name__)


class RBACConfigError(Exception):
    """Raised when RBAC configuration is invalid."""
    pass


@dataclass(frozen=True)
class RoleDefinition:
    """Seed description of a role."""
    name: str
    display_name: str
    description: str
    permissions: FrozenSet[Permission]


_ALL = [p.value for p in Permission]

DEFAULT_ROLE_CONFIG: Dict[str, Any] = {
    "default_role": "learner",
    "roles": {
        "super_admin": {
            "display_name": "Super Admin",
            "description": "Full access to users, roles, settings and all content",
            "permissions": _ALL,
        },
        "content_creator": {
            "display_name": "Content Creator",
            "description": "Authors courses, learning paths and assessments",
            "permissions": [
                "create_course", "edit_course", "delete_course", "publish_course",
                "upload_course_material", "create_learning_path", "edit_learning_path",
                "delete_learning_path", "create_quiz", "edit_quiz", "delete_quiz",
                "grade_quiz", "create_assignment", "edit_assignment",
                "delete_assignment", "grade_assignment", "view_all_progress",
                "generate_certificate", "facilitate_discussions",
            ],
        },
        "learner": {
            "display_name": "Learner",
            "description": "Takes assigned and self-selected courses",
            "permissions": [
                "browse_courses", "access_assigned_courses", "view_own_progress",
                "view_own_certificates", "participate_discussions",
            ],
        },
        "department_manager": {
            "display_name": "Department Manager",
            "description": "Enrolls and tracks the progress of a team",
            "permissions": [
                "enroll_user", "enroll_team", "unenroll_user", "view_team_progress",
                "view_department_reports", "export_reports", "send_reminders",
                "browse_courses",
            ],
        },
        "compliance_officer": {
            "display_name": "Compliance Officer",
            "description": "Manages mandatory training and compliance reporting",
            "permissions": [
                "manage_compliance", "view_compliance_reports", "send_reminders",
                "send_bulk_reminders", "view_all_progress", "view_all_reports",
                "export_reports", "view_all_certificates", "view_audit_logs",
                "create_learning_path", "edit_learning_path",
            ],
        },
        "auditor": {
            "display_name": "Auditor",
            "description": "Read-only access to audit logs and reports",
            "permissions": [
                "view_audit_logs", "export_audit_logs", "view_compliance_reports",
                "view_all_reports", "view_all_certificates",
            ],
        },
    },
}


class RBACRegistry:
    """
    Validated role catalog.

    Checks that every role references only catalog permissions and that the
    default role is defined. Used by the seeder and by the CLI.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize the registry from configuration.

        Args:
            config: Dictionary shaped like DEFAULT_ROLE_CONFIG
        """
        self._config = config
        self._default_role = config.get("default_role", "learner")
        self._roles: Dict[str, RoleDefinition] = {}

        self._load_roles(config.get("roles") or {})

        logger.info(f"RBAC Registry initialized: {len(self._roles)} roles")

    def _load_roles(self, roles: Dict[str, Any]) -> None:
        if not roles:
            raise RBACConfigError("No roles defined in configuration")

        for name, role_config in roles.items():
            role_config = role_config or {}
            permissions = []
            for value in role_config.get("permissions", []):
                try:
                    permissions.append(Permission.parse(value))
                except ValueError:
                    raise RBACConfigError(
                        f"Role '{name}' references unknown permission '{value}'"
                    )
            self._roles[name] = RoleDefinition(
                name=name,
                display_name=role_config.get("display_name") or name.replace("_", " ").title(),
                description=role_config.get("description", ""),
                permissions=frozenset(permissions),
            )

        if self._default_role not in self._roles:
            raise RBACConfigError(f"Default role '{self._default_role}' is not defined in roles")

        logger.debug("RBAC configuration validated successfully")

    @property
    def default_role(self) -> str:
        """Role granted to newly created identities."""
        return self._default_role

    @property
    def roles(self) -> List[RoleDefinition]:
        return list(self._roles.values())

    def get_role(self, name: str) -> Optional[RoleDefinition]:
        return self._roles.get(name)


def load_rbac_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load the role catalog from YAML.

    Priority order:
    1. Explicit config_path if provided
    2. LMS_ROLES_PATH environment variable
    3. configs/auth_roles.yaml under the working directory
    4. Built-in defaults

    Raises:
        RBACConfigError: If an explicitly requested file is missing or empty
    """
    if config_path and not os.path.isfile(config_path):
        raise RBACConfigError(f"Role catalog not found: {config_path}")

    search_paths = [
        config_path,
        os.environ.get("LMS_ROLES_PATH"),
        os.path.join(os.getcwd(), "configs", "auth_roles.yaml"),
    ]

    for path in search_paths:
        if path and os.path.isfile(path):
            logger.info(f"Loading RBAC configuration from: {path}")
            with open(path, "r") as f:
                config = yaml.safe_load(f)
            if not isinstance(config, dict):
                raise RBACConfigError(f"Role catalog {path} is empty or not a mapping")
            return config

    logger.info("No auth_roles.yaml found, using built-in role catalog")
    return DEFAULT_ROLE_CONFIG


def load_registry(config_path: Optional[str] = None) -> RBACRegistry:
    return RBACRegistry(load_rbac_config(config_path))
