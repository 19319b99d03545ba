"""
RBAC Permission Enum - Authoritative list of all permission strings.

The catalog is closed: roles may only reference values defined here, and
permission checks reject unknown strings instead of quietly answering "no".
Members compare equal to their string values, so they can be passed
anywhere a plain string is expected.

Usage:
    from src.utils.rbac.permission_enum import Permission

    @require_permission(Permission.MANAGE_ROLES)
    def assign(): ...

    if resolver.has_permission(user_id, Permission.BROWSE_COURSES):
        ...
"""

from enum import Enum
from typing import Dict, Iterable, List, Set, Union


class Permission(str, Enum):
    """Every capability the LMS can grant through a role."""

    # System & user management
    MANAGE_USERS = "manage_users"
    MANAGE_ROLES = "manage_roles"
    MANAGE_SYSTEM_SETTINGS = "manage_system_settings"
    IMPERSONATE_USER = "impersonate_user"

    # Content management
    CREATE_COURSE = "create_course"
    EDIT_COURSE = "edit_course"
    DELETE_COURSE = "delete_course"
    PUBLISH_COURSE = "publish_course"
    UPLOAD_COURSE_MATERIAL = "upload_course_material"

    # Learning paths
    CREATE_LEARNING_PATH = "create_learning_path"
    EDIT_LEARNING_PATH = "edit_learning_path"
    DELETE_LEARNING_PATH = "delete_learning_path"

    # Assessment
    CREATE_QUIZ = "create_quiz"
    EDIT_QUIZ = "edit_quiz"
    DELETE_QUIZ = "delete_quiz"
    GRADE_QUIZ = "grade_quiz"
    CREATE_ASSIGNMENT = "create_assignment"
    EDIT_ASSIGNMENT = "edit_assignment"
    DELETE_ASSIGNMENT = "delete_assignment"
    GRADE_ASSIGNMENT = "grade_assignment"

    # Enrollment
    ENROLL_USER = "enroll_user"
    ENROLL_TEAM = "enroll_team"
    UNENROLL_USER = "unenroll_user"

    # Progress & reporting
    VIEW_OWN_PROGRESS = "view_own_progress"
    VIEW_TEAM_PROGRESS = "view_team_progress"
    VIEW_ALL_PROGRESS = "view_all_progress"
    VIEW_DEPARTMENT_REPORTS = "view_department_reports"
    VIEW_ALL_REPORTS = "view_all_reports"
    EXPORT_REPORTS = "export_reports"

    # Compliance
    MANAGE_COMPLIANCE = "manage_compliance"
    VIEW_COMPLIANCE_REPORTS = "view_compliance_reports"
    SEND_REMINDERS = "send_reminders"
    SEND_BULK_REMINDERS = "send_bulk_reminders"

    # Audit
    VIEW_AUDIT_LOGS = "view_audit_logs"
    EXPORT_AUDIT_LOGS = "export_audit_logs"

    # Certificates
    GENERATE_CERTIFICATE = "generate_certificate"
    VIEW_OWN_CERTIFICATES = "view_own_certificates"
    VIEW_ALL_CERTIFICATES = "view_all_certificates"

    # Course access
    ACCESS_ASSIGNED_COURSES = "access_assigned_courses"
    BROWSE_COURSES = "browse_courses"

    # Discussions
    FACILITATE_DISCUSSIONS = "facilitate_discussions"
    PARTICIPATE_DISCUSSIONS = "participate_discussions"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls, value: Union[str, "Permission"]) -> "Permission":
        """
        Coerce a string to a catalog member.

        Raises:
            ValueError: If the string is not in the catalog
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"Unknown permission: {value!r}") from None

    @classmethod
    def parse_many(cls, values: Iterable[Union[str, "Permission"]]) -> List["Permission"]:
        return [cls.parse(v) for v in values]

    @classmethod
    def values(cls) -> Set[str]:
        return {member.value for member in cls}


PERMISSION_GROUPS: Dict[str, List[Permission]] = {
    "system": [
        Permission.MANAGE_USERS,
        Permission.MANAGE_ROLES,
        Permission.MANAGE_SYSTEM_SETTINGS,
        Permission.IMPERSONATE_USER,
    ],
    "content": [
        Permission.CREATE_COURSE,
        Permission.EDIT_COURSE,
        Permission.DELETE_COURSE,
        Permission.PUBLISH_COURSE,
        Permission.UPLOAD_COURSE_MATERIAL,
    ],
    "learning_paths": [
        Permission.CREATE_LEARNING_PATH,
        Permission.EDIT_LEARNING_PATH,
        Permission.DELETE_LEARNING_PATH,
    ],
    "assessment": [
        Permission.CREATE_QUIZ,
        Permission.EDIT_QUIZ,
        Permission.DELETE_QUIZ,
        Permission.GRADE_QUIZ,
        Permission.CREATE_ASSIGNMENT,
        Permission.EDIT_ASSIGNMENT,
        Permission.DELETE_ASSIGNMENT,
        Permission.GRADE_ASSIGNMENT,
    ],
    "enrollment": [
        Permission.ENROLL_USER,
        Permission.ENROLL_TEAM,
        Permission.UNENROLL_USER,
    ],
    "reporting": [
        Permission.VIEW_OWN_PROGRESS,
        Permission.VIEW_TEAM_PROGRESS,
        Permission.VIEW_ALL_PROGRESS,
        Permission.VIEW_DEPARTMENT_REPORTS,
        Permission.VIEW_ALL_REPORTS,
        Permission.EXPORT_REPORTS,
    ],
    "compliance": [
        Permission.MANAGE_COMPLIANCE,
        Permission.VIEW_COMPLIANCE_REPORTS,
        Permission.SEND_REMINDERS,
        Permission.SEND_BULK_REMINDERS,
    ],
    "audit": [
        Permission.VIEW_AUDIT_LOGS,
        Permission.EXPORT_AUDIT_LOGS,
    ],
    "certificates": [
        Permission.GENERATE_CERTIFICATE,
        Permission.VIEW_OWN_CERTIFICATES,
        Permission.VIEW_ALL_CERTIFICATES,
    ],
    "course_access": [
        Permission.ACCESS_ASSIGNED_COURSES,
        Permission.BROWSE_COURSES,
    ],
    "discussions": [
        Permission.FACILITATE_DISCUSSIONS,
        Permission.PARTICIPATE_DISCUSSIONS,
    ],
}
