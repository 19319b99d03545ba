"""
RBAC error taxonomy.

Authentication failures map to 401, authorization failures to 403. Storage
errors are infrastructure failures and must always resolve to a denial.
"""

from typing import List, Optional


class RBACError(Exception):
    """Base class for access-control errors."""

    status_code = 500


class AuthenticationError(RBACError):
    """Missing, invalid or expired credential, or unknown identity."""

    status_code = 401


class AuthorizationError(RBACError):
    """Known identity lacking a required permission or role."""

    status_code = 403

    def __init__(
        self,
        message: str,
        required_permissions: Optional[List[str]] = None,
        required_role: Optional[str] = None,
    ):
        super().__init__(message)
        self.required_permissions = required_permissions or []
        self.required_role = required_role


class ConflictError(RBACError):
    """Uniqueness violation, e.g. a duplicate role assignment."""

    status_code = 409


class NotFoundError(RBACError):
    """Referenced identity, role or assignment does not exist."""

    status_code = 404


class StorageError(RBACError):
    """The persistence layer failed. Callers must fail closed."""

    status_code = 503
