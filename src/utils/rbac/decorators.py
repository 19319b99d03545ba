"""
RBAC Decorators - Route protection decorators for Flask endpoints

Two layers, stacked on a view:

    @require_authenticated                 # gate: credential -> g.access
    @require_permission(Permission.MANAGE_ROLES)  # guard: g.access -> allow/deny
    def assign_role():
        ...

The gate answers 401 (no or bad credential, unknown identity). A guard
answers 403 (known identity lacking the permission or role). Either answers
503 when the permission store is unreachable. The view never runs on denial.
"""

from dataclasses import replace
from functools import wraps
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

from flask import g, jsonify, make_response, request

from src.utils.logging import get_logger
from src.utils.rbac.audit import (
    log_authentication_event,
    log_permission_check,
    record_audit,
)
from src.utils.rbac.context import AccessContext, get_access_context, get_services
from src.utils.rbac.errors import AuthenticationError, StorageError
from src.utils.rbac.jwt_parser import extract_bearer_token
from src.utils.rbac.models import AuditOutcome
from src.utils.rbac.permission_enum import Permission
from src.utils.rbac.permissions import active_roles, resolve_permissions

logger = get_logger(__name__)

ACTION_AUTHORIZATION_DECISION = "AUTHORIZATION_DECISION"

PermissionArg = Union[str, Permission]


# =============================================================================
# Responses
# =============================================================================

def _unauthenticated(message: str = 'Please log in to access this resource'):
    return jsonify({
        'error': 'Authentication required',
        'message': message,
        'status': 401
    }), 401


def _unavailable():
    return jsonify({
        'error': 'Service unavailable',
        'message': 'Access control is temporarily unavailable',
        'status': 503
    }), 503


def _forbidden(message: str, requirement: Dict):
    body = {'error': 'Insufficient permissions', 'message': message}
    body.update(requirement)
    body['status'] = 403
    return jsonify(body), 403


# =============================================================================
# Authentication gate
# =============================================================================

def authenticate_request() -> AccessContext:
    """
    Verify the bearer credential and attach an AccessContext to g.access.

    Runs the first-authentication transition (null active role -> first held
    role), then resolves permissions scoped to the identity's live active
    role. Nothing is attached to g unless every step succeeds.

    Raises:
        AuthenticationError: Missing, invalid or expired token, or unknown identity
        StorageError: If the permission store cannot be read or written
    """
    services = get_services()
    token = extract_bearer_token(request.headers.get('Authorization'))
    if not token:
        raise AuthenticationError('Authentication required')

    claims = services.tokens.verify_token(token)
    identity = services.store.get_identity(claims.identity_id)
    if identity is None:
        raise AuthenticationError('User not found')

    grants = services.store.list_grants(identity.id)
    active_role_id = services.roles.ensure_active_role(identity, grants)
    if active_role_id != identity.active_role_id:
        identity = replace(identity, active_role_id=active_role_id)

    permissions = resolve_permissions(grants, active_role_id) if active_role_id else set()
    active_role = next((grant.role for grant in grants if grant.role.id == active_role_id), None)

    context = AccessContext(
        identity=identity,
        roles=tuple(active_roles(grants)),
        permissions=frozenset(permissions),
        active_role=active_role,
        claims=claims,
    )
    g.access = context
    return context


def require_authenticated(f: Callable) -> Callable:
    """
    Decorator that requires a valid bearer token.

    Does NOT check for specific permissions, only that the caller is a known
    identity. Stack permission guards below it.

    Usage:
        @app.route('/api/auth/me')
        @require_authenticated
        def me():
            ...
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        try:
            context = authenticate_request()
        except AuthenticationError as e:
            log_authentication_event(
                user='unknown',
                event_type='authenticate',
                success=False,
                method='bearer',
                details=str(e)
            )
            return _unauthenticated(str(e))
        except StorageError as e:
            logger.error(f"Authentication of {request.endpoint} failed closed: {e}")
            return _unavailable()

        log_authentication_event(
            user=context.identity_id,
            event_type='authenticate',
            success=True,
            method='bearer'
        )
        return f(*args, **kwargs)

    return decorated_function


# =============================================================================
# Authorization guards
# =============================================================================

def _decisions_audited(services) -> bool:
    """Deploy-time flag, or the runtime 'access' setting."""
    if services.audit_decisions or services.settings is None:
        return services.audit_decisions
    try:
        return bool(services.settings.get_value('access', 'audit_authorization_decisions', False))
    except StorageError as e:
        logger.warning(f"Could not read decision audit setting: {e}")
        return False


def _record_decision(label: str, granted: bool, missing: Optional[List[str]]) -> None:
    services = get_services()
    if not _decisions_audited(services):
        return
    services.audit.record(
        ACTION_AUTHORIZATION_DECISION,
        'Endpoint',
        resource_id=request.endpoint,
        details={'check': label, 'granted': granted, 'missing': missing or []},
        outcome=AuditOutcome.SUCCESS if granted else AuditOutcome.FAILURE,
    )


def _guard(
    label: str,
    evaluate: Callable[[AccessContext], Tuple[bool, List[str]]],
    requirement: Dict,
    message: str,
    f: Callable,
) -> Callable:
    @wraps(f)
    def decorated_function(*args, **kwargs):
        access = get_access_context()
        if access is None:
            logger.error(
                f"Guard '{label}' on endpoint {request.endpoint} ran without an "
                f"authentication context; stack require_authenticated above it"
            )
            log_permission_check(
                user='anonymous',
                permission=label,
                granted=False,
                endpoint=request.endpoint,
                roles=[]
            )
            return _unauthenticated()

        granted, missing = evaluate(access)
        log_permission_check(
            user=access.identity_id,
            permission=label,
            granted=granted,
            endpoint=request.endpoint,
            roles=access.role_names,
            missing=missing,
            extra={'active_role_id': access.active_role_id}
        )
        _record_decision(label, granted, missing)

        if not granted:
            return _forbidden(message, requirement)
        return f(*args, **kwargs)

    return decorated_function


def require_permission(permission: Union[PermissionArg, List[PermissionArg]]) -> Callable:
    """
    Decorator that requires specific permission(s) to access a route.

    If a list of permissions is provided, the caller must have ALL of them.
    For "any of" logic, use require_any_permission instead.

    Usage:
        @app.route('/api/roles/assign', methods=['POST'])
        @require_authenticated
        @require_permission(Permission.MANAGE_ROLES)
        def assign():
            ...

    Raises:
        ValueError: At decoration time, for a permission not in the catalog
    """
    if isinstance(permission, (str, Permission)):
        required = [Permission.parse(permission)]
        requirement = {'required': required[0].value}
    else:
        required = Permission.parse_many(permission)
        requirement = {'required': [p.value for p in required]}

    def evaluate(access: AccessContext):
        missing = [p.value for p in required if p not in access.permissions]
        return not missing, missing

    def decorator(f: Callable) -> Callable:
        return _guard(
            ','.join(p.value for p in required),
            evaluate,
            requirement,
            'You do not have permission to perform this action',
            f,
        )

    return decorator


def require_any_permission(permissions: Iterable[PermissionArg]) -> Callable:
    """
    Decorator that requires ANY ONE of the specified permissions.

    An empty list denies every caller.

    Usage:
        @app.route('/api/courses/<course_id>')
        @require_authenticated
        @require_any_permission([Permission.BROWSE_COURSES, Permission.ACCESS_ASSIGNED_COURSES])
        def course(course_id):
            ...
    """
    required = Permission.parse_many(permissions)

    def evaluate(access: AccessContext):
        granted = any(p in access.permissions for p in required)
        return granted, [] if granted else [p.value for p in required]

    def decorator(f: Callable) -> Callable:
        return _guard(
            f"any({','.join(p.value for p in required)})",
            evaluate,
            {'required_any': [p.value for p in required]},
            'You need at least one of the required permissions',
            f,
        )

    return decorator


def require_all_permissions(permissions: Iterable[PermissionArg]) -> Callable:
    """
    Decorator that requires EVERY one of the specified permissions.

    An empty list admits every authenticated caller.
    """
    required = Permission.parse_many(permissions)

    def evaluate(access: AccessContext):
        missing = [p.value for p in required if p not in access.permissions]
        return not missing, missing

    def decorator(f: Callable) -> Callable:
        return _guard(
            f"all({','.join(p.value for p in required)})",
            evaluate,
            {'required_all': [p.value for p in required]},
            'You need all of the required permissions',
            f,
        )

    return decorator


def require_role(role_name: str) -> Callable:
    """
    Decorator that requires membership in a named, active role.

    Any held role counts, not only the active one.
    """
    def evaluate(access: AccessContext):
        granted = role_name in access.role_names
        return granted, [] if granted else [role_name]

    def decorator(f: Callable) -> Callable:
        return _guard(
            f"role({role_name})",
            evaluate,
            {'required_role': role_name},
            f"This action requires the {role_name} role",
            f,
        )

    return decorator


# =============================================================================
# Post-handler audit
# =============================================================================

def _outcome_for_status(status_code: int) -> AuditOutcome:
    if status_code < 400:
        return AuditOutcome.SUCCESS
    if status_code < 500:
        return AuditOutcome.FAILURE
    return AuditOutcome.ERROR


def audited(
    action: str,
    resource_type: str,
    resource_id: Optional[str] = None,
    resource_id_arg: Optional[str] = None,
) -> Callable:
    """
    Decorator that records one audit entry after the view has produced its
    response. The entry carries the final status code, the request metadata
    and the actor from g.access. A failed audit write never fails the request.

    Usage:
        @app.route('/api/system-settings', methods=['PUT'])
        @require_authenticated
        @require_permission(Permission.MANAGE_SYSTEM_SETTINGS)
        @audited('UPDATE_SYSTEM_SETTINGS', 'SystemSettings', resource_id='system')
        def update_settings():
            ...

    Args:
        action: Audit action key
        resource_type: Audit resource type
        resource_id: Fixed resource id
        resource_id_arg: Name of the URL parameter holding the resource id
    """
    def decorator(f: Callable) -> Callable:
        @wraps(f)
        def decorated_function(*args, **kwargs):
            target_id = kwargs.get(resource_id_arg) if resource_id_arg else resource_id
            try:
                response = make_response(f(*args, **kwargs))
            except Exception as e:
                record_audit(
                    action,
                    resource_type,
                    resource_id=target_id,
                    details={'statusCode': 500},
                    outcome=AuditOutcome.ERROR,
                    error_message=str(e),
                )
                raise

            outcome = _outcome_for_status(response.status_code)
            error_message = None
            if outcome is not AuditOutcome.SUCCESS:
                payload = response.get_json(silent=True) or {}
                error_message = payload.get('message') or payload.get('error') or response.status
            record_audit(
                action,
                resource_type,
                resource_id=target_id,
                details={'statusCode': response.status_code},
                outcome=outcome,
                error_message=error_message,
            )
            return response

        return decorated_function

    return decorator
