"""
LMS access-control API.

Role catalog and assignments, role enable/disable and permission updates,
the user directory, active-role switching, the caller's resolved
access, the audit-log viewer and system settings. Every /api route except
/api/health sits behind the bearer-token gate; administrative routes add a
permission guard.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from flask import Flask, Response, jsonify, request
from flask_cors import CORS

from src.utils.config_service import AppConfig, ConfigValidationError, load_app_config
from src.utils.logging import get_logger
from src.utils.postgres_service_factory import PostgresServiceFactory
from src.utils.rbac.audit import AuditTrailWriter
from src.utils.rbac.context import RBACServices, get_access_context, init_services
from src.utils.rbac.decorators import (
    audited,
    require_authenticated,
    require_permission,
)
from src.utils.rbac.errors import RBACError
from src.utils.rbac.jwt_parser import TokenService
from src.utils.rbac.permission_enum import Permission
from src.utils.rbac.permissions import PermissionResolver
from src.utils.rbac.role_admin import RoleAdministration
from src.utils.rbac.store import AuditFilter

logger = get_logger(__name__)


def build_services(config: AppConfig, factory: PostgresServiceFactory) -> RBACServices:
    """Wire the access-control core on top of a Postgres service factory."""
    store = factory.rbac_store
    audit = AuditTrailWriter(store)
    return RBACServices(
        store=store,
        resolver=PermissionResolver(store),
        tokens=TokenService(
            secret_key=config.jwt_secret,
            algorithm=config.jwt_algorithm,
            expires_minutes=config.jwt_expires_minutes,
            issuer=config.jwt_issuer,
        ),
        audit=audit,
        roles=RoleAdministration(store, audit),
        settings=factory.settings_service,
        audit_decisions=config.audit_authorization_decisions,
    )


def _field(data: Dict[str, Any], *names: str) -> Optional[str]:
    for name in names:
        value = data.get(name)
        if value:
            return str(value)
    return None


def _parse_date(value: Optional[str], name: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise ConfigValidationError(name, f"expected an ISO-8601 date, got {value!r}")


def _parse_int(value: Optional[str], name: str, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigValidationError(name, f"expected an integer, got {value!r}")


class FlaskAppWrapper(object):

    def __init__(self, app: Flask, services: RBACServices):
        logger.info("Entering FlaskAppWrapper")
        self.app = app
        self.services = services
        init_services(app, services)

        # enable CORS:
        CORS(self.app)

        self.app.register_error_handler(RBACError, self.handle_rbac_error)
        self.app.register_error_handler(ConfigValidationError, self.handle_validation_error)

        # Public endpoints (no auth required)
        self.add_endpoint('/api/health', 'health', self.health, methods=["GET"])

        # Caller's own access
        self.add_endpoint('/api/auth/me', 'me', require_authenticated(self.me), methods=["GET"])
        self.add_endpoint('/api/roles/my-active-role', 'my_active_role', require_authenticated(self.my_active_role), methods=["GET"])
        self.add_endpoint('/api/roles/switch', 'switch_role', require_authenticated(self.switch_role), methods=["POST"])

        # Role catalog and assignments
        self.add_endpoint('/api/roles', 'list_roles', require_authenticated(self.list_roles), methods=["GET"])
        self.add_endpoint('/api/roles/user/<identity_id>', 'user_roles', require_authenticated(self.user_roles), methods=["GET"])
        self.add_endpoint(
            '/api/roles/assign', 'assign_role',
            require_authenticated(require_permission(Permission.MANAGE_ROLES)(self.assign_role)),
            methods=["POST"],
        )
        self.add_endpoint(
            '/api/roles/revoke', 'revoke_role',
            require_authenticated(require_permission(Permission.MANAGE_ROLES)(self.revoke_role)),
            methods=["POST"],
        )
        self.add_endpoint(
            '/api/roles/<role_id>/status', 'set_role_status',
            require_authenticated(require_permission(Permission.MANAGE_ROLES)(self.set_role_status)),
            methods=["PUT"],
        )
        self.add_endpoint(
            '/api/roles/<role_id>/permissions', 'set_role_permissions',
            require_authenticated(require_permission(Permission.MANAGE_ROLES)(self.set_role_permissions)),
            methods=["PUT"],
        )

        # User directory
        self.add_endpoint(
            '/api/roles/users', 'list_users',
            require_authenticated(require_permission(Permission.MANAGE_USERS)(self.list_users)),
            methods=["GET"],
        )
        self.add_endpoint(
            '/api/roles/get-users-with-specific-roles', 'users_with_roles',
            require_authenticated(require_permission(Permission.MANAGE_USERS)(self.users_with_roles)),
            methods=["POST"],
        )

        # Audit log viewer
        self.add_endpoint(
            '/api/audit-logs', 'audit_logs',
            require_authenticated(require_permission(Permission.VIEW_AUDIT_LOGS)(self.audit_logs)),
            methods=["GET"],
        )
        self.add_endpoint(
            '/api/audit-logs/export', 'export_audit_logs',
            require_authenticated(require_permission(Permission.EXPORT_AUDIT_LOGS)(self.export_audit_logs)),
            methods=["GET"],
        )

        # System settings
        self.add_endpoint(
            '/api/system-settings', 'get_system_settings',
            require_authenticated(require_permission(Permission.MANAGE_SYSTEM_SETTINGS)(self.get_system_settings)),
            methods=["GET"],
        )
        self.add_endpoint(
            '/api/system-settings', 'update_system_settings',
            require_authenticated(require_permission(Permission.MANAGE_SYSTEM_SETTINGS)(
                audited('UPDATE_SYSTEM_SETTINGS', 'SystemSettings', resource_id='system')(self.update_system_settings)
            )),
            methods=["PUT"],
        )

    def add_endpoint(self, endpoint=None, endpoint_name=None, handler=None, methods=['GET'], *args, **kwargs):
        self.app.add_url_rule(endpoint, endpoint_name, handler, methods=methods, *args, **kwargs)

    def run(self, **kwargs):
        self.app.run(**kwargs)

    # =========================================================================
    # Error handlers
    # =========================================================================

    def handle_rbac_error(self, error: RBACError):
        if error.status_code >= 500:
            logger.error(f"{request.method} {request.path} failed: {error}")
        body = {'success': False, 'message': str(error), 'status': error.status_code}
        return jsonify(body), error.status_code

    def handle_validation_error(self, error: ConfigValidationError):
        return jsonify({
            'success': False,
            'message': error.message,
            'field': error.field,
            'status': 400
        }), 400

    # =========================================================================
    # Handlers
    # =========================================================================

    def health(self):
        return jsonify({"status": "OK"}), 200

    def me(self):
        access = get_access_context()
        return jsonify({'success': True, 'data': access.to_dict()}), 200

    def my_active_role(self):
        access = get_access_context()
        return jsonify({
            'success': True,
            'message': 'Active role retrieved successfully',
            'data': {
                'active_role': access.active_role.to_dict() if access.active_role else None,
                'active_role_id': access.active_role_id,
            }
        }), 200

    def switch_role(self):
        access = get_access_context()
        data = request.get_json(silent=True) or {}
        role_id = _field(data, 'role_id', 'roleId')
        if not role_id:
            return jsonify({'success': False, 'message': 'role_id is required', 'status': 400}), 400

        result = self.services.roles.switch_active_role(access.identity_id, role_id)
        body = result.to_dict()
        if result.ok:
            # the token stays valid; scoping follows the stored active role
            body['data'] = {
                'active_role': result.role.to_dict(),
                'roles': [role.to_dict(include_permissions=False) for role in access.roles],
            }
        return jsonify(body), result.status_code

    def list_roles(self):
        access = get_access_context()
        # disabled roles are only listed for role managers
        include_inactive = (
            request.args.get('include_inactive') in ('1', 'true')
            and Permission.MANAGE_ROLES in access.permissions
        )
        roles = self.services.store.list_roles(include_inactive=include_inactive)
        return jsonify({
            'success': True,
            'message': 'Roles retrieved successfully',
            'data': [role.to_dict() for role in roles],
        }), 200

    def user_roles(self, identity_id: str):
        access = get_access_context()
        if identity_id != access.identity_id and not self.services.resolver.has_any_permission(
            access.identity_id,
            [Permission.MANAGE_USERS, Permission.MANAGE_ROLES],
            access.active_role_id,
        ):
            return jsonify({
                'error': 'Insufficient permissions',
                'message': "You can only view your own roles",
                'required_any': [Permission.MANAGE_USERS.value, Permission.MANAGE_ROLES.value],
                'status': 403
            }), 403

        identity = self.services.store.get_identity(identity_id)
        if identity is None:
            return jsonify({'success': False, 'message': 'User not found', 'status': 404}), 404

        grants = self.services.store.list_grants(identity_id)
        return jsonify({
            'success': True,
            'message': 'User roles retrieved successfully',
            'data': {
                'user_id': identity.id,
                'active_role_id': identity.active_role_id,
                'roles': [
                    {**grant.role.to_dict(include_permissions=False), 'assignment': grant.assignment.to_dict()}
                    for grant in grants
                ],
            }
        }), 200

    def assign_role(self):
        access = get_access_context()
        data = request.get_json(silent=True) or {}
        identity_id = _field(data, 'user_id', 'userId')
        role_id = _field(data, 'role_id', 'roleId')
        if not identity_id or not role_id:
            return jsonify({'success': False, 'message': 'user_id and role_id are required', 'status': 400}), 400

        result = self.services.roles.assign_role(identity_id, role_id, granted_by=access.identity_id)
        return jsonify(result.to_dict()), (201 if result.ok else result.status_code)

    def revoke_role(self):
        data = request.get_json(silent=True) or {}
        identity_id = _field(data, 'user_id', 'userId')
        role_id = _field(data, 'role_id', 'roleId')
        if not identity_id or not role_id:
            return jsonify({'success': False, 'message': 'user_id and role_id are required', 'status': 400}), 400

        result = self.services.roles.revoke_role(identity_id, role_id)
        return jsonify(result.to_dict()), result.status_code

    def set_role_status(self, role_id: str):
        data = request.get_json(silent=True) or {}
        is_active = data.get('is_active', data.get('isActive'))
        if not isinstance(is_active, bool):
            return jsonify({'success': False, 'message': 'is_active must be true or false', 'status': 400}), 400

        result = self.services.roles.set_role_status(role_id, is_active)
        return jsonify(result.to_dict()), result.status_code

    def set_role_permissions(self, role_id: str):
        data = request.get_json(silent=True) or {}
        permissions = data.get('permissions')
        if not isinstance(permissions, list):
            return jsonify({'success': False, 'message': 'permissions must be a list', 'status': 400}), 400

        result = self.services.roles.update_role_permissions(role_id, permissions)
        return jsonify(result.to_dict()), result.status_code

    def list_users(self):
        page = max(1, _parse_int(request.args.get('page'), 'page', 1))
        limit = max(1, min(_parse_int(request.args.get('limit'), 'limit', 20), 100))
        search = (request.args.get('search') or '').strip() or None

        users, total = self.services.store.list_identities_with_roles(
            search, limit=limit, offset=(page - 1) * limit
        )
        return jsonify({
            'success': True,
            'message': 'Users retrieved successfully',
            'data': {
                'users': [user.to_dict() for user in users],
                'pagination': {
                    'total': total,
                    'page': page,
                    'limit': limit,
                    'pages': (total + limit - 1) // limit,
                },
            }
        }), 200

    def users_with_roles(self):
        data = request.get_json(silent=True)
        roles = data.get('roles') if isinstance(data, dict) else None
        if not isinstance(roles, list) or not roles or not all(isinstance(r, str) for r in roles):
            return jsonify({'success': False, 'message': 'roles must be a non-empty list of role names', 'status': 400}), 400

        users = self.services.store.list_identities_holding(roles)
        return jsonify({
            'success': True,
            'message': 'Users retrieved successfully',
            'data': {'users': [user.to_dict() for user in users]},
        }), 200

    def _audit_filter(self) -> AuditFilter:
        args = request.args
        return AuditFilter(
            actor_identity_id=args.get('user_id') or None,
            action=args.get('action') or None,
            resource_type=args.get('resource') or None,
            actor_active_role_id=args.get('role_id') or None,
            outcome=args.get('status') or None,
            start=_parse_date(args.get('start_date'), 'start_date'),
            end=_parse_date(args.get('end_date'), 'end_date'),
        )

    def audit_logs(self):
        filters = self._audit_filter()
        page = _parse_int(request.args.get('page'), 'page', 1)
        limit = _parse_int(request.args.get('limit'), 'limit', 50)
        entries, pagination = self.services.audit.list_entries(filters, page=page, limit=limit)
        return jsonify({
            'success': True,
            'data': {
                'logs': [entry.to_dict() for entry in entries],
                'pagination': pagination,
            }
        }), 200

    def export_audit_logs(self):
        fmt = request.args.get('format', 'csv')
        if fmt not in ('csv', 'json'):
            return jsonify({'success': False, 'message': f'Unsupported format: {fmt}', 'status': 400}), 400

        content = self.services.audit.export_entries(self._audit_filter(), fmt=fmt)
        stamp = datetime.now(timezone.utc).strftime('%Y%m%d%H%M%S')
        mimetype = 'text/csv' if fmt == 'csv' else 'application/json'
        return Response(
            content,
            mimetype=mimetype,
            headers={'Content-Disposition': f'attachment; filename=audit-logs-{stamp}.{fmt}'},
        )

    def get_system_settings(self):
        return jsonify({'success': True, 'data': self.services.settings.get_settings()}), 200

    def update_system_settings(self):
        access = get_access_context()
        updates = request.get_json(silent=True)
        try:
            settings = self.services.settings.update_settings(updates, updated_by=access.identity_id)
        except ConfigValidationError as e:
            return self.handle_validation_error(e)
        return jsonify({
            'success': True,
            'message': 'System settings updated successfully',
            'data': settings,
        }), 200


def create_app(config: Optional[AppConfig] = None, services: Optional[RBACServices] = None) -> Flask:
    """
    Application factory.

    Args:
        config: Deploy-time config; loaded from the environment when omitted
        services: Pre-built services (tests); built from config when omitted
    """
    app = Flask(__name__)
    if services is None:
        config = config or load_app_config()
        factory = PostgresServiceFactory.from_app_config(config)
        services = build_services(config, factory)
    FlaskAppWrapper(app, services)
    return app
