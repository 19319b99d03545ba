"""
RBAC Audit Logging - Security event logging for access control

Two layers:
- structured lines on the dedicated 'rbac.audit' logger for every
  authentication event and permission check
- AuditTrailWriter, the append-only persistent trail of sensitive actions
  (role grants and revocations, role switches, settings changes)

Writing to the persistent trail is fire-and-forget: a failed write is logged
locally and never changes the outcome of the action being audited.
"""

import csv
import io
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from flask import g, has_request_context, request

from src.utils.logging import get_logger
from src.utils.rbac.context import get_services
from src.utils.rbac.models import AuditLogEntry, AuditOutcome
from src.utils.rbac.store import AuditFilter

logger = get_logger(__name__)

# Dedicated audit logger
audit_logger = get_logger('rbac.audit')

REDACTED = '[REDACTED]'
SENSITIVE_FIELDS = frozenset({'password', 'current_password', 'new_password', 'token', 'otp', 'secret'})

EXPORT_COLUMNS = [
    'Timestamp', 'User ID', 'Action', 'Resource', 'Resource ID',
    'Role ID', 'Status', 'IP Address', 'User Agent', 'Error',
]


def log_permission_check(
    user: str,
    permission: str,
    granted: bool,
    endpoint: str,
    roles: List[str],
    missing: Optional[List[str]] = None,
    extra: Optional[dict] = None
) -> None:
    """
    Log a permission check event for audit trail.

    Args:
        user: Identity id of the caller (or 'anonymous')
        permission: Permission(s) or role being checked
        granted: Whether access was granted
        endpoint: Flask endpoint name
        roles: Names of the caller's active roles
        missing: Permissions that were missing (if denied)
        extra: Additional context information
    """
    result = 'GRANTED' if granted else 'DENIED'
    log_entry = {
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'user': user,
        'permission': permission,
        'result': result,
        'endpoint': endpoint,
        'roles': roles,
    }
    if missing:
        log_entry['missing_permissions'] = missing
    if extra:
        log_entry.update(extra)

    log_message = f"{user} | {permission} | {result} | {endpoint} | roles: {roles}"
    if granted:
        audit_logger.debug(log_message)
    else:
        audit_logger.warning(log_message)
        audit_logger.info(f"AUDIT: {json.dumps(log_entry, default=str)}")


def log_role_assignment(
    user: str,
    roles: List[str],
    source: str,
    actor: Optional[str] = None,
    revoked: bool = False,
) -> None:
    """
    Log a change to an identity's role assignments.

    Args:
        user: Identity id whose roles changed
        roles: Role names granted or revoked
        source: Where the change came from ('api', 'cli', 'first_login')
        actor: Identity id that made the change (None for system)
        revoked: True for a revocation
    """
    event = 'role_revocation' if revoked else 'role_assignment'
    log_entry = {
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'event': event,
        'user': user,
        'roles': roles,
        'source': source,
        'actor': actor or 'system',
    }
    verb = 'revoked from' if revoked else 'assigned to'
    audit_logger.info(f"Roles {roles} {verb} {user} by {actor or 'system'} (source: {source})")
    audit_logger.debug(f"AUDIT: {json.dumps(log_entry)}")


def log_authentication_event(
    user: str,
    event_type: str,
    success: bool,
    method: str,
    details: Optional[str] = None
) -> None:
    """
    Log an authentication event.

    Args:
        user: Identity id (or 'unknown')
        event_type: Type of event ('authenticate', 'token_issued')
        success: Whether the event succeeded
        method: Authentication method ('bearer', 'cli')
        details: Additional details or error message
    """
    result = 'SUCCESS' if success else 'FAILURE'
    log_entry = {
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'event': event_type,
        'user': user,
        'result': result,
        'method': method,
    }
    if details:
        log_entry['details'] = details

    log_message = f"AUTH | {event_type} | {user} | {result} | method: {method}"
    if details:
        log_message += f" | {details}"

    if success:
        audit_logger.info(log_message)
    else:
        audit_logger.warning(log_message)

    audit_logger.debug(f"AUDIT: {json.dumps(log_entry)}")


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: REDACTED if str(key).lower() in SENSITIVE_FIELDS else _redact(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [_redact(item) for item in value]
    return value


@dataclass(frozen=True)
class AuditContext:
    """
    Who acted and through which request.

    Built from the active Flask request (and g.access) by from_request(),
    or explicitly for system-initiated actions such as CLI grants.
    """
    actor_identity_id: Optional[str] = None
    actor_active_role_id: Optional[str] = None
    method: Optional[str] = None
    path: Optional[str] = None
    body: Any = None
    params: Dict[str, Any] = field(default_factory=dict)
    query: Dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def from_request(cls) -> 'AuditContext':
        access = g.get('access')
        if request.is_json:
            body = request.get_json(silent=True)
        else:
            body = request.form.to_dict() or None
        return cls(
            actor_identity_id=access.identity_id if access else None,
            actor_active_role_id=access.active_role_id if access else None,
            method=request.method,
            path=request.path,
            body=_redact(body),
            params=dict(request.view_args or {}),
            query=_redact(request.args.to_dict()),
            ip_address=request.remote_addr,
            user_agent=request.headers.get('User-Agent'),
        )

    @classmethod
    def current(cls) -> 'AuditContext':
        """Request context when inside a request, else a system context."""
        if has_request_context():
            return cls.from_request()
        return cls()

    def request_details(self) -> Dict[str, Any]:
        if self.method is None:
            return {}
        return {
            'method': self.method,
            'path': self.path,
            'body': self.body,
            'params': self.params,
            'query': self.query,
        }


class AuditTrailWriter:
    """
    Appends entries to the persistent audit trail and reads them back.

    Usage:
        writer = AuditTrailWriter(store)
        writer.record('ASSIGN_ROLE', 'UserRole', resource_id=assignment.id,
                      details={'targetUserId': user_id, 'roleId': role_id})
    """

    def __init__(self, store):
        self.store = store

    def record(
        self,
        action: str,
        resource_type: str,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        outcome: AuditOutcome = AuditOutcome.SUCCESS,
        error_message: Optional[str] = None,
        context: Optional[AuditContext] = None,
    ) -> Optional[AuditLogEntry]:
        """
        Persist one audit entry. Never raises.

        Args:
            action: Upper-case action key (e.g. 'SWITCH_ROLE')
            resource_type: Kind of resource acted on (e.g. 'UserRole')
            resource_id: Id of the resource, if one exists
            details: Action-specific fields; request metadata is merged in
            outcome: success / failure / error
            error_message: Reason for a failure or error outcome
            context: Actor and request; defaults to the current request

        Returns:
            The stored entry, or None if the write failed
        """
        try:
            context = context or AuditContext.current()
            merged: Dict[str, Any] = {}
            request_details = context.request_details()
            if request_details:
                merged['request'] = request_details
            merged.update(details or {})

            entry = AuditLogEntry(
                action=action,
                resource_type=resource_type,
                resource_id=resource_id,
                outcome=AuditOutcome(outcome),
                actor_identity_id=context.actor_identity_id,
                actor_active_role_id=context.actor_active_role_id,
                details=merged,
                ip_address=context.ip_address,
                user_agent=context.user_agent,
                error_message=error_message,
            )
            stored = self.store.insert_audit_entry(entry)
        except Exception as e:
            logger.error(f"Failed to write audit entry {action} on {resource_type}: {e}")
            return None

        logger.debug(f"Audit entry {stored.id}: {action} {resource_type} {stored.outcome.value}")
        return stored

    def list_entries(
        self,
        filters: Optional[AuditFilter] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Tuple[List[AuditLogEntry], Dict[str, int]]:
        """
        Page through the trail, newest first.

        Returns:
            (entries, pagination dict with total/page/limit/pages)

        Raises:
            StorageError: If the store cannot be read
        """
        page = max(1, page)
        limit = max(1, min(limit, 500))
        entries, total = self.store.list_audit_entries(filters, limit=limit, offset=(page - 1) * limit)
        pagination = {
            'total': total,
            'page': page,
            'limit': limit,
            'pages': (total + limit - 1) // limit,
        }
        return entries, pagination

    def export_entries(self, filters: Optional[AuditFilter] = None, fmt: str = 'csv') -> str:
        """
        Export every matching entry as CSV or JSON text.

        Raises:
            ValueError: Unknown format
            StorageError: If the store cannot be read
        """
        if fmt not in ('csv', 'json'):
            raise ValueError(f"Unsupported export format: {fmt}")
        entries, _ = self.store.list_audit_entries(filters, limit=None)
        if fmt == 'json':
            return json.dumps([entry.to_dict() for entry in entries], default=str, indent=2)
        return entries_to_csv(entries)


def entries_to_csv(entries: Iterable[AuditLogEntry]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(EXPORT_COLUMNS)
    for entry in entries:
        writer.writerow([
            entry.created_at.isoformat() if entry.created_at else '',
            entry.actor_identity_id or 'System',
            entry.action,
            entry.resource_type,
            entry.resource_id or '',
            entry.actor_active_role_id or '',
            entry.outcome.value,
            entry.ip_address or '',
            entry.user_agent or '',
            entry.error_message or '',
        ])
    return buffer.getvalue()


def record_audit(
    action: str,
    resource_type: str,
    resource_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    outcome: AuditOutcome = AuditOutcome.SUCCESS,
    error_message: Optional[str] = None,
    context: Optional[AuditContext] = None,
) -> Optional[AuditLogEntry]:
    """Record through the current app's AuditTrailWriter. Never raises."""
    try:
        writer = get_services().audit
    except RuntimeError as e:
        logger.error(f"Audit entry {action} dropped: {e}")
        return None
    return writer.record(
        action,
        resource_type,
        resource_id=resource_id,
        details=details,
        outcome=outcome,
        error_message=error_message,
        context=context,
    )
