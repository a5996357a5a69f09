from salesdesk.platform.security.context import PermissionContext
from salesdesk.platform.security.errors import AuthorizationError, PermissionDeniedError
from salesdesk.platform.security.repository import BaseRepository, emit_permission_denied
from salesdesk.platform.security.rls import (
    MATCH_ALL,
    MATCH_NOTHING,
    ScopeFilter,
    ScopeKind,
    apply_scope_filter,
    build_scope_filter,
)
from salesdesk.platform.security.policies import (
    COLLECTION,
    RESOURCE_SCOPED_ACTIONS,
    CRMAction,
    PermissionCheck,
    ResourceScope,
    Role,
    can_access_audit_log,
    can_manage_imports,
    can_reassign_to,
    crm_settings_access,
    evaluate_permission,
    has_full_crm_visibility,
    parse_role,
)

__all__ = [
    "PermissionContext",
    "AuthorizationError",
    "PermissionDeniedError",
    "BaseRepository",
    "emit_permission_denied",
    "MATCH_ALL",
    "MATCH_NOTHING",
    "ScopeFilter",
    "ScopeKind",
    "apply_scope_filter",
    "build_scope_filter",
    "COLLECTION",
    "RESOURCE_SCOPED_ACTIONS",
    "CRMAction",
    "PermissionCheck",
    "ResourceScope",
    "Role",
    "can_access_audit_log",
    "can_manage_imports",
    "can_reassign_to",
    "crm_settings_access",
    "evaluate_permission",
    "has_full_crm_visibility",
    "parse_role",
]
