from salesdesk.platform.security import (
    BaseRepository,
    CRMAction,
    PermissionContext,
    PermissionDeniedError,
    build_scope_filter,
    evaluate_permission,
)

__all__ = [
    "BaseRepository",
    "CRMAction",
    "PermissionContext",
    "PermissionDeniedError",
    "build_scope_filter",
    "evaluate_permission",
]
