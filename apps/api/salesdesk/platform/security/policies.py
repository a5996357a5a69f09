from __future__ import annotations

import uuid
from dataclasses import dataclass
from enum import Enum, StrEnum

from salesdesk.platform.security.context import PermissionContext


class Role(StrEnum):
    OWNER = "owner"
    DIRECTOR = "director"
    MANAGER = "manager"
    SALESPERSON = "salesperson"


class CRMAction(StrEnum):
    VIEW = "view"
    CREATE = "create"
    EDIT = "edit"
    DELETE = "delete"
    REASSIGN = "reassign"
    VIEW_ALL_NOTES = "view_all_notes"
    EDIT_NOTES = "edit_notes"
    EXPORT = "export"
    BULK_ACTIONS = "bulk_actions"


RESOURCE_SCOPED_ACTIONS = frozenset(
    {
        CRMAction.VIEW,
        CRMAction.EDIT,
        CRMAction.DELETE,
        CRMAction.REASSIGN,
        CRMAction.VIEW_ALL_NOTES,
    }
)


class ResourceScope(Enum):
    """Marker for checks made against the collection rather than one lead."""

    COLLECTION = "collection"


COLLECTION = ResourceScope.COLLECTION

INVALID_ROLE_REASON = "Invalid role"


@dataclass(frozen=True, slots=True)
class PermissionCheck:
    allowed: bool
    reason: str | None = None


_ALLOW = PermissionCheck(allowed=True)


def _deny(reason: str) -> PermissionCheck:
    return PermissionCheck(allowed=False, reason=reason)


# Per-role decision tables. A rule is either a fixed PermissionCheck or, for
# resource-scoped actions, the denial returned when the lead is out of scope.
# Every role must name every action; the test suite enforces this.
_DIRECTOR_RULES: dict[CRMAction, PermissionCheck] = {
    CRMAction.VIEW: _ALLOW,
    CRMAction.CREATE: _ALLOW,
    CRMAction.EDIT: _ALLOW,
    CRMAction.DELETE: _deny("Only owners can delete leads"),
    CRMAction.REASSIGN: _ALLOW,
    CRMAction.VIEW_ALL_NOTES: _ALLOW,
    CRMAction.EDIT_NOTES: _ALLOW,
    CRMAction.EXPORT: _ALLOW,
    CRMAction.BULK_ACTIONS: _ALLOW,
}

_MANAGER_OUT_OF_TEAM: dict[CRMAction, str] = {
    CRMAction.VIEW: "Lead is not assigned to your team",
    CRMAction.EDIT: "Can only edit leads assigned to your team",
    CRMAction.DELETE: "Can only delete leads from your team",
    CRMAction.REASSIGN: "Can only reassign leads within your team",
    CRMAction.VIEW_ALL_NOTES: "Can only view notes on leads assigned to your team",
}

_MANAGER_FIXED: dict[CRMAction, PermissionCheck] = {
    CRMAction.CREATE: _ALLOW,
    CRMAction.EDIT_NOTES: _ALLOW,
    CRMAction.EXPORT: _ALLOW,
    CRMAction.BULK_ACTIONS: _ALLOW,
}

_SALESPERSON_NOT_OWNER: dict[CRMAction, str] = {
    CRMAction.VIEW: "You can only view your own leads",
    CRMAction.EDIT: "You can only edit your own leads",
    CRMAction.VIEW_ALL_NOTES: "You can only view notes on your own leads",
}

_SALESPERSON_FIXED: dict[CRMAction, PermissionCheck] = {
    CRMAction.CREATE: _ALLOW,
    CRMAction.DELETE: _deny("Salespeople cannot delete leads"),
    CRMAction.REASSIGN: _deny("Salespeople cannot reassign leads"),
    CRMAction.EDIT_NOTES: _ALLOW,
    CRMAction.EXPORT: _deny("Salespeople cannot export data"),
    CRMAction.BULK_ACTIONS: _deny("Salespeople cannot perform bulk actions"),
}


def parse_role(value: str | None) -> Role | None:
    if value is None:
        return None
    try:
        return Role(value)
    except ValueError:
        return None


def evaluate_permission(
    ctx: PermissionContext,
    action: CRMAction | str,
    resource_owner_id: uuid.UUID | None | ResourceScope = COLLECTION,
) -> PermissionCheck:
    """Decide whether ``ctx`` may perform ``action``.

    ``resource_owner_id`` is the ``assigned_to_id`` of the lead being acted on.
    Leaving it as ``COLLECTION`` asks whether the action is available at all;
    which rows are visible is the scope filter's job, not this function's.
    An explicit ``None`` means the lead is unassigned.

    Never raises. Unknown roles and unknown actions are denied.
    """

    role = parse_role(ctx.role)
    if role is None:
        return _deny(INVALID_ROLE_REASON)
    try:
        crm_action = CRMAction(action)
    except ValueError:
        return _deny("Unknown action")

    if role is Role.OWNER:
        return _ALLOW
    if role is Role.DIRECTOR:
        return _DIRECTOR_RULES[crm_action]
    if ctx.elevated_admin:
        return _ALLOW
    if role is Role.MANAGER:
        return _evaluate_manager(ctx, crm_action, resource_owner_id)
    if role is Role.SALESPERSON:
        return _evaluate_salesperson(ctx, crm_action, resource_owner_id)
    return _deny(INVALID_ROLE_REASON)


def _evaluate_manager(
    ctx: PermissionContext,
    action: CRMAction,
    resource_owner_id: uuid.UUID | None | ResourceScope,
) -> PermissionCheck:
    if action in _MANAGER_FIXED:
        return _MANAGER_FIXED[action]
    if resource_owner_id is COLLECTION:
        return _ALLOW
    if resource_owner_id is not None and resource_owner_id in ctx.team_member_ids:
        return _ALLOW
    return _deny(_MANAGER_OUT_OF_TEAM[action])


def _evaluate_salesperson(
    ctx: PermissionContext,
    action: CRMAction,
    resource_owner_id: uuid.UUID | None | ResourceScope,
) -> PermissionCheck:
    if action in _SALESPERSON_FIXED:
        return _SALESPERSON_FIXED[action]
    if resource_owner_id is COLLECTION:
        return _ALLOW
    if resource_owner_id is not None and resource_owner_id == ctx.actor_id:
        return _ALLOW
    return _deny(_SALESPERSON_NOT_OWNER[action])


def can_reassign_to(ctx: PermissionContext, target_actor_id: uuid.UUID) -> PermissionCheck:
    """Check the destination of a reassignment, separate from the lead check."""

    role = parse_role(ctx.role)
    if role is None:
        return _deny(INVALID_ROLE_REASON)
    if role in {Role.OWNER, Role.DIRECTOR} or ctx.elevated_admin:
        return _ALLOW
    if role is Role.MANAGER:
        if target_actor_id in ctx.team_member_ids:
            return _ALLOW
        return _deny("You can only reassign leads to members of your team")
    return _SALESPERSON_FIXED[CRMAction.REASSIGN]


def has_full_crm_visibility(ctx: PermissionContext) -> bool:
    role = parse_role(ctx.role)
    if role is None:
        return False
    return role in {Role.OWNER, Role.DIRECTOR} or ctx.elevated_admin


def can_access_audit_log(ctx: PermissionContext) -> bool:
    return has_full_crm_visibility(ctx)


def can_manage_imports(ctx: PermissionContext) -> bool:
    role = parse_role(ctx.role)
    if role is None:
        return False
    return role in {Role.OWNER, Role.DIRECTOR, Role.MANAGER} or ctx.elevated_admin


def crm_settings_access(ctx: PermissionContext) -> dict[str, bool]:
    role = parse_role(ctx.role)
    if role is Role.OWNER or (role is not None and ctx.elevated_admin):
        return {"can_view": True, "can_edit": True}
    if role is Role.DIRECTOR:
        return {"can_view": True, "can_edit": False}
    return {"can_view": False, "can_edit": False}
