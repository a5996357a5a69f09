from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy.sql import Select

from salesdesk import audit
from salesdesk.metrics import observe_permission_denied
from salesdesk.platform.security.context import PermissionContext
from salesdesk.platform.security.errors import PermissionDeniedError
from salesdesk.platform.security.policies import COLLECTION, CRMAction, PermissionCheck, ResourceScope, evaluate_permission
from salesdesk.platform.security.rls import apply_scope_filter


logger = logging.getLogger("salesdesk.security")


class BaseRepository:
    resource = ""
    owner_column: Any = None

    def apply_scope_query(self, query: Select[Any], ctx: PermissionContext) -> Select[Any]:
        return apply_scope_filter(query, ctx, self.owner_column)

    def check(
        self,
        ctx: PermissionContext,
        action: CRMAction,
        resource_owner_id: uuid.UUID | None | ResourceScope = COLLECTION,
    ) -> PermissionCheck:
        return evaluate_permission(ctx, action, resource_owner_id)

    def require(
        self,
        ctx: PermissionContext,
        action: CRMAction,
        resource_owner_id: uuid.UUID | None | ResourceScope = COLLECTION,
        *,
        entity_id: str | None = None,
    ) -> None:
        result = self.check(ctx, action, resource_owner_id)
        if result.allowed:
            return
        reason = result.reason or "Permission denied"
        emit_permission_denied(ctx, action, reason, resource=self.resource, entity_id=entity_id)
        raise PermissionDeniedError(reason, action=str(action))


def emit_permission_denied(
    ctx: PermissionContext,
    action: CRMAction | str,
    reason: str,
    *,
    resource: str,
    entity_id: str | None = None,
) -> None:
    observe_permission_denied(action=str(action), role=ctx.role)
    logger.info(
        "permission.denied",
        extra={"action": str(action), "role": ctx.role, "actor_id": str(ctx.actor_id), "reason": reason},
    )
    audit.record(
        actor_user_id=str(ctx.actor_id),
        entity_type="security.permission",
        entity_id=entity_id or resource,
        action="permission.denied",
        before=None,
        after={
            "resource": resource,
            "action": str(action),
            "role": ctx.role,
            "reason": reason,
        },
        correlation_id=ctx.correlation_id,
    )
