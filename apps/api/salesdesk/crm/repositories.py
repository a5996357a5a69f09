from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import Select, select
from sqlalchemy.orm import Session

from salesdesk.crm.errors import NotFoundError
from salesdesk.crm.models import CRMActor, CRMLead, CRMLeadMergeLog
from salesdesk.platform.security.context import PermissionContext
from salesdesk.platform.security.policies import CRMAction
from salesdesk.platform.security.repository import BaseRepository


class LeadRepository(BaseRepository):
    resource = "crm.lead"
    owner_column = CRMLead.assigned_to_id

    def scoped_select(self, ctx: PermissionContext) -> Select[tuple[CRMLead]]:
        return self.apply_scope_query(select(CRMLead), ctx)

    def get(self, session: Session, lead_id: uuid.UUID, *, for_update: bool = False) -> CRMLead:
        stmt = select(CRMLead).where(CRMLead.id == lead_id)
        if for_update:
            stmt = stmt.with_for_update()
        lead = session.scalar(stmt)
        if lead is None:
            raise NotFoundError("lead not found")
        return lead

    def get_authorized(
        self,
        session: Session,
        ctx: PermissionContext,
        lead_id: uuid.UUID,
        action: CRMAction,
        *,
        for_update: bool = False,
    ) -> CRMLead:
        lead = self.get(session, lead_id, for_update=for_update)
        self.require(ctx, action, lead.assigned_to_id, entity_id=str(lead.id))
        return lead

    @staticmethod
    def find_merge(session: Session, lead_id: uuid.UUID) -> CRMLeadMergeLog | None:
        return session.scalar(select(CRMLeadMergeLog).where(CRMLeadMergeLog.merged_lead_id == lead_id))


class ActorRepository:
    @staticmethod
    def get(session: Session, actor_id: uuid.UUID) -> CRMActor:
        actor = session.get(CRMActor, actor_id)
        if actor is None:
            raise NotFoundError("user not found")
        return actor

    @staticmethod
    def get_active(session: Session, actor_id: uuid.UUID | None) -> CRMActor | None:
        if actor_id is None:
            return None
        actor = session.get(CRMActor, actor_id)
        if actor is None or not actor.is_active:
            return None
        return actor


def lead_snapshot(lead: CRMLead) -> dict[str, Any]:
    return {
        "id": str(lead.id),
        "assigned_to_id": str(lead.assigned_to_id) if lead.assigned_to_id else None,
        "manager_id": str(lead.manager_id) if lead.manager_id else None,
        "duplicate_status": lead.duplicate_status,
        "locked_for_review": lead.locked_for_review,
        "duplicate_of_id": str(lead.duplicate_of_id) if lead.duplicate_of_id else None,
        "contending_actor_id": str(lead.contending_actor_id) if lead.contending_actor_id else None,
        "lead_score": lead.lead_score,
        "status": lead.status,
    }
