from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from salesdesk.crm.models import CRMActor


logger = logging.getLogger("salesdesk.crm.intake")


@dataclass(slots=True)
class AssignmentResult:
    assigned_to_id: uuid.UUID | None
    assigned_to_name: str | None
    rep_code: str | None
    manager_id: uuid.UUID | None
    needs_triage: bool
    matched_by: str | None = None


def normalize_rep_code(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = value.strip().upper()
    return cleaned or None


class AssignmentResolver:
    """Pick the owning rep for an incoming lead and infer that rep's manager."""

    def resolve(
        self,
        session: Session,
        *,
        rep_code: str | None = None,
        sales_rep_name: str | None = None,
    ) -> AssignmentResult:
        code = normalize_rep_code(rep_code)
        if code is not None:
            actor = self.find_active_by_rep_code(session, code)
            if actor is not None:
                return self.assign_to(actor, matched_by="rep_code")

        name = (sales_rep_name or "").strip()
        if name:
            actor = self.find_active_by_name(session, name)
            if actor is not None:
                return self.assign_to(actor, matched_by="name")

        logger.info("lead.assignment.unmatched", extra={"reason": "needs_triage"})
        return AssignmentResult(
            assigned_to_id=None,
            assigned_to_name=None,
            rep_code=code,
            manager_id=None,
            needs_triage=True,
        )

    def assign_to(self, actor: CRMActor, *, matched_by: str | None = None) -> AssignmentResult:
        return AssignmentResult(
            assigned_to_id=actor.id,
            assigned_to_name=actor.display_name,
            rep_code=actor.rep_code,
            manager_id=actor.manager_id,
            needs_triage=False,
            matched_by=matched_by,
        )

    def infer_manager_id(self, session: Session, actor_id: uuid.UUID | None) -> uuid.UUID | None:
        if actor_id is None:
            return None
        actor = session.get(CRMActor, actor_id)
        if actor is None:
            return None
        return actor.manager_id

    @staticmethod
    def find_active_by_rep_code(session: Session, rep_code: str) -> CRMActor | None:
        return session.scalar(
            select(CRMActor).where(CRMActor.rep_code == rep_code, CRMActor.is_active.is_(True))
        )

    @staticmethod
    def find_active_by_name(session: Session, name: str) -> CRMActor | None:
        full_name = func.lower(CRMActor.first_name + " " + CRMActor.last_name)
        matches = session.scalars(
            select(CRMActor).where(full_name == name.lower(), CRMActor.is_active.is_(True)).limit(2)
        ).all()
        # Two actors sharing a name is not a match; leave it for triage.
        if len(matches) != 1:
            return None
        return matches[0]
