from __future__ import annotations

import uuid

from sqlalchemy import select
from sqlalchemy.orm import Session

from salesdesk.context import get_correlation_id
from salesdesk.crm.models import CRMActor
from salesdesk.platform.security.context import PermissionContext
from salesdesk.platform.security.errors import PermissionDeniedError
from salesdesk.platform.security.policies import Role


UNKNOWN_ACTOR_REASON = "Unknown or inactive user"


def load_team_member_ids(session: Session, manager_id: uuid.UUID) -> frozenset[uuid.UUID]:
    """Direct reports of ``manager_id`` plus the manager, read from live reporting lines."""

    rows = session.scalars(
        select(CRMActor.id).where(CRMActor.manager_id == manager_id)
    ).all()
    return frozenset(rows) | {manager_id}


def resolve_actor(session: Session, subject: str | uuid.UUID) -> CRMActor | None:
    if isinstance(subject, uuid.UUID):
        return session.get(CRMActor, subject)
    try:
        actor_id = uuid.UUID(str(subject))
    except ValueError:
        return session.scalar(select(CRMActor).where(CRMActor.email == str(subject).strip().lower()))
    return session.get(CRMActor, actor_id)


def build_permission_context(
    session: Session,
    subject: str | uuid.UUID,
    correlation_id: str | None = None,
) -> PermissionContext:
    """Build a fresh context for one request. Nothing here is cached."""

    actor = resolve_actor(session, subject)
    if actor is None or not actor.is_active:
        raise PermissionDeniedError(UNKNOWN_ACTOR_REASON)

    team: frozenset[uuid.UUID] = frozenset()
    if actor.role == Role.MANAGER.value:
        team = load_team_member_ids(session, actor.id)

    return PermissionContext(
        actor_id=actor.id,
        role=actor.role,
        elevated_admin=bool(actor.elevated_admin),
        manager_id=actor.manager_id,
        team_member_ids=team,
        correlation_id=correlation_id or get_correlation_id(),
    )
