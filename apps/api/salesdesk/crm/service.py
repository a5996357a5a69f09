from __future__ import annotations

import csv
import io
import logging
import uuid
from typing import Any

from opentelemetry import trace
from sqlalchemy import delete, or_, select, update
from sqlalchemy.orm import Session

from salesdesk import audit, events
from salesdesk.core.config import get_settings
from salesdesk.core.database import unit_of_work
from salesdesk.crm.assignment import AssignmentResolver, AssignmentResult
from salesdesk.crm.duplicates import DuplicateDetector, LockRecord, normalize_email, normalize_phone, report_lock
from salesdesk.crm.errors import ConflictError, NotFoundError, ValidationError
from salesdesk.crm.models import ActivityType, CRMActivity, CRMActor, CRMLead, utcnow
from salesdesk.crm.repositories import ActorRepository, LeadRepository, lead_snapshot
from salesdesk.crm.schemas import (
    ActivityCreate,
    ActivityRead,
    LeadBulkReassignRequest,
    LeadCreate,
    LeadRead,
    LeadReassignRequest,
    LeadUpdate,
    PermissionCheckRead,
)
from salesdesk.platform.security.context import PermissionContext
from salesdesk.platform.security.errors import PermissionDeniedError
from salesdesk.platform.security.policies import COLLECTION, CRMAction, Role, can_reassign_to, evaluate_permission
from salesdesk.platform.security.repository import emit_permission_denied


logger = logging.getLogger("salesdesk.crm.intake")
tracer = trace.get_tracer("salesdesk.crm.intake")

CREDIT_RANGE_LABELS = {
    "780+": "excellent_780_plus",
    "700_779": "good_700_779",
    "650_699": "fair_650_699",
    "620_649": "below_average_620_649",
    "below_620": "rebuilding_below_620",
}
CREDIT_RANGE_SCORES = {
    "780+": 30,
    "700_779": 25,
    "650_699": 15,
    "620_649": 10,
    "below_620": 5,
}
FORM_SUBMISSION_BONUS = 20
LOCKED_MESSAGE = "Lead is locked for duplicate review"
OVERRIDE_MANAGER_ROLES = frozenset({Role.MANAGER.value, Role.DIRECTOR.value, Role.OWNER.value})
EXPORT_FIELDS = [
    "id",
    "first_name",
    "last_name",
    "email",
    "phone",
    "zipcode",
    "source",
    "status",
    "assigned_to_name",
    "rep_code",
    "lead_score",
    "credit_range",
    "duplicate_status",
    "created_at",
]


def score_credit_range(credit_range: str | None) -> int:
    if credit_range is None:
        return 0
    return min(100, CREDIT_RANGE_SCORES.get(credit_range, 0) + FORM_SUBMISSION_BONUS)


class LeadService:
    entity_type = "crm.lead"

    def __init__(
        self,
        repository: LeadRepository | None = None,
        resolver: AssignmentResolver | None = None,
        detector: DuplicateDetector | None = None,
    ) -> None:
        self.repository = repository or LeadRepository()
        self.resolver = resolver or AssignmentResolver()
        self.detector = detector or DuplicateDetector()

    def intake(self, session: Session, ctx: PermissionContext, dto: LeadCreate) -> LeadRead:
        self.repository.require(ctx, CRMAction.CREATE)
        email = normalize_email(str(dto.email) if dto.email is not None else None)
        phone = normalize_phone(dto.phone)
        if email is None and phone is None:
            raise ValidationError("either email or phone is required")

        lead_score = dto.lead_score if dto.lead_score is not None else score_credit_range(dto.credit_range)

        with tracer.start_as_current_span("crm.lead.intake") as span:
            span.set_attribute("crm.lead.source", dto.source)
            with unit_of_work(session):
                assignment = self._resolve_intake_assignment(session, ctx, dto)
                lead = CRMLead(
                    first_name=dto.first_name.strip(),
                    last_name=dto.last_name.strip(),
                    email=email,
                    phone=phone,
                    zipcode=dto.zipcode,
                    source=dto.source,
                    sales_rep_name=dto.sales_rep_name,
                    credit_range=CREDIT_RANGE_LABELS.get(dto.credit_range) if dto.credit_range else None,
                    recommended_path=dto.recommended_path,
                    lead_score=lead_score,
                    notes=dto.notes,
                )
                self._apply_assignment(lead, assignment)
                session.add(lead)
                session.flush()
                lock = self._detect_and_lock(session, lead, assignment.assigned_to_id)
                lead_id = lead.id
            span.set_attribute("crm.lead.id", str(lead_id))
            span.set_attribute("crm.lead.locked", lock is not None)

        if lock is not None:
            report_lock(lock)
        created = self._read(session, lead_id)
        logger.info(
            "lead.intake",
            extra={"lead_id": str(lead_id), "actor_id": str(ctx.actor_id), "reason": assignment.matched_by or "unmatched"},
        )
        audit.record(
            actor_user_id=str(ctx.actor_id),
            entity_type=self.entity_type,
            entity_id=str(lead_id),
            action="create",
            before=None,
            after=created.model_dump(mode="json"),
            correlation_id=ctx.correlation_id,
        )
        self._publish("crm.lead.created", ctx, {"lead_id": str(lead_id), "needs_triage": created.needs_triage})
        if lock is not None:
            self._publish(
                "crm.lead.locked",
                ctx,
                {"lead_id": str(lead_id), "duplicate_of_id": str(created.duplicate_of_id)},
            )
        return created

    def list_leads(
        self,
        session: Session,
        ctx: PermissionContext,
        *,
        status: str | None = None,
        duplicate_status: str | None = None,
        needs_triage: bool | None = None,
        q: str | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> list[LeadRead]:
        limit = max(1, min(limit, get_settings().lead_list_max_limit))
        stmt = self.repository.scoped_select(ctx)
        if status:
            stmt = stmt.where(CRMLead.status == status)
        if duplicate_status:
            stmt = stmt.where(CRMLead.duplicate_status == duplicate_status)
        if needs_triage is not None:
            stmt = stmt.where(CRMLead.needs_triage.is_(needs_triage))
        if q:
            pattern = f"%{q.strip()}%"
            stmt = stmt.where(
                or_(
                    CRMLead.first_name.ilike(pattern),
                    CRMLead.last_name.ilike(pattern),
                    CRMLead.email.ilike(pattern),
                    CRMLead.phone.ilike(pattern),
                )
            )
        leads = session.scalars(
            stmt.order_by(CRMLead.created_at.desc(), CRMLead.id.desc()).offset(max(0, offset)).limit(limit)
        ).all()
        return [LeadRead.model_validate(item) for item in leads]

    def get_lead(self, session: Session, ctx: PermissionContext, lead_id: uuid.UUID) -> LeadRead:
        lead = self.repository.get_authorized(session, ctx, lead_id, CRMAction.VIEW)
        return LeadRead.model_validate(lead)

    def update_lead(self, session: Session, ctx: PermissionContext, lead_id: uuid.UUID, dto: LeadUpdate) -> LeadRead:
        payload = dto.model_dump(exclude_unset=True)
        row_version = payload.pop("row_version")
        if "email" in payload:
            payload["email"] = normalize_email(str(payload["email"]) if payload["email"] is not None else None)
        if "phone" in payload:
            payload["phone"] = normalize_phone(payload["phone"])

        with unit_of_work(session):
            lead = self.repository.get_authorized(session, ctx, lead_id, CRMAction.EDIT, for_update=True)
            if lead.locked_for_review:
                raise ConflictError(LOCKED_MESSAGE)
            if not payload:
                return LeadRead.model_validate(lead)
            before = lead_snapshot(lead)
            payload["updated_at"] = utcnow()
            payload["row_version"] = CRMLead.row_version + 1
            result = session.execute(
                update(CRMLead)
                .where(CRMLead.id == lead.id, CRMLead.row_version == row_version)
                .values(**payload)
                .execution_options(synchronize_session="fetch")
            )
            if result.rowcount == 0:
                raise ConflictError("row_version conflict")

        updated = self._read(session, lead_id)
        audit.record(
            actor_user_id=str(ctx.actor_id),
            entity_type=self.entity_type,
            entity_id=str(lead_id),
            action="update",
            before=before,
            after=updated.model_dump(mode="json"),
            correlation_id=ctx.correlation_id,
        )
        self._publish("crm.lead.updated", ctx, {"lead_id": str(lead_id)})
        return updated

    def delete_lead(self, session: Session, ctx: PermissionContext, lead_id: uuid.UUID) -> None:
        with unit_of_work(session):
            lead = self.repository.get_authorized(session, ctx, lead_id, CRMAction.DELETE, for_update=True)
            before = lead_snapshot(lead)
            session.execute(delete(CRMActivity).where(CRMActivity.customer_id == lead.id))
            session.delete(lead)

        audit.record(
            actor_user_id=str(ctx.actor_id),
            entity_type=self.entity_type,
            entity_id=str(lead_id),
            action="delete",
            before=before,
            after=None,
            correlation_id=ctx.correlation_id,
        )
        self._publish("crm.lead.deleted", ctx, {"lead_id": str(lead_id)})

    def reassign_lead(
        self,
        session: Session,
        ctx: PermissionContext,
        lead_id: uuid.UUID,
        dto: LeadReassignRequest,
    ) -> LeadRead:
        with unit_of_work(session):
            lead = self.repository.get_authorized(session, ctx, lead_id, CRMAction.REASSIGN, for_update=True)
            if dto.row_version is not None and dto.row_version != lead.row_version:
                raise ConflictError("row_version conflict")
            target = self._require_assignable_target(session, ctx, dto.assigned_to_id)
            override_manager: CRMActor | None = None
            if dto.manager_id is not None:
                override_manager = self._require_override_manager(session, dto.manager_id)
            before = lead_snapshot(lead)
            lock = self._reassign(session, ctx, lead, target, override_manager)

        if lock is not None:
            report_lock(lock)
        updated = self._read(session, lead_id)
        audit.record(
            actor_user_id=str(ctx.actor_id),
            entity_type=self.entity_type,
            entity_id=str(lead_id),
            action="reassign",
            before=before,
            after=updated.model_dump(mode="json"),
            correlation_id=ctx.correlation_id,
        )
        self._publish(
            "crm.lead.locked" if lock is not None else "crm.lead.reassigned",
            ctx,
            {"lead_id": str(lead_id), "assigned_to_id": str(target.id)},
        )
        return updated

    def bulk_reassign(self, session: Session, ctx: PermissionContext, dto: LeadBulkReassignRequest) -> list[LeadRead]:
        self.repository.require(ctx, CRMAction.BULK_ACTIONS)
        lead_ids = list(dict.fromkeys(dto.lead_ids))
        with unit_of_work(session):
            target = self._require_assignable_target(session, ctx, dto.assigned_to_id)
            leads = [
                self.repository.get_authorized(session, ctx, lead_id, CRMAction.REASSIGN, for_update=True)
                for lead_id in lead_ids
            ]
            locks = [self._reassign(session, ctx, lead, target, None) for lead in leads]

        for lock in locks:
            if lock is not None:
                report_lock(lock)
        audit.record(
            actor_user_id=str(ctx.actor_id),
            entity_type=self.entity_type,
            entity_id=str(target.id),
            action="bulk_reassign",
            before=None,
            after={"lead_ids": [str(item) for item in lead_ids], "assigned_to_id": str(target.id)},
            correlation_id=ctx.correlation_id,
        )
        self._publish(
            "crm.lead.reassigned",
            ctx,
            {"lead_ids": [str(item) for item in lead_ids], "assigned_to_id": str(target.id)},
        )
        return [self._read(session, lead_id) for lead_id in lead_ids]

    def export_leads_csv(self, session: Session, ctx: PermissionContext) -> str:
        self.repository.require(ctx, CRMAction.EXPORT)
        leads = session.scalars(
            self.repository.scoped_select(ctx).order_by(CRMLead.created_at.asc(), CRMLead.id.asc())
        ).all()
        output = io.StringIO()
        writer = csv.DictWriter(output, fieldnames=EXPORT_FIELDS)
        writer.writeheader()
        for lead in leads:
            writer.writerow({field: getattr(lead, field) for field in EXPORT_FIELDS})
        return output.getvalue()

    def list_activities(self, session: Session, ctx: PermissionContext, lead_id: uuid.UUID) -> list[ActivityRead]:
        lead = self.repository.get_authorized(session, ctx, lead_id, CRMAction.VIEW_ALL_NOTES)
        rows = session.scalars(
            select(CRMActivity)
            .where(CRMActivity.customer_id == lead.id)
            .order_by(CRMActivity.created_at.desc(), CRMActivity.id.desc())
        ).all()
        return [ActivityRead.model_validate(row) for row in rows]

    def add_activity(
        self,
        session: Session,
        ctx: PermissionContext,
        lead_id: uuid.UUID,
        dto: ActivityCreate,
    ) -> ActivityRead:
        self.repository.require(ctx, CRMAction.EDIT_NOTES)
        with unit_of_work(session):
            lead = self.repository.get_authorized(session, ctx, lead_id, CRMAction.VIEW, for_update=True)
            now = utcnow()
            activity = CRMActivity(
                customer_id=lead.id,
                actor_id=ctx.actor_id,
                activity_type=dto.activity_type,
                subject=dto.subject,
                description=dto.description,
                status="completed",
                completed_at=now,
            )
            session.add(activity)
            lead.last_activity_at = now
            session.flush()
            activity_id = activity.id

        return ActivityRead.model_validate(session.get(CRMActivity, activity_id))

    def check_permission(
        self,
        session: Session,
        ctx: PermissionContext,
        action: str,
        lead_id: uuid.UUID | None = None,
    ) -> PermissionCheckRead:
        if lead_id is None:
            result = evaluate_permission(ctx, action, COLLECTION)
        else:
            lead = self.repository.get(session, lead_id)
            result = evaluate_permission(ctx, action, lead.assigned_to_id)
        return PermissionCheckRead(action=action, allowed=result.allowed, reason=result.reason)

    def _resolve_intake_assignment(
        self,
        session: Session,
        ctx: PermissionContext,
        dto: LeadCreate,
    ) -> AssignmentResult:
        if not dto.rep_code and not dto.sales_rep_name and ctx.role == Role.SALESPERSON.value:
            # Manual entry by a rep with no routing hints belongs to that rep.
            creator = ActorRepository.get_active(session, ctx.actor_id)
            if creator is not None:
                return self.resolver.assign_to(creator, matched_by="creator")
        return self.resolver.resolve(session, rep_code=dto.rep_code, sales_rep_name=dto.sales_rep_name)

    @staticmethod
    def _apply_assignment(lead: CRMLead, assignment: AssignmentResult) -> None:
        lead.assigned_to_id = assignment.assigned_to_id
        lead.assigned_to_name = assignment.assigned_to_name
        lead.rep_code = assignment.rep_code
        lead.manager_id = assignment.manager_id
        lead.manager_overridden = False
        lead.needs_triage = assignment.needs_triage

    def _detect_and_lock(
        self,
        session: Session,
        lead: CRMLead,
        target_actor_id: uuid.UUID | None,
    ) -> LockRecord | None:
        contention = self.detector.find_contention(
            session,
            email=lead.email,
            phone=lead.phone,
            target_actor_id=target_actor_id,
            exclude_lead_id=lead.id,
        )
        if contention is None:
            return None
        contender = session.get(CRMActor, target_actor_id)
        if contender is None:
            return None
        return self.detector.lock_for_review(session, lead, contention, contender)

    def _require_assignable_target(
        self,
        session: Session,
        ctx: PermissionContext,
        target_id: uuid.UUID,
    ) -> CRMActor:
        target = ActorRepository.get(session, target_id)
        if not target.is_active:
            raise ValidationError("cannot assign leads to an inactive user")
        check = can_reassign_to(ctx, target.id)
        if not check.allowed:
            reason = check.reason or "Permission denied"
            emit_permission_denied(ctx, CRMAction.REASSIGN, reason, resource=self.entity_type, entity_id=str(target.id))
            raise PermissionDeniedError(reason, action=CRMAction.REASSIGN.value)
        return target

    @staticmethod
    def _require_override_manager(session: Session, manager_id: uuid.UUID) -> CRMActor:
        manager = ActorRepository.get(session, manager_id)
        if not manager.is_active or manager.role not in OVERRIDE_MANAGER_ROLES:
            raise ValidationError("manager override must be an active manager, director or owner")
        return manager

    def _reassign(
        self,
        session: Session,
        ctx: PermissionContext,
        lead: CRMLead,
        target: CRMActor,
        override_manager: CRMActor | None,
    ) -> LockRecord | None:
        if lead.locked_for_review:
            raise ConflictError(LOCKED_MESSAGE)

        previous_name = lead.assigned_to_name or "Unassigned"
        contention = self.detector.find_contention(
            session,
            email=lead.email,
            phone=lead.phone,
            target_actor_id=target.id,
            exclude_lead_id=lead.id,
        )
        if contention is not None:
            lock = self.detector.lock_for_review(session, lead, contention, target)
            description = f"Reassignment to {target.display_name} is waiting for duplicate review."
        else:
            self._apply_assignment(lead, self.resolver.assign_to(target))
            if override_manager is not None:
                lead.manager_id = override_manager.id
                lead.manager_overridden = True
            lock = None
            description = f"Reassigned from {previous_name} to {target.display_name}."

        lead.row_version = (lead.row_version or 1) + 1
        session.add(
            CRMActivity(
                customer_id=lead.id,
                actor_id=ctx.actor_id,
                activity_type=ActivityType.NOTE.value,
                subject="Lead Reassigned",
                description=description,
                status="completed",
                completed_at=utcnow(),
            )
        )
        session.flush()
        return lock

    @staticmethod
    def _read(session: Session, lead_id: uuid.UUID) -> LeadRead:
        lead = session.get(CRMLead, lead_id)
        if lead is None:
            raise NotFoundError("lead not found")
        return LeadRead.model_validate(lead)

    @staticmethod
    def _publish(event_type: str, ctx: PermissionContext, payload: dict[str, Any]) -> None:
        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": event_type,
                "occurred_at": utcnow().isoformat(),
                "actor_user_id": str(ctx.actor_id),
                "version": 1,
                "payload": payload,
            }
        )
