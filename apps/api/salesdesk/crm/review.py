from __future__ import annotations

import logging
import uuid
from typing import Any

from opentelemetry import trace
from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from salesdesk import audit, events
from salesdesk.core.database import unit_of_work
from salesdesk.crm.assignment import AssignmentResolver
from salesdesk.crm.duplicates import DuplicateDetector, parse_contending_rep_code
from salesdesk.crm.errors import ConflictError, NotFoundError, UnresolvableError, ValidationError
from salesdesk.crm.merge import MergeExecutor, MergeResult, report_merge
from salesdesk.crm.models import ActivityType, CRMActivity, CRMActor, CRMLead, DuplicateStatus, ReviewDecision, utcnow
from salesdesk.crm.repositories import ActorRepository, LeadRepository, lead_snapshot
from salesdesk.crm.schemas import (
    ActorSummary,
    DuplicateGroupRead,
    LeadRead,
    LeadSummary,
    MergeResultRead,
    PendingReviewItem,
    ReviewResolutionRead,
    ReviewStatsRead,
)
from salesdesk.metrics import observe_review_conflict, observe_review_resolution
from salesdesk.platform.security.context import PermissionContext
from salesdesk.platform.security.errors import PermissionDeniedError
from salesdesk.platform.security.policies import COLLECTION, CRMAction, evaluate_permission
from salesdesk.platform.security.repository import emit_permission_denied
from salesdesk.platform.security.rls import build_scope_filter


logger = logging.getLogger("salesdesk.crm.review")
tracer = trace.get_tracer("salesdesk.crm.review")

NOT_PENDING_MESSAGE = "Lead is not pending review. It may already have been resolved by another reviewer; refresh and try again."
CANONICAL_MISSING_MESSAGE = "The original lead no longer exists. This review needs manual intervention."
CONTENDER_MISSING_MESSAGE = "The rep who tried to claim this lead no longer exists or is inactive."

_ACTIVITY_SUBJECTS = {
    ReviewDecision.KEEP_ORIGINAL: "Duplicate Review - Keep Original",
    ReviewDecision.REASSIGN_TO_NEW: "Duplicate Review - Reassigned to New Rep",
}


class ReviewService:
    entity_type = "crm.lead"

    def __init__(
        self,
        repository: LeadRepository | None = None,
        merge_executor: MergeExecutor | None = None,
        detector: DuplicateDetector | None = None,
    ) -> None:
        self.repository = repository or LeadRepository()
        self.merge_executor = merge_executor or MergeExecutor()
        self.detector = detector or DuplicateDetector()

    def require_review_authority(self, ctx: PermissionContext, lead: CRMLead) -> None:
        """Owners, directors and elevated admins review anything.

        Managers review a locked lead when either the current owner or the
        contending rep is on their team.
        """

        primary = evaluate_permission(ctx, CRMAction.REASSIGN, lead.assigned_to_id)
        if primary.allowed:
            return
        if lead.contending_actor_id is not None:
            if evaluate_permission(ctx, CRMAction.REASSIGN, lead.contending_actor_id).allowed:
                return
        reason = primary.reason or "Permission denied"
        emit_permission_denied(ctx, CRMAction.REASSIGN, reason, resource=self.entity_type, entity_id=str(lead.id))
        raise PermissionDeniedError(reason, action=CRMAction.REASSIGN.value)

    def _review_scope(self, ctx: PermissionContext) -> Any:
        scope = build_scope_filter(ctx)
        return or_(scope.to_sql(CRMLead.assigned_to_id), scope.to_sql(CRMLead.contending_actor_id))

    def list_pending(self, session: Session, ctx: PermissionContext) -> list[PendingReviewItem]:
        self.repository.require(ctx, CRMAction.REASSIGN, COLLECTION)
        leads = session.scalars(
            select(CRMLead)
            .where(CRMLead.duplicate_status == DuplicateStatus.PENDING_REVIEW.value, self._review_scope(ctx))
            .order_by(CRMLead.locked_at.desc(), CRMLead.created_at.desc())
        ).all()

        items: list[PendingReviewItem] = []
        for lead in leads:
            canonical = session.get(CRMLead, lead.duplicate_of_id) if lead.duplicate_of_id else None
            contender = session.get(CRMActor, lead.contending_actor_id) if lead.contending_actor_id else None
            items.append(
                PendingReviewItem(
                    lead=LeadRead.model_validate(lead),
                    canonical=LeadSummary.model_validate(canonical) if canonical is not None else None,
                    contending_actor=ActorSummary.model_validate(contender) if contender is not None else None,
                )
            )
        return items

    def scan_duplicates(self, session: Session, ctx: PermissionContext) -> list[DuplicateGroupRead]:
        self.repository.require(ctx, CRMAction.REASSIGN, COLLECTION)
        return [
            DuplicateGroupRead(
                match_type=group.match_type,
                confidence=group.confidence,
                leads=[LeadSummary.model_validate(lead) for lead in group.leads],
            )
            for group in self.detector.find_duplicate_groups(session, ctx)
        ]

    def stats(self, session: Session, ctx: PermissionContext) -> ReviewStatsRead:
        rows = session.execute(
            select(CRMLead.duplicate_status, func.count(CRMLead.id))
            .where(self._review_scope(ctx))
            .group_by(CRMLead.duplicate_status)
        ).all()
        counts = {status: int(count) for status, count in rows}
        locked = int(
            session.scalar(
                select(func.count(CRMLead.id)).where(CRMLead.locked_for_review.is_(True), self._review_scope(ctx))
            )
            or 0
        )
        return ReviewStatsRead(
            pending_review=counts.get(DuplicateStatus.PENDING_REVIEW.value, 0),
            resolved=counts.get(DuplicateStatus.RESOLVED.value, 0),
            locked=locked,
        )

    def resolve(
        self,
        session: Session,
        ctx: PermissionContext,
        lead_id: uuid.UUID,
        decision: ReviewDecision | str,
        notes: str | None = None,
    ) -> ReviewResolutionRead:
        decision = ReviewDecision(decision)
        with tracer.start_as_current_span("crm.lead.review") as span:
            span.set_attribute("crm.lead.id", str(lead_id))
            span.set_attribute("crm.review.decision", decision.value)

            reparented: int | None = None
            merged: MergeResult | None = None
            with unit_of_work(session):
                lead = self._get_for_review(session, lead_id)
                self.require_review_authority(ctx, lead)
                if lead.duplicate_status != DuplicateStatus.PENDING_REVIEW.value:
                    observe_review_conflict("not_pending")
                    raise ConflictError(NOT_PENDING_MESSAGE)

                before = lead_snapshot(lead)
                canonical_id = lead.duplicate_of_id
                canonical = self._require_canonical(
                    session.get(CRMLead, canonical_id) if canonical_id is not None else None
                )

                if decision is ReviewDecision.KEEP_ORIGINAL:
                    self._claim(session, ctx, lead, decision, notes)
                    self._add_review_activity(session, ctx, lead, decision, notes, "Original assignment kept.")
                elif decision is ReviewDecision.REASSIGN_TO_NEW:
                    contender = self._resolve_contender(session, lead)
                    self._claim(session, ctx, lead, decision, notes)
                    lead.assigned_to_id = contender.id
                    lead.assigned_to_name = contender.display_name
                    lead.rep_code = contender.rep_code
                    lead.manager_id = contender.manager_id
                    lead.manager_overridden = False
                    lead.needs_triage = False
                    token = contender.rep_code or contender.display_name
                    self._add_review_activity(
                        session, ctx, lead, decision, notes, f"Lead reassigned to {contender.display_name} ({token})."
                    )
                else:
                    # Merge rewrites the canonical lead as well.
                    self.repository.require(ctx, CRMAction.EDIT, canonical.assigned_to_id, entity_id=str(canonical.id))
                    self._claim(session, ctx, lead, decision, notes)
                    merged = self.merge_executor.merge(session, canonical, lead, actor_id=ctx.actor_id)
                    reparented = merged.reparented_activities
                session.flush()

        if merged is not None:
            report_merge(merged, actor_id=ctx.actor_id, correlation_id=ctx.correlation_id)

        observe_review_resolution(decision.value)
        logger.info(
            "lead.review_resolved",
            extra={"lead_id": str(lead_id), "decision": decision.value, "actor_id": str(ctx.actor_id)},
        )

        if decision is ReviewDecision.MERGE:
            canonical_read = self._read(session, canonical_id)
            after: dict[str, Any] | None = None
            lead_read = None
        else:
            lead_read = self._read(session, lead_id)
            canonical_read = self._read(session, canonical_id)
            after = lead_snapshot(session.get(CRMLead, lead_id))  # type: ignore[arg-type]

        audit.record(
            actor_user_id=str(ctx.actor_id),
            entity_type=self.entity_type,
            entity_id=str(lead_id),
            action=f"review.{decision.value}",
            before=before,
            after=after,
            correlation_id=ctx.correlation_id,
        )
        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": "crm.lead.review_resolved",
                "occurred_at": utcnow().isoformat(),
                "actor_user_id": str(ctx.actor_id),
                "version": 1,
                "payload": {
                    "lead_id": str(lead_id),
                    "decision": decision.value,
                    "canonical_lead_id": str(canonical_id) if canonical_id else None,
                },
            }
        )
        return ReviewResolutionRead(
            lead_id=lead_id,
            decision=decision,
            canonical_lead_id=canonical_id,
            lead=lead_read,
            canonical=canonical_read,
            reparented_activities=reparented,
        )

    def merge_leads(
        self,
        session: Session,
        ctx: PermissionContext,
        canonical_lead_id: uuid.UUID,
        duplicate_lead_ids: list[uuid.UUID],
    ) -> MergeResultRead:
        duplicate_ids = list(dict.fromkeys(duplicate_lead_ids))
        if canonical_lead_id in duplicate_ids:
            raise ValidationError("canonical lead cannot also be a duplicate")

        results: list[MergeResult] = []
        with unit_of_work(session):
            canonical = self.repository.get_authorized(
                session, ctx, canonical_lead_id, CRMAction.EDIT, for_update=True
            )
            duplicates = [
                self.repository.get_authorized(session, ctx, duplicate_id, CRMAction.REASSIGN, for_update=True)
                for duplicate_id in duplicate_ids
            ]
            for duplicate in duplicates:
                results.append(self.merge_executor.merge(session, canonical, duplicate, actor_id=ctx.actor_id))

        for result in results:
            report_merge(result, actor_id=ctx.actor_id, correlation_id=ctx.correlation_id)
        total = sum(result.reparented_activities for result in results)
        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": "crm.lead.merged",
                "occurred_at": utcnow().isoformat(),
                "actor_user_id": str(ctx.actor_id),
                "version": 1,
                "payload": {
                    "canonical_lead_id": str(canonical_lead_id),
                    "merged_lead_ids": [str(item) for item in duplicate_ids],
                },
            }
        )
        canonical_read = self._read(session, canonical_lead_id)
        if canonical_read is None:
            raise NotFoundError("lead not found")
        return MergeResultRead(canonical=canonical_read, merged_lead_ids=duplicate_ids, reparented_activities=total)

    def _get_for_review(self, session: Session, lead_id: uuid.UUID) -> CRMLead:
        lead = session.scalar(select(CRMLead).where(CRMLead.id == lead_id).with_for_update())
        if lead is not None:
            return lead
        if self.repository.find_merge(session, lead_id) is not None:
            # Merged by an earlier review or a manual merge.
            observe_review_conflict("already_merged")
            raise ConflictError(NOT_PENDING_MESSAGE)
        raise NotFoundError("lead not found")

    @staticmethod
    def _require_canonical(canonical: CRMLead | None) -> CRMLead:
        if canonical is None:
            observe_review_conflict("canonical_missing")
            raise ConflictError(CANONICAL_MISSING_MESSAGE)
        return canonical

    @staticmethod
    def _resolve_contender(session: Session, lead: CRMLead) -> CRMActor:
        if lead.contending_actor_id is not None:
            contender = ActorRepository.get_active(session, lead.contending_actor_id)
        else:
            rep_code = parse_contending_rep_code(lead.lock_reason)
            contender = AssignmentResolver.find_active_by_rep_code(session, rep_code) if rep_code else None
        if contender is None:
            raise UnresolvableError(CONTENDER_MISSING_MESSAGE)
        return contender

    @staticmethod
    def _claim(
        session: Session,
        ctx: PermissionContext,
        lead: CRMLead,
        decision: ReviewDecision,
        notes: str | None,
    ) -> None:
        # Conditional transition; a concurrent reviewer that got here first leaves zero matching rows.
        result = session.execute(
            update(CRMLead)
            .where(
                CRMLead.id == lead.id,
                CRMLead.duplicate_status == DuplicateStatus.PENDING_REVIEW.value,
                CRMLead.row_version == lead.row_version,
            )
            .values(
                duplicate_status=DuplicateStatus.RESOLVED.value,
                locked_for_review=False,
                lock_reason=None,
                reviewed_by_id=ctx.actor_id,
                review_decision=decision.value,
                reviewed_at=utcnow(),
                review_notes=notes,
                row_version=lead.row_version + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount == 0:
            observe_review_conflict("not_pending")
            raise ConflictError(NOT_PENDING_MESSAGE)

    @staticmethod
    def _add_review_activity(
        session: Session,
        ctx: PermissionContext,
        lead: CRMLead,
        decision: ReviewDecision,
        notes: str | None,
        summary: str,
    ) -> None:
        description = summary if not notes else f"{summary}\n\nReviewer notes: {notes}"
        session.add(
            CRMActivity(
                customer_id=lead.id,
                actor_id=ctx.actor_id,
                activity_type=ActivityType.NOTE.value,
                subject=_ACTIVITY_SUBJECTS[decision],
                description=description,
                status="completed",
                completed_at=utcnow(),
            )
        )

    @staticmethod
    def _read(session: Session, lead_id: uuid.UUID | None) -> LeadRead | None:
        if lead_id is None:
            return None
        lead = session.get(CRMLead, lead_id)
        if lead is None:
            return None
        return LeadRead.model_validate(lead)
