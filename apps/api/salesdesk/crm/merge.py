from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from opentelemetry import trace
from sqlalchemy import update
from sqlalchemy.orm import Session

from salesdesk import audit
from salesdesk.core.config import get_settings
from salesdesk.crm.errors import ValidationError
from salesdesk.crm.models import ActivityType, CRMActivity, CRMLead, CRMLeadMergeLog, utcnow
from salesdesk.crm.repositories import lead_snapshot
from salesdesk.metrics import observe_merge


logger = logging.getLogger("salesdesk.crm.merge")
tracer = trace.get_tracer("salesdesk.crm.merge")

MERGE_ACTIVITY_SUBJECT = "Lead Merged"


@dataclass(slots=True)
class MergeResult:
    canonical: CRMLead
    merged_lead_id: uuid.UUID
    reparented_activities: int
    duration: float = 0.0
    before: dict[str, Any] = field(default_factory=dict)
    after: dict[str, Any] = field(default_factory=dict)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def concat_text(canonical_text: str | None, duplicate_text: str | None, marker: str) -> str | None:
    duplicate_text = (duplicate_text or "").strip()
    if not duplicate_text:
        return canonical_text
    canonical_text = (canonical_text or "").strip()
    if not canonical_text:
        return f"{marker}\n{duplicate_text}"
    return f"{canonical_text}\n\n{marker}\n{duplicate_text}"


class MergeExecutor:
    """Folds a duplicate lead into its canonical lead.

    Flushes but never commits; the caller owns the transaction so the whole
    merge either lands or rolls back together. Metrics, logs and audit entries
    go through :func:`report_merge` once that transaction has committed.
    """

    def __init__(self, marker: str | None = None) -> None:
        self._marker = marker

    @property
    def marker(self) -> str:
        return self._marker or get_settings().lead_merge_marker

    def merge(
        self,
        session: Session,
        canonical: CRMLead,
        duplicate: CRMLead,
        *,
        actor_id: uuid.UUID | None,
    ) -> MergeResult:
        if canonical.id == duplicate.id:
            raise ValidationError("cannot merge a lead into itself")

        started = time.perf_counter()
        with tracer.start_as_current_span("crm.lead.merge") as span:
            span.set_attribute("crm.lead.canonical_id", str(canonical.id))
            span.set_attribute("crm.lead.duplicate_id", str(duplicate.id))
            before = lead_snapshot(canonical)

            reparented = session.execute(
                update(CRMActivity)
                .where(CRMActivity.customer_id == duplicate.id)
                .values(customer_id=canonical.id)
                .execution_options(synchronize_session="fetch")
            ).rowcount or 0

            canonical.notes = concat_text(canonical.notes, duplicate.notes, self.marker)
            canonical.manager_notes = concat_text(canonical.manager_notes, duplicate.manager_notes, self.marker)
            canonical.lead_score = max(canonical.lead_score or 0, duplicate.lead_score or 0)
            if not canonical.credit_range and duplicate.credit_range:
                canonical.credit_range = duplicate.credit_range
            if not canonical.recommended_path and duplicate.recommended_path:
                canonical.recommended_path = duplicate.recommended_path
            latest = max(
                (value for value in (_as_utc(canonical.last_activity_at), _as_utc(duplicate.last_activity_at)) if value),
                default=None,
            )
            canonical.last_activity_at = latest
            canonical.row_version = (canonical.row_version or 1) + 1

            merged_identity = duplicate.email or duplicate.phone or "no contact details"
            session.add(
                CRMActivity(
                    customer_id=canonical.id,
                    actor_id=actor_id,
                    activity_type=ActivityType.NOTE.value,
                    subject=MERGE_ACTIVITY_SUBJECT,
                    description=f"Merged duplicate lead {duplicate.full_name} ({merged_identity}) into this record.",
                    status="completed",
                    completed_at=utcnow(),
                )
            )

            # Anything still locked against the duplicate now contends with the survivor.
            session.execute(
                update(CRMLead)
                .where(CRMLead.duplicate_of_id == duplicate.id, CRMLead.id != canonical.id)
                .values(duplicate_of_id=canonical.id)
                .execution_options(synchronize_session="fetch")
            )

            merged_lead_id = duplicate.id
            session.add(
                CRMLeadMergeLog(
                    canonical_lead_id=canonical.id,
                    merged_lead_id=merged_lead_id,
                    merged_by_id=actor_id,
                    merged_lead_snapshot=lead_snapshot(duplicate),
                )
            )
            session.delete(duplicate)
            session.flush()
            span.set_attribute("crm.merge.reparented_activities", reparented)

        return MergeResult(
            canonical=canonical,
            merged_lead_id=merged_lead_id,
            reparented_activities=reparented,
            duration=time.perf_counter() - started,
            before=before,
            after={**lead_snapshot(canonical), "merged_lead_id": str(merged_lead_id)},
        )


def report_merge(result: MergeResult, *, actor_id: uuid.UUID | None, correlation_id: str | None = None) -> None:
    observe_merge(result.reparented_activities, result.duration)
    logger.info(
        "lead.merged",
        extra={
            "lead_id": str(result.merged_lead_id),
            "canonical_lead_id": result.after["id"],
            "reparented_activities": result.reparented_activities,
        },
    )
    audit.record(
        actor_user_id=str(actor_id) if actor_id else "system",
        entity_type="crm.lead",
        entity_id=result.after["id"],
        action="merge",
        before=result.before,
        after=result.after,
        correlation_id=correlation_id,
    )
