from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import StrEnum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from salesdesk.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DuplicateStatus(StrEnum):
    NONE = "none"
    PENDING_REVIEW = "pending_review"
    RESOLVED = "resolved"


class ReviewDecision(StrEnum):
    KEEP_ORIGINAL = "keep_original"
    REASSIGN_TO_NEW = "reassign_to_new"
    MERGE = "merge"


class ActivityType(StrEnum):
    NOTE = "note"
    CALL = "call"
    EMAIL = "email"
    TASK = "task"
    ESCALATION = "escalation"


class CRMActor(Base):
    __tablename__ = "crm_actor"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    first_name: Mapped[str] = mapped_column(Text, nullable=False)
    last_name: Mapped[str] = mapped_column(Text, nullable=False, default="", server_default="")
    # Stored as plain text: an unrecognized value must be representable so it can fail closed.
    role: Mapped[str] = mapped_column(String(32), nullable=False)
    elevated_admin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    manager_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_actor.id", ondelete="SET NULL"),
        nullable=True,
    )
    rep_code: Mapped[str | None] = mapped_column(String(32), nullable=True, unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    __table_args__ = (Index("ix_crm_actor_manager_id", "manager_id"),)


class CRMLead(Base):
    __tablename__ = "crm_lead"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    first_name: Mapped[str] = mapped_column(Text, nullable=False)
    last_name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str | None] = mapped_column(Text, nullable=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    zipcode: Mapped[str | None] = mapped_column(String(16), nullable=True)
    source: Mapped[str] = mapped_column(String(64), nullable=False, default="manual", server_default="manual")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="new", server_default="new")

    assigned_to_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_actor.id", ondelete="SET NULL"),
        nullable=True,
    )
    assigned_to_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    rep_code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    sales_rep_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    manager_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    manager_overridden: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    needs_triage: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")

    duplicate_status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=DuplicateStatus.NONE.value,
        server_default=DuplicateStatus.NONE.value,
    )
    locked_for_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    # Human-readable only; the contending actor is tracked structurally below.
    lock_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    contending_actor_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    # No foreign key: the canonical lead may be deleted independently and that must be detectable.
    duplicate_of_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reviewed_by_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    review_decision: Mapped[str | None] = mapped_column(String(32), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    review_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    lead_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    manager_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    credit_range: Mapped[str | None] = mapped_column(String(64), nullable=True)
    recommended_path: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_activity_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    __table_args__ = (
        CheckConstraint(
            "(locked_for_review = true) = (duplicate_status = 'pending_review')",
            name="ck_crm_lead_lock_matches_status",
        ),
        CheckConstraint("lead_score >= 0 AND lead_score <= 100", name="ck_crm_lead_score_range"),
        Index("ix_crm_lead_assigned_to_id", "assigned_to_id"),
        Index("ix_crm_lead_email", "email"),
        Index("ix_crm_lead_phone", "phone"),
        Index("ix_crm_lead_duplicate_status", "duplicate_status"),
    )


class CRMActivity(Base):
    __tablename__ = "crm_activity"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    customer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_lead.id", ondelete="CASCADE"),
        nullable=False,
    )
    actor_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    activity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    subject: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="completed", server_default="completed")
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (Index("ix_crm_activity_customer_id", "customer_id"),)


class CRMLeadMergeLog(Base):
    """One row per lead folded into another; the merged lead itself is gone."""

    __tablename__ = "crm_lead_merge_log"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    canonical_lead_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    # No foreign key: the merged lead is deleted in the same transaction.
    merged_lead_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, unique=True)
    merged_by_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    merged_lead_snapshot: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    merged_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (Index("ix_crm_lead_merge_log_canonical_lead_id", "canonical_lead_id"),)
