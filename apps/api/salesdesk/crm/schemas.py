from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from salesdesk.crm.models import ReviewDecision


CreditRangeInput = Literal["780+", "700_779", "650_699", "620_649", "below_620"]
ActivityTypeInput = Literal["note", "call", "email", "task", "escalation"]


class LeadCreate(BaseModel):
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    zipcode: str | None = None
    source: str = "manual"
    rep_code: str | None = None
    sales_rep_name: str | None = None
    credit_range: CreditRangeInput | None = None
    recommended_path: str | None = None
    lead_score: int | None = Field(default=None, ge=0, le=100)
    notes: str | None = None


class LeadUpdate(BaseModel):
    row_version: int = Field(ge=1)
    first_name: str | None = Field(default=None, min_length=1)
    last_name: str | None = Field(default=None, min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    zipcode: str | None = None
    status: str | None = None
    notes: str | None = None
    manager_notes: str | None = None
    lead_score: int | None = Field(default=None, ge=0, le=100)
    credit_range: str | None = None
    recommended_path: str | None = None


class LeadReassignRequest(BaseModel):
    assigned_to_id: UUID
    manager_id: UUID | None = None
    row_version: int | None = Field(default=None, ge=1)


class LeadBulkReassignRequest(BaseModel):
    lead_ids: list[UUID] = Field(min_length=1)
    assigned_to_id: UUID


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    first_name: str
    last_name: str
    email: str | None
    phone: str | None
    zipcode: str | None
    source: str
    status: str
    assigned_to_id: UUID | None
    assigned_to_name: str | None
    rep_code: str | None
    sales_rep_name: str | None
    manager_id: UUID | None
    manager_overridden: bool
    needs_triage: bool
    duplicate_status: str
    locked_for_review: bool
    lock_reason: str | None
    contending_actor_id: UUID | None
    duplicate_of_id: UUID | None
    locked_at: datetime | None
    reviewed_by_id: UUID | None
    review_decision: str | None
    reviewed_at: datetime | None
    lead_score: int
    notes: str | None
    manager_notes: str | None
    credit_range: str | None
    recommended_path: str | None
    last_activity_at: datetime | None
    created_at: datetime
    updated_at: datetime
    row_version: int


class LeadSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    first_name: str
    last_name: str
    email: str | None
    phone: str | None
    status: str
    assigned_to_id: UUID | None
    assigned_to_name: str | None
    rep_code: str | None
    lead_score: int
    created_at: datetime


class ActorSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    display_name: str
    rep_code: str | None
    manager_id: UUID | None


class ActivityCreate(BaseModel):
    activity_type: ActivityTypeInput = "note"
    subject: str = Field(min_length=1)
    description: str | None = None


class ActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    customer_id: UUID
    actor_id: UUID | None
    activity_type: str
    subject: str
    description: str | None
    status: str
    completed_at: datetime | None
    created_at: datetime


class ReviewResolveRequest(BaseModel):
    decision: ReviewDecision
    notes: str | None = None


class ReviewResolutionRead(BaseModel):
    lead_id: UUID
    decision: ReviewDecision
    canonical_lead_id: UUID | None
    lead: LeadRead | None = None
    canonical: LeadRead | None = None
    reparented_activities: int | None = None


class PendingReviewItem(BaseModel):
    lead: LeadRead
    canonical: LeadSummary | None
    contending_actor: ActorSummary | None


class ReviewStatsRead(BaseModel):
    pending_review: int
    resolved: int
    locked: int


class DuplicateGroupRead(BaseModel):
    match_type: str
    confidence: str
    leads: list[LeadSummary]


class MergeRequest(BaseModel):
    canonical_lead_id: UUID
    duplicate_lead_ids: list[UUID] = Field(min_length=1)


class MergeResultRead(BaseModel):
    canonical: LeadRead
    merged_lead_ids: list[UUID]
    reparented_activities: int


class PermissionCheckRead(BaseModel):
    action: str
    allowed: bool
    reason: str | None = None


class PermissionContextRead(BaseModel):
    actor_id: UUID
    role: str
    elevated_admin: bool
    manager_id: UUID | None
    team_member_ids: list[UUID]
    full_crm_visibility: bool
    can_access_audit_log: bool
    can_manage_imports: bool
    settings_access: dict[str, bool]
