from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from salesdesk.context import get_correlation_id
from salesdesk.core.auth import AuthUser, get_current_user as get_auth_user
from salesdesk.core.context import get_request_context
from salesdesk.core.database import get_db
from salesdesk.crm.errors import LeadEngineError
from salesdesk.crm.identity import build_permission_context
from salesdesk.crm.review import ReviewService
from salesdesk.crm.schemas import (
    ActivityCreate,
    ActivityRead,
    DuplicateGroupRead,
    LeadBulkReassignRequest,
    LeadCreate,
    LeadRead,
    LeadReassignRequest,
    LeadUpdate,
    MergeRequest,
    MergeResultRead,
    PendingReviewItem,
    PermissionCheckRead,
    PermissionContextRead,
    ReviewResolutionRead,
    ReviewResolveRequest,
    ReviewStatsRead,
)
from salesdesk.crm.service import LeadService
from salesdesk.platform.security.context import PermissionContext
from salesdesk.platform.security.errors import AuthorizationError, PermissionDeniedError
from salesdesk.platform.security.policies import (
    can_access_audit_log,
    can_manage_imports,
    crm_settings_access,
    has_full_crm_visibility,
)

leads_router = APIRouter(prefix="/api/crm", tags=["crm.leads"])
activities_router = APIRouter(prefix="/api/crm", tags=["crm.activities"])
duplicates_router = APIRouter(prefix="/api/crm", tags=["crm.duplicates"])
permissions_router = APIRouter(prefix="/api/crm", tags=["crm.permissions"])
lead_service = LeadService()
review_service = ReviewService()


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(get_request_context(request), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def failure_response(request: Request, exc: Exception, code: str) -> JSONResponse:
    if isinstance(exc, LeadEngineError):
        return error_response(
            request,
            status_code=exc.status_code,
            code=code,
            message=exc.message,
            details={"error": exc.code, **(exc.details or {})},
        )
    if isinstance(exc, PermissionDeniedError):
        return error_response(
            request,
            status_code=status.HTTP_403_FORBIDDEN,
            code=code,
            message=exc.reason,
            details={"error": "permission_denied", "action": exc.action},
        )
    if isinstance(exc, AuthorizationError):
        return error_response(request, status_code=status.HTTP_403_FORBIDDEN, code=code, message=str(exc))
    if isinstance(exc, HTTPException):
        return error_response(
            request,
            status_code=exc.status_code,
            code=code,
            message=str(exc.detail),
            details=exc.detail,
        )
    raise exc


_HANDLED = (LeadEngineError, AuthorizationError, HTTPException)


def get_current_context(
    request: Request,
    db: Session = Depends(get_db),
    auth_user: AuthUser = Depends(get_auth_user),
) -> PermissionContext:
    if auth_user.sub == "anonymous":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="authentication required")
    request_context = get_request_context(request)
    correlation_id = get_correlation_id() or getattr(request_context, "request_id", None)
    try:
        ctx = build_permission_context(db, auth_user.sub, correlation_id=correlation_id)
    except PermissionDeniedError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=exc.reason) from exc
    if request_context is not None:
        request_context.user_id = str(ctx.actor_id)
        request_context.actor_role = ctx.role
    return ctx


@leads_router.post("/leads", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    ctx: PermissionContext = Depends(get_current_context),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.intake(db, ctx, dto)
    except _HANDLED as exc:
        return failure_response(request, exc, "crm_lead_create_failed")


@leads_router.get("/leads", response_model=list[LeadRead])
def list_leads(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    duplicate_status: str | None = Query(default=None),
    needs_triage: bool | None = Query(default=None),
    q: str | None = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    ctx: PermissionContext = Depends(get_current_context),
) -> list[LeadRead] | JSONResponse:
    try:
        return lead_service.list_leads(
            db,
            ctx,
            status=status_filter,
            duplicate_status=duplicate_status,
            needs_triage=needs_triage,
            q=q,
            offset=offset,
            limit=limit,
        )
    except _HANDLED as exc:
        return failure_response(request, exc, "crm_lead_list_failed")


@leads_router.get("/leads/export")
def export_leads(
    request: Request,
    db: Session = Depends(get_db),
    ctx: PermissionContext = Depends(get_current_context),
) -> Response:
    try:
        payload = lead_service.export_leads_csv(db, ctx)
    except _HANDLED as exc:
        return failure_response(request, exc, "crm_lead_export_failed")
    return Response(
        content=payload,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="leads.csv"'},
    )


@leads_router.post("/leads/bulk-reassign", response_model=list[LeadRead])
def bulk_reassign_leads(
    request: Request,
    dto: LeadBulkReassignRequest,
    db: Session = Depends(get_db),
    ctx: PermissionContext = Depends(get_current_context),
) -> list[LeadRead] | JSONResponse:
    try:
        return lead_service.bulk_reassign(db, ctx, dto)
    except _HANDLED as exc:
        return failure_response(request, exc, "crm_lead_bulk_reassign_failed")


@leads_router.get("/leads/{lead_id}", response_model=LeadRead)
def get_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: PermissionContext = Depends(get_current_context),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.get_lead(db, ctx, lead_id)
    except _HANDLED as exc:
        return failure_response(request, exc, "crm_lead_get_failed")


@leads_router.patch("/leads/{lead_id}", response_model=LeadRead)
def patch_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadUpdate,
    db: Session = Depends(get_db),
    ctx: PermissionContext = Depends(get_current_context),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.update_lead(db, ctx, lead_id, dto)
    except _HANDLED as exc:
        return failure_response(request, exc, "crm_lead_update_failed")


@leads_router.delete("/leads/{lead_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: PermissionContext = Depends(get_current_context),
) -> Response:
    try:
        lead_service.delete_lead(db, ctx, lead_id)
    except _HANDLED as exc:
        return failure_response(request, exc, "crm_lead_delete_failed")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@leads_router.post("/leads/{lead_id}/reassign", response_model=LeadRead)
def reassign_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadReassignRequest,
    db: Session = Depends(get_db),
    ctx: PermissionContext = Depends(get_current_context),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.reassign_lead(db, ctx, lead_id, dto)
    except _HANDLED as exc:
        return failure_response(request, exc, "crm_lead_reassign_failed")


@activities_router.get("/leads/{lead_id}/activities", response_model=list[ActivityRead])
def list_lead_activities(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: PermissionContext = Depends(get_current_context),
) -> list[ActivityRead] | JSONResponse:
    try:
        return lead_service.list_activities(db, ctx, lead_id)
    except _HANDLED as exc:
        return failure_response(request, exc, "crm_activity_list_failed")


@activities_router.post(
    "/leads/{lead_id}/activities",
    response_model=ActivityRead,
    status_code=status.HTTP_201_CREATED,
)
def create_lead_activity(
    request: Request,
    lead_id: uuid.UUID,
    dto: ActivityCreate,
    db: Session = Depends(get_db),
    ctx: PermissionContext = Depends(get_current_context),
) -> ActivityRead | JSONResponse:
    try:
        return lead_service.add_activity(db, ctx, lead_id, dto)
    except _HANDLED as exc:
        return failure_response(request, exc, "crm_activity_create_failed")


@duplicates_router.get("/duplicates/pending", response_model=list[PendingReviewItem])
def list_pending_reviews(
    request: Request,
    db: Session = Depends(get_db),
    ctx: PermissionContext = Depends(get_current_context),
) -> list[PendingReviewItem] | JSONResponse:
    try:
        return review_service.list_pending(db, ctx)
    except _HANDLED as exc:
        return failure_response(request, exc, "crm_duplicate_list_failed")


@duplicates_router.get("/duplicates/stats", response_model=ReviewStatsRead)
def duplicate_review_stats(
    request: Request,
    db: Session = Depends(get_db),
    ctx: PermissionContext = Depends(get_current_context),
) -> ReviewStatsRead | JSONResponse:
    try:
        return review_service.stats(db, ctx)
    except _HANDLED as exc:
        return failure_response(request, exc, "crm_duplicate_stats_failed")


@duplicates_router.get("/duplicates/scan", response_model=list[DuplicateGroupRead])
def scan_duplicates(
    request: Request,
    db: Session = Depends(get_db),
    ctx: PermissionContext = Depends(get_current_context),
) -> list[DuplicateGroupRead] | JSONResponse:
    try:
        return review_service.scan_duplicates(db, ctx)
    except _HANDLED as exc:
        return failure_response(request, exc, "crm_duplicate_scan_failed")


@duplicates_router.post("/duplicates/merge", response_model=MergeResultRead)
def merge_duplicates(
    request: Request,
    dto: MergeRequest,
    db: Session = Depends(get_db),
    ctx: PermissionContext = Depends(get_current_context),
) -> MergeResultRead | JSONResponse:
    try:
        return review_service.merge_leads(db, ctx, dto.canonical_lead_id, dto.duplicate_lead_ids)
    except _HANDLED as exc:
        return failure_response(request, exc, "crm_duplicate_merge_failed")


@duplicates_router.post("/duplicates/{lead_id}/resolve", response_model=ReviewResolutionRead)
def resolve_duplicate(
    request: Request,
    lead_id: uuid.UUID,
    dto: ReviewResolveRequest,
    db: Session = Depends(get_db),
    ctx: PermissionContext = Depends(get_current_context),
) -> ReviewResolutionRead | JSONResponse:
    try:
        return review_service.resolve(db, ctx, lead_id, dto.decision, dto.notes)
    except _HANDLED as exc:
        return failure_response(request, exc, "crm_duplicate_resolve_failed")


@permissions_router.get("/permissions/check", response_model=PermissionCheckRead)
def check_permission(
    request: Request,
    action: str = Query(min_length=1),
    lead_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    ctx: PermissionContext = Depends(get_current_context),
) -> PermissionCheckRead | JSONResponse:
    try:
        return lead_service.check_permission(db, ctx, action, lead_id)
    except _HANDLED as exc:
        return failure_response(request, exc, "crm_permission_check_failed")


@permissions_router.get("/permissions/context", response_model=PermissionContextRead)
def read_permission_context(ctx: PermissionContext = Depends(get_current_context)) -> PermissionContextRead:
    return PermissionContextRead(
        actor_id=ctx.actor_id,
        role=ctx.role,
        elevated_admin=ctx.elevated_admin,
        manager_id=ctx.manager_id,
        team_member_ids=sorted(ctx.team_member_ids, key=str),
        full_crm_visibility=has_full_crm_visibility(ctx),
        can_access_audit_log=can_access_audit_log(ctx),
        can_manage_imports=can_manage_imports(ctx),
        settings_access=crm_settings_access(ctx),
    )
