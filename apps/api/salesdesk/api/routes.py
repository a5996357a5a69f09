from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response
from sqlalchemy.orm import Session

from salesdesk.core.auth import AuthUser, get_current_user
from salesdesk.core.config import get_settings
from salesdesk.core.database import get_db
from salesdesk.crm.api import activities_router, duplicates_router, leads_router, permissions_router
from salesdesk.crm.identity import build_permission_context
from salesdesk.metrics import generate_metrics_payload, metrics_content_type
from salesdesk.platform.security.errors import PermissionDeniedError
from salesdesk.platform.security.policies import has_full_crm_visibility

router = APIRouter()
router.include_router(leads_router)
router.include_router(activities_router)
router.include_router(duplicates_router)
router.include_router(permissions_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str]:
    return {"sub": user.sub}


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user), db: Session = Depends(get_db)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    try:
        ctx = build_permission_context(db, user.sub)
    except PermissionDeniedError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=exc.reason) from exc
    if not has_full_crm_visibility(ctx):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: full CRM visibility")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
