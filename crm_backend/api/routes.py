from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response

from crm_backend.core.auth import ActorUser
from crm_backend.core.config import get_settings
from crm_backend.core.errors import NotFoundError
from crm_backend.core.rbac import require_admin
from crm_backend.crm.api import (
    accounts_router,
    contacts_router,
    deal_stages_router,
    deals_router,
    get_current_user,
    leads_router,
    settings_router,
)
from crm_backend.identity.api import auth_router, users_router
from crm_backend.identity.schemas import MeResponse
from crm_backend.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(auth_router)
router.include_router(users_router)
router.include_router(leads_router)
router.include_router(contacts_router)
router.include_router(deals_router)
router.include_router(accounts_router)
router.include_router(deal_stages_router)
router.include_router(settings_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/api/me", response_model=MeResponse, tags=["identity.auth"])
def me(request: Request, user: ActorUser = Depends(get_current_user)) -> MeResponse:
    return MeResponse(
        user_id=user.user_id,
        organization_id=user.organization_id,
        role=user.role,
        correlation_id=getattr(request.state, "correlation_id", None),
    )


@router.get("/metrics", tags=["system"])
def metrics(user: ActorUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise NotFoundError("not found")
    require_admin(user)
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
