from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Body, Depends, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from crm_backend.context import get_correlation_id
from crm_backend.core.auth import ActorUser, AuthUser, get_current_user as get_auth_user
from crm_backend.core.database import get_db
from crm_backend.core.errors import AuthenticationError, CRMError
from crm_backend.crm.schemas import (
    AccountCreate,
    AccountRead,
    AccountUpdate,
    ContactCreate,
    ContactRead,
    ContactUpdate,
    CRMSettingsRead,
    CRMSettingsUpdate,
    DealCreate,
    DealRead,
    DealStageCreate,
    DealStageRead,
    DealStageReorderRequest,
    DealStageUpdate,
    DealUpdate,
    DeleteInfoRead,
    LeadCreate,
    LeadCreateResult,
    LeadHistoryRead,
    LeadRead,
    LeadSoftDeleteRequest,
    LeadUpdate,
    LeadUpdateResult,
    SoftDeleteRequest,
)
from crm_backend.crm.service import AccountService, ContactService, DealService, LeadService
from crm_backend.crm.settings import DealStageService, SettingsResolver

leads_router = APIRouter(prefix="/api/crm", tags=["crm.leads"])
contacts_router = APIRouter(prefix="/api/crm", tags=["crm.contacts"])
deals_router = APIRouter(prefix="/api/crm", tags=["crm.deals"])
accounts_router = APIRouter(prefix="/api/crm", tags=["crm.accounts"])
deal_stages_router = APIRouter(prefix="/api/crm", tags=["crm.deal_stages"])
settings_router = APIRouter(prefix="/api/crm", tags=["crm.settings"])


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
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


async def crm_error_handler(request: Request, exc: CRMError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        request,
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        code="validation_error",
        message="Request validation failed",
        details=jsonable_encoder(exc.errors()),
    )


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "correlation_id", None)
    try:
        user_id = uuid.UUID(auth_user.sub)
        organization_id = uuid.UUID(auth_user.organization_id)
    except ValueError as exc:
        raise AuthenticationError("token carries malformed identity claims") from exc

    return ActorUser(
        user_id=user_id,
        organization_id=organization_id,
        role=auth_user.role,
        correlation_id=correlation_id,
    )


# Leads


@leads_router.get("/leads", response_model=list[LeadRead])
def list_leads(
    lead_stage: str | None = Query(default=None),
    lead_source: str | None = Query(default=None),
    include_deleted: bool = Query(default=False),
    deleted_only: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadRead]:
    return LeadService(db).list_records(
        user,
        include_deleted=include_deleted,
        deleted_only=deleted_only,
        filters={"lead_stage": lead_stage, "lead_source": lead_source},
    )


@leads_router.post("/leads", response_model=LeadCreateResult, status_code=status.HTTP_201_CREATED)
def create_lead(
    dto: LeadCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadCreateResult:
    return LeadService(db).create_lead(user, dto)


@leads_router.get("/leads/{lead_id}", response_model=LeadRead)
def get_lead(
    lead_id: uuid.UUID,
    include_deleted: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead:
    return LeadService(db).get(user, lead_id, include_deleted=include_deleted)


@leads_router.patch("/leads/{lead_id}", response_model=LeadUpdateResult)
def update_lead(
    lead_id: uuid.UUID,
    dto: LeadUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadUpdateResult:
    return LeadService(db).update_lead(user, lead_id, dto)


@leads_router.delete("/leads/{lead_id}", response_model=LeadRead)
def delete_lead(
    lead_id: uuid.UUID,
    dto: LeadSoftDeleteRequest | None = Body(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead:
    return LeadService(db).delete(user, lead_id, dto)


@leads_router.post("/leads/{lead_id}/restore", response_model=LeadRead)
def restore_lead(
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead:
    return LeadService(db).restore(user, lead_id)


@leads_router.get("/leads/{lead_id}/delete-info", response_model=DeleteInfoRead)
def lead_delete_info(
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DeleteInfoRead:
    return LeadService(db).delete_info(user, lead_id)


@leads_router.get("/leads/{lead_id}/history", response_model=list[LeadHistoryRead])
def lead_history(
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadHistoryRead]:
    return LeadService(db).history(user, lead_id)


# Contacts


@contacts_router.get("/contacts", response_model=list[ContactRead])
def list_contacts(
    include_deleted: bool = Query(default=False),
    deleted_only: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ContactRead]:
    return ContactService(db).list_records(user, include_deleted=include_deleted, deleted_only=deleted_only)


@contacts_router.post("/contacts", response_model=ContactRead, status_code=status.HTTP_201_CREATED)
def create_contact(
    dto: ContactCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead:
    return ContactService(db).create_contact(user, dto)


@contacts_router.get("/contacts/{contact_id}", response_model=ContactRead)
def get_contact(
    contact_id: uuid.UUID,
    include_deleted: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead:
    return ContactService(db).get(user, contact_id, include_deleted=include_deleted)


@contacts_router.patch("/contacts/{contact_id}", response_model=ContactRead)
def update_contact(
    contact_id: uuid.UUID,
    dto: ContactUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead:
    return ContactService(db).update_contact(user, contact_id, dto)


@contacts_router.delete("/contacts/{contact_id}", response_model=ContactRead)
def delete_contact(
    contact_id: uuid.UUID,
    dto: SoftDeleteRequest | None = Body(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead:
    return ContactService(db).delete(user, contact_id, dto)


@contacts_router.post("/contacts/{contact_id}/restore", response_model=ContactRead)
def restore_contact(
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead:
    return ContactService(db).restore(user, contact_id)


@contacts_router.get("/contacts/{contact_id}/delete-info", response_model=DeleteInfoRead)
def contact_delete_info(
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DeleteInfoRead:
    return ContactService(db).delete_info(user, contact_id)


# Deals


@deals_router.get("/deals/stages/list")
def list_active_deal_stages(
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[dict[str, Any]]:
    return DealService(db).active_stages(user)


@deals_router.get("/deals", response_model=list[DealRead])
def list_deals(
    lead_id: uuid.UUID | None = Query(default=None),
    contact_id: uuid.UUID | None = Query(default=None),
    stage: str | None = Query(default=None),
    include_deleted: bool = Query(default=False),
    deleted_only: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[DealRead]:
    return DealService(db).list_records(
        user,
        include_deleted=include_deleted,
        deleted_only=deleted_only,
        filters={"lead_id": lead_id, "contact_id": contact_id, "stage": stage},
    )


@deals_router.post("/deals", response_model=DealRead, status_code=status.HTTP_201_CREATED)
def create_deal(
    dto: DealCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead:
    return DealService(db).create_deal(user, dto)


@deals_router.get("/deals/{deal_id}", response_model=DealRead)
def get_deal(
    deal_id: uuid.UUID,
    include_deleted: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead:
    return DealService(db).get(user, deal_id, include_deleted=include_deleted)


@deals_router.patch("/deals/{deal_id}", response_model=DealRead)
def update_deal(
    deal_id: uuid.UUID,
    dto: DealUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead:
    return DealService(db).update_deal(user, deal_id, dto)


@deals_router.delete("/deals/{deal_id}", response_model=DealRead)
def delete_deal(
    deal_id: uuid.UUID,
    dto: SoftDeleteRequest | None = Body(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead:
    return DealService(db).delete(user, deal_id, dto)


@deals_router.post("/deals/{deal_id}/restore", response_model=DealRead)
def restore_deal(
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead:
    return DealService(db).restore(user, deal_id)


@deals_router.get("/deals/{deal_id}/delete-info", response_model=DeleteInfoRead)
def deal_delete_info(
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DeleteInfoRead:
    return DealService(db).delete_info(user, deal_id)


# Accounts


@accounts_router.get("/accounts", response_model=list[AccountRead])
def list_accounts(
    contact_id: uuid.UUID | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    include_deleted: bool = Query(default=False),
    deleted_only: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AccountRead]:
    return AccountService(db).list_records(
        user,
        include_deleted=include_deleted,
        deleted_only=deleted_only,
        filters={"contact_id": contact_id, "status": status_filter},
    )


@accounts_router.post("/accounts", response_model=AccountRead, status_code=status.HTTP_201_CREATED)
def create_account(
    dto: AccountCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AccountRead:
    return AccountService(db).create_account(user, dto)


@accounts_router.get("/accounts/{account_id}", response_model=AccountRead)
def get_account(
    account_id: uuid.UUID,
    include_deleted: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AccountRead:
    return AccountService(db).get(user, account_id, include_deleted=include_deleted)


@accounts_router.patch("/accounts/{account_id}", response_model=AccountRead)
def update_account(
    account_id: uuid.UUID,
    dto: AccountUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AccountRead:
    return AccountService(db).update_account(user, account_id, dto)


@accounts_router.delete("/accounts/{account_id}", response_model=AccountRead)
def delete_account(
    account_id: uuid.UUID,
    dto: SoftDeleteRequest | None = Body(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AccountRead:
    return AccountService(db).delete(user, account_id, dto)


@accounts_router.post("/accounts/{account_id}/restore", response_model=AccountRead)
def restore_account(
    account_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AccountRead:
    return AccountService(db).restore(user, account_id)


@accounts_router.get("/accounts/{account_id}/delete-info", response_model=DeleteInfoRead)
def account_delete_info(
    account_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DeleteInfoRead:
    return AccountService(db).delete_info(user, account_id)


# Deal stages


@deal_stages_router.get("/deal-stages", response_model=list[DealStageRead])
def list_deal_stages(
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[DealStageRead]:
    stages = DealStageService(db).list_stages(user)
    return [DealStageRead.model_validate(stage) for stage in stages]


@deal_stages_router.post("/deal-stages", response_model=DealStageRead, status_code=status.HTTP_201_CREATED)
def create_deal_stage(
    dto: DealStageCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealStageRead:
    return DealStageRead.model_validate(DealStageService(db).create_stage(user, dto))


@deal_stages_router.post(
    "/deal-stages/initialize",
    response_model=list[DealStageRead],
    status_code=status.HTTP_201_CREATED,
)
def initialize_deal_stages(
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[DealStageRead]:
    stages = DealStageService(db).initialize_defaults(user)
    return [DealStageRead.model_validate(stage) for stage in stages]


@deal_stages_router.put("/deal-stages/reorder", response_model=list[DealStageRead])
def reorder_deal_stages(
    dto: DealStageReorderRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[DealStageRead]:
    stages = DealStageService(db).reorder_stages(user, dto)
    return [DealStageRead.model_validate(stage) for stage in stages]


@deal_stages_router.put("/deal-stages/{stage_id}", response_model=DealStageRead)
def update_deal_stage(
    stage_id: uuid.UUID,
    dto: DealStageUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealStageRead:
    return DealStageRead.model_validate(DealStageService(db).update_stage(user, stage_id, dto))


@deal_stages_router.delete("/deal-stages/{stage_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_deal_stage(
    stage_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    DealStageService(db).delete_stage(user, stage_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Settings


@settings_router.get("/settings", response_model=CRMSettingsRead)
def get_crm_settings(
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CRMSettingsRead:
    settings = SettingsResolver(db).get_settings(user.organization_id, user.user_id)
    return CRMSettingsRead.model_validate(settings)


@settings_router.put("/settings", response_model=CRMSettingsRead)
def update_crm_settings(
    dto: CRMSettingsUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CRMSettingsRead:
    return CRMSettingsRead.model_validate(SettingsResolver(db).update_settings(user, dto))


@settings_router.post("/settings/reset", response_model=CRMSettingsRead)
def reset_crm_settings(
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CRMSettingsRead:
    return CRMSettingsRead.model_validate(SettingsResolver(db).reset_settings(user))


@settings_router.get("/settings/active-sources")
def get_active_sources(
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[dict[str, Any]]:
    return SettingsResolver(db).active_sources(user.organization_id, user.user_id)


@settings_router.get("/settings/active-stages")
def get_active_stages(
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[dict[str, Any]]:
    return SettingsResolver(db).active_stages(user.organization_id, user.user_id)


@settings_router.get("/settings/field-config")
def get_field_config(
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[dict[str, Any]]:
    return SettingsResolver(db).field_config(user.organization_id, user.user_id)
