from __future__ import annotations

import copy
import logging
import uuid
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from crm_backend import events
from crm_backend.core.auth import ActorUser
from crm_backend.core.errors import ConflictError, NotFoundError, ValidationError
from crm_backend.core.rbac import require_admin
from crm_backend.crm.models import CRMDealStage, CRMSettings, utcnow
from crm_backend.crm.repositories import DealRepository
from crm_backend.crm.schemas import (
    CRMSettingsUpdate,
    DealStageCreate,
    DealStageReorderRequest,
    DealStageUpdate,
)

logger = logging.getLogger("crm_backend.crm.settings")

DEFAULT_LEAD_FIELDS: list[dict[str, Any]] = [
    {"id": 1, "name": "first_name", "label": "First Name", "type": "text", "required": False, "active": True},
    {"id": 2, "name": "last_name", "label": "Last Name", "type": "text", "required": True, "active": True},
    {"id": 3, "name": "email", "label": "Email", "type": "email", "required": False, "active": True},
    {"id": 4, "name": "phone", "label": "Phone", "type": "tel", "required": False, "active": True},
    {"id": 5, "name": "lead_source", "label": "Lead Source", "type": "select", "required": False, "active": True},
    {"id": 6, "name": "company", "label": "Company", "type": "text", "required": False, "active": True},
    {"id": 7, "name": "job_title", "label": "Job Title", "type": "text", "required": False, "active": True},
]

DEFAULT_LEAD_SOURCES: list[dict[str, Any]] = [
    {"id": 1, "value": "website", "label": "Website", "active": True, "color": "#3B82F6"},
    {"id": 2, "value": "social-media", "label": "Social Media", "active": True, "color": "#8B5CF6"},
    {"id": 3, "value": "referral", "label": "Referral", "active": True, "color": "#10B981"},
    {"id": 4, "value": "email-campaign", "label": "Email Campaign", "active": True, "color": "#F59E0B"},
    {"id": 5, "value": "cold-call", "label": "Cold Call", "active": True, "color": "#EF4444"},
    {"id": 6, "value": "trade-show", "label": "Trade Show", "active": True, "color": "#06B6D4"},
    {"id": 7, "value": "google-ads", "label": "Google Ads", "active": True, "color": "#84CC16"},
    {"id": 8, "value": "linkedin", "label": "LinkedIn", "active": True, "color": "#0EA5E9"},
    {"id": 9, "value": "other", "label": "Other", "active": True, "color": "#6B7280"},
]

DEFAULT_LEAD_STAGES: list[dict[str, Any]] = [
    {"id": 1, "value": "New", "label": "New", "active": True, "color": "#3B82F6", "order": 1},
    {"id": 2, "value": "Contacted", "label": "Contacted", "active": True, "color": "#8B5CF6", "order": 2},
    {"id": 3, "value": "Qualified", "label": "Qualified", "active": True, "color": "#10B981", "order": 3},
    {"id": 4, "value": "Proposal", "label": "Proposal", "active": True, "color": "#F59E0B", "order": 4},
    {"id": 5, "value": "Won", "label": "Won", "active": True, "color": "#22C55E", "order": 5},
    {"id": 6, "value": "Lost", "label": "Lost", "active": True, "color": "#EF4444", "order": 6},
]

DEFAULT_SETTINGS: dict[str, Any] = {
    "auto_assign_leads": False,
    "lead_scoring": False,
    "email_notifications": True,
    "duplicate_detection": True,
    "lead_expiration": 30,
    "max_leads_per_user": 1000,
    "require_contact_method": False,
}

DEFAULT_DEAL_STAGES: list[dict[str, Any]] = [
    {"name": "Qualified", "probability": 25, "color": "#3B82F6", "is_default": True},
    {"name": "Proposal", "probability": 50, "color": "#F59E0B", "is_default": False},
    {"name": "Negotiation", "probability": 75, "color": "#8B5CF6", "is_default": False},
    {"name": "Closed Won", "probability": 100, "color": "#10B981", "is_default": False},
    {"name": "Closed Lost", "probability": 0, "color": "#EF4444", "is_default": False},
]


def default_catalogs() -> dict[str, Any]:
    return {
        "lead_fields": copy.deepcopy(DEFAULT_LEAD_FIELDS),
        "lead_sources": copy.deepcopy(DEFAULT_LEAD_SOURCES),
        "lead_stages": copy.deepcopy(DEFAULT_LEAD_STAGES),
        "settings": copy.deepcopy(DEFAULT_SETTINGS),
    }


def validate_field_config(lead_fields: list[dict[str, Any]]) -> list[str]:
    errors: list[str] = []
    active = [field for field in lead_fields if field.get("active", True)]
    active_names = {field.get("name") for field in active}

    if "last_name" not in active_names:
        errors.append("Last Name field must be active")
    if not active_names.intersection({"email", "phone"}):
        errors.append("At least Email or Phone field must be active for contact purposes")
    if not any(field.get("required") for field in active):
        errors.append("At least one active field must be required")
    return errors


def sort_stages(stages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return sorted(stages, key=lambda stage: stage.get("order") or 0)


class SettingsResolver:
    """Per-organization catalogs for lead fields, sources and stages."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def get_settings(self, organization_id: uuid.UUID, actor_id: uuid.UUID) -> CRMSettings:
        settings = self.session.scalar(select(CRMSettings).where(CRMSettings.organization_id == organization_id))
        if settings is not None:
            return settings

        settings = CRMSettings(
            organization_id=organization_id,
            created_by=actor_id,
            last_modified_by=actor_id,
            **default_catalogs(),
        )
        self.session.add(settings)
        self.session.commit()
        logger.info("crm.settings.defaults_created", extra={"organization_id": str(organization_id)})
        return settings

    def update_settings(self, actor_user: ActorUser, dto: CRMSettingsUpdate) -> CRMSettings:
        require_admin(actor_user)
        settings = self.get_settings(actor_user.organization_id, actor_user.user_id)

        lead_fields = settings.lead_fields
        if dto.lead_fields is not None:
            lead_fields = [item.model_dump(exclude_none=True) for item in dto.lead_fields]
            errors = validate_field_config(lead_fields)
            if errors:
                raise ValidationError("invalid lead field configuration", details={"errors": errors})

        if dto.lead_sources is not None:
            settings.lead_sources = [item.model_dump(exclude_none=True) for item in dto.lead_sources]
        if dto.lead_stages is not None:
            stages = []
            for position, item in enumerate(dto.lead_stages):
                stage = item.model_dump(exclude_none=True)
                stage.setdefault("order", position + 1)
                stages.append(stage)
            settings.lead_stages = sort_stages(stages)
        if dto.settings is not None:
            settings.settings = {**(settings.settings or {}), **dto.settings}

        settings.lead_fields = lead_fields
        settings.last_modified_by = actor_user.user_id
        settings.updated_at = utcnow()
        self.session.add(settings)
        self.session.commit()
        events.publish(
            events.build_envelope(
                "crm.settings.updated",
                organization_id=actor_user.organization_id,
                actor_user_id=actor_user.user_id,
                payload={"settings_id": str(settings.id)},
            )
        )
        return settings

    def reset_settings(self, actor_user: ActorUser) -> CRMSettings:
        require_admin(actor_user)
        settings = self.get_settings(actor_user.organization_id, actor_user.user_id)
        defaults = default_catalogs()
        settings.lead_fields = defaults["lead_fields"]
        settings.lead_sources = defaults["lead_sources"]
        settings.lead_stages = defaults["lead_stages"]
        settings.settings = defaults["settings"]
        settings.last_modified_by = actor_user.user_id
        settings.updated_at = utcnow()
        self.session.add(settings)
        self.session.commit()
        events.publish(
            events.build_envelope(
                "crm.settings.reset",
                organization_id=actor_user.organization_id,
                actor_user_id=actor_user.user_id,
                payload={"settings_id": str(settings.id)},
            )
        )
        return settings

    def active_sources(self, organization_id: uuid.UUID, actor_id: uuid.UUID) -> list[dict[str, Any]]:
        settings = self.get_settings(organization_id, actor_id)
        return [source for source in settings.lead_sources if source.get("active", True)]

    def active_stages(self, organization_id: uuid.UUID, actor_id: uuid.UUID) -> list[dict[str, Any]]:
        settings = self.get_settings(organization_id, actor_id)
        return sort_stages([stage for stage in settings.lead_stages if stage.get("active", True)])

    def field_config(self, organization_id: uuid.UUID, actor_id: uuid.UUID) -> list[dict[str, Any]]:
        settings = self.get_settings(organization_id, actor_id)
        return [field for field in settings.lead_fields if field.get("active", True)]

    def required_fields(self, organization_id: uuid.UUID, actor_id: uuid.UUID) -> list[str]:
        return [field["name"] for field in self.field_config(organization_id, actor_id) if field.get("required")]

    def setting(self, organization_id: uuid.UUID, actor_id: uuid.UUID, key: str, default: Any = None) -> Any:
        settings = self.get_settings(organization_id, actor_id)
        return (settings.settings or {}).get(key, default)


class DealStageService:
    """Per-organization deal pipeline stages."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def list_stages(self, actor_user: ActorUser) -> list[CRMDealStage]:
        require_admin(actor_user)
        stmt = (
            select(CRMDealStage)
            .where(CRMDealStage.organization_id == actor_user.organization_id)
            .order_by(CRMDealStage.order.asc(), CRMDealStage.created_at.asc())
        )
        return list(self.session.scalars(stmt).all())

    def list_active(self, organization_id: uuid.UUID) -> list[CRMDealStage]:
        stmt = (
            select(CRMDealStage)
            .where(CRMDealStage.organization_id == organization_id, CRMDealStage.is_active.is_(True))
            .order_by(CRMDealStage.order.asc(), CRMDealStage.created_at.asc())
        )
        return list(self.session.scalars(stmt).all())

    def find_active_by_name(self, organization_id: uuid.UUID, name: str) -> CRMDealStage | None:
        stmt = select(CRMDealStage).where(
            CRMDealStage.organization_id == organization_id,
            CRMDealStage.name == name,
            CRMDealStage.is_active.is_(True),
        )
        return self.session.scalar(stmt.limit(1))

    def create_stage(self, actor_user: ActorUser, dto: DealStageCreate) -> CRMDealStage:
        require_admin(actor_user)
        name = dto.name.strip()
        if not name:
            raise ValidationError("stage name is required")

        max_order = self.session.scalar(
            select(func.max(CRMDealStage.order)).where(CRMDealStage.organization_id == actor_user.organization_id)
        )
        if dto.is_default:
            self._unset_other_defaults(actor_user.organization_id, exclude_id=None)

        stage = CRMDealStage(
            organization_id=actor_user.organization_id,
            name=name,
            order=(max_order or 0) + 1,
            probability=dto.probability,
            color=dto.color,
            description=dto.description,
            is_default=dto.is_default,
            is_active=True,
            created_by=actor_user.user_id,
        )
        self.session.add(stage)
        self.session.commit()
        self._publish(actor_user, "crm.deal_stage.created", {"deal_stage_id": str(stage.id), "name": stage.name})
        return stage

    def update_stage(self, actor_user: ActorUser, stage_id: uuid.UUID, dto: DealStageUpdate) -> CRMDealStage:
        require_admin(actor_user)
        stage = self._get(actor_user.organization_id, stage_id)

        changes = dto.model_dump(exclude_unset=True, exclude_none=True)
        if "name" in changes:
            changes["name"] = changes["name"].strip()
            if not changes["name"]:
                raise ValidationError("stage name cannot be empty")
            if changes["name"] != stage.name:
                in_use = DealRepository(self.session).stage_in_use(actor_user.organization_id, stage.name)
                if in_use:
                    raise ConflictError(
                        f"Cannot rename stage. {in_use} deal(s) are using this stage.",
                        details={"deals": in_use},
                    )

        if dto.is_default:
            self._unset_other_defaults(actor_user.organization_id, exclude_id=stage.id)
        for field_name, value in changes.items():
            setattr(stage, field_name, value)
        stage.updated_at = utcnow()
        self.session.add(stage)
        self.session.commit()
        self._publish(actor_user, "crm.deal_stage.updated", {"deal_stage_id": str(stage.id), "name": stage.name})
        return stage

    def reorder_stages(self, actor_user: ActorUser, dto: DealStageReorderRequest) -> list[CRMDealStage]:
        require_admin(actor_user)
        for item in dto.stage_orders:
            stage = self._get(actor_user.organization_id, item.id)
            stage.order = item.order
            stage.updated_at = utcnow()
            self.session.add(stage)
        self.session.commit()
        return self.list_stages(actor_user)

    def delete_stage(self, actor_user: ActorUser, stage_id: uuid.UUID) -> None:
        require_admin(actor_user)
        stage = self._get(actor_user.organization_id, stage_id)
        in_use = DealRepository(self.session).stage_in_use(actor_user.organization_id, stage.name)
        if in_use:
            raise ConflictError(
                f"Cannot delete stage. {in_use} deal(s) are using this stage.",
                details={"deals": in_use},
            )
        payload = {"deal_stage_id": str(stage.id), "name": stage.name}
        self.session.delete(stage)
        self.session.commit()
        self._publish(actor_user, "crm.deal_stage.deleted", payload)

    def initialize_defaults(self, actor_user: ActorUser) -> list[CRMDealStage]:
        require_admin(actor_user)
        existing = self.session.scalar(
            select(func.count())
            .select_from(CRMDealStage)
            .where(CRMDealStage.organization_id == actor_user.organization_id)
        )
        if existing:
            raise ConflictError("Deal stages already exist for this organization")

        for position, item in enumerate(DEFAULT_DEAL_STAGES):
            self.session.add(
                CRMDealStage(
                    organization_id=actor_user.organization_id,
                    name=item["name"],
                    order=position + 1,
                    probability=item["probability"],
                    color=item["color"],
                    is_default=item["is_default"],
                    is_active=True,
                    created_by=actor_user.user_id,
                )
            )
        self.session.commit()
        logger.info(
            "crm.deal_stage.initialized",
            extra={"organization_id": str(actor_user.organization_id)},
        )
        return self.list_stages(actor_user)

    def _unset_other_defaults(self, organization_id: uuid.UUID, *, exclude_id: uuid.UUID | None) -> None:
        stmt = update(CRMDealStage).where(
            CRMDealStage.organization_id == organization_id,
            CRMDealStage.is_default.is_(True),
        )
        if exclude_id is not None:
            stmt = stmt.where(CRMDealStage.id != exclude_id)
        self.session.execute(stmt.values(is_default=False).execution_options(synchronize_session="fetch"))

    def _get(self, organization_id: uuid.UUID, stage_id: uuid.UUID) -> CRMDealStage:
        stage = self.session.scalar(
            select(CRMDealStage).where(
                CRMDealStage.id == stage_id,
                CRMDealStage.organization_id == organization_id,
            )
        )
        if stage is None:
            raise NotFoundError("deal stage not found")
        return stage

    def _publish(self, actor_user: ActorUser, event_type: str, payload: dict[str, Any]) -> None:
        events.publish(
            events.build_envelope(
                event_type,
                organization_id=actor_user.organization_id,
                actor_user_id=actor_user.user_id,
                payload=payload,
            )
        )
