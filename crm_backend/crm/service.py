from __future__ import annotations

import logging
import uuid
from datetime import date
from typing import Any

from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from crm_backend import events
from crm_backend.core.auth import ActorUser
from crm_backend.core.errors import ConflictError, NotFoundError, ValidationError
from crm_backend.crm.lifecycle import LifecycleEngine, renewal_date_for
from crm_backend.crm.models import CRMAccount, CRMContact, CRMDeal, utcnow
from crm_backend.crm.schemas import (
    AccountCreate,
    AccountRead,
    AccountUpdate,
    ContactCreate,
    ContactRead,
    ContactUpdate,
    DealCreate,
    DealRead,
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

logger = logging.getLogger("crm_backend.crm.service")

BUILTIN_DEAL_STAGES = ("Qualified", "Proposal", "Negotiation", "Closed Won", "Closed Lost")
NON_NULLABLE_DEAL_FIELDS = {
    "first_name",
    "last_name",
    "stage",
    "deal_type",
    "close_date",
    "owner_id",
    "amount",
    "currency",
    "probability",
}
NON_NULLABLE_ACCOUNT_FIELDS = {
    "account_name",
    "service_type",
    "status",
    "account_holder_name",
    "relationship",
    "current_monthly_price",
    "currency",
    "billing_cycle",
    "start_date",
    "renewal_date",
    "total_revenue",
}


def _drop_nulls(changes: dict[str, Any], fields: set[str]) -> dict[str, Any]:
    return {key: value for key, value in changes.items() if not (key in fields and value is None)}


def _strip_required(changes: dict[str, Any], fields: tuple[str, ...]) -> dict[str, Any]:
    blank = [name for name in fields if name in changes and not changes[name].strip()]
    if blank:
        raise ValidationError(f"{', '.join(blank)} cannot be empty", details={"missing_fields": blank})
    for name in fields:
        if name in changes:
            changes[name] = changes[name].strip()
    return changes


class SoftDeleteService:
    """Listing, lookup and delete/restore shared by every soft-deletable entity."""

    entity_type = ""
    read_model: type[BaseModel]

    def __init__(self, session: Session, engine: LifecycleEngine | None = None) -> None:
        self.session = session
        self.engine = engine or LifecycleEngine.for_session(session)

    @property
    def repository(self):  # type: ignore[no-untyped-def]
        return self.engine.repository_for(self.entity_type)

    def list_records(
        self,
        actor_user: ActorUser,
        *,
        include_deleted: bool = False,
        deleted_only: bool = False,
        filters: dict[str, Any] | None = None,
    ) -> list[Any]:
        rows = self.repository.find(
            actor_user.organization_id,
            filters=filters,
            include_deleted=include_deleted,
            deleted_only=deleted_only,
        )
        return [self.read_model.model_validate(row) for row in rows]

    def get(self, actor_user: ActorUser, entity_id: uuid.UUID, *, include_deleted: bool = False) -> Any:
        return self.read_model.model_validate(self._load(actor_user, entity_id, include_deleted=include_deleted))

    def delete(self, actor_user: ActorUser, entity_id: uuid.UUID, dto: SoftDeleteRequest | None = None) -> Any:
        dto = dto or SoftDeleteRequest()
        entity = self.engine.soft_delete(
            actor_user,
            self.entity_type,
            entity_id,
            reason=dto.reason,
            notes=dto.notes,
            contact_action=getattr(dto, "contact_action", None),
        )
        return self.read_model.model_validate(entity)

    def restore(self, actor_user: ActorUser, entity_id: uuid.UUID) -> Any:
        entity = self.engine.restore(actor_user, self.entity_type, entity_id)
        return self.read_model.model_validate(entity)

    def delete_info(self, actor_user: ActorUser, entity_id: uuid.UUID) -> DeleteInfoRead:
        check = self.engine.delete_info(actor_user, self.entity_type, entity_id)
        return DeleteInfoRead(
            entity_type=self.entity_type,
            entity_id=entity_id,
            can_delete=check.can_delete,
            warnings=check.warnings,
            blockers=check.blockers,
            related=check.related,
        )

    def _load(self, actor_user: ActorUser, entity_id: uuid.UUID, *, include_deleted: bool = False) -> Any:
        entity = self.repository.find_one(actor_user.organization_id, entity_id, include_deleted=include_deleted)
        if entity is None:
            raise NotFoundError(f"{self.entity_type} not found")
        return entity

    def _publish(self, actor_user: ActorUser, event_type: str, payload: dict[str, Any]) -> None:
        events.publish(
            events.build_envelope(
                event_type,
                organization_id=actor_user.organization_id,
                actor_user_id=actor_user.user_id,
                payload=payload,
            )
        )


class LeadService(SoftDeleteService):
    entity_type = "lead"
    read_model = LeadRead

    def create_lead(self, actor_user: ActorUser, dto: LeadCreate) -> LeadCreateResult:
        lead, contact, deal = self.engine.create_lead(actor_user, dto)
        return LeadCreateResult(
            lead=LeadRead.model_validate(lead),
            contact=ContactRead.model_validate(contact),
            deal=DealRead.model_validate(deal) if deal is not None else None,
        )

    def update_lead(self, actor_user: ActorUser, lead_id: uuid.UUID, dto: LeadUpdate) -> LeadUpdateResult:
        lead, deal = self.engine.update_lead(actor_user, lead_id, dto)
        return LeadUpdateResult(
            lead=LeadRead.model_validate(lead),
            deal=DealRead.model_validate(deal) if deal is not None else None,
        )

    def delete(
        self,
        actor_user: ActorUser,
        entity_id: uuid.UUID,
        dto: SoftDeleteRequest | None = None,
    ) -> LeadRead:
        return super().delete(actor_user, entity_id, dto or LeadSoftDeleteRequest())

    def history(self, actor_user: ActorUser, lead_id: uuid.UUID) -> list[LeadHistoryRead]:
        self._load(actor_user, lead_id, include_deleted=True)
        rows = self.engine.history.list_for_lead(actor_user.organization_id, lead_id)
        return [LeadHistoryRead.model_validate(row) for row in rows]


class ContactService(SoftDeleteService):
    entity_type = "contact"
    read_model = ContactRead

    def create_contact(self, actor_user: ActorUser, dto: ContactCreate) -> ContactRead:
        if not dto.last_name.strip():
            raise ValidationError("Last Name is required", details={"missing_fields": ["last_name"]})

        contact = self.engine.contacts.insert(
            CRMContact(
                organization_id=actor_user.organization_id,
                first_name=dto.first_name,
                last_name=dto.last_name.strip(),
                email=dto.email,
                phone=dto.phone,
                company=dto.company,
                job_title=dto.job_title,
                lead_source=dto.lead_source,
                notes=dto.notes,
                created_by=actor_user.user_id,
            )
        )
        self.session.commit()
        self._publish(actor_user, "crm.contact.created", {"contact_id": str(contact.id)})
        return ContactRead.model_validate(contact)

    def update_contact(self, actor_user: ActorUser, contact_id: uuid.UUID, dto: ContactUpdate) -> ContactRead:
        contact = self._load(actor_user, contact_id)
        changes = _strip_required(_drop_nulls(dto.model_dump(exclude_unset=True), {"last_name"}), ("last_name",))
        if not changes:
            return ContactRead.model_validate(contact)

        self.engine.contacts.update(contact, changes, actor_user.user_id)
        self.session.commit()
        self._publish(
            actor_user,
            "crm.contact.updated",
            {"contact_id": str(contact.id), "changed_fields": sorted(changes)},
        )
        return ContactRead.model_validate(contact)


class DealService(SoftDeleteService):
    entity_type = "deal"
    read_model = DealRead

    def create_deal(self, actor_user: ActorUser, dto: DealCreate) -> DealRead:
        organization_id = actor_user.organization_id
        if self.engine.contacts.find_one(organization_id, dto.contact_id) is None:
            raise NotFoundError("contact not found")
        if dto.lead_id is not None and self.engine.leads.find_one(
            organization_id, dto.lead_id, include_deleted=True
        ) is None:
            raise NotFoundError("lead not found")

        stage = self._validate_stage(organization_id, dto.stage)
        probability = dto.probability if dto.probability is not None else self._stage_probability(organization_id, stage)
        actual_close_date = dto.actual_close_date
        if stage == "Closed Won" and actual_close_date is None:
            actual_close_date = date.today()

        deal = CRMDeal(
            organization_id=organization_id,
            deal_name=dto.deal_name,
            first_name=dto.first_name.strip(),
            last_name=dto.last_name.strip(),
            stage=stage,
            deal_type=dto.deal_type,
            close_date=dto.close_date,
            actual_close_date=actual_close_date,
            lead_source=dto.lead_source,
            owner_id=dto.owner_id or actor_user.user_id,
            amount=dto.amount,
            recurring_amount=dto.recurring_amount,
            currency=dto.currency,
            probability=probability,
            product=dto.product,
            description=dto.description,
            lead_id=dto.lead_id,
            contact_id=dto.contact_id,
            created_by=actor_user.user_id,
        )
        self._prepare_save(deal)
        self.engine.deals.insert(deal)
        self.session.commit()
        self._publish(actor_user, "crm.deal.created", {"deal_id": str(deal.id), "stage": deal.stage})

        self.engine.create_account_from_deal(actor_user, deal)
        return DealRead.model_validate(deal)

    def update_deal(self, actor_user: ActorUser, deal_id: uuid.UUID, dto: DealUpdate) -> DealRead:
        organization_id = actor_user.organization_id
        deal = self._load(actor_user, deal_id)
        changes = _drop_nulls(dto.model_dump(exclude_unset=True), NON_NULLABLE_DEAL_FIELDS)
        _strip_required(changes, ("first_name", "last_name"))
        previous_stage = deal.stage

        if "stage" in changes:
            changes["stage"] = self._validate_stage(organization_id, changes["stage"])
            if changes["stage"] != previous_stage and "probability" not in changes:
                configured = self.engine.deal_stages.find_active_by_name(organization_id, changes["stage"])
                if configured is not None:
                    changes["probability"] = configured.probability

        entering_won = changes.get("stage") == "Closed Won" and previous_stage != "Closed Won"
        if entering_won and changes.get("actual_close_date", deal.actual_close_date) is None:
            changes["actual_close_date"] = date.today()

        for field_name, value in changes.items():
            setattr(deal, field_name, value)
        self._prepare_save(deal)
        self.engine.deals.update(deal, {}, actor_user.user_id)
        self.session.commit()
        self._publish(
            actor_user,
            "crm.deal.updated",
            {"deal_id": str(deal.id), "stage": deal.stage, "changed_fields": sorted(changes)},
        )

        self.engine.create_account_from_deal(actor_user, deal)
        return DealRead.model_validate(deal)

    def active_stages(self, actor_user: ActorUser) -> list[dict[str, Any]]:
        configured = self.engine.deal_stages.list_active(actor_user.organization_id)
        if configured:
            return [
                {"name": stage.name, "order": stage.order, "probability": stage.probability, "color": stage.color}
                for stage in configured
            ]
        return [
            {"name": name, "order": position + 1, "probability": None, "color": None}
            for position, name in enumerate(BUILTIN_DEAL_STAGES)
        ]

    def _validate_stage(self, organization_id: uuid.UUID, stage: str) -> str:
        stage = stage.strip()
        if stage in BUILTIN_DEAL_STAGES:
            return stage
        if self.engine.deal_stages.find_active_by_name(organization_id, stage) is not None:
            return stage
        raise ValidationError(f"invalid deal stage: {stage}", details={"stage": stage})

    def _stage_probability(self, organization_id: uuid.UUID, stage: str) -> int:
        configured = self.engine.deal_stages.find_active_by_name(organization_id, stage)
        return configured.probability if configured is not None else 50

    @staticmethod
    def _prepare_save(deal: CRMDeal) -> None:
        deal.expected_revenue = round(float(deal.amount or 0) * deal.probability / 100, 2)
        deal.last_activity = utcnow()


class AccountService(SoftDeleteService):
    entity_type = "account"
    read_model = AccountRead

    def create_account(self, actor_user: ActorUser, dto: AccountCreate) -> AccountRead:
        organization_id = actor_user.organization_id
        if self.engine.contacts.find_one(organization_id, dto.contact_id) is None:
            raise NotFoundError("contact not found")

        start_date = dto.start_date or date.today()
        account = CRMAccount(
            organization_id=organization_id,
            account_number=self.engine.accounts.next_account_number(organization_id),
            account_name=dto.account_name.strip(),
            service_type=dto.service_type,
            status=dto.status,
            account_holder_name=dto.account_holder_name.strip(),
            account_holder_email=dto.account_holder_email,
            relationship=dto.relationship,
            current_monthly_price=dto.current_monthly_price,
            currency=dto.currency,
            billing_cycle=dto.billing_cycle,
            start_date=start_date,
            renewal_date=dto.renewal_date or renewal_date_for(start_date, dto.billing_cycle),
            last_payment_date=dto.last_payment_date,
            total_revenue=dto.total_revenue,
            notes=dto.notes,
            contact_id=dto.contact_id,
            created_by=actor_user.user_id,
        )
        try:
            self.engine.accounts.insert(account)
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            logger.warning(
                "crm.account.number_conflict",
                extra={"organization_id": str(organization_id), "entity_type": "account"},
            )
            raise ConflictError("account number already in use; retry the request") from exc

        self._publish(
            actor_user,
            "crm.account.created",
            {"account_id": str(account.id), "account_number": account.account_number},
        )
        return AccountRead.model_validate(account)

    def update_account(self, actor_user: ActorUser, account_id: uuid.UUID, dto: AccountUpdate) -> AccountRead:
        account = self._load(actor_user, account_id)
        changes = _drop_nulls(dto.model_dump(exclude_unset=True), NON_NULLABLE_ACCOUNT_FIELDS)
        _strip_required(changes, ("account_name", "account_holder_name"))
        if not changes:
            return AccountRead.model_validate(account)

        self.engine.accounts.update(account, changes, actor_user.user_id)
        self.session.commit()
        self._publish(
            actor_user,
            "crm.account.updated",
            {"account_id": str(account.id), "changed_fields": sorted(changes)},
        )
        return AccountRead.model_validate(account)
