from __future__ import annotations

import calendar
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy.orm import Session

from crm_backend import events
from crm_backend.core.auth import ActorUser
from crm_backend.core.config import get_settings as get_app_settings
from crm_backend.core.errors import ConflictError, DependencyCreationFailure, NotFoundError, ValidationError
from crm_backend.crm.history import HistoryRecorder
from crm_backend.crm.models import CRMAccount, CRMContact, CRMDeal, CRMLead, utcnow
from crm_backend.crm.repositories import (
    AccountRepository,
    ContactRepository,
    DealRepository,
    LeadRepository,
    SoftDeleteRepository,
)
from crm_backend.crm.schemas import LeadCreate, LeadUpdate
from crm_backend.crm.scoring import calculate_lead_score
from crm_backend.crm.settings import DealStageService, SettingsResolver
from crm_backend.metrics import observe_cascade, observe_soft_delete, observe_soft_delete_blocked

logger = logging.getLogger("crm_backend.crm.lifecycle")
tracer = trace.get_tracer("crm_backend.crm.lifecycle")

SERVICE_TYPES = {"basic", "premium", "enterprise", "family", "student"}
BILLING_CYCLE_MONTHS = {"monthly": 1, "quarterly": 3, "yearly": 12}
HIGH_VALUE_BUDGETS = {"5000+", "1000-5000"}
# Lead columns that may not be cleared through an update.
NON_NULLABLE_LEAD_FIELDS = {"last_name", "lead_source", "lead_stage", "budget", "timeline", "inquiry_type"}


def add_months(value: date, months: int) -> date:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def renewal_date_for(start_date: date, billing_cycle: str) -> date:
    return add_months(start_date, BILLING_CYCLE_MONTHS.get(billing_cycle, 1))


@dataclass
class DeleteCheck:
    can_delete: bool
    warnings: list[str] = field(default_factory=list)
    blockers: list[str] = field(default_factory=list)
    related: dict[str, int] = field(default_factory=dict)


class LifecycleEngine:
    """Cascade rules, deletion checks and scoring across Lead -> Contact -> Deal -> Account.

    Derived records are written in their own transaction after the primary
    write has been committed. A failing cascade is rolled back, logged and
    counted, and never surfaces to the caller.
    """

    def __init__(
        self,
        session: Session,
        *,
        leads: LeadRepository,
        contacts: ContactRepository,
        deals: DealRepository,
        accounts: AccountRepository,
        history: HistoryRecorder,
        settings: SettingsResolver,
        deal_stages: DealStageService,
    ) -> None:
        self.session = session
        self.leads = leads
        self.contacts = contacts
        self.deals = deals
        self.accounts = accounts
        self.history = history
        self.settings = settings
        self.deal_stages = deal_stages

    @classmethod
    def for_session(cls, session: Session) -> LifecycleEngine:
        return cls(
            session,
            leads=LeadRepository(session),
            contacts=ContactRepository(session),
            deals=DealRepository(session),
            accounts=AccountRepository(session),
            history=HistoryRecorder(session),
            settings=SettingsResolver(session),
            deal_stages=DealStageService(session),
        )

    # Leads

    def create_lead(
        self,
        actor_user: ActorUser,
        dto: LeadCreate,
    ) -> tuple[CRMLead, CRMContact, CRMDeal | None]:
        organization_id = actor_user.organization_id
        self._validate_new_lead(actor_user, dto)

        contact = self.contacts.insert(
            CRMContact(
                organization_id=organization_id,
                first_name=dto.first_name,
                last_name=dto.last_name.strip(),
                email=dto.email,
                phone=dto.phone,
                company=dto.company,
                job_title=dto.job_title,
                lead_source=dto.lead_source,
                created_by=actor_user.user_id,
            )
        )

        lead = CRMLead(
            organization_id=organization_id,
            first_name=dto.first_name,
            last_name=dto.last_name.strip(),
            email=dto.email,
            phone=dto.phone,
            company=dto.company,
            job_title=dto.job_title,
            lead_source=dto.lead_source,
            lead_stage=dto.lead_stage,
            budget=dto.budget,
            timeline=dto.timeline,
            inquiry_type=dto.inquiry_type,
            product_interest=dto.product_interest,
            notes=dto.notes,
            next_follow_up_date=dto.next_follow_up_date,
            contact_id=contact.id,
            created_by=actor_user.user_id,
        )
        self.apply_score(lead)
        self.leads.insert(lead)

        new_values = dto.model_dump(exclude_unset=True, exclude_none=True, mode="json")
        self.history.record(
            lead,
            "created",
            actor_id=actor_user.user_id,
            changes={key: "created" for key in new_values},
            old_values={},
            new_values=new_values,
        )
        self.session.commit()

        logger.info(
            "crm.lead.created",
            extra={
                "organization_id": str(organization_id),
                "entity_type": "lead",
                "entity_id": str(lead.id),
            },
        )
        self._publish(actor_user, "crm.lead.created", {"lead_id": str(lead.id), "contact_id": str(contact.id)})

        deal = None
        if lead.lead_stage == "Qualified":
            deal = self.create_deal_from_lead(actor_user, lead)
        return lead, contact, deal

    def update_lead(
        self,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
        dto: LeadUpdate,
    ) -> tuple[CRMLead, CRMDeal | None]:
        organization_id = actor_user.organization_id
        lead = self.leads.find_one(organization_id, lead_id)
        if lead is None:
            raise NotFoundError("lead not found")

        incoming = dto.model_dump(exclude_unset=True)
        for field_name in NON_NULLABLE_LEAD_FIELDS:
            if field_name in incoming and incoming[field_name] is None:
                incoming.pop(field_name)
        if "last_name" in incoming:
            if not incoming["last_name"].strip():
                raise ValidationError("Last Name is required", details={"missing_fields": ["last_name"]})
            incoming["last_name"] = incoming["last_name"].strip()
        if incoming.get("email") and incoming["email"] != lead.email:
            self._ensure_unique_email(organization_id, incoming["email"], exclude_id=lead.id)

        previous_stage = lead.lead_stage
        changes, old_values, new_values = self.history.diff(lead, incoming)

        self.leads.update(lead, incoming, actor_user.user_id)
        self.apply_score(lead)
        if changes:
            action = "status_changed" if "lead_stage" in changes else "updated"
            self.history.record(
                lead,
                action,
                actor_id=actor_user.user_id,
                changes=changes,
                old_values=old_values,
                new_values=new_values,
            )
        self.session.commit()

        self._publish(
            actor_user,
            "crm.lead.updated",
            {"lead_id": str(lead.id), "changed_fields": sorted(changes)},
        )

        deal = None
        if previous_stage != "Qualified" and lead.lead_stage == "Qualified":
            deal = self.create_deal_from_lead(actor_user, lead)
        return lead, deal

    def apply_score(self, lead: CRMLead) -> None:
        if lead.is_deleted:
            return
        lead.score = calculate_lead_score(
            lead_source=lead.lead_source,
            budget=lead.budget,
            timeline=lead.timeline,
            company=lead.company,
            job_title=lead.job_title,
            product_interest=lead.product_interest,
        )

    # Cascades

    def create_deal_from_lead(self, actor_user: ActorUser, lead: CRMLead) -> CRMDeal | None:
        lead_id = lead.id
        with tracer.start_as_current_span("crm.lifecycle.auto_create_deal") as span:
            span.set_attribute("lead_id", str(lead_id))
            span.set_attribute("organization_id", str(actor_user.organization_id))
            try:
                deal = self._create_deal_from_lead(actor_user, lead)
            except DependencyCreationFailure as exc:
                self.session.rollback()
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, exc.message))
                logger.exception(
                    "crm.cascade.failed",
                    extra={
                        "cascade": "lead_to_deal",
                        "organization_id": str(actor_user.organization_id),
                        "lead_id": str(lead_id),
                        "error": exc.message,
                    },
                )
                observe_cascade("lead_to_deal", "failure")
                return None

            if deal is None:
                observe_cascade("lead_to_deal", "skipped")
                return None

            span.set_attribute("deal_id", str(deal.id))
            observe_cascade("lead_to_deal", "success")
            logger.info(
                "crm.cascade.completed",
                extra={
                    "cascade": "lead_to_deal",
                    "organization_id": str(actor_user.organization_id),
                    "lead_id": str(lead_id),
                    "deal_id": str(deal.id),
                },
            )
            self._publish(actor_user, "crm.deal.created", {"deal_id": str(deal.id), "lead_id": str(lead_id)})
            return deal

    def _create_deal_from_lead(self, actor_user: ActorUser, lead: CRMLead) -> CRMDeal | None:
        organization_id = actor_user.organization_id
        lead_id = lead.id
        if self.deals.exists_for_lead(organization_id, lead.id):
            return None

        try:
            qualified_stage = self.deal_stages.find_active_by_name(organization_id, "Qualified")
            probability = qualified_stage.probability if qualified_stage is not None else 50
            auto_close_days = get_app_settings().deal_auto_close_days
            deal = CRMDeal(
                organization_id=organization_id,
                deal_name=f"{lead.full_name} - Qualified Lead",
                first_name=lead.first_name or "",
                last_name=lead.last_name,
                stage="Qualified",
                deal_type="new-business",
                close_date=date.today() + timedelta(days=auto_close_days),
                lead_source=lead.lead_source,
                owner_id=actor_user.user_id,
                amount=0,
                probability=probability,
                expected_revenue=0,
                lead_id=lead.id,
                contact_id=lead.contact_id,
                created_by=actor_user.user_id,
                last_activity=utcnow(),
            )
            self.deals.insert(deal)
            self.session.commit()
        except Exception as exc:
            raise DependencyCreationFailure(
                "deal",
                f"could not create deal from lead: {exc}",
                details={"lead_id": str(lead_id)},
            ) from exc
        return deal

    def create_account_from_deal(self, actor_user: ActorUser, deal: CRMDeal) -> CRMAccount | None:
        if (
            deal.stage != "Closed Won"
            or deal.deal_type != "account-setup"
            or deal.account_id is not None
            or deal.is_deleted
        ):
            return None

        deal_id = deal.id
        with tracer.start_as_current_span("crm.lifecycle.auto_create_account") as span:
            span.set_attribute("deal_id", str(deal_id))
            span.set_attribute("organization_id", str(actor_user.organization_id))
            try:
                account, outcome = self._create_account_from_deal(actor_user, deal)
            except DependencyCreationFailure as exc:
                self.session.rollback()
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, exc.message))
                logger.exception(
                    "crm.cascade.failed",
                    extra={
                        "cascade": "deal_to_account",
                        "organization_id": str(actor_user.organization_id),
                        "deal_id": str(deal_id),
                        "error": exc.message,
                    },
                )
                observe_cascade("deal_to_account", "failure")
                return None

            span.set_attribute("account_id", str(account.id))
            observe_cascade("deal_to_account", outcome)
            logger.info(
                "crm.cascade.completed",
                extra={
                    "cascade": "deal_to_account",
                    "organization_id": str(actor_user.organization_id),
                    "deal_id": str(deal_id),
                    "account_id": str(account.id),
                },
            )
            if outcome == "success":
                self._publish(
                    actor_user,
                    "crm.account.created",
                    {"account_id": str(account.id), "deal_id": str(deal_id)},
                )
            return account

    def _create_account_from_deal(self, actor_user: ActorUser, deal: CRMDeal) -> tuple[CRMAccount, str]:
        organization_id = actor_user.organization_id
        try:
            existing = self.accounts.find_by_deal(organization_id, deal.id)
            if existing is not None:
                account, outcome = existing, "relinked"
            else:
                account, outcome = self._build_account(actor_user, deal), "success"
                self.accounts.insert(account)
                self.session.commit()
        except Exception as exc:
            raise DependencyCreationFailure(
                "account",
                f"could not create account from deal: {exc}",
                details={"deal_id": str(deal.id)},
            ) from exc

        self._link_account(actor_user, deal, account)
        return account, outcome

    def _build_account(self, actor_user: ActorUser, deal: CRMDeal) -> CRMAccount:
        organization_id = actor_user.organization_id
        contact = self.contacts.find_one(organization_id, deal.contact_id, include_deleted=True)
        contact_name = contact.full_name if contact is not None else f"{deal.first_name} {deal.last_name}".strip()
        start_date = deal.actual_close_date or date.today()
        return CRMAccount(
            organization_id=organization_id,
            account_number=self.accounts.next_account_number(organization_id),
            account_name=f"{deal.product or 'Service'} - {contact_name}",
            service_type=deal.product if deal.product in SERVICE_TYPES else "basic",
            status="active",
            account_holder_name=f"{deal.first_name} {deal.last_name}".strip(),
            account_holder_email=contact.email if contact is not None else None,
            relationship="self",
            current_monthly_price=deal.recurring_amount or deal.amount or 0,
            currency=deal.currency,
            billing_cycle="monthly",
            start_date=start_date,
            renewal_date=add_months(start_date, 1),
            contact_id=deal.contact_id,
            deal_id=deal.id,
            created_by=actor_user.user_id,
        )

    def _link_account(self, actor_user: ActorUser, deal: CRMDeal, account: CRMAccount) -> None:
        try:
            deal.account_id = account.id
            deal.last_modified_by = actor_user.user_id
            self.session.add(deal)
            self.session.commit()
        except Exception as exc:
            raise DependencyCreationFailure(
                "account",
                f"could not link account to deal: {exc}",
                details={"deal_id": str(deal.id), "account_id": str(account.id)},
            ) from exc

    # Soft delete

    def repository_for(self, entity_type: str) -> SoftDeleteRepository[Any]:
        repositories: dict[str, SoftDeleteRepository[Any]] = {
            "lead": self.leads,
            "contact": self.contacts,
            "deal": self.deals,
            "account": self.accounts,
        }
        if entity_type not in repositories:
            raise ValidationError(f"unsupported entity type: {entity_type}")
        return repositories[entity_type]

    def can_be_deleted(self, entity_type: str, entity: Any) -> DeleteCheck:
        if entity_type == "lead":
            return self._lead_delete_check(entity)
        if entity_type == "deal":
            return self._deal_delete_check(entity)
        if entity_type == "account":
            return self._account_delete_check(entity)
        if entity_type == "contact":
            return self._contact_delete_check(entity)
        raise ValidationError(f"unsupported entity type: {entity_type}")

    def delete_info(self, actor_user: ActorUser, entity_type: str, entity_id: uuid.UUID) -> DeleteCheck:
        entity = self.repository_for(entity_type).find_one(actor_user.organization_id, entity_id, include_deleted=True)
        if entity is None:
            raise NotFoundError(f"{entity_type} not found")
        return self.can_be_deleted(entity_type, entity)

    def soft_delete(
        self,
        actor_user: ActorUser,
        entity_type: str,
        entity_id: uuid.UUID,
        *,
        reason: str,
        notes: str | None = None,
        contact_action: str | None = None,
    ) -> Any:
        organization_id = actor_user.organization_id
        repository = self.repository_for(entity_type)
        entity = repository.find_one(organization_id, entity_id)
        if entity is None:
            raise NotFoundError(f"{entity_type} not found")

        check = self.can_be_deleted(entity_type, entity)
        if check.blockers:
            observe_soft_delete_blocked(entity_type)
            logger.info(
                "crm.soft_delete.blocked",
                extra={
                    "organization_id": str(organization_id),
                    "entity_type": entity_type,
                    "entity_id": str(entity_id),
                },
            )
            raise ConflictError(
                f"Cannot delete {entity_type}: " + "; ".join(check.blockers),
                details={"blockers": check.blockers, "warnings": check.warnings},
            )

        with tracer.start_as_current_span("crm.lifecycle.soft_delete") as span:
            span.set_attribute("entity_type", entity_type)
            span.set_attribute("entity_id", str(entity_id))

            if entity_type == "lead":
                self.history.record(
                    entity,
                    "deleted",
                    actor_id=actor_user.user_id,
                    changes={"is_deleted": True},
                    old_values={"is_deleted": False},
                    new_values={"is_deleted": True, "deletion_reason": reason, "deletion_notes": notes},
                )
                if contact_action is not None:
                    self._annotate_contact(actor_user, entity, reason, contact_action)

            if not repository.soft_delete(
                organization_id,
                entity_id,
                actor_id=actor_user.user_id,
                reason=reason,
                notes=notes,
            ):
                self.session.rollback()
                raise NotFoundError(f"{entity_type} not found")
            self.session.commit()

        observe_soft_delete(entity_type, "delete")
        logger.info(
            "crm.soft_delete.completed",
            extra={"organization_id": str(organization_id), "entity_type": entity_type, "entity_id": str(entity_id)},
        )
        self._publish(actor_user, f"crm.{entity_type}.deleted", {f"{entity_type}_id": str(entity_id), "reason": reason})
        self.session.refresh(entity)
        return entity

    def restore(self, actor_user: ActorUser, entity_type: str, entity_id: uuid.UUID) -> Any:
        organization_id = actor_user.organization_id
        repository = self.repository_for(entity_type)
        entity = repository.find_one(organization_id, entity_id, deleted_only=True)
        if entity is None:
            raise NotFoundError(f"{entity_type} not found")

        with tracer.start_as_current_span("crm.lifecycle.restore") as span:
            span.set_attribute("entity_type", entity_type)
            span.set_attribute("entity_id", str(entity_id))

            if entity_type == "lead":
                self.history.record(
                    entity,
                    "restored",
                    actor_id=actor_user.user_id,
                    changes={"is_deleted": False},
                    old_values={"is_deleted": True, "deletion_reason": entity.deletion_reason},
                    new_values={"is_deleted": False},
                )
            if not repository.restore(organization_id, entity_id, actor_id=actor_user.user_id):
                self.session.rollback()
                raise NotFoundError(f"{entity_type} not found")
            self.session.commit()

        observe_soft_delete(entity_type, "restore")
        logger.info(
            "crm.soft_delete.restored",
            extra={"organization_id": str(organization_id), "entity_type": entity_type, "entity_id": str(entity_id)},
        )
        self._publish(actor_user, f"crm.{entity_type}.restored", {f"{entity_type}_id": str(entity_id)})
        self.session.refresh(entity)
        return entity

    def _annotate_contact(self, actor_user: ActorUser, lead: CRMLead, reason: str, contact_action: str) -> None:
        contact = self.contacts.find_one(actor_user.organization_id, lead.contact_id, include_deleted=True)
        if contact is None:
            return
        line = f"[{date.today().isoformat()}] Lead {lead.full_name} deleted ({reason}); contact action: {contact_action}"
        contact.notes = f"{contact.notes}\n{line}" if contact.notes else line
        contact.last_modified_by = actor_user.user_id
        self.session.add(contact)
        self.session.flush()

    def _lead_delete_check(self, lead: CRMLead) -> DeleteCheck:
        blockers: list[str] = []
        warnings: list[str] = []
        if lead.converted_date is not None:
            blockers.append("Lead has already been converted")
        if lead.lead_stage == "Won":
            blockers.append("Lead is marked as Won")

        if lead.lead_stage == "Qualified":
            warnings.append("Lead is qualified")
        if lead.score > 70:
            warnings.append(f"Lead has a high score ({lead.score})")
        if lead.next_follow_up_date is not None and lead.next_follow_up_date > date.today():
            warnings.append(f"Follow-up scheduled for {lead.next_follow_up_date.isoformat()}")
        if lead.budget in HIGH_VALUE_BUDGETS or lead.timeline == "immediate":
            warnings.append("Lead has a high budget or an immediate timeline")

        related = {"deals": self.deals.count(lead.organization_id, lead_id=lead.id)}
        return DeleteCheck(can_delete=not blockers, warnings=warnings, blockers=blockers, related=related)

    def _deal_delete_check(self, deal: CRMDeal) -> DeleteCheck:
        blockers: list[str] = []
        warnings: list[str] = []
        if deal.stage == "Closed Won":
            blockers.append("Deal is Closed Won")
        if deal.account_id is not None:
            account = self.accounts.find_one(deal.organization_id, deal.account_id, include_deleted=True)
            label = account.account_number if account is not None else str(deal.account_id)
            blockers.append(f"Deal is linked to account {label}")

        if deal.stage in {"Proposal", "Negotiation"}:
            warnings.append(f"Deal is in {deal.stage} stage")
        if float(deal.amount or 0) > 10000:
            warnings.append(f"Deal amount is {float(deal.amount):.2f}")
        today = date.today()
        if today <= deal.close_date <= today + timedelta(days=7):
            warnings.append("Deal closes within 7 days")

        related = {"accounts": 1 if deal.account_id is not None else 0}
        return DeleteCheck(can_delete=not blockers, warnings=warnings, blockers=blockers, related=related)

    def _account_delete_check(self, account: CRMAccount) -> DeleteCheck:
        blockers: list[str] = []
        warnings: list[str] = []
        if account.status == "active":
            blockers.append("Account is active; change its status before deleting")

        today = date.today()
        if account.last_payment_date is not None and today - timedelta(days=30) <= account.last_payment_date <= today:
            warnings.append("Account received a payment within the last 30 days")
        if float(account.total_revenue or 0) > 5000:
            warnings.append(f"Account total revenue is {float(account.total_revenue):.2f}")
        if account.renewal_date > today:
            warnings.append(f"Account renews on {account.renewal_date.isoformat()}")

        related = {"deals": self.deals.count(account.organization_id, account_id=account.id)}
        return DeleteCheck(can_delete=not blockers, warnings=warnings, blockers=blockers, related=related)

    def _contact_delete_check(self, contact: CRMContact) -> DeleteCheck:
        organization_id = contact.organization_id
        related = {
            "leads": self.leads.count(organization_id, contact_id=contact.id),
            "deals": self.deals.count(organization_id, contact_id=contact.id),
            "accounts": self.accounts.count(organization_id, contact_id=contact.id),
        }
        warnings = [f"Contact has {count} active {name}" for name, count in related.items() if count]
        return DeleteCheck(can_delete=True, warnings=warnings, blockers=[], related=related)

    # Validation

    def _validate_new_lead(self, actor_user: ActorUser, dto: LeadCreate) -> None:
        organization_id = actor_user.organization_id
        if not dto.last_name.strip():
            raise ValidationError("Last Name is required", details={"missing_fields": ["last_name"]})

        missing: list[str] = []
        for field_name in self.settings.required_fields(organization_id, actor_user.user_id):
            if field_name not in LeadCreate.model_fields:
                continue
            value = getattr(dto, field_name)
            if value is None or (isinstance(value, str) and not value.strip()):
                missing.append(field_name)
        if missing:
            raise ValidationError("required lead fields are missing", details={"missing_fields": missing})

        if self.settings.setting(organization_id, actor_user.user_id, "require_contact_method", False):
            if not dto.email and not dto.phone:
                raise ValidationError(
                    "Either email or phone is required",
                    details={"missing_fields": ["email", "phone"]},
                )

        if dto.email:
            self._ensure_unique_email(organization_id, dto.email)

    def _ensure_unique_email(
        self,
        organization_id: uuid.UUID,
        email: str,
        *,
        exclude_id: uuid.UUID | None = None,
    ) -> None:
        if not get_app_settings().enforce_unique_lead_email:
            return
        if self.leads.email_taken(organization_id, email, exclude_id=exclude_id):
            raise ConflictError("a lead with this email already exists", details={"email": email})

    def _publish(self, actor_user: ActorUser, event_type: str, payload: dict[str, Any]) -> None:
        events.publish(
            events.build_envelope(
                event_type,
                organization_id=actor_user.organization_id,
                actor_user_id=actor_user.user_id,
                payload=payload,
            )
        )
