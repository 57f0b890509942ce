from __future__ import annotations

import uuid
from typing import Any, Generic, TypeVar

from sqlalchemy import Select, func, select, update
from sqlalchemy.orm import Session

from crm_backend.crm.models import CRMAccount, CRMContact, CRMDeal, CRMLead, utcnow

ModelT = TypeVar("ModelT", CRMLead, CRMContact, CRMDeal, CRMAccount)


class SoftDeleteRepository(Generic[ModelT]):
    """Organization-scoped persistence for entities carrying the deletion envelope.

    Every read and write is filtered by ``organization_id``; a row owned by
    another organization is indistinguishable from a missing one. The
    repository flushes but never commits, so the caller owns the transaction.
    """

    model: type[ModelT]
    entity_type = ""

    def __init__(self, session: Session) -> None:
        self.session = session

    def apply_scope_query(self, query: Select[Any], organization_id: uuid.UUID) -> Select[Any]:
        return query.where(self.model.organization_id == organization_id)

    def apply_deletion_filter(
        self,
        query: Select[Any],
        *,
        include_deleted: bool = False,
        deleted_only: bool = False,
    ) -> Select[Any]:
        if deleted_only:
            return query.where(self.model.is_deleted.is_(True))
        if include_deleted:
            return query
        return query.where(self.model.is_deleted.is_(False))

    def find(
        self,
        organization_id: uuid.UUID,
        *,
        filters: dict[str, Any] | None = None,
        include_deleted: bool = False,
        deleted_only: bool = False,
    ) -> list[ModelT]:
        stmt = self.apply_scope_query(select(self.model), organization_id)
        stmt = self.apply_deletion_filter(stmt, include_deleted=include_deleted, deleted_only=deleted_only)
        for field_name, value in (filters or {}).items():
            if value is None:
                continue
            stmt = stmt.where(getattr(self.model, field_name) == value)
        stmt = stmt.order_by(self.model.created_at.desc())
        return list(self.session.scalars(stmt).all())

    def find_one(
        self,
        organization_id: uuid.UUID,
        entity_id: uuid.UUID,
        *,
        include_deleted: bool = False,
        deleted_only: bool = False,
    ) -> ModelT | None:
        stmt = self.apply_scope_query(select(self.model).where(self.model.id == entity_id), organization_id)
        stmt = self.apply_deletion_filter(stmt, include_deleted=include_deleted, deleted_only=deleted_only)
        return self.session.scalar(stmt)

    def count(self, organization_id: uuid.UUID, *, include_deleted: bool = False, **filters: Any) -> int:
        stmt = self.apply_scope_query(select(func.count()).select_from(self.model), organization_id)
        stmt = self.apply_deletion_filter(stmt, include_deleted=include_deleted)
        for field_name, value in filters.items():
            stmt = stmt.where(getattr(self.model, field_name) == value)
        return int(self.session.scalar(stmt) or 0)

    def insert(self, entity: ModelT) -> ModelT:
        self.session.add(entity)
        self.session.flush()
        return entity

    def update(self, entity: ModelT, changes: dict[str, Any], actor_id: uuid.UUID) -> ModelT:
        for field_name, value in changes.items():
            setattr(entity, field_name, value)
        entity.last_modified_by = actor_id
        self.session.add(entity)
        self.session.flush()
        return entity

    def soft_delete(
        self,
        organization_id: uuid.UUID,
        entity_id: uuid.UUID,
        *,
        actor_id: uuid.UUID,
        reason: str,
        notes: str | None,
    ) -> bool:
        now = utcnow()
        result = self.session.execute(
            update(self.model)
            .where(
                self.model.id == entity_id,
                self.model.organization_id == organization_id,
                self.model.is_deleted.is_(False),
            )
            .values(
                is_deleted=True,
                deleted_at=now,
                deleted_by=actor_id,
                deletion_reason=reason,
                deletion_notes=notes,
                last_modified_by=actor_id,
                updated_at=now,
            )
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount == 1

    def restore(self, organization_id: uuid.UUID, entity_id: uuid.UUID, *, actor_id: uuid.UUID) -> bool:
        result = self.session.execute(
            update(self.model)
            .where(
                self.model.id == entity_id,
                self.model.organization_id == organization_id,
                self.model.is_deleted.is_(True),
            )
            .values(
                is_deleted=False,
                deleted_at=None,
                deleted_by=None,
                deletion_reason=None,
                deletion_notes=None,
                last_modified_by=actor_id,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount == 1


class ContactRepository(SoftDeleteRepository[CRMContact]):
    model = CRMContact
    entity_type = "contact"


class LeadRepository(SoftDeleteRepository[CRMLead]):
    model = CRMLead
    entity_type = "lead"

    def email_taken(self, organization_id: uuid.UUID, email: str, *, exclude_id: uuid.UUID | None = None) -> bool:
        stmt = self.apply_scope_query(
            select(CRMLead.id).where(
                func.lower(CRMLead.email) == email.lower(),
                CRMLead.is_deleted.is_(False),
            ),
            organization_id,
        )
        if exclude_id is not None:
            stmt = stmt.where(CRMLead.id != exclude_id)
        return self.session.scalar(stmt.limit(1)) is not None


class DealRepository(SoftDeleteRepository[CRMDeal]):
    model = CRMDeal
    entity_type = "deal"

    def exists_for_lead(self, organization_id: uuid.UUID, lead_id: uuid.UUID) -> bool:
        """Soft-deleted deals still count: a lead is only auto-converted once."""
        stmt = self.apply_scope_query(select(CRMDeal.id).where(CRMDeal.lead_id == lead_id), organization_id)
        return self.session.scalar(stmt.limit(1)) is not None

    def stage_in_use(self, organization_id: uuid.UUID, stage_name: str) -> int:
        return self.count(organization_id, stage=stage_name)


class AccountRepository(SoftDeleteRepository[CRMAccount]):
    model = CRMAccount
    entity_type = "account"

    def find_by_deal(self, organization_id: uuid.UUID, deal_id: uuid.UUID) -> CRMAccount | None:
        stmt = self.apply_scope_query(select(CRMAccount).where(CRMAccount.deal_id == deal_id), organization_id)
        return self.session.scalar(stmt.order_by(CRMAccount.created_at.asc()).limit(1))

    def next_account_number(self, organization_id: uuid.UUID) -> str:
        # count + 1 is not race-safe; uq_crm_account_number rejects the loser.
        sequence = self.count(organization_id, include_deleted=True) + 1
        prefix = organization_id.hex[-6:].upper()
        return f"ACC-{prefix}-{sequence:04d}"
