from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from crm_backend.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrganizationOwnedMixin:
    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    created_by: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    last_modified_by: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


class SoftDeleteMixin:
    """Deletion envelope. All fields are written together by the repository."""

    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_by: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    deletion_reason: Mapped[str | None] = mapped_column(String(32), nullable=True)
    deletion_notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class CRMContact(OrganizationOwnedMixin, SoftDeleteMixin, Base):
    __tablename__ = "crm_contact"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    first_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str | None] = mapped_column(Text, nullable=True)
    phone: Mapped[str | None] = mapped_column(Text, nullable=True)
    company: Mapped[str | None] = mapped_column(Text, nullable=True)
    job_title: Mapped[str | None] = mapped_column(Text, nullable=True)
    lead_source: Mapped[str | None] = mapped_column(String(32), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_crm_contact_org_deleted", "organization_id", "is_deleted"),
        Index("ix_crm_contact_email", "email"),
    )

    @property
    def full_name(self) -> str:
        parts = [part.strip() for part in (self.first_name, self.last_name) if part and part.strip()]
        return " ".join(parts)


class CRMLead(OrganizationOwnedMixin, SoftDeleteMixin, Base):
    __tablename__ = "crm_lead"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    first_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str | None] = mapped_column(Text, nullable=True)
    phone: Mapped[str | None] = mapped_column(Text, nullable=True)
    company: Mapped[str | None] = mapped_column(Text, nullable=True)
    job_title: Mapped[str | None] = mapped_column(Text, nullable=True)
    lead_source: Mapped[str] = mapped_column(String(32), nullable=False, default="other", server_default="other")
    lead_stage: Mapped[str] = mapped_column(String(32), nullable=False, default="New", server_default="New")
    budget: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default="not-specified",
        server_default="not-specified",
    )
    timeline: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default="not-specified",
        server_default="not-specified",
    )
    inquiry_type: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default="new-account",
        server_default="new-account",
    )
    product_interest: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_follow_up_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    converted_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    score: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    contact_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_contact.id", ondelete="RESTRICT"),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_crm_lead_org_deleted", "organization_id", "is_deleted"),
        Index("ix_crm_lead_org_stage", "organization_id", "lead_stage"),
        Index("ix_crm_lead_email", "email"),
        Index("ix_crm_lead_contact", "contact_id"),
    )

    @property
    def full_name(self) -> str:
        parts = [part.strip() for part in (self.first_name, self.last_name) if part and part.strip()]
        return " ".join(parts)


class CRMDeal(OrganizationOwnedMixin, SoftDeleteMixin, Base):
    __tablename__ = "crm_deal"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    deal_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    first_name: Mapped[str] = mapped_column(Text, nullable=False)
    last_name: Mapped[str] = mapped_column(Text, nullable=False)
    stage: Mapped[str] = mapped_column(String(64), nullable=False, default="Qualified", server_default="Qualified")
    deal_type: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default="new-business",
        server_default="new-business",
    )
    close_date: Mapped[date] = mapped_column(Date, nullable=False)
    actual_close_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    lead_source: Mapped[str | None] = mapped_column(String(32), nullable=True)
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    amount: Mapped[float] = mapped_column(Numeric(18, 2), nullable=False, default=0, server_default="0")
    recurring_amount: Mapped[float | None] = mapped_column(Numeric(18, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="USD", server_default="USD")
    probability: Mapped[int] = mapped_column(Integer, nullable=False, default=50, server_default="50")
    expected_revenue: Mapped[float] = mapped_column(Numeric(18, 2), nullable=False, default=0, server_default="0")
    product: Mapped[str | None] = mapped_column(Text, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    lead_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_lead.id", ondelete="SET NULL"),
        nullable=True,
    )
    contact_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_contact.id", ondelete="RESTRICT"),
        nullable=False,
    )
    account_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_account.id", ondelete="SET NULL"),
        nullable=True,
    )
    last_activity: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_crm_deal_org_deleted", "organization_id", "is_deleted"),
        Index("ix_crm_deal_org_stage", "organization_id", "stage"),
        Index("ix_crm_deal_lead", "lead_id"),
        Index("ix_crm_deal_contact", "contact_id"),
        Index("ix_crm_deal_close_date", "close_date"),
    )


class CRMAccount(OrganizationOwnedMixin, SoftDeleteMixin, Base):
    __tablename__ = "crm_account"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_number: Mapped[str] = mapped_column(String(32), nullable=False)
    account_name: Mapped[str] = mapped_column(Text, nullable=False)
    service_type: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending", server_default="pending")
    account_holder_name: Mapped[str] = mapped_column(Text, nullable=False)
    account_holder_email: Mapped[str | None] = mapped_column(Text, nullable=True)
    relationship: Mapped[str] = mapped_column(String(32), nullable=False, default="self", server_default="self")
    current_monthly_price: Mapped[float] = mapped_column(Numeric(18, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="USD", server_default="USD")
    billing_cycle: Mapped[str] = mapped_column(String(16), nullable=False, default="monthly", server_default="monthly")
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    renewal_date: Mapped[date] = mapped_column(Date, nullable=False)
    last_payment_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    total_revenue: Mapped[float] = mapped_column(Numeric(18, 2), nullable=False, default=0, server_default="0")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    contact_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_contact.id", ondelete="RESTRICT"),
        nullable=False,
    )
    deal_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("account_number", name="uq_crm_account_number"),
        Index("ix_crm_account_org_deleted", "organization_id", "is_deleted"),
        Index("ix_crm_account_contact", "contact_id"),
        Index("ix_crm_account_deal", "deal_id"),
        Index("ix_crm_account_renewal", "renewal_date"),
    )


class CRMDealStage(Base):
    __tablename__ = "crm_deal_stage"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    order: Mapped[int] = mapped_column(Integer, nullable=False)
    probability: Mapped[int] = mapped_column(Integer, nullable=False, default=50, server_default="50")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    color: Mapped[str] = mapped_column(String(16), nullable=False, default="#3B82F6", server_default="#3B82F6")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (
        Index("ix_crm_deal_stage_org_order", "organization_id", "order"),
        Index("ix_crm_deal_stage_org_active", "organization_id", "is_active"),
    )


class CRMLeadHistory(Base):
    __tablename__ = "crm_lead_history"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    lead_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    changes: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    old_values: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    new_values: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (Index("ix_crm_lead_history_lead", "organization_id", "lead_id", "created_at"),)


class CRMSettings(Base):
    __tablename__ = "crm_settings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    lead_fields: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    lead_sources: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    lead_stages: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    settings: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_by: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    last_modified_by: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (UniqueConstraint("organization_id", name="uq_crm_settings_organization"),)
