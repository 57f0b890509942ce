from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator


LeadSource = Literal[
    "website",
    "social-media",
    "referral",
    "email-campaign",
    "cold-call",
    "trade-show",
    "google-ads",
    "linkedin",
    "other",
]
LeadStage = Literal["New", "Contacted", "Qualified", "Lost", "Won"]
Budget = Literal["5000+", "1000-5000", "500-1000", "100-500", "under-100", "not-specified"]
Timeline = Literal["immediate", "1-month", "1-3-months", "3-6-months", "6-12-months", "not-specified"]
DealType = Literal["new-business", "account-setup", "upgrade", "renewal", "other"]
Currency = Literal["USD", "EUR", "GBP", "CAD", "AUD", "INR"]
ServiceType = Literal["basic", "premium", "enterprise", "family", "student"]
AccountStatus = Literal["active", "inactive", "suspended", "cancelled", "expired", "pending"]
AccountRelationship = Literal["self", "spouse", "child", "parent", "sibling", "friend", "employee", "other"]
BillingCycle = Literal["monthly", "quarterly", "yearly"]
DeletionReason = Literal[
    "duplicate",
    "spam",
    "invalid_data",
    "customer_request",
    "no_longer_relevant",
    "test_data",
    "other",
]
ContactAction = Literal["delete", "keep", "convert"]


class SoftDeleteRead(BaseModel):
    is_deleted: bool
    deleted_at: datetime | None
    deleted_by: UUID | None
    deletion_reason: str | None
    deletion_notes: str | None


class SoftDeleteRequest(BaseModel):
    reason: DeletionReason = "other"
    notes: str | None = Field(default=None, max_length=1000)


class LeadSoftDeleteRequest(SoftDeleteRequest):
    contact_action: ContactAction | None = None


class DeleteInfoRead(BaseModel):
    entity_type: str
    entity_id: UUID
    can_delete: bool
    warnings: list[str] = Field(default_factory=list)
    blockers: list[str] = Field(default_factory=list)
    related: dict[str, int] = Field(default_factory=dict)


class ContactCreate(BaseModel):
    first_name: str | None = None
    last_name: str = Field(min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    company: str | None = None
    job_title: str | None = None
    lead_source: LeadSource | None = None
    notes: str | None = None


class ContactUpdate(BaseModel):
    first_name: str | None = None
    last_name: str | None = None
    email: EmailStr | None = None
    phone: str | None = None
    company: str | None = None
    job_title: str | None = None
    lead_source: LeadSource | None = None
    notes: str | None = None


class ContactRead(SoftDeleteRead):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    first_name: str | None
    last_name: str
    full_name: str
    email: str | None
    phone: str | None
    company: str | None
    job_title: str | None
    lead_source: str | None
    notes: str | None
    created_by: UUID
    last_modified_by: UUID | None
    created_at: datetime
    updated_at: datetime


class LeadCreate(BaseModel):
    first_name: str | None = None
    last_name: str = Field(min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    company: str | None = None
    job_title: str | None = None
    lead_source: LeadSource = "other"
    lead_stage: LeadStage = "New"
    budget: Budget = "not-specified"
    timeline: Timeline = "not-specified"
    inquiry_type: str = "new-account"
    product_interest: str | None = None
    notes: str | None = None
    next_follow_up_date: date | None = None


class LeadUpdate(BaseModel):
    first_name: str | None = None
    last_name: str | None = None
    email: EmailStr | None = None
    phone: str | None = None
    company: str | None = None
    job_title: str | None = None
    lead_source: LeadSource | None = None
    lead_stage: LeadStage | None = None
    budget: Budget | None = None
    timeline: Timeline | None = None
    inquiry_type: str | None = None
    product_interest: str | None = None
    notes: str | None = None
    next_follow_up_date: date | None = None
    converted_date: datetime | None = None


class LeadRead(SoftDeleteRead):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    first_name: str | None
    last_name: str
    full_name: str
    email: str | None
    phone: str | None
    company: str | None
    job_title: str | None
    lead_source: str
    lead_stage: str
    budget: str
    timeline: str
    inquiry_type: str
    product_interest: str | None
    notes: str | None
    next_follow_up_date: date | None
    converted_date: datetime | None
    score: int
    contact_id: UUID
    created_by: UUID
    last_modified_by: UUID | None
    created_at: datetime
    updated_at: datetime


class DealCreate(BaseModel):
    deal_name: str | None = None
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    stage: str = "Qualified"
    deal_type: DealType = "new-business"
    close_date: date
    actual_close_date: date | None = None
    lead_source: LeadSource | None = None
    owner_id: UUID | None = None
    amount: float = Field(default=0, ge=0)
    recurring_amount: float | None = Field(default=None, ge=0)
    currency: Currency = "USD"
    probability: int | None = Field(default=None, ge=0, le=100)
    product: str | None = None
    description: str | None = None
    lead_id: UUID | None = None
    contact_id: UUID


class DealUpdate(BaseModel):
    deal_name: str | None = None
    first_name: str | None = Field(default=None, min_length=1)
    last_name: str | None = Field(default=None, min_length=1)
    stage: str | None = None
    deal_type: DealType | None = None
    close_date: date | None = None
    actual_close_date: date | None = None
    lead_source: LeadSource | None = None
    owner_id: UUID | None = None
    amount: float | None = Field(default=None, ge=0)
    recurring_amount: float | None = Field(default=None, ge=0)
    currency: Currency | None = None
    probability: int | None = Field(default=None, ge=0, le=100)
    product: str | None = None
    description: str | None = None


class DealRead(SoftDeleteRead):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    deal_name: str | None
    first_name: str
    last_name: str
    stage: str
    deal_type: str
    close_date: date
    actual_close_date: date | None
    lead_source: str | None
    owner_id: UUID
    amount: float
    recurring_amount: float | None
    currency: str
    probability: int
    expected_revenue: float
    product: str | None
    description: str | None
    lead_id: UUID | None
    contact_id: UUID
    account_id: UUID | None
    last_activity: datetime
    created_by: UUID
    last_modified_by: UUID | None
    created_at: datetime
    updated_at: datetime


class AccountCreate(BaseModel):
    account_name: str = Field(min_length=1)
    service_type: ServiceType
    status: AccountStatus = "pending"
    account_holder_name: str = Field(min_length=1)
    account_holder_email: EmailStr | None = None
    relationship: AccountRelationship = "self"
    current_monthly_price: float = Field(ge=0)
    currency: Currency = "USD"
    billing_cycle: BillingCycle = "monthly"
    start_date: date | None = None
    renewal_date: date | None = None
    last_payment_date: date | None = None
    total_revenue: float = Field(default=0, ge=0)
    notes: str | None = None
    contact_id: UUID


class AccountUpdate(BaseModel):
    account_name: str | None = Field(default=None, min_length=1)
    service_type: ServiceType | None = None
    status: AccountStatus | None = None
    account_holder_name: str | None = Field(default=None, min_length=1)
    account_holder_email: EmailStr | None = None
    relationship: AccountRelationship | None = None
    current_monthly_price: float | None = Field(default=None, ge=0)
    currency: Currency | None = None
    billing_cycle: BillingCycle | None = None
    start_date: date | None = None
    renewal_date: date | None = None
    last_payment_date: date | None = None
    total_revenue: float | None = Field(default=None, ge=0)
    notes: str | None = None


class AccountRead(SoftDeleteRead):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    account_number: str
    account_name: str
    service_type: str
    status: str
    account_holder_name: str
    account_holder_email: str | None
    relationship: str
    current_monthly_price: float
    currency: str
    billing_cycle: str
    start_date: date
    renewal_date: date
    last_payment_date: date | None
    total_revenue: float
    notes: str | None
    contact_id: UUID
    deal_id: UUID | None
    created_by: UUID
    last_modified_by: UUID | None
    created_at: datetime
    updated_at: datetime


class LeadCreateResult(BaseModel):
    lead: LeadRead
    contact: ContactRead
    deal: DealRead | None = None


class LeadUpdateResult(BaseModel):
    lead: LeadRead
    deal: DealRead | None = None


class LeadHistoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lead_id: UUID
    organization_id: UUID
    user_id: UUID
    action: str
    changes: dict[str, Any]
    old_values: dict[str, Any]
    new_values: dict[str, Any]
    created_at: datetime


class DealStageCreate(BaseModel):
    name: str = Field(min_length=1)
    probability: int = Field(default=50, ge=0, le=100)
    color: str = "#3B82F6"
    description: str | None = None
    is_default: bool = False


class DealStageUpdate(BaseModel):
    name: str | None = None
    probability: int | None = Field(default=None, ge=0, le=100)
    color: str | None = None
    description: str | None = None
    is_active: bool | None = None
    is_default: bool | None = None


class DealStageOrder(BaseModel):
    id: UUID
    order: int


class DealStageReorderRequest(BaseModel):
    stage_orders: list[DealStageOrder] = Field(min_length=1)


class DealStageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    name: str
    order: int
    probability: int
    is_active: bool
    is_default: bool
    color: str
    description: str | None
    created_at: datetime
    updated_at: datetime


class LeadFieldConfig(BaseModel):
    id: int
    name: str
    label: str
    type: Literal["text", "email", "tel", "select", "textarea", "number", "date"]
    required: bool = False
    active: bool = True
    options: list[str] = Field(default_factory=list)
    placeholder: str | None = None


class LeadSourceConfig(BaseModel):
    id: int
    value: str
    label: str
    active: bool = True
    color: str = "#3B82F6"
    description: str | None = None


class LeadStageConfig(BaseModel):
    id: int
    value: str
    label: str
    active: bool = True
    color: str = "#10B981"
    order: int | None = None
    description: str | None = None


class CRMSettingsUpdate(BaseModel):
    lead_fields: list[LeadFieldConfig] | None = None
    lead_sources: list[LeadSourceConfig] | None = None
    lead_stages: list[LeadStageConfig] | None = None
    settings: dict[str, Any] | None = None


class CRMSettingsRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    lead_fields: list[dict[str, Any]]
    lead_sources: list[dict[str, Any]]
    lead_stages: list[dict[str, Any]]
    settings: dict[str, Any]
    created_by: UUID
    last_modified_by: UUID | None
    created_at: datetime
    updated_at: datetime

    @model_validator(mode="after")
    def sort_lead_stages(self) -> CRMSettingsRead:
        self.lead_stages = sorted(self.lead_stages, key=lambda stage: stage.get("order") or 0)
        return self
