"""create crm tables

Revision ID: 202610180002
Revises: 202610180001
Create Date: 2026-10-18 00:02:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610180002"
down_revision: str | None = "202610180001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def _owned_columns() -> list[sa.Column]:
    return [
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("created_by", sa.Uuid(), nullable=False),
        sa.Column("last_modified_by", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_by", sa.Uuid(), nullable=True),
        sa.Column("deletion_reason", sa.String(length=32), nullable=True),
        sa.Column("deletion_notes", sa.Text(), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        "crm_contact",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("first_name", sa.Text(), nullable=True),
        sa.Column("last_name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("phone", sa.Text(), nullable=True),
        sa.Column("company", sa.Text(), nullable=True),
        sa.Column("job_title", sa.Text(), nullable=True),
        sa.Column("lead_source", sa.String(length=32), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        *_owned_columns(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_contact_organization_id", "crm_contact", ["organization_id"], unique=False)
    op.create_index("ix_crm_contact_org_deleted", "crm_contact", ["organization_id", "is_deleted"], unique=False)
    op.create_index("ix_crm_contact_email", "crm_contact", ["email"], unique=False)

    op.create_table(
        "crm_lead",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("first_name", sa.Text(), nullable=True),
        sa.Column("last_name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("phone", sa.Text(), nullable=True),
        sa.Column("company", sa.Text(), nullable=True),
        sa.Column("job_title", sa.Text(), nullable=True),
        sa.Column("lead_source", sa.String(length=32), nullable=False, server_default="other"),
        sa.Column("lead_stage", sa.String(length=32), nullable=False, server_default="New"),
        sa.Column("budget", sa.String(length=32), nullable=False, server_default="not-specified"),
        sa.Column("timeline", sa.String(length=32), nullable=False, server_default="not-specified"),
        sa.Column("inquiry_type", sa.String(length=32), nullable=False, server_default="new-account"),
        sa.Column("product_interest", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("next_follow_up_date", sa.Date(), nullable=True),
        sa.Column("converted_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("contact_id", sa.Uuid(), nullable=False),
        *_owned_columns(),
        sa.ForeignKeyConstraint(["contact_id"], ["crm_contact.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_lead_organization_id", "crm_lead", ["organization_id"], unique=False)
    op.create_index("ix_crm_lead_org_deleted", "crm_lead", ["organization_id", "is_deleted"], unique=False)
    op.create_index("ix_crm_lead_org_stage", "crm_lead", ["organization_id", "lead_stage"], unique=False)
    op.create_index("ix_crm_lead_email", "crm_lead", ["email"], unique=False)
    op.create_index("ix_crm_lead_contact", "crm_lead", ["contact_id"], unique=False)

    op.create_table(
        "crm_account",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("account_number", sa.String(length=32), nullable=False),
        sa.Column("account_name", sa.Text(), nullable=False),
        sa.Column("service_type", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("account_holder_name", sa.Text(), nullable=False),
        sa.Column("account_holder_email", sa.Text(), nullable=True),
        sa.Column("relationship", sa.String(length=32), nullable=False, server_default="self"),
        sa.Column("current_monthly_price", sa.Numeric(18, 2), nullable=False),
        sa.Column("currency", sa.String(length=8), nullable=False, server_default="USD"),
        sa.Column("billing_cycle", sa.String(length=16), nullable=False, server_default="monthly"),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("renewal_date", sa.Date(), nullable=False),
        sa.Column("last_payment_date", sa.Date(), nullable=True),
        sa.Column("total_revenue", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("contact_id", sa.Uuid(), nullable=False),
        sa.Column("deal_id", sa.Uuid(), nullable=True),
        *_owned_columns(),
        sa.ForeignKeyConstraint(["contact_id"], ["crm_contact.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_number", name="uq_crm_account_number"),
    )
    op.create_index("ix_crm_account_organization_id", "crm_account", ["organization_id"], unique=False)
    op.create_index("ix_crm_account_org_deleted", "crm_account", ["organization_id", "is_deleted"], unique=False)
    op.create_index("ix_crm_account_contact", "crm_account", ["contact_id"], unique=False)
    op.create_index("ix_crm_account_deal", "crm_account", ["deal_id"], unique=False)
    op.create_index("ix_crm_account_renewal", "crm_account", ["renewal_date"], unique=False)

    op.create_table(
        "crm_deal",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("deal_name", sa.Text(), nullable=True),
        sa.Column("first_name", sa.Text(), nullable=False),
        sa.Column("last_name", sa.Text(), nullable=False),
        sa.Column("stage", sa.String(length=64), nullable=False, server_default="Qualified"),
        sa.Column("deal_type", sa.String(length=32), nullable=False, server_default="new-business"),
        sa.Column("close_date", sa.Date(), nullable=False),
        sa.Column("actual_close_date", sa.Date(), nullable=True),
        sa.Column("lead_source", sa.String(length=32), nullable=True),
        sa.Column("owner_id", sa.Uuid(), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("recurring_amount", sa.Numeric(18, 2), nullable=True),
        sa.Column("currency", sa.String(length=8), nullable=False, server_default="USD"),
        sa.Column("probability", sa.Integer(), nullable=False, server_default="50"),
        sa.Column("expected_revenue", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("product", sa.Text(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("lead_id", sa.Uuid(), nullable=True),
        sa.Column("contact_id", sa.Uuid(), nullable=False),
        sa.Column("account_id", sa.Uuid(), nullable=True),
        sa.Column("last_activity", sa.DateTime(timezone=True), nullable=False),
        *_owned_columns(),
        sa.ForeignKeyConstraint(["lead_id"], ["crm_lead.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["contact_id"], ["crm_contact.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["account_id"], ["crm_account.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_deal_organization_id", "crm_deal", ["organization_id"], unique=False)
    op.create_index("ix_crm_deal_org_deleted", "crm_deal", ["organization_id", "is_deleted"], unique=False)
    op.create_index("ix_crm_deal_org_stage", "crm_deal", ["organization_id", "stage"], unique=False)
    op.create_index("ix_crm_deal_lead", "crm_deal", ["lead_id"], unique=False)
    op.create_index("ix_crm_deal_contact", "crm_deal", ["contact_id"], unique=False)
    op.create_index("ix_crm_deal_close_date", "crm_deal", ["close_date"], unique=False)

    op.create_table(
        "crm_deal_stage",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("order", sa.Integer(), nullable=False),
        sa.Column("probability", sa.Integer(), nullable=False, server_default="50"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("color", sa.String(length=16), nullable=False, server_default="#3B82F6"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_by", sa.Uuid(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_deal_stage_org_order", "crm_deal_stage", ["organization_id", "order"], unique=False)
    op.create_index("ix_crm_deal_stage_org_active", "crm_deal_stage", ["organization_id", "is_active"], unique=False)

    op.create_table(
        "crm_lead_history",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("lead_id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("action", sa.String(length=32), nullable=False),
        sa.Column("changes", sa.JSON(), nullable=False),
        sa.Column("old_values", sa.JSON(), nullable=False),
        sa.Column("new_values", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_lead_history_lead",
        "crm_lead_history",
        ["organization_id", "lead_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "crm_settings",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("lead_fields", sa.JSON(), nullable=False),
        sa.Column("lead_sources", sa.JSON(), nullable=False),
        sa.Column("lead_stages", sa.JSON(), nullable=False),
        sa.Column("settings", sa.JSON(), nullable=False),
        sa.Column("created_by", sa.Uuid(), nullable=False),
        sa.Column("last_modified_by", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("organization_id", name="uq_crm_settings_organization"),
    )


def downgrade() -> None:
    op.drop_table("crm_settings")
    op.drop_index("ix_crm_lead_history_lead", table_name="crm_lead_history")
    op.drop_table("crm_lead_history")
    op.drop_index("ix_crm_deal_stage_org_active", table_name="crm_deal_stage")
    op.drop_index("ix_crm_deal_stage_org_order", table_name="crm_deal_stage")
    op.drop_table("crm_deal_stage")
    for index_name in (
        "ix_crm_deal_close_date",
        "ix_crm_deal_contact",
        "ix_crm_deal_lead",
        "ix_crm_deal_org_stage",
        "ix_crm_deal_org_deleted",
        "ix_crm_deal_organization_id",
    ):
        op.drop_index(index_name, table_name="crm_deal")
    op.drop_table("crm_deal")
    for index_name in (
        "ix_crm_account_renewal",
        "ix_crm_account_deal",
        "ix_crm_account_contact",
        "ix_crm_account_org_deleted",
        "ix_crm_account_organization_id",
    ):
        op.drop_index(index_name, table_name="crm_account")
    op.drop_table("crm_account")
    for index_name in (
        "ix_crm_lead_contact",
        "ix_crm_lead_email",
        "ix_crm_lead_org_stage",
        "ix_crm_lead_org_deleted",
        "ix_crm_lead_organization_id",
    ):
        op.drop_index(index_name, table_name="crm_lead")
    op.drop_table("crm_lead")
    op.drop_index("ix_crm_contact_email", table_name="crm_contact")
    op.drop_index("ix_crm_contact_org_deleted", table_name="crm_contact")
    op.drop_index("ix_crm_contact_organization_id", table_name="crm_contact")
    op.drop_table("crm_contact")
