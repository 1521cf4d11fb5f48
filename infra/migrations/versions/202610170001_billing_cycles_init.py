"""billing cycle engine tables

Revision ID: 202610170001
Revises:
Create Date: 2026-10-17
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "202610170001"
down_revision = None
branch_labels = None
depends_on = None

OPEN_CYCLE_PREDICATE = "status IN ('pending', 'invoicing')"


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_tenants_name", "tenants", ["name"], unique=True)
    op.create_index("ix_tenants_created_at", "tenants", ["created_at"])

    op.create_table(
        "clients",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "id", name="uq_clients_tenant_id_id"),
    )
    op.create_index("ix_clients_tenant_id", "clients", ["tenant_id"])
    op.create_index("ix_clients_name", "clients", ["name"])
    op.create_index("ix_clients_created_at", "clients", ["created_at"])

    op.create_table(
        "services",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("client_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("billing_type", sa.String(length=20), nullable=False),
        sa.Column("frequency", sa.String(length=20), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("next_billing_date", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
        sa.ForeignKeyConstraint(
            ["tenant_id", "client_id"],
            ["clients.tenant_id", "clients.id"],
            ondelete="RESTRICT",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "id", name="uq_services_tenant_id_id"),
    )
    op.create_index("ix_services_tenant_id", "services", ["tenant_id"])
    op.create_index("ix_services_client_id", "services", ["client_id"])
    op.create_index("ix_services_billing_type", "services", ["billing_type"])
    op.create_index("ix_services_status", "services", ["status"])
    op.create_index("ix_services_next_billing_date", "services", ["next_billing_date"])
    op.create_index("ix_services_created_at", "services", ["created_at"])
    op.create_index("ix_services_updated_at", "services", ["updated_at"])
    op.create_index("ix_services_deleted_at", "services", ["deleted_at"])
    op.create_index("ix_services_tenant_client_id", "services", ["tenant_id", "client_id"])
    op.create_index("ix_services_tenant_status", "services", ["tenant_id", "status"])

    op.create_table(
        "billing_cycles",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("service_id", sa.String(), nullable=False),
        sa.Column("previous_cycle_id", sa.String(), nullable=True),
        sa.Column("start_date", sa.DateTime(), nullable=False),
        sa.Column("end_date", sa.DateTime(), nullable=False),
        sa.Column("due_date", sa.DateTime(), nullable=True),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("invoice_id", sa.String(), nullable=True),
        sa.Column("claim_token", sa.String(), nullable=True),
        sa.Column("claimed_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
        sa.ForeignKeyConstraint(
            ["tenant_id", "service_id"],
            ["services.tenant_id", "services.id"],
            ondelete="RESTRICT",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "id", name="uq_billing_cycles_tenant_id_id"),
        sa.UniqueConstraint("previous_cycle_id", name="uq_billing_cycles_previous_cycle_id"),
    )
    op.create_index("ix_billing_cycles_tenant_id", "billing_cycles", ["tenant_id"])
    op.create_index("ix_billing_cycles_service_id", "billing_cycles", ["service_id"])
    op.create_index("ix_billing_cycles_start_date", "billing_cycles", ["start_date"])
    op.create_index("ix_billing_cycles_end_date", "billing_cycles", ["end_date"])
    op.create_index("ix_billing_cycles_status", "billing_cycles", ["status"])
    op.create_index("ix_billing_cycles_invoice_id", "billing_cycles", ["invoice_id"])
    op.create_index("ix_billing_cycles_created_at", "billing_cycles", ["created_at"])
    op.create_index("ix_billing_cycles_updated_at", "billing_cycles", ["updated_at"])
    op.create_index("ix_billing_cycles_status_end_date", "billing_cycles", ["status", "end_date"])
    op.create_index(
        "ix_billing_cycles_tenant_service_id",
        "billing_cycles",
        ["tenant_id", "service_id"],
    )
    op.create_index(
        "uq_billing_cycles_open_per_service",
        "billing_cycles",
        ["service_id"],
        unique=True,
        sqlite_where=sa.text(OPEN_CYCLE_PREDICATE),
        postgresql_where=sa.text(OPEN_CYCLE_PREDICATE),
    )

    op.create_table(
        "invoices",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("client_id", sa.String(), nullable=False),
        sa.Column("service_id", sa.String(), nullable=True),
        sa.Column("cycle_id", sa.String(), nullable=True),
        sa.Column("number", sa.String(), nullable=False),
        sa.Column("issue_date", sa.DateTime(), nullable=False),
        sa.Column("due_date", sa.DateTime(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=True),
        sa.Column("total", sa.Numeric(14, 2), nullable=False),
        sa.Column("currency", sa.String(), nullable=False),
        sa.Column("items", sa.JSON(), nullable=False),
        sa.Column("is_late_issued", sa.Boolean(), nullable=False),
        sa.Column("created_by", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
        sa.ForeignKeyConstraint(
            ["tenant_id", "client_id"],
            ["clients.tenant_id", "clients.id"],
            ondelete="RESTRICT",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "id", name="uq_invoices_tenant_id_id"),
        sa.UniqueConstraint("tenant_id", "number", name="uq_invoices_tenant_number"),
        sa.UniqueConstraint("tenant_id", "cycle_id", name="uq_invoices_tenant_cycle_id"),
    )
    op.create_index("ix_invoices_tenant_id", "invoices", ["tenant_id"])
    op.create_index("ix_invoices_client_id", "invoices", ["client_id"])
    op.create_index("ix_invoices_service_id", "invoices", ["service_id"])
    op.create_index("ix_invoices_cycle_id", "invoices", ["cycle_id"])
    op.create_index("ix_invoices_number", "invoices", ["number"])
    op.create_index("ix_invoices_issue_date", "invoices", ["issue_date"])
    op.create_index("ix_invoices_due_date", "invoices", ["due_date"])
    op.create_index("ix_invoices_status", "invoices", ["status"])
    op.create_index("ix_invoices_created_at", "invoices", ["created_at"])
    op.create_index("ix_invoices_updated_at", "invoices", ["updated_at"])
    op.create_index("ix_invoices_deleted_at", "invoices", ["deleted_at"])
    op.create_index("ix_invoices_tenant_status", "invoices", ["tenant_id", "status"])
    op.create_index("ix_invoices_tenant_client_id", "invoices", ["tenant_id", "client_id"])

    op.create_table(
        "domain_events",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("entity_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("triggered_by", sa.String(), nullable=False),
        sa.Column("correlation_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_domain_events_tenant_id", "domain_events", ["tenant_id"])
    op.create_index("ix_domain_events_event_type", "domain_events", ["event_type"])
    op.create_index("ix_domain_events_triggered_by", "domain_events", ["triggered_by"])
    op.create_index("ix_domain_events_correlation_id", "domain_events", ["correlation_id"])
    op.create_index("ix_domain_events_created_at", "domain_events", ["created_at"])
    op.create_index("ix_domain_events_entity", "domain_events", ["entity_type", "entity_id"])
    op.create_index("ix_domain_events_tenant_type", "domain_events", ["tenant_id", "event_type"])

    op.create_table(
        "notifications",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("type", sa.String(length=40), nullable=False),
        sa.Column("client_id", sa.String(), nullable=True),
        sa.Column("invoice_id", sa.String(), nullable=True),
        sa.Column("subscription_id", sa.String(), nullable=True),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("message", sa.String(), nullable=False),
        sa.Column("action_reference", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_notifications_tenant_id", "notifications", ["tenant_id"])
    op.create_index("ix_notifications_type", "notifications", ["type"])
    op.create_index("ix_notifications_client_id", "notifications", ["client_id"])
    op.create_index("ix_notifications_created_at", "notifications", ["created_at"])
    op.create_index("ix_notifications_type_invoice", "notifications", ["type", "invoice_id"])
    op.create_index(
        "ix_notifications_type_subscription",
        "notifications",
        ["type", "subscription_id"],
    )


def downgrade() -> None:
    op.drop_table("notifications")
    op.drop_table("domain_events")
    op.drop_table("invoices")
    op.drop_index("uq_billing_cycles_open_per_service", table_name="billing_cycles")
    op.drop_table("billing_cycles")
    op.drop_table("services")
    op.drop_table("clients")
    op.drop_table("tenants")
