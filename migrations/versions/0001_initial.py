"""Initial migration

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 09:00:00
"""

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None

MONEY = sa.Numeric(14, 2)
RATE = sa.Numeric(6, 4)

vat_type = sa.Enum("VAT", "NON_VAT", name="vat_type")
ENUM_TYPES = (
    "vat_type",
    "billing_frequency",
    "interval_unit",
    "schedule_status",
    "run_status",
    "invoice_status",
    "job_status",
)


def upgrade():
    op.create_table(
        "billing_entities",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("code", sa.String(), nullable=False, unique=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("invoice_prefix", sa.String(), nullable=False, server_default="INV"),
        sa.Column("next_invoice_no", sa.Integer(), nullable=False, server_default="1"),
    )
    op.create_table(
        "contracts",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("company_name", sa.String(), nullable=False),
        sa.Column("contact_person", sa.String()),
        sa.Column("email", sa.String()),
        sa.Column("tin", sa.String()),
        sa.Column("address", sa.Text()),
        sa.Column("product_type", sa.String()),
    )
    op.create_table(
        "scheduled_billings",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("contract_id", sa.Integer(), sa.ForeignKey("contracts.id"), index=True),
        sa.Column(
            "billing_entity_id",
            sa.Integer(),
            sa.ForeignKey("billing_entities.id"),
            nullable=False,
            index=True,
        ),
        sa.Column("billing_amount", MONEY, nullable=False),
        sa.Column("vat_type", vat_type, nullable=False),
        sa.Column("has_withholding", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("withholding_rate", RATE),
        sa.Column("withholding_code", sa.String()),
        sa.Column("description", sa.Text()),
        sa.Column("remarks", sa.Text()),
        sa.Column(
            "frequency",
            sa.Enum("MONTHLY", "QUARTERLY", "ANNUALLY", "CUSTOM", name="billing_frequency"),
            nullable=False,
        ),
        sa.Column("billing_day_of_month", sa.Integer()),
        sa.Column("due_day_of_month", sa.Integer()),
        sa.Column("custom_interval_value", sa.Integer()),
        sa.Column("custom_interval_unit", sa.Enum("DAYS", "MONTHS", name="interval_unit")),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date()),
        sa.Column("next_billing_date", sa.Date(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("PENDING", "ACTIVE", "PAUSED", "ENDED", name="schedule_status"),
            nullable=False,
        ),
        sa.Column("auto_approve", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("auto_send_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_by_id", sa.String()),
        sa.Column("approved_by_id", sa.String()),
        sa.Column("approved_at", sa.DateTime()),
        sa.Column("rejected_by_id", sa.String()),
        sa.Column("rejected_at", sa.DateTime()),
        sa.Column("rejection_reason", sa.Text()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
    )
    op.create_index(
        "ix_scheduled_billings_status_next",
        "scheduled_billings",
        ["status", "next_billing_date"],
    )
    op.create_table(
        "invoices",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("billing_no", sa.String(), nullable=False, unique=True),
        sa.Column(
            "billing_entity_id", sa.Integer(), sa.ForeignKey("billing_entities.id"), nullable=False
        ),
        sa.Column("contract_id", sa.Integer(), sa.ForeignKey("contracts.id")),
        sa.Column(
            "scheduled_billing_id",
            sa.Integer(),
            sa.ForeignKey("scheduled_billings.id", ondelete="SET NULL"),
        ),
        sa.Column("customer_name", sa.String(), nullable=False),
        sa.Column("customer_email", sa.String()),
        sa.Column("customer_tin", sa.String()),
        sa.Column("customer_address", sa.Text()),
        sa.Column("statement_date", sa.Date(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("period_start", sa.Date()),
        sa.Column("period_end", sa.Date()),
        sa.Column("service_fee", MONEY, nullable=False),
        sa.Column("vat_amount", MONEY, nullable=False),
        sa.Column("gross_amount", MONEY, nullable=False),
        sa.Column("withholding_tax", MONEY, nullable=False),
        sa.Column("net_amount", MONEY, nullable=False),
        sa.Column("vat_type", vat_type, nullable=False),
        sa.Column("vat_rate", RATE, nullable=False),
        sa.Column("has_withholding", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("withholding_rate", RATE),
        sa.Column("withholding_code", sa.String()),
        sa.Column(
            "status",
            sa.Enum(
                "PENDING", "APPROVED", "REJECTED", "SENT", "PAID", "VOID", name="invoice_status"
            ),
            nullable=False,
            index=True,
        ),
        sa.Column("approved_at", sa.DateTime()),
        sa.Column("remarks", sa.Text()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_table(
        "invoice_line_items",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column(
            "invoice_id",
            sa.Integer(),
            sa.ForeignKey("invoices.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("period_start", sa.Date()),
        sa.Column("period_end", sa.Date()),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("unit_price", MONEY, nullable=False),
        sa.Column("service_fee", MONEY, nullable=False),
        sa.Column("vat_amount", MONEY, nullable=False),
        sa.Column("withholding_tax", MONEY, nullable=False),
        sa.Column("amount", MONEY, nullable=False),
    )
    op.create_table(
        "scheduled_billing_runs",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column(
            "scheduled_billing_id",
            sa.Integer(),
            sa.ForeignKey("scheduled_billings.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("invoice_id", sa.Integer(), sa.ForeignKey("invoices.id")),
        sa.Column("run_date", sa.Date(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("PENDING", "SUCCESS", "FAILED", "SKIPPED", name="run_status"),
            nullable=False,
        ),
        sa.Column("error_message", sa.Text()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("finalized_at", sa.DateTime()),
    )
    # At most one SUCCESS run per schedule and period.
    op.create_index(
        "uq_scheduled_billing_runs_success_period",
        "scheduled_billing_runs",
        ["scheduled_billing_id", "run_date"],
        unique=True,
        sqlite_where=sa.text("status = 'SUCCESS'"),
        postgresql_where=sa.text("status = 'SUCCESS'"),
    )
    op.create_table(
        "job_runs",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("job_name", sa.String(), nullable=False, index=True),
        sa.Column(
            "status",
            sa.Enum("RUNNING", "COMPLETED", "FAILED", name="job_status"),
            nullable=False,
        ),
        sa.Column("as_of", sa.Date(), nullable=False),
        sa.Column("started_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("completed_at", sa.DateTime()),
        sa.Column("processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("succeeded", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("skipped", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("errors", sa.JSON()),
    )
    op.create_table(
        "settings",
        sa.Column("key", sa.String(), primary_key=True),
        sa.Column("value", sa.JSON(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("user_id", sa.String()),
        sa.Column("action", sa.String(), nullable=False, index=True),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("entity_id", sa.String(), nullable=False, index=True),
        sa.Column("details", sa.JSON()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("user_id", sa.String(), index=True),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("entity_type", sa.String()),
        sa.Column("entity_id", sa.String()),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )


def downgrade():
    op.drop_table("notifications")
    op.drop_table("audit_logs")
    op.drop_table("settings")
    op.drop_table("job_runs")
    op.drop_index("uq_scheduled_billing_runs_success_period", table_name="scheduled_billing_runs")
    op.drop_table("scheduled_billing_runs")
    op.drop_table("invoice_line_items")
    op.drop_table("invoices")
    op.drop_index("ix_scheduled_billings_status_next", table_name="scheduled_billings")
    op.drop_table("scheduled_billings")
    op.drop_table("contracts")
    op.drop_table("billing_entities")
    # Drop enum types for Postgres
    if op.get_bind().dialect.name == "postgresql":
        for name in ENUM_TYPES:
            op.execute(f"DROP TYPE IF EXISTS {name};")
