"""Initial schema: customers, billing, fines, contributions, payments.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.current_timestamp(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.current_timestamp(),
        ),
    ]


def _money(name: str, nullable: bool = False, default: bool = True) -> sa.Column:
    return sa.Column(
        name,
        sa.Numeric(10, 2),
        nullable=nullable,
        server_default="0.00" if default else None,
    )


def upgrade() -> None:
    op.create_table(
        "customers",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("account_number", sa.String(length=20), nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("phone", sa.String(length=20), nullable=True),
        sa.Column("zone", sa.String(length=50), nullable=False, server_default="Nyakahura"),
        sa.Column("customer_type", sa.String(length=20), nullable=False, server_default="individual"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="1"),
        sa.Column("connection_date", sa.Date(), nullable=True),
        _money("credit_balance"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_number"),
    )
    op.create_index("idx_customer_zone", "customers", ["zone"])
    op.create_index("idx_customer_active", "customers", ["is_active"])

    op.create_table(
        "system_settings",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("setting_key", sa.String(length=100), nullable=False),
        sa.Column("setting_value", sa.String(length=500), nullable=False, server_default=""),
        sa.Column("description", sa.String(length=255), nullable=True),
        sa.Column("category", sa.String(length=50), nullable=False, server_default="general"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("setting_key"),
    )

    op.create_table(
        "fine_types",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("fine_name", sa.String(length=100), nullable=False),
        sa.Column("fine_type", sa.String(length=30), nullable=False, server_default="late_payment"),
        _money("amount", default=False),
        sa.Column("is_percentage", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("grace_period_days", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="1"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("entity_type", sa.String(length=50), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=True),
        sa.Column("action", sa.String(length=50), nullable=False),
        sa.Column("actor", sa.String(length=100), nullable=False, server_default="system"),
        sa.Column("changes", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "bills",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=False),
        sa.Column("bill_number", sa.String(length=40), nullable=False),
        sa.Column("billing_period_start", sa.Date(), nullable=False),
        sa.Column("billing_period_end", sa.Date(), nullable=False),
        _money("previous_balance"),
        _money("current_charges", default=False),
        _money("fines_applied"),
        _money("credit_applied"),
        _money("amount_paid"),
        _money("total_amount", default=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("bill_type", sa.String(length=20), nullable=False, server_default="flat_rate"),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("bill_number"),
        sa.UniqueConstraint("customer_id", "billing_period_start", name="uq_bill_customer_period"),
    )
    op.create_index("ix_bills_customer_id", "bills", ["customer_id"])
    op.create_index("ix_bills_due_date", "bills", ["due_date"])
    op.create_index("ix_bills_status", "bills", ["status"])
    op.create_index("idx_bill_customer_status", "bills", ["customer_id", "status"])
    op.create_index("idx_bill_status_due", "bills", ["status", "due_date"])

    op.create_table(
        "contributions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=False),
        sa.Column("contribution_month", sa.Date(), nullable=False),
        _money("amount_required", default=False),
        _money("amount_paid"),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "customer_id", "contribution_month", name="uq_contribution_customer_month"
        ),
    )
    op.create_index("ix_contributions_customer_id", "contributions", ["customer_id"])
    op.create_index("idx_contribution_status_due", "contributions", ["status", "due_date"])

    op.create_table(
        "applied_fines",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=False),
        sa.Column("bill_id", sa.Integer(), nullable=True),
        sa.Column("fine_type_id", sa.Integer(), nullable=False),
        _money("amount", default=False),
        _money("amount_paid"),
        sa.Column("reason", sa.String(length=500), nullable=True),
        sa.Column("applied_date", sa.Date(), nullable=False),
        sa.Column("episode", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.ForeignKeyConstraint(["bill_id"], ["bills.id"]),
        sa.ForeignKeyConstraint(["fine_type_id"], ["fine_types.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("bill_id", "fine_type_id", "episode", name="uq_fine_bill_type_episode"),
    )
    op.create_index("ix_applied_fines_customer_id", "applied_fines", ["customer_id"])
    op.create_index("ix_applied_fines_bill_id", "applied_fines", ["bill_id"])
    op.create_index("idx_fine_customer_status", "applied_fines", ["customer_id", "status"])

    op.create_table(
        "payments",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("transaction_id", sa.String(length=64), nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=True),
        sa.Column("member_number", sa.String(length=40), nullable=False),
        _money("amount", default=False),
        sa.Column("payment_method", sa.String(length=30), nullable=False),
        sa.Column("payment_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("failure_reason", sa.String(length=255), nullable=True),
        sa.Column("raw_payload", sa.JSON(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("transaction_id"),
    )
    op.create_index("ix_payments_customer_id", "payments", ["customer_id"])
    op.create_index("ix_payments_status", "payments", ["status"])
    op.create_index("idx_payment_customer_date", "payments", ["customer_id", "payment_date"])
    op.create_index("idx_payment_status_created", "payments", ["status", "created_at"])

    op.create_table(
        "payment_allocations",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("payment_id", sa.Integer(), nullable=False),
        sa.Column("bill_id", sa.Integer(), nullable=True),
        sa.Column("applied_fine_id", sa.Integer(), nullable=True),
        sa.Column("contribution_id", sa.Integer(), nullable=True),
        sa.Column("allocation_type", sa.String(length=20), nullable=False),
        _money("amount", default=False),
        sa.Column("notes", sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["payment_id"], ["payments.id"]),
        sa.ForeignKeyConstraint(["bill_id"], ["bills.id"]),
        sa.ForeignKeyConstraint(["applied_fine_id"], ["applied_fines.id"]),
        sa.ForeignKeyConstraint(["contribution_id"], ["contributions.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_payment_allocations_payment_id", "payment_allocations", ["payment_id"])
    op.create_index("ix_payment_allocations_bill_id", "payment_allocations", ["bill_id"])

    op.create_table(
        "notification_requests",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(length=40), nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_notification_status_created", "notification_requests", ["status", "created_at"]
    )


def downgrade() -> None:
    op.drop_table("notification_requests")
    op.drop_table("payment_allocations")
    op.drop_table("payments")
    op.drop_table("applied_fines")
    op.drop_table("contributions")
    op.drop_table("bills")
    op.drop_table("audit_logs")
    op.drop_table("fine_types")
    op.drop_table("system_settings")
    op.drop_table("customers")
