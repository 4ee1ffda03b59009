"""earnings, payouts and payout allocations

Revision ID: 0002_earnings_and_payouts
Revises: 0001_fulfillment_core
Create Date: 2026-10-08 00:00:00.000000
"""
from alembic import op
import sqlalchemy as sa


revision = "0002_earnings_and_payouts"
down_revision = "0001_fulfillment_core"
branch_labels = None
depends_on = None

OPEN_PAYOUT_STATUSES = "status IN ('Pending', 'Approved', 'Processing')"


def upgrade() -> None:
    op.create_table(
        "payouts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_type", sa.Enum("seller", "agent", name="payout_owner_type"), nullable=False),
        sa.Column("owner_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column(
            "status",
            sa.Enum("Pending", "Approved", "Processing", "Completed", "Rejected", name="payout_status"),
            nullable=False,
            server_default="Pending",
        ),
        sa.Column("bank_name", sa.String(length=120), nullable=False),
        sa.Column("account_name", sa.String(length=200), nullable=False),
        sa.Column("account_number", sa.String(length=64), nullable=False),
        sa.Column("transaction_reference", sa.String(length=120), nullable=True),
        sa.Column("payment_proof_url", sa.String(length=500), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("requested_at", sa.DateTime(), nullable=False),
        sa.Column("approved_at", sa.DateTime(), nullable=True),
        sa.Column("approved_by", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
        sa.Column("processed_by", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount > 0", name="ck_payouts_amount_positive"),
    )
    op.create_index(
        "uq_payouts_open_owner",
        "payouts",
        ["owner_type", "owner_id"],
        unique=True,
        sqlite_where=sa.text(OPEN_PAYOUT_STATUSES),
        postgresql_where=sa.text(OPEN_PAYOUT_STATUSES),
    )

    op.create_table(
        "earnings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_type", sa.Enum("seller", "agent", name="earning_owner_type"), nullable=False),
        sa.Column("owner_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("delivery_id", sa.Integer(), sa.ForeignKey("deliveries.id"), nullable=True),
        sa.Column("gross_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("rate", sa.Numeric(5, 2), nullable=False),
        sa.Column("commission_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("bonus_amount", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("net_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("allocated_amount", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column(
            "status",
            sa.Enum("pending", "available", "withdrawn", "on_hold", name="earning_status"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("available_date", sa.DateTime(), nullable=False),
        sa.Column("payout_id", sa.Integer(), sa.ForeignKey("payouts.id"), nullable=True),
        sa.Column("distance_km", sa.Numeric(8, 2), nullable=True),
        sa.Column("base_fee", sa.Numeric(14, 2), nullable=True),
        sa.Column("per_km_rate", sa.Numeric(14, 2), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("owner_type", "owner_id", "order_id", name="uq_earnings_owner_order"),
        sa.CheckConstraint("allocated_amount >= 0", name="ck_earnings_allocated_non_negative"),
        sa.CheckConstraint("allocated_amount <= net_amount", name="ck_earnings_allocated_within_net"),
    )
    op.create_index(
        "ix_earnings_owner_status_date",
        "earnings",
        ["owner_type", "owner_id", "status", "available_date"],
    )

    op.create_table(
        "payout_allocations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("payout_id", sa.Integer(), sa.ForeignKey("payouts.id"), nullable=False),
        sa.Column("earning_id", sa.Integer(), sa.ForeignKey("earnings.id"), nullable=False),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("reversed_at", sa.DateTime(), nullable=True),
        sa.CheckConstraint("amount > 0", name="ck_payout_allocations_amount_positive"),
    )
    op.create_index("ix_payout_allocations_payout_id", "payout_allocations", ["payout_id"])
    op.create_index("ix_payout_allocations_earning_id", "payout_allocations", ["earning_id"])


def downgrade() -> None:
    op.drop_index("ix_payout_allocations_earning_id", table_name="payout_allocations")
    op.drop_index("ix_payout_allocations_payout_id", table_name="payout_allocations")
    op.drop_table("payout_allocations")
    op.drop_index("ix_earnings_owner_status_date", table_name="earnings")
    op.drop_table("earnings")
    op.drop_index("uq_payouts_open_owner", table_name="payouts")
    op.drop_table("payouts")

    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        for name in ("earning_status", "earning_owner_type", "payout_status", "payout_owner_type"):
            sa.Enum(name=name).drop(bind, checkfirst=True)
