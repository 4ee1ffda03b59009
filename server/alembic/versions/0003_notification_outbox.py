"""notification outbox

Revision ID: 0003_notification_outbox
Revises: 0002_earnings_and_payouts
Create Date: 2026-10-12 00:00:00.000000
"""
from alembic import op
import sqlalchemy as sa


revision = "0003_notification_outbox"
down_revision = "0002_earnings_and_payouts"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "notification_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("event_type", sa.String(length=50), nullable=False),
        sa.Column("entity_type", sa.String(length=50), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=False),
        sa.Column("recipient_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("payload", sa.Text(), nullable=True),
        sa.Column(
            "status",
            sa.Enum("pending", "sent", "failed", name="notification_status"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("dispatched_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_notification_events_status_id", "notification_events", ["status", "id"])


def downgrade() -> None:
    op.drop_index("ix_notification_events_status_id", table_name="notification_events")
    op.drop_table("notification_events")

    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        sa.Enum(name="notification_status").drop(bind, checkfirst=True)
