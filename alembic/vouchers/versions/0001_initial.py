"""initial voucher schema

Revision ID: 0001_vouchers
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_vouchers"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "voucher_gifts",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("recipient_email", sa.String(), nullable=True),
        sa.Column("wallet_address", sa.String(), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("is_high_value", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("idempotency_key", sa.String(), nullable=True),
        sa.Column("state_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_voucher_gifts_status", "voucher_gifts", ["status"])
    op.create_index("ix_voucher_gifts_idempotency_key", "voucher_gifts", ["idempotency_key"])

    op.create_table(
        "voucher_timeline",
        sa.Column("timeline_id", sa.String(), nullable=False),
        sa.Column("voucher_id", sa.String(), nullable=False),
        sa.Column("from_state", sa.String(), nullable=True),
        sa.Column("to_state", sa.String(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("message_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["voucher_id"], ["voucher_gifts.id"]),
        sa.PrimaryKeyConstraint("timeline_id"),
    )
    op.create_index("ix_voucher_timeline_voucher_id", "voucher_timeline", ["voucher_id"])

    op.create_table(
        "delivery_outbox",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("voucher_id", sa.String(), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("message_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["voucher_id"], ["voucher_gifts.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_delivery_outbox_voucher_id", "delivery_outbox", ["voucher_id"])
    # Relay scans PENDING rows oldest-first.
    op.create_index("ix_delivery_outbox_status_created_at", "delivery_outbox", ["status", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_delivery_outbox_status_created_at", table_name="delivery_outbox")
    op.drop_index("ix_delivery_outbox_voucher_id", table_name="delivery_outbox")
    op.drop_table("delivery_outbox")
    op.drop_index("ix_voucher_timeline_voucher_id", table_name="voucher_timeline")
    op.drop_table("voucher_timeline")
    op.drop_index("ix_voucher_gifts_idempotency_key", table_name="voucher_gifts")
    op.drop_index("ix_voucher_gifts_status", table_name="voucher_gifts")
    op.drop_table("voucher_gifts")
