"""add push delivery receipts reported by devices

Revision ID: 0002_push_delivery_receipts
Revises: 0001_notification_pipeline
Create Date: 2026-10-17
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0002_push_delivery_receipts"
down_revision = "0001_notification_pipeline"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "push_notification_deliveries",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("message_id", sa.String(), nullable=False),
        sa.Column("recipient_id", sa.String(), nullable=True),
        sa.Column("push_token", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("opened_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("device_platform", sa.String(), nullable=True),
        sa.Column("device_id", sa.String(), nullable=True),
        sa.Column("app_version", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_push_notification_deliveries_message_id", "push_notification_deliveries", ["message_id"])
    op.create_index("ix_push_notification_deliveries_recipient_id", "push_notification_deliveries", ["recipient_id"])


def downgrade() -> None:
    op.drop_index("ix_push_notification_deliveries_recipient_id", table_name="push_notification_deliveries")
    op.drop_index("ix_push_notification_deliveries_message_id", table_name="push_notification_deliveries")
    op.drop_table("push_notification_deliveries")
