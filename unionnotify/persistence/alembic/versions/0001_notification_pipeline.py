"""create member, verification, delivery queue, budget and meeting reminder tables

Revision ID: 0001_notification_pipeline
Revises:
Create Date: 2026-10-17
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_notification_pipeline"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name: str, *, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def _created_updated() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    ]


def upgrade() -> None:
    op.create_table(
        "divisions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_table(
        "members",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("first_name", sa.String(), nullable=True),
        sa.Column("last_name", sa.String(), nullable=True),
        sa.Column("pin_number", sa.String(), nullable=True),
        sa.Column("division_id", sa.String(), nullable=True),
        sa.Column("role", sa.String(), nullable=False, server_default="member"),
        sa.Column("phone_number", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.ForeignKeyConstraint(["division_id"], ["divisions.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_members_pin_number", "members", ["pin_number"])
    op.create_index("ix_members_division_id", "members", ["division_id"])

    # Contact preferences carry opt-out, lockout and verification state per member.
    op.create_table(
        "user_preferences",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("pin_number", sa.String(), nullable=True),
        sa.Column("push_token", sa.String(), nullable=True),
        sa.Column("contact_preference", sa.String(), nullable=False, server_default="in_app"),
        sa.Column("sms_opt_out", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("sms_lockout_until"),
        sa.Column("phone_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("phone_verification_status", sa.String(), nullable=False, server_default="unverified"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("user_id"),
    )
    op.create_table(
        "phone_verifications",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("phone", sa.String(), nullable=False),
        sa.Column("otp_hash", sa.String(), nullable=False),
        _ts("expires_at", nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_created_updated(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("session_id", name="uq_phone_verifications_session_id"),
    )
    op.create_index("ix_phone_verifications_user_id", "phone_verifications", ["user_id"])
    op.create_index(
        "ix_phone_verifications_user_phone_verified",
        "phone_verifications",
        ["user_id", "phone", "verified", "created_at"],
    )
    op.create_index("ix_phone_verifications_phone_created", "phone_verifications", ["phone", "created_at"])

    # Push queue rows stay selectable while failed and under max_attempts.
    op.create_table(
        "push_notification_queue",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("notification_id", sa.String(), nullable=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("push_token", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("data_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="10"),
        _ts("next_attempt_at"),
        _ts("first_attempted_at"),
        _ts("last_attempted_at"),
        _ts("sent_at"),
        sa.Column("dedupe_key", sa.String(), nullable=True),
        sa.Column("claim_token", sa.String(), nullable=True),
        _ts("claimed_at"),
        *_created_updated(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("dedupe_key", name="uq_push_notification_queue_dedupe_key"),
    )
    op.create_index("ix_push_notification_queue_notification_id", "push_notification_queue", ["notification_id"])
    op.create_index("ix_push_notification_queue_user_id", "push_notification_queue", ["user_id"])
    op.create_index(
        "ix_push_notification_queue_status_next",
        "push_notification_queue",
        ["status", "next_attempt_at", "created_at"],
    )

    op.create_table(
        "sms_deliveries",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("message_id", sa.String(), nullable=True),
        sa.Column("recipient_id", sa.String(), nullable=False),
        sa.Column("phone_number", sa.String(), nullable=False),
        sa.Column("sms_content", sa.Text(), nullable=False),
        sa.Column("full_content", sa.Text(), nullable=True),
        sa.Column("priority", sa.String(), nullable=False, server_default="normal"),
        sa.Column("was_truncated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("transport_id", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("cost_amount", sa.Numeric(12, 4), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="1"),
        _ts("next_attempt_at"),
        _ts("first_attempted_at"),
        _ts("last_attempted_at"),
        _ts("sent_at"),
        sa.Column("dedupe_key", sa.String(), nullable=True),
        sa.Column("claim_token", sa.String(), nullable=True),
        _ts("claimed_at"),
        *_created_updated(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("dedupe_key", name="uq_sms_deliveries_dedupe_key"),
    )
    op.create_index("ix_sms_deliveries_message_id", "sms_deliveries", ["message_id"])
    op.create_index("ix_sms_deliveries_recipient_id", "sms_deliveries", ["recipient_id"])
    op.create_index("ix_sms_deliveries_status_created", "sms_deliveries", ["status", "created_at"])
    op.create_index("ix_sms_deliveries_sent_at", "sms_deliveries", ["sent_at"])

    op.create_table(
        "notification_analytics",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("notification_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("channel", sa.String(), nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("cost", sa.Numeric(12, 4), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_notification_analytics_notification_id", "notification_analytics", ["notification_id"])
    op.create_index("ix_notification_analytics_user_id", "notification_analytics", ["user_id"])

    # Single-row organization budget; period markers drive the reset-on-rollover update.
    op.create_table(
        "organization_sms_budget",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("daily_budget", sa.Numeric(12, 4), nullable=False),
        sa.Column("monthly_budget", sa.Numeric(12, 4), nullable=False),
        sa.Column("current_daily_spend", sa.Numeric(12, 4), nullable=False, server_default="0"),
        sa.Column("current_monthly_spend", sa.Numeric(12, 4), nullable=False, server_default="0"),
        sa.Column("last_daily_reset", sa.String(length=10), nullable=True),
        sa.Column("last_monthly_reset", sa.String(length=7), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_table(
        "admin_messages",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("sender_user_id", sa.String(), nullable=True),
        sa.Column("recipient_roles", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("recipient_division_ids", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("subject", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("priority", sa.String(), nullable=False, server_default="normal"),
        sa.Column("category", sa.String(), nullable=False, server_default="general"),
        sa.Column("requires_acknowledgment", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("metadata_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "meeting_occurrences",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("division_id", sa.String(), nullable=False),
        sa.Column("meeting_pattern_id", sa.String(), nullable=True),
        _ts("scheduled_at", nullable=False),
        sa.Column("location_name", sa.String(), nullable=True),
        sa.Column("location_address", sa.String(), nullable=True),
        sa.Column("is_cancelled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.ForeignKeyConstraint(["division_id"], ["divisions.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_meeting_occurrences_division_id", "meeting_occurrences", ["division_id"])
    op.create_index("ix_meeting_occurrences_scheduled_at", "meeting_occurrences", ["scheduled_at"])
    op.create_table(
        "meeting_notification_preferences",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("notify_week_before", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("notify_day_before", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("notify_hour_before", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.PrimaryKeyConstraint("user_id"),
    )
    op.create_table(
        "meeting_notification_log",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("week_before_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("day_before_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("hour_before_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("notifications_queued", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
    )


def downgrade() -> None:
    op.drop_table("meeting_notification_log")
    op.drop_table("meeting_notification_preferences")
    op.drop_index("ix_meeting_occurrences_scheduled_at", table_name="meeting_occurrences")
    op.drop_index("ix_meeting_occurrences_division_id", table_name="meeting_occurrences")
    op.drop_table("meeting_occurrences")
    op.drop_table("admin_messages")
    op.drop_table("organization_sms_budget")
    op.drop_index("ix_notification_analytics_user_id", table_name="notification_analytics")
    op.drop_index("ix_notification_analytics_notification_id", table_name="notification_analytics")
    op.drop_table("notification_analytics")
    op.drop_index("ix_sms_deliveries_sent_at", table_name="sms_deliveries")
    op.drop_index("ix_sms_deliveries_status_created", table_name="sms_deliveries")
    op.drop_index("ix_sms_deliveries_recipient_id", table_name="sms_deliveries")
    op.drop_index("ix_sms_deliveries_message_id", table_name="sms_deliveries")
    op.drop_table("sms_deliveries")
    op.drop_index("ix_push_notification_queue_status_next", table_name="push_notification_queue")
    op.drop_index("ix_push_notification_queue_user_id", table_name="push_notification_queue")
    op.drop_index("ix_push_notification_queue_notification_id", table_name="push_notification_queue")
    op.drop_table("push_notification_queue")
    op.drop_index("ix_phone_verifications_phone_created", table_name="phone_verifications")
    op.drop_index("ix_phone_verifications_user_phone_verified", table_name="phone_verifications")
    op.drop_index("ix_phone_verifications_user_id", table_name="phone_verifications")
    op.drop_table("phone_verifications")
    op.drop_table("user_preferences")
    op.drop_index("ix_members_division_id", table_name="members")
    op.drop_index("ix_members_pin_number", table_name="members")
    op.drop_table("members")
    op.drop_table("divisions")
