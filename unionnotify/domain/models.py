from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from unionnotify.domain.types import JsonType, UtcDateTime


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Division(Base):
    __tablename__ = "divisions"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)


class Member(Base):
    __tablename__ = "members"

    # Member id doubles as the user id referenced by deliveries and preferences.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    first_name: Mapped[str | None] = mapped_column(String, nullable=True)
    last_name: Mapped[str | None] = mapped_column(String, nullable=True)
    pin_number: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    division_id: Mapped[str | None] = mapped_column(String, ForeignKey("divisions.id"), nullable=True, index=True)
    # member, division_admin, union_admin, application_admin
    role: Mapped[str] = mapped_column(String, default="member")
    phone_number: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="active")


class UserPreference(Base):
    __tablename__ = "user_preferences"

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    pin_number: Mapped[str | None] = mapped_column(String, nullable=True)
    push_token: Mapped[str | None] = mapped_column(String, nullable=True)
    # in_app, push, text, email
    contact_preference: Mapped[str] = mapped_column(String, default="in_app")
    sms_opt_out: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sms_lockout_until: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    phone_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # unverified, pending, verified, locked_out
    phone_verification_status: Mapped[str] = mapped_column(String, default="unverified")
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now, onupdate=utc_now)


class PhoneVerification(Base):
    __tablename__ = "phone_verifications"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    session_id: Mapped[str] = mapped_column(String, unique=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    phone: Mapped[str] = mapped_column(String)
    # Keyed hash of the code; the raw code is never stored.
    otp_hash: Mapped[str] = mapped_column(String)
    expires_at: Mapped[datetime] = mapped_column(UtcDateTime)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now, onupdate=utc_now)


Index(
    "ix_phone_verifications_user_phone_verified",
    PhoneVerification.user_id,
    PhoneVerification.phone,
    PhoneVerification.verified,
    PhoneVerification.created_at,
)
Index("ix_phone_verifications_phone_created", PhoneVerification.phone, PhoneVerification.created_at)


class PushDelivery(Base):
    __tablename__ = "push_notification_queue"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # Source notification/message id when the push mirrors an in-app message.
    notification_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    push_token: Mapped[str] = mapped_column(String)
    title: Mapped[str] = mapped_column(String)
    body: Mapped[str] = mapped_column(Text)
    data_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, default=dict)
    # pending, processing, sent, failed
    status: Mapped[str] = mapped_column(String, default="pending")
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=10, nullable=False)
    next_attempt_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    first_attempted_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    last_attempted_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    dedupe_key: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    claim_token: Mapped[str | None] = mapped_column(String, nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now, onupdate=utc_now)


Index(
    "ix_push_notification_queue_status_next",
    PushDelivery.status,
    PushDelivery.next_attempt_at,
    PushDelivery.created_at,
)


class SmsDelivery(Base):
    __tablename__ = "sms_deliveries"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    message_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    recipient_id: Mapped[str] = mapped_column(String, index=True)
    phone_number: Mapped[str] = mapped_column(String)
    sms_content: Mapped[str] = mapped_column(Text)
    full_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    # normal, high, emergency, otp
    priority: Mapped[str] = mapped_column(String, default="normal")
    was_truncated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    status: Mapped[str] = mapped_column(String, default="pending")
    transport_id: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    cost_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 4), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    # Cleared on failure; a failed SMS is never rescheduled.
    next_attempt_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    first_attempted_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    last_attempted_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    dedupe_key: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    claim_token: Mapped[str | None] = mapped_column(String, nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now, onupdate=utc_now)


Index("ix_sms_deliveries_status_created", SmsDelivery.status, SmsDelivery.created_at)
Index("ix_sms_deliveries_sent_at", SmsDelivery.sent_at)


class PushDeliveryReceipt(Base):
    __tablename__ = "push_notification_deliveries"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # Expo ticket or source message id reported back by the device.
    message_id: Mapped[str] = mapped_column(String, index=True)
    recipient_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    push_token: Mapped[str | None] = mapped_column(String, nullable=True)
    # delivered, opened, failed
    status: Mapped[str] = mapped_column(String)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    opened_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    device_platform: Mapped[str | None] = mapped_column(String, nullable=True)
    device_id: Mapped[str | None] = mapped_column(String, nullable=True)
    app_version: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now, onupdate=utc_now)


class NotificationAnalytics(Base):
    __tablename__ = "notification_analytics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    notification_id: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    # push or sms
    channel: Mapped[str] = mapped_column(String)
    success: Mapped[bool] = mapped_column(Boolean)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    cost: Mapped[Decimal | None] = mapped_column(Numeric(12, 4), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now)


class OrganizationSmsBudget(Base):
    __tablename__ = "organization_sms_budget"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    daily_budget: Mapped[Decimal] = mapped_column(Numeric(12, 4))
    monthly_budget: Mapped[Decimal] = mapped_column(Numeric(12, 4))
    current_daily_spend: Mapped[Decimal] = mapped_column(Numeric(12, 4), default=Decimal("0"))
    current_monthly_spend: Mapped[Decimal] = mapped_column(Numeric(12, 4), default=Decimal("0"))
    # ISO date (YYYY-MM-DD) and year-month (YYYY-MM) period markers.
    last_daily_reset: Mapped[str | None] = mapped_column(String(10), nullable=True)
    last_monthly_reset: Mapped[str | None] = mapped_column(String(7), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now, onupdate=utc_now)


class AdminMessage(Base):
    __tablename__ = "admin_messages"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    sender_user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    recipient_roles: Mapped[list[str] | None] = mapped_column(JsonType, default=list)
    recipient_division_ids: Mapped[list[str] | None] = mapped_column(JsonType, default=list)
    subject: Mapped[str] = mapped_column(String)
    message: Mapped[str] = mapped_column(Text)
    priority: Mapped[str] = mapped_column(String, default="normal")
    category: Mapped[str] = mapped_column(String, default="general")
    requires_acknowledgment: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, default=dict)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now)


class MeetingOccurrence(Base):
    __tablename__ = "meeting_occurrences"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    division_id: Mapped[str] = mapped_column(String, ForeignKey("divisions.id"), index=True)
    meeting_pattern_id: Mapped[str | None] = mapped_column(String, nullable=True)
    scheduled_at: Mapped[datetime] = mapped_column(UtcDateTime, index=True)
    location_name: Mapped[str | None] = mapped_column(String, nullable=True)
    location_address: Mapped[str | None] = mapped_column(String, nullable=True)
    is_cancelled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class MeetingNotificationPreference(Base):
    __tablename__ = "meeting_notification_preferences"

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    notify_week_before: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    notify_day_before: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    notify_hour_before: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class MeetingNotificationLog(Base):
    __tablename__ = "meeting_notification_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    success: Mapped[bool] = mapped_column(Boolean)
    week_before_count: Mapped[int] = mapped_column(Integer, default=0)
    day_before_count: Mapped[int] = mapped_column(Integer, default=0)
    hour_before_count: Mapped[int] = mapped_column(Integer, default=0)
    notifications_queued: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now)
