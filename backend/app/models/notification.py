"""Notification rules (per tag) and the notifications they produce.

A rule fires for a tag value change when its condition holds. Every
recipient gets one Notification row; escalated copies point back to the
level-0 row through parent_notification_id.
"""
from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Boolean, ForeignKey, Index, String, Text, func
from sqlalchemy.dialects.postgresql import JSON
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, TimestampMixin


class ConditionType(str, enum.Enum):
    value_change = "value_change"
    threshold = "threshold"
    state_change = "state_change"


class NotificationType(str, enum.Enum):
    both = "both"
    email = "email"
    in_app = "in_app"


class NotificationEvent(TimestampMixin, Base):
    __tablename__ = "notification_events"

    __table_args__ = (
        Index("ix_notification_events_tag_active", "tag_id", "is_active"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    event_name: Mapped[str] = mapped_column(String(200))
    description: Mapped[str | None] = mapped_column(Text, default=None)
    tag_id: Mapped[int] = mapped_column(ForeignKey("tags.id", ondelete="CASCADE"))
    condition_type: Mapped[str] = mapped_column(String(20))
    threshold_value: Mapped[float | None] = mapped_column(default=None)
    comparison_operator: Mapped[str | None] = mapped_column(String(2), default=None)
    target_state: Mapped[str | None] = mapped_column(String(100), default=None)
    state_duration: Mapped[int | None] = mapped_column(default=None)
    state_duration_unit: Mapped[str | None] = mapped_column(String(10), default=None)
    cooldown_minutes: Mapped[int] = mapped_column(default=0)
    last_triggered_at: Mapped[datetime | None] = mapped_column(default=None)

    send_email: Mapped[bool] = mapped_column(Boolean, default=True)
    send_in_app: Mapped[bool] = mapped_column(Boolean, default=True)
    selected_users: Mapped[list | None] = mapped_column(JSON, default=None)
    filter_by_location_id: Mapped[int | None] = mapped_column(default=None)
    filter_by_line_id: Mapped[int | None] = mapped_column(default=None)

    enable_escalation: Mapped[bool] = mapped_column(Boolean, default=False)
    escalation_delay: Mapped[int | None] = mapped_column(default=None)
    escalation_delay_unit: Mapped[str | None] = mapped_column(String(10), default=None)
    escalation_user_ids: Mapped[list | None] = mapped_column(JSON, default=None)
    max_escalation_level: Mapped[int] = mapped_column(default=1)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    @property
    def escalation_recipients(self) -> list[int]:
        return [int(uid) for uid in (self.escalation_user_ids or [])]

    @property
    def notification_type(self) -> str:
        if self.send_email and self.send_in_app:
            return NotificationType.both.value
        if self.send_email:
            return NotificationType.email.value
        return NotificationType.in_app.value

    def __repr__(self) -> str:
        return f"<NotificationEvent {self.id} '{self.event_name}' {self.condition_type}>"


class Notification(Base):
    __tablename__ = "notifications"

    __table_args__ = (
        Index("ix_notifications_user_read", "user_id", "is_read"),
        Index("ix_notifications_event", "event_id"),
        Index("ix_notifications_email_token", "email_token", unique=True),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    event_id: Mapped[int] = mapped_column(
        ForeignKey("notification_events.id", ondelete="CASCADE")
    )
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))
    message: Mapped[str] = mapped_column(Text)
    tag_value: Mapped[str | None] = mapped_column(String(100), default=None)
    old_tag_value: Mapped[str | None] = mapped_column(String(100), default=None)
    notification_type: Mapped[str] = mapped_column(String(10), default=NotificationType.both.value)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    read_at: Mapped[datetime | None] = mapped_column(default=None)
    email_sent_at: Mapped[datetime | None] = mapped_column(default=None)
    acknowledged_at: Mapped[datetime | None] = mapped_column(default=None)
    escalation_level: Mapped[int] = mapped_column(default=0)
    parent_notification_id: Mapped[int | None] = mapped_column(
        ForeignKey("notifications.id", ondelete="SET NULL"), default=None
    )
    escalation_job_id: Mapped[str | None] = mapped_column(String(120), default=None)
    email_token: Mapped[str | None] = mapped_column(String(64), default=None)
    token_expires_at: Mapped[datetime | None] = mapped_column(default=None)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())

    def __repr__(self) -> str:
        return (
            f"<Notification {self.id} event={self.event_id} user={self.user_id} "
            f"level={self.escalation_level}>"
        )
