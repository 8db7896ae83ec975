"""Dispatcher persistence models (send log + read-mostly user state)."""

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, Index, String, func, text
from sqlalchemy.orm import Mapped, mapped_column

from totlpush.common.db import Base, JSONType


class SendLog(Base):
    """One row per (environment, notification, event, user) send attempt.

    `user_id` is NULL for global (broadcast) claims; the two partial unique
    indexes below are the only concurrency primitive for at-most-once.
    """

    __tablename__ = "notification_send_log"
    __table_args__ = (
        Index(
            "uq_send_log_user",
            "environment",
            "notification_key",
            "event_id",
            "user_id",
            unique=True,
            postgresql_where=text("user_id IS NOT NULL"),
            sqlite_where=text("user_id IS NOT NULL"),
        ),
        Index(
            "uq_send_log_global",
            "environment",
            "notification_key",
            "event_id",
            unique=True,
            postgresql_where=text("user_id IS NULL"),
            sqlite_where=text("user_id IS NULL"),
        ),
        Index("ix_send_log_cooldown", "environment", "notification_key", "user_id", "result", "created_at"),
        Index("ix_send_log_result_created", "result", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    environment: Mapped[str] = mapped_column(String)
    notification_key: Mapped[str] = mapped_column(String)
    event_id: Mapped[str] = mapped_column(String)
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    external_id: Mapped[str | None] = mapped_column(String, nullable=True)
    onesignal_notification_id: Mapped[str | None] = mapped_column(String, nullable=True)
    target_type: Mapped[str | None] = mapped_column(String, nullable=True)
    targeting_summary: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    payload_summary: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    result: Mapped[str] = mapped_column(String, default="pending")
    error: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class PushSubscription(Base):
    """A registered device; the dispatcher only flips `subscribed`/`invalid`."""

    __tablename__ = "push_subscriptions"
    __table_args__ = (Index("ix_push_subscriptions_user_active", "user_id", "is_active", "subscribed"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id: Mapped[str] = mapped_column(String, index=True)
    player_id: Mapped[str] = mapped_column(String, unique=True)
    external_id: Mapped[str | None] = mapped_column(String, nullable=True)
    platform: Mapped[str | None] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    subscribed: Mapped[bool] = mapped_column(Boolean, default=True)
    invalid: Mapped[bool] = mapped_column(Boolean, default=False)
    last_checked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class UserNotificationPreferences(Base):
    __tablename__ = "user_notification_preferences"

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    preferences: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class LeagueNotificationSetting(Base):
    __tablename__ = "league_notification_settings"

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    league_id: Mapped[str] = mapped_column(String, primary_key=True)
    muted: Mapped[bool] = mapped_column(Boolean, default=False)
