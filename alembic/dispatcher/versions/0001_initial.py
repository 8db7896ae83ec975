"""initial dispatcher schema

Revision ID: 0001_dispatcher
Revises:
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_dispatcher"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "notification_send_log",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("environment", sa.String(), nullable=False),
        sa.Column("notification_key", sa.String(), nullable=False),
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("external_id", sa.String(), nullable=True),
        sa.Column("onesignal_notification_id", sa.String(), nullable=True),
        sa.Column("target_type", sa.String(), nullable=True),
        sa.Column("targeting_summary", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("payload_summary", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("result", sa.String(), server_default="pending", nullable=False),
        sa.Column("error", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("environment IN ('prod', 'dev', 'staging')", name="ck_send_log_environment"),
        sa.CheckConstraint(
            "result IN ('pending', 'accepted', 'failed', 'suppressed_duplicate', 'suppressed_preference', "
            "'suppressed_cooldown', 'suppressed_quiet_hours', 'suppressed_muted', 'suppressed_rollout', "
            "'suppressed_unsubscribed')",
            name="ck_send_log_result",
        ),
        sa.CheckConstraint(
            "target_type IS NULL OR target_type IN ('external_user_ids', 'player_ids', 'segment', 'filters')",
            name="ck_send_log_target_type",
        ),
    )
    # One row per key: per-user claims and global (user_id IS NULL) claims.
    op.create_index(
        "uq_send_log_user",
        "notification_send_log",
        ["environment", "notification_key", "event_id", "user_id"],
        unique=True,
        postgresql_where=sa.text("user_id IS NOT NULL"),
    )
    op.create_index(
        "uq_send_log_global",
        "notification_send_log",
        ["environment", "notification_key", "event_id"],
        unique=True,
        postgresql_where=sa.text("user_id IS NULL"),
    )
    op.create_index(
        "ix_send_log_cooldown",
        "notification_send_log",
        ["environment", "notification_key", "user_id", "result", "created_at"],
    )
    op.create_index("ix_send_log_result_created", "notification_send_log", ["result", "created_at"])

    op.create_table(
        "push_subscriptions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("player_id", sa.String(), nullable=False),
        sa.Column("external_id", sa.String(), nullable=True),
        sa.Column("platform", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("subscribed", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("invalid", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("last_checked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("player_id"),
    )
    op.create_index("ix_push_subscriptions_user_id", "push_subscriptions", ["user_id"])
    op.create_index(
        "ix_push_subscriptions_user_active",
        "push_subscriptions",
        ["user_id", "is_active", "subscribed"],
    )

    op.create_table(
        "user_notification_preferences",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column(
            "preferences",
            postgresql.JSONB(astext_type=sa.Text()),
            server_default=sa.text("'{}'::jsonb"),
            nullable=False,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("user_id"),
    )

    op.create_table(
        "league_notification_settings",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("league_id", sa.String(), nullable=False),
        sa.Column("muted", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.PrimaryKeyConstraint("user_id", "league_id"),
    )


def downgrade() -> None:
    op.drop_table("league_notification_settings")
    op.drop_table("user_notification_preferences")
    op.drop_index("ix_push_subscriptions_user_active", table_name="push_subscriptions")
    op.drop_index("ix_push_subscriptions_user_id", table_name="push_subscriptions")
    op.drop_table("push_subscriptions")
    op.drop_index("ix_send_log_result_created", table_name="notification_send_log")
    op.drop_index("ix_send_log_cooldown", table_name="notification_send_log")
    op.drop_index("uq_send_log_global", table_name="notification_send_log")
    op.drop_index("uq_send_log_user", table_name="notification_send_log")
    op.drop_table("notification_send_log")
