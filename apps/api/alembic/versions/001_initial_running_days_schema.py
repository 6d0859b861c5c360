"""initial running days schema

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

Workouts and their daily rollups, sync bookkeeping, goals and achievements,
inbound webhook tokens and the outbound delivery queue.
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID


revision = "001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _id():
    return sa.Column("id", UUID(as_uuid=True), nullable=False)


def _created_at():
    return sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False)


def _updated_at():
    return sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False)


def upgrade() -> None:
    op.create_table(
        "webhook_token",
        _id(),
        _created_at(),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("token_hash", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("token_hash"),
    )
    op.create_index("ix_webhook_token_user_id", "webhook_token", ["user_id"])

    op.create_table(
        "workout",
        _id(),
        _created_at(),
        _updated_at(),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("workout_key", sa.Text(), nullable=False),
        sa.Column("activity_name", sa.Text(), nullable=False),
        sa.Column("date_local", sa.Date(), nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_seconds", sa.Float(), nullable=False),
        sa.Column("distance_meters", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("avg_pace_seconds_per_km", sa.Float(), nullable=True),
        sa.Column("energy_burned_kcal", sa.Float(), nullable=True),
        sa.Column("avg_heart_rate", sa.Float(), nullable=True),
        sa.Column("max_heart_rate", sa.Float(), nullable=True),
        sa.Column("elevation_gain_meters", sa.Float(), nullable=True),
        sa.Column("weather_temp_c", sa.Float(), nullable=True),
        sa.Column("weather_condition", sa.Text(), nullable=True),
        sa.Column("source", sa.Text(), nullable=False),
        sa.Column("client_id", sa.Text(), nullable=True),
        sa.Column("raw_payload", JSONB(), nullable=True),
        sa.Column("sync_version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "workout_key", name="uq_workout_user_key"),
        sa.CheckConstraint("duration_seconds > 0", name="ck_workout_duration_positive"),
        sa.CheckConstraint("distance_meters >= 0", name="ck_workout_distance_non_negative"),
    )
    op.create_index("ix_workout_user_start", "workout", ["user_id", "start_time"])
    op.create_index("ix_workout_user_date", "workout", ["user_id", "date_local"])

    op.create_table(
        "daily_stat",
        _id(),
        _created_at(),
        _updated_at(),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("run_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_distance_meters", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_duration_seconds", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("longest_run_meters", sa.Float(), nullable=True),
        sa.Column("fastest_pace_seconds_per_km", sa.Float(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "date", name="uq_daily_stat_user_date"),
    )
    op.create_index("ix_daily_stat_user_year", "daily_stat", ["user_id", "year"])

    op.create_table(
        "user_sync_state",
        _id(),
        _created_at(),
        _updated_at(),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("server_cursor", sa.Text(), nullable=True),
        sa.Column("cursor_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_id", UUID(as_uuid=True), nullable=True),
        sa.Column("total_syncs", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id"),
    )

    op.create_table(
        "sync_idempotency",
        _id(),
        _created_at(),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("idempotency_key", sa.String(64), nullable=False),
        sa.Column("response_body", JSONB(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "idempotency_key", name="uq_sync_idempotency_user_key"),
    )

    op.create_table(
        "sync_history",
        _id(),
        _created_at(),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("sync_mode", sa.Text(), nullable=False),
        sa.Column("workouts_received", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("workouts_created", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("workouts_updated", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("workouts_unchanged", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("workouts_skipped", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("conflicts_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("ip_address", sa.Text(), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_sync_history_user_id", "sync_history", ["user_id"])

    op.create_table(
        "workout_conflict",
        _id(),
        _created_at(),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("source", sa.Text(), nullable=False),
        sa.Column("workout_key", sa.Text(), nullable=True),
        sa.Column("client_id", sa.Text(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("resolution", sa.Text(), nullable=False),
        sa.Column("sync_id", UUID(as_uuid=True), nullable=True),
        sa.Column("detail", JSONB(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_workout_conflict_user_id", "workout_conflict", ["user_id"])

    op.create_table(
        "goal",
        _id(),
        _created_at(),
        _updated_at(),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("target_days", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "year", name="uq_goal_user_year"),
        sa.CheckConstraint("target_days >= 1", name="ck_goal_target_days_positive"),
    )

    op.create_table(
        "achievement",
        _id(),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("kind", sa.Text(), nullable=False),
        sa.Column("threshold", sa.Integer(), nullable=False),
        sa.Column("unlocked_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "year", "kind", "threshold", name="uq_achievement_user_year_kind_threshold"),
    )

    op.create_table(
        "webhook_subscriber",
        _id(),
        _created_at(),
        _updated_at(),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("secret", sa.Text(), nullable=False),
        sa.Column("events", JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default=sa.text("5")),
        sa.Column("timeout_ms", sa.Integer(), nullable=False, server_default=sa.text("10000")),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_success_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_failure_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deactivated_reason", sa.Text(), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("max_retries >= 1", name="ck_subscriber_max_retries_positive"),
    )
    op.create_index("ix_webhook_subscriber_user_id", "webhook_subscriber", ["user_id"])
    op.create_index("ix_webhook_subscriber_active", "webhook_subscriber", ["is_active"])

    op.create_table(
        "webhook_delivery",
        _id(),
        _created_at(),
        sa.Column("subscriber_id", UUID(as_uuid=True), nullable=False),
        sa.Column("event_id", sa.Text(), nullable=False),
        sa.Column("event_type", sa.Text(), nullable=False),
        sa.Column("payload", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_response_status", sa.Integer(), nullable=True),
        sa.Column("last_response_body", sa.Text(), nullable=True),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["subscriber_id"], ["webhook_subscriber.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("subscriber_id", "event_id", name="uq_webhook_delivery_subscriber_event"),
    )
    op.create_index("ix_webhook_delivery_subscriber_id", "webhook_delivery", ["subscriber_id"])
    op.create_index("ix_webhook_delivery_status_next_retry", "webhook_delivery", ["status", "next_retry_at"])
    op.create_index("ix_webhook_delivery_event_id", "webhook_delivery", ["event_id"])


def downgrade() -> None:
    op.drop_table("webhook_delivery")
    op.drop_table("webhook_subscriber")
    op.drop_table("achievement")
    op.drop_table("goal")
    op.drop_table("workout_conflict")
    op.drop_table("sync_history")
    op.drop_table("sync_idempotency")
    op.drop_table("user_sync_state")
    op.drop_table("daily_stat")
    op.drop_table("workout")
    op.drop_table("webhook_token")
