from sqlalchemy import Column, Integer, Boolean, CheckConstraint, Float, Date, DateTime, ForeignKey, Text, String, Index, UniqueConstraint, JSON, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from core.database import Base
import uuid
from typing import Optional

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class WebhookToken(Base):
    """
    Inbound credential for the Health Auto Export push path.

    Only the SHA-256 of the token is stored; the raw value is shown once
    when the token is created.
    """
    __tablename__ = "webhook_token"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    user_id = Column(Text, nullable=False, index=True)
    name = Column(Text, nullable=False, default="Health Auto Export")
    token_hash = Column(Text, nullable=False, unique=True)
    is_active = Column(Boolean, nullable=False, default=True)
    last_used_at = Column(DateTime(timezone=True), nullable=True)


class Workout(Base):
    """
    One observed running activity.

    ``workout_key`` is the stable identifier: the source's own id when it
    sends one, otherwise a fingerprint of (start, duration). It is unique per
    user, and every ingestion path resolves the same run to the same key.
    Rows are immutable except for filling empty supplemental metrics.
    """
    __tablename__ = "workout"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    user_id = Column(Text, nullable=False)
    workout_key = Column(Text, nullable=False)
    activity_name = Column(Text, nullable=False, default="Running")

    # Calendar date in the offset the source observed the run in.
    date_local = Column(Date, nullable=False)
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)

    duration_seconds = Column(Float, nullable=False)
    distance_meters = Column(Float, nullable=False, default=0.0)
    # Null when distance is zero; never 0 or a placeholder.
    avg_pace_seconds_per_km = Column(Float, nullable=True)

    # --- Supplemental metrics (fill-once) ---
    energy_burned_kcal = Column(Float, nullable=True)
    avg_heart_rate = Column(Float, nullable=True)
    max_heart_rate = Column(Float, nullable=True)
    elevation_gain_meters = Column(Float, nullable=True)
    weather_temp_c = Column(Float, nullable=True)
    weather_condition = Column(Text, nullable=True)

    # 'health_auto_export' | 'healthkit' | 'apple_watch' | 'manual'
    source = Column(Text, nullable=False)
    client_id = Column(Text, nullable=True)
    raw_payload = Column(JSONType, nullable=True)

    sync_version = Column(Integer, nullable=False, default=1)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "workout_key", name="uq_workout_user_key"),
        CheckConstraint("duration_seconds > 0", name="ck_workout_duration_positive"),
        CheckConstraint("distance_meters >= 0", name="ck_workout_distance_non_negative"),
        Index("ix_workout_user_start", "user_id", "start_time"),
        Index("ix_workout_user_date", "user_id", "date_local"),
    )

    SUPPLEMENTAL_FIELDS = (
        "energy_burned_kcal",
        "avg_heart_rate",
        "max_heart_rate",
        "elevation_gain_meters",
        "weather_temp_c",
        "weather_condition",
    )


class DailyStat(Base):
    """
    Per-user, per-date rollup of all workouts on that date.

    Materialized view over ``workout``: every column is exactly recomputable
    by folding that day's workouts. Average pace is derived from the totals
    on read and is never stored.
    """
    __tablename__ = "daily_stat"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    user_id = Column(Text, nullable=False)
    date = Column(Date, nullable=False)
    year = Column(Integer, nullable=False)

    run_count = Column(Integer, nullable=False, default=0)
    total_distance_meters = Column(Float, nullable=False, default=0.0)
    total_duration_seconds = Column(Float, nullable=False, default=0.0)
    longest_run_meters = Column(Float, nullable=True)
    fastest_pace_seconds_per_km = Column(Float, nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "date", name="uq_daily_stat_user_date"),
        Index("ix_daily_stat_user_year", "user_id", "year"),
    )

    @property
    def avg_pace_seconds_per_km(self) -> Optional[float]:
        if not self.total_distance_meters or self.total_distance_meters <= 0:
            return None
        return self.total_duration_seconds / (self.total_distance_meters / 1000)


class UserSyncState(Base):
    """Per-user incremental sync cursor. Only a full resync may rewind it."""
    __tablename__ = "user_sync_state"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    user_id = Column(Text, nullable=False, unique=True)
    server_cursor = Column(Text, nullable=True)
    cursor_at = Column(DateTime(timezone=True), nullable=True)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    last_sync_id = Column(Uuid(as_uuid=True), nullable=True)
    total_syncs = Column(Integer, nullable=False, default=0)


class SyncIdempotency(Base):
    """Manifest of a fully applied sync batch, keyed by the client's idempotency key."""
    __tablename__ = "sync_idempotency"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    user_id = Column(Text, nullable=False)
    idempotency_key = Column(String(64), nullable=False)
    response_body = Column(JSONType, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "idempotency_key", name="uq_sync_idempotency_user_key"),
    )


class SyncHistory(Base):
    """One audit row per processed sync call."""
    __tablename__ = "sync_history"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    user_id = Column(Text, nullable=False, index=True)
    sync_mode = Column(Text, nullable=False)
    workouts_received = Column(Integer, nullable=False, default=0)
    workouts_created = Column(Integer, nullable=False, default=0)
    workouts_updated = Column(Integer, nullable=False, default=0)
    workouts_unchanged = Column(Integer, nullable=False, default=0)
    workouts_skipped = Column(Integer, nullable=False, default=0)
    conflicts_count = Column(Integer, nullable=False, default=0)
    duration_ms = Column(Integer, nullable=True)
    ip_address = Column(Text, nullable=True)
    user_agent = Column(Text, nullable=True)


class WorkoutConflict(Base):
    """
    A same-identity, divergent-facts collision surfaced to the caller.

    Recorded for both ingestion paths. The stored workout is never touched;
    ``resolution`` says which side stood.
    """
    __tablename__ = "workout_conflict"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    user_id = Column(Text, nullable=False, index=True)
    source = Column(Text, nullable=False)
    # Null for records that never got far enough to be identified.
    workout_key = Column(Text, nullable=True)
    client_id = Column(Text, nullable=True)
    # 'data_mismatch' | 'supplemental_mismatch' | 'normalization_failed'
    reason = Column(Text, nullable=False)
    # 'kept_server' | 'rejected'
    resolution = Column(Text, nullable=False)
    sync_id = Column(Uuid(as_uuid=True), nullable=True)
    detail = Column(JSONType, nullable=True)


class Goal(Base):
    __tablename__ = "goal"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
    user_id = Column(Text, nullable=False)
    year = Column(Integer, nullable=False)
    target_days = Column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "year", name="uq_goal_user_year"),
        CheckConstraint("target_days >= 1", name="ck_goal_target_days_positive"),
    )


class Achievement(Base):
    """
    A milestone or goal crossing that has already been announced.

    The unique key makes "emit once" a property of the insert, not of
    application bookkeeping.
    """
    __tablename__ = "achievement"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False)
    year = Column(Integer, nullable=False)
    # 'running_days' | 'distance_km' | 'goal'
    kind = Column(Text, nullable=False)
    threshold = Column(Integer, nullable=False)
    unlocked_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "year", "kind", "threshold", name="uq_achievement_user_year_kind_threshold"),
    )


class WebhookSubscriber(Base):
    """
    Registered outbound endpoint.

    ``consecutive_failures`` counts exhausted deliveries in a row; crossing
    the breaker threshold deactivates the subscriber until it is manually
    reactivated.
    """
    __tablename__ = "webhook_subscriber"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    user_id = Column(Text, nullable=False, index=True)
    name = Column(Text, nullable=False)
    url = Column(Text, nullable=False)
    secret = Column(Text, nullable=False)
    events = Column(JSONType, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True)
    max_retries = Column(Integer, nullable=False, default=5)
    timeout_ms = Column(Integer, nullable=False, default=10000)

    consecutive_failures = Column(Integer, nullable=False, default=0)
    last_success_at = Column(DateTime(timezone=True), nullable=True)
    last_failure_at = Column(DateTime(timezone=True), nullable=True)
    # e.g. "circuit_open"
    deactivated_reason = Column(Text, nullable=True)
    # Soft delete: delivery history keeps pointing at the row.
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    deliveries = relationship("WebhookDelivery", back_populates="subscriber")

    __table_args__ = (
        CheckConstraint("max_retries >= 1", name="ck_subscriber_max_retries_positive"),
        Index("ix_webhook_subscriber_active", "is_active"),
    )

    def subscribes_to(self, event_type: str) -> bool:
        return event_type in (self.events or [])


class WebhookDelivery(Base):
    """
    One attempt lineage of sending one event to one subscriber.

    ``payload`` is the exact body that was signed; redeliveries send it
    byte-for-byte. Rows are never deleted.
    """
    __tablename__ = "webhook_delivery"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    subscriber_id = Column(Uuid(as_uuid=True), ForeignKey("webhook_subscriber.id"), nullable=False, index=True)
    event_id = Column(Text, nullable=False)
    event_type = Column(Text, nullable=False)
    payload = Column(Text, nullable=False)

    # 'pending' | 'in_flight' | 'success' | 'failed' | 'exhausted'
    status = Column(Text, nullable=False, default="pending")
    attempts = Column(Integer, nullable=False, default=0)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)

    last_response_status = Column(Integer, nullable=True)
    last_response_body = Column(Text, nullable=True)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    subscriber = relationship("WebhookSubscriber", back_populates="deliveries")

    __table_args__ = (
        UniqueConstraint("subscriber_id", "event_id", name="uq_webhook_delivery_subscriber_event"),
        Index("ix_webhook_delivery_status_next_retry", "status", "next_retry_at"),
        Index("ix_webhook_delivery_event_id", "event_id"),
    )
