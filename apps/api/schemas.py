from pydantic import BaseModel, ConfigDict, Field, AliasChoices, HttpUrl, field_validator
from datetime import datetime, date
from uuid import UUID
from typing import Optional, List, Dict, Any, Literal, Tuple, Union

from services.workout_normalizer import RawWorkout

EVENT_TYPES = (
    "goal.created",
    "goal.updated",
    "goal.deleted",
    "goal.achieved",
    "milestone.reached",
    "streak.broken",
    "webhook.test",
)

EVENT_DESCRIPTIONS = {
    "goal.created": "A yearly goal was set",
    "goal.updated": "A goal's target days changed",
    "goal.deleted": "A goal was removed",
    "goal.achieved": "The year's running days reached the goal target",
    "milestone.reached": "A running-days (50 to 300) or distance (100 to 2000 km) milestone was crossed",
    "streak.broken": "A running streak ended",
    "webhook.test": "Manual test ping from the test endpoint",
}

EventType = Literal[
    "goal.created",
    "goal.updated",
    "goal.deleted",
    "goal.achieved",
    "milestone.reached",
    "streak.broken",
    "webhook.test",
]


# =============================================================================
# INBOUND: HEALTH AUTO EXPORT WEBHOOK
# =============================================================================


class QuantityIn(BaseModel):
    """Health Auto Export quantity: ``{"qty": 5.2, "units": "km"}``."""
    qty: float
    units: Optional[str] = None


# A bare number (canonical units) or a {qty, units} pair.
Quantity = Union[float, QuantityIn]


def split_quantity(value: Optional[Quantity], default_units: str) -> Tuple[Optional[float], str]:
    if value is None:
        return None, default_units
    if isinstance(value, QuantityIn):
        return value.qty, value.units or default_units
    return float(value), default_units


class WebhookWorkoutIn(BaseModel):
    """One workout from the Health Auto Export payload."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: Optional[str] = None
    name: str = Field(min_length=1)
    start: str
    end: str
    duration: Quantity
    distance: Optional[Quantity] = Field(
        default=None, validation_alias=AliasChoices("distance", "totalDistance")
    )
    active_energy: Optional[Quantity] = Field(
        default=None, validation_alias=AliasChoices("activeEnergy", "totalEnergyBurned", "activeEnergyBurned")
    )
    avg_heart_rate: Optional[Quantity] = Field(
        default=None, validation_alias=AliasChoices("avgHeartRate", "heartRateAvg")
    )
    max_heart_rate: Optional[Quantity] = Field(
        default=None, validation_alias=AliasChoices("maxHeartRate", "heartRateMax")
    )
    elevation_ascended: Optional[Quantity] = Field(
        default=None, validation_alias=AliasChoices("elevationAscended", "elevationUp")
    )
    temperature: Optional[Quantity] = None
    weather: Optional[str] = None

    def to_raw(self, raw_payload: Dict[str, Any]) -> RawWorkout:
        duration, duration_units = split_quantity(self.duration, "s")
        distance, distance_units = split_quantity(self.distance, "m")
        energy, energy_units = split_quantity(self.active_energy, "kcal")
        elevation, elevation_units = split_quantity(self.elevation_ascended, "m")
        temperature, temperature_units = split_quantity(self.temperature, "degC")
        return RawWorkout(
            source="health_auto_export",
            name=self.name,
            start=self.start,
            end=self.end,
            duration=duration,
            duration_units=duration_units,
            distance=distance,
            distance_units=distance_units,
            source_id=self.id,
            active_energy=energy,
            active_energy_units=energy_units,
            avg_heart_rate=split_quantity(self.avg_heart_rate, "count/min")[0],
            max_heart_rate=split_quantity(self.max_heart_rate, "count/min")[0],
            elevation_gain=elevation,
            elevation_units=elevation_units,
            temperature=temperature,
            temperature_units=temperature_units,
            weather=self.weather,
            raw_payload=raw_payload,
        )


class WebhookIngestResponse(BaseModel):
    success: bool
    processed: int
    skipped: int
    updated: int = 0
    conflicts: int = 0
    errors: List[Dict[str, Any]] = []
    newMilestones: Optional[List[Dict[str, Any]]] = None


# =============================================================================
# INBOUND: CLIENT SYNC
# =============================================================================


class SyncWorkoutIn(BaseModel):
    """One workout observed on the device."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    client_id: Optional[str] = Field(default=None, max_length=100, alias="clientId")
    name: str = "Running"
    start_time: datetime = Field(alias="startTime")
    end_time: datetime = Field(alias="endTime")
    duration_seconds: float = Field(alias="durationSeconds", ge=0, le=86400 * 7)
    distance_meters: float = Field(alias="distanceMeters", ge=0, le=1_000_000)
    energy_burned_kcal: Optional[float] = Field(default=None, alias="energyBurnedKcal", ge=0, le=10000)
    avg_heart_rate: Optional[float] = Field(default=None, alias="avgHeartRate", ge=30, le=250)
    max_heart_rate: Optional[float] = Field(default=None, alias="maxHeartRate", ge=30, le=250)
    # Accepted for compatibility; the server always derives pace itself.
    avg_pace_seconds_per_km: Optional[float] = Field(default=None, alias="avgPaceSecondsPerKm")
    source: Literal["healthkit", "apple_watch", "manual"]

    def to_raw(self, raw_payload: Dict[str, Any]) -> RawWorkout:
        return RawWorkout(
            source=self.source,
            name=self.name,
            start=self.start_time,
            end=self.end_time,
            duration=self.duration_seconds,
            distance=self.distance_meters,
            source_id=self.client_id,
            client_id=self.client_id,
            active_energy=self.energy_burned_kcal,
            avg_heart_rate=self.avg_heart_rate,
            max_heart_rate=self.max_heart_rate,
            raw_payload=raw_payload,
        )


class SyncRequest(BaseModel):
    """
    Batch sync envelope.

    ``workouts`` stays loosely typed here: each record is decoded on its own
    so that one bad record is reported instead of rejecting the batch.
    """
    model_config = ConfigDict(populate_by_name=True)

    workouts: List[Dict[str, Any]] = Field(min_length=1)
    mode: Literal["incremental", "full"] = "incremental"
    idempotency_key: Optional[str] = Field(default=None, max_length=64, alias="idempotencyKey")
    client_sync_timestamp: Optional[datetime] = Field(default=None, alias="clientSyncTimestamp")
    cursor: Optional[str] = None


class SyncConflictOut(BaseModel):
    clientId: Optional[str] = None
    serverId: Optional[str] = None
    reason: Literal["data_mismatch", "supplemental_mismatch", "normalization_failed"]
    resolution: Literal["kept_server", "rejected"]
    message: Optional[str] = None


class SyncResponse(BaseModel):
    success: bool = True
    syncId: str
    serverTimestamp: str
    nextCursor: Optional[str] = None
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    conflicts: List[SyncConflictOut] = []


class SyncStatusResponse(BaseModel):
    lastSyncAt: Optional[str] = None
    serverCursor: Optional[str] = None
    totalWorkouts: int = 0
    pendingSync: int = 0
    oldestWorkout: Optional[str] = None
    newestWorkout: Optional[str] = None


# =============================================================================
# WORKOUTS & PROGRESS
# =============================================================================


class WorkoutResponse(BaseModel):
    id: UUID
    workout_key: str
    activity_name: str
    date_local: date
    start_time: datetime
    end_time: datetime
    duration_seconds: float
    distance_meters: float
    avg_pace_seconds_per_km: Optional[float] = None
    energy_burned_kcal: Optional[float] = None
    avg_heart_rate: Optional[float] = None
    max_heart_rate: Optional[float] = None
    elevation_gain_meters: Optional[float] = None
    weather_temp_c: Optional[float] = None
    weather_condition: Optional[str] = None
    source: str
    client_id: Optional[str] = None
    sync_version: int

    model_config = ConfigDict(from_attributes=True)


class WorkoutListResponse(BaseModel):
    workouts: List[WorkoutResponse]
    next_cursor: Optional[str] = None


class DailyStatResponse(BaseModel):
    date: date
    run_count: int
    total_distance_meters: float
    total_duration_seconds: float
    avg_pace_seconds_per_km: Optional[float] = None
    longest_run_meters: Optional[float] = None
    fastest_pace_seconds_per_km: Optional[float] = None

    model_config = ConfigDict(from_attributes=True)


class GoalUpsert(BaseModel):
    target_days: int = Field(alias="targetDays", ge=1, le=366)

    model_config = ConfigDict(populate_by_name=True)


class GoalResponse(BaseModel):
    id: UUID
    year: int
    target_days: int
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


# =============================================================================
# CREDENTIALS & OUTBOUND SUBSCRIBERS
# =============================================================================


class WebhookTokenCreate(BaseModel):
    name: str = Field(default="Health Auto Export", min_length=1, max_length=100)


class WebhookTokenResponse(BaseModel):
    id: UUID
    name: str
    is_active: bool
    created_at: datetime
    last_used_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class WebhookTokenCreated(WebhookTokenResponse):
    """Returned once, at creation: the only time the raw token is visible."""
    token: str


class SubscriberCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1, max_length=100)
    url: HttpUrl
    events: List[EventType] = Field(min_length=1)
    max_retries: int = Field(default=5, alias="maxRetries", ge=1, le=10)
    timeout_ms: int = Field(default=10000, alias="timeoutMs", ge=1000, le=60000)

    @field_validator("events")
    @classmethod
    def dedupe_events(cls, v: List[str]) -> List[str]:
        return list(dict.fromkeys(v))


class SubscriberUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    url: Optional[HttpUrl] = None
    events: Optional[List[EventType]] = Field(default=None, min_length=1)
    is_active: Optional[bool] = Field(default=None, alias="isActive")
    max_retries: Optional[int] = Field(default=None, alias="maxRetries", ge=1, le=10)
    timeout_ms: Optional[int] = Field(default=None, alias="timeoutMs", ge=1000, le=60000)


class SubscriberResponse(BaseModel):
    id: UUID
    name: str
    url: str
    events: List[str]
    is_active: bool
    max_retries: int
    timeout_ms: int
    consecutive_failures: int
    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    deactivated_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SubscriberCreated(SubscriberResponse):
    secret: str


class DeliveryResponse(BaseModel):
    id: UUID
    event_id: str
    event_type: str
    status: str
    attempts: int
    next_retry_at: Optional[datetime] = None
    last_response_status: Optional[int] = None
    last_response_body: Optional[str] = None
    last_attempt_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class EventTypeInfo(BaseModel):
    type: str
    description: str


class EventTypeList(BaseModel):
    events: List[EventTypeInfo]
