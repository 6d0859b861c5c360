"""
Workout Ingestion

The one per-record pipeline both ingestion paths (webhook push, client
sync) go through after normalization: resolve identity, then apply.

- new         -> INSERT ... ON CONFLICT DO NOTHING on (user, key); the day's
                 rollup is merged only if this call actually inserted.
- supplement  -> fill empty supplemental columns (COALESCE, never overwrite).
- duplicate   -> nothing.
- conflict    -> stored row untouched; a workout_conflict row is written.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func
from sqlalchemy.orm import Session

from core.clock import utcnow
from core.database import dialect_insert
from models import Workout, WorkoutConflict
from schemas import WebhookWorkoutIn
from services.daily_aggregate import merge_workout
from services.milestones import evaluate_after_ingest
from services.workout_identity import (
    ACTION_CONFLICT,
    ACTION_DUPLICATE,
    ACTION_NEW,
    ACTION_SUPPLEMENT,
    Resolution,
    resolve,
)
from services.workout_normalizer import NormalizationError, NormalizedWorkout, is_running_workout, normalize_workout

logger = logging.getLogger(__name__)

RESOLUTION_KEPT_SERVER = "kept_server"
RESOLUTION_REJECTED = "rejected"
REASON_NORMALIZATION_FAILED = "normalization_failed"


@dataclass
class IngestOutcome:
    action: str
    workout_key: str
    server_id: Optional[str] = None
    reason: Optional[str] = None
    date_local: Optional[date] = None
    start_time: Optional[datetime] = None

    @property
    def applied(self) -> bool:
        """True when storage changed (created or supplemented)."""
        return self.action in (ACTION_NEW, ACTION_SUPPLEMENT)


def _insert_workout(db: Session, user_id: str, workout_key: str, workout: NormalizedWorkout) -> Optional[uuid.UUID]:
    """Returns the new row id, or None when the key already existed."""
    now = utcnow()
    workout_id = uuid.uuid4()
    table = Workout.__table__
    stmt = dialect_insert(db, table).values(
        id=workout_id,
        user_id=user_id,
        workout_key=workout_key,
        activity_name=workout.name,
        date_local=workout.date_local,
        start_time=workout.start_time,
        end_time=workout.end_time,
        duration_seconds=workout.duration_seconds,
        distance_meters=workout.distance_meters,
        avg_pace_seconds_per_km=workout.avg_pace_seconds_per_km,
        energy_burned_kcal=workout.energy_burned_kcal,
        avg_heart_rate=workout.avg_heart_rate,
        max_heart_rate=workout.max_heart_rate,
        elevation_gain_meters=workout.elevation_gain_meters,
        weather_temp_c=workout.weather_temp_c,
        weather_condition=workout.weather_condition,
        source=workout.source,
        client_id=workout.client_id,
        raw_payload=workout.raw_payload,
        sync_version=1,
        last_synced_at=now,
        created_at=now,
        updated_at=now,
    ).on_conflict_do_nothing(index_elements=[table.c.user_id, table.c.workout_key])
    result = db.execute(stmt)
    return workout_id if result.rowcount == 1 else None


def _fill_supplemental(db: Session, existing: Workout, fill: Dict[str, Any]) -> None:
    values: Dict[Any, Any] = {
        getattr(Workout, column): func.coalesce(getattr(Workout, column), value)
        for column, value in fill.items()
    }
    values[Workout.sync_version] = Workout.sync_version + 1
    values[Workout.last_synced_at] = utcnow()
    values[Workout.updated_at] = utcnow()
    db.query(Workout).filter(Workout.id == existing.id).update(values, synchronize_session=False)
    db.expire(existing)


def record_conflict(
    db: Session,
    user_id: str,
    workout: NormalizedWorkout,
    resolution: Resolution,
    sync_id: Optional[uuid.UUID] = None,
) -> WorkoutConflict:
    existing = resolution.existing
    conflict = WorkoutConflict(
        user_id=user_id,
        source=workout.source,
        workout_key=resolution.workout_key,
        client_id=workout.client_id,
        reason=resolution.reason,
        resolution=RESOLUTION_KEPT_SERVER,
        sync_id=sync_id,
        detail={
            "incoming": {
                "source_id": workout.source_id,
                "start_time": workout.start_time.isoformat(),
                "duration_seconds": workout.duration_seconds,
                "distance_meters": workout.distance_meters,
                **{k: v for k, v in workout.supplemental().items() if v is not None},
            },
            "stored": {
                "duration_seconds": existing.duration_seconds,
                "distance_meters": existing.distance_meters,
            } if existing is not None else None,
        },
    )
    db.add(conflict)
    return conflict


def record_rejection(
    db: Session,
    user_id: str,
    source: str,
    message: str,
    client_id: Optional[str] = None,
    sync_id: Optional[uuid.UUID] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> WorkoutConflict:
    """A record that never got past decoding or normalization."""
    conflict = WorkoutConflict(
        user_id=user_id,
        source=source,
        workout_key=None,
        client_id=client_id,
        reason=REASON_NORMALIZATION_FAILED,
        resolution=RESOLUTION_REJECTED,
        sync_id=sync_id,
        detail={"message": message, "payload": payload},
    )
    db.add(conflict)
    return conflict


def ingest_workout(
    db: Session,
    user_id: str,
    workout: NormalizedWorkout,
    sync_id: Optional[uuid.UUID] = None,
) -> IngestOutcome:
    """
    Apply one normalized workout for a user.

    Does not commit; the caller owns the transaction.
    """
    resolution = resolve(db, user_id, workout)

    if resolution.action == ACTION_NEW:
        workout_id = _insert_workout(db, user_id, resolution.workout_key, workout)
        if workout_id is not None:
            merge_workout(db, user_id, workout.date_local, workout.distance_meters, workout.duration_seconds)
            logger.debug(
                "Workout created",
                extra={"extra_fields": {"user_id": user_id, "workout_key": resolution.workout_key}},
            )
            return IngestOutcome(
                action=ACTION_NEW,
                workout_key=resolution.workout_key,
                server_id=str(workout_id),
                date_local=workout.date_local,
                start_time=workout.start_time,
            )
        # A concurrent request inserted the same key first; classify against its row.
        resolution = resolve(db, user_id, workout)
        if resolution.action == ACTION_NEW:
            resolution.action = ACTION_DUPLICATE

    existing = resolution.existing
    outcome = IngestOutcome(
        action=resolution.action,
        workout_key=resolution.workout_key,
        server_id=str(existing.id) if existing is not None else None,
        reason=resolution.reason,
        date_local=existing.date_local if existing is not None else workout.date_local,
        start_time=existing.start_time if existing is not None else workout.start_time,
    )

    if resolution.action == ACTION_SUPPLEMENT:
        _fill_supplemental(db, existing, resolution.fill)
        logger.info(
            "Workout supplemented",
            extra={"extra_fields": {
                "user_id": user_id,
                "workout_key": resolution.workout_key,
                "fields": sorted(resolution.fill),
            }},
        )
    elif resolution.action == ACTION_CONFLICT:
        record_conflict(db, user_id, workout, resolution, sync_id=sync_id)

    return outcome


def ingest_webhook_workouts(db: Session, user_id: str, records: List[Any]) -> Dict[str, Any]:
    """
    Push path: apply a Health Auto Export ``data.workouts`` list.

    Non-running records and duplicates count as skipped. A record that
    fails decoding or normalization is listed under ``errors`` and the rest
    of the batch still goes through. Does not commit.
    """
    result: Dict[str, Any] = {
        "success": True,
        "processed": 0,
        "skipped": 0,
        "updated": 0,
        "conflicts": 0,
        "errors": [],
    }
    touched_years = set()

    for index, record in enumerate(records):
        if not isinstance(record, dict) or not is_running_workout(record.get("name")):
            result["skipped"] += 1
            continue

        try:
            item = WebhookWorkoutIn.model_validate(record)
            workout = normalize_workout(item.to_raw(raw_payload=record))
        except (PydanticValidationError, NormalizationError) as e:
            message = e.message if isinstance(e, NormalizationError) else f"{e.error_count()} validation error(s)"
            record_rejection(db, user_id, source="health_auto_export", message=message, payload=record)
            result["errors"].append({"index": index, "id": record.get("id"), "message": message})
            continue

        outcome = ingest_workout(db, user_id, workout)
        if outcome.action == ACTION_NEW:
            result["processed"] += 1
            touched_years.add(outcome.date_local.year)
        elif outcome.action == ACTION_SUPPLEMENT:
            result["updated"] += 1
        elif outcome.action == ACTION_DUPLICATE:
            result["skipped"] += 1
        else:
            result["conflicts"] += 1

    if touched_years:
        new_milestones = evaluate_after_ingest(db, user_id, touched_years)
        if new_milestones:
            result["newMilestones"] = new_milestones

    logger.info(
        "Webhook batch ingested",
        extra={"extra_fields": {
            "user_id": user_id,
            "received": len(records),
            "processed": result["processed"],
            "skipped": result["skipped"],
            "updated": result["updated"],
            "conflicts": result["conflicts"],
            "errors": len(result["errors"]),
        }},
    )
    return result
