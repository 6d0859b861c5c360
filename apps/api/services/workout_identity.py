"""
Workout Identity & Dedup Resolver

Decides what one incoming (already normalized) workout means for storage:
new, duplicate, supplement, or conflict.

IDENTITY:
- A non-empty source id is trusted verbatim; it is stable across retries.
- Otherwise the key is a fingerprint of (start instant, rounded duration).
  Two distinct runs with the same start and duration collapse into one
  record. That collision is accepted; callers that can send an id should.
- When the key is unknown, a run by the same user starting within the sync
  tolerance is taken as the same physical event. This is how a webhook
  record and a device record with different ids reconcile.

MATCHING:
- Core facts match when duration and distance are within tolerance.
- Supplemental metrics may fill empty columns; a differing non-null value
  is a conflict, never an overwrite.
"""

from __future__ import annotations

import hashlib
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from core.clock import as_utc
from core.config import settings
from models import Workout
from services.workout_normalizer import NormalizedWorkout

logger = logging.getLogger(__name__)

FINGERPRINT_PREFIX = "fp-"

ACTION_NEW = "new"
ACTION_DUPLICATE = "duplicate"
ACTION_SUPPLEMENT = "supplement"
ACTION_CONFLICT = "conflict"

REASON_DATA_MISMATCH = "data_mismatch"
REASON_SUPPLEMENTAL_MISMATCH = "supplemental_mismatch"


@dataclass
class Resolution:
    action: str
    workout_key: str
    existing: Optional[Workout] = None
    reason: Optional[str] = None
    # Columns the supplement path may fill (all currently null on the row).
    fill: Dict[str, Any] = field(default_factory=dict)


def derive_workout_key(source_id: Optional[str], start_time: datetime, duration_seconds: float) -> str:
    """Stable identifier for one physical run."""
    if source_id and source_id.strip():
        return source_id.strip()
    material = f"{as_utc(start_time).isoformat()}|{int(round(duration_seconds))}"
    return FINGERPRINT_PREFIX + hashlib.sha256(material.encode("utf-8")).hexdigest()[:32]


def find_existing(db: Session, user_id: str, workout_key: str, start_time: datetime) -> Optional[Workout]:
    """Exact key first, then the closest same-user run inside the start window."""
    existing = (
        db.query(Workout)
        .filter(Workout.user_id == user_id, Workout.workout_key == workout_key)
        .first()
    )
    if existing is not None:
        return existing

    start = as_utc(start_time)
    tolerance = timedelta(seconds=settings.SYNC_START_TOLERANCE_S)
    candidates = (
        db.query(Workout)
        .filter(
            Workout.user_id == user_id,
            Workout.start_time >= start - tolerance,
            Workout.start_time <= start + tolerance,
        )
        .all()
    )
    if not candidates:
        return None
    return min(candidates, key=lambda w: abs((as_utc(w.start_time) - start).total_seconds()))


def core_facts_match(existing: Workout, incoming: NormalizedWorkout) -> bool:
    duration_diff = abs((existing.duration_seconds or 0.0) - incoming.duration_seconds)
    distance_diff = abs((existing.distance_meters or 0.0) - incoming.distance_meters)
    return (
        duration_diff <= settings.DEDUP_DURATION_TOLERANCE_S
        and distance_diff <= settings.DEDUP_DISTANCE_TOLERANCE_M
    )


def _same_value(stored: Any, incoming: Any) -> bool:
    if isinstance(stored, (int, float)) and isinstance(incoming, (int, float)):
        return math.isclose(float(stored), float(incoming), rel_tol=1e-9, abs_tol=1e-6)
    return stored == incoming


def resolve(db: Session, user_id: str, workout: NormalizedWorkout) -> Resolution:
    """
    Classify one normalized workout against storage.

    Read-only: nothing is written here.
    """
    workout_key = derive_workout_key(workout.source_id, workout.start_time, workout.duration_seconds)
    existing = find_existing(db, user_id, workout_key, workout.start_time)

    if existing is None:
        return Resolution(action=ACTION_NEW, workout_key=workout_key)

    if not core_facts_match(existing, workout):
        logger.info(
            "Workout core facts diverge from stored record",
            extra={"extra_fields": {
                "user_id": user_id,
                "workout_key": existing.workout_key,
                "incoming_key": workout_key,
            }},
        )
        return Resolution(
            action=ACTION_CONFLICT,
            workout_key=existing.workout_key,
            existing=existing,
            reason=REASON_DATA_MISMATCH,
        )

    fill: Dict[str, Any] = {}
    for column, incoming_value in workout.supplemental().items():
        if incoming_value is None:
            continue
        stored_value = getattr(existing, column)
        if stored_value is None:
            fill[column] = incoming_value
        elif not _same_value(stored_value, incoming_value):
            return Resolution(
                action=ACTION_CONFLICT,
                workout_key=existing.workout_key,
                existing=existing,
                reason=REASON_SUPPLEMENTAL_MISMATCH,
            )

    if fill:
        return Resolution(
            action=ACTION_SUPPLEMENT,
            workout_key=existing.workout_key,
            existing=existing,
            fill=fill,
        )
    return Resolution(action=ACTION_DUPLICATE, workout_key=existing.workout_key, existing=existing)
