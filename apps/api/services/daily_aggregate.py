"""
Daily Aggregate Merger

Folds workouts into the per-(user, date) rollup in ``daily_stat``.

RULES:
- One atomic INSERT ... ON CONFLICT DO UPDATE per merge. Never read the
  row and write it back: parallel requests for the same day must not lose
  counts.
- Longest run is a monotonic max, fastest pace a monotonic min; nulls never
  win a comparison.
- Average pace is NOT stored. It is derived from the totals on read, since
  averaging per-run paces is wrong whenever distances differ.
- The rollup is a materialized view: ``refold_daily_stat`` rebuilds it
  exactly from the day's workouts.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date
from typing import Iterable, List, Optional

from sqlalchemy import case
from sqlalchemy.orm import Session

from core.clock import utcnow
from core.database import dialect_insert
from models import DailyStat, Workout
from services.workout_normalizer import calculate_pace_seconds_per_km

logger = logging.getLogger(__name__)


@dataclass
class DailyAggregateSnapshot:
    run_count: int = 0
    total_distance_meters: float = 0.0
    total_duration_seconds: float = 0.0
    longest_run_meters: Optional[float] = None
    fastest_pace_seconds_per_km: Optional[float] = None

    @property
    def avg_pace_seconds_per_km(self) -> Optional[float]:
        return calculate_pace_seconds_per_km(self.total_duration_seconds, self.total_distance_meters)


def _max_ignoring_null(current, incoming):
    return case(
        (current.is_(None), incoming),
        (incoming.is_(None), current),
        (incoming > current, incoming),
        else_=current,
    )


def _min_ignoring_null(current, incoming):
    return case(
        (current.is_(None), incoming),
        (incoming.is_(None), current),
        (incoming < current, incoming),
        else_=current,
    )


def merge_workout(
    db: Session,
    user_id: str,
    day: date,
    distance_meters: float,
    duration_seconds: float,
) -> None:
    """
    Add one newly stored workout to its day's rollup.

    Call only after the workout row itself was actually inserted, so a
    replayed workout is never counted twice.
    """
    now = utcnow()
    pace = calculate_pace_seconds_per_km(duration_seconds, distance_meters)
    table = DailyStat.__table__

    stmt = dialect_insert(db, table).values(
        id=uuid.uuid4(),
        user_id=user_id,
        date=day,
        year=day.year,
        run_count=1,
        total_distance_meters=distance_meters,
        total_duration_seconds=duration_seconds,
        longest_run_meters=distance_meters,
        fastest_pace_seconds_per_km=pace,
        created_at=now,
        updated_at=now,
    )
    excluded = stmt.excluded
    stmt = stmt.on_conflict_do_update(
        index_elements=[table.c.user_id, table.c.date],
        set_={
            "run_count": table.c.run_count + 1,
            "total_distance_meters": table.c.total_distance_meters + excluded.total_distance_meters,
            "total_duration_seconds": table.c.total_duration_seconds + excluded.total_duration_seconds,
            "longest_run_meters": _max_ignoring_null(table.c.longest_run_meters, excluded.longest_run_meters),
            "fastest_pace_seconds_per_km": _min_ignoring_null(
                table.c.fastest_pace_seconds_per_km, excluded.fastest_pace_seconds_per_km
            ),
            "updated_at": excluded.updated_at,
        },
    )
    db.execute(stmt)


def fold_workouts(workouts: Iterable) -> DailyAggregateSnapshot:
    """Pure fold of workout rows (or anything with distance/duration) into a rollup."""
    snapshot = DailyAggregateSnapshot()
    for workout in workouts:
        distance = workout.distance_meters or 0.0
        duration = workout.duration_seconds or 0.0
        snapshot.run_count += 1
        snapshot.total_distance_meters += distance
        snapshot.total_duration_seconds += duration
        if snapshot.longest_run_meters is None or distance > snapshot.longest_run_meters:
            snapshot.longest_run_meters = distance
        pace = calculate_pace_seconds_per_km(duration, distance)
        if pace is not None and (
            snapshot.fastest_pace_seconds_per_km is None or pace < snapshot.fastest_pace_seconds_per_km
        ):
            snapshot.fastest_pace_seconds_per_km = pace
    return snapshot


def refold_daily_stat(db: Session, user_id: str, day: date) -> Optional[DailyAggregateSnapshot]:
    """
    Rebuild one day's rollup from its workouts.

    Deletes the row when no workouts remain. Returns the new snapshot, or
    None when the day is now empty.
    """
    db.flush()
    workouts = (
        db.query(Workout)
        .filter(Workout.user_id == user_id, Workout.date_local == day)
        .all()
    )
    table = DailyStat.__table__

    if not workouts:
        db.execute(table.delete().where(table.c.user_id == user_id, table.c.date == day))
        logger.info(
            "Daily rollup removed",
            extra={"extra_fields": {"user_id": user_id, "date": day.isoformat()}},
        )
        return None

    snapshot = fold_workouts(workouts)
    now = utcnow()
    stmt = dialect_insert(db, table).values(
        id=uuid.uuid4(),
        user_id=user_id,
        date=day,
        year=day.year,
        run_count=snapshot.run_count,
        total_distance_meters=snapshot.total_distance_meters,
        total_duration_seconds=snapshot.total_duration_seconds,
        longest_run_meters=snapshot.longest_run_meters,
        fastest_pace_seconds_per_km=snapshot.fastest_pace_seconds_per_km,
        created_at=now,
        updated_at=now,
    )
    excluded = stmt.excluded
    stmt = stmt.on_conflict_do_update(
        index_elements=[table.c.user_id, table.c.date],
        set_={
            "run_count": excluded.run_count,
            "total_distance_meters": excluded.total_distance_meters,
            "total_duration_seconds": excluded.total_duration_seconds,
            "longest_run_meters": excluded.longest_run_meters,
            "fastest_pace_seconds_per_km": excluded.fastest_pace_seconds_per_km,
            "updated_at": excluded.updated_at,
        },
    )
    db.execute(stmt)
    return snapshot


def get_daily_stat(db: Session, user_id: str, day: date) -> Optional[DailyStat]:
    return (
        db.query(DailyStat)
        .filter(DailyStat.user_id == user_id, DailyStat.date == day)
        .populate_existing()
        .first()
    )


def list_daily_stats(db: Session, user_id: str, year: int) -> List[DailyStat]:
    return (
        db.query(DailyStat)
        .filter(DailyStat.user_id == user_id, DailyStat.year == year)
        .order_by(DailyStat.date.asc())
        .populate_existing()
        .all()
    )
