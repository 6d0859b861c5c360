"""
Milestone & goal crossings.

The I/O side of the streak evaluator: after workouts land, re-read the
year's rollups, record any newly crossed milestone (or met goal) in
``achievement`` and queue the matching outbound event.

"Newly crossed" is decided by the achievement insert itself
(INSERT ... ON CONFLICT DO NOTHING on user/year/kind/threshold): a crossing
that was already recorded never emits again, even when two requests cross
it at the same time.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from core.clock import utcnow
from core.database import dialect_insert
from models import Achievement, Goal
from services.daily_aggregate import list_daily_stats
from services.outbound_delivery import enqueue_event
from services.streaks import KIND_GOAL, build_progress_snapshot

logger = logging.getLogger(__name__)


def record_achievement(db: Session, user_id: str, year: int, kind: str, threshold: int, now: Optional[datetime] = None) -> bool:
    """True only for the call that actually recorded the crossing."""
    table = Achievement.__table__
    stmt = dialect_insert(db, table).values(
        id=uuid.uuid4(),
        user_id=user_id,
        year=year,
        kind=kind,
        threshold=threshold,
        unlocked_at=now or utcnow(),
    ).on_conflict_do_nothing(
        index_elements=[table.c.user_id, table.c.year, table.c.kind, table.c.threshold]
    )
    return db.execute(stmt).rowcount == 1


def get_goal(db: Session, user_id: str, year: int) -> Optional[Goal]:
    return db.query(Goal).filter(Goal.user_id == user_id, Goal.year == year).first()


def evaluate_goal(db: Session, user_id: str, year: int, running_days: int, now: Optional[datetime] = None) -> bool:
    """Queue ``goal.achieved`` the first time the year's goal is met."""
    goal = get_goal(db, user_id, year)
    if goal is None or running_days < goal.target_days:
        return False
    if not record_achievement(db, user_id, year, KIND_GOAL, goal.target_days, now):
        return False
    enqueue_event(db, user_id, "goal.achieved", {
        "year": year,
        "targetDays": goal.target_days,
        "daysCompleted": running_days,
    }, now=now)
    logger.info(
        "Goal achieved",
        extra={"extra_fields": {"user_id": user_id, "year": year, "target_days": goal.target_days}},
    )
    return True


def evaluate_after_ingest(
    db: Session,
    user_id: str,
    years: Iterable[int],
    reference_date: Optional[date] = None,
) -> List[Dict]:
    """
    Record and announce crossings for each touched year.

    Returns the newly reached milestones (as dicts) across all years.
    Does not commit.
    """
    now = utcnow()
    reference_date = reference_date or now.date()
    new_milestones: List[Dict] = []

    for year in sorted(set(years)):
        stats = list_daily_stats(db, user_id, year)
        snapshot = build_progress_snapshot(stats, year, reference_date)

        for milestone in snapshot.milestones:
            if not record_achievement(db, user_id, year, milestone.kind, milestone.threshold, now):
                continue
            data = {
                "year": year,
                **milestone.to_dict(),
                "runningDays": snapshot.running_days,
                "totalDistanceMeters": snapshot.total_distance_meters,
            }
            enqueue_event(db, user_id, "milestone.reached", data, now=now)
            new_milestones.append(data)
            logger.info(
                f"Milestone reached: {milestone.name}",
                extra={"extra_fields": {"user_id": user_id, "year": year, "kind": milestone.kind}},
            )

        evaluate_goal(db, user_id, year, snapshot.running_days, now)

    return new_milestones
