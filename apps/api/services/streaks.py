"""
Streak & Milestone Evaluator

Read model over the daily rollups for one user and year. Pure and
deterministic: the same aggregate snapshot and reference date always give
the same answer, so nothing here touches the database or the clock.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

# Running days per year
MILESTONES: Tuple[int, ...] = (50, 100, 150, 200, 250, 300)

MILESTONE_NAMES: Dict[int, str] = {
    50: "Half Century",
    100: "Century",
    150: "Triple Crown",
    200: "Double Century",
    250: "Platinum",
    300: "Complete",
}

DISTANCE_MILESTONES_KM: Tuple[int, ...] = (100, 250, 500, 1000, 2000)

KIND_RUNNING_DAYS = "running_days"
KIND_DISTANCE_KM = "distance_km"
KIND_GOAL = "goal"


@dataclass
class StreakInfo:
    current: int
    longest: int
    last_run_date: Optional[date]


@dataclass(frozen=True)
class Milestone:
    kind: str
    threshold: int

    @property
    def name(self) -> str:
        if self.kind == KIND_RUNNING_DAYS:
            return MILESTONE_NAMES.get(self.threshold, f"{self.threshold} days")
        return f"{self.threshold} km"

    def to_dict(self) -> Dict:
        return {"kind": self.kind, "threshold": self.threshold, "name": self.name}


@dataclass
class GoalProgress:
    target_days: int
    days_completed: int
    days_remaining: int
    percent_complete: int
    expected_days: int
    days_ahead: int
    on_track: bool


@dataclass
class ProgressSnapshot:
    year: int
    running_days: int
    total_distance_meters: float
    total_duration_seconds: float
    streak: StreakInfo
    milestones: List[Milestone] = field(default_factory=list)
    next_milestone: Optional[Dict] = None
    goal: Optional[GoalProgress] = None

    @property
    def avg_pace_seconds_per_km(self) -> Optional[float]:
        if self.total_distance_meters <= 0:
            return None
        return self.total_duration_seconds / (self.total_distance_meters / 1000)


def calculate_streaks(dates: Iterable[date], reference_date: date) -> StreakInfo:
    """
    Current and longest run of consecutive running days.

    The current streak stays alive through ``reference_date`` if the last
    run was that day or the day before (today may not have a run yet).
    """
    ordered = sorted(set(dates))
    if not ordered:
        return StreakInfo(current=0, longest=0, last_run_date=None)

    longest = 1
    run = 1
    for previous, current in zip(ordered, ordered[1:]):
        if (current - previous).days == 1:
            run += 1
        else:
            run = 1
        longest = max(longest, run)

    last_run = ordered[-1]
    current_streak = 0
    if last_run in (reference_date, reference_date - timedelta(days=1)):
        current_streak = 1
        for i in range(len(ordered) - 1, 0, -1):
            if (ordered[i] - ordered[i - 1]).days == 1:
                current_streak += 1
            else:
                break

    return StreakInfo(current=current_streak, longest=longest, last_run_date=last_run)


def milestones_reached(running_days: int, total_distance_meters: float) -> List[Milestone]:
    reached = [Milestone(KIND_RUNNING_DAYS, m) for m in MILESTONES if running_days >= m]
    total_km = total_distance_meters / 1000
    reached.extend(Milestone(KIND_DISTANCE_KM, m) for m in DISTANCE_MILESTONES_KM if total_km >= m)
    return reached


def next_milestone(days_completed: int) -> Optional[Dict]:
    for m in MILESTONES:
        if days_completed < m:
            return {"milestone": m, "name": MILESTONE_NAMES[m], "days_remaining": m - days_completed}
    return None


def calculate_goal_progress(target_days: int, days_completed: int, reference_date: date) -> GoalProgress:
    days_in_year = 366 if calendar.isleap(reference_date.year) else 365
    day_of_year = reference_date.timetuple().tm_yday
    expected = (day_of_year / days_in_year) * target_days
    days_ahead = days_completed - expected
    return GoalProgress(
        target_days=target_days,
        days_completed=days_completed,
        days_remaining=max(0, target_days - days_completed),
        percent_complete=min(100, round(days_completed / target_days * 100)),
        expected_days=round(expected),
        days_ahead=round(days_ahead),
        on_track=days_ahead >= 0,
    )


def _progress_reference(year: int, reference_date: date) -> date:
    # Past years are read as of Dec 31; future years as of Jan 1.
    if reference_date.year > year:
        return date(year, 12, 31)
    if reference_date.year < year:
        return date(year, 1, 1)
    return reference_date


def build_progress_snapshot(
    aggregates: Sequence,
    year: int,
    reference_date: date,
    target_days: Optional[int] = None,
) -> ProgressSnapshot:
    """
    Everything the progress view needs, from one year's daily rollups.

    ``aggregates`` are daily_stat rows (or anything with ``date``,
    ``run_count``, ``total_distance_meters`` and ``total_duration_seconds``).
    """
    days = [a.date for a in aggregates if a.run_count > 0 and a.date.year == year]
    running_days = len(set(days))
    total_distance = sum(a.total_distance_meters for a in aggregates if a.date.year == year)
    total_duration = sum(a.total_duration_seconds for a in aggregates if a.date.year == year)
    as_of = _progress_reference(year, reference_date)

    goal = None
    if target_days:
        goal = calculate_goal_progress(target_days, running_days, as_of)

    return ProgressSnapshot(
        year=year,
        running_days=running_days,
        total_distance_meters=total_distance,
        total_duration_seconds=total_duration,
        streak=calculate_streaks(days, as_of),
        milestones=milestones_reached(running_days, total_distance),
        next_milestone=next_milestone(running_days),
        goal=goal,
    )
