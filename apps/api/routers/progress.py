"""
Progress API Router

Read model for the dashboard: streaks, milestones and goal progress for a
year, plus the daily rollups behind them. Computed on demand from
``daily_stat``; nothing here writes.
"""

from datetime import date
from typing import List

from fastapi import APIRouter, Depends, Path
from sqlalchemy.orm import Session

from core.auth import get_current_user_id
from core.clock import utcnow
from core.database import get_db
from models import Achievement
from schemas import DailyStatResponse
from services.daily_aggregate import list_daily_stats
from services.milestones import get_goal
from services.streaks import build_progress_snapshot

router = APIRouter(prefix="/v1/progress", tags=["progress"])


@router.get("/{year}")
def get_progress(
    year: int = Path(..., ge=2000, le=2100),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    stats = list_daily_stats(db, user_id, year)
    goal = get_goal(db, user_id, year)
    snapshot = build_progress_snapshot(
        stats,
        year,
        reference_date=utcnow().date(),
        target_days=goal.target_days if goal else None,
    )

    unlocked = {
        (a.kind, a.threshold): a.unlocked_at
        for a in db.query(Achievement).filter(Achievement.user_id == user_id, Achievement.year == year)
    }

    return {
        "year": year,
        "runningDays": snapshot.running_days,
        "totalDistanceMeters": snapshot.total_distance_meters,
        "totalDurationSeconds": snapshot.total_duration_seconds,
        "avgPaceSecondsPerKm": snapshot.avg_pace_seconds_per_km,
        "streak": {
            "current": snapshot.streak.current,
            "longest": snapshot.streak.longest,
            "lastRunDate": snapshot.streak.last_run_date.isoformat() if snapshot.streak.last_run_date else None,
        },
        "milestones": [
            {**m.to_dict(), "unlockedAt": unlocked.get((m.kind, m.threshold))}
            for m in snapshot.milestones
        ],
        "nextMilestone": snapshot.next_milestone,
        "goal": {
            "targetDays": snapshot.goal.target_days,
            "daysCompleted": snapshot.goal.days_completed,
            "daysRemaining": snapshot.goal.days_remaining,
            "percentComplete": snapshot.goal.percent_complete,
            "expectedDays": snapshot.goal.expected_days,
            "daysAhead": snapshot.goal.days_ahead,
            "onTrack": snapshot.goal.on_track,
        } if snapshot.goal else None,
    }


@router.get("/{year}/daily", response_model=List[DailyStatResponse])
def get_daily(
    year: int = Path(..., ge=2000, le=2100),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return list_daily_stats(db, user_id, year)
