"""
Tests for the daily rollup: atomic merge, derived pace, exact refold.
"""
from datetime import date, datetime, timezone
from itertools import permutations
from types import SimpleNamespace

import pytest

from models import Workout
from services.daily_aggregate import (
    fold_workouts,
    get_daily_stat,
    list_daily_stats,
    merge_workout,
    refold_daily_stat,
)

DAY = date(2025, 1, 15)


def test_single_run_rollup(db_session, user_id):
    merge_workout(db_session, user_id, DAY, 5000, 1800)
    db_session.commit()

    stat = get_daily_stat(db_session, user_id, DAY)
    assert stat.run_count == 1
    assert stat.year == 2025
    assert stat.total_distance_meters == 5000
    assert stat.longest_run_meters == 5000
    assert stat.avg_pace_seconds_per_km == pytest.approx(360.0)
    assert stat.fastest_pace_seconds_per_km == pytest.approx(360.0)


def test_two_runs_same_day_average_from_totals(db_session, user_id):
    merge_workout(db_session, user_id, DAY, 5000, 1800)
    merge_workout(db_session, user_id, DAY, 10000, 3000)
    db_session.commit()

    stat = get_daily_stat(db_session, user_id, DAY)
    assert stat.run_count == 2
    assert stat.total_distance_meters == 15000
    assert stat.total_duration_seconds == 4800
    # 4800 s over 15 km, not the mean of 360 and 300.
    assert stat.avg_pace_seconds_per_km == pytest.approx(320.0)
    assert stat.longest_run_meters == 10000
    assert stat.fastest_pace_seconds_per_km == pytest.approx(300.0)


def test_zero_distance_run_never_wins_fastest_pace(db_session, user_id):
    merge_workout(db_session, user_id, DAY, 5000, 1800)
    merge_workout(db_session, user_id, DAY, 0, 1200)  # treadmill, no distance
    db_session.commit()

    stat = get_daily_stat(db_session, user_id, DAY)
    assert stat.run_count == 2
    assert stat.fastest_pace_seconds_per_km == pytest.approx(360.0)
    assert stat.longest_run_meters == 5000


def test_zero_distance_day_has_no_pace(db_session, user_id):
    merge_workout(db_session, user_id, DAY, 0, 1200)
    db_session.commit()

    stat = get_daily_stat(db_session, user_id, DAY)
    assert stat.avg_pace_seconds_per_km is None
    assert stat.fastest_pace_seconds_per_km is None


def test_merge_order_does_not_matter():
    runs = [
        SimpleNamespace(distance_meters=5000, duration_seconds=1800),
        SimpleNamespace(distance_meters=10000, duration_seconds=3000),
        SimpleNamespace(distance_meters=0, duration_seconds=900),
    ]
    snapshots = {
        (
            s.run_count,
            s.total_distance_meters,
            s.total_duration_seconds,
            s.longest_run_meters,
            s.fastest_pace_seconds_per_km,
        )
        for s in (fold_workouts(order) for order in permutations(runs))
    }
    assert len(snapshots) == 1


def test_days_and_users_are_separate(db_session, user_id):
    merge_workout(db_session, user_id, DAY, 5000, 1800)
    merge_workout(db_session, user_id, date(2025, 1, 16), 3000, 1000)
    merge_workout(db_session, "other-user", DAY, 8000, 2400)
    db_session.commit()

    stats = list_daily_stats(db_session, user_id, 2025)
    assert [s.date for s in stats] == [DAY, date(2025, 1, 16)]
    assert list_daily_stats(db_session, user_id, 2024) == []


def _add_workout(db_session, user_id, key, distance, duration):
    workout = Workout(
        user_id=user_id,
        workout_key=key,
        activity_name="Run",
        date_local=DAY,
        start_time=datetime(2025, 1, 15, 8, 0, tzinfo=timezone.utc),
        end_time=datetime(2025, 1, 15, 9, 0, tzinfo=timezone.utc),
        duration_seconds=duration,
        distance_meters=distance,
        source="manual",
    )
    db_session.add(workout)
    return workout


def test_refold_rebuilds_from_workouts(db_session, user_id):
    _add_workout(db_session, user_id, "a", 5000, 1800)
    _add_workout(db_session, user_id, "b", 10000, 3000)
    # Rollup drifted (e.g. a row deleted without refolding).
    merge_workout(db_session, user_id, DAY, 42, 42)
    db_session.flush()

    snapshot = refold_daily_stat(db_session, user_id, DAY)
    db_session.commit()

    assert snapshot.run_count == 2
    stat = get_daily_stat(db_session, user_id, DAY)
    assert stat.run_count == 2
    assert stat.total_distance_meters == 15000
    assert stat.avg_pace_seconds_per_km == pytest.approx(320.0)


def test_refold_of_empty_day_removes_rollup(db_session, user_id):
    merge_workout(db_session, user_id, DAY, 5000, 1800)
    db_session.commit()

    assert refold_daily_stat(db_session, user_id, DAY) is None
    db_session.commit()
    assert get_daily_stat(db_session, user_id, DAY) is None
