"""
Workouts API Router

Client sync (pull path), sync status, and read/delete access to stored
workouts. All endpoints take the bearer session of the device or dashboard.
"""

from datetime import date
from typing import Optional
import logging

from fastapi import APIRouter, Depends, Query, Request, Response, status
from sqlalchemy.orm import Session

from core.auth import get_current_user_id
from core.config import settings
from core.database import get_db
from core.exceptions import NotFoundError, ValidationError
from models import Workout
from schemas import SyncRequest, SyncResponse, SyncStatusResponse, WorkoutListResponse, WorkoutResponse
from services.daily_aggregate import refold_daily_stat
from services.sync_engine import (
    InvalidCursorError,
    decode_cursor,
    encode_cursor,
    get_sync_status,
    process_sync,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/workouts", tags=["workouts"])


@router.post("/sync", response_model=SyncResponse)
def sync_workouts(
    body: SyncRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """
    Apply a batch of device-observed workouts and return the sync manifest.

    Retrying with the same ``idempotencyKey`` within 24 hours returns the
    original manifest without reapplying anything.
    """
    if len(body.workouts) > settings.SYNC_MAX_WORKOUTS:
        raise ValidationError(
            f"At most {settings.SYNC_MAX_WORKOUTS} workouts per sync",
            error_code="TOO_MANY_WORKOUTS",
        )
    try:
        return process_sync(
            db,
            user_id,
            body,
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )
    except InvalidCursorError as e:
        raise ValidationError(str(e), field="cursor", error_code="INVALID_CURSOR")


@router.get("/sync/status", response_model=SyncStatusResponse)
def sync_status(user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    return get_sync_status(db, user_id)


@router.get("", response_model=WorkoutListResponse)
def list_workouts(
    year: Optional[int] = Query(None, ge=2000, le=2100),
    limit: int = Query(50, ge=1, le=100),
    cursor: Optional[str] = Query(None, description="Opaque cursor from a previous page"),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Newest first. Pass ``next_cursor`` back as ``cursor`` for the next page."""
    query = db.query(Workout).filter(Workout.user_id == user_id)
    if year is not None:
        query = query.filter(Workout.date_local.between(date(year, 1, 1), date(year, 12, 31)))
    if cursor:
        try:
            query = query.filter(Workout.start_time < decode_cursor(cursor))
        except InvalidCursorError as e:
            raise ValidationError(str(e), field="cursor", error_code="INVALID_CURSOR")

    rows = query.order_by(Workout.start_time.desc()).limit(limit + 1).all()
    next_cursor = encode_cursor(rows[limit - 1].start_time) if len(rows) > limit else None
    return {"workouts": rows[:limit], "next_cursor": next_cursor}


def _get_workout(db: Session, user_id: str, workout_key: str) -> Workout:
    workout = (
        db.query(Workout)
        .filter(Workout.user_id == user_id, Workout.workout_key == workout_key)
        .first()
    )
    if not workout:
        raise NotFoundError("Workout", workout_key)
    return workout


@router.get("/{workout_key}", response_model=WorkoutResponse)
def get_workout(workout_key: str, user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    return _get_workout(db, user_id, workout_key)


@router.delete("/{workout_key}", status_code=status.HTTP_204_NO_CONTENT)
def delete_workout(workout_key: str, user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    """Delete one workout and rebuild its day's rollup from what remains."""
    workout = _get_workout(db, user_id, workout_key)
    day = workout.date_local
    db.delete(workout)
    db.flush()
    refold_daily_stat(db, user_id, day)
    db.commit()
    logger.info(
        "Workout deleted",
        extra={"extra_fields": {"user_id": user_id, "workout_key": workout_key, "date": day.isoformat()}},
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)
