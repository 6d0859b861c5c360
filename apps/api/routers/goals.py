"""
Goals API Router

One running-days goal per user per year. Every change is announced to
outbound subscribers (goal.created / goal.updated / goal.deleted), and a
goal that is already met when saved fires goal.achieved once.
"""

from typing import List
import logging

from fastapi import APIRouter, Depends, Path, Response, status
from sqlalchemy.orm import Session

from core.auth import get_current_user_id
from core.database import get_db
from core.exceptions import NotFoundError
from models import Goal
from schemas import GoalResponse, GoalUpsert
from services.daily_aggregate import list_daily_stats
from services.milestones import evaluate_goal, get_goal
from services.outbound_delivery import enqueue_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/goals", tags=["goals"])


@router.get("", response_model=List[GoalResponse])
def list_goals(user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    return db.query(Goal).filter(Goal.user_id == user_id).order_by(Goal.year.desc()).all()


@router.get("/{year}", response_model=GoalResponse)
def read_goal(
    year: int = Path(..., ge=2000, le=2100),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    goal = get_goal(db, user_id, year)
    if not goal:
        raise NotFoundError("Goal", str(year))
    return goal


@router.put("/{year}", response_model=GoalResponse)
def upsert_goal(
    body: GoalUpsert,
    response: Response,
    year: int = Path(..., ge=2000, le=2100),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    goal = get_goal(db, user_id, year)
    if goal is None:
        goal = Goal(user_id=user_id, year=year, target_days=body.target_days)
        db.add(goal)
        db.flush()
        enqueue_event(db, user_id, "goal.created", {"year": year, "targetDays": goal.target_days})
        response.status_code = status.HTTP_201_CREATED
    else:
        previous = goal.target_days
        goal.target_days = body.target_days
        db.flush()
        enqueue_event(db, user_id, "goal.updated", {
            "year": year,
            "targetDays": goal.target_days,
            "previousTargetDays": previous,
        })

    running_days = sum(1 for s in list_daily_stats(db, user_id, year) if s.run_count > 0)
    evaluate_goal(db, user_id, year, running_days)

    db.commit()
    db.refresh(goal)
    logger.info(
        "Goal saved",
        extra={"extra_fields": {"user_id": user_id, "year": year, "target_days": goal.target_days}},
    )
    return goal


@router.delete("/{year}", status_code=status.HTTP_204_NO_CONTENT)
def delete_goal(
    year: int = Path(..., ge=2000, le=2100),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    goal = get_goal(db, user_id, year)
    if not goal:
        raise NotFoundError("Goal", str(year))
    target_days = goal.target_days
    db.delete(goal)
    enqueue_event(db, user_id, "goal.deleted", {"year": year, "targetDays": target_days})
    db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
