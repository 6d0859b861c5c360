"""
Outbound Delivery Tasks

Beat runs the dispatcher every ``OUTBOUND_DISPATCH_INTERVAL_S`` seconds. It
claims due deliveries and hands each claimed row to its own task, so a slow
subscriber only holds up one worker slot.
"""

from typing import Dict
from uuid import UUID
from celery import Task
from sqlalchemy.orm import Session
from core.database import get_db_sync
from tasks import celery_app
from services.outbound_delivery import attempt_delivery, claim_due_deliveries, release_stale_claims
import logging

logger = logging.getLogger(__name__)


@celery_app.task(name="tasks.dispatch_outbound_deliveries")
def dispatch_outbound_deliveries_task() -> Dict:
    """
    Release stale claims, claim due rows, enqueue one attempt per claim.

    Claims are committed before any task is enqueued so the attempt task
    always sees its row in_flight.
    """
    db: Session = get_db_sync()

    try:
        release_stale_claims(db)
        claimed = claim_due_deliveries(db)
        db.commit()

        for delivery_id in claimed:
            deliver_outbound_event_task.delay(str(delivery_id))

        if claimed:
            logger.info(f"Dispatched {len(claimed)} outbound deliveries")
        return {"status": "success", "claimed": len(claimed)}

    except Exception as e:
        db.rollback()
        logger.error(f"Error in dispatch_outbound_deliveries_task: {str(e)}", exc_info=True)
        return {"status": "error", "message": str(e)}
    finally:
        db.close()


@celery_app.task(name="tasks.deliver_outbound_event", bind=True)
def deliver_outbound_event_task(self: Task, delivery_id: str) -> Dict:
    """
    Make one attempt at a claimed delivery and record the outcome.

    Failures are not retried through Celery: the row goes back to pending
    with its next_retry_at and the dispatcher picks it up again.
    """
    db: Session = get_db_sync()

    try:
        result = attempt_delivery(db, UUID(delivery_id))
        db.commit()

        if result is None:
            return {"status": "error", "message": "Delivery not found"}
        return {"status": "success", "delivery_id": delivery_id, "delivery_status": result}

    except Exception as e:
        db.rollback()
        # The row stays in_flight until its claim lease runs out.
        logger.error(f"Error delivering {delivery_id}: {str(e)}", exc_info=True)
        return {"status": "error", "message": str(e)}
    finally:
        db.close()
