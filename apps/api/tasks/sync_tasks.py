"""
Sync Housekeeping Tasks
"""

from typing import Dict
from sqlalchemy.orm import Session
from core.database import get_db_sync
from tasks import celery_app
from services.sync_engine import purge_expired_manifests
import logging

logger = logging.getLogger(__name__)


@celery_app.task(name="tasks.purge_expired_sync_keys")
def purge_expired_sync_keys_task() -> Dict:
    """Drop sync idempotency keys whose 24h replay window has closed."""
    db: Session = get_db_sync()

    try:
        purged = purge_expired_manifests(db)
        db.commit()
        logger.info(f"Purged {purged} expired sync idempotency keys")
        return {"status": "success", "purged": purged}

    except Exception as e:
        db.rollback()
        logger.error(f"Error in purge_expired_sync_keys_task: {str(e)}", exc_info=True)
        return {"status": "error", "message": str(e)}
    finally:
        db.close()
