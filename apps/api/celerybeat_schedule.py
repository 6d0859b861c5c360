"""
Periodic tasks run by ``celery beat``.
"""

from celery.schedules import crontab

from core.config import settings

beat_schedule = {
    # Claim due outbound deliveries and fan each one out to a worker.
    'dispatch-outbound-deliveries': {
        'task': 'tasks.dispatch_outbound_deliveries',
        'schedule': float(settings.OUTBOUND_DISPATCH_INTERVAL_S),
    },
    # Batch idempotency keys older than their TTL are dead weight.
    'purge-expired-sync-keys': {
        'task': 'tasks.purge_expired_sync_keys',
        'schedule': crontab(hour=3, minute=15),
    },
}
