"""
Celery application.

Imported by the API (to enqueue) and by the worker entry point (to run).
Every task opens its own session with ``get_db_sync()`` and commits itself.
"""
from celery import Celery

from core.config import settings

celery_app = Celery(
    "running_days",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    result_expires=60 * 60,
    task_time_limit=5 * 60,
    task_soft_time_limit=4 * 60,
    # A delivery worker that dies leaves its row in_flight until the claim
    # lease runs out; replaying the message on top of that would double-send.
    task_acks_late=False,
    worker_prefetch_multiplier=1,
)

from celerybeat_schedule import beat_schedule  # noqa: E402

celery_app.conf.beat_schedule = beat_schedule

from . import delivery_tasks, sync_tasks  # noqa: E402,F401

__all__ = ["celery_app"]
