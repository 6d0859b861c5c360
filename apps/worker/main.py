"""
Celery worker entry point.

The worker image mounts the API code at ``/api`` (override with
``API_PATH``); tasks, models and settings all come from there.

    celery -A main worker --beat --loglevel=info
"""
import os
import sys

sys.path.insert(0, os.getenv("API_PATH", "/api"))

from core.logging import setup_logging  # noqa: E402
from tasks import celery_app  # noqa: E402

setup_logging()


@celery_app.task(name="worker.health_check")
def health_check():
    """Round-trip check for the broker and a worker slot."""
    return {"status": "ok", "tasks": sorted(t for t in celery_app.tasks if t.startswith("tasks."))}
