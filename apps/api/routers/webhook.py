"""
Health Auto Export Webhook Router

Push ingestion: the Health Auto Export iOS app posts the user's workouts
here. Authenticated by a per-user webhook token (``?token=`` or
``X-Webhook-Token``), not by a session.
"""

from typing import Any, Optional
import json
import logging

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.orm import Session

from core.auth import get_webhook_token
from core.config import settings
from core.database import get_db
from core.exceptions import BadRequestError, PayloadTooLargeError, ValidationError
from models import WebhookToken
from schemas import WebhookIngestResponse
from services.workout_ingestion import ingest_webhook_workouts

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhook", tags=["webhook"])


async def read_limited_payload(request: Request, content_length: Optional[int] = Header(None)) -> Any:
    """
    Request body as JSON, read no further than ``WEBHOOK_MAX_PAYLOAD_BYTES``.

    ``Content-Length`` is only an early rejection; chunked uploads carry
    none, so the limit is enforced on the bytes actually received.
    """
    limit = settings.WEBHOOK_MAX_PAYLOAD_BYTES
    if content_length is not None and content_length > limit:
        raise PayloadTooLargeError(limit)

    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > limit:
            raise PayloadTooLargeError(limit)

    try:
        return json.loads(body)
    except ValueError:
        raise BadRequestError("Body must be valid JSON")


@router.get("")
def check_webhook(webhook_token: WebhookToken = Depends(get_webhook_token), db: Session = Depends(get_db)):
    """Connectivity check for the export app's "Test" button."""
    db.commit()
    return {"success": True, "message": "Webhook token is valid", "tokenName": webhook_token.name}


@router.post("", response_model=WebhookIngestResponse, response_model_exclude_none=True)
def receive_workouts(
    webhook_token: WebhookToken = Depends(get_webhook_token),
    payload: Any = Depends(read_limited_payload),
    db: Session = Depends(get_db),
):
    """
    Ingest a batch of workouts.

    Body: ``{"data": {"workouts": [...]}}``. Only runs are kept. Replaying
    the same batch is harmless: already stored workouts count as skipped.
    """
    data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(data, dict):
        raise BadRequestError("Payload must contain a 'data' object")

    workouts = data.get("workouts", [])
    if not isinstance(workouts, list):
        raise BadRequestError("'data.workouts' must be a list")
    if len(workouts) > settings.WEBHOOK_MAX_WORKOUTS:
        raise ValidationError(
            f"At most {settings.WEBHOOK_MAX_WORKOUTS} workouts per request",
            error_code="TOO_MANY_WORKOUTS",
        )

    result = ingest_webhook_workouts(db, webhook_token.user_id, workouts)
    db.commit()
    return result
