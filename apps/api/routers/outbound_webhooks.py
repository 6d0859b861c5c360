"""
Outbound Webhooks API Router

Subscriber management for derived-event delivery: register endpoints,
choose event types, rotate signing secrets, send a test ping and inspect
delivery history.

Re-enabling a subscriber (``isActive: true``) closes its circuit breaker and
resets the failure counter.
"""

from typing import List
from uuid import UUID
import logging

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from core.auth import get_current_user_id
from core.clock import utcnow
from core.database import get_db
from core.exceptions import NotFoundError
from core.security import generate_secret
from models import WebhookSubscriber
from schemas import (
    EVENT_DESCRIPTIONS,
    EVENT_TYPES,
    DeliveryResponse,
    EventTypeList,
    SubscriberCreate,
    SubscriberCreated,
    SubscriberResponse,
    SubscriberUpdate,
)
from services.outbound_delivery import list_deliveries, send_test_ping

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/webhooks", tags=["outbound-webhooks"])


def _get_subscriber(db: Session, user_id: str, subscriber_id: UUID) -> WebhookSubscriber:
    subscriber = (
        db.query(WebhookSubscriber)
        .filter(
            WebhookSubscriber.id == subscriber_id,
            WebhookSubscriber.user_id == user_id,
            WebhookSubscriber.deleted_at.is_(None),
        )
        .first()
    )
    if not subscriber:
        raise NotFoundError("Webhook", str(subscriber_id))
    return subscriber


@router.get("", response_model=List[SubscriberResponse])
def list_subscribers(user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    return (
        db.query(WebhookSubscriber)
        .filter(WebhookSubscriber.user_id == user_id, WebhookSubscriber.deleted_at.is_(None))
        .order_by(WebhookSubscriber.created_at.desc())
        .all()
    )


@router.get("/events", response_model=EventTypeList)
def list_event_types(user_id: str = Depends(get_current_user_id)):
    """Event types a subscriber can choose from."""
    return {"events": [{"type": t, "description": EVENT_DESCRIPTIONS[t]} for t in EVENT_TYPES]}


@router.post("", response_model=SubscriberCreated, status_code=status.HTTP_201_CREATED)
def create_subscriber(
    body: SubscriberCreate,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """The signing secret is only returned here and by rotate-secret."""
    subscriber = WebhookSubscriber(
        user_id=user_id,
        name=body.name,
        url=str(body.url),
        secret=generate_secret(),
        events=list(body.events),
        is_active=True,
        max_retries=body.max_retries,
        timeout_ms=body.timeout_ms,
        consecutive_failures=0,
    )
    db.add(subscriber)
    db.commit()
    db.refresh(subscriber)
    logger.info(
        "Webhook subscriber created",
        extra={"extra_fields": {"user_id": user_id, "subscriber_id": str(subscriber.id), "events": subscriber.events}},
    )
    return subscriber


@router.get("/{subscriber_id}", response_model=SubscriberResponse)
def read_subscriber(subscriber_id: UUID, user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    return _get_subscriber(db, user_id, subscriber_id)


@router.put("/{subscriber_id}", response_model=SubscriberResponse)
def update_subscriber(
    subscriber_id: UUID,
    body: SubscriberUpdate,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    subscriber = _get_subscriber(db, user_id, subscriber_id)
    changes = body.model_dump(exclude_unset=True)

    if "url" in changes and changes["url"] is not None:
        changes["url"] = str(changes["url"])
    if changes.get("is_active") and not subscriber.is_active:
        subscriber.consecutive_failures = 0
        subscriber.deactivated_reason = None
    elif changes.get("is_active") is False:
        subscriber.deactivated_reason = "manual"

    for field, value in changes.items():
        if value is not None:
            setattr(subscriber, field, value)

    db.commit()
    db.refresh(subscriber)
    return subscriber


@router.delete("/{subscriber_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_subscriber(subscriber_id: UUID, user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    """
    Soft-delete the subscriber.

    Delivery rows are history and are never deleted, so the subscriber row
    stays; pending deliveries to it end as ``failed``.
    """
    subscriber = _get_subscriber(db, user_id, subscriber_id)
    subscriber.is_active = False
    subscriber.deactivated_reason = "deleted"
    subscriber.deleted_at = utcnow()
    db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{subscriber_id}/rotate-secret")
def rotate_secret(subscriber_id: UUID, user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    """
    Replace the signing secret.

    Deliveries still queued are signed with the new secret when attempted.
    """
    subscriber = _get_subscriber(db, user_id, subscriber_id)
    subscriber.secret = generate_secret()
    db.commit()
    return {"id": str(subscriber.id), "secret": subscriber.secret}


@router.post("/{subscriber_id}/test")
def test_subscriber(subscriber_id: UUID, user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    subscriber = _get_subscriber(db, user_id, subscriber_id)
    result = send_test_ping(db, subscriber)
    db.commit()
    return result


@router.get("/{subscriber_id}/deliveries", response_model=List[DeliveryResponse])
def subscriber_deliveries(
    subscriber_id: UUID,
    limit: int = Query(50, ge=1, le=200),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    subscriber = _get_subscriber(db, user_id, subscriber_id)
    return list_deliveries(db, subscriber.id, limit=limit)
