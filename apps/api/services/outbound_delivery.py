"""
Outbound Delivery Dispatcher

Queues, signs and retries derived events (goals, milestones) to the user's
registered subscriber endpoints.

DELIVERY LIFECYCLE:
    pending -> in_flight -> success
                         -> pending (backed off) -> ... -> exhausted
    failed: the subscriber was deleted or deactivated before the attempt.

GUARANTEES:
- At-least-once. Each (subscriber, event id) pair is one row; every retry
  sends the stored body byte-for-byte with the same signature, plus an
  ``X-Webhook-Delivery-Attempt`` header, so subscribers can dedup.
- A row is attempted by one worker at a time: it must be claimed with a
  conditional ``pending -> in_flight`` UPDATE first. Claims older than the
  lease are released (crashed worker).
- A timed-out attempt is an ordinary failure on the backoff schedule.
- ``consecutive_failures`` counts exhausted deliveries in a row. At the
  circuit breaker threshold the subscriber is deactivated until someone
  reactivates it.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import random
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import requests
from sqlalchemy import or_
from sqlalchemy.orm import Session

from core.clock import isoformat_z, utcnow
from core.config import settings
from models import WebhookDelivery, WebhookSubscriber

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_IN_FLIGHT = "in_flight"
STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"
STATUS_EXHAUSTED = "exhausted"

ENVELOPE_VERSION = "1.0"
CIRCUIT_OPEN = "circuit_open"

HttpPost = Callable[..., Any]


def canonical_json(value: Any) -> str:
    """Sorted keys, no whitespace: the exact bytes that get signed."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def build_envelope(event_type: str, data: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    return {
        "id": str(uuid.uuid4()),
        "type": event_type,
        "timestamp": isoformat_z(now or utcnow()),
        "version": ENVELOPE_VERSION,
        "data": data,
    }


def sign_payload(body: str, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(body: str, secret: str, signature: str) -> bool:
    """What a subscriber does with ``X-Webhook-Signature``."""
    return hmac.compare_digest(sign_payload(body, secret), signature or "")


def compute_backoff_seconds(
    attempts: int,
    base: Optional[float] = None,
    ceiling: Optional[float] = None,
    jitter_ratio: Optional[float] = None,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Delay before the next attempt after ``attempts`` failures.

    ``min(base * 2**(attempts - 1), ceiling)`` plus up to ``jitter_ratio`` of
    that delay at random, so many subscribers failing together spread out.
    """
    base = settings.OUTBOUND_BACKOFF_BASE_S if base is None else base
    ceiling = settings.OUTBOUND_BACKOFF_CEILING_S if ceiling is None else ceiling
    jitter_ratio = settings.OUTBOUND_BACKOFF_JITTER_RATIO if jitter_ratio is None else jitter_ratio
    rng = rng or random

    delay = min(base * (2 ** max(attempts - 1, 0)), ceiling)
    return delay + delay * jitter_ratio * rng.random()


# =============================================================================
# ENQUEUE
# =============================================================================


def enqueue_event(
    db: Session,
    user_id: str,
    event_type: str,
    data: Dict[str, Any],
    now: Optional[datetime] = None,
) -> List[WebhookDelivery]:
    """
    Queue one event for every active subscriber of ``user_id`` that wants it.

    Runs inside the producer's transaction (the event is durable exactly when
    the change that caused it is). Never raises delivery problems back to
    the producer; it does not send anything.
    """
    now = now or utcnow()
    subscribers = (
        db.query(WebhookSubscriber)
        .filter(WebhookSubscriber.user_id == user_id, WebhookSubscriber.is_active.is_(True))
        .all()
    )
    targets = [s for s in subscribers if s.subscribes_to(event_type)]
    if not targets:
        return []

    envelope = build_envelope(event_type, data, now)
    body = canonical_json(envelope)

    deliveries = []
    for subscriber in targets:
        delivery = WebhookDelivery(
            subscriber_id=subscriber.id,
            event_id=envelope["id"],
            event_type=event_type,
            payload=body,
            status=STATUS_PENDING,
            attempts=0,
            next_retry_at=now,
        )
        db.add(delivery)
        deliveries.append(delivery)

    db.flush()
    logger.info(
        f"Queued {event_type} for {len(deliveries)} subscriber(s)",
        extra={"extra_fields": {"user_id": user_id, "event_id": envelope["id"], "event_type": event_type}},
    )
    return deliveries


# =============================================================================
# CLAIMING
# =============================================================================


def release_stale_claims(db: Session, now: Optional[datetime] = None) -> int:
    """Put in_flight rows whose lease ran out back to pending."""
    now = now or utcnow()
    cutoff = now - timedelta(seconds=settings.OUTBOUND_CLAIM_LEASE_S)
    released = (
        db.query(WebhookDelivery)
        .filter(WebhookDelivery.status == STATUS_IN_FLIGHT, WebhookDelivery.claimed_at < cutoff)
        .update(
            {WebhookDelivery.status: STATUS_PENDING, WebhookDelivery.claimed_at: None},
            synchronize_session=False,
        )
    )
    if released:
        logger.warning(f"Released {released} stale delivery claim(s)")
    return released


def claim_due_deliveries(db: Session, now: Optional[datetime] = None, limit: Optional[int] = None) -> List[uuid.UUID]:
    """
    Claim up to ``limit`` due deliveries for this worker.

    Each claim is ``UPDATE ... WHERE id = ? AND status = 'pending'``; only
    rows this call actually flipped are returned. Does not commit.
    """
    now = now or utcnow()
    limit = limit or settings.OUTBOUND_DISPATCH_BATCH_SIZE

    due_ids = [
        row.id
        for row in (
            db.query(WebhookDelivery.id)
            .filter(
                WebhookDelivery.status == STATUS_PENDING,
                or_(WebhookDelivery.next_retry_at.is_(None), WebhookDelivery.next_retry_at <= now),
            )
            .order_by(WebhookDelivery.next_retry_at.asc())
            .limit(limit)
            .all()
        )
    ]

    claimed = []
    for delivery_id in due_ids:
        updated = (
            db.query(WebhookDelivery)
            .filter(WebhookDelivery.id == delivery_id, WebhookDelivery.status == STATUS_PENDING)
            .update(
                {WebhookDelivery.status: STATUS_IN_FLIGHT, WebhookDelivery.claimed_at: now},
                synchronize_session=False,
            )
        )
        if updated == 1:
            claimed.append(delivery_id)
    return claimed


# =============================================================================
# ATTEMPT
# =============================================================================


def _build_headers(delivery: WebhookDelivery, subscriber: WebhookSubscriber, attempt: int) -> Dict[str, str]:
    return {
        "Content-Type": "application/json",
        "User-Agent": settings.OUTBOUND_USER_AGENT,
        "X-Webhook-Signature": sign_payload(delivery.payload, subscriber.secret),
        "X-Webhook-Event": delivery.event_type,
        "X-Webhook-ID": delivery.event_id,
        "X-Webhook-Delivery-Attempt": str(attempt),
    }


def _post(http_post: HttpPost, url: str, body: str, headers: Dict[str, str], timeout_ms: int):
    """Returns (ok, status_code, excerpt). Timeouts and network errors are failures."""
    limit = settings.OUTBOUND_RESPONSE_EXCERPT_CHARS
    try:
        response = http_post(url, data=body.encode("utf-8"), headers=headers, timeout=timeout_ms / 1000)
    except requests.Timeout:
        return False, None, f"Timed out after {timeout_ms}ms"
    except requests.RequestException as e:
        return False, None, str(e)[:limit]
    excerpt = (response.text or "")[:limit]
    return 200 <= response.status_code < 300, response.status_code, excerpt


def _trip_circuit_breaker(db: Session, subscriber_id: uuid.UUID) -> bool:
    tripped = (
        db.query(WebhookSubscriber)
        .filter(
            WebhookSubscriber.id == subscriber_id,
            WebhookSubscriber.is_active.is_(True),
            WebhookSubscriber.consecutive_failures >= settings.OUTBOUND_CIRCUIT_BREAKER_THRESHOLD,
        )
        .update(
            {WebhookSubscriber.is_active: False, WebhookSubscriber.deactivated_reason: CIRCUIT_OPEN},
            synchronize_session=False,
        )
    )
    return tripped == 1


def attempt_delivery(
    db: Session,
    delivery_id: uuid.UUID,
    http_post: Optional[HttpPost] = None,
    now: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
) -> Optional[str]:
    """
    Make one attempt at a claimed (in_flight) delivery.

    Returns the delivery's resulting status, or None if the row does not
    exist. Does not commit.
    """
    http_post = http_post or requests.post
    now = now or utcnow()

    delivery = (
        db.query(WebhookDelivery)
        .filter(WebhookDelivery.id == delivery_id)
        .populate_existing()
        .first()
    )
    if delivery is None:
        logger.warning(f"Delivery {delivery_id} not found")
        return None
    if delivery.status != STATUS_IN_FLIGHT:
        # Not ours: unclaimed, or already settled by another worker.
        return delivery.status

    subscriber = (
        db.query(WebhookSubscriber)
        .filter(WebhookSubscriber.id == delivery.subscriber_id)
        .populate_existing()
        .first()
    )
    if subscriber is None or not subscriber.is_active:
        delivery.status = STATUS_FAILED
        delivery.completed_at = now
        delivery.claimed_at = None
        delivery.next_retry_at = None
        logger.info(
            f"Delivery {delivery.id} dropped: subscriber missing or inactive",
            extra={"extra_fields": {"delivery_id": str(delivery.id), "subscriber_id": str(delivery.subscriber_id)}},
        )
        return delivery.status

    attempt = delivery.attempts + 1
    ok, status_code, excerpt = _post(
        http_post,
        subscriber.url,
        delivery.payload,
        _build_headers(delivery, subscriber, attempt),
        subscriber.timeout_ms,
    )

    delivery.attempts = attempt
    delivery.last_response_status = status_code
    delivery.last_response_body = excerpt
    delivery.last_attempt_at = now
    delivery.claimed_at = None

    log_fields = {
        "delivery_id": str(delivery.id),
        "subscriber_id": str(subscriber.id),
        "event_type": delivery.event_type,
        "attempt": attempt,
        "status_code": status_code,
    }

    if ok:
        delivery.status = STATUS_SUCCESS
        delivery.completed_at = now
        delivery.next_retry_at = None
        db.query(WebhookSubscriber).filter(WebhookSubscriber.id == subscriber.id).update(
            {WebhookSubscriber.consecutive_failures: 0, WebhookSubscriber.last_success_at: now},
            synchronize_session=False,
        )
        logger.info(f"Delivery {delivery.id} succeeded", extra={"extra_fields": log_fields})
        return delivery.status

    db.query(WebhookSubscriber).filter(WebhookSubscriber.id == subscriber.id).update(
        {WebhookSubscriber.last_failure_at: now},
        synchronize_session=False,
    )

    if attempt >= subscriber.max_retries:
        delivery.status = STATUS_EXHAUSTED
        delivery.completed_at = now
        delivery.next_retry_at = None
        db.query(WebhookSubscriber).filter(WebhookSubscriber.id == subscriber.id).update(
            {WebhookSubscriber.consecutive_failures: WebhookSubscriber.consecutive_failures + 1},
            synchronize_session=False,
        )
        logger.warning(
            f"Delivery {delivery.id} exhausted after {attempt} attempts",
            extra={"extra_fields": log_fields},
        )
        if _trip_circuit_breaker(db, subscriber.id):
            logger.warning(
                f"Subscriber {subscriber.id} deactivated: circuit open",
                extra={"extra_fields": {"subscriber_id": str(subscriber.id)}},
            )
        return delivery.status

    delivery.status = STATUS_PENDING
    delivery.next_retry_at = now + timedelta(seconds=compute_backoff_seconds(attempt, rng=rng))
    logger.info(
        f"Delivery {delivery.id} failed, retry {attempt}/{subscriber.max_retries} at {isoformat_z(delivery.next_retry_at)}",
        extra={"extra_fields": log_fields},
    )
    return delivery.status


def send_test_ping(
    db: Session,
    subscriber: WebhookSubscriber,
    http_post: Optional[HttpPost] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Send a ``webhook.test`` event right now, outside the queue.

    Nothing is retried and no delivery row is written. Does not commit.
    """
    http_post = http_post or requests.post
    now = now or utcnow()
    envelope = build_envelope(
        "webhook.test",
        {"webhook": {"id": str(subscriber.id), "name": subscriber.name}, "message": "Test ping"},
        now,
    )
    body = canonical_json(envelope)
    headers = {
        "Content-Type": "application/json",
        "User-Agent": settings.OUTBOUND_USER_AGENT,
        "X-Webhook-Signature": sign_payload(body, subscriber.secret),
        "X-Webhook-Event": "webhook.test",
        "X-Webhook-ID": envelope["id"],
        "X-Webhook-Delivery-Attempt": "1",
    }
    ok, status_code, excerpt = _post(http_post, subscriber.url, body, headers, subscriber.timeout_ms)

    if ok:
        subscriber.last_success_at = now
        subscriber.consecutive_failures = 0
        return {"success": True, "message": "Test ping delivered", "responseStatus": status_code}

    if status_code is None:
        return {"success": False, "message": f"Failed to deliver: {excerpt}"}
    return {"success": False, "message": f"Subscriber returned status {status_code}", "responseStatus": status_code}


def list_deliveries(db: Session, subscriber_id: uuid.UUID, limit: int = 50) -> List[WebhookDelivery]:
    return (
        db.query(WebhookDelivery)
        .filter(WebhookDelivery.subscriber_id == subscriber_id)
        .order_by(WebhookDelivery.created_at.desc())
        .limit(limit)
        .all()
    )
