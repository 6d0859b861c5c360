"""
Tests for the outbound delivery dispatcher: signing, claiming, backoff,
exhaustion and the circuit breaker. HTTP is faked; nothing leaves the test.
"""
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import requests

from core.config import settings
from models import WebhookDelivery, WebhookSubscriber
from services.outbound_delivery import (
    CIRCUIT_OPEN,
    STATUS_EXHAUSTED,
    STATUS_FAILED,
    STATUS_IN_FLIGHT,
    STATUS_PENDING,
    STATUS_SUCCESS,
    attempt_delivery,
    canonical_json,
    claim_due_deliveries,
    compute_backoff_seconds,
    enqueue_event,
    release_stale_claims,
    send_test_ping,
    sign_payload,
    verify_signature,
)

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeResponse:
    def __init__(self, status_code=200, text="ok"):
        self.status_code = status_code
        self.text = text


class FakePost:
    """Records every call; answers with a fixed status or raises."""

    def __init__(self, status_code=200, raises=None):
        self.status_code = status_code
        self.raises = raises
        self.calls = []

    def __call__(self, url, data=None, headers=None, timeout=None):
        self.calls.append({"url": url, "data": data, "headers": headers, "timeout": timeout})
        if self.raises is not None:
            raise self.raises
        return FakeResponse(self.status_code, text="nope" if self.status_code >= 300 else "ok")


def _no_jitter():
    rng = MagicMock()
    rng.random.return_value = 0.0
    return rng


def _queue_one(db, user_id, event_type="goal.achieved", data=None):
    deliveries = enqueue_event(db, user_id, event_type, data or {"year": 2025, "targetDays": 3}, now=NOW)
    db.commit()
    return deliveries


def _claim_and_attempt(db, delivery_id, http_post, now):
    claimed = claim_due_deliveries(db, now)
    assert delivery_id in claimed
    status = attempt_delivery(db, delivery_id, http_post=http_post, now=now, rng=_no_jitter())
    db.commit()
    return status


def _reload(db, model, row_id):
    return db.query(model).filter(model.id == row_id).populate_existing().one()


class TestSigning:
    def test_canonical_json_is_compact_and_sorted(self):
        assert canonical_json({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'

    def test_signature_round_trip(self):
        body = canonical_json({"type": "goal.achieved"})
        signature = sign_payload(body, "s3cret")
        assert signature.startswith("sha256=")
        assert verify_signature(body, "s3cret", signature)
        assert not verify_signature(body + " ", "s3cret", signature)
        assert not verify_signature(body, "other", signature)


class TestBackoff:
    def test_doubles_up_to_ceiling(self):
        delays = [
            compute_backoff_seconds(n, base=60, ceiling=3600, jitter_ratio=0.0)
            for n in range(1, 10)
        ]
        assert delays[:4] == [60, 120, 240, 480]
        assert delays[-1] == 3600
        assert delays == sorted(delays)

    def test_jitter_is_bounded(self):
        rng = MagicMock()
        rng.random.return_value = 0.999
        delay = compute_backoff_seconds(2, base=60, ceiling=3600, jitter_ratio=0.1, rng=rng)
        assert 120 <= delay < 132


class TestEnqueue:
    def test_one_row_per_interested_active_subscriber(self, db_session, user_id, subscriber_factory):
        wants = subscriber_factory(events=["goal.achieved"])
        subscriber_factory(events=["milestone.reached"])
        subscriber_factory(events=["goal.achieved"], is_active=False)
        subscriber_factory(events=["goal.achieved"], owner="someone-else")

        deliveries = _queue_one(db_session, user_id)

        assert [d.subscriber_id for d in deliveries] == [wants.id]
        envelope = json.loads(deliveries[0].payload)
        assert envelope["type"] == "goal.achieved"
        assert envelope["id"] == deliveries[0].event_id
        assert envelope["timestamp"] == "2025-06-01T12:00:00Z"
        assert deliveries[0].status == STATUS_PENDING

    def test_no_subscribers_is_a_no_op(self, db_session, user_id):
        assert _queue_one(db_session, user_id) == []


class TestClaiming:
    def test_claim_is_exclusive(self, db_session, user_id, subscriber_factory):
        subscriber_factory(events=["goal.achieved"])
        delivery = _queue_one(db_session, user_id)[0]

        assert claim_due_deliveries(db_session, NOW) == [delivery.id]
        assert claim_due_deliveries(db_session, NOW) == []
        assert _reload(db_session, WebhookDelivery, delivery.id).status == STATUS_IN_FLIGHT

    def test_not_due_yet(self, db_session, user_id, subscriber_factory):
        subscriber_factory(events=["goal.achieved"])
        _queue_one(db_session, user_id)
        assert claim_due_deliveries(db_session, NOW - timedelta(seconds=1)) == []

    def test_unclaimed_delivery_is_not_attempted(self, db_session, user_id, subscriber_factory):
        subscriber_factory(events=["goal.achieved"])
        delivery = _queue_one(db_session, user_id)[0]
        post = FakePost()

        assert attempt_delivery(db_session, delivery.id, http_post=post, now=NOW) == STATUS_PENDING
        assert post.calls == []

    def test_stale_claims_are_released(self, db_session, user_id, subscriber_factory):
        subscriber_factory(events=["goal.achieved"])
        delivery = _queue_one(db_session, user_id)[0]
        claim_due_deliveries(db_session, NOW)
        db_session.commit()

        assert release_stale_claims(db_session, NOW + timedelta(seconds=10)) == 0
        later = NOW + timedelta(seconds=settings.OUTBOUND_CLAIM_LEASE_S + 1)
        assert release_stale_claims(db_session, later) == 1
        assert claim_due_deliveries(db_session, later) == [delivery.id]


class TestAttempt:
    def test_success(self, db_session, user_id, subscriber_factory):
        subscriber = subscriber_factory(events=["goal.achieved"], consecutive_failures=2)
        delivery = _queue_one(db_session, user_id)[0]
        post = FakePost(200)

        assert _claim_and_attempt(db_session, delivery.id, post, NOW) == STATUS_SUCCESS

        call = post.calls[0]
        assert call["url"] == subscriber.url
        assert call["timeout"] == 5.0
        headers = call["headers"]
        assert headers["X-Webhook-Event"] == "goal.achieved"
        assert headers["X-Webhook-ID"] == delivery.event_id
        assert headers["X-Webhook-Delivery-Attempt"] == "1"
        assert verify_signature(call["data"].decode("utf-8"), "s3cret", headers["X-Webhook-Signature"])

        stored = _reload(db_session, WebhookSubscriber, subscriber.id)
        assert stored.consecutive_failures == 0
        assert stored.last_success_at is not None

    def test_failure_backs_off_and_redelivers_same_body(self, db_session, user_id, subscriber_factory):
        subscriber_factory(events=["goal.achieved"], max_retries=5)
        delivery = _queue_one(db_session, user_id)[0]
        post = FakePost(500)

        assert _claim_and_attempt(db_session, delivery.id, post, NOW) == STATUS_PENDING
        row = _reload(db_session, WebhookDelivery, delivery.id)
        assert row.attempts == 1
        assert row.last_response_status == 500
        retry_at = row.next_retry_at.replace(tzinfo=timezone.utc)
        assert retry_at == NOW + timedelta(seconds=settings.OUTBOUND_BACKOFF_BASE_S)

        # Not due before the backoff elapses.
        assert claim_due_deliveries(db_session, NOW + timedelta(seconds=1)) == []

        later = NOW + timedelta(seconds=settings.OUTBOUND_BACKOFF_BASE_S)
        assert _claim_and_attempt(db_session, delivery.id, post, later) == STATUS_PENDING
        row = _reload(db_session, WebhookDelivery, delivery.id)
        assert row.next_retry_at.replace(tzinfo=timezone.utc) == later + timedelta(seconds=2 * settings.OUTBOUND_BACKOFF_BASE_S)

        first, second = post.calls
        assert first["data"] == second["data"]
        assert first["headers"]["X-Webhook-Signature"] == second["headers"]["X-Webhook-Signature"]
        assert first["headers"]["X-Webhook-ID"] == second["headers"]["X-Webhook-ID"]
        assert second["headers"]["X-Webhook-Delivery-Attempt"] == "2"

    def test_timeout_is_an_ordinary_failure(self, db_session, user_id, subscriber_factory):
        subscriber_factory(events=["goal.achieved"])
        delivery = _queue_one(db_session, user_id)[0]
        post = FakePost(raises=requests.Timeout("slow"))

        assert _claim_and_attempt(db_session, delivery.id, post, NOW) == STATUS_PENDING
        row = _reload(db_session, WebhookDelivery, delivery.id)
        assert row.last_response_status is None
        assert "Timed out" in row.last_response_body

    def test_exhausted_after_exactly_max_retries(self, db_session, user_id, subscriber_factory):
        subscriber = subscriber_factory(events=["goal.achieved"], max_retries=3)
        delivery = _queue_one(db_session, user_id)[0]
        post = FakePost(503)

        now = NOW
        statuses = []
        for _ in range(3):
            statuses.append(_claim_and_attempt(db_session, delivery.id, post, now))
            now = now + timedelta(hours=2)

        assert statuses == [STATUS_PENDING, STATUS_PENDING, STATUS_EXHAUSTED]
        assert len(post.calls) == 3
        row = _reload(db_session, WebhookDelivery, delivery.id)
        assert row.attempts == 3
        assert row.next_retry_at is None
        assert row.completed_at is not None
        assert claim_due_deliveries(db_session, now) == []
        assert _reload(db_session, WebhookSubscriber, subscriber.id).consecutive_failures == 1

    def test_circuit_breaker_deactivates_subscriber(self, db_session, user_id, subscriber_factory):
        threshold = settings.OUTBOUND_CIRCUIT_BREAKER_THRESHOLD
        subscriber = subscriber_factory(
            events=["goal.achieved"], max_retries=1, consecutive_failures=threshold - 1
        )
        delivery = _queue_one(db_session, user_id)[0]

        assert _claim_and_attempt(db_session, delivery.id, FakePost(500), NOW) == STATUS_EXHAUSTED

        stored = _reload(db_session, WebhookSubscriber, subscriber.id)
        assert stored.consecutive_failures == threshold
        assert stored.is_active is False
        assert stored.deactivated_reason == CIRCUIT_OPEN

        # Nothing new is queued for an open circuit.
        assert _queue_one(db_session, user_id) == []

    def test_inactive_subscriber_fails_pending_delivery(self, db_session, user_id, subscriber_factory):
        subscriber = subscriber_factory(events=["goal.achieved"])
        delivery = _queue_one(db_session, user_id)[0]
        subscriber.is_active = False
        db_session.commit()
        post = FakePost()

        assert _claim_and_attempt(db_session, delivery.id, post, NOW) == STATUS_FAILED
        assert post.calls == []


class TestTestPing:
    def test_ping_success(self, db_session, subscriber_factory):
        subscriber = subscriber_factory(events=["goal.achieved"])
        post = FakePost(204)

        result = send_test_ping(db_session, subscriber, http_post=post, now=NOW)

        assert result == {"success": True, "message": "Test ping delivered", "responseStatus": 204}
        assert post.calls[0]["headers"]["X-Webhook-Event"] == "webhook.test"
        assert db_session.query(WebhookDelivery).count() == 0

    def test_ping_network_error(self, db_session, subscriber_factory):
        subscriber = subscriber_factory(events=["goal.achieved"])
        post = FakePost(raises=requests.ConnectionError("refused"))

        result = send_test_ping(db_session, subscriber, http_post=post, now=NOW)

        assert result["success"] is False
        assert "refused" in result["message"]
        assert "responseStatus" not in result
