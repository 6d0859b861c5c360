"""
API tests for the Health Auto Export push endpoint.
"""
import pytest

from core.config import settings
from models import WebhookToken, Workout, WorkoutConflict
from tests.workout_helpers import hae_record


def _post(client, token, workouts, **kwargs):
    return client.post(f"/api/webhook?token={token}", json={"data": {"workouts": workouts}}, **kwargs)


class TestWebhookAuth:
    def test_connectivity_check(self, client, webhook_token):
        response = client.get(f"/api/webhook?token={webhook_token}")
        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "Webhook token is valid", "tokenName": "Health Auto Export"}

    def test_header_token_is_accepted(self, client, webhook_token):
        response = client.post(
            "/api/webhook",
            json={"data": {"workouts": []}},
            headers={"X-Webhook-Token": webhook_token},
        )
        assert response.status_code == 200

    def test_missing_token(self, client):
        response = client.post("/api/webhook", json={"data": {"workouts": []}})
        assert response.status_code == 401
        assert response.json()["error_code"] == "UNAUTHORIZED"

    def test_unknown_token(self, client, webhook_token):
        response = _post(client, "not-the-token", [hae_record("w1")])
        assert response.status_code == 401

    def test_revoked_token(self, client, db_session, webhook_token):
        db_session.query(WebhookToken).update({WebhookToken.is_active: False})
        db_session.commit()

        assert _post(client, webhook_token, [hae_record("w1")]).status_code == 401

    def test_last_used_is_recorded(self, client, db_session, webhook_token):
        _post(client, webhook_token, [])
        token = db_session.query(WebhookToken).populate_existing().one()
        assert token.last_used_at is not None


class TestWebhookPayload:
    def test_missing_data_object(self, client, webhook_token):
        response = client.post(f"/api/webhook?token={webhook_token}", json={"workouts": []})
        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_PAYLOAD"

    def test_workouts_must_be_a_list(self, client, webhook_token):
        response = client.post(f"/api/webhook?token={webhook_token}", json={"data": {"workouts": "nope"}})
        assert response.status_code == 400

    def test_too_many_workouts(self, client, webhook_token, monkeypatch):
        monkeypatch.setattr(settings, "WEBHOOK_MAX_WORKOUTS", 2)
        records = [hae_record(f"w{i}", start=f"2025-01-1{i} 08:00:00 -0500") for i in range(3)]

        response = _post(client, webhook_token, records)
        assert response.status_code == 422
        assert response.json()["error_code"] == "TOO_MANY_WORKOUTS"

    def test_payload_too_large(self, client, webhook_token, monkeypatch):
        monkeypatch.setattr(settings, "WEBHOOK_MAX_PAYLOAD_BYTES", 10)

        response = _post(client, webhook_token, [hae_record("w1")])
        assert response.status_code == 413
        assert response.json()["error_code"] == "PAYLOAD_TOO_LARGE"

    def test_chunked_payload_too_large(self, client, webhook_token, monkeypatch):
        monkeypatch.setattr(settings, "WEBHOOK_MAX_PAYLOAD_BYTES", 10)
        chunks = iter([b'{"data": ', b'{"workouts": []}}'])

        # A generator body is sent chunked, without Content-Length.
        response = client.post(
            f"/api/webhook?token={webhook_token}",
            content=chunks,
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 413
        assert response.json()["error_code"] == "PAYLOAD_TOO_LARGE"

    def test_body_must_be_json(self, client, webhook_token):
        response = client.post(
            f"/api/webhook?token={webhook_token}",
            content=b"not json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_PAYLOAD"


class TestWebhookIngest:
    def test_first_push_then_replay(self, client, webhook_token, auth_headers):
        record = hae_record("hae-1", start="2025-01-15 08:00:00 -0500", duration=1800, distance_km=5)

        first = _post(client, webhook_token, [record])
        assert first.status_code == 200
        body = first.json()
        assert body["success"] is True
        assert body["processed"] == 1
        assert body["skipped"] == 0
        assert "newMilestones" not in body

        second = _post(client, webhook_token, [record]).json()
        assert second["processed"] == 0
        assert second["skipped"] == 1

        daily = client.get("/v1/progress/2025/daily", headers=auth_headers).json()
        assert len(daily) == 1
        assert daily[0]["date"] == "2025-01-15"
        assert daily[0]["run_count"] == 1
        assert daily[0]["total_distance_meters"] == 5000
        assert daily[0]["avg_pace_seconds_per_km"] == pytest.approx(360.0)

    def test_non_runs_are_skipped(self, client, webhook_token, db_session, user_id):
        records = [
            hae_record("bike-1", name="Outdoor Cycle"),
            hae_record("yoga-1", name="Yoga", start="2025-01-16 08:00:00 -0500"),
            hae_record("run-1", start="2025-01-17 08:00:00 -0500"),
        ]
        body = _post(client, webhook_token, records).json()

        assert body["processed"] == 1
        assert body["skipped"] == 2
        assert db_session.query(Workout).filter(Workout.user_id == user_id).count() == 1

    def test_bad_record_is_reported_and_rest_applied(self, client, webhook_token, db_session, user_id):
        bad_units = hae_record("bad-1", distance_km=5)
        bad_units["distance"] = {"qty": 3, "units": "furlong"}
        no_start = hae_record("bad-2", start="2025-01-16 08:00:00 -0500")
        del no_start["start"]
        good = hae_record("good-1", start="2025-01-17 08:00:00 -0500")

        body = _post(client, webhook_token, [bad_units, no_start, good]).json()

        assert body["processed"] == 1
        assert [(e["index"], e["id"]) for e in body["errors"]] == [(0, "bad-1"), (1, "bad-2")]
        rejected = db_session.query(WorkoutConflict).filter(WorkoutConflict.user_id == user_id).all()
        assert {c.reason for c in rejected} == {"normalization_failed"}
        assert len(rejected) == 2

    def test_later_push_fills_missing_heart_rate(self, client, webhook_token, db_session, user_id):
        _post(client, webhook_token, [hae_record("hae-1")])

        enriched = hae_record("hae-1", avgHeartRate={"qty": 148, "units": "count/min"})
        body = _post(client, webhook_token, [enriched]).json()

        assert body["updated"] == 1
        workout = db_session.query(Workout).filter(Workout.user_id == user_id).one()
        assert workout.avg_heart_rate == 148

    def test_changed_distance_is_a_conflict(self, client, webhook_token, db_session, user_id):
        _post(client, webhook_token, [hae_record("hae-1", distance_km=5)])
        body = _post(client, webhook_token, [hae_record("hae-1", distance_km=6)]).json()

        assert body["conflicts"] == 1
        workout = db_session.query(Workout).filter(Workout.user_id == user_id).one()
        assert workout.distance_meters == 5000

    def test_webhook_and_device_agree_on_one_run(self, client, webhook_token, auth_headers, db_session, user_id):
        # 08:00 -0500 is 13:00 UTC; the device reports it a few seconds apart.
        _post(client, webhook_token, [hae_record("hae-1")])
        manifest = client.post(
            "/v1/workouts/sync",
            headers=auth_headers,
            json={"workouts": [{
                "clientId": "device-1",
                "startTime": "2025-01-15T13:00:05Z",
                "endTime": "2025-01-15T13:30:05Z",
                "durationSeconds": 1800,
                "distanceMeters": 5000,
                "source": "apple_watch",
            }]},
        ).json()

        assert manifest["created"] == 0
        assert manifest["unchanged"] == 1
        assert db_session.query(Workout).filter(Workout.user_id == user_id).count() == 1
