"""
Tests for the client sync engine: manifests, idempotency, cursor rules,
server-wins conflicts and per-record rejection.
"""
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from core.clock import as_utc
from core.database import SessionLocal
from models import SyncHistory, UserSyncState, Workout, WorkoutConflict
from schemas import SyncRequest
from services.sync_engine import (
    InvalidCursorError,
    _get_or_create_state,
    _save_state,
    decode_cursor,
    encode_cursor,
    get_sync_status,
    process_sync,
)
from services.workout_ingestion import ingest_workout
from tests.workout_helpers import make_workout, sync_record

JAN_15 = datetime(2025, 1, 15, 8, 0, tzinfo=timezone.utc)
JAN_10 = datetime(2025, 1, 10, 8, 0, tzinfo=timezone.utc)


def _sync(db, user_id, workouts, **fields):
    request = SyncRequest.model_validate({"workouts": workouts, **fields})
    return process_sync(db, user_id, request)


class TestCursor:
    def test_round_trip(self):
        assert decode_cursor(encode_cursor(JAN_15)) == JAN_15

    @pytest.mark.parametrize("garbage", ["not-a-cursor", "!!!", "aGVsbG8="])
    def test_garbage_is_rejected(self, garbage):
        with pytest.raises(InvalidCursorError):
            decode_cursor(garbage)


class TestProcessSync:
    def test_new_workouts_are_created(self, db_session, user_id):
        manifest = _sync(db_session, user_id, [
            sync_record("c1", start="2025-01-10T08:00:00Z"),
            sync_record("c2", start="2025-01-15T08:00:00Z"),
        ])

        assert manifest["success"] is True
        assert manifest["created"] == 2
        assert manifest["conflicts"] == []
        assert manifest["nextCursor"] == encode_cursor(JAN_15)
        assert db_session.query(Workout).filter(Workout.user_id == user_id).count() == 2

    def test_replay_with_same_idempotency_key_returns_stored_manifest(self, db_session, user_id):
        batch = [sync_record("c1")]
        first = _sync(db_session, user_id, batch, idempotencyKey="batch-1")
        second = _sync(db_session, user_id, batch, idempotencyKey="batch-1")

        assert second == first
        assert db_session.query(SyncHistory).filter(SyncHistory.user_id == user_id).count() == 1

    def test_expired_idempotency_key_is_reprocessed(self, db_session, user_id):
        batch = [sync_record("c1")]
        first = _sync(db_session, user_id, batch, idempotencyKey="batch-1")

        later = datetime.now(timezone.utc) + timedelta(hours=25)
        request = SyncRequest.model_validate({"workouts": batch, "idempotencyKey": "batch-1"})
        second = process_sync(db_session, user_id, request, now=later)

        assert second["syncId"] != first["syncId"]
        assert second["created"] == 0
        assert second["unchanged"] == 1

    def test_replaying_a_batch_without_key_changes_nothing(self, db_session, user_id):
        batch = [sync_record("c1"), sync_record("c2", start="2025-01-16T08:00:00Z")]
        _sync(db_session, user_id, batch)
        manifest = _sync(db_session, user_id, batch)

        assert manifest["created"] == 0
        assert manifest["unchanged"] == 2
        assert db_session.query(Workout).filter(Workout.user_id == user_id).count() == 2

    def test_incremental_cursor_never_moves_backwards(self, db_session, user_id):
        cursor = _sync(db_session, user_id, [sync_record("c1", start="2025-01-15T08:00:00Z")])["nextCursor"]

        # A late-arriving older run is stored, but the cursor holds.
        manifest = _sync(db_session, user_id, [sync_record("c0", start="2025-01-10T08:00:00Z")], cursor=cursor)
        assert manifest["created"] == 1
        assert manifest["nextCursor"] == cursor

    def test_unchanged_records_do_not_advance_cursor(self, db_session, user_id):
        cursor = _sync(db_session, user_id, [sync_record("c1", start="2025-01-10T08:00:00Z")])["nextCursor"]
        _sync(db_session, user_id, [sync_record("c2", start="2025-01-15T08:00:00Z")], cursor=cursor)

        # Re-sending the Jan 15 run only: seen, not applied.
        manifest = _sync(db_session, user_id, [sync_record("c2", start="2025-01-15T08:00:00Z")], cursor=cursor)
        assert manifest["unchanged"] == 1
        assert decode_cursor(manifest["nextCursor"]) == JAN_15  # stored cursor, not re-derived

    def test_full_resync_may_rewind(self, db_session, user_id):
        _sync(db_session, user_id, [sync_record("c1", start="2025-01-15T08:00:00Z")])

        manifest = _sync(db_session, user_id, [sync_record("c0", start="2025-01-10T08:00:00Z")], mode="full")
        assert manifest["nextCursor"] == encode_cursor(JAN_10)

    def test_invalid_cursor_raises(self, db_session, user_id):
        with pytest.raises(InvalidCursorError):
            _sync(db_session, user_id, [sync_record("c1")], cursor="not-a-cursor")

    def test_diverging_facts_are_server_wins_conflicts(self, db_session, user_id):
        _sync(db_session, user_id, [sync_record("c1", distance=5000)])
        manifest = _sync(db_session, user_id, [sync_record("c1", distance=5600)])

        assert manifest["created"] == 0
        assert len(manifest["conflicts"]) == 1
        conflict = manifest["conflicts"][0]
        assert conflict["clientId"] == "c1"
        assert conflict["reason"] == "data_mismatch"
        assert conflict["resolution"] == "kept_server"
        assert conflict["serverId"] is not None

        stored = db_session.query(Workout).filter(Workout.user_id == user_id).one()
        assert stored.distance_meters == 5000

    def test_supplemental_metrics_fill_empty_columns(self, db_session, user_id):
        _sync(db_session, user_id, [sync_record("c1")])
        manifest = _sync(db_session, user_id, [sync_record("c1", avgHeartRate=151, energyBurnedKcal=420)])

        assert manifest["updated"] == 1
        stored = db_session.query(Workout).filter(Workout.user_id == user_id).populate_existing().one()
        assert stored.avg_heart_rate == 151
        assert stored.energy_burned_kcal == 420
        assert stored.sync_version == 2

    def test_bad_record_is_rejected_and_batch_continues(self, db_session, user_id):
        broken = sync_record("bad", duration=0)
        missing_start = {"clientId": "nostart", "durationSeconds": 60, "distanceMeters": 100, "source": "healthkit"}

        manifest = _sync(db_session, user_id, [broken, missing_start, sync_record("good")])

        assert manifest["created"] == 1
        reasons = {(c["clientId"], c["reason"], c["resolution"]) for c in manifest["conflicts"]}
        assert reasons == {
            ("bad", "normalization_failed", "rejected"),
            ("nostart", "normalization_failed", "rejected"),
        }
        stored = db_session.query(WorkoutConflict).filter(WorkoutConflict.user_id == user_id).count()
        assert stored == 2

    def test_non_running_records_are_skipped(self, db_session, user_id):
        manifest = _sync(db_session, user_id, [sync_record("bike", name="Cycling"), sync_record("run")])
        assert manifest["skipped"] == 1
        assert manifest["created"] == 1

    def test_sync_history_is_recorded(self, db_session, user_id):
        _sync(db_session, user_id, [sync_record("c1"), sync_record("c2", name="Yoga")])

        history = db_session.query(SyncHistory).filter(SyncHistory.user_id == user_id).one()
        assert history.sync_mode == "incremental"
        assert history.workouts_received == 2
        assert history.workouts_created == 1
        assert history.workouts_skipped == 1


class TestSyncStatus:
    def test_status_for_new_user(self, db_session, user_id):
        status = get_sync_status(db_session, user_id)
        assert status["totalWorkouts"] == 0
        assert status["lastSyncAt"] is None
        assert status["serverCursor"] is None

    def test_workouts_after_cursor_are_pending(self, db_session, user_id):
        manifest = _sync(db_session, user_id, [sync_record("c1", start="2025-01-10T08:00:00Z")])

        # Arrives through the webhook, after the device's last sync.
        ingest_workout(db_session, user_id, make_workout(start="2025-01-20T07:00:00+00:00", source_id="hae-1"))
        db_session.commit()

        status = get_sync_status(db_session, user_id)
        assert status["serverCursor"] == manifest["nextCursor"]
        assert status["totalWorkouts"] == 2
        assert status["pendingSync"] == 1
        assert status["oldestWorkout"] == "2025-01-10T08:00:00Z"
        assert status["newestWorkout"] == "2025-01-20T07:00:00Z"


class TestConcurrentSyncs:
    """Two sessions syncing for the same user, as two API workers would."""

    JAN_1 = datetime(2025, 1, 1, 8, 0, tzinfo=timezone.utc)
    JAN_20 = datetime(2025, 1, 20, 8, 0, tzinfo=timezone.utc)

    def _stored_state(self, user_id):
        session = SessionLocal()
        try:
            return session.query(UserSyncState).filter(UserSyncState.user_id == user_id).one()
        finally:
            session.close()

    def _seed_cursor(self, user_id):
        session = SessionLocal()
        try:
            return _sync(session, user_id, [sync_record("jan1", start="2025-01-01T08:00:00Z")])["nextCursor"]
        finally:
            session.close()

    def test_slower_sync_cannot_rewind_cursor(self, user_id):
        presented = self._seed_cursor(user_id)
        slow, fast = SessionLocal(), SessionLocal()
        try:
            # The slow worker has already seen the Jan 1 state when the fast one commits.
            seen = slow.query(UserSyncState).filter(UserSyncState.user_id == user_id).one()
            assert decode_cursor(seen.server_cursor) == self.JAN_1

            fast_manifest = _sync(fast, user_id, [sync_record("jan20", start="2025-01-20T08:00:00Z")], cursor=presented)
            slow_manifest = _sync(slow, user_id, [sync_record("jan10", start="2025-01-10T08:00:00Z")], cursor=presented)
        finally:
            slow.close()
            fast.close()

        assert decode_cursor(fast_manifest["nextCursor"]) == self.JAN_20
        assert slow_manifest["created"] == 1
        assert decode_cursor(slow_manifest["nextCursor"]) == self.JAN_20

        state = self._stored_state(user_id)
        assert as_utc(state.cursor_at) == self.JAN_20
        assert decode_cursor(state.server_cursor) == self.JAN_20
        assert state.total_syncs == 3

    def test_stale_state_write_keeps_newer_cursor(self, user_id):
        self._seed_cursor(user_id)
        stale, other = SessionLocal(), SessionLocal()
        try:
            stale_state = stale.query(UserSyncState).filter(UserSyncState.user_id == user_id).one()

            _save_state(other, other.query(UserSyncState).filter(UserSyncState.user_id == user_id).one(),
                        self.JAN_20, uuid4(), datetime.now(timezone.utc), allow_rewind=False)
            other.commit()

            _save_state(stale, stale_state, JAN_10, uuid4(), datetime.now(timezone.utc), allow_rewind=False)
            stale.commit()
        finally:
            stale.close()
            other.close()

        state = self._stored_state(user_id)
        assert as_utc(state.cursor_at) == self.JAN_20
        assert state.total_syncs == 3

    def test_state_row_is_created_once(self, user_id):
        first, second = SessionLocal(), SessionLocal()
        try:
            created = _get_or_create_state(first, user_id)
            first.commit()
            again = _get_or_create_state(second, user_id)
            second.commit()
            assert again.id == created.id
        finally:
            first.close()
            second.close()

        session = SessionLocal()
        try:
            assert session.query(UserSyncState).filter(UserSyncState.user_id == user_id).count() == 1
        finally:
            session.close()
