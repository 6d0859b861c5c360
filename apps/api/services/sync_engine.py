"""
Sync Reconciliation Engine

Client pull path: the device presents its cursor, a batch of workouts it
observed, and an idempotency key for the whole batch. The engine applies
the batch through the shared ingestion pipeline and answers with a
manifest (created / updated / unchanged / skipped / conflicts, nextCursor).

Session phases (logged as they change):
    cursor-loaded -> diffing -> applying -> manifest-ready

Rules:
- Idempotency key first. A stored, unexpired manifest for (user, key) is
  returned as-is; nothing is reprocessed.
- Records are decoded and normalized one at a time. A bad record becomes a
  ``normalization_failed`` conflict and the batch carries on.
- Conflicts are server-wins: the stored workout stands and the client is
  told via the conflict list.
- nextCursor is the max of the presented/stored cursor and the latest start
  time actually applied (created or supplemented), never merely seen. Only
  ``mode="full"`` (or no presented cursor) may move it backwards.
"""

from __future__ import annotations

import base64
import binascii
import logging
import time
import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import case, func, literal, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.clock import as_utc, isoformat_z, utcnow
from core.config import settings
from core.database import dialect_insert
from core.exceptions import ConflictError
from models import SyncHistory, SyncIdempotency, UserSyncState, Workout
from schemas import SyncConflictOut, SyncRequest, SyncResponse, SyncStatusResponse, SyncWorkoutIn
from services.milestones import evaluate_after_ingest
from services.workout_identity import ACTION_CONFLICT, ACTION_DUPLICATE, ACTION_NEW, ACTION_SUPPLEMENT
from services.workout_ingestion import (
    REASON_NORMALIZATION_FAILED,
    RESOLUTION_KEPT_SERVER,
    RESOLUTION_REJECTED,
    ingest_workout,
    record_rejection,
)
from services.workout_normalizer import NormalizationError, is_running_workout, normalize_workout

logger = logging.getLogger(__name__)


class SyncPhase(str, Enum):
    CURSOR_LOADED = "cursor-loaded"
    DIFFING = "diffing"
    APPLYING = "applying"
    MANIFEST_READY = "manifest-ready"


class InvalidCursorError(ValueError):
    pass


def encode_cursor(value: datetime) -> str:
    return base64.urlsafe_b64encode(isoformat_z(value).encode("utf-8")).decode("ascii")


def decode_cursor(cursor: str) -> datetime:
    """Opaque cursor -> aware UTC datetime. Raises InvalidCursorError."""
    try:
        text = base64.urlsafe_b64decode(cursor.encode("ascii")).decode("utf-8")
        return as_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except (ValueError, binascii.Error, UnicodeError) as e:
        raise InvalidCursorError(f"Invalid cursor: {cursor!r}") from e


def _log_phase(sync_id: uuid.UUID, phase: SyncPhase, **fields: Any) -> None:
    logger.debug(
        f"Sync {sync_id} -> {phase.value}",
        extra={"extra_fields": {"sync_id": str(sync_id), "phase": phase.value, **fields}},
    )


def _get_or_create_state(db: Session, user_id: str) -> UserSyncState:
    """
    The user's state row, freshly read and locked until this transaction ends.

    Two first syncs for a new user both reach the insert; ON CONFLICT lets
    the loser fall through to the read instead of failing.
    """
    table = UserSyncState.__table__
    db.execute(
        dialect_insert(db, table)
        .values(id=uuid.uuid4(), user_id=user_id, total_syncs=0)
        .on_conflict_do_nothing(index_elements=[table.c.user_id])
    )
    return (
        db.query(UserSyncState)
        .filter(UserSyncState.user_id == user_id)
        .populate_existing()
        .with_for_update()
        .one()
    )


def _save_state(
    db: Session,
    state: UserSyncState,
    cursor_at: Optional[datetime],
    sync_id: uuid.UUID,
    now: datetime,
    allow_rewind: bool,
) -> None:
    """
    Write the sync outcome in one UPDATE.

    Unless rewinding is allowed, the cursor only moves forward: the
    comparison runs against the row as committed, not the copy read at the
    start of the sync.
    """
    values: Dict[Any, Any] = {
        UserSyncState.last_sync_at: now,
        UserSyncState.last_sync_id: sync_id,
        UserSyncState.total_syncs: UserSyncState.total_syncs + 1,
    }
    encoded = encode_cursor(cursor_at) if cursor_at else None
    if allow_rewind:
        values[UserSyncState.cursor_at] = cursor_at
        values[UserSyncState.server_cursor] = encoded
    elif cursor_at is not None:
        ahead = or_(UserSyncState.cursor_at.is_(None), UserSyncState.cursor_at < cursor_at)
        values[UserSyncState.cursor_at] = case(
            (ahead, literal(cursor_at, UserSyncState.cursor_at.type)),
            else_=UserSyncState.cursor_at,
        )
        values[UserSyncState.server_cursor] = case(
            (ahead, literal(encoded, UserSyncState.server_cursor.type)),
            else_=UserSyncState.server_cursor,
        )
    db.query(UserSyncState).filter(UserSyncState.id == state.id).update(values, synchronize_session=False)
    db.expire(state)


def find_manifest(db: Session, user_id: str, idempotency_key: str, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    """Stored manifest for this batch key, if it has not expired. Expired rows are dropped."""
    now = now or utcnow()
    row = (
        db.query(SyncIdempotency)
        .filter(SyncIdempotency.user_id == user_id, SyncIdempotency.idempotency_key == idempotency_key)
        .first()
    )
    if row is None:
        return None
    if as_utc(row.expires_at) <= now:
        db.delete(row)
        db.flush()
        return None
    return row.response_body


def store_manifest(db: Session, user_id: str, idempotency_key: str, manifest: Dict[str, Any], now: Optional[datetime] = None) -> None:
    now = now or utcnow()
    db.add(SyncIdempotency(
        user_id=user_id,
        idempotency_key=idempotency_key,
        response_body=manifest,
        expires_at=now + timedelta(seconds=settings.SYNC_IDEMPOTENCY_TTL_S),
    ))


def purge_expired_manifests(db: Session, now: Optional[datetime] = None) -> int:
    """Delete idempotency rows past their TTL. Does not commit."""
    now = now or utcnow()
    return (
        db.query(SyncIdempotency)
        .filter(SyncIdempotency.expires_at <= now)
        .delete(synchronize_session=False)
    )


def process_sync(
    db: Session,
    user_id: str,
    request: SyncRequest,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Apply one sync batch and return its manifest.

    Commits. A concurrent request that committed the same idempotency key
    first wins; this call then rolls back and returns the winner's manifest.

    Raises:
        InvalidCursorError: the presented cursor cannot be decoded.
    """
    started = time.monotonic()
    now = now or utcnow()
    key = request.idempotency_key

    if key:
        cached = find_manifest(db, user_id, key, now)
        if cached is not None:
            logger.info(
                "Sync replayed from idempotency key",
                extra={"extra_fields": {"user_id": user_id, "idempotency_key": key}},
            )
            return cached

    sync_id = uuid.uuid4()

    # --- cursor-loaded ---
    state = _get_or_create_state(db, user_id)
    presented = decode_cursor(request.cursor) if request.cursor else None
    floor: Optional[datetime] = None
    if request.mode == "incremental" and presented is not None:
        stored = as_utc(state.cursor_at)
        floor = max(presented, stored) if stored else presented
    _log_phase(sync_id, SyncPhase.CURSOR_LOADED, mode=request.mode, floor=isoformat_z(floor))

    # --- diffing ---
    conflicts: List[SyncConflictOut] = []
    skipped = 0
    decoded = []
    for record in request.workouts:
        client_id = record.get("clientId")
        if not isinstance(client_id, str):
            client_id = None
        try:
            item = SyncWorkoutIn.model_validate(record)
            if not is_running_workout(item.name):
                skipped += 1
                continue
            decoded.append(normalize_workout(item.to_raw(raw_payload=record)))
        except (PydanticValidationError, NormalizationError) as e:
            message = e.message if isinstance(e, NormalizationError) else f"{e.error_count()} validation error(s)"
            record_rejection(
                db, user_id,
                source=str(record.get("source") or "unknown"),
                message=message,
                client_id=client_id,
                sync_id=sync_id,
                payload=record,
            )
            conflicts.append(SyncConflictOut(
                clientId=client_id,
                serverId=None,
                reason=REASON_NORMALIZATION_FAILED,
                resolution=RESOLUTION_REJECTED,
                message=message,
            ))
    _log_phase(sync_id, SyncPhase.DIFFING, accepted=len(decoded), rejected=len(conflicts), skipped=skipped)

    # --- applying ---
    counts = {ACTION_NEW: 0, ACTION_SUPPLEMENT: 0, ACTION_DUPLICATE: 0}
    latest_applied: Optional[datetime] = None
    touched_years = set()
    for workout in decoded:
        outcome = ingest_workout(db, user_id, workout, sync_id=sync_id)
        if outcome.action == ACTION_CONFLICT:
            conflicts.append(SyncConflictOut(
                clientId=workout.client_id,
                serverId=outcome.server_id,
                reason=outcome.reason,
                resolution=RESOLUTION_KEPT_SERVER,
            ))
            continue
        counts[outcome.action] += 1
        if outcome.applied:
            start = as_utc(outcome.start_time)
            if latest_applied is None or start > latest_applied:
                latest_applied = start
        if outcome.action == ACTION_NEW:
            touched_years.add(outcome.date_local.year)
    _log_phase(sync_id, SyncPhase.APPLYING, created=counts[ACTION_NEW], conflicts=len(conflicts))

    if touched_years:
        evaluate_after_ingest(db, user_id, touched_years, reference_date=now.date())

    candidates = [c for c in (floor, latest_applied) if c is not None]
    next_cursor_at = max(candidates) if candidates else None
    next_cursor = encode_cursor(next_cursor_at) if next_cursor_at else None

    _save_state(db, state, next_cursor_at, sync_id, now, allow_rewind=floor is None)

    manifest = SyncResponse(
        success=True,
        syncId=str(sync_id),
        serverTimestamp=isoformat_z(now),
        nextCursor=next_cursor,
        created=counts[ACTION_NEW],
        updated=counts[ACTION_SUPPLEMENT],
        unchanged=counts[ACTION_DUPLICATE],
        skipped=skipped,
        conflicts=conflicts,
    ).model_dump()

    db.add(SyncHistory(
        user_id=user_id,
        sync_mode=request.mode,
        workouts_received=len(request.workouts),
        workouts_created=manifest["created"],
        workouts_updated=manifest["updated"],
        workouts_unchanged=manifest["unchanged"],
        workouts_skipped=skipped,
        conflicts_count=len(conflicts),
        duration_ms=int((time.monotonic() - started) * 1000),
        ip_address=ip_address,
        user_agent=user_agent,
    ))
    if key:
        store_manifest(db, user_id, key, manifest, now)

    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        if key:
            winner = find_manifest(db, user_id, key, now)
            if winner is not None:
                logger.info(
                    "Concurrent sync with same idempotency key; returning stored manifest",
                    extra={"extra_fields": {"user_id": user_id, "idempotency_key": key}},
                )
                return winner
        raise ConflictError("A concurrent sync for this user was applied first; retry the request")

    _log_phase(sync_id, SyncPhase.MANIFEST_READY, next_cursor=next_cursor)
    logger.info(
        "Sync applied",
        extra={"extra_fields": {
            "user_id": user_id,
            "sync_id": str(sync_id),
            "created": manifest["created"],
            "updated": manifest["updated"],
            "unchanged": manifest["unchanged"],
            "skipped": skipped,
            "conflicts": len(conflicts),
        }},
    )
    return manifest


def get_sync_status(db: Session, user_id: str) -> Dict[str, Any]:
    state = db.query(UserSyncState).filter(UserSyncState.user_id == user_id).first()

    total, oldest, newest = (
        db.query(func.count(Workout.id), func.min(Workout.start_time), func.max(Workout.start_time))
        .filter(Workout.user_id == user_id)
        .one()
    )

    pending_query = db.query(func.count(Workout.id)).filter(Workout.user_id == user_id)
    if state is not None and state.cursor_at is not None:
        pending_query = pending_query.filter(Workout.start_time > as_utc(state.cursor_at))
    pending = pending_query.scalar() or 0

    return SyncStatusResponse(
        lastSyncAt=isoformat_z(state.last_sync_at) if state else None,
        serverCursor=state.server_cursor if state else None,
        totalWorkouts=total or 0,
        pendingSync=pending,
        oldestWorkout=isoformat_z(oldest),
        newestWorkout=isoformat_z(newest),
    ).model_dump()
