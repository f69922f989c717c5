"""
Offline-first fitness sync reconciliation.

Each mutation in a batch is applied on its own, in its own transaction:

1. A stored receipt for (user, mutation id) short-circuits: the stored outcome is returned
   and nothing is re-executed.
2. Unknown entity -> create (sessions need a gym, and an open session may not coexist with
   another open session of the same user).
3. Entity owned by someone else -> failed / Forbidden.
4. baseServerVersion different from the row -> conflict carrying the canonical row.
5. create on an existing row -> skipped.
6. Otherwise update with ``UPDATE ... WHERE server_version = :seen`` and bump the version by one.

Applied, skipped and conflict outcomes are receipted in the same transaction as their side
effects. Failed outcomes are not receipted: nothing was written, so a retry re-executes.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional, Union

from pydantic import ValidationError
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .audit import write_audit_log
from .config import get_settings
from .models import Gym, GymSession, SyncMutationReceipt, WeightLog
from .observability import log_event
from .schemas import (
    AppliedResult,
    ChangesCursor,
    ChangesHasMore,
    ConflictResult,
    FailedResult,
    FitnessChangesResponse,
    SessionMutationPayload,
    SkippedResult,
    SyncChanges,
    SyncQueueItem,
    SyncRequest,
    SyncResponse,
    WeightMutationPayload,
)
from .sessions import (
    get_active_session,
    has_versions_after,
    session_to_out,
    sessions_after_version,
    sessions_updated_since,
    weight_to_out,
    weights_after_version,
    weights_updated_since,
)
from .utils import is_valid_for_streak, session_duration_minutes, to_naive_utc, utcnow


logger = logging.getLogger(__name__)

MutationResult = Union[AppliedResult, SkippedResult, ConflictResult, FailedResult]
Entity = Union[GymSession, WeightLog]

# One retry covers a lost race on a receipt, the active-session index, or a version predicate
MAX_ATTEMPTS = 2


class _VersionRace(Exception):
    """The row changed between read and conditional update."""


def _canonical_kwargs(entity: Optional[Entity]) -> dict:
    if isinstance(entity, GymSession):
        return {"canonical_session": session_to_out(entity)}
    if isinstance(entity, WeightLog):
        return {"canonical_weight": weight_to_out(entity)}
    return {}


def _build_result(
    mutation: SyncQueueItem,
    status: str,
    entity: Optional[Entity] = None,
    entity_id: Optional[str] = None,
    server_version: Optional[int] = None,
    error: Optional[str] = None,
) -> MutationResult:
    if status == "failed":
        return FailedResult(
            id=mutation.id, entity_type=mutation.entity_type, entity_id=entity_id, error=error or "Mutation failed"
        )
    common = dict(
        id=mutation.id,
        entity_type=mutation.entity_type,
        entity_id=entity_id if entity_id is not None else entity.id,
        server_version=server_version if server_version is not None else entity.server_version,
        **_canonical_kwargs(entity),
    )
    if status == "applied":
        return AppliedResult(**common)
    if status == "skipped":
        return SkippedResult(**common)
    return ConflictResult(error=error or "Version conflict", **common)


def _load_receipt(db: Session, user_id: str, mutation_id: str) -> Optional[SyncMutationReceipt]:
    return db.get(SyncMutationReceipt, (user_id, mutation_id))


def _load_entity(db: Session, entity_type: str, entity_id: Optional[str]) -> Optional[Entity]:
    if not entity_id:
        return None
    model = GymSession if entity_type == "session" else WeightLog
    return db.get(model, entity_id)


def _hydrate_receipt(db: Session, user_id: str, mutation: SyncQueueItem, receipt: SyncMutationReceipt) -> MutationResult:
    entity = _load_entity(db, receipt.entity_type, receipt.entity_id)
    if entity is not None and entity.user_id != user_id:
        entity = None
    return _build_result(
        mutation,
        receipt.status,
        entity=entity,
        entity_id=receipt.entity_id,
        server_version=receipt.server_version,
        error=receipt.error,
    )


def _stage_receipt(db: Session, user_id: str, mutation: SyncQueueItem, result: MutationResult) -> None:
    if isinstance(result, FailedResult) or not result.entity_id:
        return
    db.add(
        SyncMutationReceipt(
            user_id=user_id,
            mutation_id=mutation.id,
            entity_type=mutation.entity_type,
            entity_id=result.entity_id,
            status=result.status,
            server_version=result.server_version,
            error=getattr(result, "error", None),
        )
    )


def _conflict(
    db: Session,
    user_id: str,
    mutation: SyncQueueItem,
    canonical: Entity,
    base_server_version: Optional[int],
    reason: str,
    request_id: Optional[str],
) -> ConflictResult:
    log_event(
        "fitness.sync.conflict",
        "warning",
        userId=user_id,
        mutationId=mutation.id,
        entityType=mutation.entity_type,
        entityId=canonical.id,
        baseServerVersion=base_server_version,
        serverVersion=canonical.server_version,
        reason=reason,
        requestId=request_id,
    )
    write_audit_log(
        db,
        user_id,
        "FITNESS",
        "SYNC_CONFLICT",
        gym_id=getattr(canonical, "gym_id", None),
        metadata={
            "mutationId": mutation.id,
            "entityType": mutation.entity_type,
            "entityId": canonical.id,
            "operation": mutation.operation,
            "baseServerVersion": base_server_version,
            "serverVersion": canonical.server_version,
            "reason": reason,
            "requestId": request_id,
        },
    )
    return _build_result(mutation, "conflict", entity=canonical, error=reason)


def _closing_values(entry_at: datetime, exit_at: datetime, payload: SessionMutationPayload) -> dict:
    min_minutes = get_settings().min_valid_session_minutes
    duration = session_duration_minutes(entry_at, exit_at)
    return {
        "exit_at": exit_at,
        "duration_minutes": duration,
        "valid_for_streak": is_valid_for_streak(duration, min_minutes),
        "ended_by": payload.ended_by or "MANUAL",
    }


def _create_session(
    db: Session, user_id: str, mutation: SyncQueueItem, payload: SessionMutationPayload, request_id: Optional[str]
) -> MutationResult:
    if not payload.gym_id:
        return _build_result(mutation, "failed", error="Missing gymId")
    if not db.get(Gym, payload.gym_id):
        return _build_result(mutation, "failed", error="Unknown gym")
    if payload.entry_at is None:
        return _build_result(mutation, "failed", error="Missing entryAt")

    entry_at = to_naive_utc(payload.entry_at)
    exit_at = to_naive_utc(payload.exit_at)
    if exit_at is None:
        active = get_active_session(db, user_id)
        if active is not None:
            return _conflict(
                db, user_id, mutation, active, payload.base_server_version, "Active session exists", request_id
            )
    elif exit_at < entry_at:
        return _build_result(mutation, "failed", error="exitAt precedes entryAt")

    now = utcnow()
    values = {
        "id": payload.id,
        "user_id": user_id,
        "gym_id": payload.gym_id,
        "entry_at": entry_at,
        "calories": payload.calories,
        # Only a QR scan verifies a session
        "verification_status": "PENDING",
        "device_id": payload.device_id,
        "server_version": 1,
        "created_at": now,
        "updated_at": now,
    }
    if exit_at is not None:
        values.update(_closing_values(entry_at, exit_at, payload))
    session = GymSession(**values)
    db.add(session)
    db.flush()
    return _build_result(mutation, "applied", entity=session)


def _update_session(db: Session, mutation: SyncQueueItem, existing: GymSession, payload: SessionMutationPayload) -> MutationResult:
    values: dict = {}
    exit_at = to_naive_utc(payload.exit_at)
    # exitAt is written once; later updates cannot move it
    if exit_at is not None and existing.exit_at is None:
        if exit_at < existing.entry_at:
            return _build_result(mutation, "failed", entity_id=existing.id, error="exitAt precedes entryAt")
        values.update(_closing_values(existing.entry_at, exit_at, payload))
    if payload.calories is not None:
        values["calories"] = payload.calories
    return _conditional_update(db, mutation, GymSession, existing, values)


def _create_weight(db: Session, user_id: str, mutation: SyncQueueItem, payload: WeightMutationPayload) -> MutationResult:
    if payload.value_kg is None:
        return _build_result(mutation, "failed", error="Missing valueKg")
    if payload.logged_at is None:
        return _build_result(mutation, "failed", error="Missing loggedAt")
    now = utcnow()
    weight = WeightLog(
        id=payload.id,
        user_id=user_id,
        value_kg=payload.value_kg,
        logged_at=to_naive_utc(payload.logged_at),
        server_version=1,
        created_at=now,
        updated_at=now,
    )
    db.add(weight)
    db.flush()
    return _build_result(mutation, "applied", entity=weight)


def _update_weight(db: Session, mutation: SyncQueueItem, existing: WeightLog, payload: WeightMutationPayload) -> MutationResult:
    values: dict = {}
    if payload.value_kg is not None:
        values["value_kg"] = payload.value_kg
    if payload.logged_at is not None:
        values["logged_at"] = to_naive_utc(payload.logged_at)
    return _conditional_update(db, mutation, WeightLog, existing, values)


def _conditional_update(db: Session, mutation: SyncQueueItem, model, existing: Entity, values: dict) -> MutationResult:
    seen_version = existing.server_version
    values["server_version"] = seen_version + 1
    values["updated_at"] = utcnow()
    outcome = db.execute(
        update(model)
        .where(model.id == existing.id, model.server_version == seen_version)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if outcome.rowcount != 1:
        raise _VersionRace(existing.id)
    db.refresh(existing)
    return _build_result(mutation, "applied", entity=existing)


def _apply_once(db: Session, user_id: str, mutation: SyncQueueItem, request_id: Optional[str]) -> MutationResult:
    receipt = _load_receipt(db, user_id, mutation.id)
    if receipt is not None:
        return _hydrate_receipt(db, user_id, mutation, receipt)

    payload_model = SessionMutationPayload if mutation.entity_type == "session" else WeightMutationPayload
    try:
        payload = payload_model.model_validate(mutation.payload)
    except ValidationError:
        return _build_result(mutation, "failed", error=f"Invalid {mutation.entity_type} payload")

    existing = _load_entity(db, mutation.entity_type, payload.id)
    if existing is None:
        if mutation.entity_type == "session":
            result = _create_session(db, user_id, mutation, payload, request_id)
        else:
            result = _create_weight(db, user_id, mutation, payload)
    elif existing.user_id != user_id:
        return _build_result(mutation, "failed", error="Forbidden")
    elif payload.base_server_version is not None and payload.base_server_version != existing.server_version:
        result = _conflict(
            db, user_id, mutation, existing, payload.base_server_version, "Version conflict", request_id
        )
    elif mutation.operation == "create":
        result = _build_result(mutation, "skipped", entity=existing)
    elif mutation.entity_type == "session":
        result = _update_session(db, mutation, existing, payload)
    else:
        result = _update_weight(db, mutation, existing, payload)

    if isinstance(result, FailedResult):
        db.rollback()
        return result
    _stage_receipt(db, user_id, mutation, result)
    db.commit()
    return result


def apply_mutation(db: Session, user_id: str, mutation: SyncQueueItem, request_id: Optional[str] = None) -> MutationResult:
    """Apply one mutation exactly once; never raises, failures become a failed result."""
    for attempt in range(1, MAX_ATTEMPTS + 1):
        try:
            return _apply_once(db, user_id, mutation, request_id)
        except (IntegrityError, _VersionRace) as exc:
            db.rollback()
            logger.info(
                "Sync mutation raced user=%s mutation=%s attempt=%d: %s",
                user_id, mutation.id, attempt, type(exc).__name__,
            )
        except Exception:
            db.rollback()
            logger.exception("Sync mutation failed user=%s mutation=%s", user_id, mutation.id)
            return _build_result(mutation, "failed", error="Mutation failed")
    return _build_result(mutation, "failed", error="Concurrent modification, retry")


def sync_fitness(db: Session, user_id: str, request: SyncRequest, request_id: Optional[str] = None) -> SyncResponse:
    """Apply a batch of client mutations and return canonical state plus changes since the cursor."""
    results: List[MutationResult] = [apply_mutation(db, user_id, m, request_id) for m in request.mutations]

    # Cursor is taken before reading changes so rows written meanwhile land in the next pull
    server_time = utcnow()
    since = to_naive_utc(request.since)
    sessions = sessions_updated_since(db, user_id, since)
    weights = weights_updated_since(db, user_id, since)
    active = get_active_session(db, user_id)

    counts = {}
    for r in results:
        counts[r.status] = counts.get(r.status, 0) + 1
    logger.info(
        "Sync user=%s: %d mutations %s, %d sessions and %d weights changed since %s",
        user_id, len(results), counts, len(sessions), len(weights), since.isoformat() if since else "-",
    )

    return SyncResponse(
        server_time=server_time,
        results=results,
        active_session=session_to_out(active) if active else None,
        changes=SyncChanges(
            sessions=[session_to_out(s) for s in sessions],
            weights=[weight_to_out(w) for w in weights],
        ),
    )


def pull_changes(db: Session, user_id: str, session_cursor: int, weight_cursor: int, limit: int) -> FitnessChangesResponse:
    """Page through the caller's entities by serverVersion, one cursor per entity stream."""
    sessions = sessions_after_version(db, user_id, session_cursor, limit)
    weights = weights_after_version(db, user_id, weight_cursor, limit)
    active = get_active_session(db, user_id)

    next_session_cursor = sessions[-1].server_version if sessions else session_cursor
    next_weight_cursor = weights[-1].server_version if weights else weight_cursor

    return FitnessChangesResponse(
        server_time=utcnow(),
        cursor=ChangesCursor(
            # The shared cursor never runs ahead of the slower stream
            server_version=min(next_session_cursor, next_weight_cursor),
            session_cursor=next_session_cursor,
            weight_cursor=next_weight_cursor,
        ),
        has_more=ChangesHasMore(
            sessions=has_versions_after(db, GymSession, user_id, next_session_cursor),
            weights=has_versions_after(db, WeightLog, user_id, next_weight_cursor),
        ),
        active_session=session_to_out(active) if active else None,
        changes=SyncChanges(
            sessions=[session_to_out(s) for s in sessions],
            weights=[weight_to_out(w) for w in weights],
        ),
    )
