from __future__ import annotations

"""
EMBED_SUMMARY: Client-side offline state: immutable fitness state, mutation queue coalescing, retry backoff, and canonical merges.
EMBED_TAGS: client, offline, queue, backoff, merge
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple


MAX_QUEUE_BATCH = 30
BASE_BACKOFF_MS = 1200
MAX_BACKOFF_MS = 90_000
SYNC_TICK_SECONDS = 10
MAX_LOCAL_ENTITIES = 300
STALE_AFTER_MS = 60_000
DATA_AT_RISK_AFTER_MS = 120_000


def new_id() -> str:
    return str(uuid.uuid4())


def ms_to_iso(value: int) -> str:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def iso_to_ms(value: Optional[str]) -> Optional[int]:
    """Parse a server or local timestamp; naive values are UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


def backoff_ms(retry_count: int) -> int:
    return min(MAX_BACKOFF_MS, BASE_BACKOFF_MS * 2 ** retry_count)


@dataclass(frozen=True)
class QueueItem:
    id: str
    entity_id: str
    entity_type: str
    operation: str
    payload: Dict[str, Any]
    created_at: int
    retry_count: int = 0
    last_attempt_at: Optional[int] = None

    def is_due(self, now: int) -> bool:
        if self.last_attempt_at is None:
            return True
        return now - self.last_attempt_at >= backoff_ms(self.retry_count)

    def same_target(self, other: "QueueItem") -> bool:
        return (
            self.entity_id == other.entity_id
            and self.entity_type == other.entity_type
            and self.operation == other.operation
        )

    def bump_retry(self, now: int) -> "QueueItem":
        return replace(self, retry_count=self.retry_count + 1, last_attempt_at=now)

    def to_wire(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entityType": self.entity_type,
            "operation": self.operation,
            "payload": self.payload,
            "createdAt": ms_to_iso(self.created_at),
            "retryCount": self.retry_count,
            "lastAttemptAt": ms_to_iso(self.last_attempt_at) if self.last_attempt_at is not None else None,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entityId": self.entity_id,
            "entityType": self.entity_type,
            "operation": self.operation,
            "payload": self.payload,
            "createdAt": self.created_at,
            "retryCount": self.retry_count,
            "lastAttemptAt": self.last_attempt_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["QueueItem"]:
        if data.get("entityType") not in ("session", "weight") or data.get("operation") not in ("create", "update"):
            return None
        payload = data.get("payload") or {}
        return cls(
            id=data.get("id") or new_id(),
            entity_id=data.get("entityId") or payload.get("id") or new_id(),
            entity_type=data["entityType"],
            operation=data["operation"],
            payload=dict(payload),
            created_at=int(data.get("createdAt") or 0),
            retry_count=int(data.get("retryCount") or 0),
            last_attempt_at=data.get("lastAttemptAt"),
        )


def enqueue(queue: Tuple[QueueItem, ...], item: QueueItem) -> Tuple[QueueItem, ...]:
    """Add ``item``, replacing a queued mutation for the same entity and operation in place."""
    for index, queued in enumerate(queue):
        if queued.same_target(item):
            return queue[:index] + (item,) + queue[index + 1:]
    return queue + (item,)


def select_batch(queue: Iterable[QueueItem], now: int, exclude: Iterable[str] = ()) -> List[QueueItem]:
    skip = set(exclude)
    due = [item for item in queue if item.id not in skip and item.is_due(now)]
    due.sort(key=lambda item: item.created_at)
    return due[:MAX_QUEUE_BATCH]


def rebase_successors(
    queue: Tuple[QueueItem, ...], sent: QueueItem, server_version: int, batch_ids: Iterable[str] = ()
) -> Tuple[QueueItem, ...]:
    """Point mutations queued behind ``sent`` for the same entity at the version the server now holds.

    A create that was coalesced while its predecessor was in flight becomes an update, merged into
    an already queued update for that entity if there is one.
    """
    skip = set(batch_ids) | {sent.id}
    rebased: List[QueueItem] = []
    pending_create: Optional[QueueItem] = None
    for item in queue:
        if item.id in skip or item.entity_id != sent.entity_id or item.entity_type != sent.entity_type:
            rebased.append(item)
            continue
        if item.operation == "create":
            pending_create = item
            continue
        payload = dict(item.payload)
        if payload.get("baseServerVersion") is not None:
            payload["baseServerVersion"] = server_version
        rebased.append(replace(item, payload=payload))

    if pending_create is not None:
        as_update = replace(
            pending_create,
            operation="update",
            payload={**pending_create.payload, "baseServerVersion": server_version},
        )
        for index, item in enumerate(rebased):
            if item.same_target(as_update):
                merged = {**as_update.payload, **item.payload, "baseServerVersion": server_version}
                rebased[index] = replace(item, payload=merged)
                break
        else:
            rebased.append(as_update)
    return tuple(rebased)


def _trimmed(entities: Dict[str, Dict[str, Any]], sort_key: str) -> Dict[str, Dict[str, Any]]:
    ordered = sorted(entities.values(), key=lambda e: iso_to_ms(e.get(sort_key)) or 0, reverse=True)
    return {e["id"]: e for e in ordered[:MAX_LOCAL_ENTITIES]}


@dataclass(frozen=True)
class FitnessState:
    """Everything the client keeps locally. Never mutated; transitions build a new instance."""

    device_id: str = field(default_factory=new_id)
    sessions: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    weights: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    live_session: Optional[Dict[str, Any]] = None
    queue: Tuple[QueueItem, ...] = ()
    last_synced_at: Optional[str] = None
    rejected: Tuple[Dict[str, Any], ...] = ()

    def with_session(self, session: Dict[str, Any]) -> "FitnessState":
        return replace(self, sessions=_trimmed({**self.sessions, session["id"]: session}, "entryAt"))

    def with_weight(self, weight: Dict[str, Any]) -> "FitnessState":
        return replace(self, weights=_trimmed({**self.weights, weight["id"]: weight}, "loggedAt"))

    def has_pending(self, entity_type: str, entity_id: str) -> bool:
        return any(item.entity_type == entity_type and item.entity_id == entity_id for item in self.queue)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "sessions": list(self.sessions.values()),
            "weights": list(self.weights.values()),
            "liveSession": self.live_session,
            "queue": [item.to_dict() for item in self.queue],
            "lastSyncedAt": self.last_synced_at,
            "rejected": list(self.rejected),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "FitnessState":
        if not data:
            return cls()
        queue = tuple(q for q in (QueueItem.from_dict(raw) for raw in data.get("queue") or []) if q is not None)
        return cls(
            device_id=data.get("deviceId") or new_id(),
            sessions={s["id"]: s for s in data.get("sessions") or [] if s.get("id")},
            weights={w["id"]: w for w in data.get("weights") or [] if w.get("id")},
            live_session=data.get("liveSession"),
            queue=queue,
            last_synced_at=data.get("lastSyncedAt"),
            rejected=tuple(data.get("rejected") or ()),
        )


def _newer(incoming: Dict[str, Any], existing: Optional[Dict[str, Any]]) -> bool:
    if existing is None:
        return True
    return (iso_to_ms(incoming.get("updatedAt")) or 0) > (iso_to_ms(existing.get("updatedAt")) or 0)


def merge_canonical(state: FitnessState, entity_type: str, canonical: Dict[str, Any]) -> FitnessState:
    """A per-mutation result is authoritative unless the local copy already has a later version."""
    current = (state.sessions if entity_type == "session" else state.weights).get(canonical["id"])
    if current is not None and (current.get("serverVersion") or 0) > canonical.get("serverVersion", 0):
        return state
    return state.with_session(canonical) if entity_type == "session" else state.with_weight(canonical)


def merge_changes(
    state: FitnessState,
    sessions: Iterable[Dict[str, Any]],
    weights: Iterable[Dict[str, Any]],
    active_session: Optional[Dict[str, Any]],
) -> FitnessState:
    """Fold a pull of server changes in, last writer (by updatedAt) wins per entity."""
    for session in sessions:
        if _newer(session, state.sessions.get(session["id"])):
            state = state.with_session(session)
    for weight in weights:
        if _newer(weight, state.weights.get(weight["id"])):
            state = state.with_weight(weight)

    live = state.live_session
    if active_session is not None:
        if (
            live is None
            or active_session.get("serverVersion", 0) > (live.get("serverVersion") or 0)
            or not _newer(live, active_session)
        ):
            live = active_session
    elif live is not None and not state.has_pending("session", live["id"]):
        live = None
    return replace(state, live_session=live)


@dataclass(frozen=True)
class SyncHealth:
    last_successful_sync_at: Optional[int] = None
    consecutive_failures: int = 0
    is_stale: bool = False
    data_at_risk: bool = False

    def succeeded(self, now: int) -> "SyncHealth":
        return SyncHealth(last_successful_sync_at=now)

    def failed(self, now: int, queue_size: int) -> "SyncHealth":
        since_success = now - self.last_successful_sync_at if self.last_successful_sync_at is not None else None
        return replace(
            self,
            consecutive_failures=self.consecutive_failures + 1,
            is_stale=since_success is not None and since_success > STALE_AFTER_MS,
            data_at_risk=queue_size > 0 and since_success is not None and since_success > DATA_AT_RISK_AFTER_MS,
        )
