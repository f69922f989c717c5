from __future__ import annotations

"""
EMBED_SUMMARY: Asyncio fitness sync client: local-first edits, batched queue upload with backoff, conflict rebasing, health telemetry.
EMBED_TAGS: client, sync, offline, httpx, asyncio
"""

import asyncio
import logging
import time
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional

import httpx

from .queue import (
    SYNC_TICK_SECONDS,
    FitnessState,
    QueueItem,
    SyncHealth,
    enqueue,
    iso_to_ms,
    merge_canonical,
    merge_changes,
    ms_to_iso,
    new_id,
    rebase_successors,
    select_batch,
)
from .store import InMemoryQueueStore, QueueStore


logger = logging.getLogger(__name__)

SYNC_PATH = "/api/fitness/sync"
MIN_VALID_SESSION_MINUTES = 20


def _wall_clock_ms() -> int:
    return int(time.time() * 1000)


class FitnessSyncClient:
    """Local-first fitness state that converges with the server in the background.

    Every local edit is applied to ``state`` immediately and queued as a mutation. ``sync_now``
    uploads due mutations, folds the server's answers back in, and advances the cursor to the
    server's clock. State changes always replace ``state`` as a whole and are persisted through
    the configured ``QueueStore``.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        store: Optional[QueueStore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], int] = _wall_clock_ms,
        online: bool = True,
        timeout: float = 15.0,
        tick_seconds: float = SYNC_TICK_SECONDS,
    ) -> None:
        self.store = store or InMemoryQueueStore()
        self.state = FitnessState.from_dict(self.store.load())
        self.health = SyncHealth()
        self.online = online
        self.last_error: Optional[str] = None
        self.clock = clock
        self.tick_seconds = tick_seconds
        self._syncing = False
        self._in_flight: set[str] = set()
        self._tick_task: Optional[asyncio.Task] = None
        self._http = httpx.AsyncClient(
            base_url=base_url,
            transport=transport,
            timeout=timeout,
            headers={"Authorization": f"Bearer {token}"},
        )

    # State
    def _set_state(self, update: Callable[[FitnessState], FitnessState]) -> FitnessState:
        self.state = update(self.state)
        self.store.save(self.state.to_dict())
        return self.state

    @property
    def syncing(self) -> bool:
        return self._syncing

    def exit_warning(self) -> Optional[str]:
        pending = len(self.state.queue)
        if not pending:
            return None
        return f"{pending} change(s) have not synced yet; closing now may lose data."

    # Local edits
    def enqueue_mutation(
        self, entity_type: str, operation: str, payload: Dict[str, Any], entity_id: Optional[str] = None
    ) -> QueueItem:
        item = QueueItem(
            id=new_id(),
            entity_id=entity_id or payload["id"],
            entity_type=entity_type,
            operation=operation,
            payload=dict(payload),
            created_at=self.clock(),
        )
        self._set_state(lambda s: replace(s, queue=enqueue(s.queue, item)))
        return item

    def record_weight(self, value_kg: float, weight_id: Optional[str] = None, logged_at: Optional[int] = None) -> Dict[str, Any]:
        now = self.clock()
        existing = self.state.weights.get(weight_id) if weight_id else None
        server_version = (existing or {}).get("serverVersion") or 0
        weight = {
            **(existing or {}),
            "id": weight_id or new_id(),
            "valueKg": value_kg,
            "loggedAt": ms_to_iso(logged_at if logged_at is not None else now),
            "serverVersion": server_version,
            "updatedAt": ms_to_iso(now),
        }
        payload = {"id": weight["id"], "valueKg": value_kg, "loggedAt": weight["loggedAt"], "updatedAt": weight["updatedAt"]}
        if server_version:
            payload["baseServerVersion"] = server_version
        self._set_state(lambda s: s.with_weight(weight))
        # Never reached the server: keep it a create so it coalesces with the queued one
        self.enqueue_mutation("weight", "update" if server_version else "create", payload)
        return weight

    def start_session(self, gym_id: str, session_id: Optional[str] = None, entry_at: Optional[int] = None) -> Dict[str, Any]:
        if self.state.live_session is not None:
            raise RuntimeError("A session is already in progress")
        now = self.clock()
        live = {
            "id": session_id or new_id(),
            "gymId": gym_id,
            "entryAt": ms_to_iso(entry_at if entry_at is not None else now),
            "exitAt": None,
            "verificationStatus": "PENDING",
            "validForStreak": False,
            "serverVersion": 0,
            "updatedAt": ms_to_iso(now),
        }
        self._set_state(lambda s: replace(s, live_session=live))
        self.enqueue_mutation(
            "session",
            "create",
            {
                "id": live["id"],
                "gymId": gym_id,
                "entryAt": live["entryAt"],
                "deviceId": self.state.device_id,
                "updatedAt": live["updatedAt"],
            },
        )
        return live

    def end_session(self, exit_at: Optional[int] = None, calories: Optional[int] = None, ended_by: str = "MANUAL") -> Dict[str, Any]:
        live = self.state.live_session
        if live is None:
            raise RuntimeError("No session in progress")
        now = self.clock()
        exit_ms = exit_at if exit_at is not None else now
        entry_ms = iso_to_ms(live["entryAt"]) or exit_ms
        duration = max(1, int((exit_ms - entry_ms) / 60000 + 0.5))
        closed = {
            **live,
            "exitAt": ms_to_iso(exit_ms),
            "durationMinutes": duration,
            "calories": calories,
            "validForStreak": duration >= MIN_VALID_SESSION_MINUTES,
            "endedBy": ended_by,
            "updatedAt": ms_to_iso(now),
        }
        self._set_state(lambda s: replace(s.with_session(closed), live_session=None))
        payload = {
            "id": closed["id"],
            "gymId": closed.get("gymId"),
            "entryAt": closed["entryAt"],
            "exitAt": closed["exitAt"],
            "calories": calories,
            "endedBy": ended_by,
            "updatedAt": closed["updatedAt"],
        }
        if live.get("serverVersion"):
            payload["baseServerVersion"] = live["serverVersion"]
        self.enqueue_mutation("session", "update", payload)
        return closed

    # Sync
    async def set_online(self, online: bool) -> None:
        came_online = online and not self.online
        self.online = online
        if came_online:
            await self.sync_now(force=True)

    async def sync_now(self, force: bool = False) -> Optional[Dict[str, Any]]:
        """Upload due mutations and pull changes. Returns the server response, or None if nothing ran."""
        if self._syncing or not self.online:
            return None
        now = self.clock()
        batch = select_batch(self.state.queue, now, exclude=self._in_flight)
        if not batch and not force and self.state.last_synced_at is not None:
            return None

        self._syncing = True
        sent_ids = [item.id for item in batch]
        self._in_flight.update(sent_ids)
        try:
            body: Dict[str, Any] = {"mutations": [item.to_wire() for item in batch]}
            if self.state.last_synced_at:
                body["since"] = self.state.last_synced_at
            try:
                resp = await self._http.post(SYNC_PATH, json=body)
                data = resp.json() if resp.status_code == 200 else None
            except (httpx.HTTPError, ValueError) as exc:
                self._request_failed(sent_ids, str(exc) or type(exc).__name__)
                return None
            if not data or not data.get("ok"):
                self._request_failed(sent_ids, f"Sync failed ({resp.status_code})")
                return None
            self._apply_response(batch, data)
            return data
        finally:
            self._in_flight.difference_update(sent_ids)
            self._syncing = False

    def _request_failed(self, sent_ids: List[str], error: str) -> None:
        now = self.clock()
        attempted = set(sent_ids)
        logger.warning("Fitness sync request failed (%d mutations): %s", len(attempted), error)
        self.last_error = error
        self._set_state(
            lambda s: replace(s, queue=tuple(q.bump_retry(now) if q.id in attempted else q for q in s.queue))
        )
        self.health = self.health.failed(now, len(self.state.queue))

    def _apply_response(self, batch: List[QueueItem], data: Dict[str, Any]) -> None:
        now = self.clock()
        sent = {item.id: item for item in batch}
        batch_ids = list(sent)
        answered = set()
        state = self.state

        for result in data.get("results") or []:
            item = sent.get(result.get("id"))
            if item is None:
                continue
            answered.add(item.id)
            canonical = result.get("canonicalSession") or result.get("canonicalWeight")
            if canonical:
                state = merge_canonical(state, item.entity_type, canonical)
            status = result.get("status")
            if status in ("applied", "skipped"):
                state = replace(state, queue=tuple(q for q in state.queue if q.id != item.id))
                state = replace(
                    state, queue=rebase_successors(state.queue, item, result["serverVersion"], batch_ids)
                )
            elif status == "conflict":
                state = self._resolve_conflict(state, item, result, batch_ids)
            else:
                logger.info("Mutation %s failed on server: %s", item.id, result.get("error"))
                state = replace(state, queue=tuple(q.bump_retry(now) if q.id == item.id else q for q in state.queue))

        unanswered = set(batch_ids) - answered
        if unanswered:
            state = replace(state, queue=tuple(q.bump_retry(now) if q.id in unanswered else q for q in state.queue))

        changes = data.get("changes") or {}
        state = merge_changes(state, changes.get("sessions") or [], changes.get("weights") or [], data.get("activeSession"))
        state = replace(state, last_synced_at=data.get("serverTime"))

        self._set_state(lambda _: state)
        self.last_error = None
        self.health = self.health.succeeded(now)

    def _resolve_conflict(
        self, state: FitnessState, item: QueueItem, result: Dict[str, Any], batch_ids: List[str]
    ) -> FitnessState:
        remaining = tuple(q for q in state.queue if q.id != item.id)
        server_version = result.get("serverVersion")

        if item.operation == "create" or result.get("entityId") != item.entity_id:
            # The server kept another entity (e.g. a different active session); this intent is void
            logger.info("Mutation %s rejected by server: %s", item.id, result.get("error"))
            rejected = {"mutationId": item.id, "entityId": item.entity_id, "entityType": item.entity_type, "error": result.get("error")}
            return replace(state, queue=remaining, rejected=state.rejected + (rejected,))

        successors = [
            q for q in remaining
            if q.entity_id == item.entity_id and q.entity_type == item.entity_type and q.id not in batch_ids
        ]
        if successors:
            return replace(state, queue=rebase_successors(remaining, item, server_version, batch_ids))

        # Reapply the local intent on top of the canonical row under a new mutation id
        retry = replace(
            item,
            id=new_id(),
            payload={**item.payload, "baseServerVersion": server_version},
            created_at=self.clock(),
            retry_count=0,
            last_attempt_at=None,
        )
        return replace(state, queue=enqueue(remaining, retry))

    # Background loop
    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.tick_seconds)
            try:
                await self.sync_now()
            except Exception:
                logger.exception("Background fitness sync failed")

    def start(self) -> None:
        if self._tick_task is None or self._tick_task.done():
            self._tick_task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        if self._tick_task is not None:
            self._tick_task.cancel()
            try:
                await self._tick_task
            except asyncio.CancelledError:
                pass
            self._tick_task = None
        await self._http.aclose()
