from __future__ import annotations

from typing import Any, Dict, List

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select

from fitsync.config import get_settings
from fitsync.main import app
from fitsync.models import AuditLog, GymSession, SyncMutationReceipt, WeightLog


ALICE = {"Authorization": "Bearer tok-alice"}
BOB = {"Authorization": "Bearer tok-bob"}


@pytest.fixture()
def client(gym) -> TestClient:
    return TestClient(app)


def _mutation(mid: str, entity_type: str, operation: str, **payload: Any) -> Dict[str, Any]:
    return {"id": mid, "entityType": entity_type, "operation": operation, "payload": payload}


def _sync(client: TestClient, mutations: List[Dict[str, Any]], headers=ALICE, since=None):
    body: Dict[str, Any] = {"mutations": mutations}
    if since:
        body["since"] = since
    r = client.post("/api/fitness/sync", json=body, headers=headers)
    assert r.status_code == 200, r.text
    return r.json()


def _open_session(mid: str = "m1", sid: str = "s1") -> Dict[str, Any]:
    return _mutation(mid, "session", "create", id=sid, gymId="g1", entryAt="2026-01-05T10:00:00Z")


def test_offline_created_session_is_applied(client: TestClient) -> None:
    data = _sync(client, [_open_session()])
    assert data["ok"] is True
    result = data["results"][0]
    assert result["status"] == "applied"
    assert result["entityId"] == "s1"
    assert result["serverVersion"] == 1
    assert result["canonicalSession"]["verificationStatus"] == "PENDING"
    assert result["canonicalSession"]["gymName"] == "Iron Temple"
    assert data["activeSession"]["id"] == "s1"
    assert [s["id"] for s in data["changes"]["sessions"]] == ["s1"]
    assert data["serverTime"]


def test_resubmitted_mutation_returns_stored_receipt(client: TestClient, db) -> None:
    first = _sync(client, [_open_session()])["results"][0]
    second = _sync(client, [_open_session()])["results"][0]
    assert second["status"] == first["status"] == "applied"
    assert second["serverVersion"] == 1
    assert db.execute(select(func.count(GymSession.id))).scalar_one() == 1
    assert db.execute(select(func.count()).select_from(SyncMutationReceipt)).scalar_one() == 1


def test_updates_bump_version_by_one_and_stale_updates_do_not_write(client: TestClient, db) -> None:
    _sync(client, [_open_session()])
    closed = _sync(
        client,
        [_mutation("m2", "session", "update", id="s1", exitAt="2026-01-05T10:19:00Z", baseServerVersion=1)],
    )["results"][0]
    assert closed["status"] == "applied" and closed["serverVersion"] == 2
    assert closed["canonicalSession"]["durationMinutes"] == 19
    assert closed["canonicalSession"]["validForStreak"] is False

    burned = _sync(
        client, [_mutation("m3", "session", "update", id="s1", entryAt="2026-01-05T10:00:00Z", calories=310, baseServerVersion=2)]
    )["results"][0]
    assert burned["serverVersion"] == 3

    stale = _sync(
        client, [_mutation("m4", "session", "update", id="s1", entryAt="2026-01-05T10:00:00Z", calories=999, baseServerVersion=1)]
    )["results"][0]
    assert stale["status"] == "conflict"
    assert stale["serverVersion"] == 3
    assert stale["canonicalSession"]["calories"] == 310

    row = db.get(GymSession, "s1")
    assert row.server_version == 3 and row.calories == 310

    audits = db.execute(select(AuditLog).where(AuditLog.action == "SYNC_CONFLICT")).scalars().all()
    assert len(audits) == 1
    assert audits[0].meta["baseServerVersion"] == 1 and audits[0].meta["serverVersion"] == 3


def test_exit_is_written_only_once(client: TestClient) -> None:
    _sync(client, [_open_session()])
    _sync(client, [_mutation("m2", "session", "update", id="s1", entryAt="2026-01-05T10:00:00Z", exitAt="2026-01-05T10:30:00Z")])
    again = _sync(
        client, [_mutation("m3", "session", "update", id="s1", entryAt="2026-01-05T10:00:00Z", exitAt="2026-01-05T12:00:00Z")]
    )["results"][0]
    assert again["status"] == "applied"
    assert again["canonicalSession"]["exitAt"].startswith("2026-01-05T10:30:00")
    assert again["canonicalSession"]["durationMinutes"] == 30
    assert again["canonicalSession"]["validForStreak"] is True


def test_second_open_session_in_same_batch_conflicts(client: TestClient, db) -> None:
    data = _sync(client, [_open_session("m1", "s1"), _open_session("m2", "s2")])
    first, second = data["results"]
    assert first["status"] == "applied"
    assert second["status"] == "conflict"
    assert second["entityId"] == "s1"
    assert second["canonicalSession"]["id"] == "s1"
    assert second["error"] == "Active session exists"
    assert db.get(GymSession, "s2") is None


def test_open_session_from_another_device_conflicts(client: TestClient) -> None:
    _sync(client, [_open_session("m1", "s1")])
    other = _sync(client, [_open_session("m9", "s9")])["results"][0]
    assert other["status"] == "conflict" and other["entityId"] == "s1"


def test_stale_weight_update_returns_canonical_value(client: TestClient) -> None:
    _sync(client, [_mutation("w-m1", "weight", "create", id="w1", valueKg=70, loggedAt="2026-01-05T07:00:00Z")])
    _sync(client, [_mutation("w-m2", "weight", "update", id="w1", valueKg=72, loggedAt="2026-01-05T07:00:00Z", baseServerVersion=1)])

    stale = _mutation("w-m3", "weight", "update", id="w1", valueKg=71, loggedAt="2026-01-05T07:00:00Z", baseServerVersion=1)
    conflict = _sync(client, [stale])["results"][0]
    assert conflict["status"] == "conflict"
    assert conflict["serverVersion"] == 2
    assert conflict["canonicalWeight"]["valueKg"] == 72

    rebased = _mutation("w-m4", "weight", "update", id="w1", valueKg=71, loggedAt="2026-01-05T07:00:00Z", baseServerVersion=2)
    applied = _sync(client, [rebased])["results"][0]
    assert applied["status"] == "applied" and applied["serverVersion"] == 3
    assert applied["canonicalWeight"]["valueKg"] == 71

    # Conflicts are receipted: replaying the original mutation returns the recorded outcome
    replay = _sync(client, [stale])["results"][0]
    assert replay["status"] == "conflict" and replay["serverVersion"] == 2
    assert replay["canonicalWeight"]["valueKg"] == 71


def test_partial_weight_update_is_checked_against_current_version(client: TestClient, db) -> None:
    _sync(client, [_mutation("w-m1", "weight", "create", id="w1", valueKg=70, loggedAt="2026-01-05T07:00:00Z")])
    _sync(client, [_mutation("w-m2", "weight", "update", id="w1", valueKg=72, baseServerVersion=1)])

    conflict = _sync(client, [_mutation("c", "weight", "update", id="w1", valueKg=71, baseServerVersion=1)])["results"][0]
    assert conflict["status"] == "conflict"
    assert conflict["serverVersion"] == 2
    assert conflict["canonicalWeight"]["valueKg"] == 72

    applied = _sync(client, [_mutation("d", "weight", "update", id="w1", valueKg=71, baseServerVersion=2)])["results"][0]
    assert applied["status"] == "applied" and applied["serverVersion"] == 3
    # Fields missing from the payload keep their stored value
    assert applied["canonicalWeight"]["loggedAt"].startswith("2026-01-05T07:00:00")
    assert db.get(WeightLog, "w1").value_kg == 71


def test_duration_is_computed_from_timestamps(client: TestClient) -> None:
    result = _sync(
        client,
        [_mutation("m1", "session", "create", id="s1", gymId="g1", entryAt="2026-01-05T10:00:00Z",
                   exitAt="2026-01-05T10:05:00Z", durationMinutes=90)],
    )["results"][0]
    assert result["status"] == "applied"
    assert result["canonicalSession"]["durationMinutes"] == 5
    assert result["canonicalSession"]["validForStreak"] is False


def test_sync_cannot_mark_a_session_verified(client: TestClient, db) -> None:
    created = _sync(
        client,
        [_mutation("m1", "session", "create", id="s1", gymId="g1", entryAt="2026-01-05T10:00:00Z", verificationStatus="VERIFIED")],
    )["results"][0]
    assert created["canonicalSession"]["verificationStatus"] == "PENDING"

    updated = _sync(
        client, [_mutation("m2", "session", "update", id="s1", verificationStatus="VERIFIED", baseServerVersion=1)]
    )["results"][0]
    assert updated["status"] == "applied"
    assert updated["canonicalSession"]["verificationStatus"] == "PENDING"
    assert db.get(GymSession, "s1").verification_status == "PENDING"


def test_duplicate_create_is_skipped(client: TestClient) -> None:
    _sync(client, [_mutation("a", "weight", "create", id="w1", valueKg=70, loggedAt="2026-01-05T07:00:00Z")])
    dup = _sync(client, [_mutation("b", "weight", "create", id="w1", valueKg=99, loggedAt="2026-01-05T07:00:00Z")])["results"][0]
    assert dup["status"] == "skipped"
    assert dup["serverVersion"] == 1
    assert dup["canonicalWeight"]["valueKg"] == 70


def test_other_users_entities_are_forbidden(client: TestClient, db) -> None:
    _sync(client, [_mutation("a", "weight", "create", id="w1", valueKg=70, loggedAt="2026-01-05T07:00:00Z")])
    result = _sync(
        client, [_mutation("b", "weight", "update", id="w1", valueKg=50, loggedAt="2026-01-05T07:00:00Z")], headers=BOB
    )["results"][0]
    assert result["status"] == "failed"
    assert result["error"] == "Forbidden"
    assert result["entityId"] is None
    assert "canonicalWeight" not in result
    assert db.get(WeightLog, "w1").value_kg == 70
    assert db.get(SyncMutationReceipt, ("bob", "b")) is None


def test_bad_mutation_does_not_abort_batch(client: TestClient, db) -> None:
    data = _sync(
        client,
        [
            _mutation("bad", "weight", "create", id="w1", valueKg="heavy", loggedAt="2026-01-05T07:00:00Z"),
            _mutation("partial", "weight", "create", id="w3", loggedAt="2026-01-05T07:00:00Z"),
            _mutation("nogym", "session", "create", id="s1", gymId="missing", entryAt="2026-01-05T10:00:00Z"),
            _mutation("good", "weight", "create", id="w2", valueKg=80, loggedAt="2026-01-05T07:00:00Z"),
        ],
    )
    statuses = {r["id"]: (r["status"], r.get("error")) for r in data["results"]}
    assert statuses["bad"] == ("failed", "Invalid weight payload")
    assert statuses["partial"] == ("failed", "Missing valueKg")
    assert statuses["nogym"] == ("failed", "Unknown gym")
    assert statuses["good"] == ("applied", None)
    # Failed outcomes are not receipted, so a corrected retry re-executes
    assert db.get(SyncMutationReceipt, ("alice", "bad")) is None


def test_changes_since_cursor(client: TestClient) -> None:
    cursor = _sync(client, [])["serverTime"]
    _sync(client, [_mutation("a", "weight", "create", id="w1", valueKg=70, loggedAt="2026-01-05T07:00:00Z")], headers=ALICE)

    pulled = _sync(client, [], since=cursor)
    assert [w["id"] for w in pulled["changes"]["weights"]] == ["w1"]

    later = _sync(client, [], since=pulled["serverTime"])
    assert later["changes"]["weights"] == []
    assert later["activeSession"] is None


def test_changes_are_scoped_to_the_caller(client: TestClient) -> None:
    _sync(client, [_mutation("a", "weight", "create", id="w1", valueKg=70, loggedAt="2026-01-05T07:00:00Z")])
    assert _sync(client, [], headers=BOB)["changes"]["weights"] == []


def test_sync_requires_auth(client: TestClient) -> None:
    r = client.post("/api/fitness/sync", json={"mutations": []})
    assert r.status_code == 401
    assert r.json() == {"ok": False, "error": "Unauthorized"}


def test_oversized_batch_is_rejected(client: TestClient) -> None:
    mutations = [
        _mutation(f"m{i}", "weight", "create", id=f"w{i}", valueKg=70, loggedAt="2026-01-05T07:00:00Z") for i in range(101)
    ]
    r = client.post("/api/fitness/sync", json={"mutations": mutations}, headers=ALICE)
    assert r.status_code == 400
    assert r.json()["error"] == "Invalid payload"


def test_sync_is_rate_limited_per_user(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("APP_SYNC_RATE_LIMIT_PER_MINUTE", "0")
    get_settings.cache_clear()  # type: ignore[attr-defined]
    r = client.post("/api/fitness/sync", json={"mutations": []}, headers=ALICE)
    assert r.status_code == 429
    assert r.json()["error"] == "Too many requests"
    assert r.headers["X-RateLimit-Limit"] == "0"
