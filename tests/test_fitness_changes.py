from __future__ import annotations

from typing import Any, Dict

import pytest
from fastapi.testclient import TestClient

from fitsync.config import get_settings
from fitsync.main import app


ALICE = {"Authorization": "Bearer tok-alice"}
BOB = {"Authorization": "Bearer tok-bob"}


def _mutation(mid: str, entity_type: str, operation: str, **payload: Any) -> Dict[str, Any]:
    return {"id": mid, "entityType": entity_type, "operation": operation, "payload": payload}


@pytest.fixture()
def client(gym) -> TestClient:
    c = TestClient(app)
    mutations = [
        _mutation("m1", "session", "create", id="s1", gymId="g1", entryAt="2026-01-05T10:00:00Z"),
        _mutation("m2", "weight", "create", id="w1", valueKg=70, loggedAt="2026-01-05T07:00:00Z"),
        _mutation("m3", "weight", "create", id="w2", valueKg=71, loggedAt="2026-01-06T07:00:00Z"),
        _mutation("m4", "weight", "update", id="w1", valueKg=69.5, baseServerVersion=1),
    ]
    r = c.post("/api/fitness/sync", json={"mutations": mutations}, headers=ALICE)
    assert [res["status"] for res in r.json()["results"]] == ["applied"] * 4
    return c


def _changes(client: TestClient, headers=ALICE, **params):
    r = client.get("/api/fitness/changes", params=params, headers=headers)
    assert r.status_code == 200, r.text
    return r.json()


def test_first_page_is_ordered_by_version(client: TestClient) -> None:
    data = _changes(client, limit=1)
    assert data["ok"] is True
    assert [s["id"] for s in data["changes"]["sessions"]] == ["s1"]
    assert [w["id"] for w in data["changes"]["weights"]] == ["w2"]
    assert data["cursor"] == {"serverVersion": 1, "sessionCursor": 1, "weightCursor": 1}
    assert data["hasMore"] == {"sessions": False, "weights": True}
    assert data["activeSession"]["id"] == "s1"
    assert data["serverTime"]


def test_cursors_advance_per_stream(client: TestClient) -> None:
    data = _changes(client, sessionCursor=1, weightCursor=1, limit=1)
    assert data["changes"]["sessions"] == []
    assert [(w["id"], w["serverVersion"]) for w in data["changes"]["weights"]] == [("w1", 2)]
    # Empty stream keeps its cursor; the shared one trails the slower stream
    assert data["cursor"] == {"serverVersion": 1, "sessionCursor": 1, "weightCursor": 2}
    assert data["hasMore"] == {"sessions": False, "weights": False}

    done = _changes(client, sessionCursor=1, weightCursor=2)
    assert done["changes"] == {"sessions": [], "weights": []}
    assert done["cursor"]["weightCursor"] == 2


def test_shared_cursor_applies_to_both_streams(client: TestClient) -> None:
    data = _changes(client, serverVersion=1)
    assert data["changes"]["sessions"] == []
    assert [w["id"] for w in data["changes"]["weights"]] == ["w1"]

    legacy = _changes(client, cursor=1)
    assert legacy["changes"] == data["changes"]


def test_unparseable_params_fall_back_to_defaults(client: TestClient) -> None:
    data = _changes(client, cursor="abc", limit="-5")
    assert {s["id"] for s in data["changes"]["sessions"]} == {"s1"}
    assert {w["id"] for w in data["changes"]["weights"]} == {"w1", "w2"}
    assert data["hasMore"] == {"sessions": False, "weights": False}


def test_changes_are_scoped_and_authenticated(client: TestClient) -> None:
    data = _changes(client, headers=BOB)
    assert data["changes"] == {"sessions": [], "weights": []}
    assert data["activeSession"] is None
    assert data["cursor"] == {"serverVersion": 0, "sessionCursor": 0, "weightCursor": 0}

    r = client.get("/api/fitness/changes")
    assert r.status_code == 401
    assert r.json() == {"ok": False, "error": "Unauthorized"}


def test_changes_are_rate_limited(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("APP_CHANGES_RATE_LIMIT_PER_MINUTE", "1")
    get_settings.cache_clear()  # type: ignore[attr-defined]
    assert client.get("/api/fitness/changes", headers=ALICE).status_code == 200
    r = client.get("/api/fitness/changes", headers=ALICE)
    assert r.status_code == 429
    assert r.json()["error"] == "Too many requests"
