from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select

from fitsync import qr_hooks
from fitsync.config import get_settings
from fitsync.database import SessionLocal
from fitsync.main import app
from fitsync.models import AuditLog, GymSession, QrAuditLog, QrToken
from fitsync.qr_service import get_qr_key_material, issue_signed_payload, revoke_static_qr, rotate_qr_key
from fitsync.qr_token import create_signed_payload, encode_signed_payload, hash_device_binding, hash_qr_token
from fitsync.utils import now_ms, utcnow


ALICE = {"Authorization": "Bearer tok-alice"}
GRACE_MS = 300_000


@pytest.fixture()
def client(gym) -> TestClient:
    return TestClient(app)


def _token(db, type: str = "ENTRY", **kwargs) -> str:
    return encode_signed_payload(issue_signed_payload(db, "g1", type, **kwargs))


def _verify(client: TestClient, token: str, headers=ALICE, **extra: Any):
    return client.post("/api/qr/verify", json={"token": token, **extra}, headers=headers)


def _session(sid: Optional[str] = None) -> Optional[GymSession]:
    with SessionLocal() as fresh:
        if sid:
            return fresh.get(GymSession, sid)
        return fresh.execute(select(GymSession)).scalars().first()


def test_entry_then_exit(client: TestClient, db) -> None:
    r = _verify(client, _token(db, "ENTRY"), sessionId="s1")
    assert r.status_code == 200, r.text
    entered = r.json()["session"]
    assert entered["id"] == "s1"
    assert entered["verificationStatus"] == "VERIFIED"
    assert entered["exitAt"] is None
    assert entered["serverVersion"] == 1

    r = _verify(client, _token(db, "EXIT"))
    assert r.status_code == 200, r.text
    exited = r.json()["session"]
    assert exited["id"] == "s1"
    assert exited["endedBy"] == "EXIT_QR"
    assert exited["serverVersion"] == 2
    assert exited["durationMinutes"] == 1

    actions = db.execute(select(QrAuditLog.action).where(QrAuditLog.actor_id == "alice")).scalars().all()
    assert sorted(actions) == ["VERIFY_ENTRY", "VERIFY_EXIT"]
    audit = db.execute(select(AuditLog).where(AuditLog.action == "VERIFY_ENTRY")).scalar_one()
    assert audit.meta["sessionId"] == "s1"
    assert audit.meta["offlineGrace"] is False
    assert audit.meta["requestId"]


def test_payment_consumes_token_without_session(client: TestClient, db) -> None:
    token = _token(db, "PAYMENT")
    r = _verify(client, token)
    assert r.status_code == 200
    assert r.json() == {"ok": True, "session": None}
    assert db.execute(select(func.count(GymSession.id))).scalar_one() == 0
    used = db.execute(select(QrToken).where(QrToken.token_hash == hash_qr_token(token))).scalar_one()
    assert used.used_at is not None


def test_token_is_single_use(client: TestClient, db) -> None:
    token = _token(db, "PAYMENT")
    assert _verify(client, token).status_code == 200
    again = _verify(client, token)
    assert again.status_code == 409
    assert again.json() == {"ok": False, "error": "Token already used"}


def test_concurrent_consumer_wins_the_race(client: TestClient, db, monkeypatch: pytest.MonkeyPatch) -> None:
    token = _token(db, "ENTRY")
    payload_exp = utcnow()

    def consume_elsewhere(gym_id, user_id, type, device_id, token_hash):
        # Another request consumes the token between the replay check and the conditional update
        with SessionLocal() as other:
            other.add(QrToken(token_hash=token_hash, gym_id=gym_id, type=type, expires_at=payload_exp, used_at=utcnow()))
            other.commit()
        return qr_hooks.HookResult(ok=True)

    monkeypatch.setattr(qr_hooks, "validate_device_binding", consume_elsewhere)
    r = _verify(client, token, sessionId="s1")
    assert r.status_code == 409
    assert r.json()["error"] == "Token already used"
    assert _session("s1") is None


def test_offline_grace_boundary(client: TestClient, db) -> None:
    material = get_qr_key_material(db, "g1", "PAYMENT")
    issued = now_ms() - 120_000

    def expired_token():
        payload = create_signed_payload("g1", "PAYMENT", material.key.version, material.key.key, now=issued)
        return payload, encode_signed_payload(payload)

    payload, token = expired_token()
    assert _verify(client, token).json()["error"] == "Token expired"

    inside = _verify(client, token, verifiedAt=payload.exp + GRACE_MS - 1)
    assert inside.status_code == 200, inside.text

    payload, token = expired_token()
    outside = _verify(client, token, verifiedAt=payload.exp + GRACE_MS + 1)
    assert outside.status_code == 400
    assert outside.json()["error"] == "Token expired"


def test_offline_mode_still_checks_signature(client: TestClient, db) -> None:
    material = get_qr_key_material(db, "g1", "PAYMENT")
    payload = create_signed_payload("g1", "PAYMENT", material.key.version, "forged-key")
    r = _verify(client, encode_signed_payload(payload), verifiedAt=payload.exp)
    assert r.status_code == 400
    assert r.json()["error"] == "Invalid signature"


@pytest.mark.parametrize("minutes,valid", [(19, False), (20, True)])
def test_streak_threshold(client: TestClient, db, minutes: int, valid: bool) -> None:
    entry_at = now_ms() - minutes * 60_000
    assert _verify(client, _token(db, "ENTRY"), entryAt=entry_at).status_code == 200
    r = _verify(client, _token(db, "EXIT"), verifiedAt=entry_at + minutes * 60_000)
    assert r.status_code == 200, r.text
    session = r.json()["session"]
    assert session["durationMinutes"] == minutes
    assert session["validForStreak"] is valid


def test_exit_ten_seconds_after_entry_counts_one_minute(client: TestClient, db) -> None:
    _verify(client, _token(db, "ENTRY"), entryAt=now_ms() - 10_000)
    session = _verify(client, _token(db, "EXIT")).json()["session"]
    assert session["durationMinutes"] == 1
    assert session["validForStreak"] is False


def test_second_entry_conflicts_but_rescan_of_same_session_verifies(client: TestClient, db) -> None:
    assert _verify(client, _token(db, "ENTRY"), sessionId="s1").status_code == 200

    other = _verify(client, _token(db, "ENTRY"), sessionId="s2")
    assert other.status_code == 409
    assert other.json()["error"] == "Active session exists"

    rescan = _verify(client, _token(db, "ENTRY"), sessionId="s1")
    assert rescan.status_code == 200
    assert rescan.json()["session"]["serverVersion"] == 2
    assert _session("s2") is None


def test_exit_without_active_session_is_404(client: TestClient, db) -> None:
    token = _token(db, "EXIT")
    r = _verify(client, token)
    assert r.status_code == 404
    assert r.json()["error"] == "No active session"
    # Rejected scans do not burn the token
    assert db.execute(select(QrToken).where(QrToken.token_hash == hash_qr_token(token))).scalar_one_or_none() is None


def test_rejections_log_reason_codes(client: TestClient, db, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="observability")
    r = _verify(client, "garbage-token")
    assert r.status_code == 400
    assert r.json()["error"] == "Invalid token"

    rejected = [rec for rec in caplog.records if getattr(rec, "event", None) == "qr.verify.rejected"]
    assert len(rejected) == 1
    assert rejected[0].context["reasonCode"] == "invalid_token"
    assert rejected[0].context["tokenHash"] == hash_qr_token("garbage-token")
    assert rejected[0].context["userId"] == "alice"
    assert "garbage-token" not in caplog.text


@pytest.mark.parametrize(
    "headers,body,status,reason",
    [
        ({}, {"token": "anything"}, 401, "unauthorized"),
        (ALICE, {"token": 123}, 400, "invalid_payload"),
        (ALICE, {"latitude": 10}, 400, "invalid_payload"),
    ],
)
def test_rejections_before_verification_log_reason_codes(
    client: TestClient, caplog: pytest.LogCaptureFixture, headers, body, status: int, reason: str
) -> None:
    caplog.set_level(logging.INFO, logger="observability")
    r = client.post("/api/qr/verify", json=body, headers=headers)
    assert r.status_code == status

    rejected = [rec for rec in caplog.records if getattr(rec, "event", None) == "qr.verify.rejected"]
    assert [rec.context["reasonCode"] for rec in rejected] == [reason]
    assert rejected[0].context["status"] == status


def test_rate_limited_scan_logs_reason_code(client: TestClient, db, caplog: pytest.LogCaptureFixture, monkeypatch: pytest.MonkeyPatch) -> None:
    token = _token(db, "ENTRY")
    monkeypatch.setenv("APP_RATE_LIMIT_PER_MINUTE", "0")
    get_settings.cache_clear()  # type: ignore[attr-defined]
    caplog.set_level(logging.INFO, logger="observability")
    r = _verify(client, token)
    assert r.status_code == 429

    rejected = [rec for rec in caplog.records if getattr(rec, "event", None) == "qr.verify.rejected"]
    assert [rec.context["reasonCode"] for rec in rejected] == ["rate_limited"]


def test_unexpected_failure_logs_internal_error_once(db, gym, caplog: pytest.LogCaptureFixture, monkeypatch: pytest.MonkeyPatch) -> None:
    def broken(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr("fitsync.qr_verifier._verify", broken)
    caplog.set_level(logging.INFO, logger="observability")
    client = TestClient(app, raise_server_exceptions=False)
    r = _verify(client, _token(db, "ENTRY"))
    assert r.status_code == 500
    assert r.json() == {"ok": False, "error": "Internal server error"}

    rejected = [rec for rec in caplog.records if getattr(rec, "event", None) == "qr.verify.rejected"]
    assert [rec.context["reasonCode"] for rec in rejected] == ["internal_error"]
    assert rejected[0].context["userId"] == "alice"
    assert _session() is None


def test_other_routes_do_not_emit_scan_rejections(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="observability")
    assert client.get("/api/fitness/changes").status_code == 401
    assert not [rec for rec in caplog.records if getattr(rec, "event", None) == "qr.verify.rejected"]


@pytest.mark.parametrize(
    "extra,status,error",
    [
        ({"gymId": "other"}, 400, "Token gym mismatch"),
        ({"type": "exit"}, 400, "Token type mismatch"),
    ],
)
def test_caller_context_must_match_token(client: TestClient, db, extra: Dict[str, Any], status: int, error: str) -> None:
    r = _verify(client, _token(db, "ENTRY"), **extra)
    assert r.status_code == status
    assert r.json()["error"] == error


def test_suspended_gym_rejects(client: TestClient, db, gym) -> None:
    token = _token(db, "ENTRY")
    gym.suspended = True
    db.commit()
    r = _verify(client, token)
    assert r.status_code == 403
    assert r.json()["error"] == "Gym suspended"


def test_rotated_key_rejects_old_version(client: TestClient, db) -> None:
    token = _token(db, "ENTRY")
    rotate_qr_key(db, "g1", "ENTRY", "owner")
    r = _verify(client, token)
    assert r.status_code == 403
    assert r.json()["error"] == "QR version expired"
    assert _verify(client, _token(db, "ENTRY")).status_code == 200


def test_revoked_qr_rejects_until_rotated(client: TestClient, db) -> None:
    revoke_static_qr(db, "g1", "ENTRY", "owner")
    revoked = _verify(client, _token(db, "ENTRY"))
    assert revoked.status_code == 403
    assert revoked.json()["error"] == "QR revoked"


def test_token_for_unissued_type_has_no_key(client: TestClient, db) -> None:
    payload = create_signed_payload("g1", "EXIT", 1, "whatever")
    r = _verify(client, encode_signed_payload(payload))
    assert r.status_code == 403
    assert r.json()["error"] == "QR key unavailable"


def test_device_bound_token(client: TestClient, db) -> None:
    token = _token(db, "PAYMENT", device_binding=hash_device_binding("phone-1"))
    wrong = _verify(client, token, deviceId="phone-2")
    assert wrong.status_code == 403
    assert wrong.json()["error"] == "Device mismatch"
    assert _verify(client, token, deviceId="phone-1").status_code == 200


def test_gps_hook_rejection_leaves_token_unused(client: TestClient, db, monkeypatch: pytest.MonkeyPatch) -> None:
    token = _token(db, "PAYMENT")
    monkeypatch.setattr(qr_hooks, "validate_gps", lambda *args: qr_hooks.HookResult(ok=False, reason="Not at the gym"))
    r = _verify(client, token, latitude=12.97, longitude=77.59)
    assert r.status_code == 403
    assert r.json()["error"] == "Not at the gym"

    monkeypatch.undo()
    assert _verify(client, token, latitude=12.97, longitude=77.59).status_code == 200


def test_geofence_uses_gym_coordinates(client: TestClient, db, gym) -> None:
    gym.latitude, gym.longitude = 12.9716, 77.5946
    db.commit()
    far = _verify(client, _token(db, "PAYMENT"), latitude=13.0827, longitude=80.2707)
    assert far.status_code == 403
    assert far.json()["error"] == "Outside gym radius"
    near = _verify(client, _token(db, "PAYMENT"), latitude=12.9717, longitude=77.5947)
    assert near.status_code == 200


def test_location_can_be_required(client: TestClient, db, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("APP_QR_REQUIRE_LOCATION", "true")
    get_settings.cache_clear()  # type: ignore[attr-defined]
    r = _verify(client, _token(db, "PAYMENT"))
    assert r.status_code == 400
    assert r.json()["error"] == "Location required"


def test_per_user_gym_type_rate_limit(client: TestClient, db, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("APP_QR_VERIFY_RATE_LIMIT_PER_MINUTE", "0")
    get_settings.cache_clear()  # type: ignore[attr-defined]
    r = _verify(client, _token(db, "PAYMENT"))
    assert r.status_code == 429
    assert r.headers["X-RateLimit-Remaining"] == "0"


def test_verify_requires_auth(client: TestClient, db) -> None:
    r = client.post("/api/qr/verify", json={"token": _token(db)})
    assert r.status_code == 401


def test_haversine_distance() -> None:
    assert qr_hooks.distance_meters(0, 0, 0, 0) == 0
    # One degree of latitude is roughly 111 km
    assert 110_000 < qr_hooks.distance_meters(0, 0, 1, 0) < 112_500
