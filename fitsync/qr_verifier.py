from __future__ import annotations

"""
EMBED_SUMMARY: QR scan verification pipeline: token checks, single-use consumption, and the ENTRY/EXIT/PAYMENT session state machine.
EMBED_TAGS: qr, verify, sessions, replay, audit
"""

import logging
import uuid
from typing import Any, Optional

from sqlalchemy import func, insert as generic_insert, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import qr_hooks
from .audit import write_audit_log, write_qr_audit_log
from .config import get_settings
from .models import Gym, GymSession, QrToken
from .observability import log_event
from .qr_service import get_qr_key_material
from .qr_token import decode_signed_payload, hash_device_binding, hash_qr_token, verify_signed_payload
from .rate_limit import limit, rate_limit_headers
from .schemas import QrVerifyRequest, SessionOut, SignedQrPayload
from .sessions import get_active_session, session_to_out
from .utils import from_epoch_ms, is_valid_for_streak, session_duration_minutes, utcnow


logger = logging.getLogger(__name__)


class QrVerificationError(Exception):
    """A scan was rejected. ``reason_code`` is for logs and metrics only, never the response body."""

    def __init__(self, status_code: int, message: str, reason_code: str, headers: Optional[dict[str, str]] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.reason_code = reason_code
        self.headers = headers


def _insert_ignoring_duplicates(db: Session, values: dict[str, Any]) -> None:
    dialect = db.get_bind().dialect.name
    if dialect in ("sqlite", "postgresql"):
        insert = sqlite.insert if dialect == "sqlite" else postgresql.insert
        db.execute(insert(QrToken).values(**values).on_conflict_do_nothing(index_elements=["token_hash"]))
        return
    savepoint = db.begin_nested()
    try:
        db.execute(generic_insert(QrToken).values(**values))
        savepoint.commit()
    except IntegrityError:
        savepoint.rollback()


def _consume_token(db: Session, payload: SignedQrPayload, token_hash: str, device_hash: Optional[str]) -> None:
    now = utcnow()
    _insert_ignoring_duplicates(
        db,
        {
            "token_hash": token_hash,
            "gym_id": payload.gymId,
            "type": payload.type,
            "nonce": payload.nonce,
            "device_binding_hash": device_hash,
            "expires_at": from_epoch_ms(payload.exp),
            "created_at": now,
        },
    )
    consumed = db.execute(
        update(QrToken)
        .where(QrToken.token_hash == token_hash, QrToken.used_at.is_(None))
        .values(used_at=now, device_binding_hash=func.coalesce(QrToken.device_binding_hash, device_hash))
        .execution_options(synchronize_session=False)
    )
    if consumed.rowcount != 1:
        raise QrVerificationError(409, "Token already used", "token_already_used")


def _enter(db: Session, user_id: str, payload: SignedQrPayload, request: QrVerifyRequest) -> GymSession:
    active = get_active_session(db, user_id)
    if active is not None:
        if request.session_id and active.id == request.session_id:
            # Re-scan of the session the client already opened offline
            db.execute(
                update(GymSession)
                .where(GymSession.id == active.id)
                .values(
                    verification_status="VERIFIED",
                    server_version=GymSession.server_version + 1,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            db.refresh(active)
            return active
        raise QrVerificationError(409, "Active session exists", "active_session_exists")

    if request.session_id and db.get(GymSession, request.session_id) is not None:
        raise QrVerificationError(409, "Session already exists", "session_id_taken")

    now = utcnow()
    session = GymSession(
        id=request.session_id or str(uuid.uuid4()),
        user_id=user_id,
        gym_id=payload.gymId,
        entry_at=from_epoch_ms(request.entry_at) if request.entry_at is not None else now,
        valid_for_streak=False,
        verification_status="VERIFIED",
        device_id=request.device_id,
        server_version=1,
        created_at=now,
        updated_at=now,
    )
    db.add(session)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        raise QrVerificationError(409, "Active session exists", "active_session_exists")
    return session


def _exit(db: Session, user_id: str, request: QrVerifyRequest, offline: bool) -> GymSession:
    active = None
    if request.session_id:
        candidate = db.get(GymSession, request.session_id)
        if candidate is not None and candidate.user_id == user_id and candidate.exit_at is None:
            active = candidate
    if active is None:
        active = get_active_session(db, user_id)
    if active is None:
        raise QrVerificationError(404, "No active session", "no_active_session")

    exit_at = from_epoch_ms(request.verified_at) if offline else utcnow()
    exit_at = max(exit_at, active.entry_at)
    duration = session_duration_minutes(active.entry_at, exit_at)
    closed = db.execute(
        update(GymSession)
        .where(
            GymSession.id == active.id,
            GymSession.server_version == active.server_version,
            GymSession.exit_at.is_(None),
        )
        .values(
            exit_at=exit_at,
            duration_minutes=duration,
            valid_for_streak=is_valid_for_streak(duration, get_settings().min_valid_session_minutes),
            ended_by="EXIT_QR",
            verification_status="VERIFIED",
            server_version=active.server_version + 1,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if closed.rowcount != 1:
        raise QrVerificationError(409, "Session changed, retry", "session_changed")
    db.refresh(active)
    return active


def _verify(
    db: Session,
    user_id: str,
    payload: SignedQrPayload,
    request: QrVerifyRequest,
    token_hash: str,
    request_id: Optional[str],
) -> Optional[GymSession]:
    settings = get_settings()

    rate = limit(f"qr:{user_id}:{payload.gymId}:{payload.type}", settings.qr_verify_rate_limit_per_minute)
    if not rate.success:
        raise QrVerificationError(429, "Too many requests", "rate_limited", headers=rate_limit_headers(rate))

    if request.gym_id and request.gym_id != payload.gymId:
        raise QrVerificationError(400, "Token gym mismatch", "gym_mismatch")
    if request.type and request.type.upper() != payload.type:
        raise QrVerificationError(400, "Token type mismatch", "type_mismatch")

    gym = db.get(Gym, payload.gymId)
    if gym is None:
        raise QrVerificationError(404, "Gym not found", "gym_not_found")
    if gym.suspended:
        raise QrVerificationError(403, "Gym suspended", "gym_suspended")

    material = get_qr_key_material(db, payload.gymId, payload.type, version=payload.v, create_if_missing=False)
    if material is None:
        raise QrVerificationError(403, "QR key unavailable", "key_unavailable")
    if material.static_qr.revoked_at is not None:
        raise QrVerificationError(403, "QR revoked", "qr_revoked")
    if payload.v != material.static_qr.current_key_version:
        raise QrVerificationError(403, "QR version expired", "key_version_stale")

    offline = request.verified_at is not None
    if offline:
        if request.verified_at > payload.exp + settings.qr_offline_grace_seconds * 1000:
            raise QrVerificationError(400, "Token expired", "token_expired")
        # Signature is still checked against the token's own expiry
        outcome = verify_signed_payload(payload, material.key.key, now=payload.exp)
    else:
        outcome = verify_signed_payload(payload, material.key.key)
    if not outcome.ok:
        code = "token_expired" if outcome.reason == "Token expired" else "invalid_signature"
        raise QrVerificationError(400, outcome.reason or "Invalid token", code)

    device_hash = hash_device_binding(request.device_id) if request.device_id else None
    existing = db.execute(select(QrToken).where(QrToken.token_hash == token_hash)).scalar_one_or_none()
    if existing is not None and existing.used_at is not None:
        raise QrVerificationError(409, "Token already used", "token_already_used")
    if existing is not None and existing.device_binding_hash and existing.device_binding_hash != device_hash:
        raise QrVerificationError(403, "Device mismatch", "device_mismatch")
    if payload.deviceBinding and payload.deviceBinding != device_hash:
        raise QrVerificationError(403, "Device mismatch", "device_mismatch")

    has_location = request.latitude is not None and request.longitude is not None
    if settings.qr_require_location and not has_location:
        raise QrVerificationError(400, "Location required", "location_required")
    if has_location and gym.latitude is not None and gym.longitude is not None:
        distance = qr_hooks.distance_meters(gym.latitude, gym.longitude, request.latitude, request.longitude)
        if distance > qr_hooks.MAX_GPS_RADIUS_METERS:
            raise QrVerificationError(403, "Outside gym radius", "outside_geofence")

    device_check = qr_hooks.validate_device_binding(payload.gymId, user_id, payload.type, request.device_id, token_hash)
    if not device_check.ok:
        raise QrVerificationError(403, device_check.reason or "Device rejected", "device_hook_rejected")
    if has_location:
        gps_check = qr_hooks.validate_gps(payload.gymId, user_id, payload.type, request.latitude, request.longitude)
        if not gps_check.ok:
            raise QrVerificationError(403, gps_check.reason or "Location rejected", "gps_hook_rejected")

    _consume_token(db, payload, token_hash, device_hash)

    session: Optional[GymSession] = None
    if payload.type == "ENTRY":
        session = _enter(db, user_id, payload, request)
    elif payload.type == "EXIT":
        session = _exit(db, user_id, request, offline)

    action = f"VERIFY_{payload.type}"
    write_qr_audit_log(db, user_id, payload.gymId, action, type=payload.type)
    write_audit_log(
        db,
        user_id,
        "QR",
        action,
        gym_id=payload.gymId,
        metadata={
            "tokenHash": token_hash,
            "keyVersion": payload.v,
            "offlineGrace": offline,
            "sessionId": session.id if session else None,
            "requestId": request_id,
        },
    )
    db.commit()
    return session


def verify_qr_scan(
    db: Session, user_id: str, request: QrVerifyRequest, request_id: Optional[str] = None
) -> Optional[SessionOut]:
    """Run the full verification pipeline; returns the resulting session (None for PAYMENT).

    Raises QrVerificationError on any rejection, after logging ``qr.verify.rejected``
    with its reason code. Nothing is consumed or written when a scan is rejected.
    """
    token_hash = hash_qr_token(request.token)
    payload = decode_signed_payload(request.token)
    context = {
        "userId": user_id,
        "gymId": payload.gymId if payload else request.gym_id,
        "qrType": payload.type if payload else request.type,
        "tokenHash": token_hash,
        "requestId": request_id,
    }
    try:
        if payload is None:
            raise QrVerificationError(400, "Invalid token", "invalid_token")
        session = _verify(db, user_id, payload, request, token_hash, request_id)
    except QrVerificationError as exc:
        db.rollback()
        log_event("qr.verify.rejected", "warn", reasonCode=exc.reason_code, status=exc.status_code, **context)
        raise
    except Exception as exc:
        db.rollback()
        log_event("qr.verify.rejected", "error", reasonCode="internal_error", status=500, error=type(exc).__name__, **context)
        raise

    log_event("qr.verify.accepted", sessionId=session.id if session else None, offlineGrace=request.verified_at is not None, **context)
    return session_to_out(session) if session is not None else None
