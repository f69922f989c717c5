from __future__ import annotations

"""
EMBED_SUMMARY: QR key material lifecycle: lazy static QR creation, key lookup, rotation, revocation, and age-based sweeps.
EMBED_TAGS: qr, keys, rotation, audit
"""

import logging
import secrets
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .audit import write_audit_log, write_qr_audit_log
from .config import get_settings
from .models import QrKey, QrStatic
from .observability import log_event
from .qr_token import create_signed_payload
from .schemas import SignedQrPayload
from .utils import utcnow


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KeyMaterial:
    static_qr: QrStatic
    key: QrKey


@dataclass(frozen=True)
class RotationOutcome:
    rotated: bool
    current_key_version: int


@dataclass(frozen=True)
class SweepSummary:
    total: int
    rotated: int
    duration_ms: int


def _random_key_material() -> str:
    return secrets.token_hex(32)


def _get_static(db: Session, gym_id: str, type: str) -> Optional[QrStatic]:
    return db.execute(
        select(QrStatic).where(QrStatic.gym_id == gym_id, QrStatic.type == type)
    ).scalar_one_or_none()


def _get_key(db: Session, gym_id: str, type: str, version: int) -> Optional[QrKey]:
    return db.execute(
        select(QrKey).where(QrKey.gym_id == gym_id, QrKey.type == type, QrKey.version == version)
    ).scalar_one_or_none()


def ensure_static_qr(db: Session, gym_id: str, type: str, actor_id: Optional[str] = None) -> QrStatic:
    """Return the static QR for (gym, type), creating it and its first key on first use."""
    existing = _get_static(db, gym_id, type)
    if existing:
        if not _get_key(db, gym_id, type, existing.current_key_version):
            db.add(QrKey(gym_id=gym_id, type=type, version=existing.current_key_version, key=_random_key_material()))
            db.commit()
        return existing

    created = QrStatic(gym_id=gym_id, type=type, current_key_version=1)
    db.add(created)
    db.add(QrKey(gym_id=gym_id, type=type, version=1, key=_random_key_material()))
    if actor_id:
        write_qr_audit_log(db, actor_id, gym_id, "GENERATE")
        write_audit_log(
            db, actor_id, "QR", "GENERATE", gym_id=gym_id,
            metadata={"qrType": type, "currentKeyVersion": 1},
        )
    try:
        db.commit()
    except IntegrityError:
        # Another request created it first
        db.rollback()
        winner = _get_static(db, gym_id, type)
        if winner is None:
            raise
        return winner
    db.refresh(created)
    return created


def get_qr_key_material(
    db: Session,
    gym_id: str,
    type: str,
    version: Optional[int] = None,
    create_if_missing: bool = True,
) -> Optional[KeyMaterial]:
    static_qr = ensure_static_qr(db, gym_id, type) if create_if_missing else _get_static(db, gym_id, type)
    if not static_qr:
        return None
    key = _get_key(db, gym_id, type, version if version is not None else static_qr.current_key_version)
    if not key:
        return None
    return KeyMaterial(static_qr=static_qr, key=key)


def issue_signed_payload(
    db: Session,
    gym_id: str,
    type: str,
    ttl_seconds: Optional[int] = None,
    device_binding: Optional[str] = None,
) -> SignedQrPayload:
    material = get_qr_key_material(db, gym_id, type)
    if material is None:
        raise RuntimeError(f"No key material for gym={gym_id} type={type}")
    ttl = ttl_seconds if ttl_seconds is not None else get_settings().qr_token_ttl_seconds
    return create_signed_payload(
        gym_id=gym_id,
        type=type,
        version=material.key.version,
        key_material=material.key.key,
        ttl_seconds=ttl,
        device_binding=device_binding,
    )


def rotate_qr_key(db: Session, gym_id: str, type: str, actor_id: str) -> QrStatic:
    """Mint the next key version and make it current; older keys are kept."""
    static_qr = ensure_static_qr(db, gym_id, type, actor_id)
    previous_version = static_qr.current_key_version
    next_version = previous_version + 1

    db.add(QrKey(gym_id=gym_id, type=type, version=next_version, key=_random_key_material()))
    static_qr.current_key_version = next_version
    static_qr.revoked_at = None
    db.add(static_qr)
    write_qr_audit_log(db, actor_id, gym_id, "REGENERATE")
    write_audit_log(
        db, actor_id, "QR", "REGENERATE", gym_id=gym_id,
        metadata={"qrType": type, "previousVersion": previous_version, "currentKeyVersion": next_version},
    )
    db.commit()
    db.refresh(static_qr)
    return static_qr


def revoke_static_qr(db: Session, gym_id: str, type: str, actor_id: str) -> QrStatic:
    """Reject every token for (gym, type) until the next rotation."""
    static_qr = ensure_static_qr(db, gym_id, type, actor_id)
    static_qr.revoked_at = utcnow()
    db.add(static_qr)
    write_qr_audit_log(db, actor_id, gym_id, "REVOKE")
    write_audit_log(
        db, actor_id, "QR", "REVOKE", gym_id=gym_id,
        metadata={"qrType": type, "currentKeyVersion": static_qr.current_key_version},
    )
    db.commit()
    db.refresh(static_qr)
    return static_qr


def maybe_rotate_qr_key_by_age(db: Session, gym_id: str, type: str, actor_id: str, force: bool = False) -> RotationOutcome:
    settings = get_settings()
    static_qr = ensure_static_qr(db, gym_id, type, actor_id)
    current_key = _get_key(db, gym_id, type, static_qr.current_key_version)
    max_age = timedelta(seconds=settings.qr_key_rotation_interval_seconds)
    due = force or current_key is None or utcnow() - current_key.created_at >= max_age
    if not due:
        return RotationOutcome(rotated=False, current_key_version=static_qr.current_key_version)

    previous_version = static_qr.current_key_version
    updated = rotate_qr_key(db, gym_id, type, actor_id)
    log_event(
        "qr.key_rotation.auto",
        gymId=gym_id,
        qrType=type,
        previousVersion=previous_version,
        currentVersion=updated.current_key_version,
        forced=force,
        intervalSeconds=settings.qr_key_rotation_interval_seconds,
    )
    return RotationOutcome(rotated=True, current_key_version=updated.current_key_version)


def run_qr_key_rotation_sweep(
    db: Session,
    actor_id: str,
    gym_id: Optional[str] = None,
    force: bool = False,
) -> SweepSummary:
    """Rotate every non-revoked static QR whose current key is older than the configured age."""
    stmt = select(QrStatic.gym_id, QrStatic.type).where(QrStatic.revoked_at.is_(None))
    if gym_id:
        stmt = stmt.where(QrStatic.gym_id == gym_id)
    entries = db.execute(stmt.order_by(QrStatic.id)).all()

    started = time.perf_counter()
    rotated = 0
    for entry_gym_id, entry_type in entries:
        outcome = maybe_rotate_qr_key_by_age(db, entry_gym_id, entry_type, actor_id, force=force)
        if outcome.rotated:
            rotated += 1
    duration_ms = int((time.perf_counter() - started) * 1000)

    log_event(
        "qr.key_rotation.sweep",
        actorId=actor_id,
        gymId=gym_id,
        total=len(entries),
        rotated=rotated,
        durationMs=duration_ms,
        forced=force,
    )
    write_audit_log(
        db, actor_id, "QR", "KEY_ROTATION_SWEEP", gym_id=gym_id,
        metadata={"total": len(entries), "rotated": rotated, "durationMs": duration_ms, "forced": force},
    )
    db.commit()
    return SweepSummary(total=len(entries), rotated=rotated, duration_ms=duration_ms)
