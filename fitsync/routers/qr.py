from __future__ import annotations

"""
EMBED_SUMMARY: QR endpoints: member scan verification, owner token issuance and key rotation, cron key-rotation sweep.
EMBED_TAGS: qr, verify, issue, rotation, api
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from ..config import get_settings
from ..deps import get_db, has_cron_secret, ip_rate_limit, optional_user, require_user
from ..models import Gym
from ..observability import get_request_id, mark_rejection_logged, register_rejection_event
from ..qr_service import issue_signed_payload, revoke_static_qr, rotate_qr_key, run_qr_key_rotation_sweep
from ..qr_token import build_scan_deep_link, encode_signed_payload, hash_device_binding
from ..qr_verifier import QrVerificationError, verify_qr_scan
from ..schemas import (
    KeyRotationSweepRequest,
    KeyRotationSweepResponse,
    QrIssueRequest,
    QrIssueResponse,
    QrRotateRequest,
    QrRotateResponse,
    QrVerifyRequest,
    QrVerifyResponse,
)


router = APIRouter(prefix="/api", tags=["qr"], dependencies=[Depends(ip_rate_limit)])
register_rejection_event("/api/qr/verify", "qr.verify.rejected")


def _owned_gym(db: Session, gym_id: str, user_id: str) -> Gym:
    gym = db.get(Gym, gym_id)
    if not gym:
        raise HTTPException(status_code=404, detail="Gym not found")
    if gym.owner_id != user_id and user_id not in get_settings().admin_user_id_set:
        raise HTTPException(status_code=403, detail="Forbidden")
    return gym


@router.post("/qr/verify", response_model=QrVerifyResponse)
def qr_verify(
    payload: QrVerifyRequest,
    request: Request,
    user_id: str = Depends(require_user),
    db: Session = Depends(get_db),
) -> QrVerifyResponse:
    try:
        session = verify_qr_scan(db, user_id, payload, request_id=get_request_id(request))
    except QrVerificationError as exc:
        mark_rejection_logged(request)
        raise HTTPException(status_code=exc.status_code, detail=exc.message, headers=exc.headers)
    except Exception:
        # Already logged by the verifier
        mark_rejection_logged(request)
        raise
    return QrVerifyResponse(session=session)


@router.post("/owner/qr/issue", response_model=QrIssueResponse)
def qr_issue(payload: QrIssueRequest, user_id: str = Depends(require_user), db: Session = Depends(get_db)) -> QrIssueResponse:
    gym = _owned_gym(db, payload.gym_id, user_id)
    if gym.suspended:
        raise HTTPException(status_code=403, detail="Gym suspended")
    device_binding = hash_device_binding(payload.device_id) if payload.device_id else None
    signed = issue_signed_payload(
        db, gym.id, payload.type, ttl_seconds=payload.ttl_seconds, device_binding=device_binding
    )
    return QrIssueResponse(
        token=encode_signed_payload(signed),
        exp=signed.exp,
        key_version=signed.v,
        deep_link=build_scan_deep_link(signed),
    )


@router.post("/owner/qr/rotate", response_model=QrRotateResponse)
def qr_rotate(payload: QrRotateRequest, user_id: str = Depends(require_user), db: Session = Depends(get_db)) -> QrRotateResponse:
    gym = _owned_gym(db, payload.gym_id, user_id)
    if payload.revoke:
        static_qr = revoke_static_qr(db, gym.id, payload.type, user_id)
    else:
        static_qr = rotate_qr_key(db, gym.id, payload.type, user_id)
    return QrRotateResponse(
        gym_id=gym.id,
        type=payload.type,
        current_key_version=static_qr.current_key_version,
        revoked=static_qr.revoked_at is not None,
    )


@router.post("/system/qr/key-rotation", response_model=KeyRotationSweepResponse)
def qr_key_rotation(
    request: Request,
    payload: Optional[KeyRotationSweepRequest] = None,
    user_id: Optional[str] = Depends(optional_user),
    db: Session = Depends(get_db),
) -> KeyRotationSweepResponse:
    settings = get_settings()
    is_admin = user_id is not None and user_id in settings.admin_user_id_set
    if not has_cron_secret(request) and not is_admin:
        raise HTTPException(status_code=401, detail="Unauthorized")
    actor_id = settings.qr_rotation_system_actor_id or (user_id if is_admin else None)
    if not actor_id:
        raise HTTPException(status_code=503, detail="System actor not configured")

    body = payload or KeyRotationSweepRequest()
    summary = run_qr_key_rotation_sweep(db, actor_id, gym_id=body.gym_id, force=body.force)
    return KeyRotationSweepResponse(total=summary.total, rotated=summary.rotated, duration_ms=summary.duration_ms)
