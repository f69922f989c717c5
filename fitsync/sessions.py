from __future__ import annotations

"""
EMBED_SUMMARY: Canonical readers for gym sessions and weight logs shared by sync reconciliation and QR verification.
EMBED_TAGS: sessions, weights, canonical, sync
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import GymSession, WeightLog
from .schemas import SessionOut, WeightOut


CHANGES_LIMIT = 200


def session_to_out(session: GymSession) -> SessionOut:
    return SessionOut(
        id=session.id,
        user_id=session.user_id,
        gym_id=session.gym_id,
        gym_name=session.gym.name if session.gym else None,
        entry_at=session.entry_at,
        exit_at=session.exit_at,
        duration_minutes=session.duration_minutes,
        calories=session.calories,
        valid_for_streak=session.valid_for_streak,
        ended_by=session.ended_by,
        verification_status=session.verification_status,
        server_version=session.server_version,
        created_at=session.created_at,
        updated_at=session.updated_at,
    )


def weight_to_out(weight: WeightLog) -> WeightOut:
    return WeightOut.model_validate(weight)


def get_active_session(db: Session, user_id: str) -> Optional[GymSession]:
    return db.execute(
        select(GymSession)
        .where(GymSession.user_id == user_id, GymSession.exit_at.is_(None))
        .order_by(GymSession.entry_at.desc())
    ).scalars().first()


def sessions_updated_since(db: Session, user_id: str, since: Optional[datetime], limit: int = CHANGES_LIMIT) -> List[GymSession]:
    stmt = select(GymSession).where(GymSession.user_id == user_id)
    if since is not None:
        stmt = stmt.where(GymSession.updated_at >= since)
    return list(db.execute(stmt.order_by(GymSession.updated_at.desc()).limit(limit)).scalars().all())


def weights_updated_since(db: Session, user_id: str, since: Optional[datetime], limit: int = CHANGES_LIMIT) -> List[WeightLog]:
    stmt = select(WeightLog).where(WeightLog.user_id == user_id)
    if since is not None:
        stmt = stmt.where(WeightLog.updated_at >= since)
    return list(db.execute(stmt.order_by(WeightLog.updated_at.desc()).limit(limit)).scalars().all())


def sessions_after_version(db: Session, user_id: str, cursor: int, limit: int = CHANGES_LIMIT) -> List[GymSession]:
    stmt = (
        select(GymSession)
        .where(GymSession.user_id == user_id, GymSession.server_version > cursor)
        .order_by(GymSession.server_version.asc(), GymSession.id.asc())
        .limit(limit)
    )
    return list(db.execute(stmt).scalars().all())


def weights_after_version(db: Session, user_id: str, cursor: int, limit: int = CHANGES_LIMIT) -> List[WeightLog]:
    stmt = (
        select(WeightLog)
        .where(WeightLog.user_id == user_id, WeightLog.server_version > cursor)
        .order_by(WeightLog.server_version.asc(), WeightLog.id.asc())
        .limit(limit)
    )
    return list(db.execute(stmt).scalars().all())


def has_versions_after(db: Session, model, user_id: str, cursor: int) -> bool:
    found = db.execute(
        select(model.id).where(model.user_id == user_id, model.server_version > cursor).limit(1)
    ).first()
    return found is not None
