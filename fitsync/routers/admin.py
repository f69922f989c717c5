from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..deps import get_db, require_admin
from ..models import GymSession, SyncMutationReceipt, WeightLog
from ..schemas import ActiveSessionViolation, RecentSessionUpdate, SyncHealthResponse


router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin)])


@router.get("/sync/health", response_model=SyncHealthResponse)
def sync_health(db: Session = Depends(get_db)) -> SyncHealthResponse:
    open_count = func.count(GymSession.id)
    violations = db.execute(
        select(GymSession.user_id, open_count)
        .where(GymSession.exit_at.is_(None))
        .group_by(GymSession.user_id)
        .having(open_count > 1)
    ).all()
    open_sessions = db.execute(select(func.count(GymSession.id)).where(GymSession.exit_at.is_(None))).scalar_one()
    weight_logs = db.execute(select(func.count(WeightLog.id))).scalar_one()
    receipts = db.execute(
        select(SyncMutationReceipt.status, func.count()).group_by(SyncMutationReceipt.status)
    ).all()
    recent = db.execute(
        select(GymSession.user_id, GymSession.updated_at).order_by(GymSession.updated_at.desc()).limit(10)
    ).all()

    return SyncHealthResponse(
        users_with_multiple_active=[ActiveSessionViolation(user_id=u, active_sessions=c) for u, c in violations],
        open_sessions=open_sessions,
        weight_logs=weight_logs,
        receipts_by_status={status: count for status, count in receipts},
        last_sessions=[RecentSessionUpdate(user_id=u, updated_at=ts) for u, ts in recent],
    )
