from __future__ import annotations

"""
EMBED_SUMMARY: Offline-first fitness sync endpoints: apply queued client mutations, return canonical changes, and page changes by serverVersion.
EMBED_TAGS: fitness, sync, sessions, weights, api
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from ..config import get_settings
from ..deps import get_db, ip_rate_limit, require_user
from ..observability import get_request_id
from ..rate_limit import enforce
from ..schemas import FitnessChangesResponse, SyncRequest, SyncResponse
from ..sessions import CHANGES_LIMIT
from ..sync_service import pull_changes, sync_fitness


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/fitness", tags=["fitness"], dependencies=[Depends(ip_rate_limit)])

DEFAULT_CHANGES_LIMIT = 100


def sync_rate_limit(user_id: str = Depends(require_user)) -> str:
    enforce(f"sync:{user_id}", get_settings().sync_rate_limit_per_minute)
    return user_id


@router.post("/sync", response_model=SyncResponse)
def fitness_sync(
    payload: SyncRequest,
    request: Request,
    user_id: str = Depends(sync_rate_limit),
    db: Session = Depends(get_db),
) -> SyncResponse:
    try:
        return sync_fitness(db, user_id, payload, request_id=get_request_id(request))
    except Exception:
        db.rollback()
        logger.exception("Fitness sync failed user=%s", user_id)
        raise HTTPException(status_code=500, detail="Sync failed")


def _parse_cursor(value: Optional[str]) -> int:
    try:
        parsed = int(float(value)) if value is not None else 0
    except (ValueError, OverflowError):
        return 0
    return max(0, parsed)


def _parse_limit(value: Optional[str]) -> int:
    try:
        parsed = int(float(value)) if value is not None else 0
    except (ValueError, OverflowError):
        return DEFAULT_CHANGES_LIMIT
    if parsed <= 0:
        return DEFAULT_CHANGES_LIMIT
    return min(CHANGES_LIMIT, parsed)


@router.get("/changes", response_model=FitnessChangesResponse)
def fitness_changes(
    user_id: str = Depends(require_user),
    server_version: Optional[str] = Query(default=None, alias="serverVersion"),
    cursor: Optional[str] = Query(default=None),
    session_cursor: Optional[str] = Query(default=None, alias="sessionCursor"),
    weight_cursor: Optional[str] = Query(default=None, alias="weightCursor"),
    limit: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
) -> FitnessChangesResponse:
    """Pull changes by serverVersion. Per-entity cursors override the shared one."""
    enforce(f"fitness-changes:{user_id}", get_settings().changes_rate_limit_per_minute)
    shared = _parse_cursor(server_version if server_version is not None else cursor)
    return pull_changes(
        db,
        user_id,
        session_cursor=shared if session_cursor is None else _parse_cursor(session_cursor),
        weight_cursor=shared if weight_cursor is None else _parse_cursor(weight_cursor),
        limit=_parse_limit(limit),
    )
