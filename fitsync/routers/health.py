from __future__ import annotations

from fastapi import APIRouter

from ..config import get_settings


router = APIRouter(tags=["health"])


@router.get("/health")
def health() -> dict:
    return {"ok": True, "status": "ok", "environment": get_settings().environment}
