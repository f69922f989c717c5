from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from .config import get_settings
from .database import get_db_session
from .rate_limit import enforce


def get_db() -> Session:
    yield from get_db_session()


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or "unknown"
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


def ip_rate_limit(request: Request) -> None:
    settings = get_settings()
    enforce(f"ip:{client_ip(request)}", settings.rate_limit_per_minute)


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.lower().startswith("bearer "):
        return None
    return authorization.split(" ", 1)[1].strip() or None


def require_user(authorization: Optional[str] = Header(default=None)) -> str:
    """Resolve the bearer token to a user id."""
    token = _bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    user_id = get_settings().api_token_map.get(token)
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return user_id


def optional_user(authorization: Optional[str] = Header(default=None)) -> Optional[str]:
    token = _bearer_token(authorization)
    if not token:
        return None
    return get_settings().api_token_map.get(token)


def require_admin(user_id: str = Depends(require_user)) -> str:
    if user_id not in get_settings().admin_user_id_set:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    return user_id


def has_cron_secret(request: Request) -> bool:
    secret = get_settings().qr_rotation_cron_secret
    if not secret:
        return False
    token = _bearer_token(request.headers.get("authorization")) or request.headers.get("x-cron-secret") or ""
    return token == secret
