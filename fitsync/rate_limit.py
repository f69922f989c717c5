from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Tuple

from fastapi import HTTPException, status

from .config import get_settings


_window_counts: dict[Tuple[str, int], int] = {}


@dataclass(frozen=True)
class RateLimitResult:
    success: bool
    limit: int
    remaining: int
    reset: int  # epoch seconds when the current window closes


def limit(key: str, max_per_minute: int) -> RateLimitResult:
    """Fixed one-minute window counter keyed by an arbitrary string."""
    settings = get_settings()
    minute = int(time.time() // 60)
    reset = (minute + 1) * 60
    if not settings.rate_limit_enabled:
        return RateLimitResult(success=True, limit=max_per_minute, remaining=max_per_minute, reset=reset)
    window_key = (key, minute)
    count = _window_counts.get(window_key, 0) + 1
    _window_counts[window_key] = count
    remaining = max(0, max_per_minute - count)
    return RateLimitResult(success=count <= max_per_minute, limit=max_per_minute, remaining=remaining, reset=reset)


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset),
    }


def enforce(key: str, max_per_minute: int) -> RateLimitResult:
    result = limit(key, max_per_minute)
    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many requests",
            headers=rate_limit_headers(result),
        )
    return result
