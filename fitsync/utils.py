from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Naive UTC timestamp; every datetime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def from_epoch_ms(value: int | float) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc).replace(tzinfo=None)


def to_epoch_ms(value: datetime) -> int:
    return int(value.replace(tzinfo=timezone.utc).timestamp() * 1000)


def now_ms() -> int:
    return to_epoch_ms(utcnow())


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def session_duration_minutes(entry_at: datetime, exit_at: datetime) -> int:
    # Sessions shorter than a minute still count as one minute
    elapsed_ms = (exit_at - entry_at).total_seconds() * 1000
    return max(1, round_half_up(elapsed_ms / 60000))


def is_valid_for_streak(duration_minutes: Optional[int], min_minutes: int) -> bool:
    return duration_minutes is not None and duration_minutes >= min_minutes
