from __future__ import annotations

"""
EMBED_SUMMARY: Optional external validation hooks for QR scans (GPS geofence, device binding) plus distance helper.
EMBED_TAGS: qr, hooks, gps, geofence, httpx
"""

import logging
import math
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from .config import get_settings


logger = logging.getLogger(__name__)

EARTH_RADIUS_METERS = 6371000
MAX_GPS_RADIUS_METERS = 150


@dataclass(frozen=True)
class HookResult:
    ok: bool
    reason: Optional[str] = None


def distance_meters(a_lat: float, a_lng: float, b_lat: float, b_lng: float) -> float:
    """Great-circle distance (haversine)."""
    d_lat = math.radians(b_lat - a_lat)
    d_lng = math.radians(b_lng - a_lng)
    lat1 = math.radians(a_lat)
    lat2 = math.radians(b_lat)
    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    return 2 * EARTH_RADIUS_METERS * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def _call_hook(endpoint: str, payload: dict[str, Any]) -> HookResult:
    timeout = get_settings().qr_hook_timeout_seconds
    try:
        with httpx.Client(timeout=timeout) as client:
            resp = client.post(endpoint, json=payload)
    except httpx.HTTPError as exc:
        # Unreachable hook does not block a scan
        logger.warning("QR hook unavailable endpoint=%s: %s", endpoint, exc)
        return HookResult(ok=True, reason="Hook unavailable")
    if resp.status_code >= 400:
        return HookResult(ok=False, reason=f"Hook rejected ({resp.status_code})")
    try:
        body = resp.json()
    except ValueError:
        body = {}
    if isinstance(body, dict) and body.get("ok") is False:
        return HookResult(ok=False, reason=body.get("reason") or "Hook rejected")
    return HookResult(ok=True)


def validate_gps(gym_id: str, user_id: str, type: str, latitude: float, longitude: float) -> HookResult:
    endpoint = get_settings().qr_gps_hook_url
    if not endpoint:
        return HookResult(ok=True, reason="GPS hook disabled")
    return _call_hook(
        endpoint, {"gymId": gym_id, "userId": user_id, "type": type, "latitude": latitude, "longitude": longitude}
    )


def validate_device_binding(gym_id: str, user_id: str, type: str, device_id: Optional[str], token_hash: str) -> HookResult:
    endpoint = get_settings().qr_device_binding_hook_url
    if not endpoint:
        return HookResult(ok=True, reason="Device-binding hook disabled")
    return _call_hook(
        endpoint, {"gymId": gym_id, "userId": user_id, "type": type, "deviceId": device_id, "tokenHash": token_hash}
    )
