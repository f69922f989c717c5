from __future__ import annotations

"""
EMBED_SUMMARY: Signed QR payload codec: mint, encode/decode (base64url JSON), HMAC verification, hashing.
EMBED_TAGS: qr, hmac, tokens, codec
"""

import base64
import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlencode

from pydantic import ValidationError

from .config import get_settings
from .schemas import SignedQrPayload
from .utils import now_ms


MIN_TTL_SECONDS = 30
MAX_TTL_SECONDS = 60
DEFAULT_TTL_SECONDS = 45


@dataclass(frozen=True)
class VerifyOutcome:
    ok: bool
    reason: Optional[str] = None


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def clamp_ttl(ttl_seconds: Optional[int]) -> int:
    ttl = DEFAULT_TTL_SECONDS if ttl_seconds is None else ttl_seconds
    return max(MIN_TTL_SECONDS, min(MAX_TTL_SECONDS, ttl))


def _signing_key(key_material: str) -> bytes:
    # Per-key secret derived from the process master key so DB rows alone cannot forge tokens
    master = get_settings().qr_master_key.encode("utf-8")
    return hmac.new(master, key_material.encode("utf-8"), hashlib.sha256).digest()


def _signature(gym_id: str, type: str, exp: int, nonce: str, v: int, device_binding: Optional[str], key_material: str) -> str:
    body = f"{gym_id}.{type}.{exp}.{nonce}.{v}.{device_binding or ''}"
    digest = hmac.new(_signing_key(key_material), body.encode("utf-8"), hashlib.sha256).digest()
    return _b64url_encode(digest)


def create_signed_payload(
    gym_id: str,
    type: str,
    version: int,
    key_material: str,
    ttl_seconds: Optional[int] = None,
    device_binding: Optional[str] = None,
    now: Optional[int] = None,
) -> SignedQrPayload:
    issued_at = now_ms() if now is None else now
    exp = issued_at + clamp_ttl(ttl_seconds) * 1000
    nonce = secrets.token_hex(16)
    sig = _signature(gym_id, type, exp, nonce, version, device_binding, key_material)
    return SignedQrPayload(
        gymId=gym_id, type=type, exp=exp, nonce=nonce, v=version, deviceBinding=device_binding, sig=sig
    )


def encode_signed_payload(payload: SignedQrPayload) -> str:
    raw = json.dumps(payload.model_dump(exclude_none=True), separators=(",", ":"))
    return _b64url_encode(raw.encode("utf-8"))


def decode_signed_payload(token: str) -> Optional[SignedQrPayload]:
    """Return the embedded payload, or None when the token is not a well-formed signed payload."""
    try:
        raw = _b64url_decode(token.strip())
        data = json.loads(raw.decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(data, dict):
        return None
    try:
        return SignedQrPayload.model_validate(data)
    except ValidationError:
        return None


def verify_signed_payload(payload: SignedQrPayload, key_material: str, now: Optional[int] = None) -> VerifyOutcome:
    current = now_ms() if now is None else now
    if payload.exp < current:
        return VerifyOutcome(ok=False, reason="Token expired")
    expected = _signature(
        payload.gymId, payload.type, payload.exp, payload.nonce, payload.v, payload.deviceBinding, key_material
    )
    if not hmac.compare_digest(expected, payload.sig):
        return VerifyOutcome(ok=False, reason="Invalid signature")
    return VerifyOutcome(ok=True)


def hash_qr_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def hash_device_binding(device_id: str) -> str:
    return hashlib.sha256(device_id.encode("utf-8")).hexdigest()


def build_scan_deep_link(payload: SignedQrPayload) -> str:
    params = urlencode({"gymId": payload.gymId, "type": payload.type, "token": encode_signed_payload(payload)})
    return f"fitdex://scan?{params}"
