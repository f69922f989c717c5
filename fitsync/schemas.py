from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


MAX_SYNC_BATCH_SIZE = 100

EntityType = Literal["session", "weight"]
Operation = Literal["create", "update"]
SessionEndReason = Literal["EXIT_QR", "INACTIVITY_TIMEOUT", "MANUAL"]
VerificationStatus = Literal["PENDING", "VERIFIED", "REJECTED"]
QrType = Literal["ENTRY", "EXIT", "PAYMENT"]


class APIModel(BaseModel):
    """Wire models use camelCase on the API and snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# Canonical entities
class SessionOut(APIModel):
    id: str
    user_id: str
    gym_id: str
    gym_name: Optional[str] = None
    entry_at: datetime
    exit_at: Optional[datetime] = None
    duration_minutes: Optional[int] = None
    calories: Optional[int] = None
    valid_for_streak: bool
    ended_by: Optional[SessionEndReason] = None
    verification_status: VerificationStatus
    server_version: int
    created_at: datetime
    updated_at: datetime


class WeightOut(APIModel):
    id: str
    user_id: str
    value_kg: float
    logged_at: datetime
    server_version: int
    created_at: datetime
    updated_at: datetime


# Mutation payloads (validated per mutation, not per batch). Payloads are partial: updates write
# only the fields they carry. Duration and verification status are server-owned and not accepted.
class SessionMutationPayload(APIModel):
    id: str = Field(min_length=1, max_length=64)
    gym_id: Optional[str] = None
    entry_at: Optional[datetime] = None
    exit_at: Optional[datetime] = None
    calories: Optional[int] = Field(default=None, ge=0)
    ended_by: Optional[SessionEndReason] = None
    device_id: Optional[str] = None
    base_server_version: Optional[int] = Field(default=None, ge=0)
    updated_at: Optional[datetime] = None


class WeightMutationPayload(APIModel):
    id: str = Field(min_length=1, max_length=64)
    value_kg: Optional[float] = Field(default=None, gt=0, lt=1000)
    logged_at: Optional[datetime] = None
    base_server_version: Optional[int] = Field(default=None, ge=0)
    updated_at: Optional[datetime] = None


class SyncQueueItem(APIModel):
    id: str = Field(min_length=1, max_length=64)
    entity_type: EntityType
    operation: Operation
    payload: Dict[str, Any]
    created_at: Optional[datetime] = None
    retry_count: int = 0
    last_attempt_at: Optional[datetime] = None


class SyncRequest(APIModel):
    since: Optional[datetime] = None
    mutations: List[SyncQueueItem] = Field(default_factory=list)

    @field_validator("mutations")
    @classmethod
    def mutations_not_too_large(cls, v: List[SyncQueueItem]) -> List[SyncQueueItem]:
        if len(v) > MAX_SYNC_BATCH_SIZE:
            raise ValueError(f"Batch too large: at most {MAX_SYNC_BATCH_SIZE} mutations per request")
        return v


# Per-mutation results: one variant per status, each with only its valid fields
class AppliedResult(APIModel):
    id: str
    entity_type: EntityType
    status: Literal["applied"] = "applied"
    entity_id: str
    server_version: int
    canonical_session: Optional[SessionOut] = None
    canonical_weight: Optional[WeightOut] = None


class SkippedResult(APIModel):
    id: str
    entity_type: EntityType
    status: Literal["skipped"] = "skipped"
    entity_id: str
    server_version: int
    canonical_session: Optional[SessionOut] = None
    canonical_weight: Optional[WeightOut] = None


class ConflictResult(APIModel):
    id: str
    entity_type: EntityType
    status: Literal["conflict"] = "conflict"
    entity_id: str
    server_version: int
    error: str
    canonical_session: Optional[SessionOut] = None
    canonical_weight: Optional[WeightOut] = None


class FailedResult(APIModel):
    id: str
    entity_type: EntityType
    status: Literal["failed"] = "failed"
    entity_id: Optional[str] = None
    error: str


SyncMutationResult = Annotated[
    Union[AppliedResult, SkippedResult, ConflictResult, FailedResult],
    Field(discriminator="status"),
]


class SyncChanges(APIModel):
    sessions: List[SessionOut] = Field(default_factory=list)
    weights: List[WeightOut] = Field(default_factory=list)


class SyncResponse(APIModel):
    ok: bool = True
    server_time: datetime
    results: List[SyncMutationResult]
    active_session: Optional[SessionOut] = None
    changes: SyncChanges


class ChangesCursor(APIModel):
    server_version: int
    session_cursor: int
    weight_cursor: int


class ChangesHasMore(APIModel):
    sessions: bool
    weights: bool


class FitnessChangesResponse(APIModel):
    ok: bool = True
    server_time: datetime
    cursor: ChangesCursor
    has_more: ChangesHasMore
    active_session: Optional[SessionOut] = None
    changes: SyncChanges


# QR
class SignedQrPayload(BaseModel):
    """Content embedded in a displayed QR code; field names are part of the signed wire format."""

    gymId: str
    type: QrType
    exp: int
    nonce: str
    v: int = Field(ge=1)
    deviceBinding: Optional[str] = None
    sig: str


class QrVerifyRequest(APIModel):
    token: str = Field(min_length=1, max_length=4096)
    gym_id: Optional[str] = None
    type: Optional[str] = None
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    device_id: Optional[str] = Field(default=None, max_length=128)
    session_id: Optional[str] = Field(default=None, max_length=64)
    entry_at: Optional[int] = Field(default=None, ge=0)
    verified_at: Optional[int] = Field(default=None, ge=0)


class QrVerifyResponse(APIModel):
    ok: bool = True
    session: Optional[SessionOut] = None


class QrIssueRequest(APIModel):
    gym_id: str
    type: QrType
    ttl_seconds: Optional[int] = None
    device_id: Optional[str] = None


class QrIssueResponse(APIModel):
    ok: bool = True
    token: str
    exp: int
    key_version: int
    deep_link: str


class QrRotateRequest(APIModel):
    gym_id: str
    type: QrType
    revoke: bool = False


class QrRotateResponse(APIModel):
    ok: bool = True
    gym_id: str
    type: QrType
    current_key_version: int
    revoked: bool


class KeyRotationSweepRequest(APIModel):
    gym_id: Optional[str] = None
    force: bool = False


class KeyRotationSweepResponse(APIModel):
    ok: bool = True
    total: int
    rotated: int
    duration_ms: int


# Admin
class ActiveSessionViolation(APIModel):
    user_id: str
    active_sessions: int


class RecentSessionUpdate(APIModel):
    user_id: str
    updated_at: datetime


class SyncHealthResponse(APIModel):
    users_with_multiple_active: List[ActiveSessionViolation]
    open_sessions: int
    weight_logs: int
    receipts_by_status: Dict[str, int]
    last_sessions: List[RecentSessionUpdate]
