from __future__ import annotations

"""
EMBED_SUMMARY: Core data models for gyms, gym sessions, weight logs, sync receipts, and QR key/token state.
EMBED_TAGS: models, sessions, sync, qr, audit, schema
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base
from .utils import utcnow


SESSION_END_REASONS = ("EXIT_QR", "INACTIVITY_TIMEOUT", "MANUAL")
VERIFICATION_STATUSES = ("PENDING", "VERIFIED", "REJECTED")
QR_TYPES = ("ENTRY", "EXIT", "PAYMENT")


class Gym(Base):
    __tablename__ = "gyms"
    """
    EMBED_SUMMARY: Gym listing referenced by sessions and QR codes; suspended gyms reject scans.
    EMBED_TAGS: gyms, owners, marketplace
    """

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    owner_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    suspended: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class GymSession(Base):
    __tablename__ = "gym_sessions"
    """
    EMBED_SUMMARY: A member's single gym visit, opened on entry and closed once on exit; versioned for sync.
    EMBED_TAGS: sessions, attendance, streaks, sync
    """

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    gym_id: Mapped[str] = mapped_column(String(64), ForeignKey("gyms.id"), nullable=False, index=True)
    entry_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    exit_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    duration_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    calories: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    valid_for_streak: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    ended_by: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    verification_status: Mapped[str] = mapped_column(String(16), default="PENDING", nullable=False)
    device_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    server_version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False, index=True)

    gym: Mapped[Gym] = relationship(Gym, lazy="joined")

    __table_args__ = (
        # At most one open session per user
        Index(
            "uq_gym_sessions_one_active_per_user",
            "user_id",
            unique=True,
            sqlite_where=text("exit_at IS NULL"),
            postgresql_where=text("exit_at IS NULL"),
        ),
        Index("ix_gym_sessions_user_updated", "user_id", "updated_at"),
    )


class WeightLog(Base):
    __tablename__ = "weight_logs"
    """
    EMBED_SUMMARY: Body-weight measurements created or edited offline and reconciled through sync.
    EMBED_TAGS: weight, fitness, sync
    """

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    value_kg: Mapped[float] = mapped_column(Float, nullable=False)
    logged_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    server_version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False, index=True)

    __table_args__ = (
        Index("ix_weight_logs_user_updated", "user_id", "updated_at"),
    )


class SyncMutationReceipt(Base):
    __tablename__ = "sync_mutation_receipts"
    """
    EMBED_SUMMARY: Durable idempotency record per (user, mutation id); replays return the stored outcome.
    EMBED_TAGS: sync, idempotency, receipts
    """

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    mutation_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    entity_type: Mapped[str] = mapped_column(String(16), nullable=False)
    entity_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    server_version: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class QrStatic(Base):
    __tablename__ = "qr_statics"
    """
    EMBED_SUMMARY: Per-gym, per-type QR state holding the current signing key version and revocation.
    EMBED_TAGS: qr, keys, rotation
    """

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    gym_id: Mapped[str] = mapped_column(String(64), ForeignKey("gyms.id", ondelete="CASCADE"), nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    current_key_version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    revoked_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("gym_id", "type", name="uq_qr_static_gym_type"),
    )


class QrKey(Base):
    __tablename__ = "qr_keys"
    """
    EMBED_SUMMARY: Signing key material per gym/type/version; old versions are retained after rotation.
    EMBED_TAGS: qr, keys, hmac
    """

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    gym_id: Mapped[str] = mapped_column(String(64), ForeignKey("gyms.id", ondelete="CASCADE"), nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    key: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("gym_id", "type", "version", name="uq_qr_key_gym_type_version"),
    )


class QrToken(Base):
    __tablename__ = "qr_tokens"
    """
    EMBED_SUMMARY: Single-use consumption ledger keyed by token hash; used_at is set at most once.
    EMBED_TAGS: qr, replay, tokens
    """

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    token_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    gym_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    nonce: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    device_binding_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    used_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class QrAuditLog(Base):
    __tablename__ = "qr_audit_logs"
    """
    EMBED_SUMMARY: Lightweight append-only log of QR key events and scans.
    EMBED_TAGS: qr, audit, scans
    """

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ts: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    gym_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    action: Mapped[str] = mapped_column(String(32), nullable=False)

    __table_args__ = (
        Index("ix_qr_audit_logs_ts", "ts"),
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"
    """
    EMBED_SUMMARY: Structured append-only audit trail (actor, gym, action, metadata) for investigations.
    EMBED_TAGS: audit, logs, compliance
    """

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ts: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    gym_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    meta: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)

    __table_args__ = (
        Index("ix_audit_logs_ts", "ts"),
        Index("ix_audit_logs_type_action", "type", "action"),
    )
