from __future__ import annotations

"""
EMBED_SUMMARY: Append-only audit writers: lightweight QR scan/key log and structured audit trail.
EMBED_TAGS: audit, logs, qr
"""

from typing import Any, Optional

from sqlalchemy.orm import Session

from .models import AuditLog, QrAuditLog


def write_audit_log(
    db: Session,
    actor_id: str,
    type: str,
    action: str,
    gym_id: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> AuditLog:
    """Stage an audit row in the caller's transaction; committing is the caller's job."""
    entry = AuditLog(actor_id=actor_id, gym_id=gym_id, type=type, action=action, meta=metadata)
    db.add(entry)
    return entry


def write_qr_audit_log(db: Session, actor_id: str, gym_id: str, action: str, type: str = "QR") -> QrAuditLog:
    entry = QrAuditLog(actor_id=actor_id, gym_id=gym_id, type=type, action=action)
    db.add(entry)
    return entry
