"""
Background QR key rotation.

One ``QrKeyRotationScheduler`` is built by the application lifespan and kept on
``app.state``; tests construct their own with a fake session factory or scheduler.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.orm import Session

from .config import Settings, get_settings
from .database import SessionLocal
from .observability import log_event
from .qr_service import SweepSummary, run_qr_key_rotation_sweep


logger = logging.getLogger(__name__)

JOB_ID = "qr_key_rotation_sweep"
MIN_INTERVAL_SECONDS = 60


class QrKeyRotationScheduler:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        session_factory: Callable[[], Session] = SessionLocal,
        scheduler: Optional[BackgroundScheduler] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.scheduler = scheduler or BackgroundScheduler()
        self.started = False

    @property
    def interval_seconds(self) -> int:
        return max(MIN_INTERVAL_SECONDS, self.settings.qr_rotation_scheduler_interval_seconds)

    def ensure_started(self) -> bool:
        """Start the periodic sweep once; repeated calls are no-ops. Returns whether it is running."""
        if self.started:
            return True
        if not self.settings.qr_rotation_scheduler_enabled:
            log_event("qr.key_rotation.scheduler_skipped", reason="disabled")
            return False
        if not self.settings.qr_rotation_system_actor_id:
            log_event("qr.key_rotation.scheduler_skipped", "warn", reason="missing_system_actor_id")
            return False

        self.scheduler.add_job(
            self.run_sweep,
            trigger="interval",
            seconds=self.interval_seconds,
            id=JOB_ID,
            replace_existing=True,
            next_run_time=datetime.now(),
        )
        self.scheduler.start()
        self.started = True
        log_event("qr.key_rotation.scheduler_started", intervalSeconds=self.interval_seconds)
        return True

    def run_sweep(self) -> Optional[SweepSummary]:
        actor_id = self.settings.qr_rotation_system_actor_id
        if not actor_id:
            return None
        db = self.session_factory()
        try:
            return run_qr_key_rotation_sweep(db, actor_id)
        except Exception as exc:
            db.rollback()
            log_event("qr.key_rotation.sweep_failed", "error", error=str(exc))
            logger.exception("QR key rotation sweep failed")
            return None
        finally:
            db.close()

    def stop(self) -> None:
        if self.started and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("QR key rotation scheduler stopped")
        self.started = False
