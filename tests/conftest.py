from __future__ import annotations

import os
import sys
import tempfile
from pathlib import Path

import pytest

# Ensure project root on path
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# The engine is built at import time, so the database must be chosen before fitsync is imported
_DB_DIR = tempfile.mkdtemp(prefix="fitsync-tests-")
os.environ["APP_DATABASE_URL"] = f"sqlite:///{Path(_DB_DIR) / 'test.db'}"
os.environ["APP_API_TOKENS"] = "tok-alice:alice,tok-bob:bob,tok-owner:owner,tok-admin:admin"
os.environ["APP_ADMIN_USER_IDS"] = "admin"
os.environ["APP_QR_ROTATION_SCHEDULER_ENABLED"] = "false"

from fitsync.config import get_settings  # noqa: E402
from fitsync.database import Base, SessionLocal, engine  # noqa: E402
from fitsync.models import Gym  # noqa: E402
from fitsync.rate_limit import _window_counts as _rate_counts  # noqa: E402


@pytest.fixture(autouse=True)
def fresh_database():
    get_settings.cache_clear()  # type: ignore[attr-defined]
    _rate_counts.clear()
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    get_settings.cache_clear()  # type: ignore[attr-defined]


@pytest.fixture()
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def gym(db) -> Gym:
    g = Gym(id="g1", name="Iron Temple", owner_id="owner")
    db.add(g)
    db.commit()
    db.refresh(g)
    return g
