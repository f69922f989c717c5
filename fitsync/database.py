from __future__ import annotations

from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import get_settings


settings = get_settings()

engine_kwargs = {"future": True, "pool_pre_ping": True}
connect_args = {}
is_sqlite = settings.database_url.startswith("sqlite")
if is_sqlite:
    # Requests run in the threadpool; concurrent scans wait on the write lock instead of failing
    connect_args = {"check_same_thread": False, "timeout": 15}

engine = create_engine(settings.database_url, connect_args=connect_args, **engine_kwargs)

if is_sqlite:

    @event.listens_for(engine, "connect")
    def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

Base = declarative_base()


def get_db_session():
    """Yield a session per request; the caller owns commit/rollback."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
