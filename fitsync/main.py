from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import get_settings
from .database import Base, engine
from .observability import RequestTimingLoggingMiddleware, add_exception_handlers
from .routers import admin as admin_router
from .routers import fitness as fitness_router
from .routers import health
from .routers import qr as qr_router
from .scheduler import QrKeyRotationScheduler

# Ensure schema is present when the module is imported (helps tests using TestClient without lifespan)
Base.metadata.create_all(bind=engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    rotation = QrKeyRotationScheduler()
    rotation.ensure_started()
    app.state.qr_rotation_scheduler = rotation
    try:
        yield
    finally:
        rotation.stop()


def create_app() -> FastAPI:
    settings = get_settings()
    application = FastAPI(title="FitSync API", version="0.1.0", lifespan=lifespan)

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.add_middleware(RequestTimingLoggingMiddleware)

    add_exception_handlers(application)

    # Routers
    application.include_router(health.router)
    application.include_router(fitness_router.router)
    application.include_router(qr_router.router)
    application.include_router(admin_router.router)

    return application


app = create_app()
