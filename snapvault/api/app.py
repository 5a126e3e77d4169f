from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from snapvault.api.routes.backups import router as backups_router
from snapvault.api.routes.health import router as health_router
from snapvault.api.routes.history import router as history_router
from snapvault.api.routes.restores import router as restores_router
from snapvault.core.config import get_settings
from snapvault.core.logging import configure_logging
from snapvault.db.init_db import initialize_database


@asynccontextmanager
async def lifespan(_app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    initialize_database()
    yield


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
    app.include_router(health_router, prefix="/api/v1")
    app.include_router(backups_router, prefix="/api/v1")
    app.include_router(restores_router, prefix="/api/v1")
    app.include_router(history_router, prefix="/api/v1")
    return app
