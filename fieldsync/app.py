"""FastAPI application for the inspection mirror."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from .assets.photostore import PhotoStore
from .config import settings
from .errors import (
    FilterError,
    JobNotFoundError,
    MirrorError,
    OverlayFieldError,
    ScopeBusyError,
)
from .remote.client import FeatureServiceClient, FeatureServiceConfig
from .sync.jobs import SyncJobManager
from .sync.orchestrator import SyncOrchestrator
from .sync.overlay import EditOverlay

logger = logging.getLogger(__name__)

_ERROR_STATUS = {
    FilterError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    OverlayFieldError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ScopeBusyError: status.HTTP_409_CONFLICT,
    JobNotFoundError: status.HTTP_404_NOT_FOUND,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(level=settings.log_level)
    from .database import async_session_factory, engine

    # Auto-create tables for SQLite (local dev); other databases use Alembic migrations
    if "sqlite" in settings.database_url:
        from .models import Base
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    remote = FeatureServiceClient(FeatureServiceConfig.from_settings(settings))
    photo_store = PhotoStore(settings.photo_dir)
    orchestrator = SyncOrchestrator.from_settings(remote, async_session_factory, settings, photo_store)
    app.state.photo_store = photo_store
    app.state.overlay = EditOverlay(async_session_factory, settings.overlay_fields)
    app.state.jobs = SyncJobManager(orchestrator, ttl_hours=settings.sync_job_ttl_hours)
    if not settings.remote_configured:
        logger.warning("FIELDSYNC_FEATURE_SERVICE_URL is not set; sync jobs will fail until it is")
    try:
        yield
    finally:
        await app.state.jobs.shutdown()
        await remote.aclose()


app = FastAPI(title=settings.app_title, lifespan=lifespan)


@app.exception_handler(MirrorError)
async def mirror_error_handler(request: Request, exc: MirrorError):
    status_code = next(
        (code for cls, code in _ERROR_STATUS.items() if isinstance(exc, cls)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    if status_code >= 500:
        logger.error("Unhandled mirror error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=status_code, content={"detail": str(exc), "kind": exc.kind})


# Import and register routers
from .routers import health, records, sync  # noqa: E402

app.include_router(records.router)
app.include_router(sync.router)
app.include_router(health.router)
