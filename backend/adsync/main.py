"""FastAPI application entrypoint.

Includes the Meta sync router and exposes a healthcheck endpoint.

USAGE:
    uvicorn adsync.main:app --reload
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from . import schemas
from .routers import meta_sync as meta_sync_router
from .telemetry import init_sentry

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize Sentry and create missing tables on startup."""
    init_sentry()

    from .database import init_db
    init_db()
    logger.info("[STARTUP] Database tables ready")
    yield


def create_app() -> FastAPI:
    app = FastAPI(
        title="adsync",
        description="Meta Ads performance synchronization API",
        lifespan=lifespan,
    )

    app.include_router(meta_sync_router.router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    def health():
        return schemas.HealthResponse(status="ok")

    return app


app = create_app()
