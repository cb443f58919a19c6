"""Reference sync server: a FastAPI app speaking the entity sync protocol."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI

from schoolsync import __version__
from schoolsync.api.entities import router as entities_router
from schoolsync.api.health import router as health_router
from schoolsync.config import Settings
from schoolsync.logging_config import configure_logging
from schoolsync.services.entity_registry import EntityRegistry

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Application lifespan: startup and shutdown."""
    settings: Settings = app.state.settings
    configure_logging(settings.debug)
    logger.info("Starting schoolsync reference server (debug=%s)", settings.debug)
    yield
    logger.info("Shutting down schoolsync reference server")


def create_app(settings: Settings | None = None, registry: EntityRegistry | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    if settings is None:
        settings = Settings()

    app = FastAPI(
        title="schoolsync",
        description="Reference server for the offline-first sync protocol",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url=None,
        openapi_url="/openapi.json" if settings.debug else None,
    )
    app.state.settings = settings
    app.state.registry = registry if registry is not None else EntityRegistry()

    app.include_router(health_router)
    app.include_router(entities_router)
    return app
