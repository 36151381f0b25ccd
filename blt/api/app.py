"""FastAPI application serving the BLT endpoints."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from blt import __version__
from blt.api.routers.health import router as health_router
from blt.api.routers.studies import router as studies_router
from blt.archive import ArchiveClient
from blt.config import ServiceConfig
from blt.registry import StudyRegistry
from blt.runner import build_pipeline
from blt.utils.logging import get_logger

logger = get_logger("api.app")


def create_app(
    config: Optional[ServiceConfig] = None,
    client: Optional[ArchiveClient] = None,
    registry: Optional[StudyRegistry] = None,
    start_poller: bool = True,
) -> FastAPI:
    """
    Create the application.

    The pipeline is built when the application starts, so the archive
    client and the poller task live on the server's event loop.

    Args:
        config: Service configuration (defaults when None)
        client: Archive client to use instead of an OrthancArchiveClient
        registry: Registry to use instead of one built from config
        start_poller: Run the job poller in the background
    """
    config = config or ServiceConfig()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        pipeline = build_pipeline(config, client=client, registry=registry)
        app.state.pipeline = pipeline
        if start_poller:
            pipeline.poller.start()
        logger.info(
            "service_started",
            archive_url=config.archive.url,
            poller=start_poller,
            requests=len(pipeline.registry),
        )
        try:
            yield
        finally:
            await pipeline.close()
            logger.info("service_stopped")

    app = FastAPI(title="BLT study transfer", version=__version__, lifespan=lifespan)

    # -------------------------------------------------
    # Routers
    # -------------------------------------------------
    app.include_router(health_router, prefix="/health", tags=["health"])
    app.include_router(studies_router, prefix="/blt", tags=["blt"])

    return app
