"""
FastAPI application factory.

Creates and configures the workflow deployer API application.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from workflow_deployer import __version__
from workflow_deployer.api.routes import router
from workflow_deployer.config import Settings, get_settings
from workflow_deployer.engine.client import EngineClient, HttpEngineClient

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    engine_client: Optional[EngineClient] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: Settings to use (cached environment settings by default)
        engine_client: Engine client to use instead of an HTTP client built at startup
    """
    settings = settings or get_settings()

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """
        Application lifespan manager.

        Opens the engine client on startup and closes it on shutdown.
        """
        logger.info("Starting Workflow Deployer...")

        owned_client: Optional[HttpEngineClient] = None
        if engine_client is None:
            owned_client = HttpEngineClient(settings.engine, settings.retry)
            app.state.engine_client = owned_client
            logger.info(f"Engine client configured for {settings.engine.api_url}")
        else:
            app.state.engine_client = engine_client
        app.state.settings = settings

        logger.info(f"Workflow Deployer started - Environment: {settings.environment.value}")

        yield

        logger.info("Shutting down Workflow Deployer...")
        if owned_client is not None:
            await owned_client.close()
        logger.info("Workflow Deployer shutdown complete")

    app = FastAPI(
        title=settings.app_name,
        description="Dependency-aware two-phase deployment of workflow definitions",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.is_development else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(router)

    # Root endpoint
    @app.get("/", tags=["root"])
    async def root():
        return {
            "name": settings.app_name,
            "version": __version__,
            "status": "running",
        }

    return app
