"""FastAPI application for the knowledge-base service.

This module creates and configures the main FastAPI application,
including routers, middleware, CORS settings, and lifecycle events.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import get_settings
from .dependencies import init_dependencies, shutdown_dependencies
from .middleware import RequestLoggingMiddleware, TimingMiddleware
from .routers import health_router, projects_router, webhooks_router

logger = structlog.get_logger(__name__)


def configure_logging(log_level: str, debug: bool = False) -> None:
    """Configure structlog for the API process.

    Args:
        log_level: Minimum level name, e.g. ``INFO``.
        debug: Render logs for the console instead of as JSON.
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    renderer = structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager.

    Initializes the store and the pipeline on startup and releases them on
    shutdown.

    Args:
        app: The FastAPI application instance.

    Yields:
        None after startup is complete.
    """
    # Startup
    settings = get_settings()
    logger.info(
        "api_starting",
        version=settings.app_version,
        debug=settings.debug,
        storage_root=settings.storage_root,
    )

    try:
        await init_dependencies(settings)
        logger.info("dependencies_initialized")
    except Exception as e:
        logger.error("dependencies_init_failed", error=str(e))
        raise

    yield

    # Shutdown
    logger.info("api_shutting_down")
    await shutdown_dependencies()
    logger.info("shutdown_complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance.
    """
    settings = get_settings()
    configure_logging(settings.log_level, settings.debug)

    app = FastAPI(
        title="Knowledge Base Builder API",
        description=(
            "Registers Git repositories, keeps their working copies in sync and "
            "builds validated knowledge-base bundles of files and chunks on "
            "manual or webhook triggers."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Add custom middleware
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(TimingMiddleware)

    # Health and webhook routes are at root level
    app.include_router(health_router)
    app.include_router(webhooks_router)

    # Project routes are prefixed with /api/v1
    app.include_router(projects_router, prefix=settings.api_prefix)

    # Root endpoint
    @app.get("/", include_in_schema=False)
    async def root() -> JSONResponse:
        """Root endpoint returning API information."""
        return JSONResponse(
            content={
                "name": settings.app_name,
                "version": settings.app_version,
                "docs": "/docs",
                "health": "/health",
            }
        )

    return app


# Create the application instance
app = create_app()
