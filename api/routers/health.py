"""Health check endpoints.

This module provides endpoints for monitoring application health,
readiness and liveness.
"""

import asyncio
from enum import Enum
from pathlib import Path

import structlog
from fastapi import APIRouter, status
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from api.dependencies import SettingsDep, StoreDep

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])


class HealthStatus(str, Enum):
    """Health check status values."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class HealthResponse(BaseModel):
    """Response model for the basic health check."""

    status: HealthStatus = Field(..., description="Health status")
    message: str | None = Field(None, description="Optional status message")


class ReadinessResponse(BaseModel):
    """Response model for the readiness check.

    Attributes:
        status: Overall readiness status.
        checks: Individual check results.
    """

    status: HealthStatus = Field(..., description="Overall readiness status")
    checks: dict[str, dict[str, str]] = Field(
        default_factory=dict,
        description="Individual check results",
    )


@router.get(
    "",
    response_model=HealthResponse,
    summary="Basic health check",
    description="Returns basic health status of the API.",
)
async def health_check() -> HealthResponse:
    """Basic health check endpoint.

    Does not check the store or the storage directory.
    """
    return HealthResponse(status=HealthStatus.HEALTHY, message="Knowledge-base API is running")


@router.get(
    "/ready",
    response_model=ReadinessResponse,
    summary="Readiness check",
    description="Checks the state store and the storage directory.",
    responses={
        status.HTTP_200_OK: {"description": "Application readiness report"},
    },
)
async def readiness_check(settings: SettingsDep, store: StoreDep) -> ReadinessResponse:
    """Readiness check endpoint.

    Args:
        settings: Application settings.
        store: Project store whose database is pinged.

    Returns:
        ReadinessResponse with check results.
    """
    checks: dict[str, dict[str, str]] = {}
    overall_healthy = True

    def _ping() -> None:
        with store.database.session() as session:
            session.execute(text("SELECT 1"))

    try:
        await asyncio.get_event_loop().run_in_executor(None, _ping)
        checks["database"] = {"status": "healthy", "dialect": store.database.engine.dialect.name}
    except SQLAlchemyError as e:
        logger.warning("database_health_check_failed", error=str(e))
        checks["database"] = {"status": "unhealthy", "message": str(e)}
        overall_healthy = False

    storage = Path(settings.storage_root)
    if storage.exists() and not storage.is_dir():
        checks["storage"] = {"status": "unhealthy", "message": "Storage root is not a directory"}
        overall_healthy = False
    else:
        checks["storage"] = {"status": "healthy", "path": str(storage)}

    return ReadinessResponse(
        status=HealthStatus.HEALTHY if overall_healthy else HealthStatus.UNHEALTHY,
        checks=checks,
    )


@router.get(
    "/live",
    response_model=HealthResponse,
    summary="Liveness check",
    description="Checks if the application process is alive.",
)
async def liveness_check() -> HealthResponse:
    return HealthResponse(status=HealthStatus.HEALTHY)
