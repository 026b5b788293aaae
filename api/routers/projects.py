"""Project management endpoints.

This module provides endpoints for registering repositories, listing and
removing them, and triggering and listing scans.
"""

import asyncio
from collections.abc import Callable
from typing import Any, TypeVar
from urllib.parse import urlsplit

import structlog
from fastapi import APIRouter, BackgroundTasks, HTTPException, status
from pydantic import BaseModel, Field, field_validator

from api.dependencies import OrchestratorDep, StoreDep
from core.errors import ProjectNotFoundError, ScanAlreadyRunningError
from core.models import ProjectRecord, ProjectStatus, ScanRecord, ScanTrigger
from core.pipeline import SKIP_ALREADY_RUNNING, PipelineOrchestrator
from core.store import ProjectStore

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/projects", tags=["Projects"])

T = TypeVar("T")


class CreateProjectRequest(BaseModel):
    """Request model for registering a repository.

    Attributes:
        name: Display name.
        remote_url: Clone URL without credentials, or a local path.
        repo_full_name: ``owner/name`` used to route webhooks.
        default_branch: Default branch of the remote.
        selected_branch: Branch to track instead of the default one.
    """

    name: str = Field(..., min_length=1, max_length=255, description="Display name")
    remote_url: str = Field(..., min_length=1, description="Credential-free clone URL")
    repo_full_name: str | None = Field(None, description="owner/name on GitHub")
    default_branch: str = Field(default="main", min_length=1, description="Default branch")
    selected_branch: str | None = Field(None, description="Tracked branch override")

    @field_validator("remote_url")
    @classmethod
    def _reject_credentials(cls, value: str) -> str:
        parts = urlsplit(value)
        if parts.scheme in ("http", "https") and "@" in parts.netloc:
            raise ValueError("remote_url must not contain credentials")
        return value


class ProjectListResponse(BaseModel):
    """Response model for listing projects."""

    projects: list[ProjectRecord] = Field(..., description="Registered projects")
    total: int = Field(..., description="Total count")


class TriggerScanRequest(BaseModel):
    """Request model for a manual scan trigger."""

    force_full: bool = Field(default=False, description="Skip the incremental strategy")


class TriggerScanResponse(BaseModel):
    """Response model for a manual scan trigger.

    Attributes:
        project_id: Project the scan was requested for.
        accepted: Whether a scan was started.
        reason: Why the trigger was not accepted.
        message: Status message.
    """

    project_id: str = Field(..., description="Project ID")
    accepted: bool = Field(..., description="Scan started")
    reason: str | None = Field(None, description="Skip reason")
    message: str = Field(..., description="Status message")


class ScanListResponse(BaseModel):
    """Response model for scan history."""

    scans: list[ScanRecord] = Field(..., description="Scans, newest first")
    total: int = Field(..., description="Number of returned scans")


class DeleteResponse(BaseModel):
    """Response model for project deletion."""

    project_id: str = Field(..., description="Project ID")
    deleted: bool = Field(..., description="Deletion success")
    message: str = Field(..., description="Status message")


async def _in_executor(func: Callable[..., T], *args: Any) -> T:
    return await asyncio.get_event_loop().run_in_executor(None, func, *args)


async def _get_project_or_404(store: ProjectStore, project_id: str) -> ProjectRecord:
    try:
        return await _in_executor(store.get_project, project_id)
    except ProjectNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Project '{project_id}' not found",
        ) from e


async def _run_manual_scan(
    orchestrator: PipelineOrchestrator, project_id: str, force_full: bool
) -> None:
    outcome = await orchestrator.run_scan(project_id, ScanTrigger.MANUAL, force_full=force_full)
    logger.info(
        "manual_scan_finished",
        project_id=project_id,
        status=outcome.status,
        reason=outcome.reason,
        error=outcome.error,
    )


@router.post(
    "",
    response_model=ProjectRecord,
    status_code=status.HTTP_201_CREATED,
    summary="Register project",
    description="Register a repository. No scan is started.",
)
async def create_project(request: CreateProjectRequest, store: StoreDep) -> ProjectRecord:
    """Register a repository as a project.

    Args:
        request: Project creation request.
        store: Project store.

    Returns:
        The created project.
    """
    project = await _in_executor(
        lambda: store.create_project(
            request.name,
            request.remote_url,
            repo_full_name=request.repo_full_name,
            default_branch=request.default_branch,
            selected_branch=request.selected_branch,
        ),
    )
    logger.info("project_registered", project_id=project.id, name=project.name)
    return project


@router.get(
    "",
    response_model=ProjectListResponse,
    summary="List projects",
)
async def list_projects(store: StoreDep) -> ProjectListResponse:
    projects = await _in_executor(store.list_projects)
    return ProjectListResponse(projects=projects, total=len(projects))


@router.get(
    "/{project_id}",
    response_model=ProjectRecord,
    summary="Get project",
    description="Get a project with its status and scan progress.",
    responses={status.HTTP_404_NOT_FOUND: {"description": "Project not found"}},
)
async def get_project(project_id: str, store: StoreDep) -> ProjectRecord:
    return await _get_project_or_404(store, project_id)


@router.delete(
    "/{project_id}",
    response_model=DeleteResponse,
    summary="Delete project",
    description="Delete a project, its scan history and its storage directory.",
    responses={
        status.HTTP_404_NOT_FOUND: {"description": "Project not found"},
        status.HTTP_409_CONFLICT: {"description": "Project is scanning"},
    },
)
async def delete_project(
    project_id: str, store: StoreDep, orchestrator: OrchestratorDep
) -> DeleteResponse:
    """Delete a project.

    Raises:
        HTTPException: 404 if the project does not exist, 409 while it scans.
    """
    try:
        project = await _in_executor(store.delete_project, project_id)
    except ProjectNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Project '{project_id}' not found",
        ) from e
    except ScanAlreadyRunningError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message) from e

    await orchestrator.sync.remove_workspace(project)
    return DeleteResponse(project_id=project_id, deleted=True, message="Project deleted")


@router.post(
    "/{project_id}/scans",
    response_model=TriggerScanResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Trigger scan",
    description="Start a manual scan in the background.",
    responses={status.HTTP_404_NOT_FOUND: {"description": "Project not found"}},
)
async def trigger_scan(
    project_id: str,
    store: StoreDep,
    orchestrator: OrchestratorDep,
    background_tasks: BackgroundTasks,
    request: TriggerScanRequest | None = None,
) -> TriggerScanResponse:
    """Trigger a manual scan.

    A project that is already scanning is not queued again; the response
    reports the trigger as not accepted.

    Args:
        project_id: Project to scan.
        store: Project store.
        orchestrator: Scan orchestrator.
        background_tasks: FastAPI background task runner.
        request: Optional trigger options.

    Returns:
        TriggerScanResponse describing the start decision.
    """
    project = await _get_project_or_404(store, project_id)

    if project.status is ProjectStatus.SCANNING:
        return TriggerScanResponse(
            project_id=project_id,
            accepted=False,
            reason=SKIP_ALREADY_RUNNING,
            message="A scan is already running",
        )

    force_full = request.force_full if request else False
    background_tasks.add_task(_run_manual_scan, orchestrator, project_id, force_full)
    logger.info("manual_scan_queued", project_id=project_id, force_full=force_full)

    return TriggerScanResponse(project_id=project_id, accepted=True, message="Scan started")


@router.get(
    "/{project_id}/scans",
    response_model=ScanListResponse,
    summary="List scans",
    responses={status.HTTP_404_NOT_FOUND: {"description": "Project not found"}},
)
async def list_scans(project_id: str, store: StoreDep, limit: int = 50) -> ScanListResponse:
    await _get_project_or_404(store, project_id)
    scans = await _in_executor(lambda: store.list_scans(project_id, limit=limit))
    return ScanListResponse(scans=scans, total=len(scans))


@router.get(
    "/{project_id}/scans/{scan_id}",
    response_model=ScanRecord,
    summary="Get scan",
    responses={status.HTTP_404_NOT_FOUND: {"description": "Scan not found"}},
)
async def get_scan(project_id: str, scan_id: int, store: StoreDep) -> ScanRecord:
    try:
        scan = await _in_executor(store.get_scan, scan_id)
    except LookupError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Scan not found") from e
    if scan.project_id != project_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Scan not found")
    return scan
