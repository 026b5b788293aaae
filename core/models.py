"""Shared project and scan records.

These models are what the store hands out and what every pipeline stage
receives. They are plain pydantic snapshots; the store is the only place
that mutates the underlying rows.
"""

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

SCANNER_VERSION = "2.1.0"


class ProjectStatus(str, Enum):
    """Pipeline status of a project."""

    PENDING = "pending"
    SCANNING = "scanning"
    READY = "ready"
    FAILED = "failed"


class ScanStatus(str, Enum):
    """Status of a single scan."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ScanTrigger(str, Enum):
    """What started a scan."""

    MANUAL = "manual"
    WEBHOOK = "webhook"


class ProjectRecord(BaseModel):
    """Snapshot of a tracked repository.

    Attributes:
        id: Project identifier.
        name: Display name.
        repo_full_name: ``owner/name`` on the hosting service, if known.
        remote_url: Credential-free clone URL (or local path).
        default_branch: Default branch of the remote.
        selected_branch: Branch to track, None to use the default branch.
        last_commit_sha: Revision of the last successful scan.
        total_files: Files in the current manifest.
        total_lines: Lines in the current manifest.
        total_bytes: Bytes in the current manifest.
        status: Pipeline status.
        current_stage: Stage of the running scan.
        stage_percent: Overall progress of the running scan.
        last_error: Message of the last terminal failure.
        exclusion_rules_version: Rule version of the current manifest.
        last_kb_scan_id: Scan id of the newest knowledge-base bundle.
        stack: Detected stack information.
        scanned_at: Finish time of the last successful scan.
        created_at: Registration time.
        updated_at: Last modification time.
    """

    id: str = Field(..., description="Project identifier")
    name: str = Field(..., description="Display name")
    repo_full_name: str | None = Field(None, description="owner/name on the host")
    remote_url: str = Field(..., description="Credential-free clone URL")
    default_branch: str = Field("main", description="Default branch")
    selected_branch: str | None = Field(None, description="Tracked branch override")
    last_commit_sha: str | None = Field(None, description="Last scanned revision")
    total_files: int = Field(0, ge=0, description="Files in manifest")
    total_lines: int = Field(0, ge=0, description="Lines in manifest")
    total_bytes: int = Field(0, ge=0, description="Bytes in manifest")
    status: ProjectStatus = Field(ProjectStatus.PENDING, description="Pipeline status")
    current_stage: str | None = Field(None, description="Current stage")
    stage_percent: int = Field(0, ge=0, le=100, description="Overall percent")
    last_error: str | None = Field(None, description="Last error message")
    exclusion_rules_version: str | None = Field(None, description="Manifest rule version")
    last_kb_scan_id: str | None = Field(None, description="Newest bundle scan id")
    stack: dict[str, Any] = Field(default_factory=dict, description="Detected stack")
    scanned_at: datetime | None = Field(None, description="Last successful scan time")
    created_at: datetime | None = Field(None, description="Creation time")
    updated_at: datetime | None = Field(None, description="Update time")

    model_config = ConfigDict(from_attributes=True)

    @property
    def branch(self) -> str:
        """Branch the pipeline tracks."""
        return self.selected_branch or self.default_branch


class ScanRecord(BaseModel):
    """Snapshot of one pipeline execution."""

    id: int = Field(..., description="Scan row id")
    project_id: str = Field(..., description="Owning project")
    trigger: ScanTrigger = Field(..., description="Trigger")
    is_incremental: bool = Field(False, description="Incremental flag")
    status: ScanStatus = Field(ScanStatus.RUNNING, description="Scan status")
    current_stage: str | None = Field(None, description="Current stage")
    stage_percent: int = Field(0, ge=0, le=100, description="Overall percent")
    commit_sha: str | None = Field(None, description="Target revision")
    previous_commit_sha: str | None = Field(None, description="Source revision")
    scanner_version: str = Field(SCANNER_VERSION, description="Scanner version")
    exclusion_rules_version: str | None = Field(None, description="Exclusion rule version")
    files_scanned: int = Field(0, ge=0, description="Files in manifest")
    files_excluded: int = Field(0, ge=0, description="Excluded paths")
    chunks_created: int = Field(0, ge=0, description="Chunks written")
    total_lines: int = Field(0, ge=0, description="Lines scanned")
    total_bytes: int = Field(0, ge=0, description="Bytes scanned")
    duration_ms: int | None = Field(None, description="Duration in ms")
    stage_timings: dict[str, int] = Field(default_factory=dict, description="Stage -> ms")
    attempts: int = Field(0, ge=0, description="Attempts made")
    kb_scan_id: str | None = Field(None, description="Bundle scan id")
    kb_valid: bool | None = Field(None, description="Bundle bijection result")
    warnings: list[str] = Field(default_factory=list, description="Warnings")
    started_at: datetime | None = Field(None, description="Start time")
    finished_at: datetime | None = Field(None, description="Finish time")
    last_error: str | None = Field(None, description="Error message")
    meta: dict[str, Any] = Field(default_factory=dict, description="Extra metadata")

    model_config = ConfigDict(from_attributes=True)


class ProjectPaths(BaseModel):
    """On-disk layout of a project.

    Attributes:
        root: ``<storage>/<project_id>``.
        repo: Working copy.
        knowledge: Exclusion log and stack files.
        kb: Parent of the per-scan bundle directories.
    """

    model_config = ConfigDict(frozen=True)

    root: Path
    repo: Path
    knowledge: Path
    kb: Path

    @classmethod
    def for_project(cls, storage_root: str | Path, project_id: str) -> "ProjectPaths":
        root = Path(storage_root) / project_id
        return cls(root=root, repo=root / "repo", knowledge=root / "knowledge", kb=root / "kb")
