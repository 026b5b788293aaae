"""Transactional project store.

All pipeline state lives here: project status, scan history, the current
file manifest and its chunks. Status transitions are conditional updates so
that two workers racing to start a scan for the same project cannot both
succeed. Records leave the store as pydantic snapshots, never ORM rows.
"""

import uuid
from collections.abc import Iterable, Iterator, Sequence
from datetime import UTC, datetime
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel, Field
from sqlalchemy import delete, func, select, update

from core.chunking.models import Chunk
from core.errors import ProjectNotFoundError, ScanAlreadyRunningError
from core.ingestion.models import FileRecord
from core.models import (
    SCANNER_VERSION,
    ProjectRecord,
    ProjectStatus,
    ScanRecord,
    ScanStatus,
    ScanTrigger,
)

from .database import Database
from .tables import ChunkRow, FileRow, ProjectRow, ScanRow

logger = structlog.get_logger(__name__)

T = TypeVar("T")

BATCH_SIZE = 500

_FILE_COLUMNS = (
    "file_id",
    "extension",
    "language",
    "size_bytes",
    "line_count",
    "sha1",
    "is_binary",
    "is_excluded",
    "exclusion_reason",
    "mime_type",
    "framework_hints",
    "symbols_declared",
    "imports",
    "file_modified_at",
    "rules_version",
)

_CHUNK_COLUMNS = (
    "chunk_id",
    "path",
    "file_id",
    "file_sha1",
    "start_line",
    "end_line",
    "chunk_index",
    "is_complete_file",
    "chunk_bytes",
    "chunk_lines",
    "chunk_sha1",
    "content",
    "symbols_declared",
    "symbols_used",
    "imports",
    "references",
)


def _now() -> datetime:
    return datetime.now(tz=UTC)


def _batched(items: Sequence[T], size: int = BATCH_SIZE) -> Iterator[Sequence[T]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class ScanTotals(BaseModel):
    """Counts recorded on a finished scan."""

    files_scanned: int = Field(0, ge=0, description="Files in manifest")
    files_excluded: int = Field(0, ge=0, description="Excluded paths")
    chunks_created: int = Field(0, ge=0, description="Chunks in store")
    total_lines: int = Field(0, ge=0, description="Lines in manifest")
    total_bytes: int = Field(0, ge=0, description="Bytes in manifest")


class ProjectStore:
    """Reads and writes pipeline state.

    Attributes:
        database: Database providing sessions.
    """

    def __init__(self, database: Database) -> None:
        self.database = database
        self._logger = logger.bind(component="store")

    # =========================================================================
    # Projects
    # =========================================================================

    def create_project(
        self,
        name: str,
        remote_url: str,
        repo_full_name: str | None = None,
        default_branch: str = "main",
        selected_branch: str | None = None,
        project_id: str | None = None,
    ) -> ProjectRecord:
        """Register a new project in ``pending`` status."""
        now = _now()
        row = ProjectRow(
            id=project_id or uuid.uuid4().hex[:12],
            name=name,
            repo_full_name=repo_full_name,
            remote_url=remote_url,
            default_branch=default_branch,
            selected_branch=selected_branch,
            status=ProjectStatus.PENDING.value,
            stage_percent=0,
            total_files=0,
            total_lines=0,
            total_bytes=0,
            stack={},
            created_at=now,
            updated_at=now,
        )
        with self.database.session() as session:
            session.add(row)
            session.flush()
            record = ProjectRecord.model_validate(row)

        self._logger.info("project_created", project_id=record.id, remote=remote_url)
        return record

    def get_project(self, project_id: str) -> ProjectRecord:
        """Fetch a project.

        Raises:
            ProjectNotFoundError: If the project does not exist.
        """
        with self.database.session() as session:
            row = session.get(ProjectRow, project_id)
            if row is None:
                raise ProjectNotFoundError("Project not found", project_id=project_id)
            return ProjectRecord.model_validate(row)

    def list_projects(self) -> list[ProjectRecord]:
        with self.database.session() as session:
            rows = session.scalars(select(ProjectRow).order_by(ProjectRow.created_at))
            return [ProjectRecord.model_validate(row) for row in rows]

    def find_projects_by_repo(self, repo_full_name: str) -> list[ProjectRecord]:
        """Find projects tracking a repository, matched case-insensitively."""
        with self.database.session() as session:
            rows = session.scalars(
                select(ProjectRow).where(
                    func.lower(ProjectRow.repo_full_name) == repo_full_name.lower()
                )
            )
            return [ProjectRecord.model_validate(row) for row in rows]

    def update_project(self, project_id: str, **values: Any) -> None:
        values["updated_at"] = _now()
        with self.database.session() as session:
            session.execute(update(ProjectRow).where(ProjectRow.id == project_id).values(**values))

    def delete_project(self, project_id: str) -> ProjectRecord:
        """Delete a project with its scans, files and chunks.

        Raises:
            ProjectNotFoundError: If the project does not exist.
            ScanAlreadyRunningError: If a scan is running.
        """
        with self.database.session() as session:
            row = session.get(ProjectRow, project_id)
            if row is None:
                raise ProjectNotFoundError("Project not found", project_id=project_id)
            if row.status == ProjectStatus.SCANNING.value:
                raise ScanAlreadyRunningError(
                    "Cannot delete a project while it is scanning", project_id=project_id
                )
            record = ProjectRecord.model_validate(row)

            session.execute(delete(ChunkRow).where(ChunkRow.project_id == project_id))
            session.execute(delete(FileRow).where(FileRow.project_id == project_id))
            session.execute(delete(ScanRow).where(ScanRow.project_id == project_id))
            session.delete(row)

        self._logger.info("project_deleted", project_id=project_id)
        return record

    # =========================================================================
    # Scans
    # =========================================================================

    def begin_scan(
        self,
        project_id: str,
        trigger: ScanTrigger,
        rules_version: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> ScanRecord:
        """Atomically mark the project as scanning and create the scan row.

        The status flip is a conditional update, so only one caller can win
        even across processes sharing the database.

        Raises:
            ProjectNotFoundError: If the project does not exist.
            ScanAlreadyRunningError: If a scan is already running.
        """
        now = _now()
        with self.database.session() as session:
            result = session.execute(
                update(ProjectRow)
                .where(
                    ProjectRow.id == project_id,
                    ProjectRow.status != ProjectStatus.SCANNING.value,
                )
                .values(
                    status=ProjectStatus.SCANNING.value,
                    current_stage=None,
                    stage_percent=0,
                    updated_at=now,
                )
            )
            if result.rowcount == 0:
                if session.get(ProjectRow, project_id) is None:
                    raise ProjectNotFoundError("Project not found", project_id=project_id)
                raise ScanAlreadyRunningError("A scan is already running", project_id=project_id)

            previous = session.scalar(
                select(ProjectRow.last_commit_sha).where(ProjectRow.id == project_id)
            )
            row = ScanRow(
                project_id=project_id,
                trigger=trigger.value,
                is_incremental=False,
                status=ScanStatus.RUNNING.value,
                stage_percent=0,
                previous_commit_sha=previous,
                scanner_version=SCANNER_VERSION,
                exclusion_rules_version=rules_version,
                files_scanned=0,
                files_excluded=0,
                chunks_created=0,
                total_lines=0,
                total_bytes=0,
                stage_timings={},
                attempts=1,
                warnings=[],
                started_at=now,
                meta=meta or {},
            )
            session.add(row)
            session.flush()
            record = ScanRecord.model_validate(row)

        self._logger.info(
            "scan_started", project_id=project_id, scan_id=record.id, trigger=trigger.value
        )
        return record

    def get_scan(self, scan_id: int) -> ScanRecord:
        with self.database.session() as session:
            row = session.get(ScanRow, scan_id)
            if row is None:
                raise LookupError(f"Scan not found: {scan_id}")
            return ScanRecord.model_validate(row)

    def list_scans(self, project_id: str, limit: int = 50) -> list[ScanRecord]:
        """Return the newest scans of a project first."""
        with self.database.session() as session:
            rows = session.scalars(
                select(ScanRow)
                .where(ScanRow.project_id == project_id)
                .order_by(ScanRow.id.desc())
                .limit(limit)
            )
            return [ScanRecord.model_validate(row) for row in rows]

    def last_completed_scan(self, project_id: str) -> ScanRecord | None:
        with self.database.session() as session:
            row = session.scalars(
                select(ScanRow)
                .where(
                    ScanRow.project_id == project_id,
                    ScanRow.status == ScanStatus.COMPLETED.value,
                )
                .order_by(ScanRow.id.desc())
                .limit(1)
            ).first()
            return ScanRecord.model_validate(row) if row else None

    def completed_bundle_ids(self, project_id: str) -> set[str]:
        """Return the bundle scan ids recorded by completed scans."""
        with self.database.session() as session:
            return set(
                session.scalars(
                    select(ScanRow.kb_scan_id).where(
                        ScanRow.project_id == project_id,
                        ScanRow.status == ScanStatus.COMPLETED.value,
                        ScanRow.kb_scan_id.is_not(None),
                    )
                )
            )

    def update_scan(self, scan_id: int, **values: Any) -> None:
        with self.database.session() as session:
            session.execute(update(ScanRow).where(ScanRow.id == scan_id).values(**values))

    def update_progress(self, project_id: str, scan_id: int, stage: str, percent: int) -> None:
        """Persist the current stage and overall percent on project and scan."""
        percent = max(0, min(100, percent))
        with self.database.session() as session:
            session.execute(
                update(ProjectRow)
                .where(ProjectRow.id == project_id)
                .values(current_stage=stage, stage_percent=percent, updated_at=_now())
            )
            session.execute(
                update(ScanRow)
                .where(ScanRow.id == scan_id)
                .values(current_stage=stage, stage_percent=percent)
            )

    def record_stage_timing(self, scan_id: int, stage: str, duration_ms: int) -> None:
        with self.database.session() as session:
            row = session.get(ScanRow, scan_id)
            if row is not None:
                # Reassign so the JSON column is flagged dirty.
                row.stage_timings = {**row.stage_timings, stage: duration_ms}

    def increment_attempts(self, scan_id: int) -> int:
        with self.database.session() as session:
            row = session.get(ScanRow, scan_id)
            if row is None:
                raise LookupError(f"Scan not found: {scan_id}")
            row.attempts += 1
            return row.attempts

    def complete_scan(
        self,
        project_id: str,
        scan_id: int,
        commit_sha: str,
        totals: ScanTotals,
        duration_ms: int,
        kb_scan_id: str | None = None,
        kb_valid: bool | None = None,
        warnings: Iterable[str] = (),
        rules_version: str | None = None,
    ) -> ScanRecord:
        """Mark a scan completed and the project ready."""
        now = _now()
        with self.database.session() as session:
            project = session.get(ProjectRow, project_id)
            scan = session.get(ScanRow, scan_id)
            if project is None or scan is None:
                raise ProjectNotFoundError("Project or scan not found", project_id=project_id)

            scan.status = ScanStatus.COMPLETED.value
            scan.commit_sha = commit_sha
            scan.current_stage = "finalize"
            scan.stage_percent = 100
            scan.files_scanned = totals.files_scanned
            scan.files_excluded = totals.files_excluded
            scan.chunks_created = totals.chunks_created
            scan.total_lines = totals.total_lines
            scan.total_bytes = totals.total_bytes
            scan.duration_ms = duration_ms
            scan.kb_scan_id = kb_scan_id
            scan.kb_valid = kb_valid
            scan.warnings = list(warnings)
            scan.finished_at = now
            scan.last_error = None
            if rules_version:
                scan.exclusion_rules_version = rules_version

            project.status = ProjectStatus.READY.value
            project.current_stage = "finalize"
            project.stage_percent = 100
            project.last_commit_sha = commit_sha
            project.total_files = totals.files_scanned
            project.total_lines = totals.total_lines
            project.total_bytes = totals.total_bytes
            project.last_error = None
            project.scanned_at = now
            project.updated_at = now
            if kb_scan_id:
                project.last_kb_scan_id = kb_scan_id
            if rules_version:
                project.exclusion_rules_version = rules_version

            session.flush()
            record = ScanRecord.model_validate(scan)

        self._logger.info("scan_completed", project_id=project_id, scan_id=scan_id)
        return record

    def fail_scan(
        self,
        project_id: str,
        scan_id: int,
        message: str,
        duration_ms: int | None = None,
    ) -> None:
        """Mark a scan and its project failed, releasing the running flag."""
        now = _now()
        with self.database.session() as session:
            session.execute(
                update(ScanRow)
                .where(ScanRow.id == scan_id)
                .values(
                    status=ScanStatus.FAILED.value,
                    last_error=message,
                    finished_at=now,
                    duration_ms=duration_ms,
                )
            )
            session.execute(
                update(ProjectRow)
                .where(ProjectRow.id == project_id)
                .values(status=ProjectStatus.FAILED.value, last_error=message, updated_at=now)
            )

        self._logger.warning("scan_failed", project_id=project_id, scan_id=scan_id, error=message)

    # =========================================================================
    # Manifest
    # =========================================================================

    def replace_manifest(self, project_id: str, files: list[FileRecord]) -> None:
        """Replace the whole manifest in one transaction.

        Existing chunks are removed with their files; readers never see a
        mix of old and new records.
        """
        with self.database.session() as session:
            session.execute(delete(ChunkRow).where(ChunkRow.project_id == project_id))
            session.execute(delete(FileRow).where(FileRow.project_id == project_id))
            for batch in _batched(files):
                session.add_all(_file_row(project_id, record) for record in batch)

        self._logger.info("manifest_replaced", project_id=project_id, files=len(files))

    def apply_changes(
        self,
        project_id: str,
        deleted_paths: list[str],
        files: list[FileRecord],
    ) -> None:
        """Delete removed paths and upsert re-scanned files by path.

        Chunks of deleted and re-scanned files are dropped; callers store
        the fresh chunks with ``replace_chunks_for_paths``.
        """
        touched = sorted(set(deleted_paths) | {record.path for record in files})

        with self.database.session() as session:
            for batch in _batched(touched):
                session.execute(
                    delete(ChunkRow).where(
                        ChunkRow.project_id == project_id, ChunkRow.path.in_(batch)
                    )
                )
            for batch in _batched(sorted(deleted_paths)):
                session.execute(
                    delete(FileRow).where(FileRow.project_id == project_id, FileRow.path.in_(batch))
                )

            existing: dict[str, FileRow] = {}
            paths = [record.path for record in files]
            for batch in _batched(paths):
                rows = session.scalars(
                    select(FileRow).where(FileRow.project_id == project_id, FileRow.path.in_(batch))
                )
                existing.update({row.path: row for row in rows})

            for record in files:
                row = existing.get(record.path)
                if row is None:
                    session.add(_file_row(project_id, record))
                    continue
                for column in _FILE_COLUMNS:
                    setattr(row, column, getattr(record, column))

        self._logger.info(
            "manifest_updated",
            project_id=project_id,
            deleted=len(deleted_paths),
            upserted=len(files),
        )

    def list_files(self, project_id: str) -> list[FileRecord]:
        """Return the manifest ordered by path."""
        with self.database.session() as session:
            rows = session.scalars(
                select(FileRow).where(FileRow.project_id == project_id).order_by(FileRow.path)
            )
            return [_file_record(row) for row in rows]

    def recalculate_stats(self, project_id: str) -> ScanTotals:
        """Recompute manifest totals and store them on the project."""
        with self.database.session() as session:
            files, lines, size = session.execute(
                select(
                    func.count(FileRow.id),
                    func.coalesce(func.sum(FileRow.line_count), 0),
                    func.coalesce(func.sum(FileRow.size_bytes), 0),
                ).where(FileRow.project_id == project_id)
            ).one()
            chunks = session.scalar(
                select(func.count(ChunkRow.id)).where(ChunkRow.project_id == project_id)
            )
            session.execute(
                update(ProjectRow)
                .where(ProjectRow.id == project_id)
                .values(total_files=files, total_lines=lines, total_bytes=size, updated_at=_now())
            )

        return ScanTotals(
            files_scanned=files, total_lines=lines, total_bytes=size, chunks_created=chunks or 0
        )

    # =========================================================================
    # Chunks
    # =========================================================================

    def replace_chunks(self, project_id: str, chunks: list[Chunk]) -> int:
        """Replace every chunk of a project. Returns the number stored."""
        with self.database.session() as session:
            session.execute(delete(ChunkRow).where(ChunkRow.project_id == project_id))
            stored = self._insert_chunks(session, project_id, chunks)

        self._logger.info("chunks_replaced", project_id=project_id, chunks=stored)
        return stored

    def replace_chunks_for_paths(
        self, project_id: str, paths: list[str], chunks: list[Chunk]
    ) -> int:
        """Replace the chunks of the given paths only."""
        with self.database.session() as session:
            for batch in _batched(sorted(set(paths))):
                session.execute(
                    delete(ChunkRow).where(
                        ChunkRow.project_id == project_id, ChunkRow.path.in_(batch)
                    )
                )
            stored = self._insert_chunks(session, project_id, chunks)

        self._logger.info("chunks_updated", project_id=project_id, paths=len(paths), chunks=stored)
        return stored

    def _insert_chunks(self, session: Any, project_id: str, chunks: list[Chunk]) -> int:
        paths = sorted({chunk.path for chunk in chunks})
        file_rows: dict[str, int] = {}
        for batch in _batched(paths):
            rows = session.execute(
                select(FileRow.path, FileRow.id).where(
                    FileRow.project_id == project_id, FileRow.path.in_(batch)
                )
            )
            file_rows.update({path: row_id for path, row_id in rows})

        stored = 0
        for batch in _batched(chunks):
            rows = []
            for chunk in batch:
                file_row_id = file_rows.get(chunk.path)
                if file_row_id is None:
                    self._logger.warning("chunk_without_file", path=chunk.path)
                    continue
                rows.append(_chunk_row(project_id, file_row_id, chunk))
            session.add_all(rows)
            stored += len(rows)
        return stored

    def iter_chunks(self, project_id: str) -> Iterator[Chunk]:
        """Stream chunks ordered by (path, start line)."""
        with self.database.session() as session:
            stmt = (
                select(ChunkRow)
                .where(ChunkRow.project_id == project_id)
                .order_by(ChunkRow.path, ChunkRow.start_line)
                .execution_options(yield_per=BATCH_SIZE)
            )
            for row in session.scalars(stmt):
                yield _chunk(row)

    def list_chunks(self, project_id: str, path: str | None = None) -> list[Chunk]:
        """Return chunks, optionally of a single file, in (path, start line) order."""
        if path is None:
            return list(self.iter_chunks(project_id))
        with self.database.session() as session:
            rows = session.scalars(
                select(ChunkRow)
                .where(ChunkRow.project_id == project_id, ChunkRow.path == path)
                .order_by(ChunkRow.start_line)
            )
            return [_chunk(row) for row in rows]

    def chunk_ids_by_path(self, project_id: str) -> dict[str, list[str]]:
        """Map each path to its chunk ids in line order."""
        grouped: dict[str, list[str]] = {}
        with self.database.session() as session:
            rows = session.execute(
                select(ChunkRow.path, ChunkRow.chunk_id)
                .where(ChunkRow.project_id == project_id)
                .order_by(ChunkRow.path, ChunkRow.start_line)
            )
            for path, chunk_id in rows:
                grouped.setdefault(path, []).append(chunk_id)
        return grouped


def _file_row(project_id: str, record: FileRecord) -> FileRow:
    return FileRow(
        project_id=project_id,
        path=record.path,
        **{column: getattr(record, column) for column in _FILE_COLUMNS},
    )


def _file_record(row: FileRow) -> FileRecord:
    return FileRecord(path=row.path, **{column: getattr(row, column) for column in _FILE_COLUMNS})


def _chunk_row(project_id: str, file_row_id: int, chunk: Chunk) -> ChunkRow:
    return ChunkRow(
        project_id=project_id,
        file_row_id=file_row_id,
        **{column: getattr(chunk, column) for column in _CHUNK_COLUMNS},
    )


def _chunk(row: ChunkRow) -> Chunk:
    return Chunk(**{column: getattr(row, column) for column in _CHUNK_COLUMNS})
