"""Knowledge-base bundle assembly.

A bundle is one directory per scan under the project's ``kb`` directory::

    kb/scan_<project>_<sha8>_<YYYYmmddHHMMSS>/
        scan_meta.json
        files_index.json      (files_index.ndjson for large repositories)
        chunks.ndjson
        directory_stats.json

Bundles are written into a hidden staging directory and renamed into place
once complete and consistent. Before the rename the staged file index and
chunk store are read back from disk and their chunk-id sets compared; an
inconsistent bundle never reaches ``kb``.
"""

import json
import re
import shutil
import threading
from collections import Counter
from collections.abc import Collection, Iterable
from datetime import UTC, datetime
from pathlib import Path

import structlog

from core.chunking.models import Chunk
from core.errors import ScanIntegrityError
from core.ingestion.models import FileRecord
from core.ingestion.scanner import FileScanner
from core.models import SCANNER_VERSION, ProjectRecord, ScanRecord

from .models import (
    CHUNKS_FILE,
    DIRECTORY_STATS_FILE,
    FILES_INDEX_JSON,
    FILES_INDEX_NDJSON,
    SCAN_META_FILE,
    AssemblerConfig,
    ChunkRecord,
    DirectoryStats,
    ExtensionStats,
    FileIndexEntry,
    KnowledgeBundle,
    ScanMeta,
    ScanMetaStats,
    ValidationSummary,
    ValidationWarning,
)

logger = structlog.get_logger(__name__)

_SHA = re.compile(r"^[0-9a-f]{40}$")
_SCAN_ID = re.compile(r"^scan_.+_[0-9a-f]{8}_(\d{14})(?:_(\d+))?$")
_STAGING_PREFIX = "."
_STAGING_SUFFIX = ".partial"


class BuildCancelledError(RuntimeError):
    """Raised inside a build when its cancel event is set."""


def resolve_head(repo_path: str | Path) -> str:
    """Resolve the HEAD revision of a working copy without invoking git.

    Follows ``.git/HEAD`` to a loose ref or an entry of ``packed-refs``.
    A ``.git`` file pointing at a separate git directory is followed too.

    Args:
        repo_path: Working copy root.

    Returns:
        The 40-character revision.

    Raises:
        ScanIntegrityError: If HEAD does not resolve to a revision.
    """
    git_dir = Path(repo_path) / ".git"
    try:
        if git_dir.is_file():
            pointer = git_dir.read_text(encoding="utf-8").strip()
            if not pointer.startswith("gitdir:"):
                raise ScanIntegrityError("Unrecognized .git file", path=str(git_dir))
            git_dir = (Path(repo_path) / pointer[len("gitdir:") :].strip()).resolve()

        head = (git_dir / "HEAD").read_text(encoding="utf-8").strip()
    except OSError as e:
        raise ScanIntegrityError(f"Cannot read HEAD: {e}", path=str(repo_path)) from e

    if not head.startswith("ref:"):
        sha = head
    else:
        ref = head[len("ref:") :].strip()
        sha = _read_ref(git_dir, ref)
        if sha is None:
            raise ScanIntegrityError(f"HEAD points at unknown ref {ref}", path=str(repo_path))

    if not _SHA.match(sha):
        raise ScanIntegrityError(f"HEAD is not a valid revision: {sha!r}", path=str(repo_path))
    return sha


def _read_ref(git_dir: Path, ref: str) -> str | None:
    loose = git_dir / ref
    try:
        if loose.is_file():
            return loose.read_text(encoding="utf-8").strip()

        packed = git_dir / "packed-refs"
        if packed.is_file():
            for line in packed.read_text(encoding="utf-8").splitlines():
                if not line or line.startswith(("#", "^")):
                    continue
                sha, _, name = line.partition(" ")
                if name.strip() == ref:
                    return sha.strip()
    except OSError as e:
        raise ScanIntegrityError(f"Cannot read ref {ref}: {e}", path=str(git_dir)) from e
    return None


def _bundle_sort_key(name: str) -> tuple[str, int] | None:
    match = _SCAN_ID.match(name)
    if not match:
        return None
    return match.group(1), int(match.group(2) or 0)


class KnowledgeBaseAssembler:
    """Writes and validates knowledge-base bundles.

    Attributes:
        config: Assembly configuration.
    """

    def __init__(self, config: AssemblerConfig | None = None) -> None:
        self.config = config or AssemblerConfig()
        self._logger = logger.bind(component="assembler")

    # =========================================================================
    # Build
    # =========================================================================

    def build(
        self,
        project: ProjectRecord,
        scan: ScanRecord,
        repo_path: str | Path,
        kb_root: str | Path,
        files: list[FileRecord],
        chunk_ids_by_path: dict[str, list[str]],
        chunks: Iterable[Chunk],
        files_excluded: int = 0,
        duration_ms: int = 0,
        previous_scan_id: str | None = None,
        cancel: threading.Event | None = None,
    ) -> ValidationSummary:
        """Write a bundle for the scan and check its consistency.

        Args:
            project: Project being scanned.
            scan: Running scan.
            repo_path: Working copy root, used to resolve HEAD.
            kb_root: Parent directory of the project's bundles.
            files: Manifest ordered by path.
            chunk_ids_by_path: Chunk ids of each file, in line order.
            chunks: Chunk stream ordered by (path, start line).
            files_excluded: Excluded path count for the metadata.
            duration_ms: Scan duration so far.
            previous_scan_id: Scan id of the previous bundle.
            cancel: Event checked between records; when set the staging
                directory is removed and BuildCancelledError raised.

        Returns:
            ValidationSummary of the bundle. The bundle is checked while
            still staged and only moved into ``kb_root`` when valid; an
            invalid bundle is deleted and its summary returned.

        Raises:
            ScanIntegrityError: If HEAD does not resolve.
        """
        head_sha = resolve_head(repo_path)
        kb_root = Path(kb_root)
        kb_root.mkdir(parents=True, exist_ok=True)

        scan_id, staging = self._allocate(kb_root, project.id, head_sha)
        log = self._logger.bind(project_id=project.id, scan_id=scan_id)
        log.info("bundle_build_started", files=len(files))

        try:
            total_chunks = sum(len(ids) for ids in chunk_ids_by_path.values())
            meta = ScanMeta(
                scan_id=scan_id,
                project_id=project.id,
                repo_full_name=project.repo_full_name,
                default_branch=project.default_branch,
                selected_branch=project.branch,
                head_commit_sha=head_sha,
                scanned_at_iso=datetime.now(tz=UTC),
                scanner_version=SCANNER_VERSION,
                exclusion_rules_version=scan.exclusion_rules_version,
                is_incremental=scan.is_incremental,
                previous_scan_id=previous_scan_id,
                stats=ScanMetaStats(
                    total_files_scanned=len(files),
                    total_files_excluded=files_excluded,
                    total_chunks=total_chunks,
                    total_lines=sum(f.line_count for f in files),
                    total_bytes=sum(f.size_bytes for f in files),
                    scan_duration_ms=duration_ms,
                ),
            )
            (staging / SCAN_META_FILE).write_text(meta.model_dump_json(indent=2), encoding="utf-8")

            self._write_files_index(staging, files, chunk_ids_by_path, cancel)
            self._write_chunks(staging, chunks, cancel)
            self._write_directory_stats(staging, files)

            output = kb_root / scan_id
            summary = self.validate(staging).model_copy(
                update={"scan_id": scan_id, "output_path": str(output)}
            )
            self._check_cancel(cancel)
            if not summary.is_valid:
                shutil.rmtree(staging, ignore_errors=True)
                log.warning("bundle_discarded", warnings=len(summary.warnings))
                return summary
            staging.rename(output)
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise

        log.info(
            "bundle_build_complete",
            valid=summary.is_valid,
            files=summary.files_index_entries,
            chunks=summary.chunks_count,
        )
        return summary

    def _allocate(self, kb_root: Path, project_id: str, head_sha: str) -> tuple[str, Path]:
        base = f"scan_{project_id}_{head_sha[:8]}_{datetime.now(tz=UTC):%Y%m%d%H%M%S}"
        suffix = 0
        while True:
            scan_id = base if suffix == 0 else f"{base}_{suffix}"
            staging = kb_root / f"{_STAGING_PREFIX}{scan_id}{_STAGING_SUFFIX}"
            if not (kb_root / scan_id).exists():
                try:
                    staging.mkdir()
                    return scan_id, staging
                except FileExistsError:
                    pass
            suffix += 1

    @staticmethod
    def _check_cancel(cancel: threading.Event | None) -> None:
        if cancel is not None and cancel.is_set():
            raise BuildCancelledError("Bundle build cancelled")

    def _write_files_index(
        self,
        staging: Path,
        files: list[FileRecord],
        chunk_ids_by_path: dict[str, list[str]],
        cancel: threading.Event | None,
    ) -> None:
        use_ndjson = len(files) > self.config.ndjson_threshold
        target = staging / (FILES_INDEX_NDJSON if use_ndjson else FILES_INDEX_JSON)

        with open(target, "w", encoding="utf-8") as handle:
            if not use_ndjson:
                handle.write("[\n")

            for position, record in enumerate(files):
                self._check_cancel(cancel)
                chunk_ids = chunk_ids_by_path.get(record.path, [])
                entry = FileIndexEntry(
                    file_path=record.path,
                    file_id=record.file_id,
                    extension=record.extension,
                    language=record.language,
                    size_bytes=record.size_bytes,
                    total_lines=record.line_count,
                    file_sha1=record.sha1,
                    is_binary=record.is_binary,
                    is_excluded=record.is_excluded,
                    exclusion_reason=record.exclusion_reason,
                    framework_hints=record.framework_hints,
                    chunk_ids=chunk_ids,
                    chunk_count=len(chunk_ids),
                    symbols_declared=record.symbols_declared,
                    imports=record.imports,
                )
                if use_ndjson:
                    handle.write(entry.model_dump_json() + "\n")
                else:
                    separator = ",\n" if position < len(files) - 1 else "\n"
                    handle.write("  " + entry.model_dump_json() + separator)

            if not use_ndjson:
                handle.write("]\n")

    def _write_chunks(
        self,
        staging: Path,
        chunks: Iterable[Chunk],
        cancel: threading.Event | None,
    ) -> None:
        with open(staging / CHUNKS_FILE, "w", encoding="utf-8") as handle:
            for chunk in chunks:
                self._check_cancel(cancel)
                record = ChunkRecord(file_path=chunk.path, **chunk.model_dump(exclude={"path"}))
                handle.write(record.model_dump_json() + "\n")

    def _write_directory_stats(self, staging: Path, files: list[FileRecord]) -> None:
        included = [f for f in files if not f.is_excluded]
        by_extension: dict[str, ExtensionStats] = {}
        for record in included:
            stats = by_extension.setdefault(record.extension or "no_extension", ExtensionStats())
            stats.files += 1
            stats.lines += record.line_count
            stats.bytes += record.size_bytes

        directory_stats = DirectoryStats(
            generated_at=datetime.now(tz=UTC),
            by_directory=FileScanner.directory_summary(included),
            by_top_level=FileScanner.top_level_summary(included),
            by_extension=dict(sorted(by_extension.items())),
        )
        (staging / DIRECTORY_STATS_FILE).write_text(
            directory_stats.model_dump_json(indent=2), encoding="utf-8"
        )

    # =========================================================================
    # Validation
    # =========================================================================

    def validate(self, bundle_path: str | Path) -> ValidationSummary:
        """Compare the chunk ids of a bundle's file index and chunk store.

        Both sides are read from disk. The bundle is valid when every id in
        the index exists in the chunk store, every stored chunk is referenced
        by exactly one index entry, and no id repeats on either side.

        Args:
            bundle_path: Bundle directory.

        Returns:
            ValidationSummary; mismatches are reported, never raised.
        """
        bundle_path = Path(bundle_path)
        entries = list(_read_files_index(bundle_path))

        index_ids: list[str] = [cid for entry in entries for cid in entry.chunk_ids]
        chunk_ids: list[str] = []
        with open(bundle_path / CHUNKS_FILE, encoding="utf-8") as handle:
            for line in handle:
                if line.strip():
                    chunk_ids.append(json.loads(line)["chunk_id"])

        index_set = set(index_ids)
        chunk_set = set(chunk_ids)
        missing = sorted(index_set - chunk_set)
        orphaned = sorted(chunk_set - index_set)
        duplicated = sorted(
            cid
            for cid, count in (Counter(index_ids) + Counter(chunk_ids)).items()
            if count > 2 or (count == 2 and not (cid in index_set and cid in chunk_set))
        )
        is_valid = not missing and not orphaned and not duplicated

        coverage = (
            round(len(index_set & chunk_set) / len(chunk_set) * 100, 2) if chunk_set else 100.0
        )

        warnings: list[ValidationWarning] = []
        if not is_valid:
            limit = self.config.sample_limit
            warning = ValidationWarning(
                message=(
                    f"File index and chunk store disagree: {len(missing)} missing, "
                    f"{len(orphaned)} orphaned, {len(duplicated)} duplicated"
                ),
                missing_in_chunks=missing[:limit],
                orphaned_chunks=orphaned[:limit],
                duplicated=duplicated[:limit],
            )
            warnings.append(warning)
            self._logger.warning(
                "bundle_validation_failed",
                bundle=bundle_path.name,
                missing_in_chunks=warning.missing_in_chunks,
                orphaned_chunks=warning.orphaned_chunks,
                duplicated=warning.duplicated,
            )

        return ValidationSummary(
            is_valid=is_valid,
            files_index_entries=len(entries),
            chunks_count=len(chunk_ids),
            chunk_ids_in_index=len(index_ids),
            chunk_ids_in_chunks=len(chunk_ids),
            missing_in_chunks=len(missing),
            orphaned_chunks=len(orphaned),
            duplicated_ids=len(duplicated),
            coverage_percent=coverage,
            output_path=str(bundle_path),
            scan_id=bundle_path.name,
            warnings=warnings,
        )

    # =========================================================================
    # Retention
    # =========================================================================

    def list_bundles(self, kb_root: str | Path) -> list[Path]:
        """Return completed bundle directories, oldest first."""
        kb_root = Path(kb_root)
        if not kb_root.is_dir():
            return []

        keyed = []
        for child in kb_root.iterdir():
            key = _bundle_sort_key(child.name)
            if child.is_dir() and key is not None:
                keyed.append((key, child))
        return [path for _, path in sorted(keyed)]

    def prune(
        self,
        kb_root: str | Path,
        keep: int | None = None,
        completed: Collection[str] | None = None,
    ) -> list[str]:
        """Delete all but the newest ``keep`` bundles.

        Args:
            kb_root: Parent directory of the project's bundles.
            keep: Bundles to keep; defaults to the configured retention.
            completed: Scan ids of bundles recorded by completed scans.
                When given, other bundle directories are removed and do
                not count towards ``keep``.

        Returns:
            Scan ids of the removed bundles.
        """
        keep = self.config.retention if keep is None else keep
        bundles = self.list_bundles(kb_root)
        orphaned: list[Path] = []
        if completed is not None:
            orphaned = [p for p in bundles if p.name not in completed]
            bundles = [p for p in bundles if p.name in completed]
        stale = orphaned + bundles[: max(len(bundles) - keep, 0)]

        for path in stale:
            shutil.rmtree(path, ignore_errors=True)

        if stale:
            self._logger.info("bundles_pruned", removed=[p.name for p in stale], kept=keep)
        return [p.name for p in stale]

    def sweep_partial(self, kb_root: str | Path) -> int:
        """Remove staging directories left by interrupted builds."""
        kb_root = Path(kb_root)
        if not kb_root.is_dir():
            return 0

        removed = 0
        for child in kb_root.iterdir():
            if child.name.startswith(_STAGING_PREFIX) and child.name.endswith(_STAGING_SUFFIX):
                shutil.rmtree(child, ignore_errors=True)
                removed += 1
        return removed


def _read_files_index(bundle_path: Path) -> Iterable[FileIndexEntry]:
    ndjson = bundle_path / FILES_INDEX_NDJSON
    if ndjson.is_file():
        with open(ndjson, encoding="utf-8") as handle:
            for line in handle:
                if line.strip():
                    yield FileIndexEntry.model_validate_json(line)
        return

    data = json.loads((bundle_path / FILES_INDEX_JSON).read_text(encoding="utf-8"))
    for item in data:
        yield FileIndexEntry.model_validate(item)


def load_bundle(bundle_path: str | Path) -> KnowledgeBundle:
    """Read a bundle from disk.

    Args:
        bundle_path: Bundle directory.

    Returns:
        KnowledgeBundle with metadata, file index and directory stats.

    Raises:
        FileNotFoundError: If the metadata or file index is missing.
    """
    bundle_path = Path(bundle_path)
    meta = ScanMeta.model_validate_json((bundle_path / SCAN_META_FILE).read_text(encoding="utf-8"))

    stats_file = bundle_path / DIRECTORY_STATS_FILE
    directory_stats = (
        DirectoryStats.model_validate_json(stats_file.read_text(encoding="utf-8"))
        if stats_file.is_file()
        else None
    )

    return KnowledgeBundle(
        path=bundle_path,
        meta=meta,
        files=list(_read_files_index(bundle_path)),
        directory_stats=directory_stats,
    )
