"""File manifest scanning for the ingestion module.

This module walks a synchronized working copy, applies the exclusion rules
and produces one FileRecord per included file with size, content hash,
line count and derived metadata. Files are processed in bounded concurrent
batches and collected into a single path-ordered manifest.
"""

import asyncio
import hashlib
import mimetypes
import os
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

import structlog

from core.chunking.symbols import SymbolExtractor

from .exclusion import ExclusionMatcher, read_header
from .frameworks import FrameworkDetector
from .models import (
    ChangeSet,
    DirectorySummary,
    ExclusionEntry,
    FileRecord,
    ManifestStats,
    ScanManifest,
    ScannerConfig,
    ScanWarning,
)

if TYPE_CHECKING:
    from core.store.repository import ProjectStore

logger = structlog.get_logger(__name__)

# Called with (processed, total).
ManifestProgress = Callable[[int, int], None]

_HASH_BLOCK = 1024 * 1024


class FileScanner:
    """Builds file manifests from working copies.

    Attributes:
        matcher: Exclusion matcher deciding which files are scanned.
        config: Scanner configuration.
        detector: Framework hint detector.
        symbols: Symbol extractor for file-level declarations and imports.
    """

    def __init__(
        self,
        matcher: ExclusionMatcher | None = None,
        config: ScannerConfig | None = None,
        detector: FrameworkDetector | None = None,
        symbols: SymbolExtractor | None = None,
    ) -> None:
        """Initialize the FileScanner.

        Args:
            matcher: Exclusion matcher. Uses default rules if not provided.
            config: Scanner configuration. Uses defaults if not provided.
            detector: Framework detector. Creates one if not provided.
            symbols: Symbol extractor. Creates one if not provided.
        """
        self.matcher = matcher or ExclusionMatcher()
        self.config = config or ScannerConfig()
        self.detector = detector or FrameworkDetector()
        self.symbols = symbols or SymbolExtractor()
        logger.debug("FileScanner initialized", config=self.config.model_dump())

    async def scan(
        self,
        project_root: str | Path,
        progress: ManifestProgress | None = None,
    ) -> ScanManifest:
        """Scan a complete working copy.

        Args:
            project_root: Root of the working copy.
            progress: Optional callback, invoked every ``progress_interval``
                files and once at completion with (processed, total).

        Returns:
            ScanManifest with path-ordered file records.

        Raises:
            FileNotFoundError: If the root does not exist or is not a directory.
        """
        root = Path(project_root).resolve()
        if not root.is_dir():
            raise FileNotFoundError(f"Repository path does not exist: {root}")

        logger.info(f"Starting manifest scan of {root}")

        candidates, excluded, warnings = await asyncio.get_event_loop().run_in_executor(
            None, self._walk, root
        )
        logger.info(
            f"Discovered {len(candidates)} files to scan",
            excluded=len(excluded),
        )

        return await self._build_manifest(root, candidates, excluded, warnings, progress)

    async def scan_paths(
        self,
        project_root: str | Path,
        paths: list[str],
        progress: ManifestProgress | None = None,
    ) -> ScanManifest:
        """Scan an explicit subset of paths, as needed for incremental updates.

        Paths that no longer exist are ignored; excluded paths go to the
        exclusion log.
        """
        root = Path(project_root).resolve()
        candidates: list[str] = []
        excluded: list[ExclusionEntry] = []
        warnings: list[ScanWarning] = []

        for relative in sorted(set(paths)):
            reason = self.matcher.exclusion_reason(relative)
            if reason:
                excluded.append(ExclusionEntry(path=relative, reason=reason))
                continue

            full_path = root / relative
            if not full_path.is_file():
                continue

            if not full_path.resolve().is_relative_to(root):
                warnings.append(
                    ScanWarning(path=relative, stage="manifest", message="symlink escapes repository")
                )
                continue

            candidates.append(relative)

        return await self._build_manifest(root, candidates, excluded, warnings, progress)

    def _walk(self, root: Path) -> tuple[list[str], list[ExclusionEntry], list[ScanWarning]]:
        candidates: list[str] = []
        excluded: list[ExclusionEntry] = []
        warnings: list[ScanWarning] = []
        visited: set[tuple[int, int]] = set()

        for dirpath, dirnames, filenames in os.walk(root, followlinks=True):
            current = Path(dirpath)

            try:
                stat = current.stat()
            except OSError as e:
                warnings.append(ScanWarning(path=None, stage="manifest", message=str(e)))
                dirnames[:] = []
                continue

            key = (stat.st_dev, stat.st_ino)
            if key in visited:
                logger.debug("symlink_cycle_skipped", path=str(current))
                dirnames[:] = []
                continue
            visited.add(key)

            relative_dir = current.relative_to(root).as_posix()
            if relative_dir == ".":
                relative_dir = ""

            kept: list[str] = []
            for name in sorted(dirnames):
                relative = f"{relative_dir}/{name}" if relative_dir else name
                reason = self.matcher.directory_exclusion_reason(relative)
                if reason:
                    excluded.append(ExclusionEntry(path=f"{relative}/", reason=reason))
                    continue

                child = current / name
                if child.is_symlink():
                    if child.resolve().is_relative_to(root):
                        # Reached through its real path, as incremental scans record it.
                        logger.debug("symlinked_directory_skipped", path=relative)
                        continue
                    logger.warning("symlink_outside_repository", path=relative)
                    warnings.append(
                        ScanWarning(
                            path=relative, stage="manifest", message="symlink escapes repository"
                        )
                    )
                    continue
                kept.append(name)
            dirnames[:] = kept

            for name in sorted(filenames):
                relative = f"{relative_dir}/{name}" if relative_dir else name
                reason = self.matcher.exclusion_reason(relative)
                if reason:
                    excluded.append(ExclusionEntry(path=relative, reason=reason))
                    continue

                child = current / name
                if child.is_symlink():
                    target = child.resolve()
                    if not target.is_relative_to(root) or not target.is_file():
                        warnings.append(
                            ScanWarning(
                                path=relative,
                                stage="manifest",
                                message="symlink escapes repository or is dangling",
                            )
                        )
                        continue
                candidates.append(relative)

        candidates.sort()
        return candidates, excluded, warnings

    async def _build_manifest(
        self,
        root: Path,
        candidates: list[str],
        excluded: list[ExclusionEntry],
        warnings: list[ScanWarning],
        progress: ManifestProgress | None,
    ) -> ScanManifest:
        total = len(candidates)
        files: list[FileRecord] = []
        processed = 0

        for batch_start in range(0, total, self.config.batch_size):
            batch = candidates[batch_start : batch_start + self.config.batch_size]

            tasks = [self._scan_with_timeout(root, relative) for relative in batch]
            results = await asyncio.gather(*tasks, return_exceptions=True)

            for relative, result in zip(batch, results, strict=True):
                processed += 1

                if isinstance(result, BaseException):
                    message = (
                        f"timed out after {self.config.file_timeout}s"
                        if isinstance(result, TimeoutError)
                        else str(result)
                    )
                    logger.warning(f"Failed to scan {relative}: {message}")
                    warnings.append(ScanWarning(path=relative, stage="manifest", message=message))
                else:
                    record, warning = result
                    files.append(record)
                    if warning:
                        warnings.append(warning)

                if progress and processed % self.config.progress_interval == 0:
                    progress(processed, total)

        if progress:
            progress(processed, total)

        stats = ManifestStats(
            total_files=len(files),
            total_lines=sum(f.line_count for f in files),
            total_bytes=sum(f.size_bytes for f in files),
            files_excluded=len(excluded),
            binary_files=sum(1 for f in files if f.is_binary),
            oversized_files=sum(
                1 for f in files if not f.is_binary and f.size_bytes > self.config.max_file_size
            ),
        )

        logger.info(
            "Manifest scan complete",
            files=stats.total_files,
            lines=stats.total_lines,
            bytes=stats.total_bytes,
            excluded=stats.files_excluded,
            warnings=len(warnings),
        )

        return ScanManifest(
            files=files,
            excluded=excluded,
            stats=stats,
            warnings=warnings,
            rules_version=self.matcher.rules_version,
        )

    async def _scan_with_timeout(
        self, root: Path, relative: str
    ) -> tuple[FileRecord, ScanWarning | None]:
        return await asyncio.wait_for(
            asyncio.get_event_loop().run_in_executor(None, self.scan_file, root, relative),
            timeout=self.config.file_timeout,
        )

    def scan_file(self, root: Path, relative: str) -> tuple[FileRecord, ScanWarning | None]:
        """Build the record of a single file.

        Content is read only for non-binary files up to ``max_file_size``.
        Content that is not valid UTF-8 is kept out of the record so the
        chunker skips the file, and a warning is returned alongside.

        Args:
            root: Repository root.
            relative: Path relative to the root.

        Returns:
            Tuple of the record and an optional warning.

        Raises:
            OSError: If the file cannot be read.
        """
        full_path = root / relative
        stat = full_path.stat()
        size = stat.st_size
        header = read_header(full_path)
        classification = self.matcher.classify(relative, header)

        warning: ScanWarning | None = None
        content: str | None = None
        line_count = 0

        if size > self.config.warn_file_size:
            logger.debug("large_file", path=relative, size_bytes=size)

        if not classification.is_binary and size <= self.config.max_file_size:
            data = full_path.read_bytes()
            sha1 = hashlib.sha1(data).hexdigest()
            line_count = data.count(b"\n") + 1 if data else 0
            try:
                content = data.decode("utf-8")
            except UnicodeDecodeError:
                warning = ScanWarning(
                    path=relative, stage="manifest", message="content is not valid UTF-8"
                )
                logger.warning("undecodable_file", path=relative)
        else:
            sha1, newlines = self._hash_stream(full_path)
            if not classification.is_binary:
                line_count = newlines + 1 if size else 0

        mime_type, _ = mimetypes.guess_type(PurePosixPath(relative).name)
        symbols_declared: list[str] = []
        imports: list[str] = []
        if content:
            symbols_declared = self.symbols.declared(content, classification.language)
            imports = self.symbols.imports(content, classification.language)

        record = FileRecord(
            path=relative,
            extension=self.matcher.extension_of(relative),
            language=classification.language,
            size_bytes=size,
            line_count=line_count,
            sha1=sha1,
            is_binary=classification.is_binary,
            mime_type=mime_type,
            framework_hints=self.detector.hints_for(relative, content),
            symbols_declared=symbols_declared,
            imports=imports,
            file_modified_at=datetime.fromtimestamp(stat.st_mtime, tz=UTC),
            rules_version=self.matcher.rules_version,
            content=content,
        )
        return record, warning

    @staticmethod
    def _hash_stream(path: Path) -> tuple[str, int]:
        digest = hashlib.sha1()
        newlines = 0
        with open(path, "rb") as handle:
            while block := handle.read(_HASH_BLOCK):
                digest.update(block)
                newlines += block.count(b"\n")
        return digest.hexdigest(), newlines

    async def persist_manifest(
        self, store: "ProjectStore", project_id: str, manifest: ScanManifest
    ) -> None:
        """Replace the stored manifest of a project in one transaction."""
        await asyncio.get_event_loop().run_in_executor(
            None, store.replace_manifest, project_id, manifest.files
        )

    async def update_changed_files(
        self,
        store: "ProjectStore",
        project_id: str,
        project_root: str | Path,
        changes: ChangeSet,
        progress: ManifestProgress | None = None,
    ) -> ScanManifest:
        """Apply a change set to the stored manifest.

        Deleted paths are removed together with their chunks, added and
        modified paths are re-scanned and upserted by path. Paths that
        became excluded are removed as well.

        Args:
            store: Project store.
            project_id: Project to update.
            project_root: Root of the working copy at the target revision.
            changes: Change set between the stored and the target revision.
            progress: Optional progress callback.

        Returns:
            Manifest of the re-scanned paths.
        """
        manifest = await self.scan_paths(
            project_root, changes.added + changes.modified, progress=progress
        )
        scanned = {record.path for record in manifest.files}
        removed = sorted(set(changes.all_paths()) - scanned)

        await asyncio.get_event_loop().run_in_executor(
            None, store.apply_changes, project_id, removed, manifest.files
        )

        logger.info(
            "Incremental manifest update complete",
            project_id=project_id,
            upserted=len(manifest.files),
            removed=len(removed),
        )
        return manifest

    @staticmethod
    def directory_summary(files: list[FileRecord]) -> list[DirectorySummary]:
        """Aggregate files by their immediate directory, sorted by path."""
        directories: dict[str, DirectorySummary] = {}

        for record in files:
            parent = PurePosixPath(record.path).parent.as_posix()
            directory = "(root)" if parent == "." else parent

            summary = directories.get(directory)
            if summary is None:
                depth = 0 if directory == "(root)" else directory.count("/") + 1
                summary = DirectorySummary(directory=directory, depth=depth)
                directories[directory] = summary

            summary.file_count += 1
            summary.total_lines += record.line_count
            summary.total_bytes += record.size_bytes

        return [directories[key] for key in sorted(directories)]

    @staticmethod
    def top_level_summary(files: list[FileRecord]) -> list[DirectorySummary]:
        """Aggregate files by top-level directory, largest first."""
        directories: dict[str, DirectorySummary] = {}

        for record in files:
            top = record.path.split("/", 1)[0] if "/" in record.path else "(root)"
            summary = directories.setdefault(top, DirectorySummary(directory=top))
            summary.file_count += 1
            summary.total_lines += record.line_count
            summary.total_bytes += record.size_bytes

        return sorted(directories.values(), key=lambda s: (-s.file_count, s.directory))
