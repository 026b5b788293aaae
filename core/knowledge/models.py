"""Pydantic models for knowledge-base bundles."""

from collections.abc import Iterator
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from core.chunking.chunk_id import ChunkId, parse_chunk_id
from core.ingestion.models import DirectorySummary

SCAN_META_FILE = "scan_meta.json"
FILES_INDEX_JSON = "files_index.json"
FILES_INDEX_NDJSON = "files_index.ndjson"
CHUNKS_FILE = "chunks.ndjson"
DIRECTORY_STATS_FILE = "directory_stats.json"


class AssemblerConfig(BaseModel):
    """Configuration for bundle assembly.

    Attributes:
        ndjson_threshold: File count above which the file index is NDJSON.
        retention: Completed bundles kept per project.
        sample_limit: Mismatched ids included in validation logs.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    ndjson_threshold: int = Field(10_000, ge=1, description="NDJSON file-index threshold")
    retention: int = Field(3, ge=1, description="Bundles kept per project")
    sample_limit: int = Field(10, ge=1, description="Validation sample size")


class ScanMetaStats(BaseModel):
    """Aggregate counts of a bundle."""

    total_files_scanned: int = Field(0, ge=0)
    total_files_excluded: int = Field(0, ge=0)
    total_chunks: int = Field(0, ge=0)
    total_lines: int = Field(0, ge=0)
    total_bytes: int = Field(0, ge=0)
    scan_duration_ms: int = Field(0, ge=0)


class ScanMeta(BaseModel):
    """Contents of ``scan_meta.json``."""

    scan_id: str = Field(..., description="Bundle scan id")
    project_id: str = Field(..., description="Owning project")
    repo_full_name: str | None = Field(None, description="owner/name on the host")
    default_branch: str = Field(..., description="Default branch")
    selected_branch: str = Field(..., description="Tracked branch")
    head_commit_sha: str = Field(..., description="HEAD revision of the working copy")
    scanned_at_iso: datetime = Field(..., description="Build time")
    scanner_version: str = Field(..., description="Scanner version")
    exclusion_rules_version: str | None = Field(None, description="Exclusion rule version")
    is_incremental: bool = Field(False, description="Produced by an incremental scan")
    previous_scan_id: str | None = Field(None, description="Previous bundle scan id")
    stats: ScanMetaStats = Field(default_factory=ScanMetaStats)


class FileIndexEntry(BaseModel):
    """One file of the file index with the ids of its chunks."""

    file_path: str
    file_id: str | None = None
    extension: str | None = None
    language: str = "plaintext"
    size_bytes: int = 0
    total_lines: int = 0
    file_sha1: str | None = None
    is_binary: bool = False
    is_excluded: bool = False
    exclusion_reason: str | None = None
    framework_hints: list[str] = Field(default_factory=list)
    chunk_ids: list[str] = Field(default_factory=list)
    chunk_count: int = 0
    symbols_declared: list[str] = Field(default_factory=list)
    imports: list[str] = Field(default_factory=list)

    def parsed_chunk_ids(self) -> list[ChunkId]:
        """Parse chunk ids, including legacy formats found in old bundles."""
        return [parse_chunk_id(value) for value in self.chunk_ids]


class ChunkRecord(BaseModel):
    """One line of ``chunks.ndjson``."""

    chunk_id: str
    file_path: str
    file_id: str | None = None
    file_sha1: str | None = None
    start_line: int
    end_line: int
    chunk_index: int = 0
    is_complete_file: bool = False
    chunk_bytes: int = 0
    chunk_lines: int = 0
    chunk_sha1: str | None = None
    content: str | None = Field(None, repr=False)
    symbols_declared: list[str] = Field(default_factory=list)
    symbols_used: list[str] = Field(default_factory=list)
    imports: list[str] = Field(default_factory=list)
    references: list[str] = Field(default_factory=list)

    @property
    def parsed_chunk_id(self) -> ChunkId:
        return parse_chunk_id(self.chunk_id)


class ExtensionStats(BaseModel):
    files: int = 0
    lines: int = 0
    bytes: int = 0


class DirectoryStats(BaseModel):
    """Contents of ``directory_stats.json``."""

    generated_at: datetime
    by_directory: list[DirectorySummary] = Field(default_factory=list)
    by_top_level: list[DirectorySummary] = Field(default_factory=list)
    by_extension: dict[str, ExtensionStats] = Field(default_factory=dict)


class ValidationWarning(BaseModel):
    """Non-fatal mismatch between the file index and the chunk store.

    Attributes:
        message: Human-readable description.
        missing_in_chunks: Sample of ids referenced by the index but absent
            from the chunk store.
        orphaned_chunks: Sample of ids in the chunk store that no file
            references.
        duplicated: Sample of ids referenced more than once.
    """

    message: str
    missing_in_chunks: list[str] = Field(default_factory=list)
    orphaned_chunks: list[str] = Field(default_factory=list)
    duplicated: list[str] = Field(default_factory=list)


class ValidationSummary(BaseModel):
    """Outcome of a bundle build and its consistency check."""

    is_valid: bool = Field(..., description="Index and chunk store are a bijection")
    files_index_entries: int = Field(0, ge=0)
    chunks_count: int = Field(0, ge=0)
    chunk_ids_in_index: int = Field(0, ge=0)
    chunk_ids_in_chunks: int = Field(0, ge=0)
    missing_in_chunks: int = Field(0, ge=0)
    orphaned_chunks: int = Field(0, ge=0)
    duplicated_ids: int = Field(0, ge=0)
    coverage_percent: float = Field(100.0, ge=0)
    output_path: str
    scan_id: str
    warnings: list[ValidationWarning] = Field(default_factory=list)


class KnowledgeBundle(BaseModel):
    """A bundle read back from disk.

    Chunks are not loaded eagerly; use ``iter_chunks`` to stream them.
    """

    path: Path
    meta: ScanMeta
    files: list[FileIndexEntry] = Field(default_factory=list)
    directory_stats: DirectoryStats | None = None

    @property
    def scan_id(self) -> str:
        return self.meta.scan_id

    def iter_chunks(self) -> Iterator[ChunkRecord]:
        """Stream chunk records in file order."""
        with open(self.path / CHUNKS_FILE, encoding="utf-8") as handle:
            for line in handle:
                if line.strip():
                    yield ChunkRecord.model_validate_json(line)
