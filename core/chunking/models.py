"""Pydantic models for content chunking."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from core.ingestion.models import ScanWarning


class BreakWeights(BaseModel):
    """Preference scores for chunk break points (higher is preferred).

    Attributes:
        empty_line: Blank line.
        class_boundary: Start of a class, interface, trait or similar.
        function_boundary: Start of a function or method.
        block_end: Line that only closes a block.
        comment_block: Start of a comment or docblock.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    empty_line: int = Field(10, ge=0, description="Blank line")
    class_boundary: int = Field(9, ge=0, description="Class boundary")
    function_boundary: int = Field(8, ge=0, description="Function boundary")
    block_end: int = Field(7, ge=0, description="Closing-block line")
    comment_block: int = Field(5, ge=0, description="Comment block start")


class ChunkerConfig(BaseModel):
    """Configuration for content chunking.

    Attributes:
        max_bytes: Byte ceiling for a single chunk.
        max_lines: Line ceiling for a single chunk.
        min_lines: Break points closer than this to a segment start are ignored.
        break_weights: Break point preference table.
        batch_size: Files chunked concurrently.
        progress_interval: Publish progress every N files.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_bytes: int = Field(200 * 1024, ge=1, description="Max bytes per chunk")
    max_lines: int = Field(500, ge=2, description="Max lines per chunk")
    min_lines: int = Field(10, ge=1, description="Min lines before a break point")
    break_weights: BreakWeights = Field(
        default_factory=BreakWeights, description="Break point weights"
    )
    batch_size: int = Field(50, ge=1, description="Concurrent files per batch")
    progress_interval: int = Field(50, ge=1, description="Progress cadence in files")

    @model_validator(mode="after")
    def _check_bounds(self) -> "ChunkerConfig":
        if self.min_lines >= self.max_lines:
            raise ValueError("min_lines must be smaller than max_lines")
        return self


class Chunk(BaseModel):
    """A contiguous line range of one file.

    Attributes:
        chunk_id: Deterministic identifier of the range.
        path: File path relative to the repository root.
        file_id: Surrogate id of the owning file.
        file_sha1: Content hash of the whole file.
        start_line: First line, 1-based inclusive.
        end_line: Last line, inclusive.
        chunk_index: Ordinal within the file, 0-based.
        is_complete_file: Whether the chunk spans the whole file.
        chunk_bytes: UTF-8 size of the content.
        chunk_lines: Number of lines.
        chunk_sha1: Content hash of the chunk.
        content: Raw chunk content.
        symbols_declared: Symbols declared in the chunk.
        symbols_used: Identifiers called in the chunk.
        imports: Import statements in the chunk.
        references: Qualified names referenced in the chunk.
    """

    model_config = ConfigDict(frozen=True)

    chunk_id: str = Field(..., description="Chunk identifier")
    path: str = Field(..., description="File path")
    file_id: str = Field(..., description="Owning file id")
    file_sha1: str = Field(..., description="File content hash")
    start_line: int = Field(..., ge=1, description="Start line")
    end_line: int = Field(..., ge=1, description="End line")
    chunk_index: int = Field(..., ge=0, description="Ordinal within file")
    is_complete_file: bool = Field(False, description="Whole-file chunk")
    chunk_bytes: int = Field(..., ge=0, description="Content bytes")
    chunk_lines: int = Field(..., ge=1, description="Content lines")
    chunk_sha1: str = Field(..., description="Chunk content hash")
    content: str = Field(..., repr=False, description="Raw content")
    symbols_declared: list[str] = Field(default_factory=list, description="Declared symbols")
    symbols_used: list[str] = Field(default_factory=list, description="Used symbols")
    imports: list[str] = Field(default_factory=list, description="Imports")
    references: list[str] = Field(default_factory=list, description="References")

    def to_record(self) -> dict[str, Any]:
        """Convert to the chunk-store record format."""
        return self.model_dump(mode="json")


class ChunkResult(BaseModel):
    """Chunks of a whole manifest plus per-file warnings."""

    chunks: list[Chunk] = Field(default_factory=list, description="Ordered chunks")
    warnings: list[ScanWarning] = Field(default_factory=list, description="Skipped files")
    files_chunked: int = Field(0, ge=0, description="Files that produced chunks")

    def chunk_ids_by_path(self) -> dict[str, list[str]]:
        """Group chunk ids by file path, preserving order."""
        grouped: dict[str, list[str]] = {}
        for chunk in self.chunks:
            grouped.setdefault(chunk.path, []).append(chunk.chunk_id)
        return grouped
