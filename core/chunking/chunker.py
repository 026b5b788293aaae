"""Line-range chunking of file content.

Files within the line and byte ceilings become a single chunk. Larger
files are cut into segments of at most ``max_lines`` lines, moving each cut
backward to the best nearby break point (blank line, declaration start,
closing brace, comment block) so functions and classes are not severed.
"""

import asyncio
import hashlib
import re
from collections.abc import Callable

import structlog

from core.ingestion.models import FileRecord, ScanWarning

from .chunk_id import generate_chunk_id
from .models import Chunk, ChunkerConfig, ChunkResult
from .symbols import SymbolExtractor

logger = structlog.get_logger(__name__)

# Called with (processed, total).
ChunkProgress = Callable[[int, int], None]

_MODIFIERS = (
    r"(?:(?:public|private|protected|internal|static|abstract|final|readonly|export|default|"
    r"async|override|pub|sealed|open|data)\s+)*"
)
# A keyword only opens a declaration when a name or generic list follows it.
_CLASS_START = re.compile(
    _MODIFIERS
    + r"(?:(?:class|interface|trait|enum|struct|module|record|object)\s+[\w$\\]|impl[\s<])"
)
_FUNCTION_START = re.compile(_MODIFIERS + r"(?:function|def|func|fn|fun)(?:\s|[(*<])")
_BLOCK_END = re.compile(r"^(?:[}\])]+[;,)]*|end|@end\w*|fi|done|esac)$")
_COMMENT_START = re.compile(r"^(?:/\*\*?|#(?!\[)|//|\"\"\"|'''|<!--|--)")


class ContentChunker:
    """Splits file content into content-addressed chunks.

    Attributes:
        config: Chunking configuration.
        symbols: Symbol extractor used for per-chunk metadata.
    """

    def __init__(
        self,
        config: ChunkerConfig | None = None,
        symbols: SymbolExtractor | None = None,
    ) -> None:
        """Initialize the chunker.

        Args:
            config: Chunking configuration. Uses defaults if not provided.
            symbols: Symbol extractor. Creates one if not provided.
        """
        self.config = config or ChunkerConfig()
        self.symbols = symbols or SymbolExtractor()
        self._logger = logger.bind(component="chunker")

    def score_line(self, line: str) -> tuple[int, int]:
        """Score a line as a break point.

        Args:
            line: Raw line text.

        Returns:
            Tuple of (score, offset). The segment ends on the line itself
            when offset is 0 and on the preceding line when offset is -1,
            so that a declaration starts the next chunk. Score 0 means the
            line is not a break point.
        """
        weights = self.config.break_weights
        stripped = line.strip()

        if not stripped:
            return weights.empty_line, 0
        if _CLASS_START.match(stripped):
            return weights.class_boundary, -1
        if _FUNCTION_START.match(stripped):
            return weights.function_boundary, -1
        if _BLOCK_END.match(stripped):
            return weights.block_end, 0
        if _COMMENT_START.match(stripped):
            return weights.comment_block, -1
        return 0, 0

    def find_break_point(self, lines: list[str], start: int, end: int) -> int | None:
        """Find the best segment end between the midpoint and ``end``.

        Lines are scanned backward from ``end`` down to (but excluding) the
        segment midpoint. The highest score wins; on ties the later line is
        kept.

        Args:
            lines: All lines of the file.
            start: First line of the segment, 1-based.
            end: Candidate last line of the segment, 1-based.

        Returns:
            The chosen last line, or None if no break point qualifies.
        """
        best_score = 0
        best_end: int | None = None
        midpoint = start + (end - start) // 2

        for line_no in range(end, midpoint, -1):
            score, offset = self.score_line(lines[line_no - 1])
            if score <= best_score:
                continue

            candidate = line_no + offset
            if candidate - start + 1 < self.config.min_lines:
                continue

            best_score = score
            best_end = candidate

        return best_end

    def _byte_limited_end(self, lines: list[str], start: int, end: int) -> int:
        total = 0
        for line_no in range(start, end + 1):
            # Every line but the last of the file carries its newline.
            total += len(lines[line_no - 1].encode("utf-8")) + 1
            if total - 1 > self.config.max_bytes and line_no > start:
                return line_no - 1
        return end

    def segments(self, lines: list[str]) -> list[tuple[int, int]]:
        """Compute the (start, end) line ranges for a file.

        Args:
            lines: All lines of the file.

        Returns:
            Contiguous, ascending, inclusive 1-based ranges covering every line.
        """
        total = len(lines)
        ranges: list[tuple[int, int]] = []
        start = 1

        while start <= total:
            end = min(start + self.config.max_lines - 1, total)
            end = self._byte_limited_end(lines, start, end)

            if end < total:
                break_point = self.find_break_point(lines, start, end)
                if break_point is not None:
                    end = break_point

            ranges.append((start, end))
            start = end + 1

        return ranges

    def chunk_file(self, file: FileRecord, content: str | None = None) -> list[Chunk]:
        """Split one file into chunks.

        Args:
            file: Manifest record of the file.
            content: Decoded content. Falls back to ``file.content``.

        Returns:
            Chunks ordered by start line; empty for empty content.
        """
        text = content if content is not None else file.content
        if not text:
            return []

        file_sha1 = file.sha1 or hashlib.sha1(text.encode("utf-8")).hexdigest()
        lines = text.split("\n")

        if len(lines) <= self.config.max_lines and len(text.encode("utf-8")) <= self.config.max_bytes:
            ranges = [(1, len(lines))]
            complete = True
        else:
            ranges = self.segments(lines)
            complete = len(ranges) == 1

        chunks: list[Chunk] = []
        for index, (start, end) in enumerate(ranges):
            body = "\n".join(lines[start - 1 : end])
            info = self.symbols.extract(body, file.language)
            chunks.append(
                Chunk(
                    chunk_id=generate_chunk_id(file.path, file_sha1, start, end),
                    path=file.path,
                    file_id=file.file_id,
                    file_sha1=file_sha1,
                    start_line=start,
                    end_line=end,
                    chunk_index=index,
                    is_complete_file=complete,
                    chunk_bytes=len(body.encode("utf-8")),
                    chunk_lines=end - start + 1,
                    chunk_sha1=hashlib.sha1(body.encode("utf-8")).hexdigest(),
                    content=body,
                    symbols_declared=info.declared,
                    symbols_used=info.used,
                    imports=info.imports,
                    references=info.references,
                )
            )

        return chunks

    async def chunk_manifest(
        self,
        files: list[FileRecord],
        progress: ChunkProgress | None = None,
    ) -> ChunkResult:
        """Chunk every chunkable file of a manifest.

        Files are chunked concurrently in batches; the result is ordered by
        (path, start line) regardless of completion order. A file that fails
        to chunk is skipped with a warning.

        Args:
            files: Manifest records; binary and metadata-only files are skipped.
            progress: Optional callback with (processed, total).

        Returns:
            ChunkResult with ordered chunks and warnings.
        """
        chunkable = sorted((f for f in files if f.is_chunkable), key=lambda f: f.path)
        total = len(chunkable)
        loop = asyncio.get_event_loop()

        chunks: list[Chunk] = []
        warnings: list[ScanWarning] = []
        files_chunked = 0
        processed = 0

        self._logger.info("chunking_started", files=total)

        for batch_start in range(0, total, self.config.batch_size):
            batch = chunkable[batch_start : batch_start + self.config.batch_size]
            tasks = [loop.run_in_executor(None, self.chunk_file, record) for record in batch]
            results = await asyncio.gather(*tasks, return_exceptions=True)

            for record, result in zip(batch, results, strict=True):
                processed += 1
                if isinstance(result, BaseException):
                    self._logger.warning("chunking_failed", path=record.path, error=str(result))
                    warnings.append(ScanWarning(path=record.path, stage="chunk", message=str(result)))
                elif result:
                    chunks.extend(result)
                    files_chunked += 1

                if progress and processed % self.config.progress_interval == 0:
                    progress(processed, total)

        if progress:
            progress(processed, total)

        self._logger.info(
            "chunking_complete",
            files=files_chunked,
            chunks=len(chunks),
            warnings=len(warnings),
        )
        return ChunkResult(chunks=chunks, warnings=warnings, files_chunked=files_chunked)


def verify_coverage(chunks: list[Chunk], line_count: int) -> bool:
    """Check that chunks cover lines 1..line_count exactly once, in order."""
    expected = 1
    for chunk in chunks:
        if chunk.start_line != expected or chunk.end_line < chunk.start_line:
            return False
        expected = chunk.end_line + 1
    return expected == line_count + 1 if chunks else line_count == 0
