"""Content chunking for the knowledge base.

Splits scanned files into contiguous, content-addressed line ranges and
attaches lightweight symbol metadata to each range.

Example:
    >>> from core.chunking import ContentChunker, ChunkerConfig
    >>> chunker = ContentChunker(ChunkerConfig(max_lines=200, min_lines=5))
    >>> chunks = chunker.chunk_file(record)
    >>> print([(c.start_line, c.end_line) for c in chunks])
"""

from .chunk_id import (
    ChunkId,
    ContentChunkId,
    IndexChunkId,
    PathRangeChunkId,
    generate_chunk_id,
    parse_chunk_id,
)
from .chunker import ChunkProgress, ContentChunker, verify_coverage
from .models import BreakWeights, Chunk, ChunkerConfig, ChunkResult
from .symbols import SymbolExtractor, SymbolInfo

__all__ = [
    # Chunking
    "ContentChunker",
    "ChunkProgress",
    "verify_coverage",
    # Models
    "Chunk",
    "ChunkResult",
    "ChunkerConfig",
    "BreakWeights",
    # Identifiers
    "ChunkId",
    "ContentChunkId",
    "PathRangeChunkId",
    "IndexChunkId",
    "generate_chunk_id",
    "parse_chunk_id",
    # Symbols
    "SymbolExtractor",
    "SymbolInfo",
]
