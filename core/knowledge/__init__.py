"""Knowledge-base bundles.

Writes the durable output of a scan (metadata, file index, chunk store and
directory statistics), checks that index and chunk store agree, and prunes
old bundles.

Example:
    >>> from core.knowledge import KnowledgeBaseAssembler, load_bundle
    >>> summary = KnowledgeBaseAssembler().build(project, scan, repo, kb, files, ids, chunks)
    >>> bundle = load_bundle(summary.output_path)
    >>> print(bundle.meta.head_commit_sha, summary.is_valid)
"""

from .models import (
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
from .assembler import BuildCancelledError, KnowledgeBaseAssembler, load_bundle, resolve_head

__all__ = [
    "KnowledgeBaseAssembler",
    "BuildCancelledError",
    "load_bundle",
    "resolve_head",
    # Models
    "AssemblerConfig",
    "ScanMeta",
    "ScanMetaStats",
    "FileIndexEntry",
    "ChunkRecord",
    "DirectoryStats",
    "ExtensionStats",
    "KnowledgeBundle",
    "ValidationSummary",
    "ValidationWarning",
]
