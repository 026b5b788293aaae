"""Ingestion module for repository synchronization and scanning.

This module provides functionality for keeping project working copies in
sync with their remotes, computing change sets between revisions, applying
exclusion rules and building file manifests.

Example:
    >>> from core.ingestion import FileScanner, RepositorySync
    >>> sync = RepositorySync("/var/lib/kb")
    >>> sha = await sync.sync_to_latest(project, token)
    >>> manifest = await FileScanner().scan(sync.paths_for(project).repo)
    >>> print(f"Scanned {manifest.stats.total_files} files at {sha[:8]}")
"""

from .models import (
    ChangeSet,
    DirectorySummary,
    ExclusionEntry,
    ExclusionRules,
    ExclusionToggles,
    FileRecord,
    ManifestStats,
    ScanManifest,
    ScannerConfig,
    ScanWarning,
    file_id_for,
)
from .exclusion import Classification, ExclusionMatcher
from .diff import DiffAnalyzer
from .frameworks import STACK_FILES, FrameworkDetector, StackInfo, touches_stack_files
from .repo import RepositorySync, authenticated_url
from .scanner import FileScanner, ManifestProgress

__all__ = [
    # Models
    "ChangeSet",
    "DirectorySummary",
    "ExclusionEntry",
    "ExclusionRules",
    "ExclusionToggles",
    "FileRecord",
    "ManifestStats",
    "ScanManifest",
    "ScannerConfig",
    "ScanWarning",
    "file_id_for",
    # Exclusion
    "ExclusionMatcher",
    "Classification",
    # Git operations
    "RepositorySync",
    "DiffAnalyzer",
    "authenticated_url",
    # Scanning
    "FileScanner",
    "ManifestProgress",
    # Stack detection
    "FrameworkDetector",
    "StackInfo",
    "STACK_FILES",
    "touches_stack_files",
]
