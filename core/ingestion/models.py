"""Pydantic models for the ingestion module.

This module defines the data models produced while synchronizing and
scanning a repository: exclusion rules, file records, change sets, scan
manifests and the configuration of the scanner itself.
"""

import hashlib
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

EXCLUSION_SCHEMA_VERSION = "2.0.0"


def file_id_for(path: str) -> str:
    """Return the stable surrogate identifier for a repository path."""
    return "f_" + hashlib.sha1(path.encode("utf-8")).hexdigest()[:12]


class ExclusionToggles(BaseModel):
    """Switches that re-include groups of normally excluded paths.

    Attributes:
        include_vendor: Scan ``vendor`` directories.
        include_node_modules: Scan ``node_modules`` directories.
        include_storage: Scan framework ``storage`` directories.
        include_build_output: Scan build output directories.
        include_lock_files: Scan ``*.lock`` files.
        include_source_maps: Scan ``*.map`` files.
        include_minified: Scan minified assets.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    include_vendor: bool = Field(False, description="Scan vendor directories")
    include_node_modules: bool = Field(False, description="Scan node_modules directories")
    include_storage: bool = Field(False, description="Scan storage directories")
    include_build_output: bool = Field(False, description="Scan build output directories")
    include_lock_files: bool = Field(False, description="Scan lock files")
    include_source_maps: bool = Field(False, description="Scan source maps")
    include_minified: bool = Field(False, description="Scan minified assets")


class ExclusionRules(BaseModel):
    """Versioned set of rules deciding which files are scanned.

    ``schema_version`` must be bumped whenever any of the lists change so
    that consumers can detect manifests produced under older rules.

    Attributes:
        schema_version: Monotonic version of the rule set.
        directories: Directory names (or multi-segment paths) excluded anywhere.
        patterns: Glob patterns matched against the relative path.
        files: Exact file names to exclude.
        extensions: Extensions to exclude, multi-part allowed (``min.js``).
        binary_extensions: Extensions whose content is never read.
        toggles: Re-inclusion switches.
        extension_map: Extension to language mapping.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    schema_version: str = Field(EXCLUSION_SCHEMA_VERSION, description="Rule set version")
    directories: list[str] = Field(
        default_factory=lambda: [
            ".git",
            ".svn",
            ".hg",
            "vendor",
            "node_modules",
            "bower_components",
            "storage",
            "bootstrap/cache",
            "public/build",
            "public/hot",
            "dist",
            "build",
            ".output",
            ".next",
            ".nuxt",
            ".idea",
            ".vscode",
            ".fleet",
            "cache",
            ".cache",
            "__pycache__",
            ".pytest_cache",
            ".mypy_cache",
            ".phpunit.cache",
            "coverage",
            ".nyc_output",
        ],
        description="Excluded directory segments",
    )
    patterns: list[str] = Field(
        default_factory=lambda: [
            "**/node_modules/**",
            "**/vendor/**",
            "**/.git/**",
            "**/storage/logs/**",
            "**/storage/framework/**",
            "**/bootstrap/cache/**",
        ],
        description="Excluded glob patterns",
    )
    files: list[str] = Field(
        default_factory=lambda: [
            ".DS_Store",
            "Thumbs.db",
            ".gitkeep",
            ".gitignore",
            ".editorconfig",
        ],
        description="Excluded file names",
    )
    extensions: list[str] = Field(
        default_factory=lambda: ["lock", "log", "map", "min.js", "min.css", "bundle.js", "chunk.js"],
        description="Excluded extensions",
    )
    binary_extensions: list[str] = Field(
        default_factory=lambda: [
            "png", "jpg", "jpeg", "gif", "bmp", "ico", "webp", "svg", "avif", "tiff",
            "mp3", "mp4", "wav", "avi", "mov", "mkv", "webm", "ogg", "flac",
            "pdf", "doc", "docx", "xls", "xlsx", "ppt", "pptx",
            "zip", "tar", "gz", "rar", "7z", "bz2", "xz",
            "exe", "dll", "so", "dylib", "bin", "app",
            "ttf", "otf", "woff", "woff2", "eot",
            "sqlite", "db", "mysql", "sqlite3", "mdb",
            "phar", "jar", "war", "pyc", "class", "o", "a",
        ],
        description="Extensions treated as binary",
    )
    toggles: ExclusionToggles = Field(
        default_factory=ExclusionToggles, description="Re-inclusion switches"
    )
    extension_map: dict[str, str] = Field(
        default_factory=lambda: {
            "php": "php",
            "blade.php": "blade",
            "py": "python",
            "pyi": "python",
            "js": "javascript",
            "mjs": "javascript",
            "cjs": "javascript",
            "ts": "typescript",
            "mts": "typescript",
            "tsx": "typescriptreact",
            "jsx": "javascriptreact",
            "vue": "vue",
            "svelte": "svelte",
            "go": "go",
            "rb": "ruby",
            "rs": "rust",
            "java": "java",
            "kt": "kotlin",
            "cs": "csharp",
            "css": "css",
            "scss": "scss",
            "sass": "sass",
            "less": "less",
            "json": "json",
            "yml": "yaml",
            "yaml": "yaml",
            "toml": "toml",
            "md": "markdown",
            "mdx": "mdx",
            "sql": "sql",
            "sh": "shell",
            "bash": "shell",
            "zsh": "shell",
            "xml": "xml",
            "html": "html",
            "twig": "twig",
            "env": "dotenv",
            "env.example": "dotenv",
        },
        description="Extension to language mapping",
    )


class FileRecord(BaseModel):
    """One scanned file of a project.

    Attributes:
        path: Relative POSIX path from the repository root.
        file_id: Stable surrogate id derived from the path.
        extension: Lower-cased extension (multi-part where known), None if absent.
        language: Detected language.
        size_bytes: File size in bytes.
        line_count: Number of lines (newline count + 1, 0 when unread).
        sha1: SHA-1 of the full file content.
        is_binary: Whether the file is binary.
        is_excluded: Whether the file was excluded (excluded files are only
            kept in the exclusion log).
        exclusion_reason: Rule that excluded the file.
        mime_type: Guessed MIME type.
        framework_hints: Frameworks the file appears to use.
        symbols_declared: Symbols declared anywhere in the file.
        imports: Import statements found in the file.
        file_modified_at: Last modification time of the file.
        rules_version: Exclusion rule version the record was produced under.
        content: Decoded content for chunking; never persisted.
    """

    path: str = Field(..., description="Relative path from repo root")
    file_id: str = Field("", description="Stable surrogate id")
    extension: str | None = Field(None, description="File extension")
    language: str = Field("plaintext", description="Detected language")
    size_bytes: int = Field(..., ge=0, description="File size in bytes")
    line_count: int = Field(0, ge=0, description="Number of lines")
    sha1: str | None = Field(None, description="SHA-1 content hash")
    is_binary: bool = Field(False, description="Binary file flag")
    is_excluded: bool = Field(False, description="Exclusion flag")
    exclusion_reason: str | None = Field(None, description="Exclusion reason")
    mime_type: str | None = Field(None, description="Guessed MIME type")
    framework_hints: list[str] = Field(default_factory=list, description="Framework hints")
    symbols_declared: list[str] = Field(default_factory=list, description="Declared symbols")
    imports: list[str] = Field(default_factory=list, description="Import statements")
    file_modified_at: datetime | None = Field(None, description="Modification time")
    rules_version: str = Field(EXCLUSION_SCHEMA_VERSION, description="Exclusion rule version")
    content: str | None = Field(None, exclude=True, repr=False, description="Decoded content")

    class Config:
        """Pydantic model configuration."""

        frozen = False
        extra = "forbid"

    def model_post_init(self, __context: object) -> None:
        if not self.file_id:
            self.file_id = file_id_for(self.path)

    @property
    def is_chunkable(self) -> bool:
        """Whether the file carries content for the chunker."""
        return not self.is_binary and self.content is not None


class ExclusionEntry(BaseModel):
    """A path skipped by the exclusion rules."""

    model_config = ConfigDict(frozen=True)

    path: str = Field(..., description="Relative path")
    reason: str = Field(..., description="Matching rule")


class ScanWarning(BaseModel):
    """A non-fatal problem encountered while scanning or chunking.

    Attributes:
        path: Path of the file involved, if any.
        stage: Stage that produced the warning.
        message: Human-readable message.
    """

    model_config = ConfigDict(frozen=True)

    path: str | None = Field(None, description="Affected path")
    stage: str = Field(..., description="Producing stage")
    message: str = Field(..., description="Warning message")


class ManifestStats(BaseModel):
    """Aggregate counts over a manifest."""

    total_files: int = Field(0, ge=0, description="Included files")
    total_lines: int = Field(0, ge=0, description="Sum of line counts")
    total_bytes: int = Field(0, ge=0, description="Sum of file sizes")
    files_excluded: int = Field(0, ge=0, description="Excluded paths")
    binary_files: int = Field(0, ge=0, description="Binary files")
    oversized_files: int = Field(0, ge=0, description="Files above the content ceiling")

    class Config:
        """Pydantic model configuration."""

        frozen = False
        extra = "forbid"


class ScanManifest(BaseModel):
    """Result of walking a working copy.

    Attributes:
        files: Included file records sorted by path.
        excluded: Paths skipped by the exclusion rules.
        stats: Aggregate counts.
        warnings: Non-fatal problems.
        rules_version: Exclusion rule version used.
    """

    files: list[FileRecord] = Field(default_factory=list, description="Included files")
    excluded: list[ExclusionEntry] = Field(default_factory=list, description="Exclusion log")
    stats: ManifestStats = Field(default_factory=ManifestStats, description="Aggregate counts")
    warnings: list[ScanWarning] = Field(default_factory=list, description="Scan warnings")
    rules_version: str = Field(EXCLUSION_SCHEMA_VERSION, description="Exclusion rule version")

    class Config:
        """Pydantic model configuration."""

        frozen = False
        extra = "forbid"


class ChangeSet(BaseModel):
    """Path-level difference between two revisions.

    Renames appear as a modification of the new path plus a deletion of the
    old path.
    """

    from_revision: str | None = Field(None, description="Base revision")
    to_revision: str | None = Field(None, description="Target revision")
    added: list[str] = Field(default_factory=list, description="Added paths")
    modified: list[str] = Field(default_factory=list, description="Modified paths")
    deleted: list[str] = Field(default_factory=list, description="Deleted paths")

    class Config:
        """Pydantic model configuration."""

        frozen = False
        extra = "forbid"

    @property
    def total(self) -> int:
        """Number of changed paths."""
        return len(self.added) + len(self.modified) + len(self.deleted)

    @property
    def is_empty(self) -> bool:
        return self.total == 0

    def all_paths(self) -> set[str]:
        """Every path touched by the change set."""
        return set(self.added) | set(self.modified) | set(self.deleted)


class DirectorySummary(BaseModel):
    """Per-directory aggregate used by the knowledge-base statistics."""

    directory: str = Field(..., description="Directory path or '(root)'")
    file_count: int = Field(0, ge=0, description="Files directly inside")
    total_lines: int = Field(0, ge=0, description="Sum of line counts")
    total_bytes: int = Field(0, ge=0, description="Sum of sizes")
    depth: int = Field(0, ge=0, description="Directory depth, 0 for root")


class ScannerConfig(BaseModel):
    """Configuration for the file scanner.

    Attributes:
        max_file_size: Content is only read for files up to this many bytes.
        warn_file_size: Files larger than this are logged.
        batch_size: Number of files processed concurrently.
        progress_interval: Publish progress every N files.
        file_timeout: Seconds allowed for reading and hashing a single file.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_file_size: int = Field(1024 * 1024, ge=1, description="Content size ceiling in bytes")
    warn_file_size: int = Field(512 * 1024, ge=1, description="Warning size in bytes")
    batch_size: int = Field(50, ge=1, description="Concurrent files per batch")
    progress_interval: int = Field(100, ge=1, description="Progress cadence in files")
    file_timeout: float = Field(30.0, gt=0, description="Per-file timeout in seconds")
