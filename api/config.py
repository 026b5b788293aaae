"""Settings management for the knowledge-base service.

This module provides centralized configuration management using pydantic-settings.
All configuration is loaded from environment variables with sensible defaults,
and turned into the component configuration models by the builder methods.
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from core.chunking import BreakWeights, ChunkerConfig
from core.ingestion import ExclusionRules, ExclusionToggles, ScannerConfig
from core.knowledge import AssemblerConfig
from core.pipeline import PipelineConfig, RetryPolicy


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    List settings left unset fall back to the built-in exclusion rules.
    List values are given as JSON, e.g. ``EXCLUDE_DIRECTORIES='["vendor"]'``.

    Attributes:
        app_name: Name of the application.
        app_version: Application version.
        debug: Enable debug mode.
        log_level: Logging level.
        api_prefix: Prefix of the project routes.
        cors_origins: Allowed CORS origins.

        storage_root: Directory holding one subdirectory per project.
        database_url: SQLAlchemy URL of the state store.

        exclusion_schema_version: Version of the configured exclusion rules.
        exclude_directories: Excluded directory segments.
        exclude_patterns: Excluded glob patterns.
        exclude_files: Excluded file names.
        exclude_extensions: Excluded extensions.
        binary_extensions: Extensions never read for content.

        max_file_size: Content size ceiling for scanning.
        chunk_max_bytes: Byte ceiling per chunk.
        chunk_max_lines: Line ceiling per chunk.

        ndjson_threshold: File count above which the index is NDJSON.
        bundle_retention: Bundles kept per project.

        stage_timeout: Seconds per stage attempt.
        retry_max_attempts: Attempts per stage.
        retry_backoff: Delays before each retry.
        webhook_dedup_window: Webhook dedup window in seconds.
        incremental_threshold: Largest change set handled incrementally.

        github_webhook_secret: Secret for webhook signatures.
        github_token: Access token for private repositories.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application settings
    app_name: str = Field(default="Knowledge Base Builder", description="Application name")
    app_version: str = Field(default="0.1.0", description="Application version")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Logging level")
    api_prefix: str = Field(default="/api/v1", description="API route prefix")
    cors_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:3000"],
        description="Allowed CORS origins",
    )

    # Storage
    storage_root: str = Field(default="./storage/projects", description="Project storage root")
    database_url: str = Field(default="sqlite:///./storage/kb.db", description="State store URL")

    # Exclusion rules
    exclusion_schema_version: str | None = Field(default=None, description="Rule set version")
    exclude_directories: list[str] | None = Field(default=None, description="Excluded directories")
    exclude_patterns: list[str] | None = Field(default=None, description="Excluded globs")
    exclude_files: list[str] | None = Field(default=None, description="Excluded file names")
    exclude_extensions: list[str] | None = Field(default=None, description="Excluded extensions")
    binary_extensions: list[str] | None = Field(default=None, description="Binary extensions")

    include_vendor: bool = Field(default=False, description="Scan vendor directories")
    include_node_modules: bool = Field(default=False, description="Scan node_modules")
    include_storage: bool = Field(default=False, description="Scan storage directories")
    include_build_output: bool = Field(default=False, description="Scan build output")
    include_lock_files: bool = Field(default=False, description="Scan lock files")
    include_source_maps: bool = Field(default=False, description="Scan source maps")
    include_minified: bool = Field(default=False, description="Scan minified assets")

    # Scanner
    max_file_size: int = Field(default=1024 * 1024, description="Content size ceiling")
    warn_file_size: int = Field(default=512 * 1024, description="Large file warning size")

    # Chunker
    chunk_max_bytes: int = Field(default=200 * 1024, description="Max bytes per chunk")
    chunk_max_lines: int = Field(default=500, description="Max lines per chunk")
    chunk_min_lines: int = Field(default=10, description="Min lines before a break point")
    break_weight_empty_line: int = Field(default=10, description="Blank line weight")
    break_weight_class: int = Field(default=9, description="Class boundary weight")
    break_weight_function: int = Field(default=8, description="Function boundary weight")
    break_weight_block_end: int = Field(default=7, description="Block end weight")
    break_weight_comment: int = Field(default=5, description="Comment block weight")

    # Knowledge base
    ndjson_threshold: int = Field(default=10_000, description="NDJSON file-index threshold")
    bundle_retention: int = Field(default=3, description="Bundles kept per project")

    # Pipeline
    stage_timeout: float = Field(default=1800.0, description="Stage timeout in seconds")
    retry_max_attempts: int = Field(default=3, description="Attempts per stage")
    retry_backoff: list[float] = Field(
        default_factory=lambda: [5.0, 30.0, 60.0],
        description="Retry delays in seconds",
    )
    webhook_dedup_window: float = Field(default=60.0, description="Webhook dedup window")
    incremental_threshold: int = Field(default=500, description="Max incremental change set")

    # GitHub integration
    github_webhook_secret: str | None = Field(default=None, description="Webhook secret")
    github_token: str | None = Field(default=None, description="Repository access token")

    def exclusion_rules(self) -> ExclusionRules:
        """Build the exclusion rules, keeping defaults for unset lists."""
        overrides = {
            "schema_version": self.exclusion_schema_version,
            "directories": self.exclude_directories,
            "patterns": self.exclude_patterns,
            "files": self.exclude_files,
            "extensions": self.exclude_extensions,
            "binary_extensions": self.binary_extensions,
        }
        return ExclusionRules(
            **{key: value for key, value in overrides.items() if value is not None},
            toggles=ExclusionToggles(
                include_vendor=self.include_vendor,
                include_node_modules=self.include_node_modules,
                include_storage=self.include_storage,
                include_build_output=self.include_build_output,
                include_lock_files=self.include_lock_files,
                include_source_maps=self.include_source_maps,
                include_minified=self.include_minified,
            ),
        )

    def scanner_config(self) -> ScannerConfig:
        return ScannerConfig(max_file_size=self.max_file_size, warn_file_size=self.warn_file_size)

    def chunker_config(self) -> ChunkerConfig:
        return ChunkerConfig(
            max_bytes=self.chunk_max_bytes,
            max_lines=self.chunk_max_lines,
            min_lines=self.chunk_min_lines,
            break_weights=BreakWeights(
                empty_line=self.break_weight_empty_line,
                class_boundary=self.break_weight_class,
                function_boundary=self.break_weight_function,
                block_end=self.break_weight_block_end,
                comment_block=self.break_weight_comment,
            ),
        )

    def assembler_config(self) -> AssemblerConfig:
        return AssemblerConfig(
            ndjson_threshold=self.ndjson_threshold, retention=self.bundle_retention
        )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_max_attempts, backoff=tuple(self.retry_backoff)
        )

    def pipeline_config(self) -> PipelineConfig:
        return PipelineConfig(
            stage_timeout=self.stage_timeout,
            incremental_threshold=self.incremental_threshold,
            webhook_dedup_window=self.webhook_dedup_window,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Uses lru_cache to ensure settings are loaded once and reused.

    Returns:
        The application settings instance.
    """
    return Settings()
