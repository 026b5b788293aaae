"""Dependency injection setup for the knowledge-base API.

This module provides FastAPI dependency functions for injecting
services and resources into route handlers.
"""

from pathlib import Path
from typing import Annotated

from fastapi import Depends

from core.chunking import ContentChunker
from core.ingestion import ExclusionMatcher, FileScanner, RepositorySync
from core.knowledge import KnowledgeBaseAssembler
from core.pipeline import PipelineOrchestrator, StaticTokenProvider
from core.store import Database, ProjectStore
from integrations.github import PushEventHandler, WebhookProcessor

from .config import Settings, get_settings

# Type aliases for dependency injection
SettingsDep = Annotated[Settings, Depends(get_settings)]


# Global instances shared by all requests
_database: Database | None = None
_store: ProjectStore | None = None
_orchestrator: PipelineOrchestrator | None = None
_webhook_processor: WebhookProcessor | None = None


def _ensure_sqlite_directory(url: str) -> None:
    prefix = "sqlite:///"
    if url.startswith(prefix) and ":memory:" not in url:
        Path(url[len(prefix) :]).parent.mkdir(parents=True, exist_ok=True)


async def init_dependencies(settings: Settings) -> None:
    """Initialize global dependencies on application startup.

    Creates the state store and wires the pipeline components from the
    settings.

    Args:
        settings: Application settings instance.
    """
    global _database, _store, _orchestrator, _webhook_processor

    _ensure_sqlite_directory(settings.database_url)
    _database = Database(settings.database_url)
    _database.create_all()
    _store = ProjectStore(_database)

    _orchestrator = PipelineOrchestrator(
        store=_store,
        sync=RepositorySync(settings.storage_root),
        scanner=FileScanner(
            matcher=ExclusionMatcher(settings.exclusion_rules()),
            config=settings.scanner_config(),
        ),
        chunker=ContentChunker(settings.chunker_config()),
        assembler=KnowledgeBaseAssembler(settings.assembler_config()),
        credentials=StaticTokenProvider(settings.github_token),
        retry_policy=settings.retry_policy(),
        config=settings.pipeline_config(),
    )

    _webhook_processor = WebhookProcessor(
        PushEventHandler(_orchestrator.run_scan, _store.find_projects_by_repo)
    )


async def shutdown_dependencies() -> None:
    """Cleanup dependencies on application shutdown.

    Disposes the database engine and releases resources.
    """
    global _database, _store, _orchestrator, _webhook_processor

    if _database is not None:
        _database.dispose()
        _database = None

    _store = None
    _orchestrator = None
    _webhook_processor = None


def get_store() -> ProjectStore:
    """Get the project store.

    Returns:
        The shared ProjectStore instance.

    Raises:
        RuntimeError: If dependencies have not been initialized.
    """
    if _store is None:
        raise RuntimeError(
            "Project store not initialized. Ensure init_dependencies() was called on startup."
        )
    return _store


def get_orchestrator() -> PipelineOrchestrator:
    """Get the scan orchestrator.

    Returns:
        The shared PipelineOrchestrator instance.

    Raises:
        RuntimeError: If dependencies have not been initialized.
    """
    if _orchestrator is None:
        raise RuntimeError(
            "Orchestrator not initialized. Ensure init_dependencies() was called on startup."
        )
    return _orchestrator


def get_webhook_processor() -> WebhookProcessor:
    """Get the webhook processor.

    Raises:
        RuntimeError: If dependencies have not been initialized.
    """
    if _webhook_processor is None:
        raise RuntimeError(
            "Webhook processor not initialized. Ensure init_dependencies() was called on startup."
        )
    return _webhook_processor


# Type aliases for commonly used dependencies
StoreDep = Annotated[ProjectStore, Depends(get_store)]
OrchestratorDep = Annotated[PipelineOrchestrator, Depends(get_orchestrator)]
WebhookProcessorDep = Annotated[WebhookProcessor, Depends(get_webhook_processor)]
