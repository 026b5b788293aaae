"""Scan pipeline.

Sequences repository sync, manifest scanning, stack detection, chunking and
bundle assembly into full or incremental scans, with progress reporting,
retries and per-project mutual exclusion.

Example:
    >>> from core.pipeline import PipelineOrchestrator
    >>> orchestrator = PipelineOrchestrator(store, RepositorySync("/var/lib/kb"))
    >>> outcome = await orchestrator.run_scan(project.id, "manual")
    >>> print(outcome.status, outcome.kb_scan_id)
"""

from .credentials import CredentialProvider, StaticTokenProvider
from .orchestrator import (
    EXCLUSION_LOG_FILE,
    SKIP_ALREADY_RUNNING,
    SKIP_DEDUPLICATED,
    STACK_FILE,
    PipelineConfig,
    PipelineOrchestrator,
    ScanOutcome,
)
from .progress import (
    STAGE_WEIGHTS,
    STAGES,
    ProgressChannel,
    ProgressEvent,
    StoreProgressObserver,
    overall_percent,
)
from .retry import RetryPolicy
from .strategy import ScanMode, ScanPlan, ScanStrategy, WebhookDeduplicator

__all__ = [
    # Orchestration
    "PipelineOrchestrator",
    "PipelineConfig",
    "ScanOutcome",
    "SKIP_DEDUPLICATED",
    "SKIP_ALREADY_RUNNING",
    "EXCLUSION_LOG_FILE",
    "STACK_FILE",
    # Strategy
    "ScanStrategy",
    "ScanPlan",
    "ScanMode",
    "WebhookDeduplicator",
    # Progress
    "ProgressChannel",
    "ProgressEvent",
    "StoreProgressObserver",
    "STAGES",
    "STAGE_WEIGHTS",
    "overall_percent",
    # Retry and credentials
    "RetryPolicy",
    "CredentialProvider",
    "StaticTokenProvider",
]
