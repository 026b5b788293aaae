"""Full versus incremental scan decisions and webhook deduplication."""

import threading
import time
from collections.abc import Callable
from enum import Enum

import structlog
from pydantic import BaseModel, Field

from core.ingestion.frameworks import touches_stack_files
from core.ingestion.models import ChangeSet
from core.models import ScanTrigger

logger = structlog.get_logger(__name__)


class ScanMode(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    UNCHANGED = "unchanged"


class ScanPlan(BaseModel):
    """Decision for one scan.

    Attributes:
        mode: Full scan, incremental update or nothing to do.
        reason: Why the mode was chosen.
        changes: Change set driving an incremental update.
    """

    mode: ScanMode
    reason: str
    changes: ChangeSet | None = Field(None, description="Changes for incremental updates")

    @property
    def is_incremental(self) -> bool:
        return self.mode is ScanMode.INCREMENTAL


class ScanStrategy:
    """Chooses between a full scan and an incremental update.

    Manual triggers always scan fully. A webhook trigger runs incrementally
    only when a previous successful revision exists, the change set is
    available and no larger than ``incremental_threshold``, no build or
    dependency manifest changed, and the exclusion rules are unchanged.

    Args:
        incremental_threshold: Largest change set handled incrementally.
    """

    def __init__(self, incremental_threshold: int = 500) -> None:
        self.incremental_threshold = incremental_threshold

    def wants_diff(
        self,
        trigger: ScanTrigger,
        previous_revision: str | None,
        force_full: bool = False,
    ) -> bool:
        """Whether computing a change set could lead to an incremental update."""
        return trigger is ScanTrigger.WEBHOOK and previous_revision is not None and not force_full

    def decide(
        self,
        trigger: ScanTrigger,
        previous_revision: str | None,
        head_revision: str,
        changes: ChangeSet | None = None,
        rules_changed: bool = False,
        has_bundle: bool = True,
        force_full: bool = False,
    ) -> ScanPlan:
        """Decide how to scan.

        Args:
            trigger: What started the scan.
            previous_revision: Revision of the last successful scan.
            head_revision: Revision the working copy is at now.
            changes: Change set between the two revisions, if computed.
            rules_changed: Exclusion rules differ from the stored manifest's.
            has_bundle: A knowledge-base bundle exists for the project.
            force_full: Caller demands a full scan.

        Returns:
            ScanPlan with mode and reason.
        """
        if force_full:
            return ScanPlan(mode=ScanMode.FULL, reason="forced")
        if trigger is ScanTrigger.MANUAL:
            return ScanPlan(mode=ScanMode.FULL, reason="manual")
        if previous_revision is None:
            return ScanPlan(mode=ScanMode.FULL, reason="no_previous_revision")
        if rules_changed:
            return ScanPlan(mode=ScanMode.FULL, reason="rules_changed")
        if previous_revision == head_revision and has_bundle:
            return ScanPlan(mode=ScanMode.UNCHANGED, reason="same_revision")
        if changes is None:
            return ScanPlan(mode=ScanMode.FULL, reason="diff_unavailable")
        if changes.total > self.incremental_threshold:
            return ScanPlan(mode=ScanMode.FULL, reason="too_many_changes")
        if touches_stack_files(changes.all_paths()):
            return ScanPlan(mode=ScanMode.FULL, reason="stack_files_changed")
        return ScanPlan(mode=ScanMode.INCREMENTAL, reason="incremental", changes=changes)


class WebhookDeduplicator:
    """Collapses bursts of webhook triggers per project.

    The first trigger for a project opens a window of ``window`` seconds;
    further triggers inside the window are rejected.

    Args:
        window: Window length in seconds.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(self, window: float = 60.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.window = window
        self._clock = clock
        self._last_seen: dict[str, float] = {}
        self._lock = threading.Lock()

    def should_run(self, project_id: str) -> bool:
        """Record a trigger and report whether it opens a new window."""
        with self._lock:
            now = self._clock()
            last = self._last_seen.get(project_id)
            if last is not None and now - last < self.window:
                logger.debug("webhook_deduplicated", project_id=project_id, age=now - last)
                return False
            self._last_seen[project_id] = now
            return True

    def forget(self, project_id: str) -> None:
        with self._lock:
            self._last_seen.pop(project_id, None)
