"""Progress events for running scans.

Stages publish events to a ProgressChannel instead of receiving callbacks.
Observers subscribe to the channel; the store observer persists the current
stage and overall percent on the project and scan rows.
"""

import asyncio
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor

import structlog
from pydantic import BaseModel, ConfigDict, Field

from core.store import ProjectStore

logger = structlog.get_logger(__name__)

STAGE_WORKSPACE = "workspace"
STAGE_SYNC = "sync"
STAGE_MANIFEST = "manifest"
STAGE_DETECT_STACK = "detect-stack"
STAGE_CHUNK = "chunk"
STAGE_FINALIZE = "finalize"

# Share of the overall percent per stage, in execution order.
STAGE_WEIGHTS: dict[str, int] = {
    STAGE_WORKSPACE: 5,
    STAGE_SYNC: 15,
    STAGE_MANIFEST: 30,
    STAGE_DETECT_STACK: 10,
    STAGE_CHUNK: 35,
    STAGE_FINALIZE: 5,
}

STAGES: tuple[str, ...] = tuple(STAGE_WEIGHTS)


def overall_percent(stage: str, stage_percent: int) -> int:
    """Map a stage-local percent to the overall scan percent."""
    completed = 0
    for name, weight in STAGE_WEIGHTS.items():
        if name == stage:
            return min(100, completed + weight * max(0, min(100, stage_percent)) // 100)
        completed += weight
    raise ValueError(f"Unknown stage: {stage}")


class ProgressEvent(BaseModel):
    """One progress report of a running scan.

    Attributes:
        project_id: Project being scanned.
        scan_id: Running scan.
        stage: Stage name.
        stage_percent: Progress within the stage.
        percent: Overall progress of the scan.
        processed: Items processed so far, for item-level reports.
        total: Total items, for item-level reports.
    """

    model_config = ConfigDict(frozen=True)

    project_id: str
    scan_id: int
    stage: str
    stage_percent: int = Field(..., ge=0, le=100)
    percent: int = Field(..., ge=0, le=100)
    processed: int | None = None
    total: int | None = None


ProgressObserver = Callable[[ProgressEvent], None]


class ProgressChannel:
    """Fan-out of progress events to subscribed observers."""

    def __init__(self) -> None:
        self._observers: list[ProgressObserver] = []

    def subscribe(self, observer: ProgressObserver) -> Callable[[], None]:
        """Register an observer.

        Returns:
            A function that removes the observer again.
        """
        self._observers.append(observer)

        def _unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return _unsubscribe

    def publish(self, event: ProgressEvent) -> None:
        """Deliver an event to every observer.

        A failing observer is logged and skipped; it never aborts the scan.
        """
        for observer in list(self._observers):
            try:
                observer(event)
            except Exception as e:
                logger.warning(
                    "progress_observer_failed",
                    project_id=event.project_id,
                    stage=event.stage,
                    error=str(e),
                )

    def stage(self, project_id: str, scan_id: int, stage: str, stage_percent: int) -> None:
        """Publish a stage-level report such as ``(stage, 0)`` or ``(stage, 100)``."""
        self.publish(
            ProgressEvent(
                project_id=project_id,
                scan_id=scan_id,
                stage=stage,
                stage_percent=stage_percent,
                percent=overall_percent(stage, stage_percent),
            )
        )

    def items(self, project_id: str, scan_id: int, stage: str, processed: int, total: int) -> None:
        """Publish an item-level report ``(stage, processed, total)``."""
        stage_percent = 100 if total <= 0 else min(100, processed * 100 // total)
        self.publish(
            ProgressEvent(
                project_id=project_id,
                scan_id=scan_id,
                stage=stage,
                stage_percent=stage_percent,
                percent=overall_percent(stage, stage_percent),
                processed=processed,
                total=total,
            )
        )


class StoreProgressObserver:
    """Persists the latest stage and percent of each event.

    Events published from a running event loop are written on a single
    worker thread, in publish order. ``flush`` waits for queued writes.
    """

    def __init__(self, store: ProjectStore) -> None:
        self.store = store
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="progress")
        self._pending: Future | None = None

    def __call__(self, event: ProgressEvent) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            self._write(event)
            return
        self._pending = self._executor.submit(self._write, event)

    def _write(self, event: ProgressEvent) -> None:
        try:
            self.store.update_progress(event.project_id, event.scan_id, event.stage, event.percent)
        except Exception as e:
            logger.warning(
                "progress_write_failed",
                project_id=event.project_id,
                stage=event.stage,
                error=str(e),
            )

    async def flush(self) -> None:
        """Wait until every queued write has been persisted."""
        pending = self._pending
        if pending is not None:
            await asyncio.wrap_future(pending)
