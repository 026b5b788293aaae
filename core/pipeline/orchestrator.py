"""Scan pipeline orchestration.

A scan runs the stages ``workspace, sync, manifest, detect-stack, chunk,
finalize`` in order for one project. Each stage publishes progress, runs
under the stage timeout and is retried according to the retry policy when
it fails with a retryable error. Only one scan per project can be running;
the store enforces this with a conditional status update.
"""

import asyncio
import json
import shutil
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel, ConfigDict, Field

from core.chunking import ChunkResult, ContentChunker
from core.errors import (
    KnowledgeBaseError,
    ScanAlreadyRunningError,
    ScanFailure,
    ScanTimeoutError,
    SyncError,
    redact,
)
from core.ingestion import ExclusionEntry, FileScanner, RepositorySync, ScanManifest
from core.knowledge import KnowledgeBaseAssembler, ValidationSummary
from core.models import ProjectPaths, ProjectRecord, ScanRecord, ScanTrigger
from core.store import ProjectStore, ScanTotals

from .credentials import CredentialProvider, StaticTokenProvider
from .progress import (
    STAGE_CHUNK,
    STAGE_DETECT_STACK,
    STAGE_FINALIZE,
    STAGE_MANIFEST,
    STAGE_SYNC,
    STAGE_WORKSPACE,
    ProgressChannel,
    StoreProgressObserver,
)
from .retry import RetryPolicy
from .strategy import ScanMode, ScanPlan, ScanStrategy, WebhookDeduplicator

logger = structlog.get_logger(__name__)

T = TypeVar("T")

EXCLUSION_LOG_FILE = "exclusion_log.json"
STACK_FILE = "stack.json"

SKIP_DEDUPLICATED = "deduplicated"
SKIP_ALREADY_RUNNING = "already_running"


class PipelineConfig(BaseModel):
    """Configuration for the orchestrator.

    Attributes:
        stage_timeout: Seconds a single stage attempt may take.
        incremental_threshold: Largest change set handled incrementally.
        webhook_dedup_window: Seconds within which webhook triggers collapse.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    stage_timeout: float = Field(1800.0, gt=0, description="Stage timeout in seconds")
    incremental_threshold: int = Field(500, ge=0, description="Max incremental change set")
    webhook_dedup_window: float = Field(60.0, ge=0, description="Webhook dedup window")


class ScanOutcome(BaseModel):
    """Result of a ``run_scan`` call.

    Attributes:
        project_id: Project the trigger was for.
        status: ``completed``, ``failed`` or ``skipped``.
        scan_id: Scan row id; None when skipped before a scan was created.
        skipped: Whether the trigger was skipped.
        reason: Skip reason or the plan reason of an executed scan.
        mode: Executed scan mode.
        commit_sha: Revision the scan ended at.
        kb_scan_id: Bundle written by the scan.
        validation: Summary of the written bundle.
        attempts: Stage attempts, including retries.
        error: Redacted failure message.
    """

    project_id: str
    status: str
    scan_id: int | None = None
    skipped: bool = False
    reason: str | None = None
    mode: ScanMode | None = None
    commit_sha: str | None = None
    kb_scan_id: str | None = None
    validation: ValidationSummary | None = None
    attempts: int = 0
    error: str | None = None


@dataclass
class _ScanContext:
    """Mutable state shared by the stages of one scan."""

    project: ProjectRecord
    scan: ScanRecord
    trigger: ScanTrigger
    force_full: bool
    started: float
    paths: ProjectPaths | None = None
    head: str | None = None
    plan: ScanPlan | None = None
    manifest: ScanManifest | None = None
    chunks: ChunkResult | None = None
    files_excluded: int = 0
    warnings: list[str] = field(default_factory=list)
    attempts: int = 1
    cancel: threading.Event = field(default_factory=threading.Event)

    @property
    def duration_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


class PipelineOrchestrator:
    """Runs scans for projects.

    Attributes:
        store: Project store.
        sync: Repository synchronization.
        scanner: File scanner.
        chunker: Content chunker.
        assembler: Knowledge-base assembler.
        credentials: Access token provider.
        retry_policy: Stage retry policy.
        config: Orchestrator configuration.
        progress: Channel progress events are published to.
    """

    def __init__(
        self,
        store: ProjectStore,
        sync: RepositorySync,
        scanner: FileScanner | None = None,
        chunker: ContentChunker | None = None,
        assembler: KnowledgeBaseAssembler | None = None,
        credentials: CredentialProvider | None = None,
        retry_policy: RetryPolicy | None = None,
        config: PipelineConfig | None = None,
        progress: ProgressChannel | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            store: Project store.
            sync: Repository synchronization.
            scanner: File scanner. Uses defaults if not provided.
            chunker: Content chunker. Uses defaults if not provided.
            assembler: Bundle assembler. Uses defaults if not provided.
            credentials: Token provider. Anonymous access if not provided.
            retry_policy: Retry policy. Uses defaults if not provided.
            config: Orchestrator configuration.
            progress: Progress channel. A store observer is subscribed to it.
            sleep: Coroutine used for backoff delays.
        """
        self.store = store
        self.sync = sync
        self.scanner = scanner or FileScanner()
        self.chunker = chunker or ContentChunker()
        self.assembler = assembler or KnowledgeBaseAssembler()
        self.credentials = credentials or StaticTokenProvider()
        self.retry_policy = retry_policy or RetryPolicy()
        self.config = config or PipelineConfig()
        self.progress = progress or ProgressChannel()
        self._store_progress = StoreProgressObserver(store)
        self.progress.subscribe(self._store_progress)

        self.strategy = ScanStrategy(self.config.incremental_threshold)
        self.deduplicator = WebhookDeduplicator(self.config.webhook_dedup_window)
        self._sleep = sleep
        self._logger = logger.bind(component="orchestrator")

    async def _in_executor(self, func: Callable[..., T], *args: Any) -> T:
        return await asyncio.get_event_loop().run_in_executor(None, func, *args)

    # =========================================================================
    # Entry point
    # =========================================================================

    async def run_scan(
        self,
        project_id: str,
        trigger: ScanTrigger | str,
        payload: dict[str, Any] | None = None,
        force_full: bool = False,
    ) -> ScanOutcome:
        """Run a scan for a project.

        Webhook triggers inside the dedup window and triggers for a project
        that is already scanning are skipped, not queued.

        Args:
            project_id: Project to scan.
            trigger: ``manual`` or ``webhook``.
            payload: Trigger payload stored on the scan metadata.
            force_full: Skip the incremental strategy.

        Returns:
            ScanOutcome describing what happened.

        Raises:
            ProjectNotFoundError: If the project does not exist.
        """
        trigger = ScanTrigger(trigger)
        log = self._logger.bind(project_id=project_id, trigger=trigger.value)

        if trigger is ScanTrigger.WEBHOOK and not self.deduplicator.should_run(project_id):
            log.info("scan_skipped", reason=SKIP_DEDUPLICATED)
            return ScanOutcome(
                project_id=project_id, status="skipped", skipped=True, reason=SKIP_DEDUPLICATED
            )

        meta = {"payload": payload} if payload else {}
        try:
            scan = await self._in_executor(
                self.store.begin_scan,
                project_id,
                trigger,
                self.scanner.matcher.rules_version,
                meta,
            )
        except ScanAlreadyRunningError:
            log.info("scan_skipped", reason=SKIP_ALREADY_RUNNING)
            return ScanOutcome(
                project_id=project_id, status="skipped", skipped=True, reason=SKIP_ALREADY_RUNNING
            )

        try:
            project = await self._in_executor(self.store.get_project, project_id)
        except Exception as e:
            await self._in_executor(
                self.store.fail_scan, project_id, scan.id, redact(str(e)) or type(e).__name__, 0
            )
            raise
        ctx = _ScanContext(
            project=project,
            scan=scan,
            trigger=trigger,
            force_full=force_full,
            started=time.monotonic(),
        )
        try:
            return await self._execute(ctx)
        except KnowledgeBaseError as e:
            return await self._fail(ctx, e)
        except asyncio.CancelledError:
            await self._fail(ctx, ScanFailure("Scan cancelled", project_id=project_id))
            raise
        except Exception as e:
            # Store or filesystem errors outside a stage still end the scan.
            return await self._fail(
                ctx, ScanFailure(redact(str(e)) or type(e).__name__, project_id=project_id)
            )

    async def _execute(self, ctx: _ScanContext) -> ScanOutcome:
        log = self._logger.bind(project_id=ctx.project.id, scan_id=ctx.scan.id)
        log.info("scan_running")

        ctx.paths = await self._stage(ctx, STAGE_WORKSPACE, lambda: self._workspace(ctx))
        ctx.head = await self._stage(ctx, STAGE_SYNC, lambda: self._sync(ctx))

        ctx.plan = await self._plan(ctx)
        log.info("scan_plan", mode=ctx.plan.mode.value, reason=ctx.plan.reason)
        await self._in_executor(
            lambda: self.store.update_scan(
                ctx.scan.id,
                commit_sha=ctx.head,
                is_incremental=ctx.plan.is_incremental,
                meta={**ctx.scan.meta, "mode": ctx.plan.mode.value, "reason": ctx.plan.reason},
            )
        )

        if ctx.plan.mode is ScanMode.UNCHANGED:
            return await self._complete_unchanged(ctx)

        await self._stage(ctx, STAGE_MANIFEST, lambda: self._manifest(ctx))
        await self._stage(ctx, STAGE_DETECT_STACK, lambda: self._detect_stack(ctx))
        await self._stage(ctx, STAGE_CHUNK, lambda: self._chunk(ctx))
        summary = await self._stage(ctx, STAGE_FINALIZE, lambda: self._finalize(ctx))
        await self._store_progress.flush()

        log.info(
            "scan_finished",
            mode=ctx.plan.mode.value,
            kb_scan_id=summary.scan_id,
            duration_ms=ctx.duration_ms,
        )
        return ScanOutcome(
            project_id=ctx.project.id,
            status="completed",
            scan_id=ctx.scan.id,
            reason=ctx.plan.reason,
            mode=ctx.plan.mode,
            commit_sha=ctx.head,
            kb_scan_id=summary.scan_id,
            validation=summary,
            attempts=ctx.attempts,
        )

    async def _fail(self, ctx: _ScanContext, error: KnowledgeBaseError) -> ScanOutcome:
        message = redact(error.message)
        ctx.cancel.set()
        if ctx.paths is not None:
            await self._in_executor(self.assembler.sweep_partial, ctx.paths.kb)

        await self._store_progress.flush()
        await self._in_executor(
            self.store.fail_scan, ctx.project.id, ctx.scan.id, message, ctx.duration_ms
        )
        self._logger.error(
            "scan_failed",
            project_id=ctx.project.id,
            scan_id=ctx.scan.id,
            error_type=type(error).__name__,
            error=message,
            attempts=ctx.attempts,
        )
        return ScanOutcome(
            project_id=ctx.project.id,
            status="failed",
            scan_id=ctx.scan.id,
            mode=ctx.plan.mode if ctx.plan else None,
            commit_sha=ctx.head,
            attempts=ctx.attempts,
            error=message,
        )

    # =========================================================================
    # Stage runner
    # =========================================================================

    async def _stage(
        self,
        ctx: _ScanContext,
        stage: str,
        run: Callable[[], Awaitable[T]],
    ) -> T:
        """Run one stage with progress, timeout, timing and retries."""
        attempt = 1
        while True:
            self.progress.stage(ctx.project.id, ctx.scan.id, stage, 0)
            started = time.monotonic()
            try:
                result = await asyncio.wait_for(run(), timeout=self.config.stage_timeout)
            except TimeoutError as e:
                ctx.cancel.set()
                raise ScanTimeoutError(
                    f"Stage timed out after {self.config.stage_timeout:g}s",
                    project_id=ctx.project.id,
                    stage=stage,
                ) from e
            except KnowledgeBaseError as e:
                error = e
            except Exception as e:
                error = ScanFailure(str(e) or type(e).__name__, project_id=ctx.project.id, stage=stage)
            else:
                elapsed = int((time.monotonic() - started) * 1000)
                await self._in_executor(self.store.record_stage_timing, ctx.scan.id, stage, elapsed)
                self.progress.stage(ctx.project.id, ctx.scan.id, stage, 100)
                return result

            if not self.retry_policy.should_retry(error, attempt):
                raise error

            delay = self.retry_policy.delay_for(attempt)
            self._logger.warning(
                "stage_retry",
                project_id=ctx.project.id,
                stage=stage,
                attempt=attempt,
                delay=delay,
                error=redact(error.message),
            )
            attempt += 1
            ctx.attempts += 1
            await self._in_executor(self.store.increment_attempts, ctx.scan.id)
            await self._sleep(delay)

    def _item_progress(self, ctx: _ScanContext, stage: str) -> Callable[[int, int], None]:
        def _report(processed: int, total: int) -> None:
            self.progress.items(ctx.project.id, ctx.scan.id, stage, processed, total)

        return _report

    # =========================================================================
    # Stages
    # =========================================================================

    async def _workspace(self, ctx: _ScanContext) -> ProjectPaths:
        return await self.sync.ensure_workspace(ctx.project)

    async def _sync(self, ctx: _ScanContext) -> str:
        # Fetched per attempt so rotated tokens are picked up on retry.
        token = await self.credentials.get_access_token(ctx.project)
        return await self.sync.sync_to_latest(ctx.project, token)

    async def _plan(self, ctx: _ScanContext) -> ScanPlan:
        project = ctx.project
        previous = project.last_commit_sha
        rules_changed = (
            project.exclusion_rules_version is not None
            and project.exclusion_rules_version != self.scanner.matcher.rules_version
        )
        has_bundle = project.last_kb_scan_id is not None

        changes = None
        if (
            self.strategy.wants_diff(ctx.trigger, previous, ctx.force_full)
            and previous != ctx.head
            and not rules_changed
        ):
            try:
                token = await self.credentials.get_access_token(project)
                changes = await self.sync.diff(project, previous, ctx.head, token)
            except SyncError as e:
                self._logger.warning(
                    "diff_unavailable", project_id=project.id, error=redact(e.message)
                )

        return self.strategy.decide(
            ctx.trigger,
            previous,
            ctx.head,
            changes=changes,
            rules_changed=rules_changed,
            has_bundle=has_bundle,
            force_full=ctx.force_full,
        )

    async def _manifest(self, ctx: _ScanContext) -> None:
        progress = self._item_progress(ctx, STAGE_MANIFEST)

        if ctx.plan.is_incremental:
            manifest = await self.scanner.update_changed_files(
                self.store, ctx.project.id, ctx.paths.repo, ctx.plan.changes, progress
            )
            excluded = await self._in_executor(
                self._merge_exclusion_log, ctx.paths, ctx.plan.changes.all_paths(), manifest.excluded
            )
        else:
            manifest = await self.scanner.scan(ctx.paths.repo, progress=progress)
            await self.scanner.persist_manifest(self.store, ctx.project.id, manifest)
            excluded = manifest.excluded
            await self._in_executor(self._write_exclusion_log, ctx.paths, excluded)

        ctx.manifest = manifest
        ctx.files_excluded = len(excluded)
        ctx.warnings = [_format_warning(w.path, w.stage, w.message) for w in manifest.warnings]

    async def _detect_stack(self, ctx: _ScanContext) -> None:
        files = await self._in_executor(self.store.list_files, ctx.project.id)
        stack = await self._in_executor(self.scanner.detector.detect_stack, ctx.paths.repo, files)
        data = stack.model_dump(mode="json")

        def _save() -> None:
            (ctx.paths.knowledge / STACK_FILE).write_text(
                json.dumps(data, indent=2), encoding="utf-8"
            )
            self.store.update_project(ctx.project.id, stack=data)

        await self._in_executor(_save)

    async def _chunk(self, ctx: _ScanContext) -> None:
        progress = self._item_progress(ctx, STAGE_CHUNK)
        result = await self.chunker.chunk_manifest(ctx.manifest.files, progress)

        if ctx.plan.is_incremental:
            paths = [record.path for record in ctx.manifest.files]
            await self._in_executor(
                self.store.replace_chunks_for_paths, ctx.project.id, paths, result.chunks
            )
        else:
            await self._in_executor(self.store.replace_chunks, ctx.project.id, result.chunks)

        ctx.chunks = result
        ctx.warnings.extend(_format_warning(w.path, w.stage, w.message) for w in result.warnings)

    async def _finalize(self, ctx: _ScanContext) -> ValidationSummary:
        project_id = ctx.project.id
        totals: ScanTotals = await self._in_executor(self.store.recalculate_stats, project_id)
        totals = totals.model_copy(update={"files_excluded": ctx.files_excluded})

        files = await self._in_executor(self.store.list_files, project_id)
        chunk_ids = await self._in_executor(self.store.chunk_ids_by_path, project_id)
        scan = await self._in_executor(self.store.get_scan, ctx.scan.id)

        summary: ValidationSummary = await self._in_executor(
            lambda: self.assembler.build(
                ctx.project,
                scan,
                ctx.paths.repo,
                ctx.paths.kb,
                files,
                chunk_ids,
                self.store.iter_chunks(project_id),
                files_excluded=ctx.files_excluded,
                duration_ms=ctx.duration_ms,
                previous_scan_id=ctx.project.last_kb_scan_id,
                cancel=ctx.cancel,
            )
        )

        if not summary.is_valid:
            raise ScanFailure(
                summary.warnings[0].message if summary.warnings else "Bundle validation failed",
                project_id=project_id,
                stage=STAGE_FINALIZE,
            )

        await self._store_progress.flush()
        try:
            await self._in_executor(
                lambda: self.store.complete_scan(
                    project_id,
                    ctx.scan.id,
                    commit_sha=ctx.head,
                    totals=totals,
                    duration_ms=ctx.duration_ms,
                    kb_scan_id=summary.scan_id,
                    kb_valid=summary.is_valid,
                    warnings=ctx.warnings,
                    rules_version=self.scanner.matcher.rules_version,
                )
            )
        except BaseException:
            # A bundle without a completed scan must not count as retained.
            shutil.rmtree(summary.output_path, ignore_errors=True)
            raise

        completed = await self._in_executor(self.store.completed_bundle_ids, project_id)
        await self._in_executor(lambda: self.assembler.prune(ctx.paths.kb, completed=completed))
        return summary

    async def _complete_unchanged(self, ctx: _ScanContext) -> ScanOutcome:
        project = ctx.project
        previous = await self._in_executor(self.store.last_completed_scan, project.id)
        totals = ScanTotals(
            files_scanned=project.total_files,
            files_excluded=previous.files_excluded if previous else 0,
            chunks_created=previous.chunks_created if previous else 0,
            total_lines=project.total_lines,
            total_bytes=project.total_bytes,
        )

        await self._store_progress.flush()
        await self._in_executor(
            lambda: self.store.complete_scan(
                project.id,
                ctx.scan.id,
                commit_sha=ctx.head,
                totals=totals,
                duration_ms=ctx.duration_ms,
                rules_version=self.scanner.matcher.rules_version,
            )
        )
        self._logger.info("scan_unchanged", project_id=project.id, sha=ctx.head[:8])
        return ScanOutcome(
            project_id=project.id,
            status="completed",
            scan_id=ctx.scan.id,
            reason=ctx.plan.reason,
            mode=ScanMode.UNCHANGED,
            commit_sha=ctx.head,
            kb_scan_id=project.last_kb_scan_id,
            attempts=ctx.attempts,
        )

    # =========================================================================
    # Exclusion log
    # =========================================================================

    @staticmethod
    def _write_exclusion_log(paths: ProjectPaths, excluded: list[ExclusionEntry]) -> None:
        entries = [entry.model_dump() for entry in sorted(excluded, key=lambda e: e.path)]
        (paths.knowledge / EXCLUSION_LOG_FILE).write_text(
            json.dumps(entries, indent=2), encoding="utf-8"
        )

    def _merge_exclusion_log(
        self,
        paths: ProjectPaths,
        touched: set[str],
        excluded: list[ExclusionEntry],
    ) -> list[ExclusionEntry]:
        log_file = paths.knowledge / EXCLUSION_LOG_FILE
        existing: list[ExclusionEntry] = []
        if log_file.is_file():
            existing = [
                ExclusionEntry.model_validate(item)
                for item in json.loads(log_file.read_text(encoding="utf-8"))
            ]

        merged = [entry for entry in existing if entry.path not in touched] + list(excluded)
        self._write_exclusion_log(paths, merged)
        return merged


def _format_warning(path: str | None, stage: str, message: str) -> str:
    return f"{stage}: {path}: {message}" if path else f"{stage}: {message}"
