"""Phase orchestration for asset migrations.

The orchestrator owns the migration lock, the checkpoint and the change log
for a run, and drives each phase through the same batch loop:

    preparation -> optimised_root -> discovery -> (confirm) -> link_inline
    -> resolve_duplicates -> fix_links -> consolidate -> (confirm) -> quarantine
    -> cleanup -> complete

Any failure leaves an interrupted checkpoint behind, flushes the change log
and releases the lock, so the run can be resumed or rolled back.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from asset_migrate.batch import Batch, BatchProcessor, ItemOutcome, asset_key, iter_batches
from asset_migrate.changelog import ChangeLog, ChangeLogError
from asset_migrate.checkpoint import (
    CheckpointError,
    CheckpointState,
    CheckpointStatus,
    CheckpointStore,
    new_migration_id,
    validate_migration_id,
)
from asset_migrate.cleanup import Cleaner, transform_key, write_issues
from asset_migrate.config import Settings
from asset_migrate.consolidation import Consolidator
from asset_migrate.duplicates import DuplicateResolver, shared_file_key
from asset_migrate.file_matcher import FileIndex, FileMatcher
from asset_migrate.inline_linking import InlineLinker
from asset_migrate.inventory import (
    DiscoveryAnalysis,
    analyze,
    build_file_index,
    collect_asset_filenames,
)
from asset_migrate.link_repair import LinkRepairer, write_missing_files
from asset_migrate.lock import LockError, LockManager
from asset_migrate.models import AssetRecord
from asset_migrate.operations import FileMover
from asset_migrate.progress import Phase, SimpleProgressReporter
from asset_migrate.quarantine import Quarantiner, orphan_key
from asset_migrate.recovery import (
    MISSING_FILE_CATEGORY,
    ErrorRecovery,
    RecoveryError,
    ThresholdExceededError,
)
from asset_migrate.repository import AssetRepository, load_snapshot
from asset_migrate.storage import StorageError, StorageFileNotFoundError, StorageProvider

logger = logging.getLogger(__name__)

T = TypeVar("T")

PROCEED_PROMPT = "Proceed with migration?"
QUARANTINE_PROMPT = "Quarantine unused assets and orphaned files?"


class MigrationError(Exception):
    """Base exception for migration runs."""

    pass


class MigrationCancelledError(MigrationError):
    """Raised inside a run when cancellation was requested."""

    pass


class MigrationInterruptedError(MigrationError):
    """Raised when a run stops before completing.

    Carries the commands an operator needs to continue or undo the run.
    """

    def __init__(self, migration_id: str, phase: Phase, reason: str) -> None:
        self.migration_id = migration_id
        self.phase = phase
        self.reason = reason
        self.resume_command = f"asset-migrate resume {migration_id}"
        self.rollback_command = (
            f"asset-migrate rollback {migration_id} --mode from --phase {phase.value}"
        )
        super().__init__(f"Migration {migration_id} interrupted during {phase.value}: {reason}")


@dataclass
class MigrationResult:
    """Outcome of a migration run."""

    migration_id: str
    status: CheckpointStatus
    dry_run: bool
    analysis: DiscoveryAnalysis | None = None
    stats: dict[str, dict[str, Any]] = field(default_factory=dict)
    issues: list[str] = field(default_factory=list)
    change_count: int = 0
    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "migration_id": self.migration_id,
            "status": self.status,
            "dry_run": self.dry_run,
            "analysis": self.analysis.to_dict() if self.analysis else None,
            "stats": self.stats,
            "issues": self.issues,
            "change_count": self.change_count,
            "duration_seconds": round(self.duration_seconds, 2),
        }


class MigrationOrchestrator:
    """Runs, resumes and checkpoints a migration.

    Example:
        >>> orchestrator = MigrationOrchestrator(
        ...     settings, repository, providers, lock, CheckpointStore(settings.checkpoint_dir),
        ...     lambda mid: ChangeLog(settings.changelog_dir, mid), ErrorRecovery(),
        ... )
        >>> result = await orchestrator.run(dry_run=True)
    """

    def __init__(
        self,
        settings: Settings,
        repository: AssetRepository,
        providers: Mapping[str, StorageProvider],
        lock: LockManager,
        checkpoints: CheckpointStore,
        changelog_factory: Callable[[str], ChangeLog],
        recovery: ErrorRecovery,
        reporter: Any = None,
        confirm: Callable[[str], bool] | None = None,
        migration_id: str | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            settings: Migration settings.
            repository: Asset repository.
            providers: Storage providers by volume id.
            lock: Lock manager guarding the run.
            checkpoints: Checkpoint store.
            changelog_factory: Builds the change log for a migration id.
            recovery: Retry policy and error thresholds.
            reporter: Progress reporter (a simple reporter is used if None).
            confirm: Called with a prompt before destructive steps; None
                proceeds without asking.
            migration_id: Id for a new run, or the run to resume.
        """
        self.settings = settings
        self.repository = repository
        self.providers = providers
        self.lock = lock
        self.checkpoints = checkpoints
        self.changelog_factory = changelog_factory
        self.recovery = recovery
        self.reporter = reporter or SimpleProgressReporter()
        self.confirm = confirm
        self.migration_id = validate_migration_id(migration_id) if migration_id else None

        self.target_volume = settings.target_volume
        self.target_folder = settings.target_folder.strip("/")
        self.batch_size = settings.batch_size

        self._cancelled = False
        self._dry_run = False
        self._state: CheckpointState | None = None
        self._changelog: ChangeLog | None = None
        self._index: FileIndex | None = None
        self._mover = FileMover(providers, recovery)
        self._analysis: DiscoveryAnalysis | None = None
        self._issues: list[str] = []
        self._phase_stats: dict[str, dict[str, Any]] = {}
        self._batches_since_checkpoint = 0
        self._last_lock_refresh = 0.0

    # ==========================================================================
    # Public API
    # ==========================================================================

    def request_cancel(self) -> None:
        """Ask the run to stop at the next batch or item boundary."""
        if not self._cancelled:
            logger.warning("Cancellation requested; stopping after the current item")
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def all_volumes(self) -> list[str]:
        """Every volume a phase may read from or move assets into."""
        volumes = [*self.settings.source_volume_ids, self.target_volume]
        volumes.append(self.settings.quarantine_volume)
        if self.settings.optimised_volume:
            volumes.append(self.settings.optimised_volume)
        return list(dict.fromkeys(v for v in volumes if v))

    async def run(self, dry_run: bool = False, resume: bool = False) -> MigrationResult:
        """Run (or resume) the migration.

        Args:
            dry_run: Stop after discovery without changing anything.
            resume: Continue the checkpointed run instead of starting fresh.

        Returns:
            MigrationResult describing the run.

        Raises:
            MigrationError: If the run cannot start (no checkpoint to resume,
                missing providers, lock held elsewhere).
            MigrationInterruptedError: If the run stopped part-way.
        """
        started = time.monotonic()
        self._dry_run = dry_run
        self._state = self._initial_state(resume)
        self.migration_id = self._state.migration_id
        self._changelog = self.changelog_factory(self.migration_id)

        self._validate_volumes()
        await self._acquire_lock(resume)

        try:
            await self._run_phase(Phase.PREPARATION, self._preparation)
            if self._optimised_enabled() and not dry_run:
                await self._run_phase(Phase.OPTIMISED_ROOT, self._optimised_root)
            discovered = await self._run_phase(Phase.DISCOVERY, self._discovery)

            if dry_run:
                await self.lock.release()
                return self._result("completed", started)

            if discovered and not self._ask(PROCEED_PROMPT):
                return await self._stop("cancelled", started)

            await self._run_phase(Phase.LINK_INLINE, self._link_inline)
            await self._run_phase(Phase.RESOLVE_DUPLICATES, self._resolve_duplicates)
            await self._run_phase(Phase.FIX_LINKS, self._fix_links)
            await self._run_phase(Phase.CONSOLIDATE, self._consolidate)

            if not self._state.is_phase_completed(Phase.QUARANTINE):
                if self._ask(QUARANTINE_PROMPT):
                    await self._run_phase(Phase.QUARANTINE, self._quarantine)
                else:
                    self.reporter.warning("Quarantine skipped at operator request")
                    self._counts(Phase.QUARANTINE)["skipped_by_operator"] = True

            await self._run_phase(Phase.CLEANUP, self._cleanup)
            return await self._complete(started)
        except Exception as e:
            raise await self._fail(e) from e

    # ==========================================================================
    # Run setup
    # ==========================================================================

    def _initial_state(self, resume: bool) -> CheckpointState:
        if not resume:
            return CheckpointState(
                migration_id=self.migration_id or new_migration_id(), phase=Phase.PREPARATION
            )

        try:
            state = self.checkpoints.load_latest(self.migration_id)
        except CheckpointError as e:
            raise MigrationError(f"Cannot resume: {e}") from e
        if state is None:
            target = self.migration_id or "any migration"
            raise MigrationError(f"No checkpoint found for {target}")
        if state.status == "completed":
            raise MigrationError(f"Migration {state.migration_id} already completed")

        stats = state.stats
        self.recovery.set_expected_missing_files(int(stats.get("expected_missing_files", 0)))
        self.recovery.restore_error_counts(stats.get("error_counts", {}))
        self._phase_stats = dict(stats.get("phases", {}))
        state.status = "running"
        state.error = None
        logger.info(
            "Resuming migration %s at phase %s (%d items already processed)",
            state.migration_id,
            state.phase.value,
            len(state.processed_ids),
        )
        return state

    def _validate_volumes(self) -> None:
        if not self.target_volume:
            raise MigrationError("No target volume configured")
        missing = [v for v in self.all_volumes if v not in self.providers]
        if missing:
            raise MigrationError(f"No storage provider configured for volumes: {', '.join(missing)}")

    async def _acquire_lock(self, resume: bool) -> None:
        assert self.migration_id is not None
        self.lock.migration_id = self.migration_id
        acquired = await self.lock.acquire(
            timeout_seconds=self.settings.lock_timeout_seconds,
            resume_migration_id=self.migration_id if resume else None,
        )
        if not acquired:
            raise MigrationError("Another migration is in progress (lock is held)")
        self._last_lock_refresh = time.monotonic()

    def _optimised_enabled(self) -> bool:
        volume = self.settings.optimised_volume
        return bool(volume) and volume != self.target_volume

    def _ask(self, prompt: str) -> bool:
        # Everything decided so far is on disk before waiting on a person
        self.changelog.flush()
        if self.confirm is None:
            return True
        return bool(self.confirm(prompt))

    @property
    def state(self) -> CheckpointState:
        if self._state is None:
            raise MigrationError("Migration has not started")
        return self._state

    @property
    def changelog(self) -> ChangeLog:
        if self._changelog is None:
            raise MigrationError("Migration has not started")
        return self._changelog

    # ==========================================================================
    # Checkpointing
    # ==========================================================================

    def _stats_snapshot(self) -> dict[str, Any]:
        return {
            "phases": self._phase_stats,
            "error_counts": self.recovery.get_error_counts(),
            "expected_missing_files": self.recovery.expected_missing_files,
            "retries": self.recovery.get_retry_stats(),
        }

    def _save_checkpoint(self) -> None:
        if self._dry_run:
            return
        self.state.stats = self._stats_snapshot()
        self.checkpoints.save(self.state)
        self._batches_since_checkpoint = 0

    async def _maybe_refresh_lock(self) -> None:
        if time.monotonic() - self._last_lock_refresh < self.settings.lock_refresh_interval_seconds:
            return
        if not await self.lock.refresh():
            raise LockError(f"Lost the migration lock for {self.migration_id}")
        self._last_lock_refresh = time.monotonic()

    def _check_cancel(self) -> None:
        if self._cancelled:
            raise MigrationCancelledError("Migration cancelled by operator")

    # ==========================================================================
    # Phase and batch loop
    # ==========================================================================

    async def _run_phase(self, phase: Phase, body: Callable[[], Awaitable[None]]) -> bool:
        """Run one phase unless a previous run completed it.

        Returns:
            True if the phase ran in this session.
        """
        state = self.state
        if state.is_phase_completed(phase):
            logger.info("Skipping completed phase %s", phase.value)
            return False

        self._check_cancel()
        if state.phase != phase:
            state.start_phase(phase)
        self.changelog.set_phase(phase)
        self._save_checkpoint()
        logger.info("Starting phase %s", phase.value)

        await body()

        self._check_cancel()
        self.reporter.complete_phase()
        self.changelog.flush()
        state.complete_phase(phase)
        self._save_checkpoint()
        logger.info("Completed phase %s", phase.value)
        return True

    def _counts(self, phase: Phase) -> dict[str, Any]:
        return self._phase_stats.setdefault(
            phase.value, {"succeeded": 0, "failed": 0, "skipped": 0}
        )

    async def _handle(
        self, phase: Phase, key: str, handler: Callable[[T], Awaitable[ItemOutcome]], item: T
    ) -> ItemOutcome:
        try:
            return await handler(item)
        except ThresholdExceededError:
            raise
        except StorageFileNotFoundError as e:
            self.reporter.error(f"{key}: {e}")
            self.recovery.record_error(MISSING_FILE_CATEGORY, str(e), {"item": key})
            return "failed"
        except (RecoveryError, StorageError, OSError) as e:
            self.reporter.error(f"{key}: {e}")
            self.recovery.record_error(phase.value, str(e), {"item": key})
            return "failed"

    async def _process_batches(
        self,
        phase: Phase,
        batches: AsyncIterator[Batch[T]],
        key: Callable[[T], str],
        handler: Callable[[T], Awaitable[ItemOutcome]],
    ) -> None:
        """Handle every item, checkpointing after each batch."""
        counts = self._counts(phase)
        state = self.state

        async for batch in batches:
            self._check_cancel()
            if batch.skipped:
                counts["skipped"] += batch.skipped
                self.reporter.update_progress(skipped=batch.skipped)

            done: list[str] = []
            for item in batch.items:
                self._check_cancel()
                item_key = key(item)
                outcome = await self._handle(phase, item_key, handler, item)
                counts[outcome] += 1
                self.reporter.update_progress(**{outcome: 1}, current_item=item_key)
                done.append(item_key)

            self.changelog.flush()
            state.processed_ids.update(done)
            state.batch_index = batch.index + 1
            self.checkpoints.update_processed_ids(
                state.migration_id, done, phase, state.batch_index, self._stats_snapshot()
            )
            self._batches_since_checkpoint += 1
            if self._batches_since_checkpoint >= self.settings.checkpoint_every_batches:
                self._save_checkpoint()
            await self._maybe_refresh_lock()

        self._check_cancel()

    def _asset_batches(self, volume_ids: list[str] | None = None) -> AsyncIterator[Batch[AssetRecord]]:
        processor = BatchProcessor(
            self.repository,
            volume_ids or self.all_volumes,
            self.batch_size,
            skip_ids=self.state.processed_ids,
            should_stop=lambda: self._cancelled,
            recovery=self.recovery,
        )
        return processor.batches()

    async def _asset_total(self) -> int:
        return await self.recovery.retry(
            lambda: self.repository.count(self.all_volumes), "count:assets"
        )

    async def _ensure_index(self) -> FileIndex:
        if self._index is None:
            self._index = await build_file_index(self.providers, self.all_volumes, self.recovery)
        return self._index

    # ==========================================================================
    # Phases
    # ==========================================================================

    async def _preparation(self) -> None:
        self.reporter.start_phase(Phase.PREPARATION, 1)
        if not self._dry_run:
            self.settings.validate_paths()
            path = self.settings.report_dir / f"snapshot-{self.migration_id}.json"
            if self._usable_snapshot(path):
                logger.info("Keeping existing snapshot %s", path)
            else:
                count = await self.recovery.retry(
                    lambda: self.repository.snapshot(path), "snapshot"
                )
                self.reporter.info(f"Snapshot of {count} assets written to {path}")
        self.reporter.update_progress(succeeded=1)

    def _usable_snapshot(self, path: Path) -> bool:
        if not path.exists():
            return False
        try:
            load_snapshot(path)
        except ValueError as e:
            self.reporter.warning(f"Existing snapshot {path} is unreadable ({e}), taking a new one")
            return False
        return True

    async def _optimised_root(self) -> None:
        optimised = self.settings.optimised_volume
        assert optimised is not None
        total = await self.recovery.retry(
            lambda: self.repository.count([optimised]), "count:optimised"
        )
        self.reporter.start_phase(Phase.OPTIMISED_ROOT, total)
        if total == 0:
            return

        index = await self._ensure_index()
        consolidator = self._consolidator(index)

        async def _move_root_asset(asset: AssetRecord) -> ItemOutcome:
            if asset.volume_id != optimised or asset.folder_id.strip("/"):
                return "skipped"
            if not index.contains(asset.volume_id, asset.path):
                return "skipped"
            await consolidator.move_to_target(asset, "moved_from_optimised_root")
            return "succeeded"

        # Pages span every volume so moved records do not shift later pages
        await self._process_batches(
            Phase.OPTIMISED_ROOT, self._asset_batches(), asset_key, _move_root_asset
        )

    async def _discovery(self) -> None:
        self.reporter.start_phase(Phase.DISCOVERY, await self._asset_total())
        self._index = await build_file_index(self.providers, self.all_volumes, self.recovery)

        analysis = await analyze(
            self.repository,
            self._index,
            self.all_volumes,
            self.target_volume,
            self.target_folder,
            batch_size=self.batch_size,
            should_stop=lambda: self._cancelled,
            on_batch=lambda n: self.reporter.update_progress(succeeded=n),
            recovery=self.recovery,
        )
        self._check_cancel()
        self._analysis = analysis

        report = self.settings.report_dir / f"discovery-{self.migration_id}.json"
        analysis.save(report)
        self.reporter.info(f"Discovery report written to {report}")

        self.recovery.set_expected_missing_files(len(analysis.broken_links))
        self._phase_stats[Phase.DISCOVERY.value] = analysis.counts()
        self._phase_stats["planned_operations"] = analysis.planned_operations()

    async def _link_inline(self) -> None:
        linker = InlineLinker(self.repository, self.changelog, self.recovery, self.batch_size)
        self.reporter.start_phase(Phase.LINK_INLINE, 0)
        if not self.repository.reference_fields():
            logger.info("No reference fields configured, skipping inline linking")
            return
        await self._process_batches(
            Phase.LINK_INLINE,
            linker.batches(self.state.processed_ids),
            lambda item: item.key,
            linker.link_row,
        )
        self._counts(Phase.LINK_INLINE)["linked_images"] = linker.linked_images

    async def _resolve_duplicates(self) -> None:
        resolver = DuplicateResolver(
            self.repository, self.changelog, self.recovery, self.target_volume, self.target_folder
        )
        shared = await resolver.find_shared_files(self.all_volumes)
        self.reporter.start_phase(Phase.RESOLVE_DUPLICATES, len(shared))
        await self._process_batches(
            Phase.RESOLVE_DUPLICATES,
            iter_batches(shared, shared_file_key, self.batch_size, self.state.processed_ids),
            shared_file_key,
            resolver.resolve,
        )
        counts = self._counts(Phase.RESOLVE_DUPLICATES)
        counts["removed_records"] = resolver.removed
        counts["kept_in_use"] = resolver.kept_in_use

    async def _fix_links(self) -> None:
        self.reporter.start_phase(Phase.FIX_LINKS, await self._asset_total())
        index = await self._ensure_index()
        matcher = FileMatcher(self.target_volume, self.settings.min_match_confidence)
        repairer = LinkRepairer(
            self.repository,
            self._mover,
            self.changelog,
            self.recovery,
            matcher,
            index,
            self.target_volume,
            self.target_folder,
        )
        await self._process_batches(
            Phase.FIX_LINKS, self._asset_batches(), asset_key, repairer.repair
        )
        counts = self._counts(Phase.FIX_LINKS)
        counts["strategies"] = matcher.get_stats()

        self.changelog.flush()
        report = self.settings.report_dir / f"missing-files-{self.migration_id}.csv"
        counts["missing_files"] = write_missing_files(report, self.changelog.load_all())
        if counts["missing_files"]:
            self.reporter.warning(
                f"{counts['missing_files']} assets have no file; see {report.name}"
            )

    def _consolidator(self, index: FileIndex) -> Consolidator:
        return Consolidator(
            self.repository,
            self._mover,
            self.changelog,
            self.recovery,
            index,
            self.target_volume,
            self.target_folder,
        )

    async def _consolidate(self) -> None:
        self.reporter.start_phase(Phase.CONSOLIDATE, await self._asset_total())
        consolidator = self._consolidator(await self._ensure_index())
        await self._process_batches(
            Phase.CONSOLIDATE, self._asset_batches(), asset_key, consolidator.consolidate
        )

    async def _quarantine(self) -> None:
        index = await self._ensure_index()
        quarantiner = Quarantiner(
            self.repository,
            self._mover,
            self.changelog,
            self.recovery,
            index,
            self.target_volume,
            self.settings.quarantine_volume,
        )
        filenames = await collect_asset_filenames(
            self.repository, self.all_volumes, self.batch_size, self.recovery
        )
        orphans = quarantiner.find_orphans(filenames)

        self.reporter.start_phase(Phase.QUARANTINE, await self._asset_total() + len(orphans))
        await self._process_batches(
            Phase.QUARANTINE, self._asset_batches(), asset_key, quarantiner.quarantine_asset
        )
        await self._process_batches(
            Phase.QUARANTINE,
            iter_batches(orphans, orphan_key, self.batch_size, self.state.processed_ids),
            orphan_key,
            quarantiner.quarantine_orphan,
        )

    async def _cleanup(self) -> None:
        cleaner = Cleaner(
            self.repository,
            self.providers,
            self._mover,
            self.changelog,
            self.recovery,
            self.target_volume,
            self.target_folder,
            self.batch_size,
        )
        transforms = await cleaner.find_transforms(self.settings.source_volume_ids)
        self.reporter.start_phase(Phase.CLEANUP, len(transforms))
        await self._process_batches(
            Phase.CLEANUP,
            iter_batches(transforms, transform_key, self.batch_size, self.state.processed_ids),
            transform_key,
            cleaner.delete_transform,
        )

        target_index = await build_file_index(self.providers, [self.target_volume], self.recovery)
        self._issues = await cleaner.verify(target_index, self.settings.verification_sample_size)
        issues_path = write_issues(
            self.settings.report_dir / f"issues-{self.migration_id}.txt", self._issues
        )
        if self._issues:
            self.reporter.warning(f"{len(self._issues)} verification issues, see {issues_path}")
        self._counts(Phase.CLEANUP)["issues"] = len(self._issues)

        self.checkpoints.cleanup(self.settings.checkpoint_retention_hours)

    # ==========================================================================
    # Completion and failure
    # ==========================================================================

    def _result(self, status: CheckpointStatus, started: float) -> MigrationResult:
        assert self.migration_id is not None
        return MigrationResult(
            migration_id=self.migration_id,
            status=status,
            dry_run=self._dry_run,
            analysis=self._analysis,
            stats=self._phase_stats,
            issues=self._issues,
            change_count=self._changelog.sequence if self._changelog else 0,
            duration_seconds=time.monotonic() - started,
        )

    async def _complete(self, started: float) -> MigrationResult:
        state = self.state
        state.start_phase(Phase.COMPLETE)
        state.complete_phase(Phase.COMPLETE)
        state.status = "completed"
        self.changelog.set_phase(Phase.COMPLETE)
        self._save_checkpoint()
        await self.lock.release()
        logger.info("Migration %s completed", self.migration_id)
        return self._result("completed", started)

    async def _stop(self, status: CheckpointStatus, started: float) -> MigrationResult:
        self.state.status = status
        self.changelog.flush()
        self._save_checkpoint()
        await self.lock.release()
        logger.info("Migration %s stopped with status %s", self.migration_id, status)
        return self._result(status, started)

    async def _fail(self, error: Exception) -> MigrationInterruptedError:
        """Persist an interrupted checkpoint and release the lock.

        Returns:
            The error to raise in place of ``error``.
        """
        state = self.state
        state.status = "interrupted"
        state.error = str(error)
        logger.error("Migration %s failed in %s: %s", state.migration_id, state.phase.value, error)

        try:
            self._save_checkpoint()
        except (CheckpointError, OSError) as e:
            logger.error("Could not save interrupted checkpoint: %s", e)
        try:
            self.changelog.flush()
        except ChangeLogError as e:
            logger.error("Could not flush change log: %s", e)
        try:
            await self.lock.release()
        except SQLAlchemyError as e:
            logger.error("Could not release migration lock: %s", e)

        return MigrationInterruptedError(state.migration_id, state.phase, str(error))
