"""Rollback of migration changes from the change log.

Entries are replayed newest first. Each change type has an inverse that
restores the asset record and, where a file was moved or copied, puts the
file back. A repository snapshot taken during preparation offers a second,
coarser path that restores every record at once.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from sqlalchemy.exc import SQLAlchemyError

from asset_migrate.changelog import ChangeLog, ChangeLogEntry
from asset_migrate.inline_linking import adjust_reference_count
from asset_migrate.models import AssetRecord, ReferenceField
from asset_migrate.operations import FileMover
from asset_migrate.progress import PHASE_ORDER, Phase
from asset_migrate.recovery import ErrorRecovery, RecoveryError
from asset_migrate.repository import AssetRepository, load_snapshot
from asset_migrate.storage import StorageError, StorageProvider

logger = logging.getLogger(__name__)

RollbackMode = Literal["from", "only"]

# Rough cost of reversing one entry, used for dry-run estimates
SECONDS_PER_OPERATION = 0.1


class RollbackError(Exception):
    """Base exception for rollback errors."""

    pass


class RollbackDataMissingError(RollbackError):
    """Raised when an entry lacks the prior state needed to reverse it.

    Rollback stops at the first such entry rather than guessing.
    """

    def __init__(self, entry: ChangeLogEntry, missing: Iterable[str]) -> None:
        self.entry = entry
        self.missing = list(missing)
        super().__init__(
            f"Change log entry #{entry.sequence} ({entry.type}, phase {entry.phase}) "
            f"is missing {', '.join(self.missing)}; cannot roll back safely. "
            "Restore from the preparation snapshot with --snapshot instead."
        )


@dataclass
class RollbackStats:
    """Counts from a rollback run."""

    reversed: int = 0
    errors: int = 0
    skipped: int = 0
    error_messages: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "reversed": self.reversed,
            "errors": self.errors,
            "skipped": self.skipped,
            "error_messages": self.error_messages,
        }


@dataclass
class RollbackPlan:
    """What a rollback would do, produced by a dry run."""

    total_operations: int
    by_type: dict[str, int]
    by_phase: dict[str, int]
    estimated_time: str

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "total_operations": self.total_operations,
            "by_type": self.by_type,
            "by_phase": self.by_phase,
            "estimated_time": self.estimated_time,
        }


def estimate_time(operations: int) -> str:
    """Human-readable estimate for reversing ``operations`` entries."""
    seconds = operations * SECONDS_PER_OPERATION
    if seconds < 60:
        return "< 1 minute"
    return f"~{math.ceil(seconds / 60)} minutes"


def _phase_rank(tag: str) -> int:
    try:
        return PHASE_ORDER.index(Phase(tag))
    except ValueError:
        return -1


def select_entries(
    entries: list[ChangeLogEntry],
    phases: Iterable[Phase | str] | None = None,
    mode: RollbackMode = "from",
) -> list[ChangeLogEntry]:
    """Filter entries by phase.

    Args:
        entries: Entries to filter.
        phases: Phases to roll back; None selects every entry.
        mode: "from" keeps the earliest named phase and every later phase;
            "only" keeps exactly the named phases.

    Returns:
        Selected entries, newest first.

    Raises:
        RollbackError: If the mode or a phase name is invalid.
    """
    if mode not in ("from", "only"):
        raise RollbackError(f"Invalid rollback mode '{mode}': expected 'from' or 'only'")

    selected = entries
    if phases:
        try:
            names = [Phase(p) if not isinstance(p, Phase) else p for p in phases]
        except ValueError as e:
            raise RollbackError(f"Unknown phase: {e}") from None

        if mode == "only":
            wanted = {p.value for p in names}
            selected = [e for e in entries if e.phase in wanted]
        else:
            start = min(PHASE_ORDER.index(p) for p in names)
            selected = [e for e in entries if _phase_rank(e.phase) >= start]

    return sorted(selected, key=lambda e: e.sequence, reverse=True)


# Folder ids may be "" (volume root) and content may be empty
_EMPTY_OK = frozenset({"fromFolder", "originalFolderId", "originalContent"})


def _require(entry: ChangeLogEntry, *keys: str) -> dict[str, Any]:
    payload = entry.payload
    missing = [
        key
        for key in keys
        if payload.get(key) is None or (payload.get(key) == "" and key not in _EMPTY_OK)
    ]
    if missing:
        raise RollbackDataMissingError(entry, missing)
    return payload


class RollbackEngine:
    """Reverses change log entries for a migration.

    Example:
        >>> engine = RollbackEngine(repository, providers, settings.changelog_dir, "quarantine")
        >>> plan = await engine.rollback("20240115-120000", ["consolidate"], dry_run=True)
        >>> stats = await engine.rollback("20240115-120000", ["consolidate"], mode="from")
    """

    def __init__(
        self,
        repository: AssetRepository,
        providers: Mapping[str, StorageProvider],
        changelog_dir: Path | str,
        quarantine_volume: str,
        recovery: ErrorRecovery | None = None,
        snapshot_dir: Path | str | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            repository: Asset repository to restore.
            providers: Storage providers by volume id.
            changelog_dir: Directory holding change logs.
            quarantine_volume: Volume used for quarantined files.
            recovery: Retry policy for storage calls.
            snapshot_dir: Directory holding preparation snapshots.
        """
        self.repository = repository
        self.providers = providers
        self.changelog_dir = Path(changelog_dir)
        self.quarantine_volume = quarantine_volume
        self.recovery = recovery or ErrorRecovery()
        self.snapshot_dir = Path(snapshot_dir) if snapshot_dir else None
        self.mover = FileMover(providers, self.recovery)

        self._handlers: dict[str, Callable[[ChangeLogEntry], Awaitable[bool]]] = {
            "moved_asset": self._reverse_move,
            "moved_from_optimised_root": self._reverse_move,
            "fixed_broken_link": self._reverse_fixed_link,
            "updated_asset_path": self._reverse_updated_path,
            "inline_image_linked": self._reverse_inline_link,
            "quarantined_unused_asset": self._reverse_quarantined_asset,
            "quarantined_orphaned_file": self._reverse_quarantined_orphan,
            "deleted_transform": self._note_only,
            "broken_link_not_fixed": self._note_only,
            "deleted_duplicate_asset": self._reverse_deleted_duplicate,
        }

    def _load(self, migration_id: str) -> list[ChangeLogEntry]:
        entries = ChangeLog.load(self.changelog_dir, migration_id)
        if not entries:
            raise RollbackError(f"No change log entries found for migration {migration_id}")
        return entries

    async def rollback(
        self,
        migration_id: str,
        phases: Iterable[Phase | str] | None = None,
        mode: RollbackMode = "from",
        dry_run: bool = False,
    ) -> RollbackStats | RollbackPlan:
        """Roll back a migration's changes.

        Args:
            migration_id: Migration to roll back.
            phases: Phases to roll back (None for all).
            mode: "from" or "only", see select_entries.
            dry_run: Return a plan without changing anything.

        Returns:
            RollbackPlan for a dry run, RollbackStats otherwise.

        Raises:
            RollbackError: If there is nothing to roll back or arguments are invalid.
            RollbackDataMissingError: If an entry cannot be reversed safely.
        """
        entries = select_entries(self._load(migration_id), phases, mode)

        if dry_run:
            by_type: dict[str, int] = {}
            by_phase: dict[str, int] = {}
            for entry in entries:
                by_type[entry.type] = by_type.get(entry.type, 0) + 1
                by_phase[entry.phase] = by_phase.get(entry.phase, 0) + 1
            return RollbackPlan(
                total_operations=len(entries),
                by_type=by_type,
                by_phase=by_phase,
                estimated_time=estimate_time(len(entries)),
            )

        stats = RollbackStats()
        logger.info("Rolling back %d changes for migration %s", len(entries), migration_id)
        for entry in entries:
            handler = self._handlers.get(entry.type)
            if handler is None:
                logger.warning(
                    "Unknown change type '%s' in entry #%d, skipping", entry.type, entry.sequence
                )
                stats.skipped += 1
                continue

            try:
                reversed_ = await handler(entry)
            except RollbackDataMissingError:
                logger.error(
                    "Rollback stopped at entry #%d after reversing %d changes",
                    entry.sequence,
                    stats.reversed,
                )
                raise
            except (RollbackError, StorageError, RecoveryError, OSError, SQLAlchemyError) as e:
                stats.errors += 1
                message = f"#{entry.sequence} {entry.type}: {e}"
                stats.error_messages.append(message)
                logger.error("Failed to reverse %s", message)
                continue

            if reversed_:
                stats.reversed += 1
            else:
                stats.skipped += 1

        logger.info(
            "Rollback of %s finished: %d reversed, %d errors, %d skipped",
            migration_id,
            stats.reversed,
            stats.errors,
            stats.skipped,
        )
        return stats

    def phases_summary(self, migration_id: str) -> dict[str, dict[str, Any]]:
        """Count entries per phase and change type, in phase order."""
        summary: dict[str, dict[str, Any]] = {}
        for entry in sorted(self._load(migration_id), key=lambda e: (_phase_rank(e.phase), e.sequence)):
            phase = summary.setdefault(entry.phase, {"count": 0, "types": {}})
            phase["count"] += 1
            phase["types"][entry.type] = phase["types"].get(entry.type, 0) + 1
        return summary

    async def rollback_via_snapshot(
        self, migration_id: str, snapshot_path: Path | str | None = None
    ) -> int:
        """Restore every asset record from the preparation snapshot.

        Files are not touched and phase filters do not apply.

        Returns:
            Number of assets restored.

        Raises:
            RollbackError: If the snapshot cannot be found or read.
        """
        if snapshot_path is None:
            if self.snapshot_dir is None:
                raise RollbackError("No snapshot directory configured")
            snapshot_path = self.snapshot_dir / f"snapshot-{migration_id}.json"
        path = Path(snapshot_path)
        if not path.exists():
            raise RollbackError(f"Snapshot not found: {path}")
        try:
            load_snapshot(path)
        except ValueError as e:
            raise RollbackError(f"Unreadable snapshot {path}: {e}") from e

        count = await self.recovery.retry(lambda: self.repository.restore(path), "restore")
        logger.info("Restored %d assets from snapshot %s", count, path)
        return count

    # ==========================================================================
    # Inverses
    # ==========================================================================

    async def _restore_record(
        self,
        asset_id: int,
        volume_id: str,
        folder_id: str,
        filename: str | None = None,
        file_exists: bool | None = None,
    ) -> None:
        asset = await self.recovery.retry(
            lambda: self.repository.find_by_id(int(asset_id)), f"find:{asset_id}"
        )
        if asset is None:
            raise RollbackError(f"Asset {asset_id} no longer exists")
        asset.volume_id = volume_id
        asset.folder_id = folder_id
        if filename:
            asset.filename = filename
        if file_exists is not None:
            asset.file_exists = file_exists
        await self.recovery.retry(lambda: self.repository.update(asset), f"update:{asset.id}")

    async def _put_back(
        self, from_volume: str, from_path: str, to_volume: str, to_path: str
    ) -> None:
        """Ensure ``to_path`` holds the file again, then drop the copy at ``from_path``."""
        if not await self.mover.exists(to_volume, to_path):
            if not await self.mover.exists(from_volume, from_path):
                raise RollbackError(
                    f"File missing in both {to_volume}:{to_path} and {from_volume}:{from_path}"
                )
            await self.mover.copy(from_volume, from_path, to_volume, to_path)
        if await self.mover.exists(from_volume, from_path):
            await self.mover.delete(from_volume, from_path)

    async def _reverse_move(self, entry: ChangeLogEntry) -> bool:
        p = _require(
            entry, "assetId", "fromVolume", "fromFolder", "toVolume", "sourcePath", "targetPath"
        )
        await self._put_back(p["toVolume"], p["targetPath"], p["fromVolume"], p["sourcePath"])
        await self._restore_record(p["assetId"], p["fromVolume"], p["fromFolder"], p.get("filename"))
        return True

    async def _reverse_fixed_link(self, entry: ChangeLogEntry) -> bool:
        p = _require(entry, "assetId", "originalVolumeId", "originalFolderId")
        await self._restore_record(
            p["assetId"],
            p["originalVolumeId"],
            p["originalFolderId"],
            p.get("filename"),
            p.get("originalFileExists"),
        )
        if p.get("copied") and p.get("copiedPath"):
            volume = p.get("targetVolume")
            if not volume:
                raise RollbackDataMissingError(entry, ["targetVolume"])
            if await self.mover.exists(volume, p["copiedPath"]):
                await self.mover.delete(volume, p["copiedPath"])
        return True

    async def _reverse_updated_path(self, entry: ChangeLogEntry) -> bool:
        p = _require(entry, "assetId", "originalVolumeId", "originalFolderId")
        await self._restore_record(p["assetId"], p["originalVolumeId"], p["originalFolderId"])
        return True

    async def _reverse_inline_link(self, entry: ChangeLogEntry) -> bool:
        p = _require(entry, "table", "column", "rowId", "originalContent")
        field_ = ReferenceField(p["table"], p["column"], p.get("idColumn") or "id")
        updated = await self.recovery.retry(
            lambda: self.repository.update_reference(field_, int(p["rowId"]), p["originalContent"]),
            f"update:{field_}:{p['rowId']}",
        )
        if not updated:
            raise RollbackError(f"Row {p['rowId']} not found in {field_}")
        for asset_id in p.get("linkedAssetIds", []):
            await adjust_reference_count(self.repository, self.recovery, int(asset_id), -1)
        return True

    async def _reverse_quarantined_asset(self, entry: ChangeLogEntry) -> bool:
        p = _require(entry, "assetId", "fromVolume", "fromFolder", "originalPath", "quarantinePath")
        quarantine = p.get("toVolume") or self.quarantine_volume
        await self._put_back(quarantine, p["quarantinePath"], p["fromVolume"], p["originalPath"])
        await self._restore_record(p["assetId"], p["fromVolume"], p["fromFolder"], p.get("filename"))
        return True

    async def _reverse_quarantined_orphan(self, entry: ChangeLogEntry) -> bool:
        p = _require(entry, "sourceVolume", "sourcePath", "targetPath")
        quarantine = p.get("targetVolume") or self.quarantine_volume
        await self._put_back(quarantine, p["targetPath"], p["sourceVolume"], p["sourcePath"])
        return True

    async def _reverse_deleted_duplicate(self, entry: ChangeLogEntry) -> bool:
        p = _require(entry, "assetId", "record")
        record = AssetRecord.from_dict(p["record"])
        existing = await self.recovery.retry(
            lambda: self.repository.find_by_id(record.id), f"find:{record.id}"
        )
        if existing is not None:
            logger.info("Asset %d already exists, not re-creating it", record.id)
            return False
        await self.recovery.retry(lambda: self.repository.save(record), f"save:{record.id}")
        return True

    async def _note_only(self, entry: ChangeLogEntry) -> bool:
        logger.info("Entry #%d (%s) has nothing to reverse", entry.sequence, entry.type)
        return False
