"""Checkpoint persistence for resumable migrations.

Two files are kept per migration id:

- ``{id}.json``: the full checkpoint, written at phase boundaries and every
  few batches.
- ``{id}.state.json``: a lightweight quick state (phase, batch index,
  processed ids, stats) rewritten after every batch.

Both are written to a temp file and renamed into place, so a crash in the
middle of a write leaves the previous valid file untouched.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

from asset_migrate.progress import Phase

logger = logging.getLogger(__name__)

# Current checkpoint file format version
CHECKPOINT_VERSION = 1

FULL_SUFFIX = ".json"
QUICK_SUFFIX = ".state.json"

MIGRATION_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")

CheckpointStatus = Literal["running", "interrupted", "completed", "cancelled"]


class CheckpointError(Exception):
    """Base exception for checkpoint errors."""

    pass


class CheckpointVersionError(CheckpointError):
    """Raised when a checkpoint file version is incompatible."""

    def __init__(self, version: int | None) -> None:
        self.version = version
        super().__init__(
            f"Unsupported checkpoint version: {version}. Expected version {CHECKPOINT_VERSION}."
        )


class CheckpointValidationError(CheckpointError):
    """Raised when a checkpoint file format is invalid."""

    pass


class InvalidMigrationIdError(CheckpointError):
    """Raised when a migration id contains unsafe characters."""

    def __init__(self, migration_id: str) -> None:
        self.migration_id = migration_id
        super().__init__(
            f"Invalid migration id '{migration_id}': only letters, digits, '_' and '-' are allowed"
        )


def validate_migration_id(migration_id: str) -> str:
    """Validate a migration id for use in file names.

    Raises:
        InvalidMigrationIdError: If the id contains unsafe characters.
    """
    if not MIGRATION_ID_PATTERN.match(migration_id or ""):
        raise InvalidMigrationIdError(migration_id)
    return migration_id


def new_migration_id() -> str:
    """Generate a sortable migration id from the current time."""
    return datetime.now(UTC).strftime("%Y%m%d-%H%M%S")


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class CheckpointState:
    """Durable orchestrator progress for one migration."""

    migration_id: str
    phase: Phase
    batch_index: int = 0
    processed_ids: set[str] = field(default_factory=set)
    stats: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=_now_iso)
    completed_phases: list[Phase] = field(default_factory=list)
    status: CheckpointStatus = "running"
    error: str | None = None

    def touch(self) -> None:
        """Update the timestamp."""
        self.timestamp = _now_iso()

    def start_phase(self, phase: Phase) -> None:
        """Move to a new phase, clearing per-phase progress."""
        self.phase = phase
        self.batch_index = 0
        self.processed_ids = set()
        self.touch()

    def complete_phase(self, phase: Phase) -> None:
        """Mark a phase as completed."""
        if phase not in self.completed_phases:
            self.completed_phases.append(phase)
        self.touch()

    def is_phase_completed(self, phase: Phase) -> bool:
        return phase in self.completed_phases

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "version": CHECKPOINT_VERSION,
            "migration_id": self.migration_id,
            "phase": self.phase.value,
            "batch_index": self.batch_index,
            "processed_ids": sorted(self.processed_ids),
            "stats": self.stats,
            "timestamp": self.timestamp,
            "completed_phases": [p.value for p in self.completed_phases],
            "status": self.status,
            "error": self.error,
        }

    def to_quick_dict(self) -> dict[str, Any]:
        """Lightweight subset written after every batch."""
        return {
            "version": CHECKPOINT_VERSION,
            "migration_id": self.migration_id,
            "phase": self.phase.value,
            "batch_index": self.batch_index,
            "processed_ids": sorted(self.processed_ids),
            "processed_count": len(self.processed_ids),
            "stats": self.stats,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CheckpointState:
        """Create from dictionary.

        Raises:
            CheckpointVersionError: If the version is not supported.
            CheckpointValidationError: If required fields are missing or invalid.
        """
        if not isinstance(data, dict):
            raise CheckpointValidationError("Checkpoint must be a JSON object")

        version = data.get("version")
        if version != CHECKPOINT_VERSION:
            raise CheckpointVersionError(version)

        try:
            migration_id = validate_migration_id(str(data["migration_id"]))
            phase = Phase(data["phase"])
            completed = [Phase(p) for p in data.get("completed_phases", [])]
            processed = data.get("processed_ids", [])
            if not isinstance(processed, list):
                raise CheckpointValidationError("processed_ids must be a list")
            stats = data.get("stats", {})
            if not isinstance(stats, dict):
                raise CheckpointValidationError("stats must be an object")
            return cls(
                migration_id=migration_id,
                phase=phase,
                batch_index=int(data.get("batch_index", 0)),
                processed_ids={str(item) for item in processed},
                stats=stats,
                timestamp=str(data.get("timestamp") or _now_iso()),
                completed_phases=completed,
                status=str(data.get("status", "running")),
                error=data.get("error"),
            )
        except KeyError as e:
            raise CheckpointValidationError(f"Missing required field: {e.args[0]}") from None
        except (ValueError, TypeError) as e:
            raise CheckpointValidationError(f"Invalid checkpoint field: {e}") from None


@dataclass
class CheckpointSummary:
    """Listing entry for a stored checkpoint."""

    migration_id: str
    phase: str
    status: str
    timestamp: str
    processed_count: int
    path: Path
    has_quick_state: bool


class CheckpointStore:
    """Stores checkpoints as JSON files in a directory.

    Example:
        >>> store = CheckpointStore(Path("storage/checkpoints"))
        >>> store.save(CheckpointState(migration_id="m1", phase=Phase.DISCOVERY))
        >>> store.load_latest("m1").phase
        <Phase.DISCOVERY: 'discovery'>
    """

    def __init__(self, directory: Path | str) -> None:
        self.directory = Path(directory)

    def _full_path(self, migration_id: str) -> Path:
        return self.directory / f"{validate_migration_id(migration_id)}{FULL_SUFFIX}"

    def _quick_path(self, migration_id: str) -> Path:
        return self.directory / f"{validate_migration_id(migration_id)}{QUICK_SUFFIX}"

    def _atomic_write(self, path: Path, data: dict[str, Any]) -> None:
        """Write JSON to a temp file in the same directory, then rename over ``path``."""
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    @staticmethod
    def _read(path: Path) -> dict[str, Any]:
        try:
            with path.open("r", encoding="utf-8") as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise CheckpointValidationError(f"Invalid JSON in {path.name}: {e}") from None

    def save(self, state: CheckpointState) -> Path:
        """Write the full checkpoint and refresh the quick state.

        Args:
            state: State to persist.

        Returns:
            Path of the full checkpoint file.
        """
        state.touch()
        path = self._full_path(state.migration_id)
        self._atomic_write(path, state.to_dict())
        self._atomic_write(self._quick_path(state.migration_id), state.to_quick_dict())
        logger.debug(
            "Saved checkpoint %s (phase=%s, batch=%d, processed=%d)",
            state.migration_id,
            state.phase.value,
            state.batch_index,
            len(state.processed_ids),
        )
        return path

    def save_quick_state(self, state: CheckpointState) -> Path:
        """Write only the quick state."""
        state.touch()
        path = self._quick_path(state.migration_id)
        self._atomic_write(path, state.to_quick_dict())
        return path

    def update_processed_ids(
        self,
        migration_id: str,
        ids: set[str] | list[str],
        phase: Phase,
        batch_index: int,
        stats: dict[str, Any] | None = None,
    ) -> int:
        """Merge processed ids into the quick state without touching the full file.

        Returns:
            Total processed ids recorded for the phase.
        """
        path = self._quick_path(migration_id)
        existing: set[str] = set()
        if path.exists():
            try:
                data = self._read(path)
                if data.get("phase") == phase.value:
                    existing = {str(i) for i in data.get("processed_ids", [])}
            except CheckpointValidationError as e:
                logger.warning("Replacing unreadable quick state for %s: %s", migration_id, e)

        existing.update(str(i) for i in ids)
        state = CheckpointState(
            migration_id=migration_id,
            phase=phase,
            batch_index=batch_index,
            processed_ids=existing,
            stats=dict(stats or {}),
        )
        self._atomic_write(path, state.to_quick_dict())
        return len(existing)

    def _latest_migration_id(self) -> str | None:
        candidates: list[tuple[float, str]] = []
        for path in self.directory.glob(f"*{FULL_SUFFIX}"):
            name = path.name
            if name.startswith("."):
                continue
            if name.endswith(QUICK_SUFFIX):
                migration_id = name[: -len(QUICK_SUFFIX)]
            else:
                migration_id = name[: -len(FULL_SUFFIX)]
            if MIGRATION_ID_PATTERN.match(migration_id):
                candidates.append((path.stat().st_mtime, migration_id))
        if not candidates:
            return None
        return max(candidates)[1]

    def load_latest(self, migration_id: str | None = None) -> CheckpointState | None:
        """Load the most recent state for a migration.

        The quick state is preferred; when a full checkpoint also exists it
        supplies the fields the quick state does not carry. Falls back to the
        full file if the quick state is missing or unreadable.

        Args:
            migration_id: Migration to load. The most recently written
                migration is used if None.

        Returns:
            The state, or None if nothing is stored.

        Raises:
            CheckpointError: If the full checkpoint exists but is invalid.
        """
        if not self.directory.exists():
            return None

        if migration_id is None:
            migration_id = self._latest_migration_id()
            if migration_id is None:
                return None

        full_path = self._full_path(migration_id)
        quick_path = self._quick_path(migration_id)

        full: CheckpointState | None = None
        if full_path.exists():
            full = CheckpointState.from_dict(self._read(full_path))

        if quick_path.exists():
            try:
                quick = CheckpointState.from_dict(self._read(quick_path))
            except CheckpointError as e:
                logger.warning("Ignoring unreadable quick state for %s: %s", migration_id, e)
            else:
                if full is None:
                    return quick
                # Quick state from an earlier phase than the full file is stale
                if quick.phase == full.phase or quick.phase not in full.completed_phases:
                    full.phase = quick.phase
                    full.batch_index = quick.batch_index
                    full.processed_ids = quick.processed_ids
                    full.stats = {**full.stats, **quick.stats}
                return full

        return full

    def list(self) -> list[CheckpointSummary]:
        """List stored checkpoints, newest first."""
        if not self.directory.exists():
            return []

        ids: set[str] = set()
        for path in self.directory.glob(f"*{FULL_SUFFIX}"):
            name = path.name
            if name.startswith("."):
                continue
            suffix = QUICK_SUFFIX if name.endswith(QUICK_SUFFIX) else FULL_SUFFIX
            ids.add(name[: -len(suffix)])

        summaries: list[CheckpointSummary] = []
        for migration_id in ids:
            if not MIGRATION_ID_PATTERN.match(migration_id):
                continue
            try:
                state = self.load_latest(migration_id)
            except CheckpointError as e:
                logger.warning("Skipping unreadable checkpoint %s: %s", migration_id, e)
                continue
            if state is None:
                continue
            summaries.append(
                CheckpointSummary(
                    migration_id=migration_id,
                    phase=state.phase.value,
                    status=state.status,
                    timestamp=state.timestamp,
                    processed_count=len(state.processed_ids),
                    path=self._full_path(migration_id),
                    has_quick_state=self._quick_path(migration_id).exists(),
                )
            )

        summaries.sort(key=lambda s: s.timestamp, reverse=True)
        return summaries

    def cleanup(self, older_than_hours: float = 72) -> int:
        """Delete checkpoint files older than the cutoff.

        Returns:
            Number of files removed.
        """
        if not self.directory.exists():
            return 0

        cutoff = time.time() - older_than_hours * 3600
        removed = 0
        for path in self.directory.glob(f"*{FULL_SUFFIX}"):
            if path.stat().st_mtime < cutoff:
                path.unlink(missing_ok=True)
                removed += 1

        if removed:
            logger.info("Removed %d checkpoint files older than %sh", removed, older_than_hours)
        return removed

    def delete(self, migration_id: str) -> None:
        """Delete both files for a migration."""
        self._full_path(migration_id).unlink(missing_ok=True)
        self._quick_path(migration_id).unlink(missing_ok=True)
