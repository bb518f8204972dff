"""Append-only change log of reversible migration mutations.

Each migration writes one JSON Lines file, ``{migration_id}.jsonl``. Entries
are buffered in memory and appended under an exclusive ``fcntl`` lock, then
fsync'd. Sequence numbers continue from the last entry on disk, so they stay
monotonic across process restarts.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

from asset_migrate.checkpoint import validate_migration_id
from asset_migrate.progress import Phase

logger = logging.getLogger(__name__)

ChangeType = Literal[
    "moved_asset",
    "moved_from_optimised_root",
    "fixed_broken_link",
    "updated_asset_path",
    "inline_image_linked",
    "quarantined_unused_asset",
    "quarantined_orphaned_file",
    "deleted_transform",
    "broken_link_not_fixed",
    "deleted_duplicate_asset",
]

LOG_SUFFIX = ".jsonl"
DEFAULT_FLUSH_THRESHOLD = 5


class ChangeLogError(Exception):
    """Raised when change log entries cannot be persisted."""

    pass


@dataclass(frozen=True, slots=True)
class ChangeLogEntry:
    """One immutable change log record."""

    sequence: int
    timestamp: str
    phase: str
    type: str
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "sequence": self.sequence,
            "timestamp": self.timestamp,
            "phase": self.phase,
            "type": self.type,
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChangeLogEntry:
        """Create from dictionary."""
        return cls(
            sequence=int(data["sequence"]),
            timestamp=str(data.get("timestamp", "")),
            phase=str(data.get("phase", "unknown")),
            type=str(data["type"]),
            payload=dict(data.get("payload") or {}),
        )


@dataclass
class ChangeLogSummary:
    """Listing entry for a migration's change log."""

    migration_id: str
    timestamp: str | None
    change_count: int
    file: Path


def _read_entries(path: Path) -> list[ChangeLogEntry]:
    entries: list[ChangeLogEntry] = []
    if not path.exists():
        return entries
    with path.open("r", encoding="utf-8") as f:
        for line_no, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                entries.append(ChangeLogEntry.from_dict(json.loads(line)))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping corrupt change log line %d in %s: %s", line_no, path.name, e)
    return entries


class ChangeLog:
    """Buffered, durable change log for one migration.

    Example:
        >>> log = ChangeLog(Path("storage/changelogs"), "m1")
        >>> log.set_phase(Phase.CONSOLIDATE)
        >>> log.log_change("moved_asset", {"assetId": 1, "fromVolume": "old", ...})
        >>> log.flush()
    """

    def __init__(
        self,
        directory: Path | str,
        migration_id: str,
        flush_threshold: int = DEFAULT_FLUSH_THRESHOLD,
    ) -> None:
        """Initialize the change log.

        Args:
            directory: Directory holding change log files.
            migration_id: Migration this log belongs to.
            flush_threshold: Buffered entries that trigger an automatic flush.
        """
        self.directory = Path(directory)
        self.migration_id = validate_migration_id(migration_id)
        self.flush_threshold = max(1, flush_threshold)
        self.path = self.directory / f"{migration_id}{LOG_SUFFIX}"
        self._phase: str = "unknown"
        self._buffer: list[ChangeLogEntry] = []
        self._sequence = self._last_sequence_on_disk()

    def _last_sequence_on_disk(self) -> int:
        """Seed the counter from the log file so numbering survives restarts."""
        if not self.path.exists():
            return 0
        line_count = 0
        last_line = ""
        with self.path.open("r", encoding="utf-8") as f:
            for line in f:
                if line.strip():
                    line_count += 1
                    last_line = line
        try:
            return max(line_count, int(json.loads(last_line)["sequence"]))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            return line_count

    @property
    def phase(self) -> str:
        return self._phase

    @property
    def sequence(self) -> int:
        """Sequence number of the most recently logged entry."""
        return self._sequence

    @property
    def pending(self) -> int:
        """Number of buffered entries not yet on disk."""
        return len(self._buffer)

    def set_phase(self, phase: Phase | str) -> None:
        """Flush pending entries, then tag subsequent entries with ``phase``."""
        self.flush()
        self._phase = phase.value if isinstance(phase, Phase) else str(phase)

    def log_change(self, change_type: ChangeType | str, payload: dict[str, Any]) -> ChangeLogEntry:
        """Queue a change entry.

        Args:
            change_type: Kind of mutation (see ChangeType).
            payload: Prior and new state needed to reverse the mutation.

        Returns:
            The queued entry.
        """
        self._sequence += 1
        entry = ChangeLogEntry(
            sequence=self._sequence,
            timestamp=datetime.now(UTC).isoformat(),
            phase=self._phase,
            type=change_type,
            payload=dict(payload),
        )
        self._buffer.append(entry)

        if len(self._buffer) >= self.flush_threshold:
            self.flush()
        return entry

    def flush(self) -> int:
        """Append buffered entries to disk under an exclusive file lock.

        Returns:
            Number of entries written.

        Raises:
            ChangeLogError: If the write fails. The buffer is kept so a later
                flush can retry.
        """
        if not self._buffer:
            return 0

        lines = "".join(json.dumps(entry.to_dict()) + "\n" for entry in self._buffer)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                fcntl.flock(f.fileno(), fcntl.LOCK_EX)
                try:
                    f.write(lines)
                    f.flush()
                    os.fsync(f.fileno())
                finally:
                    fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        except OSError as e:
            raise ChangeLogError(f"Failed to write change log {self.path}: {e}") from e

        count = len(self._buffer)
        self._buffer.clear()
        logger.debug("Flushed %d change log entries to %s", count, self.path.name)
        return count

    def load_all(self) -> list[ChangeLogEntry]:
        """Load every entry on disk, ordered by sequence."""
        return sorted(_read_entries(self.path), key=lambda e: e.sequence)

    @staticmethod
    def load(directory: Path | str, migration_id: str) -> list[ChangeLogEntry]:
        """Load a migration's entries without opening it for writing."""
        path = Path(directory) / f"{validate_migration_id(migration_id)}{LOG_SUFFIX}"
        return sorted(_read_entries(path), key=lambda e: e.sequence)

    @staticmethod
    def list_migrations(directory: Path | str) -> list[ChangeLogSummary]:
        """List migrations with change logs, most recently modified first."""
        directory = Path(directory)
        if not directory.exists():
            return []

        files = sorted(
            directory.glob(f"*{LOG_SUFFIX}"), key=lambda p: p.stat().st_mtime, reverse=True
        )
        summaries: list[ChangeLogSummary] = []
        for path in files:
            entries = _read_entries(path)
            summaries.append(
                ChangeLogSummary(
                    migration_id=path.name[: -len(LOG_SUFFIX)],
                    timestamp=entries[-1].timestamp if entries else None,
                    change_count=len(entries),
                    file=path,
                )
            )
        return summaries

    def __repr__(self) -> str:
        return (
            f"ChangeLog(migration_id={self.migration_id!r}, sequence={self._sequence}, "
            f"pending={len(self._buffer)})"
        )
