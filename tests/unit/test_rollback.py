"""Unit tests for rollback from the change log and the snapshot."""

from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import pytest

from asset_migrate.changelog import ChangeLog, ChangeLogEntry
from asset_migrate.consolidation import Consolidator
from asset_migrate.inventory import build_file_index
from asset_migrate.models import AssetRecord
from asset_migrate.operations import FileMover
from asset_migrate.progress import Phase
from asset_migrate.recovery import ErrorRecovery
from asset_migrate.repository import SqlAssetRepository
from asset_migrate.rollback import (
    RollbackDataMissingError,
    RollbackEngine,
    RollbackError,
    RollbackPlan,
    RollbackStats,
    estimate_time,
    select_entries,
)
from asset_migrate.storage import LocalStorageProvider


def entry(sequence: int, phase: str, change_type: str = "moved_asset") -> ChangeLogEntry:
    return ChangeLogEntry(sequence=sequence, timestamp="", phase=phase, type=change_type)


@pytest.fixture
def changelog_dir(tmp_path: Path) -> Path:
    return tmp_path / "changelogs"


@pytest.fixture
def changelog(changelog_dir: Path) -> ChangeLog:
    return ChangeLog(changelog_dir, "m1")


@pytest.fixture
def rollback_engine(
    repository: SqlAssetRepository,
    providers: dict[str, LocalStorageProvider],
    recovery: ErrorRecovery,
    changelog_dir: Path,
    tmp_path: Path,
) -> RollbackEngine:
    return RollbackEngine(
        repository,
        providers,
        changelog_dir,
        "quarantine",
        recovery=recovery,
        snapshot_dir=tmp_path / "reports",
    )


def log_orphan(changelog: ChangeLog, put_file: Callable[..., Path], name: str) -> None:
    """Place a quarantined orphan and record how it got there."""
    put_file("quarantine", f"orphaned/{name}", name.encode())
    changelog.log_change(
        "quarantined_orphaned_file",
        {
            "sourceVolume": "images",
            "sourcePath": name,
            "targetVolume": "quarantine",
            "targetPath": f"orphaned/{name}",
            "size": len(name),
        },
    )


class TestSelectEntries:
    """Tests for select_entries."""

    ENTRIES = [
        entry(1, "link_inline"),
        entry(2, "fix_links"),
        entry(3, "consolidate"),
        entry(4, "quarantine"),
        entry(5, "cleanup"),
    ]

    def test_all_newest_first(self) -> None:
        """Without phases every entry is selected in reverse order."""
        assert [e.sequence for e in select_entries(self.ENTRIES)] == [5, 4, 3, 2, 1]

    def test_from_mode(self) -> None:
        """'from' keeps the earliest named phase and everything after it."""
        selected = select_entries(self.ENTRIES, ["quarantine", Phase.CONSOLIDATE], "from")

        assert [e.sequence for e in selected] == [5, 4, 3]

    def test_only_mode(self) -> None:
        """'only' keeps exactly the named phases."""
        selected = select_entries(self.ENTRIES, ["fix_links", "cleanup"], "only")

        assert [e.sequence for e in selected] == [5, 2]

    def test_invalid_arguments(self) -> None:
        """Unknown modes and phases are rejected."""
        with pytest.raises(RollbackError, match="Invalid rollback mode"):
            select_entries(self.ENTRIES, None, "all")  # type: ignore[arg-type]
        with pytest.raises(RollbackError, match="Unknown phase"):
            select_entries(self.ENTRIES, ["nonsense"])


class TestEstimateTime:
    """Tests for estimate_time."""

    def test_estimates(self) -> None:
        """Short rollbacks round down, longer ones up to whole minutes."""
        assert estimate_time(0) == "< 1 minute"
        assert estimate_time(599) == "< 1 minute"
        assert estimate_time(600) == "~1 minutes"
        assert estimate_time(1000) == "~2 minutes"


class TestRollback:
    """Tests for RollbackEngine.rollback."""

    @pytest.mark.asyncio
    async def test_no_entries(self, rollback_engine: RollbackEngine) -> None:
        """A migration without a change log cannot be rolled back."""
        with pytest.raises(RollbackError, match="No change log entries"):
            await rollback_engine.rollback("m1")

    @pytest.mark.asyncio
    async def test_dry_run_plan(
        self,
        rollback_engine: RollbackEngine,
        changelog: ChangeLog,
        put_file: Callable[..., Path],
        volume_path: Callable[[str, str], Path],
    ) -> None:
        """A dry run counts entries without touching files."""
        changelog.set_phase(Phase.QUARANTINE)
        log_orphan(changelog, put_file, "a.png")
        log_orphan(changelog, put_file, "b.png")
        changelog.set_phase(Phase.CLEANUP)
        changelog.log_change("deleted_transform", {"volume": "uploads", "path": "_thumbs/a.png"})
        changelog.flush()

        plan = await rollback_engine.rollback("m1", dry_run=True)

        assert isinstance(plan, RollbackPlan)
        assert plan.total_operations == 3
        assert plan.by_type == {"deleted_transform": 1, "quarantined_orphaned_file": 2}
        assert plan.by_phase == {"cleanup": 1, "quarantine": 2}
        assert plan.estimated_time == "< 1 minute"
        assert volume_path("quarantine", "orphaned/a.png").exists()

    @pytest.mark.asyncio
    async def test_reverses_consolidation(
        self,
        rollback_engine: RollbackEngine,
        repository: SqlAssetRepository,
        providers: dict[str, LocalStorageProvider],
        recovery: ErrorRecovery,
        changelog: ChangeLog,
        put_file: Callable[..., Path],
        volume_path: Callable[[str, str], Path],
        make_asset: Callable[..., AssetRecord],
    ) -> None:
        """A moved asset goes back to its original file and record."""
        put_file("uploads", "docs/a.jpg", b"abc")
        asset = make_asset(1, folder_id="docs", filename="a.jpg")
        await repository.add_all([asset])
        index = await build_file_index(providers, ["uploads", "images"], recovery)
        consolidator = Consolidator(
            repository, FileMover(providers, recovery), changelog, recovery, index, "images", "library"
        )
        changelog.set_phase(Phase.CONSOLIDATE)
        await consolidator.consolidate(asset)
        changelog.flush()
        assert not volume_path("uploads", "docs/a.jpg").exists()

        stats = await rollback_engine.rollback("m1", ["consolidate"], mode="only")

        assert isinstance(stats, RollbackStats)
        assert stats.to_dict() == {"reversed": 1, "errors": 0, "skipped": 0, "error_messages": []}
        assert volume_path("uploads", "docs/a.jpg").read_bytes() == b"abc"
        assert not volume_path("images", "library/a.jpg").exists()
        record = await repository.find_by_id(1)
        assert record is not None
        assert (record.volume_id, record.folder_id, record.filename) == ("uploads", "docs", "a.jpg")

    @pytest.mark.asyncio
    async def test_reverses_inline_link(
        self,
        rollback_engine: RollbackEngine,
        repository: SqlAssetRepository,
        changelog: ChangeLog,
        add_pages: Callable[[dict[int, str | None]], Awaitable[None]],
        read_page: Callable[[int], Awaitable[str | None]],
        make_asset: Callable[..., AssetRecord],
    ) -> None:
        """Content is restored and linked assets lose the added reference."""
        await repository.add_all([make_asset(7, reference_count=1)])
        await add_pages({1: '<img src="{asset:7:/uploads/file7.jpg}">'})
        changelog.set_phase(Phase.LINK_INLINE)
        changelog.log_change(
            "inline_image_linked",
            {
                "table": "pages",
                "column": "body",
                "idColumn": "id",
                "rowId": 1,
                "originalContent": '<img src="/uploads/file7.jpg">',
                "newContent": '<img src="{asset:7:/uploads/file7.jpg}">',
                "linkedAssetIds": [7],
            },
        )
        changelog.flush()

        await rollback_engine.rollback("m1")

        assert await read_page(1) == '<img src="/uploads/file7.jpg">'
        record = await repository.find_by_id(7)
        assert record is not None
        assert record.reference_count == 0

    @pytest.mark.asyncio
    async def test_from_and_only_modes(
        self,
        rollback_engine: RollbackEngine,
        changelog: ChangeLog,
        put_file: Callable[..., Path],
        volume_path: Callable[[str, str], Path],
    ) -> None:
        """Note-only entries are skipped; phase filters pick what is reversed."""
        changelog.set_phase(Phase.QUARANTINE)
        log_orphan(changelog, put_file, "a.png")
        changelog.set_phase(Phase.CLEANUP)
        changelog.log_change("deleted_transform", {"volume": "uploads", "path": "_thumbs/a.png"})
        changelog.flush()

        only = await rollback_engine.rollback("m1", ["cleanup"], mode="only")
        assert isinstance(only, RollbackStats)
        assert (only.reversed, only.skipped) == (0, 1)
        assert volume_path("quarantine", "orphaned/a.png").exists()

        result = await rollback_engine.rollback("m1", ["quarantine"], mode="from")
        assert isinstance(result, RollbackStats)
        assert (result.reversed, result.skipped) == (1, 1)
        assert volume_path("images", "a.png").read_bytes() == b"a.png"
        assert not volume_path("quarantine", "orphaned/a.png").exists()

    @pytest.mark.asyncio
    async def test_missing_data_stops(
        self,
        rollback_engine: RollbackEngine,
        changelog: ChangeLog,
        put_file: Callable[..., Path],
        volume_path: Callable[[str, str], Path],
    ) -> None:
        """An entry without its prior state halts the rollback."""
        changelog.set_phase(Phase.CONSOLIDATE)
        changelog.log_change(
            "moved_asset",
            {
                "assetId": 1,
                "fromVolume": "uploads",
                "fromFolder": "",
                "toVolume": "images",
                "targetPath": "library/a.jpg",
            },
        )
        changelog.set_phase(Phase.QUARANTINE)
        log_orphan(changelog, put_file, "b.png")
        changelog.flush()

        with pytest.raises(RollbackDataMissingError) as exc_info:
            await rollback_engine.rollback("m1")

        assert exc_info.value.missing == ["sourcePath"]
        assert exc_info.value.entry.sequence == 1
        assert volume_path("images", "b.png").exists()

    @pytest.mark.asyncio
    async def test_errors_and_unknown_types(
        self, rollback_engine: RollbackEngine, changelog: ChangeLog
    ) -> None:
        """Failed inverses are counted and rollback carries on."""
        changelog.set_phase(Phase.QUARANTINE)
        changelog.log_change(
            "quarantined_orphaned_file",
            {"sourceVolume": "images", "sourcePath": "gone.png", "targetPath": "orphaned/gone.png"},
        )
        changelog.log_change("renamed_everything", {})
        changelog.flush()

        stats = await rollback_engine.rollback("m1")

        assert isinstance(stats, RollbackStats)
        assert stats.errors == 1
        assert stats.skipped == 1
        assert stats.error_messages[0].startswith("#1 quarantined_orphaned_file: File missing")

    def test_phases_summary(self, rollback_engine: RollbackEngine, changelog: ChangeLog) -> None:
        """Entries are grouped by phase in phase order."""
        changelog.set_phase(Phase.CLEANUP)
        changelog.log_change("deleted_transform", {"volume": "uploads", "path": "a"})
        changelog.set_phase(Phase.FIX_LINKS)
        changelog.log_change("broken_link_not_fixed", {"assetId": 1})
        changelog.log_change("broken_link_not_fixed", {"assetId": 2})
        changelog.flush()

        summary = rollback_engine.phases_summary("m1")

        assert list(summary) == ["fix_links", "cleanup"]
        assert summary["fix_links"] == {"count": 2, "types": {"broken_link_not_fixed": 2}}


class TestSnapshotRollback:
    """Tests for RollbackEngine.rollback_via_snapshot."""

    @pytest.mark.asyncio
    async def test_restores_records(
        self,
        rollback_engine: RollbackEngine,
        repository: SqlAssetRepository,
        tmp_path: Path,
        make_asset: Callable[..., AssetRecord],
    ) -> None:
        """Every record returns to its snapshot state."""
        await repository.add_all([make_asset(1, folder_id="docs"), make_asset(2)])
        await repository.snapshot(tmp_path / "reports" / "snapshot-m1.json")
        moved = await repository.find_by_id(1)
        assert moved is not None
        moved.volume_id = "images"
        moved.folder_id = "library"
        await repository.update(moved)

        assert await rollback_engine.rollback_via_snapshot("m1") == 2

        record = await repository.find_by_id(1)
        assert record is not None
        assert (record.volume_id, record.folder_id) == ("uploads", "docs")

    @pytest.mark.asyncio
    async def test_missing_snapshot(
        self,
        rollback_engine: RollbackEngine,
        repository: SqlAssetRepository,
        providers: dict[str, LocalStorageProvider],
        changelog_dir: Path,
    ) -> None:
        """A missing snapshot or snapshot directory is an error."""
        with pytest.raises(RollbackError, match="Snapshot not found"):
            await rollback_engine.rollback_via_snapshot("m1")

        bare = RollbackEngine(repository, providers, changelog_dir, "quarantine")
        with pytest.raises(RollbackError, match="No snapshot directory"):
            await bare.rollback_via_snapshot("m1")

    @pytest.mark.asyncio
    async def test_unreadable_snapshot(
        self, rollback_engine: RollbackEngine, tmp_path: Path
    ) -> None:
        """A truncated snapshot is reported instead of half-restored."""
        path = tmp_path / "reports" / "snapshot-m1.json"
        path.parent.mkdir(parents=True)
        path.write_text('{"version": 1, "assets": [')

        with pytest.raises(RollbackError, match="Unreadable snapshot"):
            await rollback_engine.rollback_via_snapshot("m1")


class TestRollbackResilience:
    """Tests for repository failures and record re-creation during rollback."""

    @pytest.mark.asyncio
    async def test_record_queries_are_retried(
        self,
        repository: SqlAssetRepository,
        providers: dict[str, LocalStorageProvider],
        recovery: ErrorRecovery,
        changelog: ChangeLog,
        changelog_dir: Path,
        make_asset: Callable[..., AssetRecord],
        make_flaky: Callable[..., Any],
    ) -> None:
        """A dropped connection while restoring a record does not fail the entry."""
        await repository.add_all([make_asset(1, "images", "library", "a.jpg")])
        changelog.set_phase(Phase.FIX_LINKS)
        changelog.log_change(
            "fixed_broken_link",
            {
                "assetId": 1,
                "filename": "a.jpg",
                "originalVolumeId": "uploads",
                "originalFolderId": "gone",
                "originalFileExists": False,
                "copied": False,
            },
        )
        changelog.flush()
        flaky = make_flaky("find_by_id", "update")
        engine = RollbackEngine(flaky, providers, changelog_dir, "quarantine", recovery=recovery)

        stats = await engine.rollback("m1")

        assert isinstance(stats, RollbackStats)
        assert (stats.reversed, stats.errors) == (1, 0)
        assert sorted(flaky.failures) == ["find_by_id", "update"]
        assert await repository.find_by_id(1) == make_asset(
            1, "uploads", "gone", "a.jpg", file_exists=False
        )

    @pytest.mark.asyncio
    async def test_reverses_deleted_duplicate(
        self,
        rollback_engine: RollbackEngine,
        repository: SqlAssetRepository,
        changelog: ChangeLog,
        make_asset: Callable[..., AssetRecord],
    ) -> None:
        """A deleted duplicate record is re-created once with its original values."""
        deleted = make_asset(6, "images", "library", "ok.jpg", reference_count=0, size=12)
        changelog.set_phase(Phase.RESOLVE_DUPLICATES)
        changelog.log_change(
            "deleted_duplicate_asset",
            {
                "assetId": 6,
                "primaryAssetId": 4,
                "fileKey": "images::library/ok.jpg",
                "record": deleted.to_dict(),
            },
        )
        changelog.flush()

        first = await rollback_engine.rollback("m1")
        second = await rollback_engine.rollback("m1")

        assert isinstance(first, RollbackStats)
        assert isinstance(second, RollbackStats)
        assert (first.reversed, second.reversed, second.skipped) == (1, 0, 1)
        assert await repository.find_by_id(6) == deleted
