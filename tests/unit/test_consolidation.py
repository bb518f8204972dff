"""Unit tests for consolidation into the target location."""

from collections.abc import Callable
from pathlib import Path

import pytest

from asset_migrate.changelog import ChangeLog
from asset_migrate.consolidation import Consolidator
from asset_migrate.file_matcher import FileIndex
from asset_migrate.inventory import build_file_index
from asset_migrate.models import AssetRecord
from asset_migrate.operations import FileMover
from asset_migrate.recovery import ErrorRecovery
from asset_migrate.repository import SqlAssetRepository
from asset_migrate.storage import LocalStorageProvider


@pytest.fixture
def changelog(tmp_path: Path) -> ChangeLog:
    return ChangeLog(tmp_path / "changelogs", "m1")


async def make_consolidator(
    repository: SqlAssetRepository,
    providers: dict[str, LocalStorageProvider],
    recovery: ErrorRecovery,
    changelog: ChangeLog,
) -> tuple[Consolidator, FileIndex]:
    index = await build_file_index(providers, ["uploads", "images"], recovery)
    consolidator = Consolidator(
        repository,
        FileMover(providers, recovery),
        changelog,
        recovery,
        index,
        "images",
        "library",
    )
    return consolidator, index


class TestConsolidator:
    """Tests for Consolidator.consolidate."""

    @pytest.mark.asyncio
    async def test_skips(
        self,
        repository: SqlAssetRepository,
        providers: dict[str, LocalStorageProvider],
        recovery: ErrorRecovery,
        changelog: ChangeLog,
        put_file: Callable[..., Path],
        make_asset: Callable[..., AssetRecord],
    ) -> None:
        """Unused, already placed and file-less assets are skipped."""
        put_file("uploads", "unused.jpg")
        put_file("images", "library/placed.jpg")
        consolidator, _ = await make_consolidator(repository, providers, recovery, changelog)

        assert await consolidator.consolidate(make_asset(1, filename="unused.jpg", reference_count=0)) == "skipped"
        assert await consolidator.consolidate(make_asset(2, "images", "library", "placed.jpg")) == "skipped"
        assert await consolidator.consolidate(make_asset(3, filename="missing.jpg")) == "skipped"
        assert changelog.pending == 0

    @pytest.mark.asyncio
    async def test_moves_asset(
        self,
        repository: SqlAssetRepository,
        providers: dict[str, LocalStorageProvider],
        recovery: ErrorRecovery,
        changelog: ChangeLog,
        put_file: Callable[..., Path],
        volume_path: Callable[[str, str], Path],
        make_asset: Callable[..., AssetRecord],
    ) -> None:
        """A used asset elsewhere is moved and its record repointed."""
        put_file("uploads", "docs/a.jpg", b"abc")
        asset = make_asset(1, folder_id="docs", filename="a.jpg")
        await repository.add_all([asset])
        consolidator, index = await make_consolidator(repository, providers, recovery, changelog)

        assert await consolidator.consolidate(asset) == "succeeded"

        assert volume_path("images", "library/a.jpg").read_bytes() == b"abc"
        assert not volume_path("uploads", "docs/a.jpg").exists()
        assert index.contains("uploads", "docs/a.jpg") is False
        record = await repository.find_by_id(1)
        assert record is not None
        assert (record.volume_id, record.folder_id, record.filename) == ("images", "library", "a.jpg")

        changelog.flush()
        entry = changelog.load_all()[0]
        assert entry.type == "moved_asset"
        assert entry.payload["fromVolume"] == "uploads"
        assert entry.payload["fromFolder"] == "docs"
        assert entry.payload["targetPath"] == "library/a.jpg"
        assert entry.payload["sourceDeleted"] is True

    @pytest.mark.asyncio
    async def test_shared_file_kept_then_relinked(
        self,
        repository: SqlAssetRepository,
        providers: dict[str, LocalStorageProvider],
        recovery: ErrorRecovery,
        changelog: ChangeLog,
        put_file: Callable[..., Path],
        volume_path: Callable[[str, str], Path],
        make_asset: Callable[..., AssetRecord],
    ) -> None:
        """A file shared by two assets is kept until the last one is relinked."""
        put_file("uploads", "docs/a.jpg", b"abc")
        first = make_asset(1, folder_id="docs", filename="a.jpg")
        second = make_asset(2, folder_id="docs", filename="a.jpg")
        await repository.add_all([first, second])
        consolidator, _ = await make_consolidator(repository, providers, recovery, changelog)

        assert await consolidator.consolidate(first) == "succeeded"
        assert volume_path("uploads", "docs/a.jpg").exists()

        assert await consolidator.consolidate(second) == "succeeded"

        changelog.flush()
        entries = changelog.load_all()
        assert [e.type for e in entries] == ["moved_asset", "updated_asset_path"]
        assert entries[0].payload["sourceDeleted"] is False
        assert entries[1].payload == {
            "assetId": 2,
            "originalVolumeId": "uploads",
            "originalFolderId": "docs",
            "newVolumeId": "images",
            "newFolderId": "library",
        }
        record = await repository.find_by_id(2)
        assert record is not None
        assert record.path == "library/a.jpg"

    @pytest.mark.asyncio
    async def test_name_collision(
        self,
        repository: SqlAssetRepository,
        providers: dict[str, LocalStorageProvider],
        recovery: ErrorRecovery,
        changelog: ChangeLog,
        put_file: Callable[..., Path],
        volume_path: Callable[[str, str], Path],
        make_asset: Callable[..., AssetRecord],
    ) -> None:
        """A different file with the same name gets a suffixed target."""
        put_file("uploads", "docs/a.jpg", b"new content")
        put_file("images", "library/a.jpg", b"old")
        asset = make_asset(1, folder_id="docs", filename="a.jpg")
        await repository.add_all([asset])
        consolidator, _ = await make_consolidator(repository, providers, recovery, changelog)

        assert await consolidator.consolidate(asset) == "succeeded"

        assert volume_path("images", "library/a.jpg").read_bytes() == b"old"
        assert volume_path("images", "library/a-1.jpg").read_bytes() == b"new content"
        record = await repository.find_by_id(1)
        assert record is not None
        assert record.filename == "a-1.jpg"
