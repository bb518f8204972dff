"""Unit tests for transform cleanup and verification."""

from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from asset_migrate.changelog import ChangeLog
from asset_migrate.cleanup import Cleaner, transform_key, write_issues
from asset_migrate.file_matcher import FileIndex
from asset_migrate.models import AssetRecord, FileRecord
from asset_migrate.operations import FileMover
from asset_migrate.recovery import ErrorRecovery
from asset_migrate.repository import SqlAssetRepository
from asset_migrate.storage import LocalStorageProvider


@pytest.fixture
def changelog(tmp_path: Path) -> ChangeLog:
    return ChangeLog(tmp_path / "changelogs", "m1")


@pytest.fixture
def cleaner(
    repository: SqlAssetRepository,
    providers: dict[str, LocalStorageProvider],
    recovery: ErrorRecovery,
    changelog: ChangeLog,
) -> Cleaner:
    return Cleaner(
        repository,
        providers,
        FileMover(providers, recovery),
        changelog,
        recovery,
        "images",
        "library",
        batch_size=2,
    )


class TestTransforms:
    """Tests for finding and deleting transforms."""

    @pytest.mark.asyncio
    async def test_find_and_delete(
        self,
        cleaner: Cleaner,
        changelog: ChangeLog,
        put_file: Callable[..., Path],
        volume_path: Callable[[str, str], Path],
    ) -> None:
        """Only files under transform directories are found and deleted."""
        put_file("uploads", "docs/a.jpg")
        put_file("uploads", "docs/_thumbs/a.jpg")
        put_file("uploads", "_small/b.jpg")

        transforms = await cleaner.find_transforms(["uploads", "uploads", "unknown"])

        assert [f.path for f in transforms] == ["_small/b.jpg", "docs/_thumbs/a.jpg"]
        assert transform_key(transforms[0]) == "transform:uploads::_small/b.jpg"

        assert await cleaner.delete_transform(transforms[1]) == "succeeded"
        assert not volume_path("uploads", "docs/_thumbs/a.jpg").exists()
        assert volume_path("uploads", "docs/a.jpg").exists()

        changelog.flush()
        entry = changelog.load_all()[0]
        assert entry.type == "deleted_transform"
        assert entry.payload == {"volume": "uploads", "path": "docs/_thumbs/a.jpg"}


class TestVerification:
    """Tests for post-migration verification."""

    def test_check_asset(self, cleaner: Cleaner, make_asset: Callable[..., AssetRecord]) -> None:
        """Missing files and misplaced used assets are reported."""
        index = FileIndex([FileRecord("images", "library/ok.jpg", "ok.jpg")])

        assert cleaner.check_asset(make_asset(1, "images", "library", "ok.jpg"), index) == []
        assert cleaner.check_asset(make_asset(2, "images", "library", "gone.jpg"), index) == [
            "Asset 2: file missing at images:library/gone.jpg"
        ]
        assert cleaner.check_asset(
            make_asset(3, "images", "", "ok.jpg", reference_count=1), index
        ) == [
            "Asset 3: file missing at images:ok.jpg",
            "Asset 3: referenced but stored in images:/",
        ]

    @pytest.mark.asyncio
    async def test_verify_all(
        self,
        cleaner: Cleaner,
        repository: SqlAssetRepository,
        make_asset: Callable[..., AssetRecord],
    ) -> None:
        """Every target asset is checked when no sample size is set."""
        await repository.add_all(
            [
                make_asset(1, "images", "library", "ok.jpg"),
                make_asset(2, "images", "library", "gone.jpg"),
                make_asset(3, "images", "library", "also-gone.jpg"),
                make_asset(4, "uploads", "", "not-checked.jpg"),
            ]
        )
        index = FileIndex([FileRecord("images", "library/ok.jpg", "ok.jpg")])

        issues = await cleaner.verify(index)

        assert issues == [
            "Asset 2: file missing at images:library/gone.jpg",
            "Asset 3: file missing at images:library/also-gone.jpg",
        ]

    @pytest.mark.asyncio
    async def test_verify_sample(
        self,
        cleaner: Cleaner,
        repository: SqlAssetRepository,
        make_asset: Callable[..., AssetRecord],
    ) -> None:
        """A sample size limits how many assets are checked."""
        await repository.add_all(
            [make_asset(i, "images", "library", f"gone{i}.jpg") for i in range(1, 6)]
        )

        issues = await cleaner.verify(FileIndex(), sample_size=2)

        assert len(issues) == 2

    @pytest.mark.asyncio
    async def test_verify_streams_target_assets(
        self,
        providers: dict[str, LocalStorageProvider],
        recovery: ErrorRecovery,
        changelog: ChangeLog,
        make_generated: Callable[..., Any],
    ) -> None:
        """Verification keeps at most a page of records in memory when checking all."""
        generated = make_generated(2000)
        cleaner = Cleaner(
            generated,
            providers,
            FileMover(providers, recovery),
            changelog,
            recovery,
            "images",
            "library",
            batch_size=10,
        )

        issues = await cleaner.verify(FileIndex())

        assert len(issues) == 2000
        assert generated.peak_live <= 20

    @pytest.mark.asyncio
    async def test_verify_sample_streams_target_assets(
        self,
        providers: dict[str, LocalStorageProvider],
        recovery: ErrorRecovery,
        changelog: ChangeLog,
        make_generated: Callable[..., Any],
    ) -> None:
        """A sample holds only the sampled records on top of the current page."""
        generated = make_generated(2000)
        cleaner = Cleaner(
            generated,
            providers,
            FileMover(providers, recovery),
            changelog,
            recovery,
            "images",
            "library",
            batch_size=10,
        )

        issues = await cleaner.verify(FileIndex(), sample_size=5)

        assert len(issues) == 5
        assert generated.peak_live <= 25

    def test_write_issues(self, tmp_path: Path) -> None:
        """Issues are written one per line."""
        path = write_issues(tmp_path / "reports" / "issues.txt", ["a", "b"])

        assert path.read_text() == "a\nb\n"
