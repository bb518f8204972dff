"""Unit tests for broken link repair."""

import csv
from collections.abc import Callable
from pathlib import Path

import pytest

from asset_migrate.changelog import ChangeLog
from asset_migrate.file_matcher import FileIndex, FileMatcher
from asset_migrate.inventory import build_file_index
from asset_migrate.link_repair import MISSING_FILES_HEADER, LinkRepairer, write_missing_files
from asset_migrate.models import AssetRecord
from asset_migrate.operations import FileMover
from asset_migrate.recovery import MISSING_FILE_CATEGORY, ErrorRecovery
from asset_migrate.repository import SqlAssetRepository
from asset_migrate.storage import LocalStorageProvider

VOLUMES = ["uploads", "images"]


@pytest.fixture
def changelog(tmp_path: Path) -> ChangeLog:
    return ChangeLog(tmp_path / "changelogs", "m1")


async def make_repairer(
    repository: SqlAssetRepository,
    providers: dict[str, LocalStorageProvider],
    recovery: ErrorRecovery,
    changelog: ChangeLog,
) -> tuple[LinkRepairer, FileIndex]:
    index = await build_file_index(providers, VOLUMES, recovery)
    repairer = LinkRepairer(
        repository,
        FileMover(providers, recovery),
        changelog,
        recovery,
        FileMatcher("images"),
        index,
        "images",
        "library",
    )
    return repairer, index


class TestLinkRepairer:
    """Tests for LinkRepairer.repair."""

    @pytest.mark.asyncio
    async def test_skips_healthy_asset(
        self,
        repository: SqlAssetRepository,
        providers: dict[str, LocalStorageProvider],
        recovery: ErrorRecovery,
        changelog: ChangeLog,
        put_file: Callable[..., Path],
        make_asset: Callable[..., AssetRecord],
    ) -> None:
        """Assets whose file exists are left alone."""
        put_file("uploads", "docs/a.jpg")
        repairer, _ = await make_repairer(repository, providers, recovery, changelog)

        assert await repairer.repair(make_asset(1, folder_id="docs", filename="a.jpg")) == "skipped"
        assert changelog.pending == 0

    @pytest.mark.asyncio
    async def test_copies_match_into_target(
        self,
        repository: SqlAssetRepository,
        providers: dict[str, LocalStorageProvider],
        recovery: ErrorRecovery,
        changelog: ChangeLog,
        put_file: Callable[..., Path],
        volume_path: Callable[[str, str], Path],
        make_asset: Callable[..., AssetRecord],
    ) -> None:
        """A matched file is copied into the target folder and the record repointed."""
        put_file("uploads", "elsewhere/PhotoA.jpg", b"img")
        broken = make_asset(1, folder_id="gone", filename="photoA_copy.jpg", file_exists=False)
        await repository.add_all([broken])
        repairer, index = await make_repairer(repository, providers, recovery, changelog)

        assert await repairer.repair(broken) == "succeeded"

        assert volume_path("images", "library/photoA_copy.jpg").read_bytes() == b"img"
        assert volume_path("uploads", "elsewhere/PhotoA.jpg").exists()
        assert index.contains("images", "library/photoA_copy.jpg")
        record = await repository.find_by_id(1)
        assert record is not None
        assert (record.volume_id, record.folder_id, record.file_exists) == ("images", "library", True)

        changelog.flush()
        payload = changelog.load_all()[0].payload
        assert payload["strategy"] == "normalized"
        assert payload["copied"] is True
        assert payload["originalVolumeId"] == "uploads"
        assert payload["originalFolderId"] == "gone"
        assert payload["originalFileExists"] is False
        assert payload["matchedPath"] == "elsewhere/PhotoA.jpg"

    @pytest.mark.asyncio
    async def test_match_already_in_target(
        self,
        repository: SqlAssetRepository,
        providers: dict[str, LocalStorageProvider],
        recovery: ErrorRecovery,
        changelog: ChangeLog,
        put_file: Callable[..., Path],
        make_asset: Callable[..., AssetRecord],
    ) -> None:
        """A match already at the target path is not copied."""
        put_file("images", "library/a.jpg")
        broken = make_asset(1, folder_id="gone", filename="a.jpg", file_exists=False)
        await repository.add_all([broken])
        repairer, _ = await make_repairer(repository, providers, recovery, changelog)

        assert await repairer.repair(broken) == "succeeded"

        changelog.flush()
        payload = changelog.load_all()[0].payload
        assert payload["copied"] is False
        assert payload["copiedPath"] == "library/a.jpg"
        record = await repository.find_by_id(1)
        assert record is not None
        assert record.volume_id == "images"

    @pytest.mark.asyncio
    async def test_occupied_target_gets_unique_name(
        self,
        repository: SqlAssetRepository,
        providers: dict[str, LocalStorageProvider],
        recovery: ErrorRecovery,
        changelog: ChangeLog,
        put_file: Callable[..., Path],
        volume_path: Callable[[str, str], Path],
        make_asset: Callable[..., AssetRecord],
    ) -> None:
        """A different file at the target path is never overwritten."""
        put_file("uploads", "other/a.jpg", b"mine")
        put_file("images", "library/a.jpg", b"someone else")
        broken = make_asset(1, folder_id="gone", filename="a.jpg", file_exists=False)
        await repository.add_all([broken])
        repairer, _ = await make_repairer(repository, providers, recovery, changelog)

        assert await repairer.repair(broken) == "succeeded"

        assert volume_path("images", "library/a.jpg").read_bytes() == b"someone else"
        assert volume_path("images", "library/a-1.jpg").read_bytes() == b"mine"
        record = await repository.find_by_id(1)
        assert record is not None
        assert record.filename == "a-1.jpg"

    @pytest.mark.asyncio
    async def test_no_match(
        self,
        repository: SqlAssetRepository,
        providers: dict[str, LocalStorageProvider],
        recovery: ErrorRecovery,
        changelog: ChangeLog,
        make_asset: Callable[..., AssetRecord],
    ) -> None:
        """Unresolved assets are logged and counted as missing files."""
        recovery.set_expected_missing_files(1)
        broken = make_asset(1, folder_id="gone", filename="a.jpg", file_exists=False)
        repairer, _ = await make_repairer(repository, providers, recovery, changelog)

        assert await repairer.repair(broken) == "failed"

        changelog.flush()
        entry = changelog.load_all()[0]
        assert entry.type == "broken_link_not_fixed"
        assert entry.payload["reason"] == "no_match"
        assert recovery.get_error_counts() == {MISSING_FILE_CATEGORY: 1}

    @pytest.mark.asyncio
    async def test_low_confidence(
        self,
        repository: SqlAssetRepository,
        providers: dict[str, LocalStorageProvider],
        recovery: ErrorRecovery,
        changelog: ChangeLog,
        put_file: Callable[..., Path],
        make_asset: Callable[..., AssetRecord],
    ) -> None:
        """Fuzzy candidates under the gate are reported with their confidence."""
        recovery.set_expected_missing_files(1)
        put_file("uploads", "abxyzq.png")
        broken = make_asset(1, folder_id="gone", filename="abcdef.png", file_exists=False)
        repairer, _ = await make_repairer(repository, providers, recovery, changelog)

        assert await repairer.repair(broken) == "failed"

        changelog.flush()
        payload = changelog.load_all()[0].payload
        assert payload["reason"] == "low_confidence"
        assert payload["rejectedMatch"] == "uploads::abxyzq.png"
        assert payload["rejectedConfidence"] == 0.6


class TestMissingFilesReport:
    """Tests for write_missing_files."""

    def test_writes_unfixed_entries(self, tmp_path: Path, changelog: ChangeLog) -> None:
        """Only unfixed assets are written, one CSV row each."""
        changelog.log_change(
            "broken_link_not_fixed",
            {
                "assetId": 4,
                "filename": "a.jpg",
                "volumeId": "uploads",
                "reason": "low_confidence",
                "rejectedMatch": "images::library/b.jpg",
                "rejectedConfidence": 0.51234,
            },
        )
        changelog.log_change("fixed_broken_link", {"assetId": 5})
        changelog.log_change(
            "broken_link_not_fixed",
            {
                "assetId": 6,
                "filename": "c.png",
                "volumeId": "uploads",
                "reason": "no_match",
                "rejectedMatch": None,
                "rejectedConfidence": None,
            },
        )
        changelog.flush()
        path = tmp_path / "reports" / "missing.csv"

        assert write_missing_files(path, changelog.load_all()) == 2

        with path.open(newline="") as f:
            rows = list(csv.reader(f))
        assert rows == [
            MISSING_FILES_HEADER,
            ["4", "a.jpg", "uploads", "low_confidence", "images::library/b.jpg", "0.51"],
            ["6", "c.png", "uploads", "no_match", "", ""],
        ]
