"""Transform cleanup and post-migration verification."""

from __future__ import annotations

import logging
import random
from collections.abc import Mapping, Sequence
from pathlib import Path

from asset_migrate.batch import BatchProcessor, ItemOutcome
from asset_migrate.changelog import ChangeLog
from asset_migrate.file_matcher import FileIndex
from asset_migrate.inventory import in_target_location, scan_volume
from asset_migrate.models import AssetRecord, FileRecord
from asset_migrate.operations import FileMover
from asset_migrate.recovery import ErrorRecovery
from asset_migrate.repository import AssetRepository
from asset_migrate.storage import StorageProvider, is_transform_path

logger = logging.getLogger(__name__)


def transform_key(file: FileRecord) -> str:
    """Processed-id key for a transform file."""
    return f"transform:{file.key}"


class Cleaner:
    """Deletes generated transforms and verifies the migrated layout."""

    def __init__(
        self,
        repository: AssetRepository,
        providers: Mapping[str, StorageProvider],
        mover: FileMover,
        changelog: ChangeLog,
        recovery: ErrorRecovery,
        target_volume: str,
        target_folder: str,
        batch_size: int = 100,
    ) -> None:
        self.repository = repository
        self.providers = providers
        self.mover = mover
        self.changelog = changelog
        self.recovery = recovery
        self.target_volume = target_volume
        self.target_folder = target_folder.strip("/")
        self.batch_size = batch_size

    async def find_transforms(self, volume_ids: Sequence[str]) -> list[FileRecord]:
        """List generated transform files in the given volumes."""
        transforms: list[FileRecord] = []
        for volume_id in dict.fromkeys(volume_ids):
            provider = self.providers.get(volume_id)
            if provider is None:
                continue
            files = await scan_volume(provider, self.recovery, include_transforms=True)
            transforms.extend(f for f in files if is_transform_path(f.path))
        return transforms

    async def delete_transform(self, file: FileRecord) -> ItemOutcome:
        """Delete one transform file."""
        self.changelog.log_change("deleted_transform", {"volume": file.provider_id, "path": file.path})
        await self.mover.delete(file.provider_id, file.path)
        return "succeeded"

    def check_asset(self, asset: AssetRecord, index: FileIndex) -> list[str]:
        """Problems found for one asset in the target volume."""
        issues: list[str] = []
        if not index.contains(asset.volume_id, asset.path):
            issues.append(
                f"Asset {asset.id}: file missing at {asset.volume_id}:{asset.path}"
            )
        if asset.is_used and not in_target_location(asset, self.target_volume, self.target_folder):
            issues.append(
                f"Asset {asset.id}: referenced but stored in {asset.volume_id}:{asset.folder_id or '/'}"
            )
        return issues

    async def verify(self, index: FileIndex, sample_size: int | None = None) -> list[str]:
        """Check that target assets have files.

        Args:
            index: Fresh index of the target volume.
            sample_size: Number of assets to check at random; None checks all.

        Returns:
            Human-readable issue lines.
        """
        issues: list[str] = []
        sample: list[AssetRecord] = []
        seen = 0
        processor = BatchProcessor(
            self.repository, [self.target_volume], self.batch_size, recovery=self.recovery
        )
        async for batch in processor.batches():
            for asset in batch.items:
                seen += 1
                if sample_size is None:
                    issues.extend(self.check_asset(asset, index))
                elif len(sample) < sample_size:
                    sample.append(asset)
                else:
                    # Reservoir sampling keeps every asset equally likely
                    slot = random.randrange(seen)
                    if slot < sample_size:
                        sample[slot] = asset

        checked = seen
        if sample_size is not None:
            if seen > sample_size:
                logger.info("Verifying a sample of %d of %d target assets", sample_size, seen)
            for asset in sample:
                issues.extend(self.check_asset(asset, index))
            checked = len(sample)

        if issues:
            logger.warning("Verification found %d issues", len(issues))
        else:
            logger.info("Verification passed for %d assets", checked)
        return issues


def write_issues(path: Path, issues: Sequence[str]) -> Path:
    """Write verification issues, one per line."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        for issue in issues:
            f.write(f"{issue}\n")
    return path
