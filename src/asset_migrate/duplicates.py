"""Resolution of asset records that share one physical file.

When several records point at the same file, one is kept as the primary.
Unused duplicates are deleted from the repository; the deleted record is
written to the change log in full so rollback can put it back. Duplicates
that content still references are kept.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from asset_migrate.batch import ItemOutcome
from asset_migrate.changelog import ChangeLog
from asset_migrate.inventory import in_target_location
from asset_migrate.models import AssetRecord, SharedFile
from asset_migrate.recovery import ErrorRecovery
from asset_migrate.repository import AssetRepository

logger = logging.getLogger(__name__)


def shared_file_key(shared: SharedFile) -> str:
    """Processed-id key for a shared file."""
    return f"duplicate:{shared.key}"


def select_primary(
    records: Sequence[AssetRecord], target_volume: str, target_folder: str
) -> AssetRecord:
    """Pick the record to keep.

    Priority:
    1. Record already in the target location
    2. Most referenced record
    3. Lowest id
    """
    return min(
        records,
        key=lambda a: (
            not in_target_location(a, target_volume, target_folder),
            -a.reference_count,
            a.id,
        ),
    )


class DuplicateResolver:
    """Removes unused duplicate records of shared files."""

    def __init__(
        self,
        repository: AssetRepository,
        changelog: ChangeLog,
        recovery: ErrorRecovery,
        target_volume: str,
        target_folder: str,
    ) -> None:
        self.repository = repository
        self.changelog = changelog
        self.recovery = recovery
        self.target_volume = target_volume
        self.target_folder = target_folder.strip("/")
        self.removed = 0
        self.kept_in_use = 0

    async def find_shared_files(self, volume_ids: Sequence[str]) -> list[SharedFile]:
        """Files with more than one asset record in the given volumes."""
        shared = await self.recovery.retry(
            lambda: self.repository.find_shared_files(volume_ids), "find:shared"
        )
        logger.info("Found %d files shared by more than one asset", len(shared))
        return shared

    async def resolve(self, shared: SharedFile) -> ItemOutcome:
        """Keep the primary record for one file and delete unused duplicates."""
        candidates = await self.recovery.retry(
            lambda: self.repository.find_by_filename(shared.filename), f"find:{shared.filename}"
        )
        records = [record for record in candidates if shared.holds(record)]
        if len(records) < 2:
            return "skipped"

        primary = select_primary(records, self.target_volume, self.target_folder)
        removed = 0
        for record in records:
            if record.id == primary.id:
                continue
            if record.is_used:
                self.kept_in_use += 1
                logger.info(
                    "Keeping duplicate asset %d of %s (%d references)",
                    record.id,
                    shared.key,
                    record.reference_count,
                )
                continue

            self.changelog.log_change(
                "deleted_duplicate_asset",
                {
                    "assetId": record.id,
                    "primaryAssetId": primary.id,
                    "fileKey": shared.key,
                    "record": record.to_dict(),
                },
            )
            asset_id = record.id
            await self.recovery.retry(
                lambda: self.repository.delete(asset_id), f"delete:{asset_id}"
            )
            removed += 1

        self.removed += removed
        logger.debug("Resolved %s: kept %d, removed %d", shared.key, primary.id, removed)
        return "succeeded" if removed else "skipped"
