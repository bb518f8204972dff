"""Consolidation of used assets into the target location."""

from __future__ import annotations

import logging
import posixpath

from asset_migrate.batch import ItemOutcome
from asset_migrate.changelog import ChangeLog
from asset_migrate.file_matcher import FileIndex
from asset_migrate.inventory import in_target_location
from asset_migrate.models import AssetRecord, join_path
from asset_migrate.operations import FileMover, unique_path
from asset_migrate.recovery import ErrorRecovery
from asset_migrate.repository import AssetRepository

logger = logging.getLogger(__name__)


class Consolidator:
    """Moves assets into the target volume and folder.

    The source file is deleted after the copy unless another asset record
    points at the same physical file.
    """

    def __init__(
        self,
        repository: AssetRepository,
        mover: FileMover,
        changelog: ChangeLog,
        recovery: ErrorRecovery,
        index: FileIndex,
        target_volume: str,
        target_folder: str,
    ) -> None:
        self.repository = repository
        self.mover = mover
        self.changelog = changelog
        self.recovery = recovery
        self.index = index
        self.target_volume = target_volume
        self.target_folder = target_folder.strip("/")

    async def consolidate(self, asset: AssetRecord) -> ItemOutcome:
        """Move one used asset into the target location if it is elsewhere."""
        if not asset.is_used:
            return "skipped"
        if in_target_location(asset, self.target_volume, self.target_folder):
            return "skipped"

        source = self.index.get(asset.volume_id, asset.path)
        if source is None:
            logger.debug("Asset %d has no file at %s, not consolidating", asset.id, asset.path)
            return "skipped"

        existing = self.index.get(
            self.target_volume, join_path(self.target_folder, asset.filename)
        )
        if existing is not None and source.size and existing.size == source.size:
            await self._relink(asset)
            return "succeeded"

        await self.move_to_target(asset, "moved_asset")
        return "succeeded"

    async def _relink(self, asset: AssetRecord) -> None:
        # Identical file already in place: only the record changes
        self.changelog.log_change(
            "updated_asset_path",
            {
                "assetId": asset.id,
                "originalVolumeId": asset.volume_id,
                "originalFolderId": asset.folder_id,
                "newVolumeId": self.target_volume,
                "newFolderId": self.target_folder,
            },
        )
        asset.volume_id = self.target_volume
        asset.folder_id = self.target_folder
        await self.recovery.retry(lambda: self.repository.update(asset), f"update:{asset.id}")
        logger.debug("Relinked asset %d to existing target file", asset.id)

    async def _shares_file(self, asset: AssetRecord) -> bool:
        others = await self.recovery.retry(
            lambda: self.repository.find_by_filename(asset.filename), f"find:{asset.filename}"
        )
        return any(
            other.id != asset.id
            and other.volume_id == asset.volume_id
            and other.folder_id == asset.folder_id
            and other.filename == asset.filename
            for other in others
        )

    async def move_to_target(self, asset: AssetRecord, change_type: str) -> str:
        """Copy an asset's file to the target folder and repoint its record.

        Args:
            asset: Asset to move.
            change_type: Change log type recorded for the move.

        Returns:
            Path of the file in the target volume.
        """
        source_path = asset.path
        target_path = unique_path(self.index, self.target_volume, self.target_folder, asset.filename)
        delete_source = not await self._shares_file(asset)

        self.changelog.log_change(
            change_type,
            {
                "assetId": asset.id,
                "filename": asset.filename,
                "newFilename": posixpath.basename(target_path),
                "fromVolume": asset.volume_id,
                "fromFolder": asset.folder_id,
                "toVolume": self.target_volume,
                "toFolder": self.target_folder,
                "sourcePath": source_path,
                "targetPath": target_path,
                "sourceDeleted": delete_source,
            },
        )

        from_volume = asset.volume_id
        await self.mover.copy(from_volume, source_path, self.target_volume, target_path, self.index)

        asset.volume_id = self.target_volume
        asset.folder_id = self.target_folder
        asset.filename = posixpath.basename(target_path)
        asset.file_exists = True
        await self.recovery.retry(lambda: self.repository.update(asset), f"update:{asset.id}")

        if delete_source:
            await self.mover.delete(from_volume, source_path, self.index)
        else:
            logger.info("Keeping %s:%s, shared by another asset", from_volume, source_path)

        logger.debug(
            "Moved asset %d %s:%s -> %s:%s",
            asset.id,
            from_volume,
            source_path,
            self.target_volume,
            target_path,
        )
        return target_path
