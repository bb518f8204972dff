"""Quarantine of unused assets and orphaned files.

Nothing is deleted here: files move into the quarantine volume, unused
assets under ``unused/<folder>`` and orphaned files under ``orphaned/<path>``.
"""

from __future__ import annotations

import logging
import posixpath

from asset_migrate.batch import ItemOutcome
from asset_migrate.changelog import ChangeLog
from asset_migrate.file_matcher import FileIndex
from asset_migrate.models import AssetRecord, FileRecord, join_path
from asset_migrate.operations import FileMover, unique_path
from asset_migrate.recovery import ErrorRecovery
from asset_migrate.repository import AssetRepository

logger = logging.getLogger(__name__)

UNUSED_FOLDER = "unused"
ORPHANED_FOLDER = "orphaned"


def orphan_key(file: FileRecord) -> str:
    """Processed-id key for an orphaned file."""
    return f"file:{file.path}"


class Quarantiner:
    """Moves unused target assets and orphaned target files into quarantine."""

    def __init__(
        self,
        repository: AssetRepository,
        mover: FileMover,
        changelog: ChangeLog,
        recovery: ErrorRecovery,
        index: FileIndex,
        target_volume: str,
        quarantine_volume: str,
    ) -> None:
        self.repository = repository
        self.mover = mover
        self.changelog = changelog
        self.recovery = recovery
        self.index = index
        self.target_volume = target_volume
        self.quarantine_volume = quarantine_volume

    def find_orphans(self, asset_filenames: set[str]) -> list[FileRecord]:
        """Target files whose filename no asset uses, ordered by path."""
        return sorted(
            (
                file
                for file in self.index.files_in(self.target_volume)
                if file.filename not in asset_filenames
            ),
            key=lambda f: f.path,
        )

    async def quarantine_asset(self, asset: AssetRecord) -> ItemOutcome:
        """Move an unused target asset and its file into quarantine."""
        if asset.is_used or asset.volume_id != self.target_volume:
            return "skipped"
        if not self.index.contains(asset.volume_id, asset.path):
            return "skipped"

        folder = join_path(UNUSED_FOLDER, asset.folder_id.strip("/")).rstrip("/")
        quarantine_path = unique_path(self.index, self.quarantine_volume, folder, asset.filename)
        original_path = asset.path

        self.changelog.log_change(
            "quarantined_unused_asset",
            {
                "assetId": asset.id,
                "filename": asset.filename,
                "newFilename": posixpath.basename(quarantine_path),
                "fromVolume": asset.volume_id,
                "fromFolder": asset.folder_id,
                "toVolume": self.quarantine_volume,
                "toFolder": folder,
                "originalPath": original_path,
                "quarantinePath": quarantine_path,
            },
        )

        from_volume = asset.volume_id
        await self.mover.copy(
            from_volume, original_path, self.quarantine_volume, quarantine_path, self.index
        )
        asset.volume_id = self.quarantine_volume
        asset.folder_id = folder
        asset.filename = posixpath.basename(quarantine_path)
        await self.recovery.retry(lambda: self.repository.update(asset), f"update:{asset.id}")
        await self.mover.delete(from_volume, original_path, self.index)

        logger.debug("Quarantined unused asset %d to %s", asset.id, quarantine_path)
        return "succeeded"

    async def quarantine_orphan(self, file: FileRecord) -> ItemOutcome:
        """Move an orphaned target file into quarantine."""
        if not self.index.contains(file.provider_id, file.path):
            return "skipped"

        target_path = unique_path(
            self.index,
            self.quarantine_volume,
            join_path(ORPHANED_FOLDER, file.folder),
            file.filename,
        )
        self.changelog.log_change(
            "quarantined_orphaned_file",
            {
                "sourceVolume": file.provider_id,
                "sourcePath": file.path,
                "targetVolume": self.quarantine_volume,
                "targetPath": target_path,
                "size": file.size,
            },
        )
        await self.mover.move(
            file.provider_id, file.path, self.quarantine_volume, target_path, self.index
        )
        logger.debug("Quarantined orphaned file %s to %s", file.path, target_path)
        return "succeeded"
