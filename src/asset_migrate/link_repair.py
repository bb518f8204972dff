"""Repair of assets whose backing file is missing."""

from __future__ import annotations

import csv
import logging
import posixpath
from collections.abc import Iterable
from pathlib import Path

from asset_migrate.batch import ItemOutcome
from asset_migrate.changelog import ChangeLog, ChangeLogEntry
from asset_migrate.file_matcher import FileIndex, FileMatcher
from asset_migrate.models import AssetRecord, FileRecord, join_path
from asset_migrate.operations import FileMover, unique_path
from asset_migrate.recovery import MISSING_FILE_CATEGORY, ErrorRecovery
from asset_migrate.repository import AssetRepository

logger = logging.getLogger(__name__)


class LinkRepairer:
    """Relinks broken assets to the best matching file.

    A matched file is copied into the target folder (unless it already sits
    there) and the asset record is pointed at the copy. Unresolved assets are
    logged and counted as missing source files.
    """

    def __init__(
        self,
        repository: AssetRepository,
        mover: FileMover,
        changelog: ChangeLog,
        recovery: ErrorRecovery,
        matcher: FileMatcher,
        index: FileIndex,
        target_volume: str,
        target_folder: str,
    ) -> None:
        self.repository = repository
        self.mover = mover
        self.changelog = changelog
        self.recovery = recovery
        self.matcher = matcher
        self.index = index
        self.target_volume = target_volume
        self.target_folder = target_folder.strip("/")

    async def repair(self, asset: AssetRecord) -> ItemOutcome:
        """Try to fix one asset.

        Returns:
            "skipped" if the asset is not broken, "succeeded" if a match was
            applied, "failed" if no acceptable match exists.
        """
        if self.index.contains(asset.volume_id, asset.path):
            return "skipped"

        result = self.matcher.find_match(asset, self.index)
        if not result.found or result.file is None:
            self._not_fixed(asset, result.rejected_file, result.rejected_confidence)
            return "failed"

        matched = result.file
        if matched.provider_id == asset.volume_id and matched.path == asset.path:
            return "skipped"

        target_path = join_path(self.target_folder, asset.filename)
        copied = not (matched.provider_id == self.target_volume and matched.path == target_path)
        if copied and self.index.contains(self.target_volume, target_path):
            target_path = unique_path(
                self.index, self.target_volume, self.target_folder, asset.filename
            )
        new_filename = posixpath.basename(target_path)

        self.changelog.log_change(
            "fixed_broken_link",
            {
                "assetId": asset.id,
                "filename": asset.filename,
                "newFilename": new_filename,
                "originalVolumeId": asset.volume_id,
                "originalFolderId": asset.folder_id,
                "originalFileExists": asset.file_exists,
                "targetVolume": self.target_volume,
                "targetFolder": self.target_folder,
                "matchedVolume": matched.provider_id,
                "matchedPath": matched.path,
                "strategy": result.strategy,
                "confidence": result.confidence,
                "copiedPath": target_path,
                "copied": copied,
            },
        )

        if copied:
            await self.mover.copy(
                matched.provider_id, matched.path, self.target_volume, target_path, self.index
            )

        asset.volume_id = self.target_volume
        asset.folder_id = self.target_folder
        asset.filename = new_filename
        asset.file_exists = True
        await self.recovery.retry(lambda: self.repository.update(asset), f"update:{asset.id}")

        logger.info(
            "Fixed asset %d via %s match (%.2f): %s:%s",
            asset.id,
            result.strategy,
            result.confidence,
            matched.provider_id,
            matched.path,
        )
        return "succeeded"

    def _not_fixed(
        self, asset: AssetRecord, rejected: FileRecord | None, confidence: float | None
    ) -> None:
        reason = "low_confidence" if rejected is not None else "no_match"
        self.changelog.log_change(
            "broken_link_not_fixed",
            {
                "assetId": asset.id,
                "filename": asset.filename,
                "volumeId": asset.volume_id,
                "reason": reason,
                "rejectedMatch": rejected.key if rejected is not None else None,
                "rejectedConfidence": confidence,
            },
        )
        self.recovery.record_error(
            MISSING_FILE_CATEGORY,
            f"No file found for asset {asset.id} ({asset.filename})",
            {"assetId": asset.id, "volumeId": asset.volume_id, "reason": reason},
        )


MISSING_FILES_HEADER = [
    "asset_id",
    "filename",
    "volume_id",
    "reason",
    "rejected_match",
    "rejected_confidence",
]


def write_missing_files(path: Path, entries: Iterable[ChangeLogEntry]) -> int:
    """Write assets whose file could not be found or matched as CSV.

    Args:
        path: Destination file.
        entries: Change log entries; only ``broken_link_not_fixed`` rows are written.

    Returns:
        Number of rows written.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    rows = 0
    with path.open("w", encoding="utf-8", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(MISSING_FILES_HEADER)
        for entry in entries:
            if entry.type != "broken_link_not_fixed":
                continue
            p = entry.payload
            confidence = p.get("rejectedConfidence")
            writer.writerow([
                p.get("assetId"),
                p.get("filename"),
                p.get("volumeId"),
                p.get("reason"),
                p.get("rejectedMatch") or "",
                f"{confidence:.2f}" if confidence is not None else "",
            ])
            rows += 1
    return rows
