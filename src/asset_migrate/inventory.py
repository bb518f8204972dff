"""Inventory building and asset/file analysis.

File inventories are rebuilt from a storage scan whenever a phase needs
them; nothing here is persisted except the discovery report.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from asset_migrate.batch import BatchProcessor
from asset_migrate.file_matcher import FileIndex
from asset_migrate.models import AssetRecord, FileRecord
from asset_migrate.recovery import ErrorRecovery
from asset_migrate.repository import AssetRepository
from asset_migrate.storage import StorageProvider, is_transform_path

logger = logging.getLogger(__name__)


async def scan_volume(
    provider: StorageProvider,
    recovery: ErrorRecovery,
    include_transforms: bool = False,
) -> list[FileRecord]:
    """List every file in a volume.

    Args:
        provider: Provider to scan.
        recovery: Retry policy for the listing.
        include_transforms: Include files in generated transform directories.

    Returns:
        File records ordered as listed by the provider.
    """

    async def _collect() -> list[FileRecord]:
        return [
            record
            async for record in provider.list("", recursive=True)
            if include_transforms or not is_transform_path(record.path)
        ]

    return await recovery.retry(_collect, f"list:{provider.provider_id}")


async def build_file_index(
    providers: Mapping[str, StorageProvider],
    volume_ids: Sequence[str],
    recovery: ErrorRecovery,
) -> FileIndex:
    """Scan volumes and index their files (transform directories excluded).

    Args:
        providers: Providers by volume id.
        volume_ids: Volumes to scan; unknown ids are skipped with a warning.
        recovery: Retry policy for listings.

    Returns:
        FileIndex over every scanned file.
    """
    index = FileIndex()
    for volume_id in dict.fromkeys(volume_ids):
        provider = providers.get(volume_id)
        if provider is None:
            logger.warning("No storage provider for volume '%s', skipping scan", volume_id)
            continue
        files = await scan_volume(provider, recovery)
        for file in files:
            index.add(file)
        logger.info("Scanned %d files in volume '%s'", len(files), volume_id)
    return index


def in_target_location(asset: AssetRecord, target_volume: str, target_folder: str) -> bool:
    """Check whether an asset already sits in the target volume and folder."""
    return asset.volume_id == target_volume and asset.folder_id.strip("/") == target_folder.strip("/")


@dataclass
class DiscoveryAnalysis:
    """Classification of assets and files found during discovery.

    Buckets hold asset ids, except orphaned_files (paths in the target
    volume) and the duplicate maps.
    """

    total_assets: int = 0
    total_files: int = 0
    assets_with_files: list[int] = field(default_factory=list)
    broken_links: list[int] = field(default_factory=list)
    orphaned_files: list[str] = field(default_factory=list)
    used_assets_correct_location: list[int] = field(default_factory=list)
    used_assets_wrong_location: list[int] = field(default_factory=list)
    unused_assets: list[int] = field(default_factory=list)
    duplicates: dict[str, list[int]] = field(default_factory=dict)
    shared_files: dict[str, list[int]] = field(default_factory=dict)

    def counts(self) -> dict[str, int]:
        """Size of every bucket."""
        return {
            "total_assets": self.total_assets,
            "total_files": self.total_files,
            "assets_with_files": len(self.assets_with_files),
            "broken_links": len(self.broken_links),
            "orphaned_files": len(self.orphaned_files),
            "used_assets_correct_location": len(self.used_assets_correct_location),
            "used_assets_wrong_location": len(self.used_assets_wrong_location),
            "unused_assets": len(self.unused_assets),
            "duplicates": len(self.duplicates),
            "shared_files": len(self.shared_files),
        }

    def planned_operations(self) -> dict[str, int]:
        """Operations a live run would attempt, by phase."""
        return {
            "fix_links": len(self.broken_links),
            "consolidate": len(self.used_assets_wrong_location),
            "quarantine_unused_assets": len(self.unused_assets),
            "quarantine_orphaned_files": len(self.orphaned_files),
        }

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "counts": self.counts(),
            "planned_operations": self.planned_operations(),
            "assets_with_files": self.assets_with_files,
            "broken_links": self.broken_links,
            "orphaned_files": self.orphaned_files,
            "used_assets_correct_location": self.used_assets_correct_location,
            "used_assets_wrong_location": self.used_assets_wrong_location,
            "unused_assets": self.unused_assets,
            "duplicates": self.duplicates,
            "shared_files": self.shared_files,
        }

    def save(self, path: Path) -> None:
        """Write the analysis report."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)


async def analyze(
    repository: AssetRepository,
    index: FileIndex,
    volume_ids: Sequence[str],
    target_volume: str,
    target_folder: str,
    batch_size: int = 100,
    should_stop: Callable[[], bool] | None = None,
    on_batch: Callable[[int], None] | None = None,
    recovery: ErrorRecovery | None = None,
) -> DiscoveryAnalysis:
    """Classify every asset against the scanned files.

    Args:
        repository: Asset repository.
        index: Index of scanned files.
        volume_ids: Volumes whose assets are analyzed.
        target_volume: Volume assets are consolidated into.
        target_folder: Folder inside the target volume.
        batch_size: Assets per page.
        should_stop: Polled between pages to stop early.
        on_batch: Called with the number of assets in each page.
        recovery: Retry policy for page queries.

    Returns:
        DiscoveryAnalysis with ids per bucket.
    """
    analysis = DiscoveryAnalysis(total_files=len(index))
    by_filename: dict[str, list[int]] = {}
    by_path: dict[str, list[int]] = {}

    processor = BatchProcessor(
        repository, volume_ids, batch_size, should_stop=should_stop, recovery=recovery
    )
    async for batch in processor.batches():
        for asset in batch.items:
            analysis.total_assets += 1
            by_filename.setdefault(asset.filename, []).append(asset.id)

            if not index.contains(asset.volume_id, asset.path):
                analysis.broken_links.append(asset.id)
                continue

            analysis.assets_with_files.append(asset.id)
            by_path.setdefault(f"{asset.volume_id}::{asset.path}", []).append(asset.id)

            if asset.is_used:
                if in_target_location(asset, target_volume, target_folder):
                    analysis.used_assets_correct_location.append(asset.id)
                else:
                    analysis.used_assets_wrong_location.append(asset.id)
            elif asset.volume_id == target_volume:
                analysis.unused_assets.append(asset.id)

        if on_batch:
            on_batch(len(batch.items))

    # Orphans are only collected from the target volume
    for file in index.files_in(target_volume):
        if file.filename not in by_filename:
            analysis.orphaned_files.append(file.path)

    analysis.duplicates = {name: ids for name, ids in by_filename.items() if len(ids) > 1}
    analysis.shared_files = {key: ids for key, ids in by_path.items() if len(ids) > 1}

    logger.info(
        "Discovery: %d assets, %d files, %d broken links, %d orphaned files",
        analysis.total_assets,
        analysis.total_files,
        len(analysis.broken_links),
        len(analysis.orphaned_files),
    )
    return analysis


async def collect_asset_filenames(
    repository: AssetRepository,
    volume_ids: Sequence[str],
    batch_size: int = 100,
    recovery: ErrorRecovery | None = None,
) -> set[str]:
    """Filenames of every asset in the given volumes."""
    names: set[str] = set()
    processor = BatchProcessor(repository, volume_ids, batch_size, recovery=recovery)
    async for batch in processor.batches():
        names.update(asset.filename for asset in batch.items)
    return names
