"""File operations across storage providers.

Every provider call goes through ErrorRecovery.retry so that transient
storage failures are retried and fatal ones surface immediately.
"""

from __future__ import annotations

import logging
import posixpath
from collections.abc import Mapping

from asset_migrate.file_matcher import FileIndex
from asset_migrate.models import FileRecord, join_path
from asset_migrate.recovery import ErrorRecovery
from asset_migrate.storage import StorageError, StorageProvider

logger = logging.getLogger(__name__)


def unique_path(index: FileIndex, provider_id: str, folder: str, filename: str) -> str:
    """Pick a path in ``folder`` that no indexed file occupies.

    Appends ``-1``, ``-2``... to the stem until the path is free.
    """
    path = join_path(folder, filename)
    if not index.contains(provider_id, path):
        return path
    stem, ext = posixpath.splitext(filename)
    counter = 1
    while True:
        candidate = join_path(folder, f"{stem}-{counter}{ext}")
        if not index.contains(provider_id, candidate):
            return candidate
        counter += 1


class FileMover:
    """Copies, moves and deletes files between volumes with retry."""

    def __init__(self, providers: Mapping[str, StorageProvider], recovery: ErrorRecovery) -> None:
        self.providers = providers
        self.recovery = recovery

    def provider(self, volume_id: str) -> StorageProvider:
        """Get the provider for a volume.

        Raises:
            StorageError: If no provider is configured for the volume.
        """
        try:
            return self.providers[volume_id]
        except KeyError:
            raise StorageError(f"No storage provider configured for volume '{volume_id}'") from None

    async def exists(self, volume_id: str, path: str) -> bool:
        provider = self.provider(volume_id)
        return await self.recovery.retry(
            lambda: provider.exists(path), f"exists:{volume_id}:{path}"
        )

    async def copy(
        self,
        src_volume: str,
        src_path: str,
        dst_volume: str,
        dst_path: str,
        index: FileIndex | None = None,
    ) -> int:
        """Copy a file between volumes.

        Args:
            src_volume: Source volume id.
            src_path: Source path.
            dst_volume: Destination volume id.
            dst_path: Destination path.
            index: File index to update with the new file.

        Returns:
            Number of bytes copied.
        """
        source = self.provider(src_volume)
        destination = self.provider(dst_volume)

        data = await self.recovery.retry(
            lambda: source.read(src_path), f"read:{src_volume}:{src_path}"
        )
        await self.recovery.retry(
            lambda: destination.write(dst_path, data), f"write:{dst_volume}:{dst_path}"
        )
        if index is not None:
            index.add(
                FileRecord(
                    provider_id=dst_volume,
                    path=dst_path,
                    filename=posixpath.basename(dst_path),
                    size=len(data),
                )
            )
        logger.debug("Copied %s:%s -> %s:%s", src_volume, src_path, dst_volume, dst_path)
        return len(data)

    async def delete(self, volume_id: str, path: str, index: FileIndex | None = None) -> None:
        """Delete a file."""
        provider = self.provider(volume_id)
        await self.recovery.retry(lambda: provider.delete(path), f"delete:{volume_id}:{path}")
        if index is not None:
            record = index.get(volume_id, path)
            if record is not None:
                index.discard(record)

    async def move(
        self,
        src_volume: str,
        src_path: str,
        dst_volume: str,
        dst_path: str,
        index: FileIndex | None = None,
    ) -> int:
        """Copy a file, then delete the source."""
        size = await self.copy(src_volume, src_path, dst_volume, dst_path, index)
        await self.delete(src_volume, src_path, index)
        return size
