"""Bounded-memory batch iteration over the asset repository."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable, Collection, Sequence
from dataclasses import dataclass, field
from typing import Generic, Literal, TypeVar

from asset_migrate.models import AssetRecord
from asset_migrate.recovery import ErrorRecovery
from asset_migrate.repository import AssetRepository

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100

T = TypeVar("T")

# Result of handling one item inside a phase
ItemOutcome = Literal["succeeded", "skipped", "failed"]


@dataclass
class Batch(Generic[T]):
    """One page of items.

    Attributes:
        index: Zero-based page number.
        items: Items still to process in this page.
        skipped: Number of items dropped because they were already processed.
    """

    index: int
    items: list[T] = field(default_factory=list)
    skipped: int = 0


def asset_key(asset: AssetRecord) -> str:
    """Processed-id key for an asset."""
    return str(asset.id)


class BatchProcessor:
    """Iterates assets page by page using offset-limit pagination.

    Only one page is held in memory. Volumes passed in should include every
    volume a processed asset may be moved into, so that relocating records
    during iteration does not shift later pages.

    Example:
        >>> processor = BatchProcessor(repo, ["uploads", "images"], batch_size=100)
        >>> async for batch in processor.batches():
        ...     for asset in batch.items:
        ...         ...
    """

    def __init__(
        self,
        repository: AssetRepository,
        volume_ids: Sequence[str],
        batch_size: int = DEFAULT_BATCH_SIZE,
        skip_ids: Collection[str] | None = None,
        should_stop: Callable[[], bool] | None = None,
        recovery: ErrorRecovery | None = None,
    ) -> None:
        """Initialize the processor.

        Args:
            repository: Asset repository to page through.
            volume_ids: Volumes to include.
            batch_size: Assets per page.
            skip_ids: Asset ids (as strings) already processed on a previous run.
            should_stop: Polled before each page; iteration ends when it returns True.
            recovery: Retry policy for page queries.
        """
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.repository = repository
        self.volume_ids = list(volume_ids)
        self.batch_size = batch_size
        self.skip_ids = skip_ids or frozenset()
        self.should_stop = should_stop
        self.recovery = recovery or ErrorRecovery()

    async def total(self) -> int:
        """Count assets in the configured volumes."""
        return await self.recovery.retry(
            lambda: self.repository.count(self.volume_ids), "count:assets"
        )

    async def batches(self, start_batch: int = 0) -> AsyncIterator[Batch[AssetRecord]]:
        """Yield pages of assets, filtering out already processed ids.

        Args:
            start_batch: Page to start from.
        """
        index = start_batch
        while True:
            if self.should_stop and self.should_stop():
                logger.info("Batch iteration stopped before batch %d", index)
                return

            offset = index * self.batch_size
            page = await self.recovery.retry(
                lambda: self.repository.find_by_volumes(self.volume_ids, offset, self.batch_size),
                f"page:{offset}",
            )
            if not page:
                return

            items = [asset for asset in page if asset_key(asset) not in self.skip_ids]
            yield Batch(index=index, items=items, skipped=len(page) - len(items))

            if len(page) < self.batch_size:
                return
            index += 1


async def iter_batches(
    items: Sequence[T],
    key: Callable[[T], str],
    batch_size: int = DEFAULT_BATCH_SIZE,
    skip_ids: Collection[str] | None = None,
) -> AsyncIterator[Batch[T]]:
    """Page through an in-memory sequence the same way BatchProcessor pages assets."""
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")
    skip = skip_ids or frozenset()
    for index, start in enumerate(range(0, len(items), batch_size)):
        page = items[start : start + batch_size]
        kept = [item for item in page if key(item) not in skip]
        yield Batch(index=index, items=kept, skipped=len(page) - len(kept))
