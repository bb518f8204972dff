"""Inline image linking for content fields.

Rewrites ``<img src="...">`` references embedded in reference fields into
``{asset:ID:url}`` tokens and counts each linked asset as used.
"""

from __future__ import annotations

import logging
import posixpath
import re
from collections.abc import AsyncIterator, Collection
from dataclasses import dataclass
from urllib.parse import unquote, urlsplit

from asset_migrate.batch import Batch, ItemOutcome
from asset_migrate.changelog import ChangeLog
from asset_migrate.models import AssetRecord, ReferenceField, ReferenceRow
from asset_migrate.recovery import ErrorRecovery
from asset_migrate.repository import AssetRepository

logger = logging.getLogger(__name__)

# Whole <img> tag, capturing the quote and the src value
IMG_TAG_PATTERN = re.compile(
    r"""<img\b[^>]*?(?<![-\w])src=(["'])(?P<src>[^"']+)\1[^>]*>""", re.IGNORECASE
)

ASSET_TOKEN_PREFIX = "{asset:"

# Path prefixes stripped from image URLs before resolving them to assets
KNOWN_PREFIXES = ("uploads/images/", "uploads/", "assets/", "images/", "_optimisedImages/")


def asset_token(asset_id: int, url: str) -> str:
    """Build the token that replaces an inline image src."""
    return f"{{asset:{asset_id}:{url}}}"


def strip_url(src: str) -> str:
    """Reduce an image URL to a volume-relative path.

    Drops scheme, host, query and fragment, then any known upload prefix.
    """
    path = unquote(urlsplit(src).path).lstrip("/")
    for prefix in KNOWN_PREFIXES:
        if path.startswith(prefix):
            return path[len(prefix) :]
    return path


def row_key(field: ReferenceField, row: ReferenceRow) -> str:
    """Processed-id key for a content row."""
    return f"{field}:{row.row_id}"


@dataclass
class FieldRow:
    """A content row together with the field it was read from."""

    field: ReferenceField
    row: ReferenceRow

    @property
    def key(self) -> str:
        return row_key(self.field, self.row)


class InlineLinker:
    """Links inline images in content fields to managed assets."""

    def __init__(
        self,
        repository: AssetRepository,
        changelog: ChangeLog,
        recovery: ErrorRecovery,
        batch_size: int = 100,
    ) -> None:
        self.repository = repository
        self.changelog = changelog
        self.recovery = recovery
        self.batch_size = batch_size
        self.linked_images = 0

    async def batches(self, skip_ids: Collection[str] | None = None) -> AsyncIterator[Batch[FieldRow]]:
        """Page through every reference field's rows.

        Batch numbering continues across fields.
        """
        skip = skip_ids or frozenset()
        index = 0
        for field in self.repository.reference_fields():
            offset = 0
            while True:
                rows = await self.recovery.retry(
                    lambda: self.repository.find_reference_rows(field, offset, self.batch_size),
                    f"rows:{field}:{offset}",
                )
                if not rows:
                    break
                items = [FieldRow(field, row) for row in rows]
                kept = [item for item in items if item.key not in skip]
                yield Batch(index=index, items=kept, skipped=len(items) - len(kept))
                index += 1
                if len(rows) < self.batch_size:
                    break
                offset += self.batch_size

    async def resolve_asset(self, src: str) -> AssetRecord | None:
        """Resolve an image URL to an asset.

        Prefers an asset whose path matches the stripped URL, then falls back
        to the lowest id with the same basename.
        """
        path = strip_url(src)
        filename = posixpath.basename(path)
        if not filename:
            return None
        candidates = await self.recovery.retry(
            lambda: self.repository.find_by_filename(filename), f"find:{filename}"
        )
        if not candidates:
            return None
        for asset in candidates:
            if asset.path == path:
                return asset
        return min(candidates, key=lambda a: a.id)

    async def rewrite(self, content: str) -> tuple[str, list[int]]:
        """Rewrite inline images in ``content``.

        Returns:
            The new content and the distinct ids of linked assets.
        """
        linked: list[int] = []
        parts: list[str] = []
        last = 0
        for match in IMG_TAG_PATTERN.finditer(content):
            tag = match.group(0)
            src = match.group("src")
            if src.startswith(ASSET_TOKEN_PREFIX) or "data-asset-id" in tag.lower():
                continue
            if src.startswith("data:"):
                continue
            asset = await self.resolve_asset(src)
            if asset is None:
                logger.debug("No asset found for inline image %s", src)
                continue

            start, end = match.span("src")
            parts.append(content[last:start])
            parts.append(asset_token(asset.id, src))
            last = end
            if asset.id not in linked:
                linked.append(asset.id)

        if not linked:
            return content, []
        parts.append(content[last:])
        return "".join(parts), linked

    async def link_row(self, item: FieldRow) -> ItemOutcome:
        """Rewrite one content row and count the linked assets as used."""
        new_content, linked_ids = await self.rewrite(item.row.content)
        if not linked_ids:
            return "skipped"

        self.changelog.log_change(
            "inline_image_linked",
            {
                "table": item.field.table,
                "column": item.field.column,
                "idColumn": item.field.id_column,
                "rowId": item.row.row_id,
                "originalContent": item.row.content,
                "newContent": new_content,
                "linkedAssetIds": linked_ids,
            },
        )
        await self.recovery.retry(
            lambda: self.repository.update_reference(item.field, item.row.row_id, new_content),
            f"update:{item.key}",
        )
        for asset_id in linked_ids:
            await adjust_reference_count(self.repository, self.recovery, asset_id, 1)

        self.linked_images += len(linked_ids)
        logger.debug("Linked %d inline images in %s", len(linked_ids), item.key)
        return "succeeded"


async def adjust_reference_count(
    repository: AssetRepository, recovery: ErrorRecovery | None, asset_id: int, delta: int
) -> bool:
    """Add ``delta`` to an asset's reference count (never below zero)."""

    async def _adjust() -> bool:
        asset = await repository.find_by_id(asset_id)
        if asset is None:
            logger.warning("Asset %d not found while adjusting reference count", asset_id)
            return False
        asset.reference_count = max(0, asset.reference_count + delta)
        return await repository.update(asset)

    if recovery is None:
        return await _adjust()
    return await recovery.retry(_adjust, f"refcount:{asset_id}")
