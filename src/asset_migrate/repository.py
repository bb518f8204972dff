"""
Asset repository.

The migration engine reads and updates asset records only through the
AssetRepository protocol. SqlAssetRepository implements it on SQLAlchemy
async, with one transaction per write.

Content fields that may embed file references are declared explicitly
(ReferenceField) rather than discovered from the schema.
"""

import json
import logging
import os
import tempfile
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from sqlalchemy import BigInteger, Boolean, Integer, String, column, func, select, table, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from asset_migrate.database import Base, session_scope
from asset_migrate.models import AssetRecord, ReferenceField, ReferenceRow, SharedFile

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


def _atomic_write(path: Path, data: dict[str, Any]) -> None:
    """Write JSON to a temp file in the same directory, then rename over ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def load_snapshot(path: Path) -> dict[str, Any]:
    """
    Read and check a snapshot document.

    Args:
        path: Snapshot file written by SqlAssetRepository.snapshot()

    Returns:
        The parsed snapshot

    Raises:
        ValueError: If the file is not valid JSON or has an unsupported version
    """
    with path.open("r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict) or data.get("version") != SNAPSHOT_VERSION:
        version = data.get("version") if isinstance(data, dict) else None
        raise ValueError(f"Unsupported snapshot version: {version}")
    if not isinstance(data.get("assets"), list):
        raise ValueError("Snapshot has no asset list")
    return data


class Asset(Base):
    """Asset database table."""

    __tablename__ = "assets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    volume_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    folder_id: Mapped[str] = mapped_column(String(1024), nullable=False, default="")
    filename: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    reference_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    file_exists: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    def to_record(self) -> AssetRecord:
        """Convert the row to a detached AssetRecord."""
        return AssetRecord(
            id=self.id,
            volume_id=self.volume_id,
            folder_id=self.folder_id,
            filename=self.filename,
            reference_count=self.reference_count,
            file_exists=self.file_exists,
            size=self.size,
        )


@runtime_checkable
class AssetRepository(Protocol):
    """CRUD and paginated queries over asset records."""

    async def find_by_volumes(
        self, volume_ids: Sequence[str], offset: int, limit: int
    ) -> list[AssetRecord]: ...

    async def count(self, volume_ids: Sequence[str] | None = None) -> int: ...

    async def update(self, record: AssetRecord) -> bool: ...

    async def find_by_id(self, asset_id: int) -> AssetRecord | None: ...

    async def find_by_filename(self, filename: str) -> list[AssetRecord]: ...

    async def save(self, record: AssetRecord) -> None: ...

    async def delete(self, asset_id: int) -> bool: ...

    async def find_shared_files(self, volume_ids: Sequence[str]) -> list[SharedFile]: ...

    def reference_fields(self) -> list[ReferenceField]: ...

    async def find_reference_rows(
        self, field: ReferenceField, offset: int, limit: int
    ) -> list[ReferenceRow]: ...

    async def update_reference(self, field: ReferenceField, row_id: int, content: str) -> bool: ...

    async def snapshot(self, path: Path) -> int: ...

    async def restore(self, path: Path) -> int: ...


class SqlAssetRepository:
    """
    SQLAlchemy implementation of AssetRepository.

    Each write opens its own session and commits, so a failed update never
    leaves a partial change visible.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        reference_fields: Sequence[ReferenceField] = (),
    ):
        """
        Initialize repository.

        Args:
            session_factory: Async session factory
            reference_fields: Text columns that may embed file references
        """
        self.session_factory = session_factory
        self._reference_fields = list(reference_fields)

    async def add_all(self, records: Sequence[AssetRecord]) -> None:
        """
        Insert asset records.

        Args:
            records: Records to insert (ids are kept)
        """
        async with session_scope(self.session_factory) as session:
            for record in records:
                session.add(Asset(**record.to_dict()))

    async def find_by_volumes(
        self, volume_ids: Sequence[str], offset: int, limit: int
    ) -> list[AssetRecord]:
        """
        Get one page of assets in the given volumes, ordered by id.

        Args:
            volume_ids: Volumes to include
            offset: Number of results to skip
            limit: Maximum number of results

        Returns:
            List of asset records
        """
        query = (
            select(Asset)
            .where(Asset.volume_id.in_(list(volume_ids)))
            .order_by(Asset.id)
            .limit(limit)
            .offset(offset)
        )
        async with self.session_factory() as session:
            result = await session.execute(query)
            return [row.to_record() for row in result.scalars().all()]

    async def count(self, volume_ids: Sequence[str] | None = None) -> int:
        """
        Count assets, optionally restricted to volumes.

        Args:
            volume_ids: Volumes to include (None counts all)

        Returns:
            Number of assets
        """
        query = select(func.count(Asset.id))
        if volume_ids is not None:
            query = query.where(Asset.volume_id.in_(list(volume_ids)))
        async with self.session_factory() as session:
            result = await session.execute(query)
            return result.scalar() or 0

    async def find_by_id(self, asset_id: int) -> AssetRecord | None:
        async with self.session_factory() as session:
            row = await session.get(Asset, asset_id)
            return row.to_record() if row else None

    async def find_by_filename(self, filename: str) -> list[AssetRecord]:
        """
        Get assets by filename (case-insensitive).

        Args:
            filename: Filename to look up

        Returns:
            Matching asset records, ordered by id
        """
        query = (
            select(Asset)
            .where(func.lower(Asset.filename) == filename.lower())
            .order_by(Asset.id)
        )
        async with self.session_factory() as session:
            result = await session.execute(query)
            return [row.to_record() for row in result.scalars().all()]

    async def update(self, record: AssetRecord) -> bool:
        """
        Persist an asset record in a single transaction.

        Args:
            record: Record with updated values

        Returns:
            True if updated, False if the asset does not exist
        """
        async with session_scope(self.session_factory) as session:
            row = await session.get(Asset, record.id)
            if row is None:
                return False
            row.volume_id = record.volume_id
            row.folder_id = record.folder_id
            row.filename = record.filename
            row.reference_count = record.reference_count
            row.file_exists = record.file_exists
            row.size = record.size
        return True

    async def save(self, record: AssetRecord) -> None:
        """
        Insert or overwrite an asset record, keeping its id.

        Args:
            record: Record to store
        """
        async with session_scope(self.session_factory) as session:
            await session.merge(Asset(**record.to_dict()))

    async def delete(self, asset_id: int) -> bool:
        """
        Delete an asset record.

        Returns:
            True if deleted, False if the asset does not exist
        """
        async with session_scope(self.session_factory) as session:
            row = await session.get(Asset, asset_id)
            if row is None:
                return False
            await session.delete(row)
        return True

    async def find_shared_files(self, volume_ids: Sequence[str]) -> list[SharedFile]:
        """
        Get files that more than one asset record points at.

        Args:
            volume_ids: Volumes to include

        Returns:
            Shared files ordered by volume, folder and filename
        """
        asset_count = func.count(Asset.id)
        query = (
            select(Asset.volume_id, Asset.folder_id, Asset.filename, asset_count)
            .where(Asset.volume_id.in_(list(volume_ids)))
            .group_by(Asset.volume_id, Asset.folder_id, Asset.filename)
            .having(asset_count > 1)
            .order_by(Asset.volume_id, Asset.folder_id, Asset.filename)
        )
        async with self.session_factory() as session:
            result = await session.execute(query)
            return [
                SharedFile(volume_id=r[0], folder_id=r[1], filename=r[2], asset_count=int(r[3]))
                for r in result.all()
            ]

    # ==========================================================================
    # Embedded references
    # ==========================================================================

    def reference_fields(self) -> list[ReferenceField]:
        """Fields that may embed references to asset files."""
        return list(self._reference_fields)

    @staticmethod
    def _table(field: ReferenceField) -> Any:
        return table(field.table, column(field.id_column), column(field.column))

    async def find_reference_rows(
        self, field: ReferenceField, offset: int, limit: int
    ) -> list[ReferenceRow]:
        """
        Get one page of non-empty content for a reference field.

        Args:
            field: Reference field to read
            offset: Number of rows to skip
            limit: Maximum number of rows

        Returns:
            List of rows ordered by id
        """
        t = self._table(field)
        id_col = t.c[field.id_column]
        content_col = t.c[field.column]
        query = (
            select(id_col, content_col)
            .where(content_col.is_not(None))
            .order_by(id_col)
            .limit(limit)
            .offset(offset)
        )
        async with self.session_factory() as session:
            result = await session.execute(query)
            return [ReferenceRow(row_id=int(r[0]), content=str(r[1])) for r in result.all()]

    async def update_reference(self, field: ReferenceField, row_id: int, content: str) -> bool:
        """
        Replace a reference field's content in a single transaction.

        Returns:
            True if a row was updated
        """
        t = self._table(field)
        stmt = update(t).where(t.c[field.id_column] == row_id).values({field.column: content})
        async with session_scope(self.session_factory) as session:
            result = await session.execute(stmt)
            return bool(result.rowcount)

    # ==========================================================================
    # Snapshot / restore
    # ==========================================================================

    async def snapshot(self, path: Path) -> int:
        """
        Write every asset row and reference field value to a JSON document.

        Args:
            path: Destination file

        Returns:
            Number of assets captured
        """
        async with self.session_factory() as session:
            result = await session.execute(select(Asset).order_by(Asset.id))
            assets = [row.to_record().to_dict() for row in result.scalars().all()]

        references: dict[str, list[dict[str, Any]]] = {}
        for field in self._reference_fields:
            rows: list[dict[str, Any]] = []
            offset = 0
            while True:
                page = await self.find_reference_rows(field, offset, 500)
                if not page:
                    break
                rows.extend({"row_id": r.row_id, "content": r.content} for r in page)
                offset += len(page)
            references[str(field)] = rows

        data = {
            "version": SNAPSHOT_VERSION,
            "created_at": datetime.now(UTC).isoformat(),
            "assets": assets,
            "references": references,
        }
        _atomic_write(path, data)

        logger.info("Snapshot of %d assets written to %s", len(assets), path)
        return len(assets)

    async def restore(self, path: Path) -> int:
        """
        Restore a snapshot in one transaction (all or nothing).

        Args:
            path: Snapshot file written by snapshot()

        Returns:
            Number of assets restored

        Raises:
            ValueError: If the snapshot is unreadable or its version is not supported
        """
        data = load_snapshot(path)
        fields = {str(field): field for field in self._reference_fields}
        assets = [AssetRecord.from_dict(item) for item in data.get("assets", [])]

        async with session_scope(self.session_factory) as session:
            for record in assets:
                await session.merge(Asset(**record.to_dict()))
            for name, rows in data.get("references", {}).items():
                field = fields.get(name)
                if field is None:
                    logger.warning("Snapshot references unknown field %s, skipping", name)
                    continue
                t = self._table(field)
                for row in rows:
                    await session.execute(
                        update(t)
                        .where(t.c[field.id_column] == row["row_id"])
                        .values({field.column: row["content"]})
                    )

        logger.info("Restored %d assets from %s", len(assets), path)
        return len(assets)
