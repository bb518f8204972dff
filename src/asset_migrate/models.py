"""Records shared between the migration engine and its collaborators."""

from __future__ import annotations

import posixpath
from dataclasses import asdict, dataclass
from typing import Any


def join_path(folder: str, filename: str) -> str:
    """Join a folder path and a filename into a volume-relative path."""
    folder = folder.strip("/")
    return f"{folder}/{filename}" if folder else filename


@dataclass
class AssetRecord:
    """A managed asset as stored in the asset repository.

    Attributes:
        id: Repository identifier.
        volume_id: Volume the asset is placed in.
        folder_id: Folder path relative to the volume root ("" is the root).
        filename: Filename of the backing file.
        reference_count: Number of content references to this asset.
        file_exists: Whether the backing file was found at the last check.
        size: Byte size recorded for the asset, if known.
    """

    id: int
    volume_id: str
    folder_id: str
    filename: str
    reference_count: int = 0
    file_exists: bool = True
    size: int | None = None

    @property
    def path(self) -> str:
        """Volume-relative path of the backing file."""
        return join_path(self.folder_id, self.filename)

    @property
    def is_used(self) -> bool:
        """True if any content references the asset."""
        return self.reference_count > 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AssetRecord:
        """Create from dictionary."""
        size = data.get("size")
        return cls(
            id=int(data["id"]),
            volume_id=str(data["volume_id"]),
            folder_id=str(data.get("folder_id") or ""),
            filename=str(data["filename"]),
            reference_count=int(data.get("reference_count", 0)),
            file_exists=bool(data.get("file_exists", True)),
            size=int(size) if size is not None else None,
        )


@dataclass(frozen=True, slots=True)
class FileRecord:
    """A physical file found by scanning a storage provider."""

    provider_id: str
    path: str
    filename: str
    size: int = 0
    last_modified: float | None = None

    @property
    def folder(self) -> str:
        """Folder portion of the path ("" for the root)."""
        return posixpath.dirname(self.path)

    @property
    def key(self) -> str:
        """Unique key across providers."""
        return f"{self.provider_id}::{self.path}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "provider_id": self.provider_id,
            "path": self.path,
            "filename": self.filename,
            "size": self.size,
            "last_modified": self.last_modified,
        }


@dataclass(frozen=True, slots=True)
class ReferenceField:
    """A text column that may embed references to asset files."""

    table: str
    column: str
    id_column: str = "id"

    def __str__(self) -> str:
        return f"{self.table}.{self.column}"


@dataclass(frozen=True, slots=True)
class ReferenceRow:
    """One row's content for a reference field."""

    row_id: int
    content: str


@dataclass(frozen=True, slots=True)
class SharedFile:
    """A physical file that more than one asset record points at."""

    volume_id: str
    folder_id: str
    filename: str
    asset_count: int = 2

    @property
    def path(self) -> str:
        return join_path(self.folder_id, self.filename)

    @property
    def key(self) -> str:
        """Unique key across volumes, in the same form as FileRecord.key."""
        return f"{self.volume_id}::{self.path}"

    def holds(self, asset: AssetRecord) -> bool:
        """Check whether an asset record points at this file."""
        return asset.volume_id == self.volume_id and asset.path == self.path
