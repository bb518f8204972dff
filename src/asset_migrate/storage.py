"""
Storage providers for asset files.

A provider exposes a bucket-like namespace with read, write, delete, exists
and list operations. Two implementations are provided:
- LocalStorageProvider: a directory on the local filesystem
- S3StorageProvider: any S3-compatible bucket via aiobotocore

Providers are built per volume from the URIs in Settings.volumes.
"""

import asyncio
import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable
from urllib.parse import urlparse

from asset_migrate.config import Settings, get_settings
from asset_migrate.models import FileRecord

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Base exception for storage provider errors."""

    pass


class StorageFileNotFoundError(StorageError):
    """Raised when a path does not exist in the provider."""

    def __init__(self, provider_id: str, path: str) -> None:
        self.provider_id = provider_id
        self.path = path
        super().__init__(f"File not found in {provider_id}: {path}")


def is_transform_path(path: str) -> bool:
    """Check if a path lives in a generated transform directory (e.g. _thumb/)."""
    parts = path.strip("/").split("/")[:-1]
    return any(part.startswith("_") for part in parts)


@runtime_checkable
class StorageProvider(Protocol):
    """Uniform file access over a bucket-like namespace."""

    provider_id: str

    async def read(self, path: str) -> bytes: ...

    async def write(self, path: str, data: bytes) -> None: ...

    async def delete(self, path: str) -> None: ...

    async def exists(self, path: str) -> bool: ...

    def list(self, prefix: str = "", recursive: bool = True) -> AsyncIterator[FileRecord]: ...


class LocalStorageProvider:
    """Storage provider backed by a local directory."""

    def __init__(self, provider_id: str, root: Path | str) -> None:
        """
        Initialize local provider.

        Args:
            provider_id: Volume id this provider serves
            root: Directory holding the volume's files
        """
        self.provider_id = provider_id
        self.root = Path(root)

    def _resolve(self, path: str) -> Path:
        resolved = (self.root / path.lstrip("/")).resolve()
        if not resolved.is_relative_to(self.root.resolve()):
            raise StorageError(f"Path escapes volume root: {path}")
        return resolved

    async def read(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            return await asyncio.to_thread(target.read_bytes)
        except FileNotFoundError:
            raise StorageFileNotFoundError(self.provider_id, path) from None

    async def write(self, path: str, data: bytes) -> None:
        target = self._resolve(path)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp = target.with_name(f".{target.name}.tmp")
            tmp.write_bytes(data)
            os.replace(tmp, target)

        await asyncio.to_thread(_write)

    async def delete(self, path: str) -> None:
        target = self._resolve(path)
        try:
            await asyncio.to_thread(target.unlink)
        except FileNotFoundError:
            raise StorageFileNotFoundError(self.provider_id, path) from None

    async def exists(self, path: str) -> bool:
        return await asyncio.to_thread(self._resolve(path).is_file)

    async def list(self, prefix: str = "", recursive: bool = True) -> AsyncIterator[FileRecord]:
        base = self._resolve(prefix) if prefix else self.root.resolve()
        if not base.is_dir():
            return

        def _scan() -> list[FileRecord]:
            pattern = base.rglob("*") if recursive else base.glob("*")
            root = self.root.resolve()
            records = []
            for entry in sorted(pattern):
                if not entry.is_file() or entry.name.endswith(".tmp"):
                    continue
                stat = entry.stat()
                records.append(
                    FileRecord(
                        provider_id=self.provider_id,
                        path=entry.relative_to(root).as_posix(),
                        filename=entry.name,
                        size=stat.st_size,
                        last_modified=stat.st_mtime,
                    )
                )
            return records

        for record in await asyncio.to_thread(_scan):
            yield record

    def __repr__(self) -> str:
        return f"LocalStorageProvider({self.provider_id!r}, root={str(self.root)!r})"


class S3StorageProvider:
    """Storage provider backed by an S3-compatible bucket."""

    def __init__(
        self,
        provider_id: str,
        bucket: str,
        prefix: str = "",
        settings: Settings | None = None,
    ) -> None:
        """
        Initialize S3 provider.

        Args:
            provider_id: Volume id this provider serves
            bucket: Bucket name
            prefix: Key prefix acting as the volume root
            settings: Settings with S3 credentials.
                     Uses get_settings() if not provided.
        """
        self.provider_id = provider_id
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self.settings = settings or get_settings()

    @asynccontextmanager
    async def get_client(self) -> "AsyncGenerator[Any, None]":
        """
        Get S3 client context manager.

        Yields:
            Async S3 client from aiobotocore

        Raises:
            StorageError: If S3 storage is not configured
        """
        if not self.settings.s3_configured:
            raise StorageError(
                "S3 storage not configured. "
                "Set ASSET_MIGRATE_S3_ACCESS_KEY and ASSET_MIGRATE_S3_SECRET_KEY environment variables."
            )

        from aiobotocore.session import get_session

        session = get_session()
        async with session.create_client(
            "s3",
            endpoint_url=self.settings.s3_endpoint,
            aws_access_key_id=self.settings.s3_access_key,
            aws_secret_access_key=self.settings.s3_secret_key,
            region_name=self.settings.s3_region,
        ) as client:
            yield client

    def _key(self, path: str) -> str:
        path = path.lstrip("/")
        return f"{self.prefix}/{path}" if self.prefix else path

    def _path(self, key: str) -> str:
        if self.prefix and key.startswith(self.prefix + "/"):
            return key[len(self.prefix) + 1 :]
        return key

    @staticmethod
    def _is_not_found(error: Exception) -> bool:
        response = getattr(error, "response", None) or {}
        code = str(response.get("Error", {}).get("Code", ""))
        return code in ("404", "NoSuchKey", "NotFound")

    async def read(self, path: str) -> bytes:
        async with self.get_client() as s3:
            try:
                response = await s3.get_object(Bucket=self.bucket, Key=self._key(path))
            except Exception as e:
                if self._is_not_found(e):
                    raise StorageFileNotFoundError(self.provider_id, path) from None
                raise
            async with response["Body"] as stream:
                return await stream.read()

    async def write(self, path: str, data: bytes) -> None:
        async with self.get_client() as s3:
            await s3.put_object(Bucket=self.bucket, Key=self._key(path), Body=data)
        logger.debug("Wrote %d bytes to s3://%s/%s", len(data), self.bucket, self._key(path))

    async def delete(self, path: str) -> None:
        async with self.get_client() as s3:
            await s3.delete_object(Bucket=self.bucket, Key=self._key(path))
        logger.debug("Deleted s3://%s/%s", self.bucket, self._key(path))

    async def exists(self, path: str) -> bool:
        async with self.get_client() as s3:
            try:
                await s3.head_object(Bucket=self.bucket, Key=self._key(path))
            except Exception as e:
                if self._is_not_found(e):
                    return False
                raise
        return True

    async def list(self, prefix: str = "", recursive: bool = True) -> AsyncIterator[FileRecord]:
        key_prefix = self._key(prefix) if prefix else (f"{self.prefix}/" if self.prefix else "")
        if prefix and not key_prefix.endswith("/"):
            key_prefix += "/"

        params: dict[str, Any] = {"Bucket": self.bucket, "Prefix": key_prefix}
        if not recursive:
            params["Delimiter"] = "/"

        async with self.get_client() as s3:
            paginator = s3.get_paginator("list_objects_v2")
            async for page in paginator.paginate(**params):
                for obj in page.get("Contents", []):
                    key = obj["Key"]
                    if key.endswith("/"):
                        continue
                    modified = obj.get("LastModified")
                    path = self._path(key)
                    yield FileRecord(
                        provider_id=self.provider_id,
                        path=path,
                        filename=path.rsplit("/", 1)[-1],
                        size=int(obj.get("Size", 0)),
                        last_modified=modified.timestamp() if modified else None,
                    )

    def __repr__(self) -> str:
        return f"S3StorageProvider({self.provider_id!r}, bucket={self.bucket!r}, prefix={self.prefix!r})"


def build_provider(
    volume_id: str, uri: str, settings: Settings | None = None
) -> LocalStorageProvider | S3StorageProvider:
    """
    Build a storage provider from a volume URI.

    Args:
        volume_id: Volume id the provider serves
        uri: file:///path, a bare path, or s3://bucket/prefix
        settings: Settings passed to S3 providers

    Returns:
        Storage provider instance

    Raises:
        StorageError: If the URI scheme is not supported
    """
    parsed = urlparse(uri)
    if parsed.scheme in ("", "file"):
        return LocalStorageProvider(volume_id, parsed.path if parsed.scheme else uri)
    if parsed.scheme == "s3":
        return S3StorageProvider(volume_id, parsed.netloc, parsed.path, settings)
    raise StorageError(f"Unsupported storage URI for volume '{volume_id}': {uri}")


def build_providers(settings: Settings | None = None) -> dict[str, StorageProvider]:
    """
    Build providers for every configured volume.

    Args:
        settings: Settings with the volume map. Uses get_settings() if not provided.

    Returns:
        Mapping of volume id to provider
    """
    settings = settings or get_settings()
    return {
        volume_id: build_provider(volume_id, uri, settings)
        for volume_id, uri in settings.volumes.items()
    }
