"""
Pytest configuration and fixtures.

Engines run against a SQLite file in tmp_path through aiosqlite, and
volumes are LocalStorageProvider directories, so no external services
are needed.
"""

import weakref
from collections.abc import AsyncGenerator, Awaitable, Callable, Iterable, Sequence
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from asset_migrate.config import Settings
from asset_migrate.database import create_session_factory, init_db
from asset_migrate.models import AssetRecord, ReferenceField
from asset_migrate.recovery import ErrorRecovery
from asset_migrate.repository import SqlAssetRepository
from asset_migrate.storage import LocalStorageProvider

VOLUME_IDS = ("uploads", "images", "quarantine")

PAGES_BODY = ReferenceField("pages", "body")


async def _no_sleep(delay: float) -> None:
    return None


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings for a migration from 'uploads' into images:library."""
    return Settings(
        _env_file=None,
        storage_dir=tmp_path / "storage",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'assets.db'}",
        reference_fields="pages.body",
        volumes={v: str(tmp_path / "volumes" / v) for v in VOLUME_IDS},
        source_volumes="uploads",
        target_volume="images",
        target_folder="library",
        quarantine_volume="quarantine",
        batch_size=2,
        retry_delay_seconds=0.0,
        lock_timeout_seconds=0.0,
    )


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """SQLite engine with the migration tables and a 'pages' content table."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'assets.db'}")
    await init_db(engine)
    async with engine.begin() as conn:
        await conn.execute(text("CREATE TABLE pages (id INTEGER PRIMARY KEY, body TEXT)"))
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
def repository(session_factory: async_sessionmaker[AsyncSession]) -> SqlAssetRepository:
    return SqlAssetRepository(session_factory, [PAGES_BODY])


@pytest.fixture
def providers(tmp_path: Path) -> dict[str, LocalStorageProvider]:
    """One local provider per test volume."""
    return {v: LocalStorageProvider(v, tmp_path / "volumes" / v) for v in VOLUME_IDS}


@pytest.fixture
def recovery() -> ErrorRecovery:
    """Error recovery that never sleeps between attempts."""
    return ErrorRecovery(max_retries=2, base_delay=0.0, sleep=_no_sleep)


@pytest.fixture
def put_file(tmp_path: Path) -> Callable[[str, str, bytes], Path]:
    """Write a file into a test volume and return its location."""

    def _put(volume: str, path: str, data: bytes = b"data") -> Path:
        target = tmp_path / "volumes" / volume / path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        return target

    return _put


@pytest.fixture
def volume_path(tmp_path: Path) -> Callable[[str, str], Path]:
    """Location of a path inside a test volume."""

    def _path(volume: str, path: str) -> Path:
        return tmp_path / "volumes" / volume / path

    return _path


@pytest.fixture
def add_pages(engine: AsyncEngine) -> Callable[[dict[int, str | None]], Awaitable[None]]:
    """Insert rows into the 'pages' content table."""

    async def _add(rows: dict[int, str | None]) -> None:
        async with engine.begin() as conn:
            for row_id, body in rows.items():
                await conn.execute(
                    text("INSERT INTO pages (id, body) VALUES (:id, :body)"),
                    {"id": row_id, "body": body},
                )

    return _add


@pytest.fixture
def read_page(engine: AsyncEngine) -> Callable[[int], Awaitable[str | None]]:
    """Read one row of the 'pages' content table."""

    async def _read(row_id: int) -> str | None:
        async with engine.connect() as conn:
            result = await conn.execute(text("SELECT body FROM pages WHERE id = :id"), {"id": row_id})
            return result.scalar_one_or_none()

    return _read


def asset(
    asset_id: int,
    volume_id: str = "uploads",
    folder_id: str = "",
    filename: str | None = None,
    reference_count: int = 1,
    file_exists: bool = True,
    size: int | None = None,
) -> AssetRecord:
    """Build an AssetRecord with test defaults."""
    return AssetRecord(
        id=asset_id,
        volume_id=volume_id,
        folder_id=folder_id,
        filename=filename or f"file{asset_id}.jpg",
        reference_count=reference_count,
        file_exists=file_exists,
        size=size,
    )


@pytest.fixture
def make_asset() -> Callable[..., AssetRecord]:
    return asset


class FlakyRepository:
    """Wraps a repository so the first call to each named method fails."""

    def __init__(self, inner: SqlAssetRepository, failing: Iterable[str]) -> None:
        self._inner = inner
        self._pending = set(failing)
        self.failures: list[str] = []

    def __getattr__(self, name: str) -> Any:
        attr = getattr(self._inner, name)
        if name not in self._pending:
            return attr

        async def _fail_once(*args: Any, **kwargs: Any) -> Any:
            if name in self._pending:
                self._pending.discard(name)
                self.failures.append(name)
                raise ConnectionError("connection reset by peer")
            return await attr(*args, **kwargs)

        return _fail_once


@pytest.fixture
def make_flaky(repository: SqlAssetRepository) -> Callable[..., FlakyRepository]:
    """Wrap the test repository so the named methods fail once."""

    def _make(*failing: str) -> FlakyRepository:
        return FlakyRepository(repository, failing)

    return _make


class GeneratedRepository:
    """Builds fresh records for every page and tracks how many are still alive.

    Only the paging queries are implemented.
    """

    def __init__(self, total: int, volume_id: str = "images", folder_id: str = "library") -> None:
        self.total = total
        self.volume_id = volume_id
        self.folder_id = folder_id
        self.peak_live = 0
        self._refs: list[weakref.ref[AssetRecord]] = []

    @property
    def live(self) -> int:
        return sum(1 for ref in self._refs if ref() is not None)

    async def find_by_volumes(
        self, volume_ids: Sequence[str], offset: int, limit: int
    ) -> list[AssetRecord]:
        self.peak_live = max(self.peak_live, self.live)
        page = [
            asset(i, self.volume_id, self.folder_id, reference_count=0)
            for i in range(offset + 1, min(offset + limit, self.total) + 1)
        ]
        self._refs.extend(weakref.ref(record) for record in page)
        return page

    async def count(self, volume_ids: Sequence[str] | None = None) -> int:
        return self.total


@pytest.fixture
def make_generated() -> Callable[..., GeneratedRepository]:
    """Build a GeneratedRepository serving ``total`` records."""
    return GeneratedRepository
