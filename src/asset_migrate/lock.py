"""Exclusive migration lock.

A single row per lock name in the ``migration_locks`` table guarantees that
at most one migration runs at a time. The primary key on the lock name makes
acquisition an atomic insert; rows carry an expiry so a crashed holder cannot
block future runs forever.
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import time
from datetime import UTC, datetime, timedelta

from sqlalchemy import DateTime, String, delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from asset_migrate.database import Base, session_scope

logger = logging.getLogger(__name__)

DEFAULT_LOCK_NAME = "asset_migration"
DEFAULT_TTL_SECONDS = 43200
RETRY_INTERVAL_SECONDS = 0.5
MAX_RETRY_INTERVAL_SECONDS = 8.0


class LockError(Exception):
    """Raised when the migration lock cannot be acquired or is lost."""

    pass


class LockRecord(Base):
    """Migration lock database table."""

    __tablename__ = "migration_locks"

    lock_name: Mapped[str] = mapped_column(String(255), primary_key=True)
    migration_id: Mapped[str] = mapped_column(String(255), nullable=False)
    holder_id: Mapped[str] = mapped_column(String(255), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _now() -> datetime:
    return datetime.now(UTC)


def _aware(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back
    return value if value.tzinfo else value.replace(tzinfo=UTC)


def retry_interval(attempt: int) -> float:
    """Seconds to wait after failed attempt ``attempt`` (1-based), doubling up to a cap."""
    return min(RETRY_INTERVAL_SECONDS * 2 ** max(0, attempt - 1), MAX_RETRY_INTERVAL_SECONDS)


class LockManager:
    """Acquires, refreshes and releases the migration lock.

    Example:
        >>> lock = LockManager(session_factory, "migration-20240115")
        >>> if await lock.acquire(timeout_seconds=3):
        ...     try:
        ...         ...  # run phases, calling await lock.refresh() periodically
        ...     finally:
        ...         await lock.release()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        migration_id: str,
        lock_name: str = DEFAULT_LOCK_NAME,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        holder_id: str | None = None,
    ) -> None:
        """Initialize the lock manager.

        Args:
            session_factory: Async session factory for the lock table.
            migration_id: Migration this process works on.
            lock_name: Resource name guarded by the lock.
            ttl_seconds: Lifetime of the lock before it is considered stale.
            holder_id: Identity of this process (defaults to host:pid).
        """
        self.session_factory = session_factory
        self.migration_id = migration_id
        self.lock_name = lock_name
        self.ttl_seconds = ttl_seconds
        self.holder_id = holder_id or f"{socket.gethostname()}:{os.getpid()}"
        self._held = False

    @property
    def is_held(self) -> bool:
        """True if this manager believes it holds the lock."""
        return self._held

    async def acquire(
        self,
        timeout_seconds: float = 3.0,
        resume_migration_id: str | None = None,
    ) -> bool:
        """Acquire the lock, waiting up to ``timeout_seconds``.

        A live lock held for this same migration is extended in place when
        the caller is resuming that migration (or already holds it), so a
        crashed run can be resumed without unlocking first.

        Args:
            timeout_seconds: How long to keep retrying while another
                migration holds the lock.
            resume_migration_id: Migration id being resumed, if any.

        Returns:
            True if the lock is now held by this manager.
        """
        deadline = time.monotonic() + timeout_seconds
        attempt = 0

        while True:
            attempt += 1
            await self._purge_stale()

            if await self._try_insert():
                self._held = True
                logger.info(
                    "Acquired lock '%s' for migration %s", self.lock_name, self.migration_id
                )
                return True

            existing = await self.is_locked()
            if existing is not None and existing.migration_id == self.migration_id:
                resuming = resume_migration_id == self.migration_id
                if resuming or existing.holder_id == self.holder_id:
                    if await self._extend(take_over=True):
                        self._held = True
                        logger.info(
                            "Extended existing lock '%s' for migration %s",
                            self.lock_name,
                            self.migration_id,
                        )
                        return True

            if time.monotonic() >= deadline:
                holder = existing.migration_id if existing else "<unknown>"
                logger.warning(
                    "Could not acquire lock '%s' after %d attempts (held by migration %s)",
                    self.lock_name,
                    attempt,
                    holder,
                )
                return False

            remaining = deadline - time.monotonic()
            await asyncio.sleep(min(retry_interval(attempt), max(0.0, remaining)))

    async def refresh(self) -> bool:
        """Extend the lock expiry.

        Returns:
            True if the lock is still owned by this manager.
        """
        if not self._held:
            return False
        refreshed = await self._extend(take_over=False)
        if not refreshed:
            logger.error("Lock '%s' was lost before refresh", self.lock_name)
            self._held = False
        return refreshed

    async def release(self) -> None:
        """Release the lock if owned. Safe to call more than once."""
        async with session_scope(self.session_factory) as session:
            await session.execute(
                delete(LockRecord).where(
                    LockRecord.lock_name == self.lock_name,
                    LockRecord.migration_id == self.migration_id,
                    LockRecord.holder_id == self.holder_id,
                )
            )
        if self._held:
            logger.info("Released lock '%s'", self.lock_name)
        self._held = False

    async def is_locked(self) -> LockRecord | None:
        """Get the live lock row, if any."""
        async with self.session_factory() as session:
            row = await session.get(LockRecord, self.lock_name)
            if row is None or _aware(row.expires_at) <= _now():
                return None
            return row

    async def _purge_stale(self) -> None:
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                delete(LockRecord).where(
                    LockRecord.lock_name == self.lock_name,
                    LockRecord.expires_at <= _now(),
                )
            )
            if result.rowcount:
                logger.warning("Purged stale lock '%s'", self.lock_name)

    async def _try_insert(self) -> bool:
        now = _now()
        try:
            async with session_scope(self.session_factory) as session:
                session.add(
                    LockRecord(
                        lock_name=self.lock_name,
                        migration_id=self.migration_id,
                        holder_id=self.holder_id,
                        acquired_at=now,
                        expires_at=now + timedelta(seconds=self.ttl_seconds),
                    )
                )
        except IntegrityError:
            return False
        return True

    async def _extend(self, take_over: bool) -> bool:
        values: dict[str, object] = {"expires_at": _now() + timedelta(seconds=self.ttl_seconds)}
        conditions = [
            LockRecord.lock_name == self.lock_name,
            LockRecord.migration_id == self.migration_id,
        ]
        if take_over:
            values["holder_id"] = self.holder_id
        else:
            conditions.append(LockRecord.holder_id == self.holder_id)

        async with session_scope(self.session_factory) as session:
            result = await session.execute(update(LockRecord).where(*conditions).values(**values))
            return bool(result.rowcount)

    async def __aenter__(self) -> LockManager:
        if not await self.acquire():
            raise LockError(f"Migration lock '{self.lock_name}' is held by another migration")
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.release()

    def __repr__(self) -> str:
        return (
            f"LockManager(lock_name={self.lock_name!r}, migration_id={self.migration_id!r}, "
            f"held={self._held})"
        )
