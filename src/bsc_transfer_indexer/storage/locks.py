"""Named advisory lock shared by the backfill and live scanners.

On PostgreSQL the lock is ``pg_try_advisory_lock`` held on a dedicated
connection, so the server releases it if the holder process dies. Other
dialects get a lease row (owner id + expiry) that any scanner may reclaim
once it has expired.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import socket
import uuid
from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import or_, text, update
from sqlalchemy.exc import SQLAlchemyError

from bsc_transfer_indexer.storage.models import ScannerLockModel
from bsc_transfer_indexer.storage.repos import dialect_insert

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

_FNV64_OFFSET = 0xCBF29CE484222325
_FNV64_PRIME = 0x100000001B3
_MASK64 = 0xFFFFFFFFFFFFFFFF

DEFAULT_LEASE_SECONDS = 300.0
DEFAULT_RETRY_SECONDS = 15.0
_MIN_RENEW_INTERVAL_SECONDS = 0.01


class LockError(Exception):
    """Raised when the lock backend fails (contention is not an error)."""


def lock_key64(name: str) -> int:
    """FNV-1a 64-bit hash of ``name``, as a signed 64-bit integer (Postgres bigint)."""
    h = _FNV64_OFFSET
    for byte in name.encode("utf-8"):
        h ^= byte
        h = (h * _FNV64_PRIME) & _MASK64
    if h > 0x7FFFFFFFFFFFFFFF:
        h -= 1 << 64
    return h


def _default_owner_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class ScannerLock:
    """Non-blocking, cooperative mutual exclusion between scanners.

    Example:
        ```python
        lock = ScannerLock(engine, session_factory, "bsc-transfer-indexer:ingest")
        async with lock.hold(stop_event) as acquired:
            if acquired:
                ...  # write one chunk
        ```
    """

    def __init__(
        self,
        engine: AsyncEngine,
        session_factory: async_sessionmaker[AsyncSession],
        name: str,
        *,
        owner_id: str | None = None,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
        retry_seconds: float = DEFAULT_RETRY_SECONDS,
    ) -> None:
        """Initialize the lock.

        Args:
            engine: Engine used for the dedicated advisory-lock connection.
            session_factory: Session factory used by the lease backend.
            name: Lock name; hashed to a 64-bit key for advisory locks.
            owner_id: Lease owner identifier (defaults to host:pid:random).
            lease_seconds: Lease duration for the non-Postgres backend.
            retry_seconds: Sleep between acquisition attempts in ``hold``.
        """
        self._engine = engine
        self._session_factory = session_factory
        self._name = name
        self._key = lock_key64(name)
        self._owner_id = owner_id or _default_owner_id()
        self._lease = timedelta(seconds=lease_seconds)
        self._retry_seconds = retry_seconds
        self._use_advisory = engine.dialect.name == "postgresql"
        self._conn: AsyncConnection | None = None
        self._held = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def key(self) -> int:
        return self._key

    @property
    def owner_id(self) -> str:
        return self._owner_id

    @property
    def held(self) -> bool:
        return self._held

    async def try_acquire(self) -> bool:
        """Try once to take the lock. Returns False on contention.

        Raises:
            LockError: If the backing store fails.
        """
        if self._held:
            return True
        try:
            if self._use_advisory:
                self._held = await self._try_advisory_lock()
            else:
                self._held = await self._try_lease()
        except SQLAlchemyError as e:
            raise LockError(f"Failed to acquire lock {self._name!r}: {e}") from e
        if self._held:
            logger.debug("Acquired scanner lock %r (key=%d)", self._name, self._key)
        return self._held

    async def renew(self) -> bool:
        """Extend the lease. Advisory locks need no renewal."""
        if not self._held:
            return False
        if self._use_advisory:
            return True
        now = datetime.now(UTC)
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                update(ScannerLockModel)
                .where(
                    (ScannerLockModel.name == self._name)
                    & (ScannerLockModel.owner_id == self._owner_id)
                )
                .values(expires_at=now + self._lease)
            )
        renewed = (result.rowcount or 0) == 1  # type: ignore[attr-defined]
        if not renewed:
            logger.warning("Lost lease on scanner lock %r", self._name)
            self._held = False
        return renewed

    async def release(self) -> None:
        """Release the lock. Failures are logged; the backend reclaims eventually."""
        if not self._held:
            return
        self._held = False
        try:
            if self._use_advisory:
                await self._advisory_unlock()
            else:
                await self._release_lease()
            logger.debug("Released scanner lock %r", self._name)
        except Exception as e:
            logger.warning("Failed to release scanner lock %r: %s", self._name, e)

    @contextlib.asynccontextmanager
    async def hold(self, stop_event: asyncio.Event | None = None) -> AsyncIterator[bool]:
        """Wait for the lock, sleeping ``retry_seconds`` between attempts.

        Yields True once held (released on exit, including on error), or
        False if ``stop_event`` was set before the lock could be taken. A
        lease is renewed every third of its duration while held.
        """
        while not await self.try_acquire():
            logger.info(
                "Scanner lock %r is held elsewhere, retrying in %.0fs",
                self._name,
                self._retry_seconds,
            )
            if stop_event is None:
                await asyncio.sleep(self._retry_seconds)
                continue
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._retry_seconds)
            except TimeoutError:
                continue
            yield False
            return
        renewer = None if self._use_advisory else asyncio.create_task(self._keep_lease())
        try:
            yield True
        finally:
            if renewer is not None:
                renewer.cancel()
                await asyncio.gather(renewer, return_exceptions=True)
            await self.release()

    async def _keep_lease(self) -> None:
        interval = max(self._lease.total_seconds() / 3, _MIN_RENEW_INTERVAL_SECONDS)
        while self._held:
            await asyncio.sleep(interval)
            try:
                if not await self.renew():
                    return
            except (SQLAlchemyError, OSError) as e:
                logger.warning("Failed to renew lease on scanner lock %r: %s", self._name, e)

    async def _try_advisory_lock(self) -> bool:
        conn = await self._engine.connect()
        try:
            conn = await conn.execution_options(isolation_level="AUTOCOMMIT")
            result = await conn.execute(
                text("SELECT pg_try_advisory_lock(:key)"),
                {"key": self._key},
            )
            acquired = bool(result.scalar())
        except Exception:
            await conn.close()
            raise
        if not acquired:
            await conn.close()
            return False
        self._conn = conn
        return True

    async def _advisory_unlock(self) -> None:
        conn, self._conn = self._conn, None
        if conn is None:
            return
        try:
            await conn.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": self._key})
        except Exception:
            # A pooled connection must never keep a session-level lock alive.
            await conn.invalidate()
            raise
        finally:
            await conn.close()

    async def _try_lease(self) -> bool:
        now = datetime.now(UTC)
        async with self._session_factory() as session, session.begin():
            stmt = dialect_insert(session, ScannerLockModel).values(
                name=self._name,
                owner_id=None,
                expires_at=now,
            )
            await session.execute(stmt.on_conflict_do_nothing(index_elements=["name"]))
            result = await session.execute(
                update(ScannerLockModel)
                .where(
                    (ScannerLockModel.name == self._name)
                    & or_(
                        ScannerLockModel.owner_id.is_(None),
                        ScannerLockModel.owner_id == self._owner_id,
                        ScannerLockModel.expires_at <= now,
                    )
                )
                .values(owner_id=self._owner_id, expires_at=now + self._lease)
            )
        return (result.rowcount or 0) == 1  # type: ignore[attr-defined]

    async def _release_lease(self) -> None:
        now = datetime.now(UTC)
        async with self._session_factory() as session, session.begin():
            await session.execute(
                update(ScannerLockModel)
                .where(
                    (ScannerLockModel.name == self._name)
                    & (ScannerLockModel.owner_id == self._owner_id)
                )
                .values(owner_id=None, expires_at=now)
            )
