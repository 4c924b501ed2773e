"""Address -> surrogate id resolution with an instance-owned LRU cache.

Ids are only cached once the transaction that observed them commits, so a
rolled-back chunk can never leave ids in the cache that the store does not
hold.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

from sqlalchemy import event

from bsc_transfer_indexer.cache import BoundedCache
from bsc_transfer_indexer.storage.repos import AddressRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

DEFAULT_CACHE_SIZE = 100_000

_ADDRESS_RE = re.compile(r"^0x[0-9a-f]{40}$")
_PENDING_KEY = "address_resolver_pending"


class AddressResolutionError(Exception):
    """Raised when an address cannot be mapped to a surrogate id."""


def normalize_address(address: str) -> str:
    """Lowercase and validate a 0x-prefixed 20-byte hex address."""
    normalized = address.strip().lower()
    if not _ADDRESS_RE.match(normalized):
        raise ValueError(f"Invalid address: {address!r}")
    return normalized


class AddressResolver:
    """Bulk-resolves chain addresses to integer ids.

    Per call, at most one insert-or-ignore and one select reach the store,
    however many addresses are requested.

    Example:
        ```python
        resolver = AddressResolver(session_factory)
        async with session_factory() as session, session.begin():
            ids = await resolver.resolve(session, {"0xabc...", "0xdef..."})
        one_id = await resolver.resolve_standalone("0xabc...")
        ```
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        *,
        cache_size: int = DEFAULT_CACHE_SIZE,
    ) -> None:
        """Initialize the resolver.

        Args:
            session_factory: Needed only for ``resolve_standalone``.
            cache_size: Capacity of the address -> id LRU cache.
        """
        self._session_factory = session_factory
        self._cache: BoundedCache[str, int] = BoundedCache(cache_size)

    @property
    def cache(self) -> BoundedCache[str, int]:
        return self._cache

    async def resolve(self, session: AsyncSession, addresses: Iterable[str]) -> dict[str, int]:
        """Map every address to its id, creating rows for unseen addresses.

        Runs inside the caller's transaction. Returned keys are lowercase.
        """
        wanted = {normalize_address(a) for a in addresses}
        resolved: dict[str, int] = {}
        missing: list[str] = []
        for address in wanted:
            cached = self._cache.get(address)
            if cached is None:
                missing.append(address)
            else:
                resolved[address] = cached

        if not missing:
            return resolved

        repo = AddressRepository(session)
        await repo.insert_ignore(missing)
        found = await repo.get_ids(missing)

        absent = set(missing) - found.keys()
        if absent:
            raise AddressResolutionError(f"No id after insert for {len(absent)} address(es)")

        self._remember_on_commit(session, found)
        resolved.update(found)
        logger.debug(
            "Resolved %d addresses (%d cached, %d looked up)",
            len(resolved),
            len(resolved) - len(found),
            len(found),
        )
        return resolved

    async def resolve_with_session(self, session: AsyncSession, address: str) -> int:
        """Resolve one address inside the caller's transaction."""
        ids = await self.resolve(session, [address])
        return ids[normalize_address(address)]

    async def resolve_standalone(self, address: str) -> int:
        """Resolve one address in a short transaction of its own."""
        if self._session_factory is None:
            raise AddressResolutionError("resolve_standalone requires a session factory")
        async with self._session_factory() as session, session.begin():
            return await self.resolve_with_session(session, address)

    def _remember_on_commit(self, session: AsyncSession, ids: dict[str, int]) -> None:
        sync_session = session.sync_session
        key = (_PENDING_KEY, id(self))
        pending: dict[str, int] | None = sync_session.info.get(key)
        if pending is None:
            pending = {}
            sync_session.info[key] = pending
            event.listen(sync_session, "after_commit", self._flush_pending)
            event.listen(sync_session, "after_rollback", self._drop_pending)
        pending.update(ids)

    def _flush_pending(self, sync_session: Session) -> None:
        pending: dict[str, Any] = sync_session.info.get((_PENDING_KEY, id(self))) or {}
        for address, address_id in pending.items():
            self._cache.put(address, address_id)
        pending.clear()

    def _drop_pending(self, sync_session: Session) -> None:
        pending: dict[str, Any] = sync_session.info.get((_PENDING_KEY, id(self))) or {}
        pending.clear()
