"""Read-only progress report over the shared store."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

from bsc_transfer_indexer.storage.repos import (
    LAST_BACKFILLED_BLOCK,
    LAST_INDEXED_BLOCK,
    LEGACY_LAST_SCANNED_BLOCK,
    AddressRepository,
    HolderBalanceRepository,
    MetaRepository,
    TransferRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


@dataclass
class IndexerStatus:
    """Checkpoints and table counts."""

    last_indexed_block: int | None
    last_backfilled_block: int | None
    legacy_last_scanned_block: int | None
    max_transfer_block: int | None
    transfer_count: int
    address_count: int
    holder_count: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


async def collect_status(session_factory: async_sessionmaker[AsyncSession]) -> IndexerStatus:
    async with session_factory() as session:
        meta = MetaRepository(session)
        transfers = TransferRepository(session)
        return IndexerStatus(
            last_indexed_block=await meta.get_int(LAST_INDEXED_BLOCK),
            last_backfilled_block=await meta.get_int(LAST_BACKFILLED_BLOCK),
            legacy_last_scanned_block=await meta.get_int(LEGACY_LAST_SCANNED_BLOCK),
            max_transfer_block=await transfers.max_block_number(),
            transfer_count=await transfers.count(),
            address_count=await AddressRepository(session).count(),
            holder_count=await HolderBalanceRepository(session).count(),
        )
