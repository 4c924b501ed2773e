"""Transactional, idempotent ingestion of decoded transfers.

One scanned chunk is one transaction: addresses are resolved, transfer rows
are inserted in sub-batches with ``ON CONFLICT (tx_hash, log_index) DO
NOTHING``, and the chunk's end block is written to the checkpoint
monotonically. Any failure rolls back the whole chunk.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import TYPE_CHECKING

from bsc_transfer_indexer.chain.decoder import DecodedTransfer
from bsc_transfer_indexer.ingestor.resolver import AddressResolver
from bsc_transfer_indexer.storage.repos import MetaRepository, TransferDTO, TransferRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

DEFAULT_BATCH_ROWS = 1000


class TransferWriter:
    """Writes one chunk of transfers plus its checkpoint atomically."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        resolver: AddressResolver,
        *,
        batch_rows: int = DEFAULT_BATCH_ROWS,
    ) -> None:
        """Initialize the writer.

        Args:
            session_factory: Factory for the per-chunk session.
            resolver: Address resolver shared across chunks.
            batch_rows: Rows per INSERT statement.
        """
        if batch_rows < 1:
            raise ValueError("batch_rows must be >= 1")
        self._session_factory = session_factory
        self._resolver = resolver
        self._batch_rows = batch_rows

    async def write_chunk(
        self,
        transfers: Sequence[DecodedTransfer],
        block_times: Mapping[int, datetime],
        *,
        checkpoint_key: str,
        end_block: int,
    ) -> int:
        """Ingest a chunk and advance ``checkpoint_key`` to at least ``end_block``.

        Args:
            transfers: Decoded transfers of the chunk, in chain order.
            block_times: Timestamp for every block referenced by ``transfers``.
            checkpoint_key: Meta key of the scanning mode.
            end_block: Last block of the chunk (inclusive).

        Returns:
            Number of rows submitted (duplicates included).

        Raises:
            ValueError: If a block timestamp is missing.
        """
        missing_times = {t.block_number for t in transfers} - block_times.keys()
        if missing_times:
            raise ValueError(f"Missing block timestamps for blocks {sorted(missing_times)}")

        async with self._session_factory() as session, session.begin():
            addresses = {t.from_address for t in transfers} | {t.to_address for t in transfers}
            ids = await self._resolver.resolve(session, addresses)

            dtos = [
                TransferDTO(
                    tx_hash=t.tx_hash,
                    log_index=t.log_index,
                    block_number=t.block_number,
                    block_time=block_times[t.block_number],
                    from_address_id=ids[t.from_address],
                    to_address_id=ids[t.to_address],
                    raw_amount=str(t.raw_amount),
                )
                for t in transfers
            ]

            repo = TransferRepository(session)
            for start in range(0, len(dtos), self._batch_rows):
                await repo.insert_many(dtos[start : start + self._batch_rows])

            await MetaRepository(session).set_max(checkpoint_key, end_block)

        logger.debug(
            "Committed %d transfers, %s -> %d",
            len(dtos),
            checkpoint_key,
            end_block,
        )
        return len(dtos)
