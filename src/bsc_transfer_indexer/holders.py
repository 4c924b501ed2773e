"""Holder balance projection rebuilt from the transfer table.

Balances are aggregated in Python integers while streaming transfers in
chain order, so uint256 sums stay exact on every backing store.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from bsc_transfer_indexer.storage.repos import (
    HolderBalanceDTO,
    HolderBalanceRepository,
    TransferRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

DEFAULT_INSERT_BATCH_ROWS = 1000


@dataclass
class _Accumulator:
    balance: int
    tx_count: int
    first_seen: datetime
    last_seen: datetime
    last_block_number: int
    last_block_time: datetime
    last_tx_hash: str


async def compute_net_balances(session: AsyncSession) -> dict[int, int]:
    """Net balance (received - sent) for every address that appears in a transfer.

    Includes zero and negative balances; the values always sum to zero.
    """
    balances: dict[int, int] = {}
    async for row in TransferRepository(session).stream_chain_order():
        amount = int(row.raw_amount)
        balances[row.from_address_id] = balances.get(row.from_address_id, 0) - amount
        balances[row.to_address_id] = balances.get(row.to_address_id, 0) + amount
    return balances


async def _aggregate(session: AsyncSession) -> dict[int, _Accumulator]:
    holders: dict[int, _Accumulator] = {}
    async for row in TransferRepository(session).stream_chain_order():
        amount = int(row.raw_amount)
        deltas = {row.from_address_id: -amount}
        deltas[row.to_address_id] = deltas.get(row.to_address_id, 0) + amount
        for address_id, delta in deltas.items():
            acc = holders.get(address_id)
            if acc is None:
                holders[address_id] = _Accumulator(
                    balance=delta,
                    tx_count=1,
                    first_seen=row.block_time,
                    last_seen=row.block_time,
                    last_block_number=row.block_number,
                    last_block_time=row.block_time,
                    last_tx_hash=row.tx_hash,
                )
                continue
            acc.balance += delta
            acc.tx_count += 1
            acc.first_seen = min(acc.first_seen, row.block_time)
            acc.last_seen = max(acc.last_seen, row.block_time)
            # Rows arrive ordered by (block_number, log_index).
            acc.last_block_number = row.block_number
            acc.last_block_time = row.block_time
            acc.last_tx_hash = row.tx_hash
    return holders


async def rebuild_holder_balances(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    batch_rows: int = DEFAULT_INSERT_BATCH_ROWS,
) -> int:
    """Replace the holder_balances table with a fresh projection.

    Runs in one transaction: readers see either the old or the new snapshot.

    Returns:
        Number of holders with a positive balance.
    """
    async with session_factory() as session, session.begin():
        holders = await _aggregate(session)
        dtos = [
            HolderBalanceDTO(
                address_id=address_id,
                balance_raw=acc.balance,
                tx_count=acc.tx_count,
                first_seen=acc.first_seen,
                last_seen=acc.last_seen,
                last_block_number=acc.last_block_number,
                last_block_time=acc.last_block_time,
                last_tx_hash=acc.last_tx_hash,
            )
            for address_id, acc in holders.items()
            if acc.balance > 0
        ]

        repo = HolderBalanceRepository(session)
        await repo.clear()
        for start in range(0, len(dtos), batch_rows):
            await repo.insert_many(dtos[start : start + batch_rows])

    logger.info(
        "Rebuilt holder balances: %d holders out of %d addresses seen",
        len(dtos),
        len(holders),
    )
    return len(dtos)
