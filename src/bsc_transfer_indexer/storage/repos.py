"""Repository pattern implementations for data access.

This module provides data access abstractions for addresses, transfers,
scan checkpoints and holder balances. Repositories never commit: the caller
owns the transaction, so several repositories can share one atomic unit.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Collection, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from bsc_transfer_indexer.storage.models import (
    AddressModel,
    HolderBalanceModel,
    MetaModel,
    TransferModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

LAST_INDEXED_BLOCK = "last_indexed_block"
LAST_BACKFILLED_BLOCK = "last_backfilled_block"
# Written by older backfill runs; still honoured when resuming.
LEGACY_LAST_SCANNED_BLOCK = "last_scanned_block"


def dialect_insert(session: AsyncSession, model: type[Any]) -> Any:
    """Return the dialect-specific INSERT construct (supports ON CONFLICT)."""
    bind = session.get_bind()
    if bind.dialect.name == "postgresql":
        return pg_insert(model)
    if bind.dialect.name == "sqlite":
        return sqlite_insert(model)
    raise NotImplementedError(f"Unsupported dialect for upserts: {bind.dialect.name}")


@dataclass
class TransferDTO:
    """Data transfer object for an indexed Transfer event."""

    tx_hash: str
    log_index: int
    block_number: int
    block_time: datetime
    from_address_id: int
    to_address_id: int
    raw_amount: str
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: TransferModel) -> TransferDTO:
        return cls(
            tx_hash=model.tx_hash,
            log_index=model.log_index,
            block_number=model.block_number,
            block_time=model.block_time,
            from_address_id=model.from_address_id,
            to_address_id=model.to_address_id,
            raw_amount=model.raw_amount,
            created_at=model.created_at,
        )


@dataclass
class HolderBalanceDTO:
    """Data transfer object for a materialized holder balance."""

    address_id: int
    balance_raw: int
    tx_count: int
    first_seen: datetime
    last_seen: datetime
    last_block_number: int
    last_block_time: datetime
    last_tx_hash: str

    @classmethod
    def from_model(cls, model: HolderBalanceModel) -> HolderBalanceDTO:
        return cls(
            address_id=model.address_id,
            balance_raw=int(model.balance_raw),
            tx_count=model.tx_count,
            first_seen=model.first_seen,
            last_seen=model.last_seen,
            last_block_number=model.last_block_number,
            last_block_time=model.last_block_time,
            last_tx_hash=model.last_tx_hash,
        )


class AddressRepository:
    """Repository for the address -> surrogate id table."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session.
        """
        self.session = session

    async def insert_ignore(self, addresses: Collection[str]) -> None:
        """Insert addresses in one statement, skipping ones that already exist."""
        if not addresses:
            return
        now = datetime.now(UTC)
        rows = [{"address": a.lower(), "created_at": now} for a in sorted(set(addresses))]
        stmt = dialect_insert(self.session, AddressModel).values(rows)
        stmt = stmt.on_conflict_do_nothing(index_elements=["address"])
        await self.session.execute(stmt)

    async def get_ids(self, addresses: Collection[str]) -> dict[str, int]:
        """Look up ids for addresses in one SELECT."""
        if not addresses:
            return {}
        normalized = sorted({a.lower() for a in addresses})
        result = await self.session.execute(
            select(AddressModel.address, AddressModel.id).where(AddressModel.address.in_(normalized))
        )
        return {address: id_ for address, id_ in result.all()}

    async def get_by_id(self, address_id: int) -> str | None:
        result = await self.session.execute(
            select(AddressModel.address).where(AddressModel.id == address_id)
        )
        return result.scalar_one_or_none()

    async def count(self) -> int:
        result = await self.session.execute(select(func.count()).select_from(AddressModel))
        return int(result.scalar_one())


class TransferRepository:
    """Repository for indexed Transfer events."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session.
        """
        self.session = session

    async def insert_many(self, dtos: Sequence[TransferDTO]) -> int:
        """Insert transfers in one statement (idempotent on (tx_hash, log_index)).

        Returns the number of attempted inserts (not the number of newly created
        rows), for portability across dialects.
        """
        if not dtos:
            return 0

        now = datetime.now(UTC)
        rows = [
            {
                "tx_hash": dto.tx_hash.lower(),
                "log_index": dto.log_index,
                "block_number": dto.block_number,
                "block_time": dto.block_time,
                "from_address_id": dto.from_address_id,
                "to_address_id": dto.to_address_id,
                "raw_amount": dto.raw_amount,
                "created_at": now,
            }
            for dto in dtos
        ]
        stmt = dialect_insert(self.session, TransferModel).values(rows)
        stmt = stmt.on_conflict_do_nothing(index_elements=["tx_hash", "log_index"])
        await self.session.execute(stmt)
        return len(rows)

    async def get(self, tx_hash: str, log_index: int) -> TransferDTO | None:
        result = await self.session.execute(
            select(TransferModel).where(
                (TransferModel.tx_hash == tx_hash.lower()) & (TransferModel.log_index == log_index)
            )
        )
        model = result.scalar_one_or_none()
        return TransferDTO.from_model(model) if model else None

    async def list_in_block_range(self, from_block: int, to_block: int) -> list[TransferDTO]:
        """List transfers in [from_block, to_block] in chain order."""
        result = await self.session.execute(
            select(TransferModel)
            .where(TransferModel.block_number.between(from_block, to_block))
            .order_by(TransferModel.block_number.asc(), TransferModel.log_index.asc())
        )
        return [TransferDTO.from_model(m) for m in result.scalars().all()]

    async def count(self) -> int:
        result = await self.session.execute(select(func.count()).select_from(TransferModel))
        return int(result.scalar_one())

    async def max_block_number(self) -> int | None:
        """Highest block number among ingested transfers, or None if empty."""
        result = await self.session.execute(select(func.max(TransferModel.block_number)))
        value = result.scalar_one_or_none()
        return int(value) if value is not None else None

    async def stream_chain_order(self, *, yield_per: int = 5000) -> AsyncIterator[sa.Row[Any]]:
        """Stream all transfers ordered by (block_number, log_index)."""
        stmt = (
            select(
                TransferModel.tx_hash,
                TransferModel.log_index,
                TransferModel.block_number,
                TransferModel.block_time,
                TransferModel.from_address_id,
                TransferModel.to_address_id,
                TransferModel.raw_amount,
            )
            .order_by(TransferModel.block_number.asc(), TransferModel.log_index.asc())
            .execution_options(yield_per=yield_per)
        )
        result = await self.session.stream(stmt)
        async for row in result:
            yield row


class MetaRepository:
    """Repository for named scan checkpoints."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session.
        """
        self.session = session

    async def get(self, key: str) -> str | None:
        result = await self.session.execute(select(MetaModel.value).where(MetaModel.key == key))
        return result.scalar_one_or_none()

    async def get_int(self, key: str) -> int | None:
        value = await self.get(key)
        return int(value) if value is not None else None

    async def set(self, key: str, value: str) -> None:
        """Unconditional upsert. Not for checkpoints; use set_max."""
        now = datetime.now(UTC)
        stmt = dialect_insert(self.session, MetaModel).values(key=key, value=value, updated_at=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=["key"],
            set_={"value": stmt.excluded.value, "updated_at": now},
        )
        await self.session.execute(stmt)

    async def set_max(self, key: str, value: int) -> None:
        """Monotonic upsert: the stored value becomes max(current, value)."""
        if value < 0:
            raise ValueError("checkpoint values must be non-negative")
        now = datetime.now(UTC)
        stmt = dialect_insert(self.session, MetaModel).values(key=key, value=str(value), updated_at=now)
        proposed = sa.cast(stmt.excluded.value, sa.BigInteger)
        current = sa.cast(MetaModel.value, sa.BigInteger)
        stmt = stmt.on_conflict_do_update(
            index_elements=["key"],
            set_={
                "value": sa.case((proposed > current, stmt.excluded.value), else_=MetaModel.value),
                "updated_at": now,
            },
        )
        await self.session.execute(stmt)

    async def get_all(self) -> dict[str, str]:
        result = await self.session.execute(select(MetaModel.key, MetaModel.value))
        return {key: value for key, value in result.all()}


class HolderBalanceRepository:
    """Repository for the materialized holder balance projection."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session.
        """
        self.session = session

    async def clear(self) -> None:
        await self.session.execute(delete(HolderBalanceModel))

    async def insert_many(self, dtos: Sequence[HolderBalanceDTO]) -> int:
        if not dtos:
            return 0
        now = datetime.now(UTC)
        rows = [
            {
                "address_id": dto.address_id,
                "balance_raw": str(dto.balance_raw),
                "tx_count": dto.tx_count,
                "first_seen": dto.first_seen,
                "last_seen": dto.last_seen,
                "last_block_number": dto.last_block_number,
                "last_block_time": dto.last_block_time,
                "last_tx_hash": dto.last_tx_hash,
                "updated_at": now,
            }
            for dto in dtos
        ]
        await self.session.execute(sa.insert(HolderBalanceModel), rows)
        return len(rows)

    async def get(self, address_id: int) -> HolderBalanceDTO | None:
        result = await self.session.execute(
            select(HolderBalanceModel).where(HolderBalanceModel.address_id == address_id)
        )
        model = result.scalar_one_or_none()
        return HolderBalanceDTO.from_model(model) if model else None

    async def list_all(self) -> list[HolderBalanceDTO]:
        result = await self.session.execute(select(HolderBalanceModel))
        return [HolderBalanceDTO.from_model(m) for m in result.scalars().all()]

    async def count(self) -> int:
        result = await self.session.execute(select(func.count()).select_from(HolderBalanceModel))
        return int(result.scalar_one())
