"""SQLAlchemy models for persistent storage.

This module defines the database schema for indexed addresses, transfer
events, scan checkpoints, derived holder balances and scanner lock leases.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import (
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class AddressModel(Base):
    """Chain accounts seen as transfer counterparties (surrogate-keyed)."""

    __tablename__ = "addresses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Lowercase 0x-prefixed hex; the unique index is the source of truth for ids.
    address: Mapped[str] = mapped_column(String(42), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class TransferModel(Base):
    """Indexed Transfer events, keyed by (tx_hash, log_index)."""

    __tablename__ = "transfers"

    tx_hash: Mapped[str] = mapped_column(String(66), primary_key=True)
    log_index: Mapped[int] = mapped_column(Integer, primary_key=True)

    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    from_address_id: Mapped[int] = mapped_column(ForeignKey("addresses.id"), nullable=False)
    to_address_id: Mapped[int] = mapped_column(ForeignKey("addresses.id"), nullable=False)

    # uint256 base units as a decimal string; exceeds 64-bit and float precision.
    raw_amount: Mapped[str] = mapped_column(String(78), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        Index("idx_transfers_block_number", "block_number"),
        Index("idx_transfers_from_address_id", "from_address_id"),
        Index("idx_transfers_to_address_id", "to_address_id"),
    )


class MetaModel(Base):
    """Key/value store for scan checkpoints."""

    __tablename__ = "meta"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )


class HolderBalanceModel(Base):
    """Per-address positive balances, rebuilt wholesale from transfers."""

    __tablename__ = "holder_balances"

    address_id: Mapped[int] = mapped_column(
        ForeignKey("addresses.id", ondelete="CASCADE"), primary_key=True
    )
    balance_raw: Mapped[str] = mapped_column(String(80), nullable=False)
    tx_count: Mapped[int] = mapped_column(Integer, nullable=False)
    first_seen: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_seen: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    last_block_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class ScannerLockModel(Base):
    """Lease rows backing the scanner lock on stores without advisory locks."""

    __tablename__ = "scanner_locks"

    name: Mapped[str] = mapped_column(String(128), primary_key=True)
    owner_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
