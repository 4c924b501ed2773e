"""Pytest configuration and fixtures."""

from collections.abc import Callable
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from bsc_transfer_indexer.chain.decoder import TRANSFER_TOPIC
from bsc_transfer_indexer.storage.models import Base

TOKEN_ADDRESS = "0x0000000000000000000000000000000000c0ffee"

ALICE = "0x" + "a1" * 20
BOB = "0x" + "b2" * 20
CAROL = "0x" + "c3" * 20


def _address_topic(address: str) -> str:
    return "0x" + "0" * 24 + address[2:].lower()


def build_transfer_log(
    tx_hash: str,
    log_index: int,
    block_number: int,
    from_address: str,
    to_address: str,
    amount: int,
) -> dict[str, Any]:
    """JSON-RPC shaped Transfer log."""
    return {
        "address": TOKEN_ADDRESS,
        "topics": [TRANSFER_TOPIC, _address_topic(from_address), _address_topic(to_address)],
        "data": "0x" + format(amount, "064x"),
        "transactionHash": tx_hash,
        "logIndex": hex(log_index),
        "blockNumber": hex(block_number),
    }


@pytest.fixture
def make_log() -> Callable[..., dict[str, Any]]:
    """Factory for synthetic Transfer logs."""
    return build_transfer_log


@pytest.fixture
async def async_engine(tmp_path):
    """File-backed async SQLite engine so separate sessions share data."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'indexer.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine):
    return async_sessionmaker(bind=async_engine, expire_on_commit=False)
