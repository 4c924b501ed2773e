"""Tests for the holder balance projection."""

from datetime import UTC, datetime

import pytest

from bsc_transfer_indexer.chain.decoder import decode_transfer_log
from bsc_transfer_indexer.holders import compute_net_balances, rebuild_holder_balances
from bsc_transfer_indexer.ingestor.resolver import AddressResolver
from bsc_transfer_indexer.ingestor.writer import TransferWriter
from bsc_transfer_indexer.storage.repos import (
    LAST_INDEXED_BLOCK,
    AddressRepository,
    HolderBalanceRepository,
)

ALICE = "0x" + "a1" * 20
BOB = "0x" + "b2" * 20
CAROL = "0x" + "c3" * 20


async def _ingest(session_factory, logs: list[dict]) -> None:
    transfers = [decode_transfer_log(log) for log in logs]
    block_times = {
        t.block_number: datetime.fromtimestamp(1_700_000_000 + 3 * t.block_number, tz=UTC)
        for t in transfers
    }
    writer = TransferWriter(session_factory, AddressResolver(session_factory))
    await writer.write_chunk(
        transfers,
        block_times,
        checkpoint_key=LAST_INDEXED_BLOCK,
        end_block=max(t.block_number for t in transfers),
    )


async def _ids(session_factory) -> dict[str, int]:
    async with session_factory() as session:
        return await AddressRepository(session).get_ids([ALICE, BOB, CAROL])


@pytest.fixture
def triangle(make_log) -> list[dict]:
    """A -> B 100, B -> C 40, C -> A 10."""
    return [
        make_log("0x" + "01" * 32, 0, 10, ALICE, BOB, 100),
        make_log("0x" + "02" * 32, 0, 11, BOB, CAROL, 40),
        make_log("0x" + "03" * 32, 3, 12, CAROL, ALICE, 10),
    ]


class TestNetBalances:
    @pytest.mark.asyncio
    async def test_balances_are_conserved(self, session_factory, triangle) -> None:
        await _ingest(session_factory, triangle)
        ids = await _ids(session_factory)

        async with session_factory() as session:
            balances = await compute_net_balances(session)

        assert sum(balances.values()) == 0
        assert balances[ids[ALICE]] == -90
        assert balances[ids[BOB]] == 60
        assert balances[ids[CAROL]] == 30

    @pytest.mark.asyncio
    async def test_self_transfer_nets_to_zero(self, session_factory, make_log) -> None:
        await _ingest(session_factory, [make_log("0x" + "05" * 32, 0, 10, ALICE, ALICE, 7)])
        ids = await _ids(session_factory)

        async with session_factory() as session:
            balances = await compute_net_balances(session)

        assert balances == {ids[ALICE]: 0}


class TestRebuildHolderBalances:
    @pytest.mark.asyncio
    async def test_only_positive_balances_are_kept(self, session_factory, triangle) -> None:
        await _ingest(session_factory, triangle)
        ids = await _ids(session_factory)

        assert await rebuild_holder_balances(session_factory) == 2

        async with session_factory() as session:
            repo = HolderBalanceRepository(session)
            bob = await repo.get(ids[BOB])
            carol = await repo.get(ids[CAROL])
            alice = await repo.get(ids[ALICE])

        assert alice is None
        assert bob is not None and carol is not None
        assert bob.balance_raw == 60
        assert bob.tx_count == 2
        assert bob.last_block_number == 11
        assert carol.balance_raw == 30
        assert carol.tx_count == 2
        assert carol.last_block_number == 12
        assert carol.last_tx_hash == "0x" + "03" * 32

    @pytest.mark.asyncio
    async def test_large_amounts_are_exact(self, session_factory, make_log) -> None:
        big = 2**255 + 12345
        await _ingest(
            session_factory,
            [
                make_log("0x" + "06" * 32, 0, 10, ALICE, BOB, big),
                make_log("0x" + "07" * 32, 0, 11, BOB, CAROL, 1),
            ],
        )
        ids = await _ids(session_factory)

        await rebuild_holder_balances(session_factory, batch_rows=1)

        async with session_factory() as session:
            bob = await HolderBalanceRepository(session).get(ids[BOB])
        assert bob is not None
        assert bob.balance_raw == big - 1

    @pytest.mark.asyncio
    async def test_rebuild_replaces_previous_snapshot(self, session_factory, triangle, make_log) -> None:
        await _ingest(session_factory, triangle)
        await rebuild_holder_balances(session_factory)
        assert await rebuild_holder_balances(session_factory) == 2

        # Carol sends everything back to Alice.
        await _ingest(session_factory, [make_log("0x" + "08" * 32, 0, 13, CAROL, ALICE, 30)])
        assert await rebuild_holder_balances(session_factory) == 1

        async with session_factory() as session:
            assert await HolderBalanceRepository(session).count() == 1

    @pytest.mark.asyncio
    async def test_empty_store(self, session_factory) -> None:
        assert await rebuild_holder_balances(session_factory) == 0
