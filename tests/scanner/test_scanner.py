"""Tests for the backfill / live-tail scanner state machine."""

import asyncio
import time
from datetime import UTC, datetime

import pytest

from bsc_transfer_indexer.chain.client import LogRangeTooLargeError, RpcFatalError
from bsc_transfer_indexer.chain.decoder import decode_transfer_log
from bsc_transfer_indexer.ingestor.resolver import AddressResolver
from bsc_transfer_indexer.ingestor.writer import TransferWriter
from bsc_transfer_indexer.scanner.scanner import (
    LogScanner,
    ScanMode,
    ScannerConfigError,
    ScannerState,
)
from bsc_transfer_indexer.storage.locks import ScannerLock
from bsc_transfer_indexer.storage.repos import (
    LAST_BACKFILLED_BLOCK,
    LAST_INDEXED_BLOCK,
    LEGACY_LAST_SCANNED_BLOCK,
    MetaRepository,
    TransferRepository,
)

LOCK_NAME = "test-ingest-lock"
ALICE = "0x" + "a1" * 20
BOB = "0x" + "b2" * 20


class FakeChainClient:
    """In-memory chain: a fixed set of logs and a settable head."""

    def __init__(self, height: int, logs: list[dict]) -> None:
        self.height = height
        self.logs = logs
        self.ranges: list[tuple[int, int]] = []
        self.max_range: int | None = None
        self.corrupt_calls: set[int] = set()
        self.height_error: Exception | None = None

    async def current_height(self) -> int:
        if self.height_error is not None:
            raise self.height_error
        return self.height

    async def get_logs(self, from_block: int, to_block: int) -> list[dict]:
        self.ranges.append((from_block, to_block))
        if self.max_range is not None and to_block - from_block + 1 > self.max_range:
            raise LogRangeTooLargeError(f"range {from_block}-{to_block} too large")
        found = [log for log in self.logs if from_block <= int(log["blockNumber"], 16) <= to_block]
        if len(self.ranges) in self.corrupt_calls:
            found.append({"topics": [], "data": "0x"})
        return found

    async def get_block_timestamps(self, block_numbers: set[int]) -> dict[int, datetime]:
        return {n: datetime.fromtimestamp(1_700_000_000 + 3 * n, tz=UTC) for n in block_numbers}


class SlowChainClient(FakeChainClient):
    """Fake chain whose log fetches take a while; tracks overlapping fetches."""

    def __init__(self, height: int, logs: list[dict], *, delay: float) -> None:
        super().__init__(height, logs)
        self.delay = delay
        self.active = 0
        self.max_active = 0

    async def get_logs(self, from_block: int, to_block: int) -> list[dict]:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            return await super().get_logs(from_block, to_block)
        finally:
            self.active -= 1


@pytest.fixture
def logs(make_log) -> list[dict]:
    return [
        make_log("0x" + "01" * 32, 0, 101, ALICE, BOB, 10),
        make_log("0x" + "02" * 32, 0, 107, BOB, ALICE, 4),
        make_log("0x" + "03" * 32, 2, 115, ALICE, BOB, 123456789012345678901234),
        make_log("0x" + "04" * 32, 0, 118, BOB, ALICE, 1),
    ]


@pytest.fixture
def make_scanner(async_engine, session_factory):
    def _make(client: FakeChainClient, *, mode: ScanMode = ScanMode.BACKFILL, **kwargs) -> LogScanner:
        lock = ScannerLock(
            async_engine,
            session_factory,
            LOCK_NAME,
            owner_id=f"scanner-{mode.value}",
            lease_seconds=kwargs.pop("lease_seconds", 300.0),
            retry_seconds=0.01,
        )
        writer = TransferWriter(session_factory, AddressResolver(session_factory))
        kwargs.setdefault("start_block", 100)
        kwargs.setdefault("chunk_size", 5)
        kwargs.setdefault("min_chunk_size", 1)
        kwargs.setdefault("confirmations", 5)
        kwargs.setdefault("poll_interval_seconds", 0.01)
        kwargs.setdefault("lookback_blocks", 0)
        kwargs.setdefault("retry_delay_seconds", 0.001)
        reader = kwargs.pop("reader_factory", session_factory)
        return LogScanner(client, writer, lock, reader, mode=mode, **kwargs)

    return _make


async def _checkpoint(session_factory, key: str) -> int | None:
    async with session_factory() as session:
        return await MetaRepository(session).get_int(key)


async def _set_checkpoint(session_factory, key: str, value: int) -> None:
    async with session_factory() as session, session.begin():
        await MetaRepository(session).set_max(key, value)


async def _transfer_count(session_factory) -> int:
    async with session_factory() as session:
        return await TransferRepository(session).count()


async def _wait_until(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


class TestBackfill:
    @pytest.mark.asyncio
    async def test_ingests_up_to_safe_height_then_stops(self, make_scanner, session_factory, logs) -> None:
        client = FakeChainClient(height=120, logs=logs)
        states: list[ScannerState] = []
        scanner = make_scanner(client, on_state_change=states.append)

        await scanner.run()

        assert client.ranges == [(100, 104), (105, 109), (110, 114), (115, 115)]
        assert await _transfer_count(session_factory) == 3
        assert await _checkpoint(session_factory, LAST_BACKFILLED_BLOCK) == 115
        assert await _checkpoint(session_factory, LAST_INDEXED_BLOCK) is None
        assert scanner.state is ScannerState.STOPPED
        assert states == [ScannerState.CATCHING_UP, ScannerState.STOPPED]
        assert scanner.stats.chunks_committed == 4
        assert scanner.stats.transfers_written == 3

    @pytest.mark.asyncio
    async def test_resumes_after_checkpoint(self, make_scanner, session_factory, logs) -> None:
        await _set_checkpoint(session_factory, LAST_BACKFILLED_BLOCK, 109)
        client = FakeChainClient(height=120, logs=logs)

        await make_scanner(client).run()

        assert client.ranges[0] == (110, 114)
        assert await _transfer_count(session_factory) == 1

    @pytest.mark.asyncio
    async def test_resumes_from_legacy_checkpoint(self, make_scanner, session_factory, logs) -> None:
        await _set_checkpoint(session_factory, LEGACY_LAST_SCANNED_BLOCK, 104)
        client = FakeChainClient(height=120, logs=logs)

        await make_scanner(client).run()

        assert client.ranges[0] == (105, 109)

    @pytest.mark.asyncio
    async def test_start_block_is_a_floor(self, make_scanner, session_factory, logs) -> None:
        await _set_checkpoint(session_factory, LAST_BACKFILLED_BLOCK, 50)
        scanner = make_scanner(FakeChainClient(height=120, logs=logs))

        assert await scanner.resolve_start() == 100

    @pytest.mark.asyncio
    async def test_stops_at_live_indexer_tip(self, make_scanner, session_factory, logs) -> None:
        await _set_checkpoint(session_factory, LAST_INDEXED_BLOCK, 107)
        client = FakeChainClient(height=120, logs=logs)

        await make_scanner(client).run()

        assert client.ranges == [(100, 104), (105, 107)]
        assert await _checkpoint(session_factory, LAST_BACKFILLED_BLOCK) == 107

    @pytest.mark.asyncio
    async def test_nothing_to_do_below_confirmations(self, make_scanner, session_factory, logs) -> None:
        client = FakeChainClient(height=3, logs=logs)
        scanner = make_scanner(client, start_block=0)

        await scanner.run()

        assert client.ranges == []
        assert scanner.state is ScannerState.STOPPED

    @pytest.mark.asyncio
    async def test_stop_before_run(self, make_scanner, logs) -> None:
        client = FakeChainClient(height=120, logs=logs)
        scanner = make_scanner(client)
        scanner.stop()

        await scanner.run()

        assert client.ranges == []
        assert scanner.state is ScannerState.STOPPED


class TestStartResolution:
    @pytest.mark.asyncio
    async def test_falls_back_to_max_ingested_block(self, make_scanner, session_factory, make_log) -> None:
        writer = TransferWriter(session_factory, AddressResolver(session_factory))
        transfer = decode_transfer_log(make_log("0x" + "09" * 32, 0, 103, ALICE, BOB, 1))
        await writer.write_chunk(
            [transfer],
            {103: datetime(2024, 1, 1, tzinfo=UTC)},
            checkpoint_key="unrelated",
            end_block=103,
        )

        scanner = make_scanner(FakeChainClient(height=120, logs=[]), mode=ScanMode.LIVE, start_block=None)

        assert await scanner.resolve_start() == 104

    @pytest.mark.asyncio
    async def test_no_start_information_aborts(self, make_scanner) -> None:
        scanner = make_scanner(FakeChainClient(height=120, logs=[]), mode=ScanMode.LIVE, start_block=None)

        with pytest.raises(ScannerConfigError):
            await scanner.run()

        assert scanner.state is ScannerState.ABORTED


class TestFailureHandling:
    @pytest.mark.asyncio
    async def test_range_limit_shrinks_chunk(self, make_scanner, session_factory, logs) -> None:
        client = FakeChainClient(height=120, logs=logs)
        client.max_range = 2
        scanner = make_scanner(client, chunk_size=8)

        await scanner.run()

        committed = [r for r in client.ranges if r[1] - r[0] + 1 <= 2]
        assert committed[0] == (100, 101)
        assert scanner.stats.chunk_failures > 0
        assert await _transfer_count(session_factory) == 3
        assert await _checkpoint(session_factory, LAST_BACKFILLED_BLOCK) == 115

    @pytest.mark.asyncio
    async def test_decode_error_retries_same_chunk(self, make_scanner, session_factory, logs) -> None:
        client = FakeChainClient(height=120, logs=logs)
        client.corrupt_calls = {2}
        scanner = make_scanner(client)

        await scanner.run()

        assert client.ranges[1] == client.ranges[2] == (105, 109)
        assert scanner.stats.chunk_failures == 1
        assert await _transfer_count(session_factory) == 3
        assert await _checkpoint(session_factory, LAST_BACKFILLED_BLOCK) == 115

    @pytest.mark.asyncio
    async def test_failed_chunk_does_not_advance_checkpoint(self, make_scanner, session_factory, logs) -> None:
        client = FakeChainClient(height=120, logs=logs)
        client.corrupt_calls = {1}
        scanner = make_scanner(client)
        checkpoints: list[int | None] = []

        original = scanner._process_chunk

        async def observe(from_block: int, to_block: int) -> bool:
            checkpoints.append(await _checkpoint(session_factory, LAST_BACKFILLED_BLOCK))
            return await original(from_block, to_block)

        scanner._process_chunk = observe  # type: ignore[method-assign]
        await scanner.run()

        # The retry of the first chunk still sees no checkpoint.
        assert checkpoints[:2] == [None, None]
        assert checkpoints[2] == 104

    @pytest.mark.asyncio
    async def test_fatal_rpc_error_aborts(self, make_scanner, logs) -> None:
        client = FakeChainClient(height=120, logs=logs)
        client.height_error = RpcFatalError("eth_blockNumber: invalid api key")
        scanner = make_scanner(client)

        with pytest.raises(RpcFatalError):
            await scanner.run()

        assert scanner.state is ScannerState.ABORTED
        assert scanner.stats.last_error is not None

    @pytest.mark.asyncio
    async def test_store_outage_on_target_read_is_retried(self, make_scanner, session_factory, logs) -> None:
        calls = 0

        def flaky_factory():
            nonlocal calls
            calls += 1
            # Call 1 resolves the start block; call 2 is the first target read.
            if calls == 2:
                raise ConnectionRefusedError(111, "Connect call failed")
            return session_factory()

        client = FakeChainClient(height=120, logs=logs)
        scanner = make_scanner(client, reader_factory=flaky_factory)

        await scanner.run()

        assert calls > 2
        assert scanner.state is ScannerState.STOPPED
        assert await _transfer_count(session_factory) == 3
        assert await _checkpoint(session_factory, LAST_BACKFILLED_BLOCK) == 115


class TestLiveTail:
    @pytest.mark.asyncio
    async def test_tails_with_lookback_until_stopped(self, make_scanner, session_factory, make_log) -> None:
        tail_logs = [
            make_log("0x" + "11" * 32, 0, 101, ALICE, BOB, 10),
            make_log("0x" + "12" * 32, 0, 112, BOB, ALICE, 3),
        ]
        client = FakeChainClient(height=110, logs=tail_logs)
        scanner = make_scanner(client, mode=ScanMode.LIVE, confirmations=0, lookback_blocks=2)

        task = asyncio.create_task(scanner.run())
        await _wait_until(lambda: scanner.state is ScannerState.STEADY_STATE_TAIL)
        assert scanner.cursor == 111

        client.height = 114
        await _wait_until(lambda: scanner.stats.last_committed_block == 114)
        scanner.stop()
        await asyncio.wait_for(task, timeout=5.0)

        assert (109, 113) in client.ranges
        assert scanner.state is ScannerState.STOPPED
        assert await _transfer_count(session_factory) == 2
        assert await _checkpoint(session_factory, LAST_INDEXED_BLOCK) == 114
        assert await _checkpoint(session_factory, LAST_BACKFILLED_BLOCK) is None


class TestLockCoordination:
    @pytest.mark.asyncio
    async def test_waits_while_other_scanner_holds_lock(
        self, make_scanner, async_engine, session_factory, logs
    ) -> None:
        other = ScannerLock(async_engine, session_factory, LOCK_NAME, owner_id="other-scanner")
        assert await other.try_acquire()

        client = FakeChainClient(height=120, logs=logs)
        task = asyncio.create_task(make_scanner(client).run())
        await asyncio.sleep(0.1)

        assert client.ranges == []
        assert not task.done()

        await other.release()
        await asyncio.wait_for(task, timeout=5.0)

        assert await _transfer_count(session_factory) == 3

    @pytest.mark.asyncio
    async def test_lock_released_after_run(self, make_scanner, async_engine, session_factory, logs) -> None:
        await make_scanner(FakeChainClient(height=120, logs=logs)).run()

        other = ScannerLock(async_engine, session_factory, LOCK_NAME, owner_id="other-scanner")
        assert await other.try_acquire()
        await other.release()

    @pytest.mark.asyncio
    async def test_slow_chunk_keeps_lock_past_lease(self, make_scanner, session_factory, logs) -> None:
        client = SlowChainClient(height=120, logs=logs, delay=0.15)
        backfill = make_scanner(client, lease_seconds=0.05)
        live = make_scanner(client, mode=ScanMode.LIVE, lease_seconds=0.05)

        live_task = asyncio.create_task(live.run())
        await backfill.run()
        await _wait_until(lambda: live.stats.last_committed_block == 115)
        live.stop()
        await asyncio.wait_for(live_task, timeout=5.0)

        assert client.max_active == 1
        assert await _transfer_count(session_factory) == 3
