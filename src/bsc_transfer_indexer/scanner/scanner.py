"""Resumable backfill / live-tail log scanner.

The scanner walks block ranges in ascending order, fetches the token's
Transfer logs, decodes them and hands each chunk to the writer. The
checkpoint only advances when a chunk's transaction commits, so a restart
resumes from the last committed block and re-ingestion is idempotent.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from bsc_transfer_indexer.chain.client import BscClient, LogRangeTooLargeError, RpcFatalError
from bsc_transfer_indexer.chain.decoder import TransferDecodeError, decode_transfer_log
from bsc_transfer_indexer.ingestor.resolver import AddressResolutionError
from bsc_transfer_indexer.ingestor.writer import TransferWriter
from bsc_transfer_indexer.scanner.chunking import ChunkSizer
from bsc_transfer_indexer.storage.locks import LockError, ScannerLock
from bsc_transfer_indexer.storage.repos import (
    LAST_BACKFILLED_BLOCK,
    LAST_INDEXED_BLOCK,
    LEGACY_LAST_SCANNED_BLOCK,
    MetaRepository,
    TransferRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_CHUNK_SIZE = 4000
DEFAULT_MIN_CHUNK_SIZE = 50
DEFAULT_CONFIRMATIONS = 5
DEFAULT_POLL_INTERVAL_SECONDS = 15.0
DEFAULT_LOOKBACK_BLOCKS = 3
DEFAULT_RETRY_DELAY_SECONDS = 3.0

# Errors after which the same chunk is retried without advancing.
_CHUNK_RETRY_ERRORS: tuple[type[Exception], ...] = (
    SQLAlchemyError,
    TransferDecodeError,
    AddressResolutionError,
    LockError,
    OSError,
)


class ScannerState(str, Enum):
    """State of the log scanner."""

    RESOLVING_START = "resolving_start"
    CATCHING_UP = "catching_up"
    STEADY_STATE_TAIL = "steady_state_tail"
    ABORTED = "aborted"
    STOPPED = "stopped"


class ScanMode(str, Enum):
    """Scanning mode; each mode owns one checkpoint key."""

    BACKFILL = "backfill"
    LIVE = "live"

    @property
    def checkpoint_key(self) -> str:
        return LAST_BACKFILLED_BLOCK if self is ScanMode.BACKFILL else LAST_INDEXED_BLOCK


@dataclass
class ScanStats:
    """Statistics for one scanner run."""

    chunks_committed: int = 0
    chunk_failures: int = 0
    transfers_written: int = 0
    last_committed_block: int | None = None
    started_at: datetime | None = None
    last_error: str | None = None


StateCallback = Callable[[ScannerState], None]


class ScannerError(Exception):
    """Base exception for scanner errors."""


class ScannerConfigError(ScannerError):
    """Raised when the scanner cannot determine where to start."""


class LogScanner:
    """Drives chunked log ingestion for one scanning mode.

    Example:
        ```python
        scanner = LogScanner(client, writer, lock, session_factory, mode=ScanMode.LIVE)
        task = asyncio.create_task(scanner.run())
        ...
        scanner.stop()
        await task
        ```
    """

    def __init__(
        self,
        client: BscClient,
        writer: TransferWriter,
        lock: ScannerLock,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        mode: ScanMode,
        start_block: int | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        min_chunk_size: int = DEFAULT_MIN_CHUNK_SIZE,
        confirmations: int = DEFAULT_CONFIRMATIONS,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        lookback_blocks: int = DEFAULT_LOOKBACK_BLOCKS,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        on_state_change: StateCallback | None = None,
    ) -> None:
        """Initialize the scanner.

        Args:
            client: Chain client for heights, logs and block timestamps.
            writer: Transactional chunk writer.
            lock: Lock shared with the other scanning mode; held per chunk.
            session_factory: Used for read-only checkpoint queries.
            mode: Backfill (bounded) or live (tails forever).
            start_block: Configured minimum start block.
            chunk_size: Target chunk width in blocks.
            min_chunk_size: Floor for chunk shrinking.
            confirmations: Blocks behind head treated as safe.
            poll_interval_seconds: Sleep between tail iterations.
            lookback_blocks: Blocks re-scanned before the cursor on each tail poll.
            retry_delay_seconds: Sleep before retrying a failed chunk.
            on_state_change: Callback for state changes.
        """
        if confirmations < 0:
            raise ValueError("confirmations must be >= 0")
        if lookback_blocks < 0:
            raise ValueError("lookback_blocks must be >= 0")

        self._client = client
        self._writer = writer
        self._lock = lock
        self._session_factory = session_factory
        self._mode = mode
        self._start_block = start_block
        self._sizer = ChunkSizer(target=chunk_size, floor=min_chunk_size)
        self._confirmations = confirmations
        self._poll_interval = poll_interval_seconds
        self._lookback = lookback_blocks
        self._retry_delay = retry_delay_seconds
        self._on_state_change = on_state_change

        self._state = ScannerState.RESOLVING_START
        self._stats = ScanStats()
        self._cursor: int | None = None
        self._stop_event = asyncio.Event()

    @property
    def state(self) -> ScannerState:
        """Current scanner state."""
        return self._state

    @property
    def stats(self) -> ScanStats:
        return self._stats

    @property
    def mode(self) -> ScanMode:
        return self._mode

    @property
    def cursor(self) -> int | None:
        """Next block to scan, once resolved."""
        return self._cursor

    @property
    def chunk_sizer(self) -> ChunkSizer:
        return self._sizer

    def stop(self) -> None:
        """Ask the scanner to stop after the current chunk."""
        self._stop_event.set()

    def _set_state(self, new_state: ScannerState) -> None:
        """Update state and notify callback."""
        old_state = self._state
        self._state = new_state
        if old_state != new_state:
            logger.info("Scanner %s: %s -> %s", self._mode.value, old_state.value, new_state.value)
            if self._on_state_change:
                try:
                    self._on_state_change(new_state)
                except Exception as e:
                    logger.warning("State change callback failed: %s", e)

    async def _sleep(self, seconds: float) -> bool:
        """Sleep unless stopped first. Returns True if a stop was requested."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
            return True
        except TimeoutError:
            return False

    async def resolve_start(self) -> int:
        """First block to scan.

        ``max(checkpoint + 1, start_block)`` when a checkpoint exists; else the
        configured start block; else the highest ingested transfer block + 1.

        Raises:
            ScannerConfigError: If none of those is available.
        """
        async with self._session_factory() as session:
            meta = MetaRepository(session)
            checkpoint = await meta.get_int(self._mode.checkpoint_key)
            if checkpoint is None and self._mode is ScanMode.BACKFILL:
                checkpoint = await meta.get_int(LEGACY_LAST_SCANNED_BLOCK)
            if checkpoint is not None:
                start = checkpoint + 1
                if self._start_block is not None:
                    start = max(start, self._start_block)
                return start
            if self._start_block is not None:
                return self._start_block
            max_block = await TransferRepository(session).max_block_number()
        if max_block is not None:
            return max_block + 1
        raise ScannerConfigError(
            f"No {self._mode.checkpoint_key} checkpoint, start block or ingested transfers to resume from"
        )

    async def _scan_target(self) -> int:
        """Highest block this scanner may ingest right now."""
        height = await self._client.current_height()
        safe = height - self._confirmations
        if self._mode is ScanMode.BACKFILL:
            # Never backfill past the tip the live indexer has claimed.
            async with self._session_factory() as session:
                live_tip = await MetaRepository(session).get_int(LAST_INDEXED_BLOCK)
            if live_tip is not None:
                safe = min(safe, live_tip)
        return safe

    async def run(self) -> None:
        """Run until caught up (backfill), stopped, or a fatal error.

        Raises:
            RpcFatalError: On a non-retryable chain error (state ABORTED).
            ScannerConfigError: If no start block can be resolved (state ABORTED).
        """
        self._stats.started_at = datetime.now(UTC)
        self._set_state(ScannerState.RESOLVING_START)
        try:
            self._cursor = await self.resolve_start()
            logger.info("Scanner %s starting at block %d", self._mode.value, self._cursor)
            self._set_state(ScannerState.CATCHING_UP)
            await self._loop()
        except (RpcFatalError, ScannerConfigError) as e:
            self._stats.last_error = str(e)
            self._set_state(ScannerState.ABORTED)
            logger.error("Scanner %s aborted: %s", self._mode.value, e)
            raise
        self._set_state(ScannerState.STOPPED)

    async def _loop(self) -> None:
        assert self._cursor is not None
        rewind = False
        while not self._stop_event.is_set():
            try:
                target = await self._scan_target()
            except (SQLAlchemyError, OSError) as e:
                logger.warning("Failed to read scan target, retrying in %.0fs: %s", self._retry_delay, e)
                if await self._sleep(self._retry_delay):
                    return
                continue

            if self._cursor > target:
                if self._mode is ScanMode.BACKFILL:
                    logger.info("Backfill caught up at block %d", self._cursor - 1)
                    return
                self._set_state(ScannerState.STEADY_STATE_TAIL)
                if await self._sleep(self._poll_interval):
                    return
                rewind = self._lookback > 0
                continue

            start = self._cursor
            if rewind:
                floor = self._start_block if self._start_block is not None else 0
                start = max(floor, self._cursor - self._lookback)
            from_block, to_block = self._sizer.chunk(start, target)

            if await self._process_chunk(from_block, to_block):
                rewind = False
                self._cursor = max(self._cursor, to_block + 1)
            elif await self._sleep(self._retry_delay):
                return

    async def _process_chunk(self, from_block: int, to_block: int) -> bool:
        """Fetch, decode and ingest one chunk while holding the lock.

        Returns True if the chunk committed. Chunk-local failures are logged
        and return False; fatal chain errors propagate.
        """
        try:
            async with self._lock.hold(self._stop_event) as acquired:
                if not acquired:
                    return False
                logs = await self._client.get_logs(from_block, to_block)
                transfers = sorted(
                    (decode_transfer_log(log) for log in logs),
                    key=lambda t: (t.block_number, t.log_index),
                )
                block_times = await self._client.get_block_timestamps(
                    {t.block_number for t in transfers}
                )
                written = await self._writer.write_chunk(
                    transfers,
                    block_times,
                    checkpoint_key=self._mode.checkpoint_key,
                    end_block=to_block,
                )
        except LogRangeTooLargeError as e:
            self._stats.chunk_failures += 1
            self._stats.last_error = str(e)
            size = self._sizer.shrink()
            logger.warning(
                "Range %d-%d rejected by provider, chunk size now %d: %s",
                from_block,
                to_block,
                size,
                e,
            )
            return False
        except _CHUNK_RETRY_ERRORS as e:
            self._stats.chunk_failures += 1
            self._stats.last_error = str(e)
            logger.error(
                "Chunk %d-%d failed, retrying in %.0fs: %s",
                from_block,
                to_block,
                self._retry_delay,
                e,
            )
            return False

        self._sizer.grow()
        self._stats.chunks_committed += 1
        self._stats.transfers_written += written
        self._stats.last_committed_block = to_block
        logger.info(
            "Scanner %s committed blocks %d-%d (%d transfers)",
            self._mode.value,
            from_block,
            to_block,
            written,
        )
        return True
