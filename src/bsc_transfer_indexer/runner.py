"""Command runners: wire settings into the scanner, rebuild and status paths."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal

from redis.asyncio import Redis

from bsc_transfer_indexer.chain.client import BscClient
from bsc_transfer_indexer.config import Settings
from bsc_transfer_indexer.holders import rebuild_holder_balances
from bsc_transfer_indexer.ingestor.resolver import AddressResolver
from bsc_transfer_indexer.ingestor.writer import TransferWriter
from bsc_transfer_indexer.scanner.scanner import LogScanner, ScanMode, ScanStats
from bsc_transfer_indexer.status import IndexerStatus, collect_status
from bsc_transfer_indexer.storage.database import DatabaseManager
from bsc_transfer_indexer.storage.locks import ScannerLock

logger = logging.getLogger(__name__)

_STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def build_scanner(
    settings: Settings,
    db: DatabaseManager,
    client: BscClient,
    *,
    mode: ScanMode,
) -> LogScanner:
    """Assemble a scanner from settings around an existing client and database."""
    scanner_cfg = settings.scanner
    lock = ScannerLock(
        db.engine,
        db.session_factory,
        scanner_cfg.lock_name,
        lease_seconds=scanner_cfg.lock_lease_seconds,
        retry_seconds=scanner_cfg.lock_retry_seconds,
    )
    resolver = AddressResolver(db.session_factory, cache_size=scanner_cfg.address_cache_size)
    writer = TransferWriter(db.session_factory, resolver, batch_rows=scanner_cfg.insert_batch_rows)
    return LogScanner(
        client,
        writer,
        lock,
        db.session_factory,
        mode=mode,
        start_block=settings.chain.start_block,
        chunk_size=scanner_cfg.chunk_size,
        min_chunk_size=scanner_cfg.min_chunk_size,
        confirmations=scanner_cfg.confirmations,
        poll_interval_seconds=scanner_cfg.poll_interval_seconds,
        lookback_blocks=scanner_cfg.lookback_blocks,
        retry_delay_seconds=scanner_cfg.retry_delay_seconds,
    )


async def run_scanner(settings: Settings, mode: ScanMode) -> ScanStats:
    """Run one scanning mode until it finishes or receives SIGINT/SIGTERM."""
    settings.validate_requirements(command=mode.value)
    assert settings.chain.token_address is not None

    redis = Redis.from_url(settings.redis.url) if settings.redis.url else None
    db = DatabaseManager(settings.database.url)
    client = BscClient(
        settings.chain.rpc_url,
        token_address=settings.chain.token_address,
        redis=redis,
        min_gap_seconds=settings.chain.min_gap_ms / 1000.0,
        request_timeout_seconds=settings.chain.request_timeout_seconds,
        backoff_base_seconds=settings.chain.backoff_base_seconds,
        backoff_cap_seconds=settings.chain.backoff_cap_seconds,
        block_time_cache_size=settings.chain.block_time_cache_size,
    )
    scanner = build_scanner(settings, db, client, mode=mode)

    loop = asyncio.get_running_loop()
    for sig in _STOP_SIGNALS:
        # add_signal_handler is unavailable on some platforms (Windows).
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, scanner.stop)
    try:
        logger.info("Starting %s scanner with %s", mode.value, settings.redacted_summary())
        await scanner.run()
        return scanner.stats
    finally:
        for sig in _STOP_SIGNALS:
            with contextlib.suppress(NotImplementedError):
                loop.remove_signal_handler(sig)
        await client.aclose()
        if redis is not None:
            await redis.aclose()
        await db.dispose_async()


async def run_rebuild_holders(settings: Settings) -> int:
    db = DatabaseManager(settings.database.url)
    try:
        return await rebuild_holder_balances(
            db.session_factory,
            batch_rows=settings.scanner.insert_batch_rows,
        )
    finally:
        await db.dispose_async()


async def run_status(settings: Settings) -> IndexerStatus:
    db = DatabaseManager(settings.database.url)
    try:
        return await collect_status(db.session_factory)
    finally:
        await db.dispose_async()


async def run_init_db(settings: Settings) -> None:
    """Create missing tables directly (Alembic is preferred for PostgreSQL)."""
    db = DatabaseManager(settings.database.url)
    try:
        await db.init_schema_async()
    finally:
        await db.dispose_async()
