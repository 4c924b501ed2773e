"""Command line entry point: ``python -m bsc_transfer_indexer <command>``."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from pydantic import ValidationError

from bsc_transfer_indexer.chain.client import RpcFatalError
from bsc_transfer_indexer.config import Command, get_settings
from bsc_transfer_indexer.runner import (
    run_init_db,
    run_rebuild_holders,
    run_scanner,
    run_status,
)
from bsc_transfer_indexer.scanner.scanner import ScanMode, ScannerConfigError

logger = logging.getLogger("bsc_transfer_indexer")

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bsc-transfer-indexer",
        description="Index BEP-20 Transfer events on BNB Smart Chain",
    )
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("backfill", help="Scan history from the checkpoint up to the safe height, then exit")
    sub.add_parser("live", help="Tail the chain behind the confirmation depth until stopped")
    sub.add_parser("rebuild-holders", help="Recompute holder_balances from transfers")
    sub.add_parser("status", help="Print checkpoints and table counts as JSON")
    sub.add_parser("init-db", help="Create missing tables without Alembic")
    return parser


async def _dispatch(command: Command) -> int:
    settings = get_settings()
    if command in ("backfill", "live"):
        stats = await run_scanner(settings, ScanMode(command))
        logger.info(
            "Scanner finished: %d chunks, %d transfers, last block %s",
            stats.chunks_committed,
            stats.transfers_written,
            stats.last_committed_block,
        )
    elif command == "rebuild-holders":
        await run_rebuild_holders(settings)
    elif command == "status":
        status = await run_status(settings)
        print(json.dumps(status.to_dict(), indent=2))
    elif command == "init-db":
        await run_init_db(settings)
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    command: Command = args.command

    logging.basicConfig(level=logging.INFO, format=_LOG_FORMAT)
    try:
        settings = get_settings()
        settings.validate_requirements(command=command)
    except ValidationError as e:
        logger.error("Invalid configuration:\n%s", e)
        return EXIT_CONFIG
    except ValueError as e:
        logger.error("Invalid configuration: %s", e)
        return EXIT_CONFIG
    logging.getLogger().setLevel(settings.get_logging_level())

    try:
        return asyncio.run(_dispatch(command))
    except ScannerConfigError as e:
        logger.error("%s", e)
        return EXIT_CONFIG
    except RpcFatalError as e:
        logger.error("Fatal RPC error: %s", e)
        return EXIT_FATAL
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
