"""Scanning layer - the backfill / live-tail state machine."""

from bsc_transfer_indexer.scanner.chunking import ChunkSizer
from bsc_transfer_indexer.scanner.scanner import (
    LogScanner,
    ScanMode,
    ScannerConfigError,
    ScannerError,
    ScannerState,
    ScanStats,
)

__all__ = [
    "ChunkSizer",
    "LogScanner",
    "ScanMode",
    "ScanStats",
    "ScannerConfigError",
    "ScannerError",
    "ScannerState",
]
