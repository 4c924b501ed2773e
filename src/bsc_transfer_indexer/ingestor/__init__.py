"""Ingestion layer - address resolution and transactional transfer writes."""

from bsc_transfer_indexer.ingestor.resolver import (
    AddressResolutionError,
    AddressResolver,
    normalize_address,
)
from bsc_transfer_indexer.ingestor.writer import TransferWriter

__all__ = [
    "AddressResolutionError",
    "AddressResolver",
    "TransferWriter",
    "normalize_address",
]
