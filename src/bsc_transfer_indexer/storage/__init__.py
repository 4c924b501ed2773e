"""Storage layer - Database schemas, repositories and the scanner lock."""

from bsc_transfer_indexer.storage.database import (
    DatabaseManager,
    create_indexer_engine,
    to_async_url,
)
from bsc_transfer_indexer.storage.locks import LockError, ScannerLock, lock_key64
from bsc_transfer_indexer.storage.models import (
    AddressModel,
    Base,
    HolderBalanceModel,
    MetaModel,
    ScannerLockModel,
    TransferModel,
)
from bsc_transfer_indexer.storage.repos import (
    LAST_BACKFILLED_BLOCK,
    LAST_INDEXED_BLOCK,
    LEGACY_LAST_SCANNED_BLOCK,
    AddressRepository,
    HolderBalanceDTO,
    HolderBalanceRepository,
    MetaRepository,
    TransferDTO,
    TransferRepository,
)

__all__ = [
    "LAST_BACKFILLED_BLOCK",
    "LAST_INDEXED_BLOCK",
    "LEGACY_LAST_SCANNED_BLOCK",
    "AddressModel",
    "AddressRepository",
    "Base",
    "DatabaseManager",
    "HolderBalanceDTO",
    "HolderBalanceModel",
    "HolderBalanceRepository",
    "LockError",
    "MetaModel",
    "MetaRepository",
    "ScannerLock",
    "ScannerLockModel",
    "TransferDTO",
    "TransferModel",
    "TransferRepository",
    "create_indexer_engine",
    "lock_key64",
    "to_async_url",
]
