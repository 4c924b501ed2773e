"""Chain access - JSON-RPC client and Transfer log decoding."""

from bsc_transfer_indexer.chain.client import (
    BscClient,
    ChainClientError,
    LogRangeTooLargeError,
    PacingGate,
    RpcFatalError,
    backoff_delay,
)
from bsc_transfer_indexer.chain.decoder import (
    TRANSFER_TOPIC,
    DecodedTransfer,
    TransferDecodeError,
    decode_transfer_log,
)

__all__ = [
    "TRANSFER_TOPIC",
    "BscClient",
    "ChainClientError",
    "DecodedTransfer",
    "LogRangeTooLargeError",
    "PacingGate",
    "RpcFatalError",
    "TransferDecodeError",
    "backoff_delay",
    "decode_transfer_log",
]
