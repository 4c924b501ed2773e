"""Transfer(address,address,uint256) log decoding.

Pure functions only: no I/O, no caching. Accepts logs as returned by
web3 (``AttributeDict`` with ``HexBytes`` values) or as raw JSON-RPC
dicts with hex strings.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

_WORD_BYTES = 32


class TransferDecodeError(ValueError):
    """Raised when a log is not a well-formed ERC-20 Transfer event."""


@dataclass(frozen=True)
class DecodedTransfer:
    """One decoded Transfer event with its position on chain."""

    tx_hash: str
    log_index: int
    block_number: int
    from_address: str
    to_address: str
    raw_amount: int


def to_hex(value: Any) -> str:
    """Normalize HexBytes / bytes / hex string to lowercase 0x-prefixed hex."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "0x" + bytes(value).hex()
    if isinstance(value, str):
        text = value.strip().lower()
        return text if text.startswith("0x") else "0x" + text
    raise TransferDecodeError(f"Expected bytes or hex string, got {type(value).__name__}")


def _to_int(value: Any) -> int:
    if isinstance(value, bool):
        raise TransferDecodeError("Expected integer, got bool")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 16) if value.startswith(("0x", "0X")) else int(value)
        except ValueError as e:
            raise TransferDecodeError(f"Invalid integer field: {value!r}") from e
    raise TransferDecodeError(f"Expected integer, got {type(value).__name__}")


def topic_to_address(topic: Any) -> str:
    """Take the last 20 bytes of a 32-byte indexed topic as an address."""
    hexed = to_hex(topic)[2:]
    if len(hexed) != _WORD_BYTES * 2:
        raise TransferDecodeError(f"Topic must be 32 bytes, got {len(hexed) // 2}")
    return "0x" + hexed[-40:]


def decode_amount(data: Any) -> int:
    """Parse the non-indexed uint256 value as an unbounded Python int."""
    hexed = to_hex(data)[2:]
    if len(hexed) != _WORD_BYTES * 2:
        raise TransferDecodeError(f"Transfer data must be 32 bytes, got {len(hexed) // 2}")
    try:
        return int(hexed, 16)
    except ValueError as e:
        raise TransferDecodeError("Transfer data is not hex") from e


def _field(log: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        if name in log and log[name] is not None:
            return log[name]
    raise TransferDecodeError(f"Log is missing field {names[0]!r}")


def decode_transfer_log(log: Mapping[str, Any]) -> DecodedTransfer:
    """Decode one raw Transfer log.

    Args:
        log: Log mapping with ``topics``, ``data``, ``transactionHash``,
            ``logIndex`` and ``blockNumber``.

    Returns:
        DecodedTransfer with lowercase addresses and the exact amount.

    Raises:
        TransferDecodeError: If the log is not a standard Transfer event.
    """
    topics = list(_field(log, "topics"))
    if len(topics) < 3:
        raise TransferDecodeError(f"Transfer log needs 3 topics, got {len(topics)}")
    if to_hex(topics[0]) != TRANSFER_TOPIC:
        raise TransferDecodeError(f"Unexpected topic0 {to_hex(topics[0])}")

    log_index = _to_int(_field(log, "logIndex", "log_index", "index"))
    if log_index < 0:
        raise TransferDecodeError("logIndex must be non-negative")
    tx_hash = to_hex(_field(log, "transactionHash", "transaction_hash"))
    if len(tx_hash) != 66:
        raise TransferDecodeError(f"Invalid transaction hash {tx_hash}")

    return DecodedTransfer(
        tx_hash=tx_hash,
        log_index=log_index,
        block_number=_to_int(_field(log, "blockNumber", "block_number")),
        from_address=topic_to_address(topics[1]),
        to_address=topic_to_address(topics[2]),
        raw_amount=decode_amount(_field(log, "data")),
    )
