"""BNB Smart Chain JSON-RPC client with pacing, backoff and caching.

This module provides the chain adapter used by the scanners:
- A single pacing gate enforcing a minimum gap between RPC calls
- Indefinite exponential backoff on transient failures (rate limits,
  gateway errors, timeouts, connection drops)
- Immediate failure on fatal errors (bad request, auth)
- A bounded block-timestamp cache, optionally backed by Redis
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar

import aiohttp
from redis.asyncio import Redis
from web3 import AsyncWeb3
from web3.exceptions import BlockNotFound
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

from bsc_transfer_indexer.cache import BoundedCache
from bsc_transfer_indexer.chain.decoder import TRANSFER_TOPIC

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Default configuration
DEFAULT_MIN_GAP_SECONDS = 0.12
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0
DEFAULT_BACKOFF_BASE_SECONDS = 1.0
DEFAULT_BACKOFF_CAP_SECONDS = 30.0
DEFAULT_BLOCK_TIME_CACHE_SIZE = 20_000

RETRY_STATUS_CODES = (429, 500, 502, 503, 504)

# Checked before the range markers: "rate limit exceeded" is throttling.
_RATE_LIMIT_MARKERS = (
    "429",
    "too many requests",
    "rate limit",
)

_TRANSIENT_MARKERS = (
    "exceeded maximum retry",
    "temporarily",
    "timeout",
    "timed out",
    "server error",
    "bad gateway",
    "gateway timeout",
    "service unavailable",
    "connection reset",
    "connection refused",
    "header not found",
)

# Provider-side payload limits on eth_getLogs; the fix is a smaller range.
_RANGE_LIMIT_MARKERS = (
    "block range",
    "range too large",
    "range is too large",
    "exceed maximum block range",
    "query returned more than",
    "too many results",
    "response size exceeded",
    "response is too big",
    "limit exceeded",
)


class ChainClientError(Exception):
    """Base exception for chain client errors."""


class RpcFatalError(ChainClientError):
    """Raised for non-retryable RPC failures (malformed request, auth)."""


class LogRangeTooLargeError(ChainClientError):
    """Raised when the provider rejects an eth_getLogs range as too large."""


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    RANGE_LIMIT = "range_limit"
    FATAL = "fatal"


def classify_error(exc: BaseException) -> ErrorKind:
    """Classify an RPC exception as transient, range-limited or fatal."""
    if isinstance(exc, aiohttp.ClientResponseError):
        return ErrorKind.TRANSIENT if exc.status in RETRY_STATUS_CODES else ErrorKind.FATAL
    if isinstance(exc, (TimeoutError, ConnectionError, aiohttp.ClientError, BlockNotFound)):
        return ErrorKind.TRANSIENT

    message = str(exc).lower()
    if any(marker in message for marker in _RATE_LIMIT_MARKERS):
        return ErrorKind.TRANSIENT
    if any(marker in message for marker in _RANGE_LIMIT_MARKERS):
        return ErrorKind.RANGE_LIMIT
    if any(marker in message for marker in _TRANSIENT_MARKERS):
        return ErrorKind.TRANSIENT
    return ErrorKind.FATAL


def backoff_delay(attempt: int, *, base: float, cap: float) -> float:
    """Delay before retry number ``attempt`` (1-based): base * 2**(attempt-1), capped."""
    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    # Bound the exponent so huge attempt counts cannot overflow.
    exponent = min(attempt - 1, 32)
    return min(cap, base * (2**exponent))


class PacingGate:
    """Minimum-interval gate shared by every RPC call of a client."""

    def __init__(self, min_interval_seconds: float = DEFAULT_MIN_GAP_SECONDS) -> None:
        """Initialize the gate.

        Args:
            min_interval_seconds: Minimum spacing between two calls.
        """
        self._min_interval = min_interval_seconds
        self._last_call_time: float = 0.0
        self._lock = asyncio.Lock()

    @property
    def min_interval(self) -> float:
        return self._min_interval

    async def wait(self) -> None:
        """Wait until the next call slot is available."""
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self._last_call_time
            if elapsed < self._min_interval:
                await asyncio.sleep(self._min_interval - elapsed)
            self._last_call_time = time.monotonic()


class BscClient:
    """Chain adapter for one BEP-20 token on BNB Smart Chain.

    Example:
        ```python
        client = BscClient(
            "https://bsc-dataseed.bnbchain.org",
            token_address="0x...",
        )
        height = await client.current_height()
        logs = await client.get_logs(height - 100, height)
        ts = await client.get_block_timestamp(height)
        await client.aclose()
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        token_address: str,
        redis: Redis | None = None,
        gate: PacingGate | None = None,
        min_gap_seconds: float = DEFAULT_MIN_GAP_SECONDS,
        request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        backoff_base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS,
        backoff_cap_seconds: float = DEFAULT_BACKOFF_CAP_SECONDS,
        block_time_cache_size: int = DEFAULT_BLOCK_TIME_CACHE_SIZE,
        web3: AsyncWeb3[Any] | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            rpc_url: BSC JSON-RPC endpoint URL.
            token_address: Token contract whose Transfer logs are fetched.
            redis: Optional Redis client used as a second-tier timestamp cache.
            gate: Pacing gate to share with other clients; one is created if omitted.
            min_gap_seconds: Minimum spacing between calls when creating a gate.
            request_timeout_seconds: Per-call timeout; timeouts are retried.
            backoff_base_seconds: First retry delay.
            backoff_cap_seconds: Maximum retry delay.
            block_time_cache_size: Capacity of the in-process timestamp cache.
            web3: Pre-built web3 instance (tests); built from rpc_url if omitted.
        """
        self._rpc_url = rpc_url
        self._token_address = AsyncWeb3.to_checksum_address(token_address)
        self._redis = redis
        self._gate = gate or PacingGate(min_gap_seconds)
        self._timeout = request_timeout_seconds
        self._backoff_base = backoff_base_seconds
        self._backoff_cap = backoff_cap_seconds
        self._block_times: BoundedCache[int, datetime] = BoundedCache(block_time_cache_size)
        self._w3 = web3 if web3 is not None else self._new_web3_client(rpc_url)
        self._cache_prefix = "bsc:"

    @property
    def token_address(self) -> str:
        return self._token_address

    @property
    def block_time_cache(self) -> BoundedCache[int, datetime]:
        return self._block_times

    def _new_web3_client(self, rpc_url: str) -> AsyncWeb3[AsyncHTTPProvider]:
        client = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        # BSC blocks carry PoA extra-data; get_block fails without this.
        client.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        return client

    async def _get_cached(self, key: str) -> str | None:
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, value: str) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(key, value)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    async def _call(
        self,
        label: str,
        fn: Callable[[], Awaitable[T]],
        *,
        range_sensitive: bool = False,
    ) -> T:
        """Run one RPC call behind the pacing gate, retrying transient errors forever.

        Raises:
            LogRangeTooLargeError: If ``range_sensitive`` and the provider
                rejects the requested range.
            RpcFatalError: On any non-retryable failure.
        """
        attempt = 0
        while True:
            await self._gate.wait()
            try:
                return await asyncio.wait_for(fn(), timeout=self._timeout)
            except Exception as e:
                kind = classify_error(e)
                if kind is ErrorKind.RANGE_LIMIT and range_sensitive:
                    raise LogRangeTooLargeError(f"{label}: {e}") from e
                # Payload limits on a call with no range to shrink are throttling.
                if kind is not ErrorKind.FATAL:
                    attempt += 1
                    delay = backoff_delay(attempt, base=self._backoff_base, cap=self._backoff_cap)
                    logger.warning(
                        "[%s] transient RPC error (attempt %d), retrying in %.1fs: %s",
                        label,
                        attempt,
                        delay,
                        e or type(e).__name__,
                    )
                    await asyncio.sleep(delay)
                    continue
                logger.error("[%s] fatal RPC error: %s", label, e)
                raise RpcFatalError(f"{label}: {e}") from e

    async def current_height(self) -> int:
        """Get the current chain head block number."""
        height = await self._call("eth_blockNumber", lambda: self._w3.eth.get_block_number())
        return int(height)

    async def get_logs(self, from_block: int, to_block: int) -> list[dict[str, Any]]:
        """Fetch the token's Transfer logs in the inclusive range [from_block, to_block]."""
        if from_block > to_block:
            raise ValueError(f"from_block {from_block} > to_block {to_block}")
        params = {
            "address": self._token_address,
            "topics": [TRANSFER_TOPIC],
            "fromBlock": from_block,
            "toBlock": to_block,
        }
        logs = await self._call(
            f"eth_getLogs({from_block}-{to_block})",
            lambda: self._w3.eth.get_logs(params),
            range_sensitive=True,
        )
        return [dict(log) for log in logs]

    async def get_block_timestamp(self, block_number: int) -> datetime:
        """Get a block's timestamp as an aware UTC datetime (cached)."""
        cached = self._block_times.get(block_number)
        if cached is not None:
            return cached

        cache_key = f"{self._cache_prefix}block_ts:{block_number}"
        redis_value = await self._get_cached(cache_key)
        if redis_value is not None:
            ts = datetime.fromtimestamp(int(redis_value), tz=UTC)
            self._block_times.put(block_number, ts)
            return ts

        block = await self._call(
            f"eth_getBlockByNumber({block_number})",
            lambda: self._w3.eth.get_block(block_number),
        )
        seconds = int(block["timestamp"])
        ts = datetime.fromtimestamp(seconds, tz=UTC)
        self._block_times.put(block_number, ts)
        await self._set_cached(cache_key, str(seconds))
        return ts

    async def get_block_timestamps(self, block_numbers: set[int]) -> dict[int, datetime]:
        """Resolve timestamps for several blocks in ascending order."""
        return {n: await self.get_block_timestamp(n) for n in sorted(block_numbers)}

    async def aclose(self) -> None:
        """Close async HTTP provider sessions to avoid leaked aiohttp sessions."""
        disconnect = getattr(self._w3.provider, "disconnect", None)
        if not callable(disconnect):
            return
        try:
            result = disconnect()
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.warning("Failed to close RPC provider session: %s", e)
