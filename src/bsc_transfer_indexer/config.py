"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
BSC transfer indexer, loading and validating environment variables
at startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

Command = Literal["backfill", "live", "rebuild-holders", "status", "init-db"]


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL connection string (sqlite+aiosqlite allowed for local runs)",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError(
                "DATABASE_URL must be a PostgreSQL connection string (or sqlite+aiosqlite:// for local runs)"
            )
        return v


class RedisSettings(BaseSettings):
    """Optional Redis cache settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string for the block timestamp cache",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is None:
            return v
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v

    @property
    def enabled(self) -> bool:
        return self.url is not None


class ChainSettings(BaseSettings):
    """BNB Smart Chain RPC and token settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    rpc_url: str = Field(
        default="https://bsc-dataseed.bnbchain.org",
        validation_alias=AliasChoices("BSC_RPC_URL", "RPC_URL"),
        description="BSC JSON-RPC endpoint",
    )
    token_address: str | None = Field(
        default=None,
        validation_alias=AliasChoices("TOKEN_ADDRESS", "BC400_TOKEN_ADDRESS"),
        description="BEP-20 token contract whose Transfer events are indexed",
    )
    start_block: int | None = Field(
        default=None,
        validation_alias=AliasChoices("START_BLOCK", "BC400_START_BLOCK"),
        ge=0,
        description="Minimum block to scan from (token deployment block)",
    )
    min_gap_ms: int = Field(
        default=120,
        alias="RPC_MIN_GAP_MS",
        ge=0,
        le=60_000,
        description="Minimum spacing between any two RPC calls",
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        alias="RPC_REQUEST_TIMEOUT_SECONDS",
        gt=0,
        le=600,
        description="Per-call timeout; a timeout is retried like any transient error",
    )
    backoff_base_seconds: float = Field(
        default=1.0,
        alias="RPC_BACKOFF_BASE_SECONDS",
        gt=0,
        description="First retry delay for transient RPC errors",
    )
    backoff_cap_seconds: float = Field(
        default=30.0,
        alias="RPC_BACKOFF_CAP_SECONDS",
        gt=0,
        description="Ceiling for the exponential retry delay",
    )
    block_time_cache_size: int = Field(
        default=20_000,
        alias="BLOCK_TIME_CACHE_SIZE",
        ge=1,
        description="Max cached block timestamps",
    )

    @field_validator("rpc_url")
    @classmethod
    def validate_rpc_url(cls, v: str) -> str:
        """Validate RPC URL format."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v

    @field_validator("token_address")
    @classmethod
    def validate_token_address(cls, v: str | None) -> str | None:
        if v is None:
            return v
        v = v.strip().lower()
        if not v.startswith("0x") or len(v) != 42:
            raise ValueError("TOKEN_ADDRESS must be a 0x-prefixed 20-byte hex address")
        try:
            int(v[2:], 16)
        except ValueError as e:
            raise ValueError("TOKEN_ADDRESS must be hex") from e
        return v


class ScannerSettings(BaseSettings):
    """Log scanner tuning."""

    model_config = SettingsConfigDict(env_prefix="SCANNER_", extra="ignore")

    chunk_size: int = Field(
        default=4000,
        alias="SCANNER_CHUNK_SIZE",
        ge=1,
        le=100_000,
        description="Target number of blocks per eth_getLogs call",
    )
    min_chunk_size: int = Field(
        default=50,
        alias="SCANNER_MIN_CHUNK_SIZE",
        ge=1,
        description="Floor for the chunk size when shrinking after log-fetch failures",
    )
    confirmations: int = Field(
        default=5,
        alias="SCANNER_CONFIRMATIONS",
        ge=0,
        le=1000,
        description="Blocks behind the tip treated as safe from reorgs",
    )
    poll_interval_seconds: float = Field(
        default=15.0,
        alias="SCANNER_POLL_INTERVAL_SECONDS",
        ge=0,
        description="Sleep between polls once the live scanner is caught up",
    )
    lookback_blocks: int = Field(
        default=3,
        alias="SCANNER_LOOKBACK_BLOCKS",
        ge=0,
        le=1000,
        description="Blocks re-scanned before the cursor while tailing",
    )
    lock_name: str = Field(
        default="bsc-transfer-indexer:ingest",
        alias="SCANNER_LOCK_NAME",
        min_length=1,
        description="Advisory lock shared by the backfill and live scanners",
    )
    lock_retry_seconds: float = Field(
        default=15.0,
        alias="SCANNER_LOCK_RETRY_SECONDS",
        ge=0,
        description="Sleep between lock acquisition attempts",
    )
    lock_lease_seconds: float = Field(
        default=300.0,
        alias="SCANNER_LOCK_LEASE_SECONDS",
        gt=0,
        description="Lease duration for the lock on stores without advisory locks",
    )
    retry_delay_seconds: float = Field(
        default=3.0,
        alias="SCANNER_RETRY_DELAY_SECONDS",
        ge=0,
        description="Pause before retrying a failed chunk",
    )
    insert_batch_rows: int = Field(
        default=1000,
        alias="SCANNER_INSERT_BATCH_ROWS",
        ge=1,
        le=5000,
        description="Rows per INSERT statement inside a chunk transaction",
    )
    address_cache_size: int = Field(
        default=100_000,
        alias="SCANNER_ADDRESS_CACHE_SIZE",
        ge=1,
        description="Max cached address -> id entries per resolver",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from bsc_transfer_indexer.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.scanner.chunk_size)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    chain: ChainSettings = Field(
        default_factory=lambda: ChainSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    scanner: ScannerSettings = Field(
        default_factory=lambda: ScannerSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted."""
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "chain": {
                "rpc_url": self.chain.rpc_url,
                "token_address": self.chain.token_address or "(not set)",
                "start_block": str(self.chain.start_block) if self.chain.start_block is not None else "(not set)",
                "min_gap_ms": str(self.chain.min_gap_ms),
            },
            "scanner": {
                "chunk_size": str(self.scanner.chunk_size),
                "min_chunk_size": str(self.scanner.min_chunk_size),
                "confirmations": str(self.scanner.confirmations),
                "poll_interval_seconds": str(self.scanner.poll_interval_seconds),
                "lookback_blocks": str(self.scanner.lookback_blocks),
                "lock_name": self.scanner.lock_name,
            },
            "log_level": self.log_level,
        }

    def validate_requirements(self, *, command: Command) -> None:
        """Validate command-specific requirements.

        Missing chain configuration is fatal: the scanners must refuse to
        start rather than index the wrong contract or range.
        """
        if command in ("backfill", "live") and not self.chain.token_address:
            raise ValueError("TOKEN_ADDRESS (or BC400_TOKEN_ADDRESS) is required for scanning")
        if command == "backfill" and self.chain.start_block is None:
            raise ValueError("START_BLOCK (or BC400_START_BLOCK) is required for backfill")
        if self.scanner.min_chunk_size > self.scanner.chunk_size:
            raise ValueError("SCANNER_MIN_CHUNK_SIZE must not exceed SCANNER_CHUNK_SIZE")

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Raises:
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
