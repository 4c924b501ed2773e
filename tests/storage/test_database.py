"""Tests for engine and schema management."""

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from bsc_transfer_indexer.storage.database import DatabaseManager, to_async_url


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("postgresql://u:p@db:5432/bsc", "postgresql+asyncpg://u:p@db:5432/bsc"),
        ("postgresql+asyncpg://u:p@db/bsc", "postgresql+asyncpg://u:p@db/bsc"),
        ("sqlite+aiosqlite:///local.db", "sqlite+aiosqlite:///local.db"),
    ],
)
def test_to_async_url(url: str, expected: str) -> None:
    assert to_async_url(url) == expected


class TestDatabaseManager:
    @pytest.mark.asyncio
    async def test_init_schema_is_idempotent(self, tmp_path) -> None:
        db = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'schema.db'}")
        try:
            await db.init_schema_async()
            await db.init_schema_async()

            async with db.session_factory() as session:
                result = await session.execute(
                    text("SELECT name FROM sqlite_master WHERE type = 'table' ORDER BY name")
                )
                tables = {row[0] for row in result}
        finally:
            await db.dispose_async()

        assert {"addresses", "transfers", "meta", "holder_balances", "scanner_locks"} <= tables

    @pytest.mark.asyncio
    async def test_sqlite_enforces_foreign_keys(self, tmp_path) -> None:
        db = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'fk.db'}")
        try:
            await db.init_schema_async()
            with pytest.raises(IntegrityError):
                async with db.session_factory() as session, session.begin():
                    await session.execute(
                        text(
                            "INSERT INTO transfers (tx_hash, log_index, block_number, block_time,"
                            " from_address_id, to_address_id, raw_amount, created_at)"
                            " VALUES ('0xdead', 0, 1, '2024-01-01 00:00:00', 998, 999, '1', '2024-01-01 00:00:00')"
                        )
                    )
        finally:
            await db.dispose_async()

    @pytest.mark.asyncio
    async def test_dispose_without_engine(self) -> None:
        await DatabaseManager("sqlite+aiosqlite:///unused.db").dispose_async()
