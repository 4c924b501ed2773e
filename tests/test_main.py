"""Tests for the command line entry point."""

import json

import pytest

from bsc_transfer_indexer.__main__ import EXIT_CONFIG, EXIT_OK, build_parser, main
from bsc_transfer_indexer.config import clear_settings_cache

_ENV_VARS = (
    "DATABASE_URL",
    "REDIS_URL",
    "TOKEN_ADDRESS",
    "BC400_TOKEN_ADDRESS",
    "START_BLOCK",
    "BC400_START_BLOCK",
    "SCANNER_CHUNK_SIZE",
    "SCANNER_MIN_CHUNK_SIZE",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def cli_env(monkeypatch: pytest.MonkeyPatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}")
    clear_settings_cache()
    yield tmp_path
    clear_settings_cache()


def test_parser_requires_command() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_init_db_then_status(cli_env, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["init-db"]) == EXIT_OK
    assert (cli_env / "cli.db").exists()
    capsys.readouterr()

    assert main(["status"]) == EXIT_OK

    report = json.loads(capsys.readouterr().out)
    assert report["transfer_count"] == 0
    assert report["last_indexed_block"] is None


def test_rebuild_holders_on_empty_store() -> None:
    assert main(["init-db"]) == EXIT_OK
    assert main(["rebuild-holders"]) == EXIT_OK


def test_scanner_without_token_is_config_error() -> None:
    assert main(["live"]) == EXIT_CONFIG


def test_backfill_without_start_block_is_config_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TOKEN_ADDRESS", "0x" + "ab" * 20)
    assert main(["backfill"]) == EXIT_CONFIG


def test_invalid_database_url_is_config_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATABASE_URL", "mysql://localhost/db")
    assert main(["status"]) == EXIT_CONFIG


def test_chunk_bounds_are_checked(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SCANNER_CHUNK_SIZE", "10")
    monkeypatch.setenv("SCANNER_MIN_CHUNK_SIZE", "20")
    assert main(["status"]) == EXIT_CONFIG
