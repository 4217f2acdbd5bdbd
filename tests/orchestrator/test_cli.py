"""
Tests for the command-line interface.
"""

import pytest

from core.config import AlertingConfig
from orchestrator.cli import async_main, create_parser, main, validate_args


class TestParser:
    """Tests for argument parsing and validation."""

    def test_backfill_arguments(self):
        args = create_parser().parse_args(["backfill", "--agent-id", "a-1", "--days", "7"])

        assert args.command == "backfill"
        assert args.agent_id == "a-1"
        assert args.days == 7
        assert validate_args(args) == []

    def test_global_options(self):
        args = create_parser().parse_args(["--log-level", "DEBUG", "--env-file", "x.env", "sweep"])

        assert args.log_level == "DEBUG"
        assert args.env_file == "x.env"

    def test_command_is_required(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args([])

    @pytest.mark.parametrize("argv, message", [
        (["backfill", "--days", "0"], "--days must be at least 1"),
        (["cleanup", "--days", "-1"], "--days must not be negative"),
    ])
    def test_invalid_days(self, argv, message):
        assert validate_args(create_parser().parse_args(argv)) == [message]

    def test_main_rejects_invalid_args(self, capsys):
        assert main(["backfill", "--days", "0"]) == 1
        assert "--days must be at least 1" in capsys.readouterr().err


class TestCommands:
    """Commands against an in-memory database."""

    @pytest.mark.asyncio
    async def test_init_db(self):
        args = create_parser().parse_args(["init-db"])
        assert await async_main(args, AlertingConfig.for_testing()) == 0

    @pytest.mark.asyncio
    async def test_store_failure_exits_nonzero(self):
        """A fresh in-memory database has no tables until init-db or run."""
        args = create_parser().parse_args(["backfill", "--agent-id", "missing"])
        assert await async_main(args, AlertingConfig.for_testing()) == 1

    def test_main_invalid_environment(self, monkeypatch, capsys):
        monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
        monkeypatch.setenv("CANDLE_RETENTION_DAYS", "0")

        assert main(["sweep"]) == 1
        assert "CANDLE_RETENTION_DAYS" in capsys.readouterr().err

