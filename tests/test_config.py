"""Tests for configuration loading, precedence and logging setup."""

import argparse
from pathlib import Path

import pytest
from loguru import logger
from pydantic import ValidationError

from vectorsync.core.config import (
    BackfillConfig,
    Config,
    DatabaseConfig,
    LoggingConfig,
    StreamConfig,
    configure_logging,
)
from vectorsync.core.config.index_config import IndexConfig
from vectorsync.core.config.logging_config import FileLoggingConfig


class TestDefaults:
    def test_config_defaults(self, clean_environment):
        config = Config.load()
        assert config.stream.buffer_size == 1024
        assert config.stream.max_reconnect_attempts is None
        assert config.backfill.concurrency == 4
        assert config.query.max_k == 1000
        assert config.database.path == Path(".vectorsync") / "checkpoints.duckdb"
        assert config.logging.console_level == "WARNING"
        assert config.index.max_vectors is None

    def test_to_dict_is_json_friendly(self, clean_environment):
        data = Config.load().to_dict()
        assert data["database"]["path"].endswith("checkpoints.duckdb")
        assert set(data) == {"database", "index", "stream", "backfill", "query", "logging"}


class TestPrecedence:
    """Defaults < environment < explicit overrides."""

    def test_environment_overrides_defaults(self, clean_environment, monkeypatch):
        monkeypatch.setenv("VECTORSYNC_STREAM__BUFFER_SIZE", "64")
        monkeypatch.setenv("VECTORSYNC_STREAM__POLL_INTERVAL_SECONDS", "0.25")
        monkeypatch.setenv("VECTORSYNC_BACKFILL__CONCURRENCY", "2")
        monkeypatch.setenv("VECTORSYNC_QUERY__MAX_K", "50")
        monkeypatch.setenv("VECTORSYNC_INDEX__QUANTIZATION", "F16")
        monkeypatch.setenv("VECTORSYNC_DATABASE__RETRY_ON_TIMEOUT", "no")

        config = Config.load()
        assert config.stream.buffer_size == 64
        assert config.stream.poll_interval_seconds == 0.25
        assert config.backfill.concurrency == 2
        assert config.query.max_k == 50
        assert config.index.quantization == "f16"
        assert config.database.retry_on_timeout is False

    def test_unparseable_environment_values_are_ignored(self, clean_environment, monkeypatch):
        monkeypatch.setenv("VECTORSYNC_STREAM__BUFFER_SIZE", "lots")
        monkeypatch.setenv("VECTORSYNC_INDEX__MAX_VECTORS", "many")
        config = Config.load()
        assert config.stream.buffer_size == 1024
        assert config.index.max_vectors is None

    def test_explicit_overrides_beat_environment(self, clean_environment, monkeypatch):
        monkeypatch.setenv("VECTORSYNC_STREAM__BUFFER_SIZE", "64")
        monkeypatch.setenv("VECTORSYNC_STREAM__APPLY_BATCH_SIZE", "8")
        config = Config.load(overrides={"stream": {"buffer_size": 16}})
        assert config.stream.buffer_size == 16
        # Sibling keys from the environment survive the merge
        assert config.stream.apply_batch_size == 8

    def test_cli_arguments(self, clean_environment, monkeypatch, tmp_path):
        monkeypatch.setenv("VECTORSYNC_DATABASE__PATH", str(tmp_path / "env.duckdb"))
        args = argparse.Namespace(
            db=tmp_path / "cli.duckdb", verbose=True, log_file=None, log_level=None
        )
        config = Config.load(args)
        assert config.database.path == tmp_path / "cli.duckdb"
        assert config.logging.console_level == "DEBUG"

    def test_invalid_values_rejected(self, clean_environment, monkeypatch):
        monkeypatch.setenv("VECTORSYNC_STREAM__BUFFER_SIZE", "0")
        with pytest.raises(ValidationError):
            Config.load()


class TestStreamConfig:
    def test_backoff_doubles_up_to_cap(self):
        config = StreamConfig(backoff_base_seconds=0.1, backoff_max_seconds=0.5)
        assert [config.backoff_delay(i) for i in range(5)] == pytest.approx(
            [0.1, 0.2, 0.4, 0.5, 0.5]
        )
        assert config.backoff_delay(10_000) == 0.5

    def test_backoff_bounds_validated(self):
        with pytest.raises(ValidationError, match="backoff_max_seconds"):
            StreamConfig(backoff_base_seconds=2.0, backoff_max_seconds=1.0)

    def test_backfill_backoff(self):
        config = BackfillConfig(backoff_base_seconds=1.0, backoff_max_seconds=3.0)
        assert config.backoff_delay(0) == 1.0
        assert config.backoff_delay(3) == 3.0


class TestDatabaseConfig:
    def test_string_path_converted(self):
        assert DatabaseConfig(path="a/b.duckdb").path == Path("a/b.duckdb")

    def test_empty_path_rejected(self):
        with pytest.raises(ValidationError):
            DatabaseConfig(path="  ")

    def test_memory_path(self):
        config = DatabaseConfig(path=":memory:")
        assert config.is_memory
        assert config.get_db_path() == ":memory:"

    def test_parent_directory_created(self, tmp_path):
        config = DatabaseConfig(path=tmp_path / "nested" / "dir" / "c.duckdb")
        config.get_db_path()
        assert (tmp_path / "nested" / "dir").is_dir()


class TestIndexConfig:
    def test_prune_interval_from_env(self, monkeypatch):
        monkeypatch.setenv("VECTORSYNC_INDEX__TOMBSTONE_PRUNE_INTERVAL_SECONDS", "2.5")
        monkeypatch.setenv("VECTORSYNC_INDEX__MAX_VECTORS", "100")
        assert IndexConfig.load_from_env() == {
            "tombstone_prune_interval_seconds": 2.5,
            "max_vectors": 100,
        }

    def test_prune_interval_must_be_positive(self):
        with pytest.raises(ValidationError):
            IndexConfig(tombstone_prune_interval_seconds=0)


class TestLogging:
    def test_invalid_levels(self):
        with pytest.raises(ValueError, match="Invalid log level"):
            FileLoggingConfig(level="LOUD")
        with pytest.raises(ValueError, match="Invalid console log level"):
            LoggingConfig(console_level="LOUD")

    def test_levels_normalized(self):
        assert LoggingConfig(console_level="debug").console_level == "DEBUG"

    def test_cli_overrides(self):
        args = argparse.Namespace(verbose=False, log_file="out/v.log", log_level="debug")
        assert LoggingConfig.extract_cli_overrides(args) == {
            "file": {"enabled": True, "path": "out/v.log", "level": "debug"}
        }
        assert LoggingConfig.extract_cli_overrides(argparse.Namespace()) is None

    def test_configure_logging_writes_file(self, tmp_path):
        path = tmp_path / "logs" / "vectorsync.log"
        config = LoggingConfig(
            console_level="ERROR",
            file=FileLoggingConfig(enabled=True, path=str(path), level="INFO"),
        )
        handler_ids = configure_logging(config)
        try:
            assert len(handler_ids) == 2
            logger.info("checkpoint advanced")
            logger.complete()
        finally:
            for handler_id in handler_ids:
                logger.remove(handler_id)
        assert "checkpoint advanced" in path.read_text()
