"""Configuration models for vectorsync."""

from vectorsync.core.config.config import Config
from vectorsync.core.config.database_config import DatabaseConfig
from vectorsync.core.config.index_config import IndexConfig
from vectorsync.core.config.logging_config import LoggingConfig, configure_logging
from vectorsync.core.config.sync_config import BackfillConfig, QueryConfig, StreamConfig

__all__ = [
    "BackfillConfig",
    "Config",
    "DatabaseConfig",
    "IndexConfig",
    "LoggingConfig",
    "QueryConfig",
    "StreamConfig",
    "configure_logging",
]
