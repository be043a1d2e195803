"""Aggregate configuration for vectorsync.

Precedence, lowest first: field defaults, environment variables
(``VECTORSYNC_<SECTION>__<KEY>``), explicit overrides (CLI arguments or
keyword arguments).
"""

from __future__ import annotations

import argparse
from typing import Any

from pydantic import BaseModel, Field

from vectorsync.core.config.database_config import DatabaseConfig
from vectorsync.core.config.index_config import IndexConfig
from vectorsync.core.config.logging_config import LoggingConfig
from vectorsync.core.config.sync_config import BackfillConfig, QueryConfig, StreamConfig


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class Config(BaseModel):
    """Complete process configuration."""

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    index: IndexConfig = Field(default_factory=IndexConfig)
    stream: StreamConfig = Field(default_factory=StreamConfig)
    backfill: BackfillConfig = Field(default_factory=BackfillConfig)
    query: QueryConfig = Field(default_factory=QueryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def load_from_env(cls) -> dict[str, Any]:
        """Collect every section's environment overrides."""
        sections = {
            "database": DatabaseConfig.load_from_env(),
            "index": IndexConfig.load_from_env(),
            "stream": StreamConfig.load_from_env(),
            "backfill": BackfillConfig.load_from_env(),
            "query": QueryConfig.load_from_env(),
            "logging": LoggingConfig.load_from_env(),
        }
        return {name: values for name, values in sections.items() if values}

    @classmethod
    def load(
        cls,
        args: argparse.Namespace | None = None,
        overrides: dict[str, Any] | None = None,
    ) -> Config:
        """Build a validated config from defaults, environment and overrides."""
        data = cls.load_from_env()
        if args is not None:
            cli: dict[str, Any] = {}
            if db := DatabaseConfig.extract_cli_overrides(args):
                cli["database"] = db
            if log := LoggingConfig.extract_cli_overrides(args):
                cli["logging"] = log
            data = _deep_merge(data, cli)
        if overrides:
            data = _deep_merge(data, overrides)
        return cls.model_validate(data)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")
