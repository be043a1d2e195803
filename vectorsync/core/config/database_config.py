"""Checkpoint database configuration for vectorsync.

Checkpoints live in a DuckDB file. An in-memory database (``:memory:``) is
accepted for tests and throwaway runs but loses progress on exit.
"""

import argparse
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator

from vectorsync.core.config.sync_config import _env_number


class DatabaseConfig(BaseModel):
    """Checkpoint store configuration.

    Values come from defaults, then VECTORSYNC_DATABASE__* variables, then
    the --db flag.
    """

    path: Path = Field(
        default=Path(".vectorsync") / "checkpoints.duckdb",
        description="Path to the checkpoint database file or :memory:",
    )

    execute_timeout_seconds: float = Field(
        default=30.0,
        gt=0.0,
        description="Timeout for a single checkpoint operation",
    )

    # A timed-out operation is retried; other errors propagate
    retry_on_timeout: bool = Field(
        default=True, description="Retry checkpoint operations that time out"
    )
    max_retries: int = Field(
        default=3, ge=0, description="Retries after the first timed-out attempt"
    )
    retry_backoff_seconds: float = Field(
        default=0.5,
        ge=0.0,
        description="Delay before the first retry, doubled per attempt",
    )

    @field_validator("path", mode="before")
    @classmethod
    def validate_path(cls, v: Any) -> Path:
        """Convert string paths to Path objects."""
        if v is None or (isinstance(v, str) and not v.strip()):
            raise ValueError("Checkpoint database path cannot be empty")
        return v if isinstance(v, Path) else Path(v)

    @property
    def is_memory(self) -> bool:
        return str(self.path) == ":memory:"

    def get_db_path(self) -> Path | str:
        """Get the database location, creating the parent directory if needed."""
        if self.is_memory:
            return ":memory:"
        self.path.parent.mkdir(parents=True, exist_ok=True)
        return self.path

    @classmethod
    def add_cli_arguments(cls, parser: argparse.ArgumentParser) -> None:
        """Add database-related CLI arguments."""
        parser.add_argument(
            "--db",
            "--checkpoint-db",
            dest="db",
            type=Path,
            help="Checkpoint database path (default: .vectorsync/checkpoints.duckdb)",
        )

    @classmethod
    def load_from_env(cls) -> dict[str, Any]:
        """Read VECTORSYNC_DATABASE__* variables; unparseable numbers are skipped."""
        config: dict[str, Any] = {}
        if db_path := os.getenv("VECTORSYNC_DATABASE__PATH"):
            config["path"] = Path(db_path)
        if flag := os.getenv("VECTORSYNC_DATABASE__RETRY_ON_TIMEOUT"):
            config["retry_on_timeout"] = flag.lower() in ("true", "1", "yes")
        if (value := _env_number("DATABASE", "max_retries", int)) is not None:
            config["max_retries"] = value
        for name in ("execute_timeout_seconds", "retry_backoff_seconds"):
            if (value := _env_number("DATABASE", name, float)) is not None:
                config[name] = value
        return config

    @classmethod
    def extract_cli_overrides(cls, args: Any) -> dict[str, Any]:
        db = getattr(args, "db", None)
        return {"path": db} if db else {}

    def __repr__(self) -> str:
        return f"DatabaseConfig(path={self.path}, max_retries={self.max_retries})"
