"""Stream, backfill and query configuration for vectorsync.

Controls buffering, reconnection backoff and consistency waits of the
synchronization pipeline.
"""

import os
from typing import Any

from pydantic import BaseModel, Field, model_validator


def _env_number(prefix: str, name: str, cast: type) -> Any | None:
    value = os.getenv(f"VECTORSYNC_{prefix}__{name.upper()}")
    if value is None or value == "":
        return None
    try:
        return cast(value)
    except ValueError:
        return None


class StreamConfig(BaseModel):
    """Per-partition stream consumer settings."""

    buffer_size: int = Field(
        default=1024,
        ge=1,
        description="Maximum in-flight change events per partition before pulling pauses",
    )
    apply_batch_size: int = Field(
        default=256,
        ge=1,
        description="Events applied per checkpoint commit",
    )
    poll_interval_seconds: float = Field(
        default=0.5,
        ge=0.0,
        description="Delay between polls once a partition is drained",
    )
    backoff_base_seconds: float = Field(
        default=0.2, ge=0.0, description="First reconnect delay (doubles per attempt)"
    )
    backoff_max_seconds: float = Field(
        default=30.0, ge=0.0, description="Upper bound on reconnect delay"
    )
    max_reconnect_attempts: int | None = Field(
        default=None,
        ge=1,
        description="Consecutive failed reconnects before the partition fails (None = retry forever)",
    )
    checkpoint_max_retries: int = Field(
        default=5,
        ge=0,
        description="Retries for a failed checkpoint commit before the consumer halts",
    )
    drain_timeout_seconds: float = Field(
        default=30.0, gt=0.0, description="Graceful shutdown budget per consumer"
    )

    @model_validator(mode="after")
    def validate_backoff(self) -> "StreamConfig":
        if self.backoff_max_seconds < self.backoff_base_seconds:
            raise ValueError("backoff_max_seconds must be >= backoff_base_seconds")
        return self

    def backoff_delay(self, attempt: int) -> float:
        """Exponential reconnect delay for the given (zero-based) attempt."""
        delay = self.backoff_base_seconds * (2 ** min(attempt, 30))
        return min(delay, self.backoff_max_seconds)

    @classmethod
    def load_from_env(cls) -> dict[str, Any]:
        config: dict[str, Any] = {}
        for name in ("buffer_size", "apply_batch_size", "max_reconnect_attempts",
                     "checkpoint_max_retries"):
            if (value := _env_number("STREAM", name, int)) is not None:
                config[name] = value
        for name in ("poll_interval_seconds", "backoff_base_seconds",
                     "backoff_max_seconds", "drain_timeout_seconds"):
            if (value := _env_number("STREAM", name, float)) is not None:
                config[name] = value
        return config


class BackfillConfig(BaseModel):
    """Full-table scan settings."""

    concurrency: int = Field(
        default=4, ge=1, le=256, description="Scan ranges processed in parallel"
    )
    max_page_retries: int = Field(
        default=8, ge=0, description="Retries for a failed page before the backfill fails"
    )
    backoff_base_seconds: float = Field(default=0.2, ge=0.0)
    backoff_max_seconds: float = Field(default=10.0, ge=0.0)

    def backoff_delay(self, attempt: int) -> float:
        delay = self.backoff_base_seconds * (2 ** min(attempt, 30))
        return min(delay, self.backoff_max_seconds)

    @classmethod
    def load_from_env(cls) -> dict[str, Any]:
        config: dict[str, Any] = {}
        for name in ("concurrency", "max_page_retries"):
            if (value := _env_number("BACKFILL", name, int)) is not None:
                config[name] = value
        for name in ("backoff_base_seconds", "backoff_max_seconds"):
            if (value := _env_number("BACKFILL", name, float)) is not None:
                config[name] = value
        return config


class QueryConfig(BaseModel):
    """Query service deadlines."""

    search_timeout_seconds: float = Field(
        default=5.0, gt=0.0, description="Deadline for a single search"
    )
    staleness_timeout_seconds: float = Field(
        default=2.0,
        ge=0.0,
        description="How long a bounded-staleness query waits for consumers to catch up",
    )
    max_k: int = Field(default=1000, ge=1, description="Largest accepted k")

    @classmethod
    def load_from_env(cls) -> dict[str, Any]:
        config: dict[str, Any] = {}
        for name in ("search_timeout_seconds", "staleness_timeout_seconds"):
            if (value := _env_number("QUERY", name, float)) is not None:
                config[name] = value
        if (value := _env_number("QUERY", "max_k", int)) is not None:
            config["max_k"] = value
        return config
