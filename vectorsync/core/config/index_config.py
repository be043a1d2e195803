"""HNSW index defaults and in-memory bookkeeping limits.

Values here fill in ANN construction parameters that an index definition
does not set explicitly.
"""

import os
from typing import Any, Literal

from pydantic import BaseModel, Field


class IndexConfig(BaseModel):
    """Default HNSW construction parameters and safety limits."""

    connectivity: int = Field(
        default=16, ge=2, le=512, description="Maximum edges per node (HNSW M)"
    )
    expansion_add: int = Field(
        default=128, ge=1, description="Candidate list size during insertion"
    )
    expansion_search: int = Field(
        default=64, ge=1, description="Candidate list size during search"
    )
    quantization: Literal["i8", "f16", "f32", "f64"] = Field(
        default="f32", description="Storage type for vectors"
    )
    key_lock_stripes: int = Field(
        default=64,
        ge=1,
        le=4096,
        description="Number of lock stripes serializing same-key mutations",
    )
    max_vectors: int | None = Field(
        default=None,
        ge=1,
        description="Refuse inserts beyond this many live vectors (None = unbounded)",
    )
    tombstone_prune_interval_seconds: float = Field(
        default=60.0,
        gt=0,
        description="How often a serving index forgets tombstones no replay can reach",
    )

    @classmethod
    def load_from_env(cls) -> dict[str, Any]:
        """Load index defaults from environment variables."""
        config: dict[str, Any] = {}
        for name in ("connectivity", "expansion_add", "expansion_search",
                     "key_lock_stripes", "max_vectors"):
            if value := os.getenv(f"VECTORSYNC_INDEX__{name.upper()}"):
                try:
                    config[name] = int(value)
                except ValueError:
                    pass
        if value := os.getenv("VECTORSYNC_INDEX__TOMBSTONE_PRUNE_INTERVAL_SECONDS"):
            try:
                config["tombstone_prune_interval_seconds"] = float(value)
            except ValueError:
                pass
        if quantization := os.getenv("VECTORSYNC_INDEX__QUANTIZATION"):
            config["quantization"] = quantization.lower()
        return config
