"""USearch adapter implementing the AnnIndex capability.

Encapsulates USearch HNSW index creation, insertion, removal and search, and
translates native failures into IndexCapacityOrCorruptionError.
"""

import math
from typing import Any

import numpy as np
from loguru import logger
from usearch.index import Index, MetricKind, ScalarKind
from usearch.index import search as brute_force_search

from vectorsync.core.config.index_config import IndexConfig
from vectorsync.core.exceptions import IndexCapacityOrCorruptionError
from vectorsync.core.types import IndexDefinition, Metric

_METRICS: dict[Metric, MetricKind] = {
    Metric.COS: MetricKind.Cos,
    Metric.L2SQ: MetricKind.L2sq,
    Metric.IP: MetricKind.IP,
}

_SCALARS: dict[str, ScalarKind] = {
    "i8": ScalarKind.I8,
    "f16": ScalarKind.F16,
    "f32": ScalarKind.F32,
    "f64": ScalarKind.F64,
}


def create(
    dims: int,
    metric: Metric,
    quantization: str,
    connectivity: int,
    expansion_add: int,
    expansion_search: int,
) -> Index:
    """Build an empty HNSW graph for ``dims``-dimensional vectors.

    ``quantization`` picks the stored scalar type (one of i8, f16, f32, f64).
    """
    scalar = _SCALARS.get(quantization)
    if scalar is None:
        raise ValueError(
            f"Unknown quantization {quantization!r}, expected one of {sorted(_SCALARS)}"
        )
    return Index(
        ndim=dims,
        metric=_METRICS[metric],
        dtype=scalar,
        connectivity=connectivity,
        expansion_add=expansion_add,
        expansion_search=expansion_search,
    )


def _matches_to_pairs(keys: Any, distances: Any) -> list[tuple[int, float]]:
    pairs = []
    for key, distance in zip(keys, distances):
        distance = float(distance)
        if math.isnan(distance):
            continue
        pairs.append((int(key), distance))
    return pairs


class UsearchAnnIndex:
    """AnnIndex backed by an in-memory USearch HNSW graph.

    Not thread-safe on its own; IndexCore guards every call. Graph parameters
    not passed explicitly come from IndexConfig defaults.
    """

    def __init__(self, dims: int, metric: Metric = Metric.COS, **params: Any):
        settings = IndexConfig(**params)
        self._dims = dims
        self._metric = metric
        self._index = create(
            dims,
            metric,
            settings.quantization,
            settings.connectivity,
            settings.expansion_add,
            settings.expansion_search,
        )

    @classmethod
    def from_definition(cls, definition: IndexDefinition) -> "UsearchAnnIndex":
        return cls(
            definition.dimension,
            metric=definition.metric,
            quantization=definition.quantization,
            connectivity=definition.connectivity,
            expansion_add=definition.expansion_add,
            expansion_search=definition.expansion_search,
        )

    @property
    def ndim(self) -> int:
        return self._dims

    def insert(self, label: int, vector: np.ndarray) -> None:
        try:
            self._index.add(label, vector)
        except (RuntimeError, ValueError, MemoryError) as e:
            logger.error(f"USearch insert failed for label {label}: {e}")
            raise IndexCapacityOrCorruptionError(
                f"USearch rejected insert of label {label}: {e}", label=label
            ) from e

    def remove(self, label: int) -> None:
        try:
            self._index.remove(label)
        except (RuntimeError, ValueError) as e:
            logger.error(f"USearch remove failed for label {label}: {e}")
            raise IndexCapacityOrCorruptionError(
                f"USearch rejected removal of label {label}: {e}", label=label
            ) from e

    def query(self, vector: np.ndarray, count: int) -> list[tuple[int, float]]:
        if count <= 0 or len(self._index) == 0:
            return []
        try:
            matches = self._index.search(vector, count)
        except (RuntimeError, ValueError) as e:
            logger.error(f"USearch search failed: {e}")
            raise IndexCapacityOrCorruptionError(f"USearch search failed: {e}") from e
        return _matches_to_pairs(matches.keys, matches.distances)

    def exact_query(
        self, vectors: np.ndarray, vector: np.ndarray, count: int
    ) -> list[tuple[int, float]]:
        """Brute-force ``count`` nearest rows of ``vectors``; labels are row numbers."""
        if count <= 0 or len(vectors) == 0:
            return []
        try:
            matches = brute_force_search(
                vectors, vector, min(count, len(vectors)), _METRICS[self._metric], exact=True
            )
        except (RuntimeError, ValueError) as e:
            logger.error(f"USearch exact search failed: {e}")
            raise IndexCapacityOrCorruptionError(f"USearch exact search failed: {e}") from e
        return _matches_to_pairs(matches.keys, matches.distances)

    def size(self) -> int:
        return len(self._index)

    def score(self, distance: float) -> float:
        if self._metric is Metric.L2SQ:
            return 1.0 / (1.0 + distance)
        # Cos and IP distances are 1 - similarity
        return 1.0 - distance
