"""Top-level coordinator wiring configuration, checkpoints, registry and queries.

The Engine is the single owner of process-wide state: it opens the
checkpoint store, holds the IndexRegistry for its lifetime and tears both
down on exit.

Usage:
    async with Engine(stream=table, scanner=table) as engine:
        await engine.create_index("shop.items", "embedding", dimension=4)
        response = await engine.search("shop_items_embedding_idx", [0, 0, 0, 1], k=5)
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from loguru import logger
from pydantic import ValidationError

from vectorsync.core.config.config import Config
from vectorsync.core.exceptions import ConfigurationError
from vectorsync.core.types import (
    IndexDefinition,
    Metadata,
    Metric,
    SearchQuery,
    SearchResponse,
)
from vectorsync.interfaces.change_source import ChangeStream, RowScanSource
from vectorsync.interfaces.checkpoint_store import CheckpointStore
from vectorsync.providers.database.duckdb_checkpoint_store import DuckDBCheckpointStore
from vectorsync.services.index_registry import AnnFactory, IndexRegistry, IndexState
from vectorsync.services.query_service import QueryService

# ANN parameters accepted in create_index(params=...)
_ANN_PARAMS = ("connectivity", "expansion_add", "expansion_search", "quantization")


class Engine:
    """Administrative and query surface over every live index."""

    def __init__(
        self,
        stream: ChangeStream,
        scanner: RowScanSource,
        config: Config | None = None,
        checkpoints: CheckpointStore | None = None,
        ann_factory: AnnFactory | None = None,
    ):
        self.config = config or Config.load()
        self.stream = stream
        self.scanner = scanner
        self._checkpoints = checkpoints
        self._owns_checkpoints = checkpoints is None
        self._ann_factory = ann_factory
        self._registry: IndexRegistry | None = None
        self._query: QueryService | None = None

    @property
    def registry(self) -> IndexRegistry:
        if self._registry is None:
            raise RuntimeError("Engine is not started")
        return self._registry

    @property
    def checkpoints(self) -> CheckpointStore:
        if self._checkpoints is None:
            raise RuntimeError("Engine is not started")
        return self._checkpoints

    async def start(self) -> None:
        if self._registry is not None:
            return
        if self._checkpoints is None:
            self._checkpoints = DuckDBCheckpointStore(self.config.database)
        self._registry = IndexRegistry(
            self._checkpoints,
            self.stream,
            self.scanner,
            self.config,
            ann_factory=self._ann_factory,
        )
        self._query = QueryService(self._registry, self.config.query)
        logger.info("vectorsync engine started")

    async def close(self) -> None:
        """Drain every index, then close the checkpoint store if the engine opened it."""
        if self._registry is None:
            return
        try:
            await self._registry.shutdown()
        finally:
            if self._owns_checkpoints and self._checkpoints is not None:
                self._checkpoints.close()
                self._checkpoints = None
            self._registry = None
            self._query = None
            logger.info("vectorsync engine stopped")

    async def __aenter__(self) -> Engine:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # Administrative surface

    async def create_index(
        self,
        table: str,
        vector_column: str,
        dimension: int,
        metric: Metric | str = Metric.COS,
        params: Mapping[str, Any] | None = None,
        name: str | None = None,
        primary_key_columns: Sequence[str] = ("id",),
        metadata_columns: Sequence[str] = (),
    ) -> dict[str, Any]:
        """Define an index and start populating it.

        Args:
            table: Source table identifier
            vector_column: Column holding the embedding
            dimension: Vector dimensionality
            metric: cos, l2sq or ip
            params: ANN parameters (connectivity, expansion_add,
                expansion_search, quantization); missing ones come from config
            name: Index name; derived from table and column when omitted

        Returns:
            Status of the new index

        Raises:
            ConfigurationError: Invalid definition or unknown ANN parameter
            IndexAlreadyExistsError: Name already in use
        """
        params = dict(params or {})
        unknown = sorted(set(params) - set(_ANN_PARAMS))
        if unknown:
            raise ConfigurationError(f"Unknown index parameters: {unknown}")
        defaults = {p: getattr(self.config.index, p) for p in _ANN_PARAMS}

        try:
            definition = IndexDefinition(
                name=name or IndexDefinition.default_name(table, vector_column),
                table=table,
                vector_column=vector_column,
                dimension=dimension,
                metric=metric,
                primary_key_columns=tuple(primary_key_columns),
                metadata_columns=tuple(metadata_columns),
                **{**defaults, **params},
            )
        except ValidationError as e:
            raise ConfigurationError(f"Invalid index definition: {e}") from e

        entry = await self.registry.create_index(definition)
        return entry.status()

    async def drop_index(self, name: str) -> dict[str, Any]:
        return await self.registry.drop_index(name)

    async def get_index_status(self, name: str) -> dict[str, Any]:
        """Return ``{state, lag, size, ...}`` of one index."""
        return self.registry.get_status(name)

    async def list_indexes(self) -> list[dict[str, Any]]:
        return [
            {"name": name, "state": self.registry.get(name).state.value}
            for name in self.registry.list_indexes()
        ]

    async def wait_until_serving(self, name: str, timeout: float | None = None) -> IndexState:
        return await self.registry.wait_until_serving(name, timeout)

    # Query surface

    async def search(
        self,
        index_name: str,
        vector: Any,
        k: int = 10,
        filter: Metadata | None = None,
        max_lag: int | None = None,
    ) -> SearchResponse:
        if self._query is None:
            raise RuntimeError("Engine is not started")
        return await self._query.search(
            SearchQuery(
                index_name=index_name,
                vector=vector,
                k=k,
                filter=filter,
                max_lag=max_lag,
            )
        )
