"""Query service: similarity search with a consistency status on every response.

Status precedence:
    DEGRADED  index core degraded, backfill failed or a partition failed
    PARTIAL   the backfill has not handed off to the stream consumers yet
    STALE     a partition is reconnecting, or a bounded-staleness wait timed out
    FRESH     otherwise
"""

from __future__ import annotations

import asyncio
import time
from typing import Any

from loguru import logger

from vectorsync.core.config.sync_config import QueryConfig
from vectorsync.core.exceptions import QueryTimeout
from vectorsync.core.types import (
    Metadata,
    ResultStatus,
    SearchQuery,
    SearchResponse,
    SearchResult,
)
from vectorsync.services.index_core import IndexHandle
from vectorsync.services.index_registry import IndexEntry, IndexRegistry


def _search_and_release(
    handle: IndexHandle, vector: Any, k: int, filter: Metadata | None
) -> list[SearchResult]:
    # The handle is released by the worker thread even if the caller timed out
    with handle:
        return handle.search(vector, k, filter)


class QueryService:
    """Executes searches against the live indexes of a registry."""

    def __init__(self, registry: IndexRegistry, config: QueryConfig | None = None):
        self.registry = registry
        self.config = config or QueryConfig()

    async def search(self, query: SearchQuery) -> SearchResponse:
        """Run one query.

        With ``max_lag`` set, waits up to ``staleness_timeout_seconds`` for
        every partition to come within ``max_lag`` positions of its head. If
        the wait expires the search still runs and the response is STALE.

        Raises:
            IndexNotFoundError: Unknown index name
            ValueError: k outside 1..max_k or a malformed query vector
            QueryTimeout: The search exceeded ``search_timeout_seconds``
        """
        if query.k < 1 or query.k > self.config.max_k:
            raise ValueError(f"k must be between 1 and {self.config.max_k}, got {query.k}")
        if query.max_lag is not None and query.max_lag < 0:
            raise ValueError(f"max_lag must be >= 0, got {query.max_lag}")

        entry = self.registry.get(query.index_name)

        caught_up = True
        if query.max_lag is not None and not entry.is_backfilling:
            caught_up = await entry.wait_for_lag(
                query.max_lag, self.config.staleness_timeout_seconds
            )

        start = time.perf_counter()
        handle = entry.core.snapshot()
        # Shielded so the worker still runs, and releases the handle, after a timeout
        search = asyncio.ensure_future(
            asyncio.to_thread(_search_and_release, handle, query.vector, query.k, query.filter)
        )
        try:
            results = await asyncio.wait_for(
                asyncio.shield(search), timeout=self.config.search_timeout_seconds
            )
        except asyncio.TimeoutError as e:
            search.add_done_callback(lambda f: f.cancelled() or f.exception())
            logger.warning(
                f"Search on '{query.index_name}' exceeded "
                f"{self.config.search_timeout_seconds}s"
            )
            raise QueryTimeout(
                f"Search on index '{query.index_name}' timed out after "
                f"{self.config.search_timeout_seconds}s",
                index=query.index_name,
            ) from e

        status = self._status(entry, caught_up)
        logger.debug(
            f"Search '{query.index_name}' k={query.k} -> {len(results)} results, "
            f"{status.value}, {(time.perf_counter() - start) * 1000:.1f}ms"
        )
        return SearchResponse(
            results=results,
            status=status,
            generation=handle.generation,
            lag=entry.lag,
        )

    @staticmethod
    def _status(entry: IndexEntry, caught_up: bool) -> ResultStatus:
        if entry.degraded_reason is not None:
            return ResultStatus.DEGRADED
        if entry.is_backfilling:
            return ResultStatus.PARTIAL
        if not caught_up or entry.reconnecting:
            return ResultStatus.STALE
        return ResultStatus.FRESH
