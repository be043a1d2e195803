"""Index registry: owns the lifecycle of every live index.

The registry is created and torn down by its owner (normally the Engine);
there is no module-level instance. For each index it holds the IndexCore,
the backfill pipeline and one stream consumer per partition, and it is the
only place where they are started, handed off and stopped.

Lifecycle of an index:
    create_index -> CREATING -> BACKFILLING -> SERVING
    any fatal error (backfill failed, partition failed, core degraded) -> DEGRADED
    drop_index / shutdown -> STOPPED
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from loguru import logger

from vectorsync.core.config.config import Config
from vectorsync.core.exceptions import (
    IndexAlreadyExistsError,
    IndexNotFoundError,
    TransientStreamError,
)
from vectorsync.core.types import IndexDefinition
from vectorsync.interfaces.ann_index import AnnIndex
from vectorsync.interfaces.change_source import ChangeStream, RowScanSource
from vectorsync.interfaces.checkpoint_store import CheckpointStore
from vectorsync.providers.ann.usearch_index import UsearchAnnIndex
from vectorsync.services.backfill import BackfillPipeline, BackfillState
from vectorsync.services.change_mapper import ChangeMapper
from vectorsync.services.index_core import IndexCore
from vectorsync.services.stream_consumer import PartitionState, StreamConsumer

AnnFactory = Callable[[IndexDefinition], AnnIndex]


class IndexState(str, Enum):
    """Health of one registered index."""

    CREATING = "creating"
    BACKFILLING = "backfilling"
    SERVING = "serving"
    DEGRADED = "degraded"
    STOPPED = "stopped"


@dataclass
class IndexEntry:
    """Everything the registry owns for one index."""

    definition: IndexDefinition
    core: IndexCore
    mapper: ChangeMapper
    backfill: BackfillPipeline
    consumers: dict[str, StreamConsumer]
    created_at: float = field(default_factory=time.time)
    task: asyncio.Task | None = None
    maintenance: asyncio.Task | None = None
    stopped: bool = False

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def state(self) -> IndexState:
        if self.stopped:
            return IndexState.STOPPED
        if self.degraded_reason is not None:
            return IndexState.DEGRADED
        if self.backfill.state == BackfillState.NOT_STARTED:
            return IndexState.CREATING
        if self.backfill.state != BackfillState.COMPLETE:
            return IndexState.BACKFILLING
        return IndexState.SERVING

    @property
    def degraded_reason(self) -> str | None:
        if self.core.degraded:
            return f"index core degraded: {self.core.degraded_reason}"
        if self.backfill.state in (BackfillState.FAILED, BackfillState.CANCELLED):
            return f"backfill {self.backfill.state.value}: {self.backfill.error}"
        failed = self.failed_partitions
        if failed:
            return f"partitions failed: {', '.join(failed)}"
        return None

    @property
    def failed_partitions(self) -> list[str]:
        return [p for p, c in self.consumers.items() if c.state == PartitionState.FAILED]

    @property
    def is_backfilling(self) -> bool:
        return self.backfill.state not in (
            BackfillState.COMPLETE,
            BackfillState.FAILED,
            BackfillState.CANCELLED,
        )

    @property
    def reconnecting(self) -> bool:
        return any(c.state == PartitionState.RECONNECTING for c in self.consumers.values())

    @property
    def lag(self) -> int:
        """Largest partition lag, in stream positions."""
        return max((c.lag for c in self.consumers.values()), default=0)

    @property
    def replay_floor(self) -> int | None:
        """Lowest position any partition could still re-read, None if unknown."""
        if self.backfill.state != BackfillState.COMPLETE:
            return None
        floors = []
        for consumer in self.consumers.values():
            floor = consumer.committed_position
            if floor is None:
                floor = consumer.resume_from
            if floor is None:
                floor = self.backfill.stamp
            if floor is None:
                return None
            floors.append(floor)
        return min(floors, default=self.backfill.stamp)

    async def wait_for_lag(self, max_lag: int, timeout: float) -> bool:
        """Wait until every partition is within ``max_lag`` positions of its head.

        Returns:
            True if every partition got there before ``timeout``; False when
            it did not or when a partition head could not be read
        """
        deadline = time.monotonic() + timeout
        for consumer in self.consumers.values():
            try:
                head = await consumer.stream.head_position(
                    self.definition.table, consumer.partition
                )
            except TransientStreamError as e:
                logger.warning(
                    f"Index '{self.name}': head of {consumer.partition} unavailable ({e}), "
                    "answering as stale"
                )
                return False
            if head is None:
                continue
            remaining = max(0.0, deadline - time.monotonic())
            if not await consumer.wait_caught_up(head - max_lag, timeout=remaining):
                return False
        return True

    def status(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "lag": self.lag,
            "size": self.core.size(),
            "table": self.definition.table,
            "vector_column": self.definition.vector_column,
            "dimension": self.definition.dimension,
            "metric": self.definition.metric.value,
            "created_at": self.created_at,
            "degraded_reason": self.degraded_reason,
            "backfill": self.backfill.to_dict(),
            "partitions": {p: c.to_dict() for p, c in self.consumers.items()},
            "index": self.core.stats(),
        }


class IndexRegistry:
    """Lifecycle-scoped table of live indexes.

    Usage:
        registry = IndexRegistry(store, stream=table, scanner=table, config=config)
        entry = await registry.create_index(definition)
        ...
        await registry.drop_index(definition.name)
        await registry.shutdown()
    """

    def __init__(
        self,
        checkpoints: CheckpointStore,
        stream: ChangeStream,
        scanner: RowScanSource,
        config: Config | None = None,
        ann_factory: AnnFactory | None = None,
    ):
        self.checkpoints = checkpoints
        self.stream = stream
        self.scanner = scanner
        self.config = config or Config()
        self._ann_factory = ann_factory or UsearchAnnIndex.from_definition

        self._entries: dict[str, IndexEntry] = {}
        self._lock = asyncio.Lock()
        self._closed = False

    async def create_index(self, definition: IndexDefinition) -> IndexEntry:
        """Register an index and start its backfill-then-stream pipeline.

        Returns as soon as the pipeline is spawned; the entry reports
        BACKFILLING until every partition has caught up with the watermark.

        Raises:
            IndexAlreadyExistsError: If the name is taken
        """
        async with self._lock:
            if self._closed:
                raise RuntimeError("IndexRegistry is shut down")
            if definition.name in self._entries:
                raise IndexAlreadyExistsError(
                    f"Index '{definition.name}' already exists", index=definition.name
                )

            core = IndexCore(definition, self._ann_factory(definition), self.config.index)
            mapper = ChangeMapper(definition)
            partitions = await self.stream.list_partitions(definition.table)
            consumers = {
                partition: StreamConsumer(
                    definition,
                    partition,
                    core,
                    mapper,
                    self.stream,
                    self.checkpoints,
                    self.config.stream,
                )
                for partition in partitions
            }
            backfill = BackfillPipeline(
                definition, core, mapper, self.stream, self.scanner, self.config.backfill
            )
            entry = IndexEntry(
                definition=definition,
                core=core,
                mapper=mapper,
                backfill=backfill,
                consumers=consumers,
            )
            self._entries[definition.name] = entry
            entry.task = asyncio.create_task(
                self._run_pipeline(entry), name=f"index-{definition.name}"
            )

        logger.info(
            f"Created index '{definition.name}' on {definition.table}.{definition.vector_column} "
            f"({definition.dimension}d, {definition.metric.value}, {len(partitions)} partitions)"
        )
        return entry

    async def drop_index(self, name: str) -> dict[str, Any]:
        """Drain and release an index, then delete its checkpoints.

        Raises:
            IndexNotFoundError: If no such index is registered
        """
        async with self._lock:
            entry = self._entries.pop(name, None)
        if entry is None:
            raise IndexNotFoundError(f"Index '{name}' not found", index=name)

        await self._stop_entry(entry)
        removed = await self.checkpoints.delete_index(name)
        logger.info(f"Dropped index '{name}' ({removed} checkpoints deleted)")
        return {"name": name, "dropped": True, "checkpoints_deleted": removed}

    def get(self, name: str) -> IndexEntry:
        entry = self._entries.get(name)
        if entry is None:
            raise IndexNotFoundError(f"Index '{name}' not found", index=name)
        return entry

    def get_status(self, name: str) -> dict[str, Any]:
        return self.get(name).status()

    def list_indexes(self) -> list[str]:
        return sorted(self._entries)

    async def wait_until_serving(self, name: str, timeout: float | None = None) -> IndexState:
        """Wait for the index pipeline to finish its handoff; return the resulting state."""
        entry = self.get(name)
        if entry.task is not None and not entry.task.done():
            await asyncio.wait({entry.task}, timeout=timeout)
        return entry.state

    async def shutdown(self) -> None:
        """Drain every index; checkpoints are kept for the next start."""
        async with self._lock:
            self._closed = True
            entries = list(self._entries.values())
            self._entries.clear()
        await asyncio.gather(*(self._stop_entry(e) for e in entries))
        logger.info(f"Index registry shut down ({len(entries)} indexes drained)")

    async def _run_pipeline(self, entry: IndexEntry) -> None:
        for consumer in entry.consumers.values():
            consumer.begin_backfill()

        try:
            watermark = await entry.backfill.run()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Backfill logged and recorded the failure; the entry reports DEGRADED
            logger.error(f"Index '{entry.name}' degraded, backfill failed: {e}")
            return

        for partition, consumer in entry.consumers.items():
            consumer.start(watermark.get(partition))

        if await entry.backfill.complete_handoff(entry.consumers.values()):
            logger.info(f"Index '{entry.name}' serving ({entry.core.size()} vectors)")
            entry.maintenance = asyncio.create_task(
                self._prune_tombstones(entry), name=f"index-{entry.name}-maintenance"
            )
        else:
            logger.error(f"Index '{entry.name}' degraded: {entry.degraded_reason}")

    async def _prune_tombstones(self, entry: IndexEntry) -> None:
        interval = self.config.index.tombstone_prune_interval_seconds
        while not entry.stopped:
            await asyncio.sleep(interval)
            floor = entry.replay_floor
            if floor is None:
                continue
            await asyncio.to_thread(entry.core.prune_tombstones, floor)

    async def _stop_entry(self, entry: IndexEntry) -> None:
        for task in (entry.task, entry.maintenance):
            if task is not None and not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        await asyncio.gather(*(c.stop(drain=True) for c in entry.consumers.values()))
        entry.stopped = True
        logger.debug(f"Index '{entry.name}' stopped at generation {entry.core.generation}")
