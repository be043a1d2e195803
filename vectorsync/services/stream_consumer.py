"""Per-partition stream consumer: change stream -> mapper -> index core -> checkpoint.

# FILE_CONTEXT: One consumer per (index, stream partition)
# CRITICAL: Checkpoints are committed only after the events they cover are applied
# CONSTRAINT: In-flight events are bounded by StreamConfig.buffer_size

State machine:
    DISCONNECTED -> BACKFILLING -> STREAMING <-> RECONNECTING
    STREAMING/RECONNECTING -> FAILED (schema mismatch, exhausted retries,
    degraded index) or STOPPED (graceful shutdown)

A reader task polls the change stream and maps records into a bounded queue;
when the queue is full the reader stops pulling. An applier task drains the
queue in batches, applies each batch to the index core in a worker thread and
then commits the position of the batch's last record. A crash between apply
and commit replays the batch, which the core ignores by version.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any

from loguru import logger

from vectorsync.core.config.sync_config import StreamConfig
from vectorsync.core.exceptions import (
    CheckpointPersistError,
    ErrorClassification,
    ErrorClassifier,
    SchemaMismatchError,
    TransientStreamError,
)
from vectorsync.core.types import ChangeEvent, IndexDefinition, Position
from vectorsync.interfaces.change_source import ChangeStream
from vectorsync.interfaces.checkpoint_store import CheckpointStore
from vectorsync.services.change_mapper import ChangeMapper
from vectorsync.services.index_core import IndexCore


class PartitionState(str, Enum):
    """State of one partition's consumer."""

    DISCONNECTED = "disconnected"
    BACKFILLING = "backfilling"
    STREAMING = "streaming"
    RECONNECTING = "reconnecting"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass(frozen=True)
class _Item:
    """A consumed stream position and the mutation it maps to, if any."""

    position: Position
    event: ChangeEvent | None


_STOP = object()


class StreamConsumer:
    """Applies one stream partition of a table to an IndexCore.

    Usage:
        consumer = StreamConsumer(definition, "stream-0", core, mapper, stream, store)
        consumer.start(watermark=42)
        await consumer.wait_caught_up()
        await consumer.stop()
    """

    def __init__(
        self,
        definition: IndexDefinition,
        partition: str,
        core: IndexCore,
        mapper: ChangeMapper,
        stream: ChangeStream,
        checkpoints: CheckpointStore,
        config: StreamConfig | None = None,
    ):
        self.definition = definition
        self.partition = partition
        self.core = core
        self.mapper = mapper
        self.stream = stream
        self.checkpoints = checkpoints
        self.config = config or StreamConfig()

        self.state = PartitionState.DISCONNECTED
        self.error: str | None = None
        self.errors = ErrorClassifier()

        # Positions
        self.resume_from: Position | None = None
        self.last_read_position: Position | None = None
        self.applied_position: Position | None = None
        self.committed_position: Position | None = None
        self.head_position: Position | None = None

        # Counters
        self.events_applied = 0
        self.events_ignored = 0
        self.reconnects = 0
        self.started_at: float | None = None

        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=self.config.buffer_size)
        self._task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()
        self._fatal: BaseException | None = None
        self._changed = asyncio.Event()

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def buffered(self) -> int:
        """Events read from the stream but not yet applied."""
        return self._queue.qsize()

    @property
    def lag(self) -> int:
        """Distance in positions between the partition head and the applied position."""
        if self.head_position is None:
            return 0
        if self.applied_position is not None:
            baseline = self.applied_position
        elif self.resume_from is not None:
            baseline = self.resume_from
        else:
            baseline = 0
        return max(0, self.head_position - baseline)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def begin_backfill(self) -> None:
        """Park the partition while the backfill owns the index."""
        if self.state == PartitionState.DISCONNECTED:
            self._set_state(PartitionState.BACKFILLING)

    def start(self, watermark: Position | None = None) -> asyncio.Task:
        """Start streaming from max(checkpoint, watermark).

        Args:
            watermark: Head position recorded by the backfill for this partition;
                None if there was no backfill or the partition was empty
        """
        if self.running:
            raise RuntimeError(f"Consumer {self.name}/{self.partition} is already running")
        self._stop_event.clear()
        # Unapplied reads of an earlier run are re-read from the checkpoint
        self._queue = asyncio.Queue(maxsize=self.config.buffer_size)
        self.last_read_position = None
        self._fatal = None
        self.error = None
        self.started_at = time.time()
        # Waiters must not see the previous run's terminal state
        self._set_state(PartitionState.DISCONNECTED)
        self._task = asyncio.create_task(
            self._run(watermark), name=f"consumer-{self.name}-{self.partition}"
        )
        return self._task

    async def stop(self, drain: bool = True) -> None:
        """Stop the consumer.

        With ``drain`` the reader stops pulling, every buffered event is
        applied and the final checkpoint committed before this returns (within
        ``drain_timeout_seconds``). Without it the tasks are cancelled and
        buffered events are replayed on the next start.
        """
        task = self._task
        if task is None or task.done():
            if self.state != PartitionState.FAILED:
                self._set_state(PartitionState.STOPPED)
            return

        self._stop_event.set()
        if drain:
            try:
                await asyncio.wait_for(
                    asyncio.shield(task), timeout=self.config.drain_timeout_seconds
                )
            except asyncio.TimeoutError:
                logger.warning(
                    f"Consumer {self.name}/{self.partition} did not drain within "
                    f"{self.config.drain_timeout_seconds}s, cancelling"
                )
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def wait_caught_up(
        self, target: Position | None = None, timeout: float | None = None
    ) -> bool:
        """Wait until the applied position reaches ``target``.

        Args:
            target: Position to reach; defaults to the partition head now
            timeout: Seconds to wait; None waits as long as the consumer runs

        Returns:
            True once caught up, False on timeout or if the consumer stopped
            or failed first
        """
        if target is None:
            target = await self.stream.head_position(self.definition.table, self.partition)
            self.head_position = _max_position(self.head_position, target)
        if target is None:
            return True

        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            if self.applied_position is not None and self.applied_position >= target:
                return True
            if self.state in (PartitionState.FAILED, PartitionState.STOPPED):
                return False
            changed = self._changed
            if deadline is None:
                await changed.wait()
                continue
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            try:
                await asyncio.wait_for(changed.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                return False

    def to_dict(self) -> dict[str, Any]:
        return {
            "partition": self.partition,
            "state": self.state.value,
            "resume_from": self.resume_from,
            "applied_position": self.applied_position,
            "committed_position": self.committed_position,
            "head_position": self.head_position,
            "lag": self.lag,
            "buffered": self.buffered,
            "events_applied": self.events_applied,
            "events_ignored": self.events_ignored,
            "reconnects": self.reconnects,
            "error": self.error,
            "errors": self.errors.get_error_stats(),
        }

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    async def _run(self, watermark: Position | None) -> None:
        try:
            checkpoint = await self._load_checkpoint()
            self.resume_from = _max_position(checkpoint, watermark)
            if checkpoint is not None:
                self.applied_position = _max_position(self.applied_position, checkpoint)
                self.committed_position = checkpoint
            self._set_state(PartitionState.STREAMING)
            logger.info(
                f"Consumer {self.name}/{self.partition} streaming from "
                f"{self.resume_from if self.resume_from is not None else 'start'} "
                f"(checkpoint={checkpoint}, watermark={watermark})"
            )

            reader = asyncio.create_task(self._read_loop())
            applier = asyncio.create_task(self._apply_loop())
            try:
                # The applier only finishes early when it fails
                await asyncio.wait({reader, applier}, return_when=asyncio.FIRST_COMPLETED)
                if not applier.done():
                    await applier
                applier.result()
            finally:
                pending = [t for t in (reader, applier) if not t.done()]
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
            if self._fatal is not None:
                raise self._fatal

            self._set_state(PartitionState.STOPPED)
            logger.info(
                f"Consumer {self.name}/{self.partition} stopped at "
                f"position {self.committed_position}"
            )
        except asyncio.CancelledError:
            self._set_state(PartitionState.STOPPED)
            raise
        except Exception as e:
            self.error = str(e)
            self.errors.classify_exception(e, partition=self.partition)
            self._set_state(PartitionState.FAILED)
            logger.error(f"Consumer {self.name}/{self.partition} failed: {e}")

    async def _read_loop(self) -> None:
        try:
            await self._poll_until_stopped()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._fatal = e
        await self._queue.put(_STOP)

    async def _poll_until_stopped(self) -> None:
        table = self.definition.table
        read_from = self.resume_from
        attempt = 0

        while not self._stop_event.is_set():
            received = 0
            try:
                async for raw in self.stream.read(table, self.partition, read_from):
                    if self._stop_event.is_set():
                        break
                    if self.last_read_position is not None and raw.position <= self.last_read_position:
                        continue
                    event = self._map(raw)
                    await self._queue.put(_Item(raw.position, event))
                    self.last_read_position = raw.position
                    received += 1
                if self.last_read_position is not None:
                    read_from = self.last_read_position
                head = await self.stream.head_position(table, self.partition)
                self.head_position = _max_position(self.head_position, head)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                classification = self.errors.classify_exception(e, partition=self.partition)
                if classification == ErrorClassification.PERMANENT:
                    raise
                attempt += 1
                limit = self.config.max_reconnect_attempts
                if limit is not None and attempt > limit:
                    raise TransientStreamError(
                        f"Gave up after {limit} reconnect attempts: {e}",
                        partition=self.partition,
                    ) from e
                delay = self.config.backoff_delay(attempt - 1)
                self._set_state(PartitionState.RECONNECTING)
                self.reconnects += 1
                logger.warning(
                    f"Consumer {self.name}/{self.partition} stream error ({e}), "
                    f"reconnecting in {delay:.2f}s (attempt {attempt})"
                )
                await self._sleep(delay)
                continue

            if attempt:
                logger.info(f"Consumer {self.name}/{self.partition} reconnected")
                attempt = 0
            if self.state == PartitionState.RECONNECTING:
                self._set_state(PartitionState.STREAMING)
            if received == 0:
                self._notify()
                await self._sleep(self.config.poll_interval_seconds)

    def _map(self, raw: Any) -> ChangeEvent | None:
        """Map one record; any mapping failure is fatal for the partition."""
        try:
            return self.mapper.map_change(raw)
        except SchemaMismatchError:
            raise
        except Exception as e:
            raise SchemaMismatchError(
                f"Cannot map change record at position {raw.position}: {e}",
                partition=self.partition,
                position=raw.position,
            ) from e

    async def _apply_loop(self) -> None:
        stopping = False
        while not stopping:
            item = await self._queue.get()
            if item is _STOP:
                break
            batch: list[_Item] = [item]
            while len(batch) < self.config.apply_batch_size:
                try:
                    item = self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    break
                if item is _STOP:
                    stopping = True
                    break
                batch.append(item)

            events = [i.event for i in batch if i.event is not None]
            if events:
                await asyncio.to_thread(self.core.apply_batch, events)
            self.events_applied += len(events)
            self.events_ignored += len(batch) - len(events)

            position = batch[-1].position
            self.applied_position = _max_position(self.applied_position, position)
            self._notify()
            await self._commit(position)

    async def _load_checkpoint(self) -> Position | None:
        attempt = 0
        while True:
            try:
                return await self.checkpoints.load(self.name, self.partition)
            except CheckpointPersistError as e:
                self.errors.classify_exception(e, partition=self.partition)
                if attempt >= self.config.checkpoint_max_retries:
                    raise
                delay = self.config.backoff_delay(attempt)
                attempt += 1
                logger.warning(
                    f"Loading checkpoint {self.name}/{self.partition} failed ({e}), "
                    f"retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)

    async def _commit(self, position: Position) -> None:
        attempt = 0
        while True:
            try:
                await self.checkpoints.commit(self.name, self.partition, position)
                self.committed_position = _max_position(self.committed_position, position)
                return
            except CheckpointPersistError as e:
                self.errors.classify_exception(e, partition=self.partition)
                if attempt >= self.config.checkpoint_max_retries:
                    logger.error(
                        f"Checkpoint {self.name}/{self.partition} at {position} could not "
                        f"be persisted after {attempt + 1} attempts, halting consumer"
                    )
                    raise
                delay = self.config.backoff_delay(attempt)
                attempt += 1
                logger.warning(
                    f"Checkpoint commit {self.name}/{self.partition} failed ({e}), "
                    f"retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)

    async def _sleep(self, seconds: float) -> None:
        """Sleep unless stop() is called first."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def _notify(self) -> None:
        changed, self._changed = self._changed, asyncio.Event()
        changed.set()

    def _set_state(self, state: PartitionState) -> None:
        if state != self.state:
            logger.debug(
                f"Consumer {self.name}/{self.partition}: {self.state.value} -> {state.value}"
            )
            self.state = state
            self._notify()


def _max_position(a: Position | None, b: Position | None) -> Position | None:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)
