"""Backfill pipeline: bulk-populate a fresh IndexCore from a full table scan.

State machine:
    NOT_STARTED -> SCANNING -> WATERMARKED -> COMPLETE
    (FAILED and CANCELLED are terminal for a run; a FAILED run can be resumed)

The watermark is the head position of every stream partition, recorded before
the first page is read. Every scanned row is stamped Version(T, BACKFILL)
with T the highest recorded head, so a stream event at or after the watermark
wins over the scanned row and any earlier one loses to it.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

from loguru import logger

from vectorsync.core.config.sync_config import BackfillConfig
from vectorsync.core.exceptions import ErrorClassification, ErrorClassifier
from vectorsync.core.types import IndexDefinition, Position
from vectorsync.interfaces.change_source import ChangeStream, RowScanSource
from vectorsync.services.change_mapper import ChangeMapper
from vectorsync.services.index_core import IndexCore

if TYPE_CHECKING:
    from vectorsync.services.stream_consumer import StreamConsumer

T = TypeVar("T")


class BackfillState(str, Enum):
    """Status of a backfill run."""

    NOT_STARTED = "not_started"
    SCANNING = "scanning"
    WATERMARKED = "watermarked"  # Scan done, waiting for consumers to reach the watermark
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class RangeProgress:
    """Scan progress of one range; page_token is the next page to read."""

    scan_range: str
    page_token: str | None = None
    pages: int = 0
    rows: int = 0
    upserts: int = 0
    retries: int = 0
    done: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "scan_range": self.scan_range,
            "page_token": self.page_token,
            "pages": self.pages,
            "rows": self.rows,
            "upserts": self.upserts,
            "retries": self.retries,
            "done": self.done,
        }


class BackfillPipeline:
    """Scans one table into an IndexCore and hands off to the stream consumers.

    Usage:
        backfill = BackfillPipeline(definition, core, mapper, stream, scanner)
        watermark = await backfill.run()
        # start one consumer per partition from watermark[partition]
        await backfill.complete_handoff(consumers)
    """

    def __init__(
        self,
        definition: IndexDefinition,
        core: IndexCore,
        mapper: ChangeMapper,
        stream: ChangeStream,
        scanner: RowScanSource,
        config: BackfillConfig | None = None,
    ):
        self.definition = definition
        self.core = core
        self.mapper = mapper
        self.stream = stream
        self.scanner = scanner
        self.config = config or BackfillConfig()

        self.state = BackfillState.NOT_STARTED
        self.watermark: dict[str, Position | None] | None = None
        self.stamp: Position | None = None
        self.error: str | None = None
        self.started_at: float | None = None
        self.completed_at: float | None = None

        self._progress: dict[str, RangeProgress] = {}
        self.errors = ErrorClassifier()

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def in_progress(self) -> bool:
        return self.state in (BackfillState.SCANNING, BackfillState.WATERMARKED)

    @property
    def rows_scanned(self) -> int:
        return sum(p.rows for p in self._progress.values())

    async def run(self) -> dict[str, Position | None]:
        """Record the watermark and scan every range into the index core.

        A run that failed earlier resumes from the last completed page of each
        range under the watermark it recorded the first time.

        Returns:
            Per-partition watermark positions (None for an empty partition)

        Raises:
            RuntimeError: If the pipeline is not in a runnable state
            Exception: Whatever made the scan fail, after state is set to FAILED
        """
        if self.state not in (BackfillState.NOT_STARTED, BackfillState.FAILED):
            raise RuntimeError(
                f"Backfill of '{self.name}' cannot run from state {self.state.value}"
            )

        resuming = self.state == BackfillState.FAILED
        self.started_at = self.started_at or time.time()
        self.error = None
        self._set_state(BackfillState.SCANNING)

        try:
            if self.watermark is None:
                self.watermark = await self._record_watermark()
                heads = [p for p in self.watermark.values() if p is not None]
                self.stamp = max(heads, default=0)
            logger.info(
                f"Backfill of '{self.name}' {'resuming' if resuming else 'starting'} "
                f"under watermark {self.stamp}"
            )

            ranges = await self._retrying(
                lambda: self.scanner.list_scan_ranges(self.definition.table),
                "list_scan_ranges",
            )
            for scan_range in ranges:
                self._progress.setdefault(scan_range, RangeProgress(scan_range))

            semaphore = asyncio.Semaphore(self.config.concurrency)
            tasks = [
                asyncio.create_task(
                    self._scan_range(progress, semaphore),
                    name=f"backfill-{self.name}-{progress.scan_range}",
                )
                for progress in self._progress.values()
                if not progress.done
            ]
            try:
                await asyncio.gather(*tasks)
            except BaseException:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise

        except asyncio.CancelledError:
            self._set_state(BackfillState.CANCELLED)
            self.completed_at = time.time()
            logger.info(f"Backfill of '{self.name}' cancelled")
            raise
        except Exception as e:
            self.error = str(e)
            self._set_state(BackfillState.FAILED)
            logger.error(f"Backfill of '{self.name}' failed: {e}")
            raise

        self._set_state(BackfillState.WATERMARKED)
        logger.info(
            f"Backfill of '{self.name}' scanned {self.rows_scanned} rows "
            f"into {self.core.size()} vectors"
        )
        return dict(self.watermark)

    async def complete_handoff(
        self, consumers: Iterable[StreamConsumer], timeout: float | None = None
    ) -> bool:
        """Wait until every consumer applied through its partition watermark.

        Returns:
            True if the backfill is now COMPLETE, False if a consumer stopped or
            failed first or the timeout expired
        """
        if self.state == BackfillState.COMPLETE:
            return True
        if self.state != BackfillState.WATERMARKED or self.watermark is None:
            raise RuntimeError(
                f"Backfill of '{self.name}' has no watermark to hand off (state {self.state.value})"
            )

        consumers = list(consumers)
        results = await asyncio.gather(
            *(
                consumer.wait_caught_up(self.watermark.get(consumer.partition), timeout)
                for consumer in consumers
            )
        )
        if not all(results):
            lagging = [c.partition for c, ok in zip(consumers, results) if not ok]
            logger.warning(
                f"Backfill handoff of '{self.name}' incomplete, partitions not caught up: {lagging}"
            )
            return False

        self._set_state(BackfillState.COMPLETE)
        self.completed_at = time.time()
        logger.info(f"Backfill of '{self.name}' complete, stream consumers own the index")
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "watermark": self.watermark,
            "stamp": self.stamp,
            "rows_scanned": self.rows_scanned,
            "ranges": [p.to_dict() for p in self._progress.values()],
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "error": self.error,
            "errors": self.errors.get_error_stats(),
        }

    async def _record_watermark(self) -> dict[str, Position | None]:
        table = self.definition.table
        partitions = await self._retrying(
            lambda: self.stream.list_partitions(table), "list_partitions"
        )
        watermark: dict[str, Position | None] = {}
        for partition in partitions:
            watermark[partition] = await self._retrying(
                lambda p=partition: self.stream.head_position(table, p),
                f"head_position({partition})",
            )
        logger.debug(f"Backfill watermark of '{self.name}': {watermark}")
        return watermark

    async def _scan_range(self, progress: RangeProgress, semaphore: asyncio.Semaphore) -> None:
        async with semaphore:
            logger.debug(f"Scanning {progress.scan_range} of '{self.definition.table}'")
            while not progress.done:
                page = await self._retrying(
                    lambda: self.scanner.scan(
                        self.definition.table, progress.scan_range, progress.page_token
                    ),
                    f"scan({progress.scan_range})",
                    progress,
                )

                events = []
                for row in page.rows:
                    event = self.mapper.map_row(row, self.stamp or 0)
                    if event is not None:
                        events.append(event)
                if events:
                    progress.upserts += await asyncio.to_thread(self.core.apply_batch, events)

                progress.rows += len(page.rows)
                progress.pages += 1
                progress.page_token = page.next_page_token
                if page.next_page_token is None:
                    progress.done = True
            logger.debug(
                f"Finished {progress.scan_range}: {progress.rows} rows in {progress.pages} pages"
            )

    async def _retrying(
        self,
        operation: Callable[[], Awaitable[T]],
        description: str,
        progress: RangeProgress | None = None,
    ) -> T:
        """Await ``operation`` retrying transient failures with exponential backoff."""
        attempt = 0
        while True:
            try:
                return await operation()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                classification = self.errors.classify_exception(
                    e, partition=progress.scan_range if progress else None
                )
                if (
                    classification == ErrorClassification.PERMANENT
                    or attempt >= self.config.max_page_retries
                ):
                    raise
                delay = self.config.backoff_delay(attempt)
                attempt += 1
                if progress is not None:
                    progress.retries += 1
                logger.warning(
                    f"Backfill {description} of '{self.name}' failed ({e}), "
                    f"retry {attempt}/{self.config.max_page_retries} in {delay:.2f}s"
                )
                await asyncio.sleep(delay)

    def _set_state(self, state: BackfillState) -> None:
        if state != self.state:
            logger.debug(f"Backfill '{self.name}': {self.state.value} -> {state.value}")
            self.state = state
