"""In-process table with a change log, implementing ChangeStream and RowScanSource.

Stands in for the source database when running locally and in tests. Every
write is appended to the log of the partition owning the row's key, stamped
with a position from a single table-wide counter so positions are comparable
across partitions, as time-based positions of the real source are.
"""

from __future__ import annotations

import asyncio
import time
import zlib
from collections.abc import AsyncIterator
from typing import Any

from loguru import logger

from vectorsync.core.exceptions import TransientStreamError
from vectorsync.core.types import Position, RawChange, ScanPage, encode_key


class InMemoryTable:
    """A single table plus its per-partition change log.

    Args:
        name: Table identifier served by this source
        primary_key_columns: Key columns, in key order
        partitions: Number of stream partitions
        scan_ranges: Number of scan ranges offered to backfill
        page_size: Rows per scan page
        poll_limit: Maximum records returned by one read() poll
    """

    def __init__(
        self,
        name: str,
        primary_key_columns: tuple[str, ...] = ("id",),
        partitions: int = 2,
        scan_ranges: int = 2,
        page_size: int = 100,
        poll_limit: int = 500,
    ):
        if partitions < 1 or scan_ranges < 1 or page_size < 1 or poll_limit < 1:
            raise ValueError("partitions, scan_ranges, page_size and poll_limit must be >= 1")
        self.name = name
        self.primary_key_columns = primary_key_columns
        self._partition_ids = [f"stream-{i}" for i in range(partitions)]
        self._range_ids = [f"range-{i}" for i in range(scan_ranges)]
        self.page_size = page_size
        self.poll_limit = poll_limit

        self._rows: dict[bytes, dict[str, Any]] = {}
        self._log: dict[str, list[RawChange]] = {p: [] for p in self._partition_ids}
        self._position = 0
        self._pending_read_failures = 0
        self._pending_scan_failures = 0

    # Writes

    def insert(self, row: dict[str, Any]) -> Position:
        key = self._key_of(row)
        self._rows[key] = dict(row)
        return self._append("insert", dict(row), key)

    def update(self, row: dict[str, Any]) -> Position:
        """Update the given columns of an existing (or new) row."""
        key = self._key_of(row)
        merged = dict(self._rows.get(key, {}))
        merged.update(row)
        self._rows[key] = merged
        return self._append("update", dict(row), key)

    def delete(self, key_values: dict[str, Any]) -> Position:
        key = self._key_of(key_values)
        self._rows.pop(key, None)
        columns = {c: key_values[c] for c in self.primary_key_columns}
        return self._append("delete", columns, key)

    def append_raw(self, partition: str, operation: str | int, columns: dict[str, Any]) -> Position:
        """Append a record to a partition log without touching table rows."""
        self._position += 1
        self._log[partition].append(
            RawChange(
                operation=operation,
                columns=columns,
                partition=partition,
                position=self._position,
                timestamp=time.time(),
            )
        )
        return self._position

    def inject_failures(self, reads: int = 0, scans: int = 0) -> None:
        """Make the next ``reads`` polls and ``scans`` pages fail transiently."""
        self._pending_read_failures += reads
        self._pending_scan_failures += scans

    def partition_of(self, key_values: dict[str, Any]) -> str:
        key = self._key_of(key_values)
        return self._partition_ids[zlib.crc32(key) % len(self._partition_ids)]

    @property
    def row_count(self) -> int:
        return len(self._rows)

    # ChangeStream

    async def list_partitions(self, table: str) -> list[str]:
        self._check_table(table)
        return list(self._partition_ids)

    async def read(
        self, table: str, partition: str, from_position: Position | None
    ) -> AsyncIterator[RawChange]:
        self._check_table(table)
        if self._pending_read_failures > 0:
            self._pending_read_failures -= 1
            raise TransientStreamError(f"Injected read failure on {partition}")
        log = self._log[partition]
        emitted = 0
        for record in list(log):
            if from_position is not None and record.position < from_position:
                continue
            yield record
            emitted += 1
            if emitted >= self.poll_limit:
                break
            # Let other tasks interleave like a network source would
            await asyncio.sleep(0)

    async def head_position(self, table: str, partition: str) -> Position | None:
        self._check_table(table)
        log = self._log[partition]
        return log[-1].position if log else None

    # RowScanSource

    async def list_scan_ranges(self, table: str) -> list[str]:
        self._check_table(table)
        return list(self._range_ids)

    async def scan(
        self, table: str, scan_range: str, page_token: str | None = None
    ) -> ScanPage:
        self._check_table(table)
        if self._pending_scan_failures > 0:
            self._pending_scan_failures -= 1
            raise TransientStreamError(f"Injected scan failure on {scan_range}")
        range_index = self._range_ids.index(scan_range)
        after = bytes.fromhex(page_token) if page_token else None
        keys = sorted(
            key
            for key in self._rows
            if zlib.crc32(key) % len(self._range_ids) == range_index
            and (after is None or key > after)
        )
        page_keys = keys[: self.page_size]
        rows = [dict(self._rows[key]) for key in page_keys]
        next_token = page_keys[-1].hex() if len(keys) > self.page_size else None
        await asyncio.sleep(0)
        return ScanPage(rows=rows, next_page_token=next_token)

    # Internals

    def _append(self, operation: str, columns: dict[str, Any], key: bytes) -> Position:
        partition = self._partition_ids[zlib.crc32(key) % len(self._partition_ids)]
        position = self.append_raw(partition, operation, columns)
        logger.trace(f"{self.name}: {operation} at {partition}/{position}")
        return position

    def _key_of(self, row: dict[str, Any]) -> bytes:
        try:
            return encode_key(tuple(row[c] for c in self.primary_key_columns))
        except KeyError as e:
            raise ValueError(f"Row is missing primary key column {e}") from e

    def _check_table(self, table: str) -> None:
        if table != self.name:
            raise ValueError(f"Unknown table '{table}' (serving '{self.name}')")
