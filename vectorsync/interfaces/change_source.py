"""Protocols for the source database: change stream and paginated row scan."""

from collections.abc import AsyncIterator
from typing import Protocol

from vectorsync.core.types import Position, RawChange, ScanPage


class ChangeStream(Protocol):
    """Ordered, replayable per-partition change feed of a table.

    Implementations raise TransientStreamError for network failures and
    timeouts; any other exception is treated as permanent.
    """

    async def list_partitions(self, table: str) -> list[str]:
        """Return the identifiers of every stream partition of ``table``."""
        ...

    def read(
        self, table: str, partition: str, from_position: Position | None
    ) -> AsyncIterator[RawChange]:
        """Iterate records with position >= ``from_position`` (all when None).

        One call is one poll: the iterator is finite and yields records in
        position order. Calling again with a later position resumes the feed.
        """
        ...

    async def head_position(self, table: str, partition: str) -> Position | None:
        """Position of the newest record in the partition, None when empty."""
        ...


class RowScanSource(Protocol):
    """Paginated full-table scan used by backfill."""

    async def list_scan_ranges(self, table: str) -> list[str]:
        """Split the table into independently scannable ranges."""
        ...

    async def scan(
        self, table: str, scan_range: str, page_token: str | None = None
    ) -> ScanPage:
        """Return one page of rows in ``scan_range`` starting at ``page_token``."""
        ...
