"""CheckpointStore protocol - durable partition -> last applied position mapping."""

from typing import Protocol

from vectorsync.core.types import Position


class CheckpointStore(Protocol):
    """Durable per-(index, partition) checkpoint storage.

    ``commit`` enforces monotonicity: a position lower than or equal to the
    stored one is accepted as a no-op. Storage failures raise
    CheckpointPersistError and must never be swallowed by callers.
    """

    async def load(self, index_name: str, partition: str) -> Position | None:
        ...

    async def load_all(self, index_name: str) -> dict[str, Position]:
        ...

    async def commit(self, index_name: str, partition: str, position: Position) -> bool:
        """Persist ``position``; return True if the stored value advanced."""
        ...

    async def delete_index(self, index_name: str) -> int:
        """Remove every checkpoint of an index; return the number removed."""
        ...

    async def list_indexes(self) -> list[str]:
        ...

    def close(self) -> None:
        ...
