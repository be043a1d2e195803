"""Change mapper: raw change records and scanned rows -> normalized ChangeEvents.

Pure transformation with no state beyond the IndexDefinition used for
validation. Malformed payloads raise SchemaMismatchError, which is fatal for
the partition that delivered them.
"""

from __future__ import annotations

import numbers
from collections.abc import Mapping
from typing import Any

import numpy as np

from vectorsync.core.exceptions import SchemaMismatchError
from vectorsync.core.types import (
    ChangeEvent,
    ChangeKind,
    IndexDefinition,
    Origin,
    RawChange,
    encode_key,
)

# CDC operation codes as emitted by the source database's change log
CDC_PREIMAGE = 0
CDC_UPDATE = 1
CDC_INSERT = 2
CDC_ROW_DELETE = 3
CDC_PARTITION_DELETE = 4
CDC_ROW_RANGE_DELETE_START_INCLUSIVE = 5
CDC_ROW_RANGE_DELETE_START_EXCLUSIVE = 6
CDC_ROW_RANGE_DELETE_END_INCLUSIVE = 7
CDC_ROW_RANGE_DELETE_END_EXCLUSIVE = 8
CDC_POSTIMAGE = 9

_UPSERT_OPERATIONS = {"insert", "update", "upsert", CDC_UPDATE, CDC_INSERT}
_DELETE_OPERATIONS = {
    "delete",
    "row_delete",
    "partition_delete",
    CDC_ROW_DELETE,
    CDC_PARTITION_DELETE,
}
_IGNORED_OPERATIONS = {
    "preimage",
    "postimage",
    CDC_PREIMAGE,
    CDC_POSTIMAGE,
}
_RANGE_DELETE_OPERATIONS = {
    "range_delete",
    CDC_ROW_RANGE_DELETE_START_INCLUSIVE,
    CDC_ROW_RANGE_DELETE_START_EXCLUSIVE,
    CDC_ROW_RANGE_DELETE_END_INCLUSIVE,
    CDC_ROW_RANGE_DELETE_END_EXCLUSIVE,
}


def _normalize_operation(raw: RawChange) -> str | int:
    operation = raw.operation
    if isinstance(operation, str):
        return operation.strip().lower()
    if isinstance(operation, numbers.Integral) and not isinstance(operation, bool):
        return int(operation)
    raise SchemaMismatchError(
        f"Change operation must be a name or a CDC code, got {operation!r}",
        partition=raw.partition,
        position=raw.position,
    )


class ChangeMapper:
    """Maps raw change records of one index's table into ChangeEvents."""

    def __init__(self, definition: IndexDefinition):
        self.definition = definition

    def map_change(self, raw: RawChange) -> ChangeEvent | None:
        """Normalize one raw change record.

        Returns:
            The event to apply, or None if the record does not affect the index
            (pre/post images, updates that leave the vector column untouched)

        Raises:
            SchemaMismatchError: Unknown operation, missing primary key, or a
                vector of the wrong shape
        """
        operation = _normalize_operation(raw)

        if operation in _IGNORED_OPERATIONS:
            return None
        if operation in _RANGE_DELETE_OPERATIONS:
            raise SchemaMismatchError(
                f"Range deletes are not supported by index '{self.definition.name}'",
                partition=raw.partition,
                position=raw.position,
            )

        key = self._extract_key(raw.columns, raw.partition, raw.position)

        if operation in _DELETE_OPERATIONS:
            return ChangeEvent(
                kind=ChangeKind.DELETE,
                key=key,
                partition=raw.partition,
                position=raw.position,
                timestamp=raw.timestamp,
            )

        if operation not in _UPSERT_OPERATIONS:
            raise SchemaMismatchError(
                f"Unknown change operation {raw.operation!r}",
                partition=raw.partition,
                position=raw.position,
            )

        if self.definition.vector_column not in raw.columns:
            return None

        value = raw.columns[self.definition.vector_column]
        if value is None:
            # Vector column set to null: the row no longer has an embedding
            return ChangeEvent(
                kind=ChangeKind.DELETE,
                key=key,
                partition=raw.partition,
                position=raw.position,
                timestamp=raw.timestamp,
            )

        return ChangeEvent(
            kind=ChangeKind.UPSERT,
            key=key,
            partition=raw.partition,
            position=raw.position,
            vector=self._extract_vector(value, raw.partition, raw.position),
            metadata=self._extract_metadata(raw.columns),
            timestamp=raw.timestamp,
        )

    def map_row(self, row: Mapping[str, Any], watermark: int) -> ChangeEvent | None:
        """Normalize one scanned row as a backfill upsert stamped with ``watermark``.

        Rows without a vector produce None; there is nothing to index.
        """
        key = self._extract_key(row, "backfill", watermark)
        value = row.get(self.definition.vector_column)
        if value is None:
            return None
        return ChangeEvent(
            kind=ChangeKind.UPSERT,
            key=key,
            partition="backfill",
            position=watermark,
            vector=self._extract_vector(value, "backfill", watermark),
            metadata=self._extract_metadata(row),
            origin=Origin.BACKFILL,
        )

    def _extract_key(
        self, columns: Mapping[str, Any], partition: str, position: int
    ) -> bytes:
        values = []
        for column in self.definition.primary_key_columns:
            value = columns.get(column)
            if value is None:
                raise SchemaMismatchError(
                    f"Record is missing primary key column '{column}'",
                    partition=partition,
                    position=position,
                )
            values.append(value)
        try:
            return encode_key(tuple(values))
        except (TypeError, ValueError) as e:
            raise SchemaMismatchError(
                f"Unsupported primary key value: {e}",
                partition=partition,
                position=position,
            ) from e

    def _extract_vector(self, value: Any, partition: str, position: int) -> np.ndarray:
        if isinstance(value, (str, bytes)) or not hasattr(value, "__len__"):
            raise SchemaMismatchError(
                f"Column '{self.definition.vector_column}' is not a float sequence",
                partition=partition,
                position=position,
            )
        if len(value) != self.definition.dimension:
            raise SchemaMismatchError(
                f"Vector has {len(value)} dimensions, index "
                f"'{self.definition.name}' expects {self.definition.dimension}",
                partition=partition,
                position=position,
            )
        try:
            vector = np.asarray(value, dtype=np.float32).reshape(-1)
        except (TypeError, ValueError) as e:
            raise SchemaMismatchError(
                f"Vector contains non-numeric values: {e}",
                partition=partition,
                position=position,
            ) from e
        if vector.shape[0] != self.definition.dimension:
            raise SchemaMismatchError(
                "Vector is not a flat float sequence",
                partition=partition,
                position=position,
            )
        if not np.all(np.isfinite(vector)):
            raise SchemaMismatchError(
                "Vector contains NaN or infinite values",
                partition=partition,
                position=position,
            )
        vector.flags.writeable = False
        return vector

    def _extract_metadata(self, columns: Mapping[str, Any]) -> dict[str, Any]:
        return {
            name: columns[name]
            for name in self.definition.metadata_columns
            if name in columns
        }
