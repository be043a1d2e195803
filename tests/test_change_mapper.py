"""Tests for ChangeMapper normalization of raw change records and scanned rows."""

import numpy as np
import pytest

from vectorsync.core.exceptions import SchemaMismatchError
from vectorsync.core.types import ChangeKind, Origin, RawChange, Version, encode_key
from vectorsync.services.change_mapper import (
    CDC_INSERT,
    CDC_POSTIMAGE,
    CDC_PREIMAGE,
    CDC_ROW_DELETE,
    CDC_ROW_RANGE_DELETE_START_INCLUSIVE,
)


def raw(operation, position=5, **columns):
    return RawChange(
        operation=operation,
        columns=columns,
        partition="stream-0",
        position=position,
        timestamp=1700000000.0,
    )


class TestMapChange:
    """map_change covers upserts, tombstones and ignored records."""

    def test_insert_maps_to_upsert(self, mapper):
        event = mapper.map_change(
            raw("insert", id=1, embedding=[0, 0, 0, 1], category="books", price=3)
        )
        assert event.kind is ChangeKind.UPSERT
        assert event.key == encode_key(1)
        assert event.vector.dtype == np.float32
        assert event.vector.tolist() == [0.0, 0.0, 0.0, 1.0]
        assert not event.vector.flags.writeable
        # Only configured metadata columns are kept
        assert event.metadata == {"category": "books"}
        assert event.version == Version(5, Origin.STREAM)
        assert event.partition == "stream-0"
        assert event.timestamp == 1700000000.0

    def test_numeric_operation_codes(self, mapper):
        assert mapper.map_change(raw(CDC_INSERT, id=1, embedding=[1, 0, 0, 0])).kind is ChangeKind.UPSERT
        assert mapper.map_change(raw(CDC_ROW_DELETE, id=1)).kind is ChangeKind.DELETE

    def test_operation_names_are_case_insensitive(self, mapper):
        event = mapper.map_change(raw(" UPDATE ", id=1, embedding=[1, 0, 0, 0]))
        assert event.kind is ChangeKind.UPSERT

    def test_delete_maps_to_tombstone_without_vector(self, mapper):
        event = mapper.map_change(raw("delete", id=9))
        assert event.is_tombstone
        assert event.vector is None
        assert event.key == encode_key(9)

    def test_partition_delete_is_tombstone(self, mapper):
        assert mapper.map_change(raw("partition_delete", id=9)).is_tombstone

    def test_null_vector_maps_to_tombstone(self, mapper):
        event = mapper.map_change(raw("update", id=3, embedding=None))
        assert event.is_tombstone

    def test_update_without_vector_column_is_ignored(self, mapper):
        assert mapper.map_change(raw("update", id=3, category="toys")) is None

    @pytest.mark.parametrize("operation", ["preimage", "postimage", CDC_PREIMAGE, CDC_POSTIMAGE])
    def test_images_are_ignored(self, mapper, operation):
        assert mapper.map_change(raw(operation, id=3, embedding=[1, 0, 0, 0])) is None

    def test_range_delete_rejected(self, mapper):
        with pytest.raises(SchemaMismatchError, match="Range deletes"):
            mapper.map_change(raw(CDC_ROW_RANGE_DELETE_START_INCLUSIVE, id=1))

    def test_unknown_operation_rejected(self, mapper):
        with pytest.raises(SchemaMismatchError, match="Unknown change operation"):
            mapper.map_change(raw("truncate", id=1, embedding=[1, 0, 0, 0]))

    @pytest.mark.parametrize("operation", [None, 2.0, True, b"insert", ["insert"]])
    def test_operation_of_wrong_type_rejected(self, mapper, operation):
        with pytest.raises(SchemaMismatchError, match="operation") as exc_info:
            mapper.map_change(raw(operation, position=17, id=1, embedding=[1, 0, 0, 0]))
        assert exc_info.value.context == {"partition": "stream-0", "position": 17}

    def test_numpy_operation_code_accepted(self, mapper):
        event = mapper.map_change(raw(np.int64(CDC_INSERT), id=1, embedding=[1, 0, 0, 0]))
        assert event.kind is ChangeKind.UPSERT


class TestMalformedPayloads:
    """Malformed records raise SchemaMismatchError with their position."""

    def test_missing_primary_key(self, mapper):
        with pytest.raises(SchemaMismatchError, match="primary key") as exc_info:
            mapper.map_change(raw("insert", position=42, embedding=[1, 0, 0, 0]))
        assert exc_info.value.context == {"partition": "stream-0", "position": 42}

    def test_null_primary_key(self, mapper):
        with pytest.raises(SchemaMismatchError):
            mapper.map_change(raw("delete", id=None))

    @pytest.mark.parametrize(
        "vector",
        [
            [1, 0, 0],
            [1, 0, 0, 0, 0],
            "1,0,0,0",
            b"\x00\x00\x00\x00",
            42,
            [1, 0, "x", 0],
            [[1, 0], [0, 0]],
            [1, 0, float("nan"), 0],
            [1, 0, float("inf"), 0],
        ],
    )
    def test_bad_vectors(self, mapper, vector):
        with pytest.raises(SchemaMismatchError):
            mapper.map_change(raw("insert", id=1, embedding=vector))

    def test_numpy_vector_accepted(self, mapper):
        event = mapper.map_change(raw("insert", id=1, embedding=np.arange(4, dtype=np.float64)))
        assert event.vector.tolist() == [0.0, 1.0, 2.0, 3.0]


class TestMapRow:
    """map_row stamps scanned rows with the backfill watermark."""

    def test_row_becomes_backfill_upsert(self, mapper):
        event = mapper.map_row({"id": 7, "embedding": [0, 1, 0, 0], "category": "a"}, 12)
        assert event.kind is ChangeKind.UPSERT
        assert event.origin is Origin.BACKFILL
        assert event.version == Version.from_backfill(12)
        assert event.metadata == {"category": "a"}

    def test_row_without_vector_is_skipped(self, mapper):
        assert mapper.map_row({"id": 7, "embedding": None}, 12) is None
        assert mapper.map_row({"id": 7}, 12) is None

    def test_row_with_wrong_dimension_rejected(self, mapper):
        with pytest.raises(SchemaMismatchError):
            mapper.map_row({"id": 7, "embedding": [1, 2]}, 12)

    def test_composite_primary_key(self, definition):
        from vectorsync.services.change_mapper import ChangeMapper

        composite = definition.model_copy(update={"primary_key_columns": ("tenant", "id")})
        event = ChangeMapper(composite).map_row(
            {"tenant": "acme", "id": 3, "embedding": [1, 0, 0, 0]}, 1
        )
        assert event.key == encode_key(("acme", 3))
