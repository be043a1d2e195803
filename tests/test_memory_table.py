"""Tests for the in-process change-logged table source."""

import pytest

from vectorsync.core.exceptions import TransientStreamError

from conftest import TABLE


async def drain(table, partition, from_position=None):
    return [r async for r in table.read(TABLE, partition, from_position)]


class TestChangeLog:
    @pytest.mark.asyncio
    async def test_writes_land_in_owning_partition(self, table):
        positions = [table.insert({"id": i, "embedding": [1, 0, 0, 0]}) for i in range(10)]
        assert positions == list(range(1, 11))

        seen = []
        for partition in await table.list_partitions(TABLE):
            records = await drain(table, partition)
            assert all(table.partition_of(r.columns) == partition for r in records)
            assert [r.position for r in records] == sorted(r.position for r in records)
            seen.extend(r.position for r in records)
        assert sorted(seen) == positions

    @pytest.mark.asyncio
    async def test_read_is_inclusive_and_replayable(self, single_partition_table):
        t = single_partition_table
        for i in range(5):
            t.insert({"id": i, "embedding": [1, 0, 0, 0]})
        assert [r.position for r in await drain(t, "stream-0", 3)] == [3, 4, 5]
        assert [r.position for r in await drain(t, "stream-0", 3)] == [3, 4, 5]
        assert await drain(t, "stream-0", 6) == []

    @pytest.mark.asyncio
    async def test_poll_limit(self):
        from vectorsync.providers.source.memory_table import InMemoryTable

        t = InMemoryTable(TABLE, partitions=1, poll_limit=2)
        for i in range(5):
            t.insert({"id": i})
        assert [r.position for r in await drain(t, "stream-0")] == [1, 2]

    @pytest.mark.asyncio
    async def test_update_and_delete_records(self, single_partition_table):
        t = single_partition_table
        t.insert({"id": 1, "embedding": [1, 0, 0, 0], "category": "a"})
        t.update({"id": 1, "category": "b"})
        t.delete({"id": 1})
        records = await drain(t, "stream-0")
        assert [r.operation for r in records] == ["insert", "update", "delete"]
        # Updates carry only the columns that changed
        assert records[1].columns == {"id": 1, "category": "b"}
        assert records[2].columns == {"id": 1}
        assert t.row_count == 0

    @pytest.mark.asyncio
    async def test_head_position(self, single_partition_table):
        t = single_partition_table
        assert await t.head_position(TABLE, "stream-0") is None
        t.insert({"id": 1})
        t.insert({"id": 2})
        assert await t.head_position(TABLE, "stream-0") == 2

    @pytest.mark.asyncio
    async def test_injected_read_failure(self, single_partition_table):
        t = single_partition_table
        t.insert({"id": 1})
        t.inject_failures(reads=1)
        with pytest.raises(TransientStreamError):
            await drain(t, "stream-0")
        assert len(await drain(t, "stream-0")) == 1

    @pytest.mark.asyncio
    async def test_unknown_table(self, table):
        with pytest.raises(ValueError, match="Unknown table"):
            await table.list_partitions("other.table")

    def test_rows_need_primary_key(self, table):
        with pytest.raises(ValueError, match="primary key"):
            table.insert({"embedding": [1, 0, 0, 0]})


class TestScan:
    @pytest.mark.asyncio
    async def test_ranges_cover_table_once(self, table):
        for i in range(25):
            table.insert({"id": i, "embedding": [1, 0, 0, 0]})
        table.update({"id": 3, "category": "x"})

        ids = []
        for scan_range in await table.list_scan_ranges(TABLE):
            token = None
            while True:
                page = await table.scan(TABLE, scan_range, token)
                assert len(page.rows) <= table.page_size
                ids.extend(row["id"] for row in page.rows)
                token = page.next_page_token
                if token is None:
                    break
        assert sorted(ids) == list(range(25))

    @pytest.mark.asyncio
    async def test_scan_returns_current_row_image(self, single_partition_table):
        t = single_partition_table
        t.insert({"id": 1, "embedding": [1, 0, 0, 0], "category": "a"})
        t.update({"id": 1, "category": "b"})
        page = await t.scan(TABLE, "range-0")
        assert page.rows == [{"id": 1, "embedding": [1, 0, 0, 0], "category": "b"}]
        assert page.next_page_token is None

    @pytest.mark.asyncio
    async def test_injected_scan_failure(self, single_partition_table):
        single_partition_table.inject_failures(scans=1)
        with pytest.raises(TransientStreamError):
            await single_partition_table.scan(TABLE, "range-0")
        page = await single_partition_table.scan(TABLE, "range-0")
        assert page.rows == []
