"""Tests for the DuckDB checkpoint store."""

from unittest.mock import AsyncMock, patch

import duckdb
import pytest

from vectorsync.core.config.database_config import DatabaseConfig
from vectorsync.core.exceptions import CheckpointPersistError
from vectorsync.providers.database.duckdb_checkpoint_store import DuckDBCheckpointStore


class TestCommitAndLoad:
    """Commits are durable and never move a checkpoint backwards."""

    @pytest.mark.asyncio
    async def test_load_missing_returns_none(self, checkpoint_store):
        assert await checkpoint_store.load("idx", "stream-0") is None
        assert await checkpoint_store.load_all("idx") == {}

    @pytest.mark.asyncio
    async def test_commit_is_monotonic(self, checkpoint_store):
        assert await checkpoint_store.commit("idx", "stream-0", 10)
        assert not await checkpoint_store.commit("idx", "stream-0", 4)
        assert not await checkpoint_store.commit("idx", "stream-0", 10)
        assert await checkpoint_store.load("idx", "stream-0") == 10

        assert await checkpoint_store.commit("idx", "stream-0", 11)
        assert await checkpoint_store.load("idx", "stream-0") == 11

    @pytest.mark.asyncio
    async def test_partitions_and_indexes_are_independent(self, checkpoint_store):
        await checkpoint_store.commit("a", "stream-0", 3)
        await checkpoint_store.commit("a", "stream-1", 7)
        await checkpoint_store.commit("b", "stream-0", 100)

        assert await checkpoint_store.load_all("a") == {"stream-0": 3, "stream-1": 7}
        assert await checkpoint_store.load("b", "stream-0") == 100
        assert await checkpoint_store.list_indexes() == ["a", "b"]

    @pytest.mark.asyncio
    async def test_positions_survive_reopen(self, tmp_path):
        path = tmp_path / "durable.duckdb"
        store = DuckDBCheckpointStore(DatabaseConfig(path=path))
        await store.commit("idx", "stream-0", 42)
        store.close()

        reopened = DuckDBCheckpointStore(DatabaseConfig(path=path))
        try:
            assert await reopened.load("idx", "stream-0") == 42
        finally:
            reopened.close()

    @pytest.mark.asyncio
    async def test_list_checkpoints(self, checkpoint_store):
        await checkpoint_store.commit("b", "stream-0", 1)
        await checkpoint_store.commit("a", "stream-1", 2)
        await checkpoint_store.commit("a", "stream-0", 3)

        rows = await checkpoint_store.list_checkpoints()
        assert [(r["index_name"], r["partition"], r["position"]) for r in rows] == [
            ("a", "stream-0", 3),
            ("a", "stream-1", 2),
            ("b", "stream-0", 1),
        ]
        assert all(r["updated_at"] > 0 for r in rows)
        assert len(await checkpoint_store.list_checkpoints("a")) == 2


class TestDeletion:
    @pytest.mark.asyncio
    async def test_delete_index(self, checkpoint_store):
        await checkpoint_store.commit("a", "stream-0", 3)
        await checkpoint_store.commit("a", "stream-1", 4)
        await checkpoint_store.commit("b", "stream-0", 5)

        assert await checkpoint_store.delete_index("a") == 2
        assert await checkpoint_store.load_all("a") == {}
        assert await checkpoint_store.load("b", "stream-0") == 5
        assert await checkpoint_store.delete_index("a") == 0

    @pytest.mark.asyncio
    async def test_delete_partition_allows_rewind(self, checkpoint_store):
        await checkpoint_store.commit("a", "stream-0", 30)
        assert await checkpoint_store.delete_partition("a", "stream-0") == 1
        assert await checkpoint_store.commit("a", "stream-0", 5)
        assert await checkpoint_store.load("a", "stream-0") == 5


class TestFailures:
    """Storage failures surface as CheckpointPersistError."""

    @pytest.mark.asyncio
    async def test_closed_store_rejects_operations(self, tmp_path):
        store = DuckDBCheckpointStore(DatabaseConfig(path=tmp_path / "c.duckdb"))
        store.close()
        store.close()
        with pytest.raises(CheckpointPersistError, match="closed"):
            await store.commit("idx", "stream-0", 1)

    def test_unopenable_path(self, tmp_path):
        directory = tmp_path / "not-a-file"
        directory.mkdir()
        with pytest.raises(CheckpointPersistError):
            DuckDBCheckpointStore(DatabaseConfig(path=directory))

    @pytest.mark.asyncio
    async def test_memory_database(self):
        store = DuckDBCheckpointStore(DatabaseConfig(path=":memory:"))
        try:
            assert store.db_path == ":memory:"
            await store.commit("idx", "stream-0", 9)
            assert await store.load("idx", "stream-0") == 9
        finally:
            store.close()

    @pytest.mark.asyncio
    async def test_storage_errors_are_wrapped(self, checkpoint_store):
        failing = AsyncMock(side_effect=duckdb.IOException("disk full"))
        with patch.object(checkpoint_store._executor, "execute_async", failing):
            with pytest.raises(CheckpointPersistError, match="disk full"):
                await checkpoint_store.commit("idx", "stream-0", 5)
        failing.assert_awaited_once()
        # The store stays usable once the storage recovers
        assert await checkpoint_store.commit("idx", "stream-0", 5)

    @pytest.mark.asyncio
    async def test_executor_timeout_is_wrapped(self, checkpoint_store):
        failing = AsyncMock(side_effect=TimeoutError("Operation 'load' timed out"))
        with patch.object(checkpoint_store._executor, "execute_async", failing):
            with pytest.raises(CheckpointPersistError, match="timed out"):
                await checkpoint_store.load("idx", "stream-0")
