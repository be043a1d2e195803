"""DuckDB checkpoint store: durable (index, partition) -> last applied position.

All statements run on the serial executor thread. Monotonicity is enforced
here: a commit that does not advance the stored position is a no-op.
"""

import time
from pathlib import Path
from typing import Any

# Suppress known SWIG warning from DuckDB Python bindings
import warnings

warnings.filterwarnings(
    "ignore", message=".*swigvarlink.*", category=DeprecationWarning
)

import duckdb
from loguru import logger

from vectorsync.core.config.database_config import DatabaseConfig
from vectorsync.core.exceptions import CheckpointPersistError
from vectorsync.core.types import Position
from vectorsync.providers.database.serial_executor import SerialDatabaseExecutor

_SCHEMA = """
CREATE TABLE IF NOT EXISTS checkpoints (
    index_name VARCHAR NOT NULL,
    partition_id VARCHAR NOT NULL,
    position BIGINT NOT NULL,
    updated_at DOUBLE NOT NULL,
    PRIMARY KEY (index_name, partition_id)
)
"""

# Failures of the storage layer that callers must see as CheckpointPersistError
_STORAGE_ERRORS = (duckdb.Error, OSError, TimeoutError, RuntimeError)


class DuckDBCheckpointStore:
    """CheckpointStore persisted in a DuckDB database file.

    Usage:
        store = DuckDBCheckpointStore(DatabaseConfig(path=Path("ckpt.duckdb")))
        await store.commit("items_idx", "stream-0", 42)
        position = await store.load("items_idx", "stream-0")
    """

    def __init__(self, config: DatabaseConfig | None = None):
        self.config = config or DatabaseConfig()
        self._db_path = self.config.get_db_path()
        self._executor = SerialDatabaseExecutor(self.config)
        self._closed = False
        try:
            self._executor.execute_sync(self, "initialize_schema")
        except _STORAGE_ERRORS as e:
            self._executor.shutdown(wait=False)
            raise CheckpointPersistError(
                f"Failed to open checkpoint database {self._db_path}: {e}"
            ) from e
        logger.info(f"Checkpoint store ready at {self._db_path}")

    @property
    def db_path(self) -> Path | str:
        return self._db_path

    def _create_connection(self) -> Any:
        return duckdb.connect(str(self._db_path))

    async def _run(self, operation_name: str, *args: Any) -> Any:
        if self._closed:
            raise CheckpointPersistError("Checkpoint store is closed")
        try:
            return await self._executor.execute_async(self, operation_name, *args)
        except _STORAGE_ERRORS as e:
            raise CheckpointPersistError(
                f"Checkpoint operation '{operation_name}' failed: {e}"
            ) from e

    # Public API

    async def load(self, index_name: str, partition: str) -> Position | None:
        return await self._run("load", index_name, partition)

    async def load_all(self, index_name: str) -> dict[str, Position]:
        return await self._run("load_all", index_name)

    async def commit(self, index_name: str, partition: str, position: Position) -> bool:
        advanced = await self._run("commit", index_name, partition, int(position))
        if advanced:
            logger.debug(f"Checkpoint {index_name}/{partition} -> {position}")
        return advanced

    async def delete_index(self, index_name: str) -> int:
        removed = await self._run("delete_index", index_name)
        logger.info(f"Deleted {removed} checkpoint(s) of index '{index_name}'")
        return removed

    async def delete_partition(self, index_name: str, partition: str) -> int:
        return await self._run("delete_partition", index_name, partition)

    async def list_indexes(self) -> list[str]:
        return await self._run("list_indexes")

    async def list_checkpoints(self, index_name: str | None = None) -> list[dict[str, Any]]:
        return await self._run("list_checkpoints", index_name)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._executor.shutdown(wait=True)
            logger.debug(f"Checkpoint store closed: {self._db_path}")

    # Executor-thread operations

    def _executor_initialize_schema(self, conn: Any) -> None:
        conn.execute(_SCHEMA)

    def _executor_load(
        self, conn: Any, index_name: str, partition: str
    ) -> Position | None:
        row = conn.execute(
            "SELECT position FROM checkpoints WHERE index_name = ? AND partition_id = ?",
            [index_name, partition],
        ).fetchone()
        return int(row[0]) if row else None

    def _executor_load_all(
        self, conn: Any, index_name: str
    ) -> dict[str, Position]:
        rows = conn.execute(
            "SELECT partition_id, position FROM checkpoints WHERE index_name = ?",
            [index_name],
        ).fetchall()
        return {partition: int(position) for partition, position in rows}

    def _executor_commit(
        self,
        conn: Any,
        index_name: str,
        partition: str,
        position: Position,
    ) -> bool:
        conn.execute("BEGIN TRANSACTION")
        try:
            row = conn.execute(
                "SELECT position FROM checkpoints WHERE index_name = ? AND partition_id = ?",
                [index_name, partition],
            ).fetchone()
            if row is not None and int(row[0]) >= position:
                conn.execute("ROLLBACK")
                return False
            conn.execute(
                "INSERT OR REPLACE INTO checkpoints "
                "(index_name, partition_id, position, updated_at) VALUES (?, ?, ?, ?)",
                [index_name, partition, position, time.time()],
            )
            conn.execute("COMMIT")
            return True
        except Exception:
            conn.execute("ROLLBACK")
            raise

    def _executor_delete_index(
        self, conn: Any, index_name: str
    ) -> int:
        row = conn.execute(
            "SELECT COUNT(*) FROM checkpoints WHERE index_name = ?", [index_name]
        ).fetchone()
        conn.execute("DELETE FROM checkpoints WHERE index_name = ?", [index_name])
        return int(row[0]) if row else 0

    def _executor_delete_partition(
        self, conn: Any, index_name: str, partition: str
    ) -> int:
        row = conn.execute(
            "SELECT COUNT(*) FROM checkpoints WHERE index_name = ? AND partition_id = ?",
            [index_name, partition],
        ).fetchone()
        conn.execute(
            "DELETE FROM checkpoints WHERE index_name = ? AND partition_id = ?",
            [index_name, partition],
        )
        return int(row[0]) if row else 0

    def _executor_list_indexes(self, conn: Any) -> list[str]:
        rows = conn.execute(
            "SELECT DISTINCT index_name FROM checkpoints ORDER BY index_name"
        ).fetchall()
        return [row[0] for row in rows]

    def _executor_list_checkpoints(
        self, conn: Any, index_name: str | None
    ) -> list[dict[str, Any]]:
        query = "SELECT index_name, partition_id, position, updated_at FROM checkpoints"
        params: list[Any] = []
        if index_name is not None:
            query += " WHERE index_name = ?"
            params.append(index_name)
        query += " ORDER BY index_name, partition_id"
        rows = conn.execute(query, params).fetchall()
        return [
            {
                "index_name": name,
                "partition": partition,
                "position": int(position),
                "updated_at": updated_at,
            }
            for name, partition, position, updated_at in rows
        ]
