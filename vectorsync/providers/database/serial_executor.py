"""Single-thread executor for checkpoint database operations.

DuckDB connections must not be shared across threads. Every operation of a
provider runs on one dedicated worker thread that owns the connection, and
async callers suspend on it without blocking the event loop.

Providers expose ``_create_connection()`` and one
``_executor_<name>(conn, *args)`` method per operation.
"""

import asyncio
import concurrent.futures
import contextvars
import threading
import time
from collections.abc import Awaitable, Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any, TypeVar

from loguru import logger

from vectorsync.core.config.database_config import DatabaseConfig

T = TypeVar("T")


class SerialDatabaseExecutor:
    """Runs provider operations one at a time on a dedicated thread.

    A timed-out operation is retried with exponential backoff when
    ``retry_on_timeout`` is enabled.
    """

    def __init__(self, config: DatabaseConfig | None = None) -> None:
        self.config = config or DatabaseConfig()
        self._db_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="serial-db")
        self._local = threading.local()  # Only ever touched from the worker thread

    # Worker-thread helpers

    def _connection(self, provider: Any) -> Any:
        conn = getattr(self._local, "connection", None)
        if conn is None:
            conn = provider._create_connection()
            if conn is None:
                raise RuntimeError("Failed to create database connection")
            self._local.connection = conn
            logger.debug(f"Opened checkpoint connection on {threading.current_thread().name}")
        return conn

    def _operation(
        self, provider: Any, operation_name: str, args: tuple, kwargs: dict
    ) -> Callable[[], Any]:
        method = getattr(provider, f"_executor_{operation_name}")

        def run() -> Any:
            return method(self._connection(provider), *args, **kwargs)

        return run

    # Retry

    def _attempts(self) -> int:
        return self.config.max_retries + 1 if self.config.retry_on_timeout else 1

    def _backoff(self, attempt: int) -> float:
        delay = self.config.retry_backoff_seconds * (2**attempt)
        logger.warning(
            f"Checkpoint database operation timed out, retrying in {delay:.2f}s "
            f"(attempt {attempt + 1}/{self._attempts() - 1})"
        )
        return delay

    def _execute_with_retry(self, operation: Callable[[], T]) -> T:
        """Run ``operation``, retrying TimeoutError only."""
        attempts = self._attempts()
        for attempt in range(attempts):
            try:
                return operation()
            except TimeoutError:
                if attempt + 1 >= attempts:
                    raise
                time.sleep(self._backoff(attempt))
        raise AssertionError("unreachable")

    async def _execute_with_retry_async(self, operation: Callable[[], Awaitable[T]]) -> T:
        attempts = self._attempts()
        for attempt in range(attempts):
            try:
                return await operation()
            except TimeoutError:
                if attempt + 1 >= attempts:
                    raise
                await asyncio.sleep(self._backoff(attempt))
        raise AssertionError("unreachable")

    # Execution

    def execute_sync(
        self, provider: Any, operation_name: str, *args: Any, **kwargs: Any
    ) -> Any:
        """Run ``_executor_<operation_name>`` on the worker thread and wait for it."""
        operation = self._operation(provider, operation_name, args, kwargs)
        return self._execute_with_retry(lambda: self._wait(operation_name, operation))

    def _wait(self, operation_name: str, operation: Callable[[], Any]) -> Any:
        future = self._db_executor.submit(operation)
        try:
            return future.result(timeout=self.config.execute_timeout_seconds)
        except concurrent.futures.TimeoutError as e:
            logger.error(f"Checkpoint operation '{operation_name}' timed out")
            raise TimeoutError(f"Operation '{operation_name}' timed out") from e

    async def execute_async(
        self, provider: Any, operation_name: str, *args: Any, **kwargs: Any
    ) -> Any:
        """Run ``_executor_<operation_name>`` on the worker thread without blocking the loop."""
        loop = asyncio.get_running_loop()
        operation = self._operation(provider, operation_name, args, kwargs)
        timeout_s = self.config.execute_timeout_seconds

        async def run_once() -> Any:
            ctx = contextvars.copy_context()
            future = loop.run_in_executor(self._db_executor, ctx.run, operation)
            try:
                return await asyncio.wait_for(future, timeout=timeout_s)
            except asyncio.TimeoutError as e:
                logger.error(f"Checkpoint operation '{operation_name}' timed out")
                raise TimeoutError(f"Operation '{operation_name}' timed out") from e

        return await self._execute_with_retry_async(run_once)

    def shutdown(self, wait: bool = True) -> None:
        """Close the worker's connection and stop the thread."""
        if getattr(self._db_executor, "_shutdown", False):
            return

        def close() -> None:
            conn = getattr(self._local, "connection", None)
            if conn is not None:
                conn.close()
                logger.debug("Closed checkpoint connection")
            self._local.__dict__.clear()

        try:
            self._db_executor.submit(close).result(timeout=2.0)
        except Exception as e:
            logger.debug(f"Connection close skipped: {e}")
        self._db_executor.shutdown(wait=wait)
