"""Exception hierarchy for the synchronization engine.

Transient errors are retried where they occur. Everything else is fatal for
the index or partition that raised it and is surfaced to the registry as a
state transition, never as a process crash.
"""

from typing import Any


class VectorSyncError(Exception):
    """Base exception for vectorsync errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class ConfigurationError(VectorSyncError):
    """Invalid configuration or index definition."""

    pass


class TransientStreamError(VectorSyncError):
    """Network failure or timeout on the change stream or row scan.

    Retried with exponential backoff. Never advances a checkpoint.
    """

    pass


class SchemaMismatchError(VectorSyncError):
    """Malformed change record: missing primary key, wrong dimension, bad values.

    Fatal for the affected partition; not retryable.
    """

    pass


class CheckpointPersistError(VectorSyncError):
    """Checkpoint could not be durably stored.

    Retried by the owning consumer; when retries exhaust the consumer halts
    rather than keep in-memory-only progress.
    """

    pass


# Short name used by the checkpoint store contract
PersistError = CheckpointPersistError


class IndexCapacityOrCorruptionError(VectorSyncError):
    """The ANN capability reported a capacity or corruption failure.

    Fatal for the index instance: it is marked degraded and stops accepting
    mutations until rebuilt.
    """

    pass


class IndexDegradedError(VectorSyncError):
    """Mutation attempted on an index that was marked degraded."""

    pass


class QueryTimeout(VectorSyncError):
    """A search did not finish within its deadline."""

    pass


class IndexNotFoundError(VectorSyncError):
    """No live index with the requested name."""

    pass


class IndexAlreadyExistsError(VectorSyncError):
    """An index with the requested name is already registered."""

    pass
