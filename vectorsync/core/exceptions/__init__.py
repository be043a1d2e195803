"""Exceptions and error classification for vectorsync."""

from vectorsync.core.exceptions.classification import (
    ErrorClassification,
    ErrorClassifier,
    ErrorCounters,
    ErrorSample,
)
from vectorsync.core.exceptions.sync import (
    CheckpointPersistError,
    ConfigurationError,
    IndexAlreadyExistsError,
    IndexCapacityOrCorruptionError,
    IndexDegradedError,
    IndexNotFoundError,
    PersistError,
    QueryTimeout,
    SchemaMismatchError,
    TransientStreamError,
    VectorSyncError,
)

__all__ = [
    "CheckpointPersistError",
    "ConfigurationError",
    "ErrorClassification",
    "ErrorClassifier",
    "ErrorCounters",
    "ErrorSample",
    "IndexAlreadyExistsError",
    "IndexCapacityOrCorruptionError",
    "IndexDegradedError",
    "IndexNotFoundError",
    "PersistError",
    "QueryTimeout",
    "SchemaMismatchError",
    "TransientStreamError",
    "VectorSyncError",
]
