"""Error classification for stream, scan and checkpoint failures.

Decides whether a failure raised by an external collaborator is worth
retrying, and keeps bounded samples of recent failures so index status can
report why a partition is reconnecting or failed.

The classification system categorizes errors as:
- TRANSIENT: may succeed on retry (network timeouts, unavailable replicas)
- PERMANENT: retrying cannot help (malformed records, corrupted index)
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from vectorsync.core.exceptions.sync import (
    CheckpointPersistError,
    IndexCapacityOrCorruptionError,
    IndexDegradedError,
    SchemaMismatchError,
    TransientStreamError,
)


class ErrorClassification(Enum):
    """Classification categories for synchronization errors."""

    PERMANENT = "permanent"
    """Errors that cannot be recovered from by retrying.
    Examples: schema mismatch, index corruption, authentication failure."""

    TRANSIENT = "transient"
    """Errors that may succeed on retry.
    Examples: network timeouts, coordinator unavailable, overloaded node."""


@dataclass
class ErrorSample:
    """Represents a single error sample for logging and status reports."""

    timestamp: float
    exception_type: str
    message: str
    partition: str | None = None
    context: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "type": self.exception_type,
            "message": self.message,
            "partition": self.partition,
        }


@dataclass
class ErrorCounters:
    """Tracks error counts and samples for each classification."""

    permanent: int = 0
    transient: int = 0

    permanent_samples: list[ErrorSample] = field(default_factory=list)
    transient_samples: list[ErrorSample] = field(default_factory=list)

    max_samples_per_type: int = 5

    def increment(self, classification: ErrorClassification) -> None:
        if classification == ErrorClassification.PERMANENT:
            self.permanent += 1
        else:
            self.transient += 1

    def add_sample(
        self,
        classification: ErrorClassification,
        exception: BaseException,
        partition: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        """Add an error sample, dropping the oldest beyond the limit."""
        sample = ErrorSample(
            timestamp=time.time(),
            exception_type=type(exception).__name__,
            message=str(exception),
            partition=partition,
            context=context,
        )
        if classification == ErrorClassification.PERMANENT:
            samples = self.permanent_samples
        else:
            samples = self.transient_samples

        samples.append(sample)
        if len(samples) > self.max_samples_per_type:
            samples.pop(0)

    def last_error(self) -> ErrorSample | None:
        candidates = self.permanent_samples[-1:] + self.transient_samples[-1:]
        if not candidates:
            return None
        return max(candidates, key=lambda s: s.timestamp)

    def get_stats(self) -> dict[str, Any]:
        last = self.last_error()
        return {
            "counts": {
                "permanent": self.permanent,
                "transient": self.transient,
                "total": self.permanent + self.transient,
            },
            "last_error": last.to_dict() if last else None,
        }

    def reset(self) -> None:
        self.permanent = 0
        self.transient = 0
        self.permanent_samples.clear()
        self.transient_samples.clear()


# Exceptions whose type alone decides the classification
_PERMANENT_TYPES: tuple[type[BaseException], ...] = (
    SchemaMismatchError,
    IndexCapacityOrCorruptionError,
    IndexDegradedError,
)
_TRANSIENT_TYPES: tuple[type[BaseException], ...] = (
    TransientStreamError,
    CheckpointPersistError,
    TimeoutError,
    ConnectionError,
)

_TRANSIENT_PATTERNS = (
    "timeout",
    "timed out",
    "connection reset",
    "connection refused",
    "connection error",
    "broken pipe",
    "unavailable",
    "overloaded",
    "try again",
    "too many requests",
)

_PERMANENT_PATTERNS = (
    "unauthorized",
    "authentication failed",
    "permission denied",
    "no such table",
    "unconfigured table",
    "invalid request",
)


class ErrorClassifier:
    """Classifies exceptions into retryable and fatal categories."""

    def __init__(self, counters: ErrorCounters | None = None):
        self.counters = counters or ErrorCounters()

    def classify_exception(
        self,
        exception: BaseException,
        partition: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> ErrorClassification:
        """Classify an exception and record it in the counters."""
        classification = self._classify(exception)
        self.counters.increment(classification)
        self.counters.add_sample(classification, exception, partition, context)
        return classification

    def _classify(self, exception: BaseException) -> ErrorClassification:
        if isinstance(exception, _PERMANENT_TYPES):
            return ErrorClassification.PERMANENT
        if isinstance(exception, _TRANSIENT_TYPES):
            return ErrorClassification.TRANSIENT

        message = str(exception).lower()
        for pattern in _PERMANENT_PATTERNS:
            if pattern in message:
                return ErrorClassification.PERMANENT
        for pattern in _TRANSIENT_PATTERNS:
            if pattern in message:
                return ErrorClassification.TRANSIENT

        # Unknown failures from collaborators are not proof of bad data
        return ErrorClassification.TRANSIENT

    def is_transient(self, exception: BaseException) -> bool:
        """Classify without touching the counters."""
        return self._classify(exception) == ErrorClassification.TRANSIENT

    def get_error_stats(self) -> dict[str, Any]:
        return self.counters.get_stats()

    def reset_stats(self) -> None:
        self.counters.reset()
