"""Tests for error classification and counters."""

import pytest

from vectorsync.core.exceptions import (
    CheckpointPersistError,
    ErrorClassification,
    ErrorClassifier,
    ErrorCounters,
    IndexCapacityOrCorruptionError,
    IndexDegradedError,
    SchemaMismatchError,
    TransientStreamError,
)


class TestClassification:
    @pytest.mark.parametrize(
        "error",
        [
            SchemaMismatchError("bad row"),
            IndexCapacityOrCorruptionError("full"),
            IndexDegradedError("degraded"),
            RuntimeError("Unauthorized: bad credentials"),
            RuntimeError("unconfigured table shop.items"),
        ],
    )
    def test_permanent(self, error):
        assert ErrorClassifier().classify_exception(error) is ErrorClassification.PERMANENT

    @pytest.mark.parametrize(
        "error",
        [
            TransientStreamError("replica down"),
            CheckpointPersistError("disk busy"),
            TimeoutError(),
            ConnectionResetError(),
            RuntimeError("Coordinator unavailable"),
            RuntimeError("something nobody anticipated"),
        ],
    )
    def test_transient(self, error):
        assert ErrorClassifier().classify_exception(error) is ErrorClassification.TRANSIENT

    def test_type_wins_over_message(self):
        # A schema error mentioning a timeout is still a schema error
        error = SchemaMismatchError("vector column timed out")
        assert not ErrorClassifier().is_transient(error)


class TestCounters:
    def test_counts_and_last_error(self):
        classifier = ErrorClassifier()
        classifier.classify_exception(TransientStreamError("first"), partition="stream-0")
        classifier.classify_exception(SchemaMismatchError("second"), partition="stream-1")

        stats = classifier.get_error_stats()
        assert stats["counts"] == {"permanent": 1, "transient": 1, "total": 2}
        assert stats["last_error"]["message"] == "second"
        assert stats["last_error"]["partition"] == "stream-1"
        assert stats["last_error"]["type"] == "SchemaMismatchError"

    def test_is_transient_does_not_count(self):
        classifier = ErrorClassifier()
        classifier.is_transient(TimeoutError())
        assert classifier.get_error_stats()["counts"]["total"] == 0

    def test_samples_are_bounded(self):
        counters = ErrorCounters(max_samples_per_type=2)
        classifier = ErrorClassifier(counters)
        for i in range(5):
            classifier.classify_exception(TransientStreamError(f"e{i}"))
        assert counters.transient == 5
        assert [s.message for s in counters.transient_samples] == ["e3", "e4"]

    def test_reset(self):
        classifier = ErrorClassifier()
        classifier.classify_exception(TimeoutError("t"))
        classifier.reset_stats()
        assert classifier.get_error_stats() == {
            "counts": {"permanent": 0, "transient": 0, "total": 0},
            "last_error": None,
        }
