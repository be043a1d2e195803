"""Tests for the USearch AnnIndex adapter."""

import numpy as np
import pytest

from vectorsync.core.types import IndexDefinition, Metric
from vectorsync.providers.ann.usearch_index import UsearchAnnIndex, create


def vec(*values):
    return np.asarray(values, dtype=np.float32)


class TestUsearchAnnIndex:
    def test_insert_query_remove(self):
        ann = UsearchAnnIndex(4)
        ann.insert(1, vec(1, 0, 0, 0))
        ann.insert(2, vec(0, 1, 0, 0))
        assert ann.size() == 2

        matches = ann.query(vec(1, 0, 0, 0), 2)
        assert matches[0][0] == 1
        assert ann.score(matches[0][1]) == pytest.approx(1.0, abs=1e-4)

        ann.remove(1)
        assert ann.size() == 1
        assert [label for label, _ in ann.query(vec(1, 0, 0, 0), 2)] == [2]

    def test_query_empty_index(self):
        ann = UsearchAnnIndex(4)
        assert ann.query(vec(1, 0, 0, 0), 5) == []
        ann.insert(1, vec(1, 0, 0, 0))
        assert ann.query(vec(1, 0, 0, 0), 0) == []

    @pytest.mark.parametrize(
        "metric, distance, expected",
        [
            (Metric.COS, 0.25, 0.75),
            (Metric.IP, 0.5, 0.5),
            (Metric.L2SQ, 1.0, 0.5),
            (Metric.L2SQ, 0.0, 1.0),
        ],
    )
    def test_score_higher_is_closer(self, metric, distance, expected):
        assert UsearchAnnIndex(4, metric=metric).score(distance) == pytest.approx(expected)

    def test_l2_nearest_first(self):
        ann = UsearchAnnIndex(2, metric=Metric.L2SQ)
        ann.insert(1, vec(0, 0))
        ann.insert(2, vec(3, 4))
        matches = ann.query(vec(3, 3), 2)
        assert [label for label, _ in matches] == [2, 1]
        assert matches[0][1] == pytest.approx(1.0)

    def test_from_definition(self):
        definition = IndexDefinition(
            name="i", table="t", vector_column="v", dimension=8, metric=Metric.IP
        )
        ann = UsearchAnnIndex.from_definition(definition)
        assert ann.ndim == 8

    def test_unknown_quantization(self):
        with pytest.raises(ValueError, match="Unknown quantization"):
            create(4, Metric.COS, "bf4", 16, 128, 64)

    def test_graph_settings_default_from_config(self):
        ann = UsearchAnnIndex(4, connectivity=8)
        assert ann._index.connectivity == 8
        assert ann._index.expansion_search == 64


class TestExactQuery:
    def test_rows_ranked_by_distance(self):
        ann = UsearchAnnIndex(4)
        rows = np.stack([vec(0, 1, 0, 0), vec(1, 0, 0, 0), vec(1, 1, 0, 0)])
        matches = ann.exact_query(rows, vec(1, 0, 0, 0), 3)
        assert [row for row, _ in matches] == [1, 2, 0]
        assert ann.score(matches[0][1]) == pytest.approx(1.0, abs=1e-4)

    def test_count_capped_at_rows(self):
        ann = UsearchAnnIndex(2, metric=Metric.L2SQ)
        rows = np.stack([vec(0, 0), vec(3, 4)])
        matches = ann.exact_query(rows, vec(3, 3), 10)
        assert [row for row, _ in matches] == [1, 0]
        assert matches[0][1] == pytest.approx(1.0)

    def test_no_rows(self):
        ann = UsearchAnnIndex(4)
        assert ann.exact_query(np.empty((0, 4), dtype=np.float32), vec(1, 0, 0, 0), 3) == []
