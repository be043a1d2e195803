import os

import numpy as np
import pytest

from vectorsync.core.config.database_config import DatabaseConfig
from vectorsync.core.config.sync_config import StreamConfig
from vectorsync.core.exceptions import IndexCapacityOrCorruptionError
from vectorsync.core.types import IndexDefinition, Metric
from vectorsync.providers.ann.usearch_index import UsearchAnnIndex
from vectorsync.providers.database.duckdb_checkpoint_store import DuckDBCheckpointStore
from vectorsync.providers.source.memory_table import InMemoryTable
from vectorsync.services.change_mapper import ChangeMapper
from vectorsync.services.index_core import IndexCore
from vectorsync.services.stream_consumer import StreamConsumer

TABLE = "shop.items"


def pytest_addoption(parser):
    parser.addoption(
        "--run-slow",
        action="store_true",
        default=False,
        help="Run slow stress tests",
    )


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "slow: mark slow stress tests (use --run-slow)"
    )


def pytest_collection_modifyitems(config, items):
    # Slow tests - CLI flag or env var
    run_slow = (
        config.getoption("--run-slow")
        or os.getenv("VECTORSYNC_RUN_SLOW_TESTS") == "1"
    )
    if not run_slow:
        skip_slow = pytest.mark.skip(
            reason="slow tests skipped (use --run-slow or VECTORSYNC_RUN_SLOW_TESTS=1)"
        )
        for item in items:
            if "slow" in item.keywords:
                item.add_marker(skip_slow)


@pytest.fixture
def clean_environment(monkeypatch):
    """Ensure tests run without VECTORSYNC_* overrides from the outer shell."""
    for k in [k for k in os.environ.keys() if k.startswith("VECTORSYNC_")]:
        monkeypatch.delenv(k, raising=False)
    yield


class FlakyAnnIndex:
    """Wraps a real ANN index with switchable faults.

    ``fail_inserts`` makes inserts fail; ``miss_queries`` makes graph queries
    find nothing, as an HNSW walk that never reaches the live labels.
    """

    def __init__(self, inner: UsearchAnnIndex):
        self.inner = inner
        self.fail_inserts = False
        self.miss_queries = False

    @property
    def ndim(self) -> int:
        return self.inner.ndim

    def insert(self, label, vector):
        if self.fail_inserts:
            raise IndexCapacityOrCorruptionError("simulated capacity failure")
        self.inner.insert(label, vector)

    def remove(self, label):
        self.inner.remove(label)

    def query(self, vector, count):
        if self.miss_queries:
            return []
        return self.inner.query(vector, count)

    def exact_query(self, vectors, vector, count):
        return self.inner.exact_query(vectors, vector, count)

    def size(self):
        return self.inner.size()

    def score(self, distance):
        return self.inner.score(distance)


def unit(*components: float) -> list[float]:
    """Normalized float list, handy for cosine expectations."""
    v = np.asarray(components, dtype=np.float32)
    return (v / np.linalg.norm(v)).tolist()


@pytest.fixture
def definition() -> IndexDefinition:
    return IndexDefinition(
        name="items_embedding_idx",
        table=TABLE,
        vector_column="embedding",
        dimension=4,
        metric=Metric.COS,
        metadata_columns=("category",),
    )


@pytest.fixture
def core(definition) -> IndexCore:
    return IndexCore(definition, UsearchAnnIndex.from_definition(definition))


@pytest.fixture
def mapper(definition) -> ChangeMapper:
    return ChangeMapper(definition)


@pytest.fixture
def table() -> InMemoryTable:
    return InMemoryTable(TABLE, partitions=2, scan_ranges=3, page_size=4)


@pytest.fixture
def single_partition_table() -> InMemoryTable:
    return InMemoryTable(TABLE, partitions=1, scan_ranges=1, page_size=4)


@pytest.fixture
def checkpoint_store(tmp_path):
    store = DuckDBCheckpointStore(DatabaseConfig(path=tmp_path / "checkpoints.duckdb"))
    yield store
    store.close()


@pytest.fixture
def fast_stream_config() -> StreamConfig:
    return StreamConfig(
        poll_interval_seconds=0.01,
        backoff_base_seconds=0.01,
        backoff_max_seconds=0.05,
        drain_timeout_seconds=5.0,
    )


@pytest.fixture
def make_consumer(definition, core, mapper, checkpoint_store, fast_stream_config):
    """Factory for consumers; keyword overrides go to StreamConfig unless core/checkpoints."""

    def factory(stream, partition, core_override=None, checkpoints=None, **overrides):
        config = fast_stream_config.model_copy(update=overrides)
        return StreamConsumer(
            definition,
            partition,
            core_override or core,
            mapper,
            stream,
            checkpoints or checkpoint_store,
            config,
        )

    return factory
