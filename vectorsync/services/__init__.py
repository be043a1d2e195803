"""Service layer for vectorsync - synchronization pipelines, index core and queries."""

from .backfill import BackfillPipeline, BackfillState
from .change_mapper import ChangeMapper
from .index_core import IndexCore, IndexHandle
from .index_registry import IndexEntry, IndexRegistry, IndexState
from .query_service import QueryService
from .stream_consumer import PartitionState, StreamConsumer

__all__ = [
    "BackfillPipeline",
    "BackfillState",
    "ChangeMapper",
    "IndexCore",
    "IndexEntry",
    "IndexHandle",
    "IndexRegistry",
    "IndexState",
    "PartitionState",
    "QueryService",
    "StreamConsumer",
]
