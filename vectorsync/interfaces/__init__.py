"""Interfaces for the external collaborators of the synchronization engine."""

from vectorsync.interfaces.ann_index import AnnIndex
from vectorsync.interfaces.change_source import ChangeStream, RowScanSource
from vectorsync.interfaces.checkpoint_store import CheckpointStore

__all__ = ["AnnIndex", "ChangeStream", "CheckpointStore", "RowScanSource"]
