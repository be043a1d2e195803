"""Concurrency-safe index core over one ANN index instance.

# FILE_CONTEXT: Shared by stream consumers, backfill workers and query tasks
# CRITICAL: Readers never observe a half-applied mutation
# CONSTRAINT: No lock is held across ANN calls other than the ANN guard itself

Design:
- Every applied mutation bumps a generation counter. A reader pins the
  generation current when it starts (IndexHandle) and only sees entries born
  at or before it and not yet superseded at it.
- Each upsert inserts the new vector under a fresh ANN label. The previous
  label of the key is retired, not removed: it stays in the ANN graph,
  invisible to newer readers, until no reader pinned at an older generation
  remains. Removal from the ANN happens then (reclamation).
- Mutations of the same key are serialized by striped per-key locks and
  compare-and-set on the key's Version, so an older or replayed event can never
  overwrite a newer one. Deletes leave a versioned tombstone for the same
  reason.
- The ANN capability is not assumed to tolerate mutation during reads. A
  reader/writer lock is held for the duration of each single native call only.
"""

from __future__ import annotations

import itertools
import threading
from collections import Counter, deque
from dataclasses import dataclass
from typing import Any

import fasteners
import numpy as np
from loguru import logger

from vectorsync.core.config.index_config import IndexConfig
from vectorsync.core.exceptions import (
    IndexCapacityOrCorruptionError,
    IndexDegradedError,
)
from vectorsync.core.types import (
    ChangeEvent,
    IndexDefinition,
    Metadata,
    Origin,
    PrimaryKey,
    SearchResult,
    VectorRecord,
    Version,
)
from vectorsync.interfaces.ann_index import AnnIndex


@dataclass
class _Entry:
    """One ANN label and the record it carries."""

    label: int
    record: VectorRecord
    born: int
    died: int | None = None

    def visible_at(self, generation: int) -> bool:
        died = self.died
        return self.born <= generation and (died is None or died > generation)


@dataclass(frozen=True)
class _KeyState:
    """Applied state of one key; entry is None for a tombstone."""

    version: Version
    entry: _Entry | None


def _matches_filter(metadata: Metadata, filter: Metadata | None) -> bool:
    if not filter:
        return True
    return all(metadata.get(name) == value for name, value in filter.items())


class IndexHandle:
    """Point-in-time read view of an IndexCore.

    Holding a handle pins its generation: entries visible to it are kept in
    the ANN graph until the handle is closed. Use as a context manager.
    """

    def __init__(self, core: IndexCore, generation: int, size: int):
        self._core = core
        self.generation = generation
        self.size = size
        self._closed = False

    def search(
        self, vector: Any, k: int, filter: Metadata | None = None
    ) -> list[SearchResult]:
        """Up to k nearest records visible at this handle's generation."""
        if self._closed:
            raise RuntimeError("IndexHandle is closed")
        return self._core._search_at(self.generation, self.size, vector, k, filter)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._core._release(self.generation)

    def __enter__(self) -> IndexHandle:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"IndexHandle(generation={self.generation}, size={self.size})"


class IndexCore:
    """Thread-safe facade over one ANN index with versioned per-key state.

    Key invariants:
    - At most one live record per key
    - Applied state of a key is the mutation with the highest Version seen
    - Re-applying an already reflected mutation changes nothing
    - An ANN failure degrades the core: searches continue, mutations are refused
    """

    def __init__(
        self,
        definition: IndexDefinition,
        ann: AnnIndex,
        config: IndexConfig | None = None,
    ):
        if ann.ndim != definition.dimension:
            raise ValueError(
                f"ANN dimension {ann.ndim} does not match index dimension {definition.dimension}"
            )
        config = config or IndexConfig()
        self.definition = definition
        self._ann = ann
        self._max_vectors = config.max_vectors

        self._ann_lock = fasteners.ReaderWriterLock()
        self._key_locks = [threading.Lock() for _ in range(config.key_lock_stripes)]
        self._state_lock = threading.Lock()  # Protects everything below

        self._keys: dict[PrimaryKey, _KeyState] = {}
        self._entries: dict[int, _Entry] = {}
        self._retired: deque[_Entry] = deque()
        self._pins: Counter[int] = Counter()
        self._labels = itertools.count(1)
        self._generation = 0
        self._live_count = 0
        self._degraded_reason: str | None = None

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def degraded(self) -> bool:
        return self._degraded_reason is not None

    @property
    def degraded_reason(self) -> str | None:
        return self._degraded_reason

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def upsert(
        self,
        key: PrimaryKey,
        vector: Any,
        version: Version | None = None,
        metadata: Metadata | None = None,
    ) -> bool:
        """Insert or replace the vector for ``key``.

        Args:
            key: Ordered byte key
            vector: Sequence of ``dimension`` finite floats
            version: Version stamp; None means newer than whatever is applied
            metadata: Optional scalar metadata stored with the record

        Returns:
            True if applied, False if an equal or newer version was already applied

        Raises:
            IndexDegradedError: If the core was degraded by an earlier failure
            IndexCapacityOrCorruptionError: If the ANN rejects the insert
        """
        self._check_writable()
        prepared = self._prepare_vector(vector)

        with self._key_lock(key):
            with self._state_lock:
                # Degradation may have happened while waiting for the key
                self._check_writable()
                state = self._keys.get(key)
                if version is None:
                    version = self._next_version(state)
                if state is not None and version <= state.version:
                    return False
                if (
                    self._max_vectors is not None
                    and (state is None or state.entry is None)
                    and self._live_count >= self._max_vectors
                ):
                    error = IndexCapacityOrCorruptionError(
                        f"Index '{self.name}' reached its limit of {self._max_vectors} vectors"
                    )
                    self._mark_degraded(error)
                    raise error
                label = next(self._labels)

            try:
                with self._ann_lock.write_lock():
                    self._ann.insert(label, prepared)
            except IndexCapacityOrCorruptionError as e:
                self._mark_degraded(e)
                raise

            record = VectorRecord(key=key, vector=prepared, version=version, metadata=dict(metadata or {}))
            with self._state_lock:
                self._generation += 1
                entry = _Entry(label=label, record=record, born=self._generation)
                self._entries[label] = entry
                if state is not None and state.entry is not None:
                    self._retire(state.entry)
                else:
                    self._live_count += 1
                self._keys[key] = _KeyState(version, entry)
                reclaimable = self._collect_reclaimable()

        self._reclaim(reclaimable)
        return True

    def remove(self, key: PrimaryKey, version: Version | None = None) -> bool:
        """Delete the vector for ``key`` if present.

        Removing an absent key is not an error; the tombstone is still
        recorded so that an older upsert arriving later stays ignored.

        Returns:
            True if a live record was removed
        """
        self._check_writable()
        with self._key_lock(key):
            with self._state_lock:
                self._check_writable()
                state = self._keys.get(key)
                if version is None:
                    version = self._next_version(state)
                if state is not None and version <= state.version:
                    return False
                self._keys[key] = _KeyState(version, None)
                if state is None or state.entry is None:
                    return False
                self._generation += 1
                self._retire(state.entry)
                self._live_count -= 1
                reclaimable = self._collect_reclaimable()

        self._reclaim(reclaimable)
        return True

    def apply(self, event: ChangeEvent) -> bool:
        """Apply a normalized change event under its own version."""
        if event.is_tombstone:
            return self.remove(event.key, event.version)
        if event.vector is None:
            raise ValueError(f"Upsert event at position {event.position} carries no vector")
        return self.upsert(event.key, event.vector, event.version, event.metadata)

    def apply_batch(self, events: list[ChangeEvent]) -> int:
        """Apply events in order; return how many changed the index."""
        applied = 0
        for event in events:
            if self.apply(event):
                applied += 1
        return applied

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def snapshot(self) -> IndexHandle:
        """Pin the current generation and return a read handle for it."""
        with self._state_lock:
            generation = self._generation
            self._pins[generation] += 1
            return IndexHandle(self, generation, self._live_count)

    def search(
        self, vector: Any, k: int, filter: Metadata | None = None
    ) -> list[SearchResult]:
        """Search against a snapshot taken when the call begins."""
        with self.snapshot() as handle:
            return handle.search(vector, k, filter)

    def size(self) -> int:
        return self._live_count

    def get(self, key: PrimaryKey) -> VectorRecord | None:
        """Currently applied record for ``key``, None if absent or deleted."""
        state = self._keys.get(key)
        if state is None or state.entry is None:
            return None
        return state.entry.record

    def version_of(self, key: PrimaryKey) -> Version | None:
        """Applied version of ``key``, tombstones included."""
        state = self._keys.get(key)
        return state.version if state is not None else None

    def stats(self) -> dict[str, Any]:
        with self._state_lock:
            return {
                "name": self.name,
                "generation": self._generation,
                "size": self._live_count,
                "ann_size": len(self._entries),
                "retired": len(self._retired),
                "tombstones": sum(1 for s in self._keys.values() if s.entry is None),
                "pinned_readers": sum(self._pins.values()),
                "degraded": self._degraded_reason,
            }

    def prune_tombstones(self, below: int) -> int:
        """Forget tombstones whose version position is below ``below``.

        Only safe once no event older than ``below`` can be applied again,
        i.e. the backfill is over and every partition resumes at or past it.

        Returns:
            Number of tombstones dropped
        """
        with self._state_lock:
            stale = [
                key
                for key, state in self._keys.items()
                if state.entry is None and state.version.position < below
            ]
            for key in stale:
                del self._keys[key]
        if stale:
            logger.debug(f"Index '{self.name}': pruned {len(stale)} tombstones below {below}")
        return len(stale)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _search_at(
        self,
        generation: int,
        visible_size: int,
        vector: Any,
        k: int,
        filter: Metadata | None,
    ) -> list[SearchResult]:
        if k <= 0 or visible_size == 0:
            return []
        query = self._prepare_vector(vector)

        count = 0
        results: dict[PrimaryKey, SearchResult] = {}
        while True:
            with self._ann_lock.read_lock():
                ann_size = self._ann.size()
                if count == 0:
                    # Labels invisible to this generation still occupy the graph
                    hidden = max(0, ann_size - visible_size)
                    count = min(ann_size, k + hidden)
                matches = self._ann.query(query, count)

            for label, distance in matches:
                entry = self._entries.get(label)
                if entry is None or not entry.visible_at(generation):
                    continue
                record = entry.record
                if not _matches_filter(record.metadata, filter):
                    continue
                results[record.key] = SearchResult(
                    key=record.key,
                    score=self._ann.score(distance),
                    metadata=record.metadata,
                )

            if len(results) >= k or count >= ann_size:
                break
            count = min(ann_size, count * 2)

        if len(results) < min(k, visible_size):
            # The graph walk can miss visible labels crowded out by retired near-duplicates
            results = self._exact_search_at(generation, query, filter)

        ranked = sorted(results.values(), key=lambda r: (-r.score, r.key))
        return ranked[:k]

    def _exact_search_at(
        self, generation: int, query: np.ndarray, filter: Metadata | None
    ) -> dict[PrimaryKey, SearchResult]:
        """Score every record visible at ``generation`` without the graph."""
        with self._state_lock:
            records = [
                entry.record
                for entry in self._entries.values()
                if entry.visible_at(generation) and _matches_filter(entry.record.metadata, filter)
            ]
        if not records:
            return {}

        vectors = np.stack([record.vector for record in records])
        results: dict[PrimaryKey, SearchResult] = {}
        for row, distance in self._ann.exact_query(vectors, query, len(records)):
            record = records[row]
            results[record.key] = SearchResult(
                key=record.key,
                score=self._ann.score(distance),
                metadata=record.metadata,
            )
        return results

    def _release(self, generation: int) -> None:
        with self._state_lock:
            self._pins[generation] -= 1
            if self._pins[generation] <= 0:
                del self._pins[generation]
            reclaimable = self._collect_reclaimable()
        try:
            self._reclaim(reclaimable)
        except IndexCapacityOrCorruptionError:
            # Already logged and degraded; releasing a reader must not fail
            pass

    def _retire(self, entry: _Entry) -> None:
        """Mark an entry superseded at the current generation (state lock held)."""
        entry.died = self._generation
        self._retired.append(entry)

    def _collect_reclaimable(self) -> list[_Entry]:
        """Pop retired entries no pinned reader can see (state lock held)."""
        oldest_pin = min(self._pins) if self._pins else None
        reclaimable = []
        while self._retired:
            entry = self._retired[0]
            if oldest_pin is not None and entry.died is not None and entry.died > oldest_pin:
                break
            self._retired.popleft()
            self._entries.pop(entry.label, None)
            reclaimable.append(entry)
        return reclaimable

    def _reclaim(self, entries: list[_Entry]) -> None:
        if not entries:
            return
        try:
            with self._ann_lock.write_lock():
                for entry in entries:
                    self._ann.remove(entry.label)
        except IndexCapacityOrCorruptionError as e:
            self._mark_degraded(e)
            raise

    def _key_lock(self, key: PrimaryKey) -> threading.Lock:
        return self._key_locks[hash(key) % len(self._key_locks)]

    @staticmethod
    def _next_version(state: _KeyState | None) -> Version:
        if state is None:
            return Version(0, Origin.STREAM)
        return Version(state.version.position + 1, Origin.STREAM)

    def _prepare_vector(self, vector: Any) -> np.ndarray:
        array = np.array(vector, dtype=np.float32).reshape(-1)
        if array.shape[0] != self.definition.dimension:
            raise ValueError(
                f"Vector dimension {array.shape[0]} does not match index "
                f"dimension {self.definition.dimension}"
            )
        if not np.all(np.isfinite(array)):
            raise ValueError("Vector contains non-finite values")
        array.flags.writeable = False
        return array

    def _check_writable(self) -> None:
        if self._degraded_reason is not None:
            raise IndexDegradedError(
                f"Index '{self.name}' is degraded and refuses mutations: {self._degraded_reason}"
            )

    def _mark_degraded(self, error: Exception) -> None:
        if self._degraded_reason is None:
            self._degraded_reason = str(error)
            logger.error(f"Index '{self.name}' marked degraded: {error}")
