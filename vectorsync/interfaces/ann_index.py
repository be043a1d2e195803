"""AnnIndex protocol - the narrow capability the index core needs from an ANN library."""

from typing import Protocol

import numpy as np


class AnnIndex(Protocol):
    """Approximate nearest-neighbor capability over integer labels.

    Implementations are not assumed to be safe for mutation during reads; the
    index core serializes access around every call.
    """

    @property
    def ndim(self) -> int:
        """Vector dimensionality."""
        ...

    def insert(self, label: int, vector: np.ndarray) -> None:
        """Add a vector under a label that is not currently present.

        Raises:
            IndexCapacityOrCorruptionError: If the native index cannot accept it
        """
        ...

    def remove(self, label: int) -> None:
        """Remove a label. Removing an absent label is a no-op."""
        ...

    def query(self, vector: np.ndarray, count: int) -> list[tuple[int, float]]:
        """Return up to ``count`` (label, distance) pairs, nearest first."""
        ...

    def exact_query(
        self, vectors: np.ndarray, vector: np.ndarray, count: int
    ) -> list[tuple[int, float]]:
        """Exhaustively score the rows of ``vectors``; return (row, distance) pairs, nearest first."""
        ...

    def size(self) -> int:
        """Number of labels currently stored."""
        ...

    def score(self, distance: float) -> float:
        """Convert a native distance into a similarity score (higher is closer)."""
        ...
