"""Thread-safe in-memory cosine-similarity index keyed by memory id."""

from __future__ import annotations

import heapq
import math
import operator
import threading
from collections.abc import Iterable, Sequence


def _l2_norm(vector: Sequence[float]) -> float:
    return math.sqrt(sum(map(operator.mul, vector, vector)))


def _cosine_similarity(
    a: Sequence[float], b: Sequence[float], norm_a: float, norm_b: float
) -> float:
    if len(a) != len(b) or norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return sum(map(operator.mul, a, b)) / (norm_a * norm_b)


def _total_order_key(score: float) -> tuple[int, float]:
    """Sort key giving floats a total order, with NaN at the extremes by sign."""
    if math.isnan(score):
        return (1 if math.copysign(1.0, score) > 0 else -1, 0.0)
    return (0, score)


class InMemoryVectorIndex:
    """Id-keyed vector store with O(1) upsert/remove and top-k cosine search."""

    def __init__(self, dim: int) -> None:
        self._dim = dim
        self._lock = threading.RLock()
        self._ids: list[str] = []
        self._vectors: list[tuple[float, ...]] = []
        self._norms: list[float] = []
        self._index_of: dict[str, int] = {}

    def dim(self) -> int:
        """Dimension the index was created for."""
        return self._dim

    def _upsert(self, memory_id: str, vector: Sequence[float]) -> None:
        values = tuple(float(x) for x in vector)
        norm = _l2_norm(values)
        idx = self._index_of.get(memory_id)
        if idx is not None:
            self._vectors[idx] = values
            self._norms[idx] = norm
        else:
            self._index_of[memory_id] = len(self._ids)
            self._ids.append(memory_id)
            self._vectors.append(values)
            self._norms.append(norm)

    def add(self, memory_id: str, vector: Sequence[float]) -> None:
        """Insert or replace the vector stored under ``memory_id``."""
        if len(vector) != self._dim:
            raise ValueError(
                f"Vector dimension mismatch: expected {self._dim}, got {len(vector)}"
            )
        with self._lock:
            self._upsert(memory_id, vector)

    def remove(self, memory_id: str) -> None:
        """Drop ``memory_id`` if present, swapping the last entry into its slot."""
        with self._lock:
            idx = self._index_of.pop(memory_id, None)
            if idx is None:
                return
            last = len(self._ids) - 1
            if idx != last:
                for column in (self._ids, self._vectors, self._norms):
                    column[idx], column[last] = column[last], column[idx]
                self._index_of[self._ids[idx]] = idx
            self._ids.pop()
            self._vectors.pop()
            self._norms.pop()

    def search(self, query: Sequence[float], limit: int) -> list[tuple[str, float]]:
        """Return up to ``limit`` ``(id, score)`` pairs, best cosine score first.

        Scores lie in [-1, 1] for non-zero vectors and are 0.0 when either
        vector is zero or the lengths differ.
        """
        if limit <= 0:
            return []
        query = tuple(float(x) for x in query)
        query_norm = _l2_norm(query)
        with self._lock:
            scored = (
                (_cosine_similarity(query, vector, query_norm, norm), i)
                for i, (vector, norm) in enumerate(zip(self._vectors, self._norms))
            )
            top = heapq.nlargest(
                limit, scored, key=lambda item: (_total_order_key(item[0]), item[1])
            )
            return [(self._ids[i], score) for score, i in top]

    def rebuild(self, items: Iterable[tuple[str, Sequence[float]]]) -> None:
        """Replace the whole index contents with ``items``."""
        with self._lock:
            self._ids.clear()
            self._vectors.clear()
            self._norms.clear()
            self._index_of.clear()
            for memory_id, vector in items:
                self._upsert(memory_id, vector)

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)

    def __contains__(self, memory_id: object) -> bool:
        with self._lock:
            return memory_id in self._index_of