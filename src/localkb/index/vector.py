"""Flat (brute-force) dense vector index."""

from __future__ import annotations

import io
from typing import Collection, Dict, List, Tuple

import numpy as np

from localkb.errors import PersistenceError

_EPS = 1e-12


class FlatVectorIndex:
    """In-memory map of chunk id to vector with exhaustive cosine search.

    Iteration order is insertion order; re-upserting an id keeps its
    original position, which makes tie-breaking deterministic.
    """

    def __init__(self) -> None:
        self._vectors: Dict[str, np.ndarray] = {}
        self._norms: Dict[str, float] = {}
        self.dimension: int | None = None

    def __len__(self) -> int:
        return len(self._vectors)

    def __contains__(self, chunk_id: str) -> bool:
        return chunk_id in self._vectors

    def ids(self) -> List[str]:
        return list(self._vectors)

    def get(self, chunk_id: str) -> np.ndarray | None:
        return self._vectors.get(chunk_id)

    def upsert(self, chunk_id: str, vector: np.ndarray) -> None:
        array = np.asarray(vector, dtype="float32").reshape(-1)
        if self.dimension is None or not self._vectors:
            self.dimension = int(array.shape[0])
        elif array.shape[0] != self.dimension:
            raise ValueError(
                f"Vector for {chunk_id} has dimension {array.shape[0]}, expected {self.dimension}"
            )
        self._vectors[chunk_id] = array
        self._norms[chunk_id] = float(np.linalg.norm(array))

    def remove(self, chunk_id: str) -> bool:
        if self._vectors.pop(chunk_id, None) is None:
            return False
        self._norms.pop(chunk_id, None)
        return True

    def search(
        self,
        query: np.ndarray,
        limit: int,
        *,
        allowed: Collection[str] | None = None,
    ) -> List[Tuple[str, float]]:
        """Return up to ``limit`` ``(id, cosine)`` pairs, best first."""
        if limit <= 0 or not self._vectors:
            return []
        ids = [cid for cid in self._vectors if allowed is None or cid in allowed]
        if not ids:
            return []
        query_vec = np.asarray(query, dtype="float32").reshape(-1)
        query_norm = float(np.linalg.norm(query_vec))
        if query_norm < _EPS:
            return []

        matrix = np.vstack([self._vectors[cid] for cid in ids])
        norms = np.array([self._norms[cid] for cid in ids], dtype="float32")
        denom = np.maximum(norms * query_norm, _EPS)
        scores = (matrix @ query_vec) / denom
        # stable sort keeps insertion order among equal scores
        order = np.argsort(-scores, kind="stable")[:limit]
        return [(ids[i], float(scores[i])) for i in order if np.isfinite(scores[i])]

    def dumps(self) -> bytes:
        buffer = io.BytesIO()
        ids = list(self._vectors)
        if ids:
            matrix = np.vstack([self._vectors[cid] for cid in ids])
            id_array = np.array(ids)
        else:
            matrix = np.zeros((0, self.dimension or 0), dtype="float32")
            id_array = np.array([], dtype="<U1")
        np.savez(buffer, ids=id_array, vectors=matrix)
        return buffer.getvalue()

    @classmethod
    def loads(cls, payload: bytes) -> "FlatVectorIndex":
        index = cls()
        try:
            with np.load(io.BytesIO(payload), allow_pickle=False) as data:
                ids = data["ids"]
                vectors = data["vectors"]
        except (OSError, ValueError, KeyError) as exc:
            raise PersistenceError(f"Unreadable vector snapshot: {exc}") from exc
        for chunk_id, vector in zip(ids, vectors):
            index.upsert(str(chunk_id), vector)
        return index
