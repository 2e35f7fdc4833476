"""Embedding cache keyed by ``(identity, model)``."""

from __future__ import annotations

import io
import logging
import threading
from collections import OrderedDict
from typing import Dict, Iterable, Tuple

import numpy as np

from localkb.embedding.encoder import Embedder
from localkb.errors import PersistenceError

LOGGER = logging.getLogger(__name__)

QUERY_PREFIX = "query:"


def query_identity(text: str) -> str:
    return f"{QUERY_PREFIX}{text}"


class EmbeddingCache:
    """Return cached vectors and compute only on a miss.

    Corpus identities (chunk ids) are kept until evicted and are part of the
    persisted snapshot. Query identities go to a bounded LRU that is never
    persisted. All access is guarded by a lock so extraction workers may embed
    concurrently.
    """

    def __init__(self, embedder: Embedder, *, query_cache_size: int = 256) -> None:
        self.embedder = embedder
        self.query_cache_size = query_cache_size
        self._vectors: Dict[Tuple[str, str], np.ndarray] = {}
        self._queries: "OrderedDict[Tuple[str, str], np.ndarray]" = OrderedDict()
        self._lock = threading.Lock()

    @property
    def model_name(self) -> str:
        return self.embedder.model_name

    def __len__(self) -> int:
        return len(self._vectors)

    def __contains__(self, identity: str) -> bool:
        return (identity, self.model_name) in self._vectors

    def get(self, identity: str, model: str | None = None) -> np.ndarray | None:
        return self._vectors.get((identity, model or self.model_name))

    def embed_text(self, text: str, identity: str, model: str | None = None) -> np.ndarray:
        """Return the vector for ``identity``, embedding ``text`` on a miss."""
        key = (identity, model or self.model_name)
        is_query = identity.startswith(QUERY_PREFIX)
        with self._lock:
            cached = self._queries.get(key) if is_query else self._vectors.get(key)
            if cached is not None:
                if is_query:
                    self._queries.move_to_end(key)
                LOGGER.debug("Embedding cache hit for %s", identity)
                return cached

        vector = np.asarray(self.embedder.embed([text])[0], dtype="float32")
        with self._lock:
            if is_query:
                self._queries[key] = vector
                while len(self._queries) > self.query_cache_size:
                    self._queries.popitem(last=False)
            else:
                self._vectors[key] = vector
        return vector

    def embed_many(self, items: Iterable[Tuple[str, str]]) -> list[np.ndarray]:
        """Embed ``(identity, text)`` pairs, batching every miss in one call."""
        pairs = list(items)
        model = self.model_name
        with self._lock:
            missing = [
                (identity, text) for identity, text in pairs if (identity, model) not in self._vectors
            ]
        if missing:
            fresh = self.embedder.embed([text for _, text in missing])
            with self._lock:
                for (identity, _), vector in zip(missing, fresh):
                    self._vectors[(identity, model)] = np.asarray(vector, dtype="float32")
        with self._lock:
            return [self._vectors[(identity, model)] for identity, _ in pairs]

    def evict(self, identities: Iterable[str]) -> int:
        """Drop corpus entries for every model; returns how many were removed."""
        drop = set(identities)
        with self._lock:
            keys = [key for key in self._vectors if key[0] in drop]
            for key in keys:
                del self._vectors[key]
        return len(keys)

    def retain_model(self, model: str) -> int:
        """Drop corpus entries computed by any other model."""
        with self._lock:
            keys = [key for key in self._vectors if key[1] != model]
            for key in keys:
                del self._vectors[key]
        return len(keys)

    def items(self) -> list[Tuple[Tuple[str, str], np.ndarray]]:
        with self._lock:
            return list(self._vectors.items())

    def dumps(self) -> bytes:
        """Serialize corpus entries as an ``.npz`` payload."""
        entries = sorted(self.items(), key=lambda item: item[0])
        buffer = io.BytesIO()
        if entries:
            identities = np.array([key[0] for key, _ in entries])
            models = np.array([key[1] for key, _ in entries])
            vectors = np.vstack([vector for _, vector in entries]).astype("float32")
        else:
            identities = np.array([], dtype="<U1")
            models = np.array([], dtype="<U1")
            vectors = np.zeros((0, 0), dtype="float32")
        np.savez(buffer, identities=identities, models=models, vectors=vectors)
        return buffer.getvalue()

    def loads(self, payload: bytes) -> None:
        try:
            with np.load(io.BytesIO(payload), allow_pickle=False) as data:
                identities = data["identities"]
                models = data["models"]
                vectors = data["vectors"]
        except (OSError, ValueError, KeyError) as exc:
            raise PersistenceError(f"Unreadable embedding cache snapshot: {exc}") from exc
        with self._lock:
            self._vectors = {
                (str(identity), str(model)): np.array(vector, dtype="float32")
                for identity, model, vector in zip(identities, models, vectors)
            }
