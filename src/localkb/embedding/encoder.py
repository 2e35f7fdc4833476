"""Embedding model management."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Literal, Protocol, Sequence

import numpy as np
from sentence_transformers import SentenceTransformer

DEFAULT_MODEL = "sentence-transformers/all-MiniLM-L6-v2"

logger = logging.getLogger(__name__)


class Embedder(Protocol):
    """Anything that turns texts into a ``(n, dim)`` float32 matrix."""

    model_name: str

    def embed(self, texts: Sequence[str] | Iterable[str]) -> np.ndarray: ...


@dataclass(slots=True)
class EmbeddingConfig:
    model_name: str = DEFAULT_MODEL
    batch_size: int = 16
    normalize: bool = True
    backend: Literal["torch", "onnx", "openvino"] = "torch"
    device: str | None = None
    cache_folder: str | None = None


class EmbeddingModel:
    """Thin wrapper around `SentenceTransformer` for query and document embeddings.

    The model is loaded lazily on first use so opening a store for stats or
    document retrieval never pays the model start-up cost.
    """

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self.config = config or EmbeddingConfig()
        self._model: SentenceTransformer | None = None

    @property
    def model_name(self) -> str:
        return self.config.model_name

    def _load_model(self) -> SentenceTransformer:
        if self._model is None:
            logger.info(
                "Loading embedding model %s (backend: %s)",
                self.config.model_name,
                self.config.backend,
            )
            self._model = SentenceTransformer(
                self.config.model_name,
                backend=self.config.backend,
                device=self.config.device,
                cache_folder=self.config.cache_folder,
            )
        return self._model

    @property
    def dimension(self) -> int:
        return int(self._load_model().get_sentence_embedding_dimension())

    def embed(self, texts: Sequence[str] | Iterable[str]) -> np.ndarray:
        """Return float32 embeddings for input texts."""
        sentences = list(texts)
        embeddings = self._load_model().encode(
            sentences,
            batch_size=self.config.batch_size,
            show_progress_bar=False,
            convert_to_numpy=True,
            normalize_embeddings=self.config.normalize,
        )
        return embeddings.astype("float32", copy=False)

    def embed_query(self, text: str) -> np.ndarray:
        """Convenience wrapper for single-query embedding."""
        return self.embed([text])[0]
