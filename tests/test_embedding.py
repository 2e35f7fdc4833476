"""Tests for the embedding model wrapper and the embedding cache."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from localkb.embedding.cache import EmbeddingCache, query_identity
from localkb.embedding.encoder import DEFAULT_MODEL, EmbeddingConfig, EmbeddingModel
from localkb.errors import PersistenceError

from conftest import HashingEmbedder


class TestEmbeddingModel:
    """Test EmbeddingModel with a mocked SentenceTransformer."""

    @patch("localkb.embedding.encoder.SentenceTransformer")
    def test_model_is_loaded_lazily(self, mock_st: MagicMock) -> None:
        model = EmbeddingModel()

        assert model.model_name == DEFAULT_MODEL
        mock_st.assert_not_called()

    @patch("localkb.embedding.encoder.SentenceTransformer")
    def test_embed_returns_float32(self, mock_st: MagicMock) -> None:
        mock_st.return_value.encode.return_value = np.ones((2, 3), dtype="float64")
        model = EmbeddingModel(EmbeddingConfig(model_name="m", batch_size=4))

        result = model.embed(["a", "b"])

        assert result.dtype == np.float32
        assert result.shape == (2, 3)
        kwargs = mock_st.return_value.encode.call_args[1]
        assert kwargs["batch_size"] == 4
        assert kwargs["normalize_embeddings"] is True
        mock_st.assert_called_once()
        assert mock_st.call_args[0][0] == "m"

    @patch("localkb.embedding.encoder.SentenceTransformer")
    def test_embed_query(self, mock_st: MagicMock) -> None:
        mock_st.return_value.encode.return_value = np.array([[0.5, 0.5]], dtype="float32")

        vector = EmbeddingModel().embed_query("hello")

        assert vector.tolist() == [0.5, 0.5]

    @patch("localkb.embedding.encoder.SentenceTransformer")
    def test_dimension(self, mock_st: MagicMock) -> None:
        mock_st.return_value.get_sentence_embedding_dimension.return_value = 384

        assert EmbeddingModel().dimension == 384


class TestEmbeddingCache:
    """Test cache hits, misses, eviction and persistence."""

    def test_embed_text_caches_corpus_identity(self) -> None:
        embedder = HashingEmbedder()
        cache = EmbeddingCache(embedder)

        first = cache.embed_text("hello world", "chunk-1")
        second = cache.embed_text("different text ignored", "chunk-1")

        assert np.array_equal(first, second)
        assert len(embedder.calls) == 1
        assert "chunk-1" in cache

    def test_query_identities_are_not_corpus_entries(self) -> None:
        cache = EmbeddingCache(HashingEmbedder())

        cache.embed_text("what is this", query_identity("what is this"))

        assert len(cache) == 0

    def test_query_lru_is_bounded(self) -> None:
        embedder = HashingEmbedder()
        cache = EmbeddingCache(embedder, query_cache_size=2)

        for text in ("a", "b", "c"):
            cache.embed_text(text, query_identity(text))
        cache.embed_text("a", query_identity("a"))

        assert len(embedder.calls) == 4

    def test_model_is_part_of_the_key(self) -> None:
        cache = EmbeddingCache(HashingEmbedder())

        cache.embed_text("hello", "chunk-1", model="other")

        assert cache.get("chunk-1") is None
        assert cache.get("chunk-1", model="other") is not None

    def test_embed_many_batches_misses(self) -> None:
        embedder = HashingEmbedder()
        cache = EmbeddingCache(embedder)
        cache.embed_text("cached", "a")

        vectors = cache.embed_many([("a", "cached"), ("b", "new one"), ("c", "another")])

        assert len(vectors) == 3
        assert embedder.calls[-1] == ["new one", "another"]

    def test_embed_many_all_hits(self) -> None:
        embedder = HashingEmbedder()
        cache = EmbeddingCache(embedder)
        cache.embed_many([("a", "x")])

        cache.embed_many([("a", "x")])

        assert len(embedder.calls) == 1

    def test_evict(self) -> None:
        cache = EmbeddingCache(HashingEmbedder())
        cache.embed_many([("a", "x"), ("b", "y")])

        assert cache.evict(["a", "missing"]) == 1
        assert "a" not in cache
        assert "b" in cache

    def test_retain_model(self) -> None:
        cache = EmbeddingCache(HashingEmbedder())
        cache.embed_text("alpha", "a")
        cache.embed_text("alpha", "a", model="older")

        assert cache.retain_model(cache.model_name) == 1
        assert [key for key, _ in cache.items()] == [("a", "test-hashing")]

    def test_dumps_and_loads(self) -> None:
        cache = EmbeddingCache(HashingEmbedder())
        cache.embed_many([("a", "alpha"), ("b", "beta")])

        restored = EmbeddingCache(HashingEmbedder())
        restored.loads(cache.dumps())

        assert len(restored) == 2
        assert np.allclose(restored.get("a"), cache.get("a"))

    def test_empty_dumps(self) -> None:
        restored = EmbeddingCache(HashingEmbedder())
        restored.loads(EmbeddingCache(HashingEmbedder()).dumps())

        assert len(restored) == 0

    def test_loads_garbage(self) -> None:
        with pytest.raises(PersistenceError):
            EmbeddingCache(HashingEmbedder()).loads(b"not an npz archive")
