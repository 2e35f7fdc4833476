"""Shared fixtures: an offline embedder and a store over a temporary corpus."""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Iterable, List

import numpy as np
import pytest

from localkb.config import AppConfig
from localkb.index.storage import MemorySnapshotStore
from localkb.store import KnowledgeStore
from localkb.utils.text import tokenize

DIMENSION = 64


class HashingEmbedder:
    """Deterministic bag-of-words embedder; shared tokens give similar vectors."""

    def __init__(self, model_name: str = "test-hashing", dimension: int = DIMENSION) -> None:
        self.model_name = model_name
        self.dimension = dimension
        self.calls: List[List[str]] = []

    def embed(self, texts: Iterable[str]) -> np.ndarray:
        batch = list(texts)
        self.calls.append(batch)
        matrix = np.zeros((len(batch), self.dimension), dtype="float32")
        for row, text in enumerate(batch):
            for token in tokenize(text):
                digest = hashlib.md5(token.encode("utf-8")).digest()
                matrix[row, digest[0] % self.dimension] += 1.0
            norm = np.linalg.norm(matrix[row])
            if norm > 0:
                matrix[row] /= norm
        return matrix


@pytest.fixture
def embedder() -> HashingEmbedder:
    return HashingEmbedder()


@pytest.fixture
def docs_dir(tmp_path: Path) -> Path:
    root = tmp_path / "docs"
    root.mkdir()
    return root


@pytest.fixture
def config(tmp_path: Path, docs_dir: Path) -> AppConfig:
    return AppConfig(
        roots=[str(docs_dir)],
        data_dir=tmp_path / ".localkb",
        base_dir=tmp_path,
        chunk_chars=400,
        overlap=40,
    )


@pytest.fixture
def snapshots() -> MemorySnapshotStore:
    return MemorySnapshotStore()


@pytest.fixture
def store(config: AppConfig, embedder: HashingEmbedder, snapshots: MemorySnapshotStore) -> KnowledgeStore:
    knowledge = KnowledgeStore(config, embedder, snapshots=snapshots)
    knowledge.initialize()
    return knowledge
