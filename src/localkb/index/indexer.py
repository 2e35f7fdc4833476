"""Per-file indexing pipeline: change detection, extraction and embedding."""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Callable, Dict, List

import numpy as np

from localkb.embedding.cache import EmbeddingCache
from localkb.ingestion import ExtractOptions
from localkb.models import Chunk, FileIndexRecord
from localkb.utils.files import compute_sha256

LOGGER = logging.getLogger(__name__)

ExtractFn = Callable[..., List[Chunk]]


@dataclass(slots=True)
class IndexSummary:
    indexed: int = 0
    updated: int = 0
    skipped: int = 0
    removed: int = 0
    failed: int = 0
    processed_files: List[str] = field(default_factory=list)

    def increment(self, status: str, path: str) -> None:
        if status == "indexed":
            self.indexed += 1
        elif status == "updated":
            self.updated += 1
        elif status == "skipped":
            self.skipped += 1
        elif status == "removed":
            self.removed += 1
        else:
            self.failed += 1
        self.processed_files.append(path)

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


@dataclass(slots=True)
class FilePlan:
    """A candidate file whose content or mtime differs from its manifest entry."""

    path: Path
    rel_path: str
    file_type: str | None
    mtime: float
    size: int
    content_hash: str
    previous: FileIndexRecord | None = None

    @property
    def status(self) -> str:
        return "updated" if self.previous is not None else "indexed"

    def record(self, chunks: List[Chunk]) -> FileIndexRecord:
        return FileIndexRecord(
            path=self.rel_path,
            chunk_ids=[chunk.id for chunk in chunks],
            mtime=self.mtime,
            content_hash=self.content_hash,
            file_type=self.file_type,
            size=self.size,
            partial=any(chunk.partial for chunk in chunks),
        )


@dataclass(slots=True)
class PreparedFile:
    plan: FilePlan
    chunks: List[Chunk]
    vectors: List[np.ndarray]


def stat_file(path: Path) -> os.stat_result:
    return path.stat()


def is_unchanged(record: FileIndexRecord | None, content_hash: str, mtime: float) -> bool:
    return record is not None and record.content_hash == content_hash and record.mtime == mtime


def plan_file(
    path: Path,
    rel_path: str,
    previous: FileIndexRecord | None,
    *,
    file_type: str | None,
    max_bytes: int | None = None,
) -> FilePlan | None:
    """Hash and stat ``path``; None means skip (unchanged or too large)."""
    stat = stat_file(path)
    if max_bytes is not None and stat.st_size > max_bytes:
        LOGGER.warning("Skipping %s: %s bytes exceeds the size limit", rel_path, stat.st_size)
        return None
    content_hash = compute_sha256(path)
    if is_unchanged(previous, content_hash, stat.st_mtime):
        return None
    return FilePlan(
        path=path,
        rel_path=rel_path,
        file_type=file_type,
        mtime=stat.st_mtime,
        size=stat.st_size,
        content_hash=content_hash,
        previous=previous,
    )


def prepare_file(
    plan: FilePlan,
    *,
    extractor: ExtractFn,
    options: ExtractOptions,
    embeddings: EmbeddingCache,
) -> PreparedFile:
    """Extract chunks for ``plan`` and embed them through the cache."""
    LOGGER.info("Processing: %s", plan.rel_path)
    chunks = extractor(plan.path, plan.file_type, options, doc_path=plan.rel_path, mtime=plan.mtime)
    if not chunks:
        LOGGER.warning("No text extracted from %s", plan.rel_path)
    # identical fragments within one file collapse to one id
    unique: Dict[str, Chunk] = {}
    for chunk in chunks:
        unique.setdefault(chunk.id, chunk)
    ordered = list(unique.values())
    vectors = embeddings.embed_many((chunk.id, chunk.text) for chunk in ordered)
    return PreparedFile(plan=plan, chunks=ordered, vectors=vectors)
