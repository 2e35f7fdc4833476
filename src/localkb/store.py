"""Knowledge store: owns the chunk set, both indexes and the manifest."""

from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Sequence

from localkb.config import AppConfig
from localkb.embedding.cache import EmbeddingCache
from localkb.embedding.encoder import Embedder, EmbeddingConfig, EmbeddingModel
from localkb.errors import DocumentNotIndexedError, PersistenceError
from localkb.index.indexer import (
    ExtractFn,
    FilePlan,
    IndexSummary,
    PreparedFile,
    plan_file,
    prepare_file,
)
from localkb.index.keyword import KeywordIndex
from localkb.index.manifest import create_manifest, dumps_manifest, loads_manifest, now_iso
from localkb.index.search import HybridSearcher
from localkb.index.storage import (
    CHUNKS,
    EMBEDDINGS,
    KEYWORDS,
    MANIFEST,
    VECTORS,
    FileSnapshotStore,
    SnapshotStore,
    SQLiteSnapshotStore,
)
from localkb.index.vector import FlatVectorIndex
from localkb.ingestion import EXTENSION_TYPES, extract
from localkb.mirror import MirrorDispatcher, MirrorSnapshot
from localkb.models import (
    CHUNK_TYPES,
    Chunk,
    DocumentResult,
    Manifest,
    SearchFilters,
    SearchResponse,
    StoreStats,
)
from localkb.utils.files import (
    file_extension,
    iter_document_paths,
    normalize_rel_path,
    resolve_rel_path,
)

LOGGER = logging.getLogger(__name__)

SQLITE_SNAPSHOT_FILE = "localkb.db"


def open_snapshot_store(config: AppConfig) -> SnapshotStore:
    data_dir = config.resolve_data_dir()
    if config.snapshot_backend == "sqlite":
        return SQLiteSnapshotStore(data_dir / SQLITE_SNAPSHOT_FILE)
    return FileSnapshotStore(data_dir)


def _dumps_chunks(chunks: Iterable[Chunk]) -> bytes:
    return json.dumps([chunk.to_dict() for chunk in chunks], ensure_ascii=False).encode("utf-8")


def _loads_chunks(payload: bytes) -> Dict[str, Chunk]:
    try:
        items = json.loads(payload.decode("utf-8"))
        chunks = [Chunk.from_dict(item) for item in items]
    except (UnicodeDecodeError, ValueError, KeyError, TypeError) as exc:
        raise PersistenceError(f"Unreadable chunk set: {exc}") from exc
    return {chunk.id: chunk for chunk in chunks}


def _coerce_filters(filters: SearchFilters | Mapping | None) -> SearchFilters | None:
    if filters is None or isinstance(filters, SearchFilters):
        return filters
    types = filters.get("types") or filters.get("type")
    return SearchFilters(
        types=list(types) if types else None,
        tags=list(filters["tags"]) if filters.get("tags") else None,
    )


class KnowledgeStore:
    """Central orchestrator for indexing, search and document retrieval.

    Mutations take ``self.lock``; concurrent writers from different processes
    must still be serialized by the caller since the snapshot files are shared.
    """

    def __init__(
        self,
        config: AppConfig,
        embedder: Embedder,
        *,
        snapshots: SnapshotStore | None = None,
        mirror: MirrorDispatcher | None = None,
        extractor: ExtractFn = extract,
    ) -> None:
        self.config = config
        self.base_dir = Path(config.base_dir)
        self.snapshots = snapshots if snapshots is not None else open_snapshot_store(config)
        self.mirror = mirror
        self.extractor = extractor
        self.embeddings = EmbeddingCache(embedder)
        self.vectors = FlatVectorIndex()
        self.keywords = KeywordIndex()
        self.chunks: Dict[str, Chunk] = {}
        self.manifest: Manifest = create_manifest(embedder.model_name)
        self.lock = threading.RLock()
        self._initialized = False

    @classmethod
    def open(
        cls,
        config: AppConfig,
        embedder: Embedder | None = None,
        **kwargs,
    ) -> "KnowledgeStore":
        """Create a store for ``config`` and load its persisted state."""
        if embedder is None:
            embedder = EmbeddingModel(EmbeddingConfig(model_name=config.model_name))
        kwargs.setdefault("mirror", MirrorDispatcher.from_config(config.mirror))
        store = cls(config, embedder, **kwargs)
        store.initialize()
        return store

    def close(self) -> None:
        if self.mirror is not None:
            self.mirror.close()
        close = getattr(self.snapshots, "close", None)
        if callable(close):
            close()

    # ------------------------------------------------------------------
    # loading and persistence

    def initialize(self) -> None:
        with self.lock:
            if self._initialized:
                return
            raw_manifest = self.snapshots.read(MANIFEST)
            if raw_manifest is None:
                LOGGER.info("No manifest found, starting a fresh index")
                self._initialized = True
                self.persist(mirror=False)
                return

            self.manifest = loads_manifest(raw_manifest)
            raw_chunks = self.snapshots.read(CHUNKS)
            self.chunks = _loads_chunks(raw_chunks) if raw_chunks is not None else {}

            raw_embeddings = self.snapshots.read(EMBEDDINGS)
            if raw_embeddings is not None:
                self.embeddings.loads(raw_embeddings)

            raw_vectors = self.snapshots.read(VECTORS)
            if raw_vectors is not None:
                self.vectors = FlatVectorIndex.loads(raw_vectors)
            else:
                self._rebuild_vectors()

            raw_keywords = self.snapshots.read(KEYWORDS)
            if raw_keywords is not None:
                self.keywords = KeywordIndex.loads(raw_keywords)
            else:
                self._rebuild_keywords()

            self._reconcile()
            if self.manifest.model and self.manifest.model != self.embeddings.model_name:
                self._reembed(self.manifest.model)
            self._initialized = True
            LOGGER.debug(
                "Loaded %s files and %s chunks", len(self.manifest.files), len(self.chunks)
            )

    def _rebuild_vectors(self) -> None:
        self.vectors = FlatVectorIndex()
        for cid in self.chunks:
            vector = self.embeddings.get(cid)
            if vector is not None:
                self.vectors.upsert(cid, vector)

    def _reembed(self, previous: str) -> None:
        """Replace every dense vector with one from the configured model."""
        model = self.embeddings.model_name
        LOGGER.warning(
            "Index was built with %s but %s is configured; re-embedding %s chunks",
            previous,
            model,
            len(self.chunks),
        )
        chunks = list(self.chunks.values())
        vectors = self.embeddings.embed_many((chunk.id, chunk.text) for chunk in chunks)
        self.vectors = FlatVectorIndex()
        for chunk, vector in zip(chunks, vectors):
            self.vectors.upsert(chunk.id, vector)
        self.embeddings.retain_model(model)
        self.persist(mirror=False)

    def _rebuild_keywords(self) -> None:
        self.keywords = KeywordIndex()
        for chunk in self.chunks.values():
            self.keywords.upsert(chunk.id, chunk.text, chunk.tags)

    def _reconcile(self) -> None:
        """Repair drift left by a torn write.

        Files whose chunks are not all present in the chunk set and the dense
        index are dropped from the manifest so the next run re-indexes them.
        Chunks no file claims are discarded.
        """
        for rel, record in list(self.manifest.files.items()):
            if all(cid in self.chunks and cid in self.vectors for cid in record.chunk_ids):
                continue
            LOGGER.warning("Manifest entry %s is inconsistent with the index; dropping it", rel)
            self._purge(rel)

        claimed = {cid for record in self.manifest.files.values() for cid in record.chunk_ids}
        for cid in [cid for cid in self.chunks if cid not in claimed]:
            self._drop_chunk(cid)
        for cid in [cid for cid in self.vectors.ids() if cid not in self.chunks]:
            self.vectors.remove(cid)
        for cid in [cid for cid in self.keywords.ids() if cid not in self.chunks]:
            self.keywords.remove(cid)
        for chunk in self.chunks.values():
            if chunk.id not in self.keywords:
                self.keywords.upsert(chunk.id, chunk.text, chunk.tags)
        self.manifest.total_chunk_count = len(self.chunks)

    def persist(self, *, mirror: bool = True) -> None:
        """Write every artifact, then hand a copy to the mirror if one is set."""
        with self.lock:
            self.manifest.total_chunk_count = len(self.chunks)
            self.manifest.updated_at = now_iso()
            self.manifest.model = self.embeddings.model_name
            self.snapshots.write_many(
                {
                    EMBEDDINGS: self.embeddings.dumps(),
                    VECTORS: self.vectors.dumps(),
                    KEYWORDS: self.keywords.dumps(),
                    CHUNKS: _dumps_chunks(self.chunks.values()),
                    MANIFEST: dumps_manifest(self.manifest),
                }
            )
            snapshot = self._mirror_snapshot() if mirror and self.mirror is not None else None
        if snapshot is not None:
            self.mirror.submit(snapshot)

    def _mirror_snapshot(self) -> MirrorSnapshot:
        embeddings = {}
        for cid in self.chunks:
            vector = self.vectors.get(cid)
            if vector is not None:
                embeddings[cid] = vector.copy()
        return MirrorSnapshot(
            manifest=Manifest.from_dict(self.manifest.to_dict()),
            chunks=dict(self.chunks),
            embeddings=embeddings,
        )

    # ------------------------------------------------------------------
    # mutation helpers

    def rel_path(self, path: str | Path) -> str:
        return normalize_rel_path(path, self.base_dir)

    def _drop_chunk(self, cid: str) -> None:
        self.chunks.pop(cid, None)
        self.vectors.remove(cid)
        self.keywords.remove(cid)

    def _purge(self, rel: str) -> List[str]:
        """Remove a file's chunks from both indexes, the chunk set and the manifest."""
        record = self.manifest.files.pop(rel, None)
        if record is None:
            return []
        for cid in record.chunk_ids:
            self._drop_chunk(cid)
        return list(record.chunk_ids)

    def _apply(self, prepared: PreparedFile) -> None:
        plan = prepared.plan
        for chunk, vector in zip(prepared.chunks, prepared.vectors):
            self.chunks[chunk.id] = chunk
            self.vectors.upsert(chunk.id, vector)
            self.keywords.upsert(chunk.id, chunk.text, chunk.tags)
        self.manifest.files[plan.rel_path] = plan.record(prepared.chunks)

    def _evict_stale(self, old_ids: Sequence[str]) -> None:
        stale = [cid for cid in old_ids if cid not in self.chunks]
        if stale:
            self.embeddings.evict(stale)

    def _fail(self, plan: FilePlan, old_ids: Sequence[str], exc: Exception, summary: IndexSummary) -> None:
        self._evict_stale(old_ids)
        if not self.config.isolate_failures:
            raise exc
        LOGGER.error("Failed to process %s: %s", plan.rel_path, exc)
        summary.increment("failed", plan.rel_path)

    # ------------------------------------------------------------------
    # operations

    def index_paths(self, paths: Sequence[str | Path] | None = None) -> IndexSummary:
        """Index changed and new files under ``paths`` (or the configured roots).

        Files with an unchanged hash and mtime are skipped. A changed file has
        its old chunks purged from both indexes before it is re-extracted.
        After a scan of the configured roots, manifest entries whose files no
        longer exist on disk are removed when ``prune_missing`` is set.
        Persistence happens once, after the loop; an error escaping the loop
        leaves already applied in-memory changes in place and nothing written.
        """
        self.initialize()
        explicit = bool(paths)
        roots = list(paths) if explicit else list(self.config.roots)
        candidates = list(
            iter_document_paths(
                [self._absolute(root) for root in roots],
                include=self.config.include,
                exclude=self.config.exclude,
            )
        )
        if not candidates:
            LOGGER.warning("No indexable files found under %s", ", ".join(map(str, roots)))

        summary = IndexSummary()
        with self.lock:
            if self.config.workers > 1:
                self._index_parallel(candidates, summary)
            else:
                self._index_sequential(candidates, summary)
            if not explicit and self.config.prune_missing:
                self._prune_missing(summary)
            self.persist()
        LOGGER.info(
            "Indexed: %s, updated: %s, skipped: %s, removed: %s, failed: %s",
            summary.indexed,
            summary.updated,
            summary.skipped,
            summary.removed,
            summary.failed,
        )
        return summary

    def _absolute(self, path: str | Path) -> Path:
        candidate = Path(path).expanduser()
        return candidate if candidate.is_absolute() else self.base_dir / candidate

    def _plan(self, path: Path, summary: IndexSummary) -> FilePlan | None:
        rel = self.rel_path(path)
        max_bytes = (
            int(self.config.max_file_size_mb * 1024 * 1024)
            if self.config.max_file_size_mb
            else None
        )
        plan = plan_file(
            path,
            rel,
            self.manifest.files.get(rel),
            file_type=EXTENSION_TYPES.get(file_extension(path)),
            max_bytes=max_bytes,
        )
        if plan is None:
            summary.increment("skipped", rel)
        return plan

    def _prepare(self, plan: FilePlan) -> PreparedFile:
        return prepare_file(
            plan,
            extractor=self.extractor,
            options=self.config.extract_options(),
            embeddings=self.embeddings,
        )

    def _index_sequential(self, candidates: Sequence[Path], summary: IndexSummary) -> None:
        for path in candidates:
            plan = self._plan(path, summary)
            if plan is None:
                continue
            old_ids = self._purge(plan.rel_path)
            try:
                prepared = self._prepare(plan)
            except Exception as exc:
                self._fail(plan, old_ids, exc, summary)
                continue
            self._apply(prepared)
            self._evict_stale(old_ids)
            summary.increment(plan.status, plan.rel_path)

    def _index_parallel(self, candidates: Sequence[Path], summary: IndexSummary) -> None:
        """Extract and embed on a worker pool; this thread applies every mutation."""
        plans: List[FilePlan] = []
        seen: set[str] = set()
        for path in candidates:
            plan = self._plan(path, summary)
            if plan is not None and plan.rel_path not in seen:
                seen.add(plan.rel_path)
                plans.append(plan)
        if not plans:
            return
        with ThreadPoolExecutor(
            max_workers=self.config.workers, thread_name_prefix="localkb-index"
        ) as pool:
            futures: List[tuple[FilePlan, Future]] = [
                (plan, pool.submit(self._prepare, plan)) for plan in plans
            ]
            for plan, future in futures:
                old_ids = self._purge(plan.rel_path)
                try:
                    prepared = future.result()
                except Exception as exc:
                    if not self.config.isolate_failures:
                        for _, other in futures:
                            other.cancel()
                    self._fail(plan, old_ids, exc, summary)
                    continue
                self._apply(prepared)
                self._evict_stale(old_ids)
                summary.increment(plan.status, plan.rel_path)

    def _prune_missing(self, summary: IndexSummary) -> None:
        for rel in list(self.manifest.files):
            if resolve_rel_path(rel, self.base_dir).exists():
                continue
            LOGGER.info("Removing %s: file no longer exists", rel)
            self._evict_stale(self._purge(rel))
            summary.increment("removed", rel)

    def remove_path(self, path: str | Path) -> bool:
        """Forget a file; returns False when it was not indexed."""
        self.initialize()
        rel = self.rel_path(path)
        with self.lock:
            if rel not in self.manifest.files:
                LOGGER.debug("Nothing to remove for %s", rel)
                return False
            self._evict_stale(self._purge(rel))
            self.persist()
        LOGGER.info("Removed %s from the index", rel)
        return True

    def search(
        self,
        query: str,
        *,
        k: int = 8,
        alpha: float = 0.65,
        filters: SearchFilters | Mapping | None = None,
    ) -> SearchResponse:
        self.initialize()
        with self.lock:
            searcher = HybridSearcher(self.chunks, self.vectors, self.keywords, self.embeddings)
            return searcher.search(query, k=k, alpha=alpha, filters=_coerce_filters(filters))

    def get_document(self, path: str | Path, page: int | None = None) -> DocumentResult:
        """Concatenate a file's chunks in reading order, optionally one page only."""
        self.initialize()
        rel = self.rel_path(path)
        with self.lock:
            chunks = [chunk for chunk in self.chunks.values() if chunk.path == rel]
        if not chunks:
            raise DocumentNotIndexedError(str(path))
        if page is not None:
            chunks = [chunk for chunk in chunks if chunk.page == page]
        chunks.sort(key=lambda chunk: (chunk.page or 0, chunk.offset_start or 0))
        return DocumentResult(
            path=rel,
            page=page,
            text="\n\n".join(chunk.text for chunk in chunks),
            partial=any(chunk.partial for chunk in chunks),
        )

    def stats(self) -> StoreStats:
        self.initialize()
        with self.lock:
            by_type = {kind: 0 for kind in CHUNK_TYPES}
            total_length = 0
            for chunk in self.chunks.values():
                by_type[chunk.type] = by_type.get(chunk.type, 0) + 1
                total_length += len(chunk.text)
            count = len(self.chunks)
            return StoreStats(
                files=len(self.manifest.files),
                chunks=count,
                by_type=by_type,
                avg_chunk_length=round(total_length / count) if count else 0,
                embedding_count=len(self.vectors),
                last_indexed_at=self.manifest.updated_at,
            )
