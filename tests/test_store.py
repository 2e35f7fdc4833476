"""Tests for the KnowledgeStore orchestrator."""

from __future__ import annotations

import json
import os
from pathlib import Path
from unittest.mock import MagicMock

import numpy as np
import pytest

from localkb.config import AppConfig
from localkb.errors import DocumentNotIndexedError, PersistenceError, UnsupportedFileTypeError
from localkb.index.storage import CHUNKS, KEYWORDS, MANIFEST, WRITE_ORDER, FileSnapshotStore, MemorySnapshotStore
from localkb.ingestion import extract
from localkb.models import Chunk, SearchFilters
from localkb.store import KnowledgeStore

from conftest import HashingEmbedder


def _write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def _consistent(store: KnowledgeStore) -> None:
    claimed = [cid for record in store.manifest.files.values() for cid in record.chunk_ids]
    assert set(claimed) == set(store.chunks)
    assert set(store.vectors.ids()) == set(store.chunks)
    assert set(store.keywords.ids()) == set(store.chunks)
    assert store.manifest.total_chunk_count == len(store.chunks)


class TestInitialize:
    """Test loading persisted state."""

    def test_first_run_persists_empty_manifest(self, store: KnowledgeStore, snapshots: MemorySnapshotStore) -> None:
        assert snapshots.read(MANIFEST) is not None
        assert snapshots.writes == [WRITE_ORDER]
        assert store.manifest.files == {}

    def test_corrupt_manifest_is_fatal(self, config: AppConfig, embedder: HashingEmbedder) -> None:
        snapshots = MemorySnapshotStore()
        snapshots.blobs[MANIFEST] = b"{not json"

        with pytest.raises(PersistenceError):
            KnowledgeStore(config, embedder, snapshots=snapshots).initialize()

    def test_corrupt_chunk_set_is_fatal(self, store: KnowledgeStore, config: AppConfig, embedder, snapshots) -> None:
        snapshots.blobs[CHUNKS] = b"[{]"

        with pytest.raises(PersistenceError):
            KnowledgeStore(config, embedder, snapshots=snapshots).initialize()

    def test_reload_restores_state(self, store, config, embedder, snapshots, docs_dir: Path) -> None:
        _write(docs_dir / "a.md", "Alpha document about rivers and lakes.")
        store.index_paths()

        reloaded = KnowledgeStore(config, embedder, snapshots=snapshots)
        reloaded.initialize()

        assert reloaded.manifest.files.keys() == store.manifest.files.keys()
        assert set(reloaded.chunks) == set(store.chunks)
        assert reloaded.search("rivers", k=1).results[0].citation.file_path == "docs/a.md"
        _consistent(reloaded)

    def test_reload_from_files(self, config: AppConfig, embedder: HashingEmbedder, docs_dir: Path) -> None:
        _write(docs_dir / "a.txt", "Persisted to real files on disk.")
        first = KnowledgeStore(config, embedder)
        first.index_paths()

        second = KnowledgeStore(config, embedder)
        second.initialize()

        assert isinstance(second.snapshots, FileSnapshotStore)
        assert list(second.manifest.files) == ["docs/a.txt"]
        _consistent(second)

    def test_model_change_reembeds_corpus(self, config: AppConfig, snapshots, docs_dir: Path) -> None:
        _write(docs_dir / "a.md", "Alpha document about rivers and lakes.")
        first = KnowledgeStore(config, HashingEmbedder("model-a", 64), snapshots=snapshots)
        first.initialize()
        first.index_paths()

        smaller = HashingEmbedder("model-b", 32)
        second = KnowledgeStore(config, smaller, snapshots=snapshots)
        second.initialize()

        assert second.vectors.dimension == 32
        assert second.manifest.model == "model-b"
        assert all(key[1] == "model-b" for key, _ in second.embeddings.items())
        assert second.search("rivers", k=1).results[0].citation.file_path == "docs/a.md"
        _write(docs_dir / "b.md", "Beta notes about mountains.")
        summary = second.index_paths()
        assert (summary.indexed, summary.skipped) == (1, 1)
        _consistent(second)

    def test_reconcile_drops_inconsistent_entries(self, store, config, embedder, snapshots, docs_dir: Path) -> None:
        _write(docs_dir / "a.txt", "First file text.")
        _write(docs_dir / "b.txt", "Second file text.")
        store.index_paths()
        # simulate a torn write: the chunk set lost b.txt
        lost = set(store.manifest.files["docs/b.txt"].chunk_ids)
        store.chunks = {cid: c for cid, c in store.chunks.items() if cid not in lost}
        payload = json.dumps([c.to_dict() for c in store.chunks.values()]).encode("utf-8")
        snapshots.write_many({CHUNKS: payload})

        reloaded = KnowledgeStore(config, embedder, snapshots=snapshots)
        reloaded.initialize()

        assert list(reloaded.manifest.files) == ["docs/a.txt"]
        _consistent(reloaded)
        assert reloaded.index_paths().indexed == 1


class TestIndexPaths:
    """Test incremental indexing."""

    def test_new_updated_skipped(self, store: KnowledgeStore, docs_dir: Path) -> None:
        a = _write(docs_dir / "a.md", "Alpha file content.")
        _write(docs_dir / "b.md", "Beta file content.")
        store.index_paths()
        _write(a, "Alpha file content, now edited.")
        _write(docs_dir / "c.md", "Gamma file content.")
        # keep b.md untouched

        summary = store.index_paths()

        assert (summary.indexed, summary.updated, summary.skipped) == (1, 1, 1)
        _consistent(store)

    def test_skip_leaves_state_unchanged(self, store: KnowledgeStore, snapshots, docs_dir: Path) -> None:
        _write(docs_dir / "a.md", "Stable content.")
        store.index_paths()
        before = store.manifest.to_dict()
        blobs = {name: snapshots.read(name) for name in (CHUNKS, KEYWORDS)}
        vectors = {cid: store.vectors.get(cid).copy() for cid in store.vectors.ids()}

        summary = store.index_paths()

        after = store.manifest.to_dict()
        assert summary.skipped == 1
        assert {name: snapshots.read(name) for name in (CHUNKS, KEYWORDS)} == blobs
        assert store.keywords.dumps() == blobs[KEYWORDS]
        assert store.vectors.ids() == list(vectors)
        for cid, vector in vectors.items():
            np.testing.assert_array_equal(store.vectors.get(cid), vector)
        before.pop("updated_at")
        after.pop("updated_at")
        assert before == after

    def test_touched_file_is_reindexed(self, store: KnowledgeStore, docs_dir: Path) -> None:
        a = _write(docs_dir / "a.md", "Same bytes.")
        store.index_paths()
        stat = a.stat()
        os.utime(a, (stat.st_atime, stat.st_mtime + 10))

        summary = store.index_paths()

        assert summary.updated == 1
        assert store.manifest.files["docs/a.md"].mtime == a.stat().st_mtime

    def test_modified_file_drops_old_chunks(self, store: KnowledgeStore, docs_dir: Path) -> None:
        a = _write(docs_dir / "a.md", "Original words about volcanoes.")
        store.index_paths()
        old_ids = set(store.manifest.files["docs/a.md"].chunk_ids)

        _write(a, "Replacement words about glaciers.")
        store.index_paths()

        assert not old_ids & set(store.chunks)
        assert not old_ids & set(store.vectors.ids())
        assert store.search("volcanoes", k=5, alpha=0.0).results == []
        assert store.search("glaciers", k=5, alpha=0.0).results[0].citation.file_path == "docs/a.md"
        assert not any(cid in store.embeddings for cid in old_ids)
        _consistent(store)

    def test_explicit_paths(self, store: KnowledgeStore, docs_dir: Path, tmp_path: Path) -> None:
        _write(docs_dir / "a.md", "In the configured root.")
        extra = _write(tmp_path / "other" / "x.txt", "Outside the configured root.")

        summary = store.index_paths([extra])

        assert summary.indexed == 1
        assert list(store.manifest.files) == ["other/x.txt"]

    def test_relative_paths_resolve_against_base(self, store: KnowledgeStore, docs_dir: Path) -> None:
        _write(docs_dir / "a.md", "Relative lookup.")

        store.index_paths(["docs"])

        assert list(store.manifest.files) == ["docs/a.md"]

    def test_unsupported_extension_propagates(self, config: AppConfig, embedder, snapshots, docs_dir: Path) -> None:
        config.include = config.include + [".csv"]
        store = KnowledgeStore(config, embedder, snapshots=snapshots)
        _write(docs_dir / "a.csv", "a,b,c")

        with pytest.raises(UnsupportedFileTypeError):
            store.index_paths()

        # nothing persisted beyond the first-run manifest
        assert len(snapshots.writes) == 1

    def test_isolated_failures_are_counted(self, config: AppConfig, embedder, snapshots, docs_dir: Path) -> None:
        config.include = config.include + [".csv"]
        config.isolate_failures = True
        store = KnowledgeStore(config, embedder, snapshots=snapshots)
        _write(docs_dir / "a.csv", "a,b,c")
        _write(docs_dir / "b.md", "Good file.")

        summary = store.index_paths()

        assert summary.failed == 1
        assert summary.indexed == 1
        assert list(store.manifest.files) == ["docs/b.md"]
        _consistent(store)

    def test_failure_on_reindex_purges_old_entry(self, config: AppConfig, embedder, snapshots, docs_dir: Path) -> None:
        config.isolate_failures = True
        broken = MagicMock(side_effect=RuntimeError("extractor crashed"))
        store = KnowledgeStore(config, embedder, snapshots=snapshots)
        a = _write(docs_dir / "a.md", "Version one.")
        store.index_paths()

        store.extractor = broken
        _write(a, "Version two.")
        summary = store.index_paths()

        assert summary.failed == 1
        assert store.manifest.files == {}
        assert store.chunks == {}
        _consistent(store)

    def test_prune_missing(self, store: KnowledgeStore, docs_dir: Path) -> None:
        a = _write(docs_dir / "a.md", "Soon gone.")
        _write(docs_dir / "b.md", "Stays.")
        store.index_paths()
        a.unlink()

        summary = store.index_paths()

        assert summary.removed == 1
        assert list(store.manifest.files) == ["docs/b.md"]
        _consistent(store)

    def test_explicit_paths_do_not_prune(self, store: KnowledgeStore, docs_dir: Path) -> None:
        a = _write(docs_dir / "a.md", "Soon gone.")
        b = _write(docs_dir / "b.md", "Stays.")
        store.index_paths()
        a.unlink()

        summary = store.index_paths([b])

        assert summary.removed == 0
        assert "docs/a.md" in store.manifest.files

    def test_prune_disabled(self, config: AppConfig, embedder, snapshots, docs_dir: Path) -> None:
        config.prune_missing = False
        store = KnowledgeStore(config, embedder, snapshots=snapshots)
        a = _write(docs_dir / "a.md", "Soon gone.")
        store.index_paths()
        a.unlink()

        store.index_paths()

        assert "docs/a.md" in store.manifest.files

    def test_oversized_files_skipped(self, config: AppConfig, embedder, snapshots, docs_dir: Path) -> None:
        config.max_file_size_mb = 0.00001
        store = KnowledgeStore(config, embedder, snapshots=snapshots)
        _write(docs_dir / "big.txt", "x" * 100)

        summary = store.index_paths()

        assert summary.skipped == 1
        assert store.manifest.files == {}

    def test_parallel_matches_sequential(self, config: AppConfig, embedder, docs_dir: Path) -> None:
        for i in range(6):
            _write(docs_dir / f"f{i}.md", f"Document number {i} about topic {i}.")
        sequential = KnowledgeStore(config, embedder, snapshots=MemorySnapshotStore())
        sequential.index_paths()

        config.workers = 3
        parallel = KnowledgeStore(config, embedder, snapshots=MemorySnapshotStore())
        summary = parallel.index_paths()

        assert summary.indexed == 6
        assert parallel.manifest.files.keys() == sequential.manifest.files.keys()
        assert set(parallel.chunks) == set(sequential.chunks)
        _consistent(parallel)

    def test_persists_once_per_call(self, store: KnowledgeStore, snapshots: MemorySnapshotStore, docs_dir: Path) -> None:
        _write(docs_dir / "a.md", "One.")
        _write(docs_dir / "b.md", "Two.")

        store.index_paths()

        assert snapshots.writes[-1] == WRITE_ORDER
        assert len(snapshots.writes) == 2

    def test_mirror_receives_snapshot(self, config: AppConfig, embedder, snapshots, docs_dir: Path) -> None:
        mirror = MagicMock()
        store = KnowledgeStore(config, embedder, snapshots=snapshots, mirror=mirror)
        _write(docs_dir / "a.md", "Mirrored.")

        store.index_paths()

        mirror.submit.assert_called_once()
        snapshot = mirror.submit.call_args[0][0]
        assert list(snapshot.manifest.files) == ["docs/a.md"]
        assert set(snapshot.embeddings) == set(store.chunks)
        assert snapshot.manifest is not store.manifest


class TestRemovePath:
    """Test remove_path."""

    def test_remove_is_idempotent(self, store: KnowledgeStore, snapshots, docs_dir: Path) -> None:
        a = _write(docs_dir / "a.md", "Remove me.")
        _write(docs_dir / "b.md", "Keep me.")
        store.index_paths()

        assert store.remove_path(a) is True
        writes = len(snapshots.writes)
        assert store.remove_path(a) is False

        assert len(snapshots.writes) == writes
        assert list(store.manifest.files) == ["docs/b.md"]
        _consistent(store)

    def test_remove_unknown(self, store: KnowledgeStore) -> None:
        assert store.remove_path("docs/never.md") is False


class TestSearch:
    """Test search through the store."""

    def test_tagged_markdown(self, store: KnowledgeStore, docs_dir: Path) -> None:
        _write(docs_dir / "ops.md", "---\ntags: [ops]\n---\ncocaine smuggling corridor risk")
        _write(docs_dir / "other.md", "smuggling of goods across a trade corridor")

        response = store.search("smuggling corridor", k=1, alpha=0.5, filters=SearchFilters(tags=["ops"]))
        assert response.results == []

        store.index_paths()
        response = store.search("smuggling corridor", k=1, alpha=0.5, filters=SearchFilters(tags=["ops"]))

        assert len(response.results) == 1
        hit = response.results[0]
        assert hit.citation.file_path == "docs/ops.md"
        assert hit.score > 0.0

    def test_dict_filters(self, store: KnowledgeStore, docs_dir: Path) -> None:
        _write(docs_dir / "a.md", "markdown words")
        _write(docs_dir / "b.txt", "text words")
        store.index_paths()

        results = store.search("words", k=5, filters={"types": ["text"]}).results

        assert [hit.citation.file_path for hit in results] == ["docs/b.txt"]

    def test_k_zero(self, store: KnowledgeStore, docs_dir: Path) -> None:
        _write(docs_dir / "a.md", "anything")
        store.index_paths()

        assert store.search("anything", k=0).results == []


class TestGetDocument:
    """Test document retrieval."""

    def test_concatenates_in_order(self, config: AppConfig, embedder, snapshots, docs_dir: Path) -> None:
        config.chunk_chars = 100
        config.overlap = 0
        store = KnowledgeStore(config, embedder, snapshots=snapshots)
        paragraphs = [
            f"Paragraph {i} has a handful of words in it, enough to pass fifty." for i in range(4)
        ]
        _write(docs_dir / "long.md", "\n\n".join(paragraphs))
        store.index_paths()

        document = store.get_document("docs/long.md")

        assert len(store.manifest.files["docs/long.md"].chunk_ids) == 4
        assert document.text == "\n\n".join(paragraphs)
        assert document.page is None

    def test_pages_sorted_and_filtered(self, config: AppConfig, embedder, snapshots, docs_dir: Path) -> None:
        def fake_pdf(path, file_type, options, *, doc_path, mtime):
            return [
                Chunk(id="p2", path=doc_path, type="pdf", text="second", page=2, offset_start=0),
                Chunk(id="p1", path=doc_path, type="pdf", text="first", page=1, offset_start=0, partial=True),
            ]

        store = KnowledgeStore(config, embedder, snapshots=snapshots, extractor=fake_pdf)
        _write(docs_dir / "scan.pdf", "%PDF-fake")
        store.index_paths()

        assert store.get_document(docs_dir / "scan.pdf").text == "first\n\nsecond"
        page = store.get_document("docs/scan.pdf", page=2)
        assert page.text == "second"
        assert page.page == 2
        assert page.partial is False
        assert store.get_document("docs/scan.pdf").partial is True

    def test_unknown_path(self, store: KnowledgeStore) -> None:
        with pytest.raises(DocumentNotIndexedError):
            store.get_document("docs/missing.md")


class TestStats:
    def test_empty(self, store: KnowledgeStore) -> None:
        stats = store.stats()

        assert stats.files == 0
        assert stats.chunks == 0
        assert stats.avg_chunk_length == 0
        assert stats.by_type == {"pdf": 0, "markdown": 0, "text": 0, "word": 0, "pages": 0}

    def test_counts(self, store: KnowledgeStore, docs_dir: Path) -> None:
        _write(docs_dir / "a.md", "abcd")
        _write(docs_dir / "b.txt", "abcdefgh")
        store.index_paths()

        stats = store.stats()

        assert stats.files == 2
        assert stats.chunks == 2
        assert stats.by_type["markdown"] == 1
        assert stats.by_type["text"] == 1
        assert stats.avg_chunk_length == 6
        assert stats.embedding_count == 2
        assert stats.last_indexed_at == store.manifest.updated_at


def test_default_extractor_is_registry(config: AppConfig, embedder: HashingEmbedder) -> None:
    assert KnowledgeStore(config, embedder, snapshots=MemorySnapshotStore()).extractor is extract
