"""
Best-effort replication of the local index to a PostgREST (Supabase) backend.

The local index is always the source of truth. ``MirrorDispatcher`` runs syncs
on a single background thread, retries with exponential backoff, and logs
every failure as a warning without ever raising to the indexing caller.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Protocol

import httpx
import numpy as np

from localkb.config import MirrorConfig
from localkb.errors import MirrorError
from localkb.models import Chunk, FileIndexRecord, Manifest

logger = logging.getLogger(__name__)

CHUNK_BATCH_SIZE = 200

SOURCES = "knowledge_sources"
DOCUMENTS = "knowledge_documents"
CHUNKS = "knowledge_chunks"
MANIFESTS = "knowledge_manifests"


def compute_digest(path: str, record: FileIndexRecord) -> str:
    """Fingerprint of a document: path, mtime, size and ordered chunk ids."""
    sha = hashlib.sha256()
    sha.update(path.encode("utf-8"))
    sha.update(repr(record.mtime).encode("utf-8"))
    sha.update(str(record.size).encode("utf-8"))
    for chunk_id in record.chunk_ids:
        sha.update(chunk_id.encode("utf-8"))
    return sha.hexdigest()


def _timestamp(mtime: float) -> str:
    try:
        return datetime.fromtimestamp(mtime, tz=timezone.utc).isoformat()
    except (OverflowError, OSError, ValueError):
        return datetime.now(timezone.utc).isoformat()


@dataclass(slots=True)
class MirrorSnapshot:
    """Immutable copy of local state handed to the mirror after persistence."""

    manifest: Manifest
    chunks: Dict[str, Chunk]
    embeddings: Dict[str, np.ndarray] = field(default_factory=dict)


class Mirror(Protocol):
    def sync(self, snapshot: MirrorSnapshot) -> None: ...


class PostgrestMirror:
    """Mirror client speaking the PostgREST dialect used by Supabase."""

    def __init__(self, config: MirrorConfig, *, client: httpx.Client | None = None) -> None:
        if not config.url or not config.key:
            raise ValueError("Mirror requires both a URL and an API key")
        self.config = config
        self._client = client or httpx.Client(
            base_url=config.url.rstrip("/") + "/rest/v1",
            headers={
                "apikey": config.key,
                "Authorization": f"Bearer {config.key}",
                "Content-Type": "application/json",
            },
            timeout=config.timeout,
        )
        self._source_id: str | None = None

    def close(self) -> None:
        self._client.close()

    def _request(
        self,
        method: str,
        table: str,
        *,
        params: Mapping[str, str] | None = None,
        json: Any = None,
        prefer: str | None = None,
    ) -> Any:
        headers = {"Prefer": prefer} if prefer else None
        try:
            resp = self._client.request(method, f"/{table}", params=params, json=json, headers=headers)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise MirrorError(
                f"{method} {table} failed: {e.response.status_code} {e.response.text}"
            ) from e
        except httpx.HTTPError as e:
            raise MirrorError(f"{method} {table} failed: {e}") from e
        if not resp.content:
            return None
        return resp.json()

    @staticmethod
    def _in(values: Iterable[str]) -> str:
        return "in.(" + ",".join(f'"{value}"' for value in values) + ")"

    def ensure_source(self) -> str:
        if self._source_id is not None:
            return self._source_id
        rows = self._request(
            "POST",
            SOURCES,
            params={"on_conflict": "slug"},
            json={
                "slug": self.config.slug,
                "title": self.config.title,
                "description": self.config.description,
            },
            prefer="resolution=merge-duplicates,return=representation",
        )
        if not rows:
            raise MirrorError("Source upsert returned no row")
        self._source_id = str(rows[0]["id"])
        return self._source_id

    def fetch_documents(self, source_id: str) -> List[Dict[str, Any]]:
        return self._request(
            "GET",
            DOCUMENTS,
            params={"select": "id,path,checksum", "source_id": f"eq.{source_id}"},
        ) or []

    def sync(self, snapshot: MirrorSnapshot) -> None:
        """Replicate ``snapshot``; unchanged documents are skipped by digest."""
        source_id = self.ensure_source()
        previous = {doc["path"]: doc for doc in self.fetch_documents(source_id)}
        files = snapshot.manifest.files
        changed = 0

        for path, record in files.items():
            digest = compute_digest(path, record)
            existing = previous.get(path)
            if existing is not None and existing.get("checksum") == digest:
                continue
            document_id = self._upsert_document(source_id, path, record)
            self._replace_chunks(document_id, record, snapshot)
            self._mark_synced(document_id, digest)
            changed += 1

        stale = [doc["id"] for path, doc in previous.items() if path not in files]
        if stale:
            self._request("DELETE", DOCUMENTS, params={"id": self._in(map(str, stale))})

        self._record_manifest(source_id, snapshot)
        logger.info(
            "Mirror sync finished: %s changed, %s unchanged, %s removed",
            changed,
            len(files) - changed,
            len(stale),
        )

    def _upsert_document(self, source_id: str, path: str, record: FileIndexRecord) -> str:
        # checksum stays empty until every chunk batch has landed
        rows = self._request(
            "POST",
            DOCUMENTS,
            params={"on_conflict": "source_id,path"},
            json={
                "source_id": source_id,
                "path": path,
                "checksum": None,
                "size": record.size,
                "mtime": _timestamp(record.mtime),
                "chunk_count": len(record.chunk_ids),
                "partial": record.partial,
                "kind": record.file_type,
                "meta": {"partial": record.partial},
            },
            prefer="resolution=merge-duplicates,return=representation",
        )
        if not rows:
            raise MirrorError(f"Document upsert returned no row for {path}")
        return str(rows[0]["id"])

    def _replace_chunks(self, document_id: str, record: FileIndexRecord, snapshot: MirrorSnapshot) -> None:
        self._request("DELETE", CHUNKS, params={"document_id": f"eq.{document_id}"})
        rows = []
        for position, chunk_id in enumerate(record.chunk_ids):
            chunk = snapshot.chunks.get(chunk_id)
            if chunk is None:
                continue
            vector = snapshot.embeddings.get(chunk_id)
            rows.append(
                {
                    "document_id": document_id,
                    "chunk_id": chunk_id,
                    "chunk_index": position,
                    "content": chunk.text,
                    "token_count": chunk.token_count,
                    "offset_start": chunk.offset_start,
                    "offset_end": chunk.offset_end,
                    "partial": chunk.partial,
                    "tags": chunk.tags,
                    "embedding": vector.tolist() if vector is not None else None,
                    "meta": {"path": chunk.path, "page": chunk.page, "kind": chunk.type},
                }
            )
        for start in range(0, len(rows), CHUNK_BATCH_SIZE):
            self._request(
                "POST",
                CHUNKS,
                params={"on_conflict": "chunk_id"},
                json=rows[start : start + CHUNK_BATCH_SIZE],
                prefer="resolution=merge-duplicates",
            )

    def _mark_synced(self, document_id: str, digest: str) -> None:
        self._request(
            "PATCH",
            DOCUMENTS,
            params={"id": f"eq.{document_id}"},
            json={"checksum": digest},
        )

    def _record_manifest(self, source_id: str, snapshot: MirrorSnapshot) -> None:
        manifest = snapshot.manifest
        self._request(
            "POST",
            MANIFESTS,
            json={
                "source_id": source_id,
                "manifest": manifest.to_dict(),
                "file_count": len(manifest.files),
                "chunk_count": manifest.total_chunk_count,
                "embedding_count": len(snapshot.embeddings),
            },
        )
        retention = self.config.manifest_retention
        if retention <= 0:
            return
        rows = self._request(
            "GET",
            MANIFESTS,
            params={
                "select": "id",
                "source_id": f"eq.{source_id}",
                "order": "indexed_at.desc",
            },
        ) or []
        stale = [str(row["id"]) for row in rows[retention:]]
        if stale:
            self._request("DELETE", MANIFESTS, params={"id": self._in(stale)})


class MirrorDispatcher:
    """Run mirror syncs in the background with retry and backoff.

    Submissions are processed in order on one worker thread. Nothing raised by
    the mirror escapes; failures after the last attempt are logged.
    """

    def __init__(
        self,
        mirror: Mirror,
        *,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        sleep=time.sleep,
    ) -> None:
        self.mirror = mirror
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="localkb-mirror")
        self._lock = threading.Lock()
        self._pending: List[Future] = []

    @classmethod
    def from_config(cls, config: MirrorConfig) -> "MirrorDispatcher | None":
        if not config.enabled:
            logger.debug("Mirror sync disabled")
            return None
        if not config.configured:
            logger.warning(
                "Mirror sync enabled but not configured (url: %s, key: %s)",
                bool(config.url),
                bool(config.key),
            )
            return None
        return cls(
            PostgrestMirror(config),
            max_attempts=config.max_attempts,
            backoff_seconds=config.backoff_seconds,
        )

    def submit(self, snapshot: MirrorSnapshot) -> Future:
        future = self._executor.submit(self.run, snapshot)
        with self._lock:
            self._pending = [f for f in self._pending if not f.done()]
            self._pending.append(future)
        return future

    def run(self, snapshot: MirrorSnapshot) -> bool:
        """Sync with retries; returns True on success."""
        for attempt in range(1, self.max_attempts + 1):
            try:
                self.mirror.sync(snapshot)
                return True
            except Exception as e:
                if attempt >= self.max_attempts:
                    logger.warning("Mirror sync failed after %s attempt(s): %s", attempt, e)
                    return False
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                logger.info("Mirror sync attempt %s failed (%s), retrying in %.1fs", attempt, e, delay)
                self._sleep(delay)
        return False

    def flush(self, timeout: float | None = None) -> None:
        """Wait for every submitted sync to finish."""
        with self._lock:
            pending = list(self._pending)
        for future in pending:
            future.result(timeout=timeout)

    def close(self) -> None:
        self._executor.shutdown(wait=True)
        close = getattr(self.mirror, "close", None)
        if callable(close):
            close()
