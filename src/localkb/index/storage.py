"""Snapshot persistence ports: files with atomic renames, SQLite, or memory."""

from __future__ import annotations

import logging
import os
import sqlite3
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Mapping, Protocol

from localkb.errors import PersistenceError

LOGGER = logging.getLogger(__name__)

EMBEDDINGS = "embeddings.npz"
VECTORS = "vectors.npz"
KEYWORDS = "keywords.json"
CHUNKS = "chunks.json"
MANIFEST = "manifest.json"

# the manifest goes last: once it is in place the batch is committed
WRITE_ORDER = (EMBEDDINGS, VECTORS, KEYWORDS, CHUNKS, MANIFEST)


def _ordered(artifacts: Mapping[str, bytes]) -> list[tuple[str, bytes]]:
    rank = {name: position for position, name in enumerate(WRITE_ORDER)}
    return sorted(artifacts.items(), key=lambda item: rank.get(item[0], -1))


class SnapshotStore(Protocol):
    def read(self, name: str) -> bytes | None:
        """Return the stored payload, or None when it does not exist."""

    def write_many(self, artifacts: Mapping[str, bytes]) -> None:
        """Persist a batch of named payloads."""


class FileSnapshotStore:
    """One file per artifact inside ``data_dir``.

    Every payload is first written to a temporary file in the same directory;
    only when all of them are on disk are they renamed into place, manifest
    last.
    """

    def __init__(self, data_dir: Path) -> None:
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, name: str) -> Path:
        return self.data_dir / name

    def read(self, name: str) -> bytes | None:
        try:
            return self.path_for(name).read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise PersistenceError(f"Cannot read {self.path_for(name)}: {exc}") from exc

    def write_many(self, artifacts: Mapping[str, bytes]) -> None:
        staged: list[tuple[str, Path]] = []
        try:
            for name, payload in _ordered(artifacts):
                fd, tmp_name = tempfile.mkstemp(prefix=f".{name}.", dir=self.data_dir)
                staged.append((name, Path(tmp_name)))
                with os.fdopen(fd, "wb") as handle:
                    handle.write(payload)
                    handle.flush()
                    os.fsync(handle.fileno())
        except BaseException:
            for _, tmp_path in staged:
                tmp_path.unlink(missing_ok=True)
            raise
        for name, tmp_path in staged:
            os.replace(tmp_path, self.path_for(name))
        LOGGER.debug("Wrote %s snapshot(s) to %s", len(staged), self.data_dir)


class SQLiteSnapshotStore:
    """All artifacts as rows of one SQLite table, each batch in one transaction."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")
        self._ensure_schema()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            yield self._conn
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def _ensure_schema(self) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS snapshots (
                    name TEXT PRIMARY KEY,
                    payload BLOB NOT NULL,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )

    def read(self, name: str) -> bytes | None:
        try:
            row = self._conn.execute(
                "SELECT payload FROM snapshots WHERE name = ?", (name,)
            ).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Cannot read snapshot {name}: {exc}") from exc
        return bytes(row["payload"]) if row else None

    def write_many(self, artifacts: Mapping[str, bytes]) -> None:
        with self.transaction() as conn:
            for name, payload in _ordered(artifacts):
                conn.execute(
                    """
                    INSERT INTO snapshots(name, payload, updated_at)
                    VALUES (?, ?, CURRENT_TIMESTAMP)
                    ON CONFLICT(name) DO UPDATE SET
                        payload = excluded.payload,
                        updated_at = excluded.updated_at
                    """,
                    (name, sqlite3.Binary(payload)),
                )


class MemorySnapshotStore:
    """Dictionary-backed store for tests."""

    def __init__(self) -> None:
        self.blobs: Dict[str, bytes] = {}
        self.writes: list[tuple[str, ...]] = []

    def read(self, name: str) -> bytes | None:
        return self.blobs.get(name)

    def write_many(self, artifacts: Mapping[str, bytes]) -> None:
        ordered = _ordered(artifacts)
        self.writes.append(tuple(name for name, _ in ordered))
        for name, payload in ordered:
            self.blobs[name] = bytes(payload)
