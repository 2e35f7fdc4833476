"""Core knowledge-store data models."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Literal

ChunkType = Literal["pdf", "markdown", "text", "word", "pages"]

CHUNK_TYPES: tuple[str, ...] = ("pdf", "markdown", "text", "word", "pages")

MANIFEST_VERSION = 1


@dataclass(slots=True)
class Chunk:
    """Contiguous unit of extracted document text with positional metadata."""

    id: str
    path: str
    type: str
    text: str
    mtime: float = 0.0
    page: int | None = None
    offset_start: int | None = None
    offset_end: int | None = None
    token_count: int | None = None
    tags: List[str] = field(default_factory=list)
    partial: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Chunk":
        return cls(
            id=data["id"],
            path=data["path"],
            type=data["type"],
            text=data["text"],
            mtime=float(data.get("mtime", 0.0)),
            page=data.get("page"),
            offset_start=data.get("offset_start"),
            offset_end=data.get("offset_end"),
            token_count=data.get("token_count"),
            tags=list(data.get("tags") or []),
            partial=bool(data.get("partial", False)),
        )


@dataclass(slots=True)
class FileIndexRecord:
    """Manifest entry for one indexed file."""

    path: str
    chunk_ids: List[str]
    mtime: float
    content_hash: str
    file_type: str
    size: int = 0
    partial: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileIndexRecord":
        return cls(
            path=data["path"],
            chunk_ids=list(data.get("chunk_ids") or []),
            mtime=float(data["mtime"]),
            content_hash=data["content_hash"],
            file_type=data["file_type"],
            size=int(data.get("size", 0)),
            partial=bool(data.get("partial", False)),
        )


@dataclass(slots=True)
class Manifest:
    """Durable ledger of indexed files keyed by normalized relative path."""

    created_at: str
    updated_at: str
    files: Dict[str, FileIndexRecord] = field(default_factory=dict)
    total_chunk_count: int = 0
    model: str | None = None
    version: int = MANIFEST_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "model": self.model,
            "total_chunk_count": self.total_chunk_count,
            "files": {path: record.to_dict() for path, record in self.files.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Manifest":
        return cls(
            version=int(data.get("version", MANIFEST_VERSION)),
            created_at=data["created_at"],
            updated_at=data["updated_at"],
            model=data.get("model"),
            total_chunk_count=int(data.get("total_chunk_count", 0)),
            files={
                path: FileIndexRecord.from_dict(record)
                for path, record in (data.get("files") or {}).items()
            },
        )


@dataclass(slots=True)
class Citation:
    file_path: str
    snippet: str
    page: int | None = None
    start_offset: int | None = None
    end_offset: int | None = None


@dataclass(slots=True)
class SearchHit:
    chunk_id: str
    score: float
    text_excerpt: str
    citation: Citation

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class SearchFilters:
    """Candidate restrictions applied before either sub-search runs."""

    types: List[str] | None = None
    tags: List[str] | None = None

    def is_empty(self) -> bool:
        return not self.types and not self.tags


@dataclass(slots=True)
class SearchResponse:
    query: str
    results: List[SearchHit]

    def to_dict(self) -> Dict[str, Any]:
        return {"query": self.query, "results": [hit.to_dict() for hit in self.results]}


@dataclass(slots=True)
class DocumentResult:
    path: str
    text: str
    page: int | None = None
    partial: bool = False


@dataclass(slots=True)
class StoreStats:
    files: int
    chunks: int
    by_type: Dict[str, int]
    avg_chunk_length: int
    embedding_count: int
    last_indexed_at: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
