"""Turn extracted document text into content-addressed chunks."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence

from localkb.models import Chunk
from localkb.utils.files import hash_parts
from localkb.utils.text import chunk_text, tokenize

CHUNK_ID_LENGTH = 32


@dataclass(slots=True)
class ExtractOptions:
    chunk_chars: int = 3500
    overlap: int = 120
    ocr_trigger_min_chars: int = 100


def chunk_id(
    path: str,
    file_type: str,
    text: str,
    *,
    page: int | None = None,
    start: int | None = None,
    end: int | None = None,
) -> str:
    return hash_parts(path, file_type, page, start, end, text)[:CHUNK_ID_LENGTH]


def build_chunks(
    text: str,
    *,
    path: str,
    file_type: str,
    options: ExtractOptions,
    mtime: float = 0.0,
    page: int | None = None,
    tags: Sequence[str] | None = None,
    partial: bool = False,
) -> List[Chunk]:
    """Chunk ``text`` and wrap every fragment in a :class:`Chunk`."""
    chunks: List[Chunk] = []
    for fragment in chunk_text(text, max_chars=options.chunk_chars, overlap=options.overlap):
        chunks.append(
            Chunk(
                id=chunk_id(
                    path,
                    file_type,
                    fragment.text,
                    page=page,
                    start=fragment.start,
                    end=fragment.end,
                ),
                path=path,
                type=file_type,
                text=fragment.text,
                mtime=mtime,
                page=page,
                offset_start=fragment.start,
                offset_end=fragment.end,
                token_count=len(tokenize(fragment.text)),
                tags=list(tags or []),
                partial=partial,
            )
        )
    return chunks
