"""Extractor registry: file path and type in, ordered chunks out."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Dict, List

from localkb.errors import UnsupportedFileTypeError
from localkb.ingestion.chunks import ExtractOptions, build_chunks
from localkb.ingestion.markdown_loader import extract_markdown
from localkb.ingestion.office_loader import extract_pages, extract_word
from localkb.ingestion.pdf_loader import extract_pdf
from localkb.models import Chunk
from localkb.utils.files import file_extension

Extractor = Callable[..., List[Chunk]]


def extract_text(
    path: Path, options: ExtractOptions, *, doc_path: str, mtime: float = 0.0
) -> List[Chunk]:
    raw = path.read_text(encoding="utf-8", errors="replace")
    return build_chunks(raw, path=doc_path, file_type="text", options=options, mtime=mtime)


EXTENSION_TYPES: Dict[str, str] = {
    ".pdf": "pdf",
    ".md": "markdown",
    ".markdown": "markdown",
    ".txt": "text",
    ".docx": "word",
    ".pages": "pages",
}

EXTRACTORS: Dict[str, Extractor] = {
    "pdf": extract_pdf,
    "markdown": extract_markdown,
    "text": extract_text,
    "word": extract_word,
    "pages": extract_pages,
}


def detect_file_type(path: str | Path) -> str:
    """Map an extension to its chunk type or raise :class:`UnsupportedFileTypeError`."""
    ext = file_extension(path)
    try:
        return EXTENSION_TYPES[ext]
    except KeyError:
        raise UnsupportedFileTypeError(str(path), ext) from None


def extract(
    path: Path,
    file_type: str | None,
    options: ExtractOptions | None = None,
    *,
    doc_path: str | None = None,
    mtime: float = 0.0,
) -> List[Chunk]:
    """Run the extractor registered for ``file_type``, detected from the path when None."""
    if file_type is None:
        file_type = detect_file_type(path)
    extractor = EXTRACTORS.get(file_type)
    if extractor is None:
        raise UnsupportedFileTypeError(str(path), file_extension(path))
    return extractor(
        Path(path),
        options or ExtractOptions(),
        doc_path=doc_path or str(path),
        mtime=mtime,
    )


__all__ = [
    "EXTENSION_TYPES",
    "EXTRACTORS",
    "ExtractOptions",
    "Extractor",
    "detect_file_type",
    "extract",
]
