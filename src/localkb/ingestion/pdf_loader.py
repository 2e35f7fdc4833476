"""PDF loading and chunking utilities.

Uses PyMuPDF (fitz) for fast PDF text extraction. Each page is chunked on its
own so every chunk carries a 1-based page number.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterator, List, Tuple

import fitz  # PyMuPDF

from localkb.ingestion.chunks import ExtractOptions, build_chunks
from localkb.models import Chunk
from localkb.utils.text import normalize_whitespace

LOGGER = logging.getLogger(__name__)


def needs_ocr(page_text: str, min_chars: int) -> bool:
    """True when a page has too little text to be trusted (likely scanned)."""
    return len("".join(page_text.split())) < min_chars


def iter_page_texts(path: Path) -> Iterator[Tuple[int, str]]:
    """Yield ``(page_number, text)`` for every page, 1-based."""
    doc = fitz.open(path)
    try:
        for index in range(len(doc)):
            page = doc[index]
            yield index + 1, normalize_whitespace([page.get_text() or ""])
    finally:
        doc.close()


def extract_pdf(
    path: Path, options: ExtractOptions, *, doc_path: str, mtime: float = 0.0
) -> List[Chunk]:
    """Produce per-page chunk records for a PDF.

    Encrypted documents yield no chunks. Pages below the OCR threshold are
    kept but flagged ``partial`` since no OCR engine is bundled.
    """
    chunks: List[Chunk] = []
    try:
        pages = list(iter_page_texts(path))
    except Exception as exc:
        if "password" in str(exc).lower() or "encrypted" in str(exc).lower():
            LOGGER.warning("Skipping encrypted PDF %s", path)
            return chunks
        raise

    for page_number, text in pages:
        partial = needs_ocr(text, options.ocr_trigger_min_chars)
        if partial:
            LOGGER.warning("Page %s of %s has little text, OCR unavailable", page_number, path)
        chunks.extend(
            build_chunks(
                text,
                path=doc_path,
                file_type="pdf",
                options=options,
                mtime=mtime,
                page=page_number,
                partial=partial,
            )
        )
    return chunks
