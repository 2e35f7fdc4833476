"""Word (.docx) and Apple Pages extraction."""

from __future__ import annotations

import logging
import zipfile
from pathlib import Path
from typing import List
from xml.etree import ElementTree

from docx import Document as DocxDocument

from localkb.ingestion.chunks import ExtractOptions, build_chunks
from localkb.models import Chunk

LOGGER = logging.getLogger(__name__)


def docx_text(path: Path) -> str:
    doc = DocxDocument(path)
    parts = [para.text.strip() for para in doc.paragraphs if para.text.strip()]
    for table in doc.tables:
        for row in table.rows:
            cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
            if cells:
                parts.append(" | ".join(cells))
    return "\n\n".join(parts)


def extract_word(
    path: Path, options: ExtractOptions, *, doc_path: str, mtime: float = 0.0
) -> List[Chunk]:
    return build_chunks(
        docx_text(path), path=doc_path, file_type="word", options=options, mtime=mtime
    )


def _is_safe_entry(name: str) -> bool:
    return not name.startswith("/") and "../" not in name


def _xml_text(data: bytes) -> str:
    root = ElementTree.fromstring(data)
    return "\n".join(text.strip() for text in root.itertext() if text.strip())


def pages_text(path: Path) -> tuple[str, bool]:
    """Best-effort text of a Pages bundle; the flag is True when incomplete.

    Older bundles carry an ``index.xml``. Newer ones store protobuf ``.iwa``
    archives, which are only sniffed for embedded XML fragments.
    """
    with zipfile.ZipFile(path) as bundle:
        names = [name for name in bundle.namelist() if _is_safe_entry(name)]
        index_name = next((name for name in names if name.endswith("index.xml")), None)
        if index_name is not None:
            return _xml_text(bundle.read(index_name)), False

        parts: List[str] = []
        partial = False
        for name in (n for n in names if n.endswith(".iwa")):
            data = bundle.read(name)
            start = data.find(b"<")
            if start == -1:
                continue
            try:
                text = _xml_text(data[start:])
            except ElementTree.ParseError as exc:
                partial = True
                LOGGER.warning("Skipping unparsable entry %s in %s: %s", name, path, exc)
                continue
            if text:
                parts.append(text)
    if not parts:
        LOGGER.warning("No recoverable text in Pages document %s", path)
        partial = True
    return "\n".join(parts), partial


def extract_pages(
    path: Path, options: ExtractOptions, *, doc_path: str, mtime: float = 0.0
) -> List[Chunk]:
    text, partial = pages_text(path)
    return build_chunks(
        text,
        path=doc_path,
        file_type="pages",
        options=options,
        mtime=mtime,
        partial=partial,
    )
