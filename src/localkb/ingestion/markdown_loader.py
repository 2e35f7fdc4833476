"""Markdown extraction with YAML front matter tags."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, List, Tuple

import yaml

from localkb.ingestion.chunks import ExtractOptions, build_chunks
from localkb.models import Chunk

LOGGER = logging.getLogger(__name__)


def _as_tags(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return [str(tag) for tag in value if tag is not None]
    return [str(value)]


def split_front_matter(raw: str) -> Tuple[str, dict]:
    """Return ``(content, front_matter)``; malformed front matter is kept as text."""
    if not raw.startswith("---"):
        return raw, {}
    parts = raw.split("---", 2)
    if len(parts) < 3:
        return raw, {}
    try:
        data = yaml.safe_load(parts[1])
    except yaml.YAMLError as exc:
        LOGGER.warning("Invalid front matter ignored: %s", exc)
        return raw, {}
    if not isinstance(data, dict):
        return parts[2].lstrip("\n"), {}
    return parts[2].lstrip("\n"), data


def extract_markdown(
    path: Path, options: ExtractOptions, *, doc_path: str, mtime: float = 0.0
) -> List[Chunk]:
    content, front_matter = split_front_matter(path.read_text(encoding="utf-8"))
    return build_chunks(
        content,
        path=doc_path,
        file_type="markdown",
        options=options,
        mtime=mtime,
        tags=_as_tags(front_matter.get("tags")),
    )
