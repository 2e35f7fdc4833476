"""Utility helpers for working with files."""

from __future__ import annotations

import fnmatch
import hashlib
import logging
import os
from pathlib import Path
from typing import Iterable, Iterator, Sequence

LOGGER = logging.getLogger(__name__)


def file_extension(path: str | Path) -> str:
    return Path(path).suffix.lower()


def _is_excluded(path: Path, root: Path, exclude: Sequence[str]) -> bool:
    try:
        rel = path.relative_to(root).as_posix()
    except ValueError:
        rel = path.as_posix()
    candidates = (rel, path.as_posix(), "/" + rel)
    for pattern in exclude:
        if any(fnmatch.fnmatch(candidate, pattern) for candidate in candidates):
            return True
        # "**/x/**" should also match a top-level "x/..."
        if pattern.startswith("**/") and fnmatch.fnmatch(rel, pattern[3:]):
            return True
    return False


def iter_document_paths(
    inputs: Iterable[str | Path],
    *,
    include: Sequence[str],
    exclude: Sequence[str] = (),
) -> Iterator[Path]:
    """Yield deduplicated absolute file paths, descending into directories.

    Directories are walked recursively, keeping files whose extension is in
    ``include`` and whose path matches none of the ``exclude`` globs. Files
    given directly are kept when their extension is included. Hidden files are
    ignored inside directories.
    """
    allowed = {ext.lower() for ext in include}
    seen: set[Path] = set()
    for item in inputs:
        root = Path(item).expanduser().resolve()
        if root.is_dir():
            candidates = (
                child
                for child in sorted(root.rglob("*"))
                if child.is_file()
                and not any(part.startswith(".") for part in child.relative_to(root).parts)
                and not _is_excluded(child, root, exclude)
            )
        elif root.is_file():
            candidates = iter([root])
        else:
            LOGGER.warning("Path skipped, not found: %s", item)
            continue
        for path in candidates:
            if path.suffix.lower() not in allowed or path in seen:
                continue
            seen.add(path)
            yield path


def compute_sha256(path: Path) -> str:
    """Compute SHA256 hash for a file."""
    sha = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1 << 20), b""):
            sha.update(chunk)
    return sha.hexdigest()


def hash_parts(*parts: object) -> str:
    """SHA256 over the non-None parts, NUL separated."""
    sha = hashlib.sha256()
    for part in parts:
        if part is None:
            continue
        sha.update(str(part).encode("utf-8"))
        sha.update(b"\x00")
    return sha.hexdigest()


def normalize_rel_path(path: str | Path, base_dir: Path) -> str:
    """Forward-slash path relative to ``base_dir`` for portable manifests."""
    absolute = Path(path).expanduser()
    if not absolute.is_absolute():
        absolute = base_dir / absolute
    try:
        rel = os.path.relpath(os.path.realpath(absolute), os.path.realpath(base_dir))
    except ValueError:
        # different drive on Windows
        return Path(os.path.realpath(absolute)).as_posix()
    return Path(rel).as_posix()


def resolve_rel_path(rel: str, base_dir: Path) -> Path:
    return (base_dir / Path(rel)).resolve()
