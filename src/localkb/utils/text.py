"""Text helpers: normalization, boundary-aware chunking, tokens and snippets."""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from typing import Iterable, List

_HSPACE_RE = re.compile(r"[\t\f\v ]+")
_BLANKS_RE = re.compile(r"\n{3,}")
_SENTENCE_END_RE = re.compile(r"[.?!。！？](?:\s|$)")
_TOKEN_RE = re.compile(r"\w+", re.UNICODE)
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")
_WS_RE = re.compile(r"\s+")

# a boundary closer than this to the window start is ignored
MIN_BOUNDARY_CHARS = 50

SNIPPET_MAX_CHARS = 300
EXCERPT_MAX_CHARS = 600


@dataclass(slots=True)
class TextFragment:
    text: str
    start: int
    end: int


def normalize_text(text: str) -> str:
    """NFKC-normalize, unify newlines and collapse redundant whitespace."""
    normalized = unicodedata.normalize("NFKC", text)
    normalized = normalized.replace("\r\n", "\n").replace("\r", "\n")
    normalized = _HSPACE_RE.sub(" ", normalized)
    return _BLANKS_RE.sub("\n\n", normalized).strip()


def normalize_whitespace(lines: Iterable[str]) -> str:
    """Collapse whitespace and join lines."""
    return "\n".join(line.strip() for line in lines if line.strip())


def _find_boundary(text: str, start: int, end: int) -> int:
    window = text[start:end]
    paragraph = window.rfind("\n\n")
    if paragraph != -1:
        return start + paragraph + 2
    last_sentence = None
    for last_sentence in _SENTENCE_END_RE.finditer(window):
        pass
    if last_sentence is not None:
        return start + last_sentence.end()
    space = window.rfind(" ")
    if space != -1:
        return start + space + 1
    return end


def chunk_text(text: str, *, max_chars: int = 3500, overlap: int = 120) -> List[TextFragment]:
    """Split normalized text into fragments that prefer natural boundaries.

    Offsets refer to positions in ``normalize_text(text)``. Each window ends at
    the last paragraph break, sentence end or space it contains, and the next
    window starts ``overlap`` characters before the previous end.
    """
    normalized = normalize_text(text)
    fragments: List[TextFragment] = []
    if not normalized:
        return fragments

    max_chars = max(max_chars, 1)
    overlap = min(max(overlap, 0), max_chars - 1)
    length = len(normalized)
    start = 0
    while start < length:
        end = min(start + max_chars, length)
        if end < length:
            boundary = _find_boundary(normalized, start, end)
            if boundary > start + MIN_BOUNDARY_CHARS:
                end = boundary
        window = normalized[start:end]
        actual_start = start + (len(window) - len(window.lstrip()))
        actual_end = end - (len(window) - len(window.rstrip()))
        if actual_end <= actual_start:
            break
        fragments.append(
            TextFragment(normalized[actual_start:actual_end], actual_start, actual_end)
        )
        if end >= length:
            break
        next_start = actual_end - overlap
        start = next_start if next_start > start else actual_end
    return fragments


def tokenize(text: str) -> List[str]:
    """Lowercased word tokens."""
    return _TOKEN_RE.findall(text.lower())


def clamp(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 1].rstrip() + "…"


def build_snippet(text: str, limit: int = SNIPPET_MAX_CHARS) -> str:
    """Single-line citation snippet with control characters removed."""
    sanitized = _WS_RE.sub(" ", _CONTROL_RE.sub(" ", text)).strip()
    return clamp(sanitized, limit)


def build_excerpt(text: str, limit: int = EXCERPT_MAX_CHARS) -> str:
    return text if len(text) <= limit else text[:limit] + "…"
