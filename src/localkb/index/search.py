"""Hybrid (dense + keyword) search with alpha-blended score fusion."""

from __future__ import annotations

import logging
from typing import Dict, List, Mapping, Sequence, Set, Tuple

from localkb.embedding.cache import EmbeddingCache, query_identity
from localkb.index.keyword import KeywordIndex
from localkb.index.vector import FlatVectorIndex
from localkb.models import Chunk, Citation, SearchFilters, SearchHit, SearchResponse
from localkb.utils.text import build_excerpt, build_snippet

LOGGER = logging.getLogger(__name__)

# candidates fetched from each sub-index before fusion
FAN_OUT = 64


def normalize_dense(score: float) -> float:
    """Map cosine similarity from [-1, 1] to [0, 1]."""
    return (score + 1.0) / 2.0


def rank_scores(ids: Sequence[str]) -> Dict[str, float]:
    """Score the i-th of N ranked ids as ``1 - i / N``."""
    total = len(ids)
    return {cid: 1.0 - position / total for position, cid in enumerate(ids)}


def fuse_scores(
    dense: Sequence[Tuple[str, float]],
    keyword: Sequence[str],
    alpha: float,
) -> List[Tuple[str, float]]:
    """Blend normalized dense and keyword-rank scores, best first.

    A side that did not return an id contributes 0. Ids with a fused score of
    0 are dropped. Ties keep first-seen order, dense hits before keyword hits.
    """
    dense_scores = {cid: normalize_dense(score) for cid, score in dense}
    keyword_scores = rank_scores(keyword)
    fused: Dict[str, float] = {}
    for cid in list(dense_scores) + [cid for cid in keyword if cid not in dense_scores]:
        fused[cid] = alpha * dense_scores.get(cid, 0.0) + (1.0 - alpha) * keyword_scores.get(cid, 0.0)
    ranked = sorted(fused.items(), key=lambda item: item[1], reverse=True)
    return [(cid, score) for cid, score in ranked if score > 0.0]


def filter_candidates(chunks: Mapping[str, Chunk], filters: SearchFilters | None) -> Set[str] | None:
    """Ids passing type and tag filters, or None when nothing is filtered."""
    if filters is None or filters.is_empty():
        return None
    types = set(filters.types or ())
    tags = {tag.lower() for tag in filters.tags or ()}
    allowed: Set[str] = set()
    for cid, chunk in chunks.items():
        if types and chunk.type not in types:
            continue
        if tags and not tags <= {tag.lower() for tag in chunk.tags}:
            continue
        allowed.add(cid)
    return allowed


def build_hit(chunk: Chunk, score: float) -> SearchHit:
    return SearchHit(
        chunk_id=chunk.id,
        score=score,
        text_excerpt=build_excerpt(chunk.text),
        citation=Citation(
            file_path=chunk.path,
            page=chunk.page,
            start_offset=chunk.offset_start,
            end_offset=chunk.offset_end,
            snippet=build_snippet(chunk.text),
        ),
    )


class HybridSearcher:
    """High-level API to query both indexes and fuse their rankings."""

    def __init__(
        self,
        chunks: Mapping[str, Chunk],
        vectors: FlatVectorIndex,
        keywords: KeywordIndex,
        embeddings: EmbeddingCache,
        *,
        fan_out: int = FAN_OUT,
    ) -> None:
        self.chunks = chunks
        self.vectors = vectors
        self.keywords = keywords
        self.embeddings = embeddings
        self.fan_out = fan_out

    def dense_ranking(self, query: str, *, allowed: Set[str] | None = None) -> List[Tuple[str, float]]:
        if not len(self.vectors):
            return []
        vector = self.embeddings.embed_text(query, query_identity(query))
        return self.vectors.search(vector, self.fan_out, allowed=allowed)

    def keyword_ranking(
        self, query: str, *, filters: SearchFilters | None = None, allowed: Set[str] | None = None
    ) -> List[str]:
        tags = filters.tags if filters else None
        return self.keywords.search(query, self.fan_out, tags=tags, allowed=allowed)

    def search(
        self,
        query: str,
        *,
        k: int = 8,
        alpha: float = 0.65,
        filters: SearchFilters | None = None,
    ) -> SearchResponse:
        if k <= 0 or not query.strip():
            return SearchResponse(query=query, results=[])
        alpha = min(max(alpha, 0.0), 1.0)

        allowed = filter_candidates(self.chunks, filters)
        if allowed is not None and not allowed:
            return SearchResponse(query=query, results=[])

        dense = self.dense_ranking(query, allowed=allowed)
        keyword = self.keyword_ranking(query, filters=filters, allowed=allowed)
        LOGGER.debug(
            "Query %r: %s dense and %s keyword candidates", query, len(dense), len(keyword)
        )

        results: List[SearchHit] = []
        for cid, score in fuse_scores(dense, keyword, alpha):
            chunk = self.chunks.get(cid)
            if chunk is None:
                LOGGER.warning("Index returned unknown chunk id %s", cid)
                continue
            results.append(build_hit(chunk, score))
            if len(results) >= k:
                break
        return SearchResponse(query=query, results=results)
