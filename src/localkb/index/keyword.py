"""Inverted keyword index ranked with BM25."""

from __future__ import annotations

import json
from collections import defaultdict
from typing import Collection, Dict, Iterable, List, Set

from rank_bm25 import BM25Plus

from localkb.errors import PersistenceError
from localkb.utils.text import tokenize

SNAPSHOT_VERSION = 1


class KeywordIndex:
    """Chunk id to tokenized text plus tags.

    Postings decide which ids match a query (any shared token); BM25+ over the
    whole corpus orders the matches. The BM25 model is rebuilt lazily after
    mutations. Tags are indexed as extra tokens and kept separately for
    filtering.
    """

    def __init__(self) -> None:
        self._tokens: Dict[str, List[str]] = {}
        self._tags: Dict[str, Set[str]] = {}
        self._postings: Dict[str, Set[str]] = defaultdict(set)
        self._bm25: BM25Plus | None = None
        self._bm25_ids: List[str] = []
        self._dirty = True

    def __len__(self) -> int:
        return len(self._tokens)

    def __contains__(self, chunk_id: str) -> bool:
        return chunk_id in self._tokens

    def ids(self) -> List[str]:
        return list(self._tokens)

    def upsert(self, chunk_id: str, text: str, tags: Iterable[str] = ()) -> None:
        self._unlink(chunk_id)
        tag_set = {tag.lower() for tag in tags if tag}
        tokens = tokenize(text)
        for tag in sorted(tag_set):
            tokens.extend(tokenize(tag))
        self._tokens[chunk_id] = tokens
        self._tags[chunk_id] = tag_set
        for token in set(tokens):
            self._postings[token].add(chunk_id)
        self._dirty = True

    def remove(self, chunk_id: str) -> bool:
        if chunk_id not in self._tokens:
            return False
        self._unlink(chunk_id)
        del self._tokens[chunk_id]
        del self._tags[chunk_id]
        self._dirty = True
        return True

    def _unlink(self, chunk_id: str) -> None:
        for token in set(self._tokens.get(chunk_id, ())):
            postings = self._postings.get(token)
            if postings is None:
                continue
            postings.discard(chunk_id)
            if not postings:
                del self._postings[token]

    def _model(self) -> BM25Plus | None:
        if self._dirty:
            self._bm25_ids = list(self._tokens)
            corpus = [self._tokens[cid] for cid in self._bm25_ids]
            # BM25 divides by the average document length
            if corpus and any(corpus):
                self._bm25 = BM25Plus(corpus)
            else:
                self._bm25 = None
            self._dirty = False
        return self._bm25

    def search(
        self,
        query: str,
        limit: int,
        *,
        tags: Iterable[str] | None = None,
        allowed: Collection[str] | None = None,
    ) -> List[str]:
        """Return up to ``limit`` matching ids, best first.

        With ``tags`` only ids whose tag set contains every requested tag are
        candidates.
        """
        query_tokens = tokenize(query)
        if limit <= 0 or not query_tokens:
            return []
        matched: Set[str] = set()
        for token in set(query_tokens):
            matched |= self._postings.get(token, set())
        required = {tag.lower() for tag in tags or () if tag}
        if required:
            matched = {cid for cid in matched if required <= self._tags.get(cid, set())}
        if allowed is not None:
            matched = {cid for cid in matched if cid in allowed}
        if not matched:
            return []

        model = self._model()
        if model is None:
            return []
        scores = model.get_scores(query_tokens)
        ranked = [
            (position, cid, float(scores[position]))
            for position, cid in enumerate(self._bm25_ids)
            if cid in matched
        ]
        ranked.sort(key=lambda item: (-item[2], item[0]))
        return [cid for _, cid, _ in ranked[:limit]]

    def dumps(self) -> bytes:
        entries = [
            {"id": cid, "tokens": tokens, "tags": sorted(self._tags[cid])}
            for cid, tokens in self._tokens.items()
        ]
        return json.dumps({"version": SNAPSHOT_VERSION, "entries": entries}).encode("utf-8")

    @classmethod
    def loads(cls, payload: bytes) -> "KeywordIndex":
        try:
            data = json.loads(payload.decode("utf-8"))
            entries = data["entries"]
        except (UnicodeDecodeError, ValueError, KeyError, TypeError) as exc:
            raise PersistenceError(f"Unreadable keyword snapshot: {exc}") from exc
        index = cls()
        for entry in entries:
            cid = entry["id"]
            tokens = list(entry["tokens"])
            index._tokens[cid] = tokens
            index._tags[cid] = set(entry.get("tags") or [])
            for token in set(tokens):
                index._postings[token].add(cid)
        return index
