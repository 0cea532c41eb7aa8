"""
Engine Module - Ranked keyword search over the active index.
============================================================

Scores every document matching at least one query token:

    score(doc) = sum over query tokens t of tf(doc, t) * ln(1 + N / df(t))

A query that is exactly a course code (ignoring case) lifts the documents
carrying that code to the top score of the result set. Results are sorted
by descending score, then ascending docId, so identical index + identical
query always give identical output.

Search never fails because of the data: unknown tokens contribute nothing
and an empty query returns no results.
"""

import math
from typing import Optional

from coursefinder.indexing.builder import Index
from coursefinder.indexing.store import IndexStore
from coursefinder.indexing.tokenizer import tokenize_query
from coursefinder.shared.config import get_settings
from coursefinder.shared.logging import get_logger
from coursefinder.shared.schemas import CourseRecord, SearchHit

logger = get_logger(__name__)


def inverse_document_frequency(document_count: int, document_frequency: int) -> float:
    """ln(1 + N / df); df is at least 1 for any token in the index."""
    return math.log(1 + document_count / document_frequency)


def score_documents(index: Index, tokens: list[str]) -> dict[int, float]:
    """Accumulate tf-idf scores of candidate documents."""
    scores: dict[int, float] = {}
    for token in tokens:
        entry = index.get_postings(token)
        if entry is None:
            continue
        idf = inverse_document_frequency(index.document_count, entry.document_frequency)
        for doc_id in entry.doc_ids:
            scores[doc_id] = scores.get(doc_id, 0.0) + entry.term_frequency[doc_id] * idf
    return scores


def rank(index: Index, query_text: str, limit: int) -> list[SearchHit]:
    """Score, boost, sort and truncate the results of one query."""
    if not query_text or not query_text.strip():
        return []

    tokens = tokenize_query(query_text)
    scores = score_documents(index, tokens)

    exact = set(index.codes.get(query_text.strip().upper(), ()))
    if exact:
        top = max(scores.values(), default=0.0)
        for doc_id in exact:
            scores[doc_id] = top

    if not scores:
        return []

    ordered = sorted(
        scores.items(),
        key=lambda item: (-item[1], item[0] not in exact, item[0]),
    )
    return [
        SearchHit(record=index.records[doc_id], score=score)
        for doc_id, score in ordered[:limit]
    ]


class QueryEngine:
    """
    Answers keyword queries against the store's active index.

    Each search reads the active snapshot once and works on it to the end,
    so a concurrent publish never mixes two generations into one result.

    Example:
        >>> engine = QueryEngine(store)
        >>> for hit in engine.search("programming fundamentals", limit=5):
        ...     print(f"{hit.record.code}: {hit.score:.3f}")
    """

    def __init__(
        self,
        store: IndexStore,
        default_limit: Optional[int] = None,
        max_limit: Optional[int] = None,
    ):
        settings = get_settings()
        self.store = store
        self.default_limit = default_limit or settings.get_effective_limit()
        self.max_limit = max_limit or settings.search.max_limit

    def _resolve_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return min(self.default_limit, self.max_limit)
        if limit < 1:
            raise ValueError(f"limit must be at least 1, got {limit}")
        if limit > self.max_limit:
            logger.debug(f"Clamping limit {limit} to {self.max_limit}")
            return self.max_limit
        return limit

    def search(self, query_text: str, limit: Optional[int] = None) -> list[SearchHit]:
        """
        Ranked search.

        Args:
            query_text: Free-text query or a course code
            limit: Maximum number of results (default from settings)

        Returns:
            Hits in rank order, at most `limit` long

        Raises:
            ValueError: If limit is smaller than 1
        """
        k = self._resolve_limit(limit)
        index = self.store.active_index()
        hits = rank(index, query_text, k)
        logger.debug(
            f"Query {query_text[:50]!r} on generation {index.generation}: {len(hits)} hit(s)"
        )
        return hits

    def lookup_code(self, code: str) -> list[CourseRecord]:
        """Records listed under exactly this course code, in docId order."""
        return self.store.active_index().find_by_code(code)
