"""
Search Module - Ranked keyword queries.
=======================================

- engine: tf-idf scoring with exact course-code boosting
"""

from coursefinder.search.engine import QueryEngine, rank, score_documents

__all__ = ["QueryEngine", "rank", "score_documents"]
