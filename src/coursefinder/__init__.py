"""
CourseFinder - Course Catalog Scraper and Keyword Search
========================================================

Scrapes a university's paginated online course catalog, normalizes the
listings into canonical course records, builds an in-memory inverted index
over course code, title and description, and answers ranked keyword
queries against it.

Pipeline:
    Fetcher → Parser → Normalizer → IndexBuilder → IndexStore ← QueryEngine

Rebuilds swap in a complete new index generation atomically; queries run
concurrently against whichever generation they started on.
"""

__version__ = "0.1.0"
__author__ = "CourseFinder Team"
__license__ = "MIT"

__all__ = [
    # Version info
    "__version__",
    "__author__",
    "__license__",
    # Main modules (imported on demand)
    "shared",
    "ingestion",
    "indexing",
    "search",
    "pipeline",
    "cli",
]
