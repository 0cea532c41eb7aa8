"""
Ingestion Module - Fetch, parse, and normalize catalog listings.
================================================================

This module handles the source-facing half of a rebuild:

- fetcher: Paginated HTTP retrieval with retries and backoff
- parser: Listing page HTML to raw field groups
- normalizer: Validation, cleanup and deduplication into CourseRecords

Pipeline flow:
    Token → Fetcher → Page HTML → Parser → RawField groups → Normalizer → CourseRecords
"""

from coursefinder.ingestion.fetcher import Fetcher, FetchedPage, FetchState, FetchTrace
from coursefinder.ingestion.normalizer import (
    NormalizationStats,
    Normalizer,
    TextCleaner,
    normalize_code,
)
from coursefinder.ingestion.parser import (
    CatalogParser,
    CatalogSelectors,
    RawField,
    RawGroup,
    get_parser,
    parse_page,
)

__all__ = [
    # Fetcher
    "Fetcher",
    "FetchedPage",
    "FetchState",
    "FetchTrace",
    # Parser
    "CatalogParser",
    "CatalogSelectors",
    "RawField",
    "RawGroup",
    "get_parser",
    "parse_page",
    # Normalizer
    "Normalizer",
    "NormalizationStats",
    "TextCleaner",
    "normalize_code",
]
