"""
Indexing Module - Inverted index construction and publication.
==============================================================

- tokenizer: Shared tokenization for documents and queries
- docids: Stable docId allocation across generations
- builder: Index / PostingsEntry snapshots and the IndexBuilder
- store: Holder of the active generation with atomic publish
- snapshot: Optional on-disk copy of the last good index
"""

from coursefinder.indexing.builder import Index, IndexBuilder, PostingsEntry, build_index
from coursefinder.indexing.docids import DocIdAllocator
from coursefinder.indexing.snapshot import SnapshotManager
from coursefinder.indexing.store import IndexStore
from coursefinder.indexing.tokenizer import tokenize, tokenize_code, tokenize_query

__all__ = [
    "Index",
    "IndexBuilder",
    "PostingsEntry",
    "build_index",
    "DocIdAllocator",
    "IndexStore",
    "SnapshotManager",
    "tokenize",
    "tokenize_code",
    "tokenize_query",
]
