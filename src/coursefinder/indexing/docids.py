"""
Document identifier allocation.

A (code, term) key keeps its docId for as long as it stays listed: keys
seen in the previous index generation reuse their identifier, new keys get
the next unused integer. Identifiers are never handed out twice, even
after the course they belonged to has been pruned.
"""

from typing import TYPE_CHECKING, Mapping, Optional

if TYPE_CHECKING:
    from coursefinder.indexing.builder import Index

CourseKey = tuple[str, str]


class DocIdAllocator:
    """Maps (code, term) keys to stable docIds."""

    def __init__(self, known: Optional[Mapping[CourseKey, int]] = None, next_id: int = 0):
        self._ids: dict[CourseKey, int] = dict(known or {})
        floor = max(self._ids.values(), default=-1) + 1
        self._next_id = max(next_id, floor)

    @classmethod
    def from_index(cls, index: Optional["Index"]) -> "DocIdAllocator":
        """Seed an allocator with the identifiers of an index generation."""
        if index is None:
            return cls()
        known = {record.key: doc_id for doc_id, record in index.records.items()}
        return cls(known, next_id=index.next_doc_id)

    def assign(self, key: CourseKey) -> int:
        """Return the docId for a key, allocating one if the key is new."""
        doc_id = self._ids.get(key)
        if doc_id is None:
            doc_id = self._next_id
            self._ids[key] = doc_id
            self._next_id += 1
        return doc_id

    def lookup(self, key: CourseKey) -> Optional[int]:
        return self._ids.get(key)

    @property
    def next_id(self) -> int:
        return self._next_id
