"""
Builder Module - Inverted index construction.
=============================================

Builds an immutable Index snapshot from a batch of CourseRecords:

1. Assign docIds (reused for (code, term) keys present in the previous
   generation, otherwise the next unused integer)
2. Tokenize code, title and description
3. Count term frequencies per (token, docId) into PostingsEntries
4. Stamp the new Index with generation = previous + 1

Building is pure and deterministic: the same records in the same order
always produce the same postings. A published Index is never mutated;
every rebuild produces a new one.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from coursefinder.indexing.docids import DocIdAllocator
from coursefinder.indexing.tokenizer import tokenize, tokenize_code
from coursefinder.shared.logging import get_logger
from coursefinder.shared.schemas import CourseRecord

logger = get_logger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Index Data Structures
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class PostingsEntry:
    """Documents containing a token, with per-document counts."""

    term: str
    doc_ids: tuple[int, ...]
    term_frequency: Mapping[int, int]

    @property
    def document_frequency(self) -> int:
        return len(self.doc_ids)

    def frequency(self, doc_id: int) -> int:
        return self.term_frequency.get(doc_id, 0)


@dataclass(frozen=True)
class Index:
    """
    Immutable index snapshot.

    Attributes:
        generation: 0 for the initial empty index, +1 per rebuild
        records: docId -> CourseRecord
        postings: token -> PostingsEntry
        document_count: Number of records
        next_doc_id: First docId never handed out so far
        codes: Uppercase course code -> docIds carrying it
    """

    generation: int
    records: Mapping[int, CourseRecord]
    postings: Mapping[str, PostingsEntry]
    document_count: int
    next_doc_id: int = 0
    codes: Mapping[str, tuple[int, ...]] = field(default_factory=lambda: MappingProxyType({}))
    built_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc), compare=False)

    @classmethod
    def empty(cls) -> "Index":
        """The generation-0 index every process starts with."""
        return cls(
            generation=0,
            records=MappingProxyType({}),
            postings=MappingProxyType({}),
            document_count=0,
        )

    def get_postings(self, token: str) -> Optional[PostingsEntry]:
        return self.postings.get(token)

    def find_by_code(self, code: str) -> list[CourseRecord]:
        """Records whose code matches exactly, ignoring case."""
        return [self.records[doc_id] for doc_id in self.codes.get(code.strip().upper(), ())]

    @property
    def vocabulary_size(self) -> int:
        return len(self.postings)


# ─────────────────────────────────────────────────────────────────────────────
# Index Builder
# ─────────────────────────────────────────────────────────────────────────────


class IndexBuilder:
    """
    Builds Index snapshots.

    Example:
        >>> builder = IndexBuilder()
        >>> index = builder.build(records, previous=store.active_index())
        >>> index.generation
        1
    """

    def build(
        self,
        records: Iterable[CourseRecord],
        previous: Optional[Index] = None,
        retain_missing: bool = False,
    ) -> Index:
        """
        Build a new index generation.

        Args:
            records: Records in scrape order; a repeated (code, term) key
                replaces the earlier record
            previous: The currently active index, for docId reuse and the
                generation number
            retain_missing: Carry forward records of the previous index
                whose key is absent from `records`

        Returns:
            A new immutable Index
        """
        allocator = DocIdAllocator.from_index(previous)

        by_id: dict[int, CourseRecord] = {}
        for record in records:
            doc_id = allocator.assign(record.key)
            if record.doc_id != doc_id:
                record = record.model_copy(update={"doc_id": doc_id})
            by_id[doc_id] = record

        carried = 0
        if retain_missing and previous is not None:
            for doc_id, record in previous.records.items():
                if doc_id not in by_id:
                    by_id[doc_id] = record
                    carried += 1

        ordered = dict(sorted(by_id.items()))

        counts: dict[str, dict[int, int]] = defaultdict(dict)
        codes: dict[str, list[int]] = defaultdict(list)
        for doc_id, record in ordered.items():
            codes[record.code.upper()].append(doc_id)
            for token in self.document_tokens(record):
                per_doc = counts[token]
                per_doc[doc_id] = per_doc.get(doc_id, 0) + 1

        postings = {
            token: PostingsEntry(
                term=token,
                doc_ids=tuple(sorted(per_doc)),
                term_frequency=MappingProxyType(dict(sorted(per_doc.items()))),
            )
            for token, per_doc in sorted(counts.items())
        }

        generation = (previous.generation if previous is not None else 0) + 1
        index = Index(
            generation=generation,
            records=MappingProxyType(ordered),
            postings=MappingProxyType(postings),
            document_count=len(ordered),
            next_doc_id=allocator.next_id,
            codes=MappingProxyType({code: tuple(ids) for code, ids in sorted(codes.items())}),
        )

        logger.info(
            f"Built index generation {generation}: {index.document_count} documents, "
            f"{index.vocabulary_size} terms"
            + (f", {carried} carried over" if carried else "")
        )
        return index

    @staticmethod
    def document_tokens(record: CourseRecord) -> list[str]:
        """All indexed tokens of a record, duplicates kept."""
        return tokenize_code(record.code) + tokenize(record.title) + tokenize(record.description)


def build_index(
    records: Iterable[CourseRecord],
    previous: Optional[Index] = None,
    retain_missing: bool = False,
) -> Index:
    """Convenience wrapper around IndexBuilder.build()."""
    return IndexBuilder().build(records, previous=previous, retain_missing=retain_missing)
