"""
Normalizer Module - Validate and canonicalize raw listings.
===========================================================

Turns raw field groups into CourseRecords:
- Text cleanup (HTML entities, stray tags, Unicode, whitespace)
- Validation, in order: course code present and well-formed, non-empty title
- Description defaults to an empty string
- The term comes from the scrape context, not from the page
- (code, term) duplicates within one rebuild: the later listing wins

Rejected listings are counted, not raised. A rebuild whose rejection rate
exceeds the configured threshold is aborted as a likely layout change.
"""

import html
import re
import unicodedata
from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable, Optional

from coursefinder.indexing.docids import CourseKey, DocIdAllocator
from coursefinder.ingestion.parser import (
    AVAILABILITY,
    CAMPUS,
    CODE,
    DESCRIPTION,
    ENDS,
    INSTRUCTOR,
    MEETS,
    NOTE,
    PREREQUISITE,
    STARTS,
    TITLE,
    RawGroup,
)
from coursefinder.shared.config import get_settings
from coursefinder.shared.errors import RebuildAbortedError, ValidationRejection
from coursefinder.shared.logging import get_logger
from coursefinder.shared.schemas import AcademicTerm, CourseRecord, Instructor

logger = get_logger(__name__)

CODE_PATTERN = re.compile(r"^[A-Z0-9]+(?:-[A-Z0-9]+)*$")

REASON_INVALID_CODE = "invalid code"
REASON_EMPTY_TITLE = "empty title"

# Optional single-valued listing details: (record field, parser key)
_DETAIL_FIELDS = (
    ("note", NOTE),
    ("meets", MEETS),
    ("starts", STARTS),
    ("ends", ENDS),
    ("campus", CAMPUS),
    ("availability", AVAILABILITY),
)


# ─────────────────────────────────────────────────────────────────────────────
# Text Cleaning
# ─────────────────────────────────────────────────────────────────────────────


class TextCleaner:
    """
    Cleans text pulled out of listing HTML.

    Example:
        >>> TextCleaner().clean("Data &amp; Algorithms \\u00a0 ")
        'Data & Algorithms'
    """

    def __init__(self, unicode_form: str = "NFKC"):
        self.unicode_form = unicode_form
        self._html_tag_pattern = re.compile(r"<[^>]+>")
        self._whitespace = re.compile(r"\s+")

    def clean(self, text: Optional[str]) -> str:
        """Clean a text string; None becomes an empty string."""
        if not text:
            return ""

        result = html.unescape(text)
        result = self._html_tag_pattern.sub(" ", result)
        result = unicodedata.normalize(self.unicode_form, result)
        result = "".join(
            char for char in result
            if char in "\t\n\r " or unicodedata.category(char) != "Cc"
        )
        return self._whitespace.sub(" ", result).strip()


def normalize_code(raw: str) -> str:
    """
    Canonical course code: uppercase with all whitespace removed.

    Example:
        >>> normalize_code(" comp-1020 ")
        'COMP-1020'
    """
    return re.sub(r"\s+", "", raw).upper()


# ─────────────────────────────────────────────────────────────────────────────
# Normalizer
# ─────────────────────────────────────────────────────────────────────────────


@dataclass
class NormalizationStats:
    """Counters for one rebuild's normalization pass."""

    groups: int = 0
    accepted: int = 0
    rejected: int = 0
    duplicates: int = 0
    reasons: Counter = field(default_factory=Counter)

    @property
    def rejection_rate(self) -> float:
        if self.groups == 0:
            return 0.0
        return self.rejected / self.groups


class Normalizer:
    """
    Converts raw groups to CourseRecords for one rebuild.

    The instance holds the in-progress (code, term) -> record mapping of the
    current rebuild, so create a new Normalizer per rebuild.

    Example:
        >>> normalizer = Normalizer(term="20185")
        >>> normalizer.add_groups(groups, source_token="1")
        >>> records = normalizer.records()
    """

    def __init__(
        self,
        term: str,
        allocator: Optional[DocIdAllocator] = None,
        cleaner: Optional[TextCleaner] = None,
        max_rejection_rate: Optional[float] = None,
    ):
        """
        Initialize the normalizer.

        Args:
            term: Academic term code attached to every record
            allocator: docId allocator, seeded from the previous index
            cleaner: Text cleaner
            max_rejection_rate: Abort threshold (fraction of rejected groups)

        Raises:
            ValueError: If the term code is invalid
        """
        settings = get_settings()

        self.term = AcademicTerm.parse(term).code
        self.allocator = allocator or DocIdAllocator()
        self.cleaner = cleaner or TextCleaner()
        self.max_rejection_rate = (
            max_rejection_rate
            if max_rejection_rate is not None
            else settings.rebuild.max_rejection_rate
        )

        self.stats = NormalizationStats()
        self._records: dict[CourseKey, CourseRecord] = {}

    def normalize(self, group: RawGroup, source_token: Optional[str] = None) -> CourseRecord:
        """
        Validate one raw group.

        Raises:
            ValidationRejection: If the code or title is invalid
        """
        values: dict[str, str] = {}
        prerequisites: list[str] = []
        instructors: list[Instructor] = []
        for raw in group:
            if raw.key == PREREQUISITE:
                text = self.cleaner.clean(raw.value)
                if text:
                    prerequisites.append(text)
            elif raw.key == INSTRUCTOR:
                name = self.cleaner.clean(raw.value)
                if name:
                    instructors.append(Instructor(name=name, email=self.cleaner.clean(raw.link) or None))
            elif raw.key not in values:
                values[raw.key] = raw.value

        raw_code = values.get(CODE, "")
        code = normalize_code(self.cleaner.clean(raw_code))
        if not CODE_PATTERN.match(code):
            raise ValidationRejection(REASON_INVALID_CODE, code=raw_code or None)

        title = self.cleaner.clean(values.get(TITLE))
        if not title:
            raise ValidationRejection(REASON_EMPTY_TITLE, code=code)

        description = self.cleaner.clean(values.get(DESCRIPTION))
        details = {
            field_name: self.cleaner.clean(values.get(key)) or None
            for field_name, key in _DETAIL_FIELDS
        }

        key = (code, self.term)
        return CourseRecord(
            doc_id=self.allocator.assign(key),
            code=code,
            title=title,
            description=description,
            term=self.term,
            prerequisites=tuple(prerequisites),
            instructors=tuple(instructors),
            **details,
            source_token=source_token,
        )

    def add_group(self, group: RawGroup, source_token: Optional[str] = None) -> Optional[CourseRecord]:
        """
        Normalize a group and merge it into this rebuild's record set.

        Returns:
            The accepted record, or None if the group was rejected
        """
        self.stats.groups += 1
        try:
            record = self.normalize(group, source_token=source_token)
        except ValidationRejection as rejection:
            self.stats.rejected += 1
            self.stats.reasons[rejection.reason] += 1
            logger.debug(f"Rejected listing on page {source_token!r}: {rejection}")
            return None

        if record.key in self._records:
            self.stats.duplicates += 1
            logger.debug(f"Listing {record.code} repeated on page {source_token!r}; keeping the later one")
        self._records[record.key] = record
        self.stats.accepted += 1
        return record

    def add_groups(self, groups: Iterable[RawGroup], source_token: Optional[str] = None) -> None:
        for group in groups:
            self.add_group(group, source_token=source_token)

    def check_rejection_rate(self) -> None:
        """
        Raises:
            RebuildAbortedError: If more than the allowed share of groups
                was rejected
        """
        if self.stats.groups and self.stats.rejection_rate > self.max_rejection_rate:
            raise RebuildAbortedError(
                f"{self.stats.rejected} of {self.stats.groups} listings rejected "
                f"(limit {self.max_rejection_rate:.0%}): {dict(self.stats.reasons)}"
            )

    def records(self) -> list[CourseRecord]:
        """Accepted records, one per (code, term), in first-seen order."""
        return list(self._records.values())
