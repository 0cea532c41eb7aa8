"""
Schemas Module - Pydantic data models for the application.
==========================================================

Defines the data contracts shared across the pipeline:
- Academic term identifiers
- Canonical course records
- Search hits
- Rebuild statistics and status
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field


# ─────────────────────────────────────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────────────────────────────────────


class Semester(str, Enum):
    """Semester tag used in the last digit of a term code."""

    WINTER = "1"
    SUMMER = "5"
    FALL = "9"


class RebuildState(str, Enum):
    """Lifecycle of the most recent rebuild."""

    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


# ─────────────────────────────────────────────────────────────────────────────
# Academic Term
# ─────────────────────────────────────────────────────────────────────────────


_TERM_PATTERN = re.compile(r"^(\d{4})(\d)$")


class AcademicTerm(BaseModel):
    """
    Year + semester identifier, e.g. "20185" for Summer 2018.

    Every record scraped in one rebuild carries the same term, supplied by
    the scrape context rather than parsed per listing.
    """

    year: int = Field(..., ge=1900, le=9999)
    semester: Semester

    model_config = ConfigDict(frozen=True)

    @classmethod
    def parse(cls, code: str) -> "AcademicTerm":
        """
        Parse a term code.

        Raises:
            ValueError: If the code is not a year followed by a semester digit
        """
        match = _TERM_PATTERN.match(code.strip())
        if not match:
            raise ValueError(f"Invalid term code: {code!r}")
        return cls(year=int(match.group(1)), semester=Semester(match.group(2)))

    @property
    def code(self) -> str:
        return f"{self.year}{self.semester.value}"

    @property
    def label(self) -> str:
        return f"{self.semester.name.title()} {self.year}"

    def __str__(self) -> str:
        return self.code


# ─────────────────────────────────────────────────────────────────────────────
# Course Data Models
# ─────────────────────────────────────────────────────────────────────────────


class Instructor(BaseModel):
    """A section instructor as listed in the catalog directory."""

    name: str = Field(..., min_length=1)
    email: Optional[str] = Field(default=None, description="Directory e-mail address")

    model_config = ConfigDict(frozen=True)

    def __str__(self) -> str:
        return f"{self.name} <{self.email}>" if self.email else self.name


class CourseRecord(BaseModel):
    """
    Canonical course listing as indexed and returned to callers.

    Records are frozen: a rebuild replaces them, it never edits them.
    """

    doc_id: int = Field(..., ge=0, description="Stable document identifier")
    code: str = Field(..., min_length=1, description="Normalized course code (e.g. 'COMP-1020')")
    title: str = Field(..., min_length=1, description="Course title")
    description: str = Field(default="", description="Course description (may be empty)")
    term: str = Field(..., description="Academic term code (e.g. '20185')")

    # Extra listing details, displayed but not indexed
    prerequisites: tuple[str, ...] = Field(default=(), description="Prerequisite lines")
    note: Optional[str] = Field(default=None, description="Listing note")
    meets: Optional[str] = Field(default=None, description="Meeting days and times")
    starts: Optional[str] = Field(default=None, description="Session start date")
    ends: Optional[str] = Field(default=None, description="Session end date")
    campus: Optional[str] = None
    availability: Optional[str] = Field(default=None, description="Seats or section availability")
    instructors: tuple[Instructor, ...] = Field(default=())
    source_token: Optional[str] = Field(default=None, description="Page the record was seen on")

    model_config = ConfigDict(frozen=True)

    @property
    def key(self) -> tuple[str, str]:
        """Identity of a course within the record set."""
        return (self.code, self.term)

    def summary(self, max_chars: int = 200) -> str:
        """Description truncated for short chat replies."""
        if len(self.description) <= max_chars:
            return self.description
        return self.description[:max_chars].rstrip() + "..."


class SearchHit(BaseModel):
    """A ranked search result."""

    record: CourseRecord
    score: float

    model_config = ConfigDict(frozen=True)

    @property
    def doc_id(self) -> int:
        return self.record.doc_id

    @property
    def code(self) -> str:
        return self.record.code


# ─────────────────────────────────────────────────────────────────────────────
# Rebuild Reporting
# ─────────────────────────────────────────────────────────────────────────────


class RebuildStats(BaseModel):
    """Statistics of one successful rebuild."""

    generation: int = 0
    term: str = ""
    pages_fetched: int = 0
    group_count: int = Field(default=0, description="Listing blocks seen by the normalizer")
    record_count: int = Field(default=0, description="Documents in the published index")
    rejected_count: int = 0
    duplicate_count: int = Field(default=0, description="Listings overwritten by a later duplicate")
    carried_over_count: int = Field(default=0, description="Unlisted records kept from the previous index")
    rejection_reasons: dict[str, int] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    @computed_field
    @property
    def rejection_rate(self) -> float:
        if self.group_count == 0:
            return 0.0
        return self.rejected_count / self.group_count

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()


class RebuildStatus(BaseModel):
    """Externally visible rebuild status."""

    state: RebuildState = RebuildState.IDLE
    generation: int = 0
    record_count: int = 0
    rejected_count: int = 0
    pages_fetched: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_error: Optional[str] = None
