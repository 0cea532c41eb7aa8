"""
Parser Module - Extract raw course listings from catalog pages.
===============================================================

Turns one catalog listing page into an ordered list of raw field groups,
one group per course listing block. Uses BeautifulSoup with configurable
selectors; this module and the fetcher are the only places that know the
catalog's page layout.

Every listing block with any recognised field becomes a group, even one
without a code, so the normalizer can count it as a rejection. Only blocks
with no fields at all are skipped. A page that yields no groups while more
pages remain is treated as a layout change and raises ParseError.
"""

import re
from dataclasses import dataclass
from typing import Optional, Union
from urllib.parse import parse_qs, urlparse

from bs4 import BeautifulSoup, Tag

from coursefinder.shared.errors import ParseError
from coursefinder.shared.logging import get_logger

logger = get_logger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Raw Data
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RawField:
    """Unvalidated text pulled out of a listing block."""

    key: str
    value: str
    link: Optional[str] = None


RawGroup = list[RawField]

# A page body, or a document already parsed from one
PageContent = Union[str, BeautifulSoup]

# Field keys produced by the parser
CODE = "code"
TITLE = "title"
DESCRIPTION = "description"
NOTE = "note"
PREREQUISITE = "prerequisite"
MEETS = "meets"
STARTS = "starts"
ENDS = "ends"
CAMPUS = "campus"
AVAILABILITY = "availability"
INSTRUCTOR = "instructor"

# Labels recognised in <dt>/<th> label layouts
_LABELS = {
    "code": CODE,
    "course code": CODE,
    "course": CODE,
    "title": TITLE,
    "course title": TITLE,
    "description": DESCRIPTION,
    "course description": DESCRIPTION,
    "note": NOTE,
    "notes": NOTE,
    "prerequisite": PREREQUISITE,
    "prerequisites": PREREQUISITE,
    "meets": MEETS,
    "schedule": MEETS,
    "starts": STARTS,
    "start date": STARTS,
    "ends": ENDS,
    "end date": ENDS,
    "campus": CAMPUS,
    "availability": AVAILABILITY,
    "section availability": AVAILABILITY,
    "instructor": INSTRUCTOR,
    "instructors": INSTRUCTOR,
}

_WHITESPACE = re.compile(r"\s+")


# ─────────────────────────────────────────────────────────────────────────────
# Selector Configuration
# ─────────────────────────────────────────────────────────────────────────────


@dataclass
class CatalogSelectors:
    """
    CSS selectors for the catalog listing layout.

    Each entry may be a comma-separated list; the first match wins.
    """

    listing_block: str = "div.course-listing, div.courseblock, tr.course-row"
    code: str = ".course-code, .courseblockcode, td.code"
    title: str = ".course-title, .courseblocktitle, td.title"
    description: str = ".course-description, .courseblockdesc, td.description"
    note: str = ".uwinNoteText, .course-note"
    prerequisites: str = ".course-prereqs li, .prerequisites li"
    meets: str = ".course-meets, .courseSectionInfo_meets"
    starts: str = ".course-starts, .dateSessionStartsFormatted"
    ends: str = ".course-ends, .dateSessionEndsFormatted"
    campus: str = ".course-campus, .courseSectionInfo_campus"
    availability: str = ".course-availability, .courseSectionInfo_sectionAvailability"
    instructors: str = ".course-instructors li"
    label_pairs: str = "dl"

    # Page-level markers
    error_message: str = ".portlet-msg-error"
    next_link: str = "a[rel~=next]"
    next_attr: str = "data-next-page"
    total_pages_attr: str = "data-total-pages"


# ─────────────────────────────────────────────────────────────────────────────
# Parser Class
# ─────────────────────────────────────────────────────────────────────────────


class CatalogParser:
    """
    Parser for catalog listing pages.

    Example:
        >>> parser = CatalogParser()
        >>> groups = parser.parse(html, token="1", more_pages=True)
        >>> [f.value for f in groups[0] if f.key == "code"]
        ['COMP-1020']
    """

    def __init__(self, selectors: Optional[CatalogSelectors] = None):
        self.selectors = selectors or CatalogSelectors()

    def _create_soup(self, html: str) -> BeautifulSoup:
        """Create BeautifulSoup object from HTML."""
        return BeautifulSoup(html, "lxml")

    def load(self, html: Optional[str]) -> Optional[BeautifulSoup]:
        """
        Parse a page body once so the markers and listings can share it.

        Returns:
            The document, or None for an empty body
        """
        if not html or not html.strip():
            return None
        return self._create_soup(html)

    def _document(self, page: Optional[PageContent]) -> Optional[BeautifulSoup]:
        if isinstance(page, BeautifulSoup):
            return page
        return self.load(page)

    @staticmethod
    def _text(element: Tag) -> str:
        """Element text with runs of whitespace collapsed."""
        return _WHITESPACE.sub(" ", element.get_text(" ", strip=True)).strip()

    def _select_one(self, root: Tag, selector: str) -> Optional[Tag]:
        for sel in selector.split(","):
            element = root.select_one(sel.strip())
            if element is not None:
                return element
        return None

    def _select_all(self, root: Tag, selector: str) -> list[Tag]:
        for sel in selector.split(","):
            elements = root.select(sel.strip())
            if elements:
                return elements
        return []

    # ─────────────────────────────────────────────────────────────────────
    # Page parsing
    # ─────────────────────────────────────────────────────────────────────

    def parse(
        self,
        page: Optional[PageContent],
        token: Optional[str] = None,
        more_pages: bool = False,
    ) -> list[RawGroup]:
        """
        Parse a listing page into raw field groups.

        Args:
            page: Page body, or the document returned by load()
            token: Pagination token of the page (for error reporting)
            more_pages: Whether the fetcher reported further pages

        Returns:
            Raw field groups in page order

        Raises:
            ParseError: If the page carries a server error message, or no
                listing could be extracted although more pages remain
        """
        soup = self._document(page)
        if soup is None:
            if more_pages:
                raise ParseError("empty page body before the last page", token=token)
            return []

        error = self._select_one(soup, self.selectors.error_message)
        if error is not None:
            raise ParseError(f"catalog returned an error: {self._text(error)}", token=token)

        blocks = self._select_all(soup, self.selectors.listing_block)
        groups: list[RawGroup] = []
        skipped = 0

        for position, block in enumerate(blocks):
            group = self._parse_block(block)
            if group is None:
                skipped += 1
                logger.debug(f"Skipping empty listing block {position} on page {token!r}")
                continue
            groups.append(group)

        if skipped:
            logger.warning(f"Page {token!r}: skipped {skipped} of {len(blocks)} listing blocks")

        if not groups and more_pages:
            raise ParseError(
                f"no course listings found ({len(blocks)} candidate blocks)",
                token=token,
            )

        return groups

    def _parse_block(self, block: Tag) -> Optional[RawGroup]:
        """Extract the fields of one listing block, or None if it has none."""
        fields = self._parse_selectors(block)
        if not any(f.key == CODE for f in fields):
            fields = self._parse_labels(block) or fields

        if not any(f.value for f in fields):
            return None
        return fields

    def _parse_selectors(self, block: Tag) -> RawGroup:
        sel = self.selectors
        fields: RawGroup = []

        single = (
            (CODE, sel.code),
            (TITLE, sel.title),
            (DESCRIPTION, sel.description),
            (NOTE, sel.note),
            (MEETS, sel.meets),
            (STARTS, sel.starts),
            (ENDS, sel.ends),
            (CAMPUS, sel.campus),
            (AVAILABILITY, sel.availability),
        )
        for key, selector in single:
            element = self._select_one(block, selector)
            if element is not None:
                fields.append(RawField(key, self._text(element)))

        for item in self._select_all(block, sel.prerequisites):
            text = self._text(item)
            if text:
                fields.append(RawField(PREREQUISITE, text))

        for item in self._select_all(block, sel.instructors):
            instructor = self._instructor(item)
            if instructor is not None:
                fields.append(instructor)

        return fields

    def _instructor(self, item: Tag) -> Optional[RawField]:
        """Instructor name, with the directory e-mail from a mailto link."""
        email = None
        link = item.find("a", href=True)
        if link is not None and str(link["href"]).lower().startswith("mailto:"):
            email = str(link["href"])[len("mailto:"):].split("?")[0].strip() or None

        name = self._text(item)
        if email and name.endswith(email):
            name = name[: -len(email)].rstrip(" ,-<(")
        if not name:
            return None
        return RawField(INSTRUCTOR, name, link=email)

    def _parse_labels(self, block: Tag) -> RawGroup:
        """Fallback for blocks laid out as <dl><dt>Label</dt><dd>value</dd></dl>."""
        fields: RawGroup = []
        for container in self._select_all(block, self.selectors.label_pairs):
            for dt in container.find_all("dt"):
                label = self._text(dt).rstrip(":").lower()
                key = _LABELS.get(label)
                dd = dt.find_next_sibling("dd")
                if key is None or dd is None:
                    continue
                if key == INSTRUCTOR:
                    instructor = self._instructor(dd)
                    if instructor is not None:
                        fields.append(instructor)
                    continue
                fields.append(RawField(key, self._text(dd)))
        return fields

    # ─────────────────────────────────────────────────────────────────────
    # Pagination markers
    # ─────────────────────────────────────────────────────────────────────

    def find_next_token(self, page: Optional[PageContent], page_param: str = "page") -> Optional[str]:
        """
        Locate the pagination token of the following page.

        Returns:
            The next token, or None when this is the last page
        """
        soup = self._document(page)
        if soup is None:
            return None

        marker = soup.find(attrs={self.selectors.next_attr: True})
        if marker is not None:
            value = str(marker.get(self.selectors.next_attr, "")).strip()
            if value:
                return value

        link = self._select_one(soup, self.selectors.next_link)
        if link is not None and link.get("href"):
            query = parse_qs(urlparse(str(link["href"])).query)
            values = query.get(page_param)
            if values and values[0].strip():
                return values[0].strip()

        return None

    def find_total_pages(self, page: Optional[PageContent]) -> Optional[int]:
        """Total page count advertised by the page, if any."""
        soup = self._document(page)
        if soup is None:
            return None
        marker = soup.find(attrs={self.selectors.total_pages_attr: True})
        if marker is None:
            return None
        try:
            return int(str(marker[self.selectors.total_pages_attr]).strip())
        except ValueError:
            logger.warning(f"Ignoring non-numeric page count: {marker[self.selectors.total_pages_attr]!r}")
            return None


# ─────────────────────────────────────────────────────────────────────────────
# Convenience Functions
# ─────────────────────────────────────────────────────────────────────────────


_default_parser: Optional[CatalogParser] = None


def get_parser() -> CatalogParser:
    """Get the default parser instance."""
    global _default_parser
    if _default_parser is None:
        _default_parser = CatalogParser()
    return _default_parser


def parse_page(html: str, token: Optional[str] = None, more_pages: bool = False) -> list[RawGroup]:
    """Parse a listing page with the default parser."""
    return get_parser().parse(html, token=token, more_pages=more_pages)
