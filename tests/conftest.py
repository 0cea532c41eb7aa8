"""
Pytest Configuration and Fixtures.
===================================

Shared fixtures for all test modules:
- Catalog page builders
- A fake HTTP session for the fetcher
- Sample course records
- Temporary directories
"""

import tempfile
import threading
from pathlib import Path
from typing import Callable, Generator, Optional
from unittest.mock import Mock

import pytest
import requests

TERM = "20185"
BASE_URL = "https://catalog.test/course-search"


# ─────────────────────────────────────────────────────────────────────────────
# Path Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def project_root() -> Path:
    """Get the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def config_path(project_root: Path) -> Path:
    """Get the config file path."""
    return project_root / "config" / "settings.yaml"


@pytest.fixture
def snapshot_file(temp_dir: Path) -> Path:
    return temp_dir / "index_snapshot.json"


# ─────────────────────────────────────────────────────────────────────────────
# Catalog Page Fixtures
# ─────────────────────────────────────────────────────────────────────────────


def _listing(course: dict) -> str:
    parts = ['<div class="course-listing">']
    if course.get("code") is not None:
        parts.append(f'<span class="course-code">{course["code"]}</span>')
    if course.get("title") is not None:
        parts.append(f'<h3 class="course-title">{course["title"]}</h3>')
    if course.get("description") is not None:
        parts.append(f'<p class="course-description">{course["description"]}</p>')
    if course.get("note"):
        parts.append(f'<p class="uwinNoteText">{course["note"]}</p>')
    if course.get("prerequisites"):
        items = "".join(f"<li>{p}</li>" for p in course["prerequisites"])
        parts.append(f'<ul class="course-prereqs">{items}</ul>')
    for key in ("meets", "starts", "ends", "campus", "availability"):
        if course.get(key):
            parts.append(f'<span class="course-{key}">{course[key]}</span>')
    if course.get("instructors"):
        items = "".join(
            f'<li>{name} <a href="mailto:{email}">{email}</a></li>' if email else f"<li>{name}</li>"
            for name, email in course["instructors"]
        )
        parts.append(f'<ul class="course-instructors">{items}</ul>')
    parts.append("</div>")
    return "\n".join(parts)


def build_page(
    courses: list[dict],
    next_page: Optional[str] = None,
    total_pages: Optional[int] = None,
) -> str:
    """Render a catalog listing page in the layout the parser expects."""
    pager_attrs = ""
    if next_page is not None:
        pager_attrs += f' data-next-page="{next_page}"'
    if total_pages is not None:
        pager_attrs += f' data-total-pages="{total_pages}"'
    listings = "\n".join(_listing(course) for course in courses)
    return f"""
    <!DOCTYPE html>
    <html>
    <head><title>Course Search</title></head>
    <body>
        <div id="results">
        {listings}
        </div>
        <div class="pager"{pager_attrs}></div>
    </body>
    </html>
    """


@pytest.fixture
def make_page() -> Callable[..., str]:
    """Factory for catalog listing pages."""
    return build_page


@pytest.fixture
def programming_fundamentals() -> dict:
    return {
        "code": "COMP-1020",
        "title": "Programming Fundamentals",
        "description": "Introduction to programming in C.",
    }


@pytest.fixture
def two_page_catalog(programming_fundamentals: dict) -> dict[str, str]:
    """
    Page 1 lists COMP-1020 and COMP-1021; page 2 lists COMP-1020 again
    with an updated description.
    """
    page_1 = build_page(
        [
            programming_fundamentals,
            {
                "code": "COMP-1021",
                "title": "Programming Fundamentals Lab",
                "description": "Laboratory companion.",
                "note": "Must be taken with COMP-1020.",
            },
        ],
        next_page="2",
    )
    page_2 = build_page(
        [
            {
                "code": "comp-1020",
                "title": "Programming Fundamentals",
                "description": "Introduction to programming in C and Python.",
            },
        ],
    )
    return {"1": page_1, "2": page_2}


@pytest.fixture
def malformed_page() -> str:
    """A page with pagination markers but no listing blocks."""
    return """
    <html><body>
        <p>The course search is temporarily unavailable.</p>
        <div class="pager" data-next-page="3"></div>
    </body></html>
    """


# ─────────────────────────────────────────────────────────────────────────────
# HTTP Fixtures
# ─────────────────────────────────────────────────────────────────────────────


class FakeSession:
    """
    Stand-in for requests.Session.

    `pages` maps a page token to a body (served with status 200) or to a
    list of responses served in turn; a response is an HTTP status code,
    a (status, body) pair, a body string or an exception instance. The
    last entry of a list repeats once the list is exhausted.
    """

    def __init__(self, pages: dict, on_get: Optional[Callable[[str], None]] = None):
        self.pages = pages
        self.on_get = on_get
        self.calls: list[str] = []
        self._lock = threading.Lock()
        self._served: dict[str, int] = {}

    def get(self, url, params=None, timeout=None):
        token = params["page"]
        with self._lock:
            self.calls.append(token)
            served = self._served.get(token, 0)
            self._served[token] = served + 1

        if self.on_get is not None:
            self.on_get(token)

        entry = self.pages.get(token, 404)
        if isinstance(entry, list):
            entry = entry[min(served, len(entry) - 1)]

        if isinstance(entry, Exception):
            raise entry
        if isinstance(entry, int):
            return Mock(status_code=entry, text="")
        if isinstance(entry, tuple):
            return Mock(status_code=entry[0], text=entry[1])
        return Mock(status_code=200, text=entry)

    def close(self):
        pass


@pytest.fixture
def fake_session() -> Callable[..., FakeSession]:
    return FakeSession


@pytest.fixture
def make_fetcher() -> Callable:
    """Factory for Fetchers talking to a FakeSession without sleeping."""
    from coursefinder.ingestion.fetcher import Fetcher

    def _make(session, max_attempts: int = 3, sleep=None):
        return Fetcher(
            base_url=BASE_URL,
            term=TERM,
            timeout=5,
            max_attempts=max_attempts,
            backoff_base=0.5,
            backoff_factor=2.0,
            backoff_max=8.0,
            session=session,
            sleep=sleep or (lambda seconds: None),
        )

    return _make


@pytest.fixture
def connection_error() -> Exception:
    return requests.ConnectionError("connection reset")


# ─────────────────────────────────────────────────────────────────────────────
# Record Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def make_record() -> Callable:
    """Factory for CourseRecords (docIds are reassigned by the builder)."""
    from coursefinder.shared.schemas import CourseRecord

    def _make(code: str, title: str, description: str = "", term: str = TERM, doc_id: int = 0, **details):
        return CourseRecord(
            doc_id=doc_id, code=code, title=title, description=description, term=term, **details
        )

    return _make


@pytest.fixture
def sample_records(make_record) -> list:
    return [
        make_record("COMP-1020", "Programming Fundamentals", "Introduction to programming in C."),
        make_record("COMP-1021", "Programming Fundamentals Lab", "Laboratory companion."),
        make_record("COMP-2540", "Data Structures and Algorithms", "Lists, trees, graphs."),
        make_record("MATH-1720", "Differential Calculus", "Limits and derivatives."),
    ]


@pytest.fixture
def sample_index(sample_records):
    from coursefinder.indexing.builder import IndexBuilder

    return IndexBuilder().build(sample_records)


# ─────────────────────────────────────────────────────────────────────────────
# Pytest Configuration
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def reset_singletons():
    """Reset global singletons between tests."""
    import coursefinder.ingestion.parser as parser_module

    parser_module._default_parser = None
    yield
    parser_module._default_parser = None
