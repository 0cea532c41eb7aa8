"""
Rebuild Module - One ingestion cycle from catalog to published index.
=====================================================================

Pipeline flow:
    Fetcher → Parser → Normalizer → IndexBuilder → IndexStore.publish

A cycle either publishes a complete new generation or publishes nothing.
Fetch failures, layout changes, excessive rejections, cancellation and the
wall-clock ceiling all abort the cycle with a RebuildAbortedError before
the publish step, leaving the active index exactly as it was.
"""

import contextvars
import threading
import time
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from typing import Iterator, Optional, Protocol

from coursefinder.indexing.builder import IndexBuilder
from coursefinder.indexing.docids import DocIdAllocator
from coursefinder.indexing.store import IndexStore
from coursefinder.ingestion.fetcher import FetchedPage, Fetcher
from coursefinder.ingestion.normalizer import Normalizer
from coursefinder.ingestion.parser import CatalogParser, get_parser
from coursefinder.shared.config import get_settings
from coursefinder.shared.errors import (
    FetchError,
    ParseError,
    RebuildAbortedError,
    RebuildCancelledError,
    RebuildTimeoutError,
)
from coursefinder.shared.logging import get_logger, rebuild_context
from coursefinder.shared.schemas import AcademicTerm, RebuildStats

logger = get_logger(__name__)

# Seconds between cancellation checks while parallel fetches are running
_POLL_INTERVAL = 0.05


class PageSource(Protocol):
    """What the pipeline needs from a fetcher."""

    start_token: str

    def fetch_page(self, token: str, deadline: Optional[float] = None) -> FetchedPage: ...


class RebuildPipeline:
    """
    Runs rebuild cycles against an IndexStore.

    The pipeline itself does not serialize cycles; CatalogService makes
    sure only one run() is in flight at a time.

    Example:
        >>> pipeline = RebuildPipeline(store)
        >>> stats = pipeline.run()
        >>> print(stats.generation, stats.record_count)
    """

    def __init__(
        self,
        store: IndexStore,
        fetcher: Optional[PageSource] = None,
        parser: Optional[CatalogParser] = None,
        builder: Optional[IndexBuilder] = None,
        term: Optional[str] = None,
        timeout: Optional[float] = None,
        max_rejection_rate: Optional[float] = None,
        parallel_fetch: Optional[bool] = None,
        max_workers: Optional[int] = None,
        prune_missing: Optional[bool] = None,
        allow_empty: Optional[bool] = None,
    ):
        """
        Initialize the pipeline.

        Args:
            store: Store receiving the new generation
            fetcher: Page source (a Fetcher is created per run if None)
            parser: Listing page parser
            builder: Index builder
            term: Academic term code of the scrape
            timeout: Wall-clock ceiling of one run, in seconds
            max_rejection_rate: Abort threshold for rejected listings
            parallel_fetch: Fetch pages concurrently when the page count is known
            max_workers: Thread count for parallel fetching
            prune_missing: Drop courses that are no longer listed
            allow_empty: Publish an index with zero records
        """
        settings = get_settings()
        config = settings.rebuild

        self.store = store
        self.fetcher = fetcher
        self.parser = parser or get_parser()
        self.builder = builder or IndexBuilder()
        self.term = term or settings.get_effective_term()
        self.timeout = timeout if timeout is not None else config.timeout
        self.max_rejection_rate = (
            max_rejection_rate if max_rejection_rate is not None else config.max_rejection_rate
        )
        self.parallel_fetch = parallel_fetch if parallel_fetch is not None else config.parallel_fetch
        self.max_workers = max_workers or config.max_workers
        self.prune_missing = prune_missing if prune_missing is not None else config.prune_missing
        self.allow_empty = allow_empty if allow_empty is not None else config.allow_empty

    # ─────────────────────────────────────────────────────────────────────
    # Cycle
    # ─────────────────────────────────────────────────────────────────────

    def run(self, cancel_event: Optional[threading.Event] = None) -> RebuildStats:
        """
        Execute one rebuild cycle.

        Args:
            cancel_event: Set by the driver to abandon the cycle

        Returns:
            Statistics of the published generation

        Raises:
            RebuildAbortedError: The cycle failed; `cause` holds the
                underlying FetchError or ParseError where there is one
            RebuildTimeoutError: The wall-clock ceiling was reached
            RebuildCancelledError: cancel_event was set
        """
        with rebuild_context(f"gen {self.store.generation + 1}"):
            return self._run(cancel_event or threading.Event())

    def _run(self, cancel_event: threading.Event) -> RebuildStats:
        deadline = time.monotonic() + self.timeout if self.timeout > 0 else None
        stats = RebuildStats(term=self.term)

        try:
            term = AcademicTerm.parse(self.term)
        except ValueError as e:
            raise RebuildAbortedError(str(e), cause=e) from e

        previous = self.store.active_index()
        normalizer = Normalizer(
            term=term.code,
            allocator=DocIdAllocator.from_index(previous),
            max_rejection_rate=self.max_rejection_rate,
        )

        logger.info(f"Rebuild started for {term.label} (active generation {previous.generation})")

        own_fetcher = self.fetcher is None
        fetcher = self.fetcher if self.fetcher is not None else Fetcher(term=term.code)
        try:
            for page in self._iter_pages(fetcher, deadline, cancel_event):
                stats.pages_fetched += 1
                self._checkpoint(deadline, cancel_event)
                groups = self.parser.parse(page.content, token=page.token, more_pages=page.has_more)
                normalizer.add_groups(groups, source_token=page.token)
                logger.debug(f"Page {page.token!r}: {len(groups)} listing(s)")
        except FetchError as e:
            if deadline is not None and time.monotonic() >= deadline:
                raise RebuildTimeoutError(f"rebuild exceeded {self.timeout}s", cause=e) from e
            raise RebuildAbortedError(f"fetch failed: {e}", cause=e) from e
        except ParseError as e:
            raise RebuildAbortedError(f"parse failed: {e}", cause=e) from e
        finally:
            if own_fetcher:
                fetcher.close()

        normalizer.check_rejection_rate()

        records = normalizer.records()
        if not records and not self.allow_empty:
            raise RebuildAbortedError("catalog yielded no valid course listings")

        self._checkpoint(deadline, cancel_event)
        index = self.builder.build(records, previous=previous, retain_missing=not self.prune_missing)

        self._checkpoint(deadline, cancel_event)
        self.store.publish(index)

        stats.generation = index.generation
        stats.group_count = normalizer.stats.groups
        stats.record_count = index.document_count
        stats.rejected_count = normalizer.stats.rejected
        stats.duplicate_count = normalizer.stats.duplicates
        stats.carried_over_count = index.document_count - len(records)
        stats.rejection_reasons = dict(normalizer.stats.reasons)
        stats.finished_at = datetime.now(timezone.utc)

        logger.info(
            f"Rebuild finished: generation {stats.generation}, {stats.record_count} records, "
            f"{stats.rejected_count} rejected, {stats.pages_fetched} pages "
            f"in {stats.duration_seconds:.1f}s"
        )
        return stats

    def _checkpoint(self, deadline: Optional[float], cancel_event: threading.Event) -> None:
        if cancel_event.is_set():
            raise RebuildCancelledError("rebuild cancelled")
        if deadline is not None and time.monotonic() >= deadline:
            raise RebuildTimeoutError(f"rebuild exceeded {self.timeout}s")

    # ─────────────────────────────────────────────────────────────────────
    # Page retrieval
    # ─────────────────────────────────────────────────────────────────────

    def _iter_pages(
        self,
        fetcher: PageSource,
        deadline: Optional[float],
        cancel_event: threading.Event,
    ) -> Iterator[FetchedPage]:
        """
        Yield pages in catalog order.

        Sequential mode follows next-page tokens one by one. Parallel mode
        needs a numeric start token and a page count on the first page; the
        remaining pages are fetched concurrently and yielded in page order.
        """
        self._checkpoint(deadline, cancel_event)
        first = fetcher.fetch_page(fetcher.start_token, deadline=deadline)

        total = first.total_pages
        if (
            self.parallel_fetch
            and total is not None
            and total > 1
            and fetcher.start_token.isdigit()
        ):
            first.next_token = str(int(fetcher.start_token) + 1)
            yield first
            yield from self._fetch_parallel(fetcher, int(fetcher.start_token), total, deadline, cancel_event)
            return

        seen = {first.token}
        page = first
        while True:
            yield page
            if page.next_token is None:
                return
            if page.next_token in seen:
                raise ParseError(f"pagination loops back to page {page.next_token!r}", token=page.token)
            seen.add(page.next_token)
            self._checkpoint(deadline, cancel_event)
            page = fetcher.fetch_page(page.next_token, deadline=deadline)

    def _fetch_parallel(
        self,
        fetcher: PageSource,
        start: int,
        total: int,
        deadline: Optional[float],
        cancel_event: threading.Event,
    ) -> Iterator[FetchedPage]:
        tokens = [str(number) for number in range(start + 1, start + total)]
        logger.info(f"Fetching {len(tokens)} remaining pages with {self.max_workers} workers")

        executor = ThreadPoolExecutor(max_workers=self.max_workers)
        try:
            futures = {
                executor.submit(contextvars.copy_context().run, fetcher.fetch_page, token, deadline): position
                for position, token in enumerate(tokens)
            }
            pending = set(futures)
            while pending:
                self._checkpoint(deadline, cancel_event)
                done, pending = wait(pending, timeout=_POLL_INTERVAL, return_when=FIRST_EXCEPTION)
                for future in done:
                    error = future.exception()
                    if error is not None:
                        raise error
        finally:
            # Fetches already running finish in the background; queued ones are dropped
            executor.shutdown(wait=False, cancel_futures=True)

        self._checkpoint(deadline, cancel_event)
        pages: list[Optional[FetchedPage]] = [None] * len(tokens)
        for future, position in futures.items():
            pages[position] = future.result()

        for position, page in enumerate(pages):
            # The page count, not the page's own link, decides what comes next
            page.next_token = tokens[position + 1] if position + 1 < len(tokens) else None
            yield page
