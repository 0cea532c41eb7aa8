"""
Fetcher Module - Catalog page retrieval with retries and backoff.
=================================================================

Fetches one listing page per pagination token:
- Transient failures (timeouts, connection errors, 5xx, 429) are retried
  with exponential backoff
- Other 4xx responses fail immediately
- The next pagination token is read from the page itself

Each fetch walks an explicit state machine, recorded on a FetchTrace:

    ATTEMPTING(n) -> SUCCEEDED
    ATTEMPTING(n) -> BACKOFF(n) -> ATTEMPTING(n + 1)
    ATTEMPTING(n) -> FAILED
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

import requests
from bs4 import BeautifulSoup
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.stop import stop_base

from coursefinder.ingestion.parser import CatalogParser, PageContent, get_parser
from coursefinder.shared.config import get_settings
from coursefinder.shared.errors import FetchError, RetryableFetchError
from coursefinder.shared.logging import get_logger

logger = get_logger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Fetch State Machine
# ─────────────────────────────────────────────────────────────────────────────


class FetchState(str, Enum):
    """States of a single page fetch."""

    ATTEMPTING = "attempting"
    BACKOFF = "backoff"
    FAILED = "failed"
    SUCCEEDED = "succeeded"


_TRANSITIONS = {
    None: {FetchState.ATTEMPTING},
    FetchState.ATTEMPTING: {FetchState.BACKOFF, FetchState.FAILED, FetchState.SUCCEEDED},
    FetchState.BACKOFF: {FetchState.ATTEMPTING, FetchState.FAILED},
    FetchState.FAILED: set(),
    FetchState.SUCCEEDED: set(),
}


@dataclass
class FetchTrace:
    """Record of the state transitions of one fetch."""

    token: str
    state: Optional[FetchState] = None
    attempts: int = 0
    history: list[tuple[FetchState, int]] = field(default_factory=list)
    last_status: Optional[int] = None

    def transition(self, new_state: FetchState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal fetch transition {self.state} -> {new_state}")
        if new_state is FetchState.ATTEMPTING:
            self.attempts += 1
        self.state = new_state
        self.history.append((new_state, self.attempts))


class stop_at_deadline(stop_base):
    """Stop retrying once a monotonic deadline has passed."""

    def __init__(self, deadline: Optional[float]):
        self.deadline = deadline

    def __call__(self, retry_state: RetryCallState) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline


# ─────────────────────────────────────────────────────────────────────────────
# Data Classes
# ─────────────────────────────────────────────────────────────────────────────


@dataclass
class FetchedPage:
    """A fetched catalog page and its pagination markers."""

    token: str
    body: str
    status_code: int
    next_token: Optional[str]
    total_pages: Optional[int] = None
    attempts: int = 1
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    document: Optional[BeautifulSoup] = field(default=None, repr=False, compare=False)

    @property
    def has_more(self) -> bool:
        """Whether the catalog reports further pages."""
        return self.next_token is not None

    @property
    def content(self) -> PageContent:
        """The parsed document when there is one, else the raw body."""
        return self.document if self.document is not None else self.body


# ─────────────────────────────────────────────────────────────────────────────
# Fetcher Class
# ─────────────────────────────────────────────────────────────────────────────


class Fetcher:
    """
    Catalog page fetcher.

    Example:
        >>> with Fetcher() as fetcher:
        ...     page = fetcher.fetch_page(fetcher.start_token)
        ...     print(page.next_token)
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        term: Optional[str] = None,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        backoff_base: Optional[float] = None,
        backoff_factor: Optional[float] = None,
        backoff_max: Optional[float] = None,
        session: Optional[requests.Session] = None,
        parser: Optional[CatalogParser] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the fetcher.

        Args:
            base_url: Catalog listing endpoint
            term: Academic term code sent with every request
            timeout: Per-request timeout in seconds
            max_attempts: Attempts per page before giving up
            backoff_base: First backoff delay in seconds
            backoff_factor: Multiplier between consecutive delays
            backoff_max: Upper bound on a single delay
            session: Pre-built requests session (tests inject a mock)
            parser: Parser used to read pagination markers
            sleep: Sleep function used between attempts
        """
        settings = get_settings()
        catalog = settings.catalog
        retry = settings.retry

        self.base_url = base_url or settings.get_effective_base_url()
        self.term = term or settings.get_effective_term()
        self.timeout = timeout if timeout is not None else catalog.timeout
        self.max_attempts = max_attempts if max_attempts is not None else retry.max_attempts
        self.backoff_base = backoff_base if backoff_base is not None else retry.backoff_base
        self.backoff_factor = backoff_factor if backoff_factor is not None else retry.backoff_factor
        self.backoff_max = backoff_max if backoff_max is not None else retry.backoff_max

        self.start_token = catalog.start_token
        self.page_param = catalog.page_param
        self.term_param = catalog.term_param
        self.extra_params = dict(catalog.extra_params)
        self.user_agent = catalog.user_agent

        self.parser = parser or get_parser()
        self._sleep = sleep
        self._session = session

        logger.debug(
            f"Fetcher initialized: url={self.base_url}, term={self.term}, "
            f"attempts={self.max_attempts}, timeout={self.timeout}s"
        )

    @property
    def session(self) -> requests.Session:
        """Get or create the requests session."""
        if self._session is None:
            self._session = requests.Session()
            self._session.headers.update(
                {
                    "User-Agent": self.user_agent,
                    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                    "Accept-Language": "en-US,en;q=0.5",
                }
            )
        return self._session

    def build_params(self, token: str) -> dict[str, str]:
        """Query parameters for a page request."""
        params = dict(self.extra_params)
        params[self.term_param] = self.term
        params[self.page_param] = token
        return params

    def _request(self, token: str, timeout: float) -> requests.Response:
        """One HTTP attempt, classifying failures as retryable or terminal."""
        try:
            response = self.session.get(
                self.base_url,
                params=self.build_params(token),
                timeout=timeout,
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            raise RetryableFetchError(token, cause=e) from e
        except requests.RequestException as e:
            raise FetchError(token, cause=e) from e

        status = response.status_code
        if status >= 500 or status == 429:
            raise RetryableFetchError(token, status_code=status)
        if status >= 400:
            raise FetchError(token, status_code=status, attempts=1)
        return response

    def fetch_page(self, token: str, deadline: Optional[float] = None) -> FetchedPage:
        """
        Fetch one listing page.

        Args:
            token: Pagination token
            deadline: Optional time.monotonic() value after which no further
                attempt is started

        Returns:
            FetchedPage with the body and the next pagination token

        Raises:
            FetchError: Terminal HTTP status, or retries exhausted
        """
        trace = FetchTrace(token=token)

        def _before_sleep(retry_state: RetryCallState) -> None:
            trace.transition(FetchState.BACKOFF)
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            logger.warning(
                f"Retry {retry_state.attempt_number}/{self.max_attempts} for page {token!r} "
                f"in {delay:.2f}s: {retry_state.outcome.exception()}"
            )

        retrying = Retrying(
            retry=retry_if_exception_type(RetryableFetchError),
            stop=stop_after_attempt(self.max_attempts) | stop_at_deadline(deadline),
            wait=wait_exponential(
                multiplier=self.backoff_base,
                exp_base=self.backoff_factor,
                max=self.backoff_max,
            ),
            before_sleep=_before_sleep,
            sleep=self._sleep,
            reraise=True,
        )

        try:
            for attempt in retrying:
                with attempt:
                    trace.transition(FetchState.ATTEMPTING)
                    timeout = self.timeout
                    if deadline is not None:
                        timeout = max(0.001, min(timeout, deadline - time.monotonic()))
                    response = self._request(token, timeout)
        except FetchError as e:
            trace.transition(FetchState.FAILED)
            trace.last_status = e.status_code
            logger.error(f"Giving up on page {token!r} after {trace.attempts} attempt(s): {e.cause or e.status_code}")
            raise FetchError(
                token,
                status_code=e.status_code,
                cause=e.cause,
                retryable=e.retryable,
                attempts=trace.attempts,
            ) from e

        trace.transition(FetchState.SUCCEEDED)
        trace.last_status = response.status_code

        body = response.text
        document = self.parser.load(body)
        page = FetchedPage(
            token=token,
            body=body,
            status_code=response.status_code,
            next_token=self.parser.find_next_token(document, self.page_param),
            total_pages=self.parser.find_total_pages(document),
            attempts=trace.attempts,
            document=document,
        )
        logger.info(f"Fetched page {token!r} ({len(body)} chars, next={page.next_token!r})")
        return page

    def close(self) -> None:
        """Close the HTTP session."""
        if self._session:
            self._session.close()
            self._session = None

    def __enter__(self) -> "Fetcher":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        self.close()
