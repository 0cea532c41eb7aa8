"""
Errors Module - Exception taxonomy for the rebuild pipeline.
============================================================

- FetchError: network/HTTP failure (retryable or terminal)
- ParseError: unexpected page structure
- ValidationRejection: a single listing failed validation (non-fatal)
- RebuildAbortedError: the current rebuild cycle was abandoned

None of these ever escape to query callers. The rebuild driver catches
them, records the failure in the rebuild status, and keeps the active
index untouched.
"""

from typing import Optional


class CourseFinderError(Exception):
    """Base class for all CourseFinder errors."""


class FetchError(CourseFinderError):
    """A catalog page could not be fetched."""

    def __init__(
        self,
        token: str,
        status_code: Optional[int] = None,
        cause: Optional[BaseException] = None,
        retryable: bool = False,
        attempts: int = 0,
    ):
        self.token = token
        self.status_code = status_code
        self.cause = cause
        self.retryable = retryable
        self.attempts = attempts

        detail = f"status {status_code}" if status_code is not None else repr(cause)
        super().__init__(f"Failed to fetch page {token!r} after {attempts} attempt(s): {detail}")


class RetryableFetchError(FetchError):
    """Transient failure (timeout, connection error, 5xx, 429)."""

    def __init__(
        self,
        token: str,
        status_code: Optional[int] = None,
        cause: Optional[BaseException] = None,
        attempts: int = 0,
    ):
        super().__init__(token, status_code=status_code, cause=cause, retryable=True, attempts=attempts)


class ParseError(CourseFinderError):
    """A catalog page did not have the expected structure."""

    def __init__(self, reason: str, token: Optional[str] = None):
        self.reason = reason
        self.token = token
        where = f" (page {token!r})" if token is not None else ""
        super().__init__(f"Error parsing catalog page{where}: {reason}")


class ValidationRejection(CourseFinderError):
    """A raw listing failed validation and was dropped."""

    def __init__(self, reason: str, code: Optional[str] = None):
        self.reason = reason
        self.code = code
        super().__init__(f"{reason}: {code!r}" if code else reason)


class RebuildAbortedError(CourseFinderError):
    """The rebuild cycle was abandoned; the active index is unchanged."""

    def __init__(self, reason: str, cause: Optional[BaseException] = None):
        self.reason = reason
        self.cause = cause
        super().__init__(reason)


class RebuildTimeoutError(RebuildAbortedError):
    """The rebuild ran past its deadline."""


class RebuildCancelledError(RebuildAbortedError):
    """The rebuild was cancelled by the driver."""
