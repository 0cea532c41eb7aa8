"""
Shared Module - Common utilities, configuration, schemas, and logging.
======================================================================

This module provides foundational components used across all other modules:

- config: Configuration loading and management
- logging: Structured logging setup
- schemas: Pydantic data models
- errors: Pipeline exception taxonomy
- utils: Utility functions (hashing, file I/O)
"""

from coursefinder.shared.config import Settings, get_settings, reload_settings
from coursefinder.shared.errors import (
    CourseFinderError,
    FetchError,
    ParseError,
    RebuildAbortedError,
    RebuildCancelledError,
    RebuildTimeoutError,
    RetryableFetchError,
    ValidationRejection,
)
from coursefinder.shared.logging import get_logger, rebuild_context, setup_logging
from coursefinder.shared.schemas import (
    AcademicTerm,
    CourseRecord,
    RebuildState,
    RebuildStats,
    RebuildStatus,
    SearchHit,
    Semester,
)

__all__ = [
    # Config
    "get_settings",
    "reload_settings",
    "Settings",
    # Logging
    "get_logger",
    "rebuild_context",
    "setup_logging",
    # Errors
    "CourseFinderError",
    "FetchError",
    "RetryableFetchError",
    "ParseError",
    "ValidationRejection",
    "RebuildAbortedError",
    "RebuildTimeoutError",
    "RebuildCancelledError",
    # Schemas
    "AcademicTerm",
    "Semester",
    "CourseRecord",
    "SearchHit",
    "RebuildState",
    "RebuildStats",
    "RebuildStatus",
]
