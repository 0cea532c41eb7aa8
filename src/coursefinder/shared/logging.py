"""
Logging Module - Rich console logging tagged with the active rebuild.
=====================================================================

Every handler installed here stamps log records with the rebuild they
belong to, so interleaved output from the background refresh, parallel
page fetches and interactive queries can be told apart:

    12:00:01 INFO  [gen 7] Fetched page '3' (48211 chars, next='4')
    12:00:01 INFO  Loaded snapshot generation 6 (1422 documents)

Log output goes to stderr; stdout is left to command results.
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import Iterator, Optional

from rich.console import Console
from rich.logging import RichHandler

DEFAULT_FORMAT = "%(asctime)s | %(levelname)-8s | %(rebuild)s | %(name)s | %(message)s"

# Libraries whose INFO chatter drowns out the pipeline's own messages
NOISY_LOGGERS = ("urllib3", "requests", "charset_normalizer")

_NO_REBUILD = "-"

_rebuild_tag: ContextVar[str] = ContextVar("rebuild_tag", default=_NO_REBUILD)
_logging_configured = False
_console = Console(stderr=True)


# ─────────────────────────────────────────────────────────────────────────────
# Rebuild Context
# ─────────────────────────────────────────────────────────────────────────────


@contextmanager
def rebuild_context(tag: str) -> Iterator[None]:
    """
    Tag every record logged inside the block (in this thread or in
    contexts copied from it) with `tag`.

    Example:
        >>> with rebuild_context("gen 4"):
        ...     logger.info("Fetching page 1")
    """
    token = _rebuild_tag.set(tag)
    try:
        yield
    finally:
        _rebuild_tag.reset(token)


def current_rebuild() -> Optional[str]:
    """Tag of the rebuild running in this context, if any."""
    tag = _rebuild_tag.get()
    return None if tag == _NO_REBUILD else tag


class RebuildContextFilter(logging.Filter):
    """Adds `rebuild` and `rebuild_prefix` attributes to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        tag = _rebuild_tag.get()
        record.rebuild = tag
        record.rebuild_prefix = "" if tag == _NO_REBUILD else f"[{tag}] "
        return True


# ─────────────────────────────────────────────────────────────────────────────
# Setup
# ─────────────────────────────────────────────────────────────────────────────


def setup_logging(
    level: str = "INFO",
    use_rich: bool = True,
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    force: bool = False,
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        use_rich: Whether to use Rich console handler for pretty output
        log_file: Optional path to log file
        log_format: Optional format string for the plain and file handlers
        force: Replace an existing configuration instead of keeping it

    Note:
        Without `force`, calls after the first are ignored so importing
        modules does not stack handlers.
    """
    global _logging_configured

    if _logging_configured and not force:
        return

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    log_format = log_format or DEFAULT_FORMAT
    context_filter = RebuildContextFilter()

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    for handler in list(root_logger.handlers):
        if getattr(handler, "_coursefinder", False):
            root_logger.removeHandler(handler)
            handler.close()

    if use_rich:
        console_handler: logging.Handler = RichHandler(
            console=_console,
            show_time=True,
            show_level=True,
            show_path=False,
            rich_tracebacks=True,
            tracebacks_show_locals=False,
            markup=False,
        )
        console_handler.setFormatter(logging.Formatter("%(rebuild_prefix)s%(message)s"))
    else:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(logging.Formatter(log_format))
    handlers = [console_handler]

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(log_format))
        handlers.append(file_handler)

    for handler in handlers:
        handler.setLevel(numeric_level)
        handler.addFilter(context_filter)
        handler._coursefinder = True  # type: ignore[attr-defined]
        root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _logging_configured = True

    logging.getLogger(__name__).debug(
        f"Logging configured: level={level}, rich={use_rich}, file={log_file}"
    )


def setup_logging_from_settings() -> None:
    """
    Reconfigure logging from the application settings.

    Modules configure a default as soon as they ask for a logger, so this
    always replaces whatever is in place.
    """
    from coursefinder.shared.config import get_settings

    settings = get_settings()
    setup_logging(
        level=settings.get_effective_log_level(),
        use_rich=settings.logging.rich_console,
        log_file=settings.logging.file or None,
        log_format=settings.logging.format,
        force=True,
    )


def get_logger(name: str) -> logging.Logger:
    """
    Get a named logger, configuring defaults on first use.

    Args:
        name: Logger name (typically __name__ of the calling module)
    """
    if not _logging_configured:
        setup_logging()

    return logging.getLogger(name)
