"""
Logging setup for the API process and its import worker threads.

Every record carries the id of the import the emitting thread is working on
(``-`` outside an import), so interleaved output of concurrent imports can be
told apart.
"""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from logging.config import dictConfig
from typing import Iterator, Optional


_is_configured = False
_context = threading.local()


class ImportContextFilter(logging.Filter):
    """Stamp ``record.import_id`` from the current thread's import context."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.import_id = getattr(_context, "import_id", None) or "-"
        return True


@contextmanager
def import_context(import_id: str) -> Iterator[None]:
    """Tag log lines emitted by this thread with ``import_id`` for the duration."""
    previous = getattr(_context, "import_id", None)
    _context.import_id = import_id
    try:
        yield
    finally:
        _context.import_id = previous


def current_import_id() -> Optional[str]:
    return getattr(_context, "import_id", None)


def configure_logging(level: Optional[str] = None, log_sql: bool = False) -> None:
    """
    Install the console handler once per process.

    Args:
        level: log level name, defaults to INFO
        log_sql: echo SQLAlchemy statements (very noisy during batch commits)
    """
    global _is_configured

    if _is_configured:
        return

    log_level = (level or "INFO").upper()

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {
                "import_context": {"()": ImportContextFilter},
            },
            "formatters": {
                "standard": {
                    "format": "%(asctime)s | %(levelname)-7s | %(threadName)s | import=%(import_id)s | %(name)s | %(message)s",
                    "datefmt": "%Y-%m-%d %H:%M:%S",
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "standard",
                    "filters": ["import_context"],
                    "level": log_level,
                }
            },
            "root": {
                "handlers": ["console"],
                "level": log_level,
            },
            "loggers": {
                "sqlalchemy.engine": {"level": "INFO" if log_sql else "WARNING"},
                "botocore": {"level": "WARNING"},
                "urllib3": {"level": "WARNING"},
            },
        }
    )

    logging.getLogger("jobimport").setLevel(log_level)

    _is_configured = True
