import threading
from typing import Dict
from contextlib import contextmanager
import logging

logger = logging.getLogger(__name__)


class CompanyLockManager:
    """
    Manages in-process locks per company so that the check for an active
    import and the write that follows it cannot interleave between request
    handlers and import workers of the same process.
    """
    _locks: Dict[str, threading.Lock] = {}
    _global_lock = threading.Lock()

    @classmethod
    def get_lock(cls, company_id: str) -> threading.Lock:
        """Get or create a lock for a specific company."""
        with cls._global_lock:
            if company_id not in cls._locks:
                cls._locks[company_id] = threading.Lock()
            return cls._locks[company_id]

    @classmethod
    @contextmanager
    def acquire(cls, company_id: str):
        """Context manager to acquire and release a company lock."""
        lock = cls.get_lock(company_id)
        lock.acquire()
        logger.debug("Acquired import lock for company '%s'", company_id)
        try:
            yield
        finally:
            lock.release()
            logger.debug("Released import lock for company '%s'", company_id)
