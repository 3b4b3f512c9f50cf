"""
Background execution of bulk imports.

``ImportWorkerPool`` runs claimed imports on a fixed set of threads, one
import per thread, and keeps the cancellation token of every import it is
running. ``ImportSupervisor`` periodically sweeps the store: it fails imports
that ran past their time limit, resumes imports whose worker went silent and
hands due pending imports to the pool.
"""
import logging
import os
import socket
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from jobimport.core.config import settings
from jobimport.core.logging_config import import_context

from . import jobs as store
from .errors import AlreadyClaimedError, ImportInProgressError
from .executor import BatchExecutor, CancellationToken, ExecutionOutcome

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class ImportWorkerPool:
    """Thread pool that claims and executes imports."""

    def __init__(
        self,
        max_workers: Optional[int] = None,
        executor_factory: Callable[[], BatchExecutor] = BatchExecutor,
        worker_id: Optional[str] = None,
    ):
        self.max_workers = max_workers or settings.import_max_workers
        self.worker_id = worker_id or default_worker_id()
        self._executor_factory = executor_factory
        self._pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="import-worker")
        self._lock = threading.Lock()
        self._tokens: Dict[str, CancellationToken] = {}
        self._futures: Dict[str, Future] = {}
        self._closed = False

    def submit(self, job_id: str, resume_stale_before: Optional[datetime] = None) -> Optional[Future]:
        """
        Queue an import for execution.

        A pending import is claimed first; with ``resume_stale_before`` an
        interrupted active import is taken over instead. Returns None when the
        import is already running in this pool or the pool is shut down.
        """
        with self._lock:
            if self._closed or job_id in self._futures:
                return None
            token = CancellationToken(job_id, poll=store.is_cancel_requested)
            future = self._pool.submit(self._run, job_id, token, resume_stale_before)
            self._tokens[job_id] = token
            self._futures[job_id] = future
        future.add_done_callback(lambda done: self._finished(job_id, done))
        return future

    def _run(
        self,
        job_id: str,
        token: CancellationToken,
        resume_stale_before: Optional[datetime],
    ) -> Optional[ExecutionOutcome]:
        with import_context(job_id):
            return self._claim_and_execute(job_id, token, resume_stale_before)

    def _claim_and_execute(
        self,
        job_id: str,
        token: CancellationToken,
        resume_stale_before: Optional[datetime],
    ) -> Optional[ExecutionOutcome]:
        try:
            if resume_stale_before is None:
                store.claim_import_job(job_id, self.worker_id)
            else:
                store.reclaim_stale_job(job_id, self.worker_id, resume_stale_before)
        except AlreadyClaimedError as exc:
            logger.info("Skipping import %s: %s", job_id, exc)
            return None
        except ImportInProgressError as exc:
            logger.info("Deferring import %s: %s", job_id, exc)
            return None

        outcome = self._executor_factory().run(job_id, token)
        logger.info(
            "Import %s finished as %s (%d imported, %d failed, %d skipped of %d)",
            job_id,
            outcome.status,
            outcome.successful_imports,
            outcome.failed_imports,
            outcome.skipped_records,
            outcome.total_records,
        )
        return outcome

    def _finished(self, job_id: str, future: Future) -> None:
        with self._lock:
            self._tokens.pop(job_id, None)
            self._futures.pop(job_id, None)
        if not future.cancelled() and future.exception() is not None:
            logger.error("Import worker for %s crashed", job_id, exc_info=future.exception())

    def cancel(self, job_id: str) -> bool:
        """Signal a running import to stop at its next batch boundary."""
        with self._lock:
            token = self._tokens.get(job_id)
        if token is None:
            return False
        token.cancel()
        return True

    def is_running(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._futures

    def running_jobs(self) -> List[str]:
        with self._lock:
            return list(self._futures)

    def shutdown(self, wait: bool = True, cancel_running: bool = False) -> None:
        with self._lock:
            self._closed = True
            tokens = list(self._tokens.values())
        if cancel_running:
            for token in tokens:
                token.cancel()
        self._pool.shutdown(wait=wait)
        logger.info("Import worker pool %s stopped", self.worker_id)


class ImportSupervisor:
    """Periodic sweep over the import store, run on a daemon thread."""

    def __init__(
        self,
        pool: ImportWorkerPool,
        interval_seconds: Optional[float] = None,
        max_duration_seconds: Optional[int] = None,
        stale_after_seconds: Optional[int] = None,
    ):
        self.pool = pool
        self.interval_seconds = interval_seconds or settings.import_supervisor_interval_seconds
        self.max_duration_seconds = max_duration_seconds or settings.import_max_duration_seconds
        self.stale_after_seconds = stale_after_seconds or settings.import_stale_after_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="import-supervisor", daemon=True)
        self._thread.start()
        logger.info("Import supervisor started (every %ss)", self.interval_seconds)

    def stop(self, timeout: Optional[float] = 10) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_once()
            except SQLAlchemyError:
                logger.exception("Import supervisor sweep failed; retrying next interval")
            self._stop.wait(self.interval_seconds)

    def run_once(self, now: Optional[datetime] = None) -> Dict[str, List[str]]:
        """One sweep: time out, resume, dispatch. Returns the affected import ids."""
        now = now or datetime.now(timezone.utc)

        timed_out = store.fail_timed_out_jobs(self.max_duration_seconds, now)
        for job_id in timed_out:
            self.pool.cancel(job_id)

        stale_before = now - timedelta(seconds=self.stale_after_seconds)
        resumed = []
        for job_id in store.find_stale_active_jobs(stale_before):
            if self.pool.is_running(job_id):
                continue
            if self.pool.submit(job_id, resume_stale_before=stale_before) is not None:
                resumed.append(job_id)

        dispatched = []
        for job_id in store.find_due_pending_jobs(now):
            if self.pool.submit(job_id) is not None:
                dispatched.append(job_id)

        if timed_out or resumed or dispatched:
            logger.info(
                "Import sweep: %d timed out, %d resumed, %d dispatched",
                len(timed_out),
                len(resumed),
                len(dispatched),
            )
        return {"timed_out": timed_out, "resumed": resumed, "dispatched": dispatched}
