"""
Run one bulk import from claimed job to terminal state.

The executor validates the configuration, fetches and parses the file and
resolves its columns while the import is ``validating``. Any of those
failing is fatal. It then moves to ``processing`` and walks the rows in
fixed-size batches. Each batch is validated up front and committed in a
single transaction: created jobs, row errors and counter increments land
together or not at all. Counters therefore always describe exactly the rows
whose batches committed, and a restarted worker picks up from there.
"""
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from itertools import islice
from typing import Any, Callable, Dict, Iterator, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from jobimport.core.config import settings
from jobimport.db.session import session_scope
from jobimport.integrations.storage import download_file

from . import jobs as store
from .config_model import ImportConfiguration, build_configuration
from .errors import (
    ConfigurationError,
    FieldViolation,
    ImportTimeoutError,
    InvalidStateTransitionError,
    MappingError,
    ParseError,
    PersistenceError,
    RowError,
    StaleJobStateError,
    StorageDownloadError,
)
from .job_writer import JobWriter, existing_job_exists
from .jobs import BatchDelta, RowOutcome
from .mapper import ColumnResolution, resolve_columns
from .processors.file_processor import ParsedFile, RawRow, parse_upload
from .row_validator import DuplicateTracker, RowValidator, ValidatedRecord

logger = logging.getLogger(__name__)

# Errors that end an import while it is still being validated
FILE_LEVEL_ERRORS = (ConfigurationError, ParseError, MappingError, StorageDownloadError)


class CancellationToken:
    """
    Cooperative stop signal for one running import.

    Set in-process through ``cancel()``; with a ``poll`` callable the token
    also picks up a cancellation persisted by another process. The executor
    only looks at it between batches.
    """

    def __init__(self, job_id: str, poll: Optional[Callable[[str], bool]] = None):
        self.job_id = job_id
        self._event = threading.Event()
        self._poll = poll

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._poll is not None and self._poll(self.job_id):
            self._event.set()
            return True
        return False


@dataclass(frozen=True)
class ExecutionOutcome:
    job_id: str
    status: str
    total_records: int
    successful_imports: int
    failed_imports: int
    skipped_records: int
    last_error: Optional[str] = None

    @classmethod
    def from_job(cls, job: Dict[str, Any]) -> "ExecutionOutcome":
        return cls(
            job_id=job["id"],
            status=job["status"],
            total_records=job["total_records"],
            successful_imports=job["successful_imports"],
            failed_imports=job["failed_imports"],
            skipped_records=job["skipped_records"],
            last_error=job["last_error"],
        )


@dataclass
class _PreparedImport:
    configuration: ImportConfiguration
    parsed: ParsedFile
    resolution: ColumnResolution


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive timestamps; everything is stored in UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _chunks(rows: Iterator[RawRow], size: int) -> Iterator[List[RawRow]]:
    while True:
        chunk = list(islice(rows, size))
        if not chunk:
            return
        yield chunk


def _failed_rows_summary(batch_number: int, outcomes: List[RowOutcome]) -> Optional[str]:
    """``last_error`` text for a batch with rows that failed validation, else None."""
    failed = [outcome for outcome in outcomes if outcome.outcome == "failed"]
    if not failed:
        return None
    return f"{failed[0].code}: {len(failed)} row(s) failed validation in batch {batch_number} (first: {failed[0].message})"


class BatchExecutor:
    """Drives a claimed import through validation and batched persistence."""

    def __init__(
        self,
        fetch_file: Callable[[str], bytes] = download_file,
        writer: Optional[JobWriter] = None,
        batch_size: Optional[int] = None,
        max_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        max_duration_seconds: Optional[int] = None,
        encoding: Optional[str] = None,
        on_batch_committed: Optional[Callable[[str, int, BatchDelta], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.fetch_file = fetch_file
        self.writer = writer or JobWriter()
        self.batch_size = batch_size or settings.import_batch_size
        self.max_attempts = max(1, max_attempts or settings.import_commit_max_attempts)
        self.backoff_seconds = settings.import_commit_backoff_seconds if backoff_seconds is None else backoff_seconds
        self.max_duration_seconds = max_duration_seconds or settings.import_max_duration_seconds
        self.encoding = encoding or settings.import_file_encoding
        self.on_batch_committed = on_batch_committed
        self._sleep = sleep

    def run(self, job_id: str, token: Optional[CancellationToken] = None) -> ExecutionOutcome:
        """
        Execute an import claimed by the caller (status ``validating``, or
        ``processing`` when resuming) and return its final counters.

        Fatal file errors and timeouts are recorded on the import rather than
        raised. Unexpected errors fail the import and propagate.
        """
        token = token or CancellationToken(job_id, poll=store.is_cancel_requested)
        job = store.require_import_job(job_id)
        if job["status"] not in ("validating", "processing"):
            raise InvalidStateTransitionError(job_id, job["status"], "execute")

        logger.info(
            "Executing import %s (%s, status=%s, resume offset=%d)",
            job_id,
            job["file_url"],
            job["status"],
            job["processed_records"],
        )

        try:
            prepared = self._prepare(job)
            if job["status"] == "processing" and job["total_records"] != prepared.parsed.total_records:
                raise ParseError(
                    f"File now has {prepared.parsed.total_records} rows but the import started with {job['total_records']}"
                )
        except FILE_LEVEL_ERRORS as exc:
            store.fail_import_job(job_id, exc)
            return self._outcome(job_id)

        try:
            self._process(job, prepared, token)
        except StaleJobStateError as exc:
            # Failed or cancelled underneath us (e.g. by the timeout sweep); the open batch rolled back
            logger.warning("Import %s stopped: %s", job_id, exc)
        except Exception as exc:
            logger.exception("Import %s aborted by an unexpected error", job_id)
            store.fail_import_job(job_id, f"unexpected_error: {exc}")
            raise
        return self._outcome(job_id)

    def _prepare(self, job: Dict[str, Any]) -> _PreparedImport:
        configuration = build_configuration(
            job["mapping_config"], job["validation_rules"], job["default_values"]
        )
        content = self.fetch_file(job["file_url"])
        parsed = parse_upload(content, job["file_type"], self.encoding)
        resolution = resolve_columns(parsed.headers, configuration)
        if resolution.unmapped_headers:
            logger.info("Import %s ignores unmapped columns: %s", job["id"], ", ".join(resolution.unmapped_headers))
        return _PreparedImport(configuration, parsed, resolution)

    def _process(self, job: Dict[str, Any], prepared: _PreparedImport, token: CancellationToken) -> None:
        job_id = job["id"]
        company_id = job["company_id"]
        validator = RowValidator(prepared.configuration, prepared.resolution)
        tracker = DuplicateTracker(
            prepared.configuration.duplicate_keys,
            existing_lookup=lambda fields, values: existing_job_exists(company_id, fields, values),
        )

        if job["status"] == "validating":
            job = store.begin_processing(job_id, prepared.parsed.total_records)

        offset = job["processed_records"]
        if offset and tracker.enabled:
            self._replay(prepared.parsed, validator, tracker, offset)

        batch_number = 0
        for batch in _chunks(prepared.parsed.iter_rows(offset), self.batch_size):
            if token.cancelled:
                store.mark_cancelled(job_id)
                return
            if self._deadline_passed(job):
                store.fail_import_job(job_id, ImportTimeoutError(self.max_duration_seconds))
                return

            batch_number += 1
            records: List[ValidatedRecord] = []
            outcomes: List[RowOutcome] = []
            for row in batch:
                result = validator.validate(row)
                if isinstance(result, RowError):
                    outcomes.append(result)
                    continue
                duplicate = tracker.check(result)
                if duplicate is not None:
                    outcomes.append(duplicate)
                else:
                    records.append(result)

            delta = self._commit_batch(job, batch_number, records, outcomes)
            logger.debug(
                "Import %s batch %d committed: +%d imported, +%d failed, +%d skipped",
                job_id,
                batch_number,
                delta.successful,
                delta.failed,
                delta.skipped,
            )
            if self.on_batch_committed is not None:
                self.on_batch_committed(job_id, batch_number, delta)

        if token.cancelled:
            # Cancellation arriving after the last batch still wins over completion
            store.mark_cancelled(job_id)
            return
        store.complete_import_job(job_id)

    @staticmethod
    def _replay(parsed: ParsedFile, validator: RowValidator, tracker: DuplicateTracker, offset: int) -> None:
        """Rebuild duplicate-key state from rows committed before a restart."""
        for row in islice(parsed.iter_rows(), offset):
            result = validator.validate(row)
            if isinstance(result, ValidatedRecord):
                tracker.check(result, consult_existing=False)

    def _deadline_passed(self, job: Dict[str, Any]) -> bool:
        started_at = _as_utc(job.get("started_at"))
        if started_at is None:
            return False
        elapsed = (datetime.now(timezone.utc) - started_at).total_seconds()
        return elapsed > self.max_duration_seconds

    def _commit_batch(
        self,
        job: Dict[str, Any],
        batch_number: int,
        records: List[ValidatedRecord],
        outcomes: List[RowOutcome],
    ) -> BatchDelta:
        job_id = job["id"]
        delta = BatchDelta(
            successful=len(records),
            failed=sum(1 for outcome in outcomes if outcome.outcome == "failed"),
            skipped=sum(1 for outcome in outcomes if outcome.outcome == "skipped"),
        )
        summary = _failed_rows_summary(batch_number, outcomes)

        def write_batch() -> None:
            with session_scope() as session:
                if records:
                    self.writer.create_jobs(session, job, records)
                store.record_row_errors(session, job_id, outcomes)
                store.apply_batch_result(job_id, delta, session=session, last_error=summary)

        def log_retry(retry_state: RetryCallState) -> None:
            logger.warning(
                "Import %s batch %d commit attempt %d/%d failed (%s); retrying in %.2fs",
                job_id,
                batch_number,
                retry_state.attempt_number,
                self.max_attempts,
                retry_state.outcome.exception(),
                retry_state.next_action.sleep,
            )

        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_seconds),
            retry=retry_if_exception_type((SQLAlchemyError, PersistenceError)),
            sleep=self._sleep,
            before_sleep=log_retry,
            reraise=True,
        )
        try:
            retrying(write_batch)
            return delta
        except (SQLAlchemyError, PersistenceError) as exc:
            last_error = exc

        logger.error(
            "Import %s: giving up on %d records of batch %d after %d commit attempts: %s",
            job_id,
            len(records),
            batch_number,
            self.max_attempts,
            last_error,
        )
        reason = f"could not be saved after {self.max_attempts} attempts: {last_error}"
        unsaved = [RowError(record.row_index, [FieldViolation("_batch", reason)]) for record in records]
        fallback = BatchDelta(successful=0, failed=delta.failed + len(unsaved), skipped=delta.skipped)
        batch_error = PersistenceError(f"batch {batch_number} ({len(records)} rows) {reason}", self.max_attempts)
        try:
            with session_scope() as session:
                store.record_row_errors(session, job_id, sorted([*outcomes, *unsaved], key=lambda o: o.row_index))
                store.apply_batch_result(job_id, fallback, session=session, last_error=batch_error.summary())
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not record failed batch for import {job_id}: {exc}", self.max_attempts) from exc
        return fallback

    @staticmethod
    def _outcome(job_id: str) -> ExecutionOutcome:
        return ExecutionOutcome.from_job(store.require_import_job(job_id))
