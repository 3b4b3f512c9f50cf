"""
Persistent tracking for bulk job imports.

The ``bulk_job_imports`` row is the only authority on where an import
stands: clients poll it, and a worker resuming an interrupted import
restarts from the rows its counters already account for.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from jobimport.db.models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    ImportJob,
    ImportRowError,
)
from jobimport.db.session import session_scope
from jobimport.utils.locks import CompanyLockManager

from .config_model import build_configuration
from .errors import (
    AlreadyClaimedError,
    ConfigurationError,
    DuplicateSkip,
    ImportInProgressError,
    ImportJobNotFoundError,
    ImportPipelineError,
    ImportTimeoutError,
    InvalidStateTransitionError,
    RowError,
    StaleJobStateError,
)
from .processors.file_processor import SUPPORTED_FILE_TYPES

logger = logging.getLogger(__name__)

RowOutcome = Union[RowError, DuplicateSkip]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class BatchDelta:
    """Counter increments produced by one committed batch."""
    successful: int = 0
    failed: int = 0
    skipped: int = 0

    @property
    def processed(self) -> int:
        return self.successful + self.failed + self.skipped


def compute_progress(processed: int, total: int) -> int:
    """Percentage for an active import; 100 is reserved for ``completed``."""
    if total <= 0:
        return 0
    return min(99, (processed * 100) // total)


def _row_to_job(job: ImportJob) -> Dict[str, Any]:
    return {
        "id": job.id,
        "company_id": job.company_id,
        "created_by": job.created_by,
        "import_name": job.import_name,
        "file_url": job.file_url,
        "file_size": job.file_size,
        "file_type": job.file_type,
        "mapping_config": job.mapping_config or {},
        "validation_rules": job.validation_rules or {},
        "default_values": job.default_values or {},
        "status": job.status,
        "progress": job.progress,
        "total_records": job.total_records,
        "successful_imports": job.successful_imports,
        "failed_imports": job.failed_imports,
        "skipped_records": job.skipped_records,
        "processed_records": job.processed_records,
        "last_error": job.last_error,
        "claimed_by": job.claimed_by,
        "cancel_requested_at": job.cancel_requested_at,
        "scheduled_at": job.scheduled_at,
        "retry_of": job.retry_of,
        "started_at": job.started_at,
        "completed_at": job.completed_at,
        "cancelled_at": job.cancelled_at,
        "heartbeat_at": job.heartbeat_at,
        "created_at": job.created_at,
        "updated_at": job.updated_at,
    }


def _active_import_id(session: Session, company_id: str, exclude_id: Optional[str] = None) -> Optional[str]:
    query = select(ImportJob.id).where(
        ImportJob.company_id == company_id,
        ImportJob.status.in_(ACTIVE_STATUSES),
    )
    if exclude_id is not None:
        query = query.where(ImportJob.id != exclude_id)
    return session.execute(query.limit(1)).scalar_one_or_none()


def _locked_job(session: Session, job_id: str) -> Optional[ImportJob]:
    return session.execute(
        select(ImportJob).where(ImportJob.id == job_id).with_for_update()
    ).scalar_one_or_none()


def create_import_job(
    *,
    company_id: str,
    created_by: str,
    file_url: str,
    file_size: Optional[int] = None,
    file_type: str = "csv",
    import_name: Optional[str] = None,
    mapping_config: Optional[Dict[str, Any]] = None,
    validation_rules: Optional[Dict[str, Any]] = None,
    default_values: Optional[Dict[str, Any]] = None,
    scheduled_at: Optional[datetime] = None,
    retry_of: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Validate the configuration and persist a new ``pending`` import.

    Raises:
        ConfigurationError: when the configuration documents are invalid
        ImportInProgressError: when the company already has an active import
    """
    if file_type not in SUPPORTED_FILE_TYPES:
        raise ConfigurationError([f"unsupported file type '{file_type}' (expected one of: {', '.join(SUPPORTED_FILE_TYPES)})"])
    build_configuration(mapping_config, validation_rules, default_values)

    with CompanyLockManager.acquire(company_id):
        with session_scope() as session:
            active_id = _active_import_id(session, company_id)
            if active_id is not None:
                raise ImportInProgressError(company_id, active_id)

            job = ImportJob(
                company_id=company_id,
                created_by=created_by,
                import_name=import_name,
                file_url=file_url,
                file_size=file_size,
                file_type=file_type,
                mapping_config=mapping_config or {},
                validation_rules=validation_rules or {},
                default_values=default_values or {},
                status="pending",
                progress=0,
                total_records=0,
                successful_imports=0,
                failed_imports=0,
                skipped_records=0,
                scheduled_at=scheduled_at,
                retry_of=retry_of,
            )
            session.add(job)
            session.flush()
            created = _row_to_job(job)

    logger.info("Created import %s for company %s (%s)", created["id"], company_id, file_url)
    return created


def get_import_job(job_id: str, company_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """Fetch a single import, optionally scoped to its owning company."""
    with session_scope() as session:
        job = session.get(ImportJob, job_id)
        if job is None or (company_id is not None and job.company_id != company_id):
            return None
        return _row_to_job(job)


def require_import_job(job_id: str, company_id: Optional[str] = None) -> Dict[str, Any]:
    job = get_import_job(job_id, company_id)
    if job is None:
        raise ImportJobNotFoundError(job_id)
    return job


def list_import_jobs(
    *,
    company_id: str,
    status: Optional[str] = None,
    limit: int = 20,
    offset: int = 0,
) -> Tuple[List[Dict[str, Any]], int]:
    """List a company's imports, newest first."""
    filters = [ImportJob.company_id == company_id]
    if status:
        filters.append(ImportJob.status == status)

    with session_scope() as session:
        rows = session.execute(
            select(ImportJob)
            .where(*filters)
            .order_by(ImportJob.created_at.desc())
            .limit(limit)
            .offset(offset)
        ).scalars().all()
        total = session.execute(select(func.count(ImportJob.id)).where(*filters)).scalar() or 0
        return [_row_to_job(row) for row in rows], total


def claim_import_job(job_id: str, worker_id: str) -> Dict[str, Any]:
    """
    Move a ``pending`` import to ``validating`` on behalf of ``worker_id``.

    Raises:
        AlreadyClaimedError: the import is no longer pending; do not retry it
        ImportInProgressError: another import of the company is active; the
            import stays pending and can be dispatched later
    """
    with session_scope() as session:
        job = session.get(ImportJob, job_id)
        if job is None:
            raise ImportJobNotFoundError(job_id)
        company_id = job.company_id

    with CompanyLockManager.acquire(company_id):
        with session_scope() as session:
            active_id = _active_import_id(session, company_id, exclude_id=job_id)
            if active_id is not None:
                raise ImportInProgressError(company_id, active_id)

            now = _utcnow()
            result = session.execute(
                update(ImportJob)
                .where(ImportJob.id == job_id, ImportJob.status == "pending")
                .values(
                    status="validating",
                    claimed_by=worker_id,
                    started_at=now,
                    heartbeat_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                current = session.execute(
                    select(ImportJob.status).where(ImportJob.id == job_id)
                ).scalar_one_or_none()
                raise AlreadyClaimedError(job_id, current)

    logger.info("Worker %s claimed import %s", worker_id, job_id)
    return require_import_job(job_id)


def reclaim_stale_job(job_id: str, worker_id: str, stale_before: datetime) -> Dict[str, Any]:
    """
    Take over an active import whose worker stopped sending heartbeats.

    Raises:
        AlreadyClaimedError: the import finished or its worker is still alive
    """
    with session_scope() as session:
        now = _utcnow()
        result = session.execute(
            update(ImportJob)
            .where(
                ImportJob.id == job_id,
                ImportJob.status.in_(ACTIVE_STATUSES),
                (ImportJob.heartbeat_at.is_(None)) | (ImportJob.heartbeat_at < stale_before),
            )
            .values(claimed_by=worker_id, heartbeat_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            current = session.execute(
                select(ImportJob.status).where(ImportJob.id == job_id)
            ).scalar_one_or_none()
            raise AlreadyClaimedError(job_id, current)

    logger.warning("Worker %s resumed interrupted import %s", worker_id, job_id)
    return require_import_job(job_id)


def begin_processing(job_id: str, total_records: int) -> Dict[str, Any]:
    """Move ``validating`` to ``processing`` and persist the file's row count."""
    with session_scope() as session:
        now = _utcnow()
        result = session.execute(
            update(ImportJob)
            .where(ImportJob.id == job_id, ImportJob.status == "validating")
            .values(
                status="processing",
                total_records=total_records,
                heartbeat_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StaleJobStateError(job_id, "validating")
    return require_import_job(job_id)


def apply_batch_result(
    job_id: str,
    delta: BatchDelta,
    session: Optional[Session] = None,
    last_error: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Add one batch's counts to the import and recompute progress.

    ``last_error`` summarises the batch's failed rows; a batch without
    failures leaves the previous summary in place.

    Counters only ever grow and progress never decreases. When ``session`` is
    given the update joins the caller's transaction, so job creation and
    accounting commit or roll back together.

    Raises:
        StaleJobStateError: the import is no longer ``processing``
    """
    def _apply(active_session: Session) -> Dict[str, Any]:
        job = _locked_job(active_session, job_id)
        if job is None or job.status != "processing":
            raise StaleJobStateError(job_id, "processing")
        job.successful_imports += delta.successful
        job.failed_imports += delta.failed
        job.skipped_records += delta.skipped
        job.progress = max(job.progress or 0, compute_progress(job.processed_records, job.total_records))
        job.heartbeat_at = _utcnow()
        if last_error:
            job.last_error = last_error
        active_session.flush()
        return _row_to_job(job)

    if session is not None:
        return _apply(session)
    with session_scope() as own_session:
        return _apply(own_session)


def record_row_errors(session: Session, job_id: str, outcomes: Iterable[RowOutcome]) -> int:
    """Persist row-level outcomes (failed or skipped rows) in the caller's transaction."""
    count = 0
    for outcome in outcomes:
        session.add(
            ImportRowError(
                import_id=job_id,
                row_index=outcome.row_index,
                outcome=outcome.outcome,
                errors=outcome.to_payload(),
            )
        )
        count += 1
    return count


def list_row_errors(
    job_id: str,
    *,
    outcome: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> Tuple[List[Dict[str, Any]], int]:
    filters = [ImportRowError.import_id == job_id]
    if outcome:
        filters.append(ImportRowError.outcome == outcome)

    with session_scope() as session:
        rows = session.execute(
            select(ImportRowError)
            .where(*filters)
            .order_by(ImportRowError.row_index, ImportRowError.id)
            .limit(limit)
            .offset(offset)
        ).scalars().all()
        total = session.execute(select(func.count(ImportRowError.id)).where(*filters)).scalar() or 0
        return [
            {
                "row_index": row.row_index,
                "outcome": row.outcome,
                "errors": row.errors or [],
            }
            for row in rows
        ], total


def complete_import_job(job_id: str) -> Dict[str, Any]:
    """Mark a fully processed import as ``completed`` with progress 100."""
    with session_scope() as session:
        job = _locked_job(session, job_id)
        if job is None or job.status != "processing":
            raise StaleJobStateError(job_id, "processing")
        if job.processed_records != job.total_records:
            logger.error(
                "Import %s completing with %d of %d rows accounted",
                job_id,
                job.processed_records,
                job.total_records,
            )
        now = _utcnow()
        job.status = "completed"
        job.progress = 100
        job.completed_at = now
        job.claimed_by = None
        completed = _row_to_job(job)

    logger.info(
        "Import %s completed: %d imported, %d failed, %d skipped of %d",
        job_id,
        completed["successful_imports"],
        completed["failed_imports"],
        completed["skipped_records"],
        completed["total_records"],
    )
    return completed


def fail_import_job(job_id: str, error: Union[ImportPipelineError, str], *, account_remaining: bool = True) -> bool:
    """
    Move a non-terminal import to ``failed`` and record ``last_error``.

    With ``account_remaining`` the rows never reached during ``processing``
    are counted as failed, so the counters add up to ``total_records``.
    Returns False when the import was already terminal.
    """
    summary = error.summary() if isinstance(error, ImportPipelineError) else str(error)
    with session_scope() as session:
        job = _locked_job(session, job_id)
        if job is None or job.is_terminal:
            return False
        if account_remaining and job.status == "processing":
            remaining = job.total_records - job.processed_records
            if remaining > 0:
                job.failed_imports += remaining
        job.status = "failed"
        job.last_error = summary
        job.completed_at = _utcnow()
        job.claimed_by = None

    logger.error("Import %s failed: %s", job_id, summary)
    return True


def mark_cancelled(job_id: str) -> bool:
    """Move a non-terminal import to ``cancelled``; ``cancelled_at`` is set once."""
    with session_scope() as session:
        job = _locked_job(session, job_id)
        if job is None or job.is_terminal:
            return False
        now = _utcnow()
        job.status = "cancelled"
        if job.cancelled_at is None:
            job.cancelled_at = now
        if job.cancel_requested_at is None:
            job.cancel_requested_at = now
        job.completed_at = now
        job.claimed_by = None

    logger.info("Import %s cancelled", job_id)
    return True


def request_cancel(job_id: str, company_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Ask for an import to stop.

    Terminal imports are returned unchanged. A ``pending`` import has no
    worker yet and is cancelled at once; an active one gets its cancellation
    flag set and stops at the next batch boundary.
    """
    job = require_import_job(job_id, company_id)
    if job["status"] in TERMINAL_STATUSES:
        return job
    if job["status"] == "pending":
        with session_scope() as session:
            result = session.execute(
                update(ImportJob)
                .where(ImportJob.id == job_id, ImportJob.status == "pending")
                .values(
                    status="cancelled",
                    cancel_requested_at=_utcnow(),
                    cancelled_at=_utcnow(),
                    completed_at=_utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
        if result.rowcount == 1:
            logger.info("Pending import %s cancelled before start", job_id)
            return require_import_job(job_id)
        # Claimed meanwhile: fall through to the cooperative flag

    with session_scope() as session:
        session.execute(
            update(ImportJob)
            .where(
                ImportJob.id == job_id,
                ImportJob.status.in_(ACTIVE_STATUSES),
                ImportJob.cancel_requested_at.is_(None),
            )
            .values(cancel_requested_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
    logger.info("Cancellation requested for import %s", job_id)
    return require_import_job(job_id)


def is_cancel_requested(job_id: str) -> bool:
    with session_scope() as session:
        row = session.execute(
            select(ImportJob.status, ImportJob.cancel_requested_at).where(ImportJob.id == job_id)
        ).first()
    if row is None:
        return True
    status, requested_at = row
    return requested_at is not None or status == "cancelled"


def retry_import_job(job_id: str, company_id: str, created_by: str) -> Dict[str, Any]:
    """
    Start a new import from the file and configuration of a failed one.

    The failed import is left untouched; the new one references it via ``retry_of``.
    """
    job = require_import_job(job_id, company_id)
    if job["status"] != "failed":
        raise InvalidStateTransitionError(job_id, job["status"], "retry")
    return create_import_job(
        company_id=job["company_id"],
        created_by=created_by,
        file_url=job["file_url"],
        file_size=job["file_size"],
        file_type=job["file_type"],
        import_name=job["import_name"],
        mapping_config=job["mapping_config"],
        validation_rules=job["validation_rules"],
        default_values=job["default_values"],
        retry_of=job_id,
    )


def find_due_pending_jobs(now: Optional[datetime] = None, limit: int = 50) -> List[str]:
    """Pending imports whose schedule (if any) has arrived, oldest first."""
    now = now or _utcnow()
    with session_scope() as session:
        return list(
            session.execute(
                select(ImportJob.id)
                .where(
                    ImportJob.status == "pending",
                    (ImportJob.scheduled_at.is_(None)) | (ImportJob.scheduled_at <= now),
                )
                .order_by(ImportJob.created_at)
                .limit(limit)
            ).scalars()
        )


def find_stale_active_jobs(stale_before: datetime) -> List[str]:
    """Active imports whose worker has not reported since ``stale_before``."""
    with session_scope() as session:
        return list(
            session.execute(
                select(ImportJob.id)
                .where(
                    ImportJob.status.in_(ACTIVE_STATUSES),
                    (ImportJob.heartbeat_at.is_(None)) | (ImportJob.heartbeat_at < stale_before),
                )
                .order_by(ImportJob.started_at)
            ).scalars()
        )


def fail_timed_out_jobs(max_duration_seconds: int, now: Optional[datetime] = None) -> List[str]:
    """Fail every active import that started more than ``max_duration_seconds`` ago."""
    now = now or _utcnow()
    cutoff = datetime.fromtimestamp(now.timestamp() - max_duration_seconds, tz=timezone.utc)
    with session_scope() as session:
        candidates = list(
            session.execute(
                select(ImportJob.id).where(
                    ImportJob.status.in_(ACTIVE_STATUSES),
                    ImportJob.started_at < cutoff,
                )
            ).scalars()
        )

    timed_out = []
    for job_id in candidates:
        if fail_import_job(job_id, ImportTimeoutError(max_duration_seconds)):
            timed_out.append(job_id)
    return timed_out
