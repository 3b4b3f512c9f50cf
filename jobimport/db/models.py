"""
ORM models for bulk job imports and the job records they produce.
"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)

from jobimport.db.session import Base


IMPORT_STATUSES = ("pending", "validating", "processing", "completed", "failed", "cancelled")
ACTIVE_STATUSES = ("validating", "processing")
TERMINAL_STATUSES = ("completed", "failed", "cancelled")


def _utcnow() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class ImportJob(Base):
    """One uploaded spreadsheet and the progress of turning it into jobs."""
    __tablename__ = "bulk_job_imports"

    id = Column(String(36), primary_key=True, default=_new_id)
    company_id = Column(String(64), nullable=False)
    created_by = Column(String(64), nullable=False)
    import_name = Column(String(255), nullable=True)

    file_url = Column(String(1024), nullable=False)
    file_size = Column(BigInteger, nullable=True)
    file_type = Column(String(16), nullable=False, default="csv")

    mapping_config = Column(JSON, nullable=False, default=dict)
    validation_rules = Column(JSON, nullable=False, default=dict)
    default_values = Column(JSON, nullable=False, default=dict)

    status = Column(String(20), nullable=False, default="pending")
    progress = Column(Integer, nullable=False, default=0)
    total_records = Column(Integer, nullable=False, default=0)
    successful_imports = Column(Integer, nullable=False, default=0)
    failed_imports = Column(Integer, nullable=False, default=0)
    skipped_records = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    claimed_by = Column(String(128), nullable=True)
    heartbeat_at = Column(DateTime(timezone=True), nullable=True)
    cancel_requested_at = Column(DateTime(timezone=True), nullable=True)
    scheduled_at = Column(DateTime(timezone=True), nullable=True)
    retry_of = Column(String(36), nullable=True)

    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("idx_bulk_job_imports_company_status", "company_id", "status"),
        Index("idx_bulk_job_imports_status", "status"),
    )

    @property
    def processed_records(self) -> int:
        """Rows already accounted for; the resume offset for an interrupted run."""
        return (self.successful_imports or 0) + (self.failed_imports or 0) + (self.skipped_records or 0)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class ImportRowError(Base):
    """Row-indexed outcome for every row that was not imported."""
    __tablename__ = "bulk_job_import_row_errors"

    id = Column(Integer, primary_key=True, autoincrement=True)
    import_id = Column(String(36), ForeignKey("bulk_job_imports.id", ondelete="CASCADE"), nullable=False)
    row_index = Column(Integer, nullable=False)
    outcome = Column(String(16), nullable=False)  # failed | skipped
    errors = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("idx_bulk_job_import_row_errors_import_row", "import_id", "row_index"),
    )


class Job(Base):
    """Job posting created by an import."""
    __tablename__ = "jobs"

    id = Column(String(36), primary_key=True, default=_new_id)
    company_id = Column(String(64), nullable=False)
    employer_id = Column(String(64), nullable=False)
    import_id = Column(String(36), nullable=True)  # Provenance tag only

    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False)
    location = Column(String(255), nullable=False)
    city = Column(String(120), nullable=True)
    state = Column(String(120), nullable=True)
    country = Column(String(120), nullable=True)
    job_type = Column(String(40), nullable=True)
    department = Column(String(255), nullable=True)
    salary_min = Column(Float, nullable=True)
    salary_max = Column(Float, nullable=True)
    salary_currency = Column(String(8), nullable=True)

    status = Column(String(20), nullable=False, default="active")
    slug = Column(String(320), nullable=False, unique=True)
    published_at = Column(DateTime(timezone=True), nullable=True)
    valid_till = Column(Date, nullable=True)
    attributes = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("idx_jobs_company_title_location", "company_id", "title", "location"),
    )
