"""
Create job postings from validated import records.
"""
import logging
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from jobimport.db.models import Job
from jobimport.db.session import session_scope
from jobimport.utils.serialization import attributes_document

from .job_schema import JOB_FIELDS
from .normalizers import employment_type_for, format_salary, slugify
from .row_validator import ValidatedRecord

logger = logging.getLogger(__name__)

# Jobs stay visible for this long unless the row gives valid_till
DEFAULT_VALIDITY_DAYS = 21

_COLUMN_FIELDS = tuple(name for name, spec in JOB_FIELDS.items() if spec.column_backed)
_STORED_ELSEWHERE = {"salary_min", "salary_max", "salary_currency", "valid_till"}


class JobWriter:
    """Turns validated records into ``Job`` rows inside the caller's transaction."""

    def __init__(self, validity_days: int = DEFAULT_VALIDITY_DAYS):
        self.validity_days = validity_days

    def build_job(self, import_job: Mapping[str, Any], record: ValidatedRecord) -> Job:
        values = dict(record.values)
        now = datetime.now(timezone.utc)

        attributes = {
            name: value
            for name, value in values.items()
            if name not in _COLUMN_FIELDS and name not in _STORED_ELSEWHERE
        }
        if not attributes.get("employment_type"):
            derived = employment_type_for(values.get("job_type"))
            if derived:
                attributes["employment_type"] = derived
        if values.get("salary_min") is not None or values.get("salary_max") is not None:
            attributes.setdefault("salary", format_salary(values.get("salary_min"), values.get("salary_max")))
        attributes["import_row_index"] = record.row_index

        valid_till = values.get("valid_till")
        if not isinstance(valid_till, date):
            valid_till = (now + timedelta(days=self.validity_days)).date()

        title = values["title"]
        return Job(
            id=str(uuid.uuid4()),
            company_id=import_job["company_id"],
            employer_id=import_job["created_by"],
            import_id=import_job["id"],
            title=title,
            description=values["description"],
            location=values["location"],
            city=values.get("city"),
            state=values.get("state"),
            country=values.get("country"),
            job_type=values.get("job_type"),
            department=values.get("department"),
            salary_min=values.get("salary_min"),
            salary_max=values.get("salary_max"),
            salary_currency=values.get("salary_currency"),
            status="active",
            slug=f"{slugify(title)}-{uuid.uuid4().hex[:12]}",
            published_at=now,
            valid_till=valid_till,
            attributes=attributes_document(attributes),
        )

    def create_jobs(
        self,
        session: Session,
        import_job: Mapping[str, Any],
        records: Sequence[ValidatedRecord],
    ) -> List[str]:
        """Add one job per record to ``session`` and flush; returns the new job ids."""
        jobs = [self.build_job(import_job, record) for record in records]
        session.add_all(jobs)
        session.flush()
        return [job.id for job in jobs]


def existing_job_exists(company_id: str, fields: Sequence[str], values: Sequence[Any]) -> bool:
    """True when the company already has a job whose ``fields`` equal ``values`` (case-insensitive)."""
    conditions = [Job.company_id == company_id]
    for field_name, value in zip(fields, values):
        column = getattr(Job, field_name)
        conditions.append(func.lower(column) == str(value).strip().lower())
    with session_scope() as session:
        return session.execute(select(Job.id).where(*conditions).limit(1)).first() is not None


def count_jobs_for_import(import_id: str) -> int:
    with session_scope() as session:
        return session.execute(select(func.count(Job.id)).where(Job.import_id == import_id)).scalar() or 0


def jobs_for_import(import_id: str, limit: Optional[int] = None, offset: int = 0) -> List[Dict[str, Any]]:
    """Jobs created by an import, oldest first."""
    with session_scope() as session:
        query = select(Job).where(Job.import_id == import_id).order_by(Job.created_at, Job.id).offset(offset)
        if limit is not None:
            query = query.limit(limit)
        rows = session.execute(query).scalars().all()
        return [
            {
                "id": row.id,
                "title": row.title,
                "location": row.location,
                "salary_min": row.salary_min,
                "salary_max": row.salary_max,
                "attributes": row.attributes or {},
            }
            for row in rows
        ]
