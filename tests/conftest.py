"""
Pytest configuration and fixtures for the bulk import tests.

Every test gets its own SQLite database file, so imports, row errors and
created jobs never leak between tests.
"""
import csv
import io
import os

# The app lifespan must not bootstrap a real database or start workers
os.environ["SKIP_DB_INIT"] = "1"

import pytest

from jobimport.db.session import configure_engine, create_tables
from jobimport.domain.imports.jobs import claim_import_job, create_import_job


@pytest.fixture(autouse=True)
def isolated_database(tmp_path):
    engine = configure_engine(f"sqlite:///{tmp_path / 'imports.db'}")
    create_tables()
    yield engine
    engine.dispose()


def make_csv(rows, headers=("title", "description", "location")) -> bytes:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(headers)
    for row in rows:
        writer.writerow(row)
    return buffer.getvalue().encode("utf-8")


def job_rows(count, start=0):
    return [
        (f"Engineer {index}", f"Build things, role {index}", "Pune")
        for index in range(start, start + count)
    ]


@pytest.fixture
def csv_bytes():
    return make_csv


@pytest.fixture
def new_import():
    """Factory creating a pending import for a company."""

    def _create(company_id="acme", **overrides):
        params = {
            "company_id": company_id,
            "created_by": "user-1",
            "file_url": "s3://uploads/jobs.csv",
            "file_size": 1024,
            "file_type": "csv",
        }
        params.update(overrides)
        return create_import_job(**params)

    return _create


@pytest.fixture
def claimed_import(new_import):
    """Factory creating an import already claimed by a test worker (``validating``)."""

    def _create(company_id="acme", **overrides):
        job = new_import(company_id=company_id, **overrides)
        return claim_import_job(job["id"], "test-worker")

    return _create
