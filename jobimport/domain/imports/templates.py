"""
Downloadable upload templates with the canonical headers and a sample row.
"""
import csv
import io
from typing import Dict, List, Tuple

import pandas as pd

from .job_schema import JOB_FIELDS

TEMPLATE_FIELDS = (
    "title",
    "description",
    "location",
    "city",
    "state",
    "country",
    "job_type",
    "experience_level",
    "experience_min",
    "experience_max",
    "salary",
    "salary_currency",
    "department",
    "skills",
    "education",
    "remote_work",
    "valid_till",
    "contact_email",
)

SAMPLE_ROW: Dict[str, str] = {
    "title": "Backend Engineer",
    "description": "Build and run the services behind our job board.",
    "location": "Bengaluru, India",
    "city": "Bengaluru",
    "state": "Karnataka",
    "country": "India",
    "job_type": "full-time",
    "experience_level": "mid",
    "experience_min": "3",
    "experience_max": "6",
    "salary": "18-25 LPA",
    "salary_currency": "INR",
    "department": "Engineering",
    "skills": "Python, PostgreSQL, Docker",
    "education": "B.Tech",
    "remote_work": "hybrid",
    "valid_till": "2030-12-31",
    "contact_email": "careers@example.com",
}

MEDIA_TYPES = {
    "csv": "text/csv",
    "excel": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}


def template_headers() -> List[str]:
    return [name for name in TEMPLATE_FIELDS if name in JOB_FIELDS]


def build_template(file_type: str) -> Tuple[bytes, str, str]:
    """
    Render the upload template.

    Returns ``(content, media_type, filename)``; raises ValueError for file
    types without a template.
    """
    headers = template_headers()
    sample = [SAMPLE_ROW.get(name, "") for name in headers]

    if file_type == "csv":
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(headers)
        writer.writerow(sample)
        return buffer.getvalue().encode("utf-8"), MEDIA_TYPES["csv"], "job_import_template.csv"

    if file_type == "excel":
        frame = pd.DataFrame([sample], columns=headers)
        buffer = io.BytesIO()
        with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
            frame.to_excel(writer, index=False, sheet_name="Jobs")
        return buffer.getvalue(), MEDIA_TYPES["excel"], "job_import_template.xlsx"

    raise ValueError(f"No template for file type '{file_type}'")
