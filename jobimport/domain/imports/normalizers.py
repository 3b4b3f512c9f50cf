"""
Derived values for imported job rows.

Salary text is accepted the way recruiters type it: ``"30-40 LPA"``,
``"8 LPA"``, ``"₹3,000,000 - 4,000,000"``. LPA (lakhs per annum) figures
are converted to rupees; small bare numbers are read as LPA as well.
"""
import re
from typing import Optional, Tuple

LAKH = 100000
# Bare figures below this are taken to be LPA rather than rupees
LPA_THRESHOLD = 1000
# Upper bound of the salary columns (DECIMAL(10,2))
MAX_SALARY_VALUE = 99999999.99

_RANGE_PATTERN = re.compile(r"(\d+(?:\.\d+)?)\s*(?:-|to|–)\s*(\d+(?:\.\d+)?)", re.IGNORECASE)
_SINGLE_PATTERN = re.compile(r"\d+(?:\.\d+)?")
_LPA_PATTERN = re.compile(r"\blpa\b|\blakhs?\b", re.IGNORECASE)

EMPLOYMENT_TYPE_BY_JOB_TYPE = {
    "full-time": "Full Time, Permanent",
    "part-time": "Part Time, Permanent",
    "contract": "Full Time, Contract",
    "internship": "Internship",
    "freelance": "Freelance",
    "temporary": "Temporary",
}


def _to_rupees(value: float, is_lpa: bool) -> float:
    amount = value * LAKH if is_lpa else value
    return min(amount, MAX_SALARY_VALUE)


def parse_salary_text(text: str) -> Tuple[Optional[float], Optional[float]]:
    """
    Parse free-text salary into ``(salary_min, salary_max)`` in rupees.

    Returns ``(None, None)`` when no figure can be found.
    """
    if not text:
        return None, None
    cleaned = re.sub(r"[₹,$]", "", str(text)).strip()
    is_lpa_text = bool(_LPA_PATTERN.search(cleaned))

    match = _RANGE_PATTERN.search(cleaned)
    if match:
        low, high = float(match.group(1)), float(match.group(2))
        is_lpa = is_lpa_text or (low < LPA_THRESHOLD and high < LPA_THRESHOLD)
        return _to_rupees(low, is_lpa), _to_rupees(high, is_lpa)

    single = _SINGLE_PATTERN.search(cleaned)
    if single:
        value = float(single.group(0))
        is_lpa = is_lpa_text or value < LPA_THRESHOLD
        return _to_rupees(value, is_lpa), None
    return None, None


def format_salary(salary_min: Optional[float], salary_max: Optional[float]) -> str:
    """Display string in LPA, e.g. ``"30-40 LPA"``."""
    if salary_min is None and salary_max is None:
        return ""
    if salary_max is None:
        return f"{salary_min / LAKH:.0f} LPA"
    if salary_min is None:
        return f"up to {salary_max / LAKH:.0f} LPA"
    return f"{salary_min / LAKH:.0f}-{salary_max / LAKH:.0f} LPA"


def employment_type_for(job_type: Optional[str]) -> Optional[str]:
    if not job_type:
        return None
    return EMPLOYMENT_TYPE_BY_JOB_TYPE.get(job_type)


def slugify(value: str, max_length: int = 280) -> str:
    slug = value.lower()
    slug = re.sub(r"[^a-z0-9\s-]", "", slug)
    slug = re.sub(r"[\s-]+", "-", slug).strip("-")
    return slug[:max_length] or "job"
