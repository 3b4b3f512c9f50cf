"""
Canonical job fields that uploaded columns are mapped onto.
"""
import re
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple


FIELD_TYPES = ("string", "integer", "number", "boolean", "date", "list")


@dataclass(frozen=True)
class FieldSpec:
    name: str
    type: str = "string"
    required: bool = False
    choices: Tuple[str, ...] = ()
    max_length: Optional[int] = None
    aliases: Tuple[str, ...] = ()
    synonyms: Dict[str, str] = field(default_factory=dict)
    column_backed: bool = False  # Stored as a column on Job rather than in attributes


JOB_TYPES = ("full-time", "part-time", "contract", "internship", "freelance", "temporary")
EXPERIENCE_LEVELS = ("entry", "junior", "mid", "senior", "lead", "executive")

_FIELDS = (
    FieldSpec("title", required=True, max_length=255, column_backed=True,
              aliases=("job title", "position", "position title", "role title", "opening", "job name")),
    FieldSpec("description", required=True, column_backed=True,
              aliases=("job description", "details", "summary", "jd", "about the role")),
    FieldSpec("location", required=True, max_length=255, column_backed=True,
              aliases=("job location", "work location", "office location", "place")),
    FieldSpec("city", max_length=120, column_backed=True, aliases=("town",)),
    FieldSpec("state", max_length=120, column_backed=True, aliases=("province", "region state")),
    FieldSpec("country", max_length=120, column_backed=True, aliases=("nation",)),
    FieldSpec("region", choices=("india", "gulf", "other"), aliases=("market",)),
    FieldSpec("job_type", choices=JOB_TYPES, column_backed=True,
              aliases=("type", "job type", "employment category", "contract type"),
              synonyms={"fulltime": "full-time", "full time": "full-time", "parttime": "part-time",
                        "part time": "part-time", "intern": "internship", "temp": "temporary"}),
    FieldSpec("employment_type", max_length=120, aliases=("employment",)),
    FieldSpec("experience_level", choices=EXPERIENCE_LEVELS,
              aliases=("experience", "seniority", "level", "experience band"),
              synonyms={"fresher": "entry", "graduate": "entry", "intermediate": "mid", "principal": "lead"}),
    FieldSpec("experience_min", type="integer", aliases=("min experience", "minimum experience", "experience from")),
    FieldSpec("experience_max", type="integer", aliases=("max experience", "maximum experience", "experience to")),
    FieldSpec("salary", max_length=120, aliases=("salary range", "ctc", "compensation", "pay")),
    FieldSpec("salary_min", type="number", aliases=("min salary", "minimum salary", "salary from")),
    FieldSpec("salary_max", type="number", aliases=("max salary", "maximum salary", "salary to")),
    FieldSpec("salary_currency", max_length=8, aliases=("currency",)),
    FieldSpec("salary_period", choices=("yearly", "monthly", "hourly"), aliases=("pay period",),
              synonyms={"annual": "yearly", "annually": "yearly", "per month": "monthly", "per hour": "hourly"}),
    FieldSpec("department", max_length=255, column_backed=True, aliases=("team", "function")),
    FieldSpec("category", max_length=255, aliases=("job category",)),
    FieldSpec("industry_type", max_length=255, aliases=("industry",)),
    FieldSpec("role_category", max_length=255),
    FieldSpec("role", max_length=255, aliases=("designation",)),
    FieldSpec("skills", type="list", aliases=("key skills", "skill set", "technologies")),
    FieldSpec("requirements", aliases=("qualifications",)),
    FieldSpec("responsibilities", aliases=("duties",)),
    FieldSpec("education", max_length=255, aliases=("degree", "education level")),
    FieldSpec("benefits", type="list", aliases=("perks",)),
    FieldSpec("tags", type="list", aliases=("keywords", "labels")),
    FieldSpec("remote_work", choices=("on-site", "remote", "hybrid"), aliases=("work mode", "remote", "workplace type"),
              synonyms={"onsite": "on-site", "office": "on-site", "wfh": "remote", "work from home": "remote"}),
    FieldSpec("shift_timing", choices=("day", "night", "rotating"), aliases=("shift",)),
    FieldSpec("is_urgent", type="boolean", aliases=("urgent",)),
    FieldSpec("is_featured", type="boolean", aliases=("featured",)),
    FieldSpec("is_premium", type="boolean", aliases=("premium",)),
    FieldSpec("valid_till", type="date", aliases=("expiry date", "expires on", "valid until")),
    FieldSpec("application_deadline", type="date", aliases=("deadline", "apply by", "last date")),
    FieldSpec("posting_type", choices=("company", "consultancy"), aliases=("posted by",)),
    FieldSpec("company_name", max_length=255, aliases=("company", "employer", "employer name")),
    FieldSpec("hiring_company_name", max_length=255, aliases=("client company", "client")),
    FieldSpec("contact_email", max_length=255, aliases=("email", "apply email", "recruiter email")),
)

JOB_FIELDS: Dict[str, FieldSpec] = {spec.name: spec for spec in _FIELDS}


def normalize_token(value: str) -> str:
    """Reduce a header or field name to lower-case alphanumerics for loose matching."""
    return re.sub(r"[^a-z0-9]", "", str(value).lower())


_FIELD_BY_TOKEN: Dict[str, str] = {normalize_token(name): name for name in JOB_FIELDS}

# Header alias table: normalized token -> canonical field
ALIAS_TABLE: Dict[str, str] = {}
for _spec in _FIELDS:
    for _alias in _spec.aliases:
        ALIAS_TABLE.setdefault(normalize_token(_alias), _spec.name)
ALIAS_TABLE.update(_FIELD_BY_TOKEN)


def canonical_field_name(name: str) -> Optional[str]:
    """
    Resolve a field name written in configuration documents.

    Accepts the canonical snake_case name or the camelCase spelling used by
    the job posting templates (``salaryMin``, ``jobType``).
    """
    if name in JOB_FIELDS:
        return name
    return _FIELD_BY_TOKEN.get(normalize_token(name))


def fold_choice(spec: FieldSpec, value):
    """Map a synonym or differently-cased spelling onto the canonical choice."""
    if not spec.choices or not isinstance(value, str):
        return value
    token = value.strip().lower()
    if token in spec.choices:
        return token
    return spec.synonyms.get(token, value)
