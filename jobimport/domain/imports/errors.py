"""
Error taxonomy for the bulk job import pipeline.

File-level and job-level errors are fatal: the import moves straight to
``failed``. Row-level outcomes are recoverable and only move counters.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence


class ImportPipelineError(Exception):
    """Base exception for every error the import pipeline reports."""

    code = "import_error"
    fatal = True

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def summary(self) -> str:
        """One-line description stored as the import's ``last_error``."""
        return f"{self.code}: {self.message}"


class ConfigurationError(ImportPipelineError):
    """Mapping, validation or default documents are malformed or inconsistent."""

    code = "configuration_error"

    def __init__(self, problems: Sequence[str]):
        self.problems = list(problems)
        super().__init__("; ".join(self.problems) or "Invalid import configuration")


class ParseError(ImportPipelineError):
    """The uploaded file cannot be read as a table of rows."""

    code = "parse_error"

    def __init__(self, message: str, row_index: Optional[int] = None):
        self.row_index = row_index
        super().__init__(message)


class MappingError(ImportPipelineError):
    """Required fields cannot be found among the file's headers."""

    code = "mapping_error"

    def __init__(self, missing_fields: Sequence[str], headers: Sequence[str]):
        self.missing_fields = list(missing_fields)
        self.headers = list(headers)
        super().__init__(
            "Required fields have no matching column: "
            + ", ".join(self.missing_fields)
            + f" (file headers: {', '.join(self.headers) or 'none'})"
        )


class ImportTimeoutError(ImportPipelineError):
    """The import ran longer than the allowed wall-clock duration."""

    code = "timeout"

    def __init__(self, max_duration_seconds: int):
        self.max_duration_seconds = max_duration_seconds
        super().__init__(f"Import exceeded the maximum duration of {max_duration_seconds}s")


class PersistenceError(ImportPipelineError):
    """A batch could not be committed; retried before its rows are failed."""

    code = "persistence_error"
    fatal = False

    def __init__(self, message: str, attempts: int = 0):
        self.attempts = attempts
        super().__init__(message)


class StorageDownloadError(ImportPipelineError):
    """The uploaded file could not be fetched from the blob store."""

    code = "file_unavailable"


@dataclass(frozen=True)
class FieldViolation:
    field: str
    reason: str

    def to_dict(self) -> Dict[str, str]:
        return {"field": self.field, "reason": self.reason}


class RowError(ImportPipelineError):
    """All validation failures of a single row, aggregated."""

    code = "row_error"
    fatal = False
    outcome = "failed"

    def __init__(self, row_index: int, violations: Sequence[FieldViolation]):
        self.row_index = row_index
        self.violations = list(violations)
        detail = "; ".join(f"{v.field}: {v.reason}" for v in self.violations)
        super().__init__(f"Row {row_index}: {detail}")

    @property
    def fields(self) -> List[str]:
        return [violation.field for violation in self.violations]

    def to_payload(self) -> List[Dict[str, Any]]:
        return [violation.to_dict() for violation in self.violations]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RowError):
            return NotImplemented
        return self.row_index == other.row_index and self.violations == other.violations

    def __hash__(self) -> int:
        return hash((self.row_index, tuple(self.violations)))


class DuplicateSkip(ImportPipelineError):
    """Row repeats the duplicate key of an earlier row or of a stored job."""

    code = "duplicate"
    fatal = False
    outcome = "skipped"

    def __init__(self, row_index: int, key_fields: Sequence[str], first_row_index: Optional[int] = None):
        self.row_index = row_index
        self.key_fields = list(key_fields)
        self.first_row_index = first_row_index
        if first_row_index is None:
            reason = "matches an existing job"
        else:
            reason = f"duplicate of row {first_row_index}"
        self.reason = reason
        super().__init__(f"Row {row_index}: {reason} on {', '.join(self.key_fields)}")

    def to_payload(self) -> List[Dict[str, Any]]:
        return [{"field": "+".join(self.key_fields), "reason": self.reason}]


# Store and API level errors


class ImportInProgressError(ImportPipelineError):
    """The company already has an import being validated or processed."""

    code = "import_in_progress"

    def __init__(self, company_id: str, active_import_id: str):
        self.company_id = company_id
        self.active_import_id = active_import_id
        super().__init__(f"Import {active_import_id} is already running for company {company_id}")


class AlreadyClaimedError(ImportPipelineError):
    """Another worker holds the import; the caller must not retry it."""

    code = "already_claimed"

    def __init__(self, import_id: str, status: Optional[str] = None):
        self.import_id = import_id
        self.status = status
        super().__init__(f"Import {import_id} is not claimable (status={status})")


class ImportJobNotFoundError(ImportPipelineError):
    code = "not_found"

    def __init__(self, import_id: str):
        self.import_id = import_id
        super().__init__(f"Import {import_id} not found")


class InvalidStateTransitionError(ImportPipelineError):
    code = "invalid_state"

    def __init__(self, import_id: str, status: str, action: str):
        self.import_id = import_id
        self.status = status
        self.action = action
        super().__init__(f"Cannot {action} import {import_id} in status '{status}'")


class StaleJobStateError(ImportPipelineError):
    """The import left the state the caller expected (e.g. timed out meanwhile)."""

    code = "stale_state"

    def __init__(self, import_id: str, expected_status: str):
        self.import_id = import_id
        self.expected_status = expected_status
        super().__init__(f"Import {import_id} is no longer '{expected_status}'")
