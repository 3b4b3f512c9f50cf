"""
Validate one parsed row into a normalized job record.

A row either becomes a ``ValidatedRecord`` or a single ``RowError`` that
lists every violation found in it. Nothing from an invalid row is imported.
"""
import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from .config_model import DuplicateKey, ImportConfiguration
from .errors import DuplicateSkip, FieldViolation, RowError
from .job_schema import JOB_FIELDS, fold_choice
from .mapper import ColumnResolution
from .normalizers import parse_salary_text
from .processors.file_processor import RawRow
from .validators import check_rule, coerce_value, is_blank

logger = logging.getLogger(__name__)

# (min field, max field) pairs that must be ordered when both are present
_ORDERED_PAIRS = (
    ("salary_min", "salary_max"),
    ("experience_min", "experience_max"),
)


@dataclass(frozen=True)
class ValidatedRecord:
    row_index: int
    values: Mapping[str, Any]


ValidationResult = Union[ValidatedRecord, RowError]


class RowValidator:
    """Apply mapping, defaults, coercion and rules to rows of one import."""

    def __init__(self, configuration: ImportConfiguration, resolution: ColumnResolution):
        self._configuration = configuration
        self._columns: Tuple[Tuple[str, str], ...] = tuple(resolution.header_to_field.items())

    def _mapped_cells(self, row: RawRow) -> Dict[str, Any]:
        cells: Dict[str, Any] = {}
        for header, field_name in self._columns:
            cell = row.get(header)
            if not is_blank(cell):
                cells[field_name] = cell
        return cells

    @staticmethod
    def _derive_salary(cells: Dict[str, Any]) -> None:
        text = cells.get("salary")
        if text is None or ("salary_min" in cells or "salary_max" in cells):
            return
        salary_min, salary_max = parse_salary_text(str(text))
        if salary_min is not None:
            cells["salary_min"] = salary_min
        if salary_max is not None:
            cells["salary_max"] = salary_max

    def validate(self, row: RawRow) -> ValidationResult:
        cells = self._mapped_cells(row)
        self._derive_salary(cells)

        violations: List[FieldViolation] = []
        values: Dict[str, Any] = {}

        for name, rules in self._configuration.fields.items():
            if name not in cells:
                if rules.required:
                    violations.append(FieldViolation(name, "is required"))
                elif name in self._configuration.defaults:
                    values[name] = self._configuration.defaults[name]
                continue

            try:
                value = coerce_value(cells[name], rules.type, rules.type_rule)
            except ValueError as exc:
                violations.append(FieldViolation(name, str(exc)))
                continue
            if is_blank(value):
                # e.g. a list cell holding only delimiters
                if rules.required:
                    violations.append(FieldViolation(name, "is required"))
                elif name in self._configuration.defaults:
                    values[name] = self._configuration.defaults[name]
                continue

            value = fold_choice(JOB_FIELDS[name], value)
            reason = None
            for check in rules.checks:
                value, reason = check_rule(value, check)
                if reason:
                    break
            if reason:
                violations.append(FieldViolation(name, reason))
                continue
            values[name] = value

        for low_field, high_field in _ORDERED_PAIRS:
            low, high = values.get(low_field), values.get(high_field)
            if low is not None and high is not None and low > high:
                violations.append(FieldViolation(high_field, f"must not be less than {low_field}"))

        if violations:
            return RowError(row.index, violations)
        return ValidatedRecord(row_index=row.index, values=MappingProxyType(values))


ExistingLookup = Callable[[Sequence[str], Sequence[Any]], bool]


def _key_part(value: Any) -> str:
    return str(value).strip().lower()


class DuplicateTracker:
    """
    Detect repeated rows within one file, keyed by ``unique`` rules.

    The first occurrence of a key is imported; later ones are reported as
    ``DuplicateSkip``. Keys with ``against_existing`` also consult stored jobs.
    """

    def __init__(self, keys: Sequence[DuplicateKey], existing_lookup: Optional[ExistingLookup] = None):
        self._keys = tuple(keys)
        self._seen: List[Dict[Tuple[str, ...], int]] = [{} for _ in self._keys]
        self._existing_lookup = existing_lookup

    @property
    def enabled(self) -> bool:
        return bool(self._keys)

    @staticmethod
    def _key_values(record: ValidatedRecord, key: DuplicateKey) -> Optional[Tuple[Any, ...]]:
        values = tuple(record.values.get(name) for name in key.fields)
        if any(is_blank(value) for value in values):
            return None
        return values

    def check(self, record: ValidatedRecord, consult_existing: bool = True) -> Optional[DuplicateSkip]:
        """Return a skip for a duplicate, otherwise remember the record's keys."""
        pending: List[Tuple[int, Tuple[str, ...]]] = []
        for position, key in enumerate(self._keys):
            raw_values = self._key_values(record, key)
            if raw_values is None:
                continue
            normalized = tuple(_key_part(value) for value in raw_values)
            first_row = self._seen[position].get(normalized)
            if first_row is not None:
                return DuplicateSkip(record.row_index, key.fields, first_row)
            if consult_existing and key.against_existing and self._existing_lookup is not None:
                if self._existing_lookup(key.fields, raw_values):
                    return DuplicateSkip(record.row_index, key.fields, None)
            pending.append((position, normalized))

        for position, normalized in pending:
            self._seen[position][normalized] = record.row_index
        return None
