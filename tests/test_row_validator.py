"""
Tests for row validation, normalization and duplicate detection.
"""
from datetime import date
from types import MappingProxyType

import pytest

from jobimport.domain.imports.config_model import build_configuration
from jobimport.domain.imports.errors import ConfigurationError, DuplicateSkip, RowError
from jobimport.domain.imports.mapper import resolve_columns
from jobimport.domain.imports.processors.file_processor import RawRow
from jobimport.domain.imports.row_validator import DuplicateTracker, RowValidator, ValidatedRecord

HEADERS = ["Title", "Description", "Location", "Salary", "Job Type", "Experience", "Min Experience",
           "Max Experience", "Skills", "Valid Till", "Email"]


def make_validator(headers=HEADERS, **config):
    configuration = build_configuration(**config)
    return RowValidator(configuration, resolve_columns(headers, configuration))


def make_row(index=0, **cells):
    values = {header: "" for header in HEADERS}
    values.update({"Title": "Engineer", "Description": "Builds things", "Location": "Pune"})
    values.update(cells)
    return RawRow(index=index, values=MappingProxyType(values))


def violations(result):
    assert isinstance(result, RowError)
    return {violation.field: violation.reason for violation in result.violations}


class TestRowValidator:
    def test_valid_row_is_normalized(self):
        validator = make_validator()
        result = validator.validate(
            make_row(
                **{
                    "Salary": "30-40 LPA",
                    "Job Type": "Full Time",
                    "Experience": "Fresher",
                    "Skills": "Python, SQL",
                    "Valid Till": "2030-06-30",
                }
            )
        )
        assert isinstance(result, ValidatedRecord)
        values = result.values
        assert values["title"] == "Engineer"
        assert values["salary_min"] == 3000000
        assert values["salary_max"] == 4000000
        assert values["job_type"] == "full-time"
        assert values["experience_level"] == "entry"
        assert values["skills"] == ["Python", "SQL"]
        assert values["valid_till"] == date(2030, 6, 30)
        assert "city" not in values

    def test_missing_required_cell_names_field_and_row(self):
        result = make_validator().validate(make_row(index=7, Location="  "))
        assert result.row_index == 7
        assert violations(result) == {"location": "is required"}

    def test_all_violations_are_aggregated(self):
        result = make_validator(validation_rules={"contact_email": {"kind": "regex", "preset": "email"}}).validate(
            make_row(**{"Title": "", "Job Type": "gig", "Min Experience": "two", "Email": "nope"})
        )
        problems = violations(result)
        assert set(problems) == {"title", "job_type", "experience_min", "contact_email"}
        assert "is not one of" in problems["job_type"]

    def test_defaults_fill_blank_optional_cells(self):
        validator = make_validator(default_values={"job_type": "contract", "department": "Engineering"})
        result = validator.validate(make_row())
        assert result.values["job_type"] == "contract"
        assert result.values["department"] == "Engineering"

    def test_explicit_value_beats_default(self):
        validator = make_validator(default_values={"job_type": "contract"})
        assert validator.validate(make_row(**{"Job Type": "internship"})).values["job_type"] == "internship"

    def test_required_rule_is_not_satisfied_by_default(self):
        with pytest.raises(ConfigurationError):
            make_validator(
                validation_rules={"job_type": {"kind": "required"}},
                default_values={"job_type": "contract"},
            )

    def test_cross_field_ordering(self):
        result = make_validator().validate(make_row(**{"Min Experience": "8", "Max Experience": "3"}))
        assert violations(result) == {"experience_max": "must not be less than experience_min"}

    def test_range_rule_on_derived_salary(self):
        validator = make_validator(validation_rules={"salary_max": {"kind": "range", "max": 2000000}})
        result = validator.validate(make_row(Salary="30-40 LPA"))
        assert violations(result) == {"salary_max": "must be <= 2000000"}

    def test_configured_date_format(self):
        validator = make_validator(
            validation_rules={"valid_till": {"kind": "type", "type": "date", "format": "%d/%m/%Y"}}
        )
        assert validator.validate(make_row(**{"Valid Till": "30/06/2030"})).values["valid_till"] == date(2030, 6, 30)
        result = validator.validate(make_row(**{"Valid Till": "2030-06-30"}))
        assert "valid_till" in violations(result)

    def test_deterministic_for_identical_input(self):
        validator = make_validator()
        row = make_row(**{"Job Type": "gig", "Min Experience": "x"})
        assert validator.validate(row) == validator.validate(row)
        assert make_validator().validate(row) == validator.validate(row)


class TestDuplicateTracker:
    def _records(self, validator, titles):
        return [validator.validate(make_row(index=i, Title=title)) for i, title in enumerate(titles)]

    def test_later_occurrences_are_skipped(self):
        config = build_configuration(validation_rules={"title": {"kind": "unique", "together_with": ["location"]}})
        validator = RowValidator(config, resolve_columns(HEADERS, config))
        tracker = DuplicateTracker(config.duplicate_keys)
        outcomes = [tracker.check(record) for record in self._records(validator, ["A", "B", "a ", "B", "C"])]
        assert outcomes[0] is None and outcomes[1] is None and outcomes[4] is None
        assert isinstance(outcomes[2], DuplicateSkip)
        assert outcomes[2].first_row_index == 0
        assert outcomes[3].first_row_index == 1
        assert outcomes[3].outcome == "skipped"

    def test_existing_jobs_are_consulted(self):
        config = build_configuration(validation_rules={"title": {"kind": "unique", "against_existing": True}})
        validator = RowValidator(config, resolve_columns(HEADERS, config))
        lookups = []

        def existing(fields, values):
            lookups.append((tuple(fields), tuple(values)))
            return values[0] == "Stored"

        tracker = DuplicateTracker(config.duplicate_keys, existing_lookup=existing)
        stored, fresh = self._records(validator, ["Stored", "Fresh"])
        skip = tracker.check(stored)
        assert skip is not None and skip.first_row_index is None
        assert skip.reason == "matches an existing job"
        assert tracker.check(fresh) is None
        assert lookups == [(("title",), ("Stored",)), (("title",), ("Fresh",))]

    def test_replay_does_not_consult_existing(self):
        config = build_configuration(validation_rules={"title": {"kind": "unique", "against_existing": True}})
        validator = RowValidator(config, resolve_columns(HEADERS, config))
        tracker = DuplicateTracker(config.duplicate_keys, existing_lookup=lambda fields, values: True)
        first, again = self._records(validator, ["Same", "Same"])
        assert tracker.check(first, consult_existing=False) is None
        assert tracker.check(again).first_row_index == 0

    def test_disabled_without_unique_rules(self):
        tracker = DuplicateTracker(())
        assert not tracker.enabled
