"""
Tests for resolving file headers onto canonical job fields.
"""
import pytest

from jobimport.domain.imports.config_model import build_configuration
from jobimport.domain.imports.errors import MappingError
from jobimport.domain.imports.mapper import resolve_columns, suggest_mapping


class TestSuggestMapping:
    def test_aliases_and_canonical_names(self):
        resolution = suggest_mapping(["Job Title", "JD", "work_location", "CTC", "Notes"])
        assert resolution.header_to_field == {
            "Job Title": "title",
            "JD": "description",
            "work_location": "location",
            "CTC": "salary",
        }
        assert resolution.unmapped_headers == ["Notes"]
        assert resolution.sources["Job Title"] == "alias"

    def test_configured_mapping_is_case_insensitive_and_trimmed(self):
        config = build_configuration(mapping_config={"Opening Name": "title"})
        resolution = suggest_mapping(["  opening name ", "Description", "Location"], config)
        assert resolution.header_to_field["  opening name "] == "title"
        assert resolution.sources["  opening name "] == "config"
        assert resolution.missing_required == []

    def test_configured_mapping_beats_alias_regardless_of_order(self):
        config = build_configuration(mapping_config={"Role Name": "title"})
        resolution = suggest_mapping(["Title", "Role Name"], config)
        assert resolution.header_to_field == {"Role Name": "title"}
        assert resolution.conflicting_headers == {"Title": "title"}
        assert "Title" in resolution.unmapped_headers

    def test_first_alias_claim_wins(self):
        resolution = suggest_mapping(["Position", "Job Title"])
        assert resolution.header_to_field == {"Position": "title"}
        assert resolution.conflicting_headers == {"Job Title": "title"}

    def test_missing_required_defaults_to_baseline(self):
        resolution = suggest_mapping(["Title"], build_configuration())
        assert resolution.missing_required == ["description", "location"]

    def test_without_configuration_nothing_is_required(self):
        assert suggest_mapping(["Title"]).missing_required == []


class TestResolveColumns:
    def test_missing_required_raises_once(self):
        config = build_configuration()
        with pytest.raises(MappingError) as exc_info:
            resolve_columns(["Title", "Salary"], config)
        assert exc_info.value.missing_fields == ["description", "location"]
        assert exc_info.value.headers == ["Title", "Salary"]
        assert exc_info.value.fatal is True

    def test_rule_made_required_field_must_be_mapped(self):
        config = build_configuration(validation_rules={"department": {"kind": "required"}})
        with pytest.raises(MappingError, match="department"):
            resolve_columns(["Title", "Description", "Location"], config)

    def test_complete_header(self):
        config = build_configuration()
        resolution = resolve_columns(["Title", "Description", "Location", "Skills"], config)
        assert resolution.field_to_header["skills"] == "Skills"
