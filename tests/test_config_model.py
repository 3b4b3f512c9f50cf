"""
Tests for building typed import configurations from the JSON documents.
"""
import pytest

from jobimport.domain.imports.config_model import (
    EnumRule,
    RangeRule,
    RegexRule,
    build_configuration,
)
from jobimport.domain.imports.errors import ConfigurationError


class TestDefaults:
    def test_empty_documents_give_baseline_schema(self):
        config = build_configuration()
        assert config.required_fields == ["title", "description", "location"]
        assert config.header_mapping == {}
        assert config.duplicate_keys == ()

    def test_none_and_empty_dicts_are_equivalent(self):
        assert build_configuration(None, None, None) == build_configuration({}, {}, {})


class TestRuleParsing:
    def test_single_descriptor_and_list_are_accepted(self):
        config = build_configuration(
            validation_rules={
                "salary_min": {"kind": "range", "min": 0},
                "contact_email": [{"kind": "regex", "preset": "email"}, {"kind": "length", "max": 80}],
            }
        )
        salary_checks = config.fields["salary_min"].checks
        assert any(isinstance(rule, RangeRule) and rule.min == 0 for rule in salary_checks)
        email_checks = config.fields["contact_email"].checks
        assert any(isinstance(rule, RegexRule) and rule.preset == "email" for rule in email_checks)

    def test_camel_case_field_names(self):
        config = build_configuration(validation_rules={"salaryMin": {"kind": "range", "min": 1}})
        assert any(isinstance(rule, RangeRule) for rule in config.fields["salary_min"].checks)

    def test_required_rule_makes_optional_field_required(self):
        config = build_configuration(validation_rules={"department": {"kind": "required"}})
        assert "department" in config.required_fields

    def test_type_rule_keeps_date_format(self):
        config = build_configuration(
            validation_rules={"valid_till": {"kind": "type", "type": "date", "format": "%d/%m/%Y"}}
        )
        assert config.fields["valid_till"].type_rule.format == "%d/%m/%Y"

    def test_enum_rule_narrows_platform_choices(self):
        config = build_configuration(
            validation_rules={"job_type": {"kind": "enum", "values": ["full-time", "contract"]}}
        )
        enums = [rule for rule in config.fields["job_type"].checks if isinstance(rule, EnumRule)]
        assert [rule.values for rule in enums][-1] == ["full-time", "contract"]

    def test_unique_rule_builds_duplicate_key(self):
        config = build_configuration(
            validation_rules={"title": {"kind": "unique", "together_with": ["location"], "against_existing": True}}
        )
        assert len(config.duplicate_keys) == 1
        key = config.duplicate_keys[0]
        assert key.fields == ("title", "location")
        assert key.against_existing is True


class TestConfigurationErrors:
    @pytest.mark.parametrize(
        "rules, fragment",
        [
            ({"favourite_colour": {"kind": "required"}}, "unknown field"),
            ({"title": {"kind": "bogus"}}, "invalid rule"),
            ({"title": {"kind": "regex", "pattern": "("}}, "invalid regex"),
            ({"title": {"kind": "regex", "preset": "nope"}}, "unknown regex preset"),
            ({"title": {"kind": "range", "min": 1}}, "cannot be applied"),
            ({"salary_min": {"kind": "length", "max": 3}}, "cannot be applied"),
            ({"salary_min": {"kind": "type", "type": "date"}}, "does not apply"),
            ({"salary_min": {"kind": "range", "min": 10, "max": 1}}, "greater than max"),
            ({"job_type": {"kind": "enum", "values": ["gig"]}}, "outside the platform choices"),
            ({"skills": {"kind": "unique", "against_existing": True}}, "stored job columns"),
            ({"title": {"kind": "unique", "together_with": ["nope"]}}, "unknown field"),
            ({"title": "required"}, "must be a rule object"),
        ],
    )
    def test_invalid_rules(self, rules, fragment):
        with pytest.raises(ConfigurationError) as exc_info:
            build_configuration(validation_rules=rules)
        assert any(fragment in problem for problem in exc_info.value.problems)

    def test_mapping_to_unknown_field(self):
        with pytest.raises(ConfigurationError, match="unknown field 'wage'"):
            build_configuration(mapping_config={"Pay": "wage"})

    def test_mapping_headers_colliding_case_insensitively(self):
        with pytest.raises(ConfigurationError, match="mapped to both"):
            build_configuration(mapping_config={"Role": "title", "ROLE": "description"})

    def test_default_for_required_field_is_rejected(self):
        with pytest.raises(ConfigurationError, match="required and cannot have a default"):
            build_configuration(default_values={"location": "Remote"})

    def test_default_violating_its_own_rule(self):
        with pytest.raises(ConfigurationError, match="violates its own rule"):
            build_configuration(
                validation_rules={"salary_min": {"kind": "range", "min": 0}},
                default_values={"salary_min": -5},
            )

    def test_default_with_wrong_type(self):
        with pytest.raises(ConfigurationError, match="default value for 'experience_min' is invalid"):
            build_configuration(default_values={"experience_min": "lots"})

    def test_all_problems_are_reported_together(self):
        with pytest.raises(ConfigurationError) as exc_info:
            build_configuration(
                mapping_config={"Pay": "wage"},
                validation_rules={"nope": {"kind": "required"}},
                default_values={"title": "x"},
            )
        assert len(exc_info.value.problems) == 3

    def test_non_object_document(self):
        with pytest.raises(ConfigurationError, match="validation_rules must be an object"):
            build_configuration(validation_rules=["title"])


class TestDefaultValues:
    def test_defaults_are_coerced_and_folded(self):
        config = build_configuration(
            default_values={"experience_min": "2", "job_type": "Full Time", "skills": "python, sql"}
        )
        assert config.defaults["experience_min"] == 2
        assert config.defaults["job_type"] == "full-time"
        assert config.defaults["skills"] == ["python", "sql"]

    def test_blank_defaults_are_ignored(self):
        config = build_configuration(default_values={"department": "  "})
        assert "department" not in config.defaults
