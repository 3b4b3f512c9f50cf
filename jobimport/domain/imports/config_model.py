"""
Typed configuration for a bulk job import.

An import carries three JSON documents: ``mapping_config`` (file header ->
canonical field), ``validation_rules`` (field -> rule descriptor or list of
descriptors) and ``default_values`` (field -> value used when an optional
cell is blank). ``build_configuration`` turns them into an
``ImportConfiguration`` or raises ``ConfigurationError`` listing every
problem found, before any file is read.

Rule descriptors are tagged by ``kind``::

    {"kind": "required"}
    {"kind": "type", "type": "date", "format": "%d/%m/%Y"}
    {"kind": "range", "min": 0, "max": 10000000}
    {"kind": "enum", "values": ["full-time", "contract"]}
    {"kind": "length", "max": 120}
    {"kind": "regex", "preset": "email"} / {"kind": "regex", "pattern": "^REQ-\\d+$"}
    {"kind": "unique", "together_with": ["location"], "against_existing": true}
"""
import re
from typing import Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator
from typing_extensions import Annotated

from .errors import ConfigurationError
from .job_schema import JOB_FIELDS, FieldSpec, canonical_field_name, fold_choice
from .validators import PRESET_PATTERNS, check_rule, coerce_value, is_blank


class _Rule(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class RequiredRule(_Rule):
    kind: Literal["required"]


class TypeRule(_Rule):
    kind: Literal["type"] = "type"
    type: Literal["string", "integer", "number", "boolean", "date", "list"]
    format: Optional[str] = None  # strptime format for dates
    decimal_separator: str = "."
    thousands_separator: Optional[str] = None
    delimiter: str = ","  # list separator

    @model_validator(mode="after")
    def _check_separators(self):
        if len(self.decimal_separator) != 1:
            raise ValueError("decimal_separator must be a single character")
        if self.thousands_separator is not None and self.thousands_separator == self.decimal_separator:
            raise ValueError("thousands_separator must differ from decimal_separator")
        if self.format is not None and "%" not in self.format:
            raise ValueError(f"date format '{self.format}' has no strftime directives")
        if not self.delimiter:
            raise ValueError("delimiter cannot be empty")
        return self


class RangeRule(_Rule):
    kind: Literal["range"]
    min: Optional[float] = None
    max: Optional[float] = None

    @model_validator(mode="after")
    def _check_bounds(self):
        if self.min is None and self.max is None:
            raise ValueError("range rule needs min and/or max")
        if self.min is not None and self.max is not None and self.min > self.max:
            raise ValueError("range min is greater than max")
        return self


class EnumRule(_Rule):
    kind: Literal["enum"]
    values: List[str] = Field(min_length=1)
    case_sensitive: bool = False


class LengthRule(_Rule):
    kind: Literal["length"]
    min: Optional[int] = Field(default=None, ge=0)
    max: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _check_bounds(self):
        if self.min is None and self.max is None:
            raise ValueError("length rule needs min and/or max")
        if self.min is not None and self.max is not None and self.min > self.max:
            raise ValueError("length min is greater than max")
        return self


class RegexRule(_Rule):
    kind: Literal["regex"]
    pattern: Optional[str] = None
    preset: Optional[str] = None
    message: Optional[str] = None

    @model_validator(mode="after")
    def _check_pattern(self):
        if (self.pattern is None) == (self.preset is None):
            raise ValueError("regex rule needs exactly one of pattern or preset")
        if self.preset is not None and self.preset not in PRESET_PATTERNS:
            raise ValueError(f"unknown regex preset '{self.preset}'")
        if self.pattern is not None:
            try:
                re.compile(self.pattern)
            except re.error as exc:
                raise ValueError(f"invalid regex '{self.pattern}': {exc}") from exc
        return self


class UniqueRule(_Rule):
    kind: Literal["unique"]
    together_with: List[str] = Field(default_factory=list)
    against_existing: bool = False


RuleDescriptor = Annotated[
    Union[RequiredRule, TypeRule, RangeRule, EnumRule, LengthRule, RegexRule, UniqueRule],
    Field(discriminator="kind"),
]
_RULES_ADAPTER = TypeAdapter(List[RuleDescriptor])

# Rule kinds and the field types they apply to
_RULE_FIELD_TYPES = {
    "range": ("integer", "number"),
    "enum": ("string",),
    "length": ("string",),
    "regex": ("string",),
}


class FieldRules(BaseModel):
    """Effective rules for one canonical field: schema baseline plus tenant rules."""
    model_config = ConfigDict(frozen=True)

    name: str
    type: str
    required: bool = False
    type_rule: TypeRule
    checks: Tuple[Union[RangeRule, EnumRule, LengthRule, RegexRule], ...] = ()


class DuplicateKey(BaseModel):
    model_config = ConfigDict(frozen=True)

    fields: Tuple[str, ...]
    against_existing: bool = False


class ImportConfiguration(BaseModel):
    """Typed, validated view of an import's mapping/validation/default documents."""
    model_config = ConfigDict(frozen=True)

    header_mapping: Dict[str, str] = Field(default_factory=dict)  # lower-cased header -> field
    fields: Dict[str, FieldRules]
    defaults: Dict[str, Any] = Field(default_factory=dict)
    duplicate_keys: Tuple[DuplicateKey, ...] = ()

    @property
    def required_fields(self) -> List[str]:
        return [name for name, rules in self.fields.items() if rules.required]


def _normalize_header(header: str) -> str:
    return str(header).strip().lower()


def _baseline_checks(spec: FieldSpec) -> List[Union[EnumRule, LengthRule]]:
    checks: List[Union[EnumRule, LengthRule]] = []
    if spec.choices:
        checks.append(EnumRule(kind="enum", values=list(spec.choices)))
    if spec.max_length:
        checks.append(LengthRule(kind="length", max=spec.max_length))
    return checks


def _parse_mapping(mapping_config: Dict[str, Any], problems: List[str]) -> Dict[str, str]:
    header_mapping: Dict[str, str] = {}
    for header, target in (mapping_config or {}).items():
        if not isinstance(target, str) or not str(header).strip():
            problems.append(f"mapping for header '{header}' must map a non-blank header to a field name")
            continue
        field_name = canonical_field_name(target)
        if field_name is None:
            problems.append(f"mapping for header '{header}' targets unknown field '{target}'")
            continue
        key = _normalize_header(header)
        previous = header_mapping.get(key)
        if previous is not None and previous != field_name:
            problems.append(
                f"header '{header}' is mapped to both '{previous}' and '{field_name}' (headers match case-insensitively)"
            )
            continue
        header_mapping[key] = field_name
    return header_mapping


def _parse_rules(validation_rules: Dict[str, Any], problems: List[str]) -> Dict[str, List[Any]]:
    parsed: Dict[str, List[Any]] = {}
    for raw_field, descriptors in (validation_rules or {}).items():
        field_name = canonical_field_name(raw_field)
        if field_name is None:
            problems.append(f"validation rule references unknown field '{raw_field}'")
            continue
        if isinstance(descriptors, dict):
            descriptors = [descriptors]
        if not isinstance(descriptors, list):
            problems.append(f"rules for '{raw_field}' must be a rule object or a list of rule objects")
            continue
        try:
            rules = _RULES_ADAPTER.validate_python(descriptors)
        except ValidationError as exc:
            for error in exc.errors():
                location = ".".join(str(part) for part in error.get("loc", ()))
                problems.append(f"invalid rule for '{raw_field}' ({location}): {error.get('msg')}")
            continue
        parsed.setdefault(field_name, []).extend(rules)
    return parsed


def _build_field_rules(
    spec: FieldSpec,
    tenant_rules: List[Any],
    problems: List[str],
) -> FieldRules:
    required = spec.required
    type_rule = TypeRule(type=spec.type)
    checks: List[Any] = _baseline_checks(spec)

    for rule in tenant_rules:
        if rule.kind == "required":
            required = True
        elif rule.kind == "type":
            if rule.type != spec.type:
                problems.append(f"field '{spec.name}' is a {spec.type} field; a '{rule.type}' type rule does not apply")
            else:
                type_rule = rule
        elif rule.kind == "unique":
            continue
        else:
            allowed_types = _RULE_FIELD_TYPES[rule.kind]
            if spec.type not in allowed_types:
                problems.append(f"'{rule.kind}' rule cannot be applied to {spec.type} field '{spec.name}'")
                continue
            if rule.kind == "enum" and spec.choices:
                unknown = [value for value in rule.values if value.lower() not in spec.choices]
                if unknown:
                    problems.append(
                        f"enum rule for '{spec.name}' allows values outside the platform choices: {', '.join(unknown)}"
                    )
                    continue
            checks.append(rule)

    return FieldRules(
        name=spec.name,
        type=spec.type,
        required=required,
        type_rule=type_rule,
        checks=tuple(checks),
    )


def _build_duplicate_keys(rules_by_field: Dict[str, List[Any]], problems: List[str]) -> List[DuplicateKey]:
    keys: List[DuplicateKey] = []
    for field_name, rules in rules_by_field.items():
        for rule in rules:
            if rule.kind != "unique":
                continue
            key_fields = [field_name]
            for other in rule.together_with:
                other_name = canonical_field_name(other)
                if other_name is None:
                    problems.append(f"unique rule on '{field_name}' references unknown field '{other}'")
                    break
                if other_name not in key_fields:
                    key_fields.append(other_name)
            else:
                if rule.against_existing:
                    not_stored = [name for name in key_fields if not JOB_FIELDS[name].column_backed]
                    if not_stored:
                        problems.append(
                            "unique rule with against_existing can only use stored job columns; "
                            f"not stored: {', '.join(not_stored)}"
                        )
                        continue
                keys.append(DuplicateKey(fields=tuple(key_fields), against_existing=rule.against_existing))
    return keys


def _check_default(field_rules: FieldRules, value: Any, problems: List[str]) -> Any:
    try:
        coerced = coerce_value(value, field_rules.type, field_rules.type_rule)
    except ValueError as exc:
        problems.append(f"default value for '{field_rules.name}' is invalid: {exc}")
        return None
    coerced = fold_choice(JOB_FIELDS[field_rules.name], coerced)
    for rule in field_rules.checks:
        coerced, reason = check_rule(coerced, rule)
        if reason:
            problems.append(f"default value for '{field_rules.name}' violates its own rule: {reason}")
            return None
    return coerced


def build_configuration(
    mapping_config: Optional[Dict[str, Any]] = None,
    validation_rules: Optional[Dict[str, Any]] = None,
    default_values: Optional[Dict[str, Any]] = None,
) -> ImportConfiguration:
    """
    Validate the three configuration documents of an import.

    Raises:
        ConfigurationError: listing every problem found
    """
    problems: List[str] = []
    for name, document in (
        ("mapping_config", mapping_config),
        ("validation_rules", validation_rules),
        ("default_values", default_values),
    ):
        if document is not None and not isinstance(document, dict):
            problems.append(f"{name} must be an object")
    if problems:
        raise ConfigurationError(problems)

    header_mapping = _parse_mapping(mapping_config or {}, problems)
    rules_by_field = _parse_rules(validation_rules or {}, problems)

    fields: Dict[str, FieldRules] = {
        name: _build_field_rules(spec, rules_by_field.get(name, []), problems)
        for name, spec in JOB_FIELDS.items()
    }
    duplicate_keys = _build_duplicate_keys(rules_by_field, problems)

    defaults: Dict[str, Any] = {}
    for raw_field, value in (default_values or {}).items():
        field_name = canonical_field_name(raw_field)
        if field_name is None:
            problems.append(f"default value references unknown field '{raw_field}'")
            continue
        field_rules = fields[field_name]
        if field_rules.required:
            problems.append(f"field '{field_name}' is required and cannot have a default value")
            continue
        if is_blank(value):
            continue
        coerced = _check_default(field_rules, value, problems)
        if coerced is not None:
            defaults[field_name] = coerced

    if problems:
        raise ConfigurationError(problems)

    return ImportConfiguration(
        header_mapping=header_mapping,
        fields=fields,
        defaults=defaults,
        duplicate_keys=tuple(duplicate_keys),
    )
