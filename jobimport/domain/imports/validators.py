"""
Value-level validation for imported job fields.

This module provides the preset regex catalogue that ``regex`` rules can
reference by name, locale-agnostic coercion of cell text into typed values,
and the checks behind ``range``, ``enum``, ``length`` and ``regex`` rules.
Rules are dispatched on their ``kind`` attribute.
"""

import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, List, Optional, Tuple


# Preset regex patterns for common validations
PRESET_PATTERNS = {
    # Contact & Communication
    "email": r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$",
    "phone": r"^\+?[\d\s\-\.\(\)]{7,20}$",  # Loose matching - default
    "phone_international": r"^\+[1-9]\d{6,14}$",  # E.164 format

    # Locations
    "postal_code": r"^[A-Za-z0-9\s-]{3,10}$",
    "postal_code_in": r"^[1-9]\d{5}$",
    "postal_code_us": r"^\d{5}(-\d{4})?$",

    # Web
    "url": r"^https?://[^\s/$.?#].[^\s]*$",
    "domain": r"^(?:[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)+[a-zA-Z]{2,}$",

    # Data Formats
    "date_iso": r"^\d{4}-\d{2}-\d{2}$",
    "currency_code": r"^[A-Z]{3}$",
    "slug": r"^[a-z0-9]+(?:-[a-z0-9]+)*$",

    # Business IDs
    "alphanumeric_id": r"^[A-Za-z0-9]+$",
    "requisition_id": r"^[A-Za-z0-9][A-Za-z0-9\-_/]{0,63}$",
}


# Human-readable descriptions for each preset
PRESET_DESCRIPTIONS = {
    "email": "Standard email format (permissive)",
    "phone": "Loose phone number (7-20 digits with any separators)",
    "phone_international": "E.164 international format (+country code)",
    "postal_code": "Postal code (alphanumeric)",
    "postal_code_in": "Indian PIN code (6 digits)",
    "postal_code_us": "US ZIP code (5 or 9 digits)",
    "url": "HTTP/HTTPS URL",
    "domain": "Domain name",
    "date_iso": "ISO 8601 date (YYYY-MM-DD)",
    "currency_code": "ISO 4217 currency code",
    "slug": "URL-safe slug (lowercase, hyphens)",
    "alphanumeric_id": "Alphanumeric identifier",
    "requisition_id": "Requisition or reference number",
}

DEFAULT_DATE_FORMAT = "%Y-%m-%d"

_TRUE_VALUES = {"true", "yes", "y", "1"}
_FALSE_VALUES = {"false", "no", "n", "0"}
_NUMBER_PATTERN = re.compile(r"[+-]?\d+(\.\d+)?")


def get_preset_pattern(preset_name: str) -> Optional[str]:
    """
    Get the regex pattern for a preset validator.

    Args:
        preset_name: Name of the preset validator

    Returns:
        Regex pattern string or None if preset not found
    """
    return PRESET_PATTERNS.get(preset_name)


def get_preset_description(preset_name: str) -> Optional[str]:
    """Get the human-readable description for a preset validator."""
    return PRESET_DESCRIPTIONS.get(preset_name)


def list_available_presets() -> dict:
    """Get all available preset validators with their descriptions."""
    return PRESET_DESCRIPTIONS.copy()


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and value != value:  # NaN from spreadsheet readers
        return True
    if isinstance(value, (list, tuple)):
        return len(value) == 0
    return isinstance(value, str) and not value.strip()


def parse_decimal(
    raw: Any,
    *,
    decimal_separator: str = ".",
    thousands_separator: Optional[str] = None,
) -> Decimal:
    """
    Parse a number using only the separators given by configuration.

    No locale is consulted: ``1,5`` is rejected unless ``decimal_separator``
    is ``","``.
    """
    if isinstance(raw, bool):
        raise ValueError(f"'{raw}' is not a number")
    if isinstance(raw, (int, Decimal)):
        return Decimal(raw)
    if isinstance(raw, float):
        return Decimal(str(raw))

    token = str(raw).strip().replace(" ", "")
    if thousands_separator:
        token = token.replace(thousands_separator, "")
    if decimal_separator != ".":
        if "." in token:
            raise ValueError(f"'{raw}' is not a number")
        token = token.replace(decimal_separator, ".")
    if not _NUMBER_PATTERN.fullmatch(token):
        raise ValueError(f"'{raw}' is not a number")
    try:
        return Decimal(token)
    except InvalidOperation as exc:
        raise ValueError(f"'{raw}' is not a number") from exc


def parse_date(raw: Any, date_format: Optional[str] = None) -> date:
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    fmt = date_format or DEFAULT_DATE_FORMAT
    text = str(raw).strip()
    try:
        return datetime.strptime(text, fmt).date()
    except ValueError as exc:
        raise ValueError(f"'{text}' does not match date format {fmt}") from exc


def split_list(raw: Any, delimiter: str = ",") -> List[str]:
    if isinstance(raw, (list, tuple)):
        items: Iterable[Any] = raw
    else:
        items = str(raw).split(delimiter)
    return [str(item).strip() for item in items if str(item).strip()]


def coerce_value(raw: Any, field_type: str, type_rule: Any = None) -> Any:
    """
    Convert a cell into the Python value for ``field_type``.

    Raises:
        ValueError: with a human-readable reason when the cell does not parse.
    """
    if field_type == "string":
        return str(raw).strip()

    if field_type in ("integer", "number"):
        number = parse_decimal(
            raw,
            decimal_separator=getattr(type_rule, "decimal_separator", ".") or ".",
            thousands_separator=getattr(type_rule, "thousands_separator", None),
        )
        if field_type == "integer":
            if number != number.to_integral_value():
                raise ValueError(f"'{raw}' is not a whole number")
            return int(number)
        return float(number)

    if field_type == "boolean":
        if isinstance(raw, bool):
            return raw
        token = str(raw).strip().lower()
        if token in _TRUE_VALUES:
            return True
        if token in _FALSE_VALUES:
            return False
        raise ValueError(f"'{raw}' is not a boolean (use true/false or yes/no)")

    if field_type == "date":
        return parse_date(raw, getattr(type_rule, "format", None))

    if field_type == "list":
        return split_list(raw, getattr(type_rule, "delimiter", ",") or ",")

    raise ValueError(f"Unsupported field type '{field_type}'")


def check_rule(value: Any, rule: Any) -> Tuple[Any, Optional[str]]:
    """
    Apply one ``range``/``enum``/``length``/``regex`` rule to a coerced value.

    Returns:
        Tuple of (possibly normalized value, error reason or None)
    """
    kind = rule.kind

    if kind == "range":
        if rule.min is not None and value < rule.min:
            return value, f"must be >= {_format_bound(rule.min)}"
        if rule.max is not None and value > rule.max:
            return value, f"must be <= {_format_bound(rule.max)}"
        return value, None

    if kind == "enum":
        text = str(value)
        if rule.case_sensitive:
            if text in rule.values:
                return value, None
        else:
            for allowed in rule.values:
                if allowed.lower() == text.lower():
                    return allowed, None
        return value, f"'{text}' is not one of: {', '.join(rule.values)}"

    if kind == "length":
        length = len(value)
        if rule.min is not None and length < rule.min:
            return value, f"must be at least {rule.min} characters"
        if rule.max is not None and length > rule.max:
            return value, f"must be at most {rule.max} characters"
        return value, None

    if kind == "regex":
        pattern = rule.pattern or get_preset_pattern(rule.preset)
        text = str(value)
        if re.fullmatch(pattern, text):
            return value, None
        if rule.message:
            return value, rule.message
        if rule.preset:
            description = get_preset_description(rule.preset) or rule.preset
            return value, f"'{text}' does not match {description} format"
        return value, f"'{text}' does not match pattern {pattern}"

    # required / type / unique are handled by the row validator
    return value, None


def _format_bound(bound: float) -> str:
    return str(int(bound)) if float(bound).is_integer() else str(bound)
