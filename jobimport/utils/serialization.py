import math
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Mapping


def to_json_value(value: Any) -> Any:
    """
    Convert a validated cell value into something a JSON column accepts.

    Whole-number floats and Decimals become ints, so ``1800000.0`` read from a
    spreadsheet is stored as ``1800000``. NaN becomes None.
    """
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, Mapping):
        return {str(key): to_json_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_json_value(item) for item in value]
    if isinstance(value, float):
        if math.isnan(value):
            return None
        return int(value) if value.is_integer() else value
    if isinstance(value, Decimal):
        if value == value.to_integral():
            return int(value)
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.decode(errors="replace")
    if isinstance(value, int):
        return value
    return str(value)


def attributes_document(values: Mapping[str, Any]) -> Dict[str, Any]:
    """JSON document of the non-empty values; blank lists and None are dropped."""
    document = {}
    for name, value in values.items():
        converted = to_json_value(value)
        if converted is None or converted == []:
            continue
        document[name] = converted
    return document
