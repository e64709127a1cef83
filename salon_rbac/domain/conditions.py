from __future__ import annotations

from collections.abc import Mapping
from typing import Any

ConditionValue = str | int | float | bool | None
Conditions = dict[str, ConditionValue]

_SCALAR_TYPES = (str, int, float, bool, type(None))


def validate_conditions(raw: Mapping[str, Any] | None) -> Conditions | None:
    """Normalize a condition map read from storage or an API payload.

    Empty maps collapse to ``None`` so that "no conditions" has a single
    representation. Keys must be non-empty strings and values must be scalar.
    """
    if raw is None:
        return None
    if not isinstance(raw, Mapping):
        raise ValueError("conditions must be a mapping")
    normalized: Conditions = {}
    for key, value in raw.items():
        if not isinstance(key, str) or not key.strip():
            raise ValueError("condition keys must be non-empty strings")
        if not isinstance(value, _SCALAR_TYPES):
            raise ValueError(f"condition {key!r} must be a string, number, boolean or null")
        normalized[key] = value
    return normalized or None


def _values_equal(expected: ConditionValue, actual: Any) -> bool:
    if isinstance(expected, bool) or isinstance(actual, bool):
        return type(expected) is type(actual) and expected == actual
    if expected is None:
        return actual is None
    if isinstance(expected, int | float):
        return isinstance(actual, int | float) and expected == actual
    return type(expected) is type(actual) and expected == actual


def matches(conditions: Mapping[str, ConditionValue] | None, context: Mapping[str, Any]) -> bool:
    if not conditions:
        return True
    for key, expected in conditions.items():
        if key not in context:
            return False
        if not _values_equal(expected, context[key]):
            return False
    return True
