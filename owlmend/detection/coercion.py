"""Tolerant value coercion used before reporting a TypeMismatch."""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from typing import Any

from owlmend.knowledge.contracts import infer_type
from owlmend.knowledge.models import FieldType

_INT_RE = re.compile(r"^[+-]?\d+$")
_TRUE = {"true", "yes", "1"}
_FALSE = {"false", "no", "0"}


class CoercionFailed(ValueError):
    """The value cannot be represented as the target type without loss."""


def _to_decimal(text: str) -> Decimal:
    try:
        number = Decimal(text.strip())
    except InvalidOperation as exc:
        raise CoercionFailed(f"'{text}' is not numeric") from exc
    if not number.is_finite():
        raise CoercionFailed(f"'{text}' is not finite")
    return number


def matches(value: Any, target: FieldType) -> bool:
    """True when the value already has the target JSON type (integers count as numbers)."""
    observed = infer_type(value)
    if observed is None:
        return False
    if target == FieldType.NUMBER:
        return observed in {FieldType.NUMBER, FieldType.INTEGER}
    if target == FieldType.INTEGER:
        return observed == FieldType.INTEGER
    return observed == target


def coerce(value: Any, target: FieldType) -> Any:
    """Return ``value`` converted to ``target`` without loss; raise CoercionFailed otherwise.

    Booleans never coerce to or from numbers except through explicit "true"/"false"
    strings and 0/1 integers for boolean targets.
    """
    if matches(value, target):
        if target == FieldType.INTEGER and isinstance(value, float):
            return int(value)
        return value
    if value is None:
        raise CoercionFailed("null value")

    if target == FieldType.INTEGER:
        if isinstance(value, str):
            text = value.strip()
            if _INT_RE.match(text):
                return int(text)
            number = _to_decimal(text)
            if number == number.to_integral_value():
                return int(number)
            raise CoercionFailed(f"'{value}' has a fractional part")
        raise CoercionFailed(f"{type(value).__name__} is not an integer")

    if target == FieldType.NUMBER:
        if isinstance(value, str):
            number = _to_decimal(value)
            if number == number.to_integral_value() and _INT_RE.match(value.strip()):
                return int(number)
            return float(number)
        raise CoercionFailed(f"{type(value).__name__} is not a number")

    if target == FieldType.STRING:
        if isinstance(value, int | float) and not isinstance(value, bool):
            return str(value)
        raise CoercionFailed(f"{type(value).__name__} is not a string")

    if target == FieldType.BOOLEAN:
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in _TRUE:
                return True
            if lowered in _FALSE:
                return False
        if isinstance(value, int) and not isinstance(value, bool) and value in (0, 1):
            return bool(value)
        raise CoercionFailed(f"{value!r} is not a boolean")

    raise CoercionFailed(f"{type(value).__name__} is not {target.value}")
