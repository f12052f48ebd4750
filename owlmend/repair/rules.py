"""Closed-form transformation rules and recipe application.

Every rule is a pure function of its parameters and input value, so applying a
recipe twice to the same payload yields byte-identical output.
"""

from __future__ import annotations

from copy import deepcopy
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from owlmend.detection.coercion import CoercionFailed, coerce
from owlmend.knowledge.models import FieldType, TransformRecipe, TransformRule

_MISSING = object()

CLOSED_FORM_OPS = frozenset({"identity", "scale", "offset", "cast", "map", "date_format"})


class RuleError(ValueError):
    """A rule cannot be applied to the given value."""


def _decimal(value: Any, what: str) -> Decimal:
    if isinstance(value, bool):
        raise RuleError(f"{what} must be numeric, got bool")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int | float | str):
        try:
            number = Decimal(str(value).strip())
        except InvalidOperation as exc:
            raise RuleError(f"{what} '{value}' is not numeric") from exc
        if not number.is_finite():
            raise RuleError(f"{what} '{value}' is not finite")
        return number
    raise RuleError(f"{what} must be numeric, got {type(value).__name__}")


def _numeric_out(number: Decimal, params: dict[str, Any]) -> int | float:
    rounding = params.get("round")
    if rounding in (True, "half_up", "integer"):
        return int(number.quantize(Decimal(1), rounding=ROUND_HALF_UP))
    digits = params.get("digits")
    if isinstance(digits, int) and not isinstance(digits, bool):
        number = number.quantize(Decimal(1).scaleb(-digits), rounding=ROUND_HALF_UP)
    if number == number.to_integral_value() and params.get("keep_float") is not True:
        return int(number)
    return float(number)


def apply_rule(rule: TransformRule, value: Any) -> Any:
    """Apply one closed-form rule to one value."""
    op = rule.op
    params = rule.params
    if op == "identity":
        return deepcopy(value)
    if op == "scale":
        factor = _decimal(params.get("factor", 1), "factor")
        return _numeric_out(_decimal(value, "value") * factor, params)
    if op == "offset":
        amount = _decimal(params.get("amount", 0), "amount")
        return _numeric_out(_decimal(value, "value") + amount, params)
    if op == "cast":
        target = params.get("to")
        try:
            return coerce(value, FieldType(target))
        except (ValueError, CoercionFailed) as exc:
            raise RuleError(f"cannot cast {value!r} to {target}: {exc}") from exc
    if op == "map":
        table = params.get("table")
        if not isinstance(table, dict):
            raise RuleError("map rule requires a 'table' mapping")
        key = value if isinstance(value, str) else str(value)
        if key in table:
            return deepcopy(table[key])
        if "default" in params:
            return deepcopy(params["default"])
        raise RuleError(f"no mapping for {value!r}")
    if op == "date_format":
        source_format = params.get("from")
        target_format = params.get("to")
        if not isinstance(source_format, str) or not isinstance(target_format, str):
            raise RuleError("date_format rule requires 'from' and 'to' formats")
        if not isinstance(value, str):
            raise RuleError(f"date value must be a string, got {type(value).__name__}")
        try:
            return datetime.strptime(value.strip(), source_format).strftime(target_format)
        except ValueError as exc:
            raise RuleError(f"'{value}' does not match {source_format}") from exc
    if op == "program":
        raise RuleError("program rules run in the sandbox")
    raise RuleError(f"unsupported rule op: {op}")


def get_path(payload: dict[str, Any], path: str, default: Any = _MISSING) -> Any:
    cursor: Any = payload
    for part in path.split("."):
        if not isinstance(cursor, dict) or part not in cursor:
            if default is _MISSING:
                raise KeyError(path)
            return default
        cursor = cursor[part]
    return cursor


def set_path(payload: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    cursor = payload
    for part in parts[:-1]:
        child = cursor.get(part)
        if not isinstance(child, dict):
            child = {}
            cursor[part] = child
        cursor = child
    cursor[parts[-1]] = value


def delete_path(payload: dict[str, Any], path: str) -> None:
    parts = path.split(".")
    trail: list[tuple[dict[str, Any], str]] = []
    cursor: Any = payload
    for part in parts[:-1]:
        if not isinstance(cursor, dict) or part not in cursor:
            return
        trail.append((cursor, part))
        cursor = cursor[part]
    if isinstance(cursor, dict):
        cursor.pop(parts[-1], None)
    # Drop parents emptied by the removal.
    for parent, key in reversed(trail):
        if parent[key] == {}:
            del parent[key]
        else:
            break


def apply_recipe(
    recipe: TransformRecipe,
    payload: dict[str, Any],
    *,
    source_field: str | None = None,
    target_field: str | None = None,
) -> dict[str, Any]:
    """Return a new payload with the recipe's rule moved/applied from source to target field."""
    if recipe.is_program:
        raise RuleError("program recipes run in the sandbox")
    source = source_field or recipe.source_field
    target = target_field or recipe.target_field
    if not source or not target:
        raise RuleError("recipe needs source and target fields")
    try:
        value = get_path(payload, source)
    except KeyError as exc:
        raise RuleError(f"payload has no field '{source}'") from exc
    result = deepcopy(payload)
    new_value = apply_rule(recipe.rule, value)
    if source != target:
        delete_path(result, source)
    set_path(result, target, new_value)
    return result
