"""Contract learning: type inference, observation folding, delta merge."""

from __future__ import annotations

from copy import deepcopy
from typing import Any

from owlmend.errors import ContractContaminationError, VersionConflictError
from owlmend.knowledge.models import ContractDelta, ContractField, FieldType

ASSIGNABLE_ATTRIBUTES = frozenset(
    {
        "inferred_type",
        "unit",
        "allowed_values",
        "enum_stable_observations",
        "enum_open",
        "minimum",
        "maximum",
        "declared",
    }
)

DEFAULT_MAX_ENUM_VALUES = 32


def infer_type(value: Any) -> FieldType | None:
    """Map a JSON value to its FieldType; None for null."""
    if value is None:
        return None
    if isinstance(value, bool):
        return FieldType.BOOLEAN
    if isinstance(value, int):
        return FieldType.INTEGER
    if isinstance(value, float):
        return FieldType.INTEGER if value.is_integer() else FieldType.NUMBER
    if isinstance(value, str):
        return FieldType.STRING
    if isinstance(value, list | tuple):
        return FieldType.ARRAY
    if isinstance(value, dict):
        return FieldType.OBJECT
    return None


def is_numeric(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def flatten_payload(payload: dict[str, Any], prefix: str = "", max_depth: int = 8) -> dict[str, Any]:
    """Flatten nested mappings into dotted paths; lists and scalars are leaves."""
    out: dict[str, Any] = {}
    for key, value in payload.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, dict) and value and max_depth > 1:
            out.update(flatten_payload(value, path, max_depth - 1))
        else:
            out[path] = value
    return out


def observe_value(target: ContractField, value: Any, max_enum_values: int = DEFAULT_MAX_ENUM_VALUES) -> None:
    """Fold one observed value into a field's statistics in place."""
    target.observation_count += 1
    observed_type = infer_type(value)
    if target.inferred_type is None:
        target.inferred_type = observed_type
    elif target.inferred_type == FieldType.INTEGER and observed_type == FieldType.NUMBER:
        target.inferred_type = FieldType.NUMBER

    if is_numeric(value):
        number = float(value)
        target.minimum = number if target.minimum is None else min(target.minimum, number)
        target.maximum = number if target.maximum is None else max(target.maximum, number)
        target.magnitude.observe(number)
        return

    if isinstance(value, str) and not target.enum_open:
        if value in target.allowed_values:
            target.enum_stable_observations += 1
        elif len(target.allowed_values) >= max_enum_values:
            target.allowed_values = []
            target.enum_open = True
            target.enum_stable_observations = 0
        else:
            target.allowed_values = sorted([*target.allowed_values, value])
            target.enum_stable_observations = 0


def _assign(target: ContractField, key: str, value: Any) -> None:
    if key not in ASSIGNABLE_ATTRIBUTES:
        raise ValueError(f"contract attribute '{key}' is not assignable")
    if key == "inferred_type":
        target.inferred_type = FieldType(value) if value is not None else None
    elif key == "allowed_values":
        target.allowed_values = sorted(str(v) for v in (value or []))
    elif key in {"minimum", "maximum"}:
        setattr(target, key, float(value) if value is not None else None)
    else:
        setattr(target, key, value)


def merge_delta(
    current: ContractField | None,
    delta: ContractDelta,
    *,
    max_enum_values: int = DEFAULT_MAX_ENUM_VALUES,
) -> ContractField:
    """Return the next version of a field after applying ``delta``.

    Raises ContractContaminationError when the delta's evidence belongs to a
    different tool, and VersionConflictError when assignments were computed
    against a stale version.
    """
    if delta.source_tool_id is not None and delta.source_tool_id != delta.tool_id:
        raise ContractContaminationError(delta.tool_id, delta.source_tool_id, delta.path)
    if current is not None and (current.tool_id != delta.tool_id or current.path != delta.path):
        raise ContractContaminationError(delta.tool_id, current.tool_id, current.path)
    current_version = current.version if current is not None else 0
    if (
        delta.has_assignments
        and delta.expected_version is not None
        and delta.expected_version != current_version
    ):
        raise VersionConflictError(delta.tool_id, delta.path, delta.expected_version, current_version)

    nxt = deepcopy(current) if current is not None else ContractField(tool_id=delta.tool_id, path=delta.path)
    for key, value in delta.assign.items():
        _assign(nxt, key, value)

    nxt.support += max(0, delta.support)
    nxt.contradictions += max(0, delta.contradictions)
    nxt.required_support += max(0, delta.required_support)
    nxt.required_contradictions += max(0, delta.required_contradictions)

    for value in delta.observed_values:
        observe_value(nxt, value, max_enum_values=max_enum_values)
    if delta.observed_values:
        if nxt.last_observed_at is None or delta.observed_at > nxt.last_observed_at:
            nxt.last_observed_at = delta.observed_at
    if delta.support > 0:
        if nxt.last_corroborated_at is None or delta.observed_at > nxt.last_corroborated_at:
            nxt.last_corroborated_at = delta.observed_at

    nxt.version = current_version + 1
    nxt.created_at = delta.observed_at
    return nxt
