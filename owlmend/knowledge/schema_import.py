"""Turn declared tool schemas (JSON Schema or simplified declarations) into contract deltas."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from owlmend.knowledge.models import ContractDelta, FieldType, _now_utc

_SIMPLE_TYPES = {t.value for t in FieldType}
_TYPE_ALIASES = {"str": "string", "int": "integer", "float": "number", "bool": "boolean", "list": "array", "dict": "object"}
_FIELD_KEYWORDS = {"type", "required", "enum", "minimum", "maximum", "unit", "x-unit", "properties", "description"}


def _is_object_schema(value: Any) -> bool:
    return isinstance(value, dict) and value.get("type") == "object" and isinstance(value.get("properties"), dict)


def _normalize_type(raw: Any) -> str | None:
    if isinstance(raw, list):
        raw = next((t for t in raw if t != "null"), None)
    if not isinstance(raw, str):
        return None
    name = raw.strip().lower()
    name = _TYPE_ALIASES.get(name, name)
    return name if name in _SIMPLE_TYPES else None


def _normalize_simplified(value: dict[str, Any]) -> tuple[dict[str, Any] | None, str | None]:
    properties: dict[str, Any] = {}
    required: list[str] = []
    for name, spec in value.items():
        if not isinstance(name, str) or not name.strip():
            return None, "field names must be non-empty strings"
        normalized_name = name.strip()
        schema: dict[str, Any]
        optional = normalized_name.endswith("?")
        if optional:
            normalized_name = normalized_name[:-1]
        if isinstance(spec, str):
            type_name = _normalize_type(spec)
            if type_name is None:
                return None, f"unsupported field type for '{normalized_name}': {spec}"
            schema = {"type": type_name}
        elif isinstance(spec, dict):
            if "properties" in spec and isinstance(spec["properties"], dict) and "type" not in spec:
                spec = {**spec, "type": "object"}
            type_name = _normalize_type(spec.get("type"))
            if type_name is None:
                return None, f"unsupported field type for '{normalized_name}': {spec.get('type')!r}"
            schema = {k: v for k, v in spec.items() if k in _FIELD_KEYWORDS and k != "required"}
            schema["type"] = type_name
            if type_name == "object" and isinstance(spec.get("properties"), dict) and not _is_object_schema(spec):
                nested, err = _normalize_simplified(spec["properties"])
                if nested is None:
                    return None, err
                schema = {**schema, **nested}
            if spec.get("required") is False:
                optional = True
        else:
            return None, f"field spec for '{normalized_name}' must be a type name or mapping"
        properties[normalized_name] = schema
        if not optional:
            required.append(normalized_name)
    return {"type": "object", "properties": properties, "required": required}, None


def normalize_schema(raw: Any) -> tuple[dict[str, Any], list[str]]:
    """Normalize a declaration to an object JSON Schema.

    Accepts a full JSON Schema object or a simplified declaration::

        user_id: string
        amount_cents: {type: integer, minimum: 0, unit: cents}
        "note?": string          # optional
    """
    if raw is None:
        return {}, ["schema declaration is empty"]
    if not isinstance(raw, dict):
        return {}, ["schema declaration must be a mapping/object"]
    if _is_object_schema(raw):
        return dict(raw), []
    if "parameters" in raw and _is_object_schema(raw["parameters"]):
        return dict(raw["parameters"]), []
    schema, err = _normalize_simplified(raw)
    if schema is None:
        return {}, [err or "invalid schema declaration"]
    return schema, []


def _walk(schema: dict[str, Any], prefix: str, parent_required: bool):
    required = set(schema.get("required") or [])
    for name, spec in (schema.get("properties") or {}).items():
        if not isinstance(spec, dict):
            continue
        path = f"{prefix}.{name}" if prefix else name
        is_required = parent_required and name in required
        if _is_object_schema(spec) and spec["properties"]:
            yield from _walk(spec, path, is_required)
        else:
            yield path, spec, is_required


def schema_to_deltas(
    tool_id: str,
    raw_schema: Any,
    *,
    weight: int = 10,
    observed_at: datetime | None = None,
) -> list[ContractDelta]:
    """Return one delta per declared leaf field; raises ValueError on invalid declarations."""
    if not tool_id or not tool_id.strip():
        raise ValueError("tool_id must be a non-empty string")
    schema, errors = normalize_schema(raw_schema)
    if errors:
        raise ValueError("; ".join(errors))
    when = observed_at or _now_utc()
    deltas: list[ContractDelta] = []
    for path, spec, is_required in _walk(schema, "", True):
        assign: dict[str, Any] = {"declared": True}
        type_name = _normalize_type(spec.get("type"))
        if type_name is not None:
            assign["inferred_type"] = type_name
        unit = spec.get("unit", spec.get("x-unit"))
        if isinstance(unit, str) and unit:
            assign["unit"] = unit
        enum = spec.get("enum")
        if isinstance(enum, list) and enum:
            assign["allowed_values"] = [str(v) for v in enum]
        for bound in ("minimum", "maximum"):
            if isinstance(spec.get(bound), int | float) and not isinstance(spec.get(bound), bool):
                assign[bound] = spec[bound]
        deltas.append(
            ContractDelta(
                tool_id=tool_id,
                path=path,
                source_tool_id=tool_id,
                assign=assign,
                support=weight,
                required_support=weight if is_required else 0,
                observed_at=when,
            )
        )
    return deltas
