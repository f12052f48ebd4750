"""Map validation-error bodies returned by real APIs onto violations.

Two common shapes are understood: FastAPI/pydantic style
``{"detail": [{"loc": [...], "msg": ..., "type": ...}]}`` and the generic
``{"errors": [{"field": ..., "message": ..., "code": ...}]}``.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from owlmend.detection.report import Severity, Violation, ViolationKind
from owlmend.knowledge.contracts import flatten_payload

logger = logging.getLogger(__name__)

_LOCATION_PREFIXES = {"body", "query", "path", "header", "json", "payload"}

_EXPECTED_TYPES = {
    "int": "integer",
    "integer": "integer",
    "float": "number",
    "decimal": "number",
    "number": "number",
    "string": "string",
    "str": "string",
    "bool": "boolean",
    "boolean": "boolean",
    "list": "array",
    "array": "array",
    "dict": "object",
    "object": "object",
}


def _decode(body: Any) -> Any:
    if isinstance(body, bytes | bytearray):
        body = body.decode("utf-8", errors="replace")
    if isinstance(body, str):
        try:
            return json.loads(body)
        except json.JSONDecodeError:
            return None
    return body


def _path_from_loc(loc: Any) -> str:
    if isinstance(loc, str):
        parts = [p for p in loc.replace("/", ".").split(".") if p]
    elif isinstance(loc, list | tuple):
        parts = [str(p) for p in loc if isinstance(p, str)]
    else:
        return ""
    if len(parts) > 1 and parts[0] in _LOCATION_PREFIXES:
        parts = parts[1:]
    return ".".join(parts)


def _expected_type(code: str) -> str | None:
    head = code.split(".")[-1].split("_", 1)[0]
    return _EXPECTED_TYPES.get(head)


def classify(path: str, code: str, message: str, present: set[str]) -> tuple[ViolationKind, str | None]:
    """Violation kind and expected type for one reported error."""
    code = code.lower()
    text = f"{code} {message.lower()}"
    if "missing" in code or "required" in text:
        return ViolationKind.MISSING_REQUIRED_FIELD, None
    if "extra" in code or any(w in text for w in ("not permitted", "unexpected", "unknown field", "not allowed")):
        return ViolationKind.UNKNOWN_FIELD, None
    if "enum" in code or "literal" in code or "one of" in text:
        return ViolationKind.ENUM_VIOLATION, None
    if any(w in text for w in ("greater", "less", "too_small", "too_big", "range", "at least", "at most")):
        return ViolationKind.RANGE_VIOLATION, None
    if any(w in text for w in ("type", "parsing", "valid")):
        return ViolationKind.TYPE_MISMATCH, _expected_type(code)
    if path in present:
        return ViolationKind.TYPE_MISMATCH, _expected_type(code)
    return ViolationKind.MISSING_REQUIRED_FIELD, None


def violations_from_response(body: Any, payload: dict[str, Any] | None = None) -> list[Violation]:
    """Violations reported by an API error body; empty when the shape is unknown."""
    data = _decode(body)
    if not isinstance(data, dict):
        return []
    present = set(flatten_payload(payload or {}))
    items: list[tuple[str, str, str]] = []
    detail = data.get("detail")
    if isinstance(detail, list):
        for item in detail:
            if isinstance(item, dict):
                items.append(
                    (_path_from_loc(item.get("loc")), str(item.get("type", "")), str(item.get("msg", "")))
                )
    errors = data.get("errors")
    if isinstance(errors, list):
        for item in errors:
            if isinstance(item, dict):
                code = item.get("code", item.get("type", ""))
                message = item.get("message", item.get("msg", ""))
                items.append((_path_from_loc(item.get("field", item.get("path"))), str(code), str(message)))

    seen: set[tuple[str, str]] = set()
    violations: list[Violation] = []
    for path, code, message in items:
        if not path:
            continue
        kind, expected = classify(path, code, message, present)
        if (kind.value, path) in seen:
            continue
        seen.add((kind.value, path))
        violations.append(
            Violation(
                kind=kind,
                path=path,
                severity=Severity.BLOCKING,
                message=message or code,
                expected=expected,
            )
        )
    if not violations and (detail is not None or errors is not None):
        logger.debug("unrecognized validation error body: %s", str(data)[:200])
    return violations
