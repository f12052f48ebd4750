"""Unit tests for tolerant coercion, API error-body parsing and violation signatures."""

from __future__ import annotations

import json

import pytest

from owlmend.detection import CoercionFailed, Severity, Violation, ViolationKind, coerce, violation_signature
from owlmend.detection import violations_from_response
from owlmend.knowledge import FieldType


@pytest.mark.parametrize(
    ("value", "target", "expected"),
    [
        ("42", FieldType.INTEGER, 42),
        (" -7 ", FieldType.INTEGER, -7),
        ("1e3", FieldType.INTEGER, 1000),
        (3.0, FieldType.INTEGER, 3),
        ("19.99", FieldType.NUMBER, 19.99),
        ("5", FieldType.NUMBER, 5),
        (12, FieldType.STRING, "12"),
        ("yes", FieldType.BOOLEAN, True),
        ("False", FieldType.BOOLEAN, False),
        (0, FieldType.BOOLEAN, False),
    ],
)
def test_coerce_accepts_lossless_conversions(value, target, expected) -> None:
    result = coerce(value, target)
    assert result == expected
    assert type(result) is type(expected)


@pytest.mark.parametrize(
    ("value", "target"),
    [
        ("19.99", FieldType.INTEGER),
        ("abc", FieldType.NUMBER),
        ("NaN", FieldType.NUMBER),
        (True, FieldType.INTEGER),
        (True, FieldType.STRING),
        (2, FieldType.BOOLEAN),
        ({"a": 1}, FieldType.ARRAY),
        (None, FieldType.STRING),
    ],
)
def test_coerce_rejects_lossy_conversions(value, target) -> None:
    with pytest.raises(CoercionFailed):
        coerce(value, target)


def test_pydantic_style_error_body() -> None:
    body = {
        "detail": [
            {"loc": ["body", "amount_cents"], "msg": "Input should be a valid integer", "type": "int_parsing"},
            {"loc": ["body", "user_id"], "msg": "Field required", "type": "missing"},
            {"loc": ["body", "user"], "msg": "Extra inputs are not permitted", "type": "extra_forbidden"},
        ]
    }

    violations = violations_from_response(json.dumps(body), {"amount_cents": "x", "user": "u"})

    by_path = {v.path: v for v in violations}
    assert by_path["amount_cents"].kind == ViolationKind.TYPE_MISMATCH
    assert by_path["amount_cents"].expected == "integer"
    assert by_path["user_id"].kind == ViolationKind.MISSING_REQUIRED_FIELD
    assert by_path["user"].kind == ViolationKind.UNKNOWN_FIELD
    assert all(v.blocking for v in violations)


def test_generic_errors_body_from_bytes() -> None:
    body = json.dumps(
        {"errors": [{"field": "status", "message": "must be one of PENDING, APPROVED", "code": "invalid"}]}
    ).encode()
    violations = violations_from_response(body)
    assert [(v.kind, v.path) for v in violations] == [(ViolationKind.ENUM_VIOLATION, "status")]


@pytest.mark.parametrize("body", ["not json", b"", {"message": "boom"}, [1, 2], None])
def test_unknown_error_shapes_yield_nothing(body) -> None:
    assert violations_from_response(body) == []


def test_duplicate_errors_are_collapsed() -> None:
    item = {"loc": ["body", "a"], "msg": "Field required", "type": "missing"}
    assert len(violations_from_response({"detail": [item, item]})) == 1


def test_violation_signature_ignores_order_and_advisories() -> None:
    a = Violation(ViolationKind.UNKNOWN_FIELD, "amt", Severity.BLOCKING)
    b = Violation(ViolationKind.MISSING_REQUIRED_FIELD, "amount_cents", Severity.BLOCKING)
    advisory = Violation(ViolationKind.UNIT_SUSPECT, "amount_cents", Severity.ADVISORY)

    signature = violation_signature([a, b, advisory])

    assert signature == violation_signature([b, a])
    assert signature == "MissingRequiredField:amount_cents|UnknownField:amt"
    assert violation_signature([v.to_dict() for v in (b, a, advisory)]) == signature


def test_violation_dict_round_trip_keeps_kind_and_severity() -> None:
    original = Violation(ViolationKind.RANGE_VIOLATION, "price", Severity.BLOCKING, "too big", 500.0, [0, 110])
    restored = Violation.from_dict(original.to_dict())
    assert restored == original
