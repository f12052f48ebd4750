"""Unit tests for MismatchDetector."""

from __future__ import annotations

import pytest

from owlmend.config import DetectionConfig
from owlmend.detection import DetectionPolicy, MismatchDetector, Severity, ViolationKind
from owlmend.knowledge import ContractDelta, ContractField, FieldType, MagnitudeStats, ToolContract, merge_delta, schema_to_deltas

_PAYMENTS_SCHEMA = {"user_id": "string", "amount_cents": {"type": "integer", "unit": "cents"}}


def _declared_contract(tool_id: str, schema: dict) -> ToolContract:
    fields = [merge_delta(None, delta) for delta in schema_to_deltas(tool_id, schema)]
    return ToolContract(tool_id=tool_id, fields=fields, version=max(f.version for f in fields))


def _learned_field(path: str, **kwargs) -> ContractField:
    return ContractField(tool_id="t", path=path, required_support=20, **kwargs)


def test_end_to_end_payload_reports_renamed_fields() -> None:
    contract = _declared_contract("payments.create", _PAYMENTS_SCHEMA)

    report = MismatchDetector().detect({"user": "abc123", "amt": "19.99"}, contract)

    found = {(v.kind, v.path) for v in report.violations}
    assert found == {
        (ViolationKind.UNKNOWN_FIELD, "user"),
        (ViolationKind.UNKNOWN_FIELD, "amt"),
        (ViolationKind.MISSING_REQUIRED_FIELD, "user_id"),
        (ViolationKind.MISSING_REQUIRED_FIELD, "amount_cents"),
    }
    assert all(v.blocking for v in report.violations)
    assert report.absent_required_paths == ["amount_cents", "user_id"]
    assert not report.passed


def test_conforming_payload_passes_with_tolerant_coercion() -> None:
    contract = _declared_contract("payments.create", _PAYMENTS_SCHEMA)

    report = MismatchDetector().detect({"user_id": "abc123", "amount_cents": "1999"}, contract)

    assert report.passed
    assert report.violations == []
    assert report.normalized_payload == {"user_id": "abc123", "amount_cents": 1999}
    assert report.coercions[0].original == "1999"


def test_detector_does_not_mutate_the_payload() -> None:
    contract = _declared_contract("payments.create", _PAYMENTS_SCHEMA)
    payload = {"user_id": "abc123", "amount_cents": "1999"}
    MismatchDetector().detect(payload, contract)
    assert payload == {"user_id": "abc123", "amount_cents": "1999"}


def test_fractional_string_for_integer_is_a_type_mismatch() -> None:
    contract = _declared_contract("payments.create", _PAYMENTS_SCHEMA)

    report = MismatchDetector().detect({"user_id": "abc123", "amount_cents": "19.99"}, contract)

    assert [(v.kind, v.path) for v in report.blocking] == [(ViolationKind.TYPE_MISMATCH, "amount_cents")]
    assert report.blocking[0].expected == "integer"


def test_strict_policy_rejects_coercible_values() -> None:
    contract = _declared_contract("payments.create", _PAYMENTS_SCHEMA)
    detector = MismatchDetector(DetectionPolicy(tolerant_coercion=False))

    report = detector.detect({"user_id": "abc123", "amount_cents": "1999"}, contract)

    assert report.of_kind(ViolationKind.TYPE_MISMATCH)


def test_missing_contract_reports_nothing() -> None:
    report = MismatchDetector().detect({"anything": 1}, None, tool_id="new.tool")
    assert report.contract_found is False
    assert report.tool_id == "new.tool"
    assert report.passed


def test_non_string_keys_are_blocking() -> None:
    report = MismatchDetector().detect({1: "x"}, None, tool_id="t")  # type: ignore[dict-item]
    assert report.of_kind(ViolationKind.UNKNOWN_FIELD)


def test_enum_violation_only_after_enough_stable_observations() -> None:
    settled = _learned_field(
        "status", inferred_type=FieldType.STRING, allowed_values=["APPROVED", "PENDING"], enum_stable_observations=25
    )
    young = _learned_field(
        "status", inferred_type=FieldType.STRING, allowed_values=["APPROVED", "PENDING"], enum_stable_observations=5
    )
    detector = MismatchDetector()

    flagged = detector.detect({"status": "DONE"}, ToolContract("t", [settled], version=1))
    ignored = detector.detect({"status": "DONE"}, ToolContract("t", [young], version=1))

    assert [v.kind for v in flagged.violations] == [ViolationKind.ENUM_VIOLATION]
    assert flagged.violations[0].expected == ["APPROVED", "PENDING"]
    assert ignored.violations == []


def test_declared_enum_is_enforced_immediately() -> None:
    contract = _declared_contract("t", {"status": {"type": "string", "enum": ["PENDING", "APPROVED"]}})
    report = MismatchDetector().detect({"status": "done"}, contract)
    assert report.of_kind(ViolationKind.ENUM_VIOLATION)


def test_unit_suspect_is_advisory() -> None:
    stats = MagnitudeStats()
    for i in range(30):
        stats.observe(1500.0 + (i % 5) * 100)
    amount = _learned_field("amount_cents", inferred_type=FieldType.NUMBER, unit="cents", magnitude=stats)

    report = MismatchDetector().detect({"amount_cents": 19.99}, ToolContract("t", [amount], version=1))

    assert [v.kind for v in report.violations] == [ViolationKind.UNIT_SUSPECT]
    assert report.violations[0].severity == Severity.ADVISORY
    assert "cents" in report.violations[0].message
    assert report.passed


def test_unit_drift_against_learned_history_is_only_advisory() -> None:
    schema = {"amount_cents": {"type": "integer", "unit": "cents", "minimum": 0, "maximum": 500000}}
    field = _declared_contract("t", schema).fields[0]
    for i in range(50):
        field = merge_delta(
            field, ContractDelta(tool_id="t", path="amount_cents", support=1, observed_values=[1000 + i * 980])
        )

    report = MismatchDetector().detect({"amount_cents": 12}, ToolContract("t", [field], version=field.version))

    assert report.of_kind(ViolationKind.UNIT_SUSPECT, blocking_only=False)
    assert report.blocking == []
    assert report.passed


def test_range_violation_respects_slack() -> None:
    price = _learned_field("price", inferred_type=FieldType.NUMBER, minimum=0.0, maximum=100.0, observation_count=50)
    contract = ToolContract("t", [price], version=1)
    detector = MismatchDetector()

    assert detector.detect({"price": 105}, contract).violations == []
    report = detector.detect({"price": 500}, contract)
    assert [v.kind for v in report.blocking] == [ViolationKind.RANGE_VIOLATION]


def test_low_confidence_missing_field_is_advisory() -> None:
    maybe = ContractField(tool_id="t", path="note", inferred_type=FieldType.STRING, required_support=2,
                          required_contradictions=1)
    report = MismatchDetector().detect({}, ToolContract("t", [maybe], version=1))
    assert [(v.kind, v.severity) for v in report.violations] == [
        (ViolationKind.MISSING_REQUIRED_FIELD, Severity.ADVISORY)
    ]


def test_null_on_required_field_is_type_mismatch() -> None:
    contract = _declared_contract("payments.create", _PAYMENTS_SCHEMA)
    report = MismatchDetector().detect({"user_id": None, "amount_cents": 5}, contract)
    assert [(v.kind, v.path) for v in report.blocking] == [(ViolationKind.TYPE_MISMATCH, "user_id")]


def test_unknown_field_severity_is_configurable() -> None:
    contract = _declared_contract("payments.create", _PAYMENTS_SCHEMA)
    policy = DetectionPolicy.from_config(DetectionConfig(unknown_field_severity="advisory"))

    report = MismatchDetector(policy).detect({"user_id": "u", "amount_cents": 1, "extra": True}, contract)

    assert report.passed
    assert report.advisory[0].kind == ViolationKind.UNKNOWN_FIELD


def test_nested_paths_and_opaque_objects() -> None:
    contract = _declared_contract(
        "t",
        {
            "type": "object",
            "required": ["customer", "meta"],
            "properties": {
                "customer": {"type": "object", "required": ["id"], "properties": {"id": {"type": "string"}}},
                "meta": {"type": "object"},
            },
        },
    )

    report = MismatchDetector().detect({"customer": {"id": "c1"}, "meta": {"anything": {"deep": 1}}}, contract)

    assert report.violations == []


@pytest.mark.parametrize("severity", ["blocking", "advisory"])
def test_blocking_violations_sort_first(severity) -> None:
    contract = _declared_contract("payments.create", _PAYMENTS_SCHEMA)
    policy = DetectionPolicy(unknown_field_severity=Severity(severity))
    report = MismatchDetector(policy).detect({"zzz": 1}, contract)
    flags = [v.blocking for v in report.violations]
    assert flags == sorted(flags, reverse=True)
