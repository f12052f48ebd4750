"""Unit tests for contract learning: merge_delta, observe_value, confidence."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from owlmend.errors import ContractContaminationError, VersionConflictError
from owlmend.knowledge import ContractDelta, ContractField, FieldType, MagnitudeStats, merge_delta, observe_value
from owlmend.knowledge.contracts import flatten_payload, infer_type


def test_infer_type_distinguishes_json_types() -> None:
    assert infer_type(True) == FieldType.BOOLEAN
    assert infer_type(3) == FieldType.INTEGER
    assert infer_type(3.0) == FieldType.INTEGER
    assert infer_type(3.5) == FieldType.NUMBER
    assert infer_type("x") == FieldType.STRING
    assert infer_type([1]) == FieldType.ARRAY
    assert infer_type({"a": 1}) == FieldType.OBJECT
    assert infer_type(None) is None


def test_flatten_payload_uses_dotted_paths_and_keeps_lists_as_leaves() -> None:
    flat = flatten_payload({"a": {"b": 1, "c": {"d": "x"}}, "items": [1, 2], "empty": {}})
    assert flat == {"a.b": 1, "a.c.d": "x", "items": [1, 2], "empty": {}}


def test_merge_creates_first_version_from_nothing() -> None:
    delta = ContractDelta(tool_id="t", path="amount", support=1, observed_values=[10])
    merged = merge_delta(None, delta)
    assert merged.version == 1
    assert merged.inferred_type == FieldType.INTEGER
    assert merged.support == 1
    assert merged.minimum == 10.0 and merged.maximum == 10.0
    assert merged.last_corroborated_at == delta.observed_at


def test_merge_never_mutates_previous_version() -> None:
    first = merge_delta(None, ContractDelta(tool_id="t", path="p", support=1, observed_values=["A"]))
    second = merge_delta(first, ContractDelta(tool_id="t", path="p", support=1, observed_values=["B"]))
    assert first.version == 1
    assert first.allowed_values == ["A"]
    assert second.version == 2
    assert second.allowed_values == ["A", "B"]


def test_counter_deltas_commute() -> None:
    base = merge_delta(None, ContractDelta(tool_id="t", path="p", support=1))
    a = ContractDelta(tool_id="t", path="p", support=2, contradictions=1)
    b = ContractDelta(tool_id="t", path="p", required_support=3, required_contradictions=1)
    ab = merge_delta(merge_delta(base, a), b)
    ba = merge_delta(merge_delta(base, b), a)
    for attr in ("support", "contradictions", "required_support", "required_contradictions", "version"):
        assert getattr(ab, attr) == getattr(ba, attr)


def test_negative_increments_are_ignored() -> None:
    base = merge_delta(None, ContractDelta(tool_id="t", path="p", support=5))
    merged = merge_delta(base, ContractDelta(tool_id="t", path="p", support=-3, contradictions=-1))
    assert merged.support == 5
    assert merged.contradictions == 0


def test_cross_tool_evidence_is_rejected() -> None:
    delta = ContractDelta(tool_id="payments.create", path="amount", source_tool_id="refunds.create", support=1)
    with pytest.raises(ContractContaminationError):
        merge_delta(None, delta)


def test_delta_for_another_tools_field_is_rejected() -> None:
    current = ContractField(tool_id="a", path="p", version=1)
    with pytest.raises(ContractContaminationError):
        merge_delta(current, ContractDelta(tool_id="b", path="p", support=1))


def test_stale_assignment_raises_version_conflict() -> None:
    current = merge_delta(None, ContractDelta(tool_id="t", path="p", support=1))
    current = merge_delta(current, ContractDelta(tool_id="t", path="p", support=1))
    stale = ContractDelta(tool_id="t", path="p", expected_version=1, assign={"inferred_type": "string"})
    with pytest.raises(VersionConflictError) as exc_info:
        merge_delta(current, stale)
    assert exc_info.value.expected == 1
    assert exc_info.value.actual == 2


def test_current_assignment_applies() -> None:
    current = merge_delta(None, ContractDelta(tool_id="t", path="p", support=1, observed_values=[1]))
    merged = merge_delta(
        current, ContractDelta(tool_id="t", path="p", expected_version=1, assign={"inferred_type": "string"})
    )
    assert merged.inferred_type == FieldType.STRING


def test_unknown_assignment_key_is_rejected() -> None:
    with pytest.raises(ValueError):
        merge_delta(None, ContractDelta(tool_id="t", path="p", assign={"support": 99}))


def test_enum_opens_after_too_many_distinct_values() -> None:
    item = ContractField(tool_id="t", path="status")
    for i in range(4):
        observe_value(item, f"S{i}", max_enum_values=3)
    assert item.enum_open is True
    assert item.allowed_values == []
    observe_value(item, "S9", max_enum_values=3)
    assert item.allowed_values == []


def test_enum_stability_counts_repeated_values() -> None:
    item = ContractField(tool_id="t", path="status")
    for value in ["A", "B", "A", "A", "B"]:
        observe_value(item, value)
    assert item.allowed_values == ["A", "B"]
    assert item.enum_stable_observations == 3


def test_integer_field_widens_to_number() -> None:
    item = ContractField(tool_id="t", path="rate")
    observe_value(item, 1)
    observe_value(item, 1.5)
    assert item.inferred_type == FieldType.NUMBER


def test_required_confidence_is_zero_without_support() -> None:
    item = ContractField(tool_id="t", path="p", required_contradictions=4)
    assert item.required is False
    assert item.required_confidence == 0.0


def test_required_confidence_follows_beta_posterior() -> None:
    item = ContractField(tool_id="t", path="p", required_support=10)
    assert item.required is True
    assert item.required_confidence == pytest.approx(11 / 12)


def test_confidence_decays_with_corroboration_age() -> None:
    now = datetime(2026, 1, 8, tzinfo=timezone.utc)
    item = ContractField(tool_id="t", path="p", support=8, last_corroborated_at=now - timedelta(hours=168))
    base = item.base_confidence()
    assert base == pytest.approx(0.9)
    assert item.confidence(now=now) == pytest.approx(base * 0.5, rel=1e-3)
    assert item.confidence(now=item.last_corroborated_at) == pytest.approx(base)


def test_magnitude_merge_matches_sequential_observation() -> None:
    values = [10.0, 100.0, 1000.0, 20.0, 3000.0]
    sequential = MagnitudeStats()
    for v in values:
        sequential.observe(v)
    left, right = MagnitudeStats(), MagnitudeStats()
    for v in values[:2]:
        left.observe(v)
    for v in values[2:]:
        right.observe(v)
    merged = left.merge(right)
    assert merged.count == sequential.count
    assert merged.mean == pytest.approx(sequential.mean)
    assert merged.std == pytest.approx(sequential.std)


def test_magnitude_ignores_zero_and_booleans() -> None:
    stats = MagnitudeStats()
    stats.observe(0)
    stats.observe(True)
    assert stats.count == 0
