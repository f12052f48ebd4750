"""Mismatch detector: structural, type, enum, range and unit checks against a learned contract."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any

from owlmend.detection.coercion import CoercionFailed, coerce
from owlmend.detection.report import Coercion, MismatchReport, Severity, Violation, ViolationKind
from owlmend.knowledge.contracts import flatten_payload, is_numeric
from owlmend.knowledge.models import ContractField, FieldType, ToolContract

logger = logging.getLogger(__name__)

_CONTAINER_TYPES = {FieldType.OBJECT, FieldType.ARRAY}


@dataclass
class DetectionPolicy:
    """Thresholds for the detector; built from DetectionConfig."""

    unknown_field_severity: Severity = Severity.BLOCKING
    required_confidence_threshold: float = 0.7
    enum_min_observations: int = 20
    range_slack_factor: float = 0.1
    range_min_observations: int = 10
    unit_z_threshold: float = 3.0
    unit_min_orders: float = 1.0
    unit_min_observations: int = 20
    tolerant_coercion: bool = True
    max_depth: int = 8

    @classmethod
    def from_config(cls, config: Any) -> DetectionPolicy:
        return cls(
            unknown_field_severity=Severity(config.unknown_field_severity),
            required_confidence_threshold=config.required_confidence_threshold,
            enum_min_observations=config.enum_min_observations,
            range_slack_factor=config.range_slack_factor,
            range_min_observations=config.range_min_observations,
            unit_z_threshold=config.unit_z_threshold,
            unit_min_orders=config.unit_min_orders,
            unit_min_observations=config.unit_min_observations,
            tolerant_coercion=config.tolerant_coercion,
            max_depth=config.max_depth,
        )


def _set_path(payload: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    cursor = payload
    for part in parts[:-1]:
        nxt = cursor.get(part)
        if not isinstance(nxt, dict):
            return
        cursor = nxt
    cursor[parts[-1]] = value


def _non_string_keys(payload: dict[Any, Any], prefix: str = "") -> list[str]:
    bad: list[str] = []
    for key, value in payload.items():
        if not isinstance(key, str):
            bad.append(f"{prefix}{key!r}")
            continue
        if isinstance(value, dict):
            bad.extend(_non_string_keys(value, f"{prefix}{key}."))
    return bad


class MismatchDetector:
    """Compare a proposed payload against a tool contract and report violations.

    The detector is pure: it never mutates the payload it is given and never
    touches the knowledge store.
    """

    def __init__(self, policy: DetectionPolicy | None = None) -> None:
        self.policy = policy or DetectionPolicy()

    def detect(self, payload: dict[str, Any], contract: ToolContract | None, tool_id: str = "") -> MismatchReport:
        tool = contract.tool_id if contract is not None else tool_id
        violations = [
            Violation(
                kind=ViolationKind.UNKNOWN_FIELD,
                path=path,
                severity=Severity.BLOCKING,
                message="payload keys must be strings",
                observed=path,
            )
            for path in _non_string_keys(payload)
        ]
        flat = flatten_payload(payload, max_depth=self.policy.max_depth)
        normalized = _deep_copy_json(payload)
        if contract is None or not contract.fields:
            return MismatchReport(
                tool_id=tool,
                violations=violations,
                contract_found=False,
                contract_version=0,
                normalized_payload=normalized,
                present_paths=sorted(flat),
            )

        fields = {f.path: f for f in contract.fields}
        coercions: list[Coercion] = []
        for path, value in flat.items():
            spec = self._lookup(fields, path)
            if spec is None:
                if self._is_container_of_known(fields, path):
                    continue
                violations.append(
                    Violation(
                        kind=ViolationKind.UNKNOWN_FIELD,
                        path=path,
                        severity=self.policy.unknown_field_severity,
                        message=f"'{path}' is not part of the {contract.tool_id} contract",
                        observed=value,
                    )
                )
                continue
            if spec.path != path:
                # Inside an opaque object/array field.
                continue
            checked, field_violations, coercion = self._check_field(spec, value)
            violations.extend(field_violations)
            if coercion is not None:
                coercions.append(coercion)
                _set_path(normalized, path, checked)

        absent_required: list[str] = []
        for spec in contract.fields:
            if not spec.required or self._present(flat, spec.path):
                continue
            absent_required.append(spec.path)
            confidence = spec.required_confidence
            severity = (
                Severity.BLOCKING
                if confidence >= self.policy.required_confidence_threshold
                else Severity.ADVISORY
            )
            violations.append(
                Violation(
                    kind=ViolationKind.MISSING_REQUIRED_FIELD,
                    path=spec.path,
                    severity=severity,
                    message=f"required field '{spec.path}' is missing (confidence {confidence:.2f})",
                    expected=spec.inferred_type.value if spec.inferred_type else None,
                )
            )

        report = MismatchReport(
            tool_id=contract.tool_id,
            violations=violations,
            contract_found=True,
            contract_version=contract.version,
            coercions=coercions,
            normalized_payload=normalized,
            present_paths=sorted(flat),
            absent_required_paths=sorted(absent_required),
        )
        if report.violations:
            logger.debug(
                "detected %d violation(s) for %s (%d blocking)",
                len(report.violations),
                report.tool_id,
                len(report.blocking),
            )
        return report

    @staticmethod
    def _lookup(fields: dict[str, ContractField], path: str) -> ContractField | None:
        spec = fields.get(path)
        if spec is not None:
            return spec
        parts = path.split(".")
        for i in range(len(parts) - 1, 0, -1):
            parent = fields.get(".".join(parts[:i]))
            if parent is not None and parent.inferred_type in _CONTAINER_TYPES:
                return parent
        return None

    @staticmethod
    def _is_container_of_known(fields: dict[str, ContractField], path: str) -> bool:
        prefix = path + "."
        return any(p.startswith(prefix) for p in fields)

    @staticmethod
    def _present(flat: dict[str, Any], path: str) -> bool:
        if path in flat:
            return True
        prefix = path + "."
        return any(p.startswith(prefix) for p in flat)

    def _check_field(
        self, spec: ContractField, value: Any
    ) -> tuple[Any, list[Violation], Coercion | None]:
        out: list[Violation] = []
        checked = value
        coercion: Coercion | None = None

        if value is None:
            if spec.required and spec.required_confidence >= self.policy.required_confidence_threshold:
                out.append(
                    Violation(
                        kind=ViolationKind.TYPE_MISMATCH,
                        path=spec.path,
                        severity=Severity.BLOCKING,
                        message=f"required field '{spec.path}' is null",
                        observed=None,
                        expected=spec.inferred_type.value if spec.inferred_type else None,
                    )
                )
            return checked, out, None

        if spec.inferred_type is not None:
            try:
                checked = coerce(value, spec.inferred_type)
                if not self.policy.tolerant_coercion and (type(checked) is not type(value) or checked != value):
                    raise CoercionFailed("tolerant coercion disabled")
            except CoercionFailed as exc:
                out.append(
                    Violation(
                        kind=ViolationKind.TYPE_MISMATCH,
                        path=spec.path,
                        severity=Severity.BLOCKING,
                        message=f"'{spec.path}' expected {spec.inferred_type.value}: {exc}",
                        observed=value,
                        expected=spec.inferred_type.value,
                    )
                )
                return value, out, None
            if type(checked) is not type(value) or checked != value:
                coercion = Coercion(spec.path, value, checked, spec.inferred_type.value)

        out.extend(self._check_enum(spec, checked))
        if is_numeric(checked):
            out.extend(self._check_range(spec, float(checked)))
            out.extend(self._check_unit(spec, float(checked)))
        return checked, out, coercion

    def _check_enum(self, spec: ContractField, value: Any) -> list[Violation]:
        if spec.enum_open or not spec.allowed_values:
            return []
        if not spec.declared and spec.enum_stable_observations < self.policy.enum_min_observations:
            return []
        if isinstance(value, bool) or not isinstance(value, str | int | float):
            return []
        if str(value) in spec.allowed_values:
            return []
        return [
            Violation(
                kind=ViolationKind.ENUM_VIOLATION,
                path=spec.path,
                severity=Severity.BLOCKING,
                message=f"'{value}' is not one of {len(spec.allowed_values)} known values",
                observed=value,
                expected=list(spec.allowed_values),
            )
        ]

    def _check_range(self, spec: ContractField, value: float) -> list[Violation]:
        if spec.minimum is None or spec.maximum is None:
            return []
        if not spec.declared and spec.observation_count < self.policy.range_min_observations:
            return []
        slack = (spec.maximum - spec.minimum) * self.policy.range_slack_factor
        low, high = spec.minimum - slack, spec.maximum + slack
        if low <= value <= high:
            return []
        return [
            Violation(
                kind=ViolationKind.RANGE_VIOLATION,
                path=spec.path,
                severity=Severity.BLOCKING,
                message=f"{value:g} outside observed range [{low:g}, {high:g}]",
                observed=value,
                expected=[low, high],
            )
        ]

    def _check_unit(self, spec: ContractField, value: float) -> list[Violation]:
        stats = spec.magnitude
        if stats.count < self.policy.unit_min_observations or value == 0 or not math.isfinite(value):
            return []
        distance = abs(math.log10(abs(value)) - stats.mean)
        limit = max(self.policy.unit_z_threshold * stats.std, self.policy.unit_min_orders)
        if distance <= limit:
            return []
        typical = 10 ** stats.mean
        unit = f" {spec.unit}" if spec.unit else ""
        return [
            Violation(
                kind=ViolationKind.UNIT_SUSPECT,
                path=spec.path,
                severity=Severity.ADVISORY,
                message=(
                    f"{value:g}{unit} is {distance:.1f} orders of magnitude from typical "
                    f"values (~{typical:.3g}{unit}); possible unit mismatch"
                ),
                observed=value,
                expected=typical,
            )
        ]


def _deep_copy_json(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _deep_copy_json(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_deep_copy_json(v) for v in value]
    return value
