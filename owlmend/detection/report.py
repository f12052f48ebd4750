"""Violation and MismatchReport types produced by the detector."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ViolationKind(str, Enum):
    MISSING_REQUIRED_FIELD = "MissingRequiredField"
    UNKNOWN_FIELD = "UnknownField"
    TYPE_MISMATCH = "TypeMismatch"
    ENUM_VIOLATION = "EnumViolation"
    UNIT_SUSPECT = "UnitSuspect"
    RANGE_VIOLATION = "RangeViolation"


class Severity(str, Enum):
    BLOCKING = "blocking"
    ADVISORY = "advisory"


# Violation kinds whose repair needs exact arithmetic or date handling.
PRECISION_SENSITIVE_KINDS = frozenset(
    {ViolationKind.TYPE_MISMATCH, ViolationKind.RANGE_VIOLATION, ViolationKind.UNIT_SUSPECT}
)


@dataclass(frozen=True)
class Violation:
    """One contract violation found in a proposed payload."""

    kind: ViolationKind
    path: str
    severity: Severity
    message: str = ""
    observed: Any = None
    expected: Any = None

    @property
    def blocking(self) -> bool:
        return self.severity == Severity.BLOCKING

    def sort_key(self) -> tuple[int, str, str]:
        return (0 if self.blocking else 1, self.path, self.kind.value)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "path": self.path,
            "severity": self.severity.value,
            "message": self.message,
            "observed": _jsonable(self.observed),
            "expected": _jsonable(self.expected),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Violation:
        return cls(
            kind=ViolationKind(data["kind"]),
            path=str(data["path"]),
            severity=Severity(data.get("severity", Severity.BLOCKING.value)),
            message=str(data.get("message", "")),
            observed=data.get("observed"),
            expected=data.get("expected"),
        )


@dataclass(frozen=True)
class Coercion:
    """A value accepted after tolerant conversion (e.g. "42" for an integer field)."""

    path: str
    original: Any
    coerced: Any
    target_type: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "original": _jsonable(self.original),
            "coerced": _jsonable(self.coerced),
            "target_type": self.target_type,
        }


@dataclass
class MismatchReport:
    """Outcome of checking one payload against one contract."""

    tool_id: str
    violations: list[Violation] = field(default_factory=list)
    contract_found: bool = True
    contract_version: int = 0
    coercions: list[Coercion] = field(default_factory=list)
    normalized_payload: dict[str, Any] = field(default_factory=dict)
    present_paths: list[str] = field(default_factory=list)
    absent_required_paths: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.violations = sorted(self.violations, key=Violation.sort_key)

    @property
    def blocking(self) -> list[Violation]:
        return [v for v in self.violations if v.blocking]

    @property
    def advisory(self) -> list[Violation]:
        return [v for v in self.violations if not v.blocking]

    @property
    def has_blocking(self) -> bool:
        return any(v.blocking for v in self.violations)

    @property
    def passed(self) -> bool:
        return not self.has_blocking

    def of_kind(self, kind: ViolationKind, *, blocking_only: bool = True) -> list[Violation]:
        return [v for v in self.violations if v.kind == kind and (v.blocking or not blocking_only)]

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool_id": self.tool_id,
            "contract_found": self.contract_found,
            "contract_version": self.contract_version,
            "violations": [v.to_dict() for v in self.violations],
            "coercions": [c.to_dict() for c in self.coercions],
        }


def violation_signature(violations: list[Violation] | list[dict[str, Any]]) -> str:
    """Stable key for a set of blocking violations, used to cache generated programs."""
    parts: set[str] = set()
    for item in violations:
        if isinstance(item, Violation):
            if item.blocking:
                parts.add(f"{item.kind.value}:{item.path}")
        elif item.get("severity", Severity.BLOCKING.value) == Severity.BLOCKING.value:
            parts.add(f"{item.get('kind')}:{item.get('path')}")
    return "|".join(sorted(parts))


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, bool | int | float | str):
        return value
    if isinstance(value, list | tuple):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    return str(value)
