"""Result returned by validate-and-repair."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from owlmend.detection.report import MismatchReport, Violation
from owlmend.errors import UnresolvableError
from owlmend.knowledge.models import ExecutionTrace


class RepairStatus(str, Enum):
    PASSED = "passed"
    REPAIRED = "repaired"
    UNRESOLVABLE = "unresolvable"


@dataclass
class RepairOutcome:
    """Final payload (or remaining violations) plus the trace of how it was reached."""

    status: RepairStatus
    final_payload: dict[str, Any] | None
    violations: list[Violation] = field(default_factory=list)
    trace: ExecutionTrace | None = None
    report: MismatchReport | None = None

    @property
    def ok(self) -> bool:
        return self.status != RepairStatus.UNRESOLVABLE

    @property
    def blocking(self) -> list[Violation]:
        return [v for v in self.violations if v.blocking]

    def raise_for_status(self) -> None:
        if self.ok:
            return
        summary = ", ".join(f"{v.kind.value}({v.path})" for v in self.blocking)
        raise UnresolvableError(f"unresolvable call: {summary}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "final_payload": self.final_payload,
            "violations": [v.to_dict() for v in self.violations],
            "trace_id": str(self.trace.id) if self.trace is not None else None,
            "strategy": self.trace.strategy if self.trace is not None else None,
        }
