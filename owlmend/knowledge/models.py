"""Data models for the knowledge store: contracts, recipes, entries and traces."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID, uuid4


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def time_decay(age_hours: float, half_life_hours: float = 168.0) -> float:
    """Exponential decay; half_life_hours=168 (7 days) -> weight 0.5 at 7 days."""
    if half_life_hours <= 0:
        raise ValueError("half_life_hours must be > 0")
    if age_hours <= 0:
        return 1.0
    return math.exp(-0.693 * age_hours / half_life_hours)


class FieldType(str, Enum):
    """Inferred JSON type of a contract field."""

    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"


class RecipeStatus(str, Enum):
    """Trust classification of a transformation recipe."""

    CANDIDATE = "candidate"
    TRUSTED = "trusted"
    FLAGGED = "flagged"


class EntryKind(str, Enum):
    """Kind of an indexed knowledge entry."""

    CONTRACT_FIELD = "contract_field"
    RECIPE = "recipe"
    TRACE = "trace"
    GUIDANCE = "guidance"


class TraceOutcome(str, Enum):
    """Outcome of one attempted call."""

    PASSED = "passed"
    REPAIRED = "repaired"
    UNRESOLVABLE = "unresolvable"
    CANCELLED = "cancelled"
    REAL_SUCCESS = "real_success"
    REAL_FAILURE = "real_failure"

    @property
    def is_success(self) -> bool:
        return self in {TraceOutcome.PASSED, TraceOutcome.REPAIRED, TraceOutcome.REAL_SUCCESS}

    @property
    def is_failure(self) -> bool:
        return self in {TraceOutcome.UNRESOLVABLE, TraceOutcome.REAL_FAILURE}


@dataclass
class MagnitudeStats:
    """Running statistics of log10(|x|) for unit-drift detection (Welford)."""

    count: int = 0
    mean: float = 0.0
    m2: float = 0.0

    def observe(self, value: float) -> None:
        if isinstance(value, bool) or not isinstance(value, int | float):
            return
        if value == 0 or not math.isfinite(value):
            return
        x = math.log10(abs(value))
        self.count += 1
        delta = x - self.mean
        self.mean += delta / self.count
        self.m2 += delta * (x - self.mean)

    def merge(self, other: MagnitudeStats) -> MagnitudeStats:
        """Combine two partial statistics (Chan et al.); order independent."""
        if other.count == 0:
            return MagnitudeStats(self.count, self.mean, self.m2)
        if self.count == 0:
            return MagnitudeStats(other.count, other.mean, other.m2)
        n = self.count + other.count
        delta = other.mean - self.mean
        mean = self.mean + delta * other.count / n
        m2 = self.m2 + other.m2 + delta * delta * self.count * other.count / n
        return MagnitudeStats(n, mean, m2)

    @property
    def std(self) -> float:
        if self.count < 2:
            return 0.0
        return math.sqrt(self.m2 / (self.count - 1))

    def to_dict(self) -> dict[str, float]:
        return {"count": self.count, "mean": self.mean, "m2": self.m2}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> MagnitudeStats:
        if not data:
            return cls()
        return cls(int(data.get("count", 0)), float(data.get("mean", 0.0)), float(data.get("m2", 0.0)))


@dataclass
class ContractField:
    """One version of one field in a tool's learned contract."""

    tool_id: str = ""
    path: str = ""
    inferred_type: FieldType | None = None
    unit: str | None = None
    required_support: int = 0
    required_contradictions: int = 0
    allowed_values: list[str] = field(default_factory=list)
    enum_stable_observations: int = 0
    enum_open: bool = False
    minimum: float | None = None
    maximum: float | None = None
    magnitude: MagnitudeStats = field(default_factory=MagnitudeStats)
    support: int = 0
    contradictions: int = 0
    observation_count: int = 0
    last_observed_at: datetime | None = None
    last_corroborated_at: datetime | None = None
    declared: bool = False
    version: int = 1
    created_at: datetime = field(default_factory=_now_utc)

    @property
    def required(self) -> bool:
        return self.required_support > self.required_contradictions

    @property
    def required_confidence(self) -> float:
        """Posterior belief that the field is required; 0.0 without evidence."""
        if self.required_support <= 0:
            return 0.0
        return (self.required_support + 1) / (self.required_support + self.required_contradictions + 2)

    def base_confidence(self, prior_support: float = 1.0, prior_contradictions: float = 1.0) -> float:
        return (self.support + prior_support) / (
            self.support + self.contradictions + prior_support + prior_contradictions
        )

    def confidence(self, now: datetime | None = None, half_life_hours: float = 168.0) -> float:
        """Beta-mean confidence decayed by the age of the last corroboration."""
        base = self.base_confidence()
        if self.last_corroborated_at is None:
            return base
        current = now or _now_utc()
        corroborated = self.last_corroborated_at
        if corroborated.tzinfo is None:
            corroborated = corroborated.replace(tzinfo=timezone.utc)
        age_hours = (current - corroborated).total_seconds() / 3600.0
        return base * time_decay(age_hours, half_life_hours)


@dataclass
class ToolContract:
    """Latest assembled view of a tool's contract."""

    tool_id: str
    fields: list[ContractField] = field(default_factory=list)
    version: int = 0
    updated_at: datetime = field(default_factory=_now_utc)

    def get_field(self, path: str) -> ContractField | None:
        for item in self.fields:
            if item.path == path:
                return item
        return None

    @property
    def paths(self) -> list[str]:
        return [item.path for item in self.fields]


@dataclass
class ContractDelta:
    """One learning about one field; merged by the store into a new field version.

    Counter increments commute, so concurrent deltas merge. ``assign`` holds
    non-commutative attribute updates that require ``expected_version`` to be
    current when set.
    """

    tool_id: str
    path: str
    source_tool_id: str | None = None
    source_trace_id: UUID | None = None
    expected_version: int | None = None
    assign: dict[str, Any] = field(default_factory=dict)
    support: int = 0
    contradictions: int = 0
    required_support: int = 0
    required_contradictions: int = 0
    observed_values: list[Any] = field(default_factory=list)
    observed_at: datetime = field(default_factory=_now_utc)

    @property
    def has_assignments(self) -> bool:
        return bool(self.assign)


@dataclass
class TransformRule:
    """Closed-form deterministic transformation (or a sandbox program reference)."""

    op: str = "identity"
    params: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"op": self.op, "params": dict(self.params)}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> TransformRule:
        if not data:
            return cls()
        params = data.get("params")
        return cls(op=str(data.get("op", "identity")), params=dict(params) if isinstance(params, dict) else {})


@dataclass
class TransformRecipe:
    """Reusable transformation between two semantic concepts."""

    id: UUID = field(default_factory=uuid4)
    source_concept: str = ""
    target_concept: str = ""
    source_field: str = ""
    target_field: str = ""
    tool_id: str | None = None
    rule: TransformRule = field(default_factory=TransformRule)
    program: str | None = None
    success_count: int = 0
    failure_count: int = 0
    status: RecipeStatus = RecipeStatus.CANDIDATE
    version: int = 1
    created_at: datetime = field(default_factory=_now_utc)
    updated_at: datetime = field(default_factory=_now_utc)

    @property
    def trials(self) -> int:
        return self.success_count + self.failure_count

    @property
    def success_rate(self) -> float:
        if self.trials == 0:
            return 0.0
        return self.success_count / self.trials

    @property
    def is_program(self) -> bool:
        return self.rule.op == "program" or self.program is not None

    def describe(self) -> str:
        scope = self.tool_id or "*"
        return (
            f"recipe {self.source_concept} -> {self.target_concept} "
            f"({self.source_field} -> {self.target_field}) tool={scope} op={self.rule.op}"
        )


@dataclass
class KnowledgeEntry:
    """Indexed retrieval document."""

    id: UUID = field(default_factory=uuid4)
    kind: EntryKind = EntryKind.GUIDANCE
    tool_id: str | None = None
    text: str = ""
    embedding: list[float] | None = None
    ref_id: str | None = None
    success_rate: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_now_utc)


@dataclass
class KnowledgeFilters:
    """Structured filters applied to vector queries."""

    tool_scope: str | None = None
    kinds: list[EntryKind] | None = None
    include_global: bool = True

    def matches(self, entry: KnowledgeEntry) -> bool:
        if self.kinds and entry.kind not in self.kinds:
            return False
        if self.tool_scope is None:
            return True
        if entry.tool_id == self.tool_scope:
            return True
        return self.include_global and entry.tool_id is None


@dataclass(frozen=True)
class StrategyAttempt:
    """One strategy attempt within a repair."""

    strategy: str
    status: str
    detail: str = ""
    duration_ms: int = 0


@dataclass(frozen=True)
class ExecutionTrace:
    """Immutable record of one attempted call."""

    tool_id: str
    outcome: TraceOutcome
    id: UUID = field(default_factory=uuid4)
    session_id: str | None = None
    plan_step: str | None = None
    original_payload: dict[str, Any] = field(default_factory=dict)
    report: dict[str, Any] = field(default_factory=dict)
    strategy: str | None = None
    attempts: tuple[StrategyAttempt, ...] = ()
    state_history: tuple[str, ...] = ()
    final_payload: dict[str, Any] | None = None
    status_code: int | None = None
    error: str | None = None
    latency_ms: int = 0
    applied_recipe_ids: tuple[UUID, ...] = ()
    generated_program: str | None = None
    field_paths: tuple[str, ...] = ()
    absent_paths: tuple[str, ...] = ()
    created_at: datetime = field(default_factory=_now_utc)

    @property
    def violations(self) -> list[dict[str, Any]]:
        raw = self.report.get("violations", [])
        return [item for item in raw if isinstance(item, dict)] if isinstance(raw, list) else []

    def references(self, tool_id: str, path: str) -> bool:
        """True when this trace carries evidence about exactly tool_id:path."""
        if self.tool_id != tool_id:
            return False
        if path in self.field_paths or path in self.absent_paths:
            return True
        return any(v.get("path") == path for v in self.violations)
