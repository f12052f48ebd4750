"""JSON-safe conversion of knowledge models (JSONB columns, fallback log, CLI output)."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from owlmend.knowledge.models import (
    ContractField,
    ExecutionTrace,
    FieldType,
    MagnitudeStats,
    RecipeStatus,
    StrategyAttempt,
    ToolContract,
    TraceOutcome,
    TransformRecipe,
    TransformRule,
)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_dt(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=timezone.utc)


def contract_field_to_dict(item: ContractField) -> dict[str, Any]:
    return {
        "tool_id": item.tool_id,
        "path": item.path,
        "inferred_type": item.inferred_type.value if item.inferred_type else None,
        "unit": item.unit,
        "required": item.required,
        "required_support": item.required_support,
        "required_contradictions": item.required_contradictions,
        "allowed_values": list(item.allowed_values),
        "enum_stable_observations": item.enum_stable_observations,
        "enum_open": item.enum_open,
        "minimum": item.minimum,
        "maximum": item.maximum,
        "magnitude": item.magnitude.to_dict(),
        "support": item.support,
        "contradictions": item.contradictions,
        "observation_count": item.observation_count,
        "last_observed_at": _iso(item.last_observed_at),
        "last_corroborated_at": _iso(item.last_corroborated_at),
        "declared": item.declared,
        "version": item.version,
        "created_at": _iso(item.created_at),
    }


def contract_field_from_dict(data: dict[str, Any]) -> ContractField:
    inferred = data.get("inferred_type")
    return ContractField(
        tool_id=str(data.get("tool_id", "")),
        path=str(data.get("path", "")),
        inferred_type=FieldType(inferred) if inferred else None,
        unit=data.get("unit"),
        required_support=int(data.get("required_support", 0)),
        required_contradictions=int(data.get("required_contradictions", 0)),
        allowed_values=[str(v) for v in data.get("allowed_values") or []],
        enum_stable_observations=int(data.get("enum_stable_observations", 0)),
        enum_open=bool(data.get("enum_open", False)),
        minimum=data.get("minimum"),
        maximum=data.get("maximum"),
        magnitude=MagnitudeStats.from_dict(data.get("magnitude")),
        support=int(data.get("support", 0)),
        contradictions=int(data.get("contradictions", 0)),
        observation_count=int(data.get("observation_count", 0)),
        last_observed_at=_parse_dt(data.get("last_observed_at")),
        last_corroborated_at=_parse_dt(data.get("last_corroborated_at")),
        declared=bool(data.get("declared", False)),
        version=int(data.get("version", 1)),
        created_at=_parse_dt(data.get("created_at")) or datetime.now(timezone.utc),
    )


def contract_to_dict(contract: ToolContract) -> dict[str, Any]:
    return {
        "tool_id": contract.tool_id,
        "version": contract.version,
        "updated_at": _iso(contract.updated_at),
        "fields": [contract_field_to_dict(f) for f in contract.fields],
    }


def recipe_to_dict(recipe: TransformRecipe) -> dict[str, Any]:
    return {
        "id": str(recipe.id),
        "source_concept": recipe.source_concept,
        "target_concept": recipe.target_concept,
        "source_field": recipe.source_field,
        "target_field": recipe.target_field,
        "tool_id": recipe.tool_id,
        "rule": recipe.rule.to_dict(),
        "program": recipe.program,
        "success_count": recipe.success_count,
        "failure_count": recipe.failure_count,
        "status": recipe.status.value,
        "version": recipe.version,
        "created_at": _iso(recipe.created_at),
        "updated_at": _iso(recipe.updated_at),
    }


def recipe_from_dict(data: dict[str, Any]) -> TransformRecipe:
    """Build a recipe from a dict; concepts default to the field names."""
    source_field = str(data.get("source_field") or data.get("source_concept") or "")
    target_field = str(data.get("target_field") or data.get("target_concept") or "")
    kwargs: dict[str, Any] = {
        "source_concept": str(data.get("source_concept") or source_field),
        "target_concept": str(data.get("target_concept") or target_field),
        "source_field": source_field,
        "target_field": target_field,
        "tool_id": data.get("tool_id"),
        "rule": TransformRule.from_dict(data.get("rule")),
        "program": data.get("program"),
        "success_count": int(data.get("success_count", 0)),
        "failure_count": int(data.get("failure_count", 0)),
        "status": RecipeStatus(data.get("status", RecipeStatus.CANDIDATE.value)),
        "version": int(data.get("version", 1)),
    }
    if data.get("id"):
        kwargs["id"] = UUID(str(data["id"]))
    for key in ("created_at", "updated_at"):
        parsed = _parse_dt(data.get(key))
        if parsed is not None:
            kwargs[key] = parsed
    return TransformRecipe(**kwargs)


def trace_to_dict(trace: ExecutionTrace) -> dict[str, Any]:
    return {
        "id": str(trace.id),
        "tool_id": trace.tool_id,
        "outcome": trace.outcome.value,
        "session_id": trace.session_id,
        "plan_step": trace.plan_step,
        "original_payload": trace.original_payload,
        "report": trace.report,
        "strategy": trace.strategy,
        "attempts": [
            {"strategy": a.strategy, "status": a.status, "detail": a.detail, "duration_ms": a.duration_ms}
            for a in trace.attempts
        ],
        "state_history": list(trace.state_history),
        "final_payload": trace.final_payload,
        "status_code": trace.status_code,
        "error": trace.error,
        "latency_ms": trace.latency_ms,
        "applied_recipe_ids": [str(r) for r in trace.applied_recipe_ids],
        "generated_program": trace.generated_program,
        "field_paths": list(trace.field_paths),
        "absent_paths": list(trace.absent_paths),
        "created_at": _iso(trace.created_at),
    }


def trace_from_dict(data: dict[str, Any]) -> ExecutionTrace:
    return ExecutionTrace(
        id=UUID(str(data["id"])),
        tool_id=str(data["tool_id"]),
        outcome=TraceOutcome(data["outcome"]),
        session_id=data.get("session_id"),
        plan_step=data.get("plan_step"),
        original_payload=dict(data.get("original_payload") or {}),
        report=dict(data.get("report") or {}),
        strategy=data.get("strategy"),
        attempts=tuple(
            StrategyAttempt(
                strategy=str(a.get("strategy", "")),
                status=str(a.get("status", "")),
                detail=str(a.get("detail", "")),
                duration_ms=int(a.get("duration_ms", 0)),
            )
            for a in data.get("attempts") or []
        ),
        state_history=tuple(data.get("state_history") or ()),
        final_payload=data.get("final_payload"),
        status_code=data.get("status_code"),
        error=data.get("error"),
        latency_ms=int(data.get("latency_ms", 0)),
        applied_recipe_ids=tuple(UUID(str(r)) for r in data.get("applied_recipe_ids") or ()),
        generated_program=data.get("generated_program"),
        field_paths=tuple(data.get("field_paths") or ()),
        absent_paths=tuple(data.get("absent_paths") or ()),
        created_at=_parse_dt(data.get("created_at")) or datetime.now(timezone.utc),
    )
