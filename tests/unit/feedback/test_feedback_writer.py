"""Unit tests for FeedbackWriter."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from owlmend.errors import StoreWriteFailedError
from owlmend.feedback import FeedbackWriter, infer_renames
from owlmend.knowledge import (
    EntryKind,
    ExecutionTrace,
    FieldType,
    InMemoryKnowledgeStore,
    RecipeStatus,
    TraceOutcome,
    TransformRecipe,
)

TOOL = "payments.create"


def _writer(store, tmp_path: Path, **kwargs) -> FeedbackWriter:
    kwargs.setdefault("backoff_base_seconds", 0.0)
    return FeedbackWriter(store, fallback_log_path=tmp_path / "fallback.jsonl", **kwargs)


def _fallback_records(tmp_path: Path) -> list[dict]:
    path = tmp_path / "fallback.jsonl"
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def _real_failure(path: str, kind: str, expected=None) -> ExecutionTrace:
    violation = {"kind": kind, "path": path, "severity": "blocking", "expected": expected}
    return ExecutionTrace(tool_id=TOOL, outcome=TraceOutcome.REAL_FAILURE, status_code=422, report={"violations": [violation]})


@pytest.mark.asyncio
async def test_commit_then_flush_records_trace(store, tmp_path) -> None:
    writer = _writer(store, tmp_path)
    trace = ExecutionTrace(tool_id=TOOL, outcome=TraceOutcome.PASSED)

    assert writer.commit(trace) is True
    assert writer.pending == 1
    await writer.flush()

    assert [t.id for t in await store.list_traces(TOOL)] == [trace.id]
    assert writer.stats.committed == 1
    assert writer.stats.processed == 1


@pytest.mark.asyncio
async def test_background_worker_processes_commits(store, tmp_path) -> None:
    writer = _writer(store, tmp_path)
    await writer.start()
    try:
        for _ in range(5):
            writer.commit(ExecutionTrace(tool_id=TOOL, outcome=TraceOutcome.PASSED))
        await writer.flush()
    finally:
        await writer.stop()

    assert len(await store.list_traces(TOOL)) == 5
    assert not writer.running


@pytest.mark.asyncio
async def test_full_queue_diverts_to_fallback_log(store, tmp_path) -> None:
    writer = _writer(store, tmp_path, queue_size=1)
    first = ExecutionTrace(tool_id=TOOL, outcome=TraceOutcome.PASSED)
    second = ExecutionTrace(tool_id=TOOL, outcome=TraceOutcome.UNRESOLVABLE)

    assert writer.commit(first) is True
    assert writer.commit(second) is False

    records = _fallback_records(tmp_path)
    assert [r["id"] for r in records] == [str(second.id)]
    assert records[0]["fallback_reason"] == "queue_full"
    assert writer.stats.diverted == 1


@pytest.mark.asyncio
async def test_retry_resumes_after_the_failed_step(store, tmp_path) -> None:
    writer = _writer(store, tmp_path)
    record_spy = AsyncMock(wraps=store.record_trace)
    store.record_trace = record_spy  # type: ignore[method-assign]
    real_upsert = store.upsert_contract
    calls = {"n": 0}

    async def _flaky_upsert(delta):
        calls["n"] += 1
        if calls["n"] == 2:
            raise ConnectionError("transient")
        return await real_upsert(delta)

    store.upsert_contract = _flaky_upsert  # type: ignore[method-assign]
    trace = ExecutionTrace(
        tool_id=TOOL, outcome=TraceOutcome.REAL_SUCCESS, final_payload={"a": 1, "b": "x"}, status_code=200
    )

    writer.commit(trace)
    await writer.flush()

    assert record_spy.await_count == 1
    contract = await store.get_contract(TOOL)
    assert contract.paths == ["a", "b"]
    assert contract.get_field("a").support == 1
    assert _fallback_records(tmp_path) == []


@pytest.mark.asyncio
async def test_exhausted_retries_divert_trace(tmp_path) -> None:
    store = InMemoryKnowledgeStore()
    store.record_trace = AsyncMock(side_effect=ConnectionError("db down"))  # type: ignore[method-assign]
    writer = _writer(store, tmp_path, max_retries=2)
    trace = ExecutionTrace(tool_id=TOOL, outcome=TraceOutcome.PASSED)

    writer.commit(trace)
    await writer.flush()

    assert store.record_trace.await_count == 3
    records = _fallback_records(tmp_path)
    assert records[0]["id"] == str(trace.id)
    assert records[0]["fallback_reason"].startswith("store_write_failed")
    assert writer.stats.failed == 1


@pytest.mark.asyncio
async def test_real_success_teaches_fields_and_optionality(store, tmp_path) -> None:
    writer = _writer(store, tmp_path)
    await writer.declare_contract(TOOL, {"user_id": "string", "note": "string"})
    trace = ExecutionTrace(
        tool_id=TOOL,
        outcome=TraceOutcome.REAL_SUCCESS,
        original_payload={"user_id": "u1", "region": "eu"},
        absent_paths=("note",),
        status_code=201,
    )

    writer.commit(trace)
    await writer.flush()

    contract = await store.get_contract(TOOL)
    assert contract.get_field("region").inferred_type == FieldType.STRING
    assert contract.get_field("user_id").support == 11
    assert contract.get_field("note").required_contradictions == 1


@pytest.mark.asyncio
async def test_detected_outcomes_do_not_change_contracts(store, tmp_path) -> None:
    writer = _writer(store, tmp_path)
    writer.commit(ExecutionTrace(tool_id=TOOL, outcome=TraceOutcome.REPAIRED, original_payload={"x": 1}))
    await writer.flush()
    assert await store.get_contract(TOOL) is None


@pytest.mark.asyncio
async def test_repeated_type_mismatch_updates_declared_type(store, tmp_path) -> None:
    writer = _writer(store, tmp_path, mismatch_threshold=3)

    for _ in range(2):
        writer.commit(_real_failure("qty", "TypeMismatch", "integer"))
    await writer.flush()
    assert await store.get_contract(TOOL) is None

    writer.commit(_real_failure("qty", "TypeMismatch", "integer"))
    await writer.flush()

    contract = await store.get_contract(TOOL)
    assert contract.get_field("qty").inferred_type == FieldType.INTEGER


@pytest.mark.asyncio
async def test_repeated_missing_field_becomes_required(store, tmp_path) -> None:
    writer = _writer(store, tmp_path, mismatch_threshold=2)
    for _ in range(2):
        writer.commit(_real_failure("region", "MissingRequiredField"))
    await writer.flush()

    field = (await store.get_contract(TOOL)).get_field("region")
    assert field.required
    assert field.required_support == 10


@pytest.mark.asyncio
async def test_mismatch_retry_counts_and_records_evidence_once(store, tmp_path) -> None:
    writer = _writer(store, tmp_path, mismatch_threshold=5)
    await writer.declare_contract(TOOL, {"qty": "string"})
    real_increment = store.increment_mismatch
    real_upsert = store.upsert_contract
    failures = {"increment": 1, "upsert": 1}

    async def _flaky_increment(tool_id, path, kind):
        if failures["increment"]:
            failures["increment"] -= 1
            raise ConnectionError("transient")
        return await real_increment(tool_id, path, kind)

    async def _flaky_upsert(delta):
        if failures["upsert"]:
            failures["upsert"] -= 1
            raise ConnectionError("transient")
        return await real_upsert(delta)

    store.increment_mismatch = _flaky_increment  # type: ignore[method-assign]
    store.upsert_contract = _flaky_upsert  # type: ignore[method-assign]

    writer.commit(_real_failure("qty", "TypeMismatch", "integer"))
    await writer.flush()

    assert failures == {"increment": 0, "upsert": 0}
    assert await real_increment(TOOL, "qty", "TypeMismatch") == 2
    assert (await store.get_contract(TOOL)).get_field("qty").contradictions == 1
    assert _fallback_records(tmp_path) == []


@pytest.mark.asyncio
async def test_recipe_outcomes_follow_trace_outcome(store, tmp_path, make_recipe) -> None:
    recipe = make_recipe("user", "user_id")
    recipe.success_count = 0
    recipe.status = RecipeStatus.CANDIDATE
    await store.save_recipe(recipe)
    writer = _writer(store, tmp_path)

    writer.commit(ExecutionTrace(tool_id=TOOL, outcome=TraceOutcome.REPAIRED, applied_recipe_ids=(recipe.id,)))
    writer.commit(ExecutionTrace(tool_id=TOOL, outcome=TraceOutcome.UNRESOLVABLE, applied_recipe_ids=(recipe.id,)))
    writer.commit(ExecutionTrace(tool_id=TOOL, outcome=TraceOutcome.REAL_FAILURE, applied_recipe_ids=(recipe.id,)))
    await writer.flush()

    updated = await store.get_recipe_by_id(recipe.id)
    assert (updated.success_count, updated.failure_count) == (1, 2)
    assert updated.status == RecipeStatus.FLAGGED


@pytest.mark.asyncio
async def test_repaired_trace_teaches_rename_recipes(store, retrieval, tmp_path) -> None:
    writer = _writer(store, tmp_path, retrieval=retrieval)
    trace = ExecutionTrace(
        tool_id=TOOL,
        outcome=TraceOutcome.REPAIRED,
        original_payload={"user": "abc123", "amt": "19.99"},
        final_payload={"user_id": "abc123", "amount_cents": 1999},
        strategy="inline_model_fix",
    )

    writer.commit(trace)
    await writer.flush()

    recipes = {(r.source_field, r.target_field): r for r in await store.list_recipes(TOOL)}
    assert set(recipes) == {("user", "user_id"), ("amt", "amount_cents")}
    scale = recipes[("amt", "amount_cents")]
    assert scale.rule.op == "scale"
    assert scale.rule.params == {"factor": "100", "round": "half_up"}
    assert scale.status == RecipeStatus.CANDIDATE
    hits = await retrieval.retrieve("recipe amt -> amount_cents", kinds=[EntryKind.RECIPE], tool_scope=TOOL)
    assert hits and hits[0].entry.ref_id in {str(r.id) for r in recipes.values()}


@pytest.mark.asyncio
async def test_generated_program_is_cached_by_signature(store, tmp_path) -> None:
    writer = _writer(store, tmp_path)
    program = "def transform(payload):\n    return payload\n"
    trace = ExecutionTrace(
        tool_id=TOOL,
        outcome=TraceOutcome.REPAIRED,
        report={"violations": [], "program_signature": "UnknownField:amt"},
        final_payload={"amount_cents": 1},
        generated_program=program,
    )

    writer.commit(trace)
    writer.commit(trace)
    await writer.flush()

    cached = await store.list_recipes(TOOL, "UnknownField:amt", TOOL)
    assert len(cached) == 1
    assert cached[0].program == program
    assert cached[0].is_program


@pytest.mark.asyncio
async def test_stop_diverts_in_flight_and_pending_traces(tmp_path) -> None:
    store = InMemoryKnowledgeStore()
    gate = asyncio.Event()

    async def _blocked(trace):
        await gate.wait()

    store.record_trace = _blocked  # type: ignore[method-assign]
    writer = _writer(store, tmp_path, flush_timeout_seconds=0.05)
    await writer.start()
    traces = [ExecutionTrace(tool_id=TOOL, outcome=TraceOutcome.PASSED) for _ in range(3)]
    for trace in traces:
        writer.commit(trace)
    await asyncio.sleep(0)

    await writer.stop()

    records = _fallback_records(tmp_path)
    assert sorted(r["id"] for r in records) == sorted(str(t.id) for t in traces)
    assert {r["fallback_reason"] for r in records} == {"shutdown"}
    assert writer.pending == 0


@pytest.mark.asyncio
async def test_declare_contract_and_recipe(store, retrieval, tmp_path) -> None:
    writer = _writer(store, tmp_path, retrieval=retrieval, declaration_weight=5)

    contract = await writer.declare_contract(TOOL, {"user_id": "string"})
    recipe = await writer.declare_recipe(TransformRecipe(source_field="user", target_field="user_id", tool_id=TOOL))

    assert contract.get_field("user_id").required_support == 5
    assert recipe.source_concept == "user"
    assert await store.get_recipe("user", "user_id", TOOL) is not None
    kinds = {h.kind for h in await retrieval.retrieve("user_id", tool_scope=TOOL)}
    assert kinds == {EntryKind.CONTRACT_FIELD, EntryKind.RECIPE}
    with pytest.raises(ValueError):
        await writer.declare_contract(TOOL, {"x": "blob"})
    with pytest.raises(ValueError):
        await writer.declare_recipe(TransformRecipe())


@pytest.mark.asyncio
async def test_declare_contract_gives_up_on_persistent_store_errors(tmp_path) -> None:
    store = InMemoryKnowledgeStore()
    store.upsert_contract = AsyncMock(side_effect=ConnectionError("down"))  # type: ignore[method-assign]
    writer = _writer(store, tmp_path, max_retries=1)
    with pytest.raises(StoreWriteFailedError):
        await writer.declare_contract(TOOL, {"x": "string"})


def test_infer_renames_requires_a_unique_match() -> None:
    assert infer_renames({"a": "same", "b": "same"}, {"c": "same"}, TOOL) == []
    [recipe] = infer_renames({"price": 2}, {"price_milli": 2000}, TOOL)
    assert recipe.rule.params == {"factor": "1000", "round": "half_up"}
    [cast] = infer_renames({"qty": "5"}, {"quantity": 5}, TOOL)
    assert cast.rule.op == "cast"
    assert infer_renames({"a": 3}, {"b": 7}, TOOL) == []


def test_invalid_writer_settings(store) -> None:
    with pytest.raises(ValueError):
        FeedbackWriter(store, queue_size=0)
    with pytest.raises(ValueError):
        FeedbackWriter(store, mismatch_threshold=0)


def test_from_config(store, config) -> None:
    writer = FeedbackWriter.from_config(store, config)
    assert writer.fallback_log_path == Path(config.feedback.fallback_log_path)
    assert writer.declaration_weight == config.knowledge.declaration_weight
