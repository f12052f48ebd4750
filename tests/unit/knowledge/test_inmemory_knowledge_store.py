"""Unit tests for InMemoryKnowledgeStore."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from owlmend.knowledge import (
    ArbitrationPolicy,
    ContractDelta,
    EntryKind,
    ExecutionTrace,
    InMemoryKnowledgeStore,
    KnowledgeEntry,
    KnowledgeFilters,
    RecipeStatus,
    TraceOutcome,
    TransformRecipe,
)


@pytest.mark.asyncio
async def test_contract_is_assembled_from_latest_versions() -> None:
    store = InMemoryKnowledgeStore()
    await store.upsert_contract(ContractDelta(tool_id="t", path="a", support=1, observed_values=["x"]))
    await store.upsert_contract(ContractDelta(tool_id="t", path="a", support=1, observed_values=["y"]))
    contract = await store.upsert_contract(ContractDelta(tool_id="t", path="b", support=1, observed_values=[1]))

    assert contract.paths == ["a", "b"]
    assert contract.get_field("a").version == 2
    assert contract.get_field("a").allowed_values == ["x", "y"]
    history = await store.contract_history("t", "a")
    assert [f.version for f in history] == [1, 2]
    assert history[0].allowed_values == ["x"]


@pytest.mark.asyncio
async def test_unknown_tool_has_no_contract() -> None:
    assert await InMemoryKnowledgeStore().get_contract("missing") is None


@pytest.mark.asyncio
async def test_returned_contract_is_a_copy() -> None:
    store = InMemoryKnowledgeStore()
    contract = await store.upsert_contract(ContractDelta(tool_id="t", path="a", support=1))
    contract.fields[0].support = 999
    fresh = await store.get_contract("t")
    assert fresh.get_field("a").support == 1


@pytest.mark.asyncio
async def test_query_filters_by_scope_and_kind() -> None:
    store = InMemoryKnowledgeStore()
    await store.put_entry(KnowledgeEntry(kind=EntryKind.RECIPE, tool_id="a", text="a", embedding=[1.0, 0.0]))
    await store.put_entry(KnowledgeEntry(kind=EntryKind.RECIPE, tool_id=None, text="global", embedding=[0.9, 0.1]))
    await store.put_entry(KnowledgeEntry(kind=EntryKind.TRACE, tool_id="a", text="trace", embedding=[1.0, 0.0]))
    await store.put_entry(KnowledgeEntry(kind=EntryKind.RECIPE, tool_id="b", text="other", embedding=[1.0, 0.0]))

    hits = await store.query([1.0, 0.0], KnowledgeFilters(tool_scope="a", kinds=[EntryKind.RECIPE]), k=10)
    assert [e.text for e, _ in hits] == ["a", "global"]
    scoped_only = await store.query(
        [1.0, 0.0], KnowledgeFilters(tool_scope="a", kinds=[EntryKind.RECIPE], include_global=False), k=10
    )
    assert [e.text for e, _ in scoped_only] == ["a"]


@pytest.mark.asyncio
async def test_query_breaks_ties_by_recency() -> None:
    store = InMemoryKnowledgeStore()
    now = datetime.now(timezone.utc)
    await store.put_entry(KnowledgeEntry(text="old", embedding=[1.0, 0.0], created_at=now - timedelta(days=1)))
    await store.put_entry(KnowledgeEntry(text="new", embedding=[2.0, 0.0], created_at=now))
    hits = await store.query([1.0, 0.0], k=2)
    assert [e.text for e, _ in hits] == ["new", "old"]
    assert hits[0][1] == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_query_skips_zero_vectors_and_dimension_mismatch() -> None:
    store = InMemoryKnowledgeStore()
    await store.put_entry(KnowledgeEntry(text="zero", embedding=[0.0, 0.0]))
    await store.put_entry(KnowledgeEntry(text="short", embedding=[1.0]))
    assert await store.query([1.0, 0.0]) == []
    assert await store.query([0.0, 0.0]) == []


@pytest.mark.asyncio
async def test_traces_are_listed_newest_first_and_by_path() -> None:
    store = InMemoryKnowledgeStore()
    now = datetime.now(timezone.utc)
    old = ExecutionTrace(tool_id="t", outcome=TraceOutcome.PASSED, field_paths=("a",), created_at=now - timedelta(1))
    new = ExecutionTrace(tool_id="t", outcome=TraceOutcome.PASSED, field_paths=("b",), created_at=now)
    await store.record_trace(old)
    await store.record_trace(new)
    await store.record_trace(new)

    assert [t.id for t in await store.list_traces("t")] == [new.id, old.id]
    assert [t.id for t in await store.list_traces("t", "a")] == [old.id]
    assert await store.list_traces("other") == []


@pytest.mark.asyncio
async def test_get_recipe_prefers_tool_scope_and_respects_trust() -> None:
    store = InMemoryKnowledgeStore()
    global_recipe = TransformRecipe(
        source_concept="user", target_concept="user_id", success_count=10, status=RecipeStatus.TRUSTED
    )
    scoped = TransformRecipe(source_concept="user", target_concept="user_id", tool_id="t", success_count=1)
    other_tool = TransformRecipe(
        source_concept="user", target_concept="user_id", tool_id="x", success_count=50, status=RecipeStatus.TRUSTED
    )
    for recipe in (global_recipe, scoped, other_tool):
        await store.save_recipe(recipe)

    assert (await store.get_recipe("user", "user_id", "t")).id == scoped.id
    assert (await store.get_recipe("user", "user_id", "t", trusted_only=True)).id == global_recipe.id
    assert {r.id for r in await store.list_recipes("t")} == {global_recipe.id, scoped.id}


@pytest.mark.asyncio
async def test_recipe_outcomes_flag_unreliable_recipes() -> None:
    store = InMemoryKnowledgeStore(arbitration=ArbitrationPolicy(min_trials=3))
    recipe = TransformRecipe(source_concept="a", target_concept="b")
    await store.save_recipe(recipe)
    await store.record_recipe_outcome(recipe.id, True)
    await store.record_recipe_outcome(recipe.id, False)
    updated = await store.record_recipe_outcome(recipe.id, False)

    assert updated.success_count == 1
    assert updated.failure_count == 2
    assert updated.status == RecipeStatus.FLAGGED
    assert updated.version == 4
    assert await store.get_recipe("a", "b") is None
    assert await store.record_recipe_outcome(TransformRecipe().id, True) is None


@pytest.mark.asyncio
async def test_recipe_history_keeps_prior_versions_readable() -> None:
    store = InMemoryKnowledgeStore(arbitration=ArbitrationPolicy(min_trials=3))
    recipe = TransformRecipe(source_concept="a", target_concept="b", success_count=5, status=RecipeStatus.TRUSTED)
    await store.save_recipe(recipe)
    for _ in range(20):
        updated = await store.record_recipe_outcome(recipe.id, False)
    assert updated.status == RecipeStatus.FLAGGED

    history = await store.recipe_history(recipe.id)

    assert [r.version for r in history] == list(range(1, 22))
    assert history[0].status == RecipeStatus.TRUSTED
    assert history[0].failure_count == 0
    assert history[-1].status == RecipeStatus.FLAGGED
    assert await store.recipe_history(TransformRecipe().id) == []


@pytest.mark.asyncio
async def test_resaving_a_recipe_appends_a_version() -> None:
    store = InMemoryKnowledgeStore()
    recipe = TransformRecipe(source_concept="a", target_concept="b")
    await store.save_recipe(recipe)
    recipe.program = "def transform(x):\n    return x\n"
    await store.save_recipe(recipe)

    history = await store.recipe_history(recipe.id)
    assert [(r.version, r.program) for r in history] == [(1, None), (2, recipe.program)]
    assert (await store.get_recipe_by_id(recipe.id)).version == 2
    assert recipe.version == 1


@pytest.mark.asyncio
async def test_mismatch_counter_increments_per_key() -> None:
    store = InMemoryKnowledgeStore()
    assert await store.increment_mismatch("t", "p", "TypeMismatch") == 1
    assert await store.increment_mismatch("t", "p", "TypeMismatch") == 2
    assert await store.increment_mismatch("t", "p", "UnknownField") == 1
