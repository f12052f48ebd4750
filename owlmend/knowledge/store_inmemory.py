"""In-memory KnowledgeStore: dict storage, per-key locks, brute-force cosine (mock mode / tests)."""

from __future__ import annotations

import asyncio
import heapq
import math
from collections import defaultdict
from copy import deepcopy
from datetime import datetime, timezone
from uuid import UUID

from owlmend.knowledge.arbitration import ArbitrationPolicy
from owlmend.knowledge.contracts import DEFAULT_MAX_ENUM_VALUES, merge_delta
from owlmend.knowledge.models import (
    ContractDelta,
    ContractField,
    ExecutionTrace,
    KnowledgeEntry,
    KnowledgeFilters,
    ToolContract,
    TransformRecipe,
    _now_utc,
)
from owlmend.knowledge.store import KnowledgeStore


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity in [-1, 1]; 0 if either norm is 0 or dimensions differ."""
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b, strict=True))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(x * x for x in b))
    if na <= 0 or nb <= 0:
        return 0.0
    return dot / (na * nb)


def _aware(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def assemble_contract(tool_id: str, latest: list[ContractField]) -> ToolContract | None:
    """Build the ToolContract view from the latest version of each field."""
    if not latest:
        return None
    fields = sorted(latest, key=lambda f: f.path)
    return ToolContract(
        tool_id=tool_id,
        fields=fields,
        version=max(f.version for f in fields),
        updated_at=max(_aware(f.created_at) for f in fields),
    )


class InMemoryKnowledgeStore(KnowledgeStore):
    """Process-local store. Version chains are append-only lists keyed by (tool_id, path)."""

    def __init__(
        self,
        arbitration: ArbitrationPolicy | None = None,
        max_enum_values: int = DEFAULT_MAX_ENUM_VALUES,
    ) -> None:
        self._arbitration = arbitration or ArbitrationPolicy()
        self._max_enum_values = max_enum_values
        self._fields: dict[tuple[str, str], list[ContractField]] = defaultdict(list)
        self._entries: dict[UUID, KnowledgeEntry] = {}
        self._embedding_norms: dict[UUID, float] = {}
        self._traces: list[ExecutionTrace] = []
        self._recipes: dict[UUID, TransformRecipe] = {}
        self._recipe_versions: dict[UUID, list[TransformRecipe]] = defaultdict(list)
        self._mismatches: dict[tuple[str, str, str], int] = defaultdict(int)
        self._locks: dict[tuple[str, ...], asyncio.Lock] = defaultdict(asyncio.Lock)

    def _copy(self, value):
        return deepcopy(value)

    async def upsert_contract(self, delta: ContractDelta) -> ToolContract:
        key = (delta.tool_id, delta.path)
        async with self._locks[("contract", *key)]:
            chain = self._fields[key]
            current = chain[-1] if chain else None
            nxt = merge_delta(current, delta, max_enum_values=self._max_enum_values)
            chain.append(self._copy(nxt))
        contract = await self.get_contract(delta.tool_id)
        assert contract is not None
        return contract

    async def get_contract(self, tool_id: str) -> ToolContract | None:
        latest = [self._copy(chain[-1]) for (tid, _), chain in self._fields.items() if tid == tool_id and chain]
        return assemble_contract(tool_id, latest)

    async def contract_history(self, tool_id: str, path: str) -> list[ContractField]:
        return [self._copy(item) for item in self._fields.get((tool_id, path), [])]

    async def query(
        self,
        embedding: list[float],
        filters: KnowledgeFilters | None = None,
        k: int = 5,
    ) -> list[tuple[KnowledgeEntry, float]]:
        if k <= 0:
            return []
        query_norm = math.sqrt(sum(x * x for x in embedding))
        if query_norm <= 0:
            return []
        scored: list[tuple[tuple[float, float, float], KnowledgeEntry, float]] = []
        for entry in self._entries.values():
            if filters is not None and not filters.matches(entry):
                continue
            if not entry.embedding or len(entry.embedding) != len(embedding):
                continue
            norm = self._embedding_norms.get(entry.id, 0.0)
            if norm <= 0:
                continue
            dot = sum(x * y for x, y in zip(embedding, entry.embedding, strict=True))
            sim = dot / (query_norm * norm)
            rank_key = (sim, _aware(entry.created_at).timestamp(), entry.success_rate)
            scored.append((rank_key, entry, sim))
        top = heapq.nlargest(k, scored, key=lambda item: item[0])
        return [(self._copy(entry), sim) for _, entry, sim in top]

    async def put_entry(self, entry: KnowledgeEntry) -> UUID:
        copy = self._copy(entry)
        self._entries[copy.id] = copy
        if copy.embedding:
            self._embedding_norms[copy.id] = math.sqrt(sum(x * x for x in copy.embedding))
        else:
            self._embedding_norms[copy.id] = 0.0
        return copy.id

    async def record_trace(self, trace: ExecutionTrace) -> UUID:
        if any(t.id == trace.id for t in self._traces):
            return trace.id
        self._traces.append(trace)
        return trace.id

    async def list_traces(
        self,
        tool_id: str,
        path: str | None = None,
        limit: int = 50,
    ) -> list[ExecutionTrace]:
        matching = [
            t for t in self._traces
            if t.tool_id == tool_id and (path is None or t.references(tool_id, path))
        ]
        matching.sort(key=lambda t: _aware(t.created_at), reverse=True)
        return matching[:limit]

    def _matching_recipes(
        self,
        tool_id: str | None,
        source_concept: str | None,
        target_concept: str | None,
    ) -> list[TransformRecipe]:
        out = []
        for recipe in self._recipes.values():
            if recipe.tool_id is not None and recipe.tool_id != tool_id:
                continue
            if source_concept is not None and recipe.source_concept != source_concept:
                continue
            if target_concept is not None and recipe.target_concept != target_concept:
                continue
            out.append(recipe)
        return out

    async def get_recipe(
        self,
        source_concept: str,
        target_concept: str,
        tool_id: str | None = None,
        *,
        trusted_only: bool = False,
    ) -> TransformRecipe | None:
        candidates = self._matching_recipes(tool_id, source_concept, target_concept)
        chosen = self._arbitration.select(candidates, tool_id, trusted_only=trusted_only)
        return self._copy(chosen) if chosen is not None else None

    async def get_recipe_by_id(self, recipe_id: UUID) -> TransformRecipe | None:
        recipe = self._recipes.get(recipe_id)
        return self._copy(recipe) if recipe is not None else None

    async def list_recipes(
        self,
        tool_id: str | None = None,
        source_concept: str | None = None,
        target_concept: str | None = None,
    ) -> list[TransformRecipe]:
        candidates = self._matching_recipes(tool_id, source_concept, target_concept)
        return [self._copy(r) for r in self._arbitration.rank(candidates, tool_id)]

    async def save_recipe(self, recipe: TransformRecipe) -> UUID:
        async with self._locks[("recipe", str(recipe.id))]:
            stored = self._copy(recipe)
            head = self._recipes.get(recipe.id)
            if head is not None:
                stored.version = max(stored.version, head.version + 1)
                stored.created_at = head.created_at
            self._commit_recipe(stored)
        return recipe.id

    async def record_recipe_outcome(self, recipe_id: UUID, success: bool) -> TransformRecipe | None:
        async with self._locks[("recipe", str(recipe_id))]:
            head = self._recipes.get(recipe_id)
            if head is None:
                return None
            recipe = self._copy(head)
            if success:
                recipe.success_count += 1
            else:
                recipe.failure_count += 1
            recipe.status = self._arbitration.evaluate_status(recipe)
            recipe.version += 1
            recipe.updated_at = _now_utc()
            self._commit_recipe(recipe)
            return self._copy(recipe)

    async def recipe_history(self, recipe_id: UUID) -> list[TransformRecipe]:
        return [self._copy(r) for r in self._recipe_versions.get(recipe_id, [])]

    def _commit_recipe(self, recipe: TransformRecipe) -> None:
        self._recipes[recipe.id] = recipe
        self._recipe_versions[recipe.id].append(self._copy(recipe))

    async def increment_mismatch(self, tool_id: str, path: str, kind: str) -> int:
        key = (tool_id, path, kind)
        async with self._locks[("mismatch", *key)]:
            self._mismatches[key] += 1
            return self._mismatches[key]
