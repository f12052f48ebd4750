"""Knowledge store abstraction: KnowledgeStore ABC (in-memory and PostgreSQL backends)."""

from __future__ import annotations

from abc import ABC, abstractmethod
from uuid import UUID

from owlmend.knowledge.models import (
    ContractDelta,
    ContractField,
    ExecutionTrace,
    KnowledgeEntry,
    KnowledgeFilters,
    ToolContract,
    TransformRecipe,
)


class KnowledgeStore(ABC):
    """Versioned, append-only persistence for contracts, recipes, traces and indexed entries.

    All mutations reach a store through the feedback writer. Backends raise
    KnowledgeStoreUnavailableError when the underlying storage cannot be reached.
    """

    @abstractmethod
    async def upsert_contract(self, delta: ContractDelta) -> ToolContract:
        """Append a new version of ``delta.tool_id:delta.path``; return the updated contract.

        Raises VersionConflictError for stale non-commutative assignments and
        ContractContaminationError for cross-tool evidence.
        """
        ...

    @abstractmethod
    async def get_contract(self, tool_id: str) -> ToolContract | None:
        """Latest version of every field of the tool; None when nothing is known."""
        ...

    @abstractmethod
    async def contract_history(self, tool_id: str, path: str) -> list[ContractField]:
        """Every version of one field, oldest first."""
        ...

    @abstractmethod
    async def query(
        self,
        embedding: list[float],
        filters: KnowledgeFilters | None = None,
        k: int = 5,
    ) -> list[tuple[KnowledgeEntry, float]]:
        """Vector search; returns (entry, cosine similarity in [-1, 1]) best first."""
        ...

    @abstractmethod
    async def put_entry(self, entry: KnowledgeEntry) -> UUID:
        ...

    @abstractmethod
    async def record_trace(self, trace: ExecutionTrace) -> UUID:
        ...

    @abstractmethod
    async def list_traces(
        self,
        tool_id: str,
        path: str | None = None,
        limit: int = 50,
    ) -> list[ExecutionTrace]:
        """Most recent traces for the tool, optionally only those referencing ``path``."""
        ...

    @abstractmethod
    async def get_recipe(
        self,
        source_concept: str,
        target_concept: str,
        tool_id: str | None = None,
        *,
        trusted_only: bool = False,
    ) -> TransformRecipe | None:
        """Best non-flagged recipe for the concept pair under the arbitration policy."""
        ...

    @abstractmethod
    async def get_recipe_by_id(self, recipe_id: UUID) -> TransformRecipe | None:
        ...

    @abstractmethod
    async def list_recipes(
        self,
        tool_id: str | None = None,
        source_concept: str | None = None,
        target_concept: str | None = None,
    ) -> list[TransformRecipe]:
        """Recipes scoped to ``tool_id`` or global, optionally narrowed by concept."""
        ...

    @abstractmethod
    async def save_recipe(self, recipe: TransformRecipe) -> UUID:
        ...

    @abstractmethod
    async def record_recipe_outcome(self, recipe_id: UUID, success: bool) -> TransformRecipe | None:
        """Increment the success or failure counter and re-evaluate status."""
        ...

    @abstractmethod
    async def recipe_history(self, recipe_id: UUID) -> list[TransformRecipe]:
        """Every stored version of the recipe, oldest first; earlier versions are never rewritten."""
        ...

    @abstractmethod
    async def increment_mismatch(self, tool_id: str, path: str, kind: str) -> int:
        """Increment and return the repeated-mismatch counter for (tool, path, kind)."""
        ...

    async def close(self) -> None:
        """Release backend resources; no-op by default."""
        return None
