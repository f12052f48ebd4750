"""Knowledge store: versioned contracts, transformation recipes, traces and indexed entries."""

from owlmend.knowledge.arbitration import ArbitrationPolicy
from owlmend.knowledge.contracts import flatten_payload, infer_type, merge_delta, observe_value
from owlmend.knowledge.models import (
    ContractDelta,
    ContractField,
    EntryKind,
    ExecutionTrace,
    FieldType,
    KnowledgeEntry,
    KnowledgeFilters,
    MagnitudeStats,
    RecipeStatus,
    StrategyAttempt,
    ToolContract,
    TraceOutcome,
    TransformRecipe,
    TransformRule,
    time_decay,
)
from owlmend.knowledge.schema_import import normalize_schema, schema_to_deltas
from owlmend.knowledge.store import KnowledgeStore
from owlmend.knowledge.store_inmemory import InMemoryKnowledgeStore
from owlmend.knowledge.store_pgvector import PostgresKnowledgeStore

__all__ = [
    "ArbitrationPolicy",
    "ContractDelta",
    "ContractField",
    "EntryKind",
    "ExecutionTrace",
    "FieldType",
    "InMemoryKnowledgeStore",
    "KnowledgeEntry",
    "KnowledgeFilters",
    "KnowledgeStore",
    "MagnitudeStats",
    "PostgresKnowledgeStore",
    "RecipeStatus",
    "StrategyAttempt",
    "ToolContract",
    "TraceOutcome",
    "TransformRecipe",
    "TransformRule",
    "flatten_payload",
    "infer_type",
    "merge_delta",
    "normalize_schema",
    "observe_value",
    "schema_to_deltas",
    "time_decay",
]
