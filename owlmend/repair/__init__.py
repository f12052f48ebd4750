"""Repair orchestration: strategies, rules, collaborators and the repair state machine."""

from owlmend.repair.collaborators import (
    FixContext,
    LLMCollaborator,
    ModelCollaborator,
    NullCollaborator,
    RateLimitedCollaborator,
)
from owlmend.repair.orchestrator import RepairOrchestrator, TraceSink
from owlmend.repair.outcome import RepairOutcome, RepairStatus
from owlmend.repair.rules import RuleError, apply_recipe, apply_rule
from owlmend.repair.states import InvalidTransitionError, RepairState, RepairStateMachine
from owlmend.repair.strategies import (
    DirectSubstitution,
    InlineModelFix,
    RepairContext,
    RepairPolicy,
    RepairStrategy,
    RetrievedRecipe,
    SandboxedTransformation,
    StrategyResult,
    StrategyStatus,
    build_strategies,
    needs_precision,
)

__all__ = [
    "DirectSubstitution",
    "FixContext",
    "InlineModelFix",
    "InvalidTransitionError",
    "LLMCollaborator",
    "ModelCollaborator",
    "NullCollaborator",
    "RateLimitedCollaborator",
    "RepairContext",
    "RepairOrchestrator",
    "RepairOutcome",
    "RepairPolicy",
    "RepairState",
    "RepairStateMachine",
    "RepairStatus",
    "RepairStrategy",
    "RetrievedRecipe",
    "RuleError",
    "SandboxedTransformation",
    "StrategyResult",
    "StrategyStatus",
    "TraceSink",
    "apply_recipe",
    "apply_rule",
    "build_strategies",
    "needs_precision",
]
