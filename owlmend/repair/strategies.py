"""Repair strategies, cheapest first: direct substitution, retrieved recipe, model fix, sandboxed program."""

from __future__ import annotations

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar
from uuid import UUID

from owlmend.detection.detector import MismatchDetector
from owlmend.detection.report import (
    PRECISION_SENSITIVE_KINDS,
    MismatchReport,
    ViolationKind,
    violation_signature,
)
from owlmend.errors import ModelDelegationFailedError, RetrievalUnavailableError
from owlmend.knowledge.arbitration import ArbitrationPolicy
from owlmend.knowledge.models import EntryKind, RecipeStatus, ToolContract, TransformRecipe
from owlmend.knowledge.store import KnowledgeStore
from owlmend.repair.collaborators import FixContext, ModelCollaborator
from owlmend.repair.rules import RuleError, apply_recipe
from owlmend.repair.states import RepairState
from owlmend.retrieval.engine import RetrievalEngine
from owlmend.sandbox.executor import SandboxExecutor

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Violations repaired in place: the recipe reads and writes the same path.
_IN_PLACE_KINDS = frozenset(
    {ViolationKind.TYPE_MISMATCH, ViolationKind.ENUM_VIOLATION, ViolationKind.RANGE_VIOLATION}
)
_DATE_PATTERN = re.compile(r"^\s*(\d{4}-\d{1,2}-\d{1,2}|\d{1,2}[/.-]\d{1,2}[/.-]\d{2,4})")
PROGRAM_FIELD = "*"


class StrategyStatus(str, Enum):
    RESOLVED = "resolved"
    IMPROVED = "improved"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class StrategyResult:
    """What one strategy attempt produced."""

    status: StrategyStatus
    detail: str = ""
    payload: dict[str, Any] | None = None
    report: MismatchReport | None = None
    recipe_ids: list[UUID] = field(default_factory=list)
    program: str | None = None
    program_signature: str | None = None

    @property
    def progressed(self) -> bool:
        return self.status in (StrategyStatus.RESOLVED, StrategyStatus.IMPROVED)


@dataclass
class RepairContext:
    """Mutable working state shared by the strategies of one repair."""

    tool_id: str
    original_payload: dict[str, Any]
    payload: dict[str, Any]
    report: MismatchReport
    contract: ToolContract | None
    detector: MismatchDetector
    call_context: dict[str, Any] = field(default_factory=dict)
    retrieval: RetrievalEngine | None = None
    applied_recipe_ids: list[UUID] = field(default_factory=list)
    generated_program: str | None = None
    program_signature: str | None = None
    _guidance: list[str] | None = field(default=None, init=False, repr=False)

    def recheck(self, payload: dict[str, Any]) -> MismatchReport:
        return self.detector.detect(payload, self.contract, self.tool_id)

    def judge(self, payload: dict[str, Any], detail: str, **extra: Any) -> StrategyResult:
        """Re-detect a candidate payload and classify it against the current report."""
        report = self.recheck(payload)
        before = len(self.report.blocking)
        after = len(report.blocking)
        if report.passed:
            return StrategyResult(StrategyStatus.RESOLVED, detail, payload, report, **extra)
        if after < before:
            return StrategyResult(StrategyStatus.IMPROVED, f"{detail}; {after} blocking left", payload, report, **extra)
        return StrategyResult(StrategyStatus.FAILED, f"{detail}; no improvement", **extra)

    def accept(self, result: StrategyResult) -> None:
        """Carry a resolved or improved payload forward to the next strategy."""
        if not result.progressed or result.payload is None or result.report is None:
            return
        self.payload = result.payload
        self.report = result.report
        self.applied_recipe_ids.extend(r for r in result.recipe_ids if r not in self.applied_recipe_ids)
        if result.program is not None:
            self.generated_program = result.program
            self.program_signature = result.program_signature

    async def guidance(self) -> list[str]:
        if self._guidance is None:
            self._guidance = []
            if self.retrieval is not None:
                query = " ".join([self.tool_id, *(f"{v.kind.value} {v.path}" for v in self.report.blocking)])
                self._guidance = await self.retrieval.guidance(query, tool_scope=self.tool_id)
        return self._guidance

    async def fix_context(self) -> FixContext:
        return FixContext(
            tool_id=self.tool_id,
            payload=self.payload,
            contract=self.contract,
            guidance=await self.guidance(),
            context=self.call_context,
        )


async def _bounded(awaitable: Awaitable[T], timeout: float, what: str) -> T:
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise ModelDelegationFailedError(f"{what} timed out after {timeout:g}s") from exc


def _pairs(report: MismatchReport) -> list[tuple[str, str]]:
    """(source, target) paths a recipe could bridge: unknown -> missing, or in place."""
    unknown = [v.path for v in report.of_kind(ViolationKind.UNKNOWN_FIELD)]
    missing = [v.path for v in report.of_kind(ViolationKind.MISSING_REQUIRED_FIELD)]
    pairs = [(u, m) for u in unknown for m in missing]
    pairs.extend((v.path, v.path) for v in report.blocking if v.kind in _IN_PLACE_KINDS)
    return pairs


def _still_open(report: MismatchReport, source: str, target: str) -> bool:
    paths = {v.path for v in report.blocking}
    return source in paths and target in paths


class RepairStrategy(ABC):
    """One rung of the repair ladder."""

    name: str = ""
    state: RepairState

    @abstractmethod
    async def attempt(self, ctx: RepairContext) -> StrategyResult:
        ...


class DirectSubstitution(RepairStrategy):
    """Apply trusted recipes whose source and target match the violating fields exactly."""

    name = "direct_substitution"
    state = RepairState.DIRECT_SUBSTITUTION

    def __init__(self, store: KnowledgeStore, arbitration: ArbitrationPolicy | None = None) -> None:
        self._store = store
        self._arbitration = arbitration or ArbitrationPolicy()

    async def _trusted(
        self, ctx: RepairContext, source: str, target: str, scoped: list[TransformRecipe]
    ) -> TransformRecipe | None:
        recipe = await self._store.get_recipe(source, target, ctx.tool_id, trusted_only=True)
        if recipe is not None and not recipe.is_program:
            return recipe
        by_field = [
            r for r in scoped if r.source_field == source and r.target_field == target and not r.is_program
        ]
        return self._arbitration.select(by_field, ctx.tool_id, trusted_only=True)

    async def attempt(self, ctx: RepairContext) -> StrategyResult:
        pairs = _pairs(ctx.report)
        if not pairs:
            return StrategyResult(StrategyStatus.SKIPPED, "no substitutable violations")
        scoped = await self._store.list_recipes(ctx.tool_id)
        payload = ctx.payload
        report = ctx.report
        used: list[UUID] = []
        for source, target in pairs:
            if not _still_open(report, source, target):
                continue
            recipe = await self._trusted(ctx, source, target, scoped)
            if recipe is None:
                continue
            try:
                candidate = apply_recipe(recipe, payload)
            except RuleError as exc:
                logger.info("recipe %s not applicable to %s: %s", recipe.id, ctx.tool_id, exc)
                continue
            payload = candidate
            report = ctx.recheck(payload)
            used.append(recipe.id)
        if not used:
            return StrategyResult(StrategyStatus.FAILED, "no trusted recipe matched")
        return ctx.judge(payload, f"applied {len(used)} trusted recipe(s)", recipe_ids=used)


def _binds_pair(recipe: TransformRecipe, source: str, target: str) -> bool:
    """True when the recipe's own fields or concepts name exactly this (source, target) pair."""
    source_ok = recipe.source_field == source or recipe.source_concept == source
    target_ok = recipe.target_field == target or recipe.target_concept == target
    return source_ok and target_ok


class RetrievedRecipe(RepairStrategy):
    """Apply the best retrieved recipe for a violating pair, re-detecting before acceptance.

    Only recipes whose fields or concepts name the pair are eligible; a recipe
    is never rebound to fields it was not learned for. Candidates are ordered
    by retrieval similarity, then by the arbitration policy.
    """

    name = "retrieved_recipe"
    state = RepairState.RETRIEVED_RECIPE

    def __init__(
        self,
        store: KnowledgeStore,
        retrieval: RetrievalEngine | None,
        arbitration: ArbitrationPolicy | None = None,
        top_k: int = 5,
    ) -> None:
        self._store = store
        self._retrieval = retrieval
        self._arbitration = arbitration or ArbitrationPolicy()
        self._top_k = top_k

    async def _candidates(
        self, ctx: RepairContext, source: str, target: str, scoped: list[TransformRecipe]
    ) -> list[TransformRecipe]:
        # Exact field or concept matches rank as perfect hits.
        similarity: dict[UUID, float] = {}
        found: dict[UUID, TransformRecipe] = {}
        for recipe in scoped:
            if _binds_pair(recipe, source, target):
                found[recipe.id] = recipe
                similarity[recipe.id] = 1.0
        if self._retrieval is not None:
            query = f"recipe {source} -> {target} tool={ctx.tool_id}"
            try:
                hits = await self._retrieval.retrieve(
                    query, tool_scope=ctx.tool_id, top_k=self._top_k, kinds=[EntryKind.RECIPE]
                )
            except RetrievalUnavailableError as exc:
                logger.warning("recipe retrieval unavailable for %s: %s", ctx.tool_id, exc)
                hits = []
            for hit in hits:
                if not hit.entry.ref_id:
                    continue
                try:
                    recipe_id = UUID(hit.entry.ref_id)
                except ValueError:
                    continue
                if recipe_id in found:
                    continue
                recipe = await self._store.get_recipe_by_id(recipe_id)
                if recipe is None or not _binds_pair(recipe, source, target):
                    continue
                found[recipe.id] = recipe
                similarity[recipe.id] = hit.similarity
        eligible = [r for r in found.values() if r.status != RecipeStatus.FLAGGED and not r.is_program]
        ranked = self._arbitration.rank(eligible, ctx.tool_id)
        ranked.sort(key=lambda r: similarity[r.id], reverse=True)
        return ranked[: self._top_k]

    async def attempt(self, ctx: RepairContext) -> StrategyResult:
        pairs = _pairs(ctx.report)
        if not pairs:
            return StrategyResult(StrategyStatus.SKIPPED, "no recipe-shaped violations")
        scoped = await self._store.list_recipes(ctx.tool_id)
        payload = ctx.payload
        report = ctx.report
        used: list[UUID] = []
        for source, target in pairs:
            if not _still_open(report, source, target):
                continue
            for recipe in await self._candidates(ctx, source, target, scoped):
                # Fields differ from the recipe's own only when it matched on concept.
                try:
                    candidate = apply_recipe(recipe, payload, source_field=source, target_field=target)
                except RuleError:
                    continue
                candidate_report = ctx.recheck(candidate)
                if len(candidate_report.blocking) < len(report.blocking):
                    payload, report = candidate, candidate_report
                    used.append(recipe.id)
                    break
        if not used:
            return StrategyResult(StrategyStatus.FAILED, "no retrieved recipe reduced violations")
        return ctx.judge(payload, f"applied {len(used)} retrieved recipe(s)", recipe_ids=used)


class InlineModelFix(RepairStrategy):
    """Ask the model collaborator for a corrected payload."""

    name = "inline_model_fix"
    state = RepairState.INLINE_MODEL_FIX

    def __init__(self, collaborator: ModelCollaborator, timeout_seconds: float = 10.0) -> None:
        self._collaborator = collaborator
        self._timeout = timeout_seconds

    async def attempt(self, ctx: RepairContext) -> StrategyResult:
        fix_context = await ctx.fix_context()
        proposal = await _bounded(
            self._collaborator.propose_fix(ctx.report.blocking, fix_context), self._timeout, "model fix"
        )
        if proposal is None:
            return StrategyResult(StrategyStatus.FAILED, "model proposed no fix")
        return ctx.judge(proposal, "model fix")


def needs_precision(report: MismatchReport, contract: ToolContract | None) -> bool:
    """True when the blocking violations call for exact arithmetic or date handling."""
    for violation in report.blocking:
        if violation.kind in PRECISION_SENSITIVE_KINDS:
            return True
        if isinstance(violation.observed, str) and _DATE_PATTERN.match(violation.observed):
            return True
        if violation.kind == ViolationKind.MISSING_REQUIRED_FIELD and contract is not None:
            target = contract.get_field(violation.path)
            if target is not None and target.unit:
                return True
    return False


class SandboxedTransformation(RepairStrategy):
    """Run a cached or freshly generated ``transform(payload)`` program in the sandbox."""

    name = "sandboxed_transformation"
    state = RepairState.SANDBOXED_TRANSFORMATION

    def __init__(
        self,
        executor: SandboxExecutor,
        collaborator: ModelCollaborator,
        store: KnowledgeStore,
        *,
        hybrid_mode: str = "auto",
        timeout_seconds: float = 10.0,
    ) -> None:
        if hybrid_mode not in ("auto", "always", "never"):
            raise ValueError(f"unknown hybrid_mode: {hybrid_mode}")
        self._executor = executor
        self._collaborator = collaborator
        self._store = store
        self.hybrid_mode = hybrid_mode
        self._timeout = timeout_seconds

    async def attempt(self, ctx: RepairContext) -> StrategyResult:
        if self.hybrid_mode == "never":
            return StrategyResult(StrategyStatus.SKIPPED, "sandbox disabled")
        if self.hybrid_mode == "auto" and not needs_precision(ctx.report, ctx.contract):
            return StrategyResult(StrategyStatus.SKIPPED, "no precision-sensitive violations")

        signature = violation_signature(ctx.report.blocking)
        cached = await self._store.get_recipe(signature, ctx.tool_id, ctx.tool_id)
        recipe_ids: list[UUID] = []
        fresh: str | None = None
        if cached is not None and cached.program:
            program = cached.program
            recipe_ids.append(cached.id)
        else:
            generated = await _bounded(
                self._collaborator.generate_program(ctx.report.blocking, await ctx.fix_context()),
                self._timeout,
                "program generation",
            )
            if generated is None:
                return StrategyResult(StrategyStatus.FAILED, "model produced no program")
            program = fresh = generated

        result = await self._executor.run(program, {"payload": ctx.payload})
        if not result.ok:
            kind = result.error_kind.value if result.error_kind else "error"
            return StrategyResult(StrategyStatus.FAILED, f"sandbox {kind}: {result.message}", recipe_ids=recipe_ids)
        if not isinstance(result.value, dict):
            return StrategyResult(
                StrategyStatus.FAILED, "sandbox program must return an object", recipe_ids=recipe_ids
            )
        return ctx.judge(
            result.value,
            "cached program" if fresh is None else "generated program",
            recipe_ids=recipe_ids,
            program=fresh,
            program_signature=signature if fresh is not None else None,
        )


@dataclass
class RepairPolicy:
    """Strategy plan and timeouts; built from RepairConfig."""

    strategies: Sequence[str] = (
        DirectSubstitution.name,
        RetrievedRecipe.name,
        InlineModelFix.name,
        SandboxedTransformation.name,
    )
    hybrid_mode: str = "auto"
    model_timeout_seconds: float = 10.0
    retrieval_top_k: int = 5
    store_timeout_seconds: float = 2.0

    @classmethod
    def from_config(cls, config: Any, store_timeout_seconds: float = 2.0) -> RepairPolicy:
        return cls(
            strategies=tuple(config.strategies),
            hybrid_mode=config.hybrid_mode,
            model_timeout_seconds=config.model_timeout_seconds,
            retrieval_top_k=config.retrieval_top_k,
            store_timeout_seconds=store_timeout_seconds,
        )


def build_strategies(
    policy: RepairPolicy,
    *,
    store: KnowledgeStore,
    retrieval: RetrievalEngine | None,
    collaborator: ModelCollaborator,
    sandbox: SandboxExecutor,
    arbitration: ArbitrationPolicy | None = None,
) -> list[RepairStrategy]:
    """Instantiate the configured strategies in configured order."""
    factories = {
        DirectSubstitution.name: lambda: DirectSubstitution(store, arbitration),
        RetrievedRecipe.name: lambda: RetrievedRecipe(store, retrieval, arbitration, policy.retrieval_top_k),
        InlineModelFix.name: lambda: InlineModelFix(collaborator, policy.model_timeout_seconds),
        SandboxedTransformation.name: lambda: SandboxedTransformation(
            sandbox,
            collaborator,
            store,
            hybrid_mode=policy.hybrid_mode,
            timeout_seconds=policy.model_timeout_seconds,
        ),
    }
    unknown = [name for name in policy.strategies if name not in factories]
    if unknown:
        raise ValueError(f"unknown repair strategies: {unknown}")
    return [factories[name]() for name in policy.strategies]
