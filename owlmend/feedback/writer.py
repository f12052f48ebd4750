"""Feedback writer: the single mutation path into the knowledge store.

Traces are enqueued without blocking the caller; a background worker records
each trace and turns it into contract evidence and recipe outcomes. Store
failures are retried with exponential backoff and finally appended to a local
JSON-lines fallback log.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import math
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any
from uuid import UUID

from owlmend.detection.report import Severity, ViolationKind, violation_signature
from owlmend.errors import ContractContaminationError, StoreWriteFailedError, VersionConflictError
from owlmend.knowledge.contracts import flatten_payload, is_numeric
from owlmend.knowledge.models import (
    ContractDelta,
    EntryKind,
    ExecutionTrace,
    FieldType,
    RecipeStatus,
    ToolContract,
    TraceOutcome,
    TransformRecipe,
    TransformRule,
)
from owlmend.knowledge.schema_import import schema_to_deltas
from owlmend.knowledge.serialization import trace_to_dict
from owlmend.knowledge.store import KnowledgeStore
from owlmend.retrieval.engine import RetrievalEngine

logger = logging.getLogger(__name__)

Step = Callable[[], Awaitable[None]]

_ASSIGN_RETRIES = 3
_PROGRAM_FIELD = "*"
_INDEXED_OUTCOMES = frozenset({TraceOutcome.REPAIRED, TraceOutcome.UNRESOLVABLE, TraceOutcome.REAL_FAILURE})


@dataclass
class FeedbackStats:
    committed: int = 0
    processed: int = 0
    diverted: int = 0
    failed: int = 0


class FeedbackWriter:
    """Records execution traces and applies what they teach to the knowledge store."""

    def __init__(
        self,
        store: KnowledgeStore,
        *,
        retrieval: RetrievalEngine | None = None,
        queue_size: int = 1000,
        max_retries: int = 3,
        backoff_base_seconds: float = 0.1,
        fallback_log_path: str | Path = ".owlmend/feedback_fallback.jsonl",
        mismatch_threshold: int = 3,
        declaration_weight: int = 10,
        flush_timeout_seconds: float = 5.0,
        index_traces: bool = True,
        max_depth: int = 8,
    ) -> None:
        if isinstance(queue_size, bool) or not isinstance(queue_size, int) or queue_size < 1:
            raise ValueError("queue_size must be a positive integer")
        if mismatch_threshold < 1:
            raise ValueError("mismatch_threshold must be >= 1")
        self._store = store
        self._retrieval = retrieval
        self.max_retries = max_retries
        self.backoff_base_seconds = backoff_base_seconds
        self.fallback_log_path = Path(fallback_log_path)
        self.mismatch_threshold = mismatch_threshold
        self.declaration_weight = declaration_weight
        self.flush_timeout_seconds = flush_timeout_seconds
        self.index_traces = index_traces
        self.max_depth = max_depth
        self.stats = FeedbackStats()
        self._queue: asyncio.Queue[ExecutionTrace] = asyncio.Queue(maxsize=queue_size)
        self._worker_task: asyncio.Task[None] | None = None

    @classmethod
    def from_config(
        cls,
        store: KnowledgeStore,
        config: Any,
        retrieval: RetrievalEngine | None = None,
    ) -> FeedbackWriter:
        """Build from an OwlMendConfig."""
        feedback = config.feedback
        return cls(
            store,
            retrieval=retrieval,
            queue_size=feedback.queue_size,
            max_retries=feedback.max_retries,
            backoff_base_seconds=feedback.backoff_base_seconds,
            fallback_log_path=feedback.fallback_log_path,
            mismatch_threshold=feedback.mismatch_threshold,
            declaration_weight=config.knowledge.declaration_weight,
            flush_timeout_seconds=feedback.flush_timeout_seconds,
            index_traces=feedback.index_traces,
            max_depth=config.detection.max_depth,
        )

    @property
    def running(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def start(self) -> None:
        """Start the background worker task."""
        if self.running:
            logger.warning("Feedback writer already running")
            return
        self._worker_task = asyncio.create_task(self._worker())

    async def stop(self) -> None:
        """Drain what can be drained within the flush timeout, then stop the worker."""
        if self._worker_task is None:
            return
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._queue.join(), timeout=self.flush_timeout_seconds)
        self._worker_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._worker_task
        self._worker_task = None
        leftovers: list[ExecutionTrace] = []
        while not self._queue.empty():
            leftovers.append(self._queue.get_nowait())
            self._queue.task_done()
        if leftovers:
            logger.warning("Feedback writer stopped with %d pending traces; diverting", len(leftovers))
            self._write_to_fallback_log(leftovers, reason="shutdown")

    async def flush(self) -> None:
        """Wait until every committed trace has been processed.

        Without a running worker the queue is drained inline.
        """
        if self.running:
            await self._queue.join()
            return
        while not self._queue.empty():
            trace = self._queue.get_nowait()
            try:
                await self._process(trace)
            finally:
                self._queue.task_done()

    def commit(self, trace: ExecutionTrace) -> bool:
        """Enqueue a trace without blocking; False when it went to the fallback log."""
        try:
            self._queue.put_nowait(trace)
        except asyncio.QueueFull:
            self.stats.diverted += 1
            logger.warning("Feedback queue full; trace %s written to fallback log", trace.id)
            self._write_to_fallback_log([trace], reason="queue_full")
            return False
        self.stats.committed += 1
        return True

    async def declare_contract(self, tool_id: str, schema: Any) -> ToolContract | None:
        """Apply a declared schema as high-weight evidence; raises ValueError on bad schemas."""
        deltas = schema_to_deltas(tool_id, schema, weight=self.declaration_weight)
        before = await self._store.get_contract(tool_id)
        known = set(before.paths) if before is not None else set()
        contract: ToolContract | None = None
        for delta in deltas:
            contract = await self._with_retries(
                lambda delta=delta: self._store.upsert_contract(delta),
                f"declare {tool_id}:{delta.path}",
            )
        if contract is not None and self._retrieval is not None:
            for item in contract.fields:
                if item.path in known:
                    continue
                await self._index(
                    EntryKind.CONTRACT_FIELD,
                    _describe_field(tool_id, item),
                    tool_id=tool_id,
                    ref_id=f"{tool_id}:{item.path}",
                    success_rate=1.0,
                )
        logger.info("Declared contract for %s (%d fields)", tool_id, len(deltas))
        return contract

    async def declare_recipe(self, recipe: TransformRecipe) -> TransformRecipe:
        """Persist a seed recipe and index it for retrieval."""
        if not recipe.source_concept:
            recipe.source_concept = recipe.source_field
        if not recipe.target_concept:
            recipe.target_concept = recipe.target_field
        if not recipe.source_concept or not recipe.target_concept:
            raise ValueError("recipe needs source and target concepts or fields")
        await self._with_retries(lambda: self._store.save_recipe(recipe), f"declare recipe {recipe.id}")
        await self._index_recipe(recipe)
        return recipe

    async def _worker(self) -> None:
        while True:
            trace = await self._queue.get()
            try:
                await self._process(trace)
            except asyncio.CancelledError:
                self._write_to_fallback_log([trace], reason="shutdown")
                raise
            except Exception as exc:
                logger.exception("Feedback worker error on trace %s: %s", trace.id, exc)
            finally:
                self._queue.task_done()

    async def _process(self, trace: ExecutionTrace) -> None:
        steps = [self._record_step(trace), *self._learning_steps(trace)]
        done = 0
        for attempt in range(1, self.max_retries + 2):
            try:
                while done < len(steps):
                    try:
                        await steps[done]()
                    except ContractContaminationError as exc:
                        logger.error("Rejected contaminating evidence from trace %s: %s", trace.id, exc)
                    done += 1
                self.stats.processed += 1
                return
            except Exception as exc:
                if attempt > self.max_retries:
                    self.stats.failed += 1
                    logger.exception("Failed to apply trace %s after %d attempts: %s", trace.id, attempt, exc)
                    self._write_to_fallback_log([trace], reason=f"store_write_failed: {exc}")
                    return
                delay = self.backoff_base_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "Feedback write failed (attempt %d/%d), retrying in %.2fs: %s",
                    attempt,
                    self.max_retries + 1,
                    delay,
                    exc,
                )
                await asyncio.sleep(delay)

    async def _with_retries(self, operation: Callable[[], Awaitable[Any]], what: str) -> Any:
        for attempt in range(1, self.max_retries + 2):
            try:
                return await operation()
            except (ContractContaminationError, ValueError):
                raise
            except Exception as exc:
                if attempt > self.max_retries:
                    raise StoreWriteFailedError(f"{what} failed after {attempt} attempts: {exc}") from exc
                delay = self.backoff_base_seconds * (2 ** (attempt - 1))
                logger.warning("%s failed (attempt %d), retrying in %.2fs: %s", what, attempt, delay, exc)
                await asyncio.sleep(delay)
        return None

    def _record_step(self, trace: ExecutionTrace) -> Step:
        async def _record() -> None:
            await self._store.record_trace(trace)

        return _record

    def _learning_steps(self, trace: ExecutionTrace) -> list[Step]:
        steps: list[Step] = []
        if trace.outcome == TraceOutcome.REAL_SUCCESS:
            steps.extend(self._success_evidence(trace))
        elif trace.outcome == TraceOutcome.REAL_FAILURE:
            steps.extend(self._failure_evidence(trace))

        if trace.outcome.is_success and trace.outcome != TraceOutcome.REAL_SUCCESS:
            steps.extend(self._recipe_outcome(rid, True) for rid in trace.applied_recipe_ids)
        elif trace.outcome.is_failure:
            steps.extend(self._recipe_outcome(rid, False) for rid in trace.applied_recipe_ids)

        if trace.outcome == TraceOutcome.REPAIRED:
            steps.append(self._candidate_recipes(trace))
        if self.index_traces and self._retrieval is not None and trace.outcome in _INDEXED_OUTCOMES:
            steps.append(self._index_trace(trace))
        return steps

    def _success_evidence(self, trace: ExecutionTrace) -> list[Step]:
        payload = trace.final_payload if trace.final_payload is not None else trace.original_payload
        observed = flatten_payload(payload, max_depth=self.max_depth)
        steps: list[Step] = []
        for path in sorted(observed):
            delta = ContractDelta(
                tool_id=trace.tool_id,
                path=path,
                source_tool_id=trace.tool_id,
                source_trace_id=trace.id,
                support=1,
                observed_values=[observed[path]],
                observed_at=trace.created_at,
            )
            steps.append(self._upsert_step(delta))
        for path in trace.absent_paths:
            if path in observed:
                continue
            delta = ContractDelta(
                tool_id=trace.tool_id,
                path=path,
                source_tool_id=trace.tool_id,
                source_trace_id=trace.id,
                required_contradictions=1,
                observed_at=trace.created_at,
            )
            steps.append(self._upsert_step(delta))
        return steps

    def _failure_evidence(self, trace: ExecutionTrace) -> list[Step]:
        steps: list[Step] = []
        for violation in trace.violations:
            if violation.get("severity", Severity.BLOCKING.value) != Severity.BLOCKING.value:
                continue
            path = violation.get("path")
            kind = violation.get("kind")
            if not isinstance(path, str) or not path or not isinstance(kind, str):
                continue
            steps.extend(self._mismatch_steps(trace, path, kind, violation.get("expected")))
        return steps

    def _upsert_step(self, delta: ContractDelta) -> Step:
        async def _upsert() -> None:
            await self._store.upsert_contract(delta)

        return _upsert

    def _mismatch_steps(self, trace: ExecutionTrace, path: str, kind: str, expected: Any) -> list[Step]:
        """Count, record evidence, then apply the threshold; each resumes on its own."""
        seen: dict[str, int] = {}

        async def _count() -> None:
            seen["count"] = await self._store.increment_mismatch(trace.tool_id, path, kind)

        async def _evidence() -> None:
            contract = await self._store.get_contract(trace.tool_id)
            if contract is None or contract.get_field(path) is None:
                return
            delta = ContractDelta(
                tool_id=trace.tool_id,
                path=path,
                source_tool_id=trace.tool_id,
                source_trace_id=trace.id,
                observed_at=trace.created_at,
            )
            if kind == ViolationKind.MISSING_REQUIRED_FIELD.value:
                delta.required_support = 1
            else:
                delta.contradictions = 1
            await self._store.upsert_contract(delta)

        async def _threshold() -> None:
            count = seen["count"]
            if count % self.mismatch_threshold == 0:
                logger.info(
                    "Mismatch %s on %s:%s seen %d times; updating contract", kind, trace.tool_id, path, count
                )
                await self._apply_threshold(trace, path, kind, expected)

        return [_count, _evidence, _threshold]

    async def _apply_threshold(self, trace: ExecutionTrace, path: str, kind: str, expected: Any) -> None:
        if kind == ViolationKind.MISSING_REQUIRED_FIELD.value:
            await self._store.upsert_contract(
                ContractDelta(
                    tool_id=trace.tool_id,
                    path=path,
                    source_tool_id=trace.tool_id,
                    source_trace_id=trace.id,
                    required_support=self.declaration_weight,
                    observed_at=trace.created_at,
                )
            )
        elif kind == ViolationKind.TYPE_MISMATCH.value and expected in {t.value for t in FieldType}:
            await self._assign(trace, path, {"inferred_type": expected})

    async def _assign(self, trace: ExecutionTrace, path: str, assign: dict[str, Any]) -> None:
        """Apply a non-commutative update against the current field version."""
        for attempt in range(1, _ASSIGN_RETRIES + 1):
            contract = await self._store.get_contract(trace.tool_id)
            current = contract.get_field(path) if contract is not None else None
            delta = ContractDelta(
                tool_id=trace.tool_id,
                path=path,
                source_tool_id=trace.tool_id,
                source_trace_id=trace.id,
                expected_version=current.version if current is not None else 0,
                assign=dict(assign),
                observed_at=trace.created_at,
            )
            try:
                await self._store.upsert_contract(delta)
                return
            except VersionConflictError:
                if attempt == _ASSIGN_RETRIES:
                    raise
                logger.debug("Version conflict on %s:%s, re-reading", trace.tool_id, path)

    def _recipe_outcome(self, recipe_id: UUID, success: bool) -> Step:
        async def _outcome() -> None:
            updated = await self._store.record_recipe_outcome(recipe_id, success)
            if updated is None:
                logger.warning("Outcome for unknown recipe %s dropped", recipe_id)
            elif updated.status == RecipeStatus.FLAGGED:
                logger.info("Recipe %s flagged (success rate %.2f)", recipe_id, updated.success_rate)

        return _outcome

    def _candidate_recipes(self, trace: ExecutionTrace) -> Step:
        async def _candidates() -> None:
            learned: list[TransformRecipe] = []
            if trace.generated_program:
                signature = trace.report.get("program_signature") or violation_signature(trace.violations)
                if not await self._store.list_recipes(trace.tool_id, signature, trace.tool_id):
                    learned.append(
                        TransformRecipe(
                            source_concept=signature,
                            target_concept=trace.tool_id,
                            source_field=_PROGRAM_FIELD,
                            target_field=_PROGRAM_FIELD,
                            tool_id=trace.tool_id,
                            rule=TransformRule(op="program"),
                            program=trace.generated_program,
                            success_count=1,
                        )
                    )
            elif not trace.applied_recipe_ids and trace.final_payload is not None:
                for recipe in infer_renames(trace.original_payload, trace.final_payload, trace.tool_id, self.max_depth):
                    existing = await self._store.list_recipes(
                        trace.tool_id, recipe.source_concept, recipe.target_concept
                    )
                    if not existing:
                        learned.append(recipe)
            for recipe in learned:
                await self._store.save_recipe(recipe)
                await self._index_recipe(recipe)
                logger.info("Learned candidate %s", recipe.describe())

        return _candidates

    def _index_trace(self, trace: ExecutionTrace) -> Step:
        async def _index_step() -> None:
            await self._index(
                EntryKind.TRACE,
                _describe_trace(trace),
                tool_id=trace.tool_id,
                ref_id=str(trace.id),
                success_rate=1.0 if trace.outcome.is_success else 0.0,
                metadata={"outcome": trace.outcome.value},
            )

        return _index_step

    async def _index_recipe(self, recipe: TransformRecipe) -> None:
        await self._index(
            EntryKind.RECIPE,
            recipe.describe(),
            tool_id=recipe.tool_id,
            ref_id=str(recipe.id),
            success_rate=recipe.success_rate,
            metadata={"status": recipe.status.value, "op": recipe.rule.op},
        )

    async def _index(self, kind: EntryKind, text: str, **kwargs: Any) -> None:
        if self._retrieval is None:
            return
        entry = await self._retrieval.build_entry(kind, text, **kwargs)
        await self._store.put_entry(entry)

    def _write_to_fallback_log(self, traces: list[ExecutionTrace], *, reason: str) -> None:
        """Append traces to the local fallback log."""
        try:
            self.fallback_log_path.parent.mkdir(parents=True, exist_ok=True)
            with self.fallback_log_path.open("a", encoding="utf-8") as f:
                for trace in traces:
                    record = trace_to_dict(trace)
                    record["fallback_reason"] = reason
                    f.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")
        except OSError as e:
            logger.error("Failed to write feedback fallback log: %s", e)


def _power_of_ten(ratio: Decimal) -> bool:
    if ratio <= 0:
        return False
    exponent = math.log10(float(ratio))
    return abs(exponent - round(exponent)) < 1e-9 and 1 <= abs(round(exponent)) <= 6


def infer_renames(
    original: dict[str, Any],
    final: dict[str, Any],
    tool_id: str,
    max_depth: int = 8,
) -> list[TransformRecipe]:
    """Candidate recipes for values that moved to a new path, unchanged or scaled by a power of ten."""
    before = flatten_payload(original, max_depth=max_depth)
    after = flatten_payload(final, max_depth=max_depth)
    removed = [p for p in before if p not in after]
    added = [p for p in after if p not in before]
    candidates: dict[str, list[tuple[str, TransformRule]]] = {}
    for source in removed:
        matches: list[tuple[str, TransformRule]] = []
        for target in added:
            rule = _bridging_rule(before[source], after[target])
            if rule is not None:
                matches.append((target, rule))
        candidates[source] = matches
    # A target reachable from several sources is ambiguous.
    target_use = Counter(target for matches in candidates.values() for target, _ in matches)
    recipes: list[TransformRecipe] = []
    for source, matches in candidates.items():
        if len(matches) != 1 or target_use[matches[0][0]] != 1:
            continue
        target, rule = matches[0]
        recipes.append(
            TransformRecipe(
                source_concept=source,
                target_concept=target,
                source_field=source,
                target_field=target,
                tool_id=tool_id,
                rule=rule,
                success_count=1,
            )
        )
    return recipes


def _bridging_rule(value: Any, moved: Any) -> TransformRule | None:
    if type(value) is type(moved) and value == moved:
        return TransformRule(op="identity")
    numeric_source = is_numeric(value) or (isinstance(value, str) and _decimal_or_none(value) is not None)
    if not numeric_source or not is_numeric(moved):
        return None
    source = _decimal_or_none(value)
    target = _decimal_or_none(moved)
    if source is None or target is None or source == 0:
        return None
    if source == target:
        return TransformRule(op="cast", params={"to": "integer" if isinstance(moved, int) else "number"})
    ratio = target / source
    if not _power_of_ten(ratio):
        return None
    params: dict[str, Any] = {"factor": format(ratio.normalize(), "f")}
    if isinstance(moved, int):
        params["round"] = "half_up"
    return TransformRule(op="scale", params=params)


def _decimal_or_none(value: Any) -> Decimal | None:
    if isinstance(value, bool):
        return None
    try:
        number = Decimal(str(value).strip())
    except ArithmeticError:
        return None
    return number if number.is_finite() else None


def _describe_field(tool_id: str, item: Any) -> str:
    parts = [f"{tool_id}.{item.path}"]
    if item.inferred_type is not None:
        parts.append(item.inferred_type.value)
    if item.unit:
        parts.append(f"unit {item.unit}")
    parts.append("required" if item.required else "optional")
    if item.allowed_values and not item.enum_open:
        parts.append("one of " + ", ".join(item.allowed_values))
    return " ".join(parts)


def _describe_trace(trace: ExecutionTrace) -> str:
    kinds = ", ".join(f"{v.get('kind')} {v.get('path')}" for v in trace.violations) or "no violations"
    strategy = f" via {trace.strategy}" if trace.strategy else ""
    return f"{trace.tool_id} {trace.outcome.value}{strategy}: {kinds}"
