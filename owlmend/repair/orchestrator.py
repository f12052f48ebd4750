"""Repair orchestrator: detect, then walk the strategy ladder until resolved or exhausted."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence
from copy import deepcopy
from typing import Any, Protocol

from owlmend.detection.detector import MismatchDetector
from owlmend.detection.report import MismatchReport
from owlmend.errors import ContractNotFoundError
from owlmend.knowledge.models import ExecutionTrace, StrategyAttempt, ToolContract, TraceOutcome
from owlmend.knowledge.store import KnowledgeStore
from owlmend.repair.outcome import RepairOutcome, RepairStatus
from owlmend.repair.states import RepairState, RepairStateMachine
from owlmend.repair.strategies import RepairContext, RepairStrategy, StrategyResult, StrategyStatus
from owlmend.retrieval.engine import RetrievalEngine

logger = logging.getLogger(__name__)


class TraceSink(Protocol):
    def commit(self, trace: ExecutionTrace) -> bool:
        ...


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class RepairOrchestrator:
    """Drives one validate-and-repair call through the repair state machine.

    Strategy failures are recovered locally by moving to the next strategy.
    Every terminal outcome, cancellation included, produces exactly one trace
    handed to the trace sink without blocking the caller.
    """

    def __init__(
        self,
        store: KnowledgeStore,
        detector: MismatchDetector,
        strategies: Sequence[RepairStrategy],
        *,
        retrieval: RetrievalEngine | None = None,
        feedback: TraceSink | None = None,
        store_timeout_seconds: float = 2.0,
    ) -> None:
        self._store = store
        self.detector = detector
        self.strategies = list(strategies)
        self._retrieval = retrieval
        self._feedback = feedback
        self.store_timeout_seconds = store_timeout_seconds

    def reconfigure(
        self,
        *,
        detector: MismatchDetector | None = None,
        strategies: Sequence[RepairStrategy] | None = None,
    ) -> None:
        """Swap detector or strategy plan; calls already running keep the old ones."""
        if detector is not None:
            self.detector = detector
        if strategies is not None:
            self.strategies = list(strategies)

    async def fetch_contract(self, tool_id: str) -> ToolContract:
        """Latest contract for ``tool_id``; raises ContractNotFoundError when none is stored."""
        contract = await asyncio.wait_for(self._store.get_contract(tool_id), timeout=self.store_timeout_seconds)
        if contract is None:
            raise ContractNotFoundError(f"no contract known for tool '{tool_id}'")
        return contract

    async def load_contract(self, tool_id: str) -> ToolContract | None:
        """Latest contract, or None when unknown or the store is unreachable."""
        try:
            return await self.fetch_contract(tool_id)
        except asyncio.CancelledError:
            raise
        except ContractNotFoundError:
            logger.debug("no contract for %s; structural checks only", tool_id)
            return None
        except Exception as exc:
            logger.warning("contract lookup for %s failed (%s); structural checks only", tool_id, exc)
            return None

    async def run(
        self,
        tool_id: str,
        payload: dict[str, Any],
        context: dict[str, Any] | None = None,
    ) -> RepairOutcome:
        started = time.monotonic()
        context = dict(context or {})
        detector = self.detector
        strategies = list(self.strategies)
        machine = RepairStateMachine([s.state for s in strategies])
        original = deepcopy(payload)
        attempts: list[StrategyAttempt] = []

        try:
            contract = await self.load_contract(tool_id)
        except asyncio.CancelledError:
            machine.cancel()
            self._emit(
                ExecutionTrace(
                    tool_id=tool_id,
                    outcome=TraceOutcome.CANCELLED,
                    session_id=_optional_str(context.get("session_id")),
                    plan_step=_optional_str(context.get("plan_step")),
                    original_payload=original,
                    state_history=machine.history_values(),
                    error="cancelled",
                    latency_ms=_elapsed_ms(started),
                )
            )
            raise
        report = detector.detect(original, contract, tool_id)
        ctx = RepairContext(
            tool_id=tool_id,
            original_payload=original,
            payload=report.normalized_payload,
            report=report,
            contract=contract,
            detector=detector,
            call_context=context,
            retrieval=self._retrieval,
        )
        resolved_by: str | None = None
        try:
            if report.passed:
                self._advance(machine, RepairState.PASS, tool_id)
            else:
                self._advance(machine, RepairState.STRATEGIZING, tool_id)
                for strategy in strategies:
                    self._advance(machine, strategy.state, tool_id)
                    result = await self._attempt(strategy, ctx, attempts)
                    ctx.accept(result)
                    if result.status == StrategyStatus.RESOLVED:
                        resolved_by = strategy.name
                        self._advance(machine, RepairState.RESOLVED, tool_id)
                        break
                else:
                    self._advance(machine, RepairState.UNRESOLVABLE, tool_id)
        except asyncio.CancelledError:
            machine.cancel()
            trace = self._build_trace(
                TraceOutcome.CANCELLED, ctx, report, machine, attempts, started, context, error="cancelled"
            )
            self._emit(trace)
            raise

        if machine.state == RepairState.PASS:
            outcome = TraceOutcome.PASSED
        elif machine.state == RepairState.RESOLVED:
            outcome = TraceOutcome.REPAIRED
        else:
            outcome = TraceOutcome.UNRESOLVABLE
        trace = self._build_trace(
            outcome, ctx, report, machine, attempts, started, context, strategy=resolved_by
        )
        self._emit(trace)
        logger.info(
            "validate_and_repair %s: %s in %dms (%d attempts)",
            tool_id,
            outcome.value,
            trace.latency_ms,
            len(attempts),
        )
        if outcome == TraceOutcome.UNRESOLVABLE:
            return RepairOutcome(
                status=RepairStatus.UNRESOLVABLE,
                final_payload=None,
                violations=list(ctx.report.violations),
                trace=trace,
                report=ctx.report,
            )
        return RepairOutcome(
            status=RepairStatus.PASSED if outcome == TraceOutcome.PASSED else RepairStatus.REPAIRED,
            final_payload=ctx.payload,
            violations=list(ctx.report.advisory),
            trace=trace,
            report=ctx.report,
        )

    @staticmethod
    def _advance(machine: RepairStateMachine, state: RepairState, tool_id: str) -> None:
        previous = machine.state
        machine.transition(state)
        logger.debug("repair %s: %s -> %s", tool_id, previous.value, state.value)

    async def _attempt(
        self, strategy: RepairStrategy, ctx: RepairContext, attempts: list[StrategyAttempt]
    ) -> StrategyResult:
        started = time.monotonic()
        try:
            result = await strategy.attempt(ctx)
        except asyncio.CancelledError:
            attempts.append(StrategyAttempt(strategy.name, "cancelled", "", _elapsed_ms(started)))
            raise
        except Exception as exc:
            logger.warning("strategy %s failed for %s: %s", strategy.name, ctx.tool_id, exc)
            result = StrategyResult(StrategyStatus.FAILED, f"{type(exc).__name__}: {exc}")
        attempts.append(StrategyAttempt(strategy.name, result.status.value, result.detail, _elapsed_ms(started)))
        return result

    def _build_trace(
        self,
        outcome: TraceOutcome,
        ctx: RepairContext,
        original_report: MismatchReport,
        machine: RepairStateMachine,
        attempts: list[StrategyAttempt],
        started: float,
        context: dict[str, Any],
        *,
        strategy: str | None = None,
        error: str | None = None,
    ) -> ExecutionTrace:
        report = original_report.to_dict()
        if ctx.program_signature:
            report["program_signature"] = ctx.program_signature
        succeeded = outcome in (TraceOutcome.PASSED, TraceOutcome.REPAIRED)
        final_report = ctx.report if succeeded else original_report
        return ExecutionTrace(
            tool_id=ctx.tool_id,
            outcome=outcome,
            session_id=_optional_str(context.get("session_id")),
            plan_step=_optional_str(context.get("plan_step")),
            original_payload=ctx.original_payload,
            report=report,
            strategy=strategy,
            attempts=tuple(attempts),
            state_history=machine.history_values(),
            final_payload=deepcopy(ctx.payload) if succeeded else None,
            error=error,
            latency_ms=_elapsed_ms(started),
            applied_recipe_ids=tuple(ctx.applied_recipe_ids),
            generated_program=ctx.generated_program if succeeded else None,
            field_paths=tuple(final_report.present_paths),
            absent_paths=tuple(final_report.absent_required_paths),
        )

    def _emit(self, trace: ExecutionTrace) -> None:
        if self._feedback is None:
            return
        if not self._feedback.commit(trace):
            logger.warning("trace %s for %s was diverted to the fallback log", trace.id, trace.tool_id)


def _optional_str(value: Any) -> str | None:
    return None if value is None else str(value)
