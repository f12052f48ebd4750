"""Sandbox executor: policy gate, one spawned process per job, parent-enforced wall clock."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import multiprocessing
import signal
import time
from typing import Any

from owlmend.sandbox.models import SandboxBudget, SandboxErrorKind, SandboxJob, SandboxResult
from owlmend.sandbox.policy import PolicyViolation, SandboxPolicy
from owlmend.sandbox.runner import run_job

logger = logging.getLogger(__name__)

_POLL_INTERVAL_SECONDS = 0.01
_STARTUP_TIMEOUT_SECONDS = 15.0
_JOIN_TIMEOUT_SECONDS = 1.0
_CPU_KILL_SIGNALS = {-signal.SIGXCPU, -signal.SIGKILL}


class SandboxExecutor:
    """Run untrusted transformation programs with external resource limits.

    Every job gets a fresh ``spawn`` process, so no interpreter state is shared
    between jobs. The child sets its own rlimits before running user code; the
    parent owns the wall clock and kills the child on expiry or cancellation.
    """

    def __init__(
        self,
        policy: SandboxPolicy | None = None,
        default_budget: SandboxBudget | None = None,
        max_concurrent: int = 4,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self.policy = policy or SandboxPolicy()
        self.default_budget = default_budget or SandboxBudget()
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._ctx = multiprocessing.get_context("spawn")

    @classmethod
    def from_config(cls, config: Any) -> SandboxExecutor:
        return cls(
            policy=SandboxPolicy(config.allowed_modules),
            default_budget=SandboxBudget.from_config(config),
            max_concurrent=config.max_concurrent,
        )

    async def run(
        self,
        program: str,
        bindings: dict[str, Any] | None = None,
        budget: SandboxBudget | None = None,
    ) -> SandboxResult:
        """Execute ``transform(**bindings)``; failures are returned as data, never raised."""
        job = SandboxJob(program=program, bindings=dict(bindings or {}), budget=budget or self.default_budget)
        try:
            self.policy.validate(program)
        except PolicyViolation as exc:
            logger.info("sandbox job %s rejected by policy: %s", job.id, exc.problems[0])
            return SandboxResult.failure(
                SandboxErrorKind.EXECUTION_FAULT,
                str(exc),
                rejected=True,
                job_id=job.id,
            )
        try:
            json.dumps(job.bindings, allow_nan=False)
        except (TypeError, ValueError) as exc:
            return SandboxResult.failure(
                SandboxErrorKind.EXECUTION_FAULT,
                f"bindings must be JSON-serializable: {exc}",
                rejected=True,
                job_id=job.id,
            )
        async with self._semaphore:
            return await self._execute(job)

    async def _execute(self, job: SandboxJob) -> SandboxResult:
        parent_conn, child_conn = self._ctx.Pipe(duplex=False)
        process = self._ctx.Process(
            target=run_job,
            args=(child_conn, job.program, job.bindings, job.budget.to_dict(), sorted(self.policy.allowed_modules)),
            daemon=True,
        )
        started = time.monotonic()
        # Spawning pickles the pipe end; it may only be closed once start returns.
        starting = asyncio.ensure_future(asyncio.to_thread(process.start))
        try:
            await asyncio.shield(starting)
            child_conn.close()
            deadline = started + _STARTUP_TIMEOUT_SECONDS
            ready = False
            while True:
                if parent_conn.poll():
                    try:
                        message = parent_conn.recv()
                    except EOFError:
                        message = None
                    if message is None:
                        break
                    if message.get("event") == "ready":
                        ready = True
                        deadline = time.monotonic() + job.budget.wall_clock_seconds
                        continue
                    return self._from_message(job, message, started)
                if not process.is_alive():
                    if parent_conn.poll():
                        continue
                    break
                if time.monotonic() >= deadline:
                    what = "wall clock" if ready else "startup"
                    logger.warning("sandbox job %s exceeded %s limit; killing", job.id, what)
                    return SandboxResult.failure(
                        SandboxErrorKind.TIMEOUT,
                        f"{what} limit exceeded ({job.budget.wall_clock_seconds:g}s)",
                        duration_ms=_elapsed_ms(started),
                        job_id=job.id,
                    )
                await asyncio.sleep(_POLL_INTERVAL_SECONDS)
            await asyncio.to_thread(process.join, _JOIN_TIMEOUT_SECONDS)
            return self._from_exit(job, process, started)
        finally:
            # Runs on cancellation too: the child never outlives its job.
            await asyncio.shield(_settle(starting, process, parent_conn, child_conn))

    @staticmethod
    def _from_message(job: SandboxJob, message: dict[str, Any], started: float) -> SandboxResult:
        common = {
            "stdout": str(message.get("stdout", "")),
            "stderr": str(message.get("stderr", "")),
            "duration_ms": _elapsed_ms(started),
            "job_id": job.id,
        }
        if message.get("ok"):
            return SandboxResult.success(message.get("value"), **common)
        kind = SandboxErrorKind(message.get("error_kind") or SandboxErrorKind.EXECUTION_FAULT.value)
        return SandboxResult.failure(kind, str(message.get("message", "")), **common)

    @staticmethod
    def _from_exit(job: SandboxJob, process: Any, started: float) -> SandboxResult:
        code = process.exitcode
        if code in _CPU_KILL_SIGNALS:
            kind, message = SandboxErrorKind.TIMEOUT, "cpu limit exceeded"
        elif code == -signal.SIGSEGV:
            kind, message = SandboxErrorKind.RESOURCE_EXCEEDED, "sandbox process crashed (likely memory limit)"
        else:
            kind, message = SandboxErrorKind.EXECUTION_FAULT, f"sandbox process exited with code {code}"
        return SandboxResult.failure(kind, message, duration_ms=_elapsed_ms(started), job_id=job.id)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _reclaim(process: Any) -> None:
    if process.pid is None:
        return
    if process.is_alive():
        process.kill()
    process.join(_JOIN_TIMEOUT_SECONDS)
    process.close()


async def _settle(starting: asyncio.Future, process: Any, parent_conn: Any, child_conn: Any) -> None:
    with contextlib.suppress(Exception):
        await starting
    child_conn.close()
    parent_conn.close()
    await asyncio.to_thread(_reclaim, process)
