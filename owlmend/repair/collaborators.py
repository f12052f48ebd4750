"""Model collaborators: the reasoning model asked to fix payloads or write transformation programs."""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from owlmend.detection.report import Violation
from owlmend.errors import ModelDelegationFailedError
from owlmend.integrations.llm import LLMClient, LLMError
from owlmend.knowledge.models import ToolContract
from owlmend.sandbox.policy import ENTRYPOINT

logger = logging.getLogger(__name__)

FIX_TASK = "payload_fix"
PROGRAM_TASK = "transform_program"

_FENCE_PATTERN = re.compile(r"```(?:python|json)?\s*\n(.*?)```", re.DOTALL)

_FIX_SYSTEM_PROMPT = (
    "You repair JSON tool-call payloads so they satisfy the tool's contract. "
    "Keep every value the caller supplied; rename, restructure or convert only what the "
    'violations require. Reply with a JSON object {"payload": {...}}.'
)

_PROGRAM_SYSTEM_PROMPT = (
    "You write small deterministic Python programs that transform a JSON payload. "
    f"Define a top-level function `{ENTRYPOINT}(payload)` returning the corrected payload dict. "
    "Use only the standard modules decimal, datetime, math, re and json. Do not read the clock, "
    "files or network. Use decimal.Decimal for money and unit arithmetic. "
    'Reply with a JSON object {"program": "<python source>"}.'
)


@dataclass
class FixContext:
    """What a collaborator gets to see about the failing call."""

    tool_id: str
    payload: dict[str, Any]
    contract: ToolContract | None = None
    guidance: list[str] = field(default_factory=list)
    context: dict[str, Any] = field(default_factory=dict)

    def contract_summary(self) -> list[dict[str, Any]]:
        if self.contract is None:
            return []
        summary = []
        for item in self.contract.fields:
            entry: dict[str, Any] = {"path": item.path, "required": item.required}
            if item.inferred_type is not None:
                entry["type"] = item.inferred_type.value
            if item.unit:
                entry["unit"] = item.unit
            if item.allowed_values and not item.enum_open:
                entry["allowed_values"] = list(item.allowed_values)
            if item.minimum is not None:
                entry["minimum"] = item.minimum
            if item.maximum is not None:
                entry["maximum"] = item.maximum
            summary.append(entry)
        return summary

    def to_prompt(self, violations: list[Violation]) -> str:
        return json.dumps(
            {
                "tool_id": self.tool_id,
                "payload": self.payload,
                "violations": [v.to_dict() for v in violations],
                "contract": self.contract_summary(),
                "guidance": self.guidance,
                "context": self.context,
            },
            ensure_ascii=False,
            default=str,
        )


class ModelCollaborator(ABC):
    """Interface the repair strategies use to delegate reasoning."""

    @abstractmethod
    async def propose_fix(self, violations: list[Violation], context: FixContext) -> dict[str, Any] | None:
        """Return a corrected payload, or None when no fix is proposed."""

    @abstractmethod
    async def generate_program(self, violations: list[Violation], context: FixContext) -> str | None:
        """Return Python source defining ``transform(payload)``, or None."""


class NullCollaborator(ModelCollaborator):
    """Collaborator for deployments without a model; never proposes anything."""

    async def propose_fix(self, violations: list[Violation], context: FixContext) -> dict[str, Any] | None:
        return None

    async def generate_program(self, violations: list[Violation], context: FixContext) -> str | None:
        return None


def _parse_json_object(content: str) -> dict[str, Any]:
    text = content.strip()
    match = _FENCE_PATTERN.search(text)
    if match and not text.startswith("{"):
        text = match.group(1).strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ModelDelegationFailedError(f"model reply is not JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ModelDelegationFailedError("model reply must be a JSON object")
    return data


class LLMCollaborator(ModelCollaborator):
    """Collaborator backed by LLMClient (litellm) with JSON-mode prompts."""

    def __init__(self, client: LLMClient) -> None:
        self._client = client

    async def _ask(self, system_prompt: str, user_content: str, task_type: str) -> dict[str, Any]:
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_content},
        ]
        try:
            response = await self._client.complete(messages, task_type=task_type, json_mode=True)
        except LLMError as exc:
            raise ModelDelegationFailedError(f"model call failed: {exc}") from exc
        return _parse_json_object(response.content or "")

    async def propose_fix(self, violations: list[Violation], context: FixContext) -> dict[str, Any] | None:
        data = await self._ask(_FIX_SYSTEM_PROMPT, context.to_prompt(violations), FIX_TASK)
        payload = data.get("payload")
        if payload is None:
            return None
        if not isinstance(payload, dict):
            raise ModelDelegationFailedError("'payload' in model reply must be an object")
        return payload

    async def generate_program(self, violations: list[Violation], context: FixContext) -> str | None:
        data = await self._ask(_PROGRAM_SYSTEM_PROMPT, context.to_prompt(violations), PROGRAM_TASK)
        program = data.get("program")
        if program is None:
            return None
        if not isinstance(program, str) or not program.strip():
            raise ModelDelegationFailedError("'program' in model reply must be a non-empty string")
        match = _FENCE_PATTERN.search(program)
        return match.group(1) if match else program


class RateLimitedCollaborator(ModelCollaborator):
    """Bound concurrency and call rate toward a wrapped collaborator."""

    def __init__(self, inner: ModelCollaborator, max_concurrent: int = 4, min_interval_seconds: float = 0.0) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        if min_interval_seconds < 0:
            raise ValueError("min_interval_seconds must be >= 0")
        self.inner = inner
        self.min_interval_seconds = min_interval_seconds
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._pace_lock = asyncio.Lock()
        self._last_call = 0.0

    async def _pace(self) -> None:
        if self.min_interval_seconds <= 0:
            return
        async with self._pace_lock:
            wait = self._last_call + self.min_interval_seconds - time.monotonic()
            if wait > 0:
                await asyncio.sleep(wait)
            self._last_call = time.monotonic()

    async def propose_fix(self, violations: list[Violation], context: FixContext) -> dict[str, Any] | None:
        async with self._semaphore:
            await self._pace()
            return await self.inner.propose_fix(violations, context)

    async def generate_program(self, violations: list[Violation], context: FixContext) -> str | None:
        async with self._semaphore:
            await self._pace()
            return await self.inner.generate_program(violations, context)
