"""Unit tests for model collaborators and the LLM client they use."""

from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from owlmend.detection import Severity, Violation, ViolationKind
from owlmend.errors import ModelDelegationFailedError
from owlmend.integrations.llm import (
    AuthenticationError,
    LLMClient,
    LLMConfig,
    LLMResponse,
    ServiceUnavailableError,
    TaskRouting,
)
from owlmend.knowledge import ContractField, FieldType, ToolContract
from owlmend.repair import FixContext, LLMCollaborator, NullCollaborator, RateLimitedCollaborator
from owlmend.repair.collaborators import FIX_TASK, PROGRAM_TASK

_VIOLATIONS = [Violation(ViolationKind.UNKNOWN_FIELD, "amt", Severity.BLOCKING)]


def _context() -> FixContext:
    contract = ToolContract(
        "payments.create",
        [
            ContractField(
                tool_id="payments.create",
                path="amount_cents",
                inferred_type=FieldType.INTEGER,
                unit="cents",
                required_support=10,
            )
        ],
        version=1,
    )
    return FixContext(tool_id="payments.create", payload={"amt": "19.99"}, contract=contract, guidance=["hint"])


def _client_returning(content: str | None) -> MagicMock:
    client = MagicMock(spec=LLMClient)
    client.complete = AsyncMock(return_value=LLMResponse(content=content, model="m", prompt_tokens=1, completion_tokens=1))
    return client


def test_fix_context_prompt_carries_contract_summary() -> None:
    prompt = json.loads(_context().to_prompt(_VIOLATIONS))
    assert prompt["tool_id"] == "payments.create"
    assert prompt["contract"] == [{"path": "amount_cents", "required": True, "type": "integer", "unit": "cents"}]
    assert prompt["violations"][0]["path"] == "amt"
    assert prompt["guidance"] == ["hint"]


@pytest.mark.asyncio
async def test_llm_collaborator_parses_fix() -> None:
    client = _client_returning('{"payload": {"amount_cents": 1999}}')

    fix = await LLMCollaborator(client).propose_fix(_VIOLATIONS, _context())

    assert fix == {"amount_cents": 1999}
    args, kwargs = client.complete.call_args
    assert kwargs == {"task_type": FIX_TASK, "json_mode": True}
    assert args[0][0]["role"] == "system"


@pytest.mark.asyncio
async def test_llm_collaborator_extracts_fenced_program() -> None:
    source = "def transform(payload):\n    return payload\n"
    client = _client_returning(json.dumps({"program": f"```python\n{source}```"}))

    program = await LLMCollaborator(client).generate_program(_VIOLATIONS, _context())

    assert program == source
    assert client.complete.call_args.kwargs["task_type"] == PROGRAM_TASK


@pytest.mark.asyncio
async def test_llm_collaborator_accepts_fenced_json_reply() -> None:
    client = _client_returning('Here you go:\n```json\n{"payload": {"a": 1}}\n```')
    assert await LLMCollaborator(client).propose_fix(_VIOLATIONS, _context()) == {"a": 1}


@pytest.mark.asyncio
async def test_missing_payload_means_no_fix() -> None:
    client = _client_returning("{}")
    assert await LLMCollaborator(client).propose_fix(_VIOLATIONS, _context()) is None


@pytest.mark.parametrize(
    "content",
    ["not json", "[1, 2]", '{"payload": "text"}', None],
)
@pytest.mark.asyncio
async def test_malformed_replies_raise_delegation_failure(content) -> None:
    client = _client_returning(content)
    with pytest.raises(ModelDelegationFailedError):
        await LLMCollaborator(client).propose_fix(_VIOLATIONS, _context())


@pytest.mark.asyncio
async def test_empty_program_is_a_delegation_failure() -> None:
    client = _client_returning('{"program": "   "}')
    with pytest.raises(ModelDelegationFailedError):
        await LLMCollaborator(client).generate_program(_VIOLATIONS, _context())


@pytest.mark.asyncio
async def test_llm_errors_become_delegation_failures() -> None:
    client = MagicMock(spec=LLMClient)
    client.complete = AsyncMock(side_effect=ServiceUnavailableError("down", model="m"))
    with pytest.raises(ModelDelegationFailedError, match="model call failed"):
        await LLMCollaborator(client).propose_fix(_VIOLATIONS, _context())


@pytest.mark.asyncio
async def test_null_collaborator_never_proposes() -> None:
    collaborator = NullCollaborator()
    assert await collaborator.propose_fix(_VIOLATIONS, _context()) is None
    assert await collaborator.generate_program(_VIOLATIONS, _context()) is None


@pytest.mark.asyncio
async def test_rate_limited_collaborator_bounds_concurrency() -> None:
    active = 0
    peak = 0

    class _Inner(NullCollaborator):
        async def propose_fix(self, violations, context):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return {"ok": True}

    limited = RateLimitedCollaborator(_Inner(), max_concurrent=2)
    results = await asyncio.gather(*(limited.propose_fix(_VIOLATIONS, _context()) for _ in range(6)))

    assert results == [{"ok": True}] * 6
    assert peak == 2


def test_rate_limited_collaborator_validates_arguments() -> None:
    with pytest.raises(ValueError):
        RateLimitedCollaborator(NullCollaborator(), max_concurrent=0)
    with pytest.raises(ValueError):
        RateLimitedCollaborator(NullCollaborator(), min_interval_seconds=-1)


@pytest.mark.asyncio
async def test_llm_client_mock_mode_routes_by_task() -> None:
    client = LLMClient(LLMConfig(mock_mode=True, mock_responses={FIX_TASK: '{"payload": {}}', "default": "{}"}))
    assert (await client.complete([], task_type=FIX_TASK)).content == '{"payload": {}}'
    assert (await client.complete([], task_type="other")).content == "{}"


def _completion(content: str) -> SimpleNamespace:
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(prompt_tokens=3, completion_tokens=4),
    )


@pytest.mark.asyncio
async def test_llm_client_routes_task_and_falls_back() -> None:
    config = LLMConfig(
        default_model="primary",
        task_routing=[TaskRouting(task_type=FIX_TASK, model="fixer", fallback_models=["backup"])],
        max_retries=1,
    )
    calls: list[str] = []

    async def _fake(**params):
        calls.append(params["model"])
        if params["model"] == "fixer":
            raise RuntimeError("503 service unavailable")
        return _completion('{"payload": {}}')

    with patch("owlmend.integrations.llm.acompletion", side_effect=_fake):
        response = await LLMClient(config).complete([{"role": "user", "content": "x"}], FIX_TASK, json_mode=True)

    assert calls == ["fixer", "backup"]
    assert response.model == "backup"
    assert response.total_tokens == 7


@pytest.mark.asyncio
async def test_llm_client_does_not_fall_back_on_authentication_errors() -> None:
    class AuthenticationFailure(Exception):
        pass

    config = LLMConfig(default_model="primary", fallback_models=["backup"])
    fake = AsyncMock(side_effect=AuthenticationFailure("bad key"))
    with patch("owlmend.integrations.llm.acompletion", fake):
        with pytest.raises(AuthenticationError):
            await LLMClient(config).complete([])
    assert fake.await_count == 1
