"""Unit tests for the static sandbox policy and the in-process runner."""

from __future__ import annotations

import pytest

from owlmend.sandbox import PolicyViolation, SandboxPolicy
from owlmend.sandbox.runner import execute

_BUDGET = {"cpu_seconds": 2.0, "memory_mb": 256, "wall_clock_seconds": 5.0, "output_bytes": 1024}

_SCALE = """
from decimal import Decimal, ROUND_HALF_UP

def transform(amt):
    return int((Decimal(amt) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
"""


def test_allowed_program_passes() -> None:
    assert SandboxPolicy().check(_SCALE) == []


@pytest.mark.parametrize(
    ("program", "fragment"),
    [
        ("def transform():\n    return open('/etc/passwd').read()\n", "name 'open'"),
        ("import os\n\ndef transform():\n    return os.getcwd()\n", "module 'os'"),
        ("import socket\n\ndef transform():\n    return 1\n", "module 'socket'"),
        ("from subprocess import run\n\ndef transform():\n    return 1\n", "module 'subprocess'"),
        ("import datetime\n\ndef transform():\n    return str(datetime.datetime.now())\n", "attribute 'now'"),
        ("def transform(x):\n    return x.__class__\n", "private attribute"),
        ("def transform(x):\n    return eval(x)\n", "name 'eval'"),
        ("def transform(x):\n    return {x}\n", "Set is not allowed"),
        ("from . import x\n\ndef transform():\n    return 1\n", "relative imports"),
        ("def helper():\n    return 1\n", "top-level 'transform'"),
        ("def transform(:\n", "syntax error"),
        ("", "non-empty"),
    ],
)
def test_policy_rejections(program, fragment) -> None:
    problems = SandboxPolicy().check(program)
    assert problems
    assert any(fragment in p for p in problems)


def test_validate_raises_policy_violation() -> None:
    with pytest.raises(PolicyViolation) as excinfo:
        SandboxPolicy().validate("import os\n")
    assert len(excinfo.value.problems) == 2


def test_custom_allow_list() -> None:
    policy = SandboxPolicy(allowed_modules={"math"})
    assert policy.check("import json\n\ndef transform():\n    return 1\n")


def test_execute_runs_transform_with_bindings() -> None:
    result = execute(_SCALE, {"amt": "19.99"}, _BUDGET, frozenset({"decimal"}))
    assert result["ok"] is True
    assert result["value"] == 1999


def test_execute_reports_program_errors_as_data() -> None:
    result = execute("def transform():\n    return 1 / 0\n", {}, _BUDGET, frozenset())
    assert result["ok"] is False
    assert result["error_kind"] == "execution_fault"
    assert "ZeroDivisionError" in result["message"]


def test_execute_blocks_runtime_imports_outside_allow_list() -> None:
    program = "def transform():\n    import json\n    return 1\n"
    result = execute(program, {}, _BUDGET, frozenset({"math"}))
    assert result["error_kind"] == "execution_fault"
    assert "not allowed" in result["message"]


def test_execute_enforces_output_budget() -> None:
    program = "def transform():\n    print('x' * 5000)\n    return 1\n"
    result = execute(program, {}, _BUDGET, frozenset())
    assert result["error_kind"] == "resource_exceeded"


def test_execute_rejects_non_json_results() -> None:
    program = "def transform():\n    return float('nan')\n"
    result = execute(program, {}, _BUDGET, frozenset())
    assert result["error_kind"] == "execution_fault"
    assert "JSON" in result["message"]


def test_execute_captures_stdout() -> None:
    program = "def transform():\n    print('hello')\n    return None\n"
    result = execute(program, {}, _BUDGET, frozenset())
    assert result["ok"] is True
    assert result["stdout"] == "hello\n"


@pytest.mark.parametrize("attribute", ["sys", "os", "modules", "builtins", "random"])
def test_policy_rejects_module_handles(attribute) -> None:
    program = f"import calendar\n\ndef transform():\n    return calendar.{attribute}\n"
    assert any(f"attribute '{attribute}'" in p for p in SandboxPolicy().check(program))


def test_execute_hands_out_module_proxies() -> None:
    program = (
        "import statistics\n"
        "import calendar\n"
        "\n"
        "def transform():\n"
        "    return [hasattr(statistics, 'random'), hasattr(calendar, 'sys'), statistics.median([3, 1, 2])]\n"
    )
    result = execute(program, {}, _BUDGET, frozenset({"statistics", "calendar"}))
    assert result["ok"] is True, result["message"]
    assert result["value"] == [False, False, 2]
