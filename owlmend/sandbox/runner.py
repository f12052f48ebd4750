"""Child-process side of the sandbox: apply limits, run ``transform``, send the result.

This module runs inside a freshly spawned interpreter and only depends on the
standard library so the child starts quickly and small.
"""

from __future__ import annotations

import builtins
import contextlib
import importlib
import io
import json
import math
import sys
import types
from typing import Any

from owlmend.sandbox.policy import ENTRYPOINT, FORBIDDEN_ATTRIBUTES, FORBIDDEN_NAMES

_NOFILE_LIMIT = 16
_RECURSION_LIMIT = 500


class OutputLimitExceeded(Exception):
    pass


class _BoundedBuffer(io.StringIO):
    def __init__(self, limit: int) -> None:
        super().__init__()
        self._limit = limit
        self._size = 0

    def write(self, s: str) -> int:
        self._size += len(s.encode("utf-8"))
        if self._size > self._limit:
            raise OutputLimitExceeded(f"output exceeded {self._limit} bytes")
        return super().write(s)


def apply_limits(budget: dict[str, Any]) -> None:
    """Set RLIMIT_AS, RLIMIT_CPU, RLIMIT_FSIZE and RLIMIT_NOFILE for this process."""
    import resource

    used = resource.getrusage(resource.RUSAGE_SELF)
    cpu = int(math.ceil(used.ru_utime + used.ru_stime + float(budget["cpu_seconds"])))
    resource.setrlimit(resource.RLIMIT_CPU, (cpu, cpu + 1))
    memory = int(budget["memory_mb"]) * 1024 * 1024
    resource.setrlimit(resource.RLIMIT_AS, (memory, memory))
    resource.setrlimit(resource.RLIMIT_FSIZE, (0, 0))
    resource.setrlimit(resource.RLIMIT_NOFILE, (_NOFILE_LIMIT, _NOFILE_LIMIT))


def module_proxy(module: types.ModuleType) -> types.SimpleNamespace:
    """Stand-in for an allowed module holding only its public, non-module attributes.

    Allowed modules import others (`sys`, `random`, `os`) at top level; handing
    the real module to the program would expose those through plain attributes.
    """
    exposed = {
        name: value
        for name, value in vars(module).items()
        if not name.startswith("_")
        and name not in FORBIDDEN_ATTRIBUTES
        and not isinstance(value, types.ModuleType)
    }
    return types.SimpleNamespace(**exposed)


def _restricted_builtins(allowed_modules: frozenset[str]) -> dict[str, Any]:
    proxies: dict[str, types.SimpleNamespace] = {}
    safe = {
        name: value
        for name, value in vars(builtins).items()
        if not name.startswith("_") and name not in FORBIDDEN_NAMES
    }

    def _guarded_import(name, globals=None, locals=None, fromlist=(), level=0):  # noqa: A002
        if level != 0 or name.split(".", 1)[0] not in allowed_modules:
            raise ImportError(f"import of module '{name}' is not allowed")
        # `import a.b` binds `a`; `from a.b import c` reads from `a.b`.
        target = name if fromlist else name.split(".", 1)[0]
        if target not in proxies:
            proxies[target] = module_proxy(importlib.import_module(target))
        return proxies[target]

    safe["__import__"] = _guarded_import
    safe["__build_class__"] = builtins.__build_class__
    return safe


def _encode_result(value: Any, limit: int) -> dict[str, Any]:
    try:
        encoded = json.dumps(value, sort_keys=True, allow_nan=False)
    except (TypeError, ValueError) as exc:
        return {"error_kind": "execution_fault", "message": f"result is not JSON-serializable: {exc}"}
    if len(encoded.encode("utf-8")) > limit:
        return {"error_kind": "resource_exceeded", "message": "result exceeded output budget"}
    return {"ok": True, "value": json.loads(encoded)}


def execute(program: str, bindings: dict[str, Any], budget: dict[str, Any], allowed_modules: frozenset[str]) -> dict[str, Any]:
    """Run the program in this process and return a result message (no limits applied here)."""
    stdout = _BoundedBuffer(int(budget["output_bytes"]))
    stderr = _BoundedBuffer(int(budget["output_bytes"]))
    message: dict[str, Any] = {"ok": False, "value": None, "error_kind": None, "message": ""}
    try:
        with contextlib.redirect_stdout(stdout), contextlib.redirect_stderr(stderr):
            namespace: dict[str, Any] = {
                "__builtins__": _restricted_builtins(allowed_modules),
                "__name__": "__sandbox__",
            }
            exec(compile(program, "<sandbox>", "exec"), namespace)
            entry = namespace.get(ENTRYPOINT)
            if not callable(entry):
                raise TypeError(f"'{ENTRYPOINT}' is not callable")
            value = entry(**bindings)
        message.update(_encode_result(value, int(budget["output_bytes"])))
    except OutputLimitExceeded as exc:
        message.update(error_kind="resource_exceeded", message=str(exc))
    except MemoryError:
        message.update(error_kind="resource_exceeded", message="memory limit exceeded")
    except Exception as exc:
        message.update(error_kind="execution_fault", message=f"{type(exc).__name__}: {exc}")
    message["stdout"] = stdout.getvalue()
    message["stderr"] = stderr.getvalue()
    return message


def run_job(conn: Any, program: str, bindings: dict[str, Any], budget: dict[str, Any], allowed_modules: list[str]) -> None:
    """Process target: preload allowed modules, lock down, execute, report over ``conn``."""
    allowed = frozenset(allowed_modules)
    try:
        for name in sorted(allowed):
            importlib.import_module(name)
        sys.setrecursionlimit(_RECURSION_LIMIT)
        apply_limits(budget)
        conn.send({"event": "ready"})
        result = execute(program, bindings, budget, allowed)
    except MemoryError:
        result = {"ok": False, "error_kind": "resource_exceeded", "message": "memory limit exceeded"}
    except Exception as exc:
        result = {"ok": False, "error_kind": "execution_fault", "message": f"sandbox setup failed: {exc}"}
    result["event"] = "result"
    conn.send(result)
    conn.close()
