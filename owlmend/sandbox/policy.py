"""Static AST policy applied to sandbox programs before execution."""

from __future__ import annotations

import ast
from collections.abc import Iterable

DEFAULT_ALLOWED_MODULES = frozenset(
    {
        "calendar",
        "datetime",
        "decimal",
        "fractions",
        "json",
        "math",
        "re",
        "statistics",
        "string",
        "unicodedata",
    }
)

FORBIDDEN_NAMES = frozenset(
    {
        "open",
        "exec",
        "eval",
        "compile",
        "__import__",
        "getattr",
        "setattr",
        "delattr",
        "globals",
        "locals",
        "vars",
        "dir",
        "input",
        "breakpoint",
        "help",
        "memoryview",
        "id",
        "hash",
        "set",
        "frozenset",
        "exit",
        "quit",
    }
)

# Wall-clock reads, format-string attribute access, random sampling and the
# interpreter handles that allowed modules import for themselves.
FORBIDDEN_ATTRIBUTES = frozenset(
    {
        "now", "today", "utcnow", "time",
        "format", "format_map", "vformat", "get_field",
        "random", "samples",
        "sys", "os", "modules", "builtins",
    }
)

ENTRYPOINT = "transform"
MAX_PROGRAM_CHARS = 20000

_FORBIDDEN_NODES: tuple[type[ast.AST], ...] = (
    ast.Set,
    ast.SetComp,
    ast.Global,
    ast.Nonlocal,
    ast.AsyncFunctionDef,
    ast.AsyncFor,
    ast.AsyncWith,
    ast.Await,
)


class PolicyViolation(ValueError):
    """Program rejected by the static policy."""

    def __init__(self, problems: list[str]) -> None:
        self.problems = problems
        super().__init__("; ".join(problems))


class SandboxPolicy:
    """Allow-list based checks: imports, names, attributes and node types."""

    def __init__(self, allowed_modules: Iterable[str] | None = None) -> None:
        self.allowed_modules = frozenset(allowed_modules) if allowed_modules is not None else DEFAULT_ALLOWED_MODULES

    def check(self, program: str) -> list[str]:
        """Return a list of policy problems; empty when the program is acceptable."""
        if not isinstance(program, str) or not program.strip():
            return ["program must be a non-empty string"]
        if len(program) > MAX_PROGRAM_CHARS:
            return [f"program exceeds {MAX_PROGRAM_CHARS} characters"]
        try:
            tree = ast.parse(program, mode="exec")
        except SyntaxError as exc:
            return [f"syntax error at line {exc.lineno}: {exc.msg}"]

        problems: list[str] = []
        for node in ast.walk(tree):
            if isinstance(node, _FORBIDDEN_NODES):
                problems.append(f"line {getattr(node, 'lineno', '?')}: {type(node).__name__} is not allowed")
            elif isinstance(node, ast.Import):
                for alias in node.names:
                    problems.extend(self._check_module(alias.name, node.lineno))
            elif isinstance(node, ast.ImportFrom):
                if node.level:
                    problems.append(f"line {node.lineno}: relative imports are not allowed")
                else:
                    problems.extend(self._check_module(node.module or "", node.lineno))
                for alias in node.names:
                    if alias.name == "*" or alias.name.startswith("_") or alias.name in FORBIDDEN_ATTRIBUTES:
                        problems.append(f"line {node.lineno}: import of '{alias.name}' is not allowed")
            elif isinstance(node, ast.Attribute):
                if node.attr.startswith("_"):
                    problems.append(f"line {node.lineno}: private attribute '{node.attr}' is not allowed")
                elif node.attr in FORBIDDEN_ATTRIBUTES:
                    problems.append(f"line {node.lineno}: attribute '{node.attr}' is not allowed")
            elif isinstance(node, ast.Name):
                if node.id.startswith("__") or node.id in FORBIDDEN_NAMES:
                    problems.append(f"line {node.lineno}: name '{node.id}' is not allowed")
            elif isinstance(node, ast.FunctionDef | ast.ClassDef) and node.name.startswith("__"):
                problems.append(f"line {node.lineno}: definition '{node.name}' is not allowed")

        if not any(
            isinstance(node, ast.FunctionDef) and node.name == ENTRYPOINT for node in tree.body
        ):
            problems.append(f"program must define a top-level '{ENTRYPOINT}' function")
        return problems

    def validate(self, program: str) -> ast.Module:
        problems = self.check(program)
        if problems:
            raise PolicyViolation(problems)
        return ast.parse(program, mode="exec")

    def _check_module(self, name: str, lineno: int) -> list[str]:
        root = name.split(".", 1)[0]
        if root not in self.allowed_modules:
            return [f"line {lineno}: import of module '{name}' is not allowed"]
        return []
