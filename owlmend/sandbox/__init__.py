"""Sandbox executor for generated transformation programs."""

from owlmend.sandbox.executor import SandboxExecutor
from owlmend.sandbox.models import SandboxBudget, SandboxErrorKind, SandboxJob, SandboxResult
from owlmend.sandbox.policy import DEFAULT_ALLOWED_MODULES, PolicyViolation, SandboxPolicy

__all__ = [
    "DEFAULT_ALLOWED_MODULES",
    "PolicyViolation",
    "SandboxBudget",
    "SandboxErrorKind",
    "SandboxExecutor",
    "SandboxJob",
    "SandboxPolicy",
    "SandboxResult",
]
