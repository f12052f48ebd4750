"""Sandbox job, budget and result types."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from owlmend.errors import SandboxFaultError, SandboxResourceExceededError, SandboxTimeoutError


class SandboxErrorKind(str, Enum):
    TIMEOUT = "timeout"
    RESOURCE_EXCEEDED = "resource_exceeded"
    EXECUTION_FAULT = "execution_fault"


@dataclass(frozen=True)
class SandboxBudget:
    """External limits applied to one sandbox job."""

    cpu_seconds: float = 2.0
    memory_mb: int = 256
    wall_clock_seconds: float = 5.0
    output_bytes: int = 65536

    def __post_init__(self) -> None:
        if self.cpu_seconds <= 0 or self.wall_clock_seconds <= 0:
            raise ValueError("sandbox time budgets must be > 0")
        if self.memory_mb <= 0 or self.output_bytes <= 0:
            raise ValueError("sandbox memory and output budgets must be > 0")

    @classmethod
    def from_config(cls, config: Any) -> SandboxBudget:
        return cls(
            cpu_seconds=config.cpu_seconds,
            memory_mb=config.memory_mb,
            wall_clock_seconds=config.wall_clock_seconds,
            output_bytes=config.output_bytes,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "cpu_seconds": self.cpu_seconds,
            "memory_mb": self.memory_mb,
            "wall_clock_seconds": self.wall_clock_seconds,
            "output_bytes": self.output_bytes,
        }


@dataclass(frozen=True)
class SandboxJob:
    program: str
    bindings: dict[str, Any]
    budget: SandboxBudget
    id: UUID = field(default_factory=uuid4)


@dataclass(frozen=True)
class SandboxResult:
    """Ok(value) when ``ok``; otherwise ``error_kind`` and ``message`` describe the failure."""

    ok: bool
    value: Any = None
    error_kind: SandboxErrorKind | None = None
    message: str = ""
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    rejected: bool = False
    job_id: UUID | None = None

    @classmethod
    def success(cls, value: Any, **kwargs: Any) -> SandboxResult:
        return cls(ok=True, value=value, **kwargs)

    @classmethod
    def failure(cls, kind: SandboxErrorKind, message: str, **kwargs: Any) -> SandboxResult:
        return cls(ok=False, error_kind=kind, message=message, **kwargs)

    def raise_for_error(self) -> Any:
        """Return the value, or raise the typed sandbox exception for the failure kind."""
        if self.ok:
            return self.value
        if self.error_kind == SandboxErrorKind.TIMEOUT:
            raise SandboxTimeoutError(self.message)
        if self.error_kind == SandboxErrorKind.RESOURCE_EXCEEDED:
            raise SandboxResourceExceededError(self.message)
        raise SandboxFaultError(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "value": self.value,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "message": self.message,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "duration_ms": self.duration_ms,
            "rejected": self.rejected,
        }
