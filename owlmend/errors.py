"""Error taxonomy for OwlMend.

Strategy-level failures are recovered inside the repair orchestrator by
falling through to the next strategy. Only malformed input to
``validate_and_repair`` escapes to callers as an exception.
"""

from __future__ import annotations


class OwlMendError(Exception):
    """Base exception for OwlMend."""


class InvalidCallError(OwlMendError):
    """Raised when validate_and_repair receives a malformed call."""


class ConfigurationError(OwlMendError):
    """Raised when the knowledge store database URL is missing or not PostgreSQL."""


class KnowledgeStoreUnavailableError(OwlMendError):
    """Raised when the knowledge store cannot be reached."""


class VersionConflictError(OwlMendError):
    """Raised when an assignment was computed against a stale field version."""

    def __init__(self, tool_id: str, path: str, expected: int, actual: int) -> None:
        self.tool_id = tool_id
        self.path = path
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Version conflict on {tool_id}:{path} (expected v{expected}, found v{actual})"
        )


class ContractContaminationError(OwlMendError):
    """Raised when evidence from one tool is applied to another tool's contract."""

    def __init__(self, target_tool_id: str, source_tool_id: str, path: str) -> None:
        self.target_tool_id = target_tool_id
        self.source_tool_id = source_tool_id
        self.path = path
        super().__init__(
            f"Evidence from tool '{source_tool_id}' cannot update '{target_tool_id}:{path}'"
        )


class ContractNotFoundError(OwlMendError):
    """No contract is known for the tool; validation degrades to structural checks."""


class RetrievalUnavailableError(OwlMendError):
    """Retrieval failed or timed out; callers continue without grounding."""


class ModelDelegationFailedError(OwlMendError):
    """The model collaborator failed, timed out, or returned an unusable answer."""


class SandboxError(OwlMendError):
    """Base class for sandbox failures surfaced as exceptions."""


class SandboxTimeoutError(SandboxError):
    """Sandbox job exceeded its wall-clock or CPU budget."""


class SandboxResourceExceededError(SandboxError):
    """Sandbox job exceeded its memory or output budget."""


class SandboxFaultError(SandboxError):
    """Sandbox program raised, was rejected by policy, or returned an invalid value."""


class UnresolvableError(OwlMendError):
    """All repair strategies were exhausted with blocking violations remaining."""


class StoreWriteFailedError(OwlMendError):
    """Feedback writer could not persist a trace or learning."""
