"""Mismatch detection: compare proposed payloads against learned tool contracts."""

from owlmend.detection.coercion import CoercionFailed, coerce
from owlmend.detection.detector import DetectionPolicy, MismatchDetector
from owlmend.detection.external import violations_from_response
from owlmend.detection.report import (
    PRECISION_SENSITIVE_KINDS,
    Coercion,
    MismatchReport,
    Severity,
    Violation,
    ViolationKind,
    violation_signature,
)

__all__ = [
    "Coercion",
    "CoercionFailed",
    "DetectionPolicy",
    "MismatchDetector",
    "MismatchReport",
    "PRECISION_SENSITIVE_KINDS",
    "Severity",
    "Violation",
    "ViolationKind",
    "coerce",
    "violation_signature",
    "violations_from_response",
]
