"""Gating policy: backend verdict + findings + invocation mode -> PASS/WARN/BLOCK.

Commit time is lenient, push time is strict, manual runs mirror the backend.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from .client import Finding

BLOCKING_CATEGORIES = frozenset({"unbounded_scale", "retry_storm", "fanout_explosion"})
BLOCKING_CONFIDENCE = 0.85

EXIT_PASS = 0
EXIT_WARN = 1
EXIT_BLOCK = 2
EXIT_ERROR = 3


class Decision(str, Enum):
    PASS = "PASS"
    WARN = "WARN"
    BLOCK = "BLOCK"


class GateMode(str, Enum):
    MANUAL = "manual"
    PRE_COMMIT = "pre-commit"
    PRE_PUSH = "pre-push"


@dataclass(frozen=True)
class GatingResult:
    decision: Decision
    findings: list[Finding] = field(default_factory=list)


_BACKEND_DECISIONS = {
    "pass": Decision.PASS,
    "warn": Decision.WARN,
    "block": Decision.BLOCK,
}


def _blocks_commit(finding: Finding) -> bool:
    return (
        finding.severity == "high"
        and finding.confidence >= BLOCKING_CONFIDENCE
        and finding.category in BLOCKING_CATEGORIES
    )


def gate(findings: list[Finding], backend_decision: str, mode: GateMode | str) -> GatingResult:
    """Apply the gating policy. Pure; no I/O.

    No findings always passes, even on a backend "block".
    """
    findings = list(findings)
    if not findings:
        return GatingResult(Decision.PASS, [])

    mode = GateMode(mode)
    backend_decision = (backend_decision or "").lower()

    if mode is GateMode.PRE_COMMIT:
        block = backend_decision == "block" and any(_blocks_commit(f) for f in findings)
        return GatingResult(Decision.BLOCK if block else Decision.WARN, findings)

    if mode is GateMode.PRE_PUSH:
        block = backend_decision == "block"
        return GatingResult(Decision.BLOCK if block else Decision.WARN, findings)

    return GatingResult(_BACKEND_DECISIONS.get(backend_decision, Decision.WARN), findings)


def has_non_advisory(findings: list[Finding]) -> bool:
    return any(f.severity in ("medium", "high") for f in findings)


def exit_code(result: GatingResult) -> int:
    """Process exit code for a gated verdict. Hooks abort only on EXIT_BLOCK."""
    if result.decision is Decision.BLOCK:
        return EXIT_BLOCK
    if result.decision is Decision.WARN or has_non_advisory(result.findings):
        return EXIT_WARN
    return EXIT_PASS
