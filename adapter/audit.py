"""
Audit Gate
==========

Interface to the external audit/validation process consulted before a
unit is locked. Any blocking finding prevents the lock.

Available gates:
- NoBlockersAudit: accepts everything
- PlaceholderAudit: blocks content that still carries placeholder tokens
- CompositeAudit: merges findings from several gates
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Sequence
import re

from .contracts import AuditFinding, AuditReport, AuditRequest


PLACEHOLDER_TOKENS = ("TBD", "TK", "TODO", "PLACEHOLDER")

_PLACEHOLDER = re.compile(
    r"\b(" + "|".join(PLACEHOLDER_TOKENS) + r")\b|\?\?\?"
)


class AuditGate(ABC):
    """
    GUARANTEES:
    - check() never mutates its input
    - check() returns a report; it does not raise for content problems
    """

    @abstractmethod
    def check(self, request: AuditRequest) -> AuditReport:
        pass


class NoBlockersAudit(AuditGate):
    def check(self, request: AuditRequest) -> AuditReport:
        return AuditReport(auditor="none")


class PlaceholderAudit(AuditGate):
    """Blocks locking while placeholder tokens remain in the content."""

    def check(self, request: AuditRequest) -> AuditReport:
        findings = []
        for line_number, line in enumerate(request.content.splitlines(), start=1):
            match = _PLACEHOLDER.search(line)
            if match:
                findings.append(AuditFinding(
                    code="placeholder_token",
                    message=f"Line {line_number} contains placeholder {match.group(0)!r}",
                ))
        if not request.content.strip():
            findings.append(AuditFinding(code="empty_content", message="Content is empty"))
        return AuditReport(findings=tuple(findings), auditor="placeholder")


class CompositeAudit(AuditGate):
    def __init__(self, gates: Sequence[AuditGate]):
        self._gates = tuple(gates)

    def check(self, request: AuditRequest) -> AuditReport:
        findings = []
        names = []
        for gate in self._gates:
            report = gate.check(request)
            findings.extend(report.findings)
            names.append(report.auditor)
        return AuditReport(findings=tuple(findings), auditor="+".join(names))
