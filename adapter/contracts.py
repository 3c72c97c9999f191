"""
Adapter Contracts

Typed request/outcome schemas for pipeline <-> generation backend
communication.

BOUNDARY ENFORCEMENT:
=====================
- All types are FROZEN (immutable)
- All requests carry an explicit contract version
- Outcomes are a tagged union: success | retryable_failure | fatal_failure

WHY SEPARATE CONTRACTS:
=======================
Pipeline contracts (episode_engine/contracts/) define internal records.
These adapter contracts define the INTERFACE to the generation backend.
They are deliberately distinct to enforce the boundary.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple
from enum import Enum
import hashlib
import json


CONTRACT_VERSION = "episode-gen/1"


class TaskType(Enum):
    UNIT_GENERATION = "unit_generation"
    ARTIFACT_GENERATION = "artifact_generation"
    IMPACT_ANALYSIS = "impact_analysis"
    PATCH_PROPOSAL = "patch_proposal"


def _canonical(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"))


# =============================================================================
# INPUT CONTRACTS (Pipeline -> Backend)
# =============================================================================

@dataclass(frozen=True)
class ContextArtifact:
    """An artifact version supplied as generation context."""
    artifact_id: str
    kind: str
    version_id: str
    content: str


@dataclass(frozen=True)
class ContinuityInput:
    """Continuity carried from a locked unit into the next request."""
    unit_index: int
    title: str
    tail_excerpt: str
    closing_line: str
    content_hash: str


@dataclass(frozen=True)
class UnitGenerationRequest:
    """
    Everything the backend may use to produce one unit.

    INVARIANT: identical requests have identical content_hash()
    """
    request_id: str
    project_id: str
    unit_index: int
    unit_title: str
    fact_hash: str
    facts: Tuple[Tuple[str, Any], ...]
    context_artifacts: Tuple[ContextArtifact, ...] = field(default_factory=tuple)
    previous_continuity: Optional[ContinuityInput] = None
    template: Optional[ContinuityInput] = None
    attempt: int = 1
    contract_version: str = CONTRACT_VERSION

    task_type = TaskType.UNIT_GENERATION

    def payload(self) -> Dict[str, Any]:
        return {
            "contract_version": self.contract_version,
            "project_id": self.project_id,
            "unit_index": self.unit_index,
            "unit_title": self.unit_title,
            "fact_hash": self.fact_hash,
            "facts": dict(self.facts),
            "context": [
                {"kind": a.kind, "version_id": a.version_id, "content": a.content}
                for a in self.context_artifacts
            ],
            "previous": _continuity_payload(self.previous_continuity),
            "template": _continuity_payload(self.template),
        }

    def content_hash(self) -> str:
        return hashlib.sha256(_canonical(self.payload()).encode()).hexdigest()


@dataclass(frozen=True)
class ArtifactGenerationRequest:
    """Request to (re)generate one artifact kind from its upstream versions."""
    request_id: str
    project_id: str
    kind: str
    fact_hash: str
    facts: Tuple[Tuple[str, Any], ...]
    upstream: Tuple[ContextArtifact, ...] = field(default_factory=tuple)
    contract_version: str = CONTRACT_VERSION

    task_type = TaskType.ARTIFACT_GENERATION

    def payload(self) -> Dict[str, Any]:
        return {
            "contract_version": self.contract_version,
            "project_id": self.project_id,
            "kind": self.kind,
            "fact_hash": self.fact_hash,
            "facts": dict(self.facts),
            "upstream": [
                {"kind": a.kind, "version_id": a.version_id, "content": a.content}
                for a in self.upstream
            ],
        }

    def content_hash(self) -> str:
        return hashlib.sha256(_canonical(self.payload()).encode()).hexdigest()


@dataclass(frozen=True)
class ImpactCandidate:
    """A locked unit the impact analysis may flag."""
    unit_index: int
    title: str
    excerpt: str


@dataclass(frozen=True)
class ImpactAnalysisRequest:
    request_id: str
    project_id: str
    summary: str
    candidates: Tuple[ImpactCandidate, ...]
    changed_artifact_kind: Optional[str] = None
    contract_version: str = CONTRACT_VERSION

    task_type = TaskType.IMPACT_ANALYSIS

    def payload(self) -> Dict[str, Any]:
        return {
            "contract_version": self.contract_version,
            "project_id": self.project_id,
            "summary": self.summary,
            "changed_artifact_kind": self.changed_artifact_kind,
            "candidates": [
                {"unit_index": c.unit_index, "title": c.title, "excerpt": c.excerpt}
                for c in self.candidates
            ],
        }

    def content_hash(self) -> str:
        return hashlib.sha256(_canonical(self.payload()).encode()).hexdigest()


@dataclass(frozen=True)
class PatchProposalRequest:
    request_id: str
    project_id: str
    summary: str
    target_index: int
    title: str
    current_content: str
    previous_continuity: Optional[ContinuityInput] = None
    contract_version: str = CONTRACT_VERSION

    task_type = TaskType.PATCH_PROPOSAL

    def payload(self) -> Dict[str, Any]:
        return {
            "contract_version": self.contract_version,
            "project_id": self.project_id,
            "summary": self.summary,
            "target_index": self.target_index,
            "title": self.title,
            "current_content": self.current_content,
            "previous": _continuity_payload(self.previous_continuity),
        }

    def content_hash(self) -> str:
        return hashlib.sha256(_canonical(self.payload()).encode()).hexdigest()


def _continuity_payload(note: Optional[ContinuityInput]) -> Optional[Dict[str, Any]]:
    if note is None:
        return None
    return {
        "unit_index": note.unit_index,
        "title": note.title,
        "tail_excerpt": note.tail_excerpt,
        "closing_line": note.closing_line,
    }


# =============================================================================
# OUTPUT CONTRACTS (Backend -> Pipeline)
# =============================================================================

class OutcomeKind(Enum):
    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable_failure"
    FATAL_FAILURE = "fatal_failure"


@dataclass(frozen=True)
class GenerationOutcome:
    """
    Tagged union returned for every generation call.

    INVARIANT: SUCCESS has content; failures have error_code and no content
    """
    kind: OutcomeKind
    request_id: str
    content: Optional[str] = None
    needs_revision: bool = False
    error_code: Optional[str] = None
    message: str = ""
    trace_id: Optional[str] = None
    latency_ms: float = 0.0
    contract_version: str = CONTRACT_VERSION

    def __post_init__(self):
        if self.kind == OutcomeKind.SUCCESS and self.content is None:
            raise ValueError("Successful outcome must have content")
        if self.kind != OutcomeKind.SUCCESS and (self.error_code is None or self.content is not None):
            raise ValueError("Failed outcome must have error_code and no content")

    @property
    def is_success(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS

    @property
    def is_retryable(self) -> bool:
        return self.kind == OutcomeKind.RETRYABLE_FAILURE

    @staticmethod
    def success(request_id: str, content: str, needs_revision: bool = False, **meta: Any) -> GenerationOutcome:
        return GenerationOutcome(
            kind=OutcomeKind.SUCCESS,
            request_id=request_id,
            content=content,
            needs_revision=needs_revision,
            **meta
        )

    @staticmethod
    def retryable(request_id: str, error_code: str, message: str, **meta: Any) -> GenerationOutcome:
        return GenerationOutcome(
            kind=OutcomeKind.RETRYABLE_FAILURE,
            request_id=request_id,
            error_code=error_code,
            message=message,
            **meta
        )

    @staticmethod
    def fatal(request_id: str, error_code: str, message: str, **meta: Any) -> GenerationOutcome:
        return GenerationOutcome(
            kind=OutcomeKind.FATAL_FAILURE,
            request_id=request_id,
            error_code=error_code,
            message=message,
            **meta
        )


@dataclass(frozen=True)
class ImpactVerdict:
    """The backend's judgment that one unit is affected."""
    unit_index: int
    reason: str


@dataclass(frozen=True)
class ImpactAnalysisOutcome:
    kind: OutcomeKind
    request_id: str
    verdicts: Tuple[ImpactVerdict, ...] = field(default_factory=tuple)
    error_code: Optional[str] = None
    message: str = ""
    trace_id: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS


# =============================================================================
# AUDIT CONTRACTS
# =============================================================================

@dataclass(frozen=True)
class AuditRequest:
    project_id: str
    unit_index: int
    title: str
    content: str


@dataclass(frozen=True)
class AuditFinding:
    code: str
    message: str
    blocking: bool = True


@dataclass(frozen=True)
class AuditReport:
    """Findings from the external audit process. Any blocker prevents lock."""
    findings: Tuple[AuditFinding, ...] = field(default_factory=tuple)
    auditor: str = "none"

    @property
    def blockers(self) -> Tuple[AuditFinding, ...]:
        return tuple(f for f in self.findings if f.blocking)

    @property
    def has_blockers(self) -> bool:
        return bool(self.blockers)
