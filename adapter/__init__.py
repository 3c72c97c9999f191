"""
Generation Adapter Package

ARCHITECTURAL BOUNDARY:
=======================
This package is the ONLY allowed interface between the episode pipeline
and the content generation / audit backends.

DIRECTION OF DEPENDENCY:
========================
episode_engine -> adapter -> generation backend

NEVER:
- adapter importing from episode_engine
- episode_engine talking to a provider except through GenerationPipeline

DESIGN PRINCIPLES:
==================
1. Pure interface - no lifecycle logic
2. Typed request/outcome schemas only
3. Explicit contract version on every request
4. Backend outputs are proposals; the pipeline decides what is kept
"""

from .contracts import (
    CONTRACT_VERSION,
    TaskType,
    ContextArtifact,
    ContinuityInput,
    UnitGenerationRequest,
    ArtifactGenerationRequest,
    ImpactCandidate,
    ImpactAnalysisRequest,
    PatchProposalRequest,
    OutcomeKind,
    GenerationOutcome,
    ImpactVerdict,
    ImpactAnalysisOutcome,
    AuditRequest,
    AuditFinding,
    AuditReport,
)

from .pipeline import (
    GenerationPipeline,
    InvocationConfig,
    InvocationTrace,
)

from .audit import (
    AuditGate,
    NoBlockersAudit,
    PlaceholderAudit,
    CompositeAudit,
)

__all__ = [
    # Contracts
    'CONTRACT_VERSION', 'TaskType', 'ContextArtifact', 'ContinuityInput',
    'UnitGenerationRequest', 'ArtifactGenerationRequest', 'ImpactCandidate',
    'ImpactAnalysisRequest', 'PatchProposalRequest', 'OutcomeKind',
    'GenerationOutcome', 'ImpactVerdict', 'ImpactAnalysisOutcome',
    'AuditRequest', 'AuditFinding', 'AuditReport',
    # Pipeline
    'GenerationPipeline', 'InvocationConfig', 'InvocationTrace',
    # Audit
    'AuditGate', 'NoBlockersAudit', 'PlaceholderAudit', 'CompositeAudit',
]
