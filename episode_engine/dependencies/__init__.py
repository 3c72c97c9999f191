"""
Dependency Layer

RESPONSIBILITY: Declare artifact -> fact dependencies, detect staleness
OUTPUTS: DependencyMap lookups, StalenessReport

WHAT THIS LAYER MUST NOT DO:
============================
- Write to storage (staleness is reported, never repaired)
- Regenerate artifacts
"""

from .dependency_map import (
    DependencyMap,
    DependencyDeclarationError,
    DEFAULT_FACT_DEPENDENCIES,
    DEFAULT_UPSTREAM,
)
from .staleness import (
    StalenessDetector,
    StalenessReport,
    StaleArtifact,
    STALE_REASON_RESOLVER_HASH,
)

__all__ = [
    "DependencyMap",
    "DependencyDeclarationError",
    "DEFAULT_FACT_DEPENDENCIES",
    "DEFAULT_UPSTREAM",
    "StalenessDetector",
    "StalenessReport",
    "StaleArtifact",
    "STALE_REASON_RESOLVER_HASH",
]
