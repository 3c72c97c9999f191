"""
Staleness Detection

Pure comparison of an artifact's recorded hashes against the current
resolution. Reporting staleness never writes; regeneration is always an
explicit caller action.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, Optional, Tuple

from ..contracts.events import Artifact, FactPairs
from ..qualifications.resolver import ResolveResult, changed_fact_keys
from .dependency_map import DependencyMap


STALE_REASON_RESOLVER_HASH = "resolver_hash_changed"


@dataclass(frozen=True)
class StaleArtifact:
    artifact_id: str
    kind: str
    recorded_hash: str
    current_hash: str
    reason: str = STALE_REASON_RESOLVER_HASH


@dataclass(frozen=True)
class StalenessReport:
    """Read-only report over a project's artifacts."""
    resolver_hash: str
    stale: Tuple[StaleArtifact, ...] = field(default_factory=tuple)
    fresh_kinds: Tuple[str, ...] = field(default_factory=tuple)
    changed_keys: Tuple[str, ...] = field(default_factory=tuple)
    affected_kinds: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def stale_kinds(self) -> Tuple[str, ...]:
        return tuple(s.kind for s in self.stale)


class StalenessDetector:
    """
    Decides whether an artifact is stale relative to the current facts.

    An artifact is stale iff:
    - it records a prior resolver hash,
    - that hash differs from the current one,
    - its kind depends on at least one fact, and
    - the hash over only its dependency keys differs too (when recorded).

    The last condition means a change to an unrelated fact never makes an
    artifact stale, even though the global hash moved.
    """

    def __init__(self, dependency_map: Optional[DependencyMap] = None):
        self._map = dependency_map or DependencyMap()

    @property
    def dependency_map(self) -> DependencyMap:
        return self._map

    def is_stale(self, artifact: Artifact, current: ResolveResult) -> bool:
        if artifact.recorded_hash is None:
            return False
        if artifact.recorded_hash == current.resolver_hash:
            return False
        dependencies = self._map.depends_on(artifact.kind)
        if not dependencies:
            return False
        if artifact.dependency_hash is None:
            return True
        recorded_keys = artifact.depends_on or tuple(dependencies)
        return artifact.dependency_hash != current.scoped_hash(recorded_keys)

    def report(
        self,
        artifacts: Iterable[Artifact],
        current: ResolveResult,
        previous_facts: Optional[FactPairs] = None
    ) -> StalenessReport:
        """Classify artifacts as stale or fresh. Never writes."""
        stale = []
        fresh = []
        for artifact in sorted(artifacts, key=lambda a: a.kind):
            if self.is_stale(artifact, current):
                stale.append(StaleArtifact(
                    artifact_id=artifact.artifact_id,
                    kind=artifact.kind,
                    recorded_hash=artifact.recorded_hash or "",
                    current_hash=current.resolver_hash,
                ))
            else:
                fresh.append(artifact.kind)

        changed: FrozenSet[str] = frozenset()
        affected: FrozenSet[str] = frozenset()
        if previous_facts is not None:
            changed = changed_fact_keys(previous_facts, current.facts)
            affected = self._map.affected_artifact_kinds(changed)

        return StalenessReport(
            resolver_hash=current.resolver_hash,
            stale=tuple(stale),
            fresh_kinds=tuple(fresh),
            changed_keys=tuple(sorted(changed)),
            affected_kinds=tuple(sorted(affected)),
        )
