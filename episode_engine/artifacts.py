"""
Artifact Registry

Append-only artifact versions and their recorded hashes. Records what
was produced; deciding whether it is stale belongs to the staleness
detector, which never writes.
"""

from __future__ import annotations
from typing import Optional, Sequence, Tuple

from adapter import ArtifactGenerationRequest, ContextArtifact, GenerationPipeline

from .contracts.base import ErrorCode, Result, Timestamp, content_hash, derive_id, fail
from .contracts.events import Artifact, ArtifactVersion, AuditEventType
from .dependencies import StalenessDetector, StalenessReport
from .observability import ObservabilityEngine
from .snapshots import SnapshotManager
from .storage import PipelineRepository, WriteConflict, artifact_id_for


class ArtifactRegistry:
    """Writes artifact heads and versions; reports staleness."""

    def __init__(
        self,
        repository: PipelineRepository,
        snapshots: SnapshotManager,
        detector: StalenessDetector,
        pipeline: GenerationPipeline,
        observability: Optional[ObservabilityEngine] = None
    ):
        self._repo = repository
        self._snapshots = snapshots
        self._detector = detector
        self._pipeline = pipeline
        self._obs = observability or ObservabilityEngine()

    @property
    def dependency_map(self):
        return self._detector.dependency_map

    def record(
        self,
        project_id: str,
        kind: str,
        content: str,
        actor: str = "operator",
        upstream_versions: Optional[Sequence[Tuple[str, str]]] = None
    ) -> Result:
        """
        Append a new version of kind and move the artifact head to it.

        The head records the global resolver hash and the hash over only
        the fact keys kind depends on.
        """
        if not (kind or "").strip():
            return fail(ErrorCode.INVALID_ARGUMENT, "Artifact kind is required", project_id=project_id)
        if not (content or "").strip():
            return fail(ErrorCode.INVALID_ARGUMENT, f"Artifact {kind} content is empty",
                        project_id=project_id, kind=kind)
        resolution = self._snapshots.current_resolution(project_id)
        if resolution.is_failure:
            return resolution
        current = resolution.value

        depends_on = tuple(sorted(self.dependency_map.depends_on(kind)))
        dependency_hash = current.scoped_hash(depends_on)
        if upstream_versions is None:
            upstream_versions = self._upstream_heads(project_id, kind)

        try:
            with self._repo.atomic():
                now = Timestamp.now()
                head = self._repo.get_artifact(project_id, kind)
                artifact_id = head.artifact_id if head else artifact_id_for(project_id, kind)
                number = (head.version_count if head else 0) + 1
                version = self._repo.add(ArtifactVersion(
                    version_id=derive_id("av", artifact_id, number, content_hash(content)),
                    artifact_id=artifact_id,
                    project_id=project_id,
                    kind=kind,
                    version_number=number,
                    content=content,
                    resolver_hash=current.resolver_hash,
                    dependency_hash=dependency_hash,
                    depends_on=depends_on,
                    upstream_versions=tuple(upstream_versions),
                    created_by=actor,
                    created_at=now,
                ))
                head_changes = dict(
                    latest_version_id=version.version_id,
                    version_count=number,
                    recorded_hash=current.resolver_hash,
                    dependency_hash=dependency_hash,
                    depends_on=depends_on,
                )
                if head is None:
                    self._repo.add(Artifact(
                        artifact_id=artifact_id, project_id=project_id, kind=kind,
                        created_at=now, updated_at=now, **head_changes
                    ))
                else:
                    self._repo.update(head, **head_changes)
        except WriteConflict as conflict:
            return Result.failure(conflict.error)

        self._obs.log_audit("record_artifact", version.version_id,
                            details=f"kind={kind} v{number} hash={current.resolver_hash}",
                            layer="dependencies", actor=actor, entity_type="artifact",
                            event_type=AuditEventType.OPERATOR_ACTION)
        return Result.success(version)

    def generate(self, project_id: str, kind: str, actor: str = "operator") -> Result:
        """Generate a new version of kind from its upstream heads."""
        resolution = self._snapshots.current_resolution(project_id)
        if resolution.is_failure:
            return resolution
        current = resolution.value

        upstream = []
        for upstream_kind in self.dependency_map.upstream_kinds(kind):
            head = self._repo.get_artifact(project_id, upstream_kind)
            version = self._repo.get_artifact_version(head.latest_version_id) if head else None
            if version is None:
                return fail(ErrorCode.ARTIFACT_NOT_FOUND,
                            f"Upstream artifact {upstream_kind} has no version yet",
                            project_id=project_id, kind=kind, upstream=upstream_kind)
            upstream.append(ContextArtifact(
                artifact_id=head.artifact_id, kind=upstream_kind,
                version_id=version.version_id, content=version.content,
            ))

        request = ArtifactGenerationRequest(
            request_id=derive_id("artreq", project_id, kind, current.resolver_hash,
                                 *(a.version_id for a in upstream)),
            project_id=project_id,
            kind=kind,
            fact_hash=current.resolver_hash,
            facts=current.facts,
            upstream=tuple(upstream),
        )
        outcome, _ = self._pipeline.generate_artifact(request)
        if not outcome.is_success:
            self._obs.collect_metric("generation_failures_total", 1, {"kind": outcome.kind.value})
            return fail(ErrorCode.GENERATION_FAILED, f"Generation of {kind} failed: {outcome.message}",
                        project_id=project_id, kind=kind, backend_code=outcome.error_code,
                        retryable=outcome.is_retryable)

        return self.record(project_id, kind, outcome.content, actor=actor,
                           upstream_versions=tuple((a.kind, a.version_id) for a in upstream))

    def staleness_report(self, project_id: str) -> Result:
        """
        Which artifacts are stale against the current facts. Never writes.

        changed_keys and affected_kinds compare against the active
        snapshot's facts when one exists.
        """
        resolution = self._snapshots.current_resolution(project_id)
        if resolution.is_failure:
            return resolution
        active = self._snapshots.get_active(project_id)
        report: StalenessReport = self._detector.report(
            self._repo.list_artifacts(project_id),
            resolution.value,
            previous_facts=active.facts if active else None,
        )
        self._obs.collect_metric("stale_artifacts", len(report.stale), {"project": project_id})
        return Result.success(report)

    def _upstream_heads(self, project_id: str, kind: str) -> Tuple[Tuple[str, str], ...]:
        heads = []
        for upstream_kind in self.dependency_map.upstream_kinds(kind):
            head = self._repo.get_artifact(project_id, upstream_kind)
            if head is not None and head.latest_version_id:
                heads.append((upstream_kind, head.latest_version_id))
        return tuple(heads)
