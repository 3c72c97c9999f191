"""
Canon Snapshot Manager

Sole writer of Canon Snapshots.

INVARIANTS:
===========
- At most one ACTIVE snapshot per project, enforced by superseding the
  previous one in the same atomic section that inserts the new one
- Superseded snapshots are never deleted
- A snapshot is valid iff its fact_hash equals the current resolver hash
- Locked units are never touched by snapshot creation
"""

from __future__ import annotations
from typing import Callable, List, Optional

from ..contracts.base import (
    ErrorCode, Result, SnapshotStatus, Timestamp, derive_id, fail
)
from ..contracts.events import CanonSnapshot
from ..observability import ObservabilityEngine
from ..qualifications import (
    QualificationInput, ResolveResult, UNIT_COUNT, resolve
)
from ..qualifications.resolver import REQUIRED_FOR_SERIES
from ..storage import PipelineRepository, WriteConflict


SnapshotHook = Callable[[CanonSnapshot], object]


class SnapshotManager:
    """
    Creates, supersedes and validates Canon Snapshots.

    GUARANTEES:
    - create_snapshot() fails fast, with no writes, on resolver errors
    - the optional on_activated hook runs inside the same atomic section,
      so the new snapshot and the hook's writes commit together
    """

    def __init__(
        self,
        repository: PipelineRepository,
        observability: Optional[ObservabilityEngine] = None
    ):
        self._repo = repository
        self._obs = observability or ObservabilityEngine()

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    def current_resolution(self, project_id: str) -> Result:
        """Resolve the project's current fact set. Never writes."""
        project = self._repo.get_project(project_id)
        if project is None:
            return fail(ErrorCode.PROJECT_NOT_FOUND, f"Project {project_id} not found",
                        project_id=project_id)
        return Result.success(resolve(QualificationInput.from_project(project)))

    def is_valid(self, snapshot: CanonSnapshot, current: Optional[ResolveResult] = None) -> bool:
        if current is None:
            resolution = self.current_resolution(snapshot.project_id)
            if resolution.is_failure:
                return False
            current = resolution.value
        return snapshot.fact_hash == current.resolver_hash

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_active(self, project_id: str) -> Optional[CanonSnapshot]:
        return self._repo.get_active_snapshot(project_id)

    def get(self, snapshot_id: str) -> Optional[CanonSnapshot]:
        return self._repo.get_snapshot(snapshot_id)

    def history(self, project_id: str) -> List[CanonSnapshot]:
        return self._repo.list_snapshots(project_id)

    def require_valid_active(self, project_id: str, current: Optional[ResolveResult] = None) -> Result:
        """The active snapshot, or NO_ACTIVE_SNAPSHOT / SNAPSHOT_STALE."""
        snapshot = self.get_active(project_id)
        if snapshot is None:
            return fail(ErrorCode.NO_ACTIVE_SNAPSHOT,
                        "No active canon snapshot; create one before generating",
                        project_id=project_id)
        if not self.is_valid(snapshot, current):
            return fail(ErrorCode.SNAPSHOT_STALE,
                        "Active canon snapshot no longer matches current qualifications; re-snapshot",
                        project_id=project_id, snapshot_id=snapshot.snapshot_id)
        return Result.success(snapshot)

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def create_snapshot(
        self,
        project_id: str,
        actor: str = "operator",
        on_activated: Optional[SnapshotHook] = None
    ) -> Result:
        """
        Create a new active snapshot, superseding the previous one.

        Used both for the first snapshot and for re-locking after facts
        changed.
        """
        resolution = self.current_resolution(project_id)
        if resolution.is_failure:
            return resolution
        current: ResolveResult = resolution.value

        if current.errors:
            missing = [e for e in current.errors if e.message == REQUIRED_FOR_SERIES]
            code = ErrorCode.MISSING_REQUIRED_FACT if missing else ErrorCode.INVALID_FACT_VALUE
            fields = ",".join(sorted({e.field for e in current.errors}))
            self._obs.log_rejection("create_snapshot", code.name, fields,
                                    entity_id=project_id, layer="snapshots", actor=actor)
            return fail(code, f"Cannot snapshot with unresolved qualifications: {fields}",
                        project_id=project_id, fields=fields)

        try:
            with self._repo.atomic():
                previous = self._repo.active_snapshots(project_id)
                history = self._repo.list_snapshots(project_id)
                number = len(history) + 1
                now = Timestamp.now()
                snapshot = CanonSnapshot(
                    snapshot_id=derive_id("snap", project_id, number, current.resolver_hash),
                    project_id=project_id,
                    snapshot_number=number,
                    fact_hash=current.resolver_hash,
                    facts=current.facts,
                    unit_count=current.fact(UNIT_COUNT),
                    artifact_versions=self._pinned_versions(project_id),
                    status=SnapshotStatus.ACTIVE,
                    created_by=actor,
                    created_at=now,
                )
                for old in previous:
                    self._repo.update(
                        old,
                        status=SnapshotStatus.SUPERSEDED,
                        superseded_by=snapshot.snapshot_id,
                        superseded_at=now,
                    )
                snapshot = self._repo.add(snapshot)
                if on_activated is not None:
                    on_activated(snapshot)
        except WriteConflict as conflict:
            self._obs.log_rejection("create_snapshot", conflict.error.code.name,
                                    conflict.error.message, entity_id=project_id,
                                    layer="snapshots", actor=actor)
            return Result.failure(conflict.error)

        self._obs.log_audit(
            action="create_snapshot",
            entity_id=snapshot.snapshot_id,
            details=f"#{snapshot.snapshot_number} {snapshot.fact_hash} superseded={len(previous)}",
            layer="snapshots",
            actor=actor,
            entity_type="snapshot",
        )
        self._obs.collect_metric("snapshots_created_total", 1)
        return Result.success(snapshot)

    def _pinned_versions(self, project_id: str):
        return tuple(sorted(
            (artifact.kind, artifact.latest_version_id)
            for artifact in self._repo.list_artifacts(project_id)
            if artifact.latest_version_id is not None
        ))
