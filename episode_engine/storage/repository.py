"""
Pipeline Repository

Typed queries and conditional writes over a StorageBackend. All layers
read and write through this class; none talk to a backend directly.

Conditional writes raise WriteConflict, which aborts the enclosing
atomic() block. Callers convert it to a failed Result outside the block
so the rollback has already happened.
"""

from __future__ import annotations
from contextlib import contextmanager
from dataclasses import replace
from typing import Any, Iterator, List, Optional

from ..contracts.base import Error, SnapshotStatus, Timestamp, content_hash, derive_id
from ..contracts.events import (
    Artifact, ArtifactVersion, BatchCursor, CanonSnapshot, ContentVersion,
    ContextSet, ContinuityNote, ExportedFile, LockEvent, PatchRun,
    ProjectRecord, RetconEvent, Unit
)
from .backends import StorageBackend


class WriteConflict(Exception):
    """A conditional write lost a race; the enclosing atomic block rolls back."""

    def __init__(self, error: Error):
        super().__init__(error.message)
        self.error = error


def unit_id_for(project_id: str, index: int) -> str:
    return derive_id("unit", project_id, index)


def artifact_id_for(project_id: str, kind: str) -> str:
    return derive_id("art", project_id, kind)


class PipelineRepository:
    """Typed access to pipeline records."""

    def __init__(self, backend: StorageBackend):
        self._backend = backend

    @property
    def backend(self) -> StorageBackend:
        return self._backend

    @contextmanager
    def atomic(self) -> Iterator[None]:
        with self._backend.atomic():
            yield

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def add(self, record: Any) -> Any:
        """Insert a new record, stamping its write sequence."""
        stamped = replace(record, sequence=self._backend.next_sequence())
        result = self._backend.insert(stamped)
        if not result.success:
            raise WriteConflict(result.error)
        return stamped

    def update(self, current: Any, **changes: Any) -> Any:
        """
        Replace current with a changed copy, conditional on its revision.

        The new record gets revision + 1 and keeps its write sequence, so
        list ordering stays creation order.
        """
        if hasattr(current, "updated_at") and "updated_at" not in changes:
            changes["updated_at"] = Timestamp.now()
        updated = replace(current, revision=current.revision + 1, **changes)
        result = self._backend.compare_and_put(updated, expected_revision=current.revision)
        if not result.success:
            raise WriteConflict(result.error)
        return updated

    def write_export(self, project_id: str, path: str, content: str) -> ExportedFile:
        existing = self._backend.get(ExportedFile.KIND, path)
        record = ExportedFile(
            path=path,
            project_id=project_id,
            content=content,
            content_hash=content_hash(content),
            sequence=existing.sequence if existing else self._backend.next_sequence(),
            written_at=Timestamp.now(),
        )
        self._backend.put(record)
        return record

    def delete(self, record: Any) -> bool:
        return self._backend.delete(record.KIND, record.record_id)

    # -------------------------------------------------------------------------
    # Projects and artifacts
    # -------------------------------------------------------------------------

    def get_project(self, project_id: str) -> Optional[ProjectRecord]:
        return self._backend.get(ProjectRecord.KIND, project_id)

    def list_projects(self) -> List[ProjectRecord]:
        return self._backend.list(ProjectRecord.KIND)

    def get_artifact(self, project_id: str, kind: str) -> Optional[Artifact]:
        return self._backend.get(Artifact.KIND, artifact_id_for(project_id, kind))

    def get_artifact_by_id(self, artifact_id: str) -> Optional[Artifact]:
        return self._backend.get(Artifact.KIND, artifact_id)

    def list_artifacts(self, project_id: str) -> List[Artifact]:
        return self._backend.list(Artifact.KIND, project_id)

    def get_artifact_version(self, version_id: str) -> Optional[ArtifactVersion]:
        return self._backend.get(ArtifactVersion.KIND, version_id)

    def list_artifact_versions(self, project_id: str, kind: Optional[str] = None) -> List[ArtifactVersion]:
        versions = self._backend.list(ArtifactVersion.KIND, project_id)
        if kind is not None:
            versions = [v for v in versions if v.kind == kind]
        return versions

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    def get_snapshot(self, snapshot_id: str) -> Optional[CanonSnapshot]:
        return self._backend.get(CanonSnapshot.KIND, snapshot_id)

    def list_snapshots(self, project_id: str) -> List[CanonSnapshot]:
        return self._backend.list(CanonSnapshot.KIND, project_id)

    def active_snapshots(self, project_id: str) -> List[CanonSnapshot]:
        return [s for s in self.list_snapshots(project_id) if s.status == SnapshotStatus.ACTIVE]

    def get_active_snapshot(self, project_id: str) -> Optional[CanonSnapshot]:
        active = self.active_snapshots(project_id)
        return active[-1] if active else None

    # -------------------------------------------------------------------------
    # Units and content
    # -------------------------------------------------------------------------

    def get_unit(self, project_id: str, index: int) -> Optional[Unit]:
        return self._backend.get(Unit.KIND, unit_id_for(project_id, index))

    def get_unit_by_id(self, unit_id: str) -> Optional[Unit]:
        return self._backend.get(Unit.KIND, unit_id)

    def list_units(self, project_id: str, include_deleted: bool = False) -> List[Unit]:
        units = self._backend.list(Unit.KIND, project_id)
        if not include_deleted:
            units = [u for u in units if u.is_active]
        return sorted(units, key=lambda u: u.index)

    def get_content_version(self, version_id: Optional[str]) -> Optional[ContentVersion]:
        if version_id is None:
            return None
        return self._backend.get(ContentVersion.KIND, version_id)

    def list_content_versions(self, project_id: str, unit_id: Optional[str] = None) -> List[ContentVersion]:
        versions = self._backend.list(ContentVersion.KIND, project_id)
        if unit_id is not None:
            versions = [v for v in versions if v.unit_id == unit_id]
        return versions

    def list_lock_events(self, project_id: str, unit_id: Optional[str] = None) -> List[LockEvent]:
        events = self._backend.list(LockEvent.KIND, project_id)
        if unit_id is not None:
            events = [e for e in events if e.unit_id == unit_id]
        return events

    def list_continuity_notes(self, project_id: str, unit_id: Optional[str] = None) -> List[ContinuityNote]:
        notes = self._backend.list(ContinuityNote.KIND, project_id)
        if unit_id is not None:
            notes = [n for n in notes if n.unit_id == unit_id]
        return notes

    def latest_continuity_note(self, project_id: str, index: int) -> Optional[ContinuityNote]:
        notes = self.list_continuity_notes(project_id, unit_id_for(project_id, index))
        return notes[-1] if notes else None

    # -------------------------------------------------------------------------
    # Retcons, batches, context sets, exports
    # -------------------------------------------------------------------------

    def get_retcon(self, event_id: str) -> Optional[RetconEvent]:
        return self._backend.get(RetconEvent.KIND, event_id)

    def list_retcons(self, project_id: str) -> List[RetconEvent]:
        return self._backend.list(RetconEvent.KIND, project_id)

    def get_patch(self, patch_id: str) -> Optional[PatchRun]:
        return self._backend.get(PatchRun.KIND, patch_id)

    def list_patches(self, project_id: str, event_id: Optional[str] = None) -> List[PatchRun]:
        runs = self._backend.list(PatchRun.KIND, project_id)
        if event_id is not None:
            runs = [r for r in runs if r.event_id == event_id]
        return runs

    def get_batch(self, batch_id: str) -> Optional[BatchCursor]:
        return self._backend.get(BatchCursor.KIND, batch_id)

    def list_batches(self, project_id: str) -> List[BatchCursor]:
        return self._backend.list(BatchCursor.KIND, project_id)

    def live_batch(self, project_id: str) -> Optional[BatchCursor]:
        live = [b for b in self.list_batches(project_id) if b.status.is_live]
        return live[-1] if live else None

    def list_context_sets(self, project_id: str) -> List[ContextSet]:
        return self._backend.list(ContextSet.KIND, project_id)

    def get_export(self, path: str) -> Optional[ExportedFile]:
        return self._backend.get(ExportedFile.KIND, path)

    def list_exports(self, project_id: str) -> List[ExportedFile]:
        return self._backend.list(ExportedFile.KIND, project_id)
