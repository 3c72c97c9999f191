"""
Record Contracts

Immutable records persisted by the storage backends. Every record names
its storage KIND and exposes a record_id. Records whose status changes
carry a revision; writers replace them through a compare-and-swap on that
revision, never in place.

WHAT THESE TYPES MUST NOT CONTAIN:
==================================
- Behavior that touches storage
- Mutable collections (tuples only)
- Derived state that could drift from its source
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import ClassVar, Optional, Tuple, Union
from enum import Enum

from .base import (
    Timestamp, UnitStatus, RecordState, SnapshotStatus, ContentSource,
    LockKind, RetconStatus, PatchStatus, BatchStatus
)


FactValue = Union[int, str, bool, None]
FactPairs = Tuple[Tuple[str, FactValue], ...]


# =============================================================================
# PROJECT AND ARTIFACTS
# =============================================================================

@dataclass(frozen=True)
class ProjectRecord:
    """
    The qualification input layers of one project.

    Resolution order per field: project_fields, override_fields,
    guardrail_fields, format defaults.
    """
    KIND: ClassVar[str] = "project"

    project_id: str
    title: str
    production_type: Optional[str] = None
    format_subtype: Optional[str] = None
    project_fields: FactPairs = field(default_factory=tuple)
    override_fields: FactPairs = field(default_factory=tuple)
    guardrail_fields: FactPairs = field(default_factory=tuple)
    revision: int = 0
    sequence: int = 0
    created_at: Optional[Timestamp] = None
    updated_at: Optional[Timestamp] = None

    @property
    def record_id(self) -> str:
        return self.project_id


@dataclass(frozen=True)
class Artifact:
    """
    Head record for one artifact kind of a project.

    recorded_hash is the global resolver hash at the time the latest
    version was produced; dependency_hash is the hash over only the fact
    keys this kind depends on.
    """
    KIND: ClassVar[str] = "artifact"

    artifact_id: str
    project_id: str
    kind: str
    latest_version_id: Optional[str] = None
    version_count: int = 0
    recorded_hash: Optional[str] = None
    dependency_hash: Optional[str] = None
    depends_on: Tuple[str, ...] = field(default_factory=tuple)
    revision: int = 0
    sequence: int = 0
    created_at: Optional[Timestamp] = None
    updated_at: Optional[Timestamp] = None

    @property
    def record_id(self) -> str:
        return self.artifact_id


@dataclass(frozen=True)
class ArtifactVersion:
    """Append-only artifact content. Superseded, never deleted."""
    KIND: ClassVar[str] = "artifact_version"

    version_id: str
    artifact_id: str
    project_id: str
    kind: str
    version_number: int
    content: str
    resolver_hash: str
    dependency_hash: str
    depends_on: Tuple[str, ...] = field(default_factory=tuple)
    upstream_versions: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)
    created_by: str = "operator"
    sequence: int = 0
    created_at: Optional[Timestamp] = None

    @property
    def record_id(self) -> str:
        return self.version_id


# =============================================================================
# CANON SNAPSHOTS
# =============================================================================

@dataclass(frozen=True)
class CanonSnapshot:
    """
    Immutable anchor binding a fact hash to the artifact versions in use.

    INVARIANTS:
    - At most one ACTIVE snapshot per project
    - Superseded snapshots are retained for history
    """
    KIND: ClassVar[str] = "snapshot"

    snapshot_id: str
    project_id: str
    snapshot_number: int
    fact_hash: str
    facts: FactPairs
    unit_count: Optional[int]
    artifact_versions: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)
    status: SnapshotStatus = SnapshotStatus.ACTIVE
    created_by: str = "operator"
    superseded_by: Optional[str] = None
    superseded_at: Optional[Timestamp] = None
    revision: int = 0
    sequence: int = 0
    created_at: Optional[Timestamp] = None

    @property
    def record_id(self) -> str:
        return self.snapshot_id

    def pinned_version(self, kind: str) -> Optional[str]:
        for artifact_kind, version_id in self.artifact_versions:
            if artifact_kind == kind:
                return version_id
        return None


# =============================================================================
# UNITS
# =============================================================================

@dataclass(frozen=True)
class Unit:
    """
    One sequentially numbered narrative unit (episode).

    INVARIANTS:
    - status is written only by the unit state machine
    - once locked_at is set it never changes; amendments move
      content_version_id and lock_event_id through a patch run
    """
    KIND: ClassVar[str] = "unit"

    unit_id: str
    project_id: str
    index: int
    title: str
    status: UnitStatus = UnitStatus.PENDING
    snapshot_id: Optional[str] = None
    content_version_id: Optional[str] = None
    locked_at: Optional[Timestamp] = None
    lock_event_id: Optional[str] = None
    is_season_template: bool = False
    record_state: RecordState = RecordState.ACTIVE
    deleted_reason: Optional[str] = None
    purge_token_hash: Optional[str] = None
    attempt_count: int = 0
    last_error: Optional[str] = None
    revision: int = 0
    sequence: int = 0
    created_at: Optional[Timestamp] = None
    updated_at: Optional[Timestamp] = None

    @property
    def record_id(self) -> str:
        return self.unit_id

    @property
    def is_locked(self) -> bool:
        return self.locked_at is not None

    @property
    def is_active(self) -> bool:
        return self.record_state == RecordState.ACTIVE


@dataclass(frozen=True)
class ContentVersion:
    """Append-only unit content version."""
    KIND: ClassVar[str] = "content_version"

    version_id: str
    unit_id: str
    project_id: str
    unit_index: int
    version_number: int
    content: str
    content_hash: str
    source: ContentSource
    parent_version_id: Optional[str] = None
    snapshot_id: Optional[str] = None
    patch_run_id: Optional[str] = None
    trace_id: Optional[str] = None
    sequence: int = 0
    created_at: Optional[Timestamp] = None

    @property
    def record_id(self) -> str:
        return self.version_id


@dataclass(frozen=True)
class LockEvent:
    """Append-only record of every lock and amendment."""
    KIND: ClassVar[str] = "lock_event"

    event_id: str
    project_id: str
    unit_id: str
    unit_index: int
    content_version_id: str
    kind: LockKind
    actor: str
    locked_at: Timestamp
    patch_run_id: Optional[str] = None
    sequence: int = 0

    @property
    def record_id(self) -> str:
        return self.event_id


@dataclass(frozen=True)
class ContinuityNote:
    """
    Continuity derived from a locked unit, fed to the next unit.

    Re-derived on every lock event; notes of other units are untouched.
    """
    KIND: ClassVar[str] = "continuity_note"

    note_id: str
    project_id: str
    unit_id: str
    unit_index: int
    content_version_id: str
    lock_event_id: str
    title: str
    tail_excerpt: str
    closing_line: str
    word_count: int
    line_count: int
    content_hash: str
    sequence: int = 0
    created_at: Optional[Timestamp] = None

    @property
    def record_id(self) -> str:
        return self.note_id


# =============================================================================
# RETCONS AND PATCH RUNS
# =============================================================================

@dataclass(frozen=True)
class RetconEvent:
    """A declared narrative change and its impact analysis."""
    KIND: ClassVar[str] = "retcon_event"

    event_id: str
    project_id: str
    summary: str
    resolver_hash: str
    changed_artifact_kind: Optional[str] = None
    status: RetconStatus = RetconStatus.DECLARED
    affected_indices: Tuple[int, ...] = field(default_factory=tuple)
    analysis_notes: Tuple[Tuple[int, str], ...] = field(default_factory=tuple)
    declared_by: str = "operator"
    revision: int = 0
    sequence: int = 0
    created_at: Optional[Timestamp] = None
    updated_at: Optional[Timestamp] = None

    @property
    def record_id(self) -> str:
        return self.event_id


@dataclass(frozen=True)
class PatchRun:
    """A proposed amendment to one locked unit. Applied only explicitly."""
    KIND: ClassVar[str] = "patch_run"

    patch_id: str
    event_id: str
    project_id: str
    target_index: int
    unit_id: str
    base_content_version_id: str
    status: PatchStatus = PatchStatus.RUNNING
    proposed_content: Optional[str] = None
    applied_version_id: Optional[str] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[Timestamp] = None
    rejection_reason: Optional[str] = None
    revision: int = 0
    sequence: int = 0
    created_at: Optional[Timestamp] = None

    @property
    def record_id(self) -> str:
        return self.patch_id


# =============================================================================
# BATCH CURSOR
# =============================================================================

@dataclass(frozen=True)
class BatchPolicy:
    """Operator-chosen batch behavior, fixed at batch start."""
    max_units_per_tick: int = 1
    auto_lock: bool = False
    stop_on_first_fail: bool = False


@dataclass(frozen=True)
class BatchCursor:
    """
    Persisted, resumable runner state.

    Any process holding the storage backend can resume a batch from its
    cursor; stop_requested is re-read before each unit.
    """
    KIND: ClassVar[str] = "batch_cursor"

    batch_id: str
    project_id: str
    from_index: int
    next_index: int
    policy: BatchPolicy = field(default_factory=BatchPolicy)
    status: BatchStatus = BatchStatus.RUNNING
    stop_requested: bool = False
    context_set_id: Optional[str] = None
    actor: str = "operator"
    ticks: int = 0
    units_completed: int = 0
    errors: int = 0
    last_error: Optional[str] = None
    revision: int = 0
    sequence: int = 0
    created_at: Optional[Timestamp] = None
    updated_at: Optional[Timestamp] = None

    @property
    def record_id(self) -> str:
        return self.batch_id


# =============================================================================
# CONTEXT SETS
# =============================================================================

@dataclass(frozen=True)
class ContextSetItem:
    artifact_id: str
    sort_order: int = 0


@dataclass(frozen=True)
class ContextSet:
    """Named, ordered collection of artifact ids used as generation inputs."""
    KIND: ClassVar[str] = "context_set"

    set_id: str
    project_id: str
    name: str
    is_default: bool = False
    items: Tuple[ContextSetItem, ...] = field(default_factory=tuple)
    sequence: int = 0
    created_at: Optional[Timestamp] = None

    @property
    def record_id(self) -> str:
        return self.set_id


# =============================================================================
# EXPORTS
# =============================================================================

@dataclass(frozen=True)
class ExportedFile:
    """A file written to the project package (path is the identity)."""
    KIND: ClassVar[str] = "export"

    path: str
    project_id: str
    content: str
    content_hash: str
    sequence: int = 0
    written_at: Optional[Timestamp] = None

    @property
    def record_id(self) -> str:
        return self.path


# =============================================================================
# OBSERVABILITY CONTRACTS
# =============================================================================

class AuditEventType(Enum):
    """Explicit audit event types."""
    STATE_CHANGE = "state_change"
    OPERATOR_ACTION = "operator_action"
    REJECTION = "rejection"
    GENERATION = "generation"
    ERROR = "error"
    SYSTEM = "system"


@dataclass(frozen=True)
class AuditLogEntry:
    """Immutable audit log entry."""
    entry_id: str
    event_type: AuditEventType
    timestamp: Timestamp
    layer: str  # Which layer generated this
    action: str
    entity_id: Optional[str] = None
    entity_type: Optional[str] = None
    actor: Optional[str] = None
    metadata: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class MetricPoint:
    """Immutable metric data point."""
    metric_name: str
    value: float
    timestamp: Timestamp
    labels: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)


RECORD_TYPES = (
    ProjectRecord, Artifact, ArtifactVersion, CanonSnapshot, Unit,
    ContentVersion, LockEvent, ContinuityNote, RetconEvent, PatchRun,
    BatchCursor, ContextSet, ExportedFile,
)
