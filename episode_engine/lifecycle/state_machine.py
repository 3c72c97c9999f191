"""
Unit Lifecycle State Machine

Sole writer of Unit status, content pointers, lock events and continuity
notes.

STATES:
=======
pending -> generating -> complete | needs_revision | error
complete | needs_revision -> locked | generating
error -> generating
any unlocked state -> invalidated  (snapshot hash diverged)
invalidated -> pending             (rebound to a new valid snapshot)
complete | needs_revision -> pending  (rebound after the facts changed)

INVARIANTS:
===========
- pending -> generating requires a valid active snapshot and a locked
  predecessor (unit 1 exempt)
- locked_at, once set, never changes
- every write is a compare-and-swap on the unit revision; losers get
  VERSION_CONFLICT and nothing is written
- exactly one season template per project at any instant
"""

from __future__ import annotations
import secrets
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

from adapter import AuditGate, AuditRequest, GenerationOutcome, NoBlockersAudit

from ..contracts.base import (
    ContentSource, Error, ErrorCode, LockKind, RecordState, Result, Timestamp,
    UnitStatus, content_hash, derive_id, fail
)
from ..contracts.events import (
    AuditEventType, CanonSnapshot, ContentVersion, ContinuityNote, LockEvent, Unit
)
from ..observability import ObservabilityEngine
from ..snapshots import SnapshotManager
from ..storage import PipelineRepository, WriteConflict, unit_id_for
from .continuity import derive_note, export_files


NO_TEMPLATE = 0

GENERATABLE = frozenset({
    UnitStatus.PENDING, UnitStatus.ERROR, UnitStatus.COMPLETE, UnitStatus.NEEDS_REVISION
})
LOCKABLE = frozenset({UnitStatus.COMPLETE, UnitStatus.NEEDS_REVISION})

TRANSITIONS: Dict[UnitStatus, FrozenSet[UnitStatus]] = {
    UnitStatus.PENDING: frozenset({UnitStatus.GENERATING, UnitStatus.INVALIDATED}),
    UnitStatus.GENERATING: frozenset({
        UnitStatus.COMPLETE, UnitStatus.NEEDS_REVISION, UnitStatus.ERROR, UnitStatus.INVALIDATED
    }),
    UnitStatus.COMPLETE: frozenset({
        UnitStatus.COMPLETE, UnitStatus.GENERATING, UnitStatus.LOCKED, UnitStatus.INVALIDATED
    }),
    UnitStatus.NEEDS_REVISION: frozenset({
        UnitStatus.COMPLETE, UnitStatus.GENERATING, UnitStatus.LOCKED, UnitStatus.INVALIDATED
    }),
    UnitStatus.ERROR: frozenset({UnitStatus.GENERATING, UnitStatus.INVALIDATED}),
    UnitStatus.LOCKED: frozenset({UnitStatus.LOCKED}),
    UnitStatus.INVALIDATED: frozenset({UnitStatus.PENDING}),
}


def can_transition(current: UnitStatus, target: UnitStatus) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


# =============================================================================
# CONFIGURATION AND OUTCOMES
# =============================================================================

@dataclass(frozen=True)
class LifecycleConfig:
    max_generation_attempts: int = 5
    continuity_tail_chars: int = 1200
    export_root: str = "projects"


@dataclass(frozen=True)
class LockOutcome:
    unit: Unit
    lock_event: LockEvent
    note: ContinuityNote
    exported_paths: Tuple[str, ...] = field(default_factory=tuple)
    template_prompt: Optional[str] = None


@dataclass(frozen=True)
class AmendmentOutcome:
    unit: Unit
    version: ContentVersion
    lock_event: LockEvent
    note: ContinuityNote


@dataclass(frozen=True)
class HardDeleteChallenge:
    unit_id: str
    index: int
    confirmation_token: str


AmendmentHook = Callable[[AmendmentOutcome], object]


# =============================================================================
# STATE MACHINE
# =============================================================================

class UnitStateMachine:
    """
    Validates and applies every unit transition.

    GUARANTEES:
    - Every operation returns a Result; rejected operations write nothing
    - Multi-record effects (lock + note + export, amendment + patch run)
      commit in one atomic section
    """

    def __init__(
        self,
        repository: PipelineRepository,
        snapshots: SnapshotManager,
        audit_gate: Optional[AuditGate] = None,
        config: Optional[LifecycleConfig] = None,
        observability: Optional[ObservabilityEngine] = None
    ):
        self._repo = repository
        self._snapshots = snapshots
        self._audit = audit_gate or NoBlockersAudit()
        self._config = config or LifecycleConfig()
        self._obs = observability or ObservabilityEngine()

    @property
    def config(self) -> LifecycleConfig:
        return self._config

    # -------------------------------------------------------------------------
    # Creation and snapshot binding
    # -------------------------------------------------------------------------

    def create_units(self, project_id: str, count: Optional[int] = None, actor: str = "operator") -> Result:
        """Create units 1..count that do not exist yet, bound to the active snapshot."""
        active = self._snapshots.require_valid_active(project_id)
        if active.is_failure:
            return self._rejected("create_units", active.error, project_id, actor)
        snapshot: CanonSnapshot = active.value

        total = count if count is not None else snapshot.unit_count
        if total is None:
            return self._reject("create_units", ErrorCode.MISSING_REQUIRED_FACT,
                                "Unit count is not resolved for this project", project_id, actor)
        if isinstance(total, bool) or not isinstance(total, int) or total < 1:
            return self._reject("create_units", ErrorCode.INVALID_ARGUMENT,
                                f"Unit count must be a positive integer, got {total!r}", project_id, actor)

        created: List[Unit] = []
        try:
            with self._repo.atomic():
                now = Timestamp.now()
                for index in range(1, total + 1):
                    if self._repo.get_unit(project_id, index) is not None:
                        continue
                    created.append(self._repo.add(Unit(
                        unit_id=unit_id_for(project_id, index),
                        project_id=project_id,
                        index=index,
                        title=f"Episode {index}",
                        snapshot_id=snapshot.snapshot_id,
                        created_at=now,
                        updated_at=now,
                    )))
        except WriteConflict as conflict:
            return self._rejected("create_units", conflict.error, project_id, actor)

        self._obs.log_audit("create_units", project_id, details=f"created={len(created)} total={total}",
                            layer="lifecycle", actor=actor, entity_type="project")
        return Result.success(tuple(created))

    def rebind_to_snapshot(self, snapshot: CanonSnapshot) -> Tuple[int, ...]:
        """
        Bind every non-locked, non-generating unit to snapshot.

        Units whose content was produced under different facts drop back
        to pending; their content pointer stays but they cannot lock until
        regenerated. Runs inside the snapshot manager's atomic section;
        raises WriteConflict so the whole re-snapshot rolls back.
        """
        rebound = []
        for unit in self._repo.list_units(snapshot.project_id):
            if unit.is_locked or unit.status == UnitStatus.GENERATING:
                continue
            changes = {"snapshot_id": snapshot.snapshot_id, "attempt_count": 0}
            stale_content = unit.status in LOCKABLE and self._produced_under_other_facts(unit, snapshot.fact_hash)
            if unit.status == UnitStatus.INVALIDATED or stale_content:
                changes["status"] = UnitStatus.PENDING
                changes["last_error"] = None
            self._repo.update(unit, **changes)
            rebound.append(unit.index)
        return tuple(rebound)

    def invalidate_stale_units(self, project_id: str, current_hash: str) -> Tuple[int, ...]:
        """
        Mark every unlocked unit whose snapshot hash diverged as invalidated.

        Soft-deleted units are swept too, so a restore cannot bring stale
        content back. Runs inside the caller's atomic section; raises
        WriteConflict so the qualification change rolls back with it.
        """
        invalidated = []
        for unit in self._repo.list_units(project_id, include_deleted=True):
            if unit.is_locked or unit.status == UnitStatus.INVALIDATED:
                continue
            if not self._produced_under_other_facts(unit, current_hash):
                continue
            self._repo.update(unit, status=UnitStatus.INVALIDATED, last_error="canon snapshot is stale")
            invalidated.append(unit.index)
        return tuple(invalidated)

    def record_invalidation(self, project_id: str, indices: Tuple[int, ...], current_hash: str,
                            actor: str = "system") -> None:
        if not indices:
            return
        self._obs.log_audit("invalidate_units", project_id,
                            details=f"indices={list(indices)} hash={current_hash}",
                            layer="lifecycle", actor=actor, entity_type="project",
                            event_type=AuditEventType.STATE_CHANGE)
        self._obs.collect_metric("units_invalidated_total", len(indices))

    def _produced_under_other_facts(self, unit: Unit, fact_hash: str) -> bool:
        snapshot = self._repo.get_snapshot(unit.snapshot_id) if unit.snapshot_id else None
        return snapshot is None or snapshot.fact_hash != fact_hash

    # -------------------------------------------------------------------------
    # Generation
    # -------------------------------------------------------------------------

    def begin_generation(self, project_id: str, index: int, actor: str = "operator") -> Result:
        """Move a unit to generating after checking every gate, in order."""
        unit_result = self._load_active(project_id, index, "begin_generation", actor)
        if unit_result.is_failure:
            return unit_result
        unit: Unit = unit_result.value

        if unit.is_locked:
            return self._reject("begin_generation", ErrorCode.UNIT_LOCKED,
                                f"Unit {index} is locked; amend it through a patch run",
                                project_id, actor, index=index)
        if unit.status == UnitStatus.INVALIDATED:
            return self._reject("begin_generation", ErrorCode.SNAPSHOT_STALE,
                                f"Unit {index} is invalidated; re-snapshot before generating",
                                project_id, actor, index=index)
        if unit.status not in GENERATABLE:
            return self._reject("begin_generation", ErrorCode.INVALID_STATE_TRANSITION,
                                f"Unit {index} cannot generate from {unit.status.value}",
                                project_id, actor, index=index, status=unit.status.value)

        active = self._snapshots.require_valid_active(project_id)
        if active.is_failure:
            return self._rejected("begin_generation", active.error, project_id, actor)
        snapshot: CanonSnapshot = active.value

        if index > 1:
            predecessor = self._repo.get_unit(project_id, index - 1)
            if predecessor is None or not predecessor.is_active or not predecessor.is_locked:
                return self._reject("begin_generation", ErrorCode.PREDECESSOR_NOT_LOCKED,
                                    f"Unit {index - 1} must be locked before unit {index} generates",
                                    project_id, actor, index=index)

        for other in self._repo.list_units(project_id):
            if other.index != index and other.status == UnitStatus.GENERATING:
                return self._reject("begin_generation", ErrorCode.GENERATION_IN_PROGRESS,
                                    f"Unit {other.index} is already generating",
                                    project_id, actor, index=index, generating=other.index)

        attempts = unit.attempt_count if unit.snapshot_id == snapshot.snapshot_id else 0
        if attempts >= self._config.max_generation_attempts:
            return self._reject("begin_generation", ErrorCode.REGENERATION_LIMIT_REACHED,
                                f"Unit {index} reached {attempts} attempts under this snapshot",
                                project_id, actor, index=index, attempts=attempts)

        try:
            with self._repo.atomic():
                updated = self._move(unit, UnitStatus.GENERATING,
                                     snapshot_id=snapshot.snapshot_id,
                                     attempt_count=attempts + 1,
                                     last_error=None)
        except WriteConflict as conflict:
            return self._rejected("begin_generation", conflict.error, project_id, actor)

        self._obs.log_audit("begin_generation", updated.unit_id,
                            details=f"index={index} attempt={updated.attempt_count}",
                            layer="lifecycle", actor=actor, entity_type="unit",
                            event_type=AuditEventType.STATE_CHANGE)
        return Result.success(updated)

    def complete_generation(
        self,
        unit: Unit,
        outcome: GenerationOutcome,
        actor: str = "operator"
    ) -> Result:
        """
        Record a generation outcome for a unit returned by begin_generation.

        Success appends a ContentVersion; failure moves the unit to error.
        The unit revision must be unchanged since begin_generation.
        """
        try:
            with self._repo.atomic():
                if outcome.is_success:
                    version = self._append_version(
                        unit, outcome.content, ContentSource.GENERATION,
                        snapshot_id=unit.snapshot_id, trace_id=outcome.trace_id,
                    )
                    target = UnitStatus.NEEDS_REVISION if outcome.needs_revision else UnitStatus.COMPLETE
                    updated = self._move(unit, target, content_version_id=version.version_id)
                else:
                    updated = self._move(unit, UnitStatus.ERROR,
                                         last_error=f"{outcome.error_code}: {outcome.message}")
        except WriteConflict as conflict:
            return self._rejected("complete_generation", conflict.error, unit.project_id, actor)

        self._obs.log_audit("complete_generation", updated.unit_id,
                            outcome=outcome.kind.value,
                            details=f"index={updated.index} status={updated.status.value}",
                            layer="lifecycle", actor=actor, entity_type="unit",
                            event_type=AuditEventType.GENERATION)
        return Result.success(updated)

    def recover_stuck(self, project_id: str, index: int, reason: str = "", actor: str = "operator") -> Result:
        """Explicit generating -> error reset for a unit whose generation never finished."""
        unit_result = self._load_active(project_id, index, "recover_stuck", actor)
        if unit_result.is_failure:
            return unit_result
        unit: Unit = unit_result.value
        if unit.status != UnitStatus.GENERATING:
            return self._reject("recover_stuck", ErrorCode.INVALID_STATE_TRANSITION,
                                f"Unit {index} is {unit.status.value}, not generating",
                                project_id, actor, index=index)
        try:
            with self._repo.atomic():
                updated = self._move(unit, UnitStatus.ERROR,
                                     last_error=f"recovered: {reason or 'stuck generation'}")
        except WriteConflict as conflict:
            return self._rejected("recover_stuck", conflict.error, project_id, actor)

        self._obs.log_audit("recover_stuck", updated.unit_id, details=f"index={index} reason={reason}",
                            layer="lifecycle", actor=actor, entity_type="unit",
                            event_type=AuditEventType.OPERATOR_ACTION)
        return Result.success(updated)

    def revise_content(self, project_id: str, index: int, content: str, actor: str = "operator") -> Result:
        """Operator edit of unlocked, completed content."""
        unit_result = self._load_active(project_id, index, "revise_content", actor)
        if unit_result.is_failure:
            return unit_result
        unit: Unit = unit_result.value
        if unit.is_locked:
            return self._reject("revise_content", ErrorCode.UNIT_LOCKED,
                                f"Unit {index} is locked; amend it through a patch run",
                                project_id, actor, index=index)
        if unit.status not in LOCKABLE:
            return self._reject("revise_content", ErrorCode.INVALID_STATE_TRANSITION,
                                f"Unit {index} has no completed content to revise",
                                project_id, actor, index=index, status=unit.status.value)
        if not content.strip():
            return self._reject("revise_content", ErrorCode.INVALID_ARGUMENT,
                                "Revised content is empty", project_id, actor, index=index)
        try:
            with self._repo.atomic():
                version = self._append_version(unit, content, ContentSource.REVISION,
                                               snapshot_id=unit.snapshot_id)
                updated = self._move(unit, UnitStatus.COMPLETE, content_version_id=version.version_id)
        except WriteConflict as conflict:
            return self._rejected("revise_content", conflict.error, project_id, actor)

        self._obs.log_audit("revise_content", updated.unit_id,
                            details=f"index={index} version={version.version_number}",
                            layer="lifecycle", actor=actor, entity_type="unit",
                            event_type=AuditEventType.OPERATOR_ACTION)
        return Result.success(updated)

    # -------------------------------------------------------------------------
    # Locking and amendment
    # -------------------------------------------------------------------------

    def lock_unit(self, project_id: str, index: int, actor: str = "operator") -> Result:
        """
        Lock a completed unit.

        Side effects, committed together: LockEvent, continuity note and
        package export files.
        """
        unit_result = self._load_active(project_id, index, "lock_unit", actor)
        if unit_result.is_failure:
            return unit_result
        unit: Unit = unit_result.value

        if unit.is_locked:
            return self._reject("lock_unit", ErrorCode.UNIT_LOCKED, f"Unit {index} is already locked",
                                project_id, actor, index=index)
        if unit.status not in LOCKABLE or unit.content_version_id is None:
            return self._reject("lock_unit", ErrorCode.INVALID_STATE_TRANSITION,
                                f"Unit {index} cannot lock from {unit.status.value}",
                                project_id, actor, index=index, status=unit.status.value)

        snapshot = self._repo.get_snapshot(unit.snapshot_id) if unit.snapshot_id else None
        if snapshot is None or not self._snapshots.is_valid(snapshot):
            return self._reject("lock_unit", ErrorCode.SNAPSHOT_STALE,
                                f"Unit {index} was produced under a stale canon snapshot",
                                project_id, actor, index=index)

        version = self._repo.get_content_version(unit.content_version_id)
        report = self._audit.check(AuditRequest(
            project_id=project_id, unit_index=index, title=unit.title, content=version.content
        ))
        if report.has_blockers:
            codes = ",".join(sorted({finding.code for finding in report.blockers}))
            return self._reject("lock_unit", ErrorCode.AUDIT_BLOCKERS_PRESENT,
                                f"Audit reported {len(report.blockers)} blocking finding(s)",
                                project_id, actor, index=index, blockers=codes,
                                auditor=report.auditor)

        try:
            with self._repo.atomic():
                now = Timestamp.now()
                event = self._append_lock_event(unit, version, LockKind.LOCK, actor, now)
                updated = self._move(unit, UnitStatus.LOCKED, locked_at=now, lock_event_id=event.event_id)
                note, paths = self._record_continuity(updated, version, event)
                has_template = any(u.is_season_template for u in self._repo.list_units(project_id))
        except WriteConflict as conflict:
            return self._rejected("lock_unit", conflict.error, project_id, actor)

        prompt = None
        if index == 1 and not has_template:
            prompt = "Unit 1 is locked and no season template is set; designate it as the template?"

        self._obs.log_audit("lock_unit", updated.unit_id, details=f"index={index} event={event.event_id}",
                            layer="lifecycle", actor=actor, entity_type="unit",
                            event_type=AuditEventType.STATE_CHANGE)
        self._obs.collect_metric("units_locked_total", 1)
        return Result.success(LockOutcome(
            unit=updated, lock_event=event, note=note,
            exported_paths=paths, template_prompt=prompt,
        ))

    def apply_amendment(
        self,
        project_id: str,
        index: int,
        content: str,
        base_version_id: str,
        patch_run_id: str,
        actor: str = "operator",
        on_amended: Optional[AmendmentHook] = None
    ) -> Result:
        """
        The only write path into a locked unit.

        Appends a patch-sourced ContentVersion and an amendment LockEvent,
        moves the content pointer, keeps locked_at, re-derives the
        continuity note and re-exports. on_amended runs in the same
        atomic section.
        """
        unit_result = self._load_active(project_id, index, "apply_amendment", actor)
        if unit_result.is_failure:
            return unit_result
        unit: Unit = unit_result.value
        if not unit.is_locked:
            return self._reject("apply_amendment", ErrorCode.UNIT_NOT_LOCKED,
                                f"Unit {index} is not locked", project_id, actor, index=index)
        if unit.content_version_id != base_version_id:
            return self._reject("apply_amendment", ErrorCode.VERSION_CONFLICT,
                                f"Unit {index} content moved since the patch was proposed",
                                project_id, actor, index=index,
                                expected=base_version_id, actual=unit.content_version_id)

        try:
            with self._repo.atomic():
                version = self._append_version(unit, content, ContentSource.PATCH,
                                               snapshot_id=unit.snapshot_id, patch_run_id=patch_run_id)
                event = self._append_lock_event(unit, version, LockKind.AMENDMENT, actor,
                                                Timestamp.now(), patch_run_id=patch_run_id)
                updated = self._move(unit, UnitStatus.LOCKED,
                                     content_version_id=version.version_id,
                                     lock_event_id=event.event_id)
                note, _ = self._record_continuity(updated, version, event)
                outcome = AmendmentOutcome(unit=updated, version=version, lock_event=event, note=note)
                if on_amended is not None:
                    on_amended(outcome)
        except WriteConflict as conflict:
            return self._rejected("apply_amendment", conflict.error, project_id, actor)

        self._obs.log_audit("apply_amendment", updated.unit_id,
                            details=f"index={index} patch={patch_run_id} version={version.version_number}",
                            layer="lifecycle", actor=actor, entity_type="unit",
                            event_type=AuditEventType.STATE_CHANGE)
        return Result.success(outcome)

    # -------------------------------------------------------------------------
    # Season template
    # -------------------------------------------------------------------------

    def set_template(
        self,
        project_id: str,
        index: int,
        expected_current: Optional[int] = None,
        actor: str = "operator"
    ) -> Result:
        """
        Designate a locked unit as the season template.

        Clears the previous template and sets the new one in one atomic
        section. When expected_current is given (NO_TEMPLATE for "none"),
        a different current template yields TEMPLATE_ALREADY_SET.
        """
        unit_result = self._load_active(project_id, index, "set_template", actor)
        if unit_result.is_failure:
            return unit_result
        if not unit_result.value.is_locked:
            return self._reject("set_template", ErrorCode.UNIT_NOT_LOCKED,
                                f"Only locked units can be the template; unit {index} is not locked",
                                project_id, actor, index=index)

        try:
            with self._repo.atomic():
                unit = self._repo.get_unit(project_id, index)
                current = [u for u in self._repo.list_units(project_id, include_deleted=True)
                           if u.is_season_template]
                current_index = current[0].index if current else NO_TEMPLATE
                if expected_current is not None and expected_current != current_index:
                    raise WriteConflict(Error.create(
                        ErrorCode.TEMPLATE_ALREADY_SET,
                        f"Template is unit {current_index}, expected {expected_current}",
                        project_id=project_id, current=current_index,
                    ))
                for previous in current:
                    if previous.unit_id != unit.unit_id:
                        self._repo.update(previous, is_season_template=False)
                if not unit.is_season_template:
                    unit = self._repo.update(unit, is_season_template=True)
        except WriteConflict as conflict:
            return self._rejected("set_template", conflict.error, project_id, actor)

        self._obs.log_audit("set_template", unit.unit_id,
                            details=f"index={index} previous={current_index}",
                            layer="lifecycle", actor=actor, entity_type="unit",
                            event_type=AuditEventType.OPERATOR_ACTION)
        return Result.success(unit)

    def get_template(self, project_id: str) -> Optional[Unit]:
        for unit in self._repo.list_units(project_id):
            if unit.is_season_template:
                return unit
        return None

    # -------------------------------------------------------------------------
    # Deletion
    # -------------------------------------------------------------------------

    def soft_delete(self, project_id: str, index: int, reason: Optional[str] = None,
                    actor: str = "operator") -> Result:
        unit_result = self._load_active(project_id, index, "soft_delete", actor)
        if unit_result.is_failure:
            return unit_result
        unit: Unit = unit_result.value
        if unit.status == UnitStatus.GENERATING:
            return self._reject("soft_delete", ErrorCode.INVALID_STATE_TRANSITION,
                                f"Unit {index} is generating", project_id, actor, index=index)
        if unit.is_locked and not (reason or "").strip():
            return self._reject("soft_delete", ErrorCode.REASON_REQUIRED,
                                f"Deleting locked unit {index} requires a reason",
                                project_id, actor, index=index)
        try:
            with self._repo.atomic():
                updated = self._repo.update(unit, record_state=RecordState.SOFT_DELETED,
                                            deleted_reason=(reason or "").strip() or None,
                                            is_season_template=False)
        except WriteConflict as conflict:
            return self._rejected("soft_delete", conflict.error, project_id, actor)

        self._obs.log_audit("soft_delete", updated.unit_id, details=f"index={index} reason={reason}",
                            layer="lifecycle", actor=actor, entity_type="unit",
                            event_type=AuditEventType.OPERATOR_ACTION)
        return Result.success(updated)

    def restore(self, project_id: str, index: int, actor: str = "operator") -> Result:
        """Bring a soft-deleted unit back; content from other facts comes back invalidated."""
        unit = self._repo.get_unit(project_id, index)
        if unit is None:
            return self._reject("restore_unit", ErrorCode.UNIT_NOT_FOUND, f"Unit {index} not found",
                                project_id, actor, index=index)
        if unit.is_active:
            return self._reject("restore_unit", ErrorCode.INVALID_STATE_TRANSITION,
                                f"Unit {index} is not deleted", project_id, actor, index=index)
        resolution = self._snapshots.current_resolution(project_id)
        if resolution.is_failure:
            return self._rejected("restore_unit", resolution.error, project_id, actor)

        changes = {"record_state": RecordState.ACTIVE, "deleted_reason": None, "purge_token_hash": None}
        if (not unit.is_locked and unit.status != UnitStatus.INVALIDATED
                and self._produced_under_other_facts(unit, resolution.value.resolver_hash)):
            changes["status"] = UnitStatus.INVALIDATED
            changes["last_error"] = "canon snapshot is stale"
        try:
            with self._repo.atomic():
                updated = self._repo.update(unit, **changes)
        except WriteConflict as conflict:
            return self._rejected("restore_unit", conflict.error, project_id, actor)

        self._obs.log_audit("restore_unit", updated.unit_id,
                            details=f"index={index} status={updated.status.value}",
                            layer="lifecycle", actor=actor, entity_type="unit",
                            event_type=AuditEventType.OPERATOR_ACTION)
        return Result.success(updated)

    def request_hard_delete(self, project_id: str, index: int, actor: str = "operator") -> Result:
        """
        Issue the confirmation token a hard delete must present.

        Only the token hash is stored on the unit. A newer request or a
        restore voids earlier tokens.
        """
        unit_result = self._load_deleted(project_id, index, "request_hard_delete", actor)
        if unit_result.is_failure:
            return unit_result
        token = f"purge_{secrets.token_hex(8)}"
        try:
            with self._repo.atomic():
                unit = self._repo.update(unit_result.value, purge_token_hash=content_hash(token))
        except WriteConflict as conflict:
            return self._rejected("request_hard_delete", conflict.error, project_id, actor)
        return Result.success(HardDeleteChallenge(
            unit_id=unit.unit_id, index=index, confirmation_token=token
        ))

    def hard_delete(self, project_id: str, index: int, confirmation_token: Optional[str],
                    actor: str = "operator") -> Result:
        """
        Purge a soft-deleted unit with its content versions and notes.

        Lock events are kept. The token must come from the latest
        request_hard_delete since the unit was deleted.
        """
        unit_result = self._load_deleted(project_id, index, "hard_delete", actor)
        if unit_result.is_failure:
            return unit_result
        unit: Unit = unit_result.value
        if (not confirmation_token or unit.purge_token_hash is None
                or content_hash(confirmation_token) != unit.purge_token_hash):
            return self._reject("hard_delete", ErrorCode.CONFIRMATION_REQUIRED,
                                "A valid confirmation token from request_hard_delete is required",
                                project_id, actor, index=index)

        with self._repo.atomic():
            versions = self._repo.list_content_versions(project_id, unit.unit_id)
            notes = self._repo.list_continuity_notes(project_id, unit.unit_id)
            for record in (*versions, *notes):
                self._repo.delete(record)
            self._repo.delete(unit)

        self._obs.log_audit("hard_delete", unit.unit_id,
                            details=f"index={index} versions={len(versions)} notes={len(notes)}",
                            layer="lifecycle", actor=actor, entity_type="unit",
                            event_type=AuditEventType.OPERATOR_ACTION)
        return Result.success(unit.unit_id)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _move(self, unit: Unit, target: UnitStatus, **changes) -> Unit:
        if not can_transition(unit.status, target):
            raise WriteConflict(Error.create(
                ErrorCode.INVALID_STATE_TRANSITION,
                f"Unit {unit.index} cannot move from {unit.status.value} to {target.value}",
                unit_id=unit.unit_id,
            ))
        return self._repo.update(unit, status=target, **changes)

    def _append_version(
        self,
        unit: Unit,
        content: str,
        source: ContentSource,
        snapshot_id: Optional[str] = None,
        patch_run_id: Optional[str] = None,
        trace_id: Optional[str] = None
    ) -> ContentVersion:
        number = len(self._repo.list_content_versions(unit.project_id, unit.unit_id)) + 1
        digest = content_hash(content)
        return self._repo.add(ContentVersion(
            version_id=derive_id("cv", unit.unit_id, number, digest),
            unit_id=unit.unit_id,
            project_id=unit.project_id,
            unit_index=unit.index,
            version_number=number,
            content=content,
            content_hash=digest,
            source=source,
            parent_version_id=unit.content_version_id,
            snapshot_id=snapshot_id,
            patch_run_id=patch_run_id,
            trace_id=trace_id,
            created_at=Timestamp.now(),
        ))

    def _append_lock_event(
        self,
        unit: Unit,
        version: ContentVersion,
        kind: LockKind,
        actor: str,
        at: Timestamp,
        patch_run_id: Optional[str] = None
    ) -> LockEvent:
        number = len(self._repo.list_lock_events(unit.project_id, unit.unit_id)) + 1
        return self._repo.add(LockEvent(
            event_id=derive_id("lock", unit.unit_id, number, version.version_id),
            project_id=unit.project_id,
            unit_id=unit.unit_id,
            unit_index=unit.index,
            content_version_id=version.version_id,
            kind=kind,
            actor=actor,
            locked_at=at,
            patch_run_id=patch_run_id,
        ))

    def _record_continuity(self, unit: Unit, version: ContentVersion, event: LockEvent):
        note = self._repo.add(derive_note(unit, version, event, self._config.continuity_tail_chars))

        project = self._repo.get_project(unit.project_id)
        locked = []
        for other in self._repo.list_units(unit.project_id):
            if other.is_locked and other.content_version_id:
                locked.append((other, self._repo.get_content_version(other.content_version_id)))
        files = export_files(self._config.export_root, project.title if project else unit.project_id,
                             unit, version, event, note, locked)
        for path, body in files:
            self._repo.write_export(unit.project_id, path, body)
        return note, tuple(path for path, _ in files)

    def _load_active(self, project_id: str, index: int, action: str, actor: str) -> Result:
        unit = self._repo.get_unit(project_id, index)
        if unit is None:
            return self._reject(action, ErrorCode.UNIT_NOT_FOUND, f"Unit {index} not found",
                                project_id, actor, index=index)
        if not unit.is_active:
            return self._reject(action, ErrorCode.UNIT_DELETED, f"Unit {index} is deleted",
                                project_id, actor, index=index)
        return Result.success(unit)

    def _load_deleted(self, project_id: str, index: int, action: str, actor: str) -> Result:
        unit = self._repo.get_unit(project_id, index)
        if unit is None:
            return self._reject(action, ErrorCode.UNIT_NOT_FOUND, f"Unit {index} not found",
                                project_id, actor, index=index)
        if unit.is_active:
            return self._reject(action, ErrorCode.INVALID_STATE_TRANSITION,
                                f"Unit {index} must be soft-deleted first", project_id, actor, index=index)
        return Result.success(unit)

    def _reject(self, action: str, code: ErrorCode, message: str, project_id: str,
                actor: str, **context) -> Result:
        self._obs.log_rejection(action, code.name, message, entity_id=project_id,
                                layer="lifecycle", actor=actor)
        return fail(code, message, project_id=project_id, **context)

    def _rejected(self, action: str, error, project_id: str, actor: str) -> Result:
        self._obs.log_rejection(action, error.code.name, error.message, entity_id=project_id,
                                layer="lifecycle", actor=actor)
        return Result.failure(error)
