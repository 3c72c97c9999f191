"""
Patch / Retcon Engine

Declared narrative changes, impact analysis and explicitly approved
amendments to locked units.

BOUNDARY ENFORCEMENT:
=====================
- Writes to units only through UnitStateMachine.apply_amendment
- Never applies a patch on its own; every applied or rejected run names
  who decided it
- Impact judgment comes from the adapter; this engine keeps only indices
  of active locked units and records everything it drops
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from adapter import (
    GenerationPipeline, ImpactAnalysisRequest, ImpactCandidate, ImpactVerdict,
    PatchProposalRequest
)

from ..contracts.base import (
    ErrorCode, PatchStatus, Result, RetconStatus, Timestamp, derive_id, fail
)
from ..contracts.events import AuditEventType, PatchRun, RetconEvent, Unit
from ..lifecycle import AmendmentOutcome, UnitStateMachine, continuity_input
from ..observability import ObservabilityEngine
from ..snapshots import SnapshotManager
from ..storage import PipelineRepository, WriteConflict


LIVE_PATCH_STATUSES = frozenset({PatchStatus.RUNNING, PatchStatus.PENDING})


@dataclass(frozen=True)
class ImpactReport:
    """Outcome of one impact analysis pass."""
    event: RetconEvent
    verdicts: Tuple[ImpactVerdict, ...] = field(default_factory=tuple)
    dropped_indices: Tuple[int, ...] = field(default_factory=tuple)

    @property
    def affected_indices(self) -> Tuple[int, ...]:
        return tuple(v.unit_index for v in self.verdicts)


class RetconEngine:
    """
    Declared change -> impact analysis -> patch proposals -> operator
    decision per patch.

    Event status moves declared -> analyzed -> patches_proposed ->
    resolved; an event is resolved once every one of its runs is terminal.
    """

    def __init__(
        self,
        repository: PipelineRepository,
        snapshots: SnapshotManager,
        state_machine: UnitStateMachine,
        pipeline: GenerationPipeline,
        observability: Optional[ObservabilityEngine] = None
    ):
        self._repo = repository
        self._snapshots = snapshots
        self._machine = state_machine
        self._pipeline = pipeline
        self._obs = observability or ObservabilityEngine()

    # -------------------------------------------------------------------------
    # Declaration and analysis
    # -------------------------------------------------------------------------

    def declare_change(
        self,
        project_id: str,
        summary: str,
        changed_artifact_kind: Optional[str] = None,
        actor: str = "operator"
    ) -> Result:
        if not (summary or "").strip():
            return self._reject("declare_retcon", ErrorCode.INVALID_ARGUMENT,
                                "A retcon needs a non-empty summary", project_id, actor)
        resolution = self._snapshots.current_resolution(project_id)
        if resolution.is_failure:
            return resolution

        number = len(self._repo.list_retcons(project_id)) + 1
        now = Timestamp.now()
        event = RetconEvent(
            event_id=derive_id("retcon", project_id, number, summary.strip()),
            project_id=project_id,
            summary=summary.strip(),
            resolver_hash=resolution.value.resolver_hash,
            changed_artifact_kind=changed_artifact_kind,
            declared_by=actor,
            created_at=now,
            updated_at=now,
        )
        try:
            with self._repo.atomic():
                event = self._repo.add(event)
        except WriteConflict as conflict:
            return Result.failure(conflict.error)

        self._obs.log_audit("declare_retcon", event.event_id, details=event.summary,
                            layer="retcon", actor=actor, entity_type="retcon_event",
                            event_type=AuditEventType.OPERATOR_ACTION)
        return Result.success(event)

    def analyze(self, event_id: str, actor: str = "operator") -> Result:
        """Ask the backend which locked units the change touches."""
        loaded = self._load_event(event_id, "analyze_retcon", actor)
        if loaded.is_failure:
            return loaded
        event: RetconEvent = loaded.value

        candidates = {}
        for unit in self._locked_units(event.project_id):
            version = self._repo.get_content_version(unit.content_version_id)
            candidates[unit.index] = ImpactCandidate(
                unit_index=unit.index, title=unit.title,
                excerpt=version.content if version else "",
            )

        request = ImpactAnalysisRequest(
            request_id=derive_id("impact", event.event_id, event.revision),
            project_id=event.project_id,
            summary=event.summary,
            candidates=tuple(candidates[i] for i in sorted(candidates)),
            changed_artifact_kind=event.changed_artifact_kind,
        )
        outcome, _ = self._pipeline.analyze_impact(request)
        if not outcome.is_success:
            return self._reject("analyze_retcon", ErrorCode.GENERATION_FAILED,
                                f"Impact analysis failed: {outcome.message}", event.project_id,
                                actor, event_id=event_id, backend_code=outcome.error_code)

        kept: Dict[int, ImpactVerdict] = {}
        dropped: List[int] = []
        for verdict in outcome.verdicts:
            if verdict.unit_index in candidates:
                kept.setdefault(verdict.unit_index, verdict)
            elif verdict.unit_index not in dropped:
                dropped.append(verdict.unit_index)
        verdicts = tuple(kept[i] for i in sorted(kept))

        notes = tuple((v.unit_index, v.reason) for v in verdicts)
        notes += tuple((i, "dropped: not an active locked unit") for i in sorted(dropped))
        try:
            with self._repo.atomic():
                event = self._repo.update(
                    self._repo.get_retcon(event_id),
                    status=RetconStatus.ANALYZED,
                    affected_indices=tuple(v.unit_index for v in verdicts),
                    analysis_notes=notes,
                )
        except WriteConflict as conflict:
            return Result.failure(conflict.error)

        self._obs.log_audit("analyze_retcon", event_id,
                            details=f"affected={list(event.affected_indices)} dropped={sorted(dropped)}",
                            layer="retcon", actor=actor, entity_type="retcon_event")
        return Result.success(ImpactReport(event=event, verdicts=verdicts,
                                           dropped_indices=tuple(sorted(dropped))))

    # -------------------------------------------------------------------------
    # Proposals
    # -------------------------------------------------------------------------

    def propose_patches(
        self,
        event_id: str,
        indices: Optional[Sequence[int]] = None,
        actor: str = "operator"
    ) -> Result:
        """
        One patch run per target index.

        Every index must be an active locked unit, otherwise nothing is
        written. A live run for the same (event, index) is returned
        instead of a duplicate.
        """
        loaded = self._load_event(event_id, "propose_patches", actor)
        if loaded.is_failure:
            return loaded
        event: RetconEvent = loaded.value
        project_id = event.project_id

        targets = sorted(set(indices if indices is not None else event.affected_indices))
        if not targets:
            return self._reject("propose_patches", ErrorCode.INVALID_ARGUMENT,
                                "No target units to patch", project_id, actor, event_id=event_id)

        units: Dict[int, Unit] = {}
        for index in targets:
            unit = self._repo.get_unit(project_id, index)
            if unit is None or not unit.is_active or not unit.is_locked:
                return self._reject("propose_patches", ErrorCode.UNIT_NOT_LOCKED,
                                    f"Unit {index} is not an active locked unit",
                                    project_id, actor, event_id=event_id, index=index)
            units[index] = unit

        runs: List[PatchRun] = []
        for index in targets:
            live = [r for r in self._repo.list_patches(project_id, event_id)
                    if r.target_index == index and r.status in LIVE_PATCH_STATUSES]
            if live:
                runs.append(live[-1])
                continue
            runs.append(self._propose_one(event, units[index], actor))

        try:
            with self._repo.atomic():
                current = self._repo.get_retcon(event_id)
                if current.status in (RetconStatus.DECLARED, RetconStatus.ANALYZED):
                    self._repo.update(current, status=RetconStatus.PATCHES_PROPOSED)
        except WriteConflict as conflict:
            return Result.failure(conflict.error)
        self._maybe_resolve(event_id)

        self._obs.log_audit("propose_patches", event_id,
                            details=", ".join(f"{r.target_index}:{r.status.value}" for r in runs),
                            layer="retcon", actor=actor, entity_type="retcon_event")
        return Result.success(tuple(runs))

    def _propose_one(self, event: RetconEvent, unit: Unit, actor: str) -> PatchRun:
        attempt = len([r for r in self._repo.list_patches(event.project_id, event.event_id)
                       if r.target_index == unit.index]) + 1
        run = PatchRun(
            patch_id=derive_id("patch", event.event_id, unit.index, attempt),
            event_id=event.event_id,
            project_id=event.project_id,
            target_index=unit.index,
            unit_id=unit.unit_id,
            base_content_version_id=unit.content_version_id,
            created_at=Timestamp.now(),
        )
        with self._repo.atomic():
            run = self._repo.add(run)

        current = self._repo.get_content_version(unit.content_version_id)
        previous = self._repo.latest_continuity_note(event.project_id, unit.index - 1) if unit.index > 1 else None
        outcome, _ = self._pipeline.propose_patch(PatchProposalRequest(
            request_id=run.patch_id,
            project_id=event.project_id,
            summary=event.summary,
            target_index=unit.index,
            title=unit.title,
            current_content=current.content,
            previous_continuity=continuity_input(previous),
        ))

        now = Timestamp.now()
        if not outcome.is_success:
            changes = dict(status=PatchStatus.REJECTED, resolved_by="system", resolved_at=now,
                           rejection_reason=f"proposal_failed: {outcome.error_code}: {outcome.message}")
        elif outcome.content == current.content:
            changes = dict(status=PatchStatus.COMPLETE, proposed_content=outcome.content,
                           resolved_by="system", resolved_at=now)
        else:
            changes = dict(status=PatchStatus.PENDING, proposed_content=outcome.content)

        with self._repo.atomic():
            run = self._repo.update(run, **changes)

        self._obs.log_audit("propose_patch", run.patch_id,
                            outcome=run.status.value,
                            details=f"event={event.event_id} index={unit.index}",
                            layer="retcon", actor=actor, entity_type="patch_run",
                            event_type=AuditEventType.GENERATION)
        return run

    # -------------------------------------------------------------------------
    # Decisions
    # -------------------------------------------------------------------------

    def apply(self, patch_id: str, actor: str = "operator") -> Result:
        """Amend the target unit with the proposal. Explicit operator action only."""
        loaded = self._load_pending(patch_id, "apply_patch", actor)
        if loaded.is_failure:
            return loaded
        run: PatchRun = loaded.value

        def mark_applied(amendment: AmendmentOutcome):
            self._repo.update(
                run,
                status=PatchStatus.APPLIED,
                applied_version_id=amendment.version.version_id,
                resolved_by=actor,
                resolved_at=Timestamp.now(),
            )

        amended = self._machine.apply_amendment(
            run.project_id, run.target_index, run.proposed_content,
            base_version_id=run.base_content_version_id,
            patch_run_id=run.patch_id,
            actor=actor,
            on_amended=mark_applied,
        )
        if amended.is_failure:
            return amended

        self._maybe_resolve(run.event_id)
        self._obs.log_audit("apply_patch", patch_id,
                            details=f"index={run.target_index} version={amended.value.version.version_id}",
                            layer="retcon", actor=actor, entity_type="patch_run",
                            event_type=AuditEventType.OPERATOR_ACTION)
        self._obs.collect_metric("patches_applied_total", 1)
        return Result.success(self._repo.get_patch(patch_id))

    def reject(self, patch_id: str, reason: str, actor: str = "operator") -> Result:
        if not (reason or "").strip():
            return self._reject("reject_patch", ErrorCode.REASON_REQUIRED,
                                "Rejecting a patch requires a reason", None, actor, patch_id=patch_id)
        loaded = self._load_pending(patch_id, "reject_patch", actor)
        if loaded.is_failure:
            return loaded
        try:
            with self._repo.atomic():
                run = self._repo.update(loaded.value, status=PatchStatus.REJECTED,
                                        rejection_reason=reason.strip(), resolved_by=actor,
                                        resolved_at=Timestamp.now())
        except WriteConflict as conflict:
            return Result.failure(conflict.error)

        self._maybe_resolve(run.event_id)
        self._obs.log_audit("reject_patch", patch_id, details=f"index={run.target_index} reason={reason}",
                            layer="retcon", actor=actor, entity_type="patch_run",
                            event_type=AuditEventType.OPERATOR_ACTION)
        self._obs.collect_metric("patches_rejected_total", 1)
        return Result.success(run)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _maybe_resolve(self, event_id: str) -> None:
        with self._repo.atomic():
            event = self._repo.get_retcon(event_id)
            runs = self._repo.list_patches(event.project_id, event_id)
            if event.status == RetconStatus.RESOLVED or not runs:
                return
            if all(r.status.is_terminal for r in runs):
                self._repo.update(event, status=RetconStatus.RESOLVED)

    def _locked_units(self, project_id: str) -> List[Unit]:
        return [u for u in self._repo.list_units(project_id) if u.is_locked]

    def _load_event(self, event_id: str, action: str, actor: str) -> Result:
        event = self._repo.get_retcon(event_id)
        if event is None:
            return self._reject(action, ErrorCode.RETCON_NOT_FOUND, f"Retcon {event_id} not found",
                                None, actor, event_id=event_id)
        if event.status == RetconStatus.RESOLVED:
            return self._reject(action, ErrorCode.INVALID_STATE_TRANSITION,
                                f"Retcon {event_id} is already resolved", event.project_id, actor,
                                event_id=event_id)
        return Result.success(event)

    def _load_pending(self, patch_id: str, action: str, actor: str) -> Result:
        run = self._repo.get_patch(patch_id)
        if run is None:
            return self._reject(action, ErrorCode.PATCH_NOT_FOUND, f"Patch {patch_id} not found",
                                None, actor, patch_id=patch_id)
        if run.status != PatchStatus.PENDING:
            return self._reject(action, ErrorCode.PATCH_NOT_PENDING,
                                f"Patch {patch_id} is {run.status.value}", run.project_id, actor,
                                patch_id=patch_id, status=run.status.value)
        return Result.success(run)

    def _reject(self, action: str, code: ErrorCode, message: str, project_id: Optional[str],
                actor: str, **context) -> Result:
        self._obs.log_rejection(action, code.name, message, entity_id=project_id,
                                layer="retcon", actor=actor)
        if project_id is not None:
            context["project_id"] = project_id
        return fail(code, message, **context)
