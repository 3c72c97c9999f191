"""
Unit Generation

Assembles a UnitGenerationRequest, invokes the adapter and hands the
outcome back to the state machine. Holds no state of its own.

REQUEST INPUTS:
===============
- facts and fact hash of the unit's canon snapshot
- context artifacts: the resolved context set, else every version pinned
  by the snapshot; pinned versions win over newer ones
- continuity note of the previous unit
- continuity note of the season template, when one is set
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional, Sequence

from adapter import (
    ContextArtifact, ContinuityInput, GenerationOutcome, GenerationPipeline,
    UnitGenerationRequest
)

from ..context import ContextResolution, resolve_context
from ..contracts.base import ErrorCode, Result, derive_id, fail
from ..contracts.events import CanonSnapshot, ContinuityNote, Unit
from ..observability import ObservabilityEngine
from ..storage import PipelineRepository
from .state_machine import UnitStateMachine


@dataclass(frozen=True)
class GenerationReport:
    unit: Unit
    outcome: GenerationOutcome
    context: ContextResolution


def continuity_input(note: Optional[ContinuityNote]) -> Optional[ContinuityInput]:
    if note is None:
        return None
    return ContinuityInput(
        unit_index=note.unit_index,
        title=note.title,
        tail_excerpt=note.tail_excerpt,
        closing_line=note.closing_line,
        content_hash=note.content_hash,
    )


class UnitGenerator:
    """Runs one generation attempt for one unit."""

    def __init__(
        self,
        repository: PipelineRepository,
        state_machine: UnitStateMachine,
        pipeline: GenerationPipeline,
        observability: Optional[ObservabilityEngine] = None
    ):
        self._repo = repository
        self._machine = state_machine
        self._pipeline = pipeline
        self._obs = observability or ObservabilityEngine()

    def generate(
        self,
        project_id: str,
        index: int,
        actor: str = "operator",
        context_set_id: Optional[str] = None,
        include_artifact_ids: Optional[Sequence[str]] = None
    ) -> Result:
        """
        Generate unit content.

        A backend failure leaves the unit in error and returns
        GENERATION_FAILED; the operator or runner retries explicitly.
        """
        started = self._machine.begin_generation(project_id, index, actor)
        if started.is_failure:
            return started
        unit: Unit = started.value
        snapshot = self._repo.get_snapshot(unit.snapshot_id)

        resolution = resolve_context(
            self._repo.list_context_sets(project_id), context_set_id, include_artifact_ids
        )
        request = self.build_request(unit, snapshot, resolution)
        outcome, _ = self._pipeline.generate_unit(request)

        completed = self._machine.complete_generation(unit, outcome, actor)
        if completed.is_failure:
            return completed

        self._obs.collect_metric("generation_latency_ms", outcome.latency_ms, {"layer": "lifecycle"})
        if not outcome.is_success:
            self._obs.collect_metric("generation_failures_total", 1, {"kind": outcome.kind.value})
            return fail(
                ErrorCode.GENERATION_FAILED,
                f"Generation of unit {index} failed: {outcome.message}",
                project_id=project_id,
                index=index,
                backend_code=outcome.error_code,
                retryable=outcome.is_retryable,
                trace_id=outcome.trace_id,
            )

        self._obs.collect_metric("units_generated_total", 1)
        return Result.success(GenerationReport(unit=completed.value, outcome=outcome, context=resolution))

    def build_request(
        self,
        unit: Unit,
        snapshot: CanonSnapshot,
        resolution: ContextResolution
    ) -> UnitGenerationRequest:
        project_id = unit.project_id
        previous = None
        if unit.index > 1:
            previous = self._repo.latest_continuity_note(project_id, unit.index - 1)

        template = self._machine.get_template(project_id)
        template_note = None
        if template is not None and template.unit_id != unit.unit_id:
            template_note = self._repo.latest_continuity_note(project_id, template.index)

        return UnitGenerationRequest(
            request_id=derive_id("req", unit.unit_id, snapshot.snapshot_id, unit.attempt_count),
            project_id=project_id,
            unit_index=unit.index,
            unit_title=unit.title,
            fact_hash=snapshot.fact_hash,
            facts=snapshot.facts,
            context_artifacts=self.context_artifacts(snapshot, resolution),
            previous_continuity=continuity_input(previous),
            template=continuity_input(template_note),
            attempt=unit.attempt_count,
        )

    def context_artifacts(self, snapshot: CanonSnapshot, resolution: ContextResolution):
        artifacts: List[ContextArtifact] = []
        if resolution.include_ids is None:
            for kind, version_id in snapshot.artifact_versions:
                version = self._repo.get_artifact_version(version_id)
                if version is not None:
                    artifacts.append(ContextArtifact(
                        artifact_id=version.artifact_id, kind=kind,
                        version_id=version.version_id, content=version.content,
                    ))
            return tuple(artifacts)

        for artifact_id in resolution.include_ids:
            artifact = self._repo.get_artifact_by_id(artifact_id)
            if artifact is None or artifact.project_id != snapshot.project_id:
                continue
            version_id = snapshot.pinned_version(artifact.kind) or artifact.latest_version_id
            version = self._repo.get_artifact_version(version_id) if version_id else None
            if version is not None:
                artifacts.append(ContextArtifact(
                    artifact_id=artifact.artifact_id, kind=artifact.kind,
                    version_id=version.version_id, content=version.content,
                ))
        return tuple(artifacts)
