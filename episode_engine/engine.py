"""
Engine Orchestration Module

The operator surface of the episode pipeline. Wires every layer to one
repository and one observability engine, and converts unexpected
exceptions into INTERNAL_ERROR results at this boundary.

DESIGN PRINCIPLES:
==================
1. Layers communicate ONLY through contracts and the repository
2. The engine orchestrates; it never writes records itself except
   project registration and context sets
3. Every operation returns a Result
4. All operations are traceable through observability
"""

from __future__ import annotations
from dataclasses import dataclass
from functools import wraps
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple
import os
import time

from adapter import AuditGate, GenerationPipeline, InvocationConfig, NoBlockersAudit
from adapter.providers import GenerationProvider, HTTPProvider, MockProvider

from .artifacts import ArtifactRegistry
from .context import ResolutionReason, resolve_context
from .contracts.base import Error, ErrorCode, Result, Timestamp, derive_id, fail
from .contracts.events import (
    AuditEventType, BatchPolicy, ContextSet, ContextSetItem, FactPairs, ProjectRecord
)
from .dependencies import DependencyMap, StalenessDetector, StalenessReport
from .lifecycle import LifecycleConfig, UnitGenerator, UnitStateMachine
from .observability import ObservabilityConfig, ObservabilityEngine
from .qualifications import ResolveResult, changed_fact_keys
from .retcon import RetconEngine
from .runner import RunnerConfig, TickRunner
from .snapshots import SnapshotManager
from .storage import PipelineRepository, StorageBackend, StorageConfig, WriteConflict, create_backend


ENV_PREFIX = "EPISODE_ENGINE_"

_SCALARS = (int, float, str, bool, type(None))


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class PipelineConfig:
    """Unified configuration for the entire pipeline."""
    storage: StorageConfig = None
    lifecycle: LifecycleConfig = None
    runner: RunnerConfig = None
    invocation: InvocationConfig = None
    observability: ObservabilityConfig = None
    provider_type: str = "mock"  # "mock" or "http"
    gateway_url: Optional[str] = None
    api_key: Optional[str] = None
    model_id: str = "default"

    def __post_init__(self):
        self.storage = self.storage or StorageConfig()
        self.lifecycle = self.lifecycle or LifecycleConfig()
        self.runner = self.runner or RunnerConfig()
        self.invocation = self.invocation or InvocationConfig()
        self.observability = self.observability or ObservabilityConfig()

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> PipelineConfig:
        env = os.environ if environ is None else environ

        def get(name: str, default: Optional[str] = None) -> Optional[str]:
            return env.get(ENV_PREFIX + name, default)

        storage_type = get("STORAGE", "memory")
        db_path = get("DB_PATH")
        if storage_type == "sqlite" and not db_path:
            db_path = "episode_engine.db"
        max_attempts = int(get("MAX_ATTEMPTS", str(LifecycleConfig.max_generation_attempts)))
        return cls(
            storage=StorageConfig(backend_type=storage_type, db_path=db_path),
            lifecycle=LifecycleConfig(max_generation_attempts=max_attempts),
            provider_type=get("PROVIDER", "mock"),
            gateway_url=get("GATEWAY_URL"),
            api_key=get("API_KEY"),
            model_id=get("MODEL_ID", "default"),
        )


def create_provider(config: PipelineConfig) -> GenerationProvider:
    if config.provider_type == "mock":
        return MockProvider()
    if config.provider_type == "http":
        if not config.gateway_url:
            raise ValueError("gateway_url required for http provider")
        return HTTPProvider(config.gateway_url, config.model_id, api_key=config.api_key)
    raise ValueError(f"Unknown provider type: {config.provider_type}")


@dataclass(frozen=True)
class QualificationChange:
    """What a qualification update changed."""
    project: ProjectRecord
    previous_hash: str
    resolution: ResolveResult
    changed_keys: Tuple[str, ...]
    invalidated_indices: Tuple[int, ...]
    staleness: StalenessReport

    @property
    def hash_changed(self) -> bool:
        return self.previous_hash != self.resolution.resolver_hash


@dataclass(frozen=True)
class ContextPreview:
    include_ids: Optional[Tuple[str, ...]]
    reason: ResolutionReason
    context_set_id: Optional[str] = None


def _boundary(action: str):
    """Convert unexpected exceptions into INTERNAL_ERROR results."""
    def decorate(method: Callable[..., Result]) -> Callable[..., Result]:
        @wraps(method)
        def guarded(self: EpisodePipelineBackend, *args, **kwargs) -> Result:
            try:
                return method(self, *args, **kwargs)
            except WriteConflict as conflict:
                return Result.failure(conflict.error)
            except Exception as e:
                self._observability.log_audit(
                    action=action, outcome="internal_error",
                    details=f"{type(e).__name__}: {e}", layer="engine",
                    event_type=AuditEventType.ERROR,
                )
                return fail(ErrorCode.INTERNAL_ERROR, f"{action} failed: {type(e).__name__}: {e}")
        return guarded
    return decorate


# =============================================================================
# ENGINE
# =============================================================================

class EpisodePipelineBackend:
    """
    Unified operator surface for the episode generation pipeline.

    LAYER FLOW:
    ===========
    1. Qualifications: project layers -> fact set + resolver hash
    2. Dependencies: resolver hash -> stale artifacts (read-only)
    3. Snapshots: fact set + artifact versions -> active canon snapshot
    4. Lifecycle: snapshot + locked predecessor -> generated, locked unit
    5. Retcon: declared change -> patch runs -> explicit amendments
    6. Runner: batch cursor -> bounded ticks over the lifecycle
    7. Observability: records all layer activity

    NO LAYER BYPASSES THIS FLOW.
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        provider: Optional[GenerationProvider] = None,
        audit_gate: Optional[AuditGate] = None,
        backend: Optional[StorageBackend] = None,
        dependency_map: Optional[DependencyMap] = None
    ):
        self._config = config or PipelineConfig()
        self._observability = ObservabilityEngine(self._config.observability)
        self._backend = backend or create_backend(self._config.storage)
        self._repo = PipelineRepository(self._backend)
        self._pipeline = GenerationPipeline(provider or create_provider(self._config),
                                            self._config.invocation)

        self._snapshots = SnapshotManager(self._repo, self._observability)
        self._detector = StalenessDetector(dependency_map or DependencyMap())
        self._artifacts = ArtifactRegistry(self._repo, self._snapshots, self._detector,
                                           self._pipeline, self._observability)
        self._machine = UnitStateMachine(self._repo, self._snapshots,
                                         audit_gate or NoBlockersAudit(),
                                         self._config.lifecycle, self._observability)
        self._generator = UnitGenerator(self._repo, self._machine, self._pipeline, self._observability)
        self._retcon = RetconEngine(self._repo, self._snapshots, self._machine,
                                    self._pipeline, self._observability)
        self._runner = TickRunner(self._repo, self._machine, self._generator,
                                  self._config.runner, self._observability)

    # =========================================================================
    # QUALIFICATIONS
    # =========================================================================

    @_boundary("register_project")
    def register_project(
        self,
        project_id: str,
        title: str,
        production_type: Optional[str] = None,
        format_subtype: Optional[str] = None,
        project_fields: Optional[Mapping[str, object]] = None,
        overrides: Optional[Mapping[str, object]] = None,
        guardrail_overrides: Optional[Mapping[str, object]] = None,
        actor: str = "operator"
    ) -> Result:
        """
        Register a project with its qualification layers.

        overrides and guardrail_overrides are flat field -> value
        mappings, applied after project_fields in that order.
        """
        if not (project_id or "").strip() or not (title or "").strip():
            return fail(ErrorCode.INVALID_ARGUMENT, "project_id and title are required")
        layers = self._pairs_or_error(project_fields, overrides, guardrail_overrides)
        if layers.is_failure:
            return layers
        now = Timestamp.now()
        record = ProjectRecord(
            project_id=project_id,
            title=title,
            production_type=production_type,
            format_subtype=format_subtype,
            project_fields=layers.value[0],
            override_fields=layers.value[1],
            guardrail_fields=layers.value[2],
            created_at=now,
            updated_at=now,
        )
        try:
            with self._repo.atomic():
                if self._repo.get_project(project_id) is not None:
                    raise WriteConflict(Error.create(
                        ErrorCode.INVALID_ARGUMENT, f"Project {project_id} is already registered",
                        project_id=project_id,
                    ))
                record = self._repo.add(record)
        except WriteConflict as conflict:
            return Result.failure(conflict.error)

        self._observability.log_audit("register_project", project_id, details=title,
                                      layer="engine", actor=actor, entity_type="project",
                                      event_type=AuditEventType.OPERATOR_ACTION)
        return Result.success(record)

    @_boundary("resolve_qualifications")
    def resolve_qualifications(self, project_id: str) -> Result:
        return self._snapshots.current_resolution(project_id)

    @_boundary("update_qualifications")
    def update_qualifications(
        self,
        project_id: str,
        project_fields: Optional[Mapping[str, object]] = None,
        overrides: Optional[Mapping[str, object]] = None,
        guardrail_overrides: Optional[Mapping[str, object]] = None,
        production_type: Optional[str] = None,
        format_subtype: Optional[str] = None,
        actor: str = "operator"
    ) -> Result:
        """
        Merge new values into the project's layers.

        A value of None removes the field from that layer. Units whose
        snapshot no longer matches the new facts are invalidated; artifact
        staleness is reported, never acted on.
        """
        project = self._repo.get_project(project_id)
        if project is None:
            return fail(ErrorCode.PROJECT_NOT_FOUND, f"Project {project_id} not found",
                        project_id=project_id)
        layers = self._pairs_or_error(project_fields, overrides, guardrail_overrides)
        if layers.is_failure:
            return layers

        before = self._snapshots.current_resolution(project_id).value
        try:
            with self._repo.atomic():
                project = self._repo.update(
                    project,
                    project_fields=_merge(project.project_fields, project_fields),
                    override_fields=_merge(project.override_fields, overrides),
                    guardrail_fields=_merge(project.guardrail_fields, guardrail_overrides),
                    production_type=production_type if production_type is not None else project.production_type,
                    format_subtype=format_subtype if format_subtype is not None else project.format_subtype,
                )
                after: ResolveResult = self._snapshots.current_resolution(project_id).value
                invalidated = self._machine.invalidate_stale_units(project_id, after.resolver_hash)
        except WriteConflict as conflict:
            self._observability.log_rejection("update_qualifications", conflict.error.code.name,
                                              conflict.error.message, entity_id=project_id,
                                              layer="qualifications", actor=actor)
            return Result.failure(conflict.error)

        self._machine.record_invalidation(project_id, invalidated, after.resolver_hash, actor=actor)
        staleness = self._artifacts.staleness_report(project_id)
        if staleness.is_failure:
            return staleness

        change = QualificationChange(
            project=project,
            previous_hash=before.resolver_hash,
            resolution=after,
            changed_keys=tuple(sorted(changed_fact_keys(before.facts, after.facts))),
            invalidated_indices=invalidated,
            staleness=staleness.value,
        )
        self._observability.log_audit(
            "update_qualifications", project_id,
            details=f"{before.resolver_hash} -> {after.resolver_hash} changed={list(change.changed_keys)}",
            layer="qualifications", actor=actor, entity_type="project",
            event_type=AuditEventType.OPERATOR_ACTION,
        )
        return Result.success(change)

    # =========================================================================
    # ARTIFACTS AND STALENESS
    # =========================================================================

    @_boundary("record_artifact")
    def record_artifact(self, project_id: str, kind: str, content: str, actor: str = "operator") -> Result:
        return self._artifacts.record(project_id, kind, content, actor=actor)

    @_boundary("generate_artifact")
    def generate_artifact(self, project_id: str, kind: str, actor: str = "operator") -> Result:
        return self._artifacts.generate(project_id, kind, actor=actor)

    @_boundary("staleness_report")
    def staleness_report(self, project_id: str) -> Result:
        return self._artifacts.staleness_report(project_id)

    # =========================================================================
    # SNAPSHOTS
    # =========================================================================

    @_boundary("create_or_relock_snapshot")
    def create_or_relock_snapshot(self, project_id: str, actor: str = "operator") -> Result:
        """New active snapshot; unlocked units are rebound to it in the same transaction."""
        return self._snapshots.create_snapshot(
            project_id, actor=actor, on_activated=self._machine.rebind_to_snapshot
        )

    @_boundary("list_snapshots")
    def list_snapshots(self, project_id: str) -> Result:
        return Result.success(tuple(self._snapshots.history(project_id)))

    # =========================================================================
    # UNITS
    # =========================================================================

    @_boundary("create_units")
    def create_units(self, project_id: str, count: Optional[int] = None, actor: str = "operator") -> Result:
        return self._machine.create_units(project_id, count, actor=actor)

    @_boundary("list_units")
    def list_units(self, project_id: str, include_deleted: bool = False) -> Result:
        if self._repo.get_project(project_id) is None:
            return fail(ErrorCode.PROJECT_NOT_FOUND, f"Project {project_id} not found",
                        project_id=project_id)
        return Result.success(tuple(self._repo.list_units(project_id, include_deleted)))

    @_boundary("get_unit")
    def get_unit(self, project_id: str, index: int) -> Result:
        unit = self._repo.get_unit(project_id, index)
        if unit is None:
            return fail(ErrorCode.UNIT_NOT_FOUND, f"Unit {index} not found",
                        project_id=project_id, index=index)
        return Result.success(unit)

    @_boundary("get_unit_content")
    def get_unit_content(self, project_id: str, index: int) -> Result:
        unit = self._repo.get_unit(project_id, index)
        if unit is None:
            return fail(ErrorCode.UNIT_NOT_FOUND, f"Unit {index} not found",
                        project_id=project_id, index=index)
        return Result.success(self._repo.get_content_version(unit.content_version_id))

    @_boundary("generate_unit")
    def generate_unit(
        self,
        project_id: str,
        index: int,
        context_set_id: Optional[str] = None,
        include_artifact_ids: Optional[Sequence[str]] = None,
        actor: str = "operator"
    ) -> Result:
        return self._generator.generate(project_id, index, actor=actor, context_set_id=context_set_id,
                                        include_artifact_ids=include_artifact_ids)

    @_boundary("recover_stuck_unit")
    def recover_stuck_unit(self, project_id: str, index: int, reason: str = "",
                           actor: str = "operator") -> Result:
        return self._machine.recover_stuck(project_id, index, reason=reason, actor=actor)

    @_boundary("lock_unit")
    def lock_unit(self, project_id: str, index: int, actor: str = "operator") -> Result:
        return self._machine.lock_unit(project_id, index, actor=actor)

    @_boundary("set_template")
    def set_template(self, project_id: str, index: int, expected_current: Optional[int] = None,
                     actor: str = "operator") -> Result:
        return self._machine.set_template(project_id, index, expected_current=expected_current, actor=actor)

    @_boundary("revise_unit")
    def revise_unit(self, project_id: str, index: int, content: str, actor: str = "operator") -> Result:
        return self._machine.revise_content(project_id, index, content, actor=actor)

    @_boundary("soft_delete_unit")
    def soft_delete_unit(self, project_id: str, index: int, reason: Optional[str] = None,
                         actor: str = "operator") -> Result:
        return self._machine.soft_delete(project_id, index, reason=reason, actor=actor)

    @_boundary("restore_unit")
    def restore_unit(self, project_id: str, index: int, actor: str = "operator") -> Result:
        return self._machine.restore(project_id, index, actor=actor)

    @_boundary("request_hard_delete")
    def request_hard_delete(self, project_id: str, index: int, actor: str = "operator") -> Result:
        return self._machine.request_hard_delete(project_id, index, actor=actor)

    @_boundary("hard_delete_unit")
    def hard_delete_unit(self, project_id: str, index: int, confirmation_token: Optional[str],
                         actor: str = "operator") -> Result:
        return self._machine.hard_delete(project_id, index, confirmation_token, actor=actor)

    # =========================================================================
    # BATCHES
    # =========================================================================

    @_boundary("generate_batch")
    def generate_batch(
        self,
        project_id: str,
        from_index: int = 1,
        max_units_per_tick: Optional[int] = None,
        auto_lock: bool = False,
        stop_on_first_fail: bool = False,
        context_set_id: Optional[str] = None,
        actor: str = "operator"
    ) -> Result:
        policy = BatchPolicy(
            max_units_per_tick=max_units_per_tick or self._config.runner.max_units_per_tick,
            auto_lock=auto_lock,
            stop_on_first_fail=stop_on_first_fail,
        )
        return self._runner.start_batch(project_id, from_index, policy,
                                        context_set_id=context_set_id, actor=actor)

    @_boundary("tick_batch")
    def tick_batch(self, batch_id: str) -> Result:
        return self._runner.tick(batch_id)

    @_boundary("poll_batch")
    def poll_batch(self, batch_id: str, max_ticks: Optional[int] = None,
                   sleep: Callable[[float], None] = time.sleep) -> Result:
        return self._runner.poll_batch(batch_id, max_ticks=max_ticks, sleep=sleep)

    @_boundary("stop_batch")
    def stop_batch(self, batch_id: str, actor: str = "operator") -> Result:
        return self._runner.request_stop(batch_id, actor=actor)

    @_boundary("resume_batch")
    def resume_batch(self, batch_id: str, actor: str = "operator") -> Result:
        return self._runner.resume_batch(batch_id, actor=actor)

    @_boundary("get_batch")
    def get_batch(self, batch_id: str) -> Result:
        cursor = self._repo.get_batch(batch_id)
        if cursor is None:
            return fail(ErrorCode.BATCH_NOT_FOUND, f"Batch {batch_id} not found", batch_id=batch_id)
        return Result.success(cursor)

    # =========================================================================
    # CONTEXT SETS
    # =========================================================================

    @_boundary("define_context_set")
    def define_context_set(
        self,
        project_id: str,
        name: str,
        artifact_ids: Sequence[str],
        is_default: bool = False,
        actor: str = "operator"
    ) -> Result:
        """Define a named, ordered artifact selection. Item order is list order."""
        if self._repo.get_project(project_id) is None:
            return fail(ErrorCode.PROJECT_NOT_FOUND, f"Project {project_id} not found",
                        project_id=project_id)
        if not (name or "").strip():
            return fail(ErrorCode.INVALID_ARGUMENT, "Context set name is required", project_id=project_id)
        for artifact_id in artifact_ids:
            artifact = self._repo.get_artifact_by_id(artifact_id)
            if artifact is None or artifact.project_id != project_id:
                return fail(ErrorCode.ARTIFACT_NOT_FOUND, f"Artifact {artifact_id} not found",
                            project_id=project_id, artifact_id=artifact_id)

        number = len(self._repo.list_context_sets(project_id)) + 1
        context_set = ContextSet(
            set_id=derive_id("ctx", project_id, number, name),
            project_id=project_id,
            name=name.strip(),
            is_default=is_default,
            items=tuple(ContextSetItem(artifact_id=a, sort_order=i) for i, a in enumerate(artifact_ids)),
            created_at=Timestamp.now(),
        )
        with self._repo.atomic():
            context_set = self._repo.add(context_set)

        self._observability.log_audit("define_context_set", context_set.set_id,
                                      details=f"{name} items={len(artifact_ids)} default={is_default}",
                                      layer="engine", actor=actor, entity_type="context_set",
                                      event_type=AuditEventType.OPERATOR_ACTION)
        return Result.success(context_set)

    @_boundary("resolve_context")
    def resolve_context(
        self,
        project_id: str,
        context_set_id: Optional[str] = None,
        include_artifact_ids: Optional[Sequence[str]] = None
    ) -> Result:
        resolution = resolve_context(self._repo.list_context_sets(project_id),
                                     context_set_id, include_artifact_ids)
        return Result.success(ContextPreview(
            include_ids=resolution.include_ids,
            reason=resolution.reason,
            context_set_id=resolution.context_set_id,
        ))

    # =========================================================================
    # RETCONS
    # =========================================================================

    @_boundary("declare_retcon")
    def declare_retcon(self, project_id: str, summary: str, changed_artifact_kind: Optional[str] = None,
                       actor: str = "operator") -> Result:
        return self._retcon.declare_change(project_id, summary, changed_artifact_kind, actor=actor)

    @_boundary("analyze_retcon")
    def analyze_retcon(self, event_id: str, actor: str = "operator") -> Result:
        return self._retcon.analyze(event_id, actor=actor)

    @_boundary("propose_patches")
    def propose_patches(self, event_id: str, indices: Optional[Sequence[int]] = None,
                        actor: str = "operator") -> Result:
        return self._retcon.propose_patches(event_id, indices, actor=actor)

    @_boundary("apply_patch")
    def apply_patch(self, patch_id: str, actor: str = "operator") -> Result:
        return self._retcon.apply(patch_id, actor=actor)

    @_boundary("reject_patch")
    def reject_patch(self, patch_id: str, reason: str, actor: str = "operator") -> Result:
        return self._retcon.reject(patch_id, reason, actor=actor)

    @_boundary("list_patches")
    def list_patches(self, project_id: str, event_id: Optional[str] = None) -> Result:
        return Result.success(tuple(self._repo.list_patches(project_id, event_id)))

    # =========================================================================
    # EXPORTS AND OBSERVABILITY
    # =========================================================================

    @_boundary("list_exports")
    def list_exports(self, project_id: str) -> Result:
        return Result.success(tuple(self._repo.list_exports(project_id)))

    def get_audit_report(self) -> Dict:
        return self._observability.generate_audit_report()

    def get_metrics(self):
        return self._observability.get_metrics()

    def close(self) -> None:
        self._backend.close()

    # =========================================================================
    # LAYER ACCESS (for testing and debugging)
    # =========================================================================

    @property
    def repository(self) -> PipelineRepository:
        return self._repo

    @property
    def pipeline(self) -> GenerationPipeline:
        return self._pipeline

    @property
    def state_machine(self) -> UnitStateMachine:
        return self._machine

    @property
    def snapshot_manager(self) -> SnapshotManager:
        return self._snapshots

    @property
    def runner(self) -> TickRunner:
        return self._runner

    @property
    def observability_layer(self) -> ObservabilityEngine:
        return self._observability

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    @staticmethod
    def _pairs_or_error(*layers: Optional[Mapping[str, object]]) -> Result:
        converted: List[FactPairs] = []
        for layer in layers:
            for key, value in (layer or {}).items():
                if not isinstance(value, _SCALARS):
                    return fail(ErrorCode.INVALID_FACT_VALUE,
                                f"Field {key} must be a scalar, got {type(value).__name__}",
                                field=key)
            converted.append(tuple(sorted((layer or {}).items())))
        return Result.success(tuple(converted))


def _merge(existing: FactPairs, changes: Optional[Mapping[str, object]]) -> FactPairs:
    if not changes:
        return existing
    merged = dict(existing)
    for key, value in changes.items():
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = value
    return tuple(sorted(merged.items()))
