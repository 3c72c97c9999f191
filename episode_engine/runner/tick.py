"""
Tick-Driven Runner

Advances a batch of units through a persisted, resumable cursor. Each
tick does a bounded amount of work; the caller decides when to tick.

GUARANTEES:
===========
- the cursor is re-read before each unit, so a stop request takes effect
  at the next unit boundary
- a failed generation is never retried by the runner
- locked units are skipped, never regenerated
- any process holding the storage backend can continue a batch
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Tuple
import time

from ..contracts.base import (
    BatchStatus, Error, ErrorCode, Result, Timestamp, UnitStatus, derive_id, fail
)
from ..contracts.events import AuditEventType, BatchCursor, BatchPolicy
from ..lifecycle import UnitGenerator, UnitStateMachine
from ..observability import ObservabilityEngine
from ..storage import PipelineRepository, WriteConflict


RESUMABLE = frozenset({BatchStatus.PAUSED, BatchStatus.AWAITING_LOCK, BatchStatus.BLOCKED})


class _Step(Enum):
    SKIPPED = "skipped"
    ADVANCED = "advanced"
    HALTED = "halted"


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass(frozen=True)
class RunnerConfig:
    max_units_per_tick: int = 1
    backoff_initial_seconds: float = 1.0
    backoff_factor: float = 2.0
    backoff_cap_seconds: float = 30.0


class BackoffSchedule:
    """Capped exponential delay between idle polls; reset on progress."""

    def __init__(self, initial: float = 1.0, factor: float = 2.0, cap: float = 30.0):
        if initial <= 0 or factor < 1 or cap < initial:
            raise ValueError("backoff needs initial > 0, factor >= 1 and cap >= initial")
        self._initial = initial
        self._factor = factor
        self._cap = cap
        self._failures = 0

    @classmethod
    def from_config(cls, config: RunnerConfig) -> BackoffSchedule:
        return cls(config.backoff_initial_seconds, config.backoff_factor, config.backoff_cap_seconds)

    def next_delay(self) -> float:
        delay = min(self._initial * (self._factor ** self._failures), self._cap)
        self._failures += 1
        return delay

    def reset(self) -> None:
        self._failures = 0


@dataclass(frozen=True)
class TickReport:
    batch: BatchCursor
    advanced: Tuple[int, ...] = field(default_factory=tuple)
    generated: Tuple[int, ...] = field(default_factory=tuple)
    error: Optional[Error] = None

    @property
    def status(self) -> BatchStatus:
        return self.batch.status


# =============================================================================
# RUNNER
# =============================================================================

class TickRunner:
    """Batch cursor owner: start, tick, stop, resume, poll."""

    def __init__(
        self,
        repository: PipelineRepository,
        state_machine: UnitStateMachine,
        generator: UnitGenerator,
        config: Optional[RunnerConfig] = None,
        observability: Optional[ObservabilityEngine] = None
    ):
        self._repo = repository
        self._machine = state_machine
        self._generator = generator
        self._config = config or RunnerConfig()
        self._obs = observability or ObservabilityEngine()

    # -------------------------------------------------------------------------
    # Cursor lifecycle
    # -------------------------------------------------------------------------

    def start_batch(
        self,
        project_id: str,
        from_index: int = 1,
        policy: Optional[BatchPolicy] = None,
        context_set_id: Optional[str] = None,
        actor: str = "operator"
    ) -> Result:
        if self._repo.get_project(project_id) is None:
            return fail(ErrorCode.PROJECT_NOT_FOUND, f"Project {project_id} not found",
                        project_id=project_id)
        policy = policy or BatchPolicy(max_units_per_tick=self._config.max_units_per_tick)
        if from_index < 1 or policy.max_units_per_tick < 1:
            return fail(ErrorCode.INVALID_ARGUMENT,
                        "from_index and max_units_per_tick must be positive",
                        project_id=project_id, from_index=from_index)

        try:
            with self._repo.atomic():
                live = self._repo.live_batch(project_id)
                if live is not None:
                    raise WriteConflict(Error.create(
                        ErrorCode.BATCH_ALREADY_RUNNING,
                        f"Batch {live.batch_id} is still {live.status.value}",
                        project_id=project_id, batch_id=live.batch_id,
                    ))
                number = len(self._repo.list_batches(project_id)) + 1
                now = Timestamp.now()
                cursor = self._repo.add(BatchCursor(
                    batch_id=derive_id("batch", project_id, number, from_index),
                    project_id=project_id,
                    from_index=from_index,
                    next_index=from_index,
                    policy=policy,
                    context_set_id=context_set_id,
                    actor=actor,
                    created_at=now,
                    updated_at=now,
                ))
        except WriteConflict as conflict:
            self._obs.log_rejection("start_batch", conflict.error.code.name, conflict.error.message,
                                    entity_id=project_id, layer="runner", actor=actor)
            return Result.failure(conflict.error)

        self._obs.log_audit("start_batch", cursor.batch_id,
                            details=f"from={from_index} per_tick={policy.max_units_per_tick} "
                                    f"auto_lock={policy.auto_lock}",
                            layer="runner", actor=actor, entity_type="batch",
                            event_type=AuditEventType.OPERATOR_ACTION)
        return Result.success(cursor)

    def request_stop(self, batch_id: str, actor: str = "operator") -> Result:
        """Cooperative stop: a running batch stops at the next unit boundary."""
        cursor = self._repo.get_batch(batch_id)
        if cursor is None:
            return self._not_found(batch_id)
        if not cursor.status.is_live:
            return Result.success(cursor)
        changes = {"stop_requested": True}
        if cursor.status != BatchStatus.RUNNING:
            changes["status"] = BatchStatus.STOPPED
        cursor = self._save(batch_id, **changes)

        self._obs.log_audit("stop_batch", batch_id, details=f"status={cursor.status.value}",
                            layer="runner", actor=actor, entity_type="batch",
                            event_type=AuditEventType.OPERATOR_ACTION)
        return Result.success(cursor)

    def resume_batch(self, batch_id: str, actor: str = "operator") -> Result:
        cursor = self._repo.get_batch(batch_id)
        if cursor is None:
            return self._not_found(batch_id)
        if cursor.status == BatchStatus.RUNNING:
            return Result.success(cursor)
        if cursor.status not in RESUMABLE:
            return fail(ErrorCode.INVALID_STATE_TRANSITION,
                        f"Batch {batch_id} is {cursor.status.value} and cannot resume",
                        batch_id=batch_id)
        cursor = self._save(batch_id, status=BatchStatus.RUNNING, last_error=None)

        self._obs.log_audit("resume_batch", batch_id, details=f"next={cursor.next_index}",
                            layer="runner", actor=actor, entity_type="batch",
                            event_type=AuditEventType.OPERATOR_ACTION)
        return Result.success(cursor)

    # -------------------------------------------------------------------------
    # Ticking
    # -------------------------------------------------------------------------

    def tick(self, batch_id: str) -> Result:
        """Advance at most policy.max_units_per_tick units."""
        cursor = self._repo.get_batch(batch_id)
        if cursor is None:
            return self._not_found(batch_id)

        advanced: List[int] = []
        generated: List[int] = []
        error: Optional[Error] = None
        budget = cursor.policy.max_units_per_tick

        while len(advanced) < budget:
            cursor = self._repo.get_batch(batch_id)
            if cursor.status != BatchStatus.RUNNING:
                break
            if cursor.stop_requested:
                cursor = self._save(batch_id, status=BatchStatus.STOPPED)
                break

            indices = [u.index for u in self._repo.list_units(cursor.project_id)]
            if not indices or cursor.next_index > max(indices):
                cursor = self._save(batch_id, status=BatchStatus.COMPLETE)
                break

            step, error, produced = self._step(cursor)
            if produced:
                generated.append(cursor.next_index)
            if step == _Step.SKIPPED:
                self._save(batch_id, next_index=cursor.next_index + 1)
                continue
            if step == _Step.ADVANCED:
                advanced.append(cursor.next_index)
                latest = self._repo.get_batch(batch_id)
                self._save(batch_id, next_index=cursor.next_index + 1,
                           units_completed=latest.units_completed + 1)
                continue
            break

        latest = self._repo.get_batch(batch_id)
        cursor = self._save(batch_id, ticks=latest.ticks + 1)
        self._obs.collect_metric("tick_units_advanced", len(advanced))
        self._obs.log_audit("tick_batch", batch_id,
                            outcome=cursor.status.value,
                            details=f"advanced={advanced} next={cursor.next_index}",
                            layer="runner", actor=cursor.actor, entity_type="batch",
                            event_type=AuditEventType.SYSTEM)
        return Result.success(TickReport(
            batch=cursor, advanced=tuple(advanced), generated=tuple(generated), error=error
        ))

    def poll_batch(
        self,
        batch_id: str,
        max_ticks: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
        backoff: Optional[BackoffSchedule] = None
    ) -> Result:
        """
        Tick until the batch leaves RUNNING or max_ticks is reached.

        Idle ticks wait on the backoff schedule; a tick that advances a
        unit resets it.
        """
        backoff = backoff or BackoffSchedule.from_config(self._config)
        ticks = 0
        reports: List[TickReport] = []
        while max_ticks is None or ticks < max_ticks:
            result = self.tick(batch_id)
            if result.is_failure:
                return result
            report: TickReport = result.value
            reports.append(report)
            ticks += 1
            if report.status != BatchStatus.RUNNING:
                break
            if report.advanced or report.generated:
                backoff.reset()
            else:
                sleep(backoff.next_delay())
        return Result.success(tuple(reports))

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _step(self, cursor: BatchCursor):
        """Handle the unit at cursor.next_index. Returns (step, error, generated)."""
        project_id = cursor.project_id
        index = cursor.next_index
        policy = cursor.policy
        unit = self._repo.get_unit(project_id, index)

        if unit is None or not unit.is_active:
            code = ErrorCode.UNIT_NOT_FOUND if unit is None else ErrorCode.UNIT_DELETED
            return self._halt(cursor, BatchStatus.BLOCKED,
                              Error.create(code, f"Unit {index} is not available", index=index))
        if unit.is_locked:
            return _Step.SKIPPED, None, False
        if unit.status == UnitStatus.GENERATING:
            return self._halt(cursor, BatchStatus.BLOCKED, Error.create(
                ErrorCode.UNIT_STUCK, f"Unit {index} is still generating; recover it first", index=index))
        if unit.status == UnitStatus.INVALIDATED:
            return self._halt(cursor, BatchStatus.BLOCKED, Error.create(
                ErrorCode.SNAPSHOT_STALE, f"Unit {index} is invalidated; re-snapshot", index=index))

        produced = False
        if unit.status in (UnitStatus.PENDING, UnitStatus.ERROR):
            generated = self._generator.generate(project_id, index, actor=cursor.actor,
                                                 context_set_id=cursor.context_set_id)
            if generated.is_failure:
                if generated.error.code == ErrorCode.GENERATION_FAILED:
                    latest = self._repo.get_batch(cursor.batch_id)
                    self._save(cursor.batch_id, errors=latest.errors + 1)
                    status = BatchStatus.FAILED if policy.stop_on_first_fail else BatchStatus.PAUSED
                    return self._halt(cursor, status, generated.error)
                return self._halt(cursor, BatchStatus.BLOCKED, generated.error)
            produced = True

        if not policy.auto_lock:
            self._save(cursor.batch_id, status=BatchStatus.AWAITING_LOCK, last_error=None)
            return _Step.HALTED, None, produced

        locked = self._machine.lock_unit(project_id, index, actor=cursor.actor)
        if locked.is_failure:
            step, error, _ = self._halt(cursor, BatchStatus.BLOCKED, locked.error)
            return step, error, produced
        return _Step.ADVANCED, None, produced

    def _halt(self, cursor: BatchCursor, status: BatchStatus, error: Error):
        self._save(cursor.batch_id, status=status, last_error=f"{error.code.name}: {error.message}")
        return _Step.HALTED, error, False

    def _save(self, batch_id: str, **changes) -> BatchCursor:
        """Apply changes to the latest cursor, retrying on a lost race."""
        while True:
            try:
                with self._repo.atomic():
                    return self._repo.update(self._repo.get_batch(batch_id), **changes)
            except WriteConflict:
                continue

    def _not_found(self, batch_id: str) -> Result:
        return fail(ErrorCode.BATCH_NOT_FOUND, f"Batch {batch_id} not found", batch_id=batch_id)

