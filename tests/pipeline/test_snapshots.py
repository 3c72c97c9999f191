"""
Canon Snapshot Tests

INVARIANTS TESTED:
1. At most one active snapshot per project
2. Superseded snapshots are kept, never deleted
3. Unresolved qualifications block snapshot creation with no writes
4. The rebind hook commits or rolls back with the snapshot
5. A fact change and its unit invalidation commit together
"""

from episode_engine.contracts.base import Error, ErrorCode, SnapshotStatus, UnitStatus
from episode_engine.qualifications import UNIT_COUNT, UNIT_DURATION
from episode_engine.storage import WriteConflict

from .fixtures import (
    PROJECT_ID, create_backend, generate_and_lock, prepared_backend, register_series, unit,
)


class TestSnapshotCreation:

    def test_first_snapshot(self):
        backend = create_backend()
        register_series(backend, duration=60, count=3)

        result = backend.create_or_relock_snapshot(PROJECT_ID)

        assert result.is_success
        snapshot = result.value
        assert snapshot.snapshot_number == 1
        assert snapshot.status == SnapshotStatus.ACTIVE
        assert snapshot.unit_count == 3
        assert dict(snapshot.facts)[UNIT_DURATION] == 60
        assert snapshot.fact_hash == backend.resolve_qualifications(PROJECT_ID).value.resolver_hash

    def test_relock_supersedes_previous(self):
        backend = create_backend()
        register_series(backend)
        first = backend.create_or_relock_snapshot(PROJECT_ID).value
        second = backend.create_or_relock_snapshot(PROJECT_ID).value

        history = backend.list_snapshots(PROJECT_ID).value
        assert [s.snapshot_id for s in history] == [first.snapshot_id, second.snapshot_id]
        assert history[0].status == SnapshotStatus.SUPERSEDED
        assert history[0].superseded_by == second.snapshot_id
        assert history[0].superseded_at is not None
        assert backend.repository.active_snapshots(PROJECT_ID) == [second]
        assert second.snapshot_number == 2

    def test_missing_series_fact_blocks_with_no_writes(self):
        backend = create_backend()
        backend.register_project(PROJECT_ID, "Glass Harbor", format_subtype="vertical-drama",
                                 project_fields={UNIT_DURATION: 3, UNIT_COUNT: 3})

        result = backend.create_or_relock_snapshot(PROJECT_ID)

        assert result.is_failure
        assert result.error.code == ErrorCode.MISSING_REQUIRED_FACT
        assert result.error.context_value("fields") == UNIT_DURATION
        assert backend.list_snapshots(PROJECT_ID).value == ()

    def test_invalid_value_on_non_series(self):
        backend = create_backend()
        backend.register_project(PROJECT_ID, "Short", format_subtype="film",
                                 project_fields={UNIT_DURATION: 3})

        result = backend.create_or_relock_snapshot(PROJECT_ID)

        assert result.error.code == ErrorCode.INVALID_FACT_VALUE
        assert backend.list_snapshots(PROJECT_ID).value == ()

    def test_unknown_project(self):
        result = create_backend().create_or_relock_snapshot("nope")
        assert result.error.code == ErrorCode.PROJECT_NOT_FOUND

    def test_pins_latest_artifact_versions(self):
        backend = create_backend()
        register_series(backend)
        backend.record_artifact(PROJECT_ID, "format_rules", "Sixty second beats.")
        latest = backend.record_artifact(PROJECT_ID, "format_rules", "Ninety second beats.").value

        snapshot = backend.create_or_relock_snapshot(PROJECT_ID).value

        assert snapshot.pinned_version("format_rules") == latest.version_id
        assert snapshot.pinned_version("idea_brief") is None


class TestSnapshotValidity:

    def test_no_active_snapshot(self):
        backend = create_backend()
        register_series(backend)
        result = backend.snapshot_manager.require_valid_active(PROJECT_ID)
        assert result.error.code == ErrorCode.NO_ACTIVE_SNAPSHOT
        assert backend.create_units(PROJECT_ID).error.code == ErrorCode.NO_ACTIVE_SNAPSHOT

    def test_fact_change_makes_snapshot_stale(self):
        backend = prepared_backend()
        backend.update_qualifications(PROJECT_ID, project_fields={UNIT_DURATION: 90})

        result = backend.snapshot_manager.require_valid_active(PROJECT_ID)

        assert result.error.code == ErrorCode.SNAPSHOT_STALE
        assert backend.generate_unit(PROJECT_ID, 1).error.code == ErrorCode.SNAPSHOT_STALE

    def test_relock_rebinds_unlocked_units(self):
        backend = prepared_backend(count=3)
        generate_and_lock(backend, 1)
        locked_snapshot = unit(backend, 1).snapshot_id
        backend.update_qualifications(PROJECT_ID, project_fields={UNIT_DURATION: 90})
        assert unit(backend, 2).status == UnitStatus.INVALIDATED

        snapshot = backend.create_or_relock_snapshot(PROJECT_ID).value

        assert unit(backend, 1).snapshot_id == locked_snapshot
        assert unit(backend, 1).status == UnitStatus.LOCKED
        for index in (2, 3):
            rebound = unit(backend, index)
            assert rebound.snapshot_id == snapshot.snapshot_id
            assert rebound.status == UnitStatus.PENDING
            assert rebound.last_error is None

    def test_failing_hook_rolls_back_snapshot(self):
        backend = create_backend()
        register_series(backend)
        first = backend.create_or_relock_snapshot(PROJECT_ID).value

        def refuse(snapshot):
            raise WriteConflict(Error.create(ErrorCode.VERSION_CONFLICT, "lost race"))

        result = backend.snapshot_manager.create_snapshot(PROJECT_ID, on_activated=refuse)

        assert result.error.code == ErrorCode.VERSION_CONFLICT
        assert backend.list_snapshots(PROJECT_ID).value == (first,)
        assert backend.repository.get_active_snapshot(PROJECT_ID) == first

    def test_invalidation_conflict_rolls_back_fact_change(self, monkeypatch):
        backend = prepared_backend()
        before = backend.resolve_qualifications(PROJECT_ID).value

        def lose_race(project_id, current_hash):
            raise WriteConflict(Error.create(ErrorCode.VERSION_CONFLICT, "unit revision moved"))

        monkeypatch.setattr(backend.state_machine, "invalidate_stale_units", lose_race)
        result = backend.update_qualifications(PROJECT_ID, project_fields={UNIT_DURATION: 90})

        assert result.error.code == ErrorCode.VERSION_CONFLICT
        assert backend.resolve_qualifications(PROJECT_ID).value.resolver_hash == before.resolver_hash
        assert backend.snapshot_manager.require_valid_active(PROJECT_ID).is_success

    def test_relock_demotes_content_from_other_facts(self):
        backend = prepared_backend(count=3)
        generate_and_lock(backend, 1)
        backend.generate_unit(PROJECT_ID, 2)
        backend.update_qualifications(PROJECT_ID, project_fields={UNIT_DURATION: 90})
        backend.repository.update(unit(backend, 2), status=UnitStatus.COMPLETE, last_error=None)

        snapshot = backend.create_or_relock_snapshot(PROJECT_ID).value

        rebound = unit(backend, 2)
        assert rebound.snapshot_id == snapshot.snapshot_id
        assert rebound.status == UnitStatus.PENDING
        assert rebound.content_version_id is not None
        assert backend.lock_unit(PROJECT_ID, 2).error.code == ErrorCode.INVALID_STATE_TRANSITION
