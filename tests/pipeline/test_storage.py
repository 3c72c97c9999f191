"""
Storage Layer Tests

Both backends run the same checks: sequence stamping, conditional
writes, rollback of failed atomic sections and record fidelity.
"""

import pytest

from episode_engine.contracts.base import (
    BatchStatus, ErrorCode, RecordState, Timestamp, UnitStatus,
)
from episode_engine.contracts.events import BatchCursor, BatchPolicy, ProjectRecord, Unit
from episode_engine.storage import (
    InMemoryStorageBackend, PipelineRepository, SQLiteStorageBackend, StorageConfig,
    WriteConflict, create_backend, unit_id_for,
)


@pytest.fixture(params=["memory", "sqlite"])
def repository(request, tmp_path):
    if request.param == "memory":
        backend = InMemoryStorageBackend()
    else:
        backend = SQLiteStorageBackend(str(tmp_path / "pipeline.db"))
    yield PipelineRepository(backend)
    backend.close()


def make_unit(index, project_id="p1", **changes):
    return Unit(
        unit_id=unit_id_for(project_id, index),
        project_id=project_id,
        index=index,
        title=f"Episode {index}",
        **changes
    )


class TestRepositoryWrites:

    def test_add_stamps_increasing_sequence(self, repository):
        first = repository.add(make_unit(2))
        second = repository.add(make_unit(1))
        assert second.sequence > first.sequence
        assert [u.index for u in repository.list_units("p1")] == [1, 2]

    def test_duplicate_insert_conflicts(self, repository):
        repository.add(make_unit(1))
        with pytest.raises(WriteConflict) as info:
            repository.add(make_unit(1))
        assert info.value.error.code == ErrorCode.VERSION_CONFLICT

    def test_update_bumps_revision(self, repository):
        stored = repository.add(make_unit(1))
        updated = repository.update(stored, status=UnitStatus.COMPLETE)
        assert updated.revision == stored.revision + 1
        assert updated.sequence == stored.sequence
        assert repository.get_unit("p1", 1).status == UnitStatus.COMPLETE

    def test_stale_update_conflicts(self, repository):
        stored = repository.add(make_unit(1))
        repository.update(stored, status=UnitStatus.GENERATING)
        with pytest.raises(WriteConflict) as info:
            repository.update(stored, status=UnitStatus.ERROR)
        assert info.value.error.code == ErrorCode.VERSION_CONFLICT
        assert repository.get_unit("p1", 1).status == UnitStatus.GENERATING

    def test_failed_atomic_section_rolls_back(self, repository):
        stored = repository.add(make_unit(1))
        with pytest.raises(WriteConflict):
            with repository.atomic():
                repository.update(stored, status=UnitStatus.GENERATING)
                repository.add(make_unit(2))
                repository.update(stored, status=UnitStatus.ERROR)
        assert repository.get_unit("p1", 1).status == UnitStatus.PENDING
        assert repository.get_unit("p1", 2) is None

    def test_list_units_hides_soft_deleted(self, repository):
        repository.add(make_unit(1))
        repository.add(make_unit(2, record_state=RecordState.SOFT_DELETED))
        assert [u.index for u in repository.list_units("p1")] == [1]
        assert [u.index for u in repository.list_units("p1", include_deleted=True)] == [1, 2]

    def test_delete(self, repository):
        stored = repository.add(make_unit(1))
        assert repository.delete(stored)
        assert repository.get_unit("p1", 1) is None
        assert not repository.delete(stored)

    def test_exports_are_overwritten_in_place(self, repository):
        first = repository.write_export("p1", "projects/p1/package/a.md", "one")
        second = repository.write_export("p1", "projects/p1/package/a.md", "two")
        assert second.sequence == first.sequence
        assert repository.get_export("projects/p1/package/a.md").content == "two"
        assert len(repository.list_exports("p1")) == 1


class TestRecordFidelity:

    def test_unit_round_trip(self, repository):
        stored = repository.add(make_unit(
            3,
            status=UnitStatus.LOCKED,
            locked_at=Timestamp.now(),
            is_season_template=True,
            last_error="GENERATION_FAILED: boom",
        ))
        assert repository.get_unit("p1", 3) == stored

    def test_batch_cursor_round_trip(self, repository):
        stored = repository.add(BatchCursor(
            batch_id="batch_1",
            project_id="p1",
            from_index=2,
            next_index=4,
            policy=BatchPolicy(max_units_per_tick=2, auto_lock=True),
            status=BatchStatus.AWAITING_LOCK,
            created_at=Timestamp.now(),
        ))
        loaded = repository.get_batch("batch_1")
        assert loaded == stored
        assert loaded.policy.auto_lock is True
        assert repository.live_batch("p1") == stored

    def test_project_fact_pairs_round_trip(self, repository):
        stored = repository.add(ProjectRecord(
            project_id="p1",
            title="Glass Harbor",
            format_subtype="vertical-drama",
            project_fields=(("format", "vertical-drama"), ("season_unit_count", 3)),
        ))
        assert repository.get_project("p1") == stored


class TestSQLitePersistence:

    def test_records_and_sequence_survive_reopen(self, tmp_path):
        path = str(tmp_path / "state" / "pipeline.db")
        first = PipelineRepository(SQLiteStorageBackend(path))
        stored = first.add(make_unit(1))
        first.backend.close()

        second = PipelineRepository(SQLiteStorageBackend(path))
        assert second.get_unit("p1", 1) == stored
        assert second.add(make_unit(2)).sequence > stored.sequence
        second.backend.close()


class TestCreateBackend:

    def test_memory_default(self):
        assert isinstance(create_backend(), InMemoryStorageBackend)

    def test_sqlite_requires_path(self):
        with pytest.raises(ValueError):
            create_backend(StorageConfig(backend_type="sqlite"))

    def test_unknown_type(self):
        with pytest.raises(ValueError):
            create_backend(StorageConfig(backend_type="redis"))
