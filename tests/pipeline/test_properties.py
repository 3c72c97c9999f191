"""
Property-Based Invariant Tests

Random operator command sequences against a fresh backend per example.
Rejected commands are expected; the invariants must hold after every
command either way.
"""

from hypothesis import given, settings, strategies as st

from episode_engine.contracts.base import UnitStatus
from episode_engine.qualifications import UNIT_DURATION

from .fixtures import PROJECT_ID, lock_through, prepared_backend


UNIT_COMMANDS = st.lists(
    st.tuples(st.sampled_from(["generate", "lock", "revise"]), st.integers(1, 4)),
    max_size=15,
)

PROPERTY_SETTINGS = settings(max_examples=25, deadline=None)


def run_unit_command(backend, command, index):
    if command == "generate":
        return backend.generate_unit(PROJECT_ID, index)
    if command == "lock":
        return backend.lock_unit(PROJECT_ID, index)
    return backend.revise_unit(PROJECT_ID, index, f"Operator draft for episode {index}.")


class TestLifecycleProperties:

    @PROPERTY_SETTINGS
    @given(UNIT_COMMANDS)
    def test_locked_units_form_a_prefix(self, commands):
        backend = prepared_backend(count=4)
        for command, index in commands:
            run_unit_command(backend, command, index)
            locked = [u.index for u in backend.list_units(PROJECT_ID).value if u.is_locked]
            assert locked == list(range(1, len(locked) + 1))

    @PROPERTY_SETTINGS
    @given(UNIT_COMMANDS)
    def test_locked_content_never_changes(self, commands):
        backend = prepared_backend(count=4)
        lock_through(backend, 2)
        before = {u.index: (u.content_version_id, u.locked_at) for u in backend.list_units(PROJECT_ID).value
                  if u.is_locked}

        for command, index in commands:
            run_unit_command(backend, command, index)

        after = {u.index: (u.content_version_id, u.locked_at) for u in backend.list_units(PROJECT_ID).value
                 if u.index in before}
        assert after == before
        assert all(backend.repository.get_unit(PROJECT_ID, i).status == UnitStatus.LOCKED for i in before)

    @PROPERTY_SETTINGS
    @given(st.lists(st.tuples(st.integers(1, 3), st.sampled_from([None, 0, 1, 2, 3])), max_size=10))
    def test_at_most_one_template(self, moves):
        backend = prepared_backend(count=3)
        lock_through(backend, 3)
        for index, expected in moves:
            result = backend.set_template(PROJECT_ID, index, expected_current=expected)
            templates = [u.index for u in backend.list_units(PROJECT_ID).value if u.is_season_template]
            assert len(templates) <= 1
            if result.is_success:
                assert templates == [index]


class TestSnapshotProperties:

    @PROPERTY_SETTINGS
    @given(st.lists(st.one_of(st.just("relock"), st.sampled_from([30, 60, 90, 120])), max_size=10))
    def test_exactly_one_active_snapshot(self, commands):
        backend = prepared_backend(count=2)
        for command in commands:
            if command == "relock":
                backend.create_or_relock_snapshot(PROJECT_ID)
            else:
                backend.update_qualifications(PROJECT_ID, project_fields={UNIT_DURATION: command})
            assert len(backend.repository.active_snapshots(PROJECT_ID)) == 1

        numbers = [s.snapshot_number for s in backend.list_snapshots(PROJECT_ID).value]
        assert numbers == list(range(1, len(numbers) + 1))
