"""
Unit Lifecycle Tests

INVARIANTS TESTED:
1. A unit generates only with a valid snapshot and a locked predecessor
2. Locking writes the lock event, continuity note and exports together
3. Failed generations land in error and are never retried implicitly
4. Exactly one season template at any time
5. Destructive operations require a reason or a confirmation token
6. Deleted units never bring content from other facts back into a lock
"""

import json

import pytest

from adapter import GenerationOutcome, PlaceholderAudit
from adapter.providers import MockProvider, ProviderErrorCode
from episode_engine import PipelineConfig
from episode_engine.context import ResolutionReason
from episode_engine.contracts.base import (
    ContentSource, ErrorCode, LockKind, RecordState, UnitStatus, derive_id,
)
from episode_engine.lifecycle import (
    NO_TEMPLATE, LifecycleConfig, can_transition, closing_line, tail_excerpt,
)
from episode_engine.qualifications import UNIT_DURATION
from episode_engine.storage import artifact_id_for

from .fixtures import (
    PROJECT_ID, content_of, create_backend, fixed_unit_responder, generate_and_lock,
    lock_through, prepared_backend, register_series, unit,
)


# =============================================================================
# GATING
# =============================================================================

class TestGenerationGating:

    def test_units_created_pending_and_bound(self):
        backend = prepared_backend(count=3)
        units = backend.list_units(PROJECT_ID).value
        snapshot = backend.repository.get_active_snapshot(PROJECT_ID)
        assert [u.index for u in units] == [1, 2, 3]
        assert all(u.status == UnitStatus.PENDING for u in units)
        assert all(u.snapshot_id == snapshot.snapshot_id for u in units)

    def test_create_units_is_idempotent(self):
        backend = prepared_backend(count=3)
        assert backend.create_units(PROJECT_ID).value == ()
        assert len(backend.create_units(PROJECT_ID, count=4).value) == 1

    def test_first_unit_generates_without_predecessor(self):
        backend = prepared_backend()
        result = backend.generate_unit(PROJECT_ID, 1)
        assert result.is_success
        assert result.value.unit.status == UnitStatus.COMPLETE
        assert result.value.unit.attempt_count == 1
        assert content_of(backend, 1).startswith("EPISODE 1: Episode 1")

    def test_successor_waits_for_locked_predecessor(self):
        backend = prepared_backend()
        assert backend.generate_unit(PROJECT_ID, 2).error.code == ErrorCode.PREDECESSOR_NOT_LOCKED

        backend.generate_unit(PROJECT_ID, 1)
        assert backend.generate_unit(PROJECT_ID, 2).error.code == ErrorCode.PREDECESSOR_NOT_LOCKED
        assert unit(backend, 2).status == UnitStatus.PENDING

        backend.lock_unit(PROJECT_ID, 1)
        assert backend.generate_unit(PROJECT_ID, 2).is_success

    def test_unknown_unit(self):
        backend = prepared_backend()
        assert backend.generate_unit(PROJECT_ID, 9).error.code == ErrorCode.UNIT_NOT_FOUND
        assert backend.get_unit(PROJECT_ID, 9).error.code == ErrorCode.UNIT_NOT_FOUND

    def test_locked_unit_never_regenerates(self):
        backend = prepared_backend()
        generate_and_lock(backend, 1)
        assert backend.generate_unit(PROJECT_ID, 1).error.code == ErrorCode.UNIT_LOCKED

    def test_transition_table(self):
        assert can_transition(UnitStatus.PENDING, UnitStatus.GENERATING)
        assert can_transition(UnitStatus.ERROR, UnitStatus.GENERATING)
        assert not can_transition(UnitStatus.PENDING, UnitStatus.LOCKED)
        assert not can_transition(UnitStatus.LOCKED, UnitStatus.GENERATING)
        assert not can_transition(UnitStatus.INVALIDATED, UnitStatus.GENERATING)


# =============================================================================
# LOCKING
# =============================================================================

class TestLocking:

    def test_lock_outcome(self):
        backend = prepared_backend()
        backend.generate_unit(PROJECT_ID, 1)

        outcome = backend.lock_unit(PROJECT_ID, 1).value

        assert outcome.unit.status == UnitStatus.LOCKED
        assert outcome.unit.locked_at is not None
        assert outcome.lock_event.kind == LockKind.LOCK
        assert outcome.lock_event.content_version_id == outcome.unit.content_version_id
        assert outcome.note.closing_line == "END OF EPISODE 1"
        assert outcome.template_prompt is not None
        assert outcome.exported_paths == (
            f"projects/{PROJECT_ID}/package/episodes/EP01/SCRIPT_LATEST.md",
            f"projects/{PROJECT_ID}/package/episodes/EP01/CONTINUITY_LEDGER.json",
            f"projects/{PROJECT_ID}/package/SEASON_BINDER.md",
        )

    def test_exports_carry_locked_content(self):
        backend = prepared_backend()
        lock_through(backend, 2)

        exports = {e.path: e for e in backend.list_exports(PROJECT_ID).value}
        script = exports[f"projects/{PROJECT_ID}/package/episodes/EP02/SCRIPT_LATEST.md"].content
        ledger = json.loads(exports[f"projects/{PROJECT_ID}/package/episodes/EP01/CONTINUITY_LEDGER.json"].content)
        binder = exports[f"projects/{PROJECT_ID}/package/SEASON_BINDER.md"].content

        assert script.startswith("# EP02: Episode 2")
        assert content_of(backend, 2).rstrip() in script
        assert ledger["closing_line"] == "END OF EPISODE 1"
        assert ledger["lock_kind"] == "lock"
        assert binder.index("## EP01") < binder.index("## EP02")
        assert len(exports) == 5

    def test_locked_at_never_changes(self):
        backend = prepared_backend()
        first = generate_and_lock(backend, 1)
        again = backend.lock_unit(PROJECT_ID, 1)
        assert again.error.code == ErrorCode.UNIT_LOCKED
        assert unit(backend, 1).locked_at == first.unit.locked_at

    def test_cannot_lock_without_content(self):
        backend = prepared_backend()
        assert backend.lock_unit(PROJECT_ID, 1).error.code == ErrorCode.INVALID_STATE_TRANSITION

    def test_needs_revision_is_lockable(self):
        provider = MockProvider(responder=fixed_unit_responder("Rough cut.", status="needs_revision"))
        backend = prepared_backend(provider=provider)

        report = backend.generate_unit(PROJECT_ID, 1).value

        assert report.unit.status == UnitStatus.NEEDS_REVISION
        assert report.outcome.needs_revision
        assert content_of(backend, 1) == "Rough cut."
        assert backend.lock_unit(PROJECT_ID, 1).is_success

    def test_audit_blockers_prevent_lock_until_revised(self):
        provider = MockProvider(responder=fixed_unit_responder("Cold open.\nCliffhanger TBD"))
        backend = prepared_backend(provider=provider, audit_gate=PlaceholderAudit())
        backend.generate_unit(PROJECT_ID, 1)

        blocked = backend.lock_unit(PROJECT_ID, 1)

        assert blocked.error.code == ErrorCode.AUDIT_BLOCKERS_PRESENT
        assert blocked.error.context_value("blockers") == "placeholder_token"
        assert unit(backend, 1).status == UnitStatus.COMPLETE
        assert backend.list_exports(PROJECT_ID).value == ()

        revised = backend.revise_unit(PROJECT_ID, 1, "Cold open.\nShe jumps.")
        assert revised.is_success
        version = backend.get_unit_content(PROJECT_ID, 1).value
        assert version.source == ContentSource.REVISION
        assert version.version_number == 2
        assert backend.lock_unit(PROJECT_ID, 1).is_success

    def test_revise_rules(self):
        backend = prepared_backend()
        assert backend.revise_unit(PROJECT_ID, 1, "text").error.code == ErrorCode.INVALID_STATE_TRANSITION
        backend.generate_unit(PROJECT_ID, 1)
        assert backend.revise_unit(PROJECT_ID, 1, "   ").error.code == ErrorCode.INVALID_ARGUMENT
        backend.lock_unit(PROJECT_ID, 1)
        assert backend.revise_unit(PROJECT_ID, 1, "text").error.code == ErrorCode.UNIT_LOCKED


# =============================================================================
# FAILURES AND RETRIES
# =============================================================================

class TestGenerationFailures:

    @pytest.mark.parametrize("code,retryable", [
        (ProviderErrorCode.TIMEOUT, "True"),
        (ProviderErrorCode.RATE_LIMITED, "True"),
        (ProviderErrorCode.CONTENT_FILTERED, "False"),
    ])
    def test_failure_moves_unit_to_error(self, code, retryable):
        provider = MockProvider(failure_mode=code)
        backend = prepared_backend(provider=provider)

        result = backend.generate_unit(PROJECT_ID, 1)

        assert result.error.code == ErrorCode.GENERATION_FAILED
        assert result.error.context_value("retryable") == retryable
        assert result.error.context_value("backend_code") == code.value
        failed = unit(backend, 1)
        assert failed.status == UnitStatus.ERROR
        assert failed.last_error.startswith(f"{code.value}:")
        assert failed.content_version_id is None
        assert provider.invocation_count == 1

    def test_retry_is_an_explicit_call(self):
        provider = MockProvider(scripted_failures=[ProviderErrorCode.TIMEOUT])
        backend = prepared_backend(provider=provider)

        assert backend.generate_unit(PROJECT_ID, 1).is_failure
        assert provider.invocation_count == 1

        retried = backend.generate_unit(PROJECT_ID, 1)
        assert retried.is_success
        assert retried.value.unit.attempt_count == 2
        assert retried.value.unit.last_error is None

    def test_regeneration_limit_resets_on_new_snapshot(self):
        config = PipelineConfig(lifecycle=LifecycleConfig(max_generation_attempts=2))
        backend = prepared_backend(config=config)
        backend.generate_unit(PROJECT_ID, 1)
        backend.generate_unit(PROJECT_ID, 1)

        limited = backend.generate_unit(PROJECT_ID, 1)
        assert limited.error.code == ErrorCode.REGENERATION_LIMIT_REACHED

        backend.create_or_relock_snapshot(PROJECT_ID)
        assert unit(backend, 1).attempt_count == 0
        assert backend.generate_unit(PROJECT_ID, 1).is_success

    def test_recover_stuck_generation(self):
        backend = prepared_backend()
        assert backend.recover_stuck_unit(PROJECT_ID, 1).error.code == ErrorCode.INVALID_STATE_TRANSITION
        backend.state_machine.begin_generation(PROJECT_ID, 1)
        assert backend.generate_unit(PROJECT_ID, 1).error.code == ErrorCode.INVALID_STATE_TRANSITION

        recovered = backend.recover_stuck_unit(PROJECT_ID, 1, reason="worker died")

        assert recovered.value.status == UnitStatus.ERROR
        assert recovered.value.last_error == "recovered: worker died"
        assert backend.generate_unit(PROJECT_ID, 1).is_success

    def test_completion_after_invalidation_is_discarded(self):
        backend = prepared_backend()
        started = backend.state_machine.begin_generation(PROJECT_ID, 1).value
        backend.update_qualifications(PROJECT_ID, project_fields={UNIT_DURATION: 90})
        assert unit(backend, 1).status == UnitStatus.INVALIDATED

        late = backend.state_machine.complete_generation(
            started, GenerationOutcome.success("req_late", "Late draft.")
        )

        assert late.error.code == ErrorCode.VERSION_CONFLICT
        assert unit(backend, 1).status == UnitStatus.INVALIDATED
        assert backend.repository.list_content_versions(PROJECT_ID) == []


# =============================================================================
# CONTINUITY AND CONTEXT
# =============================================================================

class TestContinuityAndContext:

    def test_previous_unit_tail_feeds_next_prompt(self):
        provider = MockProvider()
        backend = prepared_backend(provider=provider)
        generate_and_lock(backend, 1)

        backend.generate_unit(PROJECT_ID, 2)

        prompt = provider.prompts[-1]
        assert "Previous episode 1 ended with:" in prompt
        assert "END OF EPISODE 1" in prompt
        assert "Previously: END OF EPISODE 1" in content_of(backend, 2)

    def test_template_style_feeds_later_prompts(self):
        provider = MockProvider()
        backend = prepared_backend(provider=provider)
        generate_and_lock(backend, 1)
        backend.set_template(PROJECT_ID, 1)
        generate_and_lock(backend, 2)

        backend.generate_unit(PROJECT_ID, 3)

        assert "Match the style of episode 1 (Episode 1)." in provider.prompts[-1]
        assert "Previous episode 2 ended with:" in provider.prompts[-1]

    def test_facts_rendered_in_prompt(self):
        provider = MockProvider()
        backend = prepared_backend(provider=provider, duration=75)
        backend.generate_unit(PROJECT_ID, 1)
        assert f"- {UNIT_DURATION}: 75" in provider.prompts[-1]

    def test_pinned_artifacts_are_fallback_context(self):
        provider = MockProvider()
        backend = create_backend(provider=provider)
        register_series(backend)
        backend.record_artifact(PROJECT_ID, "format_rules", "Format rules v1")
        backend.create_or_relock_snapshot(PROJECT_ID)
        backend.create_units(PROJECT_ID)

        report = backend.generate_unit(PROJECT_ID, 1).value

        assert report.context.reason == ResolutionReason.FALLBACK
        assert "## format_rules\nFormat rules v1" in provider.prompts[-1]

    def test_context_set_selects_artifacts_with_pinned_versions(self):
        provider = MockProvider()
        backend = create_backend(provider=provider)
        register_series(backend)
        backend.record_artifact(PROJECT_ID, "format_rules", "Format rules v1")
        backend.create_or_relock_snapshot(PROJECT_ID)
        backend.create_units(PROJECT_ID)
        backend.record_artifact(PROJECT_ID, "format_rules", "Format rules v2")
        backend.record_artifact(PROJECT_ID, "idea_brief", "A lighthouse keeper lies.")
        context_set = backend.define_context_set(
            PROJECT_ID, "writers room",
            [artifact_id_for(PROJECT_ID, "idea_brief"), artifact_id_for(PROJECT_ID, "format_rules")],
        ).value

        report = backend.generate_unit(PROJECT_ID, 1).value

        prompt = provider.prompts[-1]
        assert report.context.reason == ResolutionReason.CONTEXT_SET_DEFAULT
        assert report.context.context_set_id == context_set.set_id
        assert prompt.index("## idea_brief") < prompt.index("## format_rules")
        assert "Format rules v1" in prompt
        assert "Format rules v2" not in prompt

    def test_context_set_rejects_unknown_artifacts(self):
        backend = prepared_backend()
        result = backend.define_context_set(PROJECT_ID, "bad", ["art_missing"])
        assert result.error.code == ErrorCode.ARTIFACT_NOT_FOUND

    def test_closing_line_and_tail(self):
        assert closing_line("one\ntwo\n\n  ") == "two"
        assert closing_line("") == ""
        text = "alpha\nbravo\ncharlie"
        assert tail_excerpt(text, 100) == text
        assert tail_excerpt(text, 9) == "charlie"


# =============================================================================
# TEMPLATE
# =============================================================================

class TestSeasonTemplate:

    def test_template_requires_lock(self):
        backend = prepared_backend()
        backend.generate_unit(PROJECT_ID, 1)
        assert backend.set_template(PROJECT_ID, 1).error.code == ErrorCode.UNIT_NOT_LOCKED

    def test_template_moves_atomically(self):
        backend = prepared_backend()
        lock_through(backend, 2)
        assert backend.set_template(PROJECT_ID, 1, expected_current=NO_TEMPLATE).is_success

        stale = backend.set_template(PROJECT_ID, 2, expected_current=NO_TEMPLATE)
        assert stale.error.code == ErrorCode.TEMPLATE_ALREADY_SET
        assert stale.error.context_value("current") == "1"

        assert backend.set_template(PROJECT_ID, 2, expected_current=1).is_success
        templates = [u.index for u in backend.list_units(PROJECT_ID).value if u.is_season_template]
        assert templates == [2]
        assert backend.state_machine.get_template(PROJECT_ID).index == 2

    def test_setting_same_template_twice_is_stable(self):
        backend = prepared_backend()
        generate_and_lock(backend, 1)
        backend.set_template(PROJECT_ID, 1)
        assert backend.set_template(PROJECT_ID, 1).is_success
        assert unit(backend, 1).is_season_template


# =============================================================================
# DELETION
# =============================================================================

class TestDeletion:

    def test_soft_delete_and_restore(self):
        backend = prepared_backend()
        deleted = backend.soft_delete_unit(PROJECT_ID, 3)
        assert deleted.value.record_state == RecordState.SOFT_DELETED
        assert [u.index for u in backend.list_units(PROJECT_ID).value] == [1, 2]
        assert len(backend.list_units(PROJECT_ID, include_deleted=True).value) == 3
        assert backend.lock_unit(PROJECT_ID, 3).error.code == ErrorCode.UNIT_DELETED

        restored = backend.restore_unit(PROJECT_ID, 3)
        assert restored.value.is_active
        assert backend.restore_unit(PROJECT_ID, 3).error.code == ErrorCode.INVALID_STATE_TRANSITION

    def test_locked_unit_needs_reason(self):
        backend = prepared_backend()
        generate_and_lock(backend, 1)
        backend.set_template(PROJECT_ID, 1)
        assert backend.soft_delete_unit(PROJECT_ID, 1).error.code == ErrorCode.REASON_REQUIRED

        deleted = backend.soft_delete_unit(PROJECT_ID, 1, reason="cut for time").value
        assert deleted.deleted_reason == "cut for time"
        assert not deleted.is_season_template

    def test_generating_unit_cannot_be_deleted(self):
        backend = prepared_backend()
        backend.state_machine.begin_generation(PROJECT_ID, 1)
        assert backend.soft_delete_unit(PROJECT_ID, 1).error.code == ErrorCode.INVALID_STATE_TRANSITION

    def test_hard_delete_requires_soft_delete_and_token(self):
        backend = prepared_backend()
        locked = generate_and_lock(backend, 1)
        assert backend.request_hard_delete(PROJECT_ID, 1).error.code == ErrorCode.INVALID_STATE_TRANSITION

        backend.soft_delete_unit(PROJECT_ID, 1, reason="rewrite")
        challenge = backend.request_hard_delete(PROJECT_ID, 1).value
        assert backend.hard_delete_unit(PROJECT_ID, 1, None).error.code == ErrorCode.CONFIRMATION_REQUIRED
        assert backend.hard_delete_unit(PROJECT_ID, 1, "purge_wrong").error.code == ErrorCode.CONFIRMATION_REQUIRED

        purged = backend.hard_delete_unit(PROJECT_ID, 1, challenge.confirmation_token)

        assert purged.value == locked.unit.unit_id
        assert unit(backend, 1) is None
        assert backend.repository.list_content_versions(PROJECT_ID, locked.unit.unit_id) == []
        assert backend.repository.list_continuity_notes(PROJECT_ID, locked.unit.unit_id) == []
        assert backend.repository.list_lock_events(PROJECT_ID, locked.unit.unit_id) == [locked.lock_event]

    def test_restore_voids_token(self):
        backend = prepared_backend()
        backend.soft_delete_unit(PROJECT_ID, 2)
        token = backend.request_hard_delete(PROJECT_ID, 2).value.confirmation_token
        backend.restore_unit(PROJECT_ID, 2)
        backend.soft_delete_unit(PROJECT_ID, 2)

        result = backend.hard_delete_unit(PROJECT_ID, 2, token)

        assert result.error.code == ErrorCode.CONFIRMATION_REQUIRED
        assert unit(backend, 2) is not None

    def test_token_cannot_be_derived_from_unit(self):
        backend = prepared_backend()
        deleted = backend.soft_delete_unit(PROJECT_ID, 2).value
        forged = derive_id("purge", deleted.unit_id, deleted.revision, length=12)
        assert backend.hard_delete_unit(PROJECT_ID, 2, forged).error.code == ErrorCode.CONFIRMATION_REQUIRED

        first = backend.request_hard_delete(PROJECT_ID, 2).value.confirmation_token
        second = backend.request_hard_delete(PROJECT_ID, 2).value.confirmation_token

        assert first != second
        assert unit(backend, 2).purge_token_hash not in (None, second)
        assert backend.hard_delete_unit(PROJECT_ID, 2, first).error.code == ErrorCode.CONFIRMATION_REQUIRED
        assert backend.hard_delete_unit(PROJECT_ID, 2, second).is_success

    def test_deleted_unit_cannot_carry_stale_content_into_a_lock(self):
        backend = prepared_backend(count=3)
        generate_and_lock(backend, 1)
        backend.generate_unit(PROJECT_ID, 2)
        backend.soft_delete_unit(PROJECT_ID, 2)

        change = backend.update_qualifications(PROJECT_ID, project_fields={UNIT_DURATION: 90}).value
        assert change.invalidated_indices == (2, 3)

        restored = backend.restore_unit(PROJECT_ID, 2).value
        assert restored.status == UnitStatus.INVALIDATED
        backend.create_or_relock_snapshot(PROJECT_ID)

        assert unit(backend, 2).status == UnitStatus.PENDING
        assert backend.lock_unit(PROJECT_ID, 2).error.code == ErrorCode.INVALID_STATE_TRANSITION
        assert backend.generate_unit(PROJECT_ID, 2).is_success
        assert backend.lock_unit(PROJECT_ID, 2).is_success

    def test_restore_after_resnapshot_invalidates_stale_content(self):
        backend = prepared_backend(count=3)
        generate_and_lock(backend, 1)
        backend.generate_unit(PROJECT_ID, 2)
        backend.soft_delete_unit(PROJECT_ID, 2)
        backend.update_qualifications(PROJECT_ID, project_fields={UNIT_DURATION: 90})
        backend.repository.update(unit(backend, 2), status=UnitStatus.COMPLETE, last_error=None)
        backend.create_or_relock_snapshot(PROJECT_ID)

        restored = backend.restore_unit(PROJECT_ID, 2).value

        assert restored.status == UnitStatus.INVALIDATED
        assert backend.lock_unit(PROJECT_ID, 2).error.code == ErrorCode.INVALID_STATE_TRANSITION
