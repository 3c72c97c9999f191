"""
Qualification Resolver Tests

INVARIANTS TESTED:
1. Precedence: project > overrides > guardrails > format defaults
2. Zero and None are absent at every layer
3. Resolution is total: bad values become warnings or errors, never raises
4. Same facts -> same resolver hash, whatever the key order
"""

import pytest
from hypothesis import given, settings, strategies as st

from episode_engine.qualifications import (
    FORMAT, IS_SERIES, RUNTIME_HIGH, RUNTIME_LOW, SEASON_RUNTIME, UNIT_COUNT,
    UNIT_DURATION, QualificationInput, changed_fact_keys, compute_resolver_hash,
    compute_scoped_hash, normalize_format, resolve,
)
from episode_engine.qualifications.resolver import (
    LAYERED_FIELDS, REQUIRED_FOR_SERIES, SOURCE_DEFAULTS, SOURCE_GUARDRAILS,
    SOURCE_OVERRIDES, SOURCE_PROJECT,
)


def resolve_mappings(fmt="vertical-drama", project=None, overrides=None, guardrails=None):
    return resolve(QualificationInput.from_mappings(
        project_id="p1",
        format_subtype=fmt,
        project_fields=project,
        overrides={"qualifications": overrides or {}},
        guardrails_config={"overrides": {"qualifications": guardrails or {}}},
    ))


# =============================================================================
# PRECEDENCE
# =============================================================================

class TestPrecedence:

    def test_project_values_win(self):
        result = resolve_mappings(
            project={UNIT_DURATION: 60, UNIT_COUNT: 3},
            overrides={UNIT_DURATION: 90},
            guardrails={UNIT_DURATION: 120},
        )
        assert result.fact(UNIT_DURATION) == 60
        assert result.source(UNIT_DURATION) == SOURCE_PROJECT
        assert result.fact(SEASON_RUNTIME) == 180
        assert result.fact(IS_SERIES) is True
        assert not result.has_errors

    def test_zero_project_value_falls_through_to_override(self):
        result = resolve_mappings(project={UNIT_DURATION: 0}, overrides={UNIT_DURATION: 90})
        assert result.fact(UNIT_DURATION) == 90
        assert result.source(UNIT_DURATION) == SOURCE_OVERRIDES

    def test_guardrail_used_when_upper_layers_absent(self):
        result = resolve_mappings(project={UNIT_COUNT: None}, guardrails={UNIT_COUNT: 12})
        assert result.fact(UNIT_COUNT) == 12
        assert result.source(UNIT_COUNT) == SOURCE_GUARDRAILS

    def test_format_defaults_with_warning(self):
        result = resolve_mappings(fmt="tv-series")
        assert result.fact(UNIT_DURATION) == 2700
        assert result.fact(UNIT_COUNT) == 10
        assert result.source(UNIT_COUNT) == SOURCE_DEFAULTS
        assert any(w.field == UNIT_COUNT and "default" in w.message for w in result.warnings)

    def test_film_runtime_defaults(self):
        result = resolve_mappings(fmt="film")
        assert result.fact(IS_SERIES) is False
        assert result.fact(RUNTIME_LOW) == 85
        assert result.fact(RUNTIME_HIGH) == 110
        assert result.fact(UNIT_COUNT) is None
        assert result.fact(SEASON_RUNTIME) is None
        assert not result.has_errors


# =============================================================================
# VALUE HANDLING
# =============================================================================

class TestValueHandling:

    @pytest.mark.parametrize("raw,expected", [
        ("60.5", 61),
        (59.5, 60),
        (" 45 ", 45),
        (44.4, 44),
    ])
    def test_numeric_strings_and_rounding(self, raw, expected):
        result = resolve_mappings(project={UNIT_DURATION: raw, UNIT_COUNT: 3})
        assert result.fact(UNIT_DURATION) == expected

    def test_non_numeric_value_is_ignored_with_warning(self):
        result = resolve_mappings(project={UNIT_DURATION: "a minute", UNIT_COUNT: 3})
        assert result.fact(UNIT_DURATION) == 60
        assert result.source(UNIT_DURATION) == SOURCE_DEFAULTS
        assert any("non-numeric" in w.message for w in result.warnings)

    def test_boolean_is_not_a_number(self):
        result = resolve_mappings(project={UNIT_COUNT: True})
        assert result.source(UNIT_COUNT) == SOURCE_DEFAULTS

    def test_duration_below_minimum_is_an_error(self):
        result = resolve_mappings(project={UNIT_DURATION: 3, UNIT_COUNT: 3})
        assert result.fact(UNIT_DURATION) is None
        messages = [e.message for e in result.errors if e.field == UNIT_DURATION]
        assert REQUIRED_FOR_SERIES in messages
        assert any(m.startswith("Must be >= 5s") for m in messages)

    def test_non_series_invalid_duration_is_not_required(self):
        result = resolve_mappings(fmt="film", project={UNIT_DURATION: 2})
        assert [e.message for e in result.errors] == ["Must be >= 5s, got 2"]

    def test_negative_count_is_an_error(self):
        result = resolve_mappings(project={UNIT_DURATION: 60, UNIT_COUNT: -4})
        assert result.fact(UNIT_COUNT) is None
        assert any(e.field == UNIT_COUNT for e in result.errors)

    @pytest.mark.parametrize("raw,expected", [
        ("Vertical_Drama", "vertical-drama"),
        ("tv series", "tv-series"),
        (None, "film"),
    ])
    def test_format_normalization(self, raw, expected):
        assert normalize_format(raw) == expected

    def test_format_from_project_fields(self):
        result = resolve(QualificationInput.from_mappings(project_fields={FORMAT: "limited_series"}))
        assert result.fact(FORMAT) == "limited-series"
        assert result.fact(UNIT_COUNT) == 8


# =============================================================================
# HASHING
# =============================================================================

class TestHashing:

    def test_hash_ignores_key_order(self):
        assert compute_resolver_hash({"a": 1, "b": 2}) == compute_resolver_hash({"b": 2, "a": 1})

    def test_hash_carries_resolver_version(self):
        assert compute_resolver_hash({"a": 1}).startswith("qr-1-")
        assert compute_scoped_hash({"a": 1}, ["a"]).startswith("qs-1-")

    def test_scoped_hash_ignores_unrelated_keys(self):
        before = {UNIT_DURATION: 60, UNIT_COUNT: 3}
        after = {UNIT_DURATION: 60, UNIT_COUNT: 8}
        assert compute_scoped_hash(before, [UNIT_DURATION]) == compute_scoped_hash(after, [UNIT_DURATION])
        assert compute_scoped_hash(before, [UNIT_COUNT]) != compute_scoped_hash(after, [UNIT_COUNT])

    def test_changed_fact_keys(self):
        old = resolve_mappings(project={UNIT_DURATION: 60, UNIT_COUNT: 3})
        new = resolve_mappings(project={UNIT_DURATION: 90, UNIT_COUNT: 3})
        assert changed_fact_keys(old.facts, new.facts) == frozenset({UNIT_DURATION, SEASON_RUNTIME})

    def test_facts_are_sorted(self):
        result = resolve_mappings(project={UNIT_DURATION: 60, UNIT_COUNT: 3})
        keys = [k for k, _ in result.facts]
        assert keys == sorted(keys)


# =============================================================================
# PROPERTIES
# =============================================================================

layer_values = st.one_of(
    st.none(),
    st.integers(min_value=-10, max_value=100000),
    st.floats(allow_nan=True, allow_infinity=True),
    st.text(max_size=8),
    st.booleans(),
)
layers = st.dictionaries(st.sampled_from(LAYERED_FIELDS), layer_values, max_size=4)
formats = st.sampled_from(["vertical-drama", "tv-series", "film", "short_film", "reality", "unknown"])


class TestResolverProperties:

    @given(fmt=formats, project=layers, overrides=layers, guardrails=layers)
    @settings(max_examples=200)
    def test_resolution_is_total_and_deterministic(self, fmt, project, overrides, guardrails):
        first = resolve_mappings(fmt, project, overrides, guardrails)
        second = resolve_mappings(fmt, dict(reversed(list(project.items()))), overrides, guardrails)
        assert first == second
        assert first.resolver_hash == compute_resolver_hash(first.facts)

    @given(fmt=formats, project=layers)
    def test_series_facts_are_complete_or_errors_explain_why(self, fmt, project):
        result = resolve_mappings(fmt, project)
        if result.fact(IS_SERIES):
            for key in (UNIT_DURATION, UNIT_COUNT):
                if result.fact(key) is None:
                    assert any(e.field == key for e in result.errors)
