"""
Qualification Resolver

Pure, total resolution of a project's layered values into the canonical
qualification fact set and its resolver hash.

RESOLUTION PRECEDENCE (per field):
==================================
1. project explicit values
2. explicit overrides
3. guardrail overrides
4. per-format defaults

Zero and None count as absent at every layer. Invalid values never
raise; they become error entries in the result and a None fact.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple
import hashlib
import json
import math
import re

from ..contracts.events import FactPairs, FactValue, ProjectRecord


RESOLVER_VERSION = 1

MIN_DURATION_SECONDS = 5

# Canonical fact keys
UNIT_DURATION = "unit_target_duration_seconds"
UNIT_COUNT = "season_unit_count"
SEASON_RUNTIME = "season_target_runtime_seconds"
RUNTIME_LOW = "target_runtime_min_low"
RUNTIME_HIGH = "target_runtime_min_high"
FORMAT = "format"
IS_SERIES = "is_series"

FACT_KEYS: FrozenSet[str] = frozenset({
    UNIT_DURATION, UNIT_COUNT, SEASON_RUNTIME,
    RUNTIME_LOW, RUNTIME_HIGH, FORMAT, IS_SERIES,
})

# Fields that are resolved through the precedence layers
LAYERED_FIELDS: Tuple[str, ...] = (UNIT_DURATION, UNIT_COUNT, RUNTIME_LOW, RUNTIME_HIGH)

FORMAT_DEFAULTS: Dict[str, Dict[str, int]] = {
    "vertical-drama":     {UNIT_DURATION: 60, UNIT_COUNT: 30},
    "limited-series":     {UNIT_DURATION: 3300, UNIT_COUNT: 8},
    "tv-series":          {UNIT_DURATION: 2700, UNIT_COUNT: 10},
    "anim-series":        {UNIT_DURATION: 1320, UNIT_COUNT: 10},
    "documentary-series": {UNIT_DURATION: 2700, UNIT_COUNT: 6},
    "digital-series":     {UNIT_DURATION: 600, UNIT_COUNT: 10},
    "reality":            {UNIT_DURATION: 2700, UNIT_COUNT: 10},
    "film":               {RUNTIME_LOW: 85, RUNTIME_HIGH: 110},
    "anim-feature":       {RUNTIME_LOW: 80, RUNTIME_HIGH: 100},
    "short-film":         {RUNTIME_LOW: 5, RUNTIME_HIGH: 20},
}

SERIES_FORMATS: FrozenSet[str] = frozenset({
    "vertical-drama", "tv-series", "limited-series",
    "anim-series", "documentary-series", "digital-series", "reality",
})

SOURCE_PROJECT = "project"
SOURCE_OVERRIDES = "overrides"
SOURCE_GUARDRAILS = "guardrails"
SOURCE_DEFAULTS = "defaults"

REQUIRED_FOR_SERIES = "Required for series format"


# =============================================================================
# INPUT AND OUTPUT TYPES
# =============================================================================

@dataclass(frozen=True)
class QualificationInput:
    """Immutable snapshot of the project state the resolver reads."""
    project_id: str = ""
    production_type: Optional[str] = None
    format_subtype: Optional[str] = None
    project_fields: FactPairs = field(default_factory=tuple)
    override_fields: FactPairs = field(default_factory=tuple)
    guardrail_fields: FactPairs = field(default_factory=tuple)

    @staticmethod
    def from_mappings(
        project_id: str = "",
        production_type: Optional[str] = None,
        format_subtype: Optional[str] = None,
        project_fields: Optional[Mapping[str, FactValue]] = None,
        overrides: Optional[Mapping[str, object]] = None,
        guardrails_config: Optional[Mapping[str, object]] = None,
    ) -> QualificationInput:
        """
        Build input from plain mappings.

        overrides is {"qualifications": {...}}; guardrails_config carries
        its values under overrides.qualifications.
        """
        override_quals = (overrides or {}).get("qualifications") or {}
        guardrail_overrides = (guardrails_config or {}).get("overrides") or {}
        guardrail_quals = guardrail_overrides.get("qualifications") or {}
        return QualificationInput(
            project_id=project_id,
            production_type=production_type,
            format_subtype=format_subtype,
            project_fields=_to_pairs(project_fields or {}),
            override_fields=_to_pairs(override_quals),
            guardrail_fields=_to_pairs(guardrail_quals),
        )

    @staticmethod
    def from_project(project: ProjectRecord) -> QualificationInput:
        return QualificationInput(
            project_id=project.project_id,
            production_type=project.production_type,
            format_subtype=project.format_subtype,
            project_fields=project.project_fields,
            override_fields=project.override_fields,
            guardrail_fields=project.guardrail_fields,
        )


@dataclass(frozen=True)
class QualificationIssue:
    """A warning or error attached to one field."""
    field: str
    message: str


@dataclass(frozen=True)
class ResolveResult:
    """
    Output of a resolution.

    GUARANTEES:
    - facts is sorted by key
    - resolver_hash depends only on facts, never on key order
    """
    facts: FactPairs
    sources: Tuple[Tuple[str, Optional[str]], ...]
    warnings: Tuple[QualificationIssue, ...]
    errors: Tuple[QualificationIssue, ...]
    resolver_version: int
    resolver_hash: str

    def fact(self, key: str) -> FactValue:
        for k, v in self.facts:
            if k == key:
                return v
        return None

    def facts_dict(self) -> Dict[str, FactValue]:
        return dict(self.facts)

    def source(self, key: str) -> Optional[str]:
        return dict(self.sources).get(key)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    def scoped_hash(self, keys: Iterable[str]) -> str:
        return compute_scoped_hash(self.facts, keys)


# =============================================================================
# HASHING
# =============================================================================

def canonical_json(facts: Mapping[str, FactValue]) -> str:
    """Canonical serialization: sorted keys, fixed separators."""
    return json.dumps(dict(facts), sort_keys=True, separators=(",", ":"))


def compute_resolver_hash(facts: Mapping[str, FactValue] | FactPairs) -> str:
    """Hash of the full fact set. Key order never affects the result."""
    mapping = dict(facts)
    digest = hashlib.sha256(canonical_json(mapping).encode("utf-8")).hexdigest()
    return f"qr-{RESOLVER_VERSION}-{digest[:16]}"


def compute_scoped_hash(facts: Mapping[str, FactValue] | FactPairs, keys: Iterable[str]) -> str:
    """Hash over a subset of fact keys (absent keys hash as None)."""
    mapping = dict(facts)
    scoped = {key: mapping.get(key) for key in sorted(set(keys))}
    digest = hashlib.sha256(canonical_json(scoped).encode("utf-8")).hexdigest()
    return f"qs-{RESOLVER_VERSION}-{digest[:16]}"


def changed_fact_keys(
    old: Mapping[str, FactValue] | FactPairs,
    new: Mapping[str, FactValue] | FactPairs
) -> FrozenSet[str]:
    """Keys whose values differ between two fact sets."""
    old_map, new_map = dict(old), dict(new)
    keys = set(old_map) | set(new_map)
    return frozenset(k for k in keys if old_map.get(k) != new_map.get(k))


# =============================================================================
# RESOLUTION
# =============================================================================

def normalize_format(raw: Optional[str]) -> str:
    return re.sub(r"[_ ]+", "-", (raw or "film").lower())


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def resolve(qualification_input: QualificationInput) -> ResolveResult:
    """
    Resolve the canonical fact set.

    Total and pure: never raises, never reads anything but its input.
    """
    warnings: List[QualificationIssue] = []
    errors: List[QualificationIssue] = []

    layers = (
        (SOURCE_PROJECT, dict(qualification_input.project_fields)),
        (SOURCE_OVERRIDES, dict(qualification_input.override_fields)),
        (SOURCE_GUARDRAILS, dict(qualification_input.guardrail_fields)),
    )

    raw_format = (
        qualification_input.format_subtype
        or _as_str(layers[0][1].get(FORMAT))
        or qualification_input.production_type
        or "film"
    )
    fmt = normalize_format(raw_format)
    is_series = fmt in SERIES_FORMATS
    defaults = FORMAT_DEFAULTS.get(fmt, {})

    values: Dict[str, Optional[int]] = {}
    sources: Dict[str, Optional[str]] = {}
    for key in LAYERED_FIELDS:
        value, source = _resolve_field(key, layers, defaults, warnings)
        values[key] = value
        sources[key] = source

    duration = values[UNIT_DURATION]
    if duration is not None and duration < MIN_DURATION_SECONDS:
        errors.append(QualificationIssue(
            UNIT_DURATION, f"Must be >= {MIN_DURATION_SECONDS}s, got {duration}"
        ))
        duration = None

    count = values[UNIT_COUNT]
    if count is not None and count < 1:
        errors.append(QualificationIssue(UNIT_COUNT, f"Must be >= 1, got {count}"))
        count = None

    if is_series:
        if duration is None:
            errors.append(QualificationIssue(UNIT_DURATION, REQUIRED_FOR_SERIES))
        if count is None:
            errors.append(QualificationIssue(UNIT_COUNT, REQUIRED_FOR_SERIES))

    for key in LAYERED_FIELDS:
        if sources[key] == SOURCE_DEFAULTS:
            warnings.append(QualificationIssue(key, "Using format default"))

    facts: Dict[str, FactValue] = {
        UNIT_DURATION: duration,
        UNIT_COUNT: count,
        SEASON_RUNTIME: duration * count if duration is not None and count is not None else None,
        RUNTIME_LOW: values[RUNTIME_LOW],
        RUNTIME_HIGH: values[RUNTIME_HIGH],
        FORMAT: fmt,
        IS_SERIES: is_series,
    }

    return ResolveResult(
        facts=tuple(sorted(facts.items())),
        sources=tuple(sorted(sources.items())),
        warnings=tuple(warnings),
        errors=tuple(errors),
        resolver_version=RESOLVER_VERSION,
        resolver_hash=compute_resolver_hash(facts),
    )


def _resolve_field(
    key: str,
    layers: Tuple[Tuple[str, Dict[str, FactValue]], ...],
    defaults: Dict[str, int],
    warnings: List[QualificationIssue],
) -> Tuple[Optional[int], Optional[str]]:
    for source, layer in layers:
        raw = layer.get(key)
        if raw is None:
            continue
        number = _as_number(raw)
        if number is None:
            warnings.append(QualificationIssue(key, f"Ignored non-numeric {source} value {raw!r}"))
            continue
        if number == 0:
            continue
        return round_half_up(number), source
    if key in defaults:
        return defaults[key], SOURCE_DEFAULTS
    return None, None


def _as_number(raw: object) -> Optional[float]:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        return None if isinstance(raw, float) and not math.isfinite(raw) else float(raw)
    if isinstance(raw, str):
        try:
            number = float(raw.strip())
        except ValueError:
            return None
        return None if math.isnan(number) or math.isinf(number) else number
    return None


def _as_str(raw: object) -> Optional[str]:
    return raw if isinstance(raw, str) and raw else None


def _to_pairs(mapping: Mapping[str, object]) -> FactPairs:
    return tuple(sorted((str(k), v) for k, v in mapping.items()))
