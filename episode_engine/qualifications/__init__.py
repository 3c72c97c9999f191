"""
Qualification Layer

RESPONSIBILITY: Resolve project values into the canonical fact set
ALLOWED INPUTS: QualificationInput (immutable project state)
OUTPUTS: ResolveResult

WHAT THIS LAYER MUST NOT DO:
============================
- Access storage
- Raise on invalid input (errors are returned as data)
- Depend on key order or wall-clock time
"""

from .resolver import (
    RESOLVER_VERSION,
    MIN_DURATION_SECONDS,
    FACT_KEYS,
    FORMAT_DEFAULTS,
    SERIES_FORMATS,
    UNIT_DURATION,
    UNIT_COUNT,
    SEASON_RUNTIME,
    RUNTIME_LOW,
    RUNTIME_HIGH,
    FORMAT,
    IS_SERIES,
    QualificationInput,
    QualificationIssue,
    ResolveResult,
    resolve,
    normalize_format,
    compute_resolver_hash,
    compute_scoped_hash,
    changed_fact_keys,
)

__all__ = [
    "RESOLVER_VERSION",
    "MIN_DURATION_SECONDS",
    "FACT_KEYS",
    "FORMAT_DEFAULTS",
    "SERIES_FORMATS",
    "UNIT_DURATION",
    "UNIT_COUNT",
    "SEASON_RUNTIME",
    "RUNTIME_LOW",
    "RUNTIME_HIGH",
    "FORMAT",
    "IS_SERIES",
    "QualificationInput",
    "QualificationIssue",
    "ResolveResult",
    "resolve",
    "normalize_format",
    "compute_resolver_hash",
    "compute_scoped_hash",
    "changed_fact_keys",
]
