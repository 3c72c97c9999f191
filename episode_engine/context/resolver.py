"""
Context Set Resolver

Decides which artifacts feed a generation run.

RESOLUTION ORDER:
=================
1. Explicit context set (if it exists)      -> context_set_explicit
2. Project default set (if any sets exist)  -> context_set_default
3. Explicit include ids                     -> explicit_include_ids
4. Fallback (caller uses its own inputs)    -> fallback

Context sets take priority over explicit include ids. An explicit set id
that does not belong to the project falls through to step 2.
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Tuple

from ..contracts.events import ContextSet


class ResolutionReason(Enum):
    CONTEXT_SET_EXPLICIT = "context_set_explicit"
    CONTEXT_SET_DEFAULT = "context_set_default"
    EXPLICIT_INCLUDE_IDS = "explicit_include_ids"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class ContextResolution:
    """
    include_ids is None only for FALLBACK; an empty set resolves to ().
    """
    include_ids: Optional[Tuple[str, ...]]
    reason: ResolutionReason
    context_set_id: Optional[str] = None


def default_context_set(sets: Sequence[ContextSet]) -> Optional[ContextSet]:
    """
    The project's default set.

    The set flagged is_default wins (earliest created on ties); with no
    flagged set, the earliest created set is the default.
    """
    if not sets:
        return None
    flagged = [s for s in sets if s.is_default]
    candidates = flagged or list(sets)
    return min(candidates, key=_creation_key)


def ordered_artifact_ids(context_set: ContextSet) -> Tuple[str, ...]:
    """Items by ascending sort_order, duplicates dropped."""
    seen = set()
    ordered: List[str] = []
    for item in sorted(context_set.items, key=lambda i: (i.sort_order, i.artifact_id)):
        if item.artifact_id not in seen:
            seen.add(item.artifact_id)
            ordered.append(item.artifact_id)
    return tuple(ordered)


def resolve_context(
    sets: Sequence[ContextSet],
    explicit_set_id: Optional[str] = None,
    explicit_include_ids: Optional[Sequence[str]] = None
) -> ContextResolution:
    """Pure and deterministic: same inputs, same resolution."""
    if explicit_set_id:
        for context_set in sets:
            if context_set.set_id == explicit_set_id:
                return ContextResolution(
                    include_ids=ordered_artifact_ids(context_set),
                    reason=ResolutionReason.CONTEXT_SET_EXPLICIT,
                    context_set_id=context_set.set_id,
                )

    default = default_context_set(sets)
    if default is not None:
        return ContextResolution(
            include_ids=ordered_artifact_ids(default),
            reason=ResolutionReason.CONTEXT_SET_DEFAULT,
            context_set_id=default.set_id,
        )

    if explicit_include_ids:
        return ContextResolution(
            include_ids=tuple(dict.fromkeys(explicit_include_ids)),
            reason=ResolutionReason.EXPLICIT_INCLUDE_IDS,
        )

    return ContextResolution(include_ids=None, reason=ResolutionReason.FALLBACK)


def _creation_key(context_set: ContextSet):
    created = context_set.created_at.to_iso() if context_set.created_at else ""
    return (created, context_set.sequence, context_set.set_id)
