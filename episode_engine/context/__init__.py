"""
Context Layer

RESPONSIBILITY: Select the artifacts that feed a generation run
OUTPUTS: ContextResolution (ordered artifact ids + reason)
"""

from .resolver import (
    ContextResolution,
    ResolutionReason,
    resolve_context,
    default_context_set,
    ordered_artifact_ids,
)

__all__ = [
    "ContextResolution",
    "ResolutionReason",
    "resolve_context",
    "default_context_set",
    "ordered_artifact_ids",
]
