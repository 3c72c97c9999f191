"""
Lifecycle Layer

RESPONSIBILITY: Unit status, content versions, locks, continuity notes,
package export and single-unit generation
OUTPUTS: Unit, ContentVersion, LockEvent, ContinuityNote, ExportedFile

WHAT THIS LAYER MUST NOT DO:
============================
- Write to a locked unit except through apply_amendment
- Generate a unit whose predecessor is not locked
- Retry a failed generation on its own
"""

from .state_machine import (
    NO_TEMPLATE,
    TRANSITIONS,
    can_transition,
    LifecycleConfig,
    LockOutcome,
    AmendmentOutcome,
    HardDeleteChallenge,
    UnitStateMachine,
)
from .generation import GenerationReport, UnitGenerator, continuity_input
from .continuity import (
    derive_note,
    script_path,
    ledger_path,
    binder_path,
    closing_line,
    tail_excerpt,
)

__all__ = [
    "NO_TEMPLATE",
    "TRANSITIONS",
    "can_transition",
    "LifecycleConfig",
    "LockOutcome",
    "AmendmentOutcome",
    "HardDeleteChallenge",
    "UnitStateMachine",
    "GenerationReport",
    "UnitGenerator",
    "continuity_input",
    "derive_note",
    "script_path",
    "ledger_path",
    "binder_path",
    "closing_line",
    "tail_excerpt",
]
