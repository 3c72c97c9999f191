"""
Runner Layer

RESPONSIBILITY: Persisted batch cursors and bounded, resumable ticks
OUTPUTS: BatchCursor, TickReport

WHAT THIS LAYER MUST NOT DO:
============================
- Retry a failed generation
- Generate a locked unit
- Hold batch state anywhere but the cursor record
"""

from .tick import (
    RESUMABLE,
    RunnerConfig,
    BackoffSchedule,
    TickReport,
    TickRunner,
)

__all__ = [
    "RESUMABLE",
    "RunnerConfig",
    "BackoffSchedule",
    "TickReport",
    "TickRunner",
]
