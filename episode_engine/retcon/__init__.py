"""
Retcon Layer

RESPONSIBILITY: Retcon events, impact analysis, patch runs
OUTPUTS: RetconEvent, PatchRun, amendments via the unit state machine

WHAT THIS LAYER MUST NOT DO:
============================
- Write unit records directly
- Auto-apply any proposal
"""

from .engine import ImpactReport, RetconEngine, LIVE_PATCH_STATUSES

__all__ = ["ImpactReport", "RetconEngine", "LIVE_PATCH_STATUSES"]
