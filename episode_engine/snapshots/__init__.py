"""
Snapshot Layer

RESPONSIBILITY: Sole writer of Canon Snapshots
OUTPUTS: CanonSnapshot (at most one active per project)

WHAT THIS LAYER MUST NOT DO:
============================
- Delete superseded snapshots
- Touch locked units
"""

from .manager import SnapshotManager

__all__ = ["SnapshotManager"]
