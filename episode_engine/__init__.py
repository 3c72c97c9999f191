"""
Episode Pipeline Engine

This package implements the episode generation pipeline of a production
management application: canonical qualification facts, dependency-aware
staleness, a strictly ordered unit lifecycle and audited retroactive
amendments. Each layer communicates only through explicit contracts.

LAYER STRUCTURE:
================

1. QUALIFICATIONS (qualifications/)
   - Responsibility: Resolve layered project values into a canonical fact set
   - Outputs: ResolveResult (facts, sources, warnings, errors, resolver hash)
   - MUST NOT: Read storage, raise on bad input

2. DEPENDENCIES (dependencies/)
   - Responsibility: Artifact kind -> fact keys map, staleness detection
   - Outputs: StalenessReport
   - MUST NOT: Write anything (staleness is reported, never repaired)

3. CONTEXT (context/)
   - Responsibility: Choose which artifacts feed a generation run
   - Outputs: ContextResolution

4. SNAPSHOTS (snapshots/)
   - Responsibility: Sole writer of Canon Snapshots
   - Outputs: CanonSnapshot (at most one active per project)

5. LIFECYCLE (lifecycle/)
   - Responsibility: Sole writer of unit status, lock and template flags
   - Outputs: Unit, LockEvent, ContinuityNote, exports

6. RETCON (retcon/)
   - Responsibility: Declared changes, impact analysis, patch runs
   - MUST NOT: Apply an amendment without an explicit operator call

7. RUNNER (runner/)
   - Responsibility: Tick-driven batch generation with a persisted cursor

8. STORAGE / OBSERVABILITY (storage/, observability/)
   - Responsibility: Atomic, conditional persistence; audit log and metrics

CONSTRAINTS ENFORCED:
=====================
- Determinism: identical inputs hash identically
- Ordering: unit N never generates before unit N-1 is locked
- Immutability with amendment: locked content changes only via patch runs
- Explicit errors: every rejection names the blocking invariant
"""

from .engine import EpisodePipelineBackend, PipelineConfig

__all__ = ["EpisodePipelineBackend", "PipelineConfig"]
