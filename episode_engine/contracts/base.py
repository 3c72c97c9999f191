"""
Base Contracts and Shared Types

These are the foundational types used across all layers.
All types here are IMMUTABLE and represent pure data.

BOUNDARY ENFORCEMENT:
=====================
- This module is READ-ONLY from all layers
- Layers may import types but MUST NOT modify this module
- All types are frozen dataclasses for immutability guarantee
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Tuple
from enum import Enum, auto
import hashlib


# =============================================================================
# ERROR STATES (Explicit, never silent)
# =============================================================================

class ErrorCode(Enum):
    """
    Explicit error codes for deterministic error handling.
    No silent fallbacks - every error state is enumerated.
    """
    # Input and configuration errors
    MISSING_REQUIRED_FACT = auto()
    INVALID_FACT_VALUE = auto()
    INVALID_ARGUMENT = auto()
    PROJECT_NOT_FOUND = auto()
    UNIT_NOT_FOUND = auto()
    ARTIFACT_NOT_FOUND = auto()
    SNAPSHOT_NOT_FOUND = auto()
    RETCON_NOT_FOUND = auto()
    PATCH_NOT_FOUND = auto()
    BATCH_NOT_FOUND = auto()

    # Invariant violations (no writes performed)
    NO_ACTIVE_SNAPSHOT = auto()
    SNAPSHOT_STALE = auto()
    PREDECESSOR_NOT_LOCKED = auto()
    AUDIT_BLOCKERS_PRESENT = auto()
    TEMPLATE_ALREADY_SET = auto()
    UNIT_LOCKED = auto()
    UNIT_NOT_LOCKED = auto()
    INVALID_STATE_TRANSITION = auto()
    GENERATION_IN_PROGRESS = auto()
    REGENERATION_LIMIT_REACHED = auto()
    VERSION_CONFLICT = auto()
    PATCH_NOT_PENDING = auto()
    BATCH_ALREADY_RUNNING = auto()
    UNIT_STUCK = auto()

    # Destructive operation misuse
    CONFIRMATION_REQUIRED = auto()
    REASON_REQUIRED = auto()
    UNIT_DELETED = auto()

    # Generation backend
    GENERATION_FAILED = auto()

    # Boundary
    INTERNAL_ERROR = auto()


@dataclass(frozen=True)
class Error:
    """
    Immutable error representation with full context.
    Errors are data, not exceptions - they can be stored and queried.
    """
    code: ErrorCode
    message: str
    timestamp: datetime
    context: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)

    def context_value(self, key: str) -> Optional[str]:
        for k, v in self.context:
            if k == key:
                return v
        return None

    @staticmethod
    def create(code: ErrorCode, message: str, **context: object) -> Error:
        return Error(
            code=code,
            message=message,
            timestamp=datetime.now(timezone.utc),
            context=tuple((k, str(v)) for k, v in sorted(context.items()))
        )


@dataclass(frozen=True)
class Result:
    """
    Generic result type for operations that can fail.
    Either contains a value OR an error, never both.
    """
    value: Optional[object] = None
    error: Optional[Error] = None

    @property
    def is_success(self) -> bool:
        return self.error is None

    @property
    def is_failure(self) -> bool:
        return self.error is not None

    @staticmethod
    def success(value: object) -> Result:
        return Result(value=value, error=None)

    @staticmethod
    def failure(error: Error) -> Result:
        return Result(value=None, error=error)


def fail(code: ErrorCode, message: str, **context: object) -> Result:
    """Shorthand for Result.failure(Error.create(...))."""
    return Result.failure(Error.create(code, message, **context))


# =============================================================================
# IDENTITY TYPES (Deterministic, hash-derived)
# =============================================================================

def derive_id(prefix: str, *parts: object, length: int = 16) -> str:
    """Derive a deterministic identifier from its defining parts."""
    seed = "|".join(str(p) for p in parts)
    digest = hashlib.sha256(seed.encode('utf-8')).hexdigest()[:length]
    return f"{prefix}_{digest}"


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode('utf-8')).hexdigest()


# =============================================================================
# TEMPORAL TYPES (Immutable, explicit semantics)
# =============================================================================

@dataclass(frozen=True)
class Timestamp:
    """
    Immutable timestamp with explicit semantics.
    All timestamps are UTC, never local time.
    """
    value: datetime

    def __post_init__(self):
        # Ensure UTC timezone
        if self.value.tzinfo is None:
            object.__setattr__(self, 'value', self.value.replace(tzinfo=timezone.utc))

    @staticmethod
    def now() -> Timestamp:
        return Timestamp(value=datetime.now(timezone.utc))

    @staticmethod
    def from_iso(iso_string: str) -> Timestamp:
        dt = datetime.fromisoformat(iso_string.replace('Z', '+00:00'))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return Timestamp(value=dt)

    def to_iso(self) -> str:
        return self.value.isoformat()


@dataclass(frozen=True)
class TimeRange:
    """Immutable time range for log and metric queries."""
    start: Timestamp
    end: Timestamp

    def __post_init__(self):
        if self.start.value > self.end.value:
            raise ValueError("TimeRange start must be before or equal to end")

    def contains(self, timestamp: Timestamp) -> bool:
        return self.start.value <= timestamp.value <= self.end.value


# =============================================================================
# LIFECYCLE STATES (Explicit, no implicit transitions)
# =============================================================================

class UnitStatus(Enum):
    """
    Unit lifecycle states.
    Transitions are owned by the unit state machine and are auditable.
    """
    PENDING = "pending"
    GENERATING = "generating"
    COMPLETE = "complete"
    NEEDS_REVISION = "needs_revision"
    ERROR = "error"
    LOCKED = "locked"
    INVALIDATED = "invalidated"


class RecordState(Enum):
    """Soft-delete marker. Hard deletion removes the record entirely."""
    ACTIVE = "active"
    SOFT_DELETED = "soft_deleted"


class SnapshotStatus(Enum):
    ACTIVE = "active"
    SUPERSEDED = "superseded"


class ContentSource(Enum):
    """Where a content version came from."""
    GENERATION = "generation"
    REVISION = "revision"      # Operator edit before lock
    PATCH = "patch"            # Applied patch run after lock


class LockKind(Enum):
    LOCK = "lock"
    AMENDMENT = "amendment"


class RetconStatus(Enum):
    DECLARED = "declared"
    ANALYZED = "analyzed"
    PATCHES_PROPOSED = "patches_proposed"
    RESOLVED = "resolved"


class PatchStatus(Enum):
    """
    Patch run states.

    RUNNING: proposal is being generated
    PENDING: proposal ready, awaiting an operator decision
    COMPLETE: proposal equals current content, nothing to amend
    APPLIED / REJECTED: terminal, operator-driven
    """
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    APPLIED = "applied"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (PatchStatus.COMPLETE, PatchStatus.APPLIED, PatchStatus.REJECTED)


class BatchStatus(Enum):
    """Batch cursor states."""
    RUNNING = "running"
    AWAITING_LOCK = "awaiting_lock"
    PAUSED = "paused"
    BLOCKED = "blocked"
    STOPPED = "stopped"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_live(self) -> bool:
        return self not in (BatchStatus.STOPPED, BatchStatus.COMPLETE, BatchStatus.FAILED)
