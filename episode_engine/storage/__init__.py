"""
Storage Layer

RESPONSIBILITY: Atomic, conditional persistence of pipeline records
ALLOWED INPUTS: Immutable records from the contracts module
OUTPUTS: Records, StorageWriteResult

WHAT THIS LAYER MUST NOT DO:
============================
- Interpret records or enforce lifecycle rules
- Modify a revisioned record without a matching expected revision
- Delete records except through an explicit hard delete

BOUNDARY ENFORCEMENT:
=====================
- Records are frozen; a change is always a new record with revision + 1
- Every contended write is a compare-and-put inside atomic()
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional

from .backends import StorageBackend, InMemoryStorageBackend, StorageWriteResult
from .sqlite_backend import SQLiteStorageBackend
from .repository import PipelineRepository, WriteConflict, unit_id_for, artifact_id_for


@dataclass
class StorageConfig:
    """Configuration for the storage backend."""
    backend_type: str = "memory"  # "memory" or "sqlite"
    db_path: Optional[str] = None
    timeout_seconds: float = 30.0


def create_backend(config: Optional[StorageConfig] = None) -> StorageBackend:
    config = config or StorageConfig()
    if config.backend_type == "memory":
        return InMemoryStorageBackend()
    if config.backend_type == "sqlite":
        if not config.db_path:
            raise ValueError("db_path required for sqlite backend")
        return SQLiteStorageBackend(config.db_path, timeout_seconds=config.timeout_seconds)
    raise ValueError(f"Unknown storage backend type: {config.backend_type}")


__all__ = [
    "StorageBackend",
    "InMemoryStorageBackend",
    "SQLiteStorageBackend",
    "StorageWriteResult",
    "StorageConfig",
    "PipelineRepository",
    "WriteConflict",
    "create_backend",
    "unit_id_for",
    "artifact_id_for",
]
