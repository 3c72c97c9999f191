"""
Storage Backends

Generic record stores with atomic sections and conditional writes.

GUARANTEES:
===========
- atomic() sections are all-or-nothing and serialized per backend
- compare_and_put() succeeds only if the stored revision matches
- list() returns records in write-sequence order (deterministic)
- next_sequence() is strictly increasing for the life of the store
"""

from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional
import threading

from ..contracts.base import Error, ErrorCode, Timestamp


@dataclass(frozen=True)
class StorageWriteResult:
    """Result of a storage write operation."""
    success: bool
    record_id: Optional[str] = None
    error: Optional[Error] = None
    write_timestamp: Optional[Timestamp] = None


def _conflict(kind: str, record_id: str, message: str) -> StorageWriteResult:
    return StorageWriteResult(
        success=False,
        record_id=record_id,
        error=Error.create(ErrorCode.VERSION_CONFLICT, message, kind=kind, record_id=record_id),
    )


def _written(record_id: str) -> StorageWriteResult:
    return StorageWriteResult(success=True, record_id=record_id, write_timestamp=Timestamp.now())


# =============================================================================
# STORAGE INTERFACE (Dependency Inversion)
# =============================================================================

class StorageBackend:
    """
    Abstract storage backend interface.

    Records are frozen dataclasses exposing KIND, record_id, project_id
    and (for mutable records) revision.
    """

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """All writes inside the block commit together or not at all."""
        raise NotImplementedError
        yield

    def insert(self, record: Any) -> StorageWriteResult:
        """Insert a new record. Fails if the id already exists."""
        raise NotImplementedError

    def put(self, record: Any) -> StorageWriteResult:
        """Insert or replace an unrevisioned record (exports)."""
        raise NotImplementedError

    def compare_and_put(self, record: Any, expected_revision: int) -> StorageWriteResult:
        """Replace a record only if the stored revision equals expected_revision."""
        raise NotImplementedError

    def get(self, kind: str, record_id: str) -> Optional[Any]:
        raise NotImplementedError

    def list(self, kind: str, project_id: Optional[str] = None) -> List[Any]:
        """Records of a kind, optionally for one project, in sequence order."""
        raise NotImplementedError

    def delete(self, kind: str, record_id: str) -> bool:
        """Permanently remove a record. Used only by explicit hard deletes."""
        raise NotImplementedError

    def next_sequence(self) -> int:
        raise NotImplementedError

    def close(self):
        pass


# =============================================================================
# IN-MEMORY STORAGE BACKEND (Reference Implementation)
# =============================================================================

class InMemoryStorageBackend(StorageBackend):
    """
    In-memory implementation of storage backend.

    A re-entrant lock serializes atomic sections; a failed outermost
    section restores the state captured on entry.
    Suitable for testing and single-process deployments.
    """

    def __init__(self):
        self._records: Dict[str, Dict[str, Any]] = {}
        self._sequence: int = 0
        self._lock = threading.RLock()
        self._depth: int = 0

    @contextmanager
    def atomic(self) -> Iterator[None]:
        with self._lock:
            outermost = self._depth == 0
            saved = None
            if outermost:
                saved = ({k: dict(v) for k, v in self._records.items()}, self._sequence)
            self._depth += 1
            try:
                yield
            except BaseException:
                if outermost:
                    self._records, self._sequence = saved
                raise
            finally:
                self._depth -= 1

    def insert(self, record: Any) -> StorageWriteResult:
        with self._lock:
            table = self._records.setdefault(record.KIND, {})
            if record.record_id in table:
                return _conflict(record.KIND, record.record_id, "Record already exists")
            table[record.record_id] = record
            return _written(record.record_id)

    def put(self, record: Any) -> StorageWriteResult:
        with self._lock:
            self._records.setdefault(record.KIND, {})[record.record_id] = record
            return _written(record.record_id)

    def compare_and_put(self, record: Any, expected_revision: int) -> StorageWriteResult:
        with self._lock:
            table = self._records.setdefault(record.KIND, {})
            current = table.get(record.record_id)
            if current is None:
                return _conflict(record.KIND, record.record_id, "Record does not exist")
            if current.revision != expected_revision:
                return _conflict(
                    record.KIND, record.record_id,
                    f"Revision mismatch: expected {expected_revision}, found {current.revision}"
                )
            table[record.record_id] = record
            return _written(record.record_id)

    def get(self, kind: str, record_id: str) -> Optional[Any]:
        with self._lock:
            return self._records.get(kind, {}).get(record_id)

    def list(self, kind: str, project_id: Optional[str] = None) -> List[Any]:
        with self._lock:
            records = list(self._records.get(kind, {}).values())
        if project_id is not None:
            records = [r for r in records if r.project_id == project_id]
        return sorted(records, key=lambda r: (r.sequence, r.record_id))

    def delete(self, kind: str, record_id: str) -> bool:
        with self._lock:
            return self._records.get(kind, {}).pop(record_id, None) is not None

    def next_sequence(self) -> int:
        with self._lock:
            self._sequence += 1
            return self._sequence
