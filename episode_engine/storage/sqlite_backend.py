"""
SQLite Storage Backend

Persistent record store. Every record is one row keyed by (kind,
record_id) with its revision and write sequence as columns and the
record itself as canonical JSON.

PRINCIPLES:
===========
1. Contended writes are conditional updates on the revision column
2. Atomic sections are BEGIN IMMEDIATE transactions, so a second
   process blocks instead of interleaving
3. Sequences live in the database so a resumed process continues them
"""

from __future__ import annotations
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, List, Optional
import sqlite3
import threading

from ..domain.serialization import decode_record, encode_record
from .backends import StorageBackend, StorageWriteResult, _conflict, _written


SCHEMA = '''
    CREATE TABLE IF NOT EXISTS records (
        kind TEXT NOT NULL,
        record_id TEXT NOT NULL,
        project_id TEXT,
        sequence INTEGER NOT NULL,
        revision INTEGER NOT NULL DEFAULT 0,
        payload TEXT NOT NULL,
        PRIMARY KEY (kind, record_id)
    );

    CREATE INDEX IF NOT EXISTS idx_records_project
        ON records (kind, project_id, sequence);

    CREATE TABLE IF NOT EXISTS sequences (
        name TEXT PRIMARY KEY,
        value INTEGER NOT NULL
    );
'''


class SQLiteStorageBackend(StorageBackend):
    """
    SQLite implementation of storage backend.

    One connection per backend instance, serialized by a re-entrant lock.
    Nested atomic() blocks join the outermost transaction.
    """

    def __init__(self, db_path: str = ":memory:", timeout_seconds: float = 30.0):
        self._db_path = str(db_path)
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            self._db_path,
            timeout=timeout_seconds,
            isolation_level=None,
            check_same_thread=False,
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._init_db()

    def _init_db(self):
        """Initialize database schema."""
        with self._lock:
            self._conn.executescript(SCHEMA)
            self._conn.execute(
                "INSERT OR IGNORE INTO sequences (name, value) VALUES ('global', 0)"
            )

    @property
    def db_path(self) -> str:
        return self._db_path

    @contextmanager
    def atomic(self) -> Iterator[None]:
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                self._conn.execute("BEGIN IMMEDIATE")
            self._depth += 1
            try:
                yield
            except BaseException:
                self._depth -= 1
                if outermost:
                    self._conn.execute("ROLLBACK")
                raise
            else:
                self._depth -= 1
                if outermost:
                    self._conn.execute("COMMIT")

    def insert(self, record: Any) -> StorageWriteResult:
        with self.atomic():
            try:
                self._conn.execute(
                    '''INSERT INTO records (kind, record_id, project_id, sequence, revision, payload)
                       VALUES (?, ?, ?, ?, ?, ?)''',
                    self._row(record)
                )
            except sqlite3.IntegrityError:
                return _conflict(record.KIND, record.record_id, "Record already exists")
            return _written(record.record_id)

    def put(self, record: Any) -> StorageWriteResult:
        with self.atomic():
            self._conn.execute(
                '''INSERT OR REPLACE INTO records (kind, record_id, project_id, sequence, revision, payload)
                   VALUES (?, ?, ?, ?, ?, ?)''',
                self._row(record)
            )
            return _written(record.record_id)

    def compare_and_put(self, record: Any, expected_revision: int) -> StorageWriteResult:
        with self.atomic():
            cursor = self._conn.execute(
                '''UPDATE records SET revision = ?, sequence = ?, payload = ?
                   WHERE kind = ? AND record_id = ? AND revision = ?''',
                (
                    getattr(record, "revision", 0),
                    record.sequence,
                    encode_record(record),
                    record.KIND,
                    record.record_id,
                    expected_revision,
                )
            )
            if cursor.rowcount != 1:
                return _conflict(
                    record.KIND, record.record_id,
                    f"Revision mismatch or missing record (expected {expected_revision})"
                )
            return _written(record.record_id)

    def get(self, kind: str, record_id: str) -> Optional[Any]:
        with self._lock:
            row = self._conn.execute(
                "SELECT payload FROM records WHERE kind = ? AND record_id = ?",
                (kind, record_id)
            ).fetchone()
        return decode_record(kind, row["payload"]) if row else None

    def list(self, kind: str, project_id: Optional[str] = None) -> List[Any]:
        with self._lock:
            if project_id is None:
                rows = self._conn.execute(
                    "SELECT payload FROM records WHERE kind = ? ORDER BY sequence, record_id",
                    (kind,)
                ).fetchall()
            else:
                rows = self._conn.execute(
                    '''SELECT payload FROM records WHERE kind = ? AND project_id = ?
                       ORDER BY sequence, record_id''',
                    (kind, project_id)
                ).fetchall()
        return [decode_record(kind, row["payload"]) for row in rows]

    def delete(self, kind: str, record_id: str) -> bool:
        with self.atomic():
            cursor = self._conn.execute(
                "DELETE FROM records WHERE kind = ? AND record_id = ?",
                (kind, record_id)
            )
            return cursor.rowcount == 1

    def next_sequence(self) -> int:
        with self.atomic():
            self._conn.execute("UPDATE sequences SET value = value + 1 WHERE name = 'global'")
            row = self._conn.execute(
                "SELECT value FROM sequences WHERE name = 'global'"
            ).fetchone()
            return int(row["value"])

    def close(self):
        with self._lock:
            self._conn.close()

    @staticmethod
    def _row(record: Any) -> tuple:
        return (
            record.KIND,
            record.record_id,
            getattr(record, "project_id", None),
            record.sequence,
            getattr(record, "revision", 0),
            encode_record(record),
        )
