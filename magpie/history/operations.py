"""SQLite-backed operation history for reversible provider mutations.

Every batch of label changes a run makes is recorded here with enough
per-item detail to undo it. Uses stdlib sqlite3 (``":memory:"`` works
for single-process use). Entries are partitioned by user; only the
rollback flag is ever updated after insert.
"""

import json
import logging
import sqlite3
import threading
import uuid
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from magpie.errors import OperationNotFoundError, RollbackConflictError
from magpie.schemas.history import (
    AffectedItem,
    HistoryStats,
    OperationEntry,
    OperationType,
    RollbackResult,
)

logger = logging.getLogger(__name__)

_CREATE_OPERATIONS = """
CREATE TABLE IF NOT EXISTS operations (
    seq             INTEGER PRIMARY KEY AUTOINCREMENT,
    id              TEXT NOT NULL UNIQUE,
    type            TEXT NOT NULL,
    timestamp       TEXT NOT NULL,
    user_id         TEXT NOT NULL,
    session_id      TEXT NOT NULL,
    description     TEXT NOT NULL,
    affected_json   TEXT NOT NULL,
    can_rollback    INTEGER NOT NULL DEFAULT 1,
    is_rolled_back  INTEGER NOT NULL DEFAULT 0,
    rolled_back_at  TEXT,
    metadata_json   TEXT NOT NULL DEFAULT '{}'
)
"""

_CREATE_ROLLBACKS = """
CREATE TABLE IF NOT EXISTS rollbacks (
    id              TEXT PRIMARY KEY,
    operation_id    TEXT NOT NULL REFERENCES operations(id),
    timestamp       TEXT NOT NULL,
    success         INTEGER NOT NULL,
    description     TEXT NOT NULL,
    errors_json     TEXT NOT NULL DEFAULT '[]'
)
"""

_CREATE_INDEX = """
CREATE INDEX IF NOT EXISTS idx_operations_user_id ON operations(user_id)
"""

_INSERT_OPERATION = """
INSERT INTO operations
    (id, type, timestamp, user_id, session_id, description,
     affected_json, can_rollback, is_rolled_back, metadata_json)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
"""

_INSERT_ROLLBACK = """
INSERT INTO rollbacks (id, operation_id, timestamp, success, description, errors_json)
VALUES (?, ?, ?, ?, ?, ?)
"""

_SELECT_BY_ID = "SELECT * FROM operations WHERE id = ?"
_SELECT_ROLLBACKABLE = """
SELECT * FROM operations
WHERE user_id = ? AND can_rollback = 1 AND is_rolled_back = 0
ORDER BY seq DESC LIMIT ?
"""
_SELECT_FOR_USER = "SELECT * FROM operations WHERE user_id = ? ORDER BY seq DESC LIMIT ?"
_SELECT_FOR_SESSION = "SELECT * FROM operations WHERE session_id = ? ORDER BY seq DESC"
_SELECT_NEWER_ACTIVE = """
SELECT * FROM operations
WHERE user_id = ? AND seq > ? AND is_rolled_back = 0
ORDER BY seq ASC
"""
_SELECT_ROLLBACKS_FOR_USER = """
SELECT r.* FROM rollbacks r JOIN operations o ON o.id = r.operation_id
WHERE o.user_id = ?
ORDER BY r.timestamp DESC LIMIT ?
"""

_MARK_ROLLED_BACK = """
UPDATE operations SET is_rolled_back = 1, rolled_back_at = ?
WHERE id = ? AND is_rolled_back = 0
"""
_RELEASE_ROLLED_BACK = """
UPDATE operations SET is_rolled_back = 0, rolled_back_at = NULL
WHERE id = ? AND is_rolled_back = 1
"""


def _row_to_entry(row: sqlite3.Row) -> OperationEntry:
    return OperationEntry(
        id=row["id"],
        type=OperationType(row["type"]),
        timestamp=datetime.fromisoformat(row["timestamp"]),
        user_id=row["user_id"],
        session_id=row["session_id"],
        description=row["description"],
        affected=[AffectedItem.model_validate(a) for a in json.loads(row["affected_json"])],
        can_rollback=bool(row["can_rollback"]),
        is_rolled_back=bool(row["is_rolled_back"]),
        rolled_back_at=(
            datetime.fromisoformat(row["rolled_back_at"]) if row["rolled_back_at"] else None
        ),
        metadata=json.loads(row["metadata_json"]),
    )


def _row_to_rollback(row: sqlite3.Row) -> RollbackResult:
    return RollbackResult(
        id=row["id"],
        operation_id=row["operation_id"],
        timestamp=datetime.fromisoformat(row["timestamp"]),
        success=bool(row["success"]),
        description=row["description"],
        errors=json.loads(row["errors_json"]),
    )


class OperationHistory:
    """Append-only log of provider mutations with a one-way rollback flag.

    Usage::

        history = OperationHistory("/path/to/history.db")
        entry = history.record(
            OperationType.LABEL_APPLY,
            user_id="u1",
            session_id="s1",
            description="Applied 3 label(s)",
            affected=[AffectedItem(message_id="m1", label_id="L1")],
        )
        for op in history.list_rollbackable("u1"):
            print(op.description)
    """

    def __init__(self, db_path: str | Path = ":memory:") -> None:
        if str(db_path) != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(_CREATE_OPERATIONS)
        self._conn.execute(_CREATE_ROLLBACKS)
        self._conn.execute(_CREATE_INDEX)
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "OperationHistory":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # --- Recording ---

    def record(
        self,
        op_type: OperationType,
        *,
        user_id: str,
        session_id: str,
        description: str,
        affected: list[AffectedItem],
        can_rollback: bool = True,
        metadata: dict[str, Any] | None = None,
    ) -> OperationEntry:
        """Append a new entry and return it."""
        entry = OperationEntry(
            id=f"op_{uuid.uuid4().hex}",
            type=op_type,
            timestamp=datetime.now(UTC),
            user_id=user_id,
            session_id=session_id,
            description=description,
            affected=affected,
            can_rollback=can_rollback,
            metadata=metadata or {},
        )
        with self._lock:
            self._conn.execute(
                _INSERT_OPERATION,
                (
                    entry.id,
                    entry.type.value,
                    entry.timestamp.isoformat(),
                    entry.user_id,
                    entry.session_id,
                    entry.description,
                    json.dumps([a.model_dump() for a in entry.affected]),
                    int(entry.can_rollback),
                    json.dumps(entry.metadata),
                ),
            )
            self._conn.commit()

        logger.info("Recorded operation %s: %s", entry.id, entry.description)
        return entry

    # --- Reads ---

    def get(self, operation_id: str) -> OperationEntry | None:
        with self._lock:
            row = self._conn.execute(_SELECT_BY_ID, (operation_id,)).fetchone()
        return _row_to_entry(row) if row else None

    def list_rollbackable(self, user_id: str, limit: int = 20) -> list[OperationEntry]:
        """Most recent entries that can still be rolled back, newest first."""
        with self._lock:
            rows = self._conn.execute(_SELECT_ROLLBACKABLE, (user_id, limit)).fetchall()
        return [_row_to_entry(r) for r in rows]

    def list_for_user(self, user_id: str, limit: int = 50) -> list[OperationEntry]:
        with self._lock:
            rows = self._conn.execute(_SELECT_FOR_USER, (user_id, limit)).fetchall()
        return [_row_to_entry(r) for r in rows]

    def list_for_session(self, session_id: str) -> list[OperationEntry]:
        with self._lock:
            rows = self._conn.execute(_SELECT_FOR_SESSION, (session_id,)).fetchall()
        return [_row_to_entry(r) for r in rows]

    def newer_overlapping(self, entry: OperationEntry) -> list[OperationEntry]:
        """Newer, still-active entries of the same user touching a shared message/label."""
        pairs = {(a.message_id, a.label_id) for a in entry.affected}
        with self._lock:
            seq_row = self._conn.execute(
                "SELECT seq FROM operations WHERE id = ?", (entry.id,)
            ).fetchone()
            if seq_row is None:
                return []
            rows = self._conn.execute(
                _SELECT_NEWER_ACTIVE, (entry.user_id, seq_row["seq"])
            ).fetchall()

        overlapping = []
        for row in rows:
            newer = _row_to_entry(row)
            if any((a.message_id, a.label_id) in pairs for a in newer.affected):
                overlapping.append(newer)
        return overlapping

    # --- Rollback bookkeeping ---

    def mark_rolled_back(self, operation_id: str) -> OperationEntry:
        """Flip ``is_rolled_back`` false -> true exactly once.

        The conditional update is the claim a rollback takes before touching
        the provider, so of two concurrent callers exactly one succeeds.

        Raises:
            OperationNotFoundError: If the entry does not exist.
            RollbackConflictError: If the entry is already rolled back.
        """
        now = datetime.now(UTC)
        with self._lock:
            cursor = self._conn.execute(_MARK_ROLLED_BACK, (now.isoformat(), operation_id))
            self._conn.commit()
            row = self._conn.execute(_SELECT_BY_ID, (operation_id,)).fetchone()
        if row is None:
            raise OperationNotFoundError(f"Operation {operation_id} not found")
        if cursor.rowcount == 0:
            raise RollbackConflictError(
                f"Operation {operation_id} has already been rolled back"
            )
        return _row_to_entry(row)

    def release_rollback(self, operation_id: str) -> None:
        """Undo a claim taken by mark_rolled_back() whose undo pass aborted."""
        with self._lock:
            self._conn.execute(_RELEASE_ROLLED_BACK, (operation_id,))
            self._conn.commit()
        logger.warning("Released rollback claim on %s", operation_id)

    def record_rollback(self, result: RollbackResult) -> None:
        with self._lock:
            self._conn.execute(
                _INSERT_ROLLBACK,
                (
                    result.id,
                    result.operation_id,
                    result.timestamp.isoformat(),
                    int(result.success),
                    result.description,
                    json.dumps(result.errors),
                ),
            )
            self._conn.commit()

    def rollback_history(self, user_id: str, limit: int = 20) -> list[RollbackResult]:
        with self._lock:
            rows = self._conn.execute(_SELECT_ROLLBACKS_FOR_USER, (user_id, limit)).fetchall()
        return [_row_to_rollback(r) for r in rows]

    # --- Maintenance ---

    def stats(self, user_id: str) -> HistoryStats:
        with self._lock:
            ops = self._conn.execute(
                """
                SELECT COUNT(*) AS total,
                       COALESCE(SUM(can_rollback = 1 AND is_rolled_back = 0), 0) AS rollbackable,
                       COALESCE(SUM(is_rolled_back = 1), 0) AS rolled_back
                FROM operations WHERE user_id = ?
                """,
                (user_id,),
            ).fetchone()
            rbs = self._conn.execute(
                """
                SELECT COALESCE(SUM(r.success = 1), 0) AS ok,
                       COALESCE(SUM(r.success = 0), 0) AS failed
                FROM rollbacks r JOIN operations o ON o.id = r.operation_id
                WHERE o.user_id = ?
                """,
                (user_id,),
            ).fetchone()
        return HistoryStats(
            total_operations=ops["total"],
            rollbackable_operations=ops["rollbackable"],
            rolled_back_operations=ops["rolled_back"],
            successful_rollbacks=rbs["ok"],
            failed_rollbacks=rbs["failed"],
        )

    def prune(self, days_old: int = 30) -> int:
        """Delete entries (and their rollbacks) older than ``days_old`` days."""
        cutoff = (datetime.now(UTC) - timedelta(days=days_old)).isoformat()
        with self._lock:
            self._conn.execute(
                "DELETE FROM rollbacks WHERE operation_id IN "
                "(SELECT id FROM operations WHERE timestamp < ?)",
                (cutoff,),
            )
            cursor = self._conn.execute("DELETE FROM operations WHERE timestamp < ?", (cutoff,))
            self._conn.commit()
        if cursor.rowcount:
            logger.info("Pruned %d operation(s) older than %d day(s)", cursor.rowcount, days_old)
        return cursor.rowcount
