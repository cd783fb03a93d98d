"""In-process store of pipeline progress, keyed by session id.

One writer (the run for that session) and many pollers. Records are
frozen snapshots swapped under a lock, so a reader always sees a whole
record.
"""

import logging
import threading
from datetime import UTC, datetime
from typing import Any

from magpie.schemas.progress import ProgressRecord

logger = logging.getLogger(__name__)


class ProgressTracker:
    """Session-keyed progress store, constructed once per process.

    Usage::

        tracker = ProgressTracker()
        tracker.update("sess-1", ProgressRecord(total_emails=100, processed=3))
        tracker.get("sess-1").processed  # 3
        tracker.clear("sess-1")
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, ProgressRecord] = {}

    def update(
        self, session_id: str, progress: ProgressRecord | dict[str, Any]
    ) -> ProgressRecord:
        """Replace the record for a session, stamping ``last_updated``."""
        if isinstance(progress, ProgressRecord):
            data = progress.model_dump()
        else:
            data = ProgressRecord.model_validate(progress).model_dump()
        data["session_id"] = session_id
        data["last_updated"] = datetime.now(UTC)
        record = ProgressRecord.model_validate(data)

        with self._lock:
            self._records[session_id] = record
        logger.debug(
            "Progress %s: %d/%d processed", session_id, record.processed, record.total_emails
        )
        return record

    def get(self, session_id: str) -> ProgressRecord:
        """Current record, or a zeroed default if the session has none yet."""
        with self._lock:
            record = self._records.get(session_id)
        if record is None:
            return ProgressRecord(session_id=session_id)
        return record

    def clear(self, session_id: str) -> bool:
        """Drop a session's record. Returns True if one existed."""
        with self._lock:
            removed = self._records.pop(session_id, None)
        return removed is not None

    def sessions(self) -> list[str]:
        with self._lock:
            return list(self._records)
