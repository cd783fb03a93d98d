"""Append-only audit log of label mutations.

Writes LabelAuditEntry records as JSON Lines (one JSON object per line).
Complements the operation history: the history is what can be undone,
this is everything that was attempted.
"""

import logging
from datetime import UTC, datetime
from pathlib import Path

from magpie.schemas.audit import LabelAuditEntry

logger = logging.getLogger(__name__)


class LabelAuditLog:
    """Append-only JSONL audit log for label actions.

    Usage::

        audit = LabelAuditLog("/path/to/label_audit.jsonl")
        audit.record("applied", session_id="s1", message_id="m1", label_id="L1")

        entries = audit.read_entries(since=some_datetime)
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def log(self, entry: LabelAuditEntry) -> None:
        """Append a single audit entry to the log file."""
        with self._path.open("a") as f:
            f.write(entry.model_dump_json() + "\n")
        logger.debug(
            "Label audit: %s message=%s label=%s",
            entry.action,
            entry.message_id,
            entry.label_name or entry.label_id,
        )

    def record(
        self,
        action: str,
        *,
        session_id: str,
        message_id: str,
        label_id: str,
        label_name: str = "",
        subject: str = "",
        operation_id: str | None = None,
    ) -> LabelAuditEntry:
        entry = LabelAuditEntry(
            timestamp=datetime.now(UTC),
            action=action,
            session_id=session_id,
            message_id=message_id,
            label_id=label_id,
            label_name=label_name,
            subject=subject,
            operation_id=operation_id,
        )
        self.log(entry)
        return entry

    def read_entries(
        self,
        *,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[LabelAuditEntry]:
        """Read audit entries, optionally filtered by timestamp.

        Args:
            since: Only return entries after this timestamp.
            limit: Maximum number of entries to return (most recent kept).

        Returns:
            List of LabelAuditEntry objects, oldest first.
        """
        if not self._path.exists():
            return []

        entries: list[LabelAuditEntry] = []
        with self._path.open() as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                entry = LabelAuditEntry.model_validate_json(line)
                if since and entry.timestamp <= since:
                    continue
                entries.append(entry)

        if limit is not None:
            entries = entries[-limit:]

        return entries
