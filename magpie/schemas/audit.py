"""Schema for the append-only label audit log."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel


class LabelAuditEntry(BaseModel):
    """A record of a label mutation attempted on the provider."""

    timestamp: datetime
    action: Literal["applied", "apply_failed", "verify_failed", "removed", "remove_failed"]
    session_id: str
    message_id: str
    label_id: str
    label_name: str = ""
    subject: str = ""
    operation_id: str | None = None
