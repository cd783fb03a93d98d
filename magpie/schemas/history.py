"""Schemas for the operation history and rollback."""

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class OperationType(StrEnum):
    LABEL_APPLY = "label_apply"
    LABEL_REMOVE = "label_remove"
    LABEL_CREATE = "label_create"
    MOVE = "move"


class AffectedItem(BaseModel):
    """One message/label pair touched by an operation, with its prior state."""

    message_id: str
    label_id: str
    label_name: str = ""
    previous_label_ids: list[str] = Field(default_factory=list)


class OperationEntry(BaseModel):
    """A reversible record of a batch of provider mutations."""

    id: str
    type: OperationType
    timestamp: datetime
    user_id: str
    session_id: str
    description: str
    affected: list[AffectedItem] = Field(default_factory=list)
    can_rollback: bool = True
    is_rolled_back: bool = False
    rolled_back_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def affected_count(self) -> int:
        return len({item.message_id for item in self.affected})


class OperationSummary(BaseModel):
    """Listing projection of an OperationEntry."""

    id: str
    type: OperationType
    timestamp: datetime
    description: str
    session_id: str
    can_rollback: bool
    is_rolled_back: bool
    affected_count: int
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_entry(cls, entry: OperationEntry) -> "OperationSummary":
        return cls(
            id=entry.id,
            type=entry.type,
            timestamp=entry.timestamp,
            description=entry.description,
            session_id=entry.session_id,
            can_rollback=entry.can_rollback,
            is_rolled_back=entry.is_rolled_back,
            affected_count=entry.affected_count,
            metadata=entry.metadata,
        )


class RollbackResult(BaseModel):
    """Outcome of undoing one operation. Partial failures are listed in ``errors``."""

    id: str
    operation_id: str
    timestamp: datetime
    success: bool
    description: str
    errors: list[str] = Field(default_factory=list)


class HistoryStats(BaseModel):
    total_operations: int = 0
    rollbackable_operations: int = 0
    rolled_back_operations: int = 0
    successful_rollbacks: int = 0
    failed_rollbacks: int = 0
