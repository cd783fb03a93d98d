"""Schema for pollable progress of a pipeline run."""

from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field

from magpie.schemas.email import RunState


class ProgressRecord(BaseModel):
    """Point-in-time snapshot of a run, keyed by session id.

    Frozen so a reader never observes a half-written record.
    """

    model_config = ConfigDict(frozen=True)

    session_id: str = ""
    state: RunState = RunState.PENDING
    total_emails: int = 0
    processed: int = 0
    classified: int = 0
    matched: int = 0
    labels_applied: int = 0
    errors: int = 0
    skipped_already_classified: int = 0
    fallbacks: int = 0
    progress: float = 0.0  # percent
    current_batch: int = 0
    total_batches: int = 0
    current_chunk: int = 0
    total_chunks: int = 0
    current_email: str = ""
    processing_speed: float = 0.0  # emails per second
    estimated_time_remaining: float = 0.0  # seconds
    is_complete: bool = False
    is_stopped: bool = False
    last_updated: datetime = Field(default_factory=lambda: datetime.now(UTC))
