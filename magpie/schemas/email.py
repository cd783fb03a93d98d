"""Schemas for the bulk classification pipeline.

Covers the full lifecycle:
  provider page -> already-classified filter -> AI classification
  -> label reconciliation -> operation history -> run summary
"""

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field

from magpie.schemas.taxonomy import Category

MAX_BATCH_SIZE = 50

# --- Provider data ---


class EmailRecord(BaseModel):
    """Read-only view of a provider message for the duration of one run."""

    id: str
    thread_id: str = ""
    subject: str = ""
    sender: str = ""
    body: str = ""
    snippet: str = ""
    timestamp: datetime | None = None
    label_ids: list[str] = Field(default_factory=list)


class ProviderLabel(BaseModel):
    """A label as the mail provider reports it."""

    id: str
    name: str
    type: str = "user"


# --- Classification ---


class Priority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ClassificationReply(BaseModel):
    """Shape the AI service is asked to return (JSON schema sent as ``format``)."""

    category: str
    confidence: float = Field(ge=0.0, le=1.0)
    priority: Priority = Priority.MEDIUM
    sentiment: float = Field(default=0.0, ge=-1.0, le=1.0)
    rationale: list[str] = Field(default_factory=list)


class ClassificationResult(BaseModel):
    """Classifier output for one email."""

    category: Category
    confidence: float = Field(ge=0.0, le=1.0)
    priority: Priority = Priority.MEDIUM
    sentiment: float = Field(default=0.0, ge=-1.0, le=1.0)
    rationale: list[str] = Field(default_factory=list)
    is_fallback: bool = False

    @property
    def matched(self) -> bool:
        """True if the category came from a usable AI reply."""
        return not self.is_fallback


# --- Run request / state ---


class PreClassifiedEmail(BaseModel):
    """An email whose category is already known; only labeling is needed."""

    id: str
    category: Category
    subject: str = ""
    sender: str = ""


class RunRequest(BaseModel):
    """Parameters for one bulk classification run."""

    max_emails: int = Field(default=100, ge=1, le=1000)
    apply_labels: bool = False
    skip_classified: bool = True
    batch_size: int = Field(default=10, ge=1, le=MAX_BATCH_SIZE)
    query: str = ""
    page_token: str | None = None
    emails_to_process: list[PreClassifiedEmail] | None = None


class RunState(StrEnum):
    PENDING = "pending"
    FETCHING = "fetching"
    CLASSIFYING = "classifying"
    LABELING = "labeling"
    COMPLETED = "completed"
    STOPPED = "stopped"
    FAILED = "failed"


class ItemStatus(StrEnum):
    CLASSIFIED = "classified"
    SKIPPED = "skipped"
    ERROR = "error"


class ItemOutcome(BaseModel):
    """Per-message result of a run."""

    message_id: str
    subject: str = ""
    sender: str = ""
    status: ItemStatus
    classification: ClassificationResult | None = None
    applied_label: str | None = None
    label_applied: bool = False
    label_verified: bool = False
    error: str | None = None


# --- Pipeline results ---


class RunSummary(BaseModel):
    """Aggregate result of one bulk classification run."""

    session_id: str
    state: RunState = RunState.PENDING
    processed: int = 0
    classified: int = 0
    matched: int = 0
    labels_applied: int = 0
    skipped_already_classified: int = 0
    errors: int = 0
    fetch_errors: int = 0
    fallbacks: int = 0
    categories: dict[str, int] = Field(default_factory=dict)
    priorities: dict[str, int] = Field(default_factory=dict)
    label_mapping: dict[str, str] = Field(default_factory=dict)
    operation_ids: list[str] = Field(default_factory=list)
    next_page_token: str | None = None
    outcomes: list[ItemOutcome] = Field(default_factory=list)


class CoverageStats(BaseModel):
    """How much of the mailbox already carries a taxonomy label."""

    total: int = 0
    inbox: int = 0
    unread: int = 0
    already_classified: int = 0  # inbox messages with any AI/* label
    unlabeled: int = 0
    coverage: float = 0.0  # percent of inbox, one decimal
    taxonomy_labels: int = 0  # AI/* labels present on the provider
    categories: dict[str, int] = Field(default_factory=dict)  # all mail, per category
