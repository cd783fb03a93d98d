"""FastAPI application factory.

Process-wide services (progress tracker, operation history, label
cache, audit log) are built once here and handed to routes through
``app.state``; nothing lives at module scope.
"""

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager

from fastapi import FastAPI

from magpie.audit.label_logger import LabelAuditLog
from magpie.config import (
    GMAIL_API_BASE_URL,
    GMAIL_USER_ID,
    HISTORY_DB_PATH,
    LABEL_AUDIT_LOG_PATH,
    OLLAMA_BASE_URL,
    OLLAMA_MODEL,
    REQUEST_TIMEOUT_SECONDS,
)
from magpie.executors.email_classifier import EmailClassifier
from magpie.history.operations import OperationHistory
from magpie.integrations.gmail import GmailClient, MailGateway
from magpie.integrations.ollama import OllamaClient
from magpie.progress.tracker import ProgressTracker
from magpie.router.labels import LabelMappingCache

logger = logging.getLogger(__name__)

GatewayFactory = Callable[[str], AbstractAsyncContextManager[MailGateway]]
ClassifierFactory = Callable[[], AbstractAsyncContextManager[EmailClassifier]]


def default_gateway_factory(access_token: str) -> GmailClient:
    return GmailClient(
        GMAIL_API_BASE_URL,
        access_token,
        user_id=GMAIL_USER_ID,
        timeout=REQUEST_TIMEOUT_SECONDS,
    )


@asynccontextmanager
async def default_classifier_factory() -> AsyncIterator[EmailClassifier]:
    async with OllamaClient(OLLAMA_BASE_URL) as ollama:
        yield EmailClassifier(ollama, model=OLLAMA_MODEL or None)


def create_app(
    *,
    tracker: ProgressTracker | None = None,
    history: OperationHistory | None = None,
    audit_log: LabelAuditLog | None = None,
    gateway_factory: GatewayFactory | None = None,
    classifier_factory: ClassifierFactory | None = None,
) -> FastAPI:
    """Build the HTTP app; any service may be injected (tests, embedding)."""
    from magpie.api.routes import router

    app = FastAPI(title="magpie", description="Bulk inbox classification and labeling")
    app.state.tracker = tracker or ProgressTracker()
    app.state.history = history or OperationHistory(HISTORY_DB_PATH)
    app.state.audit_log = audit_log or LabelAuditLog(LABEL_AUDIT_LOG_PATH)
    app.state.label_cache = LabelMappingCache()
    app.state.gateway_factory = gateway_factory or default_gateway_factory
    app.state.classifier_factory = classifier_factory or default_classifier_factory
    app.state.runs = {}
    app.include_router(router)
    return app
