"""Pipeline handler for bulk inbox classification and labeling.

Drives provider pagination, filters messages that already carry a
taxonomy label, classifies the rest, optionally applies and verifies
labels, records reversible history per page, and publishes progress
after every message.

One run is one sequential async task. Per-message failures are counted
and the run moves on; only setup-fatal conditions (rejected credentials,
labels that cannot be listed) abort it.
"""

import asyncio
import logging
import math
import time
from collections.abc import Callable
from typing import Protocol

from magpie.audit.label_logger import LabelAuditLog
from magpie.config import MAX_EMAILS_CAP
from magpie.errors import AuthenticationError, LabelSetupError, ProviderError
from magpie.executors.email_classifier import fallback_result
from magpie.history.operations import OperationHistory
from magpie.integrations.gmail import MAX_PAGE_SIZE, MailGateway
from magpie.progress.tracker import ProgressTracker
from magpie.retry import retry_async
from magpie.router.labels import LabelReconciler
from magpie.schemas.email import (
    ClassificationResult,
    EmailRecord,
    ItemOutcome,
    ItemStatus,
    PreClassifiedEmail,
    Priority,
    RunRequest,
    RunState,
    RunSummary,
)
from magpie.schemas.history import AffectedItem, OperationType
from magpie.schemas.progress import ProgressRecord
from magpie.schemas.taxonomy import Category, is_taxonomy_label, label_name

logger = logging.getLogger(__name__)

# Confidence assigned to emails submitted with a known category.
PRECLASSIFIED_CONFIDENCE = 0.95


class Classifier(Protocol):
    async def classify(self, subject: str, body: str, sender: str) -> ClassificationResult: ...


class _Run:
    """Mutable state of one pipeline run."""

    def __init__(
        self,
        request: RunRequest,
        *,
        session_id: str,
        user_id: str,
        gateway: MailGateway,
        classifier: Classifier | None,
        tracker: ProgressTracker,
        history: OperationHistory,
        reconciler: LabelReconciler,
        audit_log: LabelAuditLog | None,
        target: int,
        page_size: int,
        cancel_event: asyncio.Event | None,
        on_progress: Callable[[str], None] | None,
    ) -> None:
        self.request = request
        self.session_id = session_id
        self.user_id = user_id
        self.gateway = gateway
        self.classifier = classifier
        self.tracker = tracker
        self.history = history
        self.reconciler = reconciler
        self.audit_log = audit_log
        self.target = target
        self.page_size = page_size
        self.cancel_event = cancel_event
        self.on_progress = on_progress

        self.summary = RunSummary(session_id=session_id)
        self.mapping: dict[Category, str] = {}
        self.taxonomy_label_ids: set[str] = set()
        self.pending: list[tuple[AffectedItem, str]] = []  # (item, subject)
        self.started = time.monotonic()
        self.batch = 0
        self.total_batches = max(1, math.ceil(target / page_size))
        self.chunk = 0
        self.total_chunks = 0

    # --- Progress ---

    def emit(self, msg: str) -> None:
        if self.on_progress:
            self.on_progress(msg)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def publish(self, current_email: str = "", *, complete: bool = False) -> None:
        s = self.summary
        elapsed = max(time.monotonic() - self.started, 1e-6)
        speed = s.processed / elapsed if s.processed else 0.0
        remaining = max(self.target - s.processed, 0)
        eta = remaining / speed if speed > 0 else 0.0
        if s.state == RunState.COMPLETED:
            percent = 100.0
        else:
            percent = min(100.0, round(s.processed / self.target * 100, 1)) if self.target else 0.0

        self.tracker.update(
            self.session_id,
            ProgressRecord(
                session_id=self.session_id,
                state=s.state,
                total_emails=self.target,
                processed=s.processed,
                classified=s.classified,
                matched=s.matched,
                labels_applied=s.labels_applied,
                errors=s.errors,
                skipped_already_classified=s.skipped_already_classified,
                fallbacks=s.fallbacks,
                progress=percent,
                current_batch=self.batch,
                total_batches=self.total_batches,
                current_chunk=self.chunk,
                total_chunks=self.total_chunks,
                current_email=current_email,
                processing_speed=round(speed, 3),
                estimated_time_remaining=round(eta, 1),
                is_complete=complete,
                is_stopped=s.state == RunState.STOPPED,
            ),
        )

    # --- Setup ---

    async def prepare_labels(self) -> None:
        """Resolve taxonomy label ids before any message is touched."""
        if self.request.apply_labels:
            self.mapping = await self.reconciler.ensure_labels()
            self.summary.label_mapping = {label_name(c): lid for c, lid in self.mapping.items()}
            self.taxonomy_label_ids.update(self.mapping.values())

        if self.request.skip_classified and self.request.emails_to_process is None:
            try:
                labels = await self.gateway.list_labels()
            except AuthenticationError:
                raise
            except ProviderError as exc:
                raise LabelSetupError(f"Could not list provider labels: {exc}") from exc
            self.taxonomy_label_ids.update(lbl.id for lbl in labels if is_taxonomy_label(lbl.name))

    # --- Per message ---

    def already_classified(self, email: EmailRecord) -> bool:
        return any(
            lid in self.taxonomy_label_ids or is_taxonomy_label(lid) for lid in email.label_ids
        )

    def count_classification(self, result: ClassificationResult) -> None:
        s = self.summary
        s.classified += 1
        s.categories[result.category.value] = s.categories.get(result.category.value, 0) + 1
        s.priorities[result.priority.value] = s.priorities.get(result.priority.value, 0) + 1
        if result.is_fallback:
            s.fallbacks += 1
        else:
            s.matched += 1

    async def label_message(
        self, email: EmailRecord, result: ClassificationResult, outcome: ItemOutcome
    ) -> None:
        """Apply and verify the category label; counts the outcome."""
        s = self.summary
        s.state = RunState.LABELING

        if result.category not in self.mapping:
            try:
                self.mapping = await self.reconciler.ensure_labels()
            except AuthenticationError:
                raise
            except (ProviderError, LabelSetupError) as exc:
                s.errors += 1
                outcome.error = f"label unavailable: {exc}"
                logger.warning("Label for %s unavailable: %s", result.category, exc)
                return

        label_id = self.mapping[result.category]
        name = label_name(result.category)
        outcome.applied_label = name

        outcome.label_applied = await self.reconciler.apply_with_retry(email.id, label_id)
        if outcome.label_applied:
            outcome.label_verified = await self.reconciler.verify(email.id, label_id)

        if outcome.label_applied and outcome.label_verified:
            s.labels_applied += 1
            self.pending.append(
                (
                    AffectedItem(
                        message_id=email.id,
                        label_id=label_id,
                        label_name=name,
                        previous_label_ids=list(email.label_ids),
                    ),
                    email.subject,
                )
            )
            return

        s.errors += 1
        action = "verify_failed" if outcome.label_applied else "apply_failed"
        outcome.error = action.replace("_", " ")
        if not outcome.label_applied:
            # The label may have been deleted out-of-band; re-resolve next time.
            self.reconciler.invalidate(result.category)
            self.mapping.pop(result.category, None)
        if self.audit_log:
            self.audit_log.record(
                action,
                session_id=self.session_id,
                message_id=email.id,
                label_id=label_id,
                label_name=name,
                subject=email.subject,
            )

    async def process_fetched(self, message_id: str) -> ItemOutcome:
        s = self.summary
        try:
            email = await retry_async(
                self.gateway.get_message,
                message_id,
                retry_on=(ProviderError,),
                give_up_on=(AuthenticationError,),
                context=f"fetch message {message_id}",
            )
        except AuthenticationError:
            raise
        except Exception as exc:
            logger.exception("Error fetching message %s", message_id)
            s.errors += 1
            s.fetch_errors += 1
            return ItemOutcome(message_id=message_id, status=ItemStatus.ERROR, error=str(exc))

        if self.request.skip_classified and self.already_classified(email):
            s.skipped_already_classified += 1
            logger.debug("Skipping already classified message %s", email.id)
            return ItemOutcome(
                message_id=email.id,
                subject=email.subject,
                sender=email.sender,
                status=ItemStatus.SKIPPED,
            )

        s.state = RunState.CLASSIFYING
        try:
            result = await self.classifier.classify(
                email.subject, email.body or email.snippet, email.sender
            )
        except Exception:
            logger.exception("Classifier raised for message %s, using fallback", email.id)
            result = fallback_result()
        self.count_classification(result)

        outcome = ItemOutcome(
            message_id=email.id,
            subject=email.subject,
            sender=email.sender,
            status=ItemStatus.CLASSIFIED,
            classification=result,
        )
        if self.request.apply_labels and result.matched:
            await self.label_message(email, result, outcome)
        return outcome

    async def process_preclassified(self, item: PreClassifiedEmail) -> ItemOutcome:
        result = ClassificationResult(
            category=item.category,
            confidence=PRECLASSIFIED_CONFIDENCE,
            priority=Priority.MEDIUM,
            rationale=["pre-classified"],
        )
        self.count_classification(result)
        outcome = ItemOutcome(
            message_id=item.id,
            subject=item.subject,
            sender=item.sender,
            status=ItemStatus.CLASSIFIED,
            classification=result,
        )
        if self.request.apply_labels:
            email = EmailRecord(id=item.id, subject=item.subject, sender=item.sender)
            await self.label_message(email, result, outcome)
        return outcome

    # --- History ---

    def flush_history(self) -> None:
        """Record the current page's successful applies as one history entry."""
        if not self.pending:
            return
        items = [item for item, _subject in self.pending]
        entry = self.history.record(
            OperationType.LABEL_APPLY,
            user_id=self.user_id,
            session_id=self.session_id,
            description=f"Applied {len(items)} AI label(s) (batch {self.batch})",
            affected=items,
            metadata={
                "batch": self.batch,
                "labels": sorted({item.label_name for item in items}),
                "query": self.request.query,
            },
        )
        self.summary.operation_ids.append(entry.id)
        if self.audit_log:
            for item, subject in self.pending:
                self.audit_log.record(
                    "applied",
                    session_id=self.session_id,
                    message_id=item.message_id,
                    label_id=item.label_id,
                    label_name=item.label_name,
                    subject=subject,
                    operation_id=entry.id,
                )
        self.pending = []

    # --- Loops ---

    async def run_items(self, items: list, handler) -> bool:
        """Process one page. Returns False if the run was cancelled."""
        chunk_size = self.request.batch_size
        self.total_chunks = max(1, math.ceil(len(items) / chunk_size))
        try:
            for i, item in enumerate(items):
                if self.cancelled:
                    return False
                self.chunk = i // chunk_size + 1
                outcome = await handler(item)
                self.summary.outcomes.append(outcome)
                self.summary.processed += 1
                self.publish(outcome.subject or outcome.message_id)
                if i % chunk_size == chunk_size - 1 or i == len(items) - 1:
                    self.emit(
                        f"Batch {self.batch}/{self.total_batches} "
                        f"chunk {self.chunk}/{self.total_chunks}: "
                        f"{self.summary.processed}/{self.target} processed"
                    )
        finally:
            self.flush_history()
        return True

    async def run_fetched(self) -> None:
        s = self.summary
        page_token = self.request.page_token
        fetched = 0

        while fetched < self.target:
            if self.cancelled:
                s.state = RunState.STOPPED
                break
            s.state = RunState.FETCHING
            self.publish()
            want = min(self.page_size, self.target - fetched)
            try:
                ids, next_token = await retry_async(
                    self.gateway.list_messages,
                    self.request.query,
                    page_token,
                    want,
                    retry_on=(ProviderError,),
                    give_up_on=(AuthenticationError,),
                    context="list messages",
                )
            except AuthenticationError:
                raise
            except ProviderError:
                logger.exception("Giving up listing messages after page %d", self.batch)
                s.errors += 1
                break

            if not ids:
                page_token = None
                break

            ids = ids[: self.target - fetched]
            fetched += len(ids)
            self.batch += 1
            self.emit(f"Fetched page {self.batch}: {len(ids)} message(s)")

            if not await self.run_items(ids, self.process_fetched):
                s.state = RunState.STOPPED
                break

            page_token = next_token
            if not page_token:
                break

        s.next_page_token = page_token

    async def run_preclassified(self) -> None:
        items = list(self.request.emails_to_process or [])[: self.target]
        for start in range(0, len(items), self.page_size):
            self.batch += 1
            if not await self.run_items(
                items[start : start + self.page_size], self.process_preclassified
            ):
                self.summary.state = RunState.STOPPED
                return


async def run_bulk_classification(
    request: RunRequest,
    *,
    session_id: str,
    user_id: str,
    gateway: MailGateway,
    classifier: Classifier | None,
    tracker: ProgressTracker,
    history: OperationHistory,
    reconciler: LabelReconciler | None = None,
    audit_log: LabelAuditLog | None = None,
    max_emails_cap: int = MAX_EMAILS_CAP,
    page_size: int = MAX_PAGE_SIZE,
    cancel_event: asyncio.Event | None = None,
    on_progress: Callable[[str], None] | None = None,
) -> RunSummary:
    """Classify (and optionally label) up to ``request.max_emails`` messages.

    Flow:
    1. Clamp the target to ``max_emails_cap``; resolve taxonomy labels.
    2. Page through the provider (<= ``page_size`` per call).
    3. Skip messages already carrying a taxonomy label (if enabled).
    4. Classify; on a matched category, apply + verify the label.
    5. Record each page's applied labels as one history entry.
    6. Publish progress after every message; mark complete at the end.

    Args:
        request: Run parameters.
        session_id: Progress key for pollers.
        user_id: Owner of history entries written by this run.
        gateway: Mail provider gateway for the user's account.
        classifier: Anything with ``classify(subject, body, sender)``.
            Unused when ``request.emails_to_process`` is given.
        tracker: Shared progress store.
        history: Shared operation history.
        reconciler: Label reconciler; built from ``gateway`` if omitted.
        audit_log: Optional label audit log.
        max_emails_cap: Hard ceiling on the per-run target.
        page_size: Provider page size (capped at the provider limit).
        cancel_event: When set, the run stops before the next message.
        on_progress: Optional callback for progress messages.

    Returns:
        RunSummary with counts, per-category/priority breakdowns and
        per-message outcomes.

    Raises:
        AuthenticationError: Provider rejected the credentials.
        LabelSetupError: Taxonomy labels could not be listed or created.
        ValueError: No classifier and no pre-classified emails.
    """
    if classifier is None and request.emails_to_process is None:
        raise ValueError("a classifier is required unless emails_to_process is given")

    target = max(0, min(request.max_emails, max_emails_cap))
    run = _Run(
        request,
        session_id=session_id,
        user_id=user_id,
        gateway=gateway,
        classifier=classifier,
        tracker=tracker,
        history=history,
        reconciler=reconciler or LabelReconciler(gateway, account=user_id),
        audit_log=audit_log,
        target=target,
        page_size=max(1, min(page_size, MAX_PAGE_SIZE)),
        cancel_event=cancel_event,
        on_progress=on_progress,
    )
    summary = run.summary

    logger.info(
        "Starting run %s: target=%d apply_labels=%s skip_classified=%s query=%r",
        session_id,
        target,
        request.apply_labels,
        request.skip_classified,
        request.query,
    )
    run.publish()

    try:
        await run.prepare_labels()
        if request.emails_to_process is not None:
            await run.run_preclassified()
        else:
            await run.run_fetched()
    except (AuthenticationError, LabelSetupError) as exc:
        summary.state = RunState.FAILED
        run.publish(complete=True)
        logger.error("Run %s failed: %s", session_id, exc)
        raise

    if summary.state == RunState.STOPPED:
        run.publish()
        logger.info("Run %s stopped after %d message(s)", session_id, summary.processed)
    else:
        summary.state = RunState.COMPLETED
        run.publish(complete=True)

    run.emit(
        f"Done. Processed: {summary.processed}, Classified: {summary.classified}, "
        f"Matched: {summary.matched}, Labeled: {summary.labels_applied}, "
        f"Skipped: {summary.skipped_already_classified}, Errors: {summary.errors}"
    )
    logger.info(
        "Run %s %s: processed=%d classified=%d matched=%d labeled=%d skipped=%d "
        "errors=%d fallbacks=%d",
        session_id,
        summary.state.value,
        summary.processed,
        summary.classified,
        summary.matched,
        summary.labels_applied,
        summary.skipped_already_classified,
        summary.errors,
        summary.fallbacks,
    )
    return summary
