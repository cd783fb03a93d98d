"""Label reconciler: keeps taxonomy labels present on the provider and
applies them to messages.

No LLM calls: pure provider bookkeeping. The provider's idempotent
label creation is the correctness backstop; the in-process mapping
cache only saves round trips.
"""

import logging
import threading
from collections.abc import Sequence

from magpie.errors import AuthenticationError, LabelSetupError, ProviderError
from magpie.integrations.gmail import MailGateway
from magpie.retry import DEFAULT_ATTEMPTS, DEFAULT_BACKOFF, retry_async
from magpie.schemas.email import CoverageStats
from magpie.schemas.taxonomy import CATEGORY_COLORS, Category, category_for_label, label_name

logger = logging.getLogger(__name__)


class LabelMappingCache:
    """Process-wide Category -> label id mapping, one entry per mail account.

    Last writer wins; concurrent runs may both create a label, which the
    provider resolves to the same id.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._mappings: dict[str, dict[Category, str]] = {}

    def get(self, account: str) -> dict[Category, str]:
        with self._lock:
            return dict(self._mappings.get(account, {}))

    def set(self, account: str, mapping: dict[Category, str]) -> None:
        with self._lock:
            self._mappings[account] = dict(mapping)

    def discard(self, account: str, category: Category) -> None:
        with self._lock:
            self._mappings.get(account, {}).pop(category, None)

    def clear(self) -> None:
        with self._lock:
            self._mappings.clear()


class LabelReconciler:
    """Ensures, applies, verifies and removes taxonomy labels.

    Usage::

        reconciler = LabelReconciler(gmail, account="me@example.com", cache=cache)
        mapping = await reconciler.ensure_labels()
        if await reconciler.apply_with_retry(msg_id, mapping[category]):
            verified = await reconciler.verify(msg_id, mapping[category])
    """

    def __init__(
        self,
        gateway: MailGateway,
        *,
        account: str = "me",
        cache: LabelMappingCache | None = None,
        attempts: int = DEFAULT_ATTEMPTS,
        backoff: Sequence[float] = DEFAULT_BACKOFF,
    ) -> None:
        self._gateway = gateway
        self._account = account
        self._cache = cache or LabelMappingCache()
        self._attempts = attempts
        self._backoff = backoff

    # --- Label existence ---

    async def ensure_labels(self) -> dict[Category, str]:
        """Return a mapping for every category, creating missing labels.

        Raises:
            AuthenticationError: Credentials rejected while listing labels.
            LabelSetupError: Labels could not be listed or created.
        """
        cached = self._cache.get(self._account)
        if all(category in cached for category in Category):
            return cached

        try:
            labels = await self._gateway.list_labels()
        except AuthenticationError:
            raise
        except ProviderError as exc:
            raise LabelSetupError(f"Could not list provider labels: {exc}") from exc

        existing: dict[Category, str] = {}
        for label in labels:
            category = category_for_label(label.name)
            if category is not None:
                existing[category] = label.id

        mapping: dict[Category, str] = {}
        for category in Category:
            name = label_name(category)
            label_id = existing.get(category)
            if label_id is None:
                try:
                    label_id = await self._gateway.create_label(
                        name, CATEGORY_COLORS.get(category)
                    )
                except AuthenticationError:
                    raise
                except ProviderError as exc:
                    raise LabelSetupError(f"Could not create label {name}: {exc}") from exc
                logger.info("Created taxonomy label %s -> %s", name, label_id)
            mapping[category] = label_id

        self._cache.set(self._account, mapping)
        logger.debug("Label mapping for %s: %s", self._account, mapping)
        return dict(mapping)

    def invalidate(self, category: Category) -> None:
        """Forget a cached label id so the next ensure_labels() re-resolves it."""
        self._cache.discard(self._account, category)

    # --- Mutations ---

    async def _apply_once(self, message_id: str, label_id: str) -> bool:
        if not await self._gateway.apply_label(message_id, label_id):
            raise ProviderError(f"Provider did not apply {label_id} to {message_id}")
        return True

    async def _remove_once(self, message_id: str, label_id: str) -> bool:
        if not await self._gateway.remove_label(message_id, label_id):
            raise ProviderError(f"Provider did not remove {label_id} from {message_id}")
        return True

    async def apply_with_retry(self, message_id: str, label_id: str) -> bool:
        """Apply a label with retry and backoff. False once the budget is spent."""
        try:
            return await retry_async(
                self._apply_once,
                message_id,
                label_id,
                attempts=self._attempts,
                backoff=self._backoff,
                give_up_on=(AuthenticationError,),
                context=f"apply {label_id} to {message_id}",
            )
        except Exception:
            logger.exception(
                "Giving up applying label %s to %s after %d attempt(s)",
                label_id,
                message_id,
                self._attempts,
            )
            return False

    async def remove_with_retry(self, message_id: str, label_id: str) -> bool:
        """Remove a label with retry and backoff. False once the budget is spent."""
        try:
            return await retry_async(
                self._remove_once,
                message_id,
                label_id,
                attempts=self._attempts,
                backoff=self._backoff,
                give_up_on=(AuthenticationError,),
                context=f"remove {label_id} from {message_id}",
            )
        except Exception:
            logger.exception(
                "Giving up removing label %s from %s after %d attempt(s)",
                label_id,
                message_id,
                self._attempts,
            )
            return False

    async def verify(self, message_id: str, label_id: str) -> bool:
        """Re-read the message and confirm the label is present."""
        try:
            message = await self._gateway.get_message(message_id)
        except ProviderError as exc:
            logger.warning("Could not verify label on %s: %s", message_id, exc)
            return False

        present = label_id in message.label_ids
        if not present:
            logger.warning("Label %s missing from %s after apply", label_id, message_id)
        return present

    # --- Coverage ---

    async def coverage(self) -> CoverageStats:
        """Count classified vs. unlabeled mail. Read-only: missing labels count as zero.

        Raises:
            AuthenticationError: Credentials rejected.
            ProviderError: Labels or counts could not be fetched.
        """
        present: dict[Category, str] = {}
        for label in await self._gateway.list_labels():
            category = category_for_label(label.name)
            if category is not None:
                present[category] = label.id

        count = self._gateway.count_messages
        total = await count()
        inbox = await count(label_ids=["INBOX"])
        unread = await count(label_ids=["UNREAD"])

        categories: dict[str, int] = {}
        classified = 0
        for category in Category:
            label_id = present.get(category)
            if label_id is None:
                categories[category.value] = 0
                continue
            categories[category.value] = await count(label_ids=[label_id])
            classified += await count(label_ids=["INBOX", label_id])

        # A message carrying two taxonomy labels is counted under both.
        classified = min(classified, inbox)
        stats = CoverageStats(
            total=total,
            inbox=inbox,
            unread=unread,
            already_classified=classified,
            unlabeled=inbox - classified,
            coverage=round(classified / inbox * 100, 1) if inbox else 0.0,
            taxonomy_labels=len(present),
            categories=categories,
        )
        logger.info(
            "Coverage for %s: %d/%d inbox message(s) classified (%.1f%%)",
            self._account,
            classified,
            inbox,
            stats.coverage,
        )
        return stats
