"""Undo a recorded operation by issuing the inverse provider calls.

Validation failures raise before anything is touched. The entry is then
claimed (flagged rolled back) before the first provider call, so a
concurrent second rollback is rejected instead of repeating the undo.
Per-item provider failures are collected, not raised, mirroring the
pipeline's partial-failure policy.
"""

import logging
import uuid
from datetime import UTC, datetime

from magpie.audit.label_logger import LabelAuditLog
from magpie.errors import OperationNotFoundError, RollbackConflictError
from magpie.history.operations import OperationHistory
from magpie.integrations.gmail import MailGateway
from magpie.router.labels import LabelReconciler
from magpie.schemas.history import AffectedItem, OperationEntry, OperationType, RollbackResult

logger = logging.getLogger(__name__)


def check_rollbackable(
    entry: OperationEntry | None,
    operation_id: str,
    user_id: str,
    history: OperationHistory,
) -> OperationEntry:
    """Return the entry if it may be rolled back by ``user_id``.

    Raises:
        OperationNotFoundError: No such entry.
        RollbackConflictError: Foreign user, not rollbackable, already
            rolled back, or a newer active entry touches the same
            message/label pair.
    """
    if entry is None:
        raise OperationNotFoundError(f"Operation {operation_id} not found")
    if entry.user_id != user_id:
        raise RollbackConflictError(f"Operation {operation_id} belongs to a different user")
    if not entry.can_rollback:
        raise RollbackConflictError(f"Operation {operation_id} cannot be rolled back")
    if entry.is_rolled_back:
        raise RollbackConflictError(f"Operation {operation_id} has already been rolled back")

    newer = history.newer_overlapping(entry)
    if newer:
        ids = ", ".join(op.id for op in newer)
        raise RollbackConflictError(
            f"Operation {operation_id} shares messages with newer operation(s) {ids}; "
            "roll those back first"
        )
    return entry


def label_predates(op_type: OperationType, item: AffectedItem) -> bool:
    """True if an applied label was already on the message before the operation."""
    return op_type == OperationType.LABEL_APPLY and item.label_id in item.previous_label_ids


async def _undo_item(
    op_type: OperationType,
    item: AffectedItem,
    reconciler: LabelReconciler,
) -> list[str]:
    """Issue the inverse call(s) for one affected item; return error strings."""
    errors: list[str] = []

    if op_type == OperationType.LABEL_APPLY:
        if label_predates(op_type, item):
            logger.debug("Keeping %s on %s: present before the run", item.label_id, item.message_id)
        elif not await reconciler.remove_with_retry(item.message_id, item.label_id):
            errors.append(f"Failed to remove label {item.label_id} from {item.message_id}")

    elif op_type == OperationType.LABEL_REMOVE:
        if not await reconciler.apply_with_retry(item.message_id, item.label_id):
            errors.append(f"Failed to restore label {item.label_id} on {item.message_id}")

    elif op_type == OperationType.MOVE:
        if not await reconciler.remove_with_retry(item.message_id, item.label_id):
            errors.append(f"Failed to remove label {item.label_id} from {item.message_id}")
        for label_id in item.previous_label_ids:
            if label_id == item.label_id:
                continue
            if not await reconciler.apply_with_retry(item.message_id, label_id):
                errors.append(f"Failed to restore label {label_id} on {item.message_id}")

    # LABEL_CREATE: labels are left in place; there is nothing per message to undo.
    return errors


async def rollback_operation(
    operation_id: str,
    gateway: MailGateway,
    user_id: str,
    *,
    history: OperationHistory,
    audit_log: LabelAuditLog | None = None,
) -> RollbackResult:
    """Reverse every mutation recorded in an operation history entry.

    Args:
        operation_id: Entry to roll back.
        gateway: Provider gateway for the entry's mail account.
        user_id: Caller identity; must own the entry.
        history: Operation history holding the entry.
        audit_log: Optional label audit log for per-item records.

    Returns:
        RollbackResult; ``errors`` lists any per-item failures.

    Raises:
        OperationNotFoundError: No such entry.
        RollbackConflictError: The entry may not be rolled back, or another
            rollback of it got there first.
    """
    entry = check_rollbackable(history.get(operation_id), operation_id, user_id, history)
    history.mark_rolled_back(entry.id)

    logger.info(
        "Rolling back operation %s (%s, %d item(s))",
        entry.id,
        entry.type.value,
        len(entry.affected),
    )

    reconciler = LabelReconciler(gateway, account=user_id)
    errors: list[str] = []

    try:
        for item in entry.affected:
            item_errors = await _undo_item(entry.type, item, reconciler)
            errors.extend(item_errors)
            if (
                audit_log
                and entry.type == OperationType.LABEL_APPLY
                and not label_predates(entry.type, item)
            ):
                audit_log.record(
                    "remove_failed" if item_errors else "removed",
                    session_id=entry.session_id,
                    message_id=item.message_id,
                    label_id=item.label_id,
                    label_name=item.label_name,
                    operation_id=entry.id,
                )
    except Exception:
        # Reopen the entry so the undo can be retried.
        history.release_rollback(entry.id)
        raise

    result = RollbackResult(
        id=f"rollback_{uuid.uuid4().hex}",
        operation_id=entry.id,
        timestamp=datetime.now(UTC),
        success=True,
        description=f"Rollback: {entry.description}",
        errors=errors,
    )
    history.record_rollback(result)

    if errors:
        logger.warning(
            "Rolled back %s with %d error(s): %s", entry.id, len(errors), "; ".join(errors)
        )
    else:
        logger.info("Rolled back %s", entry.id)
    return result
